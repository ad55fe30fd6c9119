# patlog/services.py
import logging
import math
import re
import secrets
import string
from dataclasses import dataclass
from datetime import date
from typing import Optional

import database
import report_generator
from patlog import auth_manager, config, storage
from patlog.csv_export import inspections_to_csv
from patlog.data_models import EquipmentClass, Inspection, User, Blob
from patlog.image_processor import (
    ImageDecodeError, ImageTooLargeError, ProcessedImage, process_upload,
)
from patlog.qr_code import generate_qr_png


# ==============================================================================
# ERRORS
# ==============================================================================

class RecordInvalid(ValueError):
    """Field-level validation failure; nothing was persisted."""
    def __init__(self, errors: dict):
        self.errors = errors
        super().__init__("; ".join(f"{k} {', '.join(v)}" for k, v in errors.items()))

class RecordNotFound(LookupError):
    pass

class AccessDenied(PermissionError):
    pass

class QuotaExceeded(PermissionError):
    pass


@dataclass
class ImageUpload:
    data: bytes
    content_type: Optional[str]
    filename: Optional[str]


MSG_BLANK = "can't be blank"
MSG_NOT_A_NUMBER = "is not a number"
MSG_POSITIVE = "must be greater than 0"
MSG_NOT_IN_LIST = "is not included in the list"
MSG_INVALID_DATE = "is not a valid date"
MSG_NOT_IMAGE = "must be an image file"
MSG_IMAGE_TOO_LARGE = "cannot be larger than 10MB"

REQUIRED_TEXT_FIELDS = ("inspector", "serial", "description", "location")
OPTIONAL_TEXT_FIELDS = ("comments", "manufacturer")
POSITIVE_NUMBER_FIELDS = ("earth_ohms", "insulation_mohms", "leakage")
OPTIONAL_POSITIVE_NUMBER_FIELDS = ("equipment_power", "rcd_trip_time")
REQUIRED_BOOL_FIELDS = ("visual_pass", "passed")
OPTIONAL_BOOL_FIELDS = ("appliance_plug_check", "load_test")

ID_ALPHABET = string.ascii_lowercase + string.digits
ID_LENGTH = 12

EMAIL_REGEXP = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)

# ==============================================================================
# PARSING HELPERS
# ==============================================================================

def to_bool(v):
    if isinstance(v, bool) or v is None:
        return v
    if isinstance(v, (int, float)):
        return bool(v)
    if isinstance(v, str):
        s = v.strip().lower()
        if s in ("1", "true", "t", "yes", "y", "on"): return True
        if s in ("0", "false", "f", "no", "n", "off", ""): return False
    return bool(v)

def _is_blank(v) -> bool:
    return v is None or (isinstance(v, str) and not v.strip())

def _add_error(errors: dict, field: str, message: str):
    errors.setdefault(field, []).append(message)

def _parse_number(raw):
    """Returns (value, error). Blank input gives (None, None)."""
    if _is_blank(raw):
        return None, None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None, MSG_NOT_A_NUMBER
    if math.isnan(value) or math.isinf(value):
        return None, MSG_NOT_A_NUMBER
    return value, None

def _parse_date(raw):
    if _is_blank(raw):
        return None, None
    if isinstance(raw, date):
        return raw, None
    try:
        return date.fromisoformat(str(raw).strip()[:10]), None
    except ValueError:
        return None, MSG_INVALID_DATE

def add_years(d: date, years: int) -> date:
    """Same day N years later; 29 February falls back to the 28th."""
    try:
        return d.replace(year=d.year + years)
    except ValueError:
        return d.replace(year=d.year + years, day=28)

def generate_inspection_id() -> str:
    return ''.join(secrets.choice(ID_ALPHABET) for _ in range(ID_LENGTH))

def _now() -> str:
    return database._now_iso()

# ==============================================================================
# INSPECTION VALIDATION
# ==============================================================================

def _inspection_values(inspection: Inspection) -> dict:
    return {column: getattr(inspection, column) for column in database.INSPECTION_COLUMNS}

def build_inspection_values(form: dict, existing: Optional[Inspection] = None):
    """
    Parses submitted form fields into column values and collects field errors.
    On update, fields missing from the form keep their stored values.
    """
    values = _inspection_values(existing) if existing else {}
    errors = {}

    def submitted(field):
        return field in form

    for field in REQUIRED_TEXT_FIELDS + OPTIONAL_TEXT_FIELDS:
        if submitted(field):
            values[field] = form[field] if not _is_blank(form[field]) or field in REQUIRED_TEXT_FIELDS else None
        elif not existing:
            values[field] = None
    for field in REQUIRED_TEXT_FIELDS:
        if _is_blank(values.get(field)):
            _add_error(errors, field, MSG_BLANK)

    # equipment class
    if submitted("equipment_class") or not existing:
        raw = form.get("equipment_class")
        try:
            values["equipment_class"] = EquipmentClass(int(str(raw).strip())).value
        except (TypeError, ValueError):
            values["equipment_class"] = raw
            _add_error(errors, "equipment_class", MSG_NOT_IN_LIST)

    # measurements
    for field in POSITIVE_NUMBER_FIELDS + ("fuse_rating",):
        if submitted(field) or not existing:
            value, error = _parse_number(form.get(field))
            if error:
                _add_error(errors, field, error)
            elif value is None:
                _add_error(errors, field, MSG_NOT_A_NUMBER)
            elif value <= 0:
                _add_error(errors, field, MSG_POSITIVE)
            elif field == "fuse_rating" and value > config.MAX_FUSE_RATING:
                _add_error(errors, field, f"must be less than or equal to {config.MAX_FUSE_RATING}")
            values[field] = value
    for field in OPTIONAL_POSITIVE_NUMBER_FIELDS:
        if submitted(field) or not existing:
            value, error = _parse_number(form.get(field))
            if error:
                _add_error(errors, field, error)
            elif value is not None and value <= 0:
                _add_error(errors, field, MSG_POSITIVE)
            values[field] = value

    # flags
    for field in REQUIRED_BOOL_FIELDS:
        if submitted(field) or not existing:
            values[field] = bool(to_bool(form.get(field)))
    for field in OPTIONAL_BOOL_FIELDS:
        if submitted(field) or not existing:
            values[field] = to_bool(form.get(field)) if not _is_blank(form.get(field)) else None

    # dates
    if submitted("inspection_date") or not existing:
        parsed, error = _parse_date(form.get("inspection_date"))
        if error:
            _add_error(errors, "inspection_date", error)
        values["inspection_date"] = parsed or (date.today() if not error else None)
    if submitted("reinspection_date") or not existing:
        parsed, error = _parse_date(form.get("reinspection_date"))
        if error:
            _add_error(errors, "reinspection_date", error)
        elif parsed is None and values.get("inspection_date"):
            parsed = add_years(values["inspection_date"], 1)
        values["reinspection_date"] = parsed

    return values, errors

def _serialize_values(values: dict) -> dict:
    """Dates to ISO text, booleans to 0/1 for SQLite."""
    out = {}
    for key, value in values.items():
        if isinstance(value, date):
            out[key] = value.isoformat()
        elif isinstance(value, bool):
            out[key] = int(value)
        else:
            out[key] = value
    return out

def _process_image(upload: Optional[ImageUpload], errors: dict) -> Optional[ProcessedImage]:
    if upload is None:
        return None
    try:
        return process_upload(upload.data, upload.content_type, upload.filename)
    except ImageTooLargeError:
        _add_error(errors, "image", MSG_IMAGE_TOO_LARGE)
    except ImageDecodeError as e:
        logging.info(f"Rejected upload '{upload.filename}': {e}")
        _add_error(errors, "image", MSG_NOT_IMAGE)
    return None

# ==============================================================================
# ACCESS GATE
# ==============================================================================

def get_user(user_id: int) -> User:
    row = database.get_user_by_id(user_id)
    if not row:
        raise RecordNotFound("User not found")
    return User.from_row(row)

def can_create_inspection(user: User) -> bool:
    return database.count_inspections_for_user(user.id) < user.inspection_limit

def ensure_can_create(user: User) -> None:
    if not can_create_inspection(user):
        logging.info(f"User {user.id} reached the inspection limit ({user.inspection_limit}).")
        raise QuotaExceeded(
            f"You have reached your inspection limit of {user.inspection_limit}. "
            "Please contact an administrator to increase it."
        )

def get_inspection(inspection_id: str) -> Inspection:
    """Lookup by id alone, for the public certificate and QR endpoints."""
    row = database.get_inspection_by_id(inspection_id)
    if not row:
        raise RecordNotFound("Inspection record not found")
    return Inspection.from_row(row)

def get_owned_inspection(inspection_id: str, user: User) -> Inspection:
    inspection = get_inspection(inspection_id)
    if inspection.user_id != user.id:
        logging.warning(f"User {user.id} denied access to inspection {inspection.id}.")
        raise AccessDenied("Access denied")
    return inspection

def format_inspection_count(user: User) -> str:
    count = database.count_inspections_for_user(user.id)
    if user.inspection_limit > 0:
        return f"{count} / {user.inspection_limit} inspections"
    return f"{count} inspections"

# ==============================================================================
# INSPECTIONS
# ==============================================================================

def list_inspections(user: User) -> list:
    return [Inspection.from_row(r) for r in database.get_inspections_for_user(user.id)]

def search_inspections(user: User, query: Optional[str]) -> list:
    if _is_blank(query):
        return list_inspections(user)
    return [Inspection.from_row(r) for r in database.search_inspections_for_user(user.id, query.strip())]

def overdue_inspections(user: User, today: Optional[date] = None) -> list:
    today = today or date.today()
    return [Inspection.from_row(r) for r in database.get_overdue_inspections_for_user(user.id, today.isoformat())]

def new_inspection_defaults(user: User) -> dict:
    ensure_can_create(user)
    today = date.today()
    return {
        "inspection_date": today.isoformat(),
        "reinspection_date": add_years(today, 1).isoformat(),
        "equipment_class": EquipmentClass.EARTHED.value,
        "visual_pass": False,
        "passed": False,
    }

def create_inspection(user: User, form: dict, upload: Optional[ImageUpload] = None) -> Inspection:
    # Quota first: nothing is read, stored or built for a refused request
    ensure_can_create(user)

    values, errors = build_inspection_values(form)
    processed = _process_image(upload, errors)
    if errors:
        raise RecordInvalid(errors)

    blob = storage.store_blob(processed.data, processed.filename, processed.content_type) if processed else None
    values["image_blob_id"] = blob.id if blob else None

    try:
        inspection_id = generate_inspection_id()
        while database.inspection_id_exists(inspection_id):
            inspection_id = generate_inspection_id()
        database.insert_inspection(inspection_id, user.id, _serialize_values(values), _now())
    except Exception:
        if blob:
            storage.purge_blob(blob.id)
        raise

    logging.info(f"Inspection {inspection_id} created by user {user.id} (serial {values['serial']}).")
    return get_inspection(inspection_id)

def update_inspection(inspection_id: str, user: User, form: dict,
                      upload: Optional[ImageUpload] = None, remove_image: bool = False) -> Inspection:
    inspection = get_owned_inspection(inspection_id, user)

    values, errors = build_inspection_values(form, existing=inspection)
    processed = _process_image(upload, errors)
    if errors:
        raise RecordInvalid(errors)

    old_blob_id = inspection.image_blob_id
    new_blob = storage.store_blob(processed.data, processed.filename, processed.content_type) if processed else None
    if new_blob:
        values["image_blob_id"] = new_blob.id
    elif remove_image:
        values["image_blob_id"] = None

    try:
        database.update_inspection(inspection.id, _serialize_values(values), _now())
    except Exception:
        if new_blob:
            storage.purge_blob(new_blob.id)
        raise

    if old_blob_id and values.get("image_blob_id") != old_blob_id:
        storage.purge_blob(old_blob_id)

    logging.info(f"Inspection {inspection.id} updated by user {user.id}.")
    return get_inspection(inspection.id)

def delete_inspection(inspection_id: str, user: User) -> None:
    inspection = get_owned_inspection(inspection_id, user)
    database.delete_inspection(inspection.id)
    if inspection.image_blob_id:
        storage.purge_blob(inspection.image_blob_id)
    logging.info(f"Inspection {inspection.id} deleted by user {user.id}.")

def load_inspection_image(inspection: Inspection) -> bytes:
    if not inspection.image:
        raise FileNotFoundError("No image attached")
    return storage.read_blob(inspection.image)

def generate_certificate(inspection_id: str):
    """Returns (inspection, pdf_bytes); records the access time."""
    inspection = get_inspection(inspection_id)
    qr_png = generate_qr_png(inspection.id)
    pdf_bytes = report_generator.create_certificate(inspection, qr_png, image_loader=load_inspection_image)
    database.touch_pdf_accessed(inspection.id, _now())
    return inspection, pdf_bytes

def generate_qr_code(inspection_id: str) -> bytes:
    inspection = get_inspection(inspection_id)
    return generate_qr_png(inspection.id)

def export_inspections_csv(user: User) -> str:
    inspections = list_inspections(user)
    logging.info(f"CSV export of {len(inspections)} inspections for user {user.id}.")
    return inspections_to_csv(inspections, config.BASE_URL)

def list_attached_images() -> list:
    return [dict(row) for row in database.get_attached_blobs()]

def list_orphaned_images() -> list:
    return [Blob.from_row(row) for row in database.get_orphaned_blobs()]

# ==============================================================================
# USERS
# ==============================================================================

def _validate_password(errors: dict, password, password_confirmation):
    if _is_blank(password):
        _add_error(errors, "password", MSG_BLANK)
    elif len(password) < config.MIN_PASSWORD_LENGTH:
        _add_error(errors, "password", f"is too short (minimum is {config.MIN_PASSWORD_LENGTH} characters)")
    if password_confirmation is not None and password_confirmation != password:
        _add_error(errors, "password_confirmation", "doesn't match Password")

def _validate_email(errors: dict, email, exclude_user_id=None):
    if _is_blank(email):
        _add_error(errors, "email", MSG_BLANK)
    elif not EMAIL_REGEXP.match(email.strip()):
        _add_error(errors, "email", "is invalid")
    elif database.email_taken(email.strip().lower(), exclude_user_id):
        _add_error(errors, "email", "has already been taken")

def _parse_inspection_limit(errors: dict, raw):
    try:
        limit = int(str(raw).strip())
    except (TypeError, ValueError):
        _add_error(errors, "inspection_limit", MSG_NOT_A_NUMBER)
        return None
    if limit < 0:
        _add_error(errors, "inspection_limit", "must be greater than or equal to 0")
        return None
    return limit

def signup(email: str, password: str, password_confirmation: Optional[str] = None) -> User:
    errors = {}
    _validate_email(errors, email)
    _validate_password(errors, password, password_confirmation)
    if errors:
        raise RecordInvalid(errors)

    user_id = database.create_user(
        email.strip().lower(),
        auth_manager.get_password_hash(password),
        config.DEFAULT_INSPECTION_LIMIT,
        _now(),
    )
    user = get_user(user_id)
    logging.info(f"User {user.id} created (admin={user.admin}).")
    return user

def authenticate(email: str, password: str) -> Optional[User]:
    row = database.get_user_by_email((email or "").lower())
    if not row or not auth_manager.verify_password(password or "", row['password_digest']):
        return None
    return User.from_row(row)

def list_users() -> list:
    return [User.from_row(row) for row in database.get_all_users()]

def update_user(user_id: int, form: dict, acting_user: User) -> User:
    """Admin edit: email, optional new password, inspection limit."""
    user = get_user(user_id)
    errors = {}
    fields = {}

    if "email" in form and form["email"] != user.email:
        _validate_email(errors, form["email"], exclude_user_id=user.id)
        fields["email"] = (form["email"] or "").strip().lower()
    if not _is_blank(form.get("password")):
        _validate_password(errors, form["password"], form.get("password_confirmation"))
        fields["password_digest"] = auth_manager.get_password_hash(form["password"])
    if "inspection_limit" in form and acting_user.admin:
        limit = _parse_inspection_limit(errors, form["inspection_limit"])
        if limit is not None:
            fields["inspection_limit"] = limit

    if errors:
        raise RecordInvalid(errors)
    database.update_user(user.id, fields, _now())
    logging.info(f"User {user.id} updated by user {acting_user.id}: {sorted(fields)}")
    return get_user(user.id)

def change_password(user_id: int, acting_user: User, current_password: str,
                    password: str, password_confirmation: Optional[str] = None) -> User:
    user = get_user(user_id)
    if acting_user.id != user.id:
        raise AccessDenied("You can only change your own password")
    if not auth_manager.verify_password(current_password or "", user.password_digest):
        raise RecordInvalid({"current_password": ["is incorrect"]})

    errors = {}
    _validate_password(errors, password, password_confirmation)
    if errors:
        raise RecordInvalid(errors)
    database.update_user(user.id, {"password_digest": auth_manager.get_password_hash(password)}, _now())
    logging.info(f"User {user.id} changed their password.")
    return get_user(user.id)

def delete_user(user_id: int, acting_user: User) -> None:
    user = get_user(user_id)
    if user.id == acting_user.id:
        raise AccessDenied("An administrator cannot delete their own account")

    blob_ids = database.get_image_blob_ids_for_user(user.id)
    database.delete_user(user.id)
    for blob_id in blob_ids:
        storage.purge_blob(blob_id)
    logging.info(f"User {user.id} deleted by user {acting_user.id} ({len(blob_ids)} images purged).")
