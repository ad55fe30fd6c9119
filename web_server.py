# web_server.py
import base64
import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Depends, Form, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel

import database
import report_generator
from patlog import auth_manager, config, services, storage
from patlog.csv_export import export_filename
from patlog.data_models import User
from patlog.image_processor import ImageDecodeError, variant
from patlog.qr_code import QrCodeError, certificate_url
from patlog.storage_cleanup import schedule_storage_cleanup, cancel_storage_cleanup

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

INSPECTION_FORM_FIELDS = set(database.INSPECTION_COLUMNS) - {"image_blob_id"}
USER_FORM_FIELDS = {"email", "password", "password_confirmation", "inspection_limit"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.migrate_database()
    if config.STORAGE_CLEANUP_ENABLED:
        schedule_storage_cleanup()
    yield
    cancel_storage_cleanup()

app = FastAPI(title=config.APP_NAME, version=config.VERSION, lifespan=lifespan)

# --- Response models ---
class Token(BaseModel):
    access_token: str
    token_type: str

class UserOut(BaseModel):
    id: int
    email: str
    admin: bool
    inspection_limit: int
    inspection_count: int
    created_at: Optional[datetime] = None

# ==============================================================================
# FLASH & REDIRECTS
# ==============================================================================

class FlashRedirect(Exception):
    """Aborts a request with a 303 redirect carrying a one-shot message."""
    def __init__(self, url: str, message: str, kind: str = "danger"):
        self.url = url
        self.message = message
        self.kind = kind
        super().__init__(message)

def encode_flash(kind: str, message: str) -> str:
    raw = json.dumps({"type": kind, "message": message}).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

def decode_flash(value: Optional[str]) -> Optional[dict]:
    if not value:
        return None
    try:
        padded = value + "=" * (-len(value) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except ValueError:
        return None
    return data if isinstance(data, dict) else None

def redirect(url: str, message: Optional[str] = None, kind: str = "success") -> RedirectResponse:
    response = RedirectResponse(url, status_code=303)
    if message:
        response.set_cookie(config.FLASH_COOKIE, encode_flash(kind, message),
                            max_age=60, httponly=True, samesite="lax")
    return response

def consume_flash(request: Request, response: Response) -> Optional[dict]:
    flash = decode_flash(request.cookies.get(config.FLASH_COOKIE))
    if config.FLASH_COOKIE in request.cookies:
        response.delete_cookie(config.FLASH_COOKIE)
    return flash

def _set_session(response: Response, token: str) -> None:
    response.set_cookie(config.SESSION_COOKIE, token, httponly=True, samesite="lax",
                        max_age=config.ACCESS_TOKEN_EXPIRE_MINUTES * 60)

def _safe_filename(text: str) -> str:
    return re.sub(r'[^A-Za-z0-9._-]', '_', text or "") or "inspection"

def _certificate_disposition(serial: str) -> str:
    """ASCII filename plus an RFC 5987 filename* carrying the serial as typed."""
    fallback = f"PAT_Certificate_{_safe_filename(serial)}.pdf"
    name = re.sub(r'[\x00-\x1f\x7f/\\]', '_', serial or "") or "inspection"
    encoded = quote(f"PAT_Certificate_{name}.pdf", safe="")
    return f'inline; filename="{fallback}"; filename*=UTF-8\'\'{encoded}'

# ==============================================================================
# EXCEPTION HANDLERS
# ==============================================================================

@app.exception_handler(FlashRedirect)
def flash_redirect_handler(request: Request, exc: FlashRedirect):
    return redirect(exc.url, exc.message, exc.kind)

@app.exception_handler(services.RecordInvalid)
def record_invalid_handler(request: Request, exc: services.RecordInvalid):
    return JSONResponse(status_code=422, content={"errors": exc.errors})

@app.exception_handler(services.RecordNotFound)
def record_not_found_handler(request: Request, exc: services.RecordNotFound):
    return redirect("/inspections", "Inspection record not found", "danger")

@app.exception_handler(services.AccessDenied)
def access_denied_handler(request: Request, exc: services.AccessDenied):
    return redirect("/inspections", str(exc), "danger")

@app.exception_handler(services.QuotaExceeded)
def quota_exceeded_handler(request: Request, exc: services.QuotaExceeded):
    return redirect("/inspections", str(exc), "danger")

@app.exception_handler(report_generator.CertificateError)
@app.exception_handler(QrCodeError)
def certificate_error_handler(request: Request, exc: Exception):
    logging.error(f"Certificate generation failed on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "The certificate could not be generated."})

# --- Auth dependencies ---
def get_optional_user(request: Request, token: Optional[str] = Depends(oauth2_scheme)) -> Optional[User]:
    user_id = auth_manager.decode_session_token(token or request.cookies.get(config.SESSION_COOKIE))
    if user_id is None:
        return None
    row = database.get_user_by_id(user_id)
    return User.from_row(row) if row else None

def get_current_user(user: Optional[User] = Depends(get_optional_user)) -> User:
    if user is None:
        raise FlashRedirect("/login", "Please log in to access this page")
    return user

def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.admin:
        logging.warning(f"User {user.id} attempted an admin-only operation.")
        raise FlashRedirect("/", "You are not authorized to access this page")
    return user

# ==============================================================================
# FORM HELPERS
# ==============================================================================

async def _read_inspection_form(request: Request):
    form = await request.form()
    fields = {k: v for k, v in form.items() if k in INSPECTION_FORM_FIELDS and isinstance(v, str)}
    upload = form.get("image")
    image = None
    # Browsers send an empty part when no file was chosen
    if upload is not None and not isinstance(upload, str) and upload.filename:
        data = await upload.read(config.MAX_IMAGE_BYTES + 1)
        image = services.ImageUpload(data=data, content_type=upload.content_type, filename=upload.filename)
    remove_image = bool(services.to_bool(form.get("remove_image")))
    return fields, image, remove_image

async def _read_fields(request: Request, allowed: set) -> dict:
    form = await request.form()
    return {k: v for k, v in form.items() if k in allowed and isinstance(v, str)}

def _inspection_payload(inspection) -> dict:
    data = inspection.to_dict()
    data["certificate_url"] = certificate_url(inspection.id)
    data["qr_code_url"] = f"/inspections/{inspection.id}/qr_code"
    if inspection.image:
        data["image"]["url"] = f"/blobs/{inspection.image.key}"
    return data

# ==============================================================================
# HOME & INSPECTIONS
# ==============================================================================

@app.get("/")
def home(request: Request, response: Response, current_user: User = Depends(get_current_user)):
    return {
        "app": config.APP_NAME,
        "user": current_user.to_public_dict(),
        "inspection_count": services.format_inspection_count(current_user),
        "can_create_inspection": services.can_create_inspection(current_user),
        "flash": consume_flash(request, response),
    }

@app.get("/inspections")
def list_inspections(request: Request, response: Response, current_user: User = Depends(get_current_user)):
    inspections = services.list_inspections(current_user)
    return {
        "inspections": [_inspection_payload(i) for i in inspections],
        "inspection_count": services.format_inspection_count(current_user),
        "can_create_inspection": services.can_create_inspection(current_user),
        "flash": consume_flash(request, response),
    }

@app.get("/inspections.csv")
def export_inspections(current_user: User = Depends(get_current_user)):
    csv_text = services.export_inspections_csv(current_user)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
    )

@app.get("/inspections/new")
def new_inspection(current_user: User = Depends(get_current_user)):
    return {"inspection": services.new_inspection_defaults(current_user)}

@app.post("/inspections")
async def create_inspection(request: Request, current_user: User = Depends(get_current_user)):
    # Refuse before the request body is parsed
    await run_in_threadpool(services.ensure_can_create, current_user)
    fields, image, _ = await _read_inspection_form(request)
    inspection = await run_in_threadpool(services.create_inspection, current_user, fields, image)
    return redirect(f"/inspections/{inspection.id}", "Inspection record created successfully!")

@app.get("/inspections/search")
def search_inspections(query: Optional[str] = None, current_user: User = Depends(get_current_user)):
    inspections = services.search_inspections(current_user, query)
    return {"query": query or "", "inspections": [_inspection_payload(i) for i in inspections]}

@app.get("/inspections/overdue")
def overdue_inspections(current_user: User = Depends(get_current_user)):
    inspections = services.overdue_inspections(current_user)
    return {"inspections": [_inspection_payload(i) for i in inspections]}

@app.get("/inspections/{inspection_id}")
def show_inspection(inspection_id: str, current_user: User = Depends(get_current_user)):
    inspection = services.get_owned_inspection(inspection_id, current_user)
    return {"inspection": _inspection_payload(inspection)}

@app.get("/inspections/{inspection_id}/edit")
def edit_inspection(inspection_id: str, current_user: User = Depends(get_current_user)):
    inspection = services.get_owned_inspection(inspection_id, current_user)
    return {"inspection": _inspection_payload(inspection)}

@app.patch("/inspections/{inspection_id}")
async def update_inspection(inspection_id: str, request: Request, current_user: User = Depends(get_current_user)):
    await run_in_threadpool(services.get_owned_inspection, inspection_id, current_user)
    fields, image, remove_image = await _read_inspection_form(request)
    inspection = await run_in_threadpool(
        services.update_inspection, inspection_id, current_user, fields, image, remove_image
    )
    return redirect(f"/inspections/{inspection.id}", "Inspection record updated")

@app.delete("/inspections/{inspection_id}")
def delete_inspection(inspection_id: str, current_user: User = Depends(get_current_user)):
    services.delete_inspection(inspection_id, current_user)
    return redirect("/inspections", "Inspection record deleted")

# --- Certificate & QR (public by id) ---

def _certificate_response(inspection_id: str) -> Response:
    inspection, pdf_bytes = services.generate_certificate(inspection_id)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": _certificate_disposition(inspection.serial)},
    )

@app.get("/inspections/{inspection_id}/certificate")
def inspection_certificate(inspection_id: str):
    return _certificate_response(inspection_id)

@app.get("/c/{inspection_id}")
@app.get("/C/{inspection_id}")
def short_certificate(inspection_id: str):
    return _certificate_response(inspection_id)

@app.get("/inspections/{inspection_id}/qr_code", responses={200: {"content": {"image/png": {}}}})
def inspection_qr_code(inspection_id: str):
    png = services.generate_qr_code(inspection_id)
    return Response(
        content=png,
        media_type="image/png",
        headers={"Content-Disposition": f'inline; filename="PAT_QR_{inspection_id.lower()}.png"'},
    )

# --- Stored images ---

@app.get("/blobs/{key}", responses={200: {"content": {"image/jpeg": {}}}})
def get_blob(key: str, size: Optional[str] = None):
    blob = storage.get_blob(key)
    if not blob:
        raise HTTPException(status_code=404, detail="Image not found.")
    try:
        data = storage.read_blob(blob)
    except FileNotFoundError:
        logging.error(f"Blob {blob.key} has no file on disk.")
        raise HTTPException(status_code=404, detail="Image not found.")

    if size:
        try:
            data = variant(data, size)
        except ValueError as e:
            if isinstance(e, ImageDecodeError):
                logging.error(f"Stored blob {blob.key} could not be decoded: {e}")
                raise HTTPException(status_code=500, detail="Image could not be processed.")
            raise HTTPException(status_code=400, detail="Unknown image size.")
        return Response(content=data, media_type="image/jpeg")
    return Response(content=data, media_type=blob.content_type)

# ==============================================================================
# SESSIONS & SIGNUP
# ==============================================================================

@app.get("/login")
def login_page(request: Request, response: Response):
    return {"fields": ["email", "password"], "flash": consume_flash(request, response)}

@app.post("/login")
def login(email: str = Form(""), password: str = Form("")):
    user = services.authenticate(email, password)
    if not user:
        logging.info(f"Failed login for '{email}'.")
        return JSONResponse(status_code=401, content={"detail": "Invalid email/password combination"})
    response = redirect("/", "Logged in successfully")
    _set_session(response, auth_manager.create_session_token(user.id))
    logging.info(f"User {user.id} logged in.")
    return response

@app.delete("/logout")
def logout():
    response = redirect("/login", "Logged out")
    response.delete_cookie(config.SESSION_COOKIE)
    return response

# --- Bearer token ---
@app.post("/token", response_model=Token)
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends()):
    user = services.authenticate(form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email/password combination",
                            headers={"WWW-Authenticate": "Bearer"})
    return {"access_token": auth_manager.create_session_token(user.id), "token_type": "bearer"}

@app.get("/signup")
def signup_page():
    return {"fields": ["email", "password", "password_confirmation"]}

@app.post("/signup")
async def signup(request: Request):
    fields = await _read_fields(request, USER_FORM_FIELDS)
    user = await run_in_threadpool(
        services.signup, fields.get("email"), fields.get("password"), fields.get("password_confirmation")
    )
    response = redirect("/", "Account created")
    _set_session(response, auth_manager.create_session_token(user.id))
    return response

# ==============================================================================
# USERS (admin)
# ==============================================================================

@app.get("/users", response_model=List[UserOut])
def read_users(current_user: User = Depends(require_admin)):
    return [u.to_public_dict() for u in services.list_users()]

@app.get("/users/{user_id}")
def edit_user(user_id: int, current_user: User = Depends(require_admin)):
    try:
        return {"user": services.get_user(user_id).to_public_dict()}
    except services.RecordNotFound:
        raise FlashRedirect("/users", "User not found")

@app.patch("/users/{user_id}")
async def update_user(user_id: int, request: Request, current_user: User = Depends(require_admin)):
    fields = await _read_fields(request, USER_FORM_FIELDS)
    try:
        await run_in_threadpool(services.update_user, user_id, fields, current_user)
    except services.RecordNotFound:
        raise FlashRedirect("/users", "User not found")
    return redirect("/users", "User updated")

@app.delete("/users/{user_id}")
def delete_user(user_id: int, current_user: User = Depends(require_admin)):
    try:
        services.delete_user(user_id, current_user)
    except services.RecordNotFound:
        raise FlashRedirect("/users", "User not found")
    except services.AccessDenied as e:
        raise FlashRedirect("/users", str(e))
    return redirect("/users", "User deleted")

@app.post("/users/{user_id}/impersonate")
def impersonate_user(user_id: int, current_user: User = Depends(require_admin)):
    try:
        target = services.get_user(user_id)
    except services.RecordNotFound:
        raise FlashRedirect("/users", "User not found")
    logging.warning(f"Admin {current_user.id} is impersonating user {target.id}.")
    response = redirect("/", f"Now logged in as {target.email}")
    _set_session(response, auth_manager.create_session_token(target.id, impersonator_id=current_user.id))
    return response

@app.get("/users/{user_id}/change_password")
def change_password_page(user_id: int, current_user: User = Depends(get_current_user)):
    if current_user.id != user_id:
        raise FlashRedirect("/", "You can only change your own password")
    return {"fields": ["current_password", "password", "password_confirmation"]}

@app.patch("/users/{user_id}/update_password")
async def update_password(user_id: int, request: Request, current_user: User = Depends(get_current_user)):
    if current_user.id != user_id:
        raise FlashRedirect("/", "You can only change your own password")
    fields = await _read_fields(request, {"current_password", "password", "password_confirmation"})
    await run_in_threadpool(
        services.change_password, user_id, current_user, fields.get("current_password"),
        fields.get("password"), fields.get("password_confirmation"),
    )
    return redirect("/", "Password updated")

# --- Images (admin) ---

@app.get("/images/all")
def all_images(current_user: User = Depends(require_admin)):
    return {"images": services.list_attached_images()}

@app.get("/images/orphaned")
def orphaned_images(current_user: User = Depends(require_admin)):
    return {"images": services.list_orphaned_images()}
