# patlog/data_models.py
import enum
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Optional


class EquipmentClass(enum.IntEnum):
    EARTHED = 1
    DOUBLE_INSULATED = 2

    @property
    def label(self) -> str:
        return "Earthed" if self is EquipmentClass.EARTHED else "Double Insulated"


def _parse_date(value):
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])

def _parse_datetime(value):
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))

def _parse_bool(value):
    return None if value is None else bool(value)


@dataclass
class User:
    id: int
    email: str
    password_digest: str
    admin: bool = False
    inspection_limit: int = 10
    created_at: Optional[datetime] = None
    inspection_count: int = 0

    @classmethod
    def from_row(cls, row):
        data = dict(row)
        return cls(
            id=data['id'],
            email=data['email'],
            password_digest=data['password_digest'],
            admin=bool(data['admin']),
            inspection_limit=data['inspection_limit'],
            created_at=_parse_datetime(data.get('created_at')),
            inspection_count=data.get('inspection_count') or 0,
        )

    def to_public_dict(self) -> dict:
        """Everything except the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "admin": self.admin,
            "inspection_limit": self.inspection_limit,
            "inspection_count": self.inspection_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class Blob:
    id: int
    key: str
    filename: str
    content_type: str
    byte_size: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row):
        data = dict(row)
        return cls(
            id=data['id'],
            key=data['key'],
            filename=data['filename'],
            content_type=data['content_type'],
            byte_size=data['byte_size'],
            created_at=_parse_datetime(data.get('created_at')),
        )


@dataclass
class Inspection:
    id: str
    user_id: int
    inspection_date: Optional[date]
    reinspection_date: Optional[date]
    inspector: str
    serial: str
    description: str
    location: str
    equipment_class: int
    visual_pass: bool
    fuse_rating: float
    earth_ohms: float
    insulation_mohms: float
    leakage: float
    passed: bool
    comments: Optional[str] = None
    manufacturer: Optional[str] = None
    equipment_power: Optional[float] = None
    appliance_plug_check: Optional[bool] = None
    load_test: Optional[bool] = None
    rcd_trip_time: Optional[float] = None
    image_blob_id: Optional[int] = None
    last_pdf_accessed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    image: Optional[Blob] = field(default=None, compare=False)

    @property
    def equipment_class_label(self) -> str:
        try:
            return EquipmentClass(self.equipment_class).label
        except ValueError:
            return "Unknown"

    @property
    def has_image(self) -> bool:
        return self.image is not None

    @classmethod
    def from_row(cls, row):
        data = dict(row)
        inspection = cls(
            id=data['id'],
            user_id=data['user_id'],
            inspection_date=_parse_date(data.get('inspection_date')),
            reinspection_date=_parse_date(data.get('reinspection_date')),
            inspector=data['inspector'],
            serial=data['serial'],
            description=data['description'],
            location=data['location'],
            equipment_class=data['equipment_class'],
            visual_pass=bool(data['visual_pass']),
            fuse_rating=data['fuse_rating'],
            earth_ohms=data['earth_ohms'],
            insulation_mohms=data['insulation_mohms'],
            leakage=data['leakage'],
            passed=bool(data['passed']),
            comments=data.get('comments'),
            manufacturer=data.get('manufacturer'),
            equipment_power=data.get('equipment_power'),
            appliance_plug_check=_parse_bool(data.get('appliance_plug_check')),
            load_test=_parse_bool(data.get('load_test')),
            rcd_trip_time=data.get('rcd_trip_time'),
            image_blob_id=data.get('image_blob_id'),
            last_pdf_accessed_at=_parse_datetime(data.get('last_pdf_accessed_at')),
            created_at=_parse_datetime(data.get('created_at')),
            updated_at=_parse_datetime(data.get('updated_at')),
        )
        # Joined blob columns (see database._INSPECTION_SELECT)
        if data.get('blob_key'):
            inspection.image = Blob(
                id=data['image_blob_id'],
                key=data['blob_key'],
                filename=data['blob_filename'],
                content_type=data['blob_content_type'],
                byte_size=data['blob_byte_size'],
                created_at=_parse_datetime(data.get('blob_created_at')),
            )
        return inspection

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop('image', None)
        for key, value in list(data.items()):
            if isinstance(value, (date, datetime)):
                data[key] = value.isoformat()
        data['equipment_class_label'] = self.equipment_class_label
        data['image'] = {
            "key": self.image.key,
            "filename": self.image.filename,
            "content_type": self.image.content_type,
            "byte_size": self.image.byte_size,
        } if self.image else None
        return data
