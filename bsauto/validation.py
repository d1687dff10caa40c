import json
import re
from datetime import date
from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StringConstraints, ValidationError, field_validator

from .errors import PayloadTooLarge, SpamDetected, UnsupportedImageType, ValidationFailed
from .images import UPLOADS_ROOT, ImageRef

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp")
ALLOWED_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")
IMAGE_INPUT_FIELDS = ("images", "images_json", "image_url")

_TAG = re.compile(r"<[^>]*>")
_INT = re.compile(r"^[+-]?\d+$")
_PHONE = re.compile(r"^[\d\s()\-+.]+$")


def strip_tags(value: Any) -> Any:
    if isinstance(value, str):
        return _TAG.sub("", value).strip()
    if value is None:
        return ""
    return value


def blank_to_none(value: Any) -> Any:
    """Form posts send '' for untouched numeric inputs."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return None
        if _INT.match(value):
            return int(value)
        try:
            f = float(value)
        except ValueError:
            return value
        return int(f) if f.is_integer() else value
    return value


def _text(max_length: int):
    return Annotated[str, BeforeValidator(strip_tags), StringConstraints(max_length=max_length)]


OptionalInt = Annotated[int | None, BeforeValidator(blank_to_none)]


class VehicleFields(BaseModel):
    """Admin-editable vehicle fields. Anything outside this set is rejected."""

    model_config = ConfigDict(extra="forbid")

    year: OptionalInt = None
    make: _text(50) = ""
    model: _text(50) = ""
    trim: _text(50) = ""
    price: OptionalInt = Field(default=None, ge=0, le=10_000_000)
    mileage: OptionalInt = Field(default=None, ge=0, le=1_000_000)
    exterior_color: _text(50) = ""
    interior_color: _text(50) = ""
    fuel_type: _text(30) = ""
    transmission: _text(30) = ""
    engine: _text(50) = ""
    drivetrain: _text(30) = ""
    description: _text(5000) = ""
    status: Annotated[Literal["available", "sold", "pending"], BeforeValidator(lambda v: strip_tags(v) or "available")] = "available"
    # Externally hosted images; any of the three row spellings is accepted.
    image_url: Annotated[str, StringConstraints(max_length=2000)] | None = None
    images_json: str | None = None
    images: list | str | None = None

    @field_validator("year")
    @classmethod
    def _year_range(cls, v):
        if v is None:
            return v
        latest = date.today().year + 2
        if not 1900 <= v <= latest:
            raise ValueError(f"Year must be between 1900 and {latest}")
        return v

    def record(self) -> dict:
        """Column values for a full-record write (image inputs are handled separately)."""
        return self.model_dump(exclude=set(IMAGE_INPUT_FIELDS))


class ContactForm(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: _text(100)
    phone: _text(30)
    message: _text(2000)
    vehicle_id: Annotated[int | None, BeforeValidator(blank_to_none), Field(gt=0)] = Field(default=None, alias="vehicleId")
    vehicle_title: _text(200) = Field(default="", alias="vehicleTitle")
    website: str = ""  # honeypot

    @field_validator("name", "phone", "message")
    @classmethod
    def _required(cls, v, info):
        if not v:
            raise ValueError(f"{info.field_name.capitalize()} is required")
        return v

    @field_validator("phone")
    @classmethod
    def _phone_format(cls, v):
        if v and not _PHONE.match(v):
            raise ValueError("Invalid phone format")
        return v


def _details(exc: ValidationError) -> list[dict]:
    out = []
    for err in exc.errors():
        msg = err["msg"]
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        out.append({"field": ".".join(str(p) for p in err["loc"]), "message": msg})
    return out


def validate_vehicle_fields(data: dict) -> VehicleFields:
    try:
        return VehicleFields.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailed(_details(exc)) from exc


def validate_contact(data: dict) -> ContactForm:
    honeypot = data.get("website")
    if honeypot not in (None, ""):
        raise SpamDetected()
    try:
        return ContactForm.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailed(_details(exc)) from exc


def is_image_url(url: str) -> bool:
    """Absolute http(s) image URL, or a path under our own /uploads mount."""
    if url.startswith(UPLOADS_ROOT):
        return url.lower().endswith(ALLOWED_IMAGE_EXTENSIONS)
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    return parsed.path.lower().endswith(ALLOWED_IMAGE_EXTENSIONS)


def parse_external_images(value: str | list | None, field: str = "image_url") -> list[ImageRef]:
    """Parse an external-image input into image refs without deletion handles.

    Accepts a list or JSON array of URL strings or ``{url}`` objects, a JSON
    string, or a plain URL. Every URL must be absolute and point at a
    supported image type.
    """
    if value is None:
        return []
    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            parsed = json.loads(value)
        except ValueError:
            parsed = value.strip()
    else:
        parsed = value
    if isinstance(parsed, (str, dict)):
        parsed = [parsed]
    if not isinstance(parsed, list):
        raise ValidationFailed([{"field": field, "message": "Expected a URL or a list of URLs"}])
    urls, errors = [], []
    for i, item in enumerate(parsed):
        url = item.get("url") if isinstance(item, dict) else item
        if not isinstance(url, str) or not url.strip():
            continue
        url = url.strip()
        if not is_image_url(url):
            errors.append({"field": f"{field}.{i}", "message": "Must be an http(s) or /uploads/ URL ending in .jpg, .jpeg, .png or .webp"})
            continue
        urls.append(ImageRef(url))
    if errors:
        raise ValidationFailed(errors)
    return urls


def external_images(fields: dict) -> list[ImageRef]:
    """Collect external images from every accepted input spelling, keeping input order."""
    out, details = [], []
    for key in IMAGE_INPUT_FIELDS:
        try:
            out += parse_external_images(fields.get(key), field=key)
        except ValidationFailed as exc:
            details += exc.details
    if details:
        raise ValidationFailed(details)
    return out


def check_uploads(files: list, max_bytes: int, max_files: int):
    """Reject uploads before any of them leaves the process.

    ``files`` are ``(content_type, size)`` pairs.
    """
    if len(files) > max_files:
        raise ValidationFailed([{"field": "images", "message": f"At most {max_files} images per request"}])
    for content_type, size in files:
        if content_type not in ALLOWED_IMAGE_TYPES:
            raise UnsupportedImageType()
        if size > max_bytes:
            raise PayloadTooLarge(f"Image too large. Please upload under {max_bytes // (1024 * 1024)}MB per image.")
