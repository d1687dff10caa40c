"""Shape-aware payload building for the admin client.

The client never assumes one row shape. It inspects the first row the read
API returns and afterwards only sends keys that row actually carried.
"""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..images import normalize_images

TEXT_FIELDS = (
    "make", "model", "trim", "exterior_color", "interior_color", "fuel_type",
    "transmission", "engine", "drivetrain", "description", "status",
)
NUMERIC_FIELDS = ("year", "price", "mileage")
IMAGE_KEYS = ("images_json", "imagesJson", "images", "image_url", "imageUrl")

SNAKE_SENTINELS = ("fuel_type", "exterior_color", "interior_color")
CAMEL_SENTINELS = ("fuelType", "exteriorColor", "interiorColor")


class Casing(Enum):
    SNAKE = "snake"
    CAMEL = "camel"
    UNKNOWN = "unknown"


class ImageField(Enum):
    JSON_ARRAY = "images_json"
    ARRAY = "images"
    SINGLE_URL = "image_url"
    NONE = "none"


def camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


def pick(row: dict, name: str):
    """Read a snake_case field from a row of either casing."""
    if name in row:
        return row[name]
    return row.get(camel(name))


def row_images(row: dict) -> list[str]:
    for key in IMAGE_KEYS:
        images = normalize_images(row.get(key))
        if images:
            return images
    return []


@dataclass(frozen=True)
class SchemaProfile:
    keys: frozenset | None
    casing: Casing = Casing.UNKNOWN
    image_field: ImageField = ImageField.NONE

    @classmethod
    def unknown(cls) -> "SchemaProfile":
        return cls(keys=None)

    @property
    def is_unknown(self) -> bool:
        return self.keys is None

    def key(self, name: str) -> str:
        return camel(name) if self.casing is Casing.CAMEL else name

    def accepts(self, key: str) -> bool:
        return self.is_unknown or key in self.keys


def detect_schema(row: dict | None) -> SchemaProfile:
    if not row:
        return SchemaProfile.unknown()
    keys = frozenset(row)
    if any(k in keys for k in SNAKE_SENTINELS):
        casing = Casing.SNAKE
    elif any(k in keys for k in CAMEL_SENTINELS):
        casing = Casing.CAMEL
    else:
        casing = Casing.UNKNOWN

    image_field = ImageField.NONE
    for candidate in (ImageField.JSON_ARRAY, ImageField.ARRAY, ImageField.SINGLE_URL):
        if candidate.value in keys or camel(candidate.value) in keys:
            image_field = candidate
            break
    return SchemaProfile(keys=keys, casing=casing, image_field=image_field)


def _as_int(value: Any) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return int(float(value))


def _as_text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _image_entry(profile: SchemaProfile, images: list[str]) -> tuple[str, Any] | None:
    if profile.is_unknown:
        return "images", list(images)
    kind = profile.image_field
    if kind is ImageField.NONE:
        return None
    key = kind.value if kind.value in profile.keys else camel(kind.value)
    if kind is ImageField.JSON_ARRAY:
        return key, json.dumps(list(images))
    if kind is ImageField.ARRAY:
        return key, list(images)
    return key, images[0] if images else ""


def build_payload(profile: SchemaProfile, draft: dict, include_images: bool = False) -> dict:
    """Build a write payload from a snake_case ``draft`` in the detected row shape."""
    payload = {}
    for name in NUMERIC_FIELDS + TEXT_FIELDS:
        if name not in draft:
            continue
        key = profile.key(name)
        if not profile.accepts(key):
            continue
        value = draft[name]
        payload[key] = _as_int(value) if name in NUMERIC_FIELDS else _as_text(value)
    if include_images:
        entry = _image_entry(profile, draft.get("images") or [])
        if entry is not None:
            payload[entry[0]] = entry[1]
    return payload


@dataclass
class EditSession:
    """Form state for one create or edit. Images are resent only once touched."""

    vehicle_id: int | None = None
    draft: dict = field(default_factory=dict)
    images_touched: bool = False

    @classmethod
    def from_row(cls, row: dict) -> "EditSession":
        """Start an edit from a row the read API returned, every field prefilled."""
        draft = {name: pick(row, name) for name in NUMERIC_FIELDS + TEXT_FIELDS}
        draft = {k: v for k, v in draft.items() if v is not None}
        draft["images"] = row_images(row)
        return cls(vehicle_id=row.get("id"), draft=draft)

    def set(self, name: str, value: Any):
        self.draft[name] = value

    def set_images(self, urls: list[str]):
        self.draft["images"] = list(urls)
        self.images_touched = True

    def payload(self, profile: SchemaProfile) -> dict:
        return build_payload(profile, self.draft, include_images=self.images_touched)
