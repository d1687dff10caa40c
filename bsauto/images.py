"""Image list representations.

Two directions live here. The store side (``ImageRef``, ``encode_images``,
``decode_images``) owns the ``images_json`` column format. The read side
(``normalize_images``) flattens whatever a row carries into display URLs.
"""
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

PLACEHOLDER_URL = (
    "https://res.cloudinary.com/dglr2nch4/image/upload/v1765778518/"
    "icons8-image-not-available-96_vgxpyr.png"
)
UPLOADS_ROOT = "/uploads/"
EXTERNAL_HOSTS = ("cloudinary.com",)

_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:")
_CLOUDINARY_ID = re.compile(r"/upload/(?:v\d+/)?(.+?)\.[^./]+$")


@dataclass(frozen=True)
class ImageRef:
    url: str
    public_id: str | None = None

    def as_dict(self) -> dict:
        return {"url": self.url, "publicId": self.public_id}


def public_id_from_url(url: str | None) -> str | None:
    """Recover a Cloudinary public id from a delivery URL, if it is one."""
    if not url or "cloudinary.com" not in url:
        return None
    m = _CLOUDINARY_ID.search(url.split("?", 1)[0])
    return m.group(1) if m else None


def encode_images(images: Iterable[ImageRef]) -> str:
    return json.dumps([img.as_dict() for img in images])


def decode_images(value: str | None) -> list[ImageRef]:
    """Read an ``images_json`` column. Legacy rows holding bare URL strings are upgraded."""
    try:
        parsed = json.loads(value or "[]")
    except (TypeError, ValueError):
        return []
    if not isinstance(parsed, list):
        return []
    out = []
    for item in parsed:
        if isinstance(item, dict) and item.get("url"):
            out.append(ImageRef(item["url"], item.get("publicId") or item.get("public_id")))
        elif isinstance(item, str) and item.strip():
            url = item.strip()
            out.append(ImageRef(url, public_id_from_url(url)))
    return out


def public_ids(images: Iterable[ImageRef]) -> list[str]:
    return [img.public_id for img in images if img.public_id]


# -------- read side ----------

class RawKind(Enum):
    LIST = "list"
    JSON_ENCODED = "json"
    LITERAL = "literal"
    OBJECT = "object"
    ABSENT = "absent"


def classify(raw: Any) -> RawKind:
    if isinstance(raw, (list, tuple)):
        return RawKind.LIST
    if isinstance(raw, dict):
        return RawKind.OBJECT
    if isinstance(raw, str):
        if not raw.strip():
            return RawKind.ABSENT
        try:
            json.loads(raw)
        except ValueError:
            return RawKind.LITERAL
        return RawKind.JSON_ENCODED
    return RawKind.ABSENT


def _candidates(raw: Any) -> list:
    kind = classify(raw)
    if kind is RawKind.LIST:
        return list(raw)
    if kind is RawKind.OBJECT:
        return [raw]
    if kind is RawKind.LITERAL:
        return [raw.strip()]
    if kind is RawKind.JSON_ENCODED:
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, list) else [parsed]
    return []


def display_url(value: str) -> str:
    """Bare filenames refer to locally hosted uploads."""
    s = value.strip()
    if not s or _SCHEME.match(s) or s.startswith("/"):
        return s
    if any(host in s for host in EXTERNAL_HOSTS):
        return s
    return UPLOADS_ROOT + s


def _extract(item: Any) -> str:
    if isinstance(item, str):
        return display_url(item)
    if isinstance(item, dict):
        url = item.get("url") or item.get("secure_url")
        return display_url(url) if isinstance(url, str) else ""
    return ""


def normalize_images(raw: Any) -> list[str]:
    """Flatten any supported image representation into ordered display URLs."""
    return [url for url in (_extract(item) for item in _candidates(raw)) if url]


def primary_image(urls: list[str]) -> str:
    return urls[0] if urls else PLACEHOLDER_URL
