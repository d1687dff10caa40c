from .admin import AdminClient
from .inventory import InventoryReader, normalize_vehicle
from .schema import Casing, EditSession, ImageField, SchemaProfile, build_payload, detect_schema

__all__ = [
    "AdminClient",
    "Casing",
    "EditSession",
    "ImageField",
    "InventoryReader",
    "SchemaProfile",
    "build_payload",
    "detect_schema",
    "normalize_vehicle",
]
