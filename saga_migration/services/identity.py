"""
Derived saga identities.

The document id and partition key of a migrated saga are computed from
business data alone, so the exporter (file names), the importer (ids and
partition keys) and the runtime persister (lookups) all arrive at the same
value without sharing any state.
"""

import hashlib
import uuid
from decimal import Decimal

from ..errors import MappingError
from ..models.record import PropertyType, TypedValue


def _length_prefixed(text: str) -> bytes:
    data = text.encode("utf-8")
    return str(len(data)).encode("ascii") + b":" + data


def derive(type_full_name: str, key_property_name: str, key_value_as_string: str) -> str:
    """
    Derive the document id / partition key for one saga.

    Each input is length-prefixed before hashing so that no choice of
    separator characters inside the inputs can make two different triples
    collide on the same byte stream.

    Returns a 36 character lowercase hyphenated UUID string.
    """
    if not type_full_name or not key_property_name:
        raise ValueError("type_full_name and key_property_name are required")
    if key_value_as_string is None:
        raise ValueError("key_value_as_string is required")

    digest = hashlib.sha256()
    for part in (type_full_name, key_property_name, key_value_as_string):
        digest.update(_length_prefixed(part))

    return str(uuid.UUID(bytes=digest.digest()[:16]))


def key_value_to_string(value: TypedValue) -> str:
    """Render a correlation property value the way every component hashes it."""
    if value.value is None:
        raise MappingError("correlation property has no value")

    if value.type == PropertyType.GUID:
        return str(value.value if isinstance(value.value, uuid.UUID) else uuid.UUID(str(value.value)))
    if value.type == PropertyType.STRING:
        return value.value
    if value.type == PropertyType.ENUM:
        return getattr(value.value, "name", str(value.value))
    if value.type in (PropertyType.INT32, PropertyType.INT64):
        return str(int(value.value))
    if value.type == PropertyType.DECIMAL:
        return str(Decimal(value.value))
    if value.type == PropertyType.DATETIME:
        return value.value.isoformat()

    raise MappingError(f"{value.type.value} cannot be used as a correlation property")
