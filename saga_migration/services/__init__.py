"""Service layer for the migration application."""

from .identity import derive, key_value_to_string
from .type_mapper import TypeMapper, METADATA_PROPERTY, decode_composite

__all__ = [
    "derive",
    "key_value_to_string",
    "TypeMapper",
    "METADATA_PROPERTY",
    "decode_composite",
]
