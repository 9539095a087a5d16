"""Type mapper converting typed table rows into Cosmos DB documents and back."""

import base64
import json
import logging
import math
import struct
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import MappingError
from ..models.record import (
    SYSTEM_PROPERTIES,
    PreciseTimestamp,
    PropertyType,
    SourceRecord,
    TargetDocument,
    TypedValue,
)

logger = logging.getLogger(__name__)

METADATA_PROPERTY = "_SagaMigration-Metadata"
SCHEMA_VERSION = "1.0.0"

# Properties the target store adds to every document it returns.
STORE_SYSTEM_PROPERTIES = frozenset({"_rid", "_self", "_etag", "_attachments", "_ts"})

INT32_MIN, INT32_MAX = -(2 ** 31), 2 ** 31 - 1
INT64_MIN, INT64_MAX = -(2 ** 63), 2 ** 63 - 1
# Integers beyond this lose precision in JavaScript based readers of the document.
JSON_SAFE_INTEGER = 2 ** 53

# (from, to) pairs accepted by type overrides
_ALLOWED_OVERRIDES = {
    (PropertyType.DOUBLE, PropertyType.FLOAT32),
    (PropertyType.INT32, PropertyType.FLOAT32),
    (PropertyType.INT32, PropertyType.INT64),
    (PropertyType.INT32, PropertyType.DOUBLE),
    (PropertyType.STRING, PropertyType.DECIMAL),
    (PropertyType.INT32, PropertyType.DECIMAL),
    (PropertyType.INT64, PropertyType.DECIMAL),
    (PropertyType.DOUBLE, PropertyType.DECIMAL),
    (PropertyType.STRING, PropertyType.ENUM),
    (PropertyType.INT32, PropertyType.ENUM),
    (PropertyType.INT64, PropertyType.ENUM),
    (PropertyType.STRING, PropertyType.GUID),
    (PropertyType.STRING, PropertyType.DATETIME),
}


def to_float32(value: float) -> float:
    """Round a float to the nearest IEEE-754 single precision value."""
    return struct.unpack("<f", struct.pack("<f", value))[0]


def shortest_float32(value: float) -> float:
    """Shortest decimal that reads back as the same single precision value."""
    narrowed = to_float32(value)
    for precision in range(1, 10):
        candidate = float(f"{narrowed:.{precision}g}")
        if to_float32(candidate) == narrowed:
            return candidate
    return narrowed


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def _parse_exact_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value) or Decimal(repr(value)) != Decimal(text):
        raise ValueError(f"{text} does not survive conversion to a double")
    return value


def _reject_duplicate_keys(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise ValueError(f"duplicate key {key!r}")
        result[key] = value
    return result


def decode_composite(text: str) -> Optional[Any]:
    """
    Decode a string holding a serialized list or object.

    Returns None unless the whole string parses as strict JSON *and* the
    result is an array or object. Strings that only resemble JSON, that
    hold a JSON scalar, or that repeat an object key are not composites.
    """
    try:
        value = json.loads(
            text,
            parse_constant=_reject_constant,
            parse_float=_parse_exact_float,
            object_pairs_hook=_reject_duplicate_keys,
        )
    except (ValueError, RecursionError):
        return None
    if isinstance(value, (list, dict)):
        return value
    return None


def document_state(body: Dict[str, Any], partition_key_property: str = "id") -> Dict[str, Any]:
    """Business fields of a stored document, without ids and metadata."""
    return {
        name: value
        for name, value in body.items()
        if name not in STORE_SYSTEM_PROPERTIES
        and name not in ("id", partition_key_property, METADATA_PROPERTY)
    }


def document_body(
    document_id: str,
    state: Dict[str, Any],
    metadata: Dict[str, Any],
    partition_key_property: str = "id"
) -> Dict[str, Any]:
    """Assemble a document from business fields and migration metadata."""
    body = dict(state)
    body["id"] = document_id
    body[partition_key_property] = document_id
    body[METADATA_PROPERTY] = metadata
    return body


class TypeMapper:
    """
    Maps table rows to JSON documents field by field.

    Every exported field is tagged with its source type in the document
    metadata so that 32/64-bit integers, single/double floats, decimals,
    binary values and timestamps can be told apart and read back exactly.
    """

    def __init__(
        self,
        type_overrides: Optional[Dict[str, str]] = None,
        enum_members: Optional[Dict[str, List[str]]] = None,
        excluded_properties: Optional[Iterable[str]] = None,
        partition_key_property: str = "id"
    ):
        """
        Initialize the type mapper.

        Args:
            type_overrides: property -> type to reinterpret the stored value as
            enum_members: property -> enum member names indexed by ordinal
            excluded_properties: properties that are never exported
            partition_key_property: document property holding the partition key
        """
        self.type_overrides = {
            name: PropertyType(tag) for name, tag in (type_overrides or {}).items()
        }
        self.enum_members = dict(enum_members or {})
        self.excluded_properties = set(excluded_properties or ())
        self.partition_key_property = partition_key_property
        self._mappers = self._register_builtin_mappers()
        self._readers = self._register_builtin_readers()

    def _register_builtin_mappers(self) -> Dict[PropertyType, Callable]:
        return {
            PropertyType.STRING: self._map_string,
            PropertyType.INT32: self._map_int32,
            PropertyType.INT64: self._map_int64,
            PropertyType.DOUBLE: self._map_double,
            PropertyType.FLOAT32: self._map_float32,
            PropertyType.BOOLEAN: self._map_boolean,
            PropertyType.BINARY: self._map_binary,
            PropertyType.DATETIME: self._map_datetime,
            PropertyType.GUID: self._map_guid,
            PropertyType.DECIMAL: self._map_decimal,
            PropertyType.ENUM: self._map_enum,
            PropertyType.JSON: self._map_json,
        }

    def _register_builtin_readers(self) -> Dict[PropertyType, Callable]:
        return {
            PropertyType.STRING: str,
            PropertyType.INT32: int,
            PropertyType.INT64: int,
            PropertyType.DOUBLE: float,
            PropertyType.FLOAT32: lambda v: to_float32(float(v)),
            PropertyType.BOOLEAN: bool,
            PropertyType.BINARY: lambda v: base64.b64decode(v, validate=True),
            PropertyType.DATETIME: PreciseTimestamp.parse,
            PropertyType.GUID: uuid.UUID,
            PropertyType.DECIMAL: Decimal,
            PropertyType.ENUM: str,
            PropertyType.JSON: lambda v: v,
        }

    def is_business_property(self, name: str) -> bool:
        return not (
            name in SYSTEM_PROPERTIES
            or name in self.excluded_properties
            or name.startswith("odata.")
        )

    def to_document(
        self,
        record: SourceRecord,
        document_id: str,
        type_full_name: str,
        key_property: str
    ) -> TargetDocument:
        """
        Map a source record to a target document.

        Fields that cannot be represented are left out of the body and
        reported on ``TargetDocument.errors``; the rest of the record is
        still mapped so the caller can decide what to do.
        """
        reserved = {"id", self.partition_key_property, METADATA_PROPERTY}
        body: Dict[str, Any] = {}
        field_types: Dict[str, str] = {}
        errors: List[MappingError] = []
        for error in record.errors:
            error.record_id = document_id
            errors.append(error)

        for name, typed in record.properties.items():
            if not self.is_business_property(name):
                continue

            try:
                if name in reserved:
                    raise MappingError("property name is reserved in the target document")
                value, tag = self.map_value(name, typed)
                body[name] = value
                field_types[name] = tag.value

            except MappingError as e:
                e.field = e.field or name
                e.record_id = document_id
                errors.append(e)
                logger.warning(f"Cannot map {name} of {document_id}: {e.message}")

        metadata = {
            "SchemaVersion": SCHEMA_VERSION,
            "TypeFullName": type_full_name,
            "KeyProperty": key_property,
            "SourcePartitionKey": record.partition_key,
            "SourceRowKey": record.row_key,
            "FieldTypes": field_types,
        }

        return TargetDocument(
            id=document_id,
            partition_key=document_id,
            body=document_body(document_id, body, metadata, self.partition_key_property),
            field_types=field_types,
            errors=errors,
            source_ref=record.source_ref,
        )

    def map_value(self, name: str, typed: TypedValue) -> Tuple[Any, PropertyType]:
        """Map one property value, returning the JSON value and its type tag."""
        typed = self.apply_override(name, typed)

        if typed.value is None:
            return None, typed.type

        mapper = self._mappers.get(typed.type)
        if not mapper:
            raise MappingError(f"unsupported property type {typed.type}", field=name)

        try:
            return mapper(name, typed.value)
        except MappingError:
            raise
        except (ValueError, TypeError, OverflowError, InvalidOperation, struct.error) as e:
            raise MappingError(f"{typed.type.value} value {typed.value!r} is invalid: {e}", field=name)

    def from_document(self, body: Dict[str, Any]) -> Dict[str, TypedValue]:
        """
        Read the typed business fields back out of a document body.

        Fields without a type tag (written by the live application rather
        than by the exporter) are typed from their JSON representation.
        """
        field_types = body.get(METADATA_PROPERTY, {}).get("FieldTypes", {})
        result = {}

        for name, value in document_state(body, self.partition_key_property).items():
            tag = field_types.get(name)
            prop_type = PropertyType(tag) if tag else self._infer_type(value)

            if value is None:
                result[name] = TypedValue(prop_type, None)
                continue

            try:
                result[name] = TypedValue(prop_type, self._readers[prop_type](value))
            except (ValueError, TypeError, InvalidOperation) as e:
                raise MappingError(f"stored {prop_type.value} value {value!r} is invalid: {e}", field=name)

        return result

    def _infer_type(self, value: Any) -> PropertyType:
        if isinstance(value, bool):
            return PropertyType.BOOLEAN
        if isinstance(value, int):
            return PropertyType.INT32 if INT32_MIN <= value <= INT32_MAX else PropertyType.INT64
        if isinstance(value, float):
            return PropertyType.DOUBLE
        if isinstance(value, (list, dict)):
            return PropertyType.JSON
        return PropertyType.STRING

    def apply_override(self, name: str, typed: TypedValue) -> TypedValue:
        """Reinterpret a stored value as its configured override type, if any."""
        target = self.type_overrides.get(name)
        if target is None or target == typed.type or typed.value is None:
            return typed

        if (typed.type, target) not in _ALLOWED_OVERRIDES:
            raise MappingError(f"cannot reinterpret {typed.type.value} as {target.value}", field=name)

        value = typed.value
        if target == PropertyType.DECIMAL and isinstance(value, float):
            # The shortest repr is the value the writer originally meant.
            value = repr(value)
        return TypedValue(target, value)

    # Built-in mappers

    def _map_string(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        if not isinstance(value, str):
            raise MappingError(f"expected a string, got {type(value).__name__}", field=name)
        composite = decode_composite(value)
        if composite is not None:
            return composite, PropertyType.JSON
        return value, PropertyType.STRING

    def _map_json(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        if isinstance(value, str):
            return self._map_string(name, value)
        json.dumps(value, allow_nan=False)
        return value, PropertyType.JSON

    def _map_int32(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        if isinstance(value, bool) or not isinstance(value, int):
            raise MappingError(f"expected an integer, got {type(value).__name__}", field=name)
        if not INT32_MIN <= value <= INT32_MAX:
            raise MappingError(f"{value} is outside the int32 range", field=name)
        return value, PropertyType.INT32

    def _map_int64(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        if isinstance(value, bool):
            raise MappingError("expected an integer, got bool", field=name)
        value = int(value)
        if not INT64_MIN <= value <= INT64_MAX:
            raise MappingError(f"{value} is outside the int64 range", field=name)
        if abs(value) > JSON_SAFE_INTEGER:
            return str(value), PropertyType.INT64
        return value, PropertyType.INT64

    def _map_double(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        value = float(value)
        if not math.isfinite(value):
            raise MappingError(f"{value} has no JSON representation", field=name)
        return value, PropertyType.DOUBLE

    def _map_float32(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        value = float(value)
        if not math.isfinite(value):
            raise MappingError(f"{value} has no JSON representation", field=name)
        return shortest_float32(value), PropertyType.FLOAT32

    def _map_boolean(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        if not isinstance(value, bool):
            raise MappingError(f"expected a boolean, got {type(value).__name__}", field=name)
        return value, PropertyType.BOOLEAN

    def _map_binary(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise MappingError(f"expected bytes, got {type(value).__name__}", field=name)
        return base64.b64encode(bytes(value)).decode("ascii"), PropertyType.BINARY

    def _map_datetime(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        if isinstance(value, PreciseTimestamp):
            timestamp = value
        elif isinstance(value, datetime):
            timestamp = PreciseTimestamp(value)
        else:
            timestamp = PreciseTimestamp.parse(str(value))
        return timestamp.isoformat(), PropertyType.DATETIME

    def _map_guid(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        if not isinstance(value, uuid.UUID):
            value = uuid.UUID(str(value))
        return str(value), PropertyType.GUID

    def _map_decimal(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        if isinstance(value, float):
            raise MappingError("decimals must not pass through a binary float", field=name)
        value = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        if not value.is_finite():
            raise MappingError(f"{value} has no exact representation", field=name)
        return str(value), PropertyType.DECIMAL

    def _map_enum(self, name: str, value: Any) -> Tuple[Any, PropertyType]:
        members = self.enum_members.get(name)

        if isinstance(value, Enum):
            symbol = value.name
        elif isinstance(value, int) and not isinstance(value, bool):
            if not members:
                raise MappingError(f"ordinal {value} without known enum members", field=name)
            if not 0 <= value < len(members):
                raise MappingError(f"ordinal {value} is not a member of {members}", field=name)
            symbol = members[value]
        elif isinstance(value, str):
            symbol = value
        else:
            raise MappingError(f"expected an enum member, got {type(value).__name__}", field=name)

        if members and symbol not in members:
            raise MappingError(f"{symbol!r} is not a member of {members}", field=name)
        return symbol, PropertyType.ENUM
