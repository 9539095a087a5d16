"""Conversion between Table service OData JSON entities and typed records."""

import base64
import math
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..errors import MappingError
from ..models.record import PreciseTimestamp, PropertyType, SourceRecord, TypedValue

ANNOTATION_SUFFIX = "@odata.type"

EDM_TYPES = {
    "Edm.String": PropertyType.STRING,
    "Edm.Int32": PropertyType.INT32,
    "Edm.Int64": PropertyType.INT64,
    "Edm.Double": PropertyType.DOUBLE,
    "Edm.Boolean": PropertyType.BOOLEAN,
    "Edm.Binary": PropertyType.BINARY,
    "Edm.DateTime": PropertyType.DATETIME,
    "Edm.Guid": PropertyType.GUID,
}

_SPECIAL_DOUBLES = {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}


def _decode(prop_type: PropertyType, raw: Any) -> Any:
    if prop_type in (PropertyType.INT32, PropertyType.INT64):
        return int(raw)
    if prop_type == PropertyType.DOUBLE:
        if isinstance(raw, str):
            return _SPECIAL_DOUBLES[raw] if raw in _SPECIAL_DOUBLES else float(raw)
        return float(raw)
    if prop_type == PropertyType.BINARY:
        return base64.b64decode(raw, validate=True)
    if prop_type == PropertyType.DATETIME:
        return PreciseTimestamp.parse(raw)
    if prop_type == PropertyType.GUID:
        return uuid.UUID(raw)
    return raw


def _infer(raw: Any) -> PropertyType:
    if isinstance(raw, bool):
        return PropertyType.BOOLEAN
    if isinstance(raw, int):
        return PropertyType.INT32 if -(2 ** 31) <= raw < 2 ** 31 else PropertyType.INT64
    if isinstance(raw, float):
        return PropertyType.DOUBLE
    return PropertyType.STRING


def parse_entity(raw: Dict[str, Any], table: str) -> SourceRecord:
    """
    Parse one entity of a query response.

    Type annotations (``Name@odata.type``) win over the JSON type of the
    value. Properties that fail to decode are reported on the record
    instead of aborting the scan.
    """
    record = SourceRecord(
        table=table,
        partition_key=str(raw.get("PartitionKey", "")),
        row_key=str(raw.get("RowKey", "")),
        etag=raw.get("odata.etag"),
    )

    if raw.get("Timestamp"):
        record.timestamp = PreciseTimestamp.parse(raw["Timestamp"]).value

    for name, value in raw.items():
        if name.startswith("odata.") or ANNOTATION_SUFFIX in name:
            continue
        if name in ("PartitionKey", "RowKey", "Timestamp") or value is None:
            continue

        annotation = raw.get(f"{name}{ANNOTATION_SUFFIX}")
        try:
            if annotation is not None:
                if annotation not in EDM_TYPES:
                    raise MappingError(f"unsupported EDM type {annotation}", field=name)
                prop_type = EDM_TYPES[annotation]
            else:
                prop_type = _infer(value)
            record.properties[name] = TypedValue(prop_type, _decode(prop_type, value))

        except MappingError as e:
            record.errors.append(e)
        except (ValueError, TypeError) as e:
            record.errors.append(MappingError(f"cannot decode {value!r}: {e}", field=name))

    return record


def format_value(typed: TypedValue) -> Tuple[Any, Optional[str]]:
    """
    Encode a typed value the way the Table service returns it.

    Types the service has no native column for are stored the way the
    legacy saga persister stores them: single precision floats widened to
    doubles, decimals and enum members as strings.
    """
    value = typed.value
    prop_type = typed.type

    if prop_type == PropertyType.STRING:
        return value, None
    if prop_type == PropertyType.INT32:
        return int(value), None
    if prop_type == PropertyType.BOOLEAN:
        return bool(value), None
    if prop_type == PropertyType.INT64:
        return str(int(value)), "Edm.Int64"
    if prop_type in (PropertyType.DOUBLE, PropertyType.FLOAT32):
        value = float(value)
        if math.isnan(value):
            return "NaN", "Edm.Double"
        if math.isinf(value):
            return ("Infinity" if value > 0 else "-Infinity"), "Edm.Double"
        return value, "Edm.Double"
    if prop_type == PropertyType.BINARY:
        return base64.b64encode(bytes(value)).decode("ascii"), "Edm.Binary"
    if prop_type == PropertyType.DATETIME:
        if isinstance(value, datetime):
            value = PreciseTimestamp(value)
        return value.isoformat().replace("+00:00", "Z"), "Edm.DateTime"
    if prop_type == PropertyType.GUID:
        return str(value), "Edm.Guid"
    if prop_type == PropertyType.DECIMAL:
        return str(Decimal(value)), None
    if prop_type == PropertyType.ENUM:
        return value.name if isinstance(value, Enum) else value, None

    raise ValueError(f"{prop_type} has no table representation")


def format_entity(
    partition_key: str,
    row_key: str,
    properties: Dict[str, TypedValue],
    etag: Optional[str] = None,
    timestamp: Optional[PreciseTimestamp] = None
) -> Dict[str, Any]:
    """Build an OData JSON entity from typed properties."""
    entity: Dict[str, Any] = {"PartitionKey": partition_key, "RowKey": row_key}
    if etag:
        entity["odata.etag"] = etag
    if timestamp:
        entity["Timestamp"] = timestamp.isoformat().replace("+00:00", "Z")
        entity[f"Timestamp{ANNOTATION_SUFFIX}"] = "Edm.DateTime"

    for name, typed in properties.items():
        value, annotation = format_value(typed)
        entity[name] = value
        if annotation:
            entity[f"{name}{ANNOTATION_SUFFIX}"] = annotation

    return entity
