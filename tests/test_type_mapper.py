"""Tests for mapping typed table properties to document fields and back."""

import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from saga_migration.errors import MappingError
from saga_migration.models.record import PreciseTimestamp, PropertyType, SourceRecord, TypedValue
from saga_migration.services.type_mapper import (
    METADATA_PROPERTY,
    TypeMapper,
    decode_composite,
    shortest_float32,
    to_float32,
)


def make_record(**properties) -> SourceRecord:
    return SourceRecord(table="Sagas", partition_key="pk", row_key="", properties=properties)


@pytest.fixture
def mapper():
    return TypeMapper()


@pytest.mark.parametrize(
    "typed",
    [
        TypedValue(PropertyType.STRING, "plain text"),
        TypedValue(PropertyType.INT32, -(2 ** 31)),
        TypedValue(PropertyType.INT64, 2 ** 62 + 1),
        TypedValue(PropertyType.INT64, -5),
        TypedValue(PropertyType.DOUBLE, 0.1),
        TypedValue(PropertyType.DOUBLE, 1e308),
        TypedValue(PropertyType.FLOAT32, to_float32(1.24)),
        TypedValue(PropertyType.BOOLEAN, False),
        TypedValue(PropertyType.BINARY, bytes(range(256))),
        TypedValue(PropertyType.DATETIME, PreciseTimestamp.parse("2020-09-21T05:05:05.0000005Z")),
        TypedValue(PropertyType.DATETIME, PreciseTimestamp.parse("1999-12-31T23:59:59.123456789+00:00")),
        TypedValue(PropertyType.GUID, uuid.UUID("0f8fad5b-d9cb-469f-a165-70867728950e")),
        TypedValue(PropertyType.DECIMAL, Decimal("79228162514264337593543950335")),
        TypedValue(PropertyType.DECIMAL, Decimal("1.2400")),
        TypedValue(PropertyType.ENUM, "Failed"),
    ],
    ids=lambda typed: typed.type.value,
)
def test_scalars_round_trip_exactly(mapper, typed):
    document = mapper.to_document(make_record(Field=typed), "doc-1", "T", "Id")
    assert document.is_valid

    read_back = mapper.from_document(document.body)["Field"]
    assert read_back.type == typed.type
    assert read_back.value == typed.value


def test_decimal_keeps_its_exact_text(mapper):
    value, tag = mapper.map_value("Amount", TypedValue(PropertyType.DECIMAL, Decimal("1.2400")))
    assert (value, tag) == ("1.2400", PropertyType.DECIMAL)


def test_float32_is_written_as_its_shortest_decimal(mapper):
    value, tag = mapper.map_value("F", TypedValue(PropertyType.FLOAT32, to_float32(1.24)))
    assert value == 1.24
    assert tag == PropertyType.FLOAT32
    assert shortest_float32(to_float32(0.1)) == 0.1


def test_datetime_keeps_100ns_ticks_and_offset(mapper):
    value, _ = mapper.map_value(
        "When", TypedValue(PropertyType.DATETIME, PreciseTimestamp.parse("2020-09-21T05:05:05.0000005Z"))
    )
    assert value == "2020-09-21T05:05:05.0000005+00:00"


def test_naive_datetime_is_treated_as_utc(mapper):
    value, _ = mapper.map_value("When", TypedValue(PropertyType.DATETIME, datetime(2021, 1, 2, 3, 4, 5)))
    assert value == "2021-01-02T03:04:05.0000000+00:00"


def test_offset_datetime_is_normalised_to_utc(mapper):
    value, _ = mapper.map_value("When", TypedValue(PropertyType.DATETIME, "2021-01-02T05:04:05.5+02:00"))
    assert value == "2021-01-02T03:04:05.5000000+00:00"


def test_binary_is_base64(mapper):
    value, tag = mapper.map_value("Blob", TypedValue(PropertyType.BINARY, b"Hello World"))
    assert (value, tag) == ("SGVsbG8gV29ybGQ=", PropertyType.BINARY)


def test_large_int64_is_written_as_text(mapper):
    assert mapper.map_value("N", TypedValue(PropertyType.INT64, 2 ** 53)) == (2 ** 53, PropertyType.INT64)
    assert mapper.map_value("N", TypedValue(PropertyType.INT64, 2 ** 53 + 1)) == (
        str(2 ** 53 + 1),
        PropertyType.INT64,
    )


@pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
def test_non_finite_doubles_are_mapping_errors(mapper, value):
    with pytest.raises(MappingError) as exc_info:
        mapper.map_value("D", TypedValue(PropertyType.DOUBLE, value))
    assert exc_info.value.field == "D"


def test_int32_out_of_range_is_a_mapping_error(mapper):
    with pytest.raises(MappingError):
        mapper.map_value("I", TypedValue(PropertyType.INT32, 2 ** 31))


def test_failed_field_is_reported_and_left_out(mapper):
    record = make_record(
        Good=TypedValue(PropertyType.INT32, 1),
        Bad=TypedValue(PropertyType.DOUBLE, math.nan),
    )
    document = mapper.to_document(record, "doc-1", "T", "Id")

    assert not document.is_valid
    assert [e.field for e in document.errors] == ["Bad"]
    assert document.errors[0].record_id == "doc-1"
    assert "Bad" not in document.body
    assert document.body["Good"] == 1


@pytest.mark.parametrize(
    "text",
    [
        "[ Garbage ]",
        '{ "Garbage" }',
        "[",
        "{}}",
        "[1, 2,]",
        "[NaN]",
        "[Infinity]",
        "'[1]'",
        "[0.1000000000000000000001]",
        '{"a": 1, "a": 2}',
        '[{"k": 1, "k": 1}]',
    ],
)
def test_pretend_composites_pass_through_unchanged(mapper, text):
    assert decode_composite(text) is None
    assert mapper.map_value("S", TypedValue(PropertyType.STRING, text)) == (text, PropertyType.STRING)


@pytest.mark.parametrize("text", ['"quoted"', "42", "true", "null", "1.5"])
def test_json_scalars_stay_strings(mapper, text):
    assert mapper.map_value("S", TypedValue(PropertyType.STRING, text)) == (text, PropertyType.STRING)


def test_deeply_nested_text_is_not_a_failure():
    text = "[" * 100_000 + "]" * 100_000
    assert decode_composite(text) is None


def test_composites_become_native_values(mapper):
    assert mapper.map_value("L", TypedValue(PropertyType.STRING, '["Hello World"]')) == (
        ["Hello World"],
        PropertyType.JSON,
    )
    assert mapper.map_value("N", TypedValue(PropertyType.STRING, '{"Foo":"Foo","Bar":1.5}')) == (
        {"Foo": "Foo", "Bar": 1.5},
        PropertyType.JSON,
    )


def test_enum_ordinals_are_written_as_names():
    mapper = TypeMapper(type_overrides={"Status": "enum"}, enum_members={"Status": ["Completed", "Failed"]})
    assert mapper.map_value("Status", TypedValue(PropertyType.INT32, 1)) == ("Failed", PropertyType.ENUM)
    assert mapper.map_value("Status", TypedValue(PropertyType.STRING, "Completed")) == (
        "Completed",
        PropertyType.ENUM,
    )
    with pytest.raises(MappingError):
        mapper.map_value("Status", TypedValue(PropertyType.INT32, 2))
    with pytest.raises(MappingError):
        mapper.map_value("Status", TypedValue(PropertyType.STRING, "Unknown"))


def test_overrides_reinterpret_stored_values():
    mapper = TypeMapper(type_overrides={"F": "float32", "D": "decimal", "Amount": "decimal"})
    assert mapper.map_value("F", TypedValue(PropertyType.DOUBLE, 1.2400000095367432)) == (
        1.24,
        PropertyType.FLOAT32,
    )
    assert mapper.map_value("D", TypedValue(PropertyType.STRING, "12.3450")) == ("12.3450", PropertyType.DECIMAL)
    assert mapper.map_value("Amount", TypedValue(PropertyType.DOUBLE, 1.24)) == ("1.24", PropertyType.DECIMAL)


def test_disallowed_override_is_a_mapping_error():
    mapper = TypeMapper(type_overrides={"Flag": "guid"})
    with pytest.raises(MappingError):
        mapper.map_value("Flag", TypedValue(PropertyType.BOOLEAN, True))


def test_unknown_override_tag_is_rejected():
    with pytest.raises(ValueError):
        TypeMapper(type_overrides={"X": "money"})


def test_decimal_never_goes_through_float(mapper):
    with pytest.raises(MappingError):
        mapper.map_value("D", TypedValue(PropertyType.DECIMAL, 1.24))


def test_document_layout(mapper):
    record = SourceRecord(
        table="Sagas",
        partition_key="pk-1",
        row_key="rk-1",
        properties={
            "PartitionKey": TypedValue(PropertyType.STRING, "pk-1"),
            "Name": TypedValue(PropertyType.STRING, "n"),
            "odata.etag": TypedValue(PropertyType.STRING, "W/1"),
        },
    )
    document = mapper.to_document(record, "doc-1", "Shop.OrderSagaData", "OrderId")

    assert document.id == document.partition_key == "doc-1"
    assert set(document.body) == {"id", "Name", METADATA_PROPERTY}
    assert document.body[METADATA_PROPERTY] == {
        "SchemaVersion": "1.0.0",
        "TypeFullName": "Shop.OrderSagaData",
        "KeyProperty": "OrderId",
        "SourcePartitionKey": "pk-1",
        "SourceRowKey": "rk-1",
        "FieldTypes": {"Name": "string"},
    }


def test_excluded_and_reserved_properties():
    mapper = TypeMapper(excluded_properties=["Originator"])
    record = make_record(
        Originator=TypedValue(PropertyType.STRING, "endpoint"),
        id=TypedValue(PropertyType.STRING, "clash"),
    )
    document = mapper.to_document(record, "doc-1", "T", "Id")

    assert "Originator" not in document.body
    assert document.body["id"] == "doc-1"
    assert [e.field for e in document.errors] == ["id"]


def test_json_output_is_stable_regardless_of_property_order(mapper):
    first = make_record(A=TypedValue(PropertyType.INT32, 1), B=TypedValue(PropertyType.STRING, "b"))
    second = make_record(B=TypedValue(PropertyType.STRING, "b"), A=TypedValue(PropertyType.INT32, 1))

    assert (
        mapper.to_document(first, "d", "T", "Id").to_json_bytes()
        == mapper.to_document(second, "d", "T", "Id").to_json_bytes()
    )


def test_untagged_fields_are_inferred(mapper):
    typed = mapper.from_document({"id": "d", "Count": 3, "Ratio": 0.5, "Tags": ["a"], "On": True, "_etag": "x"})
    assert typed == {
        "Count": TypedValue(PropertyType.INT32, 3),
        "Ratio": TypedValue(PropertyType.DOUBLE, 0.5),
        "Tags": TypedValue(PropertyType.JSON, ["a"]),
        "On": TypedValue(PropertyType.BOOLEAN, True),
    }


def test_precise_timestamp_rejects_finer_than_nanoseconds():
    assert PreciseTimestamp.parse("2020-01-01T00:00:00.1234567890Z").nanoseconds == 789
    with pytest.raises(ValueError):
        PreciseTimestamp.parse("2020-01-01T00:00:00.1234567891Z")


def test_precise_timestamp_nanosecond_rendering():
    stamp = PreciseTimestamp(datetime(2020, 1, 1, tzinfo=timezone.utc), nanoseconds=1)
    assert stamp.isoformat() == "2020-01-01T00:00:00.000000001+00:00"
