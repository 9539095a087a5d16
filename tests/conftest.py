"""Shared fixtures: in-memory stores and a saga row shaped like the legacy persister writes it."""

import uuid
from decimal import Decimal
from typing import Dict

import pytest

from saga_migration.extractors.memory import InMemoryTableSource
from saga_migration.loaders.memory import InMemoryDocumentStore
from saga_migration.models.migration import ExportConfig, TargetConfig
from saga_migration.models.record import PreciseTimestamp, PropertyType, TypedValue
from saga_migration.services.type_mapper import to_float32

SAGA_TYPE = "EndToEnd.When_migrating_saga.MigratingSagaData"
TABLE = "MigratingSagaData"
KEY_PROPERTY = "MyId"

SAGA_OVERRIDES = {
    "FloatValue": "float32",
    "DecimalValue": "decimal",
    "Status": "enum",
}
SAGA_ENUMS = {"Status": ["Completed", "Failed"]}


def saga_properties(my_id: uuid.UUID) -> Dict[str, TypedValue]:
    """Properties of the end-to-end saga as the table persister stores them."""
    return {
        "MyId": TypedValue(PropertyType.GUID, my_id),
        "ListOfStrings": TypedValue(PropertyType.STRING, '["Hello World"]'),
        "ListOfINts": TypedValue(PropertyType.STRING, "[43,42]"),
        "Nested": TypedValue(PropertyType.STRING, '{"Foo":"Foo","Bar":"Bar"}'),
        "IntValue": TypedValue(PropertyType.INT32, 1),
        "LongValue": TypedValue(PropertyType.INT64, 1),
        "DoubleValue": TypedValue(PropertyType.DOUBLE, 1.24),
        "BinaryValue": TypedValue(PropertyType.BINARY, b"Hello World"),
        "DateTime": TypedValue(PropertyType.DATETIME, PreciseTimestamp.parse("2020-09-21T05:05:05.0000005Z")),
        "BooleanValue": TypedValue(PropertyType.BOOLEAN, True),
        # single precision floats are widened to doubles by the table persister
        "FloatValue": TypedValue(PropertyType.DOUBLE, to_float32(1.24)),
        "DecimalValue": TypedValue(PropertyType.DECIMAL, Decimal("1.24")),
        "PretendsToBeAnArray": TypedValue(PropertyType.STRING, "[ Garbage ]"),
        "PretendsToBeAnObject": TypedValue(PropertyType.STRING, '{ "Garbage" }'),
        "Status": TypedValue(PropertyType.STRING, "Failed"),
    }


def insert_saga(source: InMemoryTableSource, my_id: uuid.UUID) -> None:
    """Insert a saga row plus the secondary index row the persister keeps next to it."""
    source.insert(TABLE, str(my_id), "", saga_properties(my_id))
    source.insert(
        TABLE,
        f"Index_{SAGA_TYPE}_MyId_{my_id}",
        "",
        {"SagaId": TypedValue(PropertyType.GUID, my_id)},
    )


@pytest.fixture
def table_source() -> InMemoryTableSource:
    source = InMemoryTableSource()
    source.create_table(TABLE)
    return source


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def target_config() -> TargetConfig:
    return TargetConfig(database="sagas", container="sagas")


@pytest.fixture
def export_config(tmp_path) -> ExportConfig:
    return ExportConfig(
        type_name=TABLE,
        key_property=KEY_PROPERTY,
        output_dir=str(tmp_path / "export"),
        type_full_name=SAGA_TYPE,
        type_overrides=dict(SAGA_OVERRIDES),
        enum_members=dict(SAGA_ENUMS),
        write_retry_backoff=0.0,
    )
