"""Tests for exporting saga rows to document files."""

import json
import math
import threading
import uuid

import pytest

from saga_migration import exporter as exporter_module
from saga_migration.errors import ExtractionError, MappingError
from saga_migration.exporter import Exporter, atomic_write
from saga_migration.extractors.memory import InMemoryTableSource
from saga_migration.models.migration import FieldErrorPolicy, MigrationStatus, RunSummary
from saga_migration.models.record import PropertyType, TypedValue
from saga_migration.persistence.adapter import SagaKey
from saga_migration.services.identity import derive
from saga_migration.services.type_mapper import METADATA_PROPERTY

from .conftest import KEY_PROPERTY, SAGA_TYPE, TABLE, insert_saga


def saga_id(my_id: uuid.UUID) -> str:
    return derive(SAGA_TYPE, KEY_PROPERTY, str(my_id))


def test_exports_one_file_per_saga(table_source, export_config, tmp_path):
    my_id = uuid.uuid4()
    insert_saga(table_source, my_id)

    summary = Exporter(table_source, export_config).run()

    assert summary.status == MigrationStatus.COMPLETED
    assert (summary.total, summary.succeeded, summary.failed, summary.skipped) == (1, 1, 0, 1)

    path = tmp_path / "export" / TABLE / f"{saga_id(my_id)}.json"
    raw = path.read_bytes()
    assert raw.endswith(b"\n")

    body = json.loads(raw)
    assert list(body) == sorted(body)
    assert body == {
        "id": saga_id(my_id),
        "MyId": str(my_id),
        "ListOfStrings": ["Hello World"],
        "ListOfINts": [43, 42],
        "Nested": {"Foo": "Foo", "Bar": "Bar"},
        "IntValue": 1,
        "LongValue": 1,
        "DoubleValue": 1.24,
        "BinaryValue": "SGVsbG8gV29ybGQ=",
        "DateTime": "2020-09-21T05:05:05.0000005+00:00",
        "BooleanValue": True,
        "FloatValue": 1.24,
        "DecimalValue": "1.24",
        "PretendsToBeAnArray": "[ Garbage ]",
        "PretendsToBeAnObject": '{ "Garbage" }',
        "Status": "Failed",
        METADATA_PROPERTY: {
            "SchemaVersion": "1.0.0",
            "TypeFullName": SAGA_TYPE,
            "KeyProperty": KEY_PROPERTY,
            "SourcePartitionKey": str(my_id),
            "SourceRowKey": "",
            "FieldTypes": {
                "MyId": "guid",
                "ListOfStrings": "json",
                "ListOfINts": "json",
                "Nested": "json",
                "IntValue": "int32",
                "LongValue": "int64",
                "DoubleValue": "double",
                "BinaryValue": "binary",
                "DateTime": "datetime",
                "BooleanValue": "boolean",
                "FloatValue": "float32",
                "DecimalValue": "decimal",
                "PretendsToBeAnArray": "string",
                "PretendsToBeAnObject": "string",
                "Status": "enum",
            },
        },
    }


def test_rerun_produces_identical_bytes(table_source, export_config):
    ids = [uuid.uuid4() for _ in range(3)]
    for my_id in ids:
        insert_saga(table_source, my_id)

    exporter = Exporter(table_source, export_config)
    exporter.run()
    first = {path.name: path.read_bytes() for path in exporter.written_files()}
    exporter.run()
    second = {path.name: path.read_bytes() for path in exporter.written_files()}

    assert len(first) == 3
    assert first == second


def test_type_name_is_used_for_ids_without_a_full_name(table_source, export_config):
    my_id = uuid.uuid4()
    insert_saga(table_source, my_id)
    export_config.type_full_name = None

    exporter = Exporter(table_source, export_config)
    exporter.run()

    assert [p.stem for p in exporter.written_files()] == [derive(TABLE, KEY_PROPERTY, str(my_id))]


def test_key_override_gives_the_id_the_runtime_looks_up(table_source, export_config):
    my_id = uuid.uuid4()
    table_source.insert(TABLE, str(my_id).upper(), "", {
        "MyId": TypedValue(PropertyType.STRING, str(my_id).upper()),
        "IntValue": TypedValue(PropertyType.INT32, 1),
    })
    export_config.type_overrides["MyId"] = "guid"

    exporter = Exporter(table_source, export_config)
    summary = exporter.run()

    runtime_key = SagaKey.from_typed(SAGA_TYPE, KEY_PROPERTY, TypedValue(PropertyType.GUID, my_id))
    assert summary.succeeded == 1
    assert [p.stem for p in exporter.written_files()] == [runtime_key.document_id]
    body = json.loads(exporter.written_files()[0].read_bytes())
    assert body["MyId"] == str(my_id)


def test_key_override_that_does_not_parse_fails_the_record(table_source, export_config):
    table_source.insert(TABLE, "not-a-guid", "", {"MyId": TypedValue(PropertyType.STRING, "not-a-guid")})
    export_config.type_overrides["MyId"] = "guid"

    summary = Exporter(table_source, export_config).run()

    assert summary.failed == 1
    assert summary.failures[0].record_id == "row:not-a-guid/"
    assert summary.failures[0].field == KEY_PROPERTY


def test_bad_records_do_not_stop_the_run(table_source, export_config):
    good = uuid.uuid4()
    insert_saga(table_source, good)
    table_source.insert(TABLE, "no-key", "", {"Other": TypedValue(PropertyType.INT32, 1)})
    nan_id = uuid.uuid4()
    table_source.insert(TABLE, str(nan_id), "", {
        "MyId": TypedValue(PropertyType.GUID, nan_id),
        "DoubleValue": TypedValue(PropertyType.DOUBLE, math.nan),
    })

    exporter = Exporter(table_source, export_config)
    summary = exporter.run()

    assert summary.status == MigrationStatus.COMPLETED_WITH_ERRORS
    assert (summary.total, summary.succeeded, summary.failed) == (3, 1, 2)
    assert sorted(summary.failed_ids) == sorted(["row:no-key/", saga_id(nan_id)])

    failures = {f.record_id: f for f in summary.failures}
    assert failures["row:no-key/"].field == KEY_PROPERTY
    assert failures[saga_id(nan_id)].field == "DoubleValue"
    assert failures[saga_id(nan_id)].error_type == "MappingError"
    assert [p.stem for p in exporter.written_files()] == [saga_id(good)]


def test_skip_field_policy_drops_the_field_with_a_warning(table_source, export_config):
    my_id = uuid.uuid4()
    table_source.insert(TABLE, str(my_id), "", {
        "MyId": TypedValue(PropertyType.GUID, my_id),
        "DoubleValue": TypedValue(PropertyType.DOUBLE, math.inf),
        "IntValue": TypedValue(PropertyType.INT32, 3),
    })
    export_config.field_error_policy = FieldErrorPolicy.SKIP_FIELD

    exporter = Exporter(table_source, export_config)
    summary = exporter.run()

    assert summary.status == MigrationStatus.COMPLETED
    assert len(summary.warnings) == 1
    assert "DoubleValue" in summary.warnings[0]
    body = json.loads(exporter.written_files()[0].read_bytes())
    assert "DoubleValue" not in body
    assert body["IntValue"] == 3


def test_abort_policy_stops_the_run(table_source, export_config):
    my_id = uuid.uuid4()
    table_source.insert(TABLE, str(my_id), "", {
        "MyId": TypedValue(PropertyType.GUID, my_id),
        "DoubleValue": TypedValue(PropertyType.DOUBLE, math.nan),
    })
    export_config.field_error_policy = FieldErrorPolicy.ABORT
    summary = RunSummary(kind="export", type_name=TABLE)

    with pytest.raises(MappingError):
        Exporter(table_source, export_config).run(summary)

    assert summary.status == MigrationStatus.FAILED
    assert "DoubleValue" in summary.error


def test_transient_write_errors_are_retried(table_source, export_config, monkeypatch):
    insert_saga(table_source, uuid.uuid4())
    calls = []
    real_write = exporter_module.atomic_write

    def flaky_write(path, data):
        calls.append(path)
        if len(calls) < 3:
            raise OSError("disk busy")
        real_write(path, data)

    monkeypatch.setattr(exporter_module, "atomic_write", flaky_write)
    exporter = Exporter(table_source, export_config)
    summary = exporter.run()

    assert summary.status == MigrationStatus.COMPLETED
    assert len(calls) == 3
    assert len(exporter.written_files()) == 1


def test_permanent_write_errors_fail_the_record(table_source, export_config, monkeypatch):
    my_id = uuid.uuid4()
    insert_saga(table_source, my_id)

    def broken_write(path, data):
        raise OSError("read-only file system")

    monkeypatch.setattr(exporter_module, "atomic_write", broken_write)
    summary = Exporter(table_source, export_config).run()

    assert summary.status == MigrationStatus.COMPLETED_WITH_ERRORS
    assert summary.failed_ids == [saga_id(my_id)]
    assert summary.failures[0].error_type == "WriteError"


def test_cancelled_run_stops_early(table_source, export_config):
    for _ in range(5):
        insert_saga(table_source, uuid.uuid4())
    cancel = threading.Event()
    cancel.set()

    summary = Exporter(table_source, export_config, cancel_event=cancel).run()

    assert summary.status == MigrationStatus.CANCELLED
    assert summary.total == 0


def test_unreadable_table_fails_the_run_and_saves_a_report(export_config, tmp_path):
    export_config.report_dir = str(tmp_path / "reports")
    summary = RunSummary(kind="export", type_name=TABLE)

    with pytest.raises(ExtractionError):
        Exporter(InMemoryTableSource(), export_config).run(summary)

    assert summary.status == MigrationStatus.FAILED
    reports = list((tmp_path / "reports").glob("export_*.json"))
    assert len(reports) == 1
    assert json.loads(reports[0].read_text())["status"] == "failed"


def test_parallel_export_writes_every_saga(table_source, export_config):
    ids = [uuid.uuid4() for _ in range(30)]
    for my_id in ids:
        insert_saga(table_source, my_id)
    export_config.parallel_workers = 4

    exporter = Exporter(table_source, export_config, page_size=10)
    summary = exporter.run()

    assert summary.status == MigrationStatus.COMPLETED
    assert summary.succeeded == 30
    assert {p.stem for p in exporter.written_files()} == {saga_id(i) for i in ids}


def test_no_temporary_files_are_left_behind(table_source, export_config, tmp_path):
    for _ in range(3):
        insert_saga(table_source, uuid.uuid4())

    Exporter(table_source, export_config).run()

    names = [p.name for p in (tmp_path / "export" / TABLE).iterdir()]
    assert len(names) == 3
    assert all(name.endswith(".json") and not name.startswith(".") for name in names)


def test_atomic_write_replaces_the_file(tmp_path):
    path = tmp_path / "doc.json"
    atomic_write(path, b"old")
    atomic_write(path, b"new")
    assert path.read_bytes() == b"new"
    assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]


def test_failed_atomic_write_keeps_the_old_file(tmp_path, monkeypatch):
    path = tmp_path / "doc.json"
    path.write_bytes(b"old")

    def failing_replace(src, dst):
        raise OSError("rename failed")

    monkeypatch.setattr(exporter_module.os, "replace", failing_replace)
    with pytest.raises(OSError):
        atomic_write(path, b"new")

    assert path.read_bytes() == b"old"
    assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]


def test_readers_never_see_a_partially_written_file(tmp_path):
    path = tmp_path / "doc.json"
    versions = [json.dumps({"version": i, "padding": "x" * 64 * 1024}).encode("utf-8") for i in range(2)]
    atomic_write(path, versions[0])

    stop = threading.Event()
    seen = []
    errors = []

    def reader():
        while True:
            try:
                seen.append(json.loads(path.read_bytes())["version"])
            except ValueError as e:
                errors.append(e)
            if stop.is_set():
                return

    thread = threading.Thread(target=reader)
    thread.start()
    try:
        for i in range(200):
            atomic_write(path, versions[i % 2])
    finally:
        stop.set()
        thread.join()

    assert errors == []
    assert seen
    assert set(seen) <= {0, 1}
