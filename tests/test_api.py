"""Tests for the HTTP API."""

import uuid

import pytest
from fastapi.testclient import TestClient

from saga_migration.api.dependencies import get_document_store, get_table_source, get_target_config
from saga_migration.api.main import app
from saga_migration.api.storage import run_registry
from saga_migration.services.identity import derive

from .conftest import KEY_PROPERTY, SAGA_ENUMS, SAGA_OVERRIDES, SAGA_TYPE, TABLE, insert_saga


@pytest.fixture
def client(table_source, document_store, target_config):
    app.dependency_overrides[get_table_source] = lambda: table_source
    app.dependency_overrides[get_document_store] = lambda: document_store
    app.dependency_overrides[get_target_config] = lambda: target_config
    run_registry.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()
    run_registry.clear()


@pytest.fixture
def export_request(tmp_path):
    return {
        "type_name": TABLE,
        "key_property": KEY_PROPERTY,
        "type_full_name": SAGA_TYPE,
        "output_dir": str(tmp_path / "export"),
        "type_overrides": SAGA_OVERRIDES,
        "enum_members": SAGA_ENUMS,
    }


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_export_run_is_tracked(client, table_source, export_request, tmp_path):
    my_id = uuid.uuid4()
    insert_saga(table_source, my_id)

    response = client.post("/api/migrations/export", json=export_request)

    assert response.status_code == 202
    run_id = response.json()["run_ids"][0]

    run = client.get(f"/api/migrations/{run_id}").json()
    assert run["kind"] == "export"
    assert run["status"] == "completed"
    assert (run["total"], run["succeeded"], run["skipped"]) == (1, 1, 1)
    assert (tmp_path / "export" / TABLE / f"{derive(SAGA_TYPE, KEY_PROPERTY, str(my_id))}.json").exists()


def test_export_failures_are_listed(client, table_source, export_request):
    table_source.insert(TABLE, "broken", "", {})

    run_id = client.post("/api/migrations/export", json=export_request).json()["run_ids"][0]
    run = client.get(f"/api/migrations/{run_id}").json()

    assert run["status"] == "completed_with_errors"
    assert run["failures"] == [{
        "record_id": "row:broken/",
        "reason": f"{KEY_PROPERTY}: correlation property is missing",
        "error_type": "MappingError",
        "field": KEY_PROPERTY,
    }]


def test_export_of_a_missing_table_fails_the_run(client, export_request):
    export_request["type_name"] = "NoSuchTable"

    run_id = client.post("/api/migrations/export", json=export_request).json()["run_ids"][0]
    run = client.get(f"/api/migrations/{run_id}").json()

    assert run["status"] == "failed"
    assert "NoSuchTable" in run["error"]


def test_export_with_an_unknown_override_is_rejected(client, export_request):
    export_request["type_overrides"] = {"FloatValue": "money"}
    response = client.post("/api/migrations/export", json=export_request)
    assert response.status_code == 400
    assert run_registry.list_all() == []


def test_export_request_is_validated(client, export_request):
    del export_request["key_property"]
    assert client.post("/api/migrations/export", json=export_request).status_code == 422

    export_request["key_property"] = KEY_PROPERTY
    export_request["page_size"] = 5000
    assert client.post("/api/migrations/export", json=export_request).status_code == 422


def test_import_after_export(client, table_source, document_store, export_request, tmp_path):
    for _ in range(3):
        insert_saga(table_source, uuid.uuid4())
    client.post("/api/migrations/export", json=export_request)

    response = client.post("/api/migrations/import", json={"input_dir": str(tmp_path / "export")})

    assert response.status_code == 202
    run_id = response.json()["run_ids"][0]
    run = client.get(f"/api/migrations/{run_id}").json()
    assert run["kind"] == "import"
    assert run["type_name"] == TABLE
    assert run["succeeded"] == 3
    assert len(document_store.documents("sagas")) == 3


def test_import_of_a_missing_directory_is_rejected(client, tmp_path):
    response = client.post("/api/migrations/import", json={"input_dir": str(tmp_path / "nowhere")})
    assert response.status_code == 400


def test_import_of_an_empty_tree_is_rejected(client, tmp_path):
    response = client.post("/api/migrations/import", json={"input_dir": str(tmp_path)})
    assert response.status_code == 400


def test_runs_are_listed(client, export_request, tmp_path):
    client.post("/api/migrations/export", json=export_request)
    client.post("/api/migrations/import", json={"input_dir": str(tmp_path / "export")})

    body = client.get("/api/migrations").json()
    assert body["total"] == 2
    assert [run["kind"] for run in body["runs"]] == ["export", "import"]


def test_unknown_run(client):
    assert client.get("/api/migrations/does-not-exist").status_code == 404
    assert client.post("/api/migrations/does-not-exist/cancel").status_code == 404


def test_cancel_known_run(client, export_request):
    run_id = client.post("/api/migrations/export", json=export_request).json()["run_ids"][0]

    response = client.post(f"/api/migrations/{run_id}/cancel")

    assert response.status_code == 200
    assert response.json() == {"status": "cancelling", "run_id": run_id}


def test_identity_lookup(client):
    response = client.get(
        "/api/identity",
        params={"type_full_name": SAGA_TYPE, "key_property": KEY_PROPERTY, "value": "42"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "id": derive(SAGA_TYPE, KEY_PROPERTY, "42"),
        "type_full_name": SAGA_TYPE,
        "key_property": KEY_PROPERTY,
        "value": "42",
    }


def test_identity_lookup_requires_names(client):
    response = client.get("/api/identity", params={"key_property": KEY_PROPERTY, "value": "42"})
    assert response.status_code == 422
