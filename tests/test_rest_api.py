"""
Tests for the administrative REST API
"""
import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient

from cdc_etl.cdc.models import OperationType
from cdc_etl.rest_api import create_api


@pytest.fixture
def pipeline():
    pipeline = MagicMock()
    pipeline.supports_push = True
    pipeline.start = AsyncMock()
    pipeline.stop = AsyncMock()
    pipeline.health = AsyncMock(return_value={
        "status": "healthy", "source": "connected", "warehouse": "connected", "queue": "connected",
    })
    pipeline.cdc_status = AsyncMock(return_value={"mode": "streaming", "collections": ["orders"]})
    pipeline.push_change = AsyncMock()
    pipeline.writer.get_status.return_value = {"orders": 3, "devices": 1, "userActivities": 0}
    pipeline.writer.get_latest.return_value = [{"document_id": "o1", "status": "paid"}]
    return pipeline


@pytest.fixture
def client(pipeline, monkeypatch):
    monkeypatch.delenv("CDC_API_KEY", raising=False)
    api = create_api(pipeline=pipeline, manage_lifecycle=False)
    return TestClient(api.get_app())


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy", "source": "connected", "warehouse": "connected", "queue": "connected",
    }


def test_health_failure_is_structured(client, pipeline):
    pipeline.health.side_effect = RuntimeError("boom")
    response = client.get("/health")
    assert response.status_code == 503
    assert response.json() == {"status": "error", "error": "boom"}


def test_warehouse_status(client):
    response = client.get("/warehouse/status")
    assert response.status_code == 200
    assert response.json() == {"orders": 3, "devices": 1, "userActivities": 0}


def test_latest_records(client, pipeline):
    response = client.get("/warehouse/orders", params={"limit": 5})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["data"] == [{"document_id": "o1", "status": "paid"}]
    assert body["metadata"] == {"collection": "orders", "count": 1}
    pipeline.writer.get_latest.assert_called_once_with("orders", 5)


def test_latest_records_default_limit(client, pipeline):
    client.get("/warehouse/devices")
    pipeline.writer.get_latest.assert_called_once_with("devices", 10)


def test_cdc_status(client):
    response = client.get("/cdc/status")
    assert response.status_code == 200
    assert response.json()["data"]["mode"] == "streaming"


def test_push_change(client, pipeline):
    response = client.post("/cdc/orders/changes", json={
        "operationType": "INSERT",
        "documentKey": {"_id": "o1"},
        "fullDocument": {"orderId": "o1"},
    })
    assert response.status_code == 200
    assert response.json()["status"] == "accepted"

    collection, notification = pipeline.push_change.await_args.args
    assert collection == "orders"
    assert notification.operation_type == OperationType.INSERT.value
    assert notification.document_key == {"_id": "o1"}
    assert notification.full_document == {"orderId": "o1"}


def test_push_change_rejects_unknown_operation(client, pipeline):
    response = client.post("/cdc/orders/changes", json={"operationType": "merge", "documentKey": "o1"})
    assert response.status_code == 400
    assert response.json()["status"] == "error"
    pipeline.push_change.assert_not_awaited()


def test_push_change_for_unwatched_collection(client, pipeline):
    pipeline.push_change.side_effect = ValueError("Collection payments is not watched")
    response = client.post("/cdc/payments/changes", json={"operationType": "insert", "documentKey": "p1"})
    assert response.status_code == 404
    assert response.json() == {"status": "error", "error": "Collection payments is not watched"}


def test_push_change_requires_push_source(client, pipeline):
    pipeline.supports_push = False
    response = client.post("/cdc/orders/changes", json={"operationType": "insert", "documentKey": "o1"})
    assert response.status_code == 409
    pipeline.push_change.assert_not_awaited()


def test_api_key_is_enforced_when_configured(pipeline, monkeypatch):
    monkeypatch.setenv("CDC_API_KEY", "secret")
    client = TestClient(create_api(pipeline=pipeline, manage_lifecycle=False).get_app())

    assert client.get("/warehouse/status").status_code == 401
    assert client.get("/warehouse/status", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/warehouse/status", headers={"X-API-Key": "secret"}).status_code == 200
    # health stays open for probes
    assert client.get("/health").status_code == 200


def test_lifespan_starts_and_stops_pipeline(pipeline, monkeypatch):
    monkeypatch.delenv("CDC_API_KEY", raising=False)
    api = create_api(pipeline=pipeline)
    with TestClient(api.get_app()) as client:
        pipeline.start.assert_awaited_once()
        assert client.get("/health").status_code == 200
    pipeline.stop.assert_awaited_once()
