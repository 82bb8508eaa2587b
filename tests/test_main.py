"""HTTP-level tests for the FastAPI app."""

import base64
import inspect
import time

import pytest
from fastapi.testclient import TestClient

from conftest import PDF_BYTES, FakeProvider, make_item, make_payload
from fulfillment.config import Settings
from fulfillment.errors import ProviderError
from fulfillment.models import InvoiceRequest, LedgerEntry, PendingRequest
from fulfillment.record_store import RecordStore
from main import create_app

AUTH = ("user", "pass")


def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        pending_dir=tmp_path / "invoice_objects",
        ledger_dir=tmp_path / "invoices",
        pdf_dir=tmp_path / "pdf",
        queue_capacity=5,
        provider_timeout=5,
        shutdown_timeout=5,
    )


@pytest.fixture(autouse=True)
def basic_auth(monkeypatch):
    monkeypatch.setenv("BASIC_USER", "user")
    monkeypatch.setenv("BASIC_PASS", "pass")
    monkeypatch.delenv("MAX_REQUEST_BYTES", raising=False)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def client(settings, provider):
    with TestClient(create_app(provider=provider, settings=settings)) as test_client:
        yield test_client


def _is_resolved(client, internal_id: int) -> bool:
    invoice = client.get(f"/invoices/{internal_id}", auth=AUTH).json()["invoice"]
    return not invoice["pending"]


def test_health_needs_no_auth(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/version").json()["status"] == "ok"


def test_requires_basic_auth(client):
    response = client.post("/invoices", json=make_payload())
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Basic"
    assert client.get("/invoices/1", auth=("user", "wrong")).status_code == 401


def test_auth_not_configured(client, monkeypatch):
    monkeypatch.delenv("BASIC_PASS")
    assert client.get("/invoices/1", auth=AUTH).status_code == 500


def test_submit_and_fulfill(client, provider):
    response = client.post("/invoices", json=make_payload(), auth=AUTH)
    assert response.status_code == 202
    invoice = response.json()["invoice"]
    assert invoice["id"] == 1
    assert invoice["has_error"] is False
    assert invoice["external_id"] is None

    assert _wait_for(lambda: _is_resolved(client, 1))

    invoice = client.get("/invoices/1", auth=AUTH).json()["invoice"]
    assert invoice["external_id"] == "E-TEST-2020-1"
    assert invoice["has_error"] is False

    pdf = client.get("/documents/E-TEST-2020-1", auth=AUTH)
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content == PDF_BYTES

    encoded = client.get("/documents/E-TEST-2020-1/base64", auth=AUTH).json()
    assert base64.b64decode(encoded["data"]) == PDF_BYTES


def test_provider_failure_is_recorded(client, provider):
    provider.results = [ProviderError("rejected")]
    client.post("/invoices", json=make_payload(), auth=AUTH)

    assert _wait_for(lambda: _is_resolved(client, 1))
    invoice = client.get("/invoices/1", auth=AUTH).json()["invoice"]
    assert invoice["has_error"] is True
    assert invoice["external_id"] is None


def test_invalid_request_rejected(client, settings):
    payload = make_payload(items=[make_item(total_gross=126, total_vat=26)], total_net=100, total_vat=26, total_gross=126)
    response = client.post("/invoices", json=payload, auth=AUTH)
    assert response.status_code == 422
    assert "net/gross mismatch" in response.json()["detail"]
    assert list(settings.pending_dir.iterdir()) == []


def test_invalid_json_rejected(client):
    response = client.post(
        "/invoices", content=b"{not json", headers={"content-type": "application/json"}, auth=AUTH
    )
    assert response.status_code == 400


def test_non_object_payload_rejected(client):
    assert client.post("/invoices", json=[1, 2], auth=AUTH).status_code == 400


def test_request_size_limit(client, monkeypatch):
    monkeypatch.setenv("MAX_REQUEST_BYTES", "10")
    assert client.post("/invoices", json=make_payload(), auth=AUTH).status_code == 413


def test_lookup_by_reference(client):
    for reference in ("cart-1", "cart-2", "cart-3"):
        client.post("/invoices", json=make_payload(reference_id=reference), auth=AUTH)

    response = client.get("/invoices", params=[("reference_id", "cart-1"), ("reference_id", "cart-3")], auth=AUTH)
    body = response.json()
    assert body["count"] == 2
    assert [invoice["reference_id"] for invoice in body["invoices"]] == ["cart-1", "cart-3"]


def test_unknown_ids(client):
    assert client.get("/invoices/99", auth=AUTH).status_code == 404
    assert client.get("/documents/never", auth=AUTH).status_code == 404
    assert client.get("/documents/never/base64", auth=AUTH).status_code == 404


def test_startup_replays_pending_requests(settings, provider):
    pending = RecordStore.load_or_init(settings.pending_dir, PendingRequest, key="internal_id")
    ledger = RecordStore.load_or_init(settings.ledger_dir, LedgerEntry, key="id")
    for internal_id in (1, 2):
        request = PendingRequest.from_request(internal_id, InvoiceRequest.model_validate(make_payload()))
        pending.insert(request)
        ledger.insert(LedgerEntry.from_request(request))

    with TestClient(create_app(provider=provider, settings=settings)) as client:
        assert _wait_for(lambda: _is_resolved(client, 1) and _is_resolved(client, 2))
        assert sorted(call.internal_id for call in provider.calls) == [1, 2]
        new = client.post("/invoices", json=make_payload(), auth=AUTH).json()["invoice"]
        assert new["id"] == 3

    assert list(settings.pending_dir.glob("*.json")) == []


def test_request_accepted_while_shutting_down_is_kept(client, settings):
    client.app.state.runtime.queue.close()

    response = client.post("/invoices", json=make_payload(), auth=AUTH)
    assert response.status_code == 202
    invoice = response.json()["invoice"]
    assert invoice["pending"] is True
    assert (settings.pending_dir / f"{invoice['id']}.json").is_file()


def test_store_backed_routes_run_in_the_threadpool(client):
    endpoints = {
        route.path: route.endpoint for route in client.app.routes if "GET" in getattr(route, "methods", set())
    }
    for path in (
        "/invoices/{internal_id}",
        "/invoices",
        "/documents/{external_id}",
        "/documents/{external_id}/base64",
    ):
        assert not inspect.iscoroutinefunction(endpoints[path]), path
