from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Optional

import pytest

from fulfillment.documents import DocumentStore
from fulfillment.fulfillment_queue import FulfillmentQueue
from fulfillment.models import InvoiceSummary, LedgerEntry, PendingRequest
from fulfillment.record_store import RecordStore

PDF_BYTES = b"%PDF-1.4 demo invoice"


def make_item(**overrides: Any) -> Dict[str, Any]:
    item = {
        "name": "Demo item",
        "quantity": 1,
        "unit": "db",
        "unit_net_price": 100,
        "vat": "27",
        "total_net": 100,
        "total_vat": 27,
        "total_gross": 127,
    }
    item.update(overrides)
    return item


def make_payload(**overrides: Any) -> Dict[str, Any]:
    """Two 27% items, net 200 / gross 254."""
    payload = {
        "reference_id": "cart-1",
        "customer": {
            "name": "Demo Elek",
            "tax_number": "",
            "zip": "4551",
            "location": "Nyíregyháza",
            "street": "Mogyorós utca 36.",
        },
        "header": {
            "date_created": "2020-11-13",
            "date_completion": "2020-11-13",
            "payment_duedate": "2020-11-21",
            "payment_method": "transfer",
        },
        "items": [make_item(), make_item(name="Second item")],
        "total_net": 200,
        "total_vat": 54,
        "total_gross": 254,
        "created_by": "mezeipetister",
    }
    payload.update(copy.deepcopy(overrides))
    return payload


class FakeProvider:
    """Scripted provider: pops one result per call, succeeds when empty."""

    def __init__(self, results: Optional[List[Any]] = None) -> None:
        self.results = list(results or [])
        self.calls: List[PendingRequest] = []
        self.release = threading.Event()
        self.release.set()

    def submit(self, request: PendingRequest) -> InvoiceSummary:
        self.calls.append(request)
        self.release.wait(5)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return InvoiceSummary(external_id=f"E-TEST-2020-{request.internal_id}", document=PDF_BYTES)


@pytest.fixture
def pending_store(tmp_path) -> RecordStore[PendingRequest]:
    return RecordStore.load_or_init(tmp_path / "invoice_objects", PendingRequest, key="internal_id")


@pytest.fixture
def ledger_store(tmp_path) -> RecordStore[LedgerEntry]:
    return RecordStore.load_or_init(tmp_path / "invoices", LedgerEntry, key="id")


@pytest.fixture
def documents(tmp_path) -> DocumentStore:
    return DocumentStore(tmp_path / "pdf")


@pytest.fixture
def queue() -> FulfillmentQueue[PendingRequest]:
    return FulfillmentQueue(capacity=10)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
