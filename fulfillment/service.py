from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable

from pydantic import ValidationError as PydanticValidationError

from fulfillment.errors import FulfillmentError, QueueClosed, ValidationError
from fulfillment.fulfillment_queue import FulfillmentQueue
from fulfillment.models import InvoiceRequest, LedgerEntry, PendingRequest
from fulfillment.record_store import RecordStore

logger = logging.getLogger(__name__)


def _format_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


class RequestService:
    """Accepts invoice requests and answers ledger queries."""

    def __init__(
        self,
        pending: RecordStore[PendingRequest],
        ledger: RecordStore[LedgerEntry],
        queue: FulfillmentQueue[PendingRequest],
    ) -> None:
        self.pending = pending
        self.ledger = ledger
        self.queue = queue
        self._id_lock = threading.Lock()

    def _next_id(self) -> int:
        # Ledger entries are never removed, so their keys cover every id issued.
        return max(self.ledger.keys(), default=0) + 1

    def validate(self, raw: InvoiceRequest | Dict[str, Any]) -> InvoiceRequest:
        if isinstance(raw, InvoiceRequest):
            return raw
        try:
            return InvoiceRequest.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(_format_validation_error(exc)) from exc

    def accept(self, raw: InvoiceRequest | Dict[str, Any]) -> LedgerEntry:
        invoice = self.validate(raw)

        with self._id_lock:
            request = PendingRequest.from_request(self._next_id(), invoice)
            entry = LedgerEntry.from_request(request)
            self.pending.insert(request)
            try:
                self.ledger.insert(entry)
            except FulfillmentError:
                logger.exception("Ledger insert failed for request %s; rolling back", request.internal_id)
                self.pending.remove(request.internal_id)
                raise

        logger.info(
            "Accepted request %s (reference %s, gross %s)",
            request.internal_id,
            request.reference_id,
            request.total_gross,
        )
        try:
            self.queue.push(request)
        except QueueClosed:
            # Already durable; the next start replays it.
            logger.warning("Queue closed; request %s stays pending until restart", request.internal_id)
        return entry

    def get(self, internal_id: int) -> LedgerEntry:
        return self.ledger.find(internal_id)

    def is_pending(self, internal_id: int) -> bool:
        return self.pending.contains(internal_id)

    def find_by_reference(self, reference_ids: Iterable[str]) -> list[LedgerEntry]:
        wanted = {str(ref) for ref in reference_ids if str(ref)}
        if not wanted:
            return []
        matches = [entry for entry in self.ledger.iterate() if entry.reference_id in wanted]
        return sorted(matches, key=lambda entry: entry.id)
