"""Single consumer of the fulfillment queue, plus the startup recovery step.

The worker takes one pending request at a time, submits it to the invoicing
provider and reconciles the outcome:

* success: store the PDF under the provider's invoice number, record the
  invoice number on the ledger entry, drop the pending request;
* failure: flag the ledger entry with ``has_error``, drop the pending
  request.

A request whose ledger entry already carries an outcome is never submitted
again; replaying it only finishes the pending removal.

Failed requests are never queued again. Store locks are only taken inside
individual store calls, never across the provider call.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Optional

from fulfillment.documents import DocumentStore
from fulfillment.errors import FulfillmentError, ProviderError, StorageError
from fulfillment.fulfillment_queue import FulfillmentQueue
from fulfillment.models import InvoiceSummary, LedgerEntry, PendingRequest
from fulfillment.provider import InvoiceProvider
from fulfillment.record_store import RecordStore

logger = logging.getLogger(__name__)


class WorkerOutcome(str, Enum):
    FULFILLED = "fulfilled"
    FAILED = "failed"
    SKIPPED = "skipped"
    RECONCILED = "reconciled"
    STORAGE_ERROR = "storage_error"


class Worker:
    def __init__(
        self,
        pending: RecordStore[PendingRequest],
        ledger: RecordStore[LedgerEntry],
        queue: FulfillmentQueue[PendingRequest],
        provider: InvoiceProvider,
        documents: DocumentStore,
    ) -> None:
        self.pending = pending
        self.ledger = ledger
        self.queue = queue
        self.provider = provider
        self.documents = documents
        self._thread: Optional[threading.Thread] = None

    def process(self, request: PendingRequest) -> WorkerOutcome:
        internal_id = request.internal_id
        # Recovery and a live push can both deliver the same id.
        if not self.pending.contains(internal_id):
            logger.info("Request %s already resolved; skipping", internal_id)
            return WorkerOutcome.SKIPPED

        entry = self.ledger.get(internal_id)
        if entry is None:
            logger.error("Request %s has no ledger entry; not submitting", internal_id)
            return WorkerOutcome.STORAGE_ERROR
        if entry.external_id or entry.has_error:
            # Outcome already recorded; only the pending removal is missing.
            return self._finish_reconciled(internal_id, entry)

        try:
            summary = self.provider.submit(request)
        except ProviderError as exc:
            logger.warning("Provider rejected request %s: %s (code=%s)", internal_id, exc, exc.code)
            return self._record_failure(internal_id)
        except Exception:
            logger.exception("Provider call for request %s failed", internal_id)
            return self._record_failure(internal_id)

        return self._record_success(internal_id, summary)

    def _finish_reconciled(self, internal_id: int, entry: LedgerEntry) -> WorkerOutcome:
        try:
            self.pending.remove(internal_id)
        except FulfillmentError as exc:
            logger.error("Could not drop reconciled request %s: %s", internal_id, exc)
            return WorkerOutcome.STORAGE_ERROR
        logger.info(
            "Request %s was already resolved (external_id=%s, has_error=%s); dropped from pending",
            internal_id,
            entry.external_id,
            entry.has_error,
        )
        return WorkerOutcome.RECONCILED

    def _record_success(self, internal_id: int, summary: InvoiceSummary) -> WorkerOutcome:
        external_id = summary.external_id
        try:
            self.documents.save(external_id, summary.document)
        except (StorageError, ValueError) as exc:
            # The invoice exists at the provider; the ledger must still say so.
            logger.error("Could not store PDF %s for request %s: %s", external_id, internal_id, exc)

        def _set_external_id(entry: LedgerEntry) -> None:
            entry.external_id = external_id

        try:
            self.ledger.update(internal_id, _set_external_id)
            self.pending.remove(internal_id)
        except FulfillmentError as exc:
            logger.error("Could not reconcile fulfilled request %s (%s): %s", internal_id, external_id, exc)
            return WorkerOutcome.STORAGE_ERROR

        logger.info("Request %s fulfilled as invoice %s", internal_id, external_id)
        return WorkerOutcome.FULFILLED

    def _record_failure(self, internal_id: int) -> WorkerOutcome:
        def _set_error(entry: LedgerEntry) -> None:
            entry.has_error = True

        try:
            self.ledger.update(internal_id, _set_error)
            self.pending.remove(internal_id)
        except FulfillmentError as exc:
            logger.error("Could not record failure of request %s: %s", internal_id, exc)
            return WorkerOutcome.STORAGE_ERROR

        logger.info("Request %s marked as failed", internal_id)
        return WorkerOutcome.FAILED

    def run(self) -> None:
        logger.info("Fulfillment worker started")
        while True:
            request = self.queue.pull()
            if request is None:
                break
            try:
                self.process(request)
            except Exception:
                logger.exception("Unexpected error processing request %s", request.internal_id)
        logger.info("Fulfillment worker stopped")

    def start(self) -> threading.Thread:
        if self._thread and self._thread.is_alive():
            return self._thread
        self._thread = threading.Thread(target=self.run, name="fulfillment-worker", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop to finish; True if it did."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()


def recover(
    pending: RecordStore[PendingRequest],
    ledger: RecordStore[LedgerEntry],
    queue: FulfillmentQueue[PendingRequest],
) -> int:
    """Queue every request still in the pending store. Returns the count."""
    count = 0
    for request in pending.iterate():
        if not ledger.contains(request.internal_id):
            # Crash between the pending and ledger inserts.
            logger.warning("Restoring missing ledger entry for request %s", request.internal_id)
            try:
                ledger.insert(LedgerEntry.from_request(request))
            except FulfillmentError as exc:
                logger.error("Could not restore ledger entry %s: %s", request.internal_id, exc)
                continue
        queue.push(request)
        count += 1
    logger.info("Recovered %d pending request(s)", count)
    return count
