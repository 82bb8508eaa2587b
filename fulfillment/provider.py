from __future__ import annotations

from typing import Protocol

from fulfillment.models import InvoiceSummary, PendingRequest


class InvoiceProvider(Protocol):
    """Remote invoicing service the worker submits pending requests to.

    ``submit`` returns the provider's invoice number and PDF on success and
    raises ``ProviderError`` for everything else: transport failures,
    timeouts, rejected invoices and unreadable responses alike.
    """

    def submit(self, request: PendingRequest) -> InvoiceSummary:
        ...
