# fulfillment/models.py
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from fulfillment.parse_utils import coerce_date


class VatRate(str, Enum):
    AAM = "AAM"
    FAD = "FAD"
    TAM = "TAM"
    VAT_5 = "5"
    VAT_18 = "18"
    VAT_27 = "27"


VAT_MULTIPLIERS: dict[VatRate, Decimal] = {
    VatRate.AAM: Decimal("1"),
    VatRate.FAD: Decimal("1"),
    VatRate.TAM: Decimal("1"),
    VatRate.VAT_5: Decimal("1.05"),
    VatRate.VAT_18: Decimal("1.18"),
    VatRate.VAT_27: Decimal("1.27"),
}


class PaymentMethod(str, Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    CARD = "card"


def gross_up(net: int, vat: VatRate) -> int:
    """Gross amount for an integer net amount, rounded half away from zero.

    Not distributive over multiplication: gross up line totals, never a unit
    price that is multiplied afterwards.
    """
    value = Decimal(net) * VAT_MULTIPLIERS[VatRate(vat)]
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Seller(BaseModel):
    bank_name: str = ""
    bank_account: str = ""


class Customer(BaseModel):
    name: str = Field(min_length=1)
    tax_number: str = ""
    zip: str
    location: str
    street: str
    email: Optional[str] = None


class Header(BaseModel):
    date_created: date
    date_completion: date
    payment_duedate: date
    payment_method: PaymentMethod = PaymentMethod.TRANSFER
    comment: Optional[str] = None

    @field_validator("date_created", "date_completion", "payment_duedate", mode="before")
    @classmethod
    def parse_dates(cls, value):
        return coerce_date(value)


class Item(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    unit: str
    unit_net_price: int = Field(ge=0)
    vat: VatRate
    total_net: int = Field(ge=0)
    total_vat: int = Field(ge=0)
    total_gross: int = Field(ge=0)

    @model_validator(mode="after")
    def check_amounts(self) -> "Item":
        if self.quantity * self.unit_net_price != self.total_net:
            raise ValueError(
                f"net mismatch: {self.quantity} * {self.unit_net_price} != {self.total_net}"
            )
        expected_gross = gross_up(self.total_net, self.vat)
        if expected_gross != self.total_gross:
            raise ValueError(
                f"net/gross mismatch: {self.total_net} at {self.vat.value} VAT "
                f"is {expected_gross}, got {self.total_gross}"
            )
        if self.total_net + self.total_vat != self.total_gross:
            raise ValueError(
                f"vat mismatch: {self.total_net} + {self.total_vat} != {self.total_gross}"
            )
        return self


class InvoiceBody(BaseModel):
    reference_id: str = Field(min_length=1)
    seller: Seller = Field(default_factory=Seller)
    customer: Customer
    header: Header
    items: list[Item] = Field(min_length=1)
    total_net: int = Field(ge=0)
    total_gross: int = Field(ge=0)
    total_vat: int = Field(ge=0)
    created_by: str = Field(min_length=1)

    @field_validator("reference_id", mode="before")
    @classmethod
    def reference_as_text(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @model_validator(mode="after")
    def check_totals(self) -> "InvoiceBody":
        for field, item_field in (
            ("total_net", "total_net"),
            ("total_vat", "total_vat"),
            ("total_gross", "total_gross"),
        ):
            expected = sum(getattr(item, item_field) for item in self.items)
            actual = getattr(self, field)
            if expected != actual:
                raise ValueError(f"{field} mismatch: items sum to {expected}, got {actual}")
        return self


class InvoiceRequest(InvoiceBody):
    """Inbound fulfillment request, before an internal id is assigned."""


class PendingRequest(InvoiceBody):
    internal_id: int = Field(ge=1)
    external_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_request(
        cls, internal_id: int, request: InvoiceRequest, created_at: datetime | None = None
    ) -> "PendingRequest":
        return cls(
            internal_id=internal_id,
            created_at=created_at or _utcnow(),
            **request.model_dump(),
        )


class LedgerEntry(BaseModel):
    id: int
    reference_id: str
    external_id: Optional[str] = None
    related_storno: Optional[str] = None
    created_by: str
    created_at: datetime
    has_error: bool = False

    @classmethod
    def from_request(cls, request: PendingRequest) -> "LedgerEntry":
        return cls(
            id=request.internal_id,
            reference_id=request.reference_id,
            external_id=request.external_id,
            created_by=request.created_by,
            created_at=request.created_at,
        )

    @property
    def is_fulfilled(self) -> bool:
        return bool(self.external_id) and not self.has_error


class InvoiceSummary(BaseModel):
    external_id: str = Field(min_length=1)
    document: bytes
