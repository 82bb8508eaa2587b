from __future__ import annotations

import logging
import os
import xml.etree.ElementTree as ET
from datetime import date
from typing import Any, Dict, Optional

import requests
from google.cloud import secretmanager

from fulfillment.documents import base64_decode
from fulfillment.errors import ConfigError, ProviderError
from fulfillment.models import InvoiceSummary, PaymentMethod, PendingRequest, VatRate

SZAMLAZZ_URL = "https://www.szamlazz.hu/szamla/"
XML_FIELD_NAME = "action-xmlagentxmlfile"
XML_NAMESPACE = "http://www.szamlazz.hu/xmlszamla"
XSD_LOCATION = "https://www.szamlazz.hu/szamla/docs/xsds/agent/xmlszamla.xsd"
RESPONSE_VERSION = 2
logger = logging.getLogger(__name__)

VAT_WIRE_CODES: Dict[VatRate, str] = {
    VatRate.AAM: "AAM",
    VatRate.TAM: "TAM",
    VatRate.FAD: "F.AFA",
    VatRate.VAT_5: "5",
    VatRate.VAT_18: "18",
    VatRate.VAT_27: "27",
}

PAYMENT_METHOD_LABELS: Dict[PaymentMethod, str] = {
    PaymentMethod.CASH: "Készpénz",
    PaymentMethod.TRANSFER: "Átutalás",
    PaymentMethod.CARD: "Bankkártya",
}


def _get_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value else None


def _get_agent_key() -> Optional[str]:
    secret_name = _get_env("INVOICE_AGENT_KEY_SECRET_NAME")
    if secret_name:
        client = secretmanager.SecretManagerServiceClient()
        version = client.access_secret_version(name=f"{secret_name}/versions/latest")
        return version.payload.data.decode("utf-8").strip()
    return _get_env("INVOICE_AGENT_KEY")


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _append(parent: ET.Element, tag: str, value: Any) -> None:
    if value is None:
        return
    ET.SubElement(parent, tag).text = _text(value)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def build_invoice_xml(
    request: PendingRequest,
    agent_key: str,
    invoice_prefix: str,
    bank_name: str,
    bank_account: str,
) -> bytes:
    root = ET.Element(
        "xmlszamla",
        {
            "xmlns": XML_NAMESPACE,
            "xmlns:xsi": "http://www.w3.org/2001/XMLSchema-instance",
            "xsi:schemaLocation": f"{XML_NAMESPACE} {XSD_LOCATION}",
        },
    )

    settings = ET.SubElement(root, "beallitasok")
    _append(settings, "szamlaagentkulcs", agent_key)
    _append(settings, "eszamla", False)
    _append(settings, "szamlaLetoltes", True)
    _append(settings, "szamlaLetoltesPld", 1)
    _append(settings, "valaszVerzio", RESPONSE_VERSION)

    header = ET.SubElement(root, "fejlec")
    _append(header, "keltDatum", request.header.date_created)
    _append(header, "teljesitesDatum", request.header.date_completion)
    _append(header, "fizetesiHataridoDatum", request.header.payment_duedate)
    _append(header, "fizmod", PAYMENT_METHOD_LABELS[request.header.payment_method])
    _append(header, "penznem", "HUF")
    _append(header, "szamlaNyelve", "hu")
    _append(header, "megjegyzes", request.header.comment)
    _append(header, "arfolyamBank", "MNB")
    _append(header, "arfolyam", 0.0)
    _append(header, "rendelesSzam", request.reference_id)
    _append(header, "elolegszamla", False)
    _append(header, "vegszamla", False)
    _append(header, "helyesbitoszamla", False)
    _append(header, "dijbekero", False)
    _append(header, "szamlaszamElotag", invoice_prefix)
    _append(header, "szamlaSablon", "Szla8cm")

    seller = ET.SubElement(root, "elado")
    _append(seller, "bank", request.seller.bank_name or bank_name)
    _append(seller, "bankszamlaszam", request.seller.bank_account or bank_account)

    customer = ET.SubElement(root, "vevo")
    _append(customer, "nev", request.customer.name)
    _append(customer, "irsz", request.customer.zip)
    _append(customer, "telepules", request.customer.location)
    _append(customer, "cim", request.customer.street)
    _append(customer, "email", request.customer.email)
    _append(customer, "sendEmail", False)
    _append(customer, "adoszam", request.customer.tax_number or None)

    items = ET.SubElement(root, "tetelek")
    for item in request.items:
        node = ET.SubElement(items, "tetel")
        _append(node, "megnevezes", item.name)
        _append(node, "mennyiseg", item.quantity)
        _append(node, "mennyisegiEgyseg", item.unit)
        _append(node, "nettoEgysegar", item.unit_net_price)
        _append(node, "afakulcs", VAT_WIRE_CODES[item.vat])
        _append(node, "nettoErtek", item.total_net)
        _append(node, "afaErtek", item.total_vat)
        _append(node, "bruttoErtek", item.total_gross)

    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def parse_response(text: str) -> InvoiceSummary:
    try:
        root = ET.fromstring(text.strip())
    except ET.ParseError as exc:
        raise ProviderError(f"Unreadable provider response: {exc}") from exc

    if _local_name(root.tag) != "xmlszamlavalasz":
        raise ProviderError(f"Unexpected provider response root: {_local_name(root.tag)}")

    fields = {_local_name(child.tag): (child.text or "").strip() for child in root}
    if fields.get("sikeres", "").lower() != "true":
        code = fields.get("hibakod") or None
        message = fields.get("hibauzenet") or "Invoice rejected by provider"
        raise ProviderError(message, code=code)

    invoice_id = fields.get("szamlaszam")
    if not invoice_id:
        raise ProviderError("Provider response has no invoice number")
    pdf = fields.get("pdf")
    if not pdf:
        raise ProviderError(f"Provider response for {invoice_id} has no PDF")
    try:
        document = base64_decode(pdf)
    except ValueError as exc:
        raise ProviderError(f"Invalid PDF payload for {invoice_id}: {exc}") from exc
    return InvoiceSummary(external_id=invoice_id, document=document)


class SzamlazzClient:
    """Provider client for the szamlazz.hu invoice agent."""

    def __init__(
        self,
        agent_key: str,
        invoice_prefix: str,
        bank_name: str,
        bank_account: str,
        url: str = SZAMLAZZ_URL,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.agent_key = agent_key
        self.invoice_prefix = invoice_prefix
        self.bank_name = bank_name
        self.bank_account = bank_account
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls, timeout: float = 30) -> "SzamlazzClient":
        agent_key = _get_agent_key()
        invoice_prefix = _get_env("INVOICE_PREFIX")
        bank_name = _get_env("INVOICE_BANK_NAME")
        bank_account = _get_env("INVOICE_BANK_ACCOUNT")
        missing = [
            name
            for name, value in {
                "INVOICE_AGENT_KEY": agent_key,
                "INVOICE_PREFIX": invoice_prefix,
                "INVOICE_BANK_NAME": bank_name,
                "INVOICE_BANK_ACCOUNT": bank_account,
            }.items()
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing szamlazz.hu configuration: {', '.join(missing)}")
        return cls(
            agent_key=agent_key,
            invoice_prefix=invoice_prefix,
            bank_name=bank_name,
            bank_account=bank_account,
            url=_get_env("SZAMLAZZ_URL") or SZAMLAZZ_URL,
            timeout=timeout,
        )

    def submit(self, request: PendingRequest) -> InvoiceSummary:
        payload = build_invoice_xml(
            request,
            agent_key=self.agent_key,
            invoice_prefix=self.invoice_prefix,
            bank_name=self.bank_name,
            bank_account=self.bank_account,
        )
        try:
            resp = self.session.post(
                self.url,
                files={XML_FIELD_NAME: ("invoice.xml", payload, "text/xml")},
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ProviderError(f"Provider timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise ProviderError(f"Provider request failed: {exc}") from exc

        if resp.status_code >= 400:
            code = resp.headers.get("szlahu_error_code")
            message = resp.headers.get("szlahu_error") or resp.text[:2000]
            raise ProviderError(f"Provider returned HTTP {resp.status_code}: {message}", code=code)

        summary = parse_response(resp.text)
        logger.info(
            "szamlazz.hu created invoice %s for request %s", summary.external_id, request.internal_id
        )
        return summary
