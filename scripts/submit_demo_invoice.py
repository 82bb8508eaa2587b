#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from datetime import date
from pathlib import Path

from fulfillment.documents import DocumentStore
from fulfillment.errors import ProviderError
from fulfillment.models import InvoiceRequest, PendingRequest, VatRate, gross_up
from fulfillment.szamlazz_client import SZAMLAZZ_URL, SzamlazzClient


def _env(name: str) -> str | None:
    value = os.getenv(name)
    return value.strip() if value else None


def _demo_request(net: int, vat: VatRate, created_by: str) -> InvoiceRequest:
    gross = gross_up(net, vat)
    today = date.today().isoformat()
    return InvoiceRequest.model_validate(
        {
            "reference_id": "demo",
            "customer": {
                "name": "Demo Elek",
                "zip": "4551",
                "location": "Nyíregyháza",
                "street": "Mogyorós utca 36.",
            },
            "header": {
                "date_created": today,
                "date_completion": today,
                "payment_duedate": today,
                "payment_method": "transfer",
            },
            "items": [
                {
                    "name": "Demo item",
                    "quantity": 1,
                    "unit": "db",
                    "unit_net_price": net,
                    "vat": vat.value,
                    "total_net": net,
                    "total_vat": gross - net,
                    "total_gross": gross,
                }
            ],
            "total_net": net,
            "total_vat": gross - net,
            "total_gross": gross,
            "created_by": created_by,
        }
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Submit one demo invoice straight to szamlazz.hu.")
    parser.add_argument("--agent-key", default=_env("INVOICE_AGENT_KEY"), required=False)
    parser.add_argument("--prefix", default=_env("INVOICE_PREFIX"), required=False)
    parser.add_argument("--bank-name", default=_env("INVOICE_BANK_NAME"), required=False)
    parser.add_argument("--bank-account", default=_env("INVOICE_BANK_ACCOUNT"), required=False)
    parser.add_argument("--url", default=_env("SZAMLAZZ_URL") or SZAMLAZZ_URL)
    parser.add_argument("--net", type=int, default=100, help="Net amount in HUF, default 100")
    parser.add_argument("--vat", default="27", choices=[rate.value for rate in VatRate])
    parser.add_argument("--created-by", default="demo")
    parser.add_argument("--out-dir", default="pdf", help="Where to save the returned PDF")
    args = parser.parse_args()

    missing = [
        name
        for name, value in {
            "agent_key": args.agent_key,
            "prefix": args.prefix,
            "bank_name": args.bank_name,
            "bank_account": args.bank_account,
        }.items()
        if not value
    ]
    if missing:
        raise SystemExit(f"Missing required values: {', '.join(missing)}")

    client = SzamlazzClient(
        agent_key=args.agent_key,
        invoice_prefix=args.prefix,
        bank_name=args.bank_name,
        bank_account=args.bank_account,
        url=args.url,
    )
    request = PendingRequest.from_request(1, _demo_request(args.net, VatRate(args.vat), args.created_by))

    try:
        summary = client.submit(request)
    except ProviderError as exc:
        raise SystemExit(f"Provider error ({exc.code}): {exc}")

    path = DocumentStore(Path(args.out_dir)).save(summary.external_id, summary.document)
    print(json.dumps({"invoice_id": summary.external_id, "pdf": str(path)}, indent=2))


if __name__ == "__main__":
    main()
