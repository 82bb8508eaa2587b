from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def _get_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value else None


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s value: %s (using %s)", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Non-positive %s value: %s (using %s)", name, raw, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    pending_dir: Path
    ledger_dir: Path
    pdf_dir: Path
    queue_capacity: int = 100
    provider_timeout: int = 30
    shutdown_timeout: int = 60


def load_settings() -> Settings:
    data_dir = Path(_get_env("DATA_DIR") or "data")
    return Settings(
        pending_dir=Path(_get_env("PENDING_DIR") or data_dir / "invoice_objects"),
        ledger_dir=Path(_get_env("LEDGER_DIR") or data_dir / "invoices"),
        pdf_dir=Path(_get_env("PDF_DIR") or data_dir / "pdf"),
        queue_capacity=_get_int("QUEUE_CAPACITY", 100),
        provider_timeout=_get_int("PROVIDER_TIMEOUT", 30),
        shutdown_timeout=_get_int("SHUTDOWN_TIMEOUT", 60),
    )
