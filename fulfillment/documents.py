from __future__ import annotations

import base64
import binascii
import logging
import os
from pathlib import Path
from urllib.parse import quote

from fulfillment.errors import NotFound, StorageError
from fulfillment.record_store import fsync_directory

logger = logging.getLogger(__name__)


def base64_decode(value: str) -> bytes:
    # The provider wraps its base64 payload across lines.
    cleaned = "".join(value.split())
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc


def base64_encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def _normalize_external_id(external_id: str) -> str:
    # One-to-one: distinct ids map to distinct file names.
    return quote(external_id.strip(), safe="")


class DocumentStore:
    """Invoice PDFs on disk, one file per external invoice id."""

    def __init__(self, location: Path | str) -> None:
        self.location = Path(location)

    def path_for(self, external_id: str) -> Path:
        name = _normalize_external_id(external_id)
        if not name or name in {".", ".."}:
            raise ValueError(f"Invalid external id: {external_id!r}")
        return self.location / f"{name}.pdf"

    def save(self, external_id: str, data: bytes) -> Path:
        path = self.path_for(external_id)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            self.location.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
            fsync_directory(self.location)
        except OSError as exc:
            raise StorageError(f"Cannot save document {path}: {exc}") from exc
        logger.info("Saved document %s (%d bytes)", path, len(data))
        return path

    def exists(self, external_id: str) -> bool:
        try:
            return self.path_for(external_id).is_file()
        except ValueError:
            return False

    def load(self, external_id: str) -> bytes:
        try:
            path = self.path_for(external_id)
        except ValueError:
            raise NotFound(external_id, "document store")
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFound(external_id, "document store")
        except OSError as exc:
            raise StorageError(f"Cannot read document {path}: {exc}") from exc

    def load_base64(self, external_id: str) -> str:
        return base64_encode(self.load(external_id))
