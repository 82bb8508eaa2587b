from __future__ import annotations

import base64
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response, status
from starlette.concurrency import run_in_threadpool

from fulfillment.config import Settings, load_settings
from fulfillment.documents import DocumentStore
from fulfillment.errors import NotFound, StorageError, ValidationError
from fulfillment.fulfillment_queue import FulfillmentQueue
from fulfillment.models import LedgerEntry, PendingRequest
from fulfillment.provider import InvoiceProvider
from fulfillment.record_store import RecordStore
from fulfillment.service import RequestService
from fulfillment.szamlazz_client import SzamlazzClient
from fulfillment.worker import Worker, recover


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("invoice-fulfillment")

APP_VERSION = os.getenv("APP_VERSION", "0.1.0")


class Runtime:
    """Stores, queue and worker for one running process."""

    def __init__(self, settings: Settings, provider: InvoiceProvider) -> None:
        self.settings = settings
        self.pending: RecordStore[PendingRequest] = RecordStore.load_or_init(
            settings.pending_dir, PendingRequest, key="internal_id"
        )
        self.ledger: RecordStore[LedgerEntry] = RecordStore.load_or_init(
            settings.ledger_dir, LedgerEntry, key="id"
        )
        self.documents = DocumentStore(settings.pdf_dir)
        self.queue: FulfillmentQueue[PendingRequest] = FulfillmentQueue(settings.queue_capacity)
        self.worker = Worker(self.pending, self.ledger, self.queue, provider, self.documents)
        self.service = RequestService(self.pending, self.ledger, self.queue)

    def start(self) -> int:
        self.worker.start()
        # Replays before the app starts taking requests.
        return recover(self.pending, self.ledger, self.queue)

    def stop(self) -> None:
        self.queue.close()
        if not self.worker.join(self.settings.shutdown_timeout):
            logger.warning(
                "Worker still busy after %ss; unfinished requests stay pending",
                self.settings.shutdown_timeout,
            )


def create_app(
    provider: Optional[InvoiceProvider] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = settings or load_settings()
        client = provider or SzamlazzClient.from_env(timeout=resolved.provider_timeout)
        runtime = Runtime(resolved, client)
        recovered = await run_in_threadpool(runtime.start)
        logger.info("Startup complete; %d request(s) replayed", recovered)
        app.state.runtime = runtime
        try:
            yield
        finally:
            await run_in_threadpool(runtime.stop)

    application = FastAPI(lifespan=lifespan)
    _register_routes(application)
    return application


def _max_request_bytes() -> Optional[int]:
    raw = os.getenv("MAX_REQUEST_BYTES")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid MAX_REQUEST_BYTES value: %s", raw)
        return None


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Basic"},
    )


def _check_basic_auth(request: Request) -> None:
    basic_user = os.getenv("BASIC_USER")
    basic_pass = os.getenv("BASIC_PASS")
    if basic_user is None or basic_pass is None:
        logger.error("BASIC_USER/BASIC_PASS not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Auth not configured")

    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.lower().startswith("basic "):
        raise _unauthorized()

    token = auth_header.split(" ", 1)[1].strip()
    try:
        decoded = base64.b64decode(token).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        raise _unauthorized()

    if ":" not in decoded:
        raise _unauthorized()

    username, password = decoded.split(":", 1)
    if username != basic_user or password != basic_pass:
        raise _unauthorized()


def _enforce_request_size(request: Request) -> None:
    limit = _max_request_bytes()
    if limit is None:
        return

    content_length = request.headers.get("content-length")
    if content_length is None:
        return

    try:
        length = int(content_length)
    except ValueError:
        return

    if length > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Request too large: {length} bytes (max {limit})",
        )


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _entry_payload(runtime: Runtime, entry: LedgerEntry) -> Dict[str, Any]:
    data = entry.model_dump(mode="json")
    data["pending"] = runtime.service.is_pending(entry.id)
    return data


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/version")
    async def version() -> Dict[str, Any]:
        return {
            "status": "ok",
            "revision": os.getenv("K_REVISION"),
            "service": os.getenv("K_SERVICE"),
            "commit": os.getenv("COMMIT_SHA") or os.getenv("REVISION_ID"),
            "app_version": APP_VERSION,
        }

    @app.post("/invoices", status_code=status.HTTP_202_ACCEPTED)
    async def create_invoice(request: Request) -> Dict[str, Any]:
        _check_basic_auth(request)
        _enforce_request_size(request)

        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc

        if not isinstance(payload, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="JSON payload must be an object")

        runtime = _runtime(request)
        try:
            entry = await run_in_threadpool(runtime.service.accept, payload)
        except ValidationError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
        except StorageError as exc:
            logger.exception("Could not persist invoice request: %s", exc)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Storage error") from exc

        return {"status": "accepted", "invoice": _entry_payload(runtime, entry)}

    @app.get("/invoices/{internal_id}")
    def get_invoice(request: Request, internal_id: int) -> Dict[str, Any]:
        _check_basic_auth(request)
        runtime = _runtime(request)
        try:
            entry = runtime.service.get(internal_id)
        except NotFound as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return {"status": "ok", "invoice": _entry_payload(runtime, entry)}

    @app.get("/invoices")
    def find_invoices(
        request: Request,
        reference_id: List[str] = Query(default=[]),
    ) -> Dict[str, Any]:
        _check_basic_auth(request)
        runtime = _runtime(request)
        entries = runtime.service.find_by_reference(reference_id)
        return {
            "status": "ok",
            "count": len(entries),
            "invoices": [_entry_payload(runtime, entry) for entry in entries],
        }

    @app.get("/documents/{external_id}")
    def download_document(request: Request, external_id: str) -> Response:
        _check_basic_auth(request)
        runtime = _runtime(request)
        try:
            data = runtime.documents.load(external_id)
        except NotFound as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found") from exc
        return Response(
            content=data,
            media_type="application/pdf",
            headers={"Content-Disposition": f'inline; filename="{runtime.documents.path_for(external_id).name}"'},
        )

    @app.get("/documents/{external_id}/base64")
    def download_document_base64(request: Request, external_id: str) -> Dict[str, Any]:
        _check_basic_auth(request)
        runtime = _runtime(request)
        try:
            data = runtime.documents.load_base64(external_id)
        except NotFound as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found") from exc
        return {"status": "ok", "external_id": external_id, "data": data}


app = create_app()
