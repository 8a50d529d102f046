from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .cache import CacheService
from .config import Config, load_config
from .db import DBConn
from .models import STATUS_COMPLETED, STATUS_ERROR
from .notifier import STAGE_COMPLETED, STAGE_ERROR, Notifier
from .progress import ProgressStream, format_sse
from .pubsub import Broker, build_broker
from .storage import get_document, get_latest_summary_for_document, init_db
from .submissions import submit_url
from .utils import configure_logging, is_http_url, log_event

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again later."

app = FastAPI(title="Digestor API")
logger = logging.getLogger("digestor.api")


@dataclass
class AppServices:
    config: Config
    connect: Callable[[], DBConn]
    broker: Broker
    notifier: Notifier
    cache: CacheService


_services: AppServices | None = None


def build_services(config: Config | None = None) -> AppServices:
    config = config or load_config()
    broker = build_broker()
    return AppServices(
        config=config,
        connect=init_db,
        broker=broker,
        notifier=Notifier(broker),
        cache=CacheService.from_config(config),
    )


def get_services() -> AppServices:
    global _services
    if _services is None:
        _services = build_services()
    return _services


class SummarizeRequest(BaseModel):
    url: str


@app.on_event("startup")
def _startup() -> None:
    configure_logging("digestor.api")


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    log_event(logger, logging.INFO, "request_invalid", path=request.url.path)
    return JSONResponse({"message": "Invalid request body."}, status_code=400)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"message": exc.detail}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    log_event(
        logger,
        logging.ERROR,
        "request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse({"message": GENERIC_ERROR_MESSAGE}, status_code=500)


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.post("/summarize")
def summarize(
    payload: SummarizeRequest,
    services: AppServices = Depends(get_services),
    x_user_id: str | None = Header(default=None),
):
    url = payload.url.strip()
    if not is_http_url(url):
        return JSONResponse({"message": "A valid http(s) URL is required."}, status_code=400)
    conn = services.connect()
    try:
        document, existing = submit_url(
            conn,
            services.config,
            services.cache,
            services.notifier,
            url,
            owner_id=x_user_id or None,
            logger=logger,
        )
    finally:
        conn.close()
    return {"id": document.id, "status": document.status, "existing": existing}


@app.get("/summary/{doc_id}")
def summary_get(doc_id: str, services: AppServices = Depends(get_services)) -> dict[str, Any]:
    cached = services.cache.get_cached_summary(doc_id)
    if isinstance(cached, dict) and cached.get("summary") is not None:
        return cached
    conn = services.connect()
    try:
        summary = get_latest_summary_for_document(conn, doc_id)
    finally:
        conn.close()
    if summary is None:
        raise HTTPException(status_code=404, detail="Summary not found.")
    body = {"summary": summary.content, "type": summary.type, "createdAt": summary.created_at}
    services.cache.cache_summary(doc_id, body)
    return body


@app.get("/progress/{doc_id}")
def progress_stream(doc_id: str, services: AppServices = Depends(get_services)) -> StreamingResponse:
    conn = services.connect()
    try:
        document = get_document(conn, doc_id)
    finally:
        conn.close()
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found.")

    stream = ProgressStream(
        services.broker,
        doc_id,
        heartbeat_seconds=services.config.progress.heartbeat_seconds,
        snapshot=lambda: _terminal_snapshot(services, doc_id),
        load_summary=lambda: _load_summary(services, doc_id),
        logger=logger,
    )

    async def frames() -> AsyncIterator[str]:
        try:
            async for event in stream.events():
                yield format_sse(event)
        finally:
            stream.close()

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _terminal_snapshot(services: AppServices, doc_id: str) -> dict[str, Any] | None:
    conn = services.connect()
    try:
        document = get_document(conn, doc_id)
        if document is None:
            return None
        if document.status == STATUS_COMPLETED:
            event: dict[str, Any] = {"id": doc_id, "stage": STAGE_COMPLETED}
            summary = get_latest_summary_for_document(conn, doc_id)
            if summary is not None:
                event["summary"] = summary.content
            return event
        if document.status == STATUS_ERROR:
            return {"id": doc_id, "stage": STAGE_ERROR, "error": document.error or "failed"}
        return None
    finally:
        conn.close()


def _load_summary(services: AppServices, doc_id: str) -> dict[str, Any] | None:
    conn = services.connect()
    try:
        summary = get_latest_summary_for_document(conn, doc_id)
    finally:
        conn.close()
    return summary.content if summary else None


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("digestor")
    except Exception:  # noqa: BLE001
        return "unknown"
