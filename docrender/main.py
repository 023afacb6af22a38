"""Entry point for the FastAPI application."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from importlib import metadata
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from prometheus_client import start_http_server
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from docrender.auth import AccessKeyRegistry, RenderActor, require_actor
from docrender.browser import BrowserManager
from docrender.schemas import HealthResponse, HtmlRequest, PdfRequest, RenderFailure
from docrender.service import DocumentRenderer, GenerationResult, RenderJob
from docrender.settings import get_settings

LOGGER = logging.getLogger(__name__)

PDF_AUTH_HEADER = "x-pdf-access-token"
SERVICE_NAME = "docrender"
ENDPOINTS = {
    "health": "/api/health",
    "pdf": "/api/pdf/url-to-pdf",
    "html": "/api/html/url-to-html",
}

settings = get_settings()
RENDERER_FACTORY = DocumentRenderer
_PROMETHEUS_EXPORTER_STARTED = False


def _service_version() -> str:
    try:
        return metadata.version("docrender")
    except metadata.PackageNotFoundError:  # pragma: no cover - source checkout
        return "0.0.0"


def _start_prometheus_exporter() -> None:
    """Expose Prometheus metrics on the configured auxiliary port."""

    global _PROMETHEUS_EXPORTER_STARTED
    if _PROMETHEUS_EXPORTER_STARTED:
        return
    port = settings.telemetry.prometheus_port
    if port <= 0:
        return
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return
    _PROMETHEUS_EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    _start_prometheus_exporter()
    yield


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Log every request with its status and duration."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        LOGGER.info("Incoming request %s %s", request.method, request.url.path)
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - started) * 1000)
        level = logging.ERROR if response.status_code >= 400 else logging.INFO
        LOGGER.log(
            level,
            "Response %s %s - %s (%dms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response


app = FastAPI(title="docrender", lifespan=_lifespan)
app.state.access_keys = AccessKeyRegistry.from_settings(settings)
app.add_middleware(RequestLogMiddleware)
instrumentator = Instrumentator(should_instrument_requests_inprogress=True)
instrumentator.instrument(app)
try:
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)
except ValueError:  # pragma: no cover - already registered
    LOGGER.debug("Prometheus /metrics endpoint already exposed")


def _build_renderer() -> DocumentRenderer:
    return RENDERER_FACTORY(settings)


def _failure_response(message: str, result: GenerationResult) -> JSONResponse:
    body = RenderFailure(error=message, message=result.error, duration=result.duration_ms)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump())


@app.get("/")
async def index() -> dict[str, object]:
    return {
        "service": SERVICE_NAME,
        "version": _service_version(),
        "description": "Render web pages to PDF or HTML with a headless browser",
        "endpoints": ENDPOINTS,
        "documentation": {
            "urlToPdf": {
                "method": "POST",
                "url": ENDPOINTS["pdf"],
                "body": {
                    "url": "string (required) - URL to convert to PDF",
                    "reportId": "string (optional) - Report identifier",
                    "reportTitle": "string (optional) - Report title for filename",
                    "waitForSelector": "string (optional) - CSS selector awaited before capture",
                },
                "headers": {
                    "Authorization": "Bearer <token> - API authentication token",
                    PDF_AUTH_HEADER: "string (optional) - forwarded to the target page",
                },
            },
            "urlToHtml": {
                "method": "POST",
                "url": ENDPOINTS["html"],
                "body": {
                    "url": "string (required) - URL to render",
                    "waitForSelector": "string (optional)",
                    "waitTime": "integer (optional) - extra delay in ms",
                },
            },
        },
    }


@app.get("/api/health", tags=["health"])
async def healthcheck() -> JSONResponse:
    connected, version, executable = await BrowserManager(settings.browser).check_browser()
    LOGGER.info("Browser check: connected=%s version=%s executable=%s", connected, version, executable)
    body = HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        service=SERVICE_NAME,
        version=_service_version(),
        browser_connected=connected,
        browser_version=version if connected else None,
        endpoints=ENDPOINTS,
    )
    return JSONResponse(content=body.model_dump(by_alias=True, exclude_none=True))


@app.post(ENDPOINTS["pdf"], response_class=FileResponse)
async def url_to_pdf(
    payload: PdfRequest,
    actor: RenderActor = Depends(require_actor),
    pdf_access_token: Optional[str] = Header(None, alias=PDF_AUTH_HEADER),
):
    if not payload.url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="URL is required")
    LOGGER.info(
        "PDF request from %s: url=%s report_id=%s report_title=%s",
        actor.actor_name,
        payload.url,
        payload.report_id,
        payload.report_title,
    )
    renderer = _build_renderer()
    result = await renderer.generate_pdf(
        RenderJob(
            url=payload.url,
            output="pdf",
            wait_for_selector=payload.wait_for_selector,
            auth_headers={PDF_AUTH_HEADER: pdf_access_token} if pdf_access_token else None,
            report_id=payload.report_id,
            report_title=payload.report_title,
        )
    )
    if not result.success or result.file_path is None:
        LOGGER.error("PDF render failed: %s", result.error)
        return _failure_response("Failed to generate PDF", result)

    LOGGER.info("PDF ready: %s (%s bytes, %dms)", result.filename, result.size, result.duration_ms)
    return FileResponse(
        result.file_path,
        media_type="application/pdf",
        filename=result.filename,
        background=BackgroundTask(renderer.store.discard, result.file_path),
    )


@app.post(ENDPOINTS["html"], response_class=HTMLResponse)
async def url_to_html(payload: HtmlRequest, actor: RenderActor = Depends(require_actor)):
    if not payload.url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="URL is required")
    LOGGER.info(
        "HTML request from %s: url=%s selector=%s wait=%s",
        actor.actor_name,
        payload.url,
        payload.wait_for_selector,
        payload.wait_time,
    )
    result = await _build_renderer().generate_html(
        RenderJob(
            url=payload.url,
            output="html",
            wait_for_selector=payload.wait_for_selector,
            wait_time_ms=payload.wait_time,
        )
    )
    if not result.success or result.html is None:
        LOGGER.error("HTML render failed: %s", result.error)
        return _failure_response("Failed to generate HTML", result)

    LOGGER.info("HTML ready: %s chars in %dms", result.size, result.duration_ms)
    return HTMLResponse(content=result.html)
