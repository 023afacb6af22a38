"""Job orchestration: one browser session per job, failures folded into results."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Mapping

import httpx
from playwright.async_api import Error as PlaywrightError

from docrender import metrics
from docrender.browser import BrowserManager, BrowserSession
from docrender.capture import ArtifactStore, PdfPageLayout, build_filename, capture_html, capture_pdf
from docrender.errors import LaunchFailed
from docrender.preparation import ImageCheckResult, prepare_for_print
from docrender.readiness import ReadinessPlan, ReadinessReport, ReadinessSynchronizer, navigate
from docrender.settings import Settings, get_settings

__all__ = ["RenderJob", "GenerationResult", "DocumentRenderer", "render_document"]

LOGGER = logging.getLogger(__name__)

OutputKind = Literal["pdf", "html"]


@dataclass(slots=True)
class _JobTrace:
    """Diagnostics gathered while a job runs, kept even when it fails."""

    readiness: ReadinessReport | None = None
    images: ImageCheckResult | None = None


@dataclass(frozen=True, slots=True)
class RenderJob:
    """Inputs for one render; immutable once the job starts."""

    url: str
    output: OutputKind = "pdf"
    wait_for_selector: str | None = None
    wait_time_ms: int | None = None
    auth_headers: Mapping[str, str] | None = None
    report_id: str | None = None
    report_title: str | None = None
    test_mode: bool = False
    fast_mode: bool = False


@dataclass(slots=True)
class GenerationResult:
    """Sole return contract of the rendering core."""

    success: bool
    output: OutputKind
    duration_ms: int
    html: str | None = None
    file_path: Path | None = None
    filename: str | None = None
    size: int | None = None
    error: str | None = None
    images: ImageCheckResult | None = None
    readiness: ReadinessReport | None = field(default=None, repr=False)

    def summary(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "output": self.output,
            "duration": self.duration_ms,
            "size": self.size,
        }
        if self.filename:
            payload["filename"] = self.filename
        if self.error:
            payload["error"] = self.error
        if self.images is not None:
            payload["images"] = {
                "total": self.images.total_images,
                "broken": self.images.broken_count,
            }
        if self.readiness is not None:
            payload["readiness_warnings"] = self.readiness.warnings
        return payload


class DocumentRenderer:
    """Runs render jobs end-to-end; never raises across ``generate_*``."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        browser_manager: BrowserManager | None = None,
        synchronizer: ReadinessSynchronizer | None = None,
        store: ArtifactStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.browsers = browser_manager or BrowserManager(self.settings.browser)
        self.synchronizer = synchronizer or ReadinessSynchronizer()
        self._store = store
        self._http_client = http_client

    @property
    def store(self) -> ArtifactStore:
        if self._store is None:
            self._store = ArtifactStore.from_settings(self.settings.storage)
        return self._store

    async def generate_document(self, job: RenderJob) -> GenerationResult:
        if job.output == "html":
            return await self.generate_html(job)
        return await self.generate_pdf(job)

    async def generate_pdf(self, job: RenderJob) -> GenerationResult:
        started = time.perf_counter()
        trace = _JobTrace()
        LOGGER.info("Generating PDF from %s", job.url)
        try:
            _require_url(job)
            store = self.store
            session = await self.browsers.launch(test_mode=job.test_mode)
            try:
                pdf_bytes = await self._render_pdf(session, job, trace)
            finally:
                await self._close(session)
            filename = build_filename(job.report_id, job.report_title)
            file_path = store.persist(pdf_bytes, filename)
        except Exception as exc:  # converted into a failure result for callers
            return self._failure(job, started, exc, trace)

        duration_ms = _elapsed_ms(started)
        LOGGER.info("PDF generated in %dms (%d bytes)", duration_ms, len(pdf_bytes))
        metrics.observe_job("pdf", success=True, duration_ms=duration_ms)
        return GenerationResult(
            success=True,
            output="pdf",
            duration_ms=duration_ms,
            file_path=file_path,
            filename=filename,
            size=len(pdf_bytes),
            images=trace.images,
            readiness=trace.readiness,
        )

    async def generate_html(self, job: RenderJob) -> GenerationResult:
        started = time.perf_counter()
        trace = _JobTrace()
        LOGGER.info("Generating HTML from %s", job.url)
        try:
            _require_url(job)
            session = await self.browsers.launch(test_mode=job.test_mode)
            try:
                html = await self._render_html(session, job, trace)
            finally:
                await self._close(session)
        except Exception as exc:  # converted into a failure result for callers
            return self._failure(job, started, exc, trace)

        duration_ms = _elapsed_ms(started)
        LOGGER.info("HTML generated in %dms (%d chars)", duration_ms, len(html))
        metrics.observe_job("html", success=True, duration_ms=duration_ms)
        return GenerationResult(
            success=True,
            output="html",
            duration_ms=duration_ms,
            html=html,
            size=len(html),
            readiness=trace.readiness,
        )

    async def _render_pdf(self, session: BrowserSession, job: RenderJob, trace: _JobTrace) -> bytes:
        timeouts = self.settings.timeouts
        pdf = self.settings.pdf
        await navigate(
            session,
            job.url,
            timeout_ms=timeouts.navigation_ms,
            idle_time_ms=timeouts.network_idle_time_ms,
            viewport={"width": pdf.viewport_width, "height": pdf.viewport_height},
            auth_headers=job.auth_headers,
            fast_mode=job.fast_mode,
        )
        trace.readiness = await self.synchronizer.await_ready(
            session,
            ReadinessPlan.for_pdf(timeouts, job.wait_for_selector or pdf.ready_selector),
        )
        trace.images = await prepare_for_print(
            session.page,
            self.settings,
            client=self._http_client,
            headers=job.auth_headers,
        )
        if job.test_mode:
            await self.synchronizer.test_mode_pause(session, timeouts.test_mode_delay_ms)
        return await capture_pdf(session.page, PdfPageLayout.from_settings(pdf), timeout_ms=timeouts.capture_ms)

    async def _render_html(self, session: BrowserSession, job: RenderJob, trace: _JobTrace) -> str:
        timeouts = self.settings.timeouts
        browser = self.settings.browser
        await navigate(
            session,
            job.url,
            timeout_ms=timeouts.navigation_ms,
            idle_time_ms=timeouts.network_idle_time_ms,
            viewport={"width": browser.window_width, "height": browser.window_height},
            auth_headers=job.auth_headers,
            fast_mode=job.fast_mode,
        )
        trace.readiness = await self.synchronizer.await_ready(
            session,
            ReadinessPlan.for_html(timeouts, job.wait_for_selector, job.wait_time_ms),
        )
        if job.test_mode:
            await self.synchronizer.test_mode_pause(session, timeouts.test_mode_delay_ms)
        return await capture_html(session.page, timeout_ms=timeouts.capture_ms)

    async def _close(self, session: BrowserSession) -> None:
        try:
            await session.close()
        except PlaywrightError as exc:
            LOGGER.error("Browser session did not close cleanly: %s", exc)

    def _failure(
        self,
        job: RenderJob,
        started: float,
        exc: Exception,
        trace: _JobTrace,
    ) -> GenerationResult:
        duration_ms = _elapsed_ms(started)
        LOGGER.error("%s generation failed after %dms: %s", job.output.upper(), duration_ms, exc, exc_info=exc)
        if isinstance(exc, LaunchFailed):
            metrics.LAUNCH_FAILURES.inc()
        metrics.observe_job(job.output, success=False, duration_ms=duration_ms)
        return GenerationResult(
            success=False,
            output=job.output,
            duration_ms=duration_ms,
            error=str(exc) or type(exc).__name__,
            images=trace.images,
            readiness=trace.readiness,
        )


def render_document(job: RenderJob, *, settings: Settings | None = None) -> GenerationResult:
    """Blocking entry point for callers without an event loop."""

    return asyncio.run(DocumentRenderer(settings).generate_document(job))


def _require_url(job: RenderJob) -> None:
    if not job.url or not job.url.strip():
        raise ValueError("URL is required")


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
