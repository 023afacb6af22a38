"""Artifact extraction (HTML text, PDF bytes) and on-disk retention."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from docrender.errors import CaptureFailed, PersistenceFailed
from docrender.settings import PdfSettings, StorageSettings

__all__ = [
    "PdfPageLayout",
    "capture_html",
    "capture_pdf",
    "build_filename",
    "ArtifactStore",
]

LOGGER = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9]")


@dataclass(frozen=True, slots=True)
class PdfPageLayout:
    """Physical page geometry handed to Chromium's print-to-PDF."""

    width: str
    height: str
    margins: dict[str, str]
    background_color: str

    @classmethod
    def from_settings(cls, settings: PdfSettings) -> PdfPageLayout:
        return cls(
            width=settings.page_width,
            height=settings.page_height,
            margins=settings.margins,
            background_color=settings.background_color,
        )


async def capture_html(page: Page, *, timeout_ms: int = 120_000) -> str:
    """Serialize the current document."""

    try:
        return await asyncio.wait_for(page.content(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as exc:
        raise CaptureFailed(f"HTML snapshot did not finish within {timeout_ms}ms") from exc
    except PlaywrightError as exc:
        raise CaptureFailed(f"HTML snapshot failed: {exc}") from exc


async def capture_pdf(page: Page, layout: PdfPageLayout, *, timeout_ms: int = 120_000) -> bytes:
    """Re-pin the background, then print with fixed geometry and no header/footer."""

    try:
        await page.add_style_tag(
            content=f"html, body {{ background: {layout.background_color} !important; }}",
        )
        return await asyncio.wait_for(
            page.pdf(
                width=layout.width,
                height=layout.height,
                print_background=True,
                margin=layout.margins,
                display_header_footer=False,
                prefer_css_page_size=False,
            ),
            timeout=timeout_ms / 1000,
        )
    except asyncio.TimeoutError as exc:
        raise CaptureFailed(f"PDF snapshot did not finish within {timeout_ms}ms") from exc
    except PlaywrightError as exc:
        raise CaptureFailed(f"PDF snapshot failed: {exc}") from exc


def build_filename(
    report_id: str | None = None,
    report_title: str | None = None,
    *,
    now_ms: int | None = None,
) -> str:
    """``<title>-<id>-<ms>.pdf`` when both are known, else ``report-<id|download>.pdf``."""

    if report_id and report_title:
        stamp = now_ms if now_ms is not None else int(time.time() * 1000)
        safe_title = _UNSAFE_FILENAME_CHARS.sub("_", report_title)
        return f"{safe_title}-{report_id}-{stamp}.pdf"
    return f"report-{report_id or 'download'}.pdf"


class ArtifactStore:
    """Working directory for generated PDFs; swept once on construction."""

    def __init__(self, directory: Path, *, retention: timedelta = timedelta(hours=24)) -> None:
        self.directory = Path(directory)
        self.retention = retention
        self.directory.mkdir(parents=True, exist_ok=True)
        self.sweep()

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> ArtifactStore:
        return cls(settings.output_dir, retention=timedelta(hours=settings.retention_hours))

    def path_for(self, filename: str) -> Path:
        candidate = (self.directory / filename).resolve()
        if candidate.parent != self.directory.resolve():
            msg = f"Refusing to write outside {self.directory}: {filename}"
            raise PersistenceFailed(msg)
        return candidate

    def persist(self, data: bytes, filename: str) -> Path:
        """Write atomically under a per-job unique name ending in ``filename``.

        Concurrent jobs that derive the same download name never share a path.
        On failure no partial file remains.
        """

        target = self.path_for(f"{uuid.uuid4().hex[:12]}-{filename}")
        tmp_name: str | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".partial-", suffix=".pdf")
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except OSError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise PersistenceFailed(f"Could not write {target}: {exc}") from exc
        LOGGER.debug("Persisted %d bytes to %s", len(data), target)
        return target

    def sweep(self, *, now: float | None = None) -> int:
        """Delete files older than the retention window; return how many were removed."""

        cutoff = (now if now is not None else time.time()) - self.retention.total_seconds()
        removed = 0
        try:
            entries = list(self.directory.iterdir())
        except OSError as exc:
            LOGGER.error("Artifact cleanup failed: %s", exc)
            return 0
        for entry in entries:
            try:
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
            except OSError as exc:
                LOGGER.warning("Could not remove stale artifact %s: %s", entry, exc)
        if removed:
            LOGGER.info("Cleaned up %d old artifact(s) in %s", removed, self.directory)
        return removed

    def discard(self, path: Path | str) -> None:
        """Remove a delivered artifact."""

        try:
            Path(path).unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.error("Failed to delete artifact %s: %s", path, exc)
        else:
            LOGGER.info("Artifact deleted: %s", Path(path).name)
