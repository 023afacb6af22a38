from __future__ import annotations

import os
import time
from datetime import timedelta
from pathlib import Path

import pytest
from playwright.async_api import Error as PlaywrightError

import docrender.capture as capture_module
from docrender.capture import ArtifactStore, PdfPageLayout, build_filename, capture_html, capture_pdf
from docrender.errors import CaptureFailed, PersistenceFailed
from tests.fakes import FakePage


def _layout() -> PdfPageLayout:
    return PdfPageLayout(
        width="1920px",
        height="1500px",
        margins={"top": "5mm", "right": "10mm", "bottom": "5mm", "left": "10mm"},
        background_color="#EDEFF2",
    )


def test_filename_with_title_and_id():
    assert build_filename("42", "My Report!", now_ms=1700000000000) == "My_Report_-42-1700000000000.pdf"


def test_filename_fallbacks():
    assert build_filename() == "report-download.pdf"
    assert build_filename("42") == "report-42.pdf"
    assert build_filename(None, "Only a title") == "report-download.pdf"


def test_filename_uses_current_time(monkeypatch):
    monkeypatch.setattr(capture_module.time, "time", lambda: 1.5)
    assert build_filename("7", "Q3/Plan") == "Q3_Plan-7-1500.pdf"


def test_sweep_removes_only_expired(tmp_path: Path):
    store = ArtifactStore(tmp_path, retention=timedelta(hours=24))
    now = time.time()
    fresh = tmp_path / "fresh.pdf"
    stale = tmp_path / "stale.pdf"
    fresh.write_bytes(b"a")
    stale.write_bytes(b"b")
    os.utime(fresh, (now - 3600, now - 3600))
    os.utime(stale, (now - 25 * 3600, now - 25 * 3600))

    removed = store.sweep(now=now)

    assert removed == 1
    assert fresh.exists()
    assert not stale.exists()


def test_construction_sweeps(tmp_path: Path):
    stale = tmp_path / "old.pdf"
    stale.write_bytes(b"x")
    old = time.time() - 48 * 3600
    os.utime(stale, (old, old))

    ArtifactStore(tmp_path)

    assert not stale.exists()


def test_persist_writes_file(tmp_path: Path):
    store = ArtifactStore(tmp_path / "out")
    path = store.persist(b"%PDF", "report-1.pdf")

    assert path.parent == (tmp_path / "out").resolve()
    assert path.name.endswith("-report-1.pdf")
    assert path.read_bytes() == b"%PDF"
    assert [entry.name for entry in path.parent.iterdir()] == [path.name]


def test_persist_same_filename_gets_distinct_paths(tmp_path: Path):
    store = ArtifactStore(tmp_path)
    first = store.persist(b"%PDF first", "report-download.pdf")
    second = store.persist(b"%PDF second", "report-download.pdf")

    assert first != second
    assert first.read_bytes() == b"%PDF first"
    assert second.read_bytes() == b"%PDF second"


def test_persist_failure_leaves_no_partial(tmp_path: Path, monkeypatch):
    store = ArtifactStore(tmp_path)

    def _boom(src, dst):  # noqa: ARG001
        raise OSError("disk full")

    monkeypatch.setattr(capture_module.os, "replace", _boom)

    with pytest.raises(PersistenceFailed, match="disk full"):
        store.persist(b"%PDF", "report-1.pdf")
    assert list(tmp_path.iterdir()) == []


def test_persist_rejects_traversal(tmp_path: Path):
    store = ArtifactStore(tmp_path / "out")
    with pytest.raises(PersistenceFailed):
        store.persist(b"x", "../escape.pdf")


def test_discard_is_quiet_for_missing(tmp_path: Path):
    store = ArtifactStore(tmp_path)
    target = store.persist(b"x", "a.pdf")
    store.discard(target)
    store.discard(target)
    assert not target.exists()


@pytest.mark.asyncio()
async def test_capture_pdf_pins_background_and_geometry():
    page = FakePage()
    data = await capture_pdf(page, _layout())

    assert data.startswith(b"%PDF")
    assert page.style_tags == ["html, body { background: #EDEFF2 !important; }"]
    assert page.pdf_calls == [
        {
            "width": "1920px",
            "height": "1500px",
            "print_background": True,
            "margin": {"top": "5mm", "right": "10mm", "bottom": "5mm", "left": "10mm"},
            "display_header_footer": False,
            "prefer_css_page_size": False,
        }
    ]


@pytest.mark.asyncio()
async def test_capture_errors_are_wrapped():
    with pytest.raises(CaptureFailed):
        await capture_pdf(FakePage(pdf_error=PlaywrightError("Target closed")), _layout())
    with pytest.raises(CaptureFailed):
        await capture_html(FakePage(content_error=PlaywrightError("Target closed")))


@pytest.mark.asyncio()
async def test_capture_html_returns_document():
    assert await capture_html(FakePage(html="<html>hi</html>")) == "<html>hi</html>"


@pytest.mark.asyncio()
async def test_stalled_pdf_capture_is_bounded():
    page = FakePage(stalled={"pdf"})
    with pytest.raises(CaptureFailed, match="did not finish within 50ms"):
        await capture_pdf(page, _layout(), timeout_ms=50)


@pytest.mark.asyncio()
async def test_stalled_html_capture_is_bounded():
    with pytest.raises(CaptureFailed, match="did not finish within 50ms"):
        await capture_html(FakePage(stalled={"content"}), timeout_ms=50)
