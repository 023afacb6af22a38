"""Live Chromium checks; enable with DOCRENDER_E2E=1 and an installed browser."""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

import httpx
import pytest

from docrender.browser import BrowserManager
from docrender.preparation import PrintLayout, apply_print_layout, repair_broken_images
from docrender.service import DocumentRenderer, RenderJob
from tests.fakes import make_settings

pytestmark = [
    pytest.mark.e2e,
    pytest.mark.skipif(os.getenv("DOCRENDER_E2E") != "1", reason="set DOCRENDER_E2E=1 to drive a real browser"),
]

REPORT_HTML = """
<html><body>
  <div data-pdf-content="true">
    <section data-section="overview"><div data-overview-cards="true"><div>a</div><div>b</div></div></section>
    <section data-section="seo"><p>Keywords</p></section>
    <div data-competitors-container="true">
      <div data-competitor-item="true">c1</div><div data-competitor-item="true">c2</div>
    </div>
  </div>
</body></html>
"""

IMAGES_HTML = """
<html><body>
  <img src="https://cdn.example/tiny.png" width="20" height="20">
  <img src="https://cdn.example/smile.png" class="emoji" width="300" height="200">
  <span class="MyIcon"><img src="https://cdn.example/glyph.png" width="300" height="200"></span>
  <img src="https://cdn.example/chart.png" width="300" height="200">
  <img src="https://gone.example/photo.png" width="300" height="200">
</body></html>
"""

FALLBACK = "https://assets.example/fallback.svg"


@pytest.mark.asyncio()
async def test_print_layout_applied_twice_matches_once(tmp_path: Path):
    settings = make_settings(tmp_path)
    layout = PrintLayout.from_settings(settings, now=datetime(2026, 1, 2, 15, 4))
    manager = BrowserManager(settings.browser)

    async with await manager.launch() as session:
        await session.page.set_content(REPORT_HTML)
        await apply_print_layout(session.page, layout)
        once = await session.page.content()
        await apply_print_layout(session.page, layout)
        twice = await session.page.content()
        headers = await session.page.locator("[data-docrender-header]").count()

    assert once == twice
    assert headers == 1
    assert manager.open_sessions == 0


@pytest.mark.asyncio()
async def test_render_public_page(tmp_path: Path):
    settings = make_settings(tmp_path, selector_ms=5_000, image_wait_ms=5_000, network_idle_ms=5_000, navigation_ms=30_000)
    renderer = DocumentRenderer(settings)

    pdf = await renderer.generate_pdf(RenderJob(url="https://example.com"))
    html = await renderer.generate_html(RenderJob(url="https://example.com", output="html", wait_time_ms=0))

    assert pdf.success, pdf.error
    assert pdf.file_path.read_bytes().startswith(b"%PDF")
    assert html.success, html.error
    assert "Example Domain" in html.html
    assert renderer.browsers.open_sessions == 0


@pytest.mark.asyncio()
async def test_icons_are_skipped_and_only_unreachable_images_replaced(tmp_path: Path):
    settings = make_settings(tmp_path)
    manager = BrowserManager(settings.browser)
    requested: list[str] = []

    def _respond(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(404 if request.url.host == "gone.example" else 200)

    async with await manager.launch() as session:
        await session.page.set_content(IMAGES_HTML)
        async with httpx.AsyncClient(transport=httpx.MockTransport(_respond)) as client:
            result = await repair_broken_images(session.page, fallback_url=FALLBACK, client=client)
        sources = await session.page.evaluate("() => Array.from(document.images, (img) => img.src)")

    assert sorted(requested) == ["https://cdn.example/chart.png", "https://gone.example/photo.png"]
    assert result.total_images == 5
    assert result.broken_count == 1
    assert sources.count(FALLBACK) == 1
    assert sources[4] == FALLBACK
