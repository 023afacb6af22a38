from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
import pytest
from playwright.async_api import Error as PlaywrightError

from docrender.errors import CaptureFailed
from docrender.preparation import (
    CLASSIFY_IMAGES_SCRIPT,
    PrintLayout,
    apply_print_layout,
    prepare_for_print,
    repair_broken_images,
)
from tests.fakes import FakePage, make_settings

FALLBACK = "https://assets.example/fallback.svg"

IMAGES = [
    {"src": "https://cdn.example/logo.png", "icon": False},
    {"src": "https://cdn.example/missing.png", "icon": False},
    {"src": "https://cdn.example/tiny-icon.png", "icon": True},
    {"src": "data:image/png;base64,AAAA", "icon": False},
    {"src": "https://down.example/chart.png", "icon": False},
]


class _RecordingTransport:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "down.example":
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path.endswith("missing.png"):
            return httpx.Response(404)
        return httpx.Response(200)


class _UninspectablePage(FakePage):
    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if script == CLASSIFY_IMAGES_SCRIPT:
            raise PlaywrightError("Execution context was destroyed")
        return await super().evaluate(script, arg)


@pytest.mark.asyncio()
async def test_broken_images_are_counted_and_replaced():
    page = FakePage(images=IMAGES)
    transport = _RecordingTransport()

    async with httpx.AsyncClient(transport=httpx.MockTransport(transport)) as client:
        result = await repair_broken_images(
            page,
            fallback_url=FALLBACK,
            client=client,
            headers={"x-pdf-access-token": "abc"},
        )

    assert result.total_images == 5
    assert result.broken_count == 2
    assert sorted(page.replaced_indices) == [1, 4]
    assert all(record.replaced for record in result.broken)
    assert result.broken[0].status_code == 404
    assert "connection refused" in result.broken_images[1]

    probed = [str(request.url) for request in transport.requests]
    assert sorted(probed) == [
        "https://cdn.example/logo.png",
        "https://cdn.example/missing.png",
        "https://down.example/chart.png",
    ]
    assert all(request.method == "HEAD" for request in transport.requests)
    assert all(request.headers["x-pdf-access-token"] == "abc" for request in transport.requests)

    assert "SKIP: https://cdn.example/tiny-icon.png" in result.logs
    assert "OK: https://cdn.example/logo.png" in result.logs
    assert "FAILED (404): https://cdn.example/missing.png" in result.logs
    assert any(line.startswith("INLINE: data:image/png") for line in result.logs)


@pytest.mark.asyncio()
async def test_no_broken_images_skips_replacement():
    page = FakePage(images=IMAGES[:1])

    async with httpx.AsyncClient(transport=httpx.MockTransport(_RecordingTransport())) as client:
        result = await repair_broken_images(page, fallback_url=FALLBACK, client=client)

    assert result.total_images == 1
    assert result.broken_count == 0
    assert page.replaced_indices == []


@pytest.mark.asyncio()
async def test_inspection_failure_yields_empty_summary():
    result = await repair_broken_images(_UninspectablePage(images=IMAGES), fallback_url=FALLBACK)

    assert result.total_images == 0
    assert result.broken_count == 0
    assert result.logs[0].startswith("INSPECT-ERROR")


@pytest.mark.asyncio()
async def test_print_layout_is_deterministic_across_runs(tmp_path: Path):
    settings = make_settings(tmp_path)
    layout = PrintLayout.from_settings(settings, now=datetime(2026, 1, 2, 15, 4))
    page = FakePage()

    await apply_print_layout(page, layout)
    await apply_print_layout(page, layout)

    first, second = page.layout_calls
    assert first == second
    assert first["generatedAt"] == "Jan 02, 2026, 03:04 PM"
    assert first["backgroundColor"] == "#EDEFF2"
    assert first["competitorsPerPage"] == 12
    assert first["selectors"]["firstPage"] == ['[data-section="your-idea"]', '[data-section="overview"]']
    assert first["headerMarker"] == "data-docrender-header"


@pytest.mark.asyncio()
async def test_prepare_for_print_repairs_then_lays_out(tmp_path: Path):
    settings = make_settings(tmp_path, replacement_image_wait_ms=3_000)
    page = FakePage(images=IMAGES[:2])

    async with httpx.AsyncClient(transport=httpx.MockTransport(_RecordingTransport())) as client:
        result = await prepare_for_print(page, settings, client=client)

    assert result.broken_count == 1
    assert page.replaced_indices == [1]
    assert len(page.layout_calls) == 1
    assert page.layout_calls[0]["headerTitle"] == settings.pdf.header_title
    assert page.sleeps == [3_000]


@pytest.mark.asyncio()
async def test_stalled_inspection_is_bounded():
    result = await repair_broken_images(
        FakePage(images=IMAGES, stalled={"classify"}),
        fallback_url=FALLBACK,
        script_timeout_ms=50,
    )

    assert result.total_images == 0
    assert result.logs == ["INSPECT-ERROR: no answer within 50ms"]


@pytest.mark.asyncio()
async def test_stalled_replacement_is_logged_and_left_unreplaced():
    page = FakePage(images=IMAGES[:2], stalled={"replace"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(_RecordingTransport())) as client:
        result = await repair_broken_images(page, fallback_url=FALLBACK, client=client, script_timeout_ms=50)

    assert result.broken_count == 1
    assert not result.broken[0].replaced
    assert "REPLACE-ERROR: no answer within 50ms" in result.logs


@pytest.mark.asyncio()
async def test_stalled_print_layout_fails_capture(tmp_path: Path):
    layout = PrintLayout.from_settings(make_settings(tmp_path), now=datetime(2026, 1, 2, 15, 4))

    with pytest.raises(CaptureFailed, match="did not finish within 50ms"):
        await apply_print_layout(FakePage(stalled={"layout"}), layout, timeout_ms=50)
