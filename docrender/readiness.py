"""Navigation plus layered, independently time-boxed readiness waits."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from docrender import metrics
from docrender.browser import BrowserSession
from docrender.errors import NavigationFailed, ReadinessDegraded
from docrender.settings import TimeoutSettings

__all__ = [
    "LayerStatus",
    "LayerResult",
    "ReadinessReport",
    "ReadinessPlan",
    "NetworkMonitor",
    "ReadinessSynchronizer",
    "navigate",
]

LOGGER = logging.getLogger(__name__)

# Resolves once every <img> currently in the document is loaded or errored,
# or when the in-page deadline passes; reports how many were still pending.
IMAGES_SETTLED_SCRIPT = """
(timeoutMs) => new Promise((resolve) => {
    const pending = Array.from(document.images).filter((img) => !img.complete);
    if (pending.length === 0) {
        resolve({ complete: true, pending: 0 });
        return;
    }
    let remaining = pending.length;
    const timer = setTimeout(() => resolve({ complete: false, pending: remaining }), timeoutMs);
    const settle = () => {
        remaining -= 1;
        if (remaining === 0) {
            clearTimeout(timer);
            resolve({ complete: true, pending: 0 });
        }
    };
    pending.forEach((img) => {
        img.addEventListener('load', settle, { once: true });
        img.addEventListener('error', settle, { once: true });
    });
})
"""

LOAD_EVENT_SCRIPT = """
(timeoutMs) => new Promise((resolve) => {
    if (document.readyState === 'complete') {
        resolve('load');
        return;
    }
    const timer = setTimeout(() => resolve('timeout'), timeoutMs);
    window.addEventListener('load', () => {
        clearTimeout(timer);
        resolve('load');
    }, { once: true });
})
"""

IDLE_CALLBACK_SCRIPT = """
(timeoutMs) => new Promise((resolve) => {
    if (typeof window.requestIdleCallback === 'undefined') {
        setTimeout(() => resolve('no-idle-callback'), 300);
        return;
    }
    const timer = setTimeout(() => resolve('timeout'), timeoutMs + 500);
    window.requestIdleCallback((deadline) => {
        clearTimeout(timer);
        resolve(deadline.didTimeout ? 'timeout' : 'idle');
    }, { timeout: timeoutMs });
})
"""

# Grace added on top of in-page deadlines before the Python side gives up.
_EVALUATE_GRACE_S = 5.0


class LayerStatus(str, Enum):
    """Outcome of one readiness layer."""

    MET = "met"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class LayerResult:
    name: str
    status: LayerStatus
    elapsed_ms: int
    error: ReadinessDegraded | None = None

    @property
    def ok(self) -> bool:
        return self.status in (LayerStatus.MET, LayerStatus.SKIPPED)


@dataclass(slots=True)
class ReadinessReport:
    """Observable record of every readiness layer that ran for a job."""

    layers: list[LayerResult] = field(default_factory=list)

    @property
    def degraded(self) -> list[ReadinessDegraded]:
        return [layer.error for layer in self.layers if layer.error is not None]

    @property
    def warnings(self) -> list[str]:
        return [str(error) for error in self.degraded]

    def layer(self, name: str) -> LayerResult | None:
        for result in self.layers:
            if result.name == name:
                return result
        return None

    def extend(self, other: ReadinessReport) -> None:
        self.layers.extend(other.layers)

    def as_dict(self) -> dict[str, Any]:
        return {
            "layers": [
                {"name": layer.name, "status": layer.status.value, "elapsed_ms": layer.elapsed_ms}
                for layer in self.layers
            ],
            "warnings": self.warnings,
        }


@dataclass(frozen=True, slots=True)
class ReadinessPlan:
    """Which layers run, and the bound applied to each (milliseconds)."""

    selector: str | None
    selector_timeout_ms: int
    image_timeout_ms: int
    network_idle_timeout_ms: int
    network_idle_time_ms: int
    settle_delay_ms: int
    wait_for_images: bool = True
    script_idle: bool = False
    load_event_timeout_ms: int = 3_000
    idle_callback_timeout_ms: int = 1_500
    extra_delay_ms: int = 0

    @classmethod
    def for_pdf(cls, timeouts: TimeoutSettings, selector: str | None = None) -> ReadinessPlan:
        return cls(
            selector=selector,
            selector_timeout_ms=timeouts.selector_ms,
            image_timeout_ms=timeouts.image_wait_ms,
            network_idle_timeout_ms=timeouts.network_idle_ms,
            network_idle_time_ms=timeouts.network_idle_time_ms,
            settle_delay_ms=timeouts.settle_delay_ms,
        )

    @classmethod
    def for_html(
        cls,
        timeouts: TimeoutSettings,
        selector: str | None = None,
        extra_delay_ms: int | None = None,
    ) -> ReadinessPlan:
        # No image layer here, and the trailing caller delay replaces the fixed settle delay.
        return cls(
            selector=selector,
            selector_timeout_ms=timeouts.html_selector_ms,
            image_timeout_ms=timeouts.image_wait_ms,
            network_idle_timeout_ms=timeouts.html_network_idle_ms,
            network_idle_time_ms=timeouts.network_idle_time_ms,
            settle_delay_ms=0,
            wait_for_images=False,
            script_idle=True,
            load_event_timeout_ms=timeouts.load_event_ms,
            idle_callback_timeout_ms=timeouts.idle_callback_ms,
            extra_delay_ms=timeouts.html_extra_wait_ms if extra_delay_ms is None else max(0, extra_delay_ms),
        )


class NetworkMonitor:
    """Counts in-flight requests on a page so idleness can be awaited at any time."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._inflight: set[object] = set()
        self._last_activity = clock()

    @classmethod
    def attach(cls, page: Page) -> NetworkMonitor:
        monitor = cls()
        page.on("request", monitor.on_request)
        page.on("requestfinished", monitor.on_request_done)
        page.on("requestfailed", monitor.on_request_done)
        return monitor

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def on_request(self, request: object) -> None:
        self._inflight.add(request)
        self._last_activity = self._clock()

    def on_request_done(self, request: object) -> None:
        self._inflight.discard(request)
        self._last_activity = self._clock()

    def is_idle(self, *, idle_ms: int, max_inflight: int = 0) -> bool:
        quiet_ms = (self._clock() - self._last_activity) * 1000
        return self.inflight <= max_inflight and quiet_ms >= idle_ms

    async def wait_for_idle(self, *, idle_ms: int, timeout_ms: int, max_inflight: int = 0) -> None:
        """Block until ``max_inflight`` or fewer requests stay pending for ``idle_ms``.

        Raises ``asyncio.TimeoutError`` once ``timeout_ms`` elapses.
        """

        poll_s = min(0.1, idle_ms / 4000) or 0.01

        async def _poll() -> None:
            while not self.is_idle(idle_ms=idle_ms, max_inflight=max_inflight):
                await asyncio.sleep(poll_s)

        await asyncio.wait_for(_poll(), timeout=timeout_ms / 1000)


async def navigate(
    session: BrowserSession,
    url: str,
    *,
    timeout_ms: int,
    idle_time_ms: int = 500,
    viewport: Mapping[str, int] | None = None,
    auth_headers: Mapping[str, str] | None = None,
    fast_mode: bool = False,
) -> None:
    """Drive the session to ``url``; DOM parsed and (unless fast) network near-idle.

    This is a hard failure point: any error or an exceeded bound raises
    ``NavigationFailed``.
    """

    page = session.page
    LOGGER.info("Navigating to: %s", url)
    if session.network_monitor is None:
        session.network_monitor = NetworkMonitor.attach(page)
    monitor = session.network_monitor

    started = time.perf_counter()
    try:
        if viewport:
            await page.set_viewport_size({"width": viewport["width"], "height": viewport["height"]})
        if auth_headers:
            await page.set_extra_http_headers(dict(auth_headers))
            LOGGER.info("Auth headers set: %s", ", ".join(sorted(auth_headers)))
        await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        if not fast_mode:
            remaining_ms = max(1, timeout_ms - _elapsed_ms(started))
            await monitor.wait_for_idle(idle_ms=idle_time_ms, timeout_ms=remaining_ms, max_inflight=2)
    except asyncio.TimeoutError as exc:
        raise NavigationFailed(url, f"network did not settle within {timeout_ms}ms") from exc
    except PlaywrightError as exc:
        raise NavigationFailed(url, str(exc)) from exc
    LOGGER.info("Navigation complete in %dms", _elapsed_ms(started))


class ReadinessSynchronizer:
    """Runs readiness layers in order; no layer's failure aborts the job."""

    def __init__(self, *, sleep: Callable[[Page, int], Awaitable[None]] | None = None) -> None:
        self._sleep = sleep or _page_sleep

    async def await_ready(self, session: BrowserSession, plan: ReadinessPlan) -> ReadinessReport:
        page = session.page
        report = ReadinessReport()
        LOGGER.info("Waiting for page content...")

        if plan.selector:
            report.layers.append(
                await self._run_layer(
                    "selector",
                    plan.selector_timeout_ms,
                    lambda: page.wait_for_selector(
                        plan.selector,
                        state="attached",
                        timeout=plan.selector_timeout_ms,
                    ),
                )
            )
        else:
            report.layers.append(LayerResult("selector", LayerStatus.SKIPPED, 0))

        if plan.wait_for_images:
            report.layers.append(
                await self._run_layer(
                    "images",
                    plan.image_timeout_ms,
                    lambda: _wait_for_images(page, plan.image_timeout_ms),
                )
            )
        else:
            report.layers.append(LayerResult("images", LayerStatus.SKIPPED, 0))
        report.layers.append(
            await self._run_layer(
                "network_idle",
                plan.network_idle_timeout_ms,
                lambda: _wait_for_network_idle(session, plan),
            )
        )
        report.layers.append(await self._delay_layer("settle", page, plan.settle_delay_ms))

        if plan.script_idle:
            report.extend(await self.wait_for_scripts(session, plan))

        for degraded in report.degraded:
            LOGGER.info("Continuing with degraded readiness (%s)", degraded)
        LOGGER.info("Content wait complete")
        return report

    async def wait_for_scripts(self, session: BrowserSession, plan: ReadinessPlan) -> ReadinessReport:
        """Load event, then an idle callback, then the caller's additional delay."""

        page = session.page
        report = ReadinessReport()
        LOGGER.info("Waiting for full script load...")
        report.layers.append(
            await self._run_layer(
                "load_event",
                plan.load_event_timeout_ms,
                lambda: _expect_signal(page, LOAD_EVENT_SCRIPT, plan.load_event_timeout_ms, "load"),
            )
        )
        report.layers.append(
            await self._run_layer(
                "idle_callback",
                plan.idle_callback_timeout_ms,
                lambda: _expect_signal(
                    page,
                    IDLE_CALLBACK_SCRIPT,
                    plan.idle_callback_timeout_ms,
                    "idle",
                    "no-idle-callback",
                ),
            )
        )
        report.layers.append(await self._delay_layer("extra_delay", page, plan.extra_delay_ms))
        LOGGER.info("Full script load complete")
        return report

    async def test_mode_pause(self, session: BrowserSession, delay_ms: int) -> None:
        """Hold the page open so it can be inspected in a headed browser."""

        if delay_ms <= 0:
            return
        LOGGER.info("Test mode: pausing %dms before capture", delay_ms)
        await self._sleep(session.page, delay_ms)

    async def _delay_layer(self, name: str, page: Page, delay_ms: int) -> LayerResult:
        if delay_ms <= 0:
            return LayerResult(name, LayerStatus.SKIPPED, 0)
        return await self._run_layer(name, delay_ms, lambda: self._sleep(page, delay_ms))

    async def _run_layer(
        self,
        name: str,
        timeout_ms: int,
        operation: Callable[[], Awaitable[Any]],
    ) -> LayerResult:
        started = time.perf_counter()
        try:
            await operation()
        except (asyncio.TimeoutError, PlaywrightTimeoutError) as exc:
            elapsed = _elapsed_ms(started)
            error = ReadinessDegraded(name, f"timed out after {timeout_ms}ms")
            error.__cause__ = exc
            LOGGER.warning("Readiness layer '%s' timed out after %dms, continuing...", name, timeout_ms)
            result = LayerResult(name, LayerStatus.TIMED_OUT, elapsed, error)
        except PlaywrightError as exc:
            elapsed = _elapsed_ms(started)
            error = ReadinessDegraded(name, str(exc))
            error.__cause__ = exc
            LOGGER.warning("Readiness layer '%s' failed: %s, continuing...", name, exc)
            result = LayerResult(name, LayerStatus.FAILED, elapsed, error)
        else:
            result = LayerResult(name, LayerStatus.MET, _elapsed_ms(started))
            LOGGER.debug("Readiness layer '%s' met in %dms", name, result.elapsed_ms)
        metrics.observe_layer(name, result.status.value)
        return result


async def _page_sleep(page: Page, delay_ms: int) -> None:
    await page.wait_for_timeout(delay_ms)


async def _wait_for_images(page: Page, timeout_ms: int) -> None:
    outcome = await asyncio.wait_for(
        page.evaluate(IMAGES_SETTLED_SCRIPT, timeout_ms),
        timeout=timeout_ms / 1000 + _EVALUATE_GRACE_S,
    )
    if not outcome or not outcome.get("complete", False):
        pending = (outcome or {}).get("pending", "?")
        raise asyncio.TimeoutError(f"{pending} image(s) still loading")


async def _wait_for_network_idle(session: BrowserSession, plan: ReadinessPlan) -> None:
    monitor = session.network_monitor
    if monitor is None:
        await session.page.wait_for_load_state("networkidle", timeout=plan.network_idle_timeout_ms)
        return
    await monitor.wait_for_idle(
        idle_ms=plan.network_idle_time_ms,
        timeout_ms=plan.network_idle_timeout_ms,
    )


async def _expect_signal(page: Page, script: str, timeout_ms: int, *accepted: str) -> None:
    signal = await asyncio.wait_for(
        page.evaluate(script, timeout_ms),
        timeout=timeout_ms / 1000 + _EVALUATE_GRACE_S,
    )
    if signal not in accepted:
        raise asyncio.TimeoutError(f"page reported {signal!r}")


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
