"""Browser process lifecycle: executable discovery, launch fallback, sessions."""

from __future__ import annotations

import glob
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterator, Protocol, Sequence

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from docrender.errors import LaunchFailed
from docrender.settings import BrowserSettings

if TYPE_CHECKING:
    from docrender.readiness import NetworkMonitor

__all__ = [
    "BROWSER_BASE_ARGS",
    "ExecutableResolver",
    "ExplicitResolver",
    "AutoDetectResolver",
    "BrowserSession",
    "BrowserManager",
    "build_resolver",
]

LOGGER = logging.getLogger(__name__)

BROWSER_BASE_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-extensions",
    "--disable-software-rasterizer",
)

_LAUNCH_ERRORS = (PlaywrightError, OSError)


class ExecutableResolver(Protocol):
    """Strategy that yields the browser executable to try first."""

    def resolve(self) -> str | None:
        ...


@dataclass(frozen=True)
class ExplicitResolver:
    """A configured executable path, used as-is."""

    path: str

    def resolve(self) -> str | None:
        return self.path


@dataclass(frozen=True)
class AutoDetectResolver:
    """Probe an ordered list of glob patterns for an installed browser."""

    patterns: Sequence[str]
    base_dir: str | None = None

    def candidates(self) -> Iterator[str]:
        """Yield the first match of each pattern, in order."""

        for pattern in self.patterns:
            expanded = os.path.expanduser(pattern)
            if self.base_dir and not os.path.isabs(expanded):
                expanded = os.path.normpath(os.path.join(self.base_dir, expanded))
            LOGGER.info("Searching for Chromium with pattern: %s", expanded)
            matches = sorted(glob.glob(expanded))
            if not matches:
                LOGGER.info("No Chromium found at pattern: %s", expanded)
                continue
            LOGGER.info("Found Chromium at: %s", matches[0])
            yield matches[0]

    def resolve(self) -> str | None:
        return next(self.candidates(), None)


def build_resolver(settings: BrowserSettings) -> ExecutableResolver:
    """Explicit configuration wins; otherwise discover from the candidate list."""

    if settings.executable_path:
        LOGGER.info("Using configured browser executable: %s", settings.executable_path)
        return ExplicitResolver(settings.executable_path)
    LOGGER.info("No browser executable configured, probing candidate paths")
    return AutoDetectResolver(settings.candidate_patterns)


@dataclass(eq=False)
class BrowserSession:
    """One browser process plus the single page used by one job."""

    playwright: Any
    browser: Browser
    context: BrowserContext
    page: Page
    executable: str | None = None
    network_monitor: NetworkMonitor | None = None
    _on_close: Callable[[BrowserSession], None] | None = field(default=None, repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Tear down page, context, process and driver; safe to call repeatedly."""

        if self._closed:
            return
        self._closed = True
        try:
            try:
                await self.context.close()
            except PlaywrightError as exc:
                LOGGER.warning("Browser context close failed: %s", exc)
            await self.browser.close()
        finally:
            try:
                await self.playwright.stop()
            finally:
                if self._on_close is not None:
                    self._on_close(self)
            LOGGER.debug("Browser session closed")

    async def __aenter__(self) -> BrowserSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class BrowserManager:
    """Launches an isolated browser per job and tracks live sessions."""

    def __init__(
        self,
        settings: BrowserSettings,
        *,
        resolver: ExecutableResolver | None = None,
        discovery: AutoDetectResolver | None = None,
        driver_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self.settings = settings
        self._resolver = resolver
        self._discovery = discovery or AutoDetectResolver(settings.candidate_patterns)
        self._driver_factory = driver_factory
        self._open: set[int] = set()

    @property
    def open_sessions(self) -> int:
        return len(self._open)

    def launch_args(self) -> list[str]:
        return [*BROWSER_BASE_ARGS, f"--window-size={self.settings.window_size}"]

    async def launch(self, *, test_mode: bool = False) -> BrowserSession:
        """Start a browser process and open its single page."""

        try:
            playwright = await self._driver_factory().start()
        except _LAUNCH_ERRORS as exc:
            LOGGER.error("Playwright driver failed to start: %s", exc)
            raise LaunchFailed(f"Playwright driver failed to start: {exc}") from exc

        try:
            browser, executable = await self._launch_with_fallback(playwright, test_mode=test_mode)
        except BaseException:
            await playwright.stop()
            raise

        try:
            context = await browser.new_context(
                viewport={"width": self.settings.window_width, "height": self.settings.window_height},
            )
            page = await context.new_page()
        except PlaywrightError as exc:
            try:
                await browser.close()
            finally:
                await playwright.stop()
            raise LaunchFailed(f"Browser started but no page could be opened: {exc}") from exc

        session = BrowserSession(
            playwright=playwright,
            browser=browser,
            context=context,
            page=page,
            executable=executable,
            _on_close=self._release,
        )
        self._open.add(id(session))
        return session

    async def _launch_with_fallback(self, playwright: Any, *, test_mode: bool) -> tuple[Browser, str | None]:
        resolver = self._resolver or build_resolver(self.settings)
        primary = resolver.resolve()
        attempts: list[str] = [primary or "<playwright default>"]
        LOGGER.info("Launching browser (headless: %s, executable: %s)", not test_mode, attempts[0])
        try:
            browser = await self._launch_once(playwright, primary, test_mode=test_mode)
        except _LAUNCH_ERRORS as exc:
            original = exc
        else:
            LOGGER.info("Browser launched successfully")
            return browser, primary

        LOGGER.warning("Failed to launch browser: %s", original)
        LOGGER.warning("Attempting to auto-detect a Chromium installation...")
        for candidate in self._discovery.candidates():
            if candidate == primary or candidate in attempts:
                continue
            attempts.append(candidate)
            try:
                browser = await self._launch_once(playwright, candidate, test_mode=test_mode)
            except _LAUNCH_ERRORS as exc:
                LOGGER.warning("Launch with %s failed: %s", candidate, exc)
                continue
            LOGGER.info("Browser launched successfully with auto-detected path %s", candidate)
            return browser, candidate

        LOGGER.error("Failed to auto-detect Chromium, raising original launch error")
        raise LaunchFailed(str(original), attempts=tuple(attempts)) from original

    async def _launch_once(self, playwright: Any, executable: str | None, *, test_mode: bool) -> Browser:
        options: dict[str, Any] = {
            "headless": not test_mode,
            "args": self.launch_args(),
            "timeout": self.settings.launch_timeout_ms,
        }
        if executable:
            options["executable_path"] = executable
        if test_mode and self.settings.test_slow_mo_ms > 0:
            options["slow_mo"] = self.settings.test_slow_mo_ms
        return await playwright.chromium.launch(**options)

    def _release(self, session: BrowserSession) -> None:
        self._open.discard(id(session))

    async def check_browser(self) -> tuple[bool, str | None, str | None]:
        """Launch, read the version and close; used by health checks."""

        try:
            session = await self.launch()
        except LaunchFailed as exc:
            LOGGER.warning("Browser check failed: %s", exc)
            return False, None, None
        try:
            async with session:
                version = session.browser.version
        except PlaywrightError as exc:
            LOGGER.warning("Browser check failed while closing: %s", exc)
            return False, None, None
        return True, version, session.executable
