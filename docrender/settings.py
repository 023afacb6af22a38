"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "DEFAULT_CANDIDATE_PATTERNS",
    "BrowserSettings",
    "TimeoutSettings",
    "PdfSettings",
    "StorageSettings",
    "AuthSettings",
    "TelemetrySettings",
    "Settings",
    "load_config",
    "get_settings",
]

DEFAULT_CANDIDATE_PATTERNS: tuple[str, ...] = (
    "./ms-playwright/chromium-*/chrome-linux*/chrome",
    "~/.cache/ms-playwright/chromium-*/chrome-linux*/chrome",
    "./puppeteer-cache/chrome/linux-*/chrome-linux*/chrome",
    "~/.cache/puppeteer/chrome/linux-*/chrome-linux*/chrome",
    "/opt/render/.cache/puppeteer/chrome/linux-*/chrome-linux*/chrome",
    "~/.cache/puppeteer/chrome/mac*/chrome-mac*/Google Chrome for Testing.app/Contents/MacOS/Google Chrome for Testing",
)


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Executable discovery and window knobs for the Chromium process."""

    executable_path: str | None
    candidate_patterns: tuple[str, ...]
    window_width: int
    window_height: int
    launch_timeout_ms: int
    test_slow_mo_ms: int

    @property
    def window_size(self) -> str:
        return f"{self.window_width},{self.window_height}"


@dataclass(frozen=True, slots=True)
class TimeoutSettings:
    """Per-stage bounds for navigation and each readiness layer (milliseconds)."""

    navigation_ms: int
    selector_ms: int
    html_selector_ms: int
    image_wait_ms: int
    network_idle_ms: int
    html_network_idle_ms: int
    network_idle_time_ms: int
    settle_delay_ms: int
    load_event_ms: int
    idle_callback_ms: int
    html_extra_wait_ms: int
    test_mode_delay_ms: int
    image_probe_ms: int
    replacement_image_wait_ms: int
    page_script_ms: int
    capture_ms: int


@dataclass(frozen=True, slots=True)
class PdfSettings:
    """Print layout and page geometry used on the PDF path."""

    viewport_width: int
    viewport_height: int
    page_width: str
    page_height: str
    margin_top: str
    margin_right: str
    margin_bottom: str
    margin_left: str
    background_color: str
    fallback_image_url: str
    icon_size_threshold: int
    header_title: str
    ready_selector: str | None

    @property
    def margins(self) -> dict[str, str]:
        return {
            "top": self.margin_top,
            "right": self.margin_right,
            "bottom": self.margin_bottom,
            "left": self.margin_left,
        }


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Filesystem layout for persisted PDF artifacts."""

    output_dir: Path
    retention_hours: int


@dataclass(frozen=True, slots=True)
class AuthSettings:
    """Raw bearer key registry (``key:Actor`` pairs, comma separated)."""

    api_keys: str


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    """Ports for the auxiliary Prometheus exporter."""

    prometheus_port: int


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    browser: BrowserSettings
    timeouts: TimeoutSettings
    pdf: PdfSettings
    storage: StorageSettings
    auth: AuthSettings
    telemetry: TelemetrySettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config, falling back to the process env when no .env exists."""

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _csv_tuple(cfg: DecoupleConfig, key: str, *, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = cfg(key, default="")
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _first(cfg: DecoupleConfig, *keys: str, default: str | None = None) -> str | None:
    for key in keys:
        value = cfg(key, default="")
        if value:
            return value
    return default


def build_settings(cfg: DecoupleConfig, *, env_path: str = ".env") -> Settings:
    """Assemble structured settings from a decouple config."""

    browser = BrowserSettings(
        executable_path=_first(cfg, "BROWSER_EXECUTABLE_PATH", "PUPPETEER_EXECUTABLE_PATH"),
        candidate_patterns=_csv_tuple(cfg, "BROWSER_CANDIDATE_PATHS", default=DEFAULT_CANDIDATE_PATTERNS),
        window_width=_int(cfg, "BROWSER_WINDOW_WIDTH", default=1440),
        window_height=_int(cfg, "BROWSER_WINDOW_HEIGHT", default=900),
        launch_timeout_ms=_int(cfg, "BROWSER_LAUNCH_TIMEOUT_MS", default=80_000),
        test_slow_mo_ms=_int(cfg, "BROWSER_TEST_SLOW_MO_MS", default=250),
    )
    timeouts = TimeoutSettings(
        navigation_ms=_int(cfg, "NAVIGATION_TIMEOUT_MS", default=190_000),
        selector_ms=_int(cfg, "SELECTOR_TIMEOUT_MS", default=190_000),
        html_selector_ms=_int(cfg, "HTML_SELECTOR_TIMEOUT_MS", default=15_000),
        image_wait_ms=_int(cfg, "IMAGE_WAIT_TIMEOUT_MS", default=30_000),
        network_idle_ms=_int(cfg, "NETWORK_IDLE_TIMEOUT_MS", default=30_000),
        html_network_idle_ms=_int(cfg, "HTML_NETWORK_IDLE_TIMEOUT_MS", default=8_000),
        network_idle_time_ms=_int(cfg, "NETWORK_IDLE_TIME_MS", default=500),
        settle_delay_ms=_int(cfg, "SETTLE_DELAY_MS", default=2_000),
        load_event_ms=_int(cfg, "LOAD_EVENT_TIMEOUT_MS", default=3_000),
        idle_callback_ms=_int(cfg, "IDLE_CALLBACK_TIMEOUT_MS", default=1_500),
        html_extra_wait_ms=_int(cfg, "HTML_EXTRA_WAIT_MS", default=2_000),
        test_mode_delay_ms=_int(cfg, "TEST_MODE_DELAY_MS", default=10_000),
        image_probe_ms=_int(cfg, "IMAGE_PROBE_TIMEOUT_MS", default=10_000),
        replacement_image_wait_ms=_int(cfg, "REPLACEMENT_IMAGE_WAIT_MS", default=3_000),
        page_script_ms=_int(cfg, "PAGE_SCRIPT_TIMEOUT_MS", default=30_000),
        capture_ms=_int(cfg, "CAPTURE_TIMEOUT_MS", default=120_000),
    )
    pdf = PdfSettings(
        viewport_width=_int(cfg, "PDF_VIEWPORT_WIDTH", default=1920),
        viewport_height=_int(cfg, "PDF_VIEWPORT_HEIGHT", default=1450),
        page_width=cfg("PDF_PAGE_WIDTH", default="1920px"),
        page_height=cfg("PDF_PAGE_HEIGHT", default="1500px"),
        margin_top=cfg("PDF_MARGIN_TOP", default="5mm"),
        margin_right=cfg("PDF_MARGIN_RIGHT", default="10mm"),
        margin_bottom=cfg("PDF_MARGIN_BOTTOM", default="5mm"),
        margin_left=cfg("PDF_MARGIN_LEFT", default="10mm"),
        background_color=cfg("PDF_BACKGROUND_COLOR", default="#EDEFF2"),
        fallback_image_url=cfg(
            "PDF_FALLBACK_IMAGE_URL",
            default="https://www.validatemysaas.com/images/vms_logo.svg",
        ),
        icon_size_threshold=_int(cfg, "PDF_ICON_SIZE_THRESHOLD", default=50),
        header_title=cfg("PDF_HEADER_TITLE", default="Generated Report"),
        ready_selector=cfg("PDF_READY_SELECTOR", default="") or None,
    )
    storage = StorageSettings(
        output_dir=Path(cfg("PDF_OUTPUT_DIR", default="generated-pdfs")),
        retention_hours=_int(cfg, "PDF_RETENTION_HOURS", default=24),
    )
    auth = AuthSettings(api_keys=_first(cfg, "RENDER_API_KEYS", "PUPPETEER_GEN_USER", default="") or "")
    telemetry = TelemetrySettings(prometheus_port=_int(cfg, "PROMETHEUS_PORT", default=0))

    if timeouts.network_idle_time_ms <= 0:
        msg = "NETWORK_IDLE_TIME_MS must be > 0"
        raise ValueError(msg)

    return Settings(
        env_path=env_path,
        browser=browser,
        timeouts=timeouts,
        pdf=pdf,
        storage=storage,
        auth=auth,
        telemetry=telemetry,
    )


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    return build_settings(load_config(env_path), env_path=env_path)
