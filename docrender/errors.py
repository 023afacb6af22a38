"""Error taxonomy for document rendering jobs."""

from __future__ import annotations

__all__ = [
    "RenderError",
    "LaunchFailed",
    "NavigationFailed",
    "ReadinessDegraded",
    "CaptureFailed",
    "PersistenceFailed",
]


class RenderError(Exception):
    """Base class for failures raised by the rendering core."""


class LaunchFailed(RenderError):
    """No candidate executable produced a working browser process."""

    def __init__(self, message: str, *, attempts: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.attempts = attempts


class NavigationFailed(RenderError):
    """Target URL unreachable, or the DOM/network-idle bound was exceeded."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"Navigation to {url} failed: {message}")
        self.url = url


class ReadinessDegraded(RenderError):
    """A readiness layer timed out or failed; recorded, never raised to callers."""

    def __init__(self, layer: str, message: str) -> None:
        super().__init__(f"{layer}: {message}")
        self.layer = layer


class CaptureFailed(RenderError):
    """Snapshot extraction (HTML or PDF) raised."""


class PersistenceFailed(RenderError):
    """Writing the artifact to disk failed; no partial file is left behind."""
