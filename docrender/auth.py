"""Bearer-key authorization for the render endpoints."""

from __future__ import annotations

import hmac
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Header, HTTPException, Request, status

from docrender.settings import Settings

__all__ = ["RenderActor", "AccessKeyRegistry", "parse_access_keys", "require_actor"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderActor:
    """A caller allowed to request renders."""

    key: str
    actor_name: str


def parse_access_keys(raw: str) -> tuple[RenderActor, ...]:
    """Parse ``key1:Name1,key2:Name2``; malformed pairs are skipped."""

    actors: list[RenderActor] = []
    for pair in (raw or "").split(","):
        trimmed = pair.strip()
        if not trimmed or ":" not in trimmed:
            continue
        key, _, actor_name = trimmed.partition(":")
        if key.strip() and actor_name.strip():
            actors.append(RenderActor(key=key.strip(), actor_name=actor_name.strip()))
    return tuple(actors)


class AccessKeyRegistry:
    """Key registry loaded at construction; call ``reload()`` to pick up new keys."""

    def __init__(self, loader: Callable[[], str]) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._actors: tuple[RenderActor, ...] = ()
        self.reload()

    @classmethod
    def from_settings(cls, settings: Settings) -> AccessKeyRegistry:
        return cls(lambda: settings.auth.api_keys)

    @property
    def actors(self) -> tuple[RenderActor, ...]:
        return self._actors

    def reload(self) -> int:
        actors = parse_access_keys(self._loader())
        with self._lock:
            self._actors = actors
        if not actors:
            LOGGER.warning("No render API keys configured; every request will be rejected")
        else:
            LOGGER.info("Loaded %d render API key(s)", len(actors))
        return len(actors)

    def authenticate(self, authorization: Optional[str]) -> RenderActor | None:
        if not authorization:
            LOGGER.warning("No authorization header")
            return None
        key = authorization.strip()
        if key.startswith("Bearer "):
            key = key[len("Bearer "):].strip()
        for actor in self._actors:
            if hmac.compare_digest(actor.key.encode("utf-8"), key.encode("utf-8")):
                LOGGER.info("Valid render actor: %s", actor.actor_name)
                return actor
        LOGGER.warning("Invalid render API key")
        return None


async def require_actor(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> RenderActor:
    """FastAPI dependency resolving the caller from ``Authorization``."""

    registry: AccessKeyRegistry = request.app.state.access_keys
    actor = registry.authenticate(authorization)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor
