from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from codex_router.backends.base import (
    AuthStatus,
    Backend,
    probe_auth_status,
    probe_config,
)
from codex_router.config import KNOWN_BACKEND_IDS

HARD_ROUTED_BACKEND = "codex"
HARD_ROUTED_MODEL_TOKENS: tuple[str, ...] = ("codex", "gpt-5")
ULTIMATE_FALLBACK_BACKEND = "codex"

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class BackendRegistration:
    identifier: str
    display_name: str
    backend: Backend


@dataclass(frozen=True, slots=True)
class BackendStatus:
    identifier: str
    display_name: str
    available: bool
    authenticated: bool | None = None
    details: str | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.identifier,
            "name": self.display_name,
            "available": self.available,
            "authenticated": self.authenticated,
            "details": self.details,
        }


class BackendRegistry:
    """In-memory table of backend adapters keyed by identifier."""

    def __init__(self) -> None:
        self._entries: dict[str, BackendRegistration] = {}

    def register(self, backend: Backend, display_name: str | None = None) -> None:
        registration = BackendRegistration(
            identifier=backend.id,
            display_name=display_name or backend.name,
            backend=backend,
        )
        replaced = backend.id in self._entries
        self._entries[backend.id] = registration
        logger.info(
            "backend_registered id=%s name=%s replaced=%s",
            registration.identifier,
            registration.display_name,
            replaced,
        )

    def get(self, identifier: str) -> Backend | None:
        registration = self._entries.get(identifier)
        return registration.backend if registration else None

    def list(self) -> list[BackendRegistration]:
        return list(self._entries.values())

    def ids(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def select_backend_id(
    model: str | None,
    priority: Sequence[str],
    registry: BackendRegistry,
    default: str | None = None,
) -> str:
    normalized = (model or "").lower()
    if any(token in normalized for token in HARD_ROUTED_MODEL_TOKENS):
        return HARD_ROUTED_BACKEND
    for candidate in priority:
        if candidate in registry:
            return candidate
    if default in KNOWN_BACKEND_IDS:
        return default
    return ULTIMATE_FALLBACK_BACKEND


async def _status_for(registration: BackendRegistration) -> BackendStatus:
    try:
        status = await probe_auth_status(registration.backend)
    except Exception as exc:
        logger.warning(
            "backend_status_probe_failed id=%s error=%s", registration.identifier, exc
        )
        status = AuthStatus(authenticated=False, details=str(exc))
    if status is None:
        valid = await probe_config(registration.backend, {})
        return BackendStatus(
            identifier=registration.identifier,
            display_name=registration.display_name,
            available=True if valid is None else valid,
        )
    return BackendStatus(
        identifier=registration.identifier,
        display_name=registration.display_name,
        available=status.authenticated,
        authenticated=status.authenticated,
        details=status.details,
    )


async def collect_backend_statuses(registry: BackendRegistry) -> list[BackendStatus]:
    registrations = registry.list()
    return list(await asyncio.gather(*(_status_for(item) for item in registrations)))


def build_default_registry(*backends: Backend) -> BackendRegistry:
    registry = BackendRegistry()
    for backend in backends:
        registry.register(backend)
    return registry
