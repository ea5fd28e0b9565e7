from __future__ import annotations

import asyncio
import logging
from typing import Any

from codex_router.backends.base import (
    AuthStatus,
    Backend,
    BackendRequest,
    BackendResult,
    BackendSuccess,
)
from codex_router.registry import (
    BackendRegistry,
    build_default_registry,
    collect_backend_statuses,
    select_backend_id,
)


class _Plain(Backend):
    def __init__(self, backend_id: str, name: str = "Plain") -> None:
        self.id = backend_id
        self.name = name

    async def execute(self, request: BackendRequest) -> BackendResult:
        return BackendSuccess(content=self.id)


class _WithStatus(_Plain):
    def __init__(self, backend_id: str, authenticated: bool) -> None:
        super().__init__(backend_id, name=f"{backend_id} backend")
        self._authenticated = authenticated

    async def get_auth_status(self) -> AuthStatus:
        return AuthStatus(authenticated=self._authenticated, details="probed")


class _BrokenStatus(_Plain):
    async def get_auth_status(self) -> AuthStatus:
        raise RuntimeError("probe exploded")


def _registry(*ids: str) -> BackendRegistry:
    return build_default_registry(*(_Plain(backend_id) for backend_id in ids))


def test_registry_lookup_and_last_registration_wins(caplog: Any) -> None:
    registry = BackendRegistry()
    first = _Plain("cursor", "First")
    second = _Plain("cursor", "Second")

    with caplog.at_level(logging.INFO):
        registry.register(first)
        registry.register(second, display_name="Cursor Override")

    assert registry.get("cursor") is second
    assert registry.get("unknown") is None
    assert "cursor" in registry
    assert registry.ids() == ["cursor"]
    assert [item.display_name for item in registry.list()] == ["Cursor Override"]
    assert "backend_registered" in caplog.text


def test_selector_hard_routes_codex_models() -> None:
    registry = _registry("cursor", "augment")
    assert select_backend_id("gpt-5-codex", ["cursor", "augment"], registry) == "codex"
    assert select_backend_id("openai/GPT-5", [], registry, "augment") == "codex"


def test_selector_uses_first_registered_priority_entry() -> None:
    registry = _registry("codex", "augment", "cursor")
    assert (
        select_backend_id("unrelated-model", ["cursor", "augment", "codex"], registry)
        == "cursor"
    )
    assert (
        select_backend_id("unrelated-model", ["missing", "augment"], registry)
        == "augment"
    )


def test_selector_falls_back_to_known_default_then_codex() -> None:
    registry = _registry("codex")
    assert (
        select_backend_id("unrelated-model", ["missing-id"], registry, "augment")
        == "augment"
    )
    assert (
        select_backend_id("unrelated-model", ["missing-id"], registry, "mystery")
        == "codex"
    )
    assert select_backend_id(None, [], BackendRegistry(), None) == "codex"


def test_collect_backend_statuses_runs_probes() -> None:
    registry = build_default_registry(
        _WithStatus("codex", True),
        _WithStatus("augment", False),
        _Plain("cursor"),
        _BrokenStatus("extra"),
    )

    statuses = {
        status.identifier: status
        for status in asyncio.run(collect_backend_statuses(registry))
    }

    assert statuses["codex"].available is True
    assert statuses["codex"].details == "probed"
    assert statuses["augment"].available is False
    assert statuses["cursor"].available is True
    assert statuses["cursor"].authenticated is None
    assert statuses["extra"].available is False
    assert statuses["extra"].details == "probe exploded"
    assert statuses["codex"].to_payload()["name"] == "codex backend"


class _ConfigOnly(_Plain):
    async def validate_config(self, config: Any) -> bool:
        return False


def test_config_probe_is_used_when_auth_probe_is_missing() -> None:
    registry = build_default_registry(_ConfigOnly("augment"))

    (status,) = asyncio.run(collect_backend_statuses(registry))

    assert status.available is False
    assert status.authenticated is None
