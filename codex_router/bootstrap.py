from __future__ import annotations

import logging
from dataclasses import dataclass

from codex_router.audit import JsonlAuditLogger
from codex_router.backends.cli import AugmentBackend, CursorBackend
from codex_router.backends.codex import CodexBackend
from codex_router.config import CodexBackendConfig, RouterConfig, load_router_config
from codex_router.credentials import StaticCredentialProvider
from codex_router.dispatcher import Dispatcher
from codex_router.instructions import InstructionsFetcher
from codex_router.registry import BackendRegistry, build_default_registry
from codex_router.settings import Settings

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class RouterRuntime:
    settings: Settings
    config: RouterConfig
    registry: BackendRegistry
    dispatcher: Dispatcher
    instructions: InstructionsFetcher
    codex_backend: CodexBackend
    audit_logger: JsonlAuditLogger | None = None

    async def aclose(self) -> None:
        await self.codex_backend.close()
        await self.instructions.close()
        if self.audit_logger is not None:
            self.audit_logger.close()


def build_credential_provider(config: CodexBackendConfig) -> StaticCredentialProvider:
    return StaticCredentialProvider.from_values(
        access_token=config.access_token,
        refresh_token=config.refresh_token,
        expires_at=config.expires_at,
        access_token_env=config.access_token_env,
    )


def build_runtime(
    settings: Settings,
    *,
    config: RouterConfig | None = None,
    audit_enabled: bool | None = None,
) -> RouterRuntime:
    router_config = config or load_router_config(settings.router_config_path)
    providers = router_config.providers
    credential_provider = build_credential_provider(providers.codex)
    instructions = InstructionsFetcher.from_settings(settings)
    codex_backend = CodexBackend(
        instructions=instructions,
        credential_provider=credential_provider,
        timeout_seconds=providers.codex.timeout_seconds,
    )
    registry = build_default_registry(
        codex_backend,
        AugmentBackend(providers.augment),
        CursorBackend(providers.cursor),
    )

    enabled = (
        settings.router_audit_log_enabled if audit_enabled is None else audit_enabled
    )
    audit_logger = (
        JsonlAuditLogger(path=settings.router_audit_log_path) if enabled else None
    )
    dispatcher = Dispatcher.from_config(
        registry,
        router_config,
        codex_mode=settings.codex_mode,
        credential_provider=credential_provider,
        audit_hook=audit_logger.log if audit_logger is not None else None,
    )
    logger.info(
        "router_runtime_ready backends=%s default=%s fallback=%s auto_fallback=%s "
        "codex_mode=%s audit_log_enabled=%s",
        ",".join(registry.ids()),
        providers.default,
        providers.fallback,
        providers.auto_fallback,
        router_config.effective_codex_mode(settings.codex_mode),
        enabled,
    )
    return RouterRuntime(
        settings=settings,
        config=router_config,
        registry=registry,
        dispatcher=dispatcher,
        instructions=instructions,
        codex_backend=codex_backend,
        audit_logger=audit_logger,
    )
