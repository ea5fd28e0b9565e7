from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence
from uuid import uuid4

from codex_router.backends.base import (
    BackendFailure,
    BackendRequest,
    BackendResult,
    ChatRequest,
    ExecutionContext,
    FailureKind,
    is_failure,
)
from codex_router.config import RouterConfig
from codex_router.credentials import CredentialProvider
from codex_router.registry import BackendRegistry, select_backend_id

AuditHook = Callable[[dict[str, Any]], None]

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class DispatchPolicy:
    default_backend: str = "codex"
    fallback_backend: str | None = "augment"
    auto_fallback: bool = True
    priority: tuple[str, ...] = ("codex", "augment", "cursor")
    timeouts: Mapping[str, float] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: RouterConfig) -> DispatchPolicy:
        providers = config.providers
        timeouts: dict[str, float] = {}
        for backend_id in ("codex", "augment", "cursor"):
            timeout = providers.timeout_for(backend_id)
            if timeout is not None:
                timeouts[backend_id] = timeout
        return cls(
            default_backend=providers.default,
            fallback_backend=providers.fallback,
            auto_fallback=providers.auto_fallback,
            priority=tuple(providers.priority),
            timeouts=timeouts,
        )

    def should_fall_back(self, failed_backend: str) -> bool:
        return (
            self.auto_fallback
            and bool(self.fallback_backend)
            and self.fallback_backend != failed_backend
        )


@dataclass(slots=True)
class DispatchOutcome:
    result: BackendResult
    backend_id: str
    attempted: list[str] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return len(self.attempted) > 1


class Dispatcher:
    """Runs the selected backend and substitutes the fallback once on failure."""

    def __init__(
        self,
        registry: BackendRegistry,
        policy: DispatchPolicy,
        backend_configs: Mapping[str, Mapping[str, Any]] | None = None,
        user_config: Mapping[str, Any] | None = None,
        credential_provider: CredentialProvider | None = None,
        audit_hook: AuditHook | None = None,
    ) -> None:
        self.registry = registry
        self.policy = policy
        self._backend_configs = dict(backend_configs or {})
        self._user_config = dict(user_config or {})
        self._credential_provider = credential_provider
        self._audit_hook = audit_hook

    @classmethod
    def from_config(
        cls,
        registry: BackendRegistry,
        config: RouterConfig,
        *,
        codex_mode: bool | None = None,
        credential_provider: CredentialProvider | None = None,
        audit_hook: AuditHook | None = None,
    ) -> Dispatcher:
        backend_configs = {
            backend_id: config.providers.backend_config(backend_id)
            for backend_id in ("codex", "augment", "cursor")
        }
        backend_configs["codex"]["codex_mode"] = config.effective_codex_mode(codex_mode)
        backend_configs["codex"]["account_id"] = (
            config.providers.codex.resolved_account_id()
        )
        return cls(
            registry,
            DispatchPolicy.from_config(config),
            backend_configs=backend_configs,
            user_config=config.user_config.as_context(),
            credential_provider=credential_provider,
            audit_hook=audit_hook,
        )

    def select(self, request: ChatRequest) -> str:
        return select_backend_id(
            request.model,
            self.policy.priority,
            self.registry,
            self.policy.default_backend,
        )

    async def dispatch(
        self, request: ChatRequest, backend_id: str | None = None
    ) -> BackendResult:
        outcome = await self.dispatch_with_trace(request, backend_id)
        return outcome.result

    async def dispatch_with_trace(
        self, request: ChatRequest, backend_id: str | None = None
    ) -> DispatchOutcome:
        dispatch_id = uuid4().hex[:12]
        selected = backend_id or self.select(request)
        logger.info(
            "dispatch_start dispatch_id=%s model=%s backend=%s explicit=%s",
            dispatch_id,
            request.model or "-",
            selected,
            backend_id is not None,
        )

        if selected not in self.registry:
            failure = BackendFailure(
                kind=FailureKind.VALIDATION,
                message=f"Backend not found: {selected}",
            )
            self._audit(dispatch_id, request, selected, failure, attempted=[])
            return DispatchOutcome(result=failure, backend_id=selected, attempted=[])

        attempted = [selected]
        result = await self._execute(dispatch_id, selected, request)
        final_backend = selected

        fallback = self.policy.fallback_backend
        if is_failure(result) and fallback and self.policy.should_fall_back(selected):
            logger.warning(
                "dispatch_fallback dispatch_id=%s from=%s to=%s kind=%s",
                dispatch_id,
                selected,
                fallback,
                result.kind.value,
            )
            attempted.append(fallback)
            final_backend = fallback
            if fallback in self.registry:
                result = await self._execute(dispatch_id, fallback, request)
            else:
                result = BackendFailure(
                    kind=FailureKind.VALIDATION,
                    message=f"Backend not found: {fallback}",
                )

        self._audit(dispatch_id, request, final_backend, result, attempted=attempted)
        return DispatchOutcome(
            result=result, backend_id=final_backend, attempted=attempted
        )

    async def _execute(
        self, dispatch_id: str, backend_id: str, request: ChatRequest
    ) -> BackendResult:
        backend = self.registry.get(backend_id)
        if backend is None:
            return BackendFailure(
                kind=FailureKind.VALIDATION,
                message=f"Backend not found: {backend_id}",
            )

        started = time.perf_counter()
        timeout = self.policy.timeouts.get(backend_id)
        try:
            context = await self._build_context(
                backend_id, request, backend.requires_credential
            )
            result = await asyncio.wait_for(
                backend.execute(BackendRequest(body=request, context=context)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            result = BackendFailure(
                kind=FailureKind.NETWORK,
                message=f"Backend {backend_id} timed out after {timeout}s",
                cause=exc,
            )
        except Exception as exc:
            result = BackendFailure(
                kind=FailureKind.PROCESS,
                message=f"Backend {backend_id} raised {exc.__class__.__name__}: {exc}",
                cause=exc,
            )

        latency_ms = (time.perf_counter() - started) * 1000.0
        if isinstance(result, BackendFailure):
            logger.warning(
                "dispatch_failure dispatch_id=%s backend=%s kind=%s code=%s "
                "latency_ms=%.2f message=%s",
                dispatch_id,
                backend_id,
                result.kind.value,
                result.code,
                latency_ms,
                result.message[:500],
            )
        else:
            logger.info(
                "dispatch_success dispatch_id=%s backend=%s streaming=%s latency_ms=%.2f",
                dispatch_id,
                backend_id,
                result.is_streaming,
                latency_ms,
            )
        return result

    async def _build_context(
        self, backend_id: str, request: ChatRequest, requires_credential: bool
    ) -> ExecutionContext:
        credential = None
        if requires_credential and self._credential_provider is not None:
            credential = await self._credential_provider.get_credential()
        return ExecutionContext(
            original_model=request.model or None,
            user_config=dict(self._user_config),
            backend_config=dict(self._backend_configs.get(backend_id, {})),
            credential=credential,
        )

    def _audit(
        self,
        dispatch_id: str,
        request: ChatRequest,
        backend_id: str,
        result: BackendResult,
        *,
        attempted: Sequence[str],
    ) -> None:
        if self._audit_hook is None:
            return
        event: dict[str, Any] = {
            "event": "dispatch_result",
            "dispatch_id": dispatch_id,
            "model": request.model,
            "backend": backend_id,
            "attempted": list(attempted),
            "prompt": request.last_message_text(),
        }
        if isinstance(result, BackendFailure):
            event.update(
                {
                    "outcome": "failure",
                    "kind": result.kind.value,
                    "code": result.code,
                    "message": result.message,
                }
            )
        else:
            event.update(
                {
                    "outcome": "success",
                    "streaming": result.is_streaming,
                    "metadata": result.metadata,
                }
            )
        try:
            self._audit_hook(event)
        except Exception as exc:
            logger.debug(
                "dispatch_audit_failed dispatch_id=%s error=%s", dispatch_id, exc
            )
