from __future__ import annotations

import json
import logging
import time
from typing import Any, Mapping, Protocol

import httpx

from codex_router.backends.base import (
    AuthStatus,
    Backend,
    BackendFailure,
    BackendRequest,
    BackendResult,
    BackendSuccess,
    FailureKind,
    RequestValidationError,
)
from codex_router.backends.errors import http_failure_from_exception
from codex_router.backends.transform import (
    LOGICAL_CHAT_COMPLETIONS_URL,
    build_codex_body,
    build_codex_headers,
    final_response_from_sse,
    rewrite_url_for_codex,
)
from codex_router.config import DEFAULT_CODEX_BASE_URL
from codex_router.credentials import (
    CredentialProvider,
    extract_account_id,
    is_usable_credential,
)

_ERROR_BODY_LIMIT = 2000

logger = logging.getLogger("uvicorn.error")


class InstructionsSource(Protocol):
    async def codex_instructions(self) -> str: ...

    async def bridge_prompt(self) -> str: ...


class CodexBackend(Backend):
    id = "codex"
    name = "OpenAI Codex (ChatGPT Backend)"
    requires_credential = True

    def __init__(
        self,
        *,
        instructions: InstructionsSource,
        credential_provider: CredentialProvider | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._instructions = instructions
        self._credential_provider = credential_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=None, connect=5.0, read=timeout_seconds)
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def execute(self, request: BackendRequest) -> BackendResult:
        credential = request.context.credential
        if credential is None or not credential.is_usable:
            return BackendFailure(
                kind=FailureKind.AUTH, message="No valid OAuth token available"
            )

        config = request.context.backend_config
        try:
            instructions = await self._instructions.codex_instructions()
            codex_mode = bool(config.get("codex_mode", True))
            bridge_prompt = (
                await self._instructions.bridge_prompt() if codex_mode else None
            )
            body = build_codex_body(
                request.body,
                instructions=instructions,
                user_config=request.context.user_config,
                codex_mode=codex_mode,
                bridge_prompt=bridge_prompt,
            )
        except RequestValidationError as exc:
            return BackendFailure(
                kind=FailureKind.VALIDATION,
                message=f"Failed to transform request body: {exc}",
                cause=exc,
            )
        except Exception as exc:
            logger.warning("codex_prepare_error error=%s", exc)
            return http_failure_from_exception(exc)

        url = rewrite_url_for_codex(
            LOGICAL_CHAT_COMPLETIONS_URL,
            str(config.get("base_url") or DEFAULT_CODEX_BASE_URL),
        )
        account_id = _resolve_account_id(config, credential.access_token)
        headers = build_codex_headers(credential.access_token, account_id)
        streaming = request.body.wants_tools

        started = time.perf_counter()
        try:
            response = await self._client.post(
                url,
                json=body,
                headers=headers,
                timeout=_request_timeout(config) or self._client.timeout,
            )
        except Exception as exc:
            logger.warning(
                "codex_request_error url=%s error_type=%s error=%s",
                url,
                exc.__class__.__name__,
                exc,
            )
            return http_failure_from_exception(exc)

        latency_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "codex_response status=%d latency_ms=%.2f model=%s streaming=%s",
            response.status_code,
            latency_ms,
            body["model"],
            streaming,
        )

        if not response.is_success:
            return BackendFailure(
                kind=FailureKind.API,
                message=(
                    f"Codex API error: {response.status_code} "
                    f"{response.text[:_ERROR_BODY_LIMIT]}"
                ).strip(),
                code=response.status_code,
            )

        metadata: dict[str, Any] = {
            "provider": self.id,
            "model": request.body.model,
            "upstream_model": body["model"],
            "url": url,
        }
        if streaming:
            return BackendSuccess(
                content=response.text, metadata=metadata, is_streaming=True
            )

        final = final_response_from_sse(response.text)
        content = json.dumps(final) if final is not None else response.text
        return BackendSuccess(content=content, metadata=metadata)

    async def validate_config(self, config: Mapping[str, Any]) -> bool:
        return is_usable_credential(config.get("credential"))

    async def get_auth_status(self) -> AuthStatus:
        if self._credential_provider is None:
            return AuthStatus(authenticated=False, details="No credential provider")
        try:
            credential = await self._credential_provider.get_credential()
        except Exception as exc:
            return AuthStatus(authenticated=False, details=str(exc))
        valid = await self.validate_config({"credential": credential})
        return AuthStatus(
            authenticated=valid,
            details="OAuth token valid" if valid else "No valid OAuth token",
        )


def _resolve_account_id(config: Mapping[str, Any], access_token: str) -> str | None:
    configured = config.get("account_id")
    if isinstance(configured, str) and configured.strip():
        return configured.strip()
    return extract_account_id(access_token)


def _request_timeout(config: Mapping[str, Any]) -> httpx.Timeout | None:
    raw = config.get("timeout_seconds")
    if isinstance(raw, (int, float)) and raw > 0:
        return httpx.Timeout(float(raw), connect=min(5.0, float(raw)))
    return None
