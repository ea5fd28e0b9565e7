from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import jwt

from codex_router.backends.base import (
    BackendFailure,
    BackendRequest,
    BackendSuccess,
    ChatRequest,
    ExecutionContext,
    FailureKind,
)
from codex_router.backends.codex import CodexBackend
from codex_router.credentials import OAuthCredential, StaticCredentialProvider

BASE_URL = "https://chatgpt.example/backend-api"
SSE_BODY = "\n".join(
    [
        'data: {"type":"response.output_text.delta","delta":"hi"}',
        "",
        'data: {"type":"response.completed","response":{"id":"resp_1","output":[]}}',
        "",
    ]
)


class _Instructions:
    def __init__(self) -> None:
        self.bridge_calls = 0

    async def codex_instructions(self) -> str:
        return "CODEX INSTRUCTIONS"

    async def bridge_prompt(self) -> str:
        self.bridge_calls += 1
        return "BRIDGE PROMPT"


class _Recorder:
    def __init__(self, response: httpx.Response | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self._response = response or httpx.Response(200, text=SSE_BODY)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._response


def _request(
    credential: OAuthCredential | None,
    *,
    payload: dict[str, Any] | None = None,
    **backend_config: Any,
) -> BackendRequest:
    body = ChatRequest.from_payload(
        payload
        or {"model": "gpt-5-codex", "messages": [{"role": "user", "content": "hello"}]}
    )
    return BackendRequest(
        body=body,
        context=ExecutionContext(
            original_model=body.model,
            user_config={},
            backend_config={"base_url": BASE_URL, "codex_mode": True, **backend_config},
            credential=credential,
        ),
    )


def _run(backend: CodexBackend, request: BackendRequest) -> Any:
    async def _go() -> Any:
        try:
            return await backend.execute(request)
        finally:
            await backend.close()

    return asyncio.run(_go())


def _backend(handler: Any, instructions: _Instructions | None = None) -> CodexBackend:
    return CodexBackend(
        instructions=instructions or _Instructions(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _credential(token: str = "token-1") -> OAuthCredential:
    return OAuthCredential(type="oauth", access_token=token)


def test_missing_credential_fails_before_network() -> None:
    recorder = _Recorder()
    result = _run(_backend(recorder), _request(None))

    assert isinstance(result, BackendFailure)
    assert result.kind is FailureKind.AUTH
    assert recorder.requests == []


def test_non_oauth_credential_is_rejected() -> None:
    recorder = _Recorder()
    credential = OAuthCredential(type="api_key", access_token="sk-test")
    result = _run(_backend(recorder), _request(credential))

    assert isinstance(result, BackendFailure)
    assert result.kind is FailureKind.AUTH
    assert recorder.requests == []


def test_success_returns_final_response_json() -> None:
    recorder = _Recorder()
    instructions = _Instructions()
    result = _run(
        _backend(recorder, instructions),
        _request(_credential(), account_id="acct-configured"),
    )

    assert isinstance(result, BackendSuccess)
    assert result.is_streaming is False
    assert json.loads(result.content) == {"id": "resp_1", "output": []}
    assert result.metadata["provider"] == "codex"
    assert result.metadata["upstream_model"] == "gpt-5-codex"

    sent = recorder.requests[0]
    assert str(sent.url) == f"{BASE_URL}/codex/responses"
    assert sent.headers["Authorization"] == "Bearer token-1"
    assert sent.headers["chatgpt-account-id"] == "acct-configured"
    body = json.loads(sent.content)
    assert body["instructions"] == "CODEX INSTRUCTIONS"
    assert body["input"][0]["content"][0]["text"] == "BRIDGE PROMPT"
    assert instructions.bridge_calls == 1


def test_account_id_falls_back_to_token_claim() -> None:
    token = jwt.encode(
        {"https://api.openai.com/auth": {"chatgpt_account_id": "acct-from-jwt"}},
        "a-test-signing-key-that-is-long-enough-for-hs256",
        algorithm="HS256",
    )
    recorder = _Recorder()
    _run(_backend(recorder), _request(_credential(token)))

    assert recorder.requests[0].headers["chatgpt-account-id"] == "acct-from-jwt"


def test_codex_mode_off_skips_bridge_prompt() -> None:
    recorder = _Recorder()
    instructions = _Instructions()
    _run(_backend(recorder, instructions), _request(_credential(), codex_mode=False))

    assert instructions.bridge_calls == 0
    body = json.loads(recorder.requests[0].content)
    assert [item["role"] for item in body["input"]] == ["user"]


def test_tool_requests_return_raw_stream() -> None:
    recorder = _Recorder()
    payload = {
        "model": "gpt-5",
        "messages": [{"role": "user", "content": "use a tool"}],
        "tools": [{"type": "function", "function": {"name": "shell"}}],
    }
    result = _run(_backend(recorder), _request(_credential(), payload=payload))

    assert isinstance(result, BackendSuccess)
    assert result.is_streaming is True
    assert result.content == SSE_BODY


def test_non_success_status_maps_to_api_failure() -> None:
    recorder = _Recorder(httpx.Response(429, text="x" * 5000))
    result = _run(_backend(recorder), _request(_credential()))

    assert isinstance(result, BackendFailure)
    assert result.kind is FailureKind.API
    assert result.code == 429
    assert result.message.startswith("Codex API error: 429 ")
    assert len(result.message) == len("Codex API error: 429 ") + 2000


def test_transport_error_maps_to_network_failure() -> None:
    def _raise(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = _run(_backend(_raise), _request(_credential()))

    assert isinstance(result, BackendFailure)
    assert result.kind is FailureKind.NETWORK


def test_invalid_request_maps_to_validation_failure() -> None:
    recorder = _Recorder()
    payload = {"model": "gpt-5", "messages": [{"role": "system", "content": "x"}]}
    result = _run(_backend(recorder), _request(_credential(), payload=payload))

    assert isinstance(result, BackendFailure)
    assert result.kind is FailureKind.VALIDATION
    assert recorder.requests == []


def test_auth_status_reports_provider_credential() -> None:
    async def _status(provider: StaticCredentialProvider) -> Any:
        backend = CodexBackend(
            instructions=_Instructions(),
            credential_provider=provider,
            client=httpx.AsyncClient(transport=httpx.MockTransport(_Recorder())),
        )
        try:
            return await backend.get_auth_status()
        finally:
            await backend.close()

    assert asyncio.run(_status(StaticCredentialProvider(_credential()))).authenticated
    assert not asyncio.run(_status(StaticCredentialProvider(None))).authenticated
