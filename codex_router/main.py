from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from codex_router.backends.base import (
    BackendFailure,
    ChatRequest,
    RequestValidationError,
)
from codex_router.bootstrap import RouterRuntime, build_runtime
from codex_router.dispatcher import Dispatcher, DispatchOutcome
from codex_router.registry import collect_backend_statuses
from codex_router.settings import get_settings

app = FastAPI(
    title="Codex Router",
    description="Routes chat completions to Codex, Augment or Cursor with fallback.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    runtime = build_runtime(settings)
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.dispatcher = runtime.dispatcher
    logger.info(
        "startup complete router_config_path=%s backends=%d audit_log_path=%s",
        settings.router_config_path,
        len(runtime.registry),
        settings.router_audit_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    runtime: RouterRuntime | None = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.aclose()
    logger.info("shutdown complete")


def _error_response(
    status_code: int,
    message: str,
    *,
    provider: str | None = None,
    code: Any = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "provider": provider, "code": code},
    )


def failure_status_code(failure: BackendFailure) -> int:
    code = failure.code
    if isinstance(code, str) and code.strip().isdigit():
        code = int(code.strip())
    if isinstance(code, int) and not isinstance(code, bool) and 400 <= code <= 599:
        return code
    return 500


def outcome_to_response(outcome: DispatchOutcome, request: ChatRequest) -> Response:
    result = outcome.result
    if isinstance(result, BackendFailure):
        return _error_response(
            failure_status_code(result),
            result.message,
            provider=outcome.backend_id,
            code=result.code,
        )

    headers = {
        "X-Provider": outcome.backend_id,
        "X-Model": str(result.metadata.get("model") or request.model or "default"),
        "X-Metadata": json.dumps(result.metadata, ensure_ascii=True, default=str),
    }
    if outcome.used_fallback:
        headers["X-Attempted-Backends"] = ",".join(outcome.attempted)
    media_type = "text/event-stream" if result.is_streaming else "application/json"
    return Response(
        content=result.content,
        status_code=200,
        media_type=media_type,
        headers=headers,
    )


def _requested_backend(request: Request) -> str | None:
    raw = request.headers.get("x-backend") or request.query_params.get("backend")
    if raw is None:
        return None
    cleaned = raw.strip().lower()
    return cleaned or None


async def _dispatch_request(request: Request) -> Response:
    try:
        payload = await request.json()
    except (ValueError, UnicodeDecodeError):
        return _error_response(400, "Invalid request body")

    try:
        chat_request = ChatRequest.from_payload(payload)
    except RequestValidationError as exc:
        return _error_response(400, str(exc))

    dispatcher: Dispatcher = app.state.dispatcher
    outcome = await dispatcher.dispatch_with_trace(
        chat_request, _requested_backend(request)
    )
    return outcome_to_response(outcome, chat_request)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/backends")
async def backends() -> dict[str, Any]:
    dispatcher: Dispatcher = app.state.dispatcher
    statuses = await collect_backend_statuses(dispatcher.registry)
    return {
        "object": "list",
        "default": dispatcher.policy.default_backend,
        "fallback": dispatcher.policy.fallback_backend,
        "auto_fallback": dispatcher.policy.auto_fallback,
        "data": [status.to_payload() for status in statuses],
    }


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _dispatch_request(request)


@app.post("/v1/responses")
async def responses(request: Request) -> Response:
    return await _dispatch_request(request)


@app.exception_handler(Exception)
async def unexpected_error_handler(_: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error error_type=%s", exc.__class__.__name__)
    return _error_response(500, f"Internal error: {exc.__class__.__name__}")


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "codex_router.main:app", host=settings.host, port=settings.port, reload=False
    )


if __name__ == "__main__":
    run()
