from __future__ import annotations

import httpx

from codex_router.backends.base import BackendFailure, FailureKind

_CLI_RULES: tuple[tuple[tuple[str, ...], FailureKind], ...] = (
    (("not found", "enoent", "no such file"), FailureKind.PROCESS),
    (("permission", "eacces"), FailureKind.PROCESS),
    (("timeout", "timed out", "etimedout"), FailureKind.NETWORK),
    (("invalid", "usage"), FailureKind.VALIDATION),
)

_HTTP_RULES: tuple[tuple[tuple[str, ...], FailureKind], ...] = (
    (("unauthorized", "forbidden", "auth", "401", "403"), FailureKind.AUTH),
    (
        ("network", "fetch", "connect", "timeout", "timed out"),
        FailureKind.NETWORK,
    ),
    (("parse", "invalid", "validation"), FailureKind.VALIDATION),
)


def _match(
    message: str, rules: tuple[tuple[tuple[str, ...], FailureKind], ...]
) -> FailureKind | None:
    lowered = message.lower()
    for tokens, kind in rules:
        if any(token in lowered for token in tokens):
            return kind
    return None


def classify_process_error(message: str) -> FailureKind:
    return _match(message, _CLI_RULES) or FailureKind.API


def classify_http_error(message: str) -> FailureKind:
    return _match(message, _HTTP_RULES) or FailureKind.API


def describe_exception(exc: BaseException) -> str:
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__


def cli_failure_from_exception(
    exc: BaseException, executable: str | None = None
) -> BackendFailure:
    message = describe_exception(exc)
    if (
        isinstance(exc, FileNotFoundError)
        and executable is not None
        and exc.filename == executable
        and "not found" not in message.lower()
    ):
        message = f"command not found: {message}"
    return BackendFailure(
        kind=classify_process_error(message),
        message=message,
        cause=exc,
    )


def http_failure_from_exception(exc: BaseException) -> BackendFailure:
    message = describe_exception(exc)
    if isinstance(exc, httpx.RequestError):
        return BackendFailure(
            kind=FailureKind.NETWORK,
            message=f"{exc.__class__.__name__}: {message}",
            cause=exc,
        )
    return BackendFailure(
        kind=classify_http_error(message),
        message=message,
        cause=exc,
    )
