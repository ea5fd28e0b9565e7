from __future__ import annotations

import logging
import shlex
from typing import Any, Mapping

from codex_router.backends.base import (
    AuthStatus,
    Backend,
    BackendRequest,
    BackendResult,
    BackendSuccess,
    ChatRequest,
)
from codex_router.backends.errors import cli_failure_from_exception
from codex_router.backends.subprocess_runner import CommandOutput, run_command
from codex_router.config import (
    AugmentBackendConfig,
    CliBackendConfig,
    CursorBackendConfig,
)
from codex_router.streaming import StreamingOutputDecoder

CLI_VERB = "ask"

logger = logging.getLogger("uvicorn.error")


def build_cli_args(
    request: ChatRequest, extra_args: list[str] | None = None
) -> list[str]:
    args = [CLI_VERB, request.last_message_text()]
    if request.model:
        args.extend(["--model", request.model])
    reasoning = request.reasoning or {}
    effort = reasoning.get("effort")
    if effort:
        args.extend(["--reasoning-effort", str(effort)])
    summary = reasoning.get("summary")
    if summary:
        args.extend(["--reasoning-summary", str(summary)])
    if extra_args:
        args.extend(extra_args)
    return args


class CliBackend(Backend):
    """Runs a chat request through an external command-line tool."""

    config_model: type[CliBackendConfig] = CliBackendConfig
    supports_streaming = False

    def __init__(self, config: CliBackendConfig | None = None) -> None:
        self._config = config or self.config_model()

    def _resolve_config(self, raw: Mapping[str, Any]) -> CliBackendConfig:
        if not raw:
            return self._config
        merged = {**self._config.model_dump(), **dict(raw)}
        return type(self._config).model_validate(merged)

    async def execute(self, request: BackendRequest) -> BackendResult:
        config = self._resolve_config(request.context.backend_config)
        args = build_cli_args(request.body, config.args)
        streaming = self.supports_streaming and config.streaming
        try:
            if streaming:
                decoder = StreamingOutputDecoder()
                output = await self._run(config, args, on_stdout=decoder.feed)
                content = decoder.finish().strip()
            else:
                output = await self._run(config, args)
                content = output.stdout.strip()
        except Exception as exc:
            logger.warning(
                "cli_backend_error backend=%s executable=%s error=%s",
                self.id,
                config.executable,
                exc,
            )
            return cli_failure_from_exception(exc, config.executable)

        if output.exit_code != 0:
            logger.warning(
                "cli_backend_exit backend=%s exit_code=%d stderr=%s",
                self.id,
                output.exit_code,
                output.stderr.strip()[:500],
            )

        metadata: dict[str, Any] = {
            "provider": self.id,
            "model": request.body.model or "default",
            "command": shlex.join([config.executable, *args]),
            "exit_code": output.exit_code,
        }
        if streaming:
            metadata["streaming"] = True
        return BackendSuccess(
            content=content, metadata=metadata, is_streaming=streaming
        )

    async def _run(
        self,
        config: CliBackendConfig,
        args: list[str],
        on_stdout: Any = None,
    ) -> CommandOutput:
        return await run_command(
            config.executable,
            args,
            cwd=config.cwd,
            env=config.env,
            timeout_seconds=config.timeout_seconds,
            on_stdout=on_stdout,
        )

    async def validate_config(self, config: Mapping[str, Any]) -> bool:
        resolved = self._resolve_config(config)
        try:
            output = await run_command(
                resolved.executable,
                ["--version"],
                cwd=resolved.cwd,
                env=resolved.env,
                timeout_seconds=min(resolved.timeout_seconds, 10.0),
            )
        except Exception as exc:
            logger.debug("cli_probe_failed backend=%s error=%s", self.id, exc)
            return False
        return output.exit_code == 0

    async def get_auth_status(self) -> AuthStatus:
        available = await self.validate_config({})
        return AuthStatus(
            authenticated=available,
            details=f"{self.name} available" if available else f"{self.name} not found",
        )


class AugmentBackend(CliBackend):
    id = "augment"
    name = "Augment CLI"
    config_model = AugmentBackendConfig


class CursorBackend(CliBackend):
    id = "cursor"
    name = "Cursor CLI"
    config_model = CursorBackendConfig
    supports_streaming = True
