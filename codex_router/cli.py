from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Callable, cast

import yaml

from codex_router.backends.base import BackendFailure, ChatMessage, ChatRequest
from codex_router.bootstrap import build_runtime
from codex_router.cache import load_cache
from codex_router.config import KNOWN_BACKEND_IDS
from codex_router.instructions import InstructionsFetcher
from codex_router.registry import collect_backend_statuses
from codex_router.settings import Settings, get_settings


def _settings_for(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    config_path = getattr(args, "config", None)
    if config_path:
        settings = settings.model_copy(update={"router_config_path": config_path})
    return settings


def _build_ask_request(args: argparse.Namespace) -> ChatRequest:
    messages: list[ChatMessage] = []
    if args.system:
        messages.append(ChatMessage(role="system", content=args.system))
    messages.append(ChatMessage(role="user", content=args.prompt))
    reasoning: dict[str, str] = {}
    if args.reasoning_effort:
        reasoning["effort"] = args.reasoning_effort
    if args.reasoning_summary:
        reasoning["summary"] = args.reasoning_summary
    return ChatRequest(
        model=args.model or "",
        messages=tuple(messages),
        reasoning=reasoning or None,
    )


async def _ask(args: argparse.Namespace) -> int:
    runtime = build_runtime(_settings_for(args), audit_enabled=not args.no_audit)
    try:
        outcome = await runtime.dispatcher.dispatch_with_trace(
            _build_ask_request(args), args.backend
        )
    finally:
        await runtime.aclose()

    result = outcome.result
    if isinstance(result, BackendFailure):
        print(
            f"error: [{outcome.backend_id}/{result.kind.value}] {result.message}",
            file=sys.stderr,
        )
        return 1

    print(result.content)
    if args.show_metadata:
        summary: dict[str, Any] = {
            "backend": outcome.backend_id,
            "attempted": outcome.attempted,
            "streaming": result.is_streaming,
            "metadata": result.metadata,
        }
        print(yaml.safe_dump(summary, sort_keys=False).rstrip(), file=sys.stderr)
    return 0


def cmd_ask(args: argparse.Namespace) -> int:
    return asyncio.run(_ask(args))


async def _backends(args: argparse.Namespace) -> list[dict[str, object]]:
    runtime = build_runtime(_settings_for(args), audit_enabled=False)
    try:
        statuses = await collect_backend_statuses(runtime.registry)
    finally:
        await runtime.aclose()
    return [status.to_payload() for status in statuses]


def cmd_backends(args: argparse.Namespace) -> int:
    payload = asyncio.run(_backends(args))
    print(yaml.safe_dump({"backends": payload}, sort_keys=False).rstrip())
    return 0


async def _refresh_prompts(fetcher: InstructionsFetcher) -> None:
    try:
        await fetcher.codex_instructions()
        await fetcher.bridge_prompt()
    finally:
        await fetcher.close()


def cmd_prompt_cache(args: argparse.Namespace) -> int:
    fetcher = InstructionsFetcher.from_settings(get_settings())
    if args.refresh:
        asyncio.run(_refresh_prompts(fetcher))

    entries: dict[str, Any] = {}
    for name, cache in (
        ("codex_instructions", fetcher.instructions_cache),
        ("bridge_prompt", fetcher.bridge_prompt_cache),
    ):
        loaded = load_cache(cache.content_path, cache.metadata_path)
        entries[name] = {
            "path": str(cache.content_path),
            "cached": loaded.content is not None,
            "bytes": len(loaded.content) if loaded.content is not None else 0,
            "prefix": loaded.content[: args.chars] if loaded.content else None,
            "metadata": loaded.metadata,
        }
    print(yaml.safe_dump(entries, sort_keys=False).rstrip())
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "codex_router.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=False,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codex-router",
        description="Route chat requests to Codex, Augment or Cursor with fallback.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ask_cmd = subparsers.add_parser("ask", help="Dispatch a single prompt.")
    ask_cmd.add_argument("prompt")
    ask_cmd.add_argument("--model", default=None)
    ask_cmd.add_argument("--backend", choices=KNOWN_BACKEND_IDS, default=None)
    ask_cmd.add_argument("--system", default=None, help="Optional system message.")
    ask_cmd.add_argument(
        "--reasoning-effort", choices=["minimal", "low", "medium", "high"]
    )
    ask_cmd.add_argument("--reasoning-summary", choices=["auto", "concise", "detailed"])
    ask_cmd.add_argument("--config", default=None, help="Router config YAML path.")
    ask_cmd.add_argument("--no-audit", action="store_true")
    ask_cmd.add_argument(
        "--show-metadata",
        action="store_true",
        help="Print backend and result metadata to stderr.",
    )
    ask_cmd.set_defaults(handler=cmd_ask)

    backends_cmd = subparsers.add_parser(
        "backends", help="Show registered backends and their availability."
    )
    backends_cmd.add_argument("--config", default=None, help="Router config YAML path.")
    backends_cmd.set_defaults(handler=cmd_backends)

    cache_cmd = subparsers.add_parser(
        "prompt-cache", help="Inspect the cached Codex instructions and bridge prompt."
    )
    cache_cmd.add_argument(
        "--refresh", action="store_true", help="Revalidate both caches first."
    )
    cache_cmd.add_argument("--chars", type=int, default=50)
    cache_cmd.set_defaults(handler=cmd_prompt_cache)

    serve_cmd = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve_cmd.add_argument("--host", default=None)
    serve_cmd.add_argument("--port", type=int, default=None)
    serve_cmd.set_defaults(handler=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - covered via CLI tests
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
