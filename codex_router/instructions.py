from __future__ import annotations

import asyncio
from pathlib import Path

import httpx

from codex_router.cache import EtagFileCache, fetch_with_revalidation
from codex_router.settings import Settings

CODEX_INSTRUCTIONS_CACHE_NAME = "codex-instructions"
BRIDGE_PROMPT_CACHE_NAME = "opencode-codex"


class InstructionsFetcher:
    """Fetches the Codex instruction prelude and bridge prompt through the ETag cache."""

    def __init__(
        self,
        *,
        cache_dir: str | Path,
        instructions_url: str,
        bridge_prompt_url: str,
        ttl_ms: int,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._instructions_url = instructions_url
        self._bridge_prompt_url = bridge_prompt_url
        self._ttl_ms = ttl_ms
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds), follow_redirects=True
        )
        self.instructions_cache = EtagFileCache.in_directory(
            cache_dir, CODEX_INSTRUCTIONS_CACHE_NAME
        )
        self.bridge_prompt_cache = EtagFileCache.in_directory(
            cache_dir, BRIDGE_PROMPT_CACHE_NAME
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, client: httpx.AsyncClient | None = None
    ) -> InstructionsFetcher:
        return cls(
            cache_dir=settings.cache_path,
            instructions_url=settings.codex_instructions_url,
            bridge_prompt_url=settings.bridge_prompt_url,
            ttl_ms=settings.instructions_cache_ttl_ms,
            client=client,
            timeout_seconds=settings.instructions_fetch_timeout_seconds,
        )

    async def codex_instructions(self) -> str:
        return await fetch_with_revalidation(
            self._client,
            self._instructions_url,
            self.instructions_cache,
            ttl_ms=self._ttl_ms,
        )

    async def bridge_prompt(self) -> str:
        return await fetch_with_revalidation(
            self._client,
            self._bridge_prompt_url,
            self.bridge_prompt_cache,
            ttl_ms=self._ttl_ms,
        )

    async def cached_prefix(self, chars: int = 50) -> str | None:
        return await asyncio.to_thread(
            _read_prefix, self.bridge_prompt_cache.content_path, chars
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _read_prefix(path: Path, chars: int) -> str | None:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return handle.read(chars)
    except (OSError, UnicodeDecodeError):
        return None
