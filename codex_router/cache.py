from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

import httpx

logger = logging.getLogger("uvicorn.error")


class CacheUnavailableError(RuntimeError):
    """Raised when a fetch fails and there is no cached content to fall back on."""


@dataclass(slots=True)
class CacheLoadResult:
    content: str | None
    metadata: dict[str, Any] | None


def now_ms() -> int:
    return int(time.time() * 1000)


def load_cache(content_path: str | Path, metadata_path: str | Path) -> CacheLoadResult:
    content: str | None = None
    metadata: dict[str, Any] | None = None

    try:
        content = _read_text(Path(content_path))
    except (OSError, UnicodeDecodeError):
        content = None

    try:
        raw = json.loads(_read_text(Path(metadata_path)))
        metadata = raw if isinstance(raw, dict) else None
    except (OSError, UnicodeDecodeError, ValueError):
        metadata = None

    return CacheLoadResult(content=content, metadata=metadata)


def store_cache(
    content_path: str | Path,
    metadata_path: str | Path,
    content: str,
    metadata: dict[str, Any],
) -> None:
    _atomic_write(Path(content_path), content)
    _atomic_write(Path(metadata_path), json.dumps(metadata, indent=2))


def is_fresh(
    metadata: dict[str, Any] | None, ttl_ms: int, now: int | None = None
) -> bool:
    if not metadata:
        return False
    last_checked = metadata.get("lastChecked")
    if isinstance(last_checked, bool) or not isinstance(last_checked, (int, float)):
        return False
    if not last_checked:
        return False
    current = now_ms() if now is None else now
    return (current - last_checked) < ttl_ms


def build_revalidation_headers(metadata: dict[str, Any] | None) -> dict[str, str]:
    if not metadata:
        return {}
    etag = metadata.get("etag")
    if not isinstance(etag, str) or not etag:
        return {}
    return {"If-None-Match": etag}


def _read_text(path: Path) -> str:
    # newline="" keeps "\r\n" and "\r" intact so content round-trips exactly.
    with path.open("r", encoding="utf-8", newline="") as handle:
        return handle.read()


def _atomic_write(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
    try:
        with temp_path.open("w", encoding="utf-8", newline="") as handle:
            handle.write(payload)
        temp_path.replace(path)
    except Exception:
        with contextlib.suppress(Exception):
            temp_path.unlink(missing_ok=True)
        raise


class EtagFileCache:
    """One cached artifact stored as a content file plus a JSON metadata sidecar."""

    def __init__(self, content_path: str | Path, metadata_path: str | Path):
        self.content_path = Path(content_path)
        self.metadata_path = Path(metadata_path)

    @classmethod
    def in_directory(cls, directory: str | Path, name: str) -> EtagFileCache:
        base = Path(directory)
        return cls(base / f"{name}.txt", base / f"{name}-meta.json")

    async def load(self) -> CacheLoadResult:
        return await asyncio.to_thread(
            load_cache, self.content_path, self.metadata_path
        )

    async def store(self, content: str, metadata: dict[str, Any]) -> None:
        await asyncio.to_thread(
            store_cache, self.content_path, self.metadata_path, content, metadata
        )


async def fetch_with_revalidation(
    client: httpx.AsyncClient,
    url: str,
    cache: EtagFileCache,
    *,
    ttl_ms: int,
    now: int | None = None,
) -> str:
    loaded = await cache.load()
    cached_content = loaded.content
    metadata = loaded.metadata
    current = now_ms() if now is None else now

    if cached_content and is_fresh(metadata, ttl_ms, current):
        return cached_content

    headers = build_revalidation_headers(metadata)
    try:
        response = await client.get(url, headers=headers)

        if response.status_code == 304 and cached_content:
            refreshed = {**(metadata or {}), "lastChecked": current}
            await cache.store(cached_content, refreshed)
            logger.debug("prompt_cache_revalidated url=%s", url)
            return cached_content

        if response.is_success:
            content = response.text
            fresh_metadata = {
                "etag": response.headers.get("etag") or None,
                "url": url,
                "lastChecked": current,
            }
            await cache.store(content, fresh_metadata)
            logger.info(
                "prompt_cache_updated url=%s etag=%s bytes=%d",
                url,
                fresh_metadata["etag"],
                len(content),
            )
            return content

        if cached_content:
            logger.warning(
                "prompt_cache_stale_fallback url=%s status=%d",
                url,
                response.status_code,
            )
            return cached_content

        raise CacheUnavailableError(
            f"Fetch of {url} failed with status {response.status_code} "
            "and no cache available"
        )
    except CacheUnavailableError:
        raise
    except Exception as exc:
        if cached_content:
            logger.warning("prompt_cache_stale_fallback url=%s error=%s", url, exc)
            return cached_content
        raise CacheUnavailableError(
            f"Fetch of {url} failed and no cache available: {exc}"
        ) from exc
