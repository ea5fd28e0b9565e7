from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

CODEX_INSTRUCTIONS_URL = (
    "https://raw.githubusercontent.com/openai/codex/main/codex-rs/core/prompt.md"
)
BRIDGE_PROMPT_URL = (
    "https://raw.githubusercontent.com/sst/opencode/main/"
    "packages/opencode/src/session/prompt/codex.txt"
)


class Settings(BaseSettings):
    router_config_path: str = "~/.codex-router/config.yaml"
    cache_dir: str = "~/.codex-router/cache"
    instructions_cache_ttl_ms: int = 15 * 60 * 1000
    instructions_fetch_timeout_seconds: float = 10.0
    codex_instructions_url: str = CODEX_INSTRUCTIONS_URL
    bridge_prompt_url: str = BRIDGE_PROMPT_URL
    codex_mode: bool | None = None
    router_audit_log_enabled: bool = True
    router_audit_log_path: str = "logs/dispatch_events.jsonl"
    host: str = "127.0.0.1"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir).expanduser()


@lru_cache
def get_settings() -> Settings:
    return Settings()
