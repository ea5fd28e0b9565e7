from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

BackendId = Literal["codex", "augment", "cursor"]
KNOWN_BACKEND_IDS: tuple[str, ...] = ("codex", "augment", "cursor")
DEFAULT_CODEX_BASE_URL = "https://chatgpt.com/backend-api"

logger = logging.getLogger("uvicorn.error")


class ConfigOptions(BaseModel):
    reasoning_effort: Literal["minimal", "low", "medium", "high"] | None = None
    reasoning_summary: Literal["auto", "concise", "detailed"] | None = None
    text_verbosity: Literal["low", "medium", "high"] | None = None
    include: list[str] | None = None


class ModelOptions(BaseModel):
    options: ConfigOptions = Field(default_factory=ConfigOptions)


class UserConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    global_options: ConfigOptions = Field(
        default_factory=ConfigOptions, alias="global"
    )
    models: dict[str, ModelOptions] = Field(default_factory=dict)

    def as_context(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CodexBackendConfig(BaseModel):
    base_url: str = DEFAULT_CODEX_BASE_URL
    timeout_seconds: float = 30.0
    account_id: str | None = None
    account_id_env: str | None = None
    access_token: str | None = None
    access_token_env: str | None = "CODEX_ACCESS_TOKEN"
    refresh_token: str | None = None
    expires_at: int | None = None

    def resolved_account_id(self) -> str | None:
        if self.account_id_env:
            env_value = os.getenv(self.account_id_env, "").strip()
            if env_value:
                return env_value
        return self.account_id


class CliBackendConfig(BaseModel):
    executable: str
    args: list[str] = Field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 120.0
    streaming: bool = False


class AugmentBackendConfig(CliBackendConfig):
    executable: str = "augment"


class CursorBackendConfig(CliBackendConfig):
    executable: str = "cursor"
    streaming: bool = True


class ProvidersConfig(BaseModel):
    default: BackendId = "codex"
    fallback: BackendId | None = "augment"
    auto_fallback: bool = True
    priority: list[str] = Field(default_factory=lambda: list(KNOWN_BACKEND_IDS))
    codex: CodexBackendConfig = Field(default_factory=CodexBackendConfig)
    augment: AugmentBackendConfig = Field(default_factory=AugmentBackendConfig)
    cursor: CursorBackendConfig = Field(default_factory=CursorBackendConfig)

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, value: Any) -> list[str]:
        if value is None:
            return list(KNOWN_BACKEND_IDS)
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, list):
            raise ValueError("Expected 'priority' to be a list of backend ids.")
        cleaned: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            item = item.strip()
            if item and item not in cleaned:
                cleaned.append(item)
        return cleaned

    def backend_config(self, backend_id: str) -> dict[str, Any]:
        section = getattr(self, backend_id, None)
        if isinstance(section, BaseModel):
            return section.model_dump()
        return {}

    def timeout_for(self, backend_id: str) -> float | None:
        section = getattr(self, backend_id, None)
        timeout = getattr(section, "timeout_seconds", None)
        if isinstance(timeout, (int, float)) and timeout > 0:
            return float(timeout)
        return None


class RouterConfig(BaseModel):
    codex_mode: bool = True
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    user_config: UserConfig = Field(default_factory=UserConfig)

    def effective_codex_mode(self, env_override: bool | None = None) -> bool:
        if env_override is not None:
            return env_override
        return self.codex_mode


def load_router_config(config_path: str | Path) -> RouterConfig:
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.info("router_config_missing path=%s using_defaults=true", path)
        return RouterConfig()

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    return RouterConfig.model_validate(raw)
