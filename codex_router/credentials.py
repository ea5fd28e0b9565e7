from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Protocol

import jwt
from jwt import PyJWTError

OAUTH_CREDENTIAL_TYPE = "oauth"
_ACCOUNT_CLAIM = "https://api.openai.com/auth"


@dataclass(frozen=True, slots=True)
class OAuthCredential:
    type: str
    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None

    @property
    def is_usable(self) -> bool:
        return self.type == OAUTH_CREDENTIAL_TYPE and bool(self.access_token.strip())


class CredentialProvider(Protocol):
    async def get_credential(self) -> OAuthCredential | None: ...


class StaticCredentialProvider:
    def __init__(self, credential: OAuthCredential | None) -> None:
        self._credential = credential

    async def get_credential(self) -> OAuthCredential | None:
        return self._credential

    @classmethod
    def from_values(
        cls,
        *,
        access_token: str | None,
        refresh_token: str | None = None,
        expires_at: int | str | None = None,
        access_token_env: str | None = None,
    ) -> StaticCredentialProvider:
        token = _resolve_env_or_value(access_token_env, access_token)
        if not token:
            return cls(None)
        return cls(
            OAuthCredential(
                type=OAUTH_CREDENTIAL_TYPE,
                access_token=token,
                refresh_token=refresh_token,
                expires_at=_coerce_expires_at(expires_at),
            )
        )


def is_usable_credential(value: Any) -> bool:
    return isinstance(value, OAuthCredential) and value.is_usable


def extract_account_id(access_token: str | None) -> str | None:
    if not access_token:
        return None
    try:
        claims = jwt.decode(access_token, options={"verify_signature": False})
    except PyJWTError:
        return None

    auth_claim = claims.get(_ACCOUNT_CLAIM)
    if isinstance(auth_claim, dict):
        account_id = auth_claim.get("chatgpt_account_id")
        if isinstance(account_id, str) and account_id.strip():
            return account_id.strip()
    return None


def _resolve_env_or_value(env_name: str | None, value: str | None) -> str | None:
    if env_name:
        env_value = os.getenv(env_name, "").strip()
        if env_value:
            return env_value
    return value.strip() if isinstance(value, str) and value.strip() else None


def _coerce_expires_at(raw: int | str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None
