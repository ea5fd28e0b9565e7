from __future__ import annotations

import abc
import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol, TypeGuard, runtime_checkable

from codex_router.credentials import OAuthCredential

_KNOWN_REQUEST_FIELDS = {"model", "messages", "reasoning", "text", "tools", "include"}


class RequestValidationError(ValueError):
    """Raised when an inbound payload cannot be turned into a ChatRequest."""


class FailureKind(str, Enum):
    AUTH = "auth"
    NETWORK = "network"
    API = "api"
    VALIDATION = "validation"
    PROCESS = "process"


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str
    content: str | tuple[dict[str, Any], ...]

    @classmethod
    def from_payload(cls, raw: Any) -> ChatMessage:
        if not isinstance(raw, dict):
            raise RequestValidationError("Each message must be a JSON object.")
        role = str(raw.get("role") or "user")
        content = raw.get("content")
        if isinstance(content, list):
            items = tuple(
                copy.deepcopy(item) for item in content if isinstance(item, dict)
            )
            return cls(role=role, content=items)
        if content is None:
            return cls(role=role, content="")
        return cls(role=role, content=str(content))

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            str(item.get("text", ""))
            for item in self.content
            if item.get("type") == "text"
        )

    def to_payload(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [copy.deepcopy(i) for i in self.content]}


@dataclass(frozen=True, slots=True)
class ChatRequest:
    model: str
    messages: tuple[ChatMessage, ...] = ()
    reasoning: Mapping[str, Any] | None = None
    text: Mapping[str, Any] | None = None
    tools: tuple[Any, ...] | None = None
    include: tuple[str, ...] | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> ChatRequest:
        if not isinstance(payload, dict):
            raise RequestValidationError("Expected a JSON object request body.")
        raw_messages = payload.get("messages")
        if raw_messages is None:
            raw_messages = []
        if not isinstance(raw_messages, list):
            raise RequestValidationError("'messages' must be a list.")

        tools = payload.get("tools")
        include = payload.get("include")
        reasoning = payload.get("reasoning")
        text = payload.get("text")
        return cls(
            model=str(payload.get("model") or "").strip(),
            messages=tuple(ChatMessage.from_payload(item) for item in raw_messages),
            reasoning=copy.deepcopy(reasoning) if isinstance(reasoning, dict) else None,
            text=copy.deepcopy(text) if isinstance(text, dict) else None,
            tools=tuple(copy.deepcopy(tools)) if isinstance(tools, list) else None,
            include=(
                tuple(str(item) for item in include)
                if isinstance(include, list)
                else None
            ),
            extra={
                key: copy.deepcopy(value)
                for key, value in payload.items()
                if key not in _KNOWN_REQUEST_FIELDS
            },
        )

    @property
    def wants_tools(self) -> bool:
        return bool(self.tools)

    def last_message_text(self) -> str:
        if not self.messages:
            return ""
        return self.messages[-1].text()

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = copy.deepcopy(dict(self.extra))
        payload["model"] = self.model
        payload["messages"] = [message.to_payload() for message in self.messages]
        if self.reasoning is not None:
            payload["reasoning"] = copy.deepcopy(dict(self.reasoning))
        if self.text is not None:
            payload["text"] = copy.deepcopy(dict(self.text))
        if self.tools is not None:
            payload["tools"] = copy.deepcopy(list(self.tools))
        if self.include is not None:
            payload["include"] = list(self.include)
        return payload


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    original_model: str | None
    user_config: Mapping[str, Any]
    backend_config: Mapping[str, Any]
    credential: OAuthCredential | None = None


@dataclass(frozen=True, slots=True)
class BackendRequest:
    body: ChatRequest
    context: ExecutionContext


@dataclass(slots=True)
class BackendSuccess:
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    is_streaming: bool = False


@dataclass(slots=True)
class BackendFailure:
    kind: FailureKind
    message: str
    code: int | str | None = None
    cause: BaseException | None = None


BackendResult = BackendSuccess | BackendFailure


def is_failure(result: BackendResult) -> TypeGuard[BackendFailure]:
    return isinstance(result, BackendFailure)


@dataclass(frozen=True, slots=True)
class AuthStatus:
    authenticated: bool
    details: str | None = None


class Backend(abc.ABC):
    id: str
    name: str
    requires_credential: bool = False

    @abc.abstractmethod
    async def execute(self, request: BackendRequest) -> BackendResult: ...


@runtime_checkable
class SupportsConfigValidation(Protocol):
    async def validate_config(self, config: Mapping[str, Any]) -> bool: ...


@runtime_checkable
class SupportsAuthStatus(Protocol):
    async def get_auth_status(self) -> AuthStatus: ...


async def probe_auth_status(backend: Backend) -> AuthStatus | None:
    if not isinstance(backend, SupportsAuthStatus):
        return None
    return await backend.get_auth_status()


async def probe_config(backend: Backend, config: Mapping[str, Any]) -> bool | None:
    if not isinstance(backend, SupportsConfigValidation):
        return None
    return await backend.validate_config(config)
