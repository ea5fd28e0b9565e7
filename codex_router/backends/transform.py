from __future__ import annotations

import json
from typing import Any, Mapping
from urllib.parse import urlsplit

from codex_router.backends.base import ChatMessage, ChatRequest, RequestValidationError

LOGICAL_CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"
CODEX_RESPONSES_PATH = "/codex/responses"
DEFAULT_CODEX_MODEL = "gpt-5"
DEFAULT_INCLUDE = ["reasoning.encrypted_content"]
_PASSTHROUGH_FIELDS = ("tool_choice", "parallel_tool_calls", "prompt_cache_key")
_INSTRUCTION_ROLES = {"system", "developer"}


def normalize_codex_model(model: str | None) -> str:
    normalized = (model or "").strip().lower()
    if not normalized:
        return DEFAULT_CODEX_MODEL
    if "/" in normalized:
        normalized = normalized.rsplit("/", 1)[-1]
    if "codex" in normalized:
        return "gpt-5-codex"
    if "gpt-5" in normalized:
        return "gpt-5"
    return DEFAULT_CODEX_MODEL


def resolve_model_options(
    model: str | None, user_config: Mapping[str, Any]
) -> dict[str, Any]:
    options: dict[str, Any] = {}
    global_options = user_config.get("global")
    if isinstance(global_options, Mapping):
        options.update({k: v for k, v in global_options.items() if v is not None})

    models = user_config.get("models")
    if isinstance(models, Mapping) and model:
        for key in (model, normalize_codex_model(model)):
            entry = models.get(key)
            if not isinstance(entry, Mapping):
                continue
            per_model = entry.get("options")
            if isinstance(per_model, Mapping):
                options.update({k: v for k, v in per_model.items() if v is not None})
            break
    return options


def resolve_reasoning(
    request: ChatRequest, options: Mapping[str, Any], codex_model: str
) -> dict[str, str]:
    requested = request.reasoning or {}
    effort = requested.get("effort") or options.get("reasoning_effort") or "medium"
    summary = requested.get("summary") or options.get("reasoning_summary") or "auto"
    if codex_model == "gpt-5-codex" and effort == "minimal":
        # The codex model rejects "minimal".
        effort = "low"
    return {"effort": str(effort), "summary": str(summary)}


def resolve_text_options(
    request: ChatRequest, options: Mapping[str, Any]
) -> dict[str, str]:
    requested = request.text or {}
    verbosity = requested.get("verbosity") or options.get("text_verbosity") or "medium"
    return {"verbosity": str(verbosity)}


def _normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized in {"assistant", "user"}:
        return normalized
    return "user"


def _content_parts(message: ChatMessage, role: str) -> list[dict[str, Any]]:
    text_type = "output_text" if role == "assistant" else "input_text"
    if isinstance(message.content, str):
        text = message.content.strip()
        return [{"type": text_type, "text": text}] if text else []

    parts: list[dict[str, Any]] = []
    for item in message.content:
        item_type = str(item.get("type", "")).strip().lower()
        if item_type in {"text", "input_text", "output_text"}:
            text = item.get("text")
            if isinstance(text, str) and text.strip():
                parts.append({"type": text_type, "text": text.strip()})
            continue
        if item_type in {"image_url", "input_image"} and role != "assistant":
            image_url = item.get("image_url")
            if isinstance(image_url, dict):
                image_url = image_url.get("url")
            if isinstance(image_url, str) and image_url.strip():
                parts.append({"type": "input_image", "image_url": image_url.strip()})
    return parts


def _developer_item(text: str) -> dict[str, Any]:
    return {
        "type": "message",
        "role": "developer",
        "content": [{"type": "input_text", "text": text}],
    }


def messages_to_codex_input(
    messages: tuple[ChatMessage, ...],
) -> list[dict[str, Any]]:
    lifted: list[str] = []
    items: list[dict[str, Any]] = []
    for message in messages:
        raw_role = message.role.strip().lower()
        if raw_role in _INSTRUCTION_ROLES:
            text = message.text().strip()
            if text:
                lifted.append(text)
            continue

        role = _normalize_role(raw_role)
        parts = _content_parts(message, role)
        if raw_role == "tool":
            for part in parts:
                text = part.get("text", "")
                if part["type"] == "input_text" and not text.startswith("Tool output:"):
                    part["text"] = f"Tool output:\n{text}"
        if parts:
            items.append({"type": "message", "role": role, "content": parts})

    if lifted:
        items.insert(0, _developer_item("\n\n".join(lifted)))
    return items


def normalize_codex_tools(tools: tuple[Any, ...]) -> list[Any]:
    normalized: list[Any] = []
    for tool in tools:
        if (
            isinstance(tool, dict)
            and str(tool.get("type", "")).lower() == "function"
            and isinstance(tool.get("function"), dict)
        ):
            function_def = tool["function"]
            mapped = {"type": "function", "name": function_def.get("name")}
            for key in ("description", "parameters", "strict"):
                if key in function_def:
                    mapped[key] = function_def[key]
            normalized.append(mapped)
            continue
        normalized.append(tool)
    return normalized


def build_codex_body(
    request: ChatRequest,
    *,
    instructions: str,
    user_config: Mapping[str, Any],
    codex_mode: bool,
    bridge_prompt: str | None = None,
) -> dict[str, Any]:
    input_items = messages_to_codex_input(request.messages)
    if not any(item["role"] != "developer" for item in input_items):
        raise RequestValidationError("Request has no user or assistant messages.")
    if codex_mode and bridge_prompt and bridge_prompt.strip():
        input_items.insert(0, _developer_item(bridge_prompt.strip()))

    codex_model = normalize_codex_model(request.model)
    options = resolve_model_options(request.model, user_config)
    include = request.include or options.get("include") or DEFAULT_INCLUDE

    body: dict[str, Any] = {
        "model": codex_model,
        "store": False,
        "stream": True,
        "instructions": instructions,
        "input": input_items,
        "reasoning": resolve_reasoning(request, options, codex_model),
        "text": resolve_text_options(request, options),
        "include": list(include),
    }
    if request.tools:
        body["tools"] = normalize_codex_tools(request.tools)
    for field in _PASSTHROUGH_FIELDS:
        if field in request.extra:
            body[field] = request.extra[field]
    return body


def rewrite_url_for_codex(url: str, base_url: str) -> str:
    path = urlsplit(url).path.rstrip("/")
    base = base_url.rstrip("/")
    if path.endswith("/chat/completions") or path.endswith("/responses"):
        return f"{base}{CODEX_RESPONSES_PATH}"
    return f"{base}{path}"


def build_codex_headers(access_token: str, account_id: str | None) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "OpenAI-Beta": "responses=experimental",
        "originator": "codex_cli_rs",
        "Accept": "text/event-stream",
        "Content-Type": "application/json",
    }
    if account_id:
        headers["chatgpt-account-id"] = account_id
    return headers


def iter_sse_events(body: str) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for line in body.splitlines():
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            continue
        try:
            parsed = json.loads(payload)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            events.append(parsed)
    return events


def final_response_from_sse(body: str) -> dict[str, Any] | None:
    for event in reversed(iter_sse_events(body)):
        if event.get("type") in {"response.completed", "response.done"}:
            response = event.get("response")
            if isinstance(response, dict):
                return response
    return None
