import copy
import json
import uuid
from collections.abc import Mapping
from typing import Any, ClassVar

from pydantic import ValidationError

from ..errors import TransformError
from ..types import ChatMessage, ChatRequest, ReasoningPolicy

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"
INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"
DEFAULT_ANTHROPIC_MAX_TOKENS = 4096
THINKING_BUDGET_TOKENS: dict[ReasoningPolicy, int] = {
    ReasoningPolicy.LOW: 4096,
    ReasoningPolicy.MEDIUM: 12288,
    ReasoningPolicy.HIGH: 24576,
}

_PASSTHROUGH_CLIENT_HEADERS: tuple[str, ...] = ("x-session-id", "x-assistant-message-id")
_TEXTUAL_BLOCK_TYPES: frozenset[str] = frozenset({"text", "input_text", "output_text"})


class BaseTransformer:
    """Reshapes canonical chat requests into one vendor's wire format.

    Instances carry the per-model policy (system prompt, reasoning level) so
    ``transform`` and ``prepare_native`` stay pure functions of their input.
    """

    provider_type: ClassVar[str] = ""

    def __init__(
        self,
        system_prompt: str = "",
        reasoning: ReasoningPolicy = ReasoningPolicy.AUTO,
        *,
        user_agent: str = "llm-relay/1.0",
        client_name: str = "cli",
    ) -> None:
        self.system_prompt = system_prompt or ""
        self.reasoning = ReasoningPolicy.parse(reasoning)
        self.user_agent = user_agent
        self.client_name = client_name

    def transform(self, request: ChatRequest | Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def prepare_native(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def _error(self, message: str, field: str | None = None) -> TransformError:
        return TransformError(message, field=field, provider=self.provider_type)

    def _parse_request(self, request: ChatRequest | Mapping[str, Any]) -> ChatRequest:
        if isinstance(request, ChatRequest):
            parsed = request
        elif isinstance(request, Mapping):
            try:
                parsed = ChatRequest.model_validate(dict(request))
            except ValidationError as exc:
                first = exc.errors()[0]
                location = ".".join(str(item) for item in first.get("loc", ())) or None
                raise self._error(first.get("msg", "invalid request"), location) from exc
        else:
            raise self._error("request must be a JSON object")
        if not parsed.model.strip():
            raise self._error("model must be a non-empty string", "model")
        if not parsed.messages:
            raise self._error("messages must contain at least one message", "messages")
        return parsed

    @staticmethod
    def _raw_payload(request: ChatRequest | Mapping[str, Any]) -> dict[str, Any]:
        if isinstance(request, ChatRequest):
            return request.model_dump(mode="json", exclude_unset=True)
        return copy.deepcopy(dict(request))

    @staticmethod
    def _extra(request: ChatRequest, key: str) -> Any:
        extra = request.model_extra or {}
        return copy.deepcopy(extra.get(key))

    def _text_content(self, content: Any, field: str) -> str:
        if content is None:
            return ""
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for position, block in enumerate(content):
                if not isinstance(block, dict):
                    raise self._error("content blocks must be objects", f"{field}[{position}]")
                if block.get("type") not in _TEXTUAL_BLOCK_TYPES:
                    raise self._error(
                        f"content block type '{block.get('type')}' cannot be used here",
                        f"{field}[{position}].type",
                    )
                text = block.get("text")
                if not isinstance(text, str):
                    raise self._error("text blocks require a string 'text'", f"{field}[{position}].text")
                parts.append(text)
            return "".join(parts)
        raise self._error("content must be a string or a list of blocks", field)

    def _max_tokens(self, request: ChatRequest) -> int | None:
        if request.max_tokens is not None:
            return request.max_tokens
        return request.max_completion_tokens

    def build_headers(
        self,
        authorization: str,
        client_headers: Mapping[str, str],
        *,
        stream: bool,
        model_id: str,
        provider: str,
    ) -> dict[str, str]:
        lowered = {key.lower(): value for key, value in client_headers.items()}
        headers: dict[str, str] = {
            "content-type": "application/json",
            "accept": "text/event-stream" if stream else "application/json",
            "authorization": authorization,
            "x-api-provider": provider,
            "x-client-name": lowered.get("x-client-name") or self.client_name,
            "user-agent": self.user_agent,
        }
        for name in _PASSTHROUGH_CLIENT_HEADERS:
            value = lowered.get(name)
            headers[name] = value if value else str(uuid.uuid4())
        return headers


def _normalize_anthropic_tool(tool: Any, position: int) -> dict[str, Any]:
    field = f"tools[{position}]"
    if not isinstance(tool, dict):
        raise TransformError("tools must be objects", field=field, provider="anthropic")
    tool_type = tool.get("type")
    if tool_type is None:
        return dict(tool)
    if tool_type != "function":
        raise TransformError(
            "Anthropic tools only support function tool definitions.", field=f"{field}.type", provider="anthropic"
        )
    function = tool.get("function")
    if not isinstance(function, dict):
        raise TransformError(
            "function tools require a 'function' object.", field=f"{field}.function", provider="anthropic"
        )
    name = function.get("name")
    if not isinstance(name, str) or not name:
        raise TransformError("tools require a non-empty function name.", field=f"{field}.function.name", provider="anthropic")
    parameters = function.get("parameters")
    if parameters is None:
        input_schema: dict[str, Any] = {"type": "object", "properties": {}}
    elif isinstance(parameters, dict):
        input_schema = parameters
    else:
        raise TransformError(
            "tool parameters must be an object.", field=f"{field}.function.parameters", provider="anthropic"
        )
    normalized: dict[str, Any] = {"name": name, "input_schema": input_schema}
    description = function.get("description")
    if isinstance(description, str) and description:
        normalized["description"] = description
    return normalized


def _normalize_anthropic_tool_choice(tool_choice: dict[str, Any] | str) -> dict[str, Any]:
    if isinstance(tool_choice, str):
        if tool_choice == "required":
            return {"type": "any"}
        return {"type": tool_choice}
    if tool_choice.get("type") != "function":
        return dict(tool_choice)
    function = tool_choice.get("function")
    name = function.get("name") if isinstance(function, dict) else None
    if not isinstance(name, str) or not name:
        raise TransformError("tool_choice requires a function name.", field="tool_choice", provider="anthropic")
    return {"type": "tool", "name": name}


class AnthropicTransformer(BaseTransformer):
    provider_type = "anthropic"

    def _image_block(self, block: dict[str, Any], field: str) -> dict[str, Any]:
        image = block.get("image_url")
        url = image.get("url") if isinstance(image, dict) else image
        if not isinstance(url, str) or not url:
            raise self._error("image_url blocks require a url", f"{field}.image_url")
        if url.startswith("data:") and ";base64," in url:
            header, data = url[5:].split(";base64,", 1)
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": header or "image/png", "data": data},
            }
        return {"type": "image", "source": {"type": "url", "url": url}}

    def _content_blocks(self, content: Any, field: str) -> list[dict[str, Any]]:
        if content is None:
            return []
        if isinstance(content, str):
            return [{"type": "text", "text": content}] if content else []
        if not isinstance(content, list):
            raise self._error("content must be a string or a list of blocks", field)
        blocks: list[dict[str, Any]] = []
        for position, block in enumerate(content):
            block_field = f"{field}[{position}]"
            if not isinstance(block, dict):
                raise self._error("content blocks must be objects", block_field)
            block_type = block.get("type")
            if block_type in _TEXTUAL_BLOCK_TYPES:
                text = block.get("text")
                if not isinstance(text, str):
                    raise self._error("text blocks require a string 'text'", f"{block_field}.text")
                if text:
                    blocks.append({"type": "text", "text": text})
            elif block_type == "image_url":
                blocks.append(self._image_block(block, block_field))
            elif block_type in ("image", "document", "tool_use", "tool_result"):
                blocks.append(copy.deepcopy(block))
            else:
                raise self._error(f"unsupported content block type '{block_type}'", f"{block_field}.type")
        return blocks

    def _map_tool_call(self, tool_call: Any, field: str) -> dict[str, Any]:
        if not isinstance(tool_call, dict):
            raise self._error("tool calls must be objects", field)
        identifier = tool_call.get("id")
        if not isinstance(identifier, str) or not identifier:
            raise self._error("tool calls require a non-empty string 'id'", f"{field}.id")
        function = tool_call.get("function")
        if not isinstance(function, dict):
            raise self._error("tool calls require a 'function' object", f"{field}.function")
        name = function.get("name")
        if not isinstance(name, str) or not name:
            raise self._error("tool call functions require a non-empty 'name'", f"{field}.function.name")
        raw_arguments = function.get("arguments")
        if isinstance(raw_arguments, str):
            try:
                input_payload: Any = json.loads(raw_arguments) if raw_arguments else {}
            except json.JSONDecodeError as exc:
                raise self._error("tool call arguments must be valid JSON", f"{field}.function.arguments") from exc
        elif isinstance(raw_arguments, dict):
            input_payload = copy.deepcopy(raw_arguments)
        elif raw_arguments is None:
            input_payload = {}
        else:
            raise self._error("tool call arguments must be a JSON string or object", f"{field}.function.arguments")
        return {"type": "tool_use", "id": identifier, "name": name, "input": input_payload}

    def _map_tool_result(self, message: ChatMessage, field: str) -> dict[str, Any]:
        if not message.tool_call_id:
            raise self._error("tool messages require a 'tool_call_id'", f"{field}.tool_call_id")
        content = message.content
        if isinstance(content, list):
            result_content: Any = self._content_blocks(content, f"{field}.content")
        else:
            result_content = self._text_content(content, f"{field}.content")
        return {"type": "tool_result", "tool_use_id": message.tool_call_id, "content": result_content}

    def _apply_thinking(self, payload: dict[str, Any], client_thinking: Any) -> None:
        if self.reasoning is ReasoningPolicy.AUTO:
            if client_thinking is not None:
                payload["thinking"] = client_thinking
            return
        if self.reasoning.is_level:
            budget = THINKING_BUDGET_TOKENS[self.reasoning]
            payload["thinking"] = {"type": "enabled", "budget_tokens": budget}
            # max_tokens must stay strictly above the thinking budget
            max_tokens = payload.get("max_tokens")
            if isinstance(max_tokens, int) and max_tokens <= budget:
                payload["max_tokens"] = budget + DEFAULT_ANTHROPIC_MAX_TOKENS
            return
        payload.pop("thinking", None)

    def _prompt_block(self) -> dict[str, Any]:
        return {"type": "text", "text": self.system_prompt}

    def transform(self, request: ChatRequest | Mapping[str, Any]) -> dict[str, Any]:
        parsed = self._parse_request(request)
        system_blocks: list[dict[str, Any]] = []
        if self.system_prompt:
            system_blocks.append(self._prompt_block())
        mapped: list[dict[str, Any]] = []
        for position, message in enumerate(parsed.messages):
            field = f"messages[{position}]"
            if message.role in ("system", "developer"):
                text = self._text_content(message.content, f"{field}.content")
                if text:
                    system_blocks.append({"type": "text", "text": text})
                continue
            if message.role == "tool":
                result = self._map_tool_result(message, field)
                previous = mapped[-1] if mapped else None
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and all(block.get("type") == "tool_result" for block in previous["content"])
                ):
                    previous["content"].append(result)
                else:
                    mapped.append({"role": "user", "content": [result]})
                continue
            blocks = self._content_blocks(message.content, f"{field}.content")
            if message.role == "assistant" and message.tool_calls:
                for call_position, tool_call in enumerate(message.tool_calls):
                    blocks.append(self._map_tool_call(tool_call, f"{field}.tool_calls[{call_position}]"))
            if not blocks:
                blocks.append({"type": "text", "text": ""})
            mapped.append({"role": message.role, "content": blocks})

        max_tokens = self._max_tokens(parsed)
        payload: dict[str, Any] = {
            "model": parsed.model,
            "messages": mapped,
            "max_tokens": max_tokens if max_tokens is not None else DEFAULT_ANTHROPIC_MAX_TOKENS,
            "stream": bool(parsed.stream),
        }
        if system_blocks:
            payload["system"] = system_blocks
        if parsed.temperature is not None:
            payload["temperature"] = parsed.temperature
        if parsed.top_p is not None:
            payload["top_p"] = parsed.top_p
        if parsed.stop is not None:
            payload["stop_sequences"] = [parsed.stop] if isinstance(parsed.stop, str) else list(parsed.stop)
        if parsed.tools:
            payload["tools"] = [_normalize_anthropic_tool(tool, i) for i, tool in enumerate(parsed.tools)]
        if parsed.tool_choice is not None:
            payload["tool_choice"] = _normalize_anthropic_tool_choice(parsed.tool_choice)
        self._apply_thinking(payload, self._extra(parsed, "thinking"))
        return payload

    def prepare_native(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        prepared = copy.deepcopy(dict(payload))
        if self.system_prompt:
            existing = prepared.get("system")
            if isinstance(existing, list):
                prepared["system"] = [self._prompt_block(), *existing]
            elif isinstance(existing, str) and existing:
                prepared["system"] = [self._prompt_block(), {"type": "text", "text": existing}]
            else:
                prepared["system"] = [self._prompt_block()]
        self._apply_thinking(prepared, prepared.get("thinking"))
        return prepared

    def build_headers(
        self,
        authorization: str,
        client_headers: Mapping[str, str],
        *,
        stream: bool,
        model_id: str,
        provider: str,
    ) -> dict[str, str]:
        headers = super().build_headers(
            authorization, client_headers, stream=stream, model_id=model_id, provider=provider
        )
        lowered = {key.lower(): value for key, value in client_headers.items()}
        headers["anthropic-version"] = lowered.get("anthropic-version") or DEFAULT_ANTHROPIC_VERSION
        betas = [item.strip() for item in (lowered.get("anthropic-beta") or "").split(",") if item.strip()]
        if self.reasoning.is_level and INTERLEAVED_THINKING_BETA not in betas:
            betas.append(INTERLEAVED_THINKING_BETA)
        if betas:
            headers["anthropic-beta"] = ",".join(betas)
        if stream:
            headers["x-stainless-helper-method"] = "stream"
        return headers


from .common import CommonTransformer
from .openai import ResponsesTransformer


TRANSFORMERS: dict[str, type[BaseTransformer]] = {
    "anthropic": AnthropicTransformer,
    "openai": ResponsesTransformer,
    "common": CommonTransformer,
}


def build_transformer(
    endpoint_type: str,
    *,
    system_prompt: str = "",
    reasoning: ReasoningPolicy = ReasoningPolicy.AUTO,
    user_agent: str = "llm-relay/1.0",
    client_name: str = "cli",
) -> BaseTransformer:
    factory = TRANSFORMERS.get(endpoint_type)
    if factory is None:
        raise TransformError(f"Unknown endpoint type '{endpoint_type}'", field="type", provider=endpoint_type)
    return factory(system_prompt, reasoning, user_agent=user_agent, client_name=client_name)


__all__ = [
    "BaseTransformer",
    "AnthropicTransformer",
    "ResponsesTransformer",
    "CommonTransformer",
    "TRANSFORMERS",
    "build_transformer",
    "THINKING_BUDGET_TOKENS",
]
