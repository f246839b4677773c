from __future__ import annotations

import copy
import json
from collections.abc import Mapping
from typing import Any

from ..types import ChatMessage, ChatRequest, ReasoningPolicy
from . import BaseTransformer

MIN_OUTPUT_TOKENS = 16


def _clamp_output_tokens(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool) and value < MIN_OUTPUT_TOKENS:
        return MIN_OUTPUT_TOKENS
    return value


class ResponsesTransformer(BaseTransformer):
    """Maps chat completions onto the ``/v1/responses`` item protocol."""

    provider_type = "openai"

    def _input_parts(self, message: ChatMessage, field: str) -> list[dict[str, Any]]:
        text_type = "output_text" if message.role == "assistant" else "input_text"
        content = message.content
        if content is None:
            return []
        if isinstance(content, str):
            return [{"type": text_type, "text": content}] if content else []
        if not isinstance(content, list):
            raise self._error("content must be a string or a list of blocks", field)
        parts: list[dict[str, Any]] = []
        for position, block in enumerate(content):
            block_field = f"{field}[{position}]"
            if not isinstance(block, dict):
                raise self._error("content blocks must be objects", block_field)
            block_type = block.get("type")
            if block_type in ("text", "input_text", "output_text"):
                text = block.get("text")
                if not isinstance(text, str):
                    raise self._error("text blocks require a string 'text'", f"{block_field}.text")
                parts.append({"type": text_type, "text": text})
            elif block_type == "image_url":
                if message.role == "assistant":
                    raise self._error("assistant messages cannot carry images", f"{block_field}.type")
                image = block.get("image_url")
                url = image.get("url") if isinstance(image, dict) else image
                if not isinstance(url, str) or not url:
                    raise self._error("image_url blocks require a url", f"{block_field}.image_url")
                part: dict[str, Any] = {"type": "input_image", "image_url": url}
                if isinstance(image, dict) and isinstance(image.get("detail"), str):
                    part["detail"] = image["detail"]
                parts.append(part)
            else:
                raise self._error(f"unsupported content block type '{block_type}'", f"{block_field}.type")
        return parts

    def _function_call_item(self, tool_call: Any, field: str) -> dict[str, Any]:
        if not isinstance(tool_call, dict):
            raise self._error("tool calls must be objects", field)
        call_id = tool_call.get("id")
        if not isinstance(call_id, str) or not call_id:
            raise self._error("tool calls require a non-empty string 'id'", f"{field}.id")
        function = tool_call.get("function")
        if not isinstance(function, dict):
            raise self._error("tool calls require a 'function' object", f"{field}.function")
        name = function.get("name")
        if not isinstance(name, str) or not name:
            raise self._error("tool call functions require a non-empty 'name'", f"{field}.function.name")
        arguments = function.get("arguments")
        if arguments is None:
            arguments = "{}"
        elif isinstance(arguments, dict):
            arguments = json.dumps(arguments, ensure_ascii=False)
        elif not isinstance(arguments, str):
            raise self._error("tool call arguments must be a JSON string or object", f"{field}.function.arguments")
        return {"type": "function_call", "call_id": call_id, "name": name, "arguments": arguments}

    def _function_call_output(self, message: ChatMessage, field: str) -> dict[str, Any]:
        if not message.tool_call_id:
            raise self._error("tool messages require a 'tool_call_id'", f"{field}.tool_call_id")
        return {
            "type": "function_call_output",
            "call_id": message.tool_call_id,
            "output": self._text_content(message.content, f"{field}.content"),
        }

    def _tool(self, tool: Any, position: int) -> dict[str, Any]:
        field = f"tools[{position}]"
        if not isinstance(tool, dict):
            raise self._error("tools must be objects", field)
        if tool.get("type") != "function":
            return copy.deepcopy(tool)
        function = tool.get("function")
        if not isinstance(function, dict):
            raise self._error("function tools require a 'function' object", f"{field}.function")
        name = function.get("name")
        if not isinstance(name, str) or not name:
            raise self._error("tools require a non-empty function name", f"{field}.function.name")
        parameters = function.get("parameters")
        if parameters is not None and not isinstance(parameters, dict):
            raise self._error("tool parameters must be an object", f"{field}.function.parameters")
        converted: dict[str, Any] = {
            "type": "function",
            "name": name,
            "parameters": copy.deepcopy(parameters) if parameters else {"type": "object", "properties": {}},
            "strict": bool(function.get("strict", False)),
        }
        description = function.get("description")
        if isinstance(description, str) and description:
            converted["description"] = description
        return converted

    @staticmethod
    def _tool_choice(tool_choice: dict[str, Any] | str) -> dict[str, Any] | str:
        if isinstance(tool_choice, str):
            return tool_choice
        function = tool_choice.get("function")
        if tool_choice.get("type") == "function" and isinstance(function, dict):
            return {"type": "function", "name": function.get("name")}
        return copy.deepcopy(tool_choice)

    @staticmethod
    def _text_format(response_format: Any) -> dict[str, Any] | None:
        if not isinstance(response_format, dict):
            return None
        format_type = response_format.get("type")
        if format_type == "json_schema" and isinstance(response_format.get("json_schema"), dict):
            return {"format": {"type": "json_schema", **copy.deepcopy(response_format["json_schema"])}}
        if format_type in ("json_object", "text"):
            return {"format": {"type": format_type}}
        return None

    def _apply_reasoning(self, payload: dict[str, Any], client_reasoning: Any) -> None:
        if self.reasoning is ReasoningPolicy.AUTO:
            if client_reasoning is not None:
                payload["reasoning"] = client_reasoning
            return
        if self.reasoning.is_level:
            payload["reasoning"] = {"effort": self.reasoning.value, "summary": "auto"}
            return
        payload.pop("reasoning", None)

    def _apply_instructions(self, payload: dict[str, Any]) -> None:
        if not self.system_prompt:
            return
        existing = payload.get("instructions")
        payload["instructions"] = self.system_prompt + (existing if isinstance(existing, str) else "")

    def transform(self, request: ChatRequest | Mapping[str, Any]) -> dict[str, Any]:
        parsed = self._parse_request(request)
        instructions: list[str] = []
        items: list[dict[str, Any]] = []
        for position, message in enumerate(parsed.messages):
            field = f"messages[{position}]"
            if message.role in ("system", "developer"):
                text = self._text_content(message.content, f"{field}.content")
                if text:
                    instructions.append(text)
                continue
            if message.role == "tool":
                items.append(self._function_call_output(message, field))
                continue
            parts = self._input_parts(message, f"{field}.content")
            if parts:
                items.append({"type": "message", "role": message.role, "content": parts})
            if message.role == "assistant" and message.tool_calls:
                for call_position, tool_call in enumerate(message.tool_calls):
                    items.append(self._function_call_item(tool_call, f"{field}.tool_calls[{call_position}]"))

        payload: dict[str, Any] = {
            "model": parsed.model,
            "input": items,
            "stream": bool(parsed.stream),
            "store": False,
        }
        if instructions:
            payload["instructions"] = "\n\n".join(instructions)
        self._apply_instructions(payload)
        max_tokens = self._max_tokens(parsed)
        if max_tokens is not None:
            payload["max_output_tokens"] = _clamp_output_tokens(max_tokens)
        if parsed.temperature is not None:
            payload["temperature"] = parsed.temperature
        if parsed.top_p is not None:
            payload["top_p"] = parsed.top_p
        if parsed.tools:
            payload["tools"] = [self._tool(tool, i) for i, tool in enumerate(parsed.tools)]
        if parsed.tool_choice is not None:
            payload["tool_choice"] = self._tool_choice(parsed.tool_choice)
        if parsed.parallel_tool_calls is not None:
            payload["parallel_tool_calls"] = parsed.parallel_tool_calls
        text_format = self._text_format(self._extra(parsed, "response_format"))
        if text_format is not None:
            payload["text"] = text_format
        client_reasoning = copy.deepcopy(parsed.reasoning)
        if client_reasoning is None and parsed.reasoning_effort:
            client_reasoning = {"effort": parsed.reasoning_effort}
        self._apply_reasoning(payload, client_reasoning)
        return payload

    def prepare_native(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        prepared = copy.deepcopy(dict(payload))
        self._apply_instructions(prepared)
        if "max_output_tokens" in prepared:
            prepared["max_output_tokens"] = _clamp_output_tokens(prepared["max_output_tokens"])
        self._apply_reasoning(prepared, prepared.get("reasoning"))
        return prepared
