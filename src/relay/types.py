import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from .errors import NormalizationError


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "developer", "user", "assistant", "tool"]
    content: Union[str, List[Dict[str, Any]], None] = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str
    messages: List[ChatMessage]
    stream: Optional[bool] = False
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    reasoning: Optional[Dict[str, Any]] = None
    reasoning_effort: Optional[str] = None
    max_tokens: Optional[int] = None
    max_completion_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop: Optional[Union[str, List[str]]] = None
    parallel_tool_calls: Optional[bool] = None


class ReasoningPolicy(str, Enum):
    AUTO = "auto"
    OFF = "off"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def parse(cls, raw: Any) -> "ReasoningPolicy":
        # Unknown or missing levels disable reasoning.
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            try:
                return cls(raw.strip().lower())
            except ValueError:
                return cls.OFF
        return cls.OFF

    @property
    def is_level(self) -> bool:
        return self in (ReasoningPolicy.LOW, ReasoningPolicy.MEDIUM, ReasoningPolicy.HIGH)


@dataclass(slots=True)
class SSEEvent:
    event_type: str | None
    data: Any


@dataclass(slots=True)
class ToolCallState:
    index: int
    id: str
    name: str
    arguments: str = ""


_RESPONSES_ID_PREFIX = "resp_"
_CHAT_ID_PREFIX = "chatcmpl-"


def chat_completion_from_responses(resp: Any) -> dict[str, Any]:
    """Convert a non-streaming ``/v1/responses`` object into a chat completion.

    Raises ``NormalizationError`` when the payload does not have the
    responses shape; callers fall back to relaying the raw object.
    """
    if not isinstance(resp, dict):
        raise NormalizationError("responses payload must be a JSON object")
    output = resp.get("output")
    if output is None:
        output = []
    if not isinstance(output, list):
        raise NormalizationError("responses payload 'output' must be a list")

    message_item: dict[str, Any] | None = None
    for item in output:
        if isinstance(item, dict) and item.get("type") == "message":
            message_item = item
            break

    text_parts: list[str] = []
    role = "assistant"
    if message_item is not None:
        raw_role = message_item.get("role")
        if isinstance(raw_role, str) and raw_role:
            role = raw_role
        blocks = message_item.get("content") or []
        if not isinstance(blocks, list):
            raise NormalizationError("responses message 'content' must be a list")
        for block in blocks:
            if not isinstance(block, dict) or block.get("type") != "output_text":
                continue
            text = block.get("text")
            if isinstance(text, str):
                text_parts.append(text)

    created_at = resp.get("created_at")
    if not isinstance(created_at, int) or isinstance(created_at, bool):
        created_at = int(time.time())
    raw_id = resp.get("id")
    if isinstance(raw_id, str) and raw_id:
        if raw_id.startswith(_RESPONSES_ID_PREFIX):
            completion_id = _CHAT_ID_PREFIX + raw_id[len(_RESPONSES_ID_PREFIX):]
        else:
            completion_id = raw_id
    else:
        completion_id = f"{_CHAT_ID_PREFIX}{created_at * 1000}"

    usage = resp.get("usage")
    if not isinstance(usage, dict):
        usage = {}

    def _count(key: str) -> int:
        value = usage.get(key)
        return value if isinstance(value, int) and not isinstance(value, bool) else 0

    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created_at,
        "model": resp.get("model") or "unknown-model",
        "choices": [
            {
                "index": 0,
                "message": {"role": role, "content": "".join(text_parts)},
                "finish_reason": "stop" if resp.get("status") == "completed" else "unknown",
            }
        ],
        "usage": {
            "prompt_tokens": _count("input_tokens"),
            "completion_tokens": _count("output_tokens"),
            "total_tokens": _count("total_tokens"),
        },
    }
