"""Server-sent event parsing and vendor stream to chat-completion chunk rewriting.

``SSEParser`` turns arbitrary byte chunks into ``SSEEvent`` records. A
``StreamTransformer`` subclass owns the per-stream state (tool call
accumulator, completion flag) and maps each vendor event through a dispatch
table to zero or more canonical ``chat.completion.chunk`` frames. Every stream
it produces ends with exactly one ``data: [DONE]`` frame.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from typing import Any

from .errors import StreamTransformError
from .types import SSEEvent, ToolCallState

logger = logging.getLogger(__name__)

DONE_FRAME = b"data: [DONE]\n\n"


def encode_frame(payload: Any) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


class SSEParser:
    """Incremental SSE decoder tolerant of chunk boundaries anywhere in the byte stream.

    Each ``data:`` line closes one event, typed by the most recent ``event:``
    line. Blank lines and comments carry no meaning.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self._event_type: str | None = None

    def feed(self, chunk: bytes) -> list[SSEEvent]:
        self._buffer += chunk
        events: list[SSEEvent] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw_line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            event = self._handle_line(raw_line.decode("utf-8", errors="replace").rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[SSEEvent]:
        events: list[SSEEvent] = []
        if self._buffer:
            remaining = self._buffer.decode("utf-8", errors="replace").rstrip("\r")
            self._buffer = b""
            event = self._handle_line(remaining)
            if event is not None:
                events.append(event)
        self._event_type = None
        return events

    def _handle_line(self, line: str) -> SSEEvent | None:
        if not line or line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event_type = value.strip() or None
        elif name == "data":
            return self._dispatch(value)
        return None

    def _dispatch(self, text: str) -> SSEEvent:
        event_type = self._event_type
        self._event_type = None
        try:
            data: Any = json.loads(text)
        except ValueError:
            data = text
        if event_type is None and isinstance(data, dict) and isinstance(data.get("type"), str):
            event_type = data["type"]
        return SSEEvent(event_type=event_type, data=data)


Handler = Callable[[Any], list[bytes]]


def _error_message(data: Any) -> str:
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        response = data.get("response")
        if isinstance(response, dict):
            nested = response.get("error")
            if isinstance(nested, dict) and isinstance(nested.get("message"), str):
                return nested["message"]
        if isinstance(data.get("message"), str):
            return data["message"]
    return "upstream stream reported an error"


class StreamTransformer:
    def __init__(
        self,
        model: str,
        response_id: str | None = None,
        *,
        created: int | None = None,
        expose_errors: bool = False,
    ) -> None:
        self.model = model
        self.response_id = response_id or f"chatcmpl-{uuid.uuid4().hex}"
        self.created = created if created is not None else int(time.time())
        self.expose_errors = expose_errors
        self.tool_calls: dict[str, ToolCallState] = {}
        self.finished = False
        self._handlers: dict[str, Handler] = {}

    def chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> dict[str, Any]:
        return {
            "id": self.response_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def _frame(self, delta: dict[str, Any], finish_reason: str | None = None) -> list[bytes]:
        return [encode_frame(self.chunk(delta, finish_reason))]

    def _allocate_tool(self, key: str, call_id: str, name: str, arguments: str = "") -> ToolCallState:
        state = ToolCallState(index=len(self.tool_calls), id=call_id, name=name, arguments=arguments)
        self.tool_calls[key] = state
        return state

    def _tool_start_frames(self, state: ToolCallState) -> list[bytes]:
        return self._frame(
            {
                "tool_calls": [
                    {
                        "index": state.index,
                        "id": state.id,
                        "type": "function",
                        "function": {"name": state.name, "arguments": state.arguments},
                    }
                ]
            }
        )

    def _argument_frames(self, key: str, delta: Any) -> list[bytes]:
        state = self.tool_calls.get(key)
        if state is None or not isinstance(delta, str) or not delta:
            return []
        state.arguments += delta
        return self._frame({"tool_calls": [{"index": state.index, "function": {"arguments": delta}}]})

    def _text_frames(self, text: Any) -> list[bytes]:
        if not isinstance(text, str) or not text:
            return []
        return self._frame({"content": text})

    def _finish_frames(self, finish_reason: str) -> list[bytes]:
        self.finished = True
        return [*self._frame({}, finish_reason), DONE_FRAME]

    def _completion_reason(self) -> str:
        return "tool_calls" if self.tool_calls else "stop"

    def handle(self, event: SSEEvent) -> list[bytes]:
        if self.finished or event.event_type is None:
            return []
        handler = self._handlers.get(event.event_type)
        if handler is None:
            return []
        return handler(event.data if isinstance(event.data, dict) else {})

    def finish(self) -> list[bytes]:
        if self.finished:
            return []
        logger.info("stream ended without completion event model=%s id=%s", self.model, self.response_id)
        return self._finish_frames("stop")

    def _error_frame(self, exc: Exception) -> bytes:
        message = str(exc) if self.expose_errors else "upstream stream failed"
        return encode_frame(
            {"error": {"message": message, "type": "stream_error", "code": StreamTransformError.code}}
        )

    async def transform(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        parser = SSEParser()
        try:
            async for raw in source:
                for event in parser.feed(raw):
                    for frame in self.handle(event):
                        yield frame
            for event in parser.flush():
                for frame in self.handle(event):
                    yield frame
            for frame in self.finish():
                yield frame
        except Exception as exc:
            logger.error(
                "stream transform failed model=%s id=%s error=%s",
                self.model,
                self.response_id,
                exc,
            )
            if not self.finished:
                self.finished = True
                yield self._error_frame(exc)
                yield DONE_FRAME
            if isinstance(exc, StreamTransformError):
                raise
            raise StreamTransformError(str(exc) or exc.__class__.__name__) from exc


class ResponsesStreamTransformer(StreamTransformer):
    """Rewrites ``/v1/responses`` stream events into chat completion chunks."""

    def __init__(self, model: str, response_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(model, response_id, **kwargs)
        self._handlers = {
            "response.created": self._on_created,
            "response.output_text.delta": self._on_text_delta,
            "response.text.delta": self._on_text_delta,
            "response.content_part.delta": self._on_text_delta,
            "response.output_item.added": self._on_item_added,
            "response.function_call_arguments.delta": self._on_arguments_delta,
            "response.output_item.done": self._on_item_done,
            "response.completed": self._on_completed,
            "response.done": self._on_completed,
            "response.incomplete": self._on_incomplete,
            "response.failed": self._on_error,
            "error": self._on_error,
        }

    def _on_created(self, data: dict[str, Any]) -> list[bytes]:
        return self._frame({"role": "assistant"})

    def _on_text_delta(self, data: dict[str, Any]) -> list[bytes]:
        return self._text_frames(data.get("delta") or data.get("text"))

    @staticmethod
    def _item_key(item: dict[str, Any]) -> str:
        return str(item.get("id") or item.get("call_id") or "")

    def _on_item_added(self, data: dict[str, Any]) -> list[bytes]:
        item = data.get("item")
        if not isinstance(item, dict) or item.get("type") != "function_call":
            return []
        key = self._item_key(item)
        if key in self.tool_calls:
            return []
        state = self._allocate_tool(key, str(item.get("call_id") or key), str(item.get("name") or ""))
        return self._tool_start_frames(state)

    def _on_arguments_delta(self, data: dict[str, Any]) -> list[bytes]:
        return self._argument_frames(str(data.get("item_id") or ""), data.get("delta"))

    def _on_item_done(self, data: dict[str, Any]) -> list[bytes]:
        item = data.get("item")
        if not isinstance(item, dict) or item.get("type") != "function_call":
            return []
        key = self._item_key(item)
        if key in self.tool_calls:
            return []
        arguments = item.get("arguments")
        state = self._allocate_tool(
            key,
            str(item.get("call_id") or key),
            str(item.get("name") or ""),
            arguments if isinstance(arguments, str) else "",
        )
        return self._tool_start_frames(state)

    def _on_completed(self, data: dict[str, Any]) -> list[bytes]:
        response = data.get("response")
        status = response.get("status") if isinstance(response, dict) else None
        if status == "incomplete":
            return self._finish_frames("length")
        return self._finish_frames(self._completion_reason())

    def _on_incomplete(self, data: dict[str, Any]) -> list[bytes]:
        return self._finish_frames("length")

    def _on_error(self, data: dict[str, Any]) -> list[bytes]:
        raise StreamTransformError(_error_message(data), event_type=str(data.get("type") or "error"), payload=data)


class MessagesStreamTransformer(StreamTransformer):
    """Rewrites ``/v1/messages`` stream events into chat completion chunks."""

    def __init__(self, model: str, response_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(model, response_id, **kwargs)
        self._stop_reason: str | None = None
        self._handlers = {
            "message_start": self._on_message_start,
            "content_block_start": self._on_block_start,
            "content_block_delta": self._on_block_delta,
            "message_delta": self._on_message_delta,
            "message_stop": self._on_message_stop,
            "error": self._on_error,
        }

    def _on_message_start(self, data: dict[str, Any]) -> list[bytes]:
        return self._frame({"role": "assistant"})

    def _on_block_start(self, data: dict[str, Any]) -> list[bytes]:
        block = data.get("content_block")
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            return []
        key = str(data.get("index"))
        if key in self.tool_calls:
            return []
        state = self._allocate_tool(key, str(block.get("id") or key), str(block.get("name") or ""))
        return self._tool_start_frames(state)

    def _on_block_delta(self, data: dict[str, Any]) -> list[bytes]:
        delta = data.get("delta")
        if not isinstance(delta, dict):
            return []
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return self._text_frames(delta.get("text"))
        if delta_type == "input_json_delta":
            return self._argument_frames(str(data.get("index")), delta.get("partial_json"))
        return []

    def _on_message_delta(self, data: dict[str, Any]) -> list[bytes]:
        delta = data.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("stop_reason"), str):
            self._stop_reason = delta["stop_reason"]
        return []

    def _on_message_stop(self, data: dict[str, Any]) -> list[bytes]:
        if self._stop_reason == "max_tokens":
            return self._finish_frames("length")
        return self._finish_frames(self._completion_reason())

    def _on_error(self, data: dict[str, Any]) -> list[bytes]:
        raise StreamTransformError(_error_message(data), event_type="error", payload=data)


STREAM_TRANSFORMERS: dict[str, type[StreamTransformer]] = {
    "openai": ResponsesStreamTransformer,
    "anthropic": MessagesStreamTransformer,
}
