from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..types import ChatRequest, ReasoningPolicy
from . import BaseTransformer


class CommonTransformer(BaseTransformer):
    """Passthrough for upstreams that already speak chat completions."""

    provider_type = "common"

    def _apply_reasoning(self, payload: dict[str, Any]) -> None:
        if self.reasoning is ReasoningPolicy.AUTO:
            return
        if self.reasoning.is_level:
            payload["reasoning_effort"] = self.reasoning.value
            return
        payload.pop("reasoning_effort", None)
        payload.pop("reasoning", None)

    def transform(self, request: ChatRequest | Mapping[str, Any]) -> dict[str, Any]:
        parsed = self._parse_request(request)
        payload = self._raw_payload(request)
        payload["model"] = parsed.model
        if self.system_prompt:
            payload["messages"] = [{"role": "system", "content": self.system_prompt}, *payload["messages"]]
        self._apply_reasoning(payload)
        return payload

    def prepare_native(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return self.transform(payload)
