import importlib
import json
import sys
import textwrap
from pathlib import Path
from types import ModuleType
from typing import Any, Callable

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.relay.credentials import KEY_ENV_NAMES, REFRESH_TOKEN_ENV, CredentialPool
from src.relay.dispatch import ResilientDispatcher

ANTHROPIC_URL = "https://upstream.test/api/a/v1/messages"
OPENAI_URL = "https://upstream.test/api/o/v1/responses"
COMMON_URL = "https://upstream.test/api/g/v1/chat/completions"

MODELS_TOML = f"""
[endpoints.anthropic]
base_url = "{ANTHROPIC_URL}"

[endpoints.openai]
base_url = "{OPENAI_URL}"

[endpoints.common]
base_url = "{COMMON_URL}"

[models."claude-test"]
type = "anthropic"
provider = "anthropic"
reasoning = "high"

[models."gpt-5-2025-08-07"]
type = "openai"
provider = "openai"
reasoning = "off"

[models."glm-test"]
type = "common"
provider = "fireworks"
reasoning = "auto"
"""

GATEWAY_YAML = """
system_prompt: ""
model_redirects:
  gpt-5.1: gpt-5-2025-08-07
"""

Handler = Callable[[httpx.Request], httpx.Response]


def load_app(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    *,
    gateway: str = GATEWAY_YAML,
    env: dict[str, str] | None = None,
) -> tuple[FastAPI, ModuleType]:
    config_dir = tmp_path / "config"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "models.toml").write_text(MODELS_TOML, encoding="utf-8")
    (config_dir / "gateway.yaml").write_text(textwrap.dedent(gateway), encoding="utf-8")
    monkeypatch.setenv("RELAY_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("RELAY_METRICS_DIR", str(tmp_path / "metrics"))
    for name in (*KEY_ENV_NAMES, REFRESH_TOKEN_ENV, "RELAY_PROXIES", "RELAY_DEBUG_ERRORS", "RELAY_CORS_ALLOW_ORIGINS"):
        monkeypatch.delenv(name, raising=False)
    for name, value in (env or {}).items():
        monkeypatch.setenv(name, value)
    sys.modules.pop("src.relay.server", None)
    importlib.invalidate_caches()
    module = importlib.import_module("src.relay.server")
    return module.app, module


def install_upstream(
    server_module: ModuleType,
    monkeypatch: pytest.MonkeyPatch,
    handler: Handler,
    keys: tuple[str, ...] = ("key-primary-00000",),
) -> CredentialPool:
    pool = CredentialPool(keys)

    def factory(proxy: str | None) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    monkeypatch.setattr(server_module, "pool", pool)
    monkeypatch.setattr(server_module, "dispatcher", ResilientDispatcher(pool, client_factory=factory))
    return pool


def sse_body(*events: tuple[str, dict[str, Any]]) -> bytes:
    return b"".join(
        f"event: {name}\ndata: {json.dumps(data)}\n\n".encode("utf-8") for name, data in events
    )


def data_frames(text: str) -> list[Any]:
    frames: list[Any] = []
    for block in text.split("\n\n"):
        if not block.startswith("data: "):
            continue
        body = block[len("data: "):]
        frames.append(body if body == "[DONE]" else json.loads(body))
    return frames


CHAT_BODY = {"messages": [{"role": "user", "content": "hi"}]}


def test_redirected_model_returns_normalized_completion(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["json"] = json.loads(request.content)
        captured["headers"] = request.headers
        return httpx.Response(
            200,
            json={
                "id": "resp_xyz",
                "created_at": 1731000000,
                "model": "gpt-5-2025-08-07",
                "status": "completed",
                "output": [
                    {
                        "type": "message",
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": "Hello"}, {"type": "output_text", "text": " there"}],
                    }
                ],
                "usage": {"input_tokens": 3, "output_tokens": 2, "total_tokens": 5},
            },
        )

    install_upstream(server_module, monkeypatch, handler)
    client = TestClient(app)

    r = client.post("/v1/chat/completions", json={"model": "gpt-5.1", **CHAT_BODY})

    assert r.status_code == 200
    data = r.json()
    assert data["object"] == "chat.completion"
    assert data["id"] == "chatcmpl-xyz"
    assert data["choices"][0]["message"]["content"] == "Hello there"
    assert data["usage"]["total_tokens"] == 5
    assert captured["url"] == OPENAI_URL
    assert captured["json"]["model"] == "gpt-5-2025-08-07"
    assert captured["json"]["input"] == [{"type": "message", "role": "user", "content": [{"type": "input_text", "text": "hi"}]}]
    assert captured["headers"]["authorization"] == "Bearer key-primary-00000"
    assert captured["headers"]["x-api-provider"] == "openai"
    assert r.headers["x-relay-provider"] == "openai"
    assert r.headers["x-relay-fallback-attempts"] == "0"
    assert r.headers["x-relay-request-id"]


def test_missing_model_is_bad_request(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, _ = load_app(tmp_path, monkeypatch)

    r = TestClient(app).post("/v1/chat/completions", json=CHAT_BODY)

    assert r.status_code == 400
    assert r.json()["error"]["code"] == "missing_model"


def test_unknown_model_is_not_found(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, _ = load_app(tmp_path, monkeypatch)

    r = TestClient(app).post("/v1/chat/completions", json={"model": "no-such-model", **CHAT_BODY})

    assert r.status_code == 404
    assert r.json()["error"]["code"] == "model_not_found"


def test_invalid_json_is_bad_request(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, _ = load_app(tmp_path, monkeypatch)

    r = TestClient(app).post(
        "/v1/chat/completions", content=b"{not json", headers={"content-type": "application/json"}
    )

    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_json"


def test_transform_failure_hides_detail_by_default(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, _ = load_app(tmp_path, monkeypatch)
    body = {"model": "claude-test", "messages": [{"role": "robot", "content": "hi"}]}

    r = TestClient(app).post("/v1/chat/completions", json=body)

    assert r.status_code == 500
    error = r.json()["error"]
    assert error["code"] == "request_transform_failed"
    assert "detail" not in error


def test_debug_mode_echoes_transform_detail(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, _ = load_app(tmp_path, monkeypatch, env={"RELAY_DEBUG_ERRORS": "1"})
    body = {"model": "claude-test", "messages": [{"role": "robot", "content": "hi"}]}

    r = TestClient(app).post("/v1/chat/completions", json=body)

    assert r.status_code == 500
    assert "provider=anthropic" in r.json()["error"]["detail"]


def test_missing_endpoint_is_server_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    monkeypatch.delitem(server_module.cfg.endpoints, "common")

    r = TestClient(app).post("/v1/chat/completions", json={"model": "glm-test", **CHAT_BODY})

    assert r.status_code == 500
    assert r.json()["error"]["code"] == "endpoint_not_configured"


def test_no_credentials_is_server_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    assert server_module.pool.mode == "client"

    r = TestClient(app).post("/v1/chat/completions", json={"model": "claude-test", **CHAT_BODY})

    assert r.status_code == 500
    assert r.json()["error"]["code"] == "credential_unavailable"


def test_client_authorization_forwarded_without_pool(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["authorization"])
        return httpx.Response(200, json={"id": "msg_1", "type": "message", "content": []})

    install_upstream(server_module, monkeypatch, handler, keys=())
    client = TestClient(app)

    r = client.post("/v1/chat/completions", json={"model": "claude-test", **CHAT_BODY}, headers={"x-api-key": "client-key"})

    assert r.status_code == 200
    assert r.json() == {"id": "msg_1", "type": "message", "content": []}
    assert seen == ["Bearer client-key"]


def test_pool_credential_replaces_client_headers(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = request.headers
        captured["json"] = json.loads(request.content)
        return httpx.Response(200, json={"type": "message"})

    install_upstream(server_module, monkeypatch, handler)

    TestClient(app).post(
        "/v1/chat/completions",
        json={"model": "claude-test", **CHAT_BODY},
        headers={"authorization": "Bearer client", "x-api-key": "client-key", "x-session-id": "s-1"},
    )

    headers = captured["headers"]
    assert headers["authorization"] == "Bearer key-primary-00000"
    assert "x-api-key" not in headers
    assert headers["x-session-id"] == "s-1"
    assert headers["anthropic-version"] == "2023-06-01"
    assert "interleaved-thinking-2025-05-14" in headers["anthropic-beta"]
    assert captured["json"]["thinking"] == {"type": "enabled", "budget_tokens": 24576}


def test_exhausted_pool_relays_last_upstream_response(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["authorization"])
        return httpx.Response(429, json={"error": {"message": f"quota {len(seen)}"}})

    install_upstream(server_module, monkeypatch, handler, keys=("key-a-000000000", "key-b-000000000"))

    r = TestClient(app).post("/v1/chat/completions", json={"model": "claude-test", **CHAT_BODY})

    assert r.status_code == 429
    assert r.json() == {"error": {"message": "quota 2"}}
    assert seen == ["Bearer key-a-000000000", "Bearer key-b-000000000"]
    assert r.headers["x-relay-fallback-attempts"] == "1"


def test_fallback_success_after_rotation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["authorization"] == "Bearer key-a-000000000":
            return httpx.Response(401, json={"error": "revoked"})
        return httpx.Response(200, json={"type": "message", "content": []})

    install_upstream(server_module, monkeypatch, handler, keys=("key-a-000000000", "key-b-000000000"))
    client = TestClient(app)

    r = client.post("/v1/chat/completions", json={"model": "claude-test", **CHAT_BODY})

    assert r.status_code == 200
    assert r.headers["x-relay-fallback-attempts"] == "1"
    assert 'relay_credential_fallbacks_total{provider="anthropic"} 1' in client.get("/metrics").text


def test_network_failure_is_bad_gateway(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    install_upstream(server_module, monkeypatch, handler)

    r = TestClient(app).post("/v1/chat/completions", json={"model": "claude-test", **CHAT_BODY})

    assert r.status_code == 502
    assert r.json()["error"]["code"] == "upstream_unreachable"


def test_upstream_error_status_is_propagated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    install_upstream(
        server_module,
        monkeypatch,
        lambda request: httpx.Response(400, json={"error": {"message": "bad max_tokens"}}),
    )

    r = TestClient(app).post("/v1/chat/completions", json={"model": "claude-test", **CHAT_BODY})

    assert r.status_code == 400
    assert r.json() == {"error": {"message": "bad max_tokens"}}


def test_streaming_responses_are_rewritten(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    upstream = sse_body(
        ("response.created", {"type": "response.created", "response": {"id": "resp_1"}}),
        ("response.output_text.delta", {"type": "response.output_text.delta", "delta": "Hel"}),
        ("response.output_text.delta", {"type": "response.output_text.delta", "delta": "lo"}),
        ("response.completed", {"type": "response.completed", "response": {"status": "completed"}}),
    )
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["json"] = json.loads(request.content)
        return httpx.Response(200, content=upstream, headers={"content-type": "text/event-stream"})

    install_upstream(server_module, monkeypatch, handler)
    client = TestClient(app)

    with client.stream(
        "POST", "/v1/chat/completions", json={"model": "gpt-5.1", "stream": True, **CHAT_BODY}
    ) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        text = "".join(response.iter_text())

    frames = data_frames(text)
    assert captured["json"]["stream"] is True
    assert frames[-1] == "[DONE]"
    assert [f["choices"][0]["delta"] for f in frames[:-1]] == [
        {"role": "assistant"},
        {"content": "Hel"},
        {"content": "lo"},
        {},
    ]
    assert frames[-2]["choices"][0]["finish_reason"] == "stop"
    assert frames[0]["model"] == "gpt-5-2025-08-07"


def test_streaming_messages_tool_calls(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    upstream = sse_body(
        ("message_start", {"type": "message_start", "message": {"id": "msg_1"}}),
        (
            "content_block_start",
            {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": "toolu_1", "name": "lookup"}},
        ),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": '{"q":"cat"}'}}),
        ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "tool_use"}}),
        ("message_stop", {"type": "message_stop"}),
    )
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = request.headers
        return httpx.Response(200, content=upstream, headers={"content-type": "text/event-stream"})

    install_upstream(server_module, monkeypatch, handler)

    with TestClient(app).stream(
        "POST", "/v1/chat/completions", json={"model": "claude-test", "stream": True, **CHAT_BODY}
    ) as response:
        text = "".join(response.iter_text())

    frames = data_frames(text)
    tool_chunk = frames[1]["choices"][0]["delta"]["tool_calls"][0]
    assert tool_chunk["id"] == "toolu_1"
    assert tool_chunk["function"]["name"] == "lookup"
    assert frames[2]["choices"][0]["delta"]["tool_calls"][0]["function"]["arguments"] == '{"q":"cat"}'
    assert frames[-2]["choices"][0]["finish_reason"] == "tool_calls"
    assert frames[-1] == "[DONE]"
    assert captured["headers"]["x-stainless-helper-method"] == "stream"


def test_streaming_error_event_is_relayed_in_band(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    upstream = sse_body(
        ("message_start", {"type": "message_start", "message": {}}),
        ("error", {"type": "error", "error": {"message": "Overloaded"}}),
    )
    install_upstream(
        server_module,
        monkeypatch,
        lambda request: httpx.Response(200, content=upstream, headers={"content-type": "text/event-stream"}),
    )

    with TestClient(app).stream(
        "POST", "/v1/chat/completions", json={"model": "claude-test", "stream": True, **CHAT_BODY}
    ) as response:
        text = "".join(response.iter_text())

    frames = data_frames(text)
    assert frames[-2]["error"]["code"] == "stream_transform_failed"
    assert frames[-1] == "[DONE]"


def test_common_stream_is_passed_through(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    upstream = b'data: {"id":"c1","choices":[{"delta":{"content":"x"}}]}\n\ndata: [DONE]\n\n'
    install_upstream(
        server_module,
        monkeypatch,
        lambda request: httpx.Response(200, content=upstream, headers={"content-type": "text/event-stream"}),
    )

    with TestClient(app).stream(
        "POST", "/v1/chat/completions", json={"model": "glm-test", "stream": True, **CHAT_BODY}
    ) as response:
        body = b"".join(response.iter_bytes())

    assert body == upstream


class _InterruptedStream(httpx.AsyncByteStream):
    def __init__(self, first: bytes) -> None:
        self.first = first

    async def __aiter__(self):
        yield self.first
        raise httpx.ReadError("connection reset")


def test_interrupted_passthrough_stream_ends_with_error_and_done(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    first = b'data: {"id":"c1","choices":[{"delta":{"content":"x"}}]}\n\n'
    install_upstream(
        server_module,
        monkeypatch,
        lambda request: httpx.Response(
            200, stream=_InterruptedStream(first), headers={"content-type": "text/event-stream"}
        ),
    )
    client = TestClient(app)

    with client.stream(
        "POST", "/v1/chat/completions", json={"model": "glm-test", "stream": True, **CHAT_BODY}
    ) as response:
        body = b"".join(response.iter_bytes()).decode("utf-8")

    assert response.status_code == 200
    assert body.startswith(first.decode("utf-8"))
    assert body.endswith("data: [DONE]\n\n")
    assert body.count("data: [DONE]") == 1
    frames = data_frames(body)
    assert frames[-2]["error"]["code"] == "upstream_unreachable"
    assert "detail" not in frames[-2]["error"]
    metrics_text = client.get("/metrics").text
    assert 'relay_requests_total{endpoint="/v1/chat/completions",status="200",ok="false"} 1' in metrics_text


def test_direct_responses_rejects_other_families(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, _ = load_app(tmp_path, monkeypatch)

    r = TestClient(app).post("/v1/responses", json={"model": "claude-test", "input": "hi"})

    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_endpoint_type"


def test_direct_responses_applies_policy(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch, gateway='system_prompt: "Gateway. "\n')
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["json"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "resp_1", "object": "response"})

    install_upstream(server_module, monkeypatch, handler)

    r = TestClient(app).post(
        "/v1/responses",
        json={"model": "gpt-5-2025-08-07", "input": "hi", "instructions": "client", "max_output_tokens": 2, "reasoning": {"effort": "high"}},
    )

    assert r.status_code == 200
    assert r.json() == {"id": "resp_1", "object": "response"}
    assert captured["json"]["instructions"] == "Gateway. client"
    assert captured["json"]["max_output_tokens"] == 16
    assert "reasoning" not in captured["json"]


def test_direct_messages_prepends_system_prompt(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch, gateway='system_prompt: "Gateway"\n')
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["json"] = json.loads(request.content)
        return httpx.Response(200, json={"type": "message", "content": [{"type": "text", "text": "ok"}]})

    install_upstream(server_module, monkeypatch, handler)
    body = {"model": "claude-test", "system": [{"type": "text", "text": "client"}], "messages": [{"role": "user", "content": "hi"}]}

    r = TestClient(app).post("/v1/messages", json=body)

    assert r.status_code == 200
    assert captured["url"] == ANTHROPIC_URL
    assert captured["json"]["system"] == [{"type": "text", "text": "Gateway"}, {"type": "text", "text": "client"}]
    assert captured["json"]["thinking"] == {"type": "enabled", "budget_tokens": 24576}


def test_direct_messages_stream_is_passed_through(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch)
    upstream = sse_body(("message_start", {"type": "message_start"}), ("message_stop", {"type": "message_stop"}))
    install_upstream(
        server_module,
        monkeypatch,
        lambda request: httpx.Response(200, content=upstream, headers={"content-type": "text/event-stream"}),
    )

    with TestClient(app).stream(
        "POST", "/v1/messages", json={"model": "claude-test", "stream": True, "messages": []}
    ) as response:
        body = b"".join(response.iter_bytes())

    assert body == upstream


def test_count_tokens_targets_derived_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, server_module = load_app(tmp_path, monkeypatch, gateway='system_prompt: "Gateway"\n')
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["json"] = json.loads(request.content)
        return httpx.Response(200, json={"input_tokens": 12})

    install_upstream(server_module, monkeypatch, handler)

    r = TestClient(app).post(
        "/v1/messages/count_tokens",
        json={"model": "claude-test", "messages": [{"role": "user", "content": "hi"}]},
    )

    assert r.status_code == 200
    assert r.json() == {"input_tokens": 12}
    assert captured["url"] == "https://upstream.test/api/a/v1/messages/count_tokens"
    assert "system" not in captured["json"]


def test_count_tokens_rejects_openai_models(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, _ = load_app(tmp_path, monkeypatch)

    r = TestClient(app).post("/v1/messages/count_tokens", json={"model": "gpt-5.1", "messages": []})

    assert r.status_code == 400


def test_list_models(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, _ = load_app(tmp_path, monkeypatch)

    r = TestClient(app).get("/v1/models")

    assert r.status_code == 200
    data = r.json()
    assert data["object"] == "list"
    assert [m["id"] for m in data["data"]] == ["claude-test", "glm-test", "gpt-5-2025-08-07"]
    assert data["data"][1]["owned_by"] == "fireworks"
