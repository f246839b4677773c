import logging
import os
import time
import uuid
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from typing_extensions import TypedDict

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from .catalog import EndpointDef, GatewaySettings, ModelCatalog, ModelDef, load_config
from .credentials import CredentialPool, TokenRefresher
from .dispatch import DispatchResult, ResilientDispatcher, max_attempts_from_env
from .errors import (
    CredentialUnavailable,
    DispatchNetworkError,
    DispatchQuotaOrAuthExhausted,
    NormalizationError,
    StreamTransformError,
    TransformError,
)
from .metrics import MetricsLogger
from .providers import BaseTransformer, build_transformer
from .streaming import DONE_FRAME, STREAM_TRANSFORMERS, encode_frame
from .transport import ProxySelector
from .types import chat_completion_from_responses

logger = logging.getLogger(__name__)

app = FastAPI(title="llm-relay")

_ROOT_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..")
CONFIG_DIR = os.environ.get("RELAY_CONFIG_DIR", os.path.join(_ROOT_DIR, "config"))

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})


class _ModelInfo(TypedDict):
    id: str
    object: Literal["model"]
    owned_by: str
    type: str


class _ModelListResponse(TypedDict):
    object: Literal["list"]
    data: list[_ModelInfo]


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


DEBUG_ERRORS: bool = _env_var_as_bool("RELAY_DEBUG_ERRORS")
ALLOWED_ORIGINS = _parse_env_list(os.environ.get("RELAY_CORS_ALLOW_ORIGINS", ""))
METRICS_DIR = os.environ.get("RELAY_METRICS_DIR", os.path.join(_ROOT_DIR, "metrics"))
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
BAD_GATEWAY_STATUS = 502
COUNT_TOKENS_SUFFIX = "/v1/messages/count_tokens"


def _build_refresher(settings: GatewaySettings) -> TokenRefresher | None:
    if not settings.refresh_url or not settings.refresh_client_id:
        return None
    return TokenRefresher(settings.refresh_url, settings.refresh_client_id)


cfg = load_config(CONFIG_DIR)
catalog = ModelCatalog(cfg)
pool = CredentialPool.from_env(refresher=_build_refresher(cfg.settings))
dispatcher = ResilientDispatcher(
    pool,
    ProxySelector.from_env(),
    max_attempts=max_attempts_from_env(),
    timeout=cfg.settings.upstream_timeout,
)
metrics = MetricsLogger(METRICS_DIR)

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
async def _initialize_credentials() -> None:
    try:
        await pool.initialize()
    except CredentialUnavailable as exc:
        logger.error("credential initialization failed mode=%s detail=%s", pool.mode, exc)


@app.on_event("shutdown")
async def _close_dispatcher() -> None:
    await dispatcher.aclose()


class _RequestRejected(Exception):
    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        error_type: str,
        code: str,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.error_type = error_type
        self.code = code
        self.detail = detail


@dataclass
class _RequestContext:
    endpoint: str
    req_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    start: float = field(default_factory=time.perf_counter)
    model_id: str | None = None
    provider: str | None = None
    attempts: int = 0
    rotated: bool = False

    def latency_ms(self) -> int:
        return int((time.perf_counter() - self.start) * 1000)


@dataclass
class _Route:
    model: ModelDef
    endpoint: EndpointDef
    transformer: BaseTransformer


def _make_response_headers(ctx: _RequestContext) -> dict[str, str]:
    return {
        "x-relay-request-id": ctx.req_id,
        "x-relay-provider": ctx.provider or "unknown",
        "x-relay-fallback-attempts": str(max(ctx.attempts - 1, 0)),
    }


def _make_error_body(
    *, message: str, error_type: str, code: str, detail: str | None = None
) -> dict[str, Any]:
    payload: dict[str, Any] = {"message": message, "type": error_type, "code": code}
    if detail and DEBUG_ERRORS:
        payload["detail"] = detail
    return {"error": payload}


async def _log_metrics(ctx: _RequestContext, *, status: int, ok: bool, error: str | None = None) -> None:
    record: dict[str, Any] = {
        "req_id": ctx.req_id,
        "ts": time.time(),
        "endpoint": ctx.endpoint,
        "model": ctx.model_id,
        "provider": ctx.provider,
        "latency_ms": ctx.latency_ms(),
        "ok": ok,
        "status": status,
        "attempts": ctx.attempts,
        "rotated": ctx.rotated,
    }
    if error:
        record["error"] = error
    await metrics.write(record)


async def _reject(ctx: _RequestContext, exc: _RequestRejected) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        "request rejected req_id=%s endpoint=%s model=%s status=%d code=%s detail=%s",
        ctx.req_id,
        ctx.endpoint,
        ctx.model_id,
        exc.status_code,
        exc.code,
        exc.detail or exc.message,
    )
    await _log_metrics(ctx, status=exc.status_code, ok=False, error=exc.code)
    body = _make_error_body(message=exc.message, error_type=exc.error_type, code=exc.code, detail=exc.detail)
    return JSONResponse(body, status_code=exc.status_code, headers=_make_response_headers(ctx))


async def _read_body(req: Request) -> dict[str, Any]:
    try:
        body = await req.json()
    except ValueError as exc:
        raise _RequestRejected(
            400, "request body must be valid JSON", error_type="invalid_request_error", code="invalid_json"
        ) from exc
    if not isinstance(body, dict):
        raise _RequestRejected(
            400, "request body must be a JSON object", error_type="invalid_request_error", code="invalid_json"
        )
    return body


def _resolve_route(ctx: _RequestContext, body: Mapping[str, Any], family: str | None = None) -> _Route:
    model_id = catalog.resolve_model(body.get("model"))
    if model_id is None:
        raise _RequestRejected(400, "model is required", error_type="invalid_request_error", code="missing_model")
    ctx.model_id = model_id
    model = catalog.get_model(model_id)
    if model is None:
        raise _RequestRejected(
            404, f"Model {model_id} not found", error_type="invalid_request_error", code="model_not_found"
        )
    ctx.provider = model.provider
    if family is not None and model.type != family:
        raise _RequestRejected(
            400,
            f"{ctx.endpoint} only supports {family} models, {model_id} is {model.type}",
            error_type="invalid_request_error",
            code="invalid_endpoint_type",
        )
    endpoint = catalog.get_endpoint(model.type)
    if endpoint is None:
        raise _RequestRejected(
            500,
            f"Endpoint type {model.type} not configured",
            error_type="configuration_error",
            code="endpoint_not_configured",
        )
    transformer = build_transformer(
        model.type,
        system_prompt=catalog.get_system_prompt(),
        reasoning=catalog.get_reasoning_policy(model_id),
        user_agent=cfg.settings.user_agent,
        client_name=cfg.settings.client_name,
    )
    return _Route(model=model, endpoint=endpoint, transformer=transformer)


def _client_authorization(req: Request) -> str | None:
    authorization = req.headers.get("authorization")
    if authorization:
        return authorization
    api_key = req.headers.get("x-api-key")
    return f"Bearer {api_key}" if api_key else None


async def _dispatch(
    ctx: _RequestContext,
    req: Request,
    route: _Route,
    url: str,
    payload: dict[str, Any],
    *,
    stream: bool,
) -> DispatchResult:
    try:
        authorization = await pool.authorization(_client_authorization(req))
    except CredentialUnavailable as exc:
        raise _RequestRejected(
            500,
            "API key not available",
            error_type=CredentialUnavailable.error_type,
            code=CredentialUnavailable.code,
            detail=str(exc),
        ) from exc
    headers = route.transformer.build_headers(
        authorization,
        req.headers,
        stream=stream,
        model_id=route.model.id,
        provider=route.model.provider,
    )
    logger.info(
        "forwarding req_id=%s endpoint=%s model=%s type=%s url=%s stream=%s",
        ctx.req_id,
        ctx.endpoint,
        route.model.id,
        route.model.type,
        url,
        stream,
    )
    try:
        result = await dispatcher.dispatch(url, headers, payload, label=f"{ctx.endpoint} {route.model.id}")
    except DispatchNetworkError as exc:
        ctx.attempts = exc.attempts
        raise _RequestRejected(
            BAD_GATEWAY_STATUS,
            "upstream unreachable",
            error_type=DispatchNetworkError.error_type,
            code=DispatchNetworkError.code,
            detail=str(exc),
        ) from exc
    ctx.attempts = result.attempts
    ctx.rotated = result.rotated
    return result


async def _relay_upstream(ctx: _RequestContext, response: httpx.Response, *, error: str) -> Response:
    try:
        content = await response.aread()
    finally:
        await response.aclose()
    logger.warning(
        "upstream failure relayed req_id=%s status=%d attempts=%d body=%s",
        ctx.req_id,
        response.status_code,
        ctx.attempts,
        content[:200].decode("utf-8", errors="replace"),
    )
    await _log_metrics(ctx, status=response.status_code, ok=False, error=error)
    headers = _make_response_headers(ctx)
    return Response(
        content=content,
        status_code=response.status_code,
        media_type=response.headers.get("content-type", "application/json"),
        headers=headers,
    )


def _stream_response(
    ctx: _RequestContext,
    upstream: httpx.Response,
    frames: AsyncIterator[bytes],
) -> StreamingResponse:
    async def event_source() -> AsyncIterator[bytes]:
        ok = True
        error: str | None = None
        try:
            async for frame in frames:
                yield frame
        except StreamTransformError as exc:
            ok = False
            error = StreamTransformError.code
            logger.error("stream aborted req_id=%s model=%s detail=%s", ctx.req_id, ctx.model_id, exc)
        except httpx.TransportError as exc:
            ok = False
            error = DispatchNetworkError.code
            logger.error("upstream stream interrupted req_id=%s model=%s error=%r", ctx.req_id, ctx.model_id, exc)
            yield encode_frame(
                _make_error_body(
                    message="upstream stream interrupted",
                    error_type=DispatchNetworkError.error_type,
                    code=DispatchNetworkError.code,
                    detail=repr(exc),
                )
            )
            yield DONE_FRAME
        finally:
            await upstream.aclose()
            await _log_metrics(ctx, status=upstream.status_code, ok=ok, error=error)

    headers = _make_response_headers(ctx)
    headers["cache-control"] = "no-cache"
    return StreamingResponse(event_source(), media_type="text/event-stream", headers=headers)


async def _forward(
    ctx: _RequestContext,
    req: Request,
    route: _Route,
    url: str,
    payload: dict[str, Any],
    *,
    stream: bool,
    canonical: bool,
) -> Response:
    try:
        result = await _dispatch(ctx, req, route, url, payload, stream=stream)
    except DispatchQuotaOrAuthExhausted as exc:
        ctx.attempts = exc.attempts
        ctx.rotated = exc.attempts > 1
        return await _relay_upstream(ctx, exc.response, error=DispatchQuotaOrAuthExhausted.code)
    upstream = result.response
    if upstream.is_error:
        return await _relay_upstream(ctx, upstream, error="upstream_error")

    model_type = route.model.type
    if stream:
        if canonical and model_type in STREAM_TRANSFORMERS:
            transformer = STREAM_TRANSFORMERS[model_type](route.model.id, expose_errors=DEBUG_ERRORS)
            frames = transformer.transform(upstream.aiter_bytes())
        else:
            frames = upstream.aiter_bytes()
        return _stream_response(ctx, upstream, frames)

    try:
        content = await upstream.aread()
    finally:
        await upstream.aclose()
    headers = _make_response_headers(ctx)
    try:
        data = upstream.json()
    except ValueError:
        logger.warning("upstream returned non-JSON body req_id=%s model=%s", ctx.req_id, ctx.model_id)
        await _log_metrics(ctx, status=upstream.status_code, ok=True)
        return Response(
            content=content,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type"),
            headers=headers,
        )
    if canonical and model_type == "openai":
        try:
            data = chat_completion_from_responses(data)
        except NormalizationError as exc:
            logger.warning("responses normalization failed req_id=%s detail=%s", ctx.req_id, exc)
    await _log_metrics(ctx, status=upstream.status_code, ok=True)
    return JSONResponse(data, status_code=upstream.status_code, headers=headers)


@app.get("/")
async def index() -> dict[str, Any]:
    return {
        "name": "llm-relay",
        "status": "running",
        "endpoints": [
            "GET /v1/models",
            "POST /v1/chat/completions",
            "POST /v1/responses",
            "POST /v1/messages",
            "POST /v1/messages/count_tokens",
        ],
    }


@app.get("/health")
async def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "models": len(cfg.models),
        "endpoints": sorted(cfg.endpoints),
        "credentials": {"mode": pool.mode, "size": pool.size},
        "config": [os.path.basename(path) for path in cfg.watch_paths],
    }


@app.get("/ping")
async def ping() -> PlainTextResponse:
    return PlainTextResponse("pong")


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    return Response(metrics.render().encode("utf-8"), media_type=PROM_CONTENT_TYPE)


@app.get("/v1/models")
async def list_models() -> _ModelListResponse:
    models: list[_ModelInfo] = []
    for definition in catalog.models():
        models.append(
            {
                "id": definition.id,
                "object": "model",
                "owned_by": definition.provider,
                "type": definition.type,
            }
        )
    return {"object": "list", "data": models}


@app.post("/v1/chat/completions")
async def chat_completions(req: Request) -> Response:
    ctx = _RequestContext(endpoint="/v1/chat/completions")
    try:
        body = await _read_body(req)
        route = _resolve_route(ctx, body)
        try:
            payload = route.transformer.transform({**body, "model": route.model.id})
        except TransformError as exc:
            raise _RequestRejected(
                500,
                "request could not be transformed for the upstream",
                error_type=TransformError.error_type,
                code=TransformError.code,
                detail=exc.detail(),
            ) from exc
        return await _forward(
            ctx,
            req,
            route,
            route.endpoint.base_url,
            payload,
            stream=bool(body.get("stream")),
            canonical=True,
        )
    except _RequestRejected as exc:
        return await _reject(ctx, exc)


async def _direct(req: Request, *, endpoint: str, family: str) -> Response:
    ctx = _RequestContext(endpoint=endpoint)
    try:
        body = await _read_body(req)
        route = _resolve_route(ctx, body, family)
        payload = route.transformer.prepare_native({**body, "model": route.model.id})
        return await _forward(
            ctx,
            req,
            route,
            route.endpoint.base_url,
            payload,
            stream=bool(payload.get("stream")),
            canonical=False,
        )
    except _RequestRejected as exc:
        return await _reject(ctx, exc)


@app.post("/v1/responses")
async def direct_responses(req: Request) -> Response:
    return await _direct(req, endpoint="/v1/responses", family="openai")


@app.post("/v1/messages")
async def direct_messages(req: Request) -> Response:
    return await _direct(req, endpoint="/v1/messages", family="anthropic")


@app.post("/v1/messages/count_tokens")
async def count_tokens(req: Request) -> Response:
    ctx = _RequestContext(endpoint=COUNT_TOKENS_SUFFIX)
    try:
        body = await _read_body(req)
        route = _resolve_route(ctx, body, "anthropic")
        url = route.endpoint.base_url.replace("/v1/messages", COUNT_TOKENS_SUFFIX)
        return await _forward(
            ctx,
            req,
            route,
            url,
            {**body, "model": route.model.id},
            stream=False,
            canonical=False,
        )
    except _RequestRejected as exc:
        return await _reject(ctx, exc)
