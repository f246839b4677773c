import os
from dataclasses import dataclass, field
from typing import Dict, Literal

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised via tests
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, ValidationError

from .types import ReasoningPolicy

EndpointType = Literal["anthropic", "openai", "common"]

MODELS_FILE = "models.toml"
GATEWAY_FILE = "gateway.yaml"
DEFAULT_USER_AGENT = "llm-relay/1.0"


@dataclass
class EndpointDef:
    type: str
    base_url: str


@dataclass
class ModelDef:
    id: str
    type: str
    provider: str
    reasoning: ReasoningPolicy = ReasoningPolicy.AUTO
    name: str | None = None


@dataclass
class GatewaySettings:
    system_prompt: str = ""
    user_agent: str = DEFAULT_USER_AGENT
    client_name: str = "cli"
    upstream_timeout: float = 600.0
    refresh_url: str | None = None
    refresh_client_id: str | None = None


@dataclass
class LoadedConfig:
    endpoints: Dict[str, EndpointDef]
    models: Dict[str, ModelDef]
    redirects: Dict[str, str]
    settings: GatewaySettings
    watch_paths: tuple[str, ...] = field(default_factory=tuple)


class _EndpointModel(BaseModel):
    base_url: str

    model_config = ConfigDict(extra="forbid")


class _ModelEntry(BaseModel):
    type: EndpointType
    provider: str | None = None
    name: str | None = None
    reasoning: str = "auto"

    model_config = ConfigDict(extra="forbid")


class _ModelsFileModel(BaseModel):
    endpoints: Dict[EndpointType, _EndpointModel] = Field(default_factory=dict)
    models: Dict[str, _ModelEntry] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class _GatewayModel(BaseModel):
    system_prompt: str = ""
    model_redirects: Dict[str, str] = Field(default_factory=dict)
    user_agent: str = DEFAULT_USER_AGENT
    client_name: str = "cli"
    upstream_timeout: PositiveFloat = 600.0
    refresh_url: str | None = None
    refresh_client_id: str | None = None

    model_config = ConfigDict(extra="forbid")


def _flatten_validation_error(exc: ValidationError) -> ValueError:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return ValueError("; ".join(problems))


def load_config(config_dir: str) -> LoadedConfig:
    models_path = os.path.join(config_dir, MODELS_FILE)
    with open(models_path, "rb") as f:
        models_data = tomllib.load(f)
    try:
        parsed_models = _ModelsFileModel.model_validate(models_data)
    except ValidationError as exc:
        raise _flatten_validation_error(exc) from exc

    gateway_path = os.path.join(config_dir, GATEWAY_FILE)
    watch_paths = [models_path]
    gateway_data: object = {}
    if os.path.exists(gateway_path):
        with open(gateway_path, "r", encoding="utf-8") as f:
            gateway_data = yaml.safe_load(f) or {}
        watch_paths.append(gateway_path)
    try:
        parsed_gateway = _GatewayModel.model_validate(gateway_data)
    except ValidationError as exc:
        raise _flatten_validation_error(exc) from exc

    endpoints = {
        name: EndpointDef(type=name, base_url=entry.base_url.strip())
        for name, entry in parsed_models.endpoints.items()
    }
    models = {
        model_id: ModelDef(
            id=model_id,
            type=entry.type,
            provider=entry.provider or entry.type,
            reasoning=ReasoningPolicy.parse(entry.reasoning),
            name=entry.name,
        )
        for model_id, entry in parsed_models.models.items()
    }
    for model_id, model in models.items():
        if model.type not in endpoints:
            raise ValueError(
                f"Model '{model_id}' references endpoint type '{model.type}' with no configured endpoint"
            )
    settings = GatewaySettings(
        system_prompt=parsed_gateway.system_prompt,
        user_agent=parsed_gateway.user_agent,
        client_name=parsed_gateway.client_name,
        upstream_timeout=float(parsed_gateway.upstream_timeout),
        refresh_url=parsed_gateway.refresh_url,
        refresh_client_id=parsed_gateway.refresh_client_id,
    )
    return LoadedConfig(
        endpoints=endpoints,
        models=models,
        redirects=dict(parsed_gateway.model_redirects),
        settings=settings,
        watch_paths=tuple(watch_paths),
    )


class ModelCatalog:
    """Read-only model, endpoint and policy lookups over a loaded config."""

    def __init__(self, cfg: LoadedConfig):
        self.cfg = cfg

    def resolve_model(self, raw_id: object) -> str | None:
        if not isinstance(raw_id, str):
            return None
        candidate = raw_id.strip()
        if not candidate:
            return None
        return self.cfg.redirects.get(candidate, candidate)

    def get_model(self, model_id: str) -> ModelDef | None:
        return self.cfg.models.get(model_id)

    def get_endpoint(self, endpoint_type: str) -> EndpointDef | None:
        return self.cfg.endpoints.get(endpoint_type)

    def get_reasoning_policy(self, model_id: str) -> ReasoningPolicy:
        model = self.cfg.models.get(model_id)
        if model is None:
            return ReasoningPolicy.OFF
        return model.reasoning

    def get_system_prompt(self) -> str:
        return self.cfg.settings.system_prompt

    def models(self) -> list[ModelDef]:
        return [self.cfg.models[key] for key in sorted(self.cfg.models)]
