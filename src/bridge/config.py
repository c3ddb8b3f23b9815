import os
from dataclasses import dataclass, field
from typing import Dict

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised on Python < 3.11
    import tomli as tomllib

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeFloat,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    model_validator,
)

MODELS_FILE = "models.toml"
SETTINGS_FILE = "proxy.yaml"


@dataclass(frozen=True)
class ModelAlias:
    name: str
    replicate: str
    owned_by: str
    listed: bool = True


@dataclass(frozen=True)
class TokenLimits:
    minimum: int = 1024
    maximum: int = 64000
    default: int = 16384


@dataclass(frozen=True)
class StreamSettings:
    chunk_delay_s: float = 0.001
    fallback_chunk_size: int = 15
    fallback_chunk_delay_s: float = 0.03


@dataclass(frozen=True)
class BackendSettings:
    base_url: str = "https://api.replicate.com/v1"
    timeout_s: float = 120.0
    poll_interval_s: float = 1.0


@dataclass(frozen=True)
class ProxySettings:
    default_model: str
    max_tokens: TokenLimits = field(default_factory=TokenLimits)
    request_timeout_s: float = 600.0
    stream: StreamSettings = field(default_factory=StreamSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)


@dataclass
class LoadedConfig:
    models: Dict[str, ModelAlias]
    settings: ProxySettings

    def resolve(self, name: str) -> ModelAlias | None:
        return self.models.get(name)

    def listed_models(self) -> list[ModelAlias]:
        return [alias for alias in self.models.values() if alias.listed]


class _ModelModel(BaseModel):
    replicate: str
    owned_by: str = "replicate"
    listed: bool = True

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_identifier(self) -> "_ModelModel":
        owner, _, remainder = self.replicate.partition("/")
        name = remainder.partition(":")[0]
        if not owner or not name:
            raise ValueError(
                f"replicate model id '{self.replicate}' must look like 'owner/name' or 'owner/name:version'"
            )
        return self


class _TokenLimitsModel(BaseModel):
    minimum: PositiveInt = Field(default=1024)
    maximum: PositiveInt = Field(default=64000)
    default: PositiveInt = Field(default=16384)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_bounds(self) -> "_TokenLimitsModel":
        if self.minimum > self.maximum:
            raise ValueError("minimum must not exceed maximum")
        if not self.minimum <= self.default <= self.maximum:
            raise ValueError("default must lie between minimum and maximum")
        return self


class _StreamModel(BaseModel):
    chunk_delay_s: NonNegativeFloat = Field(default=0.001)
    fallback_chunk_size: PositiveInt = Field(default=15)
    fallback_chunk_delay_s: NonNegativeFloat = Field(default=0.03)

    model_config = ConfigDict(extra="forbid")


class _BackendModel(BaseModel):
    base_url: str = Field(default="https://api.replicate.com/v1")
    timeout_s: PositiveFloat = Field(default=120.0)
    poll_interval_s: PositiveFloat = Field(default=1.0)

    model_config = ConfigDict(extra="forbid")


class _SettingsModel(BaseModel):
    default_model: str
    max_tokens: _TokenLimitsModel = Field(default_factory=_TokenLimitsModel)
    request_timeout_s: PositiveFloat = Field(default=600.0)
    stream: _StreamModel = Field(default_factory=_StreamModel)
    backend: _BackendModel = Field(default_factory=_BackendModel)

    model_config = ConfigDict(extra="forbid")


def _flatten_validation_error(exc: ValidationError, *, prefix: str = "") -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        if prefix:
            location = f"{prefix} -> {location}"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def _load_models(path: str) -> Dict[str, ModelAlias]:
    with open(path, "rb") as f:
        raw = tomllib.load(f)
    models: Dict[str, ModelAlias] = {}
    for name, entry in raw.items():
        if not isinstance(entry, dict):
            raise ValueError(f"model '{name}' must be a table")
        try:
            parsed = _ModelModel.model_validate(entry)
        except ValidationError as exc:
            raise ValueError(_flatten_validation_error(exc, prefix=name)) from exc
        models[name] = ModelAlias(
            name=name,
            replicate=parsed.replicate,
            owned_by=parsed.owned_by,
            listed=parsed.listed,
        )
    if not models:
        raise ValueError(f"{path} defines no models")
    return models


def _load_settings(path: str) -> ProxySettings:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    try:
        parsed = _SettingsModel.model_validate(data)
    except ValidationError as exc:
        raise ValueError(_flatten_validation_error(exc)) from exc
    return ProxySettings(
        default_model=parsed.default_model,
        max_tokens=TokenLimits(
            minimum=int(parsed.max_tokens.minimum),
            maximum=int(parsed.max_tokens.maximum),
            default=int(parsed.max_tokens.default),
        ),
        request_timeout_s=float(parsed.request_timeout_s),
        stream=StreamSettings(
            chunk_delay_s=float(parsed.stream.chunk_delay_s),
            fallback_chunk_size=int(parsed.stream.fallback_chunk_size),
            fallback_chunk_delay_s=float(parsed.stream.fallback_chunk_delay_s),
        ),
        backend=BackendSettings(
            base_url=parsed.backend.base_url.rstrip("/"),
            timeout_s=float(parsed.backend.timeout_s),
            poll_interval_s=float(parsed.backend.poll_interval_s),
        ),
    )


def load_config(config_dir: str) -> LoadedConfig:
    models_path = os.path.join(config_dir, MODELS_FILE)
    settings_path = os.path.join(config_dir, SETTINGS_FILE)
    models = _load_models(models_path)
    settings = _load_settings(settings_path)
    if settings.default_model not in models:
        available = ", ".join(sorted(models)) or "<none>"
        raise ValueError(
            "default_model '{model}' is not defined in {file}. Available models: {available}".format(
                model=settings.default_model,
                file=MODELS_FILE,
                available=available,
            )
        )
    return LoadedConfig(models=models, settings=settings)
