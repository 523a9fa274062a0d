from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    model_validator,
)
from pydantic.types import NonNegativeFloat, NonNegativeInt, PositiveInt, StrictInt
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .config import ConfigError, read_config, resolve_config_path
from .poller import RetryPolicy
from .telegram.api_models import UpdateKind

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: PositiveInt | None = None
    initial_delay_s: NonNegativeFloat = 0.0
    max_delay_s: NonNegativeFloat = 30.0
    multiplier: Annotated[float, Field(ge=1.0)] = 2.0
    respect_retry_after: bool = False

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay_s=self.initial_delay_s,
            max_delay_s=self.max_delay_s,
            multiplier=self.multiplier,
            respect_retry_after=self.respect_retry_after,
        )


class PollingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    timeout_s: NonNegativeInt = 50
    allowed_updates: list[UpdateKind] | None = None
    start_after: NonNegativeInt = 0
    buffer_size: PositiveInt = 100
    retry: RetrySettings = Field(default_factory=RetrySettings)


class MiddlewareSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    chat_ids: list[StrictInt] | None = None
    kinds: list[UpdateKind] | None = None
    capacity: StrictInt = 1
    join_timeout_s: NonNegativeFloat = 0.0

    @model_validator(mode="after")
    def _require_a_filter(self) -> MiddlewareSettings:
        if self.chat_ids is None and self.kinds is None:
            raise ValueError("middleware needs at least one of chat_ids or kinds")
        return self


class TelepollSettings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix="TELEPOLL__",
        env_nested_delimiter="__",
        str_strip_whitespace=True,
    )

    bot_token: NonEmptyStr
    polling: PollingSettings = Field(default_factory=PollingSettings)
    middleware: list[MiddlewareSettings] = Field(default_factory=list)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_settings(path: str | Path | None = None) -> tuple[TelepollSettings, Path]:
    cfg_path = resolve_config_path(path)
    read_config(cfg_path)
    return _load_settings_from_path(cfg_path), cfg_path


def validate_settings_data(
    data: dict[str, Any], *, config_path: Path
) -> TelepollSettings:
    try:
        return TelepollSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {config_path}: {exc}") from exc


def _load_settings_from_path(cfg_path: Path) -> TelepollSettings:
    cfg = dict(TelepollSettings.model_config)
    cfg["toml_file"] = cfg_path
    Bound = type(
        "TelepollSettingsBound",
        (TelepollSettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    try:
        return Bound()
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
