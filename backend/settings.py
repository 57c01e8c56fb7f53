"""Engine configuration.

Every tunable lives on ``EngineSettings`` and is threaded explicitly into the
components that need it. Values come from, in order of precedence:

1. Keyword arguments
2. ``RECOLLECT_<FIELD>`` environment variables
3. Built-in defaults
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple, Type

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

ENV_PREFIX = "RECOLLECT_"

DEFAULT_EMBED_MODEL = "BAAI/bge-small-en-v1.5"


class _MappingEnvSource(PydanticBaseSettingsSource):
    """Settings source that reads ``RECOLLECT_*`` keys from a given mapping."""

    def __init__(self, settings_cls: Type[BaseSettings], environ: Mapping[str, str]) -> None:
        super().__init__(settings_cls)
        self._environ = {key.upper(): value for key, value in environ.items()}

    def get_field_value(self, field: Any, field_name: str) -> Tuple[Any, str, bool]:
        raw = self._environ.get(ENV_PREFIX + field_name.upper())
        if raw is None or not raw.strip():
            return None, field_name, False
        return raw.strip(), field_name, False

    def __call__(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for field_name, field in self.settings_cls.model_fields.items():
            value, key, _ = self.get_field_value(field, field_name)
            if value is not None:
                values[key] = value
        return values


class EngineSettings(BaseSettings):
    """Engine tunables. Env vars: RECOLLECT_SIMILARITY_THRESHOLD, RECOLLECT_EMBED_MODEL, etc."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        env_ignore_empty=True,
        frozen=True,
        extra="forbid",
    )

    # Embedding
    embed_model: str = Field(default=DEFAULT_EMBED_MODEL, min_length=1)
    embedding_dim: Optional[int] = Field(default=None, gt=0)
    embed_provider: str = Field(default="sentence-transformers", pattern=r"^(sentence-transformers|hash)$")
    allow_model_download: bool = True
    embed_batch_size: int = Field(default=32, gt=0)
    embed_cache_size: int = Field(default=10_000, ge=0)
    embed_max_attempts: int = Field(default=3, ge=1, le=10)
    embed_backoff_base: float = Field(default=0.5, ge=0.0)
    embed_backoff_max: float = Field(default=8.0, ge=0.0)
    embed_timeout_seconds: float = Field(default=30.0, gt=0.0)

    # Normalization
    max_chunk_tokens: int = Field(default=500, gt=0)

    # Ranking
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_results: int = Field(default=5, gt=0)
    recency_weight: float = Field(default=0.2, ge=0.0, le=1.0)
    recency_half_life_days: float = Field(default=30.0, gt=0.0)

    # Context assembly
    context_budget_chars: int = Field(default=4000, gt=0)

    # Generation
    generation_base_url: str = "http://127.0.0.1:11434"
    generation_model: str = "llama3.2"
    generation_timeout_seconds: float = Field(default=60.0, gt=0.0)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARN", "WARNING", "ERROR"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    @field_validator("embed_backoff_max")
    @classmethod
    def _check_backoff_cap(cls, value: float, info) -> float:
        base = info.data.get("embed_backoff_base")
        if base is not None and value < base:
            raise ValueError("embed_backoff_max must be >= embed_backoff_base")
        return value

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any
    ) -> "EngineSettings":
        """Build settings from ``RECOLLECT_<FIELD>`` variables plus explicit overrides.

        ``environ`` defaults to the process environment.
        """
        if environ is None:
            return cls(**overrides)
        return _with_environ(cls, environ)(**overrides)

    @property
    def recency_half_life_seconds(self) -> float:
        return self.recency_half_life_days * 86400.0


def _with_environ(
    settings_cls: Type[EngineSettings], environ: Mapping[str, str]
) -> Type[EngineSettings]:
    """Create a settings class that reads env values from ``environ`` instead of the process."""

    class _EnvironSettings(settings_cls):  # type: ignore[misc, valid-type]
        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: Type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
            dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
            file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        ) -> Tuple[PydanticBaseSettingsSource, ...]:
            return (init_settings, _MappingEnvSource(settings_cls, environ))

    return _EnvironSettings
