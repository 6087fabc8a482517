"""
Configuration resolution for providers, token budgets, and illustration styles.

Environment variables are read through pydantic-settings; static tables live here.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderKind = Literal["primary", "fallback"]

PLACEHOLDER_MARKER = "placeholder"

OPENAI_BASE_URL = "https://api.openai.com/v1"
OVH_BASE_URL = "https://oai.endpoints.kepler.ai.cloud.ovh.net/v1"

DEFAULT_PRIMARY_MODEL = "gpt-4o"
DEFAULT_FALLBACK_MODEL = "Meta-Llama-3_3-70B-Instruct"
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TARGET_AGE = "7-9"

# Tokens reserved for the JSON wrapper around the prose.
JSON_STRUCTURE_OVERHEAD = 200

_BASE_TOKEN_BUDGETS: dict[str, int] = {
    "4-6": 300,
    "7-9": 400,
}
_DEFAULT_BASE_TOKEN_BUDGET = 500

DEFAULT_ART_STYLE = "children's book illustration, watercolor style, warm inviting colors"

_ART_STYLES: dict[str, dict[str, str]] = {
    "fantasy": {
        "4-6": "watercolor painting, soft pastel colors, whimsical style",
        "7-9": "digital illustration, vibrant colors, detailed fantasy art",
        "10-12": "digital fantasy art, rich colors, epic illustration style",
    },
    "adventure": {
        "4-6": "cartoon illustration, bright cheerful colors, simple shapes",
        "7-9": "adventure book illustration, dynamic composition, bold colors",
        "10-12": "adventure comic style, detailed artwork, dramatic lighting",
    },
    "science fiction": {
        "4-6": "cute sci-fi cartoon, pastel space colors, friendly robots",
        "7-9": "sci-fi illustration, glowing effects, futuristic style",
        "10-12": "detailed sci-fi art, cinematic lighting, space opera style",
    },
    "mystery": {
        "4-6": "gentle mystery illustration, soft shadows, cozy atmosphere",
        "7-9": "mystery book illustration, dramatic shadows, intriguing composition",
        "10-12": "detective story art, noir influences, atmospheric lighting",
    },
    "bedtime": {
        "4-6": "soft watercolor, moonlit pastel palette, cozy rounded shapes",
        "7-9": "dreamy storybook painting, gentle night colors, soft glow",
        "10-12": "atmospheric night illustration, muted blues, calm composition",
    },
    "educational": {
        "4-6": "clean cartoon illustration, primary colors, friendly shapes",
        "7-9": "informative picture book art, bright colors, clear details",
        "10-12": "detailed explanatory illustration, natural colors, precise linework",
    },
    "humorous": {
        "4-6": "playful cartoon, exaggerated cute expressions, candy colors",
        "7-9": "comic book illustration, lively colors, expressive characters",
        "10-12": "witty comic art, dynamic poses, saturated colors",
    },
}

_GENRE_ALIASES = {
    "sci-fi": "science fiction",
    "scifi": "science fiction",
    "science-fiction": "science fiction",
    "funny": "humorous",
}


def base_token_budget(target_age: str | None) -> int:
    """Return the prose token budget for an age band."""
    return _BASE_TOKEN_BUDGETS.get((target_age or "").strip(), _DEFAULT_BASE_TOKEN_BUDGET)


def token_budget(target_age: str | None) -> int:
    """Return the total token budget: prose plus the JSON structure overhead."""
    return base_token_budget(target_age) + JSON_STRUCTURE_OVERHEAD


def normalize_genre(genre: str | None) -> str:
    key = (genre or "").strip().lower()
    return _GENRE_ALIASES.get(key, key)


def art_style_for(genre: str | None, target_age: str | None) -> str:
    """Look up the illustration style phrase for a genre and age band."""
    styles = _ART_STYLES.get(normalize_genre(genre))
    if not styles:
        return DEFAULT_ART_STYLE
    return styles.get((target_age or "").strip(), DEFAULT_ART_STYLE)


def is_valid_credential(credential: str | None) -> bool:
    return bool(
        credential
        and credential.strip()
        and PLACEHOLDER_MARKER not in credential.lower()
    )


@dataclass(frozen=True)
class ProviderConfig:
    """
    Settings for one OpenAI-compatible chat completion provider.

    Attributes
    ----------
    kind:
        ``"primary"`` providers are always attempted before ``"fallback"`` ones.
    name:
        Human-readable provider name reported in AI metrics.
    base_url:
        Root of the OpenAI-compatible API; calls go to ``{base_url}/chat/completions``.
    credential:
        Bearer token for the provider.
    structured_output:
        Request a JSON-schema constrained response when the provider supports it.
    """

    kind: ProviderKind
    name: str
    base_url: str
    credential: str | None
    model: str
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    structured_output: bool = False

    def is_usable(self) -> bool:
        return bool(
            self.base_url
            and self.model
            and is_valid_credential(self.credential)
            and self.max_tokens > 0
            and self.temperature > 0
        )

    def litellm_model(self) -> str:
        """Model identifier routed by LiteLLM to an OpenAI-compatible endpoint."""
        if self.model.startswith("openai/"):
            return self.model
        return f"openai/{self.model}"

    def describe(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "base_url": self.base_url,
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "structured_output": self.structured_output,
            "usable": self.is_usable(),
        }


def validate_provider_config(config: ProviderConfig) -> bool:
    return config.is_usable()


class _EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


class PrimaryProviderSettings(_EnvSettings):
    """OpenAI chat completion settings read from the environment."""

    base_url: str = Field(default=OPENAI_BASE_URL, validation_alias="OPENAI_BASE_URL")
    credential: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    model: str = Field(default=DEFAULT_PRIMARY_MODEL, validation_alias="TALEFORGE_PRIMARY_MODEL")
    max_tokens: int = Field(
        default=DEFAULT_MAX_TOKENS, gt=0, validation_alias="TALEFORGE_PRIMARY_MAX_TOKENS"
    )
    temperature: float = Field(
        default=DEFAULT_TEMPERATURE, gt=0, validation_alias="TALEFORGE_PRIMARY_TEMPERATURE"
    )
    structured_output: bool = Field(default=False, validation_alias="TALEFORGE_STRUCTURED_OUTPUT")

    def to_config(self) -> ProviderConfig:
        return ProviderConfig(kind="primary", name="OpenAI", **self.model_dump())


class FallbackProviderSettings(_EnvSettings):
    """OVH AI Endpoints settings read from the environment."""

    base_url: str = Field(default=OVH_BASE_URL, validation_alias="OVH_AI_BASE_URL")
    credential: str | None = Field(default=None, validation_alias="OVH_AI_ENDPOINTS_ACCESS_TOKEN")
    model: str = Field(default=DEFAULT_FALLBACK_MODEL, validation_alias="TALEFORGE_FALLBACK_MODEL")
    max_tokens: int = Field(
        default=DEFAULT_MAX_TOKENS, gt=0, validation_alias="TALEFORGE_FALLBACK_MAX_TOKENS"
    )
    temperature: float = Field(
        default=DEFAULT_TEMPERATURE, gt=0, validation_alias="TALEFORGE_FALLBACK_TEMPERATURE"
    )
    structured_output: bool = Field(
        default=False, validation_alias="TALEFORGE_FALLBACK_STRUCTURED_OUTPUT"
    )

    def to_config(self) -> ProviderConfig:
        return ProviderConfig(kind="fallback", name="OVH", **self.model_dump())


class EnvironmentSettings(_EnvSettings):
    """Persistence, image trigger and timeout settings read from the environment."""

    persistence_url: str | None = Field(default=None, validation_alias="SUPABASE_URL")
    persistence_key: str | None = Field(default=None, validation_alias="SUPABASE_SERVICE_ROLE_KEY")
    image_function_url: str | None = Field(
        default=None, validation_alias="TALEFORGE_IMAGE_FUNCTION_URL"
    )
    provider_timeout: float = Field(default=60.0, gt=0, validation_alias="TALEFORGE_PROVIDER_TIMEOUT")
    image_trigger_timeout: float = Field(
        default=30.0, gt=0, validation_alias="TALEFORGE_IMAGE_TRIGGER_TIMEOUT"
    )


def primary_provider_from_env() -> ProviderConfig:
    return PrimaryProviderSettings().to_config()


def fallback_provider_from_env() -> ProviderConfig:
    return FallbackProviderSettings().to_config()


class ProviderOverrides(BaseModel):
    """
    One provider block of a YAML/JSON config file. Unset keys keep the
    environment value.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    name: str | None = None
    base_url: str | None = None
    model: str | None = None
    credential: str | None = Field(
        default=None, validation_alias=AliasChoices("credential", "api_key")
    )
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, gt=0)
    structured_output: bool | None = None

    @field_validator("name", "base_url", "model", mode="before")
    @classmethod
    def blank_is_unset(cls, value: Any) -> Any:
        return value or None

    def apply(self, kind: ProviderKind, default: ProviderConfig) -> ProviderConfig:
        return replace(default, kind=kind, **self.model_dump(exclude_none=True))


class _PersistenceSection(BaseModel):
    url: str | None = None
    key: str | None = None


class _ProvidersSection(BaseModel):
    primary: ProviderOverrides = Field(default_factory=ProviderOverrides)
    fallback: ProviderOverrides = Field(default_factory=ProviderOverrides)

    @field_validator("primary", "fallback", mode="before")
    @classmethod
    def null_block_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class ConfigFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    persistence: _PersistenceSection = Field(default_factory=_PersistenceSection)
    providers: _ProvidersSection = Field(default_factory=_ProvidersSection)
    image_function_url: str | None = None
    provider_timeout: float | None = Field(default=None, gt=0)
    image_trigger_timeout: float | None = Field(default=None, gt=0)

    @field_validator("persistence", "providers", mode="before")
    @classmethod
    def null_section_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value


@dataclass(frozen=True)
class Settings:
    """
    Process-wide settings, resolved once and passed to each component.

    Secrets are never defaulted; missing values are reported by the validation gate.
    """

    persistence_url: str | None = None
    persistence_key: str | None = None
    primary: ProviderConfig = field(default_factory=primary_provider_from_env)
    fallback: ProviderConfig = field(default_factory=fallback_provider_from_env)
    image_function_url: str | None = None
    provider_timeout: float = 60.0
    image_trigger_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Read settings from the environment (and a ``.env`` file when present).

        Raises ``pydantic.ValidationError`` for non-numeric or non-positive limits.
        """
        env = EnvironmentSettings()
        return cls(
            persistence_url=env.persistence_url,
            persistence_key=env.persistence_key,
            primary=primary_provider_from_env(),
            fallback=fallback_provider_from_env(),
            image_function_url=env.image_function_url,
            provider_timeout=env.provider_timeout,
            image_trigger_timeout=env.image_trigger_timeout,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Settings":
        """
        Build settings from a parsed YAML/JSON config, layered over the environment.
        """
        base = cls.from_env()
        config = ConfigFile.model_validate(dict(data))
        return replace(
            base,
            persistence_url=config.persistence.url or base.persistence_url,
            persistence_key=config.persistence.key or base.persistence_key,
            primary=config.providers.primary.apply("primary", base.primary),
            fallback=config.providers.fallback.apply("fallback", base.fallback),
            image_function_url=config.image_function_url or base.image_function_url,
            provider_timeout=config.provider_timeout or base.provider_timeout,
            image_trigger_timeout=config.image_trigger_timeout or base.image_trigger_timeout,
        )

    @property
    def providers(self) -> tuple[ProviderConfig, ProviderConfig]:
        return (self.primary, self.fallback)
