"""
Readiness and request checks run before any provider call or database write.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from taleforge.common.config import Settings
from taleforge.common.errors import ConfigurationError, RequestValidationError
from taleforge.story_generation.providers import ProviderStatus

logger = logging.getLogger(__name__)

NO_PROVIDER_ERROR = "No valid AI provider API keys found (OpenAI or OVH)"
MISSING_AUTH_ERROR = "Missing Authorization header"
BODY_NOT_OBJECT_ERROR = "Request body must be a JSON object"
STORY_ID_ERROR = "Missing or invalid storyId in request body"
CHOICE_INDEX_ERROR = "Invalid choiceIndex in request body (must be a non-negative integer)"
TEMPLATE_CONTEXT_ERROR = "Invalid templateContext in request body (must be an object)"
IMAGE_FIELDS_ERROR = "Missing segmentId or imagePrompt in request body"


@dataclass(frozen=True)
class InboundRequest:
    """
    Transport-neutral view of an HTTP request.

    ``body`` is the raw payload (``bytes``/``str``) or an already decoded mapping.
    """

    method: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | str | Mapping[str, Any] | None = None

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass(frozen=True)
class EnvironmentStatus:
    is_valid: bool
    has_persistence: bool
    has_primary: bool
    has_fallback: bool
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class RequestValidation:
    is_valid: bool
    story_id: str | None = None
    choice_index: int | None = None
    auth_header: str | None = None
    template_context: Mapping[str, Any] | None = None
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class ValidationReport:
    environment: EnvironmentStatus
    request: RequestValidation
    providers: ProviderStatus

    @property
    def is_valid(self) -> bool:
        return self.environment.is_valid and self.request.is_valid and self.providers.has_any

    @property
    def errors(self) -> tuple[str, ...]:
        return self.request.errors + self.environment.errors

    @property
    def status_code(self) -> int:
        # Malformed requests are reported before server-side readiness problems.
        if not self.request.is_valid:
            return 400
        if not self.environment.is_valid or not self.providers.has_any:
            return 500
        return 200

    def raise_for_status(self) -> None:
        if not self.request.is_valid:
            raise RequestValidationError(self.request.errors)
        if not self.environment.is_valid or not self.providers.has_any:
            raise ConfigurationError(
                "; ".join(self.environment.errors) or NO_PROVIDER_ERROR,
                details=list(self.environment.errors),
            )


def decode_json_body(body: bytes | str | Mapping[str, Any] | None) -> Any:
    """Decode a raw request body, raising ``ValueError`` with a client-facing message."""
    if isinstance(body, Mapping):
        return body
    raw = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    try:
        return json.loads(raw or "")
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in request body: {exc.msg}") from exc


def _is_non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class ValidationGate:
    """
    Fails closed: missing secrets are treated as invalid, never defaulted.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        require_persistence: bool = True,
    ) -> None:
        self._settings = settings or Settings.from_env()
        # Local stores (in-memory, YAML) need no database credentials.
        self._require_persistence = require_persistence

    @property
    def settings(self) -> Settings:
        return self._settings

    def validate_environment(self) -> EnvironmentStatus:
        settings = self._settings
        errors: list[str] = []
        if self._require_persistence and not settings.persistence_url:
            errors.append("Missing SUPABASE_URL environment variable")
        if self._require_persistence and not settings.persistence_key:
            errors.append("Missing SUPABASE_SERVICE_ROLE_KEY environment variable")

        has_primary = settings.primary.is_usable()
        has_fallback = settings.fallback.is_usable()
        if not has_primary and not has_fallback:
            errors.append(NO_PROVIDER_ERROR)

        status = EnvironmentStatus(
            is_valid=not errors,
            has_persistence=bool(settings.persistence_url and settings.persistence_key),
            has_primary=has_primary,
            has_fallback=has_fallback,
            errors=tuple(errors),
        )
        logger.info(
            "Environment validation: valid=%s persistence=%s primary=%s fallback=%s",
            status.is_valid,
            status.has_persistence,
            status.has_primary,
            status.has_fallback,
        )
        return status

    def validate_request(self, request: InboundRequest) -> RequestValidation:
        """
        Collect every violation in the request rather than stopping at the first.
        """
        errors: list[str] = []

        auth_header = request.header("Authorization")
        if not auth_header or not auth_header.strip():
            auth_header = None
            errors.append(MISSING_AUTH_ERROR)

        story_id: str | None = None
        choice_index: int | None = None
        template_context: Mapping[str, Any] | None = None

        payload: Any = None
        decoded = False
        try:
            payload = decode_json_body(request.body)
            decoded = True
        except ValueError as exc:
            errors.append(str(exc))

        if decoded and not isinstance(payload, Mapping):
            errors.append(BODY_NOT_OBJECT_ERROR)
        elif decoded:
            raw_story_id = payload.get("storyId")
            if isinstance(raw_story_id, str) and raw_story_id.strip():
                story_id = raw_story_id.strip()
            else:
                errors.append(STORY_ID_ERROR)

            raw_choice = payload.get("choiceIndex")
            if raw_choice is not None:
                if _is_non_negative_int(raw_choice):
                    choice_index = raw_choice
                else:
                    errors.append(CHOICE_INDEX_ERROR)

            raw_context = payload.get("templateContext")
            if raw_context is not None:
                if isinstance(raw_context, Mapping):
                    template_context = raw_context
                else:
                    errors.append(TEMPLATE_CONTEXT_ERROR)

        result = RequestValidation(
            is_valid=not errors,
            story_id=story_id,
            choice_index=choice_index,
            auth_header=auth_header,
            template_context=template_context,
            errors=tuple(errors),
        )
        if errors:
            logger.warning("Request validation failed: %s", "; ".join(errors))
        return result

    def validate_image_request(self, request: InboundRequest) -> tuple[str, str, str]:
        """
        Return ``(segment_id, image_prompt, auth_header)`` or raise ``RequestValidationError``.
        """
        errors: list[str] = []
        auth_header = (request.header("Authorization") or "").strip()
        if not auth_header:
            errors.append(MISSING_AUTH_ERROR)

        segment_id = image_prompt = ""
        try:
            payload = decode_json_body(request.body)
        except ValueError as exc:
            errors.append(str(exc))
        else:
            if not isinstance(payload, Mapping):
                errors.append(BODY_NOT_OBJECT_ERROR)
            else:
                segment_id = str(payload.get("segmentId") or "").strip()
                image_prompt = str(payload.get("imagePrompt") or "").strip()
                if not segment_id or not image_prompt:
                    errors.append(IMAGE_FIELDS_ERROR)

        if errors:
            raise RequestValidationError(errors)
        return segment_id, image_prompt, auth_header

    def validate_api_keys(self) -> ProviderStatus:
        has_primary = self._settings.primary.is_usable()
        has_fallback = self._settings.fallback.is_usable()
        if has_primary:
            primary_provider = self._settings.primary.name
        elif has_fallback:
            primary_provider = self._settings.fallback.name
        else:
            primary_provider = "None"
        return ProviderStatus(has_primary, has_fallback, primary_provider)

    def validate_all_requirements(self, request: InboundRequest) -> ValidationReport:
        return ValidationReport(
            environment=self.validate_environment(),
            request=self.validate_request(request),
            providers=self.validate_api_keys(),
        )

    def validation_summary(self) -> dict[str, Any]:
        environment = self.validate_environment()
        providers = self.validate_api_keys()
        if environment.is_valid and providers.has_primary and providers.has_fallback:
            status = "ready"
        elif environment.is_valid:
            status = "degraded"
        else:
            status = "offline"

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "status": status,
            "environment": {
                "is_valid": environment.is_valid,
                "has_persistence": environment.has_persistence,
                "errors": list(environment.errors),
            },
            "providers": {
                "has_primary": providers.has_primary,
                "has_fallback": providers.has_fallback,
                "primary_provider": providers.primary_provider,
            },
        }
