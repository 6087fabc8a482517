"""
Typed errors raised across the TaleForge segment pipeline.

Each error carries the HTTP status and machine-readable code the entry point
responds with, so callers never need to guess a status from a message.
"""

from __future__ import annotations

from typing import Any, Sequence


class TaleForgeError(RuntimeError):
    """Base class for errors that map onto an HTTP failure response."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ConfigurationError(TaleForgeError):
    """Missing or placeholder credentials, or missing persistence settings."""

    status_code = 500
    code = "MISSING_API_KEYS"


class RequestValidationError(TaleForgeError):
    """The inbound request is malformed. Lists every violation found."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid request", details=self.errors)


class StoryNotFoundError(TaleForgeError):
    status_code = 404
    code = "NOT_FOUND"


class ProviderError(TaleForgeError):
    """A language-model provider call failed."""

    status_code = 500
    code = "AI_GENERATION_FAILED"

    def __init__(self, message: str, *, provider: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider


class ProviderResponseError(ProviderError):
    """The provider answered, but not with the required JSON shape."""


class PromptBuildError(TaleForgeError):
    code = "PROMPT_BUILD_FAILED"


class PersistenceError(TaleForgeError):
    code = "DATABASE_ERROR"


class SegmentNotFoundError(StoryNotFoundError):
    """The segment an illustration was requested for does not exist."""
