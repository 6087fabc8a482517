"""
LiteLLM chat completion calls against OpenAI-compatible providers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from litellm import completion

from .errors import ProviderResponseError

logger = logging.getLogger(__name__)

ChatMessage = Mapping[str, Any]


@dataclass
class ChatResult:
    """
    Message content of the first choice plus the raw LiteLLM response.
    """

    text: str
    raw: Any
    finish_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


CompletionCallable = Callable[..., ChatResult]


def _field(container: Any, name: str) -> Any:
    if isinstance(container, Mapping):
        return container.get(name)
    return getattr(container, name, None)


def _usage_counts(response: Any) -> dict[str, int]:
    usage = _field(response, "usage")
    if usage is None:
        return {}
    counts: dict[str, int] = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = _field(usage, key)
        if isinstance(value, int):
            counts[key] = value
    return counts


def call_chat_completion(
    *,
    model: str,
    messages: Sequence[ChatMessage],
    temperature: float | None = None,
    max_tokens: int | None = None,
    api_key: str | None = None,
    api_base: str | None = None,
    timeout: float | None = None,
    **extra_kwargs: Any,
) -> ChatResult:
    """
    Send one chat completion request through LiteLLM.

    ``api_base`` is the provider root; LiteLLM posts to ``{api_base}/chat/completions``.
    Optional arguments left as ``None`` are not sent. Each call is a single HTTP
    attempt: LiteLLM and OpenAI client retries are switched off. Transport and
    HTTP errors propagate from LiteLLM unchanged.
    """
    optional = {
        "temperature": temperature,
        "max_tokens": max_tokens,
        "api_key": api_key,
        "api_base": api_base,
        "timeout": timeout,
    }
    request: dict[str, Any] = {
        "model": model,
        "messages": list(messages),
        "num_retries": 0,
        "max_retries": 0,
    }
    request.update({key: value for key, value in optional.items() if value is not None})
    request.update(extra_kwargs)

    logger.debug("Requesting %s at %s", model, api_base or "default endpoint")
    response = completion(**request)

    choices = _field(response, "choices") or []
    if not choices:
        raise ProviderResponseError(f"{model} returned no choices.")
    first = choices[0]
    message = _field(first, "message")
    content = _field(message, "content") if message is not None else None

    result = ChatResult(
        text=str(content or "").strip(),
        raw=response,
        finish_reason=_field(first, "finish_reason"),
        usage=_usage_counts(response),
    )
    if result.truncated:
        logger.warning("%s stopped at the token limit; the JSON may be incomplete.", model)
    return result
