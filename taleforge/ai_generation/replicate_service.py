"""
Integration with Replicate for segment illustration rendering.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable as IterableABC
from typing import Any, Callable, Iterable

import replicate

from .prompting import NEGATIVE_PROMPT, IllustrationPrompt

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "black-forest-labs/flux-schnell"

CHILD_FRIENDLY_PREFIX = "Children's book illustration"
CHILD_FRIENDLY_SUFFIX = "colorful, warm lighting, safe for kids, cartoon style, digital art, high quality"

_NEGATIVE_MARKER = ". NEGATIVE: "


def _build_flux_input(*, prompt: str, negative_prompt: str) -> dict[str, Any]:
    # Flux has no negative prompt input; fold the exclusions into the text.
    return {
        "prompt": f"{prompt}. Avoid: {negative_prompt}",
        "aspect_ratio": "1:1",
        "output_format": "png",
        "num_outputs": 1,
    }


def _build_sdxl_input(*, prompt: str, negative_prompt: str) -> dict[str, Any]:
    return {
        "prompt": prompt,
        "negative_prompt": negative_prompt,
        "width": 1024,
        "height": 1024,
        "num_outputs": 1,
        "guidance_scale": 7.5,
    }


_MODEL_INPUT_BUILDERS: dict[str, Callable[..., dict[str, Any]]] = {
    "black-forest-labs/flux-schnell": _build_flux_input,
    "black-forest-labs/flux-dev": _build_flux_input,
    "stability-ai/sdxl": _build_sdxl_input,
}


def split_image_prompt(image_prompt: str) -> IllustrationPrompt:
    """
    Split a stored single-string prompt back into positive and negative halves.
    """
    text = image_prompt.strip()
    if _NEGATIVE_MARKER in text:
        positive, negative = text.split(_NEGATIVE_MARKER, maxsplit=1)
        return IllustrationPrompt(positive=positive.strip(), negative=negative.strip())
    return IllustrationPrompt(positive=text)


def _build_replicate_input_payload(
    *,
    model_identifier: str,
    prompt: str,
    negative_prompt: str,
) -> dict[str, Any]:
    normalized_identifier = model_identifier.strip().lower()
    builder = _MODEL_INPUT_BUILDERS.get(normalized_identifier)
    if builder is None and ":" in normalized_identifier:
        base_identifier = normalized_identifier.split(":", maxsplit=1)[0]
        builder = _MODEL_INPUT_BUILDERS.get(base_identifier)
    if builder is None:
        supported_models = ", ".join(sorted(_MODEL_INPUT_BUILDERS))
        raise ValueError(
            "Model identifier "
            f"'{model_identifier}' is not configured with a default input payload. "
            f"Supported models: {supported_models}."
        )
    return builder(prompt=prompt, negative_prompt=negative_prompt)


class ReplicateImageGenerator:
    """
    Convenience wrapper around the Replicate client for segment illustrations.

    Parameters
    ----------
    api_token:
        Replicate API token. Falls back to ``REPLICATE_API_TOKEN`` environment variable.
    model_identifier:
        Model string in the ``owner/model`` or ``owner/model:version`` format. Falls back
        to ``REPLICATE_MODEL`` and then to ``black-forest-labs/flux-schnell``.
    client:
        Optional pre-configured :class:`replicate.Client`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        api_token: str | None = None,
        model_identifier: str | None = None,
        client: replicate.Client | None = None,
    ) -> None:
        self._api_token = api_token or os.getenv("REPLICATE_API_TOKEN")
        if not self._api_token and not client:
            raise ValueError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN or pass api_token."
            )

        self._model_identifier = (
            model_identifier or os.getenv("REPLICATE_MODEL") or DEFAULT_MODEL
        )
        self._client = client or replicate.Client(api_token=self._api_token)

    @property
    def model_identifier(self) -> str:
        """Return the model identifier currently used."""
        return self._model_identifier

    def generate_image(
        self,
        *,
        image_prompt: str | IllustrationPrompt,
        negative_prompt_override: str | None = None,
        **model_kwargs: Any,
    ) -> Iterable[Any]:
        """
        Render a segment illustration.

        Parameters
        ----------
        image_prompt:
            Either an :class:`IllustrationPrompt` or the stored single-string prompt
            (``"<positive>. NEGATIVE: <negative>"``).
        negative_prompt_override:
            Optional custom negative prompt to replace the default guardrails.
        **model_kwargs:
            Additional keyword arguments forwarded directly to the Replicate model invocation.

        Returns
        -------
        Iterable[Any]
            Raw output produced by Replicate. Most image models return an iterable of URLs.
        """
        prompt = (
            image_prompt
            if isinstance(image_prompt, IllustrationPrompt)
            else split_image_prompt(image_prompt)
        )
        if not prompt.positive:
            raise ValueError("image_prompt must be a non-empty string.")

        negative_prompt = (
            negative_prompt_override
            if negative_prompt_override is not None
            else prompt.negative or NEGATIVE_PROMPT
        )
        positive = f"{CHILD_FRIENDLY_PREFIX}, {prompt.positive}, {CHILD_FRIENDLY_SUFFIX}"

        replicate_input = _build_replicate_input_payload(
            model_identifier=self._model_identifier,
            prompt=positive,
            negative_prompt=negative_prompt,
        )
        # Allow the caller to tweak model-specific knobs (e.g., seed, num_inference_steps).
        replicate_input.update(model_kwargs)

        logger.info("Rendering illustration with %s", self._model_identifier)
        return self._client.run(self._model_identifier, input=replicate_input)


def normalize_image_outputs(raw: Any) -> list[str]:
    """
    Normalize the image outputs returned by Replicate into a list of URL strings.
    """

    if raw is None:
        return []

    if isinstance(raw, str):
        return [raw]

    if isinstance(raw, bytes):
        return [raw.decode("utf-8", errors="ignore")]

    # Newer clients return FileOutput objects that expose the hosted URL.
    url = getattr(raw, "url", None)
    if isinstance(url, str):
        return [url]

    if isinstance(raw, IterableABC):
        collected = list(raw)
        if not collected:
            return []

        if all(isinstance(item, str) and len(item) == 1 for item in collected):
            return ["".join(collected)]

        normalized: list[str] = []
        for item in collected:
            normalized.extend(normalize_image_outputs(item))
        return normalized

    return [str(raw)]
