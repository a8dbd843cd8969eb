"""OpenAI-compatible completion client used by every model-backed component."""

from __future__ import annotations

import logging
import os
from copy import deepcopy
from typing import Any, Mapping, MutableMapping, Sequence

import openai
from openai import OpenAI

from .errors import ModelMalformedOutput, ModelRateLimited, ModelTimeout, ModelUnavailable
from .schemas import PromptSegment

logger = logging.getLogger(__name__)


DEFAULT_EXTRA_BODY: Mapping[str, Any] = {
    "extra_body": {"chat_template_kwargs": {"enable_thinking": False}}
}

# option keys understood by ``complete``; anything else is passed through as extra body
_SAMPLING_KEYS = ("temperature", "max_tokens", "top_p")


class LLMClient:
    """Thin wrapper over :class:`openai.OpenAI` with provider defaults.

    ``complete`` is the text-completion contract the core depends on: ordered
    prompt segments in, text out, and a classified :class:`RoundtableError`
    on failure.  ``purpose`` in ``options`` only tags the call for logging.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        provider: str = "vllm",
        api_key: str | None = None,
        api_key_env: str | None = None,
        timeout: float = 60.0,
        max_retries: int = 2,
        default_extra_body: Mapping[str, Any] | None = None,
    ) -> None:
        provider_key = provider.lower()
        if provider_key not in {"vllm", "deepseek", "openai"}:
            raise ValueError(f"Unsupported provider '{provider}'")

        if api_key is None:
            env_name = api_key_env or (
                "DEEPSEEK_API_KEY" if provider_key == "deepseek" else "OPENAI_API_KEY"
            )
            api_key = os.environ.get(env_name) or ""

        extra = default_extra_body
        if extra is None and provider_key == "vllm":
            extra = DEFAULT_EXTRA_BODY

        self._client = OpenAI(
            base_url=base_url,
            api_key=api_key or "EMPTY",
            timeout=timeout,
            max_retries=max_retries,
        )
        self.model = model
        self.provider = provider_key
        self.default_extra_body = dict(extra or {})

    # ------------------------------------------------------------------
    # Completions
    # ------------------------------------------------------------------
    def complete(
        self,
        segments: Sequence[PromptSegment],
        options: Mapping[str, Any] | None = None,
    ) -> str:
        opts = dict(options or {})
        purpose = opts.pop("purpose", "completion")
        sampling = {key: opts.pop(key) for key in _SAMPLING_KEYS if key in opts}
        extra_body = opts.pop("extra_body", None)

        messages = [segment.to_message() for segment in segments]
        text = self.chat(messages, extra_body=extra_body, purpose=purpose, **sampling)
        if not text.strip():
            raise ModelMalformedOutput(f"Empty completion for {purpose}", raw=text)
        return text

    def chat(
        self,
        messages: Sequence[Mapping[str, object]],
        *,
        extra_body: Mapping[str, Any] | None = None,
        purpose: str = "chat",
        **sampling: Any,
    ) -> str:
        payload: MutableMapping[str, Any] = {"model": self.model, "messages": list(messages)}
        payload.update(sampling)
        merged = self._merge_extra(extra_body)
        if merged:
            payload.update(merged)

        logger.debug("Dispatching %s request: %s", purpose, payload)
        try:
            response = self._client.chat.completions.create(**payload)
        except openai.APITimeoutError as exc:
            raise ModelTimeout(f"{purpose} call timed out") from exc
        except openai.RateLimitError as exc:
            raise ModelRateLimited(f"{purpose} call was rate limited") from exc
        except (openai.APIConnectionError, openai.APIStatusError) as exc:
            raise ModelUnavailable(f"{purpose} call failed: {exc}") from exc
        logger.debug("%s raw response: %s", purpose, response)

        if not response.choices:
            raise ModelMalformedOutput(f"No choices returned for {purpose}")
        choice = response.choices[0].message
        return getattr(choice, "content", "") or ""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _merge_extra(
        self, extra_body: Mapping[str, Any] | None
    ) -> MutableMapping[str, Any] | None:
        if not self.default_extra_body and not extra_body:
            return None
        merged: MutableMapping[str, Any] = deepcopy(self.default_extra_body)
        if extra_body:
            for key, value in extra_body.items():
                if (
                    key in merged
                    and isinstance(merged[key], MutableMapping)
                    and isinstance(value, Mapping)
                ):
                    merged[key].update(value)  # type: ignore[arg-type]
                else:
                    merged[key] = deepcopy(value) if isinstance(value, Mapping) else value
        return merged


__all__ = ["LLMClient"]
