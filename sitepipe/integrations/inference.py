"""OpenAI-compatible chat-completions client for local inference servers."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import requests

from sitepipe.config import DEFAULT_INFERENCE_URL

logger = logging.getLogger(__name__)


class InferenceError(Exception):
    """Inference request failed; callers decide whether to skip or abort."""


class InferenceBackend(Protocol):
    def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> str: ...


class InferenceClient:
    """Client for an OpenAI-compatible ``/chat/completions`` endpoint.

    Defaults target a local LM Studio server. Unlike hosted APIs there is no
    retry loop: every failure surfaces as :class:`InferenceError` and the
    caller decides whether the unit of work can continue without a result.
    """

    DEFAULT_TIMEOUT = 120

    def __init__(
        self,
        *,
        api_url: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        self.api_url = (api_url or DEFAULT_INFERENCE_URL).rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> str:
        """Run a single-turn completion and return the assistant text.

        Raises:
            InferenceError: On network failure, non-2xx status, or a response
                without a usable message.
        """
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload: dict[str, Any] = {
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if self.model:
            payload["model"] = self.model

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        url = f"{self.api_url}/chat/completions"
        try:
            response = requests.post(url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise InferenceError(f"Inference request to {url} failed: {exc}") from exc

        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise InferenceError(f"Invalid JSON response: {exc}") from exc

        return self._parse_content(data)

    @staticmethod
    def _parse_content(data: dict[str, Any]) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise InferenceError(f"Response has no completion message: {data!r}") from exc
        if content is None:
            raise InferenceError("Completion message content is empty")
        logger.debug("Inference returned %d chars", len(content))
        return content
