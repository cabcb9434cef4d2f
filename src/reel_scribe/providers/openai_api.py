"""Client for the OpenAI chat completions endpoint used by the analysis stage."""

from __future__ import annotations

import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

import requests
from requests import Response, Session

from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

__all__ = [
    "OpenAIClient",
    "OpenAIError",
    "OpenAISettings",
    "build_openai_client",
]

SYSTEM_PROMPT = (
    "You are an expert entertainment analyst. Respond only with valid JSON matching the "
    "structure requested by the user."
)


class OpenAIError(RuntimeError):
    """Raised when the completion provider fails or returns an unusable payload."""


@dataclass(slots=True)
class OpenAISettings:
    """Static configuration for the completion client."""

    api_base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    model: str = "gpt-4o"
    max_tokens: int = 4000
    temperature: float = 0.3
    timeout_seconds: float = 300.0
    max_attempts: int = 3
    retry_base_delay_seconds: float = 10.0

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> OpenAISettings:
        providers = config.get("providers")
        if not isinstance(providers, Mapping):
            raise TypeError("Configuration missing 'providers' section.")
        raw = providers.get("openai")
        if not isinstance(raw, Mapping):
            raise TypeError("Configuration missing 'providers.openai' section.")

        return cls(
            api_base_url=str(raw.get("api_base_url", "https://api.openai.com/v1")).rstrip("/"),
            api_key_env=str(raw.get("api_key_env", "OPENAI_API_KEY")),
            model=str(raw.get("model", "gpt-4o")),
            max_tokens=int(raw.get("max_tokens", 4000)),
            temperature=float(raw.get("temperature", 0.3)),
            timeout_seconds=float(raw.get("timeout_seconds", 300.0)),
            max_attempts=int(raw.get("max_attempts", 3)),
            retry_base_delay_seconds=float(raw.get("retry_base_delay_seconds", 10.0)),
        )


class OpenAIClient:
    """Single-shot chat completion with bounded retries."""

    RETRY_STATUS_CODES: ClassVar[set[int]] = {429, 500, 502, 503, 504}

    def __init__(
        self,
        settings: OpenAISettings,
        *,
        api_key: str | None = None,
        session: Session | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self._api_key = api_key or os.environ.get(settings.api_key_env) or None
        self._session = session or requests.Session()
        self._sleep = sleep or time.sleep

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def complete(self, prompt: str, *, system_prompt: str = SYSTEM_PROMPT) -> str:
        """Send ``prompt`` and return the assistant message text."""
        payload = {
            "model": self.settings.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": self.settings.max_tokens,
            "temperature": self.settings.temperature,
        }
        response = self._post_with_retries(payload)
        return self._extract_content(response)

    # ------------------------------------------------------------------
    # HTTP utilities
    # ------------------------------------------------------------------
    def _post_with_retries(self, payload: Mapping[str, Any]) -> Response:
        headers = self._build_headers()
        url = f"{self.settings.api_base_url}/chat/completions"
        attempts = 0
        backoff = self.settings.retry_base_delay_seconds
        last_error: Exception | None = None

        while attempts < max(1, self.settings.max_attempts):
            try:
                response = self._session.post(
                    url,
                    json=payload,
                    headers=headers,
                    timeout=self.settings.timeout_seconds,
                )
            except requests.RequestException as exc:
                last_error = exc
                LOGGER.warning("OpenAI request failed (%s); retrying.", exc)
            else:
                if response.status_code < 400:
                    return response
                if response.status_code not in self.RETRY_STATUS_CODES:
                    raise OpenAIError(
                        f"OpenAI responded with status {response.status_code}: {response.text}"
                    )
                last_error = OpenAIError(
                    f"Received retryable status {response.status_code}: {response.text}"
                )
                LOGGER.warning(
                    "OpenAI returned %s; backing off for %.1fs.", response.status_code, backoff
                )
            attempts += 1
            if attempts >= self.settings.max_attempts:
                break
            self._sleep(backoff)
            backoff = min(backoff * 2, 120.0)

        raise OpenAIError("Exceeded maximum retries for OpenAI") from last_error

    def _build_headers(self) -> dict[str, str]:
        if not self._api_key:
            raise OpenAIError(
                "OpenAI API key not available. Set the environment variable "
                f"{self.settings.api_key_env}."
            )
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _extract_content(response: Response) -> str:
        try:
            data = response.json()
        except ValueError as exc:
            raise OpenAIError("Unable to decode OpenAI response as JSON.") from exc
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise OpenAIError("OpenAI response did not contain a message.") from exc
        if not isinstance(content, str) or not content.strip():
            raise OpenAIError("OpenAI returned an empty message.")
        return content


def build_openai_client(
    config: Mapping[str, object],
    *,
    session: Session | None = None,
    api_key: str | None = None,
) -> OpenAIClient:
    """Factory helper reading ``providers.openai``."""
    return OpenAIClient(OpenAISettings.from_config(config), api_key=api_key, session=session)
