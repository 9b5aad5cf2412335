#!/usr/bin/env python3
"""
Gemini Client for Kritiq Reviewer

Handles communication with the Google Gemini generateContent REST API.
Errors carry the HTTP status code so callers can tell a quota refusal
(429) from any other failure without parsing messages.
"""

import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash"

API_KEY_ENV_VARS = ('KRITIQ_API_KEY', 'GEMINI_API_KEY')


class GeminiError(Exception):
    """Base exception for Gemini-related errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GeminiConnectionError(GeminiError):
    """Raised when the API cannot be reached."""
    pass


class GeminiQuotaError(GeminiError):
    """Raised when the API refuses the call for rate or usage limits (HTTP 429)."""
    pass


class GeminiResponseError(GeminiError):
    """Raised when the API answers with something we cannot use."""
    pass


@dataclass
class GeminiConfig:
    """Configuration for Gemini client."""
    api_key: str
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 120.0
    temperature: float = 0.1
    max_output_tokens: Optional[int] = None


class GeminiClient:
    """
    Client for the Gemini generateContent endpoint.

    One pooled httpx client is kept for the lifetime of the object; call
    close() (or use it as a context manager) when done.
    """

    def __init__(self, config: GeminiConfig, http_client: Optional[httpx.Client] = None):
        self.config = config
        self.base_url = config.base_url.rstrip('/')
        self._client = http_client or httpx.Client(
            limits=httpx.Limits(max_connections=4, max_keepalive_connections=2),
            timeout=config.timeout,
            follow_redirects=True,
        )
        logger.debug(f"Gemini client initialized: {self.base_url} model={config.model}")

    def __enter__(self) -> "GeminiClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client and release connections."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def _endpoint(self) -> str:
        return f"{self.base_url}/models/{self.config.model}:generateContent"

    def _payload(self, prompt: str) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {"temperature": self.config.temperature}
        if self.config.max_output_tokens:
            generation_config["maxOutputTokens"] = self.config.max_output_tokens
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }

    def generate(self, prompt: str) -> str:
        """
        Generate a response from the model.

        Args:
            prompt: Complete prompt text

        Returns:
            Text of the first candidate

        Raises:
            GeminiQuotaError: On HTTP 429
            GeminiConnectionError: On transport failure or other HTTP errors
            GeminiResponseError: On a response without usable text
        """
        if self._client is None:
            raise GeminiConnectionError("Gemini client is closed")

        url = self._endpoint()
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.config.api_key,
        }

        start_time = time.time()
        try:
            response = self._client.post(url, headers=headers, json=self._payload(prompt))
        except httpx.TimeoutException as e:
            raise GeminiConnectionError(
                f"Request to {self.config.model} timed out after {self.config.timeout}s"
            ) from e
        except httpx.RequestError as e:
            raise GeminiConnectionError(f"Cannot connect to Gemini API: {e}") from e

        if response.status_code >= 400:
            detail = _error_detail(response)
            if response.status_code == 429:
                raise GeminiQuotaError(
                    f"HTTP 429 from Gemini API (quota exceeded): {detail}", status_code=429
                )
            raise GeminiConnectionError(
                f"HTTP {response.status_code} from Gemini API: {detail}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise GeminiResponseError(f"Invalid JSON response from {url}: {e}") from e

        text = _extract_text(data)
        elapsed = time.time() - start_time
        logger.debug(f"Gemini response received in {elapsed:.1f}s ({len(text)} chars)")
        return text


def _error_detail(response: httpx.Response) -> str:
    """Pull the provider's error message out of an error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:500]
    error = data.get('error') if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get('message'):
        return str(error['message'])
    return response.text[:500]


def _extract_text(data: Dict[str, Any]) -> str:
    """Join the text parts of the first candidate."""
    candidates = data.get('candidates') or []
    if not candidates:
        block_reason = (data.get('promptFeedback') or {}).get('blockReason')
        if block_reason:
            raise GeminiResponseError(f"Prompt blocked by Gemini: {block_reason}")
        raise GeminiResponseError("Gemini returned no candidates")

    parts = (candidates[0].get('content') or {}).get('parts') or []
    return ''.join(part.get('text', '') for part in parts)


def resolve_api_key(config_dict: Dict[str, Any]) -> str:
    """Environment variables take priority over gemini.api_key in the config file."""
    for var in API_KEY_ENV_VARS:
        value = os.environ.get(var)
        if value and value.strip():
            return value.strip()
    gemini_config = config_dict.get('gemini') or {}
    return str(gemini_config.get('api_key') or '').strip()


def create_config_from_dict(config_dict: Dict[str, Any]) -> GeminiConfig:
    """
    Create a GeminiConfig from a configuration dictionary.

    Args:
        config_dict: Dictionary with a 'gemini' section

    Returns:
        GeminiConfig (the api_key may be blank; callers check it)
    """
    gemini_config = config_dict.get('gemini') or {}
    env_model = os.environ.get('KRITIQ_MODEL')

    return GeminiConfig(
        api_key=resolve_api_key(config_dict),
        model=env_model or gemini_config.get('model', DEFAULT_MODEL),
        base_url=gemini_config.get('base_url', DEFAULT_BASE_URL),
        timeout=float(gemini_config.get('timeout', 120)),
        temperature=float(gemini_config.get('temperature', 0.1)),
        max_output_tokens=gemini_config.get('max_output_tokens'),
    )


if __name__ == "__main__":
    # Self-test: one short round trip with the configured key
    logging.basicConfig(level=logging.DEBUG, format='%(levelname)s: %(message)s')

    config = create_config_from_dict({})
    if not config.api_key:
        print(f"Set one of {', '.join(API_KEY_ENV_VARS)} to run the self-test", file=sys.stderr)
        sys.exit(1)

    try:
        with GeminiClient(config) as client:
            print(client.generate("What is 2 + 2? Answer with just the number."))
    except GeminiError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
