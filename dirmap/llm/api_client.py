# dirmap/llm/api_client.py

"""
Description provider over the OpenRouter chat-completions API.

- Rate limiting between requests (DESCRIBE_RATE_LIMIT_MS)
- Retry with exponential backoff on 429 and 5xx
- Prompt truncation to DESCRIBE_MAX_PROMPT_TOKENS

``generate`` never raises: any failure is logged and yields "".
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from dirmap.config.settings import cfg
from dirmap.utils.token_counter import TokenCounter

# ============== LOGGING =============
logger = logging.getLogger(__name__)

# ============== CONSTANTS =============
REQUEST_TIMEOUT = 60.0
MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0  # seconds
RATE_LIMIT_MAX_DELAY = 30.0

SYSTEM_PROMPT = (
    "You are a helpful assistant that provides concise descriptions for code "
    "files and directories. Keep responses brief and technical."
)

# ============== EXCEPTIONS =============

class LLMAPIError(Exception):
    """Base exception for provider API errors"""
    def __init__(self, message: str, error_type: str = "fatal"):
        super().__init__(message)
        self.error_type = error_type
        self.message = message


class RateLimitError(LLMAPIError):
    """HTTP 429 rate limit error"""
    def __init__(self, message: str):
        super().__init__(message, error_type="rate_limit")


class RetryableError(LLMAPIError):
    """Errors that can be retried (5xx, network issues)"""
    def __init__(self, message: str):
        super().__init__(message, error_type="retryable")


# ============== DATA STRUCTURES =============

@dataclass
class ProviderStats:
    requests: int = 0
    failures: int = 0
    empty_responses: int = 0
    total_tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests": self.requests,
            "failures": self.failures,
            "empty_responses": self.empty_responses,
            "total_tokens": self.total_tokens,
        }


# ============== PROVIDER =============

class DescriptionProvider:
    """
    Async text generator used for directory and function descriptions.

    Without an API key every call returns "" and nothing is sent.
    ``transport`` is handed to httpx.AsyncClient (tests pass a MockTransport).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        max_tokens: Optional[int] = None,
        rate_limit_ms: Optional[int] = None,
        max_prompt_tokens: Optional[int] = None,
        retry_base_delay: float = RETRY_BASE_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else cfg.OPENROUTER_API_KEY
        self.model = model or cfg.DESCRIBE_MODEL
        self.base_url = (base_url or cfg.OPENROUTER_BASE_URL).rstrip("/")
        self.max_tokens = max_tokens if max_tokens is not None else cfg.DESCRIBE_MAX_TOKENS
        self.rate_limit_ms = rate_limit_ms if rate_limit_ms is not None else cfg.DESCRIBE_RATE_LIMIT_MS
        self.max_prompt_tokens = (
            max_prompt_tokens if max_prompt_tokens is not None else cfg.DESCRIBE_MAX_PROMPT_TOKENS
        )
        self.retry_base_delay = retry_base_delay
        self.transport = transport
        self.token_counter = TokenCounter()
        self.stats = ProviderStats()

        self._last_request_time = 0.0
        self._rate_lock: Optional[asyncio.Lock] = None

        if not self.api_key:
            logger.info("OPENROUTER_API_KEY not set, descriptions disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def generate(self, prompt: str) -> str:
        """Description text for a prompt, or "" when unavailable."""
        if not self.enabled or not prompt:
            return ""

        prompt = self._fit_prompt(prompt)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        try:
            content = await self._execute_with_retry(messages)
        except LLMAPIError as e:
            self.stats.failures += 1
            logger.warning(f"Description request failed ({e.error_type}): {e}")
            return ""
        except (httpx.HTTPError, ValueError) as e:
            self.stats.failures += 1
            logger.warning(f"Description request failed: {e}")
            return ""

        content = (content or "").strip()
        if not content:
            self.stats.empty_responses += 1
            logger.info("Empty response from description provider")
        return content

    def _fit_prompt(self, prompt: str) -> str:
        try:
            return self.token_counter.truncate(prompt, self.max_prompt_tokens)
        except Exception as e:
            # Encoding missing (offline) or broken; a token is never shorter than one byte
            logger.warning(f"Tokenizer unavailable, cutting prompt by bytes: {e}")
            return prompt.encode("utf-8", errors="ignore")[: self.max_prompt_tokens].decode("utf-8", errors="ignore")

    async def _enforce_rate_limit(self) -> None:
        if self._rate_lock is None:
            self._rate_lock = asyncio.Lock()

        async with self._rate_lock:
            interval = self.rate_limit_ms / 1000.0
            elapsed = time.monotonic() - self._last_request_time
            if self._last_request_time > 0 and elapsed < interval:
                await asyncio.sleep(interval - elapsed)
            self._last_request_time = time.monotonic()

    async def _execute_with_retry(self, messages: List[Dict[str, str]]) -> str:
        last_error: Optional[Exception] = None

        for attempt in range(MAX_RETRIES):
            await self._enforce_rate_limit()
            try:
                start_time = time.time()
                response = await self._make_request(messages)
                latency_ms = (time.time() - start_time) * 1000

                content = self._parse_response(response)
                self.stats.requests += 1
                logger.debug(f"Description call success: model={self.model}, latency={latency_ms:.0f}ms")
                return content

            except RateLimitError as e:
                delay = min(self.retry_base_delay * (2 ** (attempt + 1)), RATE_LIMIT_MAX_DELAY)
                logger.warning(f"Rate limit hit (attempt {attempt + 1}/{MAX_RETRIES}), waiting {delay:.0f}s")
                last_error = e

            except RetryableError as e:
                delay = self.retry_base_delay * (2 ** attempt)
                logger.warning(f"Retryable error (attempt {attempt + 1}/{MAX_RETRIES}): {e}, waiting {delay}s")
                last_error = e

            except httpx.TransportError as e:
                delay = self.retry_base_delay * (2 ** attempt)
                logger.warning(f"Network error (attempt {attempt + 1}/{MAX_RETRIES}): {e}, waiting {delay}s")
                last_error = e

            if attempt < MAX_RETRIES - 1:
                await asyncio.sleep(delay)

        raise LLMAPIError(f"All {MAX_RETRIES} retries exhausted. Last error: {last_error}", error_type="retryable")

    async def _make_request(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "dirmap",
        }
        body = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": 0.0,
        }

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/chat/completions", headers=headers, json=body)

            if response.status_code == 429:
                raise RateLimitError(f"Rate limit exceeded: {response.text[:200]}")

            if response.status_code in (500, 502, 503, 504):
                raise RetryableError(f"Server error {response.status_code}: {response.text[:200]}")

            if response.status_code != 200:
                raise LLMAPIError(f"API error {response.status_code}: {response.text[:500]}")

            return response.json()

    def _parse_response(self, response: Dict[str, Any]) -> str:
        choices = response.get("choices") or [{}]
        choice = choices[0] if isinstance(choices[0], dict) else {}
        message = choice.get("message") or {}
        content = message.get("content") or ""

        if choice.get("finish_reason") == "length":
            logger.debug(f"Description truncated by max_tokens for model={self.model}")

        usage = response.get("usage") or {}
        self.stats.total_tokens += int(usage.get("total_tokens", 0) or 0)
        return content
