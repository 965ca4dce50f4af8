"""
Completion providers and shared rate budget for LLM contact extraction.

Supports:
- OpenAI (gpt-4o-mini, gpt-4o, etc.) in JSON response mode
- Anthropic (claude-haiku, claude-sonnet, etc.)

SDK exceptions are mapped onto the extraction error taxonomy:
- ProviderAuthError: bad/missing credentials (not retried)
- ProviderRateLimited / TransientProviderError: retried with backoff
- ProviderRequestError: request rejected (not retried)

Every request goes through one RateBudget, which enforces both the minimum
interval between requests (from the requests-per-minute cap) and the
tokens-per-minute window.

Usage:
    provider = create_completion_provider(model="gpt-4o-mini")
    budget = RateBudget(requests_per_minute=3, tokens_per_minute=60000)
    if budget.acquire(estimated_tokens=1200):
        response = provider.complete(SYSTEM_PROMPT, user_prompt, 4000, 0.1)
"""

import logging
import os
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from .errors import (
    ExtractionTimeout,
    ProviderAuthError,
    ProviderRateLimited,
    ProviderRequestError,
    RETRYABLE_ERRORS,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


PROVIDER_MODELS = {
    LLMProvider.OPENAI: [
        "gpt-4o-mini",
        "gpt-4o",
        "gpt-4.1-mini",
        "gpt-4-turbo",
        "gpt-3.5-turbo",
    ],
    LLMProvider.ANTHROPIC: [
        "claude-sonnet-4-20250514",
        "claude-haiku-4-5-20251001",
        "claude-3-5-sonnet-latest",
        "claude-3-haiku-20240307",
    ],
}

# Model aliases for convenience
MODEL_ALIASES = {
    "claude-sonnet": "claude-sonnet-4-20250514",
    "claude-haiku": "claude-haiku-4-5-20251001",
    "claude-haiku-3": "claude-3-haiku-20240307",
}

API_KEY_ENV_VARS = {
    LLMProvider.OPENAI: "OPENAI_API_KEY",
    LLMProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
}


def detect_provider(model: str) -> LLMProvider:
    """
    Auto-detect provider from model name.

    Args:
        model: Model name or alias

    Returns:
        Detected LLMProvider (OpenAI for unknown names)
    """
    resolved_model = resolve_model_name(model)
    if resolved_model.startswith("claude"):
        return LLMProvider.ANTHROPIC
    if resolved_model.startswith(("gpt", "o1", "o3", "o4")):
        return LLMProvider.OPENAI

    logger.warning(f"Could not detect provider for model '{model}', defaulting to OpenAI")
    return LLMProvider.OPENAI


def resolve_model_name(model: str) -> str:
    """Resolve model alias to full model name."""
    return MODEL_ALIASES.get(model, model)


# =============================================================================
# Rate limiting
# =============================================================================


@dataclass
class RateLimitConfig:
    """Rate limiting configuration."""
    requests_per_minute: Optional[int] = 3  # None = no request-rate limit
    tokens_per_minute: Optional[int] = 60000  # None = no token window
    max_retries: int = 3  # Retries on rate-limit / transient errors
    initial_retry_delay: float = 2.0  # Initial delay for exponential backoff
    max_retry_delay: float = 60.0  # Maximum retry delay

    def get_delay(self) -> float:
        """Minimum seconds between two requests."""
        if self.requests_per_minute and self.requests_per_minute > 0:
            return 60.0 / self.requests_per_minute
        return 0.0

    @property
    def min_interval_ms(self) -> float:
        return self.get_delay() * 1000.0


class RateBudget:
    """
    Process-wide request/token budget shared by every extraction.

    acquire() blocks until both gates pass, then reserves the request in the
    same critical section so two threads can never slip through together:
    - now - last_request_time >= min_interval
    - tokens_used_in_window + estimated <= tokens_per_minute_cap

    The token window resets once more than 60 seconds have passed since it
    started. A single request larger than the cap is admitted only into an
    empty window. Clock and sleep are injectable for tests.
    """

    WINDOW_SECONDS = 60.0
    _EPSILON = 0.001

    def __init__(
        self,
        requests_per_minute: Optional[int] = 3,
        tokens_per_minute: Optional[int] = 60000,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute else 0.0
        self.tokens_per_minute_cap = tokens_per_minute
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        self.window_start: Optional[float] = None
        self.tokens_used_in_window = 0
        self.last_request_time: Optional[float] = None
        self.requests_issued = 0

    @classmethod
    def from_config(cls, config: RateLimitConfig, **kwargs) -> "RateBudget":
        return cls(
            requests_per_minute=config.requests_per_minute,
            tokens_per_minute=config.tokens_per_minute,
            **kwargs,
        )

    @property
    def min_interval_ms(self) -> float:
        return self.min_interval * 1000.0

    def now(self) -> float:
        return self._clock()

    def acquire(self, estimated_tokens: int, deadline: Optional[float] = None) -> bool:
        """
        Block until a request of ``estimated_tokens`` may be sent, then reserve it.

        Args:
            estimated_tokens: Expected prompt + completion tokens
            deadline: Clock value after which waiting is pointless

        Returns:
            True once reserved, False if the wait would overrun the deadline
        """
        while True:
            with self._lock:
                now = self._clock()
                if self.window_start is None or now - self.window_start > self.WINDOW_SECONDS:
                    self.window_start = now
                    self.tokens_used_in_window = 0

                wait = 0.0
                if self.last_request_time is not None:
                    wait = max(wait, self.last_request_time + self.min_interval - now)

                cap = self.tokens_per_minute_cap
                if (
                    cap
                    and self.tokens_used_in_window > 0
                    and self.tokens_used_in_window + estimated_tokens > cap
                ):
                    window_wait = self.window_start + self.WINDOW_SECONDS - now + self._EPSILON
                    wait = max(wait, window_wait)

                if wait <= 0:
                    self.tokens_used_in_window += estimated_tokens
                    self.last_request_time = now
                    self.requests_issued += 1
                    return True

            if deadline is not None and now + wait > deadline:
                logger.warning(
                    f"Rate budget wait of {wait:.1f}s would pass the request deadline"
                )
                return False

            logger.debug(f"Rate limiting: sleeping {wait:.2f}s")
            self._sleep(wait)

    def record_usage(self, estimated_tokens: int, actual_tokens: int):
        """Replace a reservation's estimate with the provider-reported usage."""
        with self._lock:
            self.tokens_used_in_window = max(
                0, self.tokens_used_in_window + actual_tokens - estimated_tokens
            )

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "min_interval_ms": self.min_interval_ms,
                "tokens_per_minute_cap": self.tokens_per_minute_cap,
                "window_start": self.window_start,
                "tokens_used_in_window": self.tokens_used_in_window,
                "last_request_time": self.last_request_time,
                "requests_issued": self.requests_issued,
            }


def call_with_retries(
    func: Callable[[], T],
    rate_limit: Optional[RateLimitConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    deadline: Optional[float] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
) -> T:
    """
    Execute ``func`` with exponential backoff on rate-limit and transient errors.

    Args:
        func: Callable issuing one provider request
        rate_limit: Retry parameters
        sleep: Sleep function (injectable for tests)
        clock: Clock used to compare against ``deadline``
        deadline: Clock value after which no further retry is attempted
        on_retry: Called as on_retry(attempt, error, sleep_time) before each backoff

    Returns:
        Result from func()

    Raises:
        The last provider error once retries are exhausted, ExtractionTimeout
        if the backoff would pass the deadline, and any non-retryable error
        immediately
    """
    rate_limit = rate_limit or RateLimitConfig()
    max_retries = rate_limit.max_retries

    for attempt in range(max_retries + 1):
        try:
            return func()
        except RETRYABLE_ERRORS as e:
            if attempt == max_retries:
                logger.error(f"Provider error persisted after {max_retries} retries: {e}")
                raise

            delay = min(rate_limit.initial_retry_delay * (2 ** attempt), rate_limit.max_retry_delay)
            sleep_time = delay * random.uniform(0.5, 1.5)
            if isinstance(e, ProviderRateLimited) and e.retry_after:
                sleep_time = max(sleep_time, e.retry_after)

            if deadline is not None and clock() + sleep_time > deadline:
                raise ExtractionTimeout(
                    f"Retry backoff of {sleep_time:.1f}s would pass the deadline"
                ) from e

            logger.warning(
                f"{type(e).__name__} (attempt {attempt + 1}/{max_retries + 1}), "
                f"retrying in {sleep_time:.1f}s..."
            )
            if on_retry is not None:
                on_retry(attempt + 1, e, sleep_time)
            sleep(sleep_time)

    raise RuntimeError("unreachable")


# =============================================================================
# Providers
# =============================================================================


@dataclass
class CompletionResponse:
    """Raw model output plus token usage."""
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class CompletionProvider(ABC):
    """Abstract base class for completion providers."""

    model: str = ""

    @abstractmethod
    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_output_tokens: int,
        temperature: float,
    ) -> CompletionResponse:
        """
        Run one completion.

        Raises:
            ProviderAuthError, ProviderRateLimited, TransientProviderError,
            ProviderRequestError
        """
        pass


def _retry_after(error: Any) -> Optional[float]:
    """Retry-After header value (seconds) from an SDK status error, if any."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    try:
        return float(headers.get("retry-after"))
    except (TypeError, ValueError):
        return None


class OpenAICompletionProvider(CompletionProvider):
    """OpenAI chat completions in JSON response mode."""

    def __init__(self, model: str = "gpt-4o-mini", api_key: Optional[str] = None, timeout: float = 60.0):
        self.model = resolve_model_name(model)
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.timeout = timeout
        self._client = None

        if not self.api_key:
            raise ProviderAuthError("OpenAI API key required. Set OPENAI_API_KEY env var.")

    @property
    def client(self):
        """Lazy-load OpenAI client. SDK retries are disabled; call_with_retries owns them."""
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=self.api_key, max_retries=0, timeout=self.timeout)
        return self._client

    def complete(self, system_prompt, user_prompt, max_output_tokens, temperature):
        import openai

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_output_tokens,
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ProviderAuthError(str(e)) from e
        except openai.RateLimitError as e:
            raise ProviderRateLimited(str(e), retry_after=_retry_after(e)) from e
        except (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise TransientProviderError(str(e)) from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise TransientProviderError(str(e)) from e
            raise ProviderRequestError(str(e)) from e

        content = response.choices[0].message.content or ""
        usage = response.usage
        return CompletionResponse(
            content=content,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )


class AnthropicCompletionProvider(CompletionProvider):
    """Anthropic messages API; JSON enforced through the prompt."""

    def __init__(self, model: str = "claude-haiku", api_key: Optional[str] = None, timeout: float = 60.0):
        self.model = resolve_model_name(model)
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self.timeout = timeout
        self._client = None

        if not self.api_key:
            raise ProviderAuthError("Anthropic API key required. Set ANTHROPIC_API_KEY env var.")

    @property
    def client(self):
        if self._client is None:
            try:
                import anthropic
            except ImportError:
                raise ImportError(
                    "anthropic package not installed. Install with: pip install anthropic"
                )
            self._client = anthropic.Anthropic(api_key=self.api_key, max_retries=0, timeout=self.timeout)
        return self._client

    def complete(self, system_prompt, user_prompt, max_output_tokens, temperature):
        import anthropic

        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=max_output_tokens,
                temperature=temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt + "\n\nRespond with valid JSON only."}],
            )
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            raise ProviderAuthError(str(e)) from e
        except anthropic.RateLimitError as e:
            raise ProviderRateLimited(str(e), retry_after=_retry_after(e)) from e
        except (anthropic.APITimeoutError, anthropic.APIConnectionError, anthropic.InternalServerError) as e:
            raise TransientProviderError(str(e)) from e
        except anthropic.APIStatusError as e:
            # 529 overloaded and other 5xx are transient
            if e.status_code >= 500:
                raise TransientProviderError(str(e)) from e
            raise ProviderRequestError(str(e)) from e

        content = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = response.usage
        return CompletionResponse(
            content=content,
            prompt_tokens=usage.input_tokens if usage else 0,
            completion_tokens=usage.output_tokens if usage else 0,
        )


def create_completion_provider(
    provider: Optional[str] = None,
    model: str = "gpt-4o-mini",
    api_key: Optional[str] = None,
    timeout: float = 60.0,
) -> Optional[CompletionProvider]:
    """
    Create a completion provider, or None when no API key is configured.

    Args:
        provider: "openai" or "anthropic". Auto-detected from model if None.
        model: Model name or alias
        api_key: API key. Uses the provider's environment variable if None.
        timeout: Per-request timeout in seconds

    Returns:
        CompletionProvider, or None if AI extraction is unavailable
    """
    provider_enum = LLMProvider(provider.lower()) if provider else detect_provider(model)

    key = api_key or os.environ.get(API_KEY_ENV_VARS[provider_enum])
    if not key:
        logger.info(
            f"No {API_KEY_ENV_VARS[provider_enum]} set; AI extraction disabled, "
            f"pattern extraction only"
        )
        return None

    if provider_enum == LLMProvider.OPENAI:
        return OpenAICompletionProvider(model=model, api_key=key, timeout=timeout)
    elif provider_enum == LLMProvider.ANTHROPIC:
        return AnthropicCompletionProvider(model=model, api_key=key, timeout=timeout)
    else:
        raise ValueError(f"Unsupported provider: {provider}")
