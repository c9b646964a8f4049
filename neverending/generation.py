"""Generation service client with tiered backends for Gemini and OpenAI-compatible APIs."""

import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import GenerationConfig, TierConfig
from .errors import TransientProviderError

CAPABLE = "capable"
REVIEW = "review"
FAST = "fast"
TIERS = (CAPABLE, REVIEW, FAST)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: "Usage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


@dataclass
class GenerationResult:
    text: str
    usage: Usage = field(default_factory=Usage)


class GenerationBackend:
    """One provider/model pair. Subclasses raise TransientProviderError for retryable failures."""

    def complete(
        self,
        system: str,
        prompt: str,
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> GenerationResult:
        raise NotImplementedError


class GeminiBackend(GenerationBackend):
    def __init__(self, tier: TierConfig):
        self.tier = tier

    def complete(self, system, prompt, max_tokens, temperature=None) -> GenerationResult:
        """Call Gemini via the google-genai SDK."""
        import httpx
        from google import genai
        from google.genai import errors, types

        client = genai.Client(
            api_key=self.tier.resolve_api_key(),
            http_options=types.HttpOptions(timeout=int(self.tier.timeout_seconds * 1000)),
        )
        try:
            response = client.models.generate_content(
                model=self.tier.model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    system_instruction=system or None,
                    temperature=self.tier.temperature if temperature is None else temperature,
                    max_output_tokens=max_tokens,
                ),
            )
        except errors.ServerError as e:
            raise TransientProviderError(f"Gemini server error: {e}") from e
        except errors.ClientError as e:
            if e.code == 429:
                raise TransientProviderError(f"Gemini rate limited: {e}") from e
            raise
        except httpx.TransportError as e:
            raise TransientProviderError(f"Gemini transport error: {e}") from e

        meta = response.usage_metadata
        usage = Usage(
            input_tokens=(meta.prompt_token_count or 0) if meta else 0,
            output_tokens=(meta.candidates_token_count or 0) if meta else 0,
        )
        return GenerationResult(text=response.text or "", usage=usage)


class OpenAICompatibleBackend(GenerationBackend):
    def __init__(self, tier: TierConfig):
        self.tier = tier

    def complete(self, system, prompt, max_tokens, temperature=None) -> GenerationResult:
        """Call any OpenAI-compatible chat completions endpoint."""
        import openai

        client = openai.OpenAI(
            api_key=self.tier.resolve_api_key(),
            base_url=self.tier.base_url,
            timeout=self.tier.timeout_seconds,
            max_retries=0,
        )
        messages = [{"role": "user", "content": prompt}]
        if system:
            messages.insert(0, {"role": "system", "content": system})
        try:
            response = client.chat.completions.create(
                model=self.tier.model,
                messages=messages,
                temperature=self.tier.temperature if temperature is None else temperature,
                max_tokens=max_tokens,
            )
        except (
            openai.APITimeoutError,
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ) as e:
            raise TransientProviderError(f"{type(e).__name__}: {e}") from e

        usage = Usage()
        if response.usage:
            usage = Usage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        return GenerationResult(text=response.choices[0].message.content or "", usage=usage)


def build_backend(tier: TierConfig) -> GenerationBackend:
    if tier.provider == "openai":
        return OpenAICompatibleBackend(tier)
    return GeminiBackend(tier)


class GenerationClient:
    """Tiered access to the generation service.

    A single client is shared by every in-flight batch. Its limiter bounds how
    many provider calls run at once across all works; pass one in to share it
    between several clients.
    """

    def __init__(
        self,
        config: GenerationConfig,
        backends: Optional[dict[str, GenerationBackend]] = None,
        limiter: Optional[threading.BoundedSemaphore] = None,
    ):
        self.config = config
        self.backends = backends or {t: build_backend(getattr(config, t)) for t in TIERS}
        self.limiter = limiter or threading.BoundedSemaphore(config.max_concurrency)
        self.usage: dict[str, Usage] = {t: Usage() for t in TIERS}
        self._usage_lock = threading.Lock()

    def _tier_config(self, tier: str) -> TierConfig:
        if tier not in TIERS:
            raise ValueError(f"Unknown generation tier: {tier}")
        return getattr(self.config, tier)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_exponential(
                multiplier=self.config.retry_backoff_seconds,
                max=self.config.retry_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=_log_retry,
            reraise=True,
        )

    def generate(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        tier: str = CAPABLE,
        system: str = "",
        temperature: Optional[float] = None,
    ) -> GenerationResult:
        tier_config = self._tier_config(tier)
        backend = self.backends[tier]
        start = time.time()

        for attempt in self._retrying():
            with attempt:
                with self.limiter:
                    result = backend.complete(
                        system, prompt, max_tokens or tier_config.max_tokens, temperature
                    )

        with self._usage_lock:
            self.usage[tier].add(result.usage)
        logger.debug(
            f"{tier} call: {result.usage.input_tokens} in / {result.usage.output_tokens} out "
            f"in {time.time() - start:.1f}s"
        )
        return result


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Transient generation failure (attempt {retry_state.attempt_number}): {exc}; backing off"
    )
