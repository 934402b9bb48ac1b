# core/llm_interface.py
"""
Handles all direct interactions with Large Language Models (LLMs).
Includes the OpenAI-compatible chat client, failure classification,
per-provider retries with backoff, provider fallback, response cleaning
and token counting helpers.

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Copyright 2025 Dennis Lewis
"""

# Standard library imports
import asyncio
import functools
import json
import random
import re
from collections.abc import AsyncIterator, Sequence
from enum import Enum

# Type hints
from typing import Any, Protocol

# Third-party imports
import httpx
import structlog
import tiktoken
from pydantic import BaseModel

# Local imports
from config import ChapterForgeSettings, settings

from .usage import TokenUsage

logger = structlog.get_logger(__name__)


class ModelErrorType(str, Enum):
    """Classified failure of a single model call."""

    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    AUTH_ERROR = "auth_error"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"


RETRYABLE_ERROR_TYPES = frozenset(
    {
        ModelErrorType.RATE_LIMIT,
        ModelErrorType.SERVER_ERROR,
        ModelErrorType.TIMEOUT,
        ModelErrorType.UNKNOWN,
    }
)


class ModelCallError(Exception):
    """A model call failed; ``error_type`` drives the retry policy."""

    def __init__(
        self,
        message: str,
        error_type: ModelErrorType | None = None,
        provider: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.error_type = error_type or _classify_message(message)

    @property
    def retryable(self) -> bool:
        return self.error_type in RETRYABLE_ERROR_TYPES


class AllProvidersFailedError(ModelCallError):
    """Every configured provider exhausted its retry budget."""


class ModelProviderConfig(BaseModel):
    """One OpenAI-compatible endpoint plus the model to call on it."""

    name: str
    model: str
    api_base: str
    api_key: str = ""


class ModelClient(Protocol):
    """Abstract text-generation capability used by the pipeline."""

    async def generate(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.8,
        max_tokens: int | None = None,
        providers: Sequence[ModelProviderConfig] | None = None,
    ) -> str: ...


def provider_chain_from_settings(
    cfg: ChapterForgeSettings = settings, model: str | None = None
) -> list[ModelProviderConfig]:
    """Primary provider first, then every configured fallback."""
    chain = [
        ModelProviderConfig(
            name="primary",
            model=model or cfg.MAIN_GENERATION_MODEL,
            api_base=cfg.OPENAI_API_BASE,
            api_key=cfg.OPENAI_API_KEY,
        )
    ]
    for i, raw in enumerate(cfg.FALLBACK_PROVIDERS):
        entry = {
            "name": f"fallback_{i + 1}",
            "api_base": cfg.OPENAI_API_BASE,
            "api_key": cfg.OPENAI_API_KEY,
            **raw,
        }
        chain.append(ModelProviderConfig.model_validate(entry))
    return chain


def _classify_message(message: str) -> ModelErrorType:
    text = message.lower()
    if "quota" in text or "429" in text or "rate" in text:
        return ModelErrorType.RATE_LIMIT
    if any(code in text for code in ("500", "502", "503", "504")) or "server" in text:
        return ModelErrorType.SERVER_ERROR
    if "timeout" in text or "timed out" in text or "aborted" in text:
        return ModelErrorType.TIMEOUT
    if (
        "401" in text
        or "403" in text
        or "unauthorized" in text
        or "invalid api key" in text
    ):
        return ModelErrorType.AUTH_ERROR
    if "400" in text or "invalid" in text:
        return ModelErrorType.INVALID_REQUEST
    return ModelErrorType.UNKNOWN


def _classify_status(status_code: int) -> ModelErrorType:
    if status_code == 429:
        return ModelErrorType.RATE_LIMIT
    if status_code >= 500:
        return ModelErrorType.SERVER_ERROR
    if status_code == 408:
        return ModelErrorType.TIMEOUT
    if status_code in (401, 403):
        return ModelErrorType.AUTH_ERROR
    if 400 <= status_code < 500:
        return ModelErrorType.INVALID_REQUEST
    return ModelErrorType.UNKNOWN


def classify_error(exc: BaseException) -> ModelErrorType:
    """Map any failure raised by a model call onto :class:`ModelErrorType`."""
    if isinstance(exc, ModelCallError):
        return exc.error_type
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code)
    if isinstance(exc, httpx.TimeoutException | asyncio.TimeoutError | TimeoutError):
        return ModelErrorType.TIMEOUT
    return _classify_message(str(exc))


def retry_delay(
    error_type: ModelErrorType, attempt: int, cfg: ChapterForgeSettings = settings
) -> float:
    """Seconds to wait before retry ``attempt + 1``; rate limits back off hardest."""
    if error_type == ModelErrorType.RATE_LIMIT:
        return cfg.LLM_RATE_LIMIT_DELAY_SECONDS * (2**attempt)
    if error_type == ModelErrorType.SERVER_ERROR:
        return cfg.LLM_SERVER_ERROR_DELAY_SECONDS * (attempt + 1)
    return cfg.LLM_RETRY_DELAY_SECONDS * (attempt + 1)


# Token parameter handling
def _completion_token_param(api_base: str) -> str:
    """Return the token count parameter expected by the provider."""
    if "api.openai.com" in api_base:
        return "max_completion_tokens"
    return "max_tokens"


@functools.lru_cache(maxsize=settings.TOKENIZER_CACHE_SIZE)
def _get_tokenizer(model_name: str) -> tiktoken.Encoding | None:
    """
    Gets a tiktoken encoder for the given model name, with caching.
    Tries model-specific encoding, then a default, then returns None.
    """
    try:
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            logger.debug(
                f"No direct tiktoken encoding for '{model_name}'. Using default '{settings.TIKTOKEN_DEFAULT_ENCODING}'."
            )
            return tiktoken.get_encoding(settings.TIKTOKEN_DEFAULT_ENCODING)
    except Exception as e:
        logger.error(
            f"Could not load a tokenizer for '{model_name}': {e}. "
            "Token counting will fall back to character-based heuristic."
        )
        return None


def count_tokens(text: str, model_name: str = settings.MAIN_GENERATION_MODEL) -> int:
    """
    Counts the number of tokens in a string for a given model.
    Uses tiktoken with caching and a character-ratio fallback.
    """
    if not text:
        return 0

    encoder = _get_tokenizer(model_name)
    if encoder:
        return len(encoder.encode(text, allowed_special="all"))
    return int(len(text) / settings.FALLBACK_CHARS_PER_TOKEN)


def truncate_text_by_tokens(
    text: str,
    model_name: str,
    max_tokens: int,
    truncation_marker: str = "\n... (truncated)",
) -> str:
    """
    Truncates text to a maximum number of tokens for a given model.
    Adds a truncation marker if truncation occurs.
    """
    if not text:
        return ""

    encoder = _get_tokenizer(model_name)
    if not encoder:
        max_chars = int(max_tokens * settings.FALLBACK_CHARS_PER_TOKEN)
        if len(text) > max_chars:
            return text[: max(0, max_chars - len(truncation_marker))] + truncation_marker
        return text

    tokens = encoder.encode(text, allowed_special="all")
    if len(tokens) <= max_tokens:
        return text

    marker_len = len(encoder.encode(truncation_marker, allowed_special="all"))
    keep = max_tokens - marker_len
    marker = truncation_marker
    if keep <= 0:
        keep = max_tokens
        marker = ""
    return encoder.decode(tokens[:keep]) + marker


_THINK_TAGS = ("think", "thought", "thinking", "reasoning", "analysis", "no_think")

_PREAMBLE_PATTERNS = [
    r"^\s*(Okay,\s*)?(Sure,\s*)?(Here's|Here is)\s+(the|your)\s+[\w\s]+?:\s*",
    r"^\s*Certainly! Here is the text:\s*",
    r"^\s*(?:Output|Result|Response|Answer)\s*:\s*",
]
_POSTAMBLE_PATTERNS = [
    r"\s*Let me know if you (need|have) any(thing else| other questions| further revisions| adjustments)\b.*?\.?[^\w\n]*$",
    r"\s*I hope this (meets your expectations|helps|is what you were looking for)\b.*?\.?[^\w\n]*$",
    r"\s*Feel free to ask for (adjustments|anything else)\b.*?\.?[^\w\n]*$",
]


def clean_model_response(text: str) -> str:
    """Strip reasoning blocks and conversational wrapping from a model reply."""
    if not isinstance(text, str):
        logger.warning(
            f"clean_model_response received non-string input: {type(text)}. Returning empty string."
        )
        return ""

    cleaned = text
    for tag_name in _THINK_TAGS:
        cleaned = re.sub(
            rf"<\s*{tag_name}\s*>.*?<\s*/\s*{tag_name}\s*>",
            "",
            cleaned,
            flags=re.DOTALL | re.IGNORECASE,
        )
        cleaned = re.sub(
            rf"<\s*/?\s*{tag_name}\s*/?\s*>", "", cleaned, flags=re.IGNORECASE
        )

    for pattern in _PREAMBLE_PATTERNS:
        cleaned = re.sub(pattern, "", cleaned, count=1, flags=re.IGNORECASE).strip()
    for pattern in _POSTAMBLE_PATTERNS:
        cleaned = re.sub(
            pattern, "", cleaned, count=1, flags=re.IGNORECASE | re.MULTILINE
        ).strip()

    cleaned = cleaned.replace("\r\n", "\n").strip()
    return re.sub(r"\n{3,}", "\n\n", cleaned)


def _message_text(data: dict[str, Any], provider_name: str) -> str:
    """Content of the first choice; list-of-parts content is joined."""
    choices = data.get("choices") or []
    if not choices:
        return ""
    first = choices[0] if isinstance(choices, list) else None
    message = first.get("message") if isinstance(first, dict) else None
    if message is None:
        message = {}
    if not isinstance(message, dict):
        raise ModelCallError(
            f"Malformed choice from {provider_name}", ModelErrorType.UNKNOWN, provider_name
        )
    content = message.get("content") or ""
    if isinstance(content, list):
        parts = [
            part.get("text", "") if isinstance(part, dict) else part
            for part in content
        ]
        if not all(isinstance(p, str) for p in parts):
            raise ModelCallError(
                f"Malformed content parts from {provider_name}",
                ModelErrorType.UNKNOWN,
                provider_name,
            )
        return "".join(parts)
    if not isinstance(content, str):
        raise ModelCallError(
            f"Malformed content from {provider_name}", ModelErrorType.UNKNOWN, provider_name
        )
    return content


class LLMService:
    """OpenAI-compatible chat client with classified retries and provider fallback."""

    def __init__(
        self,
        providers: Sequence[ModelProviderConfig] | None = None,
        timeout: float = settings.HTTPX_TIMEOUT,
        call_timeout: float = settings.LLM_CALL_TIMEOUT_SECONDS,
        retries_per_provider: int = settings.LLM_RETRY_ATTEMPTS_PER_PROVIDER,
        switch_conditions: Sequence[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        # Use a single async client for all requests to reuse connections
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_LLM_CALLS)
        self.providers = list(providers or provider_chain_from_settings())
        self.call_timeout = call_timeout
        self.retries_per_provider = max(1, retries_per_provider)
        self.switch_conditions = {
            ModelErrorType(c)
            for c in (switch_conditions or settings.LLM_SWITCH_CONDITIONS)
        }
        self.request_count = 0
        self.usage = TokenUsage()
        logger.info(
            "LLMService initialized.",
            providers=[p.name for p in self.providers],
            concurrency=settings.MAX_CONCURRENT_LLM_CALLS,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _backoff_delay(self, error_type: ModelErrorType, attempt: int) -> None:
        """Sleep for the classified delay plus a little jitter."""
        delay = retry_delay(error_type, attempt)
        jitter = random.uniform(0, delay / 10)
        await asyncio.sleep(delay + jitter)

    def _build_payload(
        self,
        provider: ModelProviderConfig,
        system: str,
        prompt: str,
        temperature: float,
        max_tokens: int | None,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": provider.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "top_p": settings.LLM_TOP_P,
            "stream": stream,
        }
        if max_tokens is not None:
            payload[_completion_token_param(provider.api_base)] = max_tokens
        return payload

    @staticmethod
    def _headers(provider: ModelProviderConfig) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {provider.api_key}",
            "Content-Type": "application/json",
        }

    async def _post_chat(
        self,
        provider: ModelProviderConfig,
        system: str,
        prompt: str,
        temperature: float,
        max_tokens: int | None,
    ) -> str:
        """Send one non-streaming chat completion request."""
        self.request_count += 1
        response = await self._client.post(
            f"{provider.api_base.rstrip('/')}/chat/completions",
            json=self._build_payload(provider, system, prompt, temperature, max_tokens),
            headers=self._headers(provider),
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ModelCallError(
                f"Malformed response body from {provider.name}: expected a JSON object",
                ModelErrorType.UNKNOWN,
                provider.name,
            )
        if isinstance(data.get("usage"), dict):
            self.usage.add(data["usage"])
        text = _message_text(data, provider.name)
        if not text.strip():
            raise ModelCallError(
                "Empty model response", ModelErrorType.UNKNOWN, provider.name
            )
        return text

    async def _call_provider_once(
        self,
        provider: ModelProviderConfig,
        system: str,
        prompt: str,
        temperature: float,
        max_tokens: int | None,
    ) -> str:
        """One attempt under the hard wall-clock timeout; failures become ModelCallError."""
        try:
            return await asyncio.wait_for(
                self._post_chat(provider, system, prompt, temperature, max_tokens),
                timeout=self.call_timeout,
            )
        except ModelCallError:
            raise
        except httpx.HTTPStatusError as exc:
            body = exc.response.text[:200]
            raise ModelCallError(
                f"HTTP {exc.response.status_code} from {provider.name}: {body}",
                classify_error(exc),
                provider.name,
                exc.response.status_code,
            ) from exc
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise ModelCallError(
                f"Model call to {provider.name} timed out",
                ModelErrorType.TIMEOUT,
                provider.name,
            ) from exc
        except (httpx.RequestError, json.JSONDecodeError, ValueError) as exc:
            raise ModelCallError(
                f"{type(exc).__name__} from {provider.name}: {exc}",
                classify_error(exc),
                provider.name,
            ) from exc

    async def generate(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.8,
        max_tokens: int | None = None,
        providers: Sequence[ModelProviderConfig] | None = None,
        auto_clean_response: bool = True,
    ) -> str:
        """Call providers in order with per-provider retries; raise when all fail."""
        chain = list(providers or self.providers)
        if not chain:
            raise ModelCallError(
                "No model providers configured", ModelErrorType.INVALID_REQUEST
            )
        if not prompt or not prompt.strip():
            raise ModelCallError("Empty prompt", ModelErrorType.INVALID_REQUEST)

        last_exc: ModelCallError | None = None
        async with self._semaphore:
            for provider_index, provider in enumerate(chain):
                is_last_provider = provider_index == len(chain) - 1
                for attempt in range(self.retries_per_provider):
                    try:
                        text = await self._call_provider_once(
                            provider, system, prompt, temperature, max_tokens
                        )
                        if auto_clean_response:
                            text = clean_model_response(text)
                        return text
                    except ModelCallError as exc:
                        last_exc = exc
                        logger.warning(
                            "Model call attempt failed.",
                            provider=provider.name,
                            model=provider.model,
                            attempt=attempt + 1,
                            error_type=exc.error_type.value,
                            error=str(exc),
                        )

                    if last_exc.error_type == ModelErrorType.INVALID_REQUEST:
                        raise last_exc
                    if not last_exc.retryable:
                        if is_last_provider:
                            raise last_exc
                        logger.info("Switching to fallback provider after non-retryable error.")
                        break
                    is_last_attempt = attempt == self.retries_per_provider - 1
                    if is_last_attempt:
                        if is_last_provider:
                            break
                        if last_exc.error_type not in self.switch_conditions:
                            raise last_exc
                        logger.info(
                            "Switching to fallback provider.",
                            after=last_exc.error_type.value,
                        )
                        break
                    await self._backoff_delay(last_exc.error_type, attempt)

        if last_exc is None:
            raise AllProvidersFailedError(
                "All providers failed without a recorded error", ModelErrorType.UNKNOWN
            )
        raise AllProvidersFailedError(
            f"All providers failed. Last error: {last_exc}",
            last_exc.error_type,
            last_exc.provider,
            last_exc.status_code,
        ) from last_exc

    async def stream_generate(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.8,
        max_tokens: int | None = None,
        provider: ModelProviderConfig | None = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas from a streaming chat completion (single provider, no retries)."""
        target = provider or self.providers[0]
        self.request_count += 1
        async with self._client.stream(
            "POST",
            f"{target.api_base.rstrip('/')}/chat/completions",
            json=self._build_payload(
                target, system, prompt, temperature, max_tokens, stream=True
            ),
            headers=self._headers(target),
        ) as response_stream:
            response_stream.raise_for_status()
            async for line in response_stream.aiter_lines():
                if not line.startswith("data: "):
                    continue
                data_json_str = line[len("data: ") :].strip()
                if data_json_str == "[DONE]":
                    break
                try:
                    chunk_data = json.loads(data_json_str)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed stream chunk.")
                    continue
                if not isinstance(chunk_data, dict):
                    logger.debug("Skipping non-object stream chunk.")
                    continue
                choices = chunk_data.get("choices") or []
                if choices and isinstance(choices[0], dict):
                    delta = choices[0].get("delta") or {}
                    piece = delta.get("content") if isinstance(delta, dict) else None
                    if isinstance(piece, str) and piece:
                        yield piece
