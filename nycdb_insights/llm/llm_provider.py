"""
LLM Provider abstraction for multi-provider support.

This module provides a unified interface for the completion service used by
the interpreter and narrative stages (Gemini, OpenAI) with built-in retry
logic, response caching and an async entry point for the pipeline.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Dict, Any, Optional
import asyncio
import logging
import hashlib
import json
import threading
import time

import tiktoken

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from LLM provider."""
    content: str
    tokens_used: int
    model: str
    cached: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class LLMProvider(ABC):
    """Base interface for LLM providers."""

    def __init__(self, model: str, api_key: str, max_retries: int = 3,
                 cache_size: int = 100):
        """
        Initialize LLM provider.

        Args:
            model: Model identifier (e.g., "gemini-1.5-flash", "gpt-4o-mini")
            api_key: API key for authentication
            max_retries: Maximum number of retry attempts
            cache_size: Maximum number of cached responses
        """
        self.model = model
        self.api_key = api_key
        self.max_retries = max_retries
        self.cache_size = cache_size
        self._response_cache: "OrderedDict[str, LLMResponse]" = OrderedDict()
        # agenerate runs generations in worker threads that share the cache
        self._cache_lock = threading.Lock()

    @abstractmethod
    def generate(self, prompt: str, temperature: float = 0.7,
                 max_tokens: Optional[int] = None) -> LLMResponse:
        """
        Generate response from LLM.

        Args:
            prompt: Input prompt
            temperature: Sampling temperature (0.0 to 1.0)
            max_tokens: Maximum tokens to generate

        Returns:
            LLMResponse object
        """
        pass

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        """
        Count tokens in text.

        Args:
            text: Input text

        Returns:
            Token count
        """
        pass

    async def agenerate(self, prompt: str, temperature: float = 0.7,
                        max_tokens: Optional[int] = None) -> LLMResponse:
        """
        Async entry point used by the pipeline.

        Runs the cached, retrying generation path in a worker thread so the
        event loop is free while the completion service responds.
        """
        return await asyncio.to_thread(
            self.generate_with_cache, prompt, temperature, max_tokens
        )

    def generate_with_cache(self, prompt: str, temperature: float = 0.7,
                            max_tokens: Optional[int] = None) -> LLMResponse:
        """
        Generate response with caching.

        Args:
            prompt: Input prompt
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate

        Returns:
            LLMResponse object (may be cached)
        """
        cache_key = self._create_cache_key(prompt, temperature, max_tokens)

        with self._cache_lock:
            cached_response = self._response_cache.get(cache_key)
            if cached_response is not None:
                self._response_cache.move_to_end(cache_key)

        if cached_response is not None:
            logger.info("Cache hit for prompt")
            return replace(cached_response, cached=True)

        logger.info("Cache miss, generating new response")
        response = self.generate_with_retry(prompt, temperature, max_tokens)

        with self._cache_lock:
            self._response_cache[cache_key] = response
            while len(self._response_cache) > self.cache_size:
                self._response_cache.popitem(last=False)

        return response

    def generate_with_retry(self, prompt: str, temperature: float = 0.7,
                            max_tokens: Optional[int] = None) -> LLMResponse:
        """
        Generate response with exponential backoff retry.

        Args:
            prompt: Input prompt
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate

        Returns:
            LLMResponse object

        Raises:
            Exception: If all retry attempts fail
        """
        last_exception = None

        for attempt in range(self.max_retries):
            try:
                logger.info(f"LLM generation attempt {attempt + 1}/{self.max_retries}")
                return self.generate(prompt, temperature, max_tokens)
            except Exception as e:
                last_exception = e
                logger.warning(f"LLM generation failed (attempt {attempt + 1}): {str(e)}")

                if attempt < self.max_retries - 1:
                    # Exponential backoff: 1s, 2s, 4s
                    wait_time = 2 ** attempt
                    logger.info(f"Retrying in {wait_time} seconds...")
                    time.sleep(wait_time)

        logger.error(f"All {self.max_retries} retry attempts failed")
        raise last_exception

    def _create_cache_key(self, prompt: str, temperature: float,
                          max_tokens: Optional[int]) -> str:
        """Create cache key from prompt and parameters."""
        key_data = {
            "prompt": prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "model": self.model
        }
        key_str = json.dumps(key_data, sort_keys=True)
        return hashlib.sha256(key_str.encode()).hexdigest()


class GeminiProvider(LLMProvider):
    """Google Gemini API provider."""

    def __init__(self, model: str = "gemini-1.5-flash", api_key: str = None,
                 max_retries: int = 3, cache_size: int = 100):
        """
        Initialize Gemini provider.

        Args:
            model: Gemini model name
            api_key: Google API key
            max_retries: Maximum retry attempts
            cache_size: Maximum number of cached responses
        """
        super().__init__(model, api_key, max_retries, cache_size)

        try:
            import google.generativeai as genai
        except ImportError:
            raise ImportError("google-generativeai package not installed. "
                              "Install with: pip install google-generativeai")

        self.genai = genai
        self.genai.configure(api_key=api_key)
        self.client = self.genai.GenerativeModel(model)
        logger.info(f"Initialized Gemini provider with model: {model}")

    def generate(self, prompt: str, temperature: float = 0.7,
                 max_tokens: Optional[int] = None) -> LLMResponse:
        """Generate response using Gemini API."""
        generation_config = {
            "temperature": temperature,
        }
        if max_tokens:
            generation_config["max_output_tokens"] = max_tokens

        response = self.client.generate_content(
            prompt,
            generation_config=generation_config
        )

        tokens_used = 0
        if getattr(response, "usage_metadata", None):
            tokens_used = (response.usage_metadata.prompt_token_count +
                           response.usage_metadata.candidates_token_count)

        return LLMResponse(
            content=response.text,
            tokens_used=tokens_used,
            model=self.model,
            metadata={"finish_reason": response.candidates[0].finish_reason.name if response.candidates else None}
        )

    def count_tokens(self, text: str) -> int:
        """Count tokens using Gemini's tokenizer."""
        result = self.client.count_tokens(text)
        return result.total_tokens


class OpenAIProvider(LLMProvider):
    """OpenAI API provider."""

    def __init__(self, model: str = "gpt-4o-mini", api_key: str = None,
                 max_retries: int = 3, cache_size: int = 100):
        """
        Initialize OpenAI provider.

        Args:
            model: OpenAI model name
            api_key: OpenAI API key
            max_retries: Maximum retry attempts
            cache_size: Maximum number of cached responses
        """
        super().__init__(model, api_key, max_retries, cache_size)

        from openai import OpenAI
        self.client = OpenAI(api_key=api_key)
        logger.info(f"Initialized OpenAI provider with model: {model}")

    def generate(self, prompt: str, temperature: float = 0.7,
                 max_tokens: Optional[int] = None) -> LLMResponse:
        """Generate response using OpenAI API."""
        messages = [{"role": "user", "content": prompt}]

        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        response = self.client.chat.completions.create(**kwargs)

        return LLMResponse(
            content=response.choices[0].message.content or "",
            tokens_used=response.usage.total_tokens,
            model=self.model,
            metadata={
                "finish_reason": response.choices[0].finish_reason,
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens
            }
        )

    def count_tokens(self, text: str) -> int:
        """
        Count tokens using tiktoken.

        Models tiktoken does not know fall back to the cl100k_base encoding.
        """
        try:
            encoding = tiktoken.encoding_for_model(self.model)
        except KeyError:
            encoding = tiktoken.get_encoding("cl100k_base")
        return len(encoding.encode(text))


class LLMProviderFactory:
    """Factory for creating LLM providers."""

    @staticmethod
    def create_provider(provider_type: str, model: str = None,
                        api_key: str = None, max_retries: int = 3,
                        cache_size: int = 100) -> LLMProvider:
        """
        Create LLM provider instance.

        Args:
            provider_type: "gemini" or "openai"
            model: Model name (uses default if None)
            api_key: API key (required)
            max_retries: Maximum retry attempts
            cache_size: Maximum number of cached responses

        Returns:
            LLMProvider instance

        Raises:
            ValueError: If provider_type is invalid
        """
        if not api_key:
            raise ValueError("API key is required")

        provider_type = provider_type.lower()

        if provider_type == "gemini":
            model = model or "gemini-1.5-flash"
            return GeminiProvider(model=model, api_key=api_key,
                                  max_retries=max_retries, cache_size=cache_size)
        elif provider_type == "openai":
            model = model or "gpt-4o-mini"
            return OpenAIProvider(model=model, api_key=api_key,
                                  max_retries=max_retries, cache_size=cache_size)
        else:
            raise ValueError(f"Unknown provider type: {provider_type}. "
                             f"Supported: 'gemini', 'openai'")
