"""
LLM Client Module

Provides an abstraction layer for Large Language Model providers:
- Cloud: OpenAI (GPT-4o family, text-embedding-3)
- Cloud: Anthropic (Claude) with Voyage embeddings
- Cloud: Google Gemini via google-genai
- Cloud: Together AI (OpenAI-compatible endpoint)
- Cloud: Mistral AI
- Local: Ollama

Design Rationale:
- Every provider implements the same complete/embed/stream capability
- A registry maps identifiers to provider instances
- A configured fallback order is walked when the primary provider fails
  (timeout, auth, quota), so one outage does not break chat
- Every client is built with an explicit timeout

Usage:
    client = LLMClient()
    response = client.complete([
        {"role": "system", "content": "You are helpful."},
        {"role": "user", "content": "What is RAG?"},
    ])
    vectors = client.embed(["first text", "second text"]).vectors
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import httpx
# Import the new google-genai package (not the deprecated google.generativeai)
from google import genai
from google.genai import types
from tenacity import Retrying, stop_after_attempt, wait_exponential

from config.settings import get_settings, LLMConfig
from botkit.exceptions import EmbeddingProviderError, LLMRequestError

# Configure logging
logger = logging.getLogger(__name__)

ChatMessages = List[Dict[str, str]]


@dataclass
class LLMResponse:
    """
    Standardized response from LLM providers.

    Attributes:
        content: The generated text response
        model: Model name used for generation
        usage: Token usage statistics (if available)
        finish_reason: Why generation stopped
        provider: Provider that served the request
    """
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None
    finish_reason: Optional[str] = None
    provider: Optional[str] = None

    @property
    def tokens_used(self) -> int:
        if not self.usage:
            return 0
        if "total_tokens" in self.usage:
            return int(self.usage["total_tokens"])
        return int(self.usage.get("prompt_tokens", 0)) + int(self.usage.get("completion_tokens", 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "model": self.model,
            "usage": self.usage,
            "finish_reason": self.finish_reason,
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LLMResponse":
        return cls(**data)

    def __str__(self) -> str:
        return self.content


@dataclass
class EmbeddingResult:
    """Vectors plus the model and provider that produced them."""
    vectors: List[List[float]]
    model: str
    provider: str


def _usage(prompt_tokens: int, completion_tokens: int, total: Optional[int] = None) -> Dict[str, int]:
    prompt_tokens = int(prompt_tokens or 0)
    completion_tokens = int(completion_tokens or 0)
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": int(total) if total is not None else prompt_tokens + completion_tokens,
    }


class BaseLLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    All providers must implement:
    - complete: Chat completion over a list of role/content messages
    - embed: Embedding vectors for a list of texts
    Streaming defaults to a single delta holding the full completion.
    """

    name: str = ""
    MODEL_PREFIXES: Tuple[str, ...] = ()

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        timeout: float = 60.0,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ):
        self._api_key = api_key
        self._model = model
        self._embedding_model = embedding_model
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._client = None

    @abstractmethod
    def complete(
        self,
        messages: ChatMessages,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        """
        Generate a response from the LLM.

        Args:
            messages: Chat messages ({"role": ..., "content": ...})
            model: Model override (default: provider default)
            max_tokens: Maximum tokens in response
            temperature: Creativity (0-1, lower = more deterministic)

        Returns:
            LLMResponse object
        """
        pass

    @abstractmethod
    def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        Args:
            texts: List of input texts
            model: Embedding model override

        Returns:
            List of embedding vectors, in input order
        """
        pass

    def stream(
        self,
        messages: ChatMessages,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Iterator[str]:
        """Yield response text deltas."""
        yield self.complete(messages, model, max_tokens, temperature).content

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def supports_model(self, model: str) -> bool:
        return any(model.startswith(prefix) for prefix in self.MODEL_PREFIXES)

    @property
    def default_model(self) -> str:
        return self._model

    @property
    def default_embedding_model(self) -> Optional[str]:
        return self._embedding_model

    def _params(self, max_tokens: Optional[int], temperature: Optional[float]) -> Tuple[int, float]:
        return (
            max_tokens if max_tokens is not None else self._max_tokens,
            temperature if temperature is not None else self._temperature,
        )

    @staticmethod
    def split_system(messages: ChatMessages) -> Tuple[str, ChatMessages]:
        """Separate system instructions from the conversation turns."""
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [m for m in messages if m["role"] != "system"]
        return system, turns


class OpenAIProvider(BaseLLMProvider):
    """
    OpenAI provider for GPT models and text-embedding-3.

    Models:
    - gpt-4o-mini: Fast, cost-effective (default)
    - gpt-4o: Most capable
    """

    name = "openai"
    MODEL_PREFIXES = ("gpt-", "o1", "o3", "o4", "chatgpt-", "text-embedding-")
    BASE_URL: Optional[str] = None

    def _get_client(self):
        """Get or create OpenAI client."""
        if self._client is None:
            try:
                from openai import OpenAI

                if not self._api_key:
                    raise ValueError(
                        f"{self.name} API key not found. Set the provider API key environment variable."
                    )

                kwargs = {"api_key": self._api_key, "timeout": self._timeout, "max_retries": 0}
                if self.BASE_URL:
                    kwargs["base_url"] = self.BASE_URL
                self._client = OpenAI(**kwargs)
                logger.info(f"{self.name} client initialized")

            except ImportError:
                raise ImportError(
                    "openai package required. Install with: pip install openai"
                )
        return self._client

    def complete(self, messages, model=None, max_tokens=None, temperature=None) -> LLMResponse:
        """Generate response using the chat completions API."""
        client = self._get_client()
        max_tokens, temperature = self._params(max_tokens, temperature)

        try:
            response = client.chat.completions.create(
                model=model or self._model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )

            choice = response.choices[0]
            usage = None
            if response.usage:
                usage = _usage(
                    response.usage.prompt_tokens,
                    response.usage.completion_tokens,
                    response.usage.total_tokens,
                )
            return LLMResponse(
                content=choice.message.content or "",
                model=response.model,
                usage=usage,
                finish_reason=choice.finish_reason,
                provider=self.name,
            )
        except Exception as e:
            logger.error(f"{self.name} generation error: {e}")
            raise

    def stream(self, messages, model=None, max_tokens=None, temperature=None) -> Iterator[str]:
        client = self._get_client()
        max_tokens, temperature = self._params(max_tokens, temperature)

        response = client.chat.completions.create(
            model=model or self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
        )
        for chunk in response:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content

    def embed(self, texts, model=None) -> List[List[float]]:
        """Embeddings endpoint; results re-sorted by index to keep input order."""
        if not texts:
            return []
        client = self._get_client()

        try:
            response = client.embeddings.create(
                input=texts,
                model=model or self._embedding_model,
            )
        except Exception as e:
            logger.error(f"{self.name} embedding error: {e}")
            raise

        sorted_data = sorted(response.data, key=lambda x: x.index)
        return [item.embedding for item in sorted_data]


class TogetherProvider(OpenAIProvider):
    """
    Together AI through its OpenAI-compatible endpoint.

    Model ids are namespaced (e.g. meta-llama/Llama-3.3-70B-Instruct-Turbo).
    """

    name = "together"
    BASE_URL = "https://api.together.xyz/v1"
    MODEL_PREFIXES = ()

    def supports_model(self, model: str) -> bool:
        return "/" in model


class AnthropicProvider(BaseLLMProvider):
    """
    Anthropic provider for Claude models.

    Anthropic has no embeddings API; embeddings go to Voyage AI, which
    accepts its own key (falling back to the Anthropic key).
    """

    name = "anthropic"
    MODEL_PREFIXES = ("claude", "voyage")
    VOYAGE_URL = "https://api.voyageai.com/v1/embeddings"

    def __init__(self, *args, voyage_api_key: Optional[str] = None, http_client: Optional[httpx.Client] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._voyage_api_key = voyage_api_key
        self._http_client = http_client

    def _get_client(self):
        """Get or create Anthropic client."""
        if self._client is None:
            try:
                from anthropic import Anthropic

                if not self._api_key:
                    raise ValueError(
                        "Anthropic API key not found. Set ANTHROPIC_API_KEY environment variable."
                    )

                self._client = Anthropic(api_key=self._api_key, timeout=self._timeout, max_retries=0)
                logger.info("Anthropic client initialized")

            except ImportError:
                raise ImportError(
                    "anthropic package required. Install with: pip install anthropic"
                )
        return self._client

    def _request(self, messages, model, max_tokens, temperature) -> Dict[str, Any]:
        system, turns = self.split_system(messages)
        max_tokens, temperature = self._params(max_tokens, temperature)
        request = {
            "model": model or self._model,
            "messages": turns,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            request["system"] = system
        return request

    def complete(self, messages, model=None, max_tokens=None, temperature=None) -> LLMResponse:
        """Generate response using the messages API."""
        client = self._get_client()

        try:
            response = client.messages.create(**self._request(messages, model, max_tokens, temperature))
            text = "".join(
                block.text for block in response.content if getattr(block, "type", "text") == "text"
            )
            return LLMResponse(
                content=text,
                model=response.model,
                usage=_usage(response.usage.input_tokens, response.usage.output_tokens),
                finish_reason=response.stop_reason,
                provider=self.name,
            )
        except Exception as e:
            logger.error(f"Anthropic generation error: {e}")
            raise

    def stream(self, messages, model=None, max_tokens=None, temperature=None) -> Iterator[str]:
        client = self._get_client()
        with client.messages.stream(**self._request(messages, model, max_tokens, temperature)) as stream:
            for text in stream.text_stream:
                yield text

    def embed(self, texts, model=None) -> List[List[float]]:
        """Embeddings through the Voyage AI HTTP API."""
        if not texts:
            return []

        api_key = self._voyage_api_key or self._api_key
        if not api_key:
            raise ValueError("Voyage API key not found. Set VOYAGE_API_KEY environment variable.")

        client = self._http_client or httpx.Client(timeout=self._timeout)
        try:
            response = client.post(
                self.VOYAGE_URL,
                headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
                json={"input": texts, "model": model or self._embedding_model},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Voyage embedding error: {e}")
            raise
        finally:
            if self._http_client is None:
                client.close()

        data = sorted(response.json()["data"], key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in data]


class GoogleProvider(BaseLLMProvider):
    """
    Google Gemini provider using the google-genai package.

    Models:
    - gemini-2.0-flash: Latest, fastest, recommended
    - text-embedding-004: 768-dimension embeddings
    """

    name = "google"
    MODEL_PREFIXES = ("gemini", "models/", "text-embedding-004", "embedding-")

    def _get_client(self):
        """Get or create Gemini client using the google-genai package."""
        if self._client is None:
            if not self._api_key:
                raise ValueError(
                    "Google API key not found. Set GOOGLE_API_KEY environment variable."
                )

            self._client = genai.Client(
                api_key=self._api_key,
                http_options=types.HttpOptions(timeout=int(self._timeout * 1000)),
            )
            logger.info(f"Gemini client initialized with model: {self._model}")
        return self._client

    def _request(self, messages, max_tokens, temperature):
        system, turns = self.split_system(messages)
        max_tokens, temperature = self._params(max_tokens, temperature)
        contents = [
            types.Content(
                role="model" if m["role"] == "assistant" else "user",
                parts=[types.Part(text=m["content"])],
            )
            for m in turns
        ]
        config = types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
            system_instruction=system or None,
        )
        return contents, config

    def complete(self, messages, model=None, max_tokens=None, temperature=None) -> LLMResponse:
        """Generate response using Gemini."""
        client = self._get_client()
        contents, config = self._request(messages, max_tokens, temperature)

        try:
            response = client.models.generate_content(
                model=model or self._model,
                contents=contents,
                config=config,
            )

            usage = None
            metadata = getattr(response, "usage_metadata", None)
            if metadata is not None:
                usage = _usage(
                    metadata.prompt_token_count,
                    metadata.candidates_token_count,
                    metadata.total_token_count,
                )
            return LLMResponse(
                content=response.text or "",
                model=model or self._model,
                usage=usage,
                finish_reason="stop",
                provider=self.name,
            )
        except Exception as e:
            logger.error(f"Gemini generation error: {e}")
            raise

    def stream(self, messages, model=None, max_tokens=None, temperature=None) -> Iterator[str]:
        client = self._get_client()
        contents, config = self._request(messages, max_tokens, temperature)
        for chunk in client.models.generate_content_stream(
            model=model or self._model, contents=contents, config=config
        ):
            if chunk.text:
                yield chunk.text

    def embed(self, texts, model=None) -> List[List[float]]:
        if not texts:
            return []
        client = self._get_client()

        try:
            result = client.models.embed_content(
                model=model or self._embedding_model,
                contents=texts,
                config=types.EmbedContentConfig(task_type="SEMANTIC_SIMILARITY"),
            )
        except Exception as e:
            logger.error(f"Gemini embedding error: {e}")
            raise

        return [list(embedding.values) for embedding in result.embeddings]


class MistralProvider(BaseLLMProvider):
    """
    Mistral AI cloud provider.

    Models:
    - mistral-small-latest: Fast, efficient
    - mistral-embed: 1024-dimension embeddings
    """

    name = "mistral"
    MODEL_PREFIXES = ("mistral-", "open-mistral", "open-mixtral", "codestral", "ministral")

    def _get_client(self):
        """Get or create Mistral client."""
        if self._client is None:
            try:
                from mistralai import Mistral

                if not self._api_key:
                    raise ValueError(
                        "Mistral API key not found. Set MISTRAL_API_KEY environment variable."
                    )

                self._client = Mistral(api_key=self._api_key, timeout_ms=int(self._timeout * 1000))
                logger.info(f"Mistral client initialized with model: {self._model}")

            except ImportError:
                raise ImportError(
                    "mistralai package required. "
                    "Install with: pip install mistralai"
                )
        return self._client

    def complete(self, messages, model=None, max_tokens=None, temperature=None) -> LLMResponse:
        """Generate response using Mistral."""
        client = self._get_client()
        max_tokens, temperature = self._params(max_tokens, temperature)

        try:
            response = client.chat.complete(
                model=model or self._model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )

            choice = response.choices[0]
            return LLMResponse(
                content=choice.message.content or "",
                model=model or self._model,
                usage=_usage(
                    response.usage.prompt_tokens,
                    response.usage.completion_tokens,
                    response.usage.total_tokens,
                ) if response.usage else None,
                finish_reason=choice.finish_reason,
                provider=self.name,
            )
        except Exception as e:
            logger.error(f"Mistral generation error: {e}")
            raise

    def embed(self, texts, model=None) -> List[List[float]]:
        if not texts:
            return []
        client = self._get_client()

        try:
            response = client.embeddings.create(model=model or self._embedding_model, inputs=texts)
        except Exception as e:
            logger.error(f"Mistral embedding error: {e}")
            raise

        return [item.embedding for item in response.data]


class OllamaProvider(BaseLLMProvider):
    """
    Ollama provider for local LLM inference.

    Requirements:
    - Ollama installed: https://ollama.com
    - Models pulled: ollama pull llama3.2 && ollama pull nomic-embed-text
    """

    name = "ollama"

    def __init__(self, *args, base_url: str = "http://localhost:11434", enabled: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self._base_url = base_url.rstrip("/")
        self._enabled = enabled

    def _get_client(self):
        """Get or create Ollama client."""
        if self._client is None:
            try:
                import ollama
                self._client = ollama.Client(host=self._base_url, timeout=self._timeout)
                logger.info("Ollama client initialized")
            except ImportError:
                raise ImportError(
                    "ollama package required. Install with: pip install ollama"
                )
        return self._client

    def is_configured(self) -> bool:
        return self._enabled

    def supports_model(self, model: str) -> bool:
        return ":" in model or model in (self._model, self._embedding_model)

    def complete(self, messages, model=None, max_tokens=None, temperature=None) -> LLMResponse:
        """Generate response using Ollama."""
        client = self._get_client()
        max_tokens, temperature = self._params(max_tokens, temperature)

        try:
            response = client.chat(
                model=model or self._model,
                messages=messages,
                options={"temperature": temperature, "num_predict": max_tokens},
            )

            return LLMResponse(
                content=response["message"]["content"],
                model=model or self._model,
                usage=_usage(response.get("prompt_eval_count", 0), response.get("eval_count", 0)),
                finish_reason="stop",
                provider=self.name,
            )
        except Exception as e:
            logger.error(f"Ollama generation error: {e}")
            raise

    def stream(self, messages, model=None, max_tokens=None, temperature=None) -> Iterator[str]:
        client = self._get_client()
        max_tokens, temperature = self._params(max_tokens, temperature)
        for part in client.chat(
            model=model or self._model,
            messages=messages,
            options={"temperature": temperature, "num_predict": max_tokens},
            stream=True,
        ):
            if part["message"]["content"]:
                yield part["message"]["content"]

    def embed(self, texts, model=None) -> List[List[float]]:
        if not texts:
            return []
        client = self._get_client()

        try:
            response = client.embed(model=model or self._embedding_model, input=texts)
        except Exception as e:
            logger.error(f"Ollama embedding error: {e}")
            raise

        return [list(vector) for vector in response["embeddings"]]


class ProviderRegistry:
    """
    Maps provider identifiers to provider instances.

    Registration order is also the order used to match a model id to the
    provider that serves it.
    """

    def __init__(self):
        self._providers: Dict[str, BaseLLMProvider] = {}

    def register(self, provider: BaseLLMProvider) -> None:
        self._providers[provider.name] = provider
        logger.debug(f"Registered LLM provider: {provider.name}")

    def get(self, name: str) -> Optional[BaseLLMProvider]:
        return self._providers.get(name)

    def names(self) -> List[str]:
        return list(self._providers)

    def configured(self) -> List[str]:
        return [name for name, provider in self._providers.items() if provider.is_configured()]

    def provider_for_model(self, model: str) -> Optional[str]:
        for name, provider in self._providers.items():
            if provider.supports_model(model):
                return name
        return None

    @classmethod
    def from_config(cls, config: LLMConfig, embedding_model: Optional[str] = None) -> "ProviderRegistry":
        """
        Build a registry with every supported provider.

        Args:
            config: LLMConfig holding keys, models and timeouts
            embedding_model: Embedding model for the default provider
        """
        common = {"max_tokens": config.default_max_tokens, "temperature": config.default_temperature}
        registry = cls()
        registry.register(OpenAIProvider(
            api_key=config.openai_api_key,
            model=config.openai_model,
            embedding_model=config.openai_embedding_model,
            timeout=config.openai_timeout,
            **common,
        ))
        registry.register(AnthropicProvider(
            api_key=config.anthropic_api_key,
            model=config.anthropic_model,
            embedding_model=config.voyage_embedding_model,
            timeout=config.anthropic_timeout,
            voyage_api_key=config.voyage_api_key,
            **common,
        ))
        registry.register(GoogleProvider(
            api_key=config.google_api_key,
            model=config.google_model,
            embedding_model=config.google_embedding_model,
            timeout=config.google_timeout,
            **common,
        ))
        registry.register(TogetherProvider(
            api_key=config.together_api_key,
            model=config.together_model,
            embedding_model=config.together_embedding_model,
            timeout=config.together_timeout,
            **common,
        ))
        registry.register(MistralProvider(
            api_key=config.mistral_api_key,
            model=config.mistral_model,
            embedding_model=config.mistral_embedding_model,
            timeout=config.mistral_timeout,
            **common,
        ))
        registry.register(OllamaProvider(
            model=config.ollama_model,
            embedding_model=config.ollama_embedding_model,
            timeout=config.ollama_timeout,
            base_url=config.ollama_base_url,
            enabled=config.ollama_enabled,
            **common,
        ))
        return registry


class LLMClient:
    """
    Main LLM client with provider fallback.

    This is the class that other components should use.

    Example:
        client = LLMClient()
        response = client.complete(messages, model="claude-3-5-haiku-latest")
        # Anthropic is tried first; on failure the configured fallback
        # order is walked with each provider's own default model.
    """

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        registry: Optional[ProviderRegistry] = None,
        cache=None,
    ):
        """
        Initialize the LLM client.

        Args:
            config: Optional LLMConfig instance
            registry: Provider registry (default: built from config)
            cache: Optional UnifiedCacheManager for deterministic completions
        """
        self.config = config or get_settings().llm
        self.registry = registry or ProviderRegistry.from_config(self.config)
        self.cache = cache

        logger.info(
            f"LLMClient initialized: primary={self.config.provider}, "
            f"fallback={self.config.fallback_order}, configured={self.registry.configured()}"
        )

    def primary_for(self, model: Optional[str] = None, provider: Optional[str] = None) -> str:
        if provider:
            return provider
        if model:
            matched = self.registry.provider_for_model(model)
            if matched:
                return matched
        return self.config.provider

    def provider_chain(
        self,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        fallback: bool = True,
    ) -> List[Tuple[BaseLLMProvider, Optional[str]]]:
        """
        Ordered (provider, model) pairs to attempt.

        The primary provider keeps the requested model; fallback providers use
        their own defaults. Unconfigured providers are skipped.
        """
        primary = self.primary_for(model, provider)
        order = [primary]
        if fallback:
            order += [name for name in self.config.fallback_order if name != primary]

        chain = []
        for name in order:
            candidate = self.registry.get(name)
            if candidate is None:
                logger.warning(f"Unknown LLM provider in fallback order: {name}")
                continue
            if not candidate.is_configured():
                continue
            chain.append((candidate, model if name == primary else None))
        return chain

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(1, self.config.max_retries)),
            wait=wait_exponential(multiplier=self.config.retry_base_delay, max=30),
            reraise=True,
        )

    def _call(self, fn: Callable[[], Any]) -> Any:
        for attempt in self._retrying():
            with attempt:
                return fn()

    def complete(
        self,
        messages: ChatMessages,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        provider: Optional[str] = None,
        fallback: bool = True,
    ) -> LLMResponse:
        """
        Chat completion with fallback.

        Args:
            messages: Chat messages
            model: Model identifier (selects the primary provider)
            max_tokens: Maximum tokens in response
            temperature: Sampling temperature
            provider: Force the primary provider
            fallback: Walk the fallback order on failure

        Returns:
            LLMResponse from the first provider that succeeds

        Raises:
            LLMRequestError: Every provider failed or none is configured
        """
        cache_key = None
        if self.cache is not None and temperature == 0:
            from botkit.cache import make_cache_key

            cache_key = make_cache_key("completion_", self.primary_for(model, provider), model, messages, max_tokens)
            cached = self.cache.get(cache_key, group="content")
            if cached:
                return LLMResponse.from_dict(cached)

        attempts = []
        for candidate, candidate_model in self.provider_chain(model, provider, fallback):
            try:
                response = self._call(
                    lambda: candidate.complete(messages, candidate_model, max_tokens, temperature)
                )
            except Exception as e:
                attempts.append({"provider": candidate.name, "error": str(e)})
                logger.warning(f"Provider {candidate.name} failed, trying next: {e}")
                continue

            if attempts:
                logger.info(f"Completion served by fallback provider {candidate.name}")
            if cache_key:
                self.cache.set(cache_key, response.to_dict(), group="content", ttl=self.config.completion_cache_ttl)
            return response

        if not attempts:
            raise LLMRequestError("No configured LLM provider available")
        raise LLMRequestError(
            f"All LLM providers failed: {', '.join(a['provider'] for a in attempts)}",
            attempts=attempts,
        )

    def stream(
        self,
        messages: ChatMessages,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        provider: Optional[str] = None,
    ) -> Iterator[str]:
        """
        Stream text deltas.

        Falls back to the next provider only while nothing has been emitted yet.
        """
        attempts = []
        for candidate, candidate_model in self.provider_chain(model, provider):
            emitted = False
            try:
                for delta in candidate.stream(messages, candidate_model, max_tokens, temperature):
                    emitted = True
                    yield delta
                return
            except Exception as e:
                if emitted:
                    raise LLMRequestError(f"Stream from {candidate.name} interrupted: {e}") from e
                attempts.append({"provider": candidate.name, "error": str(e)})
                logger.warning(f"Streaming provider {candidate.name} failed, trying next: {e}")

        raise LLMRequestError("All streaming providers failed", attempts=attempts)

    def embed(
        self,
        texts: List[str],
        model: Optional[str] = None,
        provider: Optional[str] = None,
        fallback: bool = True,
    ) -> EmbeddingResult:
        """
        Embeddings with fallback.

        Raises:
            EmbeddingProviderError: Every provider failed
        """
        primary = self.primary_for(model, provider)
        last_error = "no configured provider"
        for candidate, candidate_model in self.provider_chain(model, provider, fallback):
            try:
                vectors = candidate.embed(texts, candidate_model)
            except Exception as e:
                last_error = str(e)
                logger.warning(f"Embedding provider {candidate.name} failed: {e}")
                continue
            return EmbeddingResult(
                vectors=vectors,
                model=candidate_model or candidate.default_embedding_model,
                provider=candidate.name,
            )
        raise EmbeddingProviderError(primary, last_error)

    def configured_providers(self) -> List[str]:
        return self.registry.configured()

    @property
    def model_name(self) -> str:
        """Return the default model of the primary provider."""
        primary = self.registry.get(self.config.provider)
        return primary.default_model if primary else ""

    @property
    def provider_name(self) -> str:
        return self.config.provider
