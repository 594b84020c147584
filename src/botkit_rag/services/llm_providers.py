"""Chat completion and embedding providers.

Every backend conforms to ``LLMProvider`` (complete, stream, embed) and is
selected by name through ``get_llm_provider``:

- litellm: model-agnostic routing through LiteLLM (default)
- openai: the OpenAI client used directly
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import litellm
from openai import OpenAI
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from botkit_rag.config import Settings, get_settings
from botkit_rag.models.conversation import CompletionResult
from botkit_rag.utils.errors import LLMProviderError
from botkit_rag.utils.logging import get_logger

logger = get_logger("llm_providers")

StreamCallback = Callable[[str], None]


def _usage_dict(usage: Any) -> Dict[str, int]:
    if usage is None:
        return {}
    if isinstance(usage, dict):
        source = usage
    else:
        source = {
            key: getattr(usage, key, None)
            for key in ("prompt_tokens", "completion_tokens", "total_tokens")
        }
    return {key: int(value) for key, value in source.items() if isinstance(value, (int, float))}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class LLMProvider(ABC):
    """Capability interface shared by all provider backends."""

    name: str = "base"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.default_model = self.settings.llm.default_model
        self.fallback_model = self.settings.llm.fallback_model
        self.embedding_model = self.settings.embedding.embedding_model

    def _retrying(self, attempts: Optional[int] = None) -> Retrying:
        return Retrying(
            reraise=True,
            stop=stop_after_attempt(max(1, attempts or self.settings.llm.max_retries)),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(LLMProviderError),
        )

    def _params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "model": params.pop("model", None) or self.default_model,
            "max_tokens": params.pop("max_tokens", None) or self.settings.llm.max_tokens,
            "temperature": (
                params.pop("temperature")
                if params.get("temperature") is not None
                else self.settings.llm.temperature
            ),
        }

    def complete(self, messages: List[Dict[str, str]], **params: Any) -> CompletionResult:
        """Generate a completion, retrying transient failures and falling back once."""
        resolved = self._params(dict(params))
        model = resolved["model"]
        try:
            for attempt in self._retrying():
                with attempt:
                    return self._complete(messages, **resolved)
        except LLMProviderError as e:
            if not self.fallback_model or self.fallback_model == model:
                raise
            logger.warning(
                f"Primary model {model} failed, attempting fallback: {self.fallback_model}",
                extra={"extra_fields": {"primary_model": model, "error": str(e)}},
            )
            resolved["model"] = self.fallback_model
            for attempt in self._retrying():
                with attempt:
                    return self._complete(messages, **resolved)
        raise LLMProviderError("LLM retries exhausted", model=model)

    def stream(
        self, messages: List[Dict[str, str]], callback: StreamCallback, **params: Any
    ) -> CompletionResult:
        """Stream a completion, calling ``callback`` with each content delta.

        Streams are not retried once output has started.
        """
        resolved = self._params(dict(params))
        return self._stream(messages, callback, **resolved)

    def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        """Embed a batch of texts; the result is aligned with the input order."""
        if not texts:
            return []
        model = model or self.embedding_model
        for attempt in self._retrying(self.settings.embedding.embedding_max_retries):
            with attempt:
                vectors = self._embed(texts, model)
        if len(vectors) != len(texts):
            raise LLMProviderError(
                "Embedding response size mismatch",
                model=model,
                details={"expected": len(texts), "got": len(vectors)},
            )
        return vectors

    @abstractmethod
    def _complete(self, messages: List[Dict[str, str]], **params: Any) -> CompletionResult:
        ...

    @abstractmethod
    def _stream(
        self, messages: List[Dict[str, str]], callback: StreamCallback, **params: Any
    ) -> CompletionResult:
        ...

    @abstractmethod
    def _embed(self, texts: List[str], model: str) -> List[List[float]]:
        ...


class LiteLLMProvider(LLMProvider):
    """Provider routed through LiteLLM."""

    name = "litellm"

    def _credentials(self) -> Dict[str, Any]:
        creds: Dict[str, Any] = {"timeout": self.settings.llm.timeout}
        if self.settings.llm.api_key:
            creds["api_key"] = self.settings.llm.api_key
        if self.settings.llm.api_base:
            creds["api_base"] = self.settings.llm.api_base
        return creds

    def _complete(self, messages: List[Dict[str, str]], **params: Any) -> CompletionResult:
        model = params["model"]
        try:
            logger.debug(f"Calling LLM model: {model}, stream=False")
            response = litellm.completion(messages=messages, **params, **self._credentials())
        except Exception as e:
            logger.error(f"LLM call failed for model {model}: {e}")
            raise LLMProviderError(
                f"LLM call failed: {e}",
                model=model,
                details={"error_type": type(e).__name__},
            ) from e

        choice = response.choices[0]
        content = _field(_field(choice, "message"), "content") or ""
        return CompletionResult(
            response=content,
            usage=_usage_dict(_field(response, "usage")),
            model=_field(response, "model") or model,
        )

    def _stream(
        self, messages: List[Dict[str, str]], callback: StreamCallback, **params: Any
    ) -> CompletionResult:
        model = params["model"]
        parts: List[str] = []
        usage: Dict[str, int] = {}
        try:
            logger.debug(f"Calling LLM model: {model}, stream=True")
            response = litellm.completion(
                messages=messages,
                stream=True,
                stream_options={"include_usage": True},
                **params,
                **self._credentials(),
            )
            for chunk in response:
                choices = _field(chunk, "choices") or []
                if choices:
                    delta = _field(_field(choices[0], "delta"), "content")
                    if delta:
                        parts.append(delta)
                        callback(delta)
                chunk_usage = _usage_dict(_field(chunk, "usage"))
                if chunk_usage:
                    usage = chunk_usage
        except Exception as e:
            logger.error(f"LLM stream failed for model {model}: {e}")
            raise LLMProviderError(f"LLM stream failed: {e}", model=model) from e
        return CompletionResult(response="".join(parts), usage=usage, model=model)

    def _embed(self, texts: List[str], model: str) -> List[List[float]]:
        kwargs: Dict[str, Any] = {"timeout": self.settings.embedding.embedding_timeout}
        if self.settings.embedding.openai_api_key:
            kwargs["api_key"] = self.settings.embedding.openai_api_key
        if self.settings.embedding.openai_base_url:
            kwargs["api_base"] = self.settings.embedding.openai_base_url
        try:
            response = litellm.embedding(model=model, input=texts, **kwargs)
        except Exception as e:
            raise LLMProviderError(f"Embedding request failed: {e}", model=model) from e
        data = sorted(_field(response, "data") or [], key=lambda d: _field(d, "index", 0))
        return [list(_field(item, "embedding")) for item in data]


class OpenAIProvider(LLMProvider):
    """Provider using the OpenAI client directly."""

    name = "openai"

    def __init__(self, settings: Optional[Settings] = None, client: Optional[OpenAI] = None):
        super().__init__(settings)
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is not None:
            return self._client
        api_key = self.settings.llm.api_key or self.settings.embedding.openai_api_key
        if not api_key:
            raise LLMProviderError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
        self._client = OpenAI(
            api_key=api_key,
            base_url=self.settings.llm.api_base or self.settings.embedding.openai_base_url,
            timeout=self.settings.llm.timeout,
            max_retries=0,
        )
        return self._client

    def _complete(self, messages: List[Dict[str, str]], **params: Any) -> CompletionResult:
        model = params["model"]
        client = self._get_client()
        try:
            response = client.chat.completions.create(messages=messages, **params)
        except Exception as e:
            logger.error(f"OpenAI completion failed for model {model}: {e}")
            raise LLMProviderError(f"LLM call failed: {e}", model=model) from e
        return CompletionResult(
            response=response.choices[0].message.content or "",
            usage=_usage_dict(response.usage),
            model=response.model or model,
        )

    def _stream(
        self, messages: List[Dict[str, str]], callback: StreamCallback, **params: Any
    ) -> CompletionResult:
        model = params["model"]
        client = self._get_client()
        parts: List[str] = []
        usage: Dict[str, int] = {}
        try:
            stream = client.chat.completions.create(
                messages=messages, stream=True, stream_options={"include_usage": True}, **params
            )
            for chunk in stream:
                if chunk.choices:
                    delta = chunk.choices[0].delta.content
                    if delta:
                        parts.append(delta)
                        callback(delta)
                if getattr(chunk, "usage", None):
                    usage = _usage_dict(chunk.usage)
        except Exception as e:
            logger.error(f"OpenAI stream failed for model {model}: {e}")
            raise LLMProviderError(f"LLM stream failed: {e}", model=model) from e
        return CompletionResult(response="".join(parts), usage=usage, model=model)

    def _embed(self, texts: List[str], model: str) -> List[List[float]]:
        client = self._get_client()
        try:
            response = client.embeddings.create(model=model, input=texts)
        except Exception as e:
            raise LLMProviderError(f"Embedding request failed: {e}", model=model) from e
        return [list(item.embedding) for item in sorted(response.data, key=lambda d: d.index)]


_PROVIDERS = {
    LiteLLMProvider.name: LiteLLMProvider,
    OpenAIProvider.name: OpenAIProvider,
}


def get_llm_provider(name: Optional[str] = None, settings: Optional[Settings] = None) -> LLMProvider:
    """Build the provider registered under ``name`` (defaults to LLM_PROVIDER)."""
    settings = settings or get_settings()
    key = (name or settings.llm.provider).lower()
    provider_cls = _PROVIDERS.get(key)
    if provider_cls is None:
        raise LLMProviderError(
            f"Unknown LLM provider: {key}",
            details={"valid": sorted(_PROVIDERS)},
        )
    return provider_cls(settings=settings)
