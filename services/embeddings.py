"""Embedding providers.

Exactly one provider is active per process, chosen by EMBEDDING_PROVIDER and
built once at startup with build_embedding_provider(). The pipeline only talks
to the EmbeddingProvider protocol; retries and timeouts live there.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Protocol, Sequence, runtime_checkable

import httpx
import numpy as np

from core.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class EmbeddingProviderError(Exception):
    """The provider could not embed a batch."""


class TransientProviderError(EmbeddingProviderError):
    """Timeouts, cold starts, rate limits, 5xx. Worth one retry."""


class PermanentProviderError(EmbeddingProviderError):
    """Bad credentials or configuration. Retrying in this run won't help."""


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Turns a batch of texts into one fixed-length vector per text, in input order.

    The pipeline sends at most max_batch_size texts per call and waits
    request_delay seconds between calls.
    """

    name: str
    dimension: int
    max_batch_size: int
    request_delay: float

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        ...


class OpenAIEmbeddingProvider:
    name = "openai"
    max_batch_size = 2048
    request_delay = 0.0

    def __init__(self, api_key: str, model: str, dimension: int):
        from openai import AsyncOpenAI

        self.model = model
        self.dimension = dimension
        self._client = AsyncOpenAI(api_key=api_key, max_retries=0)

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        import openai

        try:
            resp = await self._client.embeddings.create(model=self.model, input=list(texts))
        except (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            raise TransientProviderError(f"OpenAI embeddings unavailable: {e}") from e
        except openai.APIStatusError as e:
            raise PermanentProviderError(f"OpenAI embeddings rejected request: {e.status_code} {e.message}") from e
        return [d.embedding for d in resp.data]


class HuggingFaceEmbeddingProvider:
    """Hugging Face Inference feature extraction, one text per request.

    Works without a token on the free tier (rate limited). 503 means the model
    is still loading.
    """

    name = "huggingface"
    max_batch_size = 1
    request_delay = 0.5

    def __init__(
        self,
        model: str,
        dimension: int,
        *,
        api_key: str | None = None,
        base_url: str = "https://router.huggingface.co/hf-inference/models",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model = model
        self.dimension = dimension
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._url = f"{base_url.rstrip('/')}/{model}/pipeline/feature-extraction"
        # The pipeline bounds each call; no client-side timeout of our own.
        self._client = httpx.AsyncClient(headers=headers, timeout=None, transport=transport)

    async def _embed_one(self, text: str) -> list[float]:
        try:
            resp = await self._client.post(self._url, json={"inputs": text})
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientProviderError(f"Hugging Face request failed: {e}") from e

        if resp.status_code == 503 or resp.status_code == 429 or resp.status_code >= 500:
            raise TransientProviderError(f"Hugging Face unavailable ({resp.status_code}): {resp.text[:100]}")
        if resp.status_code >= 400:
            if "loading" in resp.text.lower():
                raise TransientProviderError(f"Model loading: {resp.text[:100]}")
            raise PermanentProviderError(f"Hugging Face rejected request ({resp.status_code}): {resp.text[:100]}")

        data = resp.json()
        if isinstance(data, list) and data and isinstance(data[0], (int, float)):
            return [float(x) for x in data]
        if isinstance(data, list) and data and isinstance(data[0], list):
            # Sometimes returns nested array
            return [float(x) for x in data[0]]
        raise PermanentProviderError(f"Unexpected response format: {str(data)[:100]}")

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        return [await self._embed_one(t) for t in texts]

    async def aclose(self) -> None:
        await self._client.aclose()


class HashEmbeddingProvider:
    """Deterministic pseudo-embeddings so local/dev works without external keys."""

    name = "hash"
    max_batch_size = 512
    request_delay = 0.0

    def __init__(self, dimension: int):
        self.dimension = dimension

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        out: list[list[float]] = []
        for t in texts:
            seed = int.from_bytes(hashlib.sha256(t.encode("utf-8")).digest()[:4], "big")
            rng = np.random.default_rng(seed)
            v = rng.normal(size=(self.dimension,)).astype(np.float32)
            v /= np.linalg.norm(v) + 1e-8
            out.append(v.tolist())
        return out


def build_embedding_provider(settings: Settings = default_settings) -> EmbeddingProvider:
    """Build the single configured provider. Raises ValueError on bad configuration."""
    name = settings.embedding_provider.lower()
    if name == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY not set. Set it in .env or switch to the huggingface provider.")
        provider = OpenAIEmbeddingProvider(settings.openai_api_key, settings.embedding_model, settings.embedding_dim)
    elif name == "huggingface":
        provider = HuggingFaceEmbeddingProvider(
            settings.hf_embedding_model,
            settings.embedding_dim,
            api_key=settings.hugging_face_api_key,
            base_url=settings.hf_inference_url,
        )
    elif name == "hash":
        provider = HashEmbeddingProvider(settings.embedding_dim)
    else:
        raise ValueError(f"Unknown EMBEDDING_PROVIDER {settings.embedding_provider!r} (openai | huggingface | hash)")

    logger.info("Embedding provider: %s (dim=%d)", provider.name, provider.dimension)
    return provider
