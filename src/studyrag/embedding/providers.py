"""Embedding providers.

Three backends share one async interface:

- ``openai``: native multi-input requests through the OpenAI SDK.
- ``ollama``: one HTTP request per text against a local Ollama server.
- ``local``: an in-process sentence-transformers model.

Every transport or response problem surfaces as ``EmbeddingProviderError``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, List, Sequence

import aiohttp
import openai
from sentence_transformers import SentenceTransformer

from studyrag.config import AppConfig
from studyrag.errors import EmbeddingProviderError, ValidationError

LOGGER = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openai", "ollama", "local")

OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingProvider(ABC):
    """Turns text into fixed-length vectors."""

    name: str = "base"
    native_batching: bool = False

    def __init__(self, *, batch_size: int, dimension: int | None = None) -> None:
        self.batch_size = batch_size
        self.dimension = dimension

    @abstractmethod
    async def embed_one(self, text: str) -> List[float]:
        """Embed a single text."""

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts; per-item providers fan out concurrently."""
        return list(await asyncio.gather(*(self.embed_one(text) for text in texts)))

    async def aclose(self) -> None:
        return None


class OpenAIEmbeddingProvider(EmbeddingProvider):
    name = "openai"
    native_batching = True

    def __init__(
        self,
        *,
        model: str = "text-embedding-3-small",
        batch_size: int = 16,
        timeout: float = 60.0,
        client: Any | None = None,
    ) -> None:
        super().__init__(batch_size=batch_size, dimension=OPENAI_DIMENSIONS.get(model))
        self.model = model
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = openai.AsyncOpenAI(timeout=self.timeout, max_retries=0)
            except openai.OpenAIError as exc:
                raise EmbeddingProviderError(f"OpenAI client unavailable: {exc}") from exc
        return self._client

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        try:
            response = await self.client.embeddings.create(model=self.model, input=list(texts))
        except openai.OpenAIError as exc:
            raise EmbeddingProviderError(f"OpenAI embedding request failed: {exc}") from exc

        data = getattr(response, "data", None)
        if not data:
            raise EmbeddingProviderError("OpenAI response contained no embeddings")
        ordered = sorted(data, key=lambda item: getattr(item, "index", 0))
        vectors = [getattr(item, "embedding", None) for item in ordered]
        if any(not vector for vector in vectors):
            raise EmbeddingProviderError("OpenAI response is missing an embedding field")
        return [list(vector) for vector in vectors]

    async def embed_one(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class OllamaEmbeddingProvider(EmbeddingProvider):
    name = "ollama"

    def __init__(
        self,
        *,
        base_url: str = "http://localhost:11434",
        model: str = "zylonai/multilingual-e5-large",
        batch_size: int = 4,
        timeout: float = 60.0,
    ) -> None:
        super().__init__(batch_size=batch_size)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

    async def _request(self, session: aiohttp.ClientSession, text: str) -> List[float]:
        url = f"{self.base_url}/api/embeddings"
        try:
            async with session.post(url, json={"model": self.model, "prompt": text}) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    LOGGER.error("Ollama embedding error (%s): %s", resp.status, body)
                    raise EmbeddingProviderError(f"Ollama embedding failed: {body}")
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise EmbeddingProviderError(f"Ollama request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingProviderError(f"Malformed Ollama response: {exc}") from exc

        embedding = payload.get("embedding") if isinstance(payload, dict) else None
        if not embedding:
            raise EmbeddingProviderError("No embedding in Ollama response")
        return [float(value) for value in embedding]

    async def embed_one(self, text: str) -> List[float]:
        async with self._session() as session:
            return await self._request(session, text)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        async with self._session() as session:
            return list(await asyncio.gather(*(self._request(session, t) for t in texts)))


@lru_cache(maxsize=2)
def _load_sentence_transformer(model_name: str) -> SentenceTransformer:
    LOGGER.info("Loading sentence-transformers model %s", model_name)
    return SentenceTransformer(model_name)


class LocalEmbeddingProvider(EmbeddingProvider):
    """Thin wrapper around ``SentenceTransformer`` running in a worker thread."""

    name = "local"
    native_batching = True

    def __init__(
        self, *, model_name: str, batch_size: int = 16, normalize: bool = True
    ) -> None:
        super().__init__(batch_size=batch_size)
        self.model_name = model_name
        self.normalize = normalize

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = _load_sentence_transformer(self.model_name)
        embeddings = model.encode(
            texts,
            batch_size=self.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.normalize,
        )
        return embeddings.astype("float32", copy=False).tolist()

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        try:
            return await asyncio.to_thread(self._encode, list(texts))
        except Exception as exc:
            raise EmbeddingProviderError(f"Local embedding failed: {exc}") from exc

    async def embed_one(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]


def create_provider(name: str | None, config: AppConfig) -> EmbeddingProvider:
    """Instantiate the embedding provider selected by ``name``."""
    name = (name or config.embedding_provider).strip().lower()
    if name == "openai":
        return OpenAIEmbeddingProvider(
            model=config.openai_embedding_model,
            batch_size=config.openai_batch_size,
            timeout=config.request_timeout_seconds,
        )
    if name == "ollama":
        return OllamaEmbeddingProvider(
            base_url=config.ollama_base_url,
            model=config.ollama_embedding_model,
            batch_size=config.ollama_batch_size,
            timeout=config.request_timeout_seconds,
        )
    if name == "local":
        return LocalEmbeddingProvider(
            model_name=config.local_model_name, batch_size=config.local_batch_size
        )
    raise ValidationError(f"Unsupported embedding provider: {name}")
