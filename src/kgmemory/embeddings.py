"""Embedding providers: text in, fixed-size vector out.

The default provider runs sentence-transformers locally; OpenAI is
available for hosted embeddings. Both are loaded lazily so importing this
module stays cheap.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from .config import Settings
from .errors import ConfigurationError, EmbeddingError

logger = logging.getLogger(__name__)

MODEL_DIMENSIONS = {
    "text-embedding-ada-002": 1536,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-004": 768,
    "textembedding-gecko": 768,
    "all-MiniLM-L6-v2": 384,
    "all-mpnet-base-v2": 768,
}


def vector_size_for_model(model_name: str) -> int | None:
    """Known dimensionality of a model, or None if unknown."""
    return MODEL_DIMENSIONS.get(model_name)


class Embedder(ABC):
    """Turns text into a vector of ``dimension`` floats."""

    model_name: str

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Vector size produced by this model."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed one text. Raises EmbeddingError on failure."""

    async def close(self) -> None:
        """Release provider resources."""


class SentenceTransformerEmbedder(Embedder):
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dims: int | None = None

    def _load_model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer(self.model_name)
                self._dims = self._model.get_sentence_embedding_dimension()
            except (ImportError, OSError, RuntimeError) as e:
                raise EmbeddingError(
                    f"Embedding model {self.model_name} failed to load: {e}"
                ) from e
            logger.info(f"Loaded embedding model {self.model_name} ({self._dims} dims)")
        return self._model

    @property
    def dimension(self) -> int:
        if self._dims is None:
            known = vector_size_for_model(self.model_name)
            if known is not None:
                return known
            self._load_model()
        return self._dims

    async def embed(self, text: str) -> list[float]:
        model = await asyncio.to_thread(self._load_model)
        try:
            vector = await asyncio.to_thread(model.encode, text)
        except (RuntimeError, ValueError, TypeError) as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e
        return vector.tolist()


class OpenAIEmbedder(Embedder):
    """Hosted embeddings through the OpenAI API."""

    def __init__(self, model_name: str, api_key: str, client=None):
        size = vector_size_for_model(model_name)
        if size is None:
            raise ConfigurationError(f"Unknown embedding model: {model_name}")
        self.model_name = model_name
        self._dims = size
        self._api_key = api_key
        self._client = client

    @property
    def dimension(self) -> int:
        return self._dims

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def embed(self, text: str) -> list[float]:
        import openai

        try:
            response = await self._get_client().embeddings.create(
                model=self.model_name, input=text
            )
        except openai.OpenAIError as e:
            raise EmbeddingError(f"OpenAI embedding failed: {e}") from e
        return list(response.data[0].embedding)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def create_embedder(settings: Settings) -> Embedder:
    """Build the configured embedding provider."""
    model = settings.resolved_embedding_model
    if settings.embedding_provider == "openai":
        if not settings.openai_api_key:
            raise ConfigurationError("OpenAI embeddings require OPENAI_API_KEY")
        return OpenAIEmbedder(model, settings.openai_api_key)
    return SentenceTransformerEmbedder(model)
