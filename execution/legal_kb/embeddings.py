"""
Embedding Service for the Legal Knowledge Base

Turns chunk text into fixed-length vectors through an ordered chain of
providers. Each provider returns a tagged outcome; the service walks the
chain until one succeeds:

    openai     -- text-embedding-3-small, 1536 dims (primary)
    voyage     -- voyage-law-2, 1024 dims, zero-padded to 1536
    cohere     -- embed-english-v3.0, 1024 dims, zero-padded (optional tier)
    synthetic  -- deterministic character-hash vector, unit length

The chain is configured by name (EMBEDDING_PROVIDERS), so adding or removing
a tier is a configuration change. Every vector carries the name of the
provider that produced it so fallback vectors can be found and re-embedded.
"""

import os
import time
import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .errors import (
    ProviderError,
    ProviderAuthError,
    ProviderUnavailableError,
    classify_provider_error,
)
from .metrics import get_metrics_collector

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_CHAIN = ["openai", "voyage", "synthetic"]


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding provider chain."""
    providers: list[str] = field(default_factory=lambda: list(DEFAULT_PROVIDER_CHAIN))
    dimensions: int = 1536
    openai_model: str = "text-embedding-3-small"
    voyage_model: str = "voyage-law-2"
    cohere_model: str = "embed-english-v3.0"
    batch_size: int = 100
    batch_delay_seconds: float = 0.1  # pause between batches

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        chain = os.getenv("EMBEDDING_PROVIDERS")
        return cls(
            providers=(
                [p.strip().lower() for p in chain.split(",") if p.strip()]
                if chain else list(DEFAULT_PROVIDER_CHAIN)
            ),
            dimensions=int(os.getenv("EMBEDDING_DIMENSIONS", "1536")),
            openai_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            voyage_model=os.getenv("VOYAGE_EMBEDDING_MODEL", "voyage-law-2"),
            cohere_model=os.getenv("COHERE_EMBEDDING_MODEL", "embed-english-v3.0"),
            batch_size=int(os.getenv("EMBEDDING_BATCH_SIZE", "100")),
            batch_delay_seconds=float(os.getenv("EMBEDDING_BATCH_DELAY", "0.1")),
        )


@dataclass
class EmbeddingOutcome:
    """Tagged result of one provider call: ok with vectors, or err with a reason."""
    ok: bool
    provider: str
    vectors: list[list[float]] = field(default_factory=list)
    reason: str = ""
    error: Optional[ProviderError] = None

    @classmethod
    def success(cls, provider: str, vectors: list[list[float]]) -> "EmbeddingOutcome":
        return cls(ok=True, provider=provider, vectors=vectors)

    @classmethod
    def failure(cls, provider: str, error: ProviderError) -> "EmbeddingOutcome":
        return cls(ok=False, provider=provider, reason=str(error), error=error)


@dataclass
class EmbeddingResult:
    """One embedded text and the provider that produced it."""
    vector: list[float]
    provider: str
    fallback: bool = False


def pad_vector(vector: list[float], dimensions: int) -> list[float]:
    """Zero-pad a shorter vector to the index dimensionality."""
    if len(vector) > dimensions:
        raise ValueError(f"Vector has {len(vector)} dims, index expects {dimensions}")
    if len(vector) == dimensions:
        return list(vector)
    return list(vector) + [0.0] * (dimensions - len(vector))


class EmbeddingProvider:
    """
    Base class for one tier of the provider chain.

    Subclasses implement:
    - _init_client(): build the SDK client (leave None when not configured)
    - _call(texts, input_type): return raw vectors, raising SDK errors

    And set these class attributes:
    - name: provider key used in EMBEDDING_PROVIDERS and vector metadata
    - native_dimensions: size of the vectors the model returns
    - _env_var_name: environment variable holding the API key
    """

    name: str = "base"
    native_dimensions: int = 0
    _env_var_name: str = ""

    def __init__(self, config: Optional[EmbeddingConfig] = None, api_key: Optional[str] = None):
        self.config = config or EmbeddingConfig()
        if api_key is None and self._env_var_name:
            api_key = os.getenv(self._env_var_name)
        self._api_key = api_key
        self._client = None
        self._client_ready = False

    def _init_client(self):
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _call(self, texts: list[str], input_type: str) -> list[list[float]]:
        raise NotImplementedError("Subclasses must implement _call()")

    def _get_client(self):
        if not self._client_ready:
            self._client_ready = True
            if self._api_key:
                self._init_client()
        return self._client

    def is_available(self) -> bool:
        return bool(self._api_key)

    def embed(self, texts: list[str], input_type: str = "document") -> EmbeddingOutcome:
        """Embed texts, converting any failure into an err outcome."""
        if not self.is_available():
            return EmbeddingOutcome.failure(
                self.name,
                ProviderUnavailableError(
                    f"{self.name}: {self._env_var_name} not set", provider=self.name
                ),
            )
        try:
            if self._get_client() is None:
                raise ProviderUnavailableError(
                    f"{self.name}: client not initialized", provider=self.name
                )
            raw = self._call(texts, input_type)
            if len(raw) != len(texts):
                raise ProviderUnavailableError(
                    f"{self.name}: returned {len(raw)} vectors for {len(texts)} texts",
                    provider=self.name,
                )
            vectors = [pad_vector(v, self.config.dimensions) for v in raw]
        except ValueError as e:
            return EmbeddingOutcome.failure(
                self.name, ProviderUnavailableError(f"{self.name}: {e}", provider=self.name)
            )
        except Exception as e:
            return EmbeddingOutcome.failure(self.name, classify_provider_error(e, self.name))
        return EmbeddingOutcome.success(self.name, vectors)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI text-embedding-3-small (1536 dims)."""

    name = "openai"
    native_dimensions = 1536
    _env_var_name = "OPENAI_API_KEY"

    def _init_client(self):
        from openai import OpenAI
        self._client = OpenAI(api_key=self._api_key)
        logger.info(f"OpenAI embedding client initialized with model {self.config.openai_model}")

    def _call(self, texts, input_type):
        kwargs = {}
        # text-embedding-3 models can shorten their output to fit a smaller index
        if (
            self.config.openai_model.startswith("text-embedding-3")
            and self.config.dimensions < self.native_dimensions
        ):
            kwargs["dimensions"] = self.config.dimensions
        response = self._client.embeddings.create(
            model=self.config.openai_model,
            input=texts,
            **kwargs,
        )
        data = sorted(response.data, key=lambda d: d.index)
        return [d.embedding for d in data]


class VoyageEmbeddingProvider(EmbeddingProvider):
    """Voyage AI voyage-law-2 (1024 dims)."""

    name = "voyage"
    native_dimensions = 1024
    _env_var_name = "VOYAGE_API_KEY"

    def _init_client(self):
        import voyageai
        self._client = voyageai.Client(api_key=self._api_key)
        logger.info(f"Voyage AI client initialized with model {self.config.voyage_model}")

    def _call(self, texts, input_type):
        response = self._client.embed(
            texts=texts,
            model=self.config.voyage_model,
            input_type=input_type,
        )
        return response.embeddings


class CohereEmbeddingProvider(EmbeddingProvider):
    """Cohere embed-english-v3.0 (1024 dims)."""

    name = "cohere"
    native_dimensions = 1024
    _env_var_name = "COHERE_API_KEY"

    def _init_client(self):
        import cohere
        self._client = cohere.Client(self._api_key)
        logger.info(f"Cohere client initialized with model {self.config.cohere_model}")

    def _call(self, texts, input_type):
        response = self._client.embed(
            texts=texts,
            model=self.config.cohere_model,
            input_type=f"search_{input_type}",
        )
        return response.embeddings


class SyntheticEmbeddingProvider(EmbeddingProvider):
    """
    Last-resort deterministic embedding.

    Derived from a character hash of the text and normalized to unit length.
    Always succeeds; search quality for these vectors is poor.
    """

    name = "synthetic"

    def is_available(self) -> bool:
        return True

    def _get_client(self):
        return self

    def _call(self, texts, input_type):
        return [self.vector_for(text) for text in texts]

    def vector_for(self, text: str) -> list[float]:
        h = 0
        for ch in text:
            h = (h * 31 + ord(ch)) & 0xFFFFFFFF
        seed = (h % 1_000_003) + 1
        positions = np.arange(1, self.config.dimensions + 1, dtype=np.float64)
        values = np.sin(seed * positions) + 0.5 * np.cos(positions / seed)
        norm = np.linalg.norm(values)
        return (values / norm).tolist()


PROVIDER_REGISTRY = {
    "openai": OpenAIEmbeddingProvider,
    "voyage": VoyageEmbeddingProvider,
    "cohere": CohereEmbeddingProvider,
    "synthetic": SyntheticEmbeddingProvider,
}


class EmbeddingService:
    """
    Walks the provider chain for every request.

    Rate-limit and availability failures move on to the next tier. An
    authentication failure is raised immediately. If every tier fails the
    last provider error is raised.

    Usage:
        service = get_embedding_service()
        result = service.generate_embedding("What is the penalty under Section 5?")
        results = service.generate_embeddings_batch(chunk_texts)
    """

    def __init__(self, providers: list[EmbeddingProvider], config: Optional[EmbeddingConfig] = None):
        if not providers:
            raise ValueError("At least one embedding provider is required")
        self.config = config or EmbeddingConfig()
        self.providers = providers
        self._metrics = get_metrics_collector()

    @property
    def dimensions(self) -> int:
        return self.config.dimensions

    @property
    def primary_provider(self) -> str:
        return self.providers[0].name

    def _embed_with_chain(self, texts: list[str], input_type: str) -> EmbeddingOutcome:
        last_error: Optional[ProviderError] = None
        for provider in self.providers:
            outcome = provider.embed(texts, input_type=input_type)
            if outcome.ok:
                fallback = provider is not self.providers[0]
                if fallback:
                    logger.warning(
                        f"Embedded {len(texts)} text(s) with fallback provider "
                        f"'{provider.name}' (primary '{self.primary_provider}' failed: {last_error})"
                    )
                self._metrics.record_embeddings(provider.name, len(texts), fallback=fallback)
                return outcome

            if isinstance(outcome.error, ProviderAuthError):
                logger.error(f"Embedding provider '{provider.name}' rejected credentials")
                self._metrics.record_error(type(outcome.error).__name__)
                raise outcome.error
            logger.warning(f"Embedding provider '{provider.name}' failed: {outcome.reason}")
            last_error = outcome.error

        self._metrics.record_error(type(last_error).__name__)
        raise last_error

    def generate_embedding(self, text: str, input_type: str = "document") -> EmbeddingResult:
        """
        Embed a single text.

        Args:
            text: Text to embed
            input_type: "document" for chunks, "query" for search queries

        Returns:
            EmbeddingResult with the vector and the provider that produced it
        """
        outcome = self._embed_with_chain([text], input_type)
        return EmbeddingResult(
            vector=outcome.vectors[0],
            provider=outcome.provider,
            fallback=outcome.provider != self.primary_provider,
        )

    def generate_embeddings_batch(self, texts: list[str]) -> list[EmbeddingResult]:
        """
        Embed many texts in fixed-size batches, preserving input order.

        A batch that fails on one tier is retried whole on the next tier.

        Args:
            texts: Texts to embed

        Returns:
            One EmbeddingResult per input, in input order
        """
        if not texts:
            return []

        size = self.config.batch_size
        batches = [texts[i:i + size] for i in range(0, len(texts), size)]
        logger.info(f"Embedding {len(texts)} texts in {len(batches)} batches")

        results: list[EmbeddingResult] = []
        for batch_idx, batch in enumerate(batches):
            if batch_idx > 0 and self.config.batch_delay_seconds > 0:
                time.sleep(self.config.batch_delay_seconds)
            outcome = self._embed_with_chain(batch, "document")
            fallback = outcome.provider != self.primary_provider
            results.extend(
                EmbeddingResult(vector=v, provider=outcome.provider, fallback=fallback)
                for v in outcome.vectors
            )
        return results


def get_embedding_service(config: Optional[EmbeddingConfig] = None) -> EmbeddingService:
    """
    Factory function to build the configured provider chain.

    Args:
        config: Optional configuration. Reads EMBEDDING_* env vars if not provided.

    Returns:
        EmbeddingService over the providers named in ``config.providers``
    """
    config = config or EmbeddingConfig.from_env()
    providers = []
    for name in config.providers:
        cls = PROVIDER_REGISTRY.get(name)
        if cls is None:
            raise ValueError(
                f"Unknown embedding provider '{name}'. "
                f"Choose from: {', '.join(PROVIDER_REGISTRY)}"
            )
        provider = cls(config)
        if not provider.is_available():
            logger.warning(f"Embedding provider '{name}' not configured, it will be skipped")
        providers.append(provider)
    return EmbeddingService(providers, config)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service()
    print(f"Provider chain: {[p.name for p in service.providers]}")

    query = " ".join(sys.argv[1:]) or "What is the limitation period for land disputes?"
    result = service.generate_embedding(query, input_type="query")
    print(f"Provider used: {result.provider} (fallback={result.fallback})")
    print(f"Embedding dimensions: {len(result.vector)}")
    print(f"First 10 values: {result.vector[:10]}")
