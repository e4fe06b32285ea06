"""
Service container.

Builds every component once at process startup and wires them together
explicitly, so entry points share one set of clients and tests can pass
their own doubles.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from .chunker import ChunkConfig, TextChunker
from .crawler import CrawlConfig, LegalDocumentCrawler
from .document_store import DocumentStore, DocumentStoreConfig
from .embeddings import EmbeddingConfig, EmbeddingService, get_embedding_service
from .errors import ConfigurationError
from .ingestion import IngestionConfig, IngestionPipeline
from .rag import LegalAssistant, RAGConfig, RAGService
from .scheduler import CrawlerScheduler, SchedulerConfig
from .vector_index import VectorIndexConfig, get_vector_index

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: DocumentStore
    vector_index: object
    embeddings: EmbeddingService
    pipeline: IngestionPipeline
    rag: RAGService
    assistant: LegalAssistant
    crawl_config: CrawlConfig

    def make_crawler(self) -> LegalDocumentCrawler:
        return LegalDocumentCrawler(self.pipeline, self.store, self.crawl_config)

    def make_scheduler(self, config: Optional[SchedulerConfig] = None) -> CrawlerScheduler:
        return CrawlerScheduler(self.make_crawler, config or SchedulerConfig.from_env())

    def close(self) -> None:
        self.store.close()
        self.vector_index.close()


def validate_environment(embedding_config: EmbeddingConfig, index_config: VectorIndexConfig) -> None:
    """
    Fail fast when required credentials are missing.

    Raises:
        ConfigurationError: listing every missing variable
    """
    missing = []
    if not os.getenv("OPENAI_API_KEY"):
        missing.append("OPENAI_API_KEY")
    if index_config.backend == "pgvector" and not (
        index_config.connection_string or os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL")
    ):
        missing.append("POSTGRES_URL")
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}", missing=missing
        )

    for name, env_var in (("voyage", "VOYAGE_API_KEY"), ("cohere", "COHERE_API_KEY")):
        if name in embedding_config.providers and not os.getenv(env_var):
            logger.warning(f"{env_var} not set, '{name}' embedding fallback unavailable")


def build_services(
    store: Optional[DocumentStore] = None,
    vector_index=None,
    embeddings: Optional[EmbeddingService] = None,
    llm_client=None,
    validate: bool = True,
) -> Services:
    """Construct and wire all services from environment configuration."""
    embedding_config = EmbeddingConfig.from_env()
    index_config = VectorIndexConfig.from_env()
    if validate:
        validate_environment(embedding_config, index_config)

    if store is None:
        store = DocumentStore(DocumentStoreConfig())
        store.initialize_schema()
    vector_index = vector_index or get_vector_index(index_config)
    vector_index.initialize()
    embeddings = embeddings or get_embedding_service(embedding_config)

    pipeline = IngestionPipeline(
        store,
        vector_index,
        embeddings,
        chunker=TextChunker(ChunkConfig.from_env()),
        config=IngestionConfig.from_env(),
    )
    rag_config = RAGConfig.from_env()
    rag = RAGService(embeddings, vector_index, rag_config, llm_client=llm_client)
    logger.info(
        f"Services ready (index={index_config.backend}, "
        f"embeddings={','.join(p.name for p in embeddings.providers)}, rag_mode={rag_config.mode})"
    )
    return Services(
        store=store,
        vector_index=vector_index,
        embeddings=embeddings,
        pipeline=pipeline,
        rag=rag,
        assistant=LegalAssistant(rag, rag_config),
        crawl_config=CrawlConfig.from_env(),
    )
