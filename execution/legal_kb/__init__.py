"""
Legal Knowledge Base - discovery, ingestion and RAG for Kenyan law

This package provides:
- A polite crawler that discovers judgments, bills and legal resources on
  allow-listed publisher sites
- An ingestion pipeline that extracts, chunks and embeds documents
- A namespaced pgvector similarity index
- A RAG orchestrator that answers questions grounded in retrieved sources
"""

from .chunker import TextChunker
from .crawler import LegalDocumentCrawler
from .document_store import DocumentStore
from .embeddings import EmbeddingService
from .ingestion import IngestionPipeline
from .rag import LegalAssistant, RAGService
from .scheduler import CrawlerScheduler
from .vector_index import PgVectorIndex

__all__ = [
    "TextChunker",
    "LegalDocumentCrawler",
    "DocumentStore",
    "EmbeddingService",
    "IngestionPipeline",
    "LegalAssistant",
    "RAGService",
    "CrawlerScheduler",
    "PgVectorIndex",
]

__version__ = "0.1.0"
