"""
Ingestion Pipeline

Turns a source file or raw text into a stored document, its chunk rows and
one vector per chunk:

    1. reject text shorter than the minimum length
    2. insert the document placeholder row (stable id for chunks to reference)
    3. chunk, embed, build VectorRecords with id "{documentId}-chunk-{i}"
    4. upsert vectors
    5. write chunk rows and final counts in one transaction

If anything after step 2 fails the vectors already written are removed, the
placeholder row is deleted and the error is re-raised, so a document is only
ever visible with chunks_count == vectors_count == stored chunk rows.
"""

import os
import time
import logging
from datetime import date
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Union

from .chunker import TextChunker, extract_section
from .document_parser import detect_file_type, extract_text, extract_html_text
from .document_store import DocumentStore, LegalDocument, DocumentChunk, vector_id_for
from .embeddings import EmbeddingService
from .errors import (
    ConfigurationError,
    ContentTooShortError,
    DocumentNotFoundError,
    ExtractionError,
    ProviderAuthError,
    VectorIndexError,
)
from .metrics import get_metrics_collector
from .vector_index import VectorRecord

logger = logging.getLogger(__name__)


@dataclass
class IngestionConfig:
    min_content_length: int = 100
    namespace: str = "default"

    @classmethod
    def from_env(cls) -> "IngestionConfig":
        return cls(
            min_content_length=int(os.getenv("MIN_CONTENT_LENGTH", "100")),
            namespace=os.getenv("VECTOR_NAMESPACE", "default"),
        )


@dataclass
class DocumentMetadata:
    """Caller-supplied metadata for a document being ingested."""
    title: str
    document_type: str
    category: str
    uploaded_by: str
    citation: Optional[str] = None
    source_url: Optional[str] = None
    effective_date: Optional[date] = None


@dataclass
class IngestionResult:
    document_id: str
    chunks_processed: int
    vectors_created: int
    fallback_vectors: int = 0

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "chunks_processed": self.chunks_processed,
            "vectors_created": self.vectors_created,
            "fallback_vectors": self.fallback_vectors,
        }


@dataclass
class BatchIngestionReport:
    """Per-file outcome of a bulk or folder ingestion."""
    successful: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    @property
    def summary(self) -> dict:
        return {
            "total": len(self.successful) + len(self.failed),
            "successful": len(self.successful),
            "failed": len(self.failed),
            "total_chunks": sum(s["chunks"] for s in self.successful),
            "total_vectors": sum(s["vectors"] for s in self.successful),
        }

    def to_dict(self) -> dict:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "summary": self.summary,
        }


class IngestionPipeline:
    """
    Extract, chunk, embed and index legal documents.

    Usage:
        pipeline = IngestionPipeline(store, vector_index, embeddings)
        result = pipeline.ingest_file("constitution.pdf", metadata)
        report = pipeline.ingest_folder("docs/", "ACT", "Statutes", uploaded_by=user_id)
    """

    def __init__(
        self,
        store: DocumentStore,
        vector_index,
        embeddings: EmbeddingService,
        chunker: Optional[TextChunker] = None,
        config: Optional[IngestionConfig] = None,
    ):
        self.store = store
        self.vector_index = vector_index
        self.embeddings = embeddings
        self.chunker = chunker or TextChunker()
        self.config = config or IngestionConfig()
        self._metrics = get_metrics_collector()

    # =========================================================================
    # Single document
    # =========================================================================

    def ingest(
        self,
        source: Union[str, Path, bytes],
        metadata: DocumentMetadata,
        file_type: Optional[str] = None,
    ) -> IngestionResult:
        """
        Ingest a file path, raw bytes, or (when file_type is None) raw text.

        Args:
            source: File path or contents; plain text when file_type is None
            metadata: Document metadata
            file_type: "pdf", "docx", "html" or "txt"
        """
        if file_type is None and isinstance(source, str):
            return self.ingest_document_text(source, metadata)
        if isinstance(source, bytes):
            return self.ingest_document_text(extract_text(source, file_type), metadata)
        return self.ingest_file(source, metadata, file_type=file_type)

    def ingest_file(
        self,
        file_path: Union[str, Path],
        metadata: DocumentMetadata,
        file_type: Optional[str] = None,
    ) -> IngestionResult:
        """Extract a stored file and ingest it, recording its path, name and size."""
        path = Path(file_path)
        file_type = file_type or detect_file_type(path.name)
        text = extract_text(path, file_type)
        file_info = {
            "file_path": str(path),
            "file_name": path.name,
            "file_size": path.stat().st_size,
        }
        return self.ingest_document_text(text, metadata, file_info=file_info)

    def ingest_html(self, html: str, metadata: DocumentMetadata) -> IngestionResult:
        return self.ingest_document_text(extract_html_text(html), metadata)

    def ingest_document_text(
        self,
        text: str,
        metadata: DocumentMetadata,
        file_info: Optional[dict] = None,
    ) -> IngestionResult:
        """
        Chunk, embed and store one document.

        Args:
            text: Extracted document text
            metadata: Document metadata
            file_info: Optional {"file_path", "file_name", "file_size"} written on completion

        Returns:
            IngestionResult with chunks_processed == vectors_created

        Raises:
            ContentTooShortError: text below the minimum length
            DuplicateDocumentError: source_url already stored
            ProviderError / VectorIndexError: embedding or index failure
        """
        content = (text or "").strip()
        if len(content) < self.config.min_content_length:
            raise ContentTooShortError(len(content), self.config.min_content_length)

        start = time.time()
        document = self.store.create_document(LegalDocument(
            title=metadata.title,
            document_type=metadata.document_type,
            category=metadata.category,
            uploaded_by=metadata.uploaded_by,
            citation=metadata.citation,
            source_url=metadata.source_url,
            effective_date=metadata.effective_date,
        ))
        document_id = document.id
        vectors_written = False

        try:
            chunks = self.chunker.chunk_text(content)
            logger.info(f"Document {document_id} '{metadata.title[:60]}': {len(chunks)} chunks")

            embedded = self.embeddings.generate_embeddings_batch([c.text for c in chunks])

            records = []
            rows = []
            for chunk, result in zip(chunks, embedded):
                vector_id = vector_id_for(document_id, chunk.index)
                section = extract_section(chunk.text)
                records.append(VectorRecord(
                    id=vector_id,
                    values=result.vector,
                    metadata={
                        "documentId": document_id,
                        "chunkIndex": chunk.index,
                        "documentTitle": metadata.title,
                        "documentType": metadata.document_type,
                        "category": metadata.category,
                        "citation": metadata.citation,
                        "section": section,
                        "text": chunk.text,
                        "embeddingProvider": result.provider,
                    },
                ))
                rows.append(DocumentChunk(
                    document_id=document_id,
                    chunk_index=chunk.index,
                    chunk_text=chunk.text,
                    vector_id=vector_id,
                    token_count=chunk.token_count,
                    section=section,
                    embedding_provider=result.provider,
                ))

            vectors_written = True
            self.vector_index.upsert_vectors(records, namespace=self.config.namespace)

            file_info = file_info or {}
            self.store.complete_document(
                document_id,
                rows,
                file_path=file_info.get("file_path"),
                file_name=file_info.get("file_name"),
                file_size=file_info.get("file_size"),
            )
        except Exception as e:
            logger.error(f"Ingestion failed for document {document_id}: {type(e).__name__}: {e}")
            self._metrics.record_ingestion_failure(type(e).__name__)
            self._rollback(document_id, vectors_written)
            raise

        duration_ms = (time.time() - start) * 1000
        fallback_count = sum(1 for r in embedded if r.fallback)
        if fallback_count:
            logger.warning(
                f"Document {document_id}: {fallback_count}/{len(rows)} chunks "
                f"embedded by a fallback provider"
            )
        self._metrics.record_ingestion(document_id, len(rows), duration_ms)
        logger.info(
            f"Ingested document {document_id}: {len(rows)} chunks, "
            f"{len(records)} vectors in {duration_ms:.0f}ms"
        )
        return IngestionResult(
            document_id=document_id,
            chunks_processed=len(rows),
            vectors_created=len(records),
            fallback_vectors=fallback_count,
        )

    def _rollback(self, document_id: str, vectors_written: bool) -> None:
        """Best-effort removal of a partially ingested document."""
        if vectors_written:
            try:
                self.vector_index.delete_by_document_id(document_id, namespace=self.config.namespace)
            except VectorIndexError as e:
                logger.error(f"Vector cleanup failed for {document_id}, orphans may remain: {e}")
        try:
            self.store.delete_document(document_id)
        except Exception as e:
            logger.error(f"Placeholder cleanup failed for {document_id}: {e}")

    # =========================================================================
    # Bulk
    # =========================================================================

    def ingest_files(
        self,
        file_paths: list[Union[str, Path]],
        document_type: str,
        category: str,
        uploaded_by: str,
        citation: Optional[str] = None,
    ) -> BatchIngestionReport:
        """
        Ingest several files sharing type/category. Titles come from file names.

        Per-file failures are recorded in the report and do not stop the batch;
        credential and configuration errors are raised.
        """
        report = BatchIngestionReport()
        for file_path in file_paths:
            path = Path(file_path)
            metadata = DocumentMetadata(
                title=path.stem,
                document_type=document_type,
                category=category,
                uploaded_by=uploaded_by,
                citation=citation,
            )
            try:
                result = self.ingest_file(path, metadata)
            except (ProviderAuthError, ConfigurationError):
                raise
            except Exception as e:
                logger.error(f"Failed to ingest {path.name}: {e}")
                report.failed.append({"filename": path.name, "error": str(e)})
                continue
            report.successful.append({
                "filename": path.name,
                "document_id": result.document_id,
                "chunks": result.chunks_processed,
                "vectors": result.vectors_created,
            })

        summary = report.summary
        logger.info(
            f"Bulk ingestion: {summary['successful']}/{summary['total']} succeeded, "
            f"{summary['total_chunks']} chunks"
        )
        return report

    def ingest_folder(
        self,
        folder: Union[str, Path],
        document_type: str,
        category: str,
        uploaded_by: str,
        recursive: bool = False,
    ) -> BatchIngestionReport:
        """Ingest every supported file in a folder."""
        root = Path(folder)
        if not root.is_dir():
            raise ExtractionError(f"Not a directory: {root}")
        pattern = "**/*" if recursive else "*"
        files = sorted(
            p for p in root.glob(pattern)
            if p.is_file() and p.suffix.lower() in (".pdf", ".docx", ".html", ".htm", ".txt")
        )
        logger.info(f"Found {len(files)} files in {root}")
        return self.ingest_files(files, document_type, category, uploaded_by)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def reindex_document(self, document_id: str) -> IngestionResult:
        """
        Re-extract and re-embed a stored document from its saved file.

        The file is read before anything is deleted. The document keeps its
        metadata but receives a new id.
        """
        document = self.store.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        if not document.file_path or not Path(document.file_path).exists():
            raise ExtractionError("Document file not found. Cannot re-index.")

        logger.info(f"Re-indexing document: {document.title}")
        path = Path(document.file_path)
        text = extract_text(path, detect_file_type(path.name))

        self.delete_document(document_id)
        return self.ingest_document_text(
            text,
            DocumentMetadata(
                title=document.title,
                document_type=document.document_type,
                category=document.category,
                uploaded_by=document.uploaded_by,
                citation=document.citation,
                source_url=document.source_url,
                effective_date=document.effective_date,
            ),
            file_info={
                "file_path": document.file_path,
                "file_name": document.file_name,
                "file_size": document.file_size,
            },
        )

    def delete_document(self, document_id: str) -> bool:
        """Remove a document's vectors, then its row (chunk rows cascade)."""
        removed = self.vector_index.delete_by_document_id(document_id, namespace=self.config.namespace)
        logger.info(f"Removed {removed} vectors for document {document_id}")
        return self.store.delete_document(document_id)

    def list_documents(
        self,
        document_type: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 50,
    ) -> list[LegalDocument]:
        return self.store.list_documents(document_type=document_type, category=category, limit=limit)

    def get_stats(self) -> dict:
        """Relational totals next to index totals, with a consistency flag."""
        stats = self.store.get_stats()
        index_stats = self.vector_index.get_stats(namespace=self.config.namespace)
        indexed = index_stats.get("namespace_vector_count", index_stats.get("total_vector_count", 0))
        stats["index"] = index_stats
        stats["consistent"] = indexed == stats["total_vectors"]
        return stats
