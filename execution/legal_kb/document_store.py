"""
Relational store for legal documents and their chunks.

Tables:
    legal_documents        -- one row per source document, source_url UNIQUE
    legal_document_chunks  -- one row per chunk, cascades on document delete
    service_accounts       -- accounts that own automated uploads (the crawler)

Dedup is enforced by the UNIQUE constraint on source_url: a second insert for
the same URL raises DuplicateDocumentError instead of relying on a prior read.
"""

import os
import uuid
import logging
from datetime import date, datetime
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional

import psycopg2
import psycopg2.errors

from .db import PostgresBackend
from .errors import DuplicateDocumentError

logger = logging.getLogger(__name__)


class DocumentType(str, Enum):
    CONSTITUTION = "CONSTITUTION"
    ACT = "ACT"
    LEGISLATION = "LEGISLATION"
    REGULATION = "REGULATION"
    STATUTORY_INSTRUMENT = "STATUTORY_INSTRUMENT"
    CASE_LAW = "CASE_LAW"
    PROCEDURE = "PROCEDURE"
    FORM = "FORM"
    GUIDELINE = "GUIDELINE"
    LEGAL_GUIDE = "LEGAL_GUIDE"
    TREATY = "TREATY"


def vector_id_for(document_id: str, chunk_index: int) -> str:
    """Deterministic vector id shared by the chunk row and its index entry."""
    return f"{document_id}-chunk-{chunk_index}"


@dataclass
class LegalDocument:
    """A persisted source document."""
    title: str
    document_type: str
    category: str
    uploaded_by: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    citation: Optional[str] = None
    source_url: Optional[str] = None
    file_path: Optional[str] = None
    file_name: Optional[str] = None
    file_size: int = 0
    chunks_count: int = 0
    vectors_count: int = 0
    uploaded_at: Optional[datetime] = None
    effective_date: Optional[date] = None

    def __post_init__(self):
        if isinstance(self.document_type, DocumentType):
            self.document_type = self.document_type.value

    @classmethod
    def from_row(cls, row: dict) -> "LegalDocument":
        return cls(
            id=str(row["id"]),
            title=row["title"],
            document_type=row["document_type"],
            category=row["category"],
            uploaded_by=row["uploaded_by"],
            citation=row.get("citation"),
            source_url=row.get("source_url"),
            file_path=row.get("file_path"),
            file_name=row.get("file_name"),
            file_size=row.get("file_size") or 0,
            chunks_count=row.get("chunks_count") or 0,
            vectors_count=row.get("vectors_count") or 0,
            uploaded_at=row.get("uploaded_at"),
            effective_date=row.get("effective_date"),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("uploaded_at", "effective_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class DocumentChunk:
    """One stored chunk. Immutable once written; removed with its document."""
    document_id: str
    chunk_index: int
    chunk_text: str
    vector_id: str
    token_count: int = 0
    section: Optional[str] = None
    embedding_provider: Optional[str] = None


@dataclass
class DocumentStoreConfig:
    connection_string: Optional[str] = None
    documents_table: str = "legal_documents"
    chunks_table: str = "legal_document_chunks"
    accounts_table: str = "service_accounts"


class DocumentStore(PostgresBackend):
    """
    PostgreSQL store for LegalDocument and DocumentChunk rows.

    Usage:
        store = DocumentStore()
        store.initialize_schema()
        doc = store.create_document(LegalDocument(title=..., ...))
        store.complete_document(doc.id, chunks, file_path=..., file_name=..., file_size=...)
    """

    def __init__(self, config: Optional[DocumentStoreConfig] = None):
        self.config = config or DocumentStoreConfig()
        super().__init__(self.config.connection_string)

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        docs = self.config.documents_table
        chunks = self.config.chunks_table
        schema_sql = f"""
        CREATE TABLE IF NOT EXISTS {docs} (
            id UUID PRIMARY KEY,
            title TEXT NOT NULL,
            document_type TEXT NOT NULL,
            category TEXT NOT NULL,
            citation TEXT,
            source_url TEXT UNIQUE,
            file_path TEXT,
            file_name TEXT,
            file_size BIGINT DEFAULT 0,
            chunks_count INT DEFAULT 0,
            vectors_count INT DEFAULT 0,
            uploaded_by TEXT NOT NULL,
            uploaded_at TIMESTAMPTZ DEFAULT NOW(),
            effective_date DATE
        );

        CREATE TABLE IF NOT EXISTS {chunks} (
            vector_id TEXT PRIMARY KEY,
            document_id UUID NOT NULL REFERENCES {docs}(id) ON DELETE CASCADE,
            chunk_index INT NOT NULL,
            chunk_text TEXT NOT NULL,
            token_count INT DEFAULT 0,
            section TEXT,
            embedding_provider TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (document_id, chunk_index)
        );

        CREATE TABLE IF NOT EXISTS {self.config.accounts_table} (
            id UUID PRIMARY KEY,
            email TEXT UNIQUE NOT NULL,
            display_name TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_{docs}_type ON {docs}(document_type);
        CREATE INDEX IF NOT EXISTS idx_{docs}_category ON {docs}(category);
        CREATE INDEX IF NOT EXISTS idx_{chunks}_document ON {chunks}(document_id);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
                conn.commit()
            logger.info("Document store schema initialized")

        self._execute_with_retry(_op, "initialize_schema")

    # =========================================================================
    # Documents
    # =========================================================================

    def create_document(self, document: LegalDocument) -> LegalDocument:
        """
        Insert the placeholder row that chunks will reference.

        Raises:
            DuplicateDocumentError: a row with the same source_url exists
        """
        sql = f"""
        INSERT INTO {self.config.documents_table}
            (id, title, document_type, category, citation, source_url,
             file_path, file_name, file_size, uploaded_by, effective_date)
        VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING uploaded_at
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (
                    document.id,
                    document.title,
                    document.document_type,
                    document.category,
                    document.citation,
                    document.source_url,
                    document.file_path,
                    document.file_name,
                    document.file_size,
                    document.uploaded_by,
                    document.effective_date,
                ))
                row = cur.fetchone()
                conn.commit()
            return row

        try:
            row = self._execute_with_retry(_op, "create_document")
        except psycopg2.errors.UniqueViolation:
            logger.info(f"Duplicate source URL rejected: {document.source_url}")
            raise DuplicateDocumentError(document.source_url)

        document.uploaded_at = row["uploaded_at"]
        return document

    def complete_document(
        self,
        document_id: str,
        chunks: list[DocumentChunk],
        file_path: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> None:
        """
        Write chunk rows and the final counts/file metadata in one transaction.

        chunks_count and vectors_count are both set to len(chunks).
        """
        from psycopg2.extras import execute_values

        chunk_sql = f"""
        INSERT INTO {self.config.chunks_table}
            (vector_id, document_id, chunk_index, chunk_text, token_count, section, embedding_provider)
        VALUES %s
        """
        update_sql = f"""
        UPDATE {self.config.documents_table} SET
            chunks_count = %s,
            vectors_count = %s,
            file_path = COALESCE(%s, file_path),
            file_name = COALESCE(%s, file_name),
            file_size = COALESCE(%s, file_size)
        WHERE id = %s::uuid
        """
        values = [
            (c.vector_id, c.document_id, c.chunk_index, c.chunk_text,
             c.token_count, c.section, c.embedding_provider)
            for c in chunks
        ]

        def _op(conn):
            with conn.cursor() as cur:
                if values:
                    execute_values(
                        cur, chunk_sql, values,
                        template="(%s, %s::uuid, %s, %s, %s, %s, %s)",
                        page_size=500,
                    )
                cur.execute(update_sql, (
                    len(chunks), len(chunks), file_path, file_name, file_size, document_id,
                ))
                conn.commit()
            logger.info(f"Stored {len(chunks)} chunks for document {document_id}")

        self._execute_with_retry(_op, "complete_document")

    def get_document(self, document_id: str) -> Optional[LegalDocument]:
        sql = f"SELECT * FROM {self.config.documents_table} WHERE id = %s::uuid"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                return cur.fetchone()

        row = self._execute_with_retry(_op, "get_document")
        return LegalDocument.from_row(row) if row else None

    def get_document_by_source_url(self, source_url: str) -> Optional[LegalDocument]:
        sql = f"SELECT * FROM {self.config.documents_table} WHERE source_url = %s"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (source_url,))
                return cur.fetchone()

        row = self._execute_with_retry(_op, "get_document_by_source_url")
        return LegalDocument.from_row(row) if row else None

    def list_documents(
        self,
        document_type: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 50,
    ) -> list[LegalDocument]:
        """Newest documents first, optionally filtered by type and category."""
        sql = f"SELECT * FROM {self.config.documents_table}"
        conditions = []
        params = []
        if document_type:
            conditions.append("document_type = %s")
            params.append(document_type)
        if category:
            conditions.append("category = %s")
            params.append(category)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY uploaded_at DESC LIMIT %s"
        params.append(limit)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchall()

        return [LegalDocument.from_row(r) for r in self._execute_with_retry(_op, "list_documents")]

    def delete_document(self, document_id: str) -> bool:
        """Delete a document; its chunk rows cascade. Returns False if not found."""
        sql = f"DELETE FROM {self.config.documents_table} WHERE id = %s::uuid"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                deleted = cur.rowcount > 0
                conn.commit()
            if deleted:
                logger.info(f"Deleted document {document_id}")
            else:
                logger.warning(f"Document {document_id} not found")
            return deleted

        return self._execute_with_retry(_op, "delete_document")

    # =========================================================================
    # Chunks
    # =========================================================================

    def get_chunks(self, document_id: str) -> list[DocumentChunk]:
        sql = f"""
        SELECT * FROM {self.config.chunks_table}
        WHERE document_id = %s::uuid
        ORDER BY chunk_index
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                return cur.fetchall()

        return [
            DocumentChunk(
                document_id=str(r["document_id"]),
                chunk_index=r["chunk_index"],
                chunk_text=r["chunk_text"],
                vector_id=r["vector_id"],
                token_count=r["token_count"] or 0,
                section=r["section"],
                embedding_provider=r["embedding_provider"],
            )
            for r in self._execute_with_retry(_op, "get_chunks")
        ]

    def count_chunks(self, document_id: str) -> int:
        sql = f"SELECT COUNT(*) AS count FROM {self.config.chunks_table} WHERE document_id = %s::uuid"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                return cur.fetchone()["count"]

        return int(self._execute_with_retry(_op, "count_chunks"))

    # =========================================================================
    # Service accounts and stats
    # =========================================================================

    def ensure_service_account(self, email: str, display_name: str) -> str:
        """Create the account if missing and return its id."""
        sql = f"""
        INSERT INTO {self.config.accounts_table} (id, email, display_name)
        VALUES (%s::uuid, %s, %s)
        ON CONFLICT (email) DO UPDATE SET display_name = EXCLUDED.display_name
        RETURNING id
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (str(uuid.uuid4()), email, display_name))
                row = cur.fetchone()
                conn.commit()
            return str(row["id"])

        return self._execute_with_retry(_op, "ensure_service_account")

    def get_stats(self) -> dict:
        """Totals plus per-type and per-category document counts."""
        docs = self.config.documents_table

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT COUNT(*) AS documents, "
                    f"COALESCE(SUM(chunks_count), 0) AS chunks, "
                    f"COALESCE(SUM(vectors_count), 0) AS vectors FROM {docs}"
                )
                totals = cur.fetchone()
                cur.execute(f"SELECT document_type, COUNT(*) AS count FROM {docs} GROUP BY document_type")
                by_type = cur.fetchall()
                cur.execute(f"SELECT category, COUNT(*) AS count FROM {docs} GROUP BY category")
                by_category = cur.fetchall()
            return totals, by_type, by_category

        totals, by_type, by_category = self._execute_with_retry(_op, "get_stats")
        return {
            "total_documents": int(totals["documents"]),
            "total_chunks": int(totals["chunks"]),
            "total_vectors": int(totals["vectors"]),
            "by_type": {r["document_type"]: int(r["count"]) for r in by_type},
            "by_category": {r["category"]: int(r["count"]) for r in by_category},
        }


# CLI for testing
if __name__ == "__main__":
    import json
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    store = DocumentStore()
    store.initialize_schema()
    print(json.dumps(store.get_stats(), indent=2))
    for doc in store.list_documents(limit=int(os.getenv("LIST_LIMIT", "10"))):
        print(f"  {doc.id}  {doc.document_type:<12} {doc.title[:60]}")
