"""
Vector Index with PostgreSQL + pgvector

Namespaced cosine-similarity index over chunk embeddings. Each record keeps a
denormalized copy of its chunk metadata so search results can be rendered
without a second lookup.

Two backends share one interface:
    PgVectorIndex        -- production, one table partitioned by a namespace column
    InMemoryVectorIndex  -- local development and tests
"""

import os
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import psycopg2

from .db import PostgresBackend
from .errors import VectorIndexError

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"


@dataclass
class VectorIndexConfig:
    """Configuration for the vector index."""
    backend: str = "pgvector"  # "pgvector" or "memory"
    connection_string: Optional[str] = None
    table_name: str = "legal_vectors"
    dimensions: int = 1536
    metric: str = "cosine"
    namespace: str = DEFAULT_NAMESPACE
    upsert_batch_size: int = 100
    hnsw_m: int = 16
    hnsw_ef_construction: int = 64

    @classmethod
    def from_env(cls) -> "VectorIndexConfig":
        return cls(
            backend=os.getenv("VECTOR_BACKEND", "pgvector"),
            table_name=os.getenv("VECTOR_TABLE", "legal_vectors"),
            dimensions=int(os.getenv("EMBEDDING_DIMENSIONS", "1536")),
            namespace=os.getenv("VECTOR_NAMESPACE", DEFAULT_NAMESPACE),
        )


@dataclass
class VectorRecord:
    """One embedding plus its denormalized chunk metadata."""
    id: str
    values: list[float]
    metadata: dict = field(default_factory=dict)


@dataclass
class VectorMatch:
    """A single search result with score."""
    id: str
    score: float
    metadata: dict

    def to_dict(self) -> dict:
        return {"id": self.id, "score": self.score, "metadata": self.metadata}


def _clamp_score(score: float) -> float:
    return max(0.0, min(1.0, float(score)))


class PgVectorIndex(PostgresBackend):
    """
    pgvector-backed similarity index.

    Features:
    - Lazy, idempotent schema creation (table + HNSW cosine index)
    - Batched upserts keyed on (namespace, id)
    - Metadata filtering via JSONB containment
    """

    def __init__(self, config: Optional[VectorIndexConfig] = None):
        self.config = config or VectorIndexConfig()
        super().__init__(self.config.connection_string)
        self._initialized = False
        self._init_lock = threading.Lock()

    def _run(self, operation, label):
        """Run a DB operation, surfacing database failures as VectorIndexError."""
        self.initialize()
        try:
            return self._execute_with_retry(operation, label)
        except psycopg2.Error as e:
            logger.error(f"Vector index {label} failed: {e}")
            raise VectorIndexError(f"{label} failed: {e}") from e

    def initialize(self) -> None:
        """Create the extension, table and indexes if they do not exist."""
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return

            table = self.config.table_name
            schema_sql = f"""
            CREATE EXTENSION IF NOT EXISTS vector;

            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT NOT NULL,
                namespace TEXT NOT NULL DEFAULT '{DEFAULT_NAMESPACE}',
                embedding VECTOR({self.config.dimensions}) NOT NULL,
                metadata JSONB DEFAULT '{{}}',
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                PRIMARY KEY (namespace, id)
            );

            CREATE INDEX IF NOT EXISTS idx_{table}_document
                ON {table} (namespace, (metadata->>'documentId'));

            CREATE INDEX IF NOT EXISTS idx_{table}_embedding
                ON {table}
                USING hnsw (embedding vector_cosine_ops)
                WITH (m = {self.config.hnsw_m}, ef_construction = {self.config.hnsw_ef_construction});
            """

            def _op(conn):
                with conn.cursor() as cur:
                    cur.execute(schema_sql)
                    conn.commit()

            try:
                self._execute_with_retry(_op, "initialize_index")
            except psycopg2.Error as e:
                logger.error(f"Vector index initialization failed: {e}")
                raise VectorIndexError(f"initialize failed: {e}") from e
            self._initialized = True
            logger.info(
                f"Vector index '{table}' ready "
                f"(dim={self.config.dimensions}, metric={self.config.metric})"
            )

    def upsert_vectors(self, records: list[VectorRecord], namespace: Optional[str] = None) -> int:
        """
        Insert or replace vectors in batches.

        Args:
            records: Vectors to write
            namespace: Target namespace (default from config)

        Returns:
            Number of vectors written
        """
        if not records:
            return 0
        namespace = namespace or self.config.namespace
        for record in records:
            if len(record.values) != self.config.dimensions:
                raise VectorIndexError(
                    f"Vector {record.id} has {len(record.values)} dims, "
                    f"index expects {self.config.dimensions}"
                )

        from psycopg2.extras import execute_values

        sql = f"""
        INSERT INTO {self.config.table_name} (id, namespace, embedding, metadata)
        VALUES %s
        ON CONFLICT (namespace, id) DO UPDATE SET
            embedding = EXCLUDED.embedding,
            metadata = EXCLUDED.metadata,
            updated_at = NOW()
        """

        size = self.config.upsert_batch_size
        for start in range(0, len(records), size):
            batch = records[start:start + size]
            values = [
                (r.id, namespace, list(r.values), json.dumps(r.metadata))
                for r in batch
            ]

            def _op(conn, values=values):
                with conn.cursor() as cur:
                    execute_values(
                        cur, sql, values,
                        template="(%s, %s, %s::vector, %s::jsonb)",
                        page_size=size,
                    )
                    conn.commit()

            self._run(_op, "upsert_vectors")

        logger.info(f"Upserted {len(records)} vectors into namespace '{namespace}'")
        return len(records)

    def search_similar(
        self,
        vector: list[float],
        top_k: int = 5,
        namespace: Optional[str] = None,
        filter: Optional[dict] = None,
    ) -> list[VectorMatch]:
        """
        Cosine similarity search.

        Args:
            vector: Query embedding
            top_k: Maximum number of matches
            namespace: Namespace to search
            filter: Optional metadata equality filter, e.g. {"documentType": "ACT"}

        Returns:
            Matches ordered by descending score, scores in [0, 1]
        """
        namespace = namespace or self.config.namespace
        where = "WHERE namespace = %s"
        params = [namespace]
        if filter:
            where += " AND metadata @> %s::jsonb"
            params.append(json.dumps(filter))

        sql = f"""
        SELECT id, metadata, 1 - (embedding <=> %s::vector) AS score
        FROM {self.config.table_name}
        {where}
        ORDER BY embedding <=> %s::vector
        LIMIT %s
        """
        final_params = [list(vector)] + params + [list(vector), top_k]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, final_params)
                rows = cur.fetchall()
            return [
                VectorMatch(
                    id=row["id"],
                    score=_clamp_score(row["score"]),
                    metadata=row["metadata"] or {},
                )
                for row in rows
            ]

        return self._run(_op, "search_similar")

    def delete_by_document_id(self, document_id: str, namespace: Optional[str] = None) -> int:
        """Delete every vector whose metadata documentId matches. Returns rows removed."""
        namespace = namespace or self.config.namespace
        sql = f"""
        DELETE FROM {self.config.table_name}
        WHERE namespace = %s AND metadata->>'documentId' = %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (namespace, document_id))
                deleted = cur.rowcount
                conn.commit()
            logger.info(f"Deleted {deleted} vectors for document {document_id}")
            return deleted

        return self._run(_op, "delete_by_document_id")

    def delete_vector(self, vector_id: str, namespace: Optional[str] = None) -> bool:
        namespace = namespace or self.config.namespace
        sql = f"DELETE FROM {self.config.table_name} WHERE namespace = %s AND id = %s"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (namespace, vector_id))
                deleted = cur.rowcount > 0
                conn.commit()
            return deleted

        return self._run(_op, "delete_vector")

    def get_stats(self, namespace: Optional[str] = None) -> dict:
        """
        Index-level counters for health and reconciliation checks.

        Returns:
            {"dimension", "metric", "total_vector_count", "namespaces": {ns: {"vector_count"}}}
            plus "namespace_vector_count" when a namespace is given.
        """
        sql = f"SELECT namespace, COUNT(*) AS count FROM {self.config.table_name} GROUP BY namespace"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
                return cur.fetchall()

        rows = self._run(_op, "get_stats")
        namespaces = {row["namespace"]: {"vector_count": int(row["count"])} for row in rows}
        stats = {
            "dimension": self.config.dimensions,
            "metric": self.config.metric,
            "total_vector_count": sum(ns["vector_count"] for ns in namespaces.values()),
            "namespaces": namespaces,
        }
        if namespace:
            stats["namespace_vector_count"] = namespaces.get(namespace, {}).get("vector_count", 0)
        return stats


class InMemoryVectorIndex:
    """Process-local index with the same interface as PgVectorIndex."""

    def __init__(self, config: Optional[VectorIndexConfig] = None):
        self.config = config or VectorIndexConfig(backend="memory")
        self._namespaces: dict[str, dict[str, tuple[np.ndarray, dict]]] = {}
        self._lock = threading.Lock()
        self._initialized = False

    def initialize(self) -> None:
        self._initialized = True

    def upsert_vectors(self, records: list[VectorRecord], namespace: Optional[str] = None) -> int:
        self.initialize()
        namespace = namespace or self.config.namespace
        with self._lock:
            ns = self._namespaces.setdefault(namespace, {})
            for record in records:
                if len(record.values) != self.config.dimensions:
                    raise VectorIndexError(
                        f"Vector {record.id} has {len(record.values)} dims, "
                        f"index expects {self.config.dimensions}"
                    )
                ns[record.id] = (np.asarray(record.values, dtype=np.float64), dict(record.metadata))
        return len(records)

    def search_similar(
        self,
        vector: list[float],
        top_k: int = 5,
        namespace: Optional[str] = None,
        filter: Optional[dict] = None,
    ) -> list[VectorMatch]:
        self.initialize()
        namespace = namespace or self.config.namespace
        query = np.asarray(vector, dtype=np.float64)
        query_norm = np.linalg.norm(query)

        with self._lock:
            items = list(self._namespaces.get(namespace, {}).items())

        matches = []
        for vector_id, (values, metadata) in items:
            if filter and any(metadata.get(k) != v for k, v in filter.items()):
                continue
            denom = query_norm * np.linalg.norm(values)
            score = float(np.dot(query, values) / denom) if denom else 0.0
            matches.append(VectorMatch(id=vector_id, score=_clamp_score(score), metadata=dict(metadata)))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    def delete_by_document_id(self, document_id: str, namespace: Optional[str] = None) -> int:
        namespace = namespace or self.config.namespace
        with self._lock:
            ns = self._namespaces.get(namespace, {})
            doomed = [vid for vid, (_, meta) in ns.items() if meta.get("documentId") == document_id]
            for vid in doomed:
                del ns[vid]
        return len(doomed)

    def delete_vector(self, vector_id: str, namespace: Optional[str] = None) -> bool:
        namespace = namespace or self.config.namespace
        with self._lock:
            return self._namespaces.get(namespace, {}).pop(vector_id, None) is not None

    def get_stats(self, namespace: Optional[str] = None) -> dict:
        with self._lock:
            namespaces = {ns: {"vector_count": len(v)} for ns, v in self._namespaces.items() if v}
        stats = {
            "dimension": self.config.dimensions,
            "metric": self.config.metric,
            "total_vector_count": sum(ns["vector_count"] for ns in namespaces.values()),
            "namespaces": namespaces,
        }
        if namespace:
            stats["namespace_vector_count"] = namespaces.get(namespace, {}).get("vector_count", 0)
        return stats

    def close(self) -> None:
        pass


def get_vector_index(config: Optional[VectorIndexConfig] = None):
    """Factory function returning the configured index backend."""
    config = config or VectorIndexConfig.from_env()
    if config.backend == "memory":
        return InMemoryVectorIndex(config)
    if config.backend == "pgvector":
        return PgVectorIndex(config)
    raise ValueError(f"Unknown vector backend '{config.backend}'. Choose 'pgvector' or 'memory'.")


# CLI for testing
if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    index = get_vector_index()
    index.initialize()
    print(json.dumps(index.get_stats(), indent=2))
