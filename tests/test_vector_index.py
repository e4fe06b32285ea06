"""
Tests for execution/legal_kb/vector_index.py

Covers: InMemoryVectorIndex search/filter/namespace/delete/stats,
        PgVectorIndex SQL and error mapping, and the get_vector_index()
        factory.

All database calls are mocked -- no PostgreSQL required.
"""

from unittest.mock import patch

import psycopg2
import pytest

from tests.conftest import TEST_DIMENSIONS, attach_mock_pool, deterministic_vector


def _record(vector_id, text, **metadata):
    from execution.legal_kb.vector_index import VectorRecord
    return VectorRecord(id=vector_id, values=deterministic_vector(text, TEST_DIMENSIONS), metadata=metadata)


# ---------------------------------------------------------------------------
# InMemoryVectorIndex
# ---------------------------------------------------------------------------

class TestInMemoryVectorIndex:
    """Behaviour shared with the pgvector backend."""

    def test_self_similarity(self, memory_index):
        memory_index.upsert_vectors([_record("d1-chunk-0", "alpha", documentId="d1")])
        matches = memory_index.search_similar(deterministic_vector("alpha", TEST_DIMENSIONS), top_k=1)
        assert matches[0].id == "d1-chunk-0"
        assert matches[0].score == pytest.approx(1.0)

    def test_results_ordered_and_limited(self, memory_index):
        memory_index.upsert_vectors([_record(f"v{i}", f"text {i}") for i in range(10)])
        matches = memory_index.search_similar(deterministic_vector("text 3", TEST_DIMENSIONS), top_k=4)
        assert len(matches) == 4
        assert matches[0].id == "v3"
        scores = [m.score for m in matches]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_upsert_replaces_existing_id(self, memory_index):
        memory_index.upsert_vectors([_record("v1", "old", version=1)])
        memory_index.upsert_vectors([_record("v1", "new", version=2)])
        assert memory_index.get_stats()["total_vector_count"] == 1
        match = memory_index.search_similar(deterministic_vector("new", TEST_DIMENSIONS), top_k=1)[0]
        assert match.metadata["version"] == 2

    def test_metadata_filter(self, memory_index):
        memory_index.upsert_vectors([
            _record("a", "one", documentType="ACT"),
            _record("b", "two", documentType="CASE_LAW"),
        ])
        matches = memory_index.search_similar(
            deterministic_vector("two", TEST_DIMENSIONS), top_k=5, filter={"documentType": "ACT"}
        )
        assert [m.id for m in matches] == ["a"]

    def test_namespaces_are_isolated(self, memory_index):
        memory_index.upsert_vectors([_record("a", "one")], namespace="kenya")
        assert memory_index.search_similar(deterministic_vector("one", TEST_DIMENSIONS)) == []
        assert len(memory_index.search_similar(deterministic_vector("one", TEST_DIMENSIONS), namespace="kenya")) == 1

    def test_delete_by_document_id(self, memory_index):
        memory_index.upsert_vectors([
            _record("d1-chunk-0", "a", documentId="d1"),
            _record("d1-chunk-1", "b", documentId="d1"),
            _record("d2-chunk-0", "c", documentId="d2"),
        ])
        assert memory_index.delete_by_document_id("d1") == 2
        assert memory_index.get_stats()["total_vector_count"] == 1

    def test_delete_vector(self, memory_index):
        memory_index.upsert_vectors([_record("v1", "a")])
        assert memory_index.delete_vector("v1") is True
        assert memory_index.delete_vector("v1") is False

    def test_dimension_mismatch(self, memory_index):
        from execution.legal_kb.vector_index import VectorRecord
        from execution.legal_kb.errors import VectorIndexError
        with pytest.raises(VectorIndexError):
            memory_index.upsert_vectors([VectorRecord(id="v", values=[1.0, 0.0])])

    def test_stats(self, memory_index):
        memory_index.upsert_vectors([_record("a", "one"), _record("b", "two")])
        memory_index.upsert_vectors([_record("c", "three")], namespace="other")
        stats = memory_index.get_stats(namespace="default")
        assert stats["dimension"] == TEST_DIMENSIONS
        assert stats["metric"] == "cosine"
        assert stats["total_vector_count"] == 3
        assert stats["namespaces"]["other"]["vector_count"] == 1
        assert stats["namespace_vector_count"] == 2

    def test_zero_query_vector(self, memory_index):
        memory_index.upsert_vectors([_record("a", "one")])
        matches = memory_index.search_similar([0.0] * TEST_DIMENSIONS)
        assert matches[0].score == 0.0


# ---------------------------------------------------------------------------
# PgVectorIndex
# ---------------------------------------------------------------------------

class TestPgVectorIndex:
    """SQL issued by the pgvector backend, with a mocked pool."""

    def _index(self, **overrides):
        from execution.legal_kb.vector_index import PgVectorIndex, VectorIndexConfig
        index = PgVectorIndex(VectorIndexConfig(
            connection_string="postgresql://test/test", dimensions=TEST_DIMENSIONS, **overrides
        ))
        pool, conn, cur = attach_mock_pool(index)
        return index, pool, conn, cur

    def test_initialize_creates_schema_once(self):
        index, _, _, cur = self._index()
        index.initialize()
        index.initialize()
        assert cur.execute.call_count == 1
        sql = cur.execute.call_args[0][0]
        assert "CREATE EXTENSION IF NOT EXISTS vector" in sql
        assert f"VECTOR({TEST_DIMENSIONS})" in sql
        assert "vector_cosine_ops" in sql
        assert "PRIMARY KEY (namespace, id)" in sql

    def test_search_builds_filter_and_clamps(self):
        index, _, _, cur = self._index()
        index._initialized = True
        cur.fetchall.return_value = [
            {"id": "d1-chunk-0", "metadata": {"documentId": "d1"}, "score": 1.0000002},
            {"id": "d1-chunk-1", "metadata": None, "score": -0.2},
        ]

        matches = index.search_similar([0.1] * TEST_DIMENSIONS, top_k=3, filter={"documentType": "ACT"})

        sql, params = cur.execute.call_args[0]
        assert "metadata @> %s::jsonb" in sql
        assert "1 - (embedding <=> %s::vector)" in sql
        assert params[1] == "default"
        assert params[2] == '{"documentType": "ACT"}'
        assert params[-1] == 3
        assert [m.score for m in matches] == [1.0, 0.0]
        assert matches[1].metadata == {}

    def test_upsert_in_batches(self):
        index, _, conn, _ = self._index(upsert_batch_size=100)
        index._initialized = True
        from execution.legal_kb.vector_index import VectorRecord
        records = [VectorRecord(id=f"v{i}", values=[0.0] * TEST_DIMENSIONS) for i in range(250)]

        with patch("psycopg2.extras.execute_values") as mock_ev:
            written = index.upsert_vectors(records, namespace="kenya")

        assert written == 250
        assert mock_ev.call_count == 3
        first_batch = mock_ev.call_args_list[0][0][2]
        assert len(first_batch) == 100
        assert first_batch[0][1] == "kenya"
        assert conn.commit.call_count == 3

    def test_upsert_rejects_wrong_dimensions(self):
        from execution.legal_kb.vector_index import VectorRecord
        from execution.legal_kb.errors import VectorIndexError
        index, _, _, _ = self._index()
        with pytest.raises(VectorIndexError):
            index.upsert_vectors([VectorRecord(id="v", values=[1.0])])

    def test_database_error_becomes_vector_index_error(self):
        from execution.legal_kb.errors import VectorIndexError
        index, _, conn, cur = self._index()
        index._initialized = True
        cur.execute.side_effect = psycopg2.ProgrammingError("relation does not exist")

        with pytest.raises(VectorIndexError):
            index.delete_by_document_id("d1")
        conn.rollback.assert_called()

    def test_stale_connection_retried_once(self):
        index, pool, _, cur = self._index()
        index._initialized = True
        cur.execute.side_effect = [psycopg2.OperationalError("server closed"), None]
        cur.rowcount = 1

        assert index.delete_vector("v1") is True
        pool.putconn.assert_any_call(pool.getconn.return_value, close=True)

    def test_stats_by_namespace(self):
        index, _, _, cur = self._index()
        index._initialized = True
        cur.fetchall.return_value = [
            {"namespace": "default", "count": 7},
            {"namespace": "kenya", "count": 3},
        ]
        stats = index.get_stats(namespace="kenya")
        assert stats["total_vector_count"] == 10
        assert stats["namespace_vector_count"] == 3


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

class TestGetVectorIndex:
    """Tests for get_vector_index()."""

    def test_memory_backend(self):
        from execution.legal_kb.vector_index import get_vector_index, VectorIndexConfig, InMemoryVectorIndex
        assert isinstance(get_vector_index(VectorIndexConfig(backend="memory")), InMemoryVectorIndex)

    def test_pgvector_backend_is_lazy(self):
        from execution.legal_kb.vector_index import get_vector_index, VectorIndexConfig, PgVectorIndex
        index = get_vector_index(VectorIndexConfig(backend="pgvector"))
        assert isinstance(index, PgVectorIndex)
        assert index._pool is None

    def test_unknown_backend(self):
        from execution.legal_kb.vector_index import get_vector_index, VectorIndexConfig
        with pytest.raises(ValueError):
            get_vector_index(VectorIndexConfig(backend="pinecone"))
