"""
Shared fixtures and test utilities for the legal knowledge base tests.

Provides deterministic embedding providers, an in-memory document store and
sample legal text so that all tests run without API keys, databases, or
external network access.
"""

import sys
import uuid
import hashlib
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

TEST_DIMENSIONS = 64

# ---------------------------------------------------------------------------
# Sample legal text
# ---------------------------------------------------------------------------
SAMPLE_ACT = """
THE LANDLORD AND TENANT (SHOPS, HOTELS AND CATERING ESTABLISHMENTS) ACT

PART I - PRELIMINARY

Section 1. Short title. This Act may be cited as the Landlord and Tenant
(Shops, Hotels and Catering Establishments) Act.

Section 2. Interpretation. In this Act, unless the context otherwise requires,
"controlled tenancy" means a tenancy of a shop, hotel or catering establishment
which has not been reduced into writing, or which is for a period not exceeding
five years, or which contains provision for termination otherwise than for
breach of covenant within five years from the commencement thereof.

PART II - TERMINATION AND ALTERATION OF TERMS

Section 4. Termination of controlled tenancy. A controlled tenancy shall not
terminate or be terminated, and no term or condition in, or right or service
enjoyed by the tenant of, any such tenancy shall be altered, otherwise than in
accordance with the provisions of this Act.

Section 4(2). A landlord who wishes to terminate a controlled tenancy shall give
notice in the prescribed form, and such notice shall not take effect earlier
than two months from the date of receipt thereof by the tenant.

Section 6. Reference to Tribunal. A receiving party who does not agree to comply
with a tenancy notice may, before the date upon which the notice is to take
effect, refer the matter to the Tribunal, whereupon the notice shall be of no
effect until the Tribunal determines the reference.

Section 12. Powers of Tribunal. In addition to any other powers specifically
conferred on it by or under this Act, a Tribunal may determine whether or not a
tenancy is a controlled tenancy, and may investigate any complaint relating to
a controlled tenancy made to it by the landlord or the tenant.
"""


@pytest.fixture
def sample_act_text():
    return SAMPLE_ACT


@pytest.fixture(autouse=True)
def reset_metrics():
    """Give every test a clean metrics collector."""
    from execution.legal_kb.metrics import get_metrics_collector
    collector = get_metrics_collector()
    collector.reset()
    yield collector
    collector.reset()


@pytest.fixture
def no_sleep(monkeypatch):
    """Record sleeps instead of waiting."""
    calls = []
    monkeypatch.setattr("execution.legal_kb.crawler.time.sleep", lambda s: calls.append(s))
    return calls


# ---------------------------------------------------------------------------
# Deterministic embedding providers
# ---------------------------------------------------------------------------

def deterministic_vector(text, dimensions):
    """Unit vector seeded from the text; different texts are near-orthogonal."""
    seed = int(hashlib.sha256(text.encode()).hexdigest()[:8], 16)
    values = np.random.RandomState(seed).standard_normal(dimensions)
    return (values / np.linalg.norm(values)).tolist()


def make_stub_provider(name="stub", native_dimensions=TEST_DIMENSIONS, error=None, config=None):
    """Build an EmbeddingProvider that never calls an API.

    ``error`` may be an exception instance raised on every call.
    """
    from execution.legal_kb.embeddings import EmbeddingConfig, EmbeddingProvider

    class StubEmbeddingProvider(EmbeddingProvider):
        def __init__(self):
            super().__init__(config or EmbeddingConfig(dimensions=TEST_DIMENSIONS), api_key="test-key")
            self.name = name
            self.native_dimensions = native_dimensions
            self.error = error
            self.calls = []

        def _get_client(self):
            return self

        def _call(self, texts, input_type):
            self.calls.append(list(texts))
            if self.error is not None:
                raise self.error
            return [deterministic_vector(t, self.native_dimensions) for t in texts]

    return StubEmbeddingProvider()


class RateLimited(Exception):
    """Looks like an SDK rate-limit error (HTTP 429)."""
    status_code = 429


class Unauthorized(Exception):
    """Looks like an SDK authentication error (HTTP 401)."""
    status_code = 401


@pytest.fixture
def embedding_config():
    from execution.legal_kb.embeddings import EmbeddingConfig
    return EmbeddingConfig(dimensions=TEST_DIMENSIONS, batch_delay_seconds=0)


@pytest.fixture
def embedding_service(embedding_config):
    """Stub primary provider followed by the synthetic tier."""
    from execution.legal_kb.embeddings import EmbeddingService, SyntheticEmbeddingProvider
    return EmbeddingService(
        [make_stub_provider("openai", config=embedding_config), SyntheticEmbeddingProvider(embedding_config)],
        embedding_config,
    )


@pytest.fixture
def memory_index():
    from execution.legal_kb.vector_index import InMemoryVectorIndex, VectorIndexConfig
    return InMemoryVectorIndex(VectorIndexConfig(backend="memory", dimensions=TEST_DIMENSIONS))


# ---------------------------------------------------------------------------
# Mock document store (no database needed)
# ---------------------------------------------------------------------------

class MockDocumentStore:
    """In-memory DocumentStore. Enforces the source_url uniqueness constraint."""

    def __init__(self):
        self.documents = {}
        self.chunks = {}
        self.accounts = {}
        self.account_calls = 0

    def initialize_schema(self):
        pass

    def create_document(self, document):
        from execution.legal_kb.errors import DuplicateDocumentError
        if document.source_url and any(
            d.source_url == document.source_url for d in self.documents.values()
        ):
            raise DuplicateDocumentError(document.source_url)
        document.uploaded_at = datetime.now(timezone.utc)
        self.documents[document.id] = document
        self.chunks[document.id] = []
        return document

    def complete_document(self, document_id, chunks, file_path=None, file_name=None, file_size=None):
        doc = self.documents[document_id]
        self.chunks[document_id] = list(chunks)
        doc.chunks_count = len(chunks)
        doc.vectors_count = len(chunks)
        doc.file_path = file_path or doc.file_path
        doc.file_name = file_name or doc.file_name
        doc.file_size = file_size if file_size is not None else doc.file_size

    def get_document(self, document_id):
        return self.documents.get(document_id)

    def get_document_by_source_url(self, source_url):
        for doc in self.documents.values():
            if doc.source_url == source_url:
                return doc
        return None

    def list_documents(self, document_type=None, category=None, limit=50):
        docs = [
            d for d in self.documents.values()
            if (document_type is None or d.document_type == document_type)
            and (category is None or d.category == category)
        ]
        docs.sort(key=lambda d: d.uploaded_at, reverse=True)
        return docs[:limit]

    def delete_document(self, document_id):
        self.chunks.pop(document_id, None)
        return self.documents.pop(document_id, None) is not None

    def get_chunks(self, document_id):
        return list(self.chunks.get(document_id, []))

    def count_chunks(self, document_id):
        return len(self.chunks.get(document_id, []))

    def ensure_service_account(self, email, display_name):
        self.account_calls += 1
        if email not in self.accounts:
            self.accounts[email] = str(uuid.uuid4())
        return self.accounts[email]

    def get_stats(self):
        by_type, by_category = {}, {}
        for d in self.documents.values():
            by_type[d.document_type] = by_type.get(d.document_type, 0) + 1
            by_category[d.category] = by_category.get(d.category, 0) + 1
        return {
            "total_documents": len(self.documents),
            "total_chunks": sum(d.chunks_count for d in self.documents.values()),
            "total_vectors": sum(d.vectors_count for d in self.documents.values()),
            "by_type": by_type,
            "by_category": by_category,
        }

    def close(self):
        pass


@pytest.fixture
def mock_store():
    return MockDocumentStore()


@pytest.fixture
def chunker():
    """Character-window chunker: 100 'tokens' (400 chars) with 20 overlap (80 chars)."""
    from execution.legal_kb.chunker import ChunkConfig, TextChunker
    return TextChunker(ChunkConfig(chunk_size=100, chunk_overlap=20, use_tokenizer=False))


@pytest.fixture
def pipeline(mock_store, memory_index, embedding_service, chunker):
    from execution.legal_kb.ingestion import IngestionPipeline
    return IngestionPipeline(mock_store, memory_index, embedding_service, chunker=chunker)


@pytest.fixture
def document_metadata():
    from execution.legal_kb.ingestion import DocumentMetadata
    return DocumentMetadata(
        title="Landlord and Tenant Act",
        document_type="ACT",
        category="Property Law",
        uploaded_by="user-1",
        citation="Cap. 301",
    )


def attach_mock_pool(backend):
    """Give a PostgresBackend a mocked pool. Returns (pool, conn, cursor)."""
    from unittest.mock import MagicMock

    pool = MagicMock()
    conn = MagicMock()
    cur = MagicMock()
    pool.getconn.return_value = conn
    conn.cursor.return_value.__enter__.return_value = cur
    backend._pool = pool
    return pool, conn, cur
