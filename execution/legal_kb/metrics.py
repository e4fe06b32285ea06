"""
Metrics Collection for the Legal Knowledge Base

Tracks embedding provider usage (including fallback vectors), ingestion,
crawl runs and RAG queries for health checks and monitoring.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class SystemMetrics:
    """Aggregated system metrics."""
    # Embeddings
    embeddings_by_provider: dict = field(default_factory=lambda: defaultdict(int))
    fallback_embeddings: int = 0

    # Ingestion
    documents_ingested: int = 0
    chunks_created: int = 0
    ingestion_failures: int = 0
    total_ingestion_time_ms: float = 0

    # Crawling
    crawl_runs: int = 0
    pages_fetched: int = 0
    documents_discovered: int = 0
    documents_skipped: int = 0
    crawl_failures: int = 0

    # RAG queries
    total_queries: int = 0
    failed_queries: int = 0
    queries_by_mode: dict = field(default_factory=lambda: defaultdict(int))
    queries_by_model: dict = field(default_factory=lambda: defaultdict(int))
    tokens_used: int = 0
    total_latency_ms: float = 0

    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        if self.total_queries == 0:
            return 0
        return self.total_latency_ms / self.total_queries

    @property
    def fallback_rate(self) -> float:
        total = sum(self.embeddings_by_provider.values())
        if total == 0:
            return 0
        return self.fallback_embeddings / total

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "embeddings": {
                "by_provider": dict(self.embeddings_by_provider),
                "fallback": self.fallback_embeddings,
                "synthetic": self.embeddings_by_provider.get("synthetic", 0),
                "fallback_rate": f"{self.fallback_rate:.2%}",
            },
            "ingestion": {
                "documents": self.documents_ingested,
                "chunks": self.chunks_created,
                "failures": self.ingestion_failures,
                "avg_time_ms": round(
                    self.total_ingestion_time_ms / max(self.documents_ingested, 1), 2
                ),
            },
            "crawler": {
                "runs": self.crawl_runs,
                "pages_fetched": self.pages_fetched,
                "discovered": self.documents_discovered,
                "skipped": self.documents_skipped,
                "failed": self.crawl_failures,
            },
            "queries": {
                "total": self.total_queries,
                "failed": self.failed_queries,
                "by_mode": dict(self.queries_by_mode),
                "by_model": dict(self.queries_by_model),
                "tokens_used": self.tokens_used,
                "avg_latency_ms": round(self.avg_latency_ms, 2),
            },
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Usage:
        collector = get_metrics_collector()

        with collector.track_query("grounded") as tracker:
            response = rag.query(question)
            tracker.set_result(response.model_used, response.tokens_used)

        collector.get_metrics_dict()
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._lock = threading.Lock()
        self._start_time = datetime.now()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._start_time = datetime.now()

    class QueryTracker:
        """Context manager for tracking query metrics."""

        def __init__(self, collector: "MetricsCollector", mode: str):
            self.collector = collector
            self.mode = mode
            self.model = None
            self.tokens = 0
            self.start_time = time.time()

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            latency_ms = (time.time() - self.start_time) * 1000
            self.collector._record_query(
                self.mode, self.model, self.tokens, latency_ms,
                error=exc_type.__name__ if exc_type else None,
            )
            return False  # Don't suppress exceptions

        def set_result(self, model: str, tokens: int):
            self.model = model
            self.tokens = tokens

    def track_query(self, mode: str) -> QueryTracker:
        """Create a query tracker context manager for a grounded or ungrounded query."""
        return self.QueryTracker(self, mode)

    def _record_query(self, mode, model, tokens, latency_ms, error=None):
        with self._lock:
            m = self.metrics
            m.total_queries += 1
            m.queries_by_mode[mode] += 1
            m.total_latency_ms += latency_ms
            if error:
                m.failed_queries += 1
                m.errors_by_type[error] += 1
            else:
                m.tokens_used += tokens
                if model:
                    m.queries_by_model[model] += 1

    def record_error(self, error_type: str):
        """Record an error by type."""
        with self._lock:
            self.metrics.errors_by_type[error_type] += 1

    def record_embeddings(self, provider: str, count: int, fallback: bool = False):
        """Record vectors produced by a provider; fallback marks non-primary tiers."""
        with self._lock:
            self.metrics.embeddings_by_provider[provider] += count
            if fallback:
                self.metrics.fallback_embeddings += count

    def record_ingestion(self, document_id: str, chunks_count: int, duration_ms: float):
        """Record document ingestion metrics."""
        with self._lock:
            self.metrics.documents_ingested += 1
            self.metrics.chunks_created += chunks_count
            self.metrics.total_ingestion_time_ms += duration_ms

    def record_ingestion_failure(self, error_type: str):
        with self._lock:
            self.metrics.ingestion_failures += 1
            self.metrics.errors_by_type[error_type] += 1

    def record_crawl(self, pages: int, discovered: int, skipped: int, failed: int):
        """Record a completed crawl run."""
        with self._lock:
            m = self.metrics
            m.crawl_runs += 1
            m.pages_fetched += pages
            m.documents_discovered += discovered
            m.documents_skipped += skipped
            m.crawl_failures += failed

    def get_metrics(self) -> SystemMetrics:
        return self.metrics

    def get_metrics_dict(self) -> dict:
        """Get metrics as a dictionary."""
        return self.metrics.to_dict()

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
