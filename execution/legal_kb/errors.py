"""
Error taxonomy for the legal knowledge base.

Every failure raised by the crawler, ingestion pipeline, embedding chain,
vector index and RAG orchestrator is one of these. Per-item work (one file in
a bulk upload, one candidate in a crawl run) catches and records them; single
operations let them propagate to the caller.
"""

from typing import Optional


class LegalKBError(Exception):
    """Base class for all knowledge base errors."""


class ConfigurationError(LegalKBError):
    """Raised at startup when a required credential or setting is missing."""

    def __init__(self, message: str, missing: Optional[list[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class ExtractionError(LegalKBError):
    """Raised when text cannot be extracted from a source file."""

    def __init__(self, message: str, file_type: Optional[str] = None):
        super().__init__(message)
        self.file_type = file_type


class ContentTooShortError(ExtractionError):
    """Raised when extracted text is below the minimum ingestible length."""

    def __init__(self, length: int, minimum: int):
        super().__init__(
            f"Document content too short ({length} chars, minimum {minimum})"
        )
        self.length = length
        self.minimum = minimum


class ProviderError(LegalKBError):
    """Raised when an upstream embedding or chat provider call fails."""

    def __init__(self, message: str, provider: str = "unknown"):
        super().__init__(message)
        self.provider = provider


class ProviderRateLimitError(ProviderError):
    """Provider rejected the call for rate limit or quota reasons."""


class ProviderAuthError(ProviderError):
    """Provider rejected the credentials. Never retried or fallen back from."""


class ProviderUnavailableError(ProviderError):
    """Provider is not configured, unreachable, or returned a server error."""


class NetworkError(LegalKBError):
    """Raised when a page or document cannot be fetched after all retries."""

    def __init__(self, message: str, url: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class VectorIndexError(LegalKBError):
    """Raised when the vector index cannot be read or written."""


class DuplicateDocumentError(LegalKBError):
    """Raised when a document with the same source URL is already stored."""

    def __init__(self, source_url: str):
        super().__init__(f"Document already exists for source URL: {source_url}")
        self.source_url = source_url


_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "quota", "too many requests")


def classify_provider_error(exc: Exception, provider: str) -> ProviderError:
    """
    Map a provider SDK exception onto the taxonomy.

    Works off the HTTP status carried by openai, voyageai and cohere errors,
    falling back to the exception name and message when no status is present.

    Args:
        exc: The exception raised by the SDK call
        provider: Provider name, recorded on the returned error

    Returns:
        A ProviderRateLimitError, ProviderAuthError or ProviderUnavailableError
    """
    if isinstance(exc, ProviderError):
        return exc

    status = getattr(exc, "status_code", None) or getattr(exc, "http_status", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)

    name = type(exc).__name__.lower()
    text = str(exc).lower()
    message = f"{provider}: {type(exc).__name__}: {exc}"

    if status == 429 or "ratelimit" in name or any(m in text for m in _RATE_LIMIT_MARKERS):
        return ProviderRateLimitError(message, provider=provider)
    if status in (401, 403) or "authentication" in name or "permissiondenied" in name:
        return ProviderAuthError(message, provider=provider)
    return ProviderUnavailableError(message, provider=provider)


class DocumentNotFoundError(LegalKBError):
    """Raised when an operation targets a document id that is not stored."""

    def __init__(self, document_id: str):
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id
