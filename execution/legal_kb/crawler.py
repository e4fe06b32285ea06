"""
Legal Document Crawler

Discovers PDF/DOCX legal documents on an allow-list of Kenyan legal-publisher
sites and feeds them to the ingestion pipeline.

Phases:
1. Discovery: walk each seed site with a bounded work queue (depth limit,
   at most 20 followed links per page, 1s between page fetches, 2s between seeds)
2. Filtering: keep only links that look like real legal documents
3. Ingestion: download (3 attempts per URL, http/https fallback), store the
   file, ingest it, skip anything whose source URL is already stored

Crawling is sequential on purpose: these are slow government servers.
"""

import os
import re
import time
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urljoin, urlparse, urlunparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from bs4 import BeautifulSoup

from .document_store import DocumentStore, DocumentType
from .errors import DuplicateDocumentError, NetworkError, ProviderAuthError
from .ingestion import DocumentMetadata, IngestionPipeline
from .metrics import get_metrics_collector

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/pdf,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9,sw;q=0.8",
}

DEFAULT_SEED_URLS = (
    "https://new.kenyalaw.org/judgments/",
    "https://judiciary.go.ke/judgments/",
    "https://judiciary.go.ke/supreme-court/",
    "https://judiciary.go.ke/court-of-appeal/",
    "https://judiciary.go.ke/high-court/",
    "http://www.parliament.go.ke/the-national-assembly/house-business/bills",
    "http://www.parliament.go.ke/the-senate/house-business/bills",
    "https://lsk.or.ke/resources/",
)

DEFAULT_ALLOWED_DOMAINS = (
    "kenyalaw.org",
    "judiciary.go.ke",
    "parliament.go.ke",
    "lsk.or.ke",
    "kenyalaw.go.ke",
)

# Old kenyalaw.org serves navigation through index.php?id=... query pages
LEGACY_HOSTS = ("kenyalaw.org", "www.kenyalaw.org")
LEGACY_FILE_MARKERS = ("download", "fileadmin", "/file")

DOCUMENT_EXTENSIONS = (".pdf", ".docx", ".doc")
UNEXTRACTABLE_EXTENSIONS = (".doc",)
DOWNLOAD_PATH_PATTERNS = ("/fileadmin/", "/wp-content/uploads/", "/download/")
NON_DOCUMENT_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".css", ".js", ".mp4", ".mp3")

MAX_LINKS_PER_PAGE = 20
DOWNLOAD_ATTEMPTS = 3

JUNK_KEYWORDS = re.compile(
    r"\b(sitemap|contact( us)?|careers?|log ?in|sign ?in|register|subscribe|newsletter|"
    r"privacy|cookies?|terms of use|faq|about us|home|search|gallery|tenders?|vacanc(y|ies))\b",
    re.IGNORECASE,
)
GENERIC_TITLES = re.compile(
    r"^(untitled|document|doc|file|test|draft|new document|untitled legal document)[\s\d._-]*$",
    re.IGNORECASE,
)
LEGAL_INDICATORS = re.compile(
    r"(\bv\.|\bvs?\b|\bact\b|\bjudg(e)?ment|\bruling\b|\bcourt\b|\bsupreme\b|\bappeal\b|"
    r"\btribunal\b|\bpetition\b|\bbill\b|\bregulations?\b|\bconstitution\b|\bgazette\b|"
    r"\bcap\.?\s*\d+|\b(19|20)\d{2}\b|\beklr\b|\bklr\b|\bl\.?n\.?\s*\d+)",
    re.IGNORECASE,
)
LEGAL_LINK_URL_KEYWORDS = ("judgment", "act", "bill", "legal", "court", "resource")
LEGAL_LINK_TEXT_KEYWORDS = ("judgment", "case", "act", "bill")
YEAR_PATTERN = re.compile(r"\b(19|20)\d{2}\b")
TITLE_NOISE = re.compile(r"\b(download|view|pdf|click here|read more)\b", re.IGNORECASE)

UNTITLED = "Untitled Legal Document"


@dataclass(frozen=True)
class CrawlConfig:
    """Immutable settings for one crawl run."""
    seed_urls: tuple = DEFAULT_SEED_URLS
    max_depth: int = 5
    max_documents_per_run: int = 50
    allowed_domains: tuple = DEFAULT_ALLOWED_DOMAINS
    respect_robots_txt: bool = True  # policy flag, enforced outside the crawler
    storage_dir: str = "storage/legal-materials"
    page_timeout: float = 30.0
    download_timeout: float = 60.0
    link_delay: float = 1.0
    seed_delay: float = 2.0
    ingest_delay: float = 1.0
    service_account_email: str = "system@wakili.pro"
    service_account_name: str = "Wakili AI Crawler"

    @classmethod
    def from_env(cls) -> "CrawlConfig":
        extra = os.getenv("CRAWL_SEED_URLS", "")
        seeds = DEFAULT_SEED_URLS + tuple(u.strip() for u in extra.split(",") if u.strip())
        return cls(
            seed_urls=seeds,
            max_depth=int(os.getenv("CRAWL_MAX_DEPTH", "5")),
            max_documents_per_run=int(os.getenv("SCRAPER_BATCH_SIZE", "50")),
            storage_dir=os.getenv("DOCUMENT_STORAGE_DIR", "storage/legal-materials"),
        )


@dataclass
class DiscoveredDocument:
    """A candidate document found during discovery. Never persisted directly."""
    url: str
    title: str
    source_url: str
    document_type: str
    category: str
    depth: int

    @property
    def fallback_url(self) -> Optional[str]:
        """Same URL with the scheme swapped, for servers that only answer on one."""
        parsed = urlparse(self.url)
        if parsed.scheme == "https":
            return urlunparse(parsed._replace(scheme="http"))
        if parsed.scheme == "http":
            return urlunparse(parsed._replace(scheme="https"))
        return None


@dataclass
class CrawlResult:
    discovered: int = 0
    ingested: int = 0
    skipped: int = 0
    failed: int = 0
    pages_fetched: int = 0

    def to_dict(self) -> dict:
        return {
            "discovered": self.discovered,
            "ingested": self.ingested,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass
class _CrawlRun:
    """State owned by a single crawl() call."""
    visited: set = field(default_factory=set)
    discovered: list = field(default_factory=list)
    discovered_urls: set = field(default_factory=set)
    pages_fetched: int = 0


# =============================================================================
# URL and title heuristics
# =============================================================================

def is_allowed_domain(url: str, allowed_domains=DEFAULT_ALLOWED_DOMAINS) -> bool:
    """Host must be an allow-listed domain or a subdomain of one."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https"):
        return False
    host = (parsed.hostname or "").lower()
    if not any(host == d or host.endswith("." + d) for d in allowed_domains):
        return False
    if host in LEGACY_HOSTS and parsed.query:
        path = parsed.path.lower()
        if not any(marker in path for marker in LEGACY_FILE_MARKERS):
            return False
    return True


def is_legal_document(url: str) -> bool:
    """True for .pdf/.docx/.doc links and known download paths."""
    try:
        path = urlparse(url).path.lower()
    except ValueError:
        return False
    if path.endswith(DOCUMENT_EXTENSIONS):
        return True
    if path.endswith(NON_DOCUMENT_EXTENSIONS):
        return False
    return any(pattern in path for pattern in DOWNLOAD_PATH_PATTERNS)


def is_extractable(url: str) -> bool:
    """False for legacy formats (.doc) that discovery reports but text extraction cannot read."""
    try:
        path = urlparse(url).path.lower()
    except ValueError:
        return False
    return not path.endswith(UNEXTRACTABLE_EXTENSIONS)


def is_valid_legal_document(title: str, url: str) -> bool:
    """
    Precision-first junk filter for discovered links.

    Order matters: reject junk, reject short, reject generic, accept on
    legal indicators, accept long-titled PDFs, otherwise reject.
    """
    clean = (title or "").strip()
    path = urlparse(url).path.lower()

    if len(clean) < 40 and JUNK_KEYWORDS.search(clean):
        return False
    if len(clean) < 15:
        return False
    if GENERIC_TITLES.match(clean):
        return False
    if LEGAL_INDICATORS.search(clean) or LEGAL_INDICATORS.search(re.sub(r"[-_/.]", " ", path)):
        return True
    if path.endswith(".pdf") and len(clean) >= 20:
        return True
    return False


def categorize_document(url: str, page_url: str) -> tuple[str, str]:
    """Assign (document_type, category) from the document and page URLs."""
    lower_url = url.lower()
    lower_page = page_url.lower()

    if "supreme-court" in lower_page or "supreme" in lower_url:
        return DocumentType.CASE_LAW.value, "Supreme Court"
    if "court-of-appeal" in lower_page or "appeal" in lower_page:
        return DocumentType.CASE_LAW.value, "Court of Appeal"
    if "high-court" in lower_page:
        return DocumentType.CASE_LAW.value, "High Court"
    if "parliament" in lower_page or "bill" in lower_page:
        return DocumentType.LEGISLATION.value, "Parliamentary Bills"
    if "/act/" in lower_url or "/act/" in lower_page:
        return DocumentType.LEGISLATION.value, "Acts of Parliament"
    if "lsk.or.ke" in lower_page:
        return DocumentType.LEGAL_GUIDE.value, "Law Society Resources"
    return DocumentType.CASE_LAW.value, "Court Judgments"


def _text(node) -> str:
    return node.get_text(" ", strip=True) if node is not None else ""


def extract_title(link) -> str:
    """Title from link text, falling back to attributes and surrounding markup."""
    title = _text(link)

    if len(title) < 10:
        row = link.find_parent("tr")
        div = link.find_parent("div")
        article = link.find_parent("article")
        candidates = (
            lambda: link.get("title"),
            lambda: link.get("aria-label"),
            lambda: _text(row.find("td")) if row is not None else "",
            lambda: _text(div.find(["h1", "h2", "h3", "h4"]) or div.select_one(".title")) if div is not None else "",
            lambda: _text(article.find(["h1", "h2", "h3"])) if article is not None else "",
            lambda: _text(link.parent),
        )
        fallback = ""
        for candidate in candidates:
            value = (candidate() or "").strip()
            if value:
                fallback = value
                break
        title = fallback

    title = re.sub(r"\s+", " ", TITLE_NOISE.sub("", title)).strip(" -|:")
    return title[:200] or UNTITLED


def is_legal_link(url: str, link_text: str) -> bool:
    """Whether a non-document link is worth following."""
    lower_url = url.lower()
    lower_text = link_text.lower()
    return (
        any(k in lower_url for k in LEGAL_LINK_URL_KEYWORDS)
        or any(k in lower_text for k in LEGAL_LINK_TEXT_KEYWORDS)
        or bool(YEAR_PATTERN.search(lower_url))
    )


def _slug(title: str, length: int = 50) -> str:
    return re.sub(r"[^a-z0-9]", "-", title, flags=re.IGNORECASE)[:length]


def _make_page_session() -> requests.Session:
    """Create a session with browser headers and retry backoff for page fetches."""
    s = requests.Session()
    s.headers.update(BROWSER_HEADERS)
    retries = Retry(total=2, backoff_factor=1, status_forcelist=[500, 502, 503, 504])
    s.mount("https://", HTTPAdapter(max_retries=retries))
    s.mount("http://", HTTPAdapter(max_retries=retries))
    return s


# =============================================================================
# Crawler
# =============================================================================

class LegalDocumentCrawler:
    """
    Discovers legal documents and ingests them.

    Usage:
        crawler = LegalDocumentCrawler(pipeline, store)
        result = crawler.crawl()
        print(result.discovered, result.ingested)
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        store: DocumentStore,
        config: Optional[CrawlConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.pipeline = pipeline
        self.store = store
        self.config = config or CrawlConfig()
        self.page_session = session or _make_page_session()
        self.download_session = session or self._make_download_session()
        self._service_account_id: Optional[str] = None
        self._account_lock = threading.Lock()
        self._metrics = get_metrics_collector()

    @staticmethod
    def _make_download_session() -> requests.Session:
        s = requests.Session()
        s.headers.update(BROWSER_HEADERS)
        return s

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def crawl(self) -> CrawlResult:
        """Discover documents from every seed, then ingest up to max_documents_per_run."""
        cfg = self.config
        logger.info(
            f"Starting legal document crawl: {len(cfg.seed_urls)} seeds, "
            f"max depth {cfg.max_depth}, max documents {cfg.max_documents_per_run}"
        )
        run = _CrawlRun()
        limit = 2 * cfg.max_documents_per_run

        for i, seed in enumerate(cfg.seed_urls):
            if len(run.discovered) >= limit:
                logger.info(f"Discovery limit reached ({limit}), skipping remaining seeds")
                break
            if i > 0:
                time.sleep(cfg.seed_delay)
            self._crawl_site(run, seed, limit)

        logger.info(
            f"Discovery complete: {len(run.discovered)} documents from {run.pages_fetched} pages"
        )
        result = self.ingest_documents(run.discovered)
        result.pages_fetched = run.pages_fetched
        self._metrics.record_crawl(
            result.pages_fetched, result.discovered, result.skipped, result.failed
        )
        return result

    def _crawl_site(self, run: _CrawlRun, seed: str, limit: int) -> None:
        """Depth-first walk from one seed using an explicit work queue."""
        queue = deque([(seed, 0)])
        first = True
        while queue:
            if len(run.discovered) >= limit:
                return
            url, depth = queue.popleft()
            if url in run.visited or depth > self.config.max_depth:
                continue
            if not is_allowed_domain(url, self.config.allowed_domains):
                continue
            if not first:
                time.sleep(self.config.link_delay)
            first = False

            children = self._crawl_page(run, url, depth, limit)
            # children go to the front, in page order
            for child in reversed(children):
                queue.appendleft((child, depth + 1))

    def _crawl_page(self, run: _CrawlRun, url: str, depth: int, limit: Optional[int] = None) -> list[str]:
        """
        Fetch one page, record documents, return links to follow.

        Links resolve against the final URL after redirects. Recording stops
        once the run holds `limit` documents.
        """
        run.visited.add(url)
        logger.info(f"Crawling: {url} (depth: {depth})")
        try:
            response = self.page_session.get(
                url, timeout=self.config.page_timeout, allow_redirects=True
            )
            response.raise_for_status()
            html = response.text
        except requests.RequestException as e:
            logger.error(f"Error crawling {url}: {e}")
            return []
        run.pages_fetched += 1

        base = getattr(response, "url", None) or url
        if base != url:
            logger.debug(f"Redirected: {url} -> {base}")
            run.visited.add(base)

        soup = BeautifulSoup(html, "html.parser")
        follow: list[str] = []
        for link in soup.find_all("a", href=True):
            href = link["href"].strip()
            if not href or href.startswith(("#", "mailto:", "javascript:", "tel:")):
                continue
            full_url = urljoin(base, href).split("#")[0]

            if is_legal_document(full_url):
                if limit is not None and len(run.discovered) >= limit:
                    continue
                if full_url in run.discovered_urls:
                    continue
                title = extract_title(link)
                if not is_valid_legal_document(title, full_url):
                    logger.debug(f"Rejected candidate '{title}' ({full_url})")
                    continue
                doc_type, category = categorize_document(full_url, base)
                run.discovered_urls.add(full_url)
                run.discovered.append(DiscoveredDocument(
                    url=full_url,
                    title=title,
                    source_url=base,
                    document_type=doc_type,
                    category=category,
                    depth=depth,
                ))
                logger.info(f"Found document: {title}")
            elif (
                depth + 1 <= self.config.max_depth
                and full_url not in run.visited
                and full_url not in follow
                and is_allowed_domain(full_url, self.config.allowed_domains)
                and is_legal_link(full_url, _text(link))
            ):
                follow.append(full_url)

        return follow[:MAX_LINKS_PER_PAGE]

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def _get_service_account(self) -> str:
        with self._account_lock:
            if self._service_account_id is None:
                self._service_account_id = self.store.ensure_service_account(
                    self.config.service_account_email, self.config.service_account_name
                )
            return self._service_account_id

    def ingest_documents(self, discovered: list[DiscoveredDocument]) -> CrawlResult:
        """
        Download and ingest the first max_documents_per_run candidates.

        Candidates in formats text extraction cannot read are ordered last so
        they never take a slot from a readable document.
        Already-stored source URLs are skipped before download. Individual
        failures are logged and counted; only credential errors stop the run.
        """
        result = CrawlResult(discovered=len(discovered))
        # stable: readable formats first, in discovery order
        ordered = sorted(discovered, key=lambda d: not is_extractable(d.url))
        candidates = ordered[:self.config.max_documents_per_run]
        if not candidates:
            return result

        uploaded_by = self._get_service_account()
        for doc in candidates:
            if self.store.get_document_by_source_url(doc.url) is not None:
                logger.info(f"Document already indexed: {doc.title}")
                result.skipped += 1
                continue

            saved_path = None
            try:
                logger.info(f"Downloading: {doc.title}")
                data, extension = self._download(doc)
                saved_path = self._save(doc, data, extension)

                logger.info(f"Ingesting: {doc.title}")
                ingestion = self.pipeline.ingest_file(
                    saved_path,
                    DocumentMetadata(
                        title=doc.title,
                        document_type=doc.document_type,
                        category=doc.category,
                        uploaded_by=uploaded_by,
                        source_url=doc.url,
                    ),
                )
            except DuplicateDocumentError:
                logger.info(f"Document stored concurrently, skipping: {doc.url}")
                result.skipped += 1
                self._discard(saved_path)
                continue
            except ProviderAuthError:
                raise
            except Exception as e:
                logger.error(f"Failed to ingest document \"{doc.title}\": {type(e).__name__}: {e}")
                result.failed += 1
                self._discard(saved_path)
                continue

            result.ingested += 1
            logger.info(
                f"Successfully ingested: {doc.title} ({ingestion.chunks_processed} chunks)"
            )
            time.sleep(self.config.ingest_delay)

        logger.info(
            f"Crawl ingestion: {result.ingested} ingested, {result.skipped} skipped, "
            f"{result.failed} failed"
        )
        return result

    def _download(self, doc: DiscoveredDocument) -> tuple[bytes, str]:
        """Fetch document bytes, retrying each candidate URL with attempt*2s backoff."""
        urls = [doc.url] + ([doc.fallback_url] if doc.fallback_url else [])
        last_error = None

        for url in urls:
            for attempt in range(1, DOWNLOAD_ATTEMPTS + 1):
                try:
                    response = self.download_session.get(
                        url, timeout=self.config.download_timeout, allow_redirects=True
                    )
                    response.raise_for_status()
                    return response.content, self._extension_for(url, response)
                except requests.RequestException as e:
                    last_error = e
                    status = getattr(getattr(e, "response", None), "status_code", None)
                    logger.warning(
                        f"Download attempt {attempt}/{DOWNLOAD_ATTEMPTS} failed for {url}: {e}"
                    )
                    if status is not None and 400 <= status < 500 and status != 429:
                        break
                    if attempt < DOWNLOAD_ATTEMPTS:
                        time.sleep(attempt * 2)

        raise NetworkError(
            f"Download failed for {doc.url}: {last_error}",
            url=doc.url,
            attempts=DOWNLOAD_ATTEMPTS * len(urls),
        )

    @staticmethod
    def _extension_for(url: str, response) -> str:
        path = urlparse(url).path.lower()
        for ext in (".pdf", ".docx", ".doc"):
            if path.endswith(ext):
                return ext
        content_type = (response.headers.get("Content-Type") or "").lower()
        if "wordprocessingml" in content_type:
            return ".docx"
        if "msword" in content_type:
            return ".doc"
        return ".pdf"

    def _save(self, doc: DiscoveredDocument, data: bytes, extension: str) -> Path:
        storage = Path(self.config.storage_dir)
        storage.mkdir(parents=True, exist_ok=True)
        timestamp = int(datetime.now().timestamp() * 1000)
        path = storage / f"crawled-{timestamp}-{_slug(doc.title)}{extension}"
        path.write_bytes(data)
        return path

    @staticmethod
    def _discard(path: Optional[Path]) -> None:
        if path is not None:
            path.unlink(missing_ok=True)


# CLI for testing
if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)

    for arg in sys.argv[1:] or ["https://new.kenyalaw.org/judgments/"]:
        print(f"{arg}: allowed={is_allowed_domain(arg)} document={is_legal_document(arg)}")
