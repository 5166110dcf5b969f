"""Metadata ingestion from inline XML, local files and HTTP(S) endpoints.

Remote sources are fetched on a bounded worker pool with capped exponential
backoff. Parsed records reach the EntityCatalog only through the upsert
callback, so worker threads never touch catalog state directly.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import requests

from ..logging_audit.audit import METADATA_FAILED, METADATA_INGESTED, log_audit_event
from ..models.entity import EntityRecord
from ..transport.http_client import ConnectionPool, ConnectionPoolConfig
from ..utils.exceptions import (
    ConfigurationError,
    ErrorCategory,
    TransportFailure,
    categorize_error,
    create_error_info,
)
from .entity_catalog import EntityCatalog
from .metadata import MetadataParser

logger = logging.getLogger("saml_fed.metadata")

DEFAULT_MAX_WORKERS = 4
DEFAULT_TIMEOUT = 30.0
DEFAULT_REFRESH_INTERVAL = 3600.0

RecordCallback = Callable[[List[EntityRecord]], None]


def _audit_failure(source: str, error: Exception, **extra: Any) -> None:
    """Audit a failed source with the error's category and cause."""
    info = create_error_info(error)
    details: Dict[str, Any] = {
        "status": "failure",
        "source": source,
        "reason": info.message,
        "error_type": info.error_type,
        "category": info.category.value,
        "retryable": info.is_retryable,
    }
    if info.technical_details:
        details["cause"] = info.technical_details
    details.update(extra)
    log_audit_event(METADATA_FAILED, details)


class SourceKind(str, Enum):
    """Kind of metadata source."""

    INLINE = "inline"
    FILE = "file"
    HTTP = "http"


@dataclass(frozen=True)
class MetadataSource:
    """A classified metadata source.

    Attributes:
        kind: INLINE, FILE or HTTP
        location: XML text, filesystem path or URL
    """

    kind: SourceKind
    location: str

    @classmethod
    def from_string(cls, value: str) -> "MetadataSource":
        """Classify a configured source string.

        Literal XML starts with ``<`` and ends with ``>``; files use a
        ``file:`` prefix; anything starting with ``http://`` or ``https://``
        is fetched remotely.

        Raises:
            ConfigurationError: If the string matches none of these forms
        """
        text = (value or "").strip()
        if text.startswith("<") and text.endswith(">"):
            return cls(SourceKind.INLINE, text)
        if text.startswith("file:"):
            path = text[len("file://"):] if text.startswith("file://") else text[len("file:"):]
            if not path:
                raise ConfigurationError(f"Empty file metadata source: {value!r}")
            return cls(SourceKind.FILE, path)
        if text.startswith(("http://", "https://")):
            return cls(SourceKind.HTTP, text)
        raise ConfigurationError(
            f"Unrecognized metadata source: {text[:80]!r}. "
            f"Expected inline XML, a file: path or an http(s):// URL."
        )

    def describe(self) -> str:
        if self.kind is SourceKind.INLINE:
            return "inline metadata"
        if self.kind is SourceKind.FILE:
            return f"file:{self.location}"
        return self.location


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff for remote metadata retrieval.

    Attributes:
        max_attempts: Total attempts per fetch, including the first
        backoff_factor: Delay before the second attempt, in seconds
        max_backoff: Upper bound on any single delay, in seconds
    """

    max_attempts: int = 5
    backoff_factor: float = 1.0
    max_backoff: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_factor < 0 or self.max_backoff < 0:
            raise ValueError("backoff_factor and max_backoff must be >= 0")

    def delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.max_backoff, self.backoff_factor * (2 ** (attempt - 1)))


class MetadataIngester:
    """Load metadata sources into the entity catalog.

    Attributes:
        parser: Metadata parser
        on_records: Callback receiving each batch of parsed records
        retry: Backoff policy for remote sources
        timeout: Per-request timeout for remote sources, in seconds
        refresh_interval: Seconds between background re-fetches of remote
            sources; 0 disables periodic refresh

    Example:
        >>> ingester = MetadataIngester.for_catalog(catalog, MetadataParser(engine))
        >>> ingester.ingest(["https://idp.example.com/metadata", "file:/etc/saml/sp.xml"])
        >>> ingester.start_refresh()
    """

    def __init__(
        self,
        parser: MetadataParser,
        on_records: RecordCallback,
        pool: Optional[ConnectionPool] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        timeout: float = DEFAULT_TIMEOUT,
        retry: Optional[RetryPolicy] = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_workers < 1:
            raise ConfigurationError(f"max_workers must be >= 1, got {max_workers}")
        if timeout <= 0:
            raise ConfigurationError(f"timeout must be > 0, got {timeout}")

        self.parser = parser
        self.on_records = on_records
        self.pool = pool or ConnectionPool(ConnectionPoolConfig(max_connections=max_workers))
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.refresh_interval = refresh_interval
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="metadata-fetch"
        )
        self._lock = threading.Lock()
        self._remote_sources: Dict[str, float] = {}
        self._remote_valid_until: Dict[str, Optional[datetime]] = {}
        self._in_flight: Dict[str, Future] = {}
        self._stop_event = threading.Event()
        self._refresher: Optional[threading.Thread] = None

    @classmethod
    def for_catalog(
        cls,
        catalog: EntityCatalog,
        parser: MetadataParser,
        **kwargs,
    ) -> "MetadataIngester":
        """Create an ingester that upserts into an EntityCatalog."""
        return cls(parser, catalog.upsert_all, **kwargs)

    def ingest(self, sources: Sequence[Union[str, MetadataSource]]) -> List[Future]:
        """Ingest a list of sources.

        Inline and file sources are parsed before this returns. Remote
        sources are only submitted to the worker pool; their futures are
        returned so callers (and tests) can wait on them if they choose.

        Raises:
            ConfigurationError: If a source string is not recognized
        """
        classified = [
            source if isinstance(source, MetadataSource) else MetadataSource.from_string(source)
            for source in sources
        ]

        futures: List[Future] = []
        for source in classified:
            if source.kind is SourceKind.INLINE:
                self.ingest_inline(source.location)
            elif source.kind is SourceKind.FILE:
                self.ingest_path(Path(source.location))
            else:
                futures.append(self.submit(source.location))
        return futures

    def ingest_inline(self, xml: str) -> int:
        """Parse literal metadata XML. Malformed XML is logged and skipped."""
        return self._parse_and_publish(xml, "inline metadata")

    def ingest_path(self, path: Path) -> int:
        """Parse one metadata file, or every file in a directory.

        Unreadable or malformed files are logged and skipped.

        Returns:
            Number of entities ingested
        """
        if path.is_dir():
            files = sorted(child for child in path.iterdir() if child.is_file())
            logger.info(f"Scanning metadata directory {path} ({len(files)} files)")
        else:
            files = [path]

        total = 0
        for file_path in files:
            try:
                xml = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping unreadable metadata file {file_path}: {e}")
                _audit_failure(f"file:{file_path}", e)
                continue
            total += self._parse_and_publish(xml, f"file:{file_path}")
        return total

    def submit(self, url: str) -> Future:
        """Schedule retrieval of a remote source on the worker pool.

        A source already being fetched is not submitted twice; the pending
        future is returned instead.
        """
        if url.startswith("http://"):
            logger.warning(
                f"SECURITY WARNING: Metadata source {url} uses plain HTTP. "
                f"Metadata integrity cannot be guaranteed without HTTPS."
            )

        with self._lock:
            self._remote_sources.setdefault(url, 0.0)
            pending = self._in_flight.get(url)
            if pending is not None and not pending.done():
                return pending
            future = self._executor.submit(self._fetch_and_publish, url)
            self._in_flight[url] = future
        logger.debug(f"Submitted metadata fetch for {url}")
        return future

    def fetch(self, url: str) -> str:
        """Retrieve a remote metadata document with retry.

        Connection errors, timeouts and 5xx/429 responses are retried with
        capped exponential backoff. Other non-200 responses and TLS errors
        fail immediately.

        Raises:
            TransportFailure: When the source cannot be retrieved
        """
        max_attempts = self.retry.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                logger.debug(f"Metadata fetch attempt {attempt}/{max_attempts}: {url}")
                response = self.pool.get_session().get(
                    url,
                    headers={"Accept": "application/samlmetadata+xml, application/xml, text/xml"},
                    timeout=(self.timeout, self.timeout),
                )
                if response.status_code == 200:
                    return response.text
                failure = TransportFailure(
                    f"HTTP {response.status_code} from {url}",
                    url=url,
                    status_code=response.status_code,
                )
            except requests.exceptions.SSLError as e:
                logger.error(
                    f"TLS verification failed for metadata source {url}. "
                    f"Check the server certificate or TLS configuration. Error: {e}"
                )
                raise TransportFailure(f"TLS error from {url}: {e}", url=url) from e
            except (requests.ConnectionError, requests.Timeout) as e:
                failure = TransportFailure(f"{type(e).__name__} from {url}: {e}", url=url)

            if categorize_error(failure) is not ErrorCategory.TRANSIENT:
                logger.error(f"Metadata fetch failed permanently: {failure}")
                raise failure

            if attempt == max_attempts:
                logger.error(f"Metadata fetch failed after {max_attempts} attempts: {failure}")
                raise failure

            delay = self.retry.delay(attempt)
            logger.warning(
                f"Retry {attempt}/{max_attempts} for {url} after {delay:.1f}s delay ({failure})"
            )
            time.sleep(delay)

        raise RuntimeError("Retry logic error - should not reach this point")

    def _fetch_and_publish(self, url: str) -> int:
        start_time = time.time()
        try:
            xml = self.fetch(url)
        except TransportFailure as e:
            _audit_failure(url, e, duration=time.time() - start_time)
            raise
        finally:
            with self._lock:
                self._remote_sources[url] = time.monotonic()

        return self._parse_and_publish(xml, url)

    def _parse_and_publish(self, xml: str, source: str) -> int:
        try:
            records = self.parser.parse(xml, source=source, now=self.clock())
        except ValueError as e:
            logger.warning(f"Skipping malformed metadata from {source}: {e}")
            _audit_failure(source, e)
            return 0

        if source in self._remote_sources:
            expiries = [record.valid_until for record in records if record.valid_until]
            with self._lock:
                self._remote_valid_until[source] = min(expiries) if expiries else None

        self.on_records(records)
        log_audit_event(
            METADATA_INGESTED,
            {
                "status": "success",
                "source": source,
                "entities": ",".join(record.entity_id for record in records),
            },
        )
        return len(records)

    def due_sources(self) -> List[str]:
        """Remote sources whose refresh interval or validity has lapsed."""
        now = self.clock()
        monotonic_now = time.monotonic()
        due: List[str] = []
        with self._lock:
            for url, last_fetch in self._remote_sources.items():
                pending = self._in_flight.get(url)
                if pending is not None and not pending.done():
                    continue
                valid_until = self._remote_valid_until.get(url)
                if valid_until is not None and now >= valid_until:
                    due.append(url)
                elif self.refresh_interval > 0 and monotonic_now - last_fetch >= self.refresh_interval:
                    due.append(url)
        return due

    def refresh(self) -> List[Future]:
        """Re-submit every remote source that is due."""
        due = self.due_sources()
        if due:
            logger.info(f"Refreshing {len(due)} metadata sources")
        return [self.submit(url) for url in due]

    def start_refresh(self, check_interval: float = 60.0) -> None:
        """Start the background refresh thread (idempotent)."""
        if self._refresher is not None and self._refresher.is_alive():
            return
        self._stop_event.clear()
        self._refresher = threading.Thread(
            target=self._run_refresh,
            args=(check_interval,),
            name="metadata-refresh",
            daemon=True,
        )
        self._refresher.start()
        logger.debug(f"Metadata refresh started (check_interval={check_interval}s)")

    def _run_refresh(self, check_interval: float) -> None:
        while not self._stop_event.wait(check_interval):
            self.refresh()

    def shutdown(self, wait: bool = True) -> None:
        """Stop background refresh and the worker pool."""
        self._stop_event.set()
        if self._refresher is not None:
            self._refresher.join(timeout=5)
            self._refresher = None
        self._executor.shutdown(wait=wait)
        self.pool.close()

    def __enter__(self) -> "MetadataIngester":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()
