"""HTTP client with connection pooling for metadata retrieval and SOAP sends.

Sessions are created without urllib3 retries: metadata ingestion runs its
own backoff loop, and outbound logout sends surface failures immediately.
"""

import logging
import ssl
from dataclasses import dataclass
from threading import Lock
from typing import Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.ssl_ import create_urllib3_context

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONNECTIONS = 10
DEFAULT_POOL_BLOCK = True
DEFAULT_CONNECT_TIMEOUT = 10
DEFAULT_READ_TIMEOUT = 30


class TLS12Adapter(HTTPAdapter):
    """Force TLS 1.2+ for HTTPS connections.

    Example:
        >>> session = requests.Session()
        >>> session.mount("https://", TLS12Adapter())
    """

    def init_poolmanager(self, *args, **kwargs):
        context = create_urllib3_context()
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        kwargs["ssl_context"] = context
        return super().init_poolmanager(*args, **kwargs)


@dataclass
class ConnectionPoolConfig:
    """Configuration for HTTP connection pooling.

    Attributes:
        max_connections: Maximum number of connections per host pool
        pool_block: Whether to block when the pool is exhausted
        timeout_connect: Connect timeout in seconds
        timeout_read: Read timeout in seconds
        verify_tls: Verify server certificates
    """

    max_connections: int = DEFAULT_MAX_CONNECTIONS
    pool_block: bool = DEFAULT_POOL_BLOCK
    timeout_connect: float = DEFAULT_CONNECT_TIMEOUT
    timeout_read: float = DEFAULT_READ_TIMEOUT
    verify_tls: bool = True

    def __post_init__(self) -> None:
        if self.max_connections < 1:
            raise ValueError(f"max_connections must be >= 1, got {self.max_connections}")
        if self.timeout_connect <= 0 or self.timeout_read <= 0:
            raise ValueError(
                f"timeouts must be > 0, got connect={self.timeout_connect} "
                f"read={self.timeout_read}"
            )

    @property
    def timeout(self) -> Tuple[float, float]:
        return (self.timeout_connect, self.timeout_read)


class ConnectionPool:
    """Manages a shared, lazily created requests session.

    Thread-safe: the session is created once under a lock and requests
    sessions can then be shared between worker threads.

    Example:
        >>> with ConnectionPool(ConnectionPoolConfig(max_connections=4)) as pool:
        ...     response = pool.get_session().get(url, timeout=pool.config.timeout)
    """

    def __init__(self, config: Optional[ConnectionPoolConfig] = None) -> None:
        self.config = config or ConnectionPoolConfig()
        self._session: Optional[requests.Session] = None
        self._lock = Lock()
        if not self.config.verify_tls:
            logger.warning(
                "TLS certificate verification is DISABLED. "
                "This should only be used for development with self-signed certificates."
            )

    def get_session(self) -> requests.Session:
        """Get or create the pooled session."""
        with self._lock:
            if self._session is None:
                self._session = self._create_session()
            return self._session

    def _create_session(self) -> requests.Session:
        size = self.config.max_connections
        session = requests.Session()
        session.mount(
            "https://",
            TLS12Adapter(pool_connections=size, pool_maxsize=size, pool_block=self.config.pool_block),
        )
        session.mount(
            "http://",
            HTTPAdapter(pool_connections=size, pool_maxsize=size, pool_block=self.config.pool_block),
        )
        session.verify = self.config.verify_tls
        logger.debug(
            "Created HTTP session with pool_maxsize=%d, pool_block=%s",
            size,
            self.config.pool_block,
        )
        return session

    def close(self) -> None:
        """Close the session and release pooled connections."""
        with self._lock:
            if self._session is not None:
                self._session.close()
                self._session = None
                logger.debug("ConnectionPool session closed")

    def __enter__(self) -> "ConnectionPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
