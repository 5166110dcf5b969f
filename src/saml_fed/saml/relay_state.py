"""Short-lived RelayState storage for the redirect round-trip.

Entries expire a fixed time after they are written, whether or not they
are read. Expired entries are dropped lazily on access and by an optional
background sweeper thread. Nothing is persisted: after a restart every
token is simply unknown, and the logout or login flow starts over.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger("saml_fed.relay_state")

DEFAULT_TTL_SECONDS = 600.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0

T = TypeVar("T")


@dataclass
class RelayStateEntry(Generic[T]):
    """A stored value and the monotonic time it was written."""

    value: T
    written_at: float


class RelayStateCache(Generic[T]):
    """Thread-safe fixed-TTL map from opaque token to caller state.

    Attributes:
        ttl: Seconds an entry stays readable after it is written
        sweep_interval: Seconds between background sweeps

    Example:
        >>> cache = RelayStateCache()
        >>> token = cache.put("alice")
        >>> cache.take(token)
        'alice'
        >>> cache.take(token) is None
        True
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, RelayStateEntry[T]] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def put(self, value: T) -> str:
        """Store a value under a fresh random token and return the token."""
        token = str(uuid.uuid4())
        self.put_with_key(token, value)
        return token

    def put_with_key(self, key: str, value: T) -> None:
        """Store a value under a caller-chosen key, restarting its TTL.

        Raises:
            ValueError: If key is blank
        """
        if not key or not key.strip():
            raise ValueError("RelayState key must not be blank")
        with self._lock:
            self._entries[key] = RelayStateEntry(value=value, written_at=self._clock())
        logger.debug(f"Stored relay state {key}")

    def take(self, token: Optional[str], remove_after_read: bool = True) -> Optional[T]:
        """Return the value for a token, or None if unknown or expired.

        Args:
            token: Token returned by put (or key given to put_with_key)
            remove_after_read: Remove the entry once read (default True)
        """
        if not token:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            if self._is_expired(entry, now):
                del self._entries[token]
                logger.debug(f"Relay state {token} expired")
                return None
            if remove_after_read:
                del self._entries[token]
        return entry.value

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired relay state entries")
        return len(expired)

    def start(self) -> None:
        """Start the background sweeper thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="relay-state-sweeper", daemon=True
        )
        self._sweeper.start()
        logger.debug(f"Relay state sweeper started (interval={self.sweep_interval}s)")

    def stop(self) -> None:
        """Stop the background sweeper thread."""
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.sweep_interval + 1)
            self._sweeper = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _is_expired(self, entry: RelayStateEntry[Any], now: float) -> bool:
        return now - entry.written_at >= self.ttl

    def _run_sweeper(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            self.sweep()
