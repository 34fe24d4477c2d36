"""
Bounded pool of DB-API connections used by the relational adapters.
"""

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from queue import Empty, LifoQueue
from typing import Any, Callable, Iterator, Optional

from .config import PoolConfig
from .exceptions import StorageError


@dataclass
class PoolStatistics:
    """Connection pool statistics."""
    total_connections: int = 0
    in_use: int = 0
    idle: int = 0
    max_connections: int = 0
    connections_created: int = 0
    connections_destroyed: int = 0
    acquisitions: int = 0
    timeouts: int = 0
    peak_in_use: int = 0
    average_wait_time: float = 0.0
    last_updated: datetime = field(default_factory=datetime.now)


@dataclass
class PooledConnection:
    """A raw driver connection plus its lifecycle bookkeeping."""
    raw: Any
    connection_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)

    def age(self) -> float:
        return time.monotonic() - self.created_at

    def idle_for(self) -> float:
        return time.monotonic() - self.last_used


class ConnectionPool:
    """
    Thread-safe connection pool.

    At most ``max_connections`` connections exist at once; callers block up
    to ``acquire_timeout`` seconds for a free slot. Use ``connection()`` so
    the connection is returned on every exit path, including exceptions and
    abandoned generators.
    """

    def __init__(self,
                 connect: Callable[[], Any],
                 config: Optional[PoolConfig] = None,
                 name: str = "pool",
                 reset: Optional[Callable[[Any], None]] = None,
                 close: Optional[Callable[[Any], None]] = None):
        self.config = config or PoolConfig()
        self.name = name
        self.logger = logging.getLogger(__name__)
        self._connect = connect
        self._reset = reset or (lambda raw: raw.rollback())
        self._close = close or (lambda raw: raw.close())
        self._idle: LifoQueue = LifoQueue()
        self._slots = threading.BoundedSemaphore(self.config.max_connections)
        self._lock = threading.RLock()
        self._statistics = PoolStatistics(max_connections=self.config.max_connections)
        self._total_wait = 0.0
        self._closed = False

    def warm_up(self) -> int:
        """Open ``min_connections`` idle connections ahead of demand."""
        opened = 0
        while self._count_total() < self.config.min_connections:
            pooled = self._create()
            self._idle.put(pooled)
            opened += 1
        with self._lock:
            self._refresh_counts()
        return opened

    def acquire(self, timeout: Optional[float] = None) -> PooledConnection:
        """
        Check out a connection.

        Raises:
            StorageError: If the pool is closed, the wait times out, or a new
                connection cannot be opened.
        """
        if self._closed:
            raise StorageError(f"Connection pool '{self.name}' is closed", backend=self.name)

        timeout = self.config.acquire_timeout if timeout is None else timeout
        start = time.monotonic()
        if not self._slots.acquire(timeout=timeout):
            with self._lock:
                self._statistics.timeouts += 1
            raise StorageError(
                f"Timed out after {timeout}s waiting for a connection from '{self.name}'",
                backend=self.name,
                retryable=True
            )

        try:
            pooled = self._take_idle()
            if pooled is None:
                pooled = self._create()
        except BaseException:
            self._slots.release()
            raise

        pooled.last_used = time.monotonic()
        with self._lock:
            self._statistics.acquisitions += 1
            self._statistics.in_use += 1
            self._statistics.peak_in_use = max(self._statistics.peak_in_use, self._statistics.in_use)
            self._total_wait += time.monotonic() - start
            self._statistics.average_wait_time = self._total_wait / self._statistics.acquisitions
            self._refresh_counts()
        return pooled

    def release(self, pooled: PooledConnection, discard: bool = False):
        """Return a connection. Broken or discarded connections are closed instead of reused."""
        try:
            if not discard and not self._closed:
                try:
                    self._reset(pooled.raw)
                except Exception as e:
                    self.logger.warning(f"Discarding connection {pooled.connection_id} from '{self.name}': {e}")
                    discard = True
            if discard or self._closed:
                self._destroy(pooled)
            else:
                pooled.last_used = time.monotonic()
                self._idle.put(pooled)
        finally:
            with self._lock:
                self._statistics.in_use = max(0, self._statistics.in_use - 1)
                self._refresh_counts()
            self._slots.release()

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Iterator[Any]:
        """Yield a raw connection; it goes back to the pool on every exit path."""
        pooled = self.acquire(timeout)
        discard = False
        try:
            yield pooled.raw
        except BaseException:
            discard = not self._try_rollback(pooled.raw)
            raise
        finally:
            self.release(pooled, discard=discard)

    def get_statistics(self) -> PoolStatistics:
        with self._lock:
            self._refresh_counts()
            return PoolStatistics(**vars(self._statistics))

    def close_all(self):
        """Close idle connections and refuse new checkouts. In-use connections close on release."""
        self._closed = True
        while True:
            try:
                pooled = self._idle.get_nowait()
            except Empty:
                break
            self._destroy(pooled)
        with self._lock:
            self._refresh_counts()
        self.logger.info(f"Connection pool '{self.name}' closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def _take_idle(self) -> Optional[PooledConnection]:
        while True:
            try:
                pooled = self._idle.get_nowait()
            except Empty:
                return None
            if self._is_stale(pooled):
                self._destroy(pooled)
                continue
            return pooled

    def _is_stale(self, pooled: PooledConnection) -> bool:
        return (pooled.age() > self.config.max_lifetime or
                pooled.idle_for() > self.config.idle_timeout)

    def _create(self) -> PooledConnection:
        try:
            raw = self._connect()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to open connection for '{self.name}': {e}",
                               backend=self.name, retryable=True) from e
        pooled = PooledConnection(raw=raw)
        with self._lock:
            self._statistics.connections_created += 1
        return pooled

    def _destroy(self, pooled: PooledConnection):
        try:
            self._close(pooled.raw)
        except Exception as e:
            self.logger.debug(f"Error closing connection {pooled.connection_id}: {e}")
        with self._lock:
            self._statistics.connections_destroyed += 1

    def _try_rollback(self, raw: Any) -> bool:
        try:
            raw.rollback()
            return True
        except Exception:
            return False

    def _count_total(self) -> int:
        with self._lock:
            return self._statistics.connections_created - self._statistics.connections_destroyed

    def _refresh_counts(self):
        self._statistics.idle = self._idle.qsize()
        self._statistics.total_connections = (self._statistics.connections_created -
                                              self._statistics.connections_destroyed)
        self._statistics.last_updated = datetime.now()
