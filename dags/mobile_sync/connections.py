from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

import psycopg2
import psycopg2.extensions
from psycopg2.pool import ThreadedConnectionPool

from mobile_sync.config import CLOUD, DESKTOP, SyncSettings
from mobile_sync.errors import ConfigError, ConnectivityError

LOG = logging.getLogger(__name__)

PoolFactory = Callable[[int, int, str], ThreadedConnectionPool]


def _default_pool_factory(minconn: int, maxconn: int, dsn: str) -> ThreadedConnectionPool:
    return ThreadedConnectionPool(minconn, maxconn, dsn)


class ConnectionManager:
    """
    One pool per store (desktop, cloud).
    • open() builds both pools, retrying with bounded exponential backoff;
      exhaustion raises ConnectivityError (fatal for the run).
    • acquire(store) yields a connection and always hands it back, rolling back
      anything left open, on success, error or cancellation.
    """

    def __init__(
        self,
        dsns: Dict[str, str],
        attempts: int = 3,
        backoff: float = 2.0,
        minconn: int = 1,
        maxconn: int = 4,
        pool_factory: PoolFactory = _default_pool_factory,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.dsns = dict(dsns)
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool_factory = pool_factory
        self._sleep = sleep
        self._pools: Dict[str, ThreadedConnectionPool] = {}
        self.log = logger or LOG

    @classmethod
    def from_settings(cls, settings: SyncSettings, **kwargs) -> "ConnectionManager":
        return cls(
            {DESKTOP: settings.desktop.dsn(), CLOUD: settings.cloud.dsn()},
            attempts=settings.connect_attempts,
            backoff=settings.connect_backoff,
            minconn=settings.desktop.pool_min,
            maxconn=max(settings.desktop.pool_max, settings.cloud.pool_max),
            **kwargs,
        )

    # ------------------------ Lifecycle ------------------------

    def open(self, stores: Optional[list] = None) -> "ConnectionManager":
        for store in stores or list(self.dsns):
            if store not in self._pools:
                self._pools[store] = self._connect(store)
        return self

    def close(self) -> None:
        for store, pool in list(self._pools.items()):
            try:
                pool.closeall()
                self.log.debug("Closed %s pool", store)
            except Exception:
                self.log.warning("Error closing %s pool", store, exc_info=True)
        self._pools.clear()

    def __enter__(self) -> "ConnectionManager":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _connect(self, store: str) -> ThreadedConnectionPool:
        if store not in self.dsns:
            raise ConfigError(f"No DSN configured for store {store!r}")
        last_error = ""
        for attempt in range(1, self.attempts + 1):
            t0 = time.perf_counter()
            try:
                pool = self._pool_factory(self.minconn, self.maxconn, self.dsns[store])
                self.log.info("Connected to %s store (attempt %d, %.3fs)", store, attempt, time.perf_counter() - t0)
                return pool
            except psycopg2.OperationalError as e:
                last_error = str(e).strip().splitlines()[0] if str(e).strip() else repr(e)
                if attempt < self.attempts:
                    delay = self.backoff * (2 ** (attempt - 1))
                    self.log.warning(
                        "Connect to %s failed (attempt %d/%d): %s; retrying in %.1fs",
                        store, attempt, self.attempts, last_error, delay,
                    )
                    self._sleep(delay)
                else:
                    self.log.error("Connect to %s failed (attempt %d/%d): %s", store, attempt, self.attempts, last_error)
        raise ConnectivityError(store, self.attempts, last_error)

    # ------------------------ Scoped acquisition ------------------------

    @contextmanager
    def acquire(self, store: str) -> Iterator[psycopg2.extensions.connection]:
        pool = self._pools.get(store)
        if pool is None:
            pool = self._pools[store] = self._connect(store)
        conn = pool.getconn()
        try:
            yield conn
        finally:
            broken = bool(conn.closed)
            if not broken:
                try:
                    if conn.get_transaction_status() != psycopg2.extensions.TRANSACTION_STATUS_IDLE:
                        self.log.warning("%s connection not idle on release; rolling back", store)
                        conn.rollback()
                except Exception:
                    self.log.debug("Could not check/rollback %s connection status", store, exc_info=True)
                    broken = True
            pool.putconn(conn, close=broken)
