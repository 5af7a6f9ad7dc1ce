"""Connection pool manager with LIFO reuse and a background idle reaper.

:class:`Manager` owns every idle :class:`~pooledhttp.connection.Connection`,
grouped by :class:`~pooledhttp.models.EndpointKey`, and keeps a registry of
the connections currently leased to in-flight requests. A single lock
guards both structures, which gives the two invariants the rest of the
package relies on:

* a connection is in at most one pool entry, and
* a leased connection is in no pool entry (no double lease).

Opening a new connection happens *outside* the lock, so a pool miss never
waits on other callers: concurrency is unbounded unless the caller limits
it.

A daemon reaper thread wakes every ``reaper_interval`` seconds and closes
idle connections unused for longer than ``idle_timeout``. It also reclaims
connections held by streaming responses that were handed to a caller and
then left untouched for ``idle_timeout``; closing streaming responses is
the caller's obligation, and the reaper bounds the cost of forgetting.

Example::

    from pooledhttp import Manager, fetch, parse_request

    with Manager() as manager:
        response = fetch(parse_request("https://example.com/"), manager)
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from pooledhttp.connection import Connection, open_connection
from pooledhttp.exceptions import PoolClosedError
from pooledhttp.models import ConnectionState, EndpointKey, PoolConfig, PoolStats, RequestConfig

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[EndpointKey, RequestConfig], Connection]
"""Signature of the callable used to open new connections."""


class Manager:
    """Process-scoped owner of pooled keep-alive connections.

    Create one explicitly, share it between any number of threads, and
    close it at shutdown (or use it as a context manager). There is no
    implicit global instance.

    Args:
        config: Pool behaviour (idle timeout, reaper interval, drain bound).
        request_config: Connect/read timeouts and TLS settings passed to the
            connection factory.
        connection_factory: Callable opening a new connection for a key.
            Defaults to :func:`~pooledhttp.connection.open_connection`.
        start_reaper: Start the background reaper thread. Tests that drive
            :meth:`reap` by hand pass ``False``.
    """

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        request_config: Optional[RequestConfig] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        start_reaper: bool = True,
    ) -> None:
        self.config = config or PoolConfig()
        self.request_config = request_config or RequestConfig()
        self._factory: ConnectionFactory = connection_factory or open_connection
        self._lock = threading.Lock()
        self._pools: dict[EndpointKey, list[Connection]] = {}
        self._leased: dict[int, Connection] = {}
        self._detached: set[int] = set()
        self._closed = False
        self._opened = 0
        self._reused = 0
        self._closed_count = 0
        self._reaped = 0
        self._stop = threading.Event()
        self._reaper: Optional[threading.Thread] = None
        if start_reaper:
            self._reaper = threading.Thread(
                target=self._reap_forever, name="pooledhttp-reaper", daemon=True
            )
            self._reaper.start()

    # ------------------------------------------------------------------ #
    # Context manager
    # ------------------------------------------------------------------ #

    def __enter__(self) -> Manager:
        return self

    def __exit__(self, *args: object) -> None:
        self.close_all()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Manager {state} idle={self.stats().idle} leased={len(self._leased)}>"

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------ #
    # Checkout / checkin
    # ------------------------------------------------------------------ #

    def acquire(self, key: EndpointKey) -> Connection:
        """Lease a connection for *key*.

        Returns the most recently released idle connection for *key* when
        one is still fresh, otherwise opens a new one.

        Raises:
            PoolClosedError: If :meth:`close_all` has been called.
            ConnectError: If a new transport cannot be established.
        """
        now = time.monotonic()
        discard: list[Connection] = []
        conn: Optional[Connection] = None
        with self._lock:
            if self._closed:
                raise PoolClosedError("Connection manager is closed")
            idle = self._pools.get(key)
            while idle:
                candidate = idle.pop()
                if now - candidate.last_used_at > self.config.idle_timeout or candidate.is_stale():
                    discard.append(candidate)
                    continue
                conn = candidate
                break
            if idle is not None and not idle:
                del self._pools[key]
            if conn is not None:
                conn.state = ConnectionState.LEASED
                self._leased[conn.id] = conn
                self._reused += 1

        for stale in discard:
            logger.debug("Discarding expired or stale connection #%d to %s", stale.id, key)
            self._close(stale)

        if conn is not None:
            logger.debug("Reusing connection #%d to %s", conn.id, key)
            return conn

        conn = self._factory(key, self.request_config)
        with self._lock:
            if not self._closed:
                conn.state = ConnectionState.LEASED
                self._leased[conn.id] = conn
                self._opened += 1
                return conn
        self._close(conn)
        raise PoolClosedError("Connection manager was closed while connecting")

    def release(self, conn: Connection, healthy: bool = True) -> None:
        """Return a leased connection.

        A healthy connection goes back to the front of its key's pool,
        unless the manager has been closed in the meantime; anything else
        is closed. Releasing a connection that is not currently leased
        (already released, or reclaimed by the reaper) is a no-op.

        Args:
            conn: The connection obtained from :meth:`acquire`.
            healthy: ``True`` only if the last exchange completed cleanly
                and the connection may carry another request.
        """
        with self._lock:
            if self._leased.pop(conn.id, None) is None:
                logger.debug("Ignoring release of connection #%d (not leased)", conn.id)
                return
            self._detached.discard(conn.id)
            if healthy and not self._closed and not conn.is_closed:
                conn.state = ConnectionState.IDLE
                conn.last_used_at = time.monotonic()
                self._pools.setdefault(conn.key, []).append(conn)
                logger.debug("Connection #%d to %s returned to pool", conn.id, conn.key)
                return
        self._close(conn)

    def detach(self, conn: Connection) -> None:
        """Mark a leased connection as handed to a caller through a streaming response.

        Detached leases that stay untouched for longer than ``idle_timeout``
        are reclaimed by the reaper.
        """
        with self._lock:
            if conn.id in self._leased:
                conn.last_used_at = time.monotonic()
                self._detached.add(conn.id)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def reap(self) -> int:
        """Close idle connections past ``idle_timeout`` and abandoned streaming leases.

        Called periodically by the reaper thread; callable directly as well.

        Returns:
            The number of connections closed.
        """
        now = time.monotonic()
        timeout = self.config.idle_timeout
        victims: list[Connection] = []
        with self._lock:
            for key in list(self._pools):
                idle = self._pools[key]
                fresh = [c for c in idle if now - c.last_used_at <= timeout]
                victims.extend(c for c in idle if now - c.last_used_at > timeout)
                if fresh:
                    self._pools[key] = fresh
                else:
                    del self._pools[key]
            for conn_id in list(self._detached):
                conn = self._leased[conn_id]
                if now - conn.last_used_at > timeout:
                    logger.warning(
                        "Reclaiming connection #%d to %s from an unclosed streaming response",
                        conn.id,
                        conn.key,
                    )
                    del self._leased[conn_id]
                    self._detached.discard(conn_id)
                    victims.append(conn)
            self._reaped += len(victims)

        for conn in victims:
            self._close(conn)
        if victims:
            logger.debug("Reaper closed %d connection(s)", len(victims))
        return len(victims)

    def close_all(self) -> None:
        """Close the manager: stop the reaper and close every idle connection.

        Connections leased at this point keep working until released, and
        are then closed rather than pooled. Calling this more than once is
        harmless.
        """
        with self._lock:
            self._closed = True
            idle = [c for conns in self._pools.values() for c in conns]
            self._pools.clear()
        self._stop.set()
        if self._reaper is not None and self._reaper is not threading.current_thread():
            self._reaper.join()
        for conn in idle:
            self._close(conn)
        logger.debug("Connection manager closed (%d idle connection(s) closed)", len(idle))

    def stats(self) -> PoolStats:
        """Return a consistent snapshot of the pool counters."""
        with self._lock:
            return PoolStats(
                idle=sum(len(c) for c in self._pools.values()),
                leased=len(self._leased),
                opened=self._opened,
                reused=self._reused,
                closed=self._closed_count,
                reaped=self._reaped,
                endpoints=len(self._pools),
                is_closed=self._closed,
            )

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _close(self, conn: Connection) -> None:
        already_closed = conn.is_closed
        conn.close()
        if not already_closed:
            with self._lock:
                self._closed_count += 1

    def _reap_forever(self) -> None:
        while not self._stop.wait(self.config.reaper_interval):
            try:
                self.reap()
            except Exception:
                logger.exception("Connection reaper sweep failed")
