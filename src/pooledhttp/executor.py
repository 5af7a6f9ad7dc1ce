"""Request executor: connection checkout, redirects, status policy, release.

:func:`send` runs one logical request against a caller-supplied
:class:`~pooledhttp.pool.Manager`:

1. Lease a connection for the request's endpoint key (the proxy's, when
   proxied).
2. Write the request line, headers and body. Iterable bodies are streamed
   with chunked transfer encoding.
3. Read the status line and headers. Any I/O failure releases the
   connection as unhealthy and raises
   :class:`~pooledhttp.exceptions.ConnectionLost`. Nothing is retried.
4. A 3xx with a ``Location`` header, while redirects are being followed,
   has its body drained over the same connection (so the connection stays
   reusable), the connection released, and the request rebuilt for the
   new location per :mod:`pooledhttp.redirects`. A hop beyond
   ``redirect_limit`` raises :class:`~pooledhttp.exceptions.TooManyRedirects`.
5. The final status is checked against the request's status policy. A
   rejected response is read into memory, its connection released, and
   attached to the raised :class:`~pooledhttp.exceptions.StatusError`.
6. The response is returned, either buffered (body read, connection
   already released) or streaming (body bound to the live lease).

Every failure path, including ``KeyboardInterrupt`` and other
cancellation, releases the connection before the exception propagates,
and a partially written request or partially read response is never
returned to the pool.

Redirect following is decided once per call: it is on when
``follow_redirects`` is true and ``redirect_limit`` is above zero. With a
limit of zero the first 3xx response is the final response.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Union

import httpx

from pooledhttp.connection import Connection
from pooledhttp.exceptions import PooledHTTPError, StatusError, TooManyRedirects
from pooledhttp.models import RequestConfig
from pooledhttp.pool import Manager
from pooledhttp.redirects import build_redirect, is_redirect
from pooledhttp.request import RequestDescriptor, parse_request
from pooledhttp.response import Response

logger = logging.getLogger(__name__)

RequestLike = Union[RequestDescriptor, str, httpx.URL]

_METHODS_EXPECTING_BODY = frozenset({"POST", "PUT", "PATCH"})


class LeasedBody:
    """Body source reading from a leased connection and releasing it exactly once.

    Reaching the end of the body releases the connection as healthy when
    HTTP/1.1 keep-alive allows it. :meth:`close` before the end reads and
    discards up to ``max_drain_bytes`` of the remainder; if the body ends
    within that bound the connection is still released as healthy,
    otherwise it is closed. A budget of zero reads nothing.
    """

    def __init__(self, conn: Connection, manager: Manager) -> None:
        self._conn = conn
        self._manager = manager
        self._done = False
        self._released = False

    @property
    def connection(self) -> Connection:
        return self._conn

    def detach(self) -> None:
        """Register the lease as handed to a caller (eligible for reaper reclaim)."""
        self._manager.detach(self._conn)

    def read_chunk(self) -> bytes:
        if self._done:
            return b""
        try:
            chunk = self._conn.read_chunk()
        except BaseException:
            self._release(healthy=False)
            raise
        if not chunk:
            self._done = True
            self._release(healthy=True)
        return chunk

    def close(self) -> None:
        if self._released:
            return
        try:
            if not self._done:
                self._drain(self._manager.config.max_drain_bytes)
        finally:
            self._release(healthy=self._done)

    def abort(self) -> None:
        self._release(healthy=False)

    def _drain(self, limit: int) -> None:
        remaining = limit
        try:
            while remaining > 0:
                chunk = self._conn.read_chunk()
                if not chunk:
                    self._done = True
                    return
                remaining -= len(chunk)
        except PooledHTTPError as exc:
            logger.debug("Could not drain connection #%d: %s", self._conn.id, exc)
            return
        logger.debug(
            "Body on connection #%d exceeds %d drain bytes; discarding connection",
            self._conn.id,
            limit,
        )

    def _release(self, healthy: bool) -> None:
        if self._released:
            return
        self._released = True
        reusable = healthy and self._conn.is_reusable()
        if reusable:
            self._conn.start_next_cycle()
        self._manager.release(self._conn, healthy=reusable)


def send(request: RequestLike, manager: Manager, *, stream: bool = False) -> Response:
    """Execute *request* through *manager*.

    Args:
        request: A :class:`~pooledhttp.request.RequestDescriptor`, or a URL
            string parsed with default settings.
        manager: The connection manager to lease connections from.
        stream: Return with the body still attached to the live connection
            instead of reading it into memory.

    Returns:
        The final :class:`~pooledhttp.response.Response`.

    Raises:
        InvalidURL: If *request* is a malformed URL string.
        ConnectError: If a new connection cannot be established.
        ConnectionLost: On I/O failure over an established connection.
        StatusError: If the final status is rejected by the status policy.
        TooManyRedirects: If the redirect chain exceeds ``redirect_limit``.
        PoolClosedError: If *manager* has been closed.
    """
    request = _coerce_request(request)
    initial_limit = request.redirect_limit
    following = request.follow_redirects and initial_limit > 0
    history: list[Response] = []

    while True:
        response = _exchange(request, manager)
        try:
            next_request = None
            if following and is_redirect(response.status_code, response.headers):
                next_request = build_redirect(request, response.status_code, response.headers["location"])
            if next_request is None:
                break
            response.close()
            history.append(response)
            if request.redirect_limit <= 0:
                raise TooManyRedirects(
                    f"Exceeded {initial_limit} redirect(s) following {history[0].url}",
                    history,
                )
            logger.debug(
                "Following %d redirect: %s %s -> %s %s",
                response.status_code,
                request.method,
                request.url,
                next_request.method,
                next_request.url,
            )
            request = next_request
        except BaseException:
            response.abort()
            raise

    response.history = history
    try:
        accepted = request.status_policy(response.status_code)
        if not accepted:
            response.read()
            raise StatusError(response)
        if stream:
            source = response._stream
            if isinstance(source, LeasedBody):
                source.detach()
        else:
            response.read()
    except BaseException:
        response.abort()
        raise
    return response


def fetch(request: RequestLike, manager: Manager) -> Response:
    """Execute *request* and return a fully buffered response.

    The whole body is held in memory, which suits small payloads. For
    large or unbounded bodies use :func:`stream`.
    """
    return send(request, manager, stream=False)


def open_stream(request: RequestLike, manager: Manager) -> Response:
    """Execute *request* and return a streaming response.

    The caller must fully read or :meth:`~pooledhttp.response.Response.close`
    the response. Prefer :func:`stream`, which does so on every exit path.
    """
    return send(request, manager, stream=True)


@contextmanager
def stream(request: RequestLike, manager: Manager) -> Iterator[Response]:
    """Scope a streaming response: the connection is released when the block exits.

    Example::

        with stream(parse_request(url), manager) as response:
            for chunk in response.iter_bytes():
                sink.write(chunk)
    """
    response = open_stream(request, manager)
    try:
        yield response
    except BaseException:
        response.abort()
        raise
    finally:
        response.close()


# ------------------------------------------------------------------ #
# Private helpers
# ------------------------------------------------------------------ #


def _coerce_request(request: RequestLike) -> RequestDescriptor:
    if isinstance(request, RequestDescriptor):
        return request
    return parse_request(request)


def _exchange(request: RequestDescriptor, manager: Manager) -> Response:
    """Send one request over a leased connection and return a streaming response."""
    conn = manager.acquire(request.endpoint_key)
    try:
        conn.set_timeout(request.timeout)
        conn.send_request(
            request.method,
            request.target,
            wire_headers(request, manager.request_config),
            request.body,
        )
        head = conn.receive_response()
    except BaseException:
        manager.release(conn, healthy=False)
        raise

    headers = httpx.Headers(
        [(name.decode("latin-1"), value.decode("latin-1")) for name, value in head.headers.raw_items()]
    )
    return Response(
        head.status_code,
        headers=headers,
        url=request.url,
        request=request,
        reason_phrase=head.reason.decode("latin-1"),
        http_version=f"HTTP/{head.http_version.decode('ascii')}",
        stream=LeasedBody(conn, manager),
    )


def wire_headers(request: RequestDescriptor, config: RequestConfig) -> list[tuple[str, str]]:
    """Return the headers actually written: caller headers plus Host, defaults and framing."""
    headers = list(request.headers)
    if not request.has_header("host"):
        headers.insert(0, ("Host", request.authority))
    if not request.has_header("user-agent"):
        headers.append(("User-Agent", config.user_agent))
    if not request.has_header("accept"):
        headers.append(("Accept", "*/*"))

    body = request.body
    framed = request.has_header("content-length") or request.has_header("transfer-encoding")
    if body is None:
        if request.method in _METHODS_EXPECTING_BODY and not framed:
            headers.append(("Content-Length", "0"))
    elif isinstance(body, bytes):
        if not framed:
            headers.append(("Content-Length", str(len(body))))
    elif not framed:
        headers.append(("Transfer-Encoding", "chunked"))
    return headers
