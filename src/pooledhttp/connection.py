"""A single HTTP/1.1 transport link to one endpoint.

:class:`Connection` wraps a connected socket (plain TCP, TLS, or a TLS
tunnel through an HTTP proxy) together with an :mod:`h11` state machine
that does the HTTP/1.1 framing: request line and headers, Content-Length
and chunked bodies, keep-alive negotiation.

Connections are created by :func:`open_connection` and owned by a
:class:`~pooledhttp.pool.Manager` while idle, or by exactly one in-flight
request while leased. They carry no locking of their own; the manager's
lease bookkeeping guarantees a single user at a time.

Error mapping:

* failure while *establishing* the link -> :class:`~pooledhttp.exceptions.ConnectError`
* socket timeout on an established link -> :class:`~pooledhttp.exceptions.RequestTimeout`
* any other socket error, or the peer hanging up mid-exchange ->
  :class:`~pooledhttp.exceptions.ConnectionLost`
* malformed HTTP from the peer -> :class:`~pooledhttp.exceptions.ProtocolError`
"""

from __future__ import annotations

import functools
import itertools
import logging
import select
import socket
import ssl
import time
from typing import Iterable, Optional, Union

import h11

from pooledhttp.exceptions import (
    ConnectError,
    ConnectionLost,
    InvalidUsageError,
    ProtocolError,
    RequestTimeout,
)
from pooledhttp.models import ConnectionState, EndpointKey, RequestConfig

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024
"""Bytes requested from the socket per ``recv`` call."""

Body = Union[None, bytes, Iterable[bytes]]

_ids = itertools.count(1)


@functools.lru_cache(maxsize=2)
def _ssl_context(verify: bool) -> ssl.SSLContext:
    """Return a shared client TLS context (one per verification mode)."""
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    context.set_alpn_protocols(["http/1.1"])
    return context


class Connection:
    """One keep-alive capable HTTP/1.1 link to an :class:`EndpointKey`.

    Args:
        key: The endpoint this connection is bound to.
        sock: A connected socket, already wrapped in TLS when required.
        read_timeout: Default socket timeout for reads and writes.
    """

    def __init__(self, key: EndpointKey, sock: socket.socket, read_timeout: Optional[float] = None) -> None:
        self.key = key
        self.id = next(_ids)
        self.state = ConnectionState.IDLE
        self.last_used_at = time.monotonic()
        self.requests_sent = 0
        self._sock: Optional[socket.socket] = sock
        self._read_timeout = read_timeout
        self._h11 = h11.Connection(our_role=h11.CLIENT)
        self._peer_closed = False
        if read_timeout is not None:
            sock.settimeout(read_timeout)

    def __repr__(self) -> str:
        return f"<Connection #{self.id} {self.key} {self.state.value}>"

    @property
    def is_closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    # ------------------------------------------------------------------ #
    # Request / response exchange
    # ------------------------------------------------------------------ #

    def set_timeout(self, timeout: Optional[float]) -> None:
        """Use *timeout* for the current exchange (``None`` restores the default)."""
        if self._sock is not None:
            self._sock.settimeout(timeout if timeout is not None else self._read_timeout)

    def send_request(
        self,
        method: str,
        target: bytes,
        headers: list[tuple[str, str]],
        body: Body = None,
    ) -> None:
        """Write the request line, headers, and body.

        *headers* must already carry the framing headers (``Host`` and
        either ``Content-Length`` or ``Transfer-Encoding: chunked``).
        An iterable *body* is written chunk by chunk as it is produced and
        is never joined in memory.
        """
        self.requests_sent += 1
        self._send(h11.Request(method=method, target=target, headers=headers))
        if isinstance(body, (bytes, bytearray, memoryview)):
            if body:
                self._send(h11.Data(data=bytes(body)))
        elif body is not None:
            for chunk in body:
                if chunk:
                    self._send(h11.Data(data=chunk))
        self._send(h11.EndOfMessage())

    def receive_response(self) -> h11.Response:
        """Read the status line and headers, skipping any 1xx interim responses."""
        while True:
            event = self._next_event()
            if isinstance(event, h11.Response):
                return event
            if isinstance(event, h11.InformationalResponse):
                continue
            raise ProtocolError(f"Unexpected event while awaiting response: {event!r}")

    def read_chunk(self) -> bytes:
        """Return the next piece of the response body, or ``b""`` at end of body."""
        while True:
            event = self._next_event()
            if isinstance(event, h11.Data):
                if event.data:
                    return bytes(event.data)
                continue
            if isinstance(event, (h11.EndOfMessage, h11.ConnectionClosed)):
                return b""
            if event is h11.PAUSED:
                return b""
            raise ProtocolError(f"Unexpected event while reading body: {event!r}")

    # ------------------------------------------------------------------ #
    # Keep-alive bookkeeping
    # ------------------------------------------------------------------ #

    def is_reusable(self) -> bool:
        """True when both sides completed the exchange and keep-alive still holds."""
        if self.is_closed or self._peer_closed:
            return False
        return self._h11.our_state is h11.DONE and self._h11.their_state is h11.DONE

    def start_next_cycle(self) -> None:
        """Reset the protocol state so the connection can carry another request."""
        self._h11.start_next_cycle()
        self.set_timeout(None)

    def is_stale(self) -> bool:
        """True if an idle connection has become unusable.

        An idle HTTP/1.1 connection should have nothing to read. If the
        socket polls readable the server has either hung up (EOF) or sent
        unsolicited bytes; either way the connection cannot be reused.
        """
        if self._sock is None:
            return True
        try:
            readable, _, _ = select.select([self._sock], [], [], 0)
        except (OSError, ValueError):
            return True
        return bool(readable)

    def close(self) -> None:
        """Close the transport. Safe to call more than once and from another thread."""
        self.state = ConnectionState.CLOSED
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            sock.close()
        except OSError as exc:
            logger.warning("Error closing connection #%d to %s: %s", self.id, self.key, exc)
        logger.debug("Closed connection #%d to %s", self.id, self.key)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _send(self, event: object) -> None:
        try:
            data = self._h11.send(event)
        except h11.LocalProtocolError as exc:
            raise InvalidUsageError(f"Cannot send request: {exc}") from exc
        if not data:
            return
        sock = self._require_socket()
        try:
            sock.sendall(data)
        except socket.timeout as exc:
            raise RequestTimeout(f"Timed out writing to {self.key}") from exc
        except OSError as exc:
            raise ConnectionLost(f"Connection to {self.key} lost while writing: {exc}") from exc

    def _next_event(self) -> object:
        while True:
            try:
                event = self._h11.next_event()
            except h11.RemoteProtocolError as exc:
                if self._peer_closed:
                    raise ConnectionLost(f"Server {self.key} closed the connection mid-response") from exc
                raise ProtocolError(f"Invalid HTTP from {self.key}: {exc}") from exc
            if event is not h11.NEED_DATA:
                return event
            data = self._recv()
            if not data:
                self._peer_closed = True
            self._h11.receive_data(data)

    def _recv(self) -> bytes:
        sock = self._require_socket()
        self.last_used_at = time.monotonic()
        try:
            return sock.recv(READ_SIZE)
        except socket.timeout as exc:
            raise RequestTimeout(f"Timed out reading from {self.key}") from exc
        except OSError as exc:
            raise ConnectionLost(f"Connection to {self.key} lost while reading: {exc}") from exc

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise ConnectionLost(f"Connection #{self.id} to {self.key} is closed")
        return self._sock


# ------------------------------------------------------------------ #
# Establishing connections
# ------------------------------------------------------------------ #


def open_connection(key: EndpointKey, config: RequestConfig) -> Connection:
    """Open a new transport link for *key*.

    Connects to the proxy when ``key.proxy`` is set, tunnelling with
    ``CONNECT`` for TLS targets, and performs the TLS handshake for
    ``https`` endpoints.

    Args:
        key: Destination (and optional proxy) to connect to.
        config: Timeouts and TLS verification settings.

    Returns:
        An idle :class:`Connection`.

    Raises:
        ConnectError: On DNS failure, refused or timed-out TCP connect,
            proxy tunnel refusal, or TLS handshake failure.
    """
    hop = key.proxy or key
    try:
        sock = socket.create_connection((hop.host, hop.port), timeout=config.connect_timeout)
    except socket.gaierror as exc:
        raise ConnectError(f"Could not resolve host {hop.host}: {exc}") from exc
    except socket.timeout as exc:
        raise ConnectError(f"Timed out connecting to {hop.host}:{hop.port}") from exc
    except OSError as exc:
        raise ConnectError(f"Could not connect to {hop.host}:{hop.port}: {exc}") from exc

    try:
        if key.proxy is not None and key.is_tls:
            _open_tunnel(sock, key)
        if key.is_tls:
            context = _ssl_context(config.verify_ssl)
            sock = context.wrap_socket(sock, server_hostname=key.host)
    except ConnectError:
        sock.close()
        raise
    except (ssl.SSLError, ssl.CertificateError) as exc:
        sock.close()
        raise ConnectError(f"TLS handshake with {key.host} failed: {exc}") from exc
    except OSError as exc:
        sock.close()
        raise ConnectError(f"Could not establish connection to {key}: {exc}") from exc

    conn = Connection(key, sock, read_timeout=config.read_timeout)
    logger.debug("Opened connection #%d to %s", conn.id, key)
    return conn


def _open_tunnel(sock: socket.socket, key: EndpointKey) -> None:
    """Ask the HTTP proxy on *sock* to tunnel to ``key.host:key.port``."""
    authority = f"{key.host}:{key.port}"
    tunnel = h11.Connection(our_role=h11.CLIENT)
    request = h11.Request(
        method="CONNECT",
        target=authority,
        headers=[("Host", authority)],
    )
    sock.sendall(tunnel.send(request) + tunnel.send(h11.EndOfMessage()))
    while True:
        try:
            event = tunnel.next_event()
        except h11.RemoteProtocolError as exc:
            raise ConnectError(f"Invalid proxy reply while tunnelling to {authority}: {exc}") from exc
        if event is h11.NEED_DATA:
            data = sock.recv(READ_SIZE)
            if not data:
                raise ConnectError(f"Proxy closed the connection before tunnelling to {authority}")
            tunnel.receive_data(data)
            continue
        if isinstance(event, h11.InformationalResponse):
            continue
        if isinstance(event, h11.Response):
            if not 200 <= event.status_code < 300:
                raise ConnectError(
                    f"Proxy refused tunnel to {authority}: HTTP {event.status_code}"
                )
            return
        raise ConnectError(f"Unexpected proxy reply while tunnelling to {authority}: {event!r}")
