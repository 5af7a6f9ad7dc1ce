"""Exception hierarchy for pooledhttp.

All exceptions inherit from :class:`PooledHTTPError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`pooledhttp.exit_codes`.
The CLI entry point in :func:`pooledhttp.app.main` catches
``PooledHTTPError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

The core never retries a failed request. By the time any of these errors
reaches the caller the connection involved has already been returned to
the pool or closed.

Subclass hierarchy::

    PooledHTTPError (exit 1)
    +-- InvalidURL          (exit 2)
    +-- InvalidUsageError   (exit 2)
    +-- ConfigError         (exit 1)
    +-- ConnectError        (exit 3)
    +-- ConnectionLost      (exit 4)
    |   +-- RequestTimeout
    |   +-- ProtocolError
    +-- StatusError         (exit 5)
    +-- TooManyRedirects    (exit 6)
    +-- PoolClosedError     (exit 1)
    +-- StreamError         (exit 1)
        +-- StreamConsumed
        +-- ResponseNotRead
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from pooledhttp.exit_codes import (
    EXIT_CONNECT_FAILURE,
    EXIT_CONNECTION_LOST,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_STATUS_REJECTED,
    EXIT_TOO_MANY_REDIRECTS,
)

if TYPE_CHECKING:
    from pooledhttp.response import Response


class PooledHTTPError(Exception):
    """Base exception for all pooledhttp errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`pooledhttp.exit_codes`.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidURL(PooledHTTPError):
    """Raised when a URL is not absolute, has no host, or uses a scheme other than http/https.

    No network activity has taken place when this is raised, so callers
    may treat it as a recoverable input error.
    """

    exit_code = EXIT_INVALID_USAGE


class InvalidUsageError(PooledHTTPError):
    """Raised for invalid request overrides or CLI arguments."""

    exit_code = EXIT_INVALID_USAGE


class ConfigError(PooledHTTPError):
    """Raised for configuration problems (invalid JSON, failed validation, bad keys)."""

    exit_code = EXIT_GENERIC_FAILURE


class ConnectError(PooledHTTPError):
    """Raised when a fresh connection cannot be established (DNS, TCP refusal, TLS handshake)."""

    exit_code = EXIT_CONNECT_FAILURE


class ConnectionLost(PooledHTTPError):
    """Raised on I/O failure over an established connection mid-request.

    The connection is discarded before this propagates. The request is
    not retried: only the caller knows whether it is idempotent.
    """

    exit_code = EXIT_CONNECTION_LOST


class RequestTimeout(ConnectionLost):
    """Raised when a read or write on an established connection times out."""


class ProtocolError(ConnectionLost):
    """Raised when the peer sends something that is not valid HTTP/1.1."""


class StatusError(PooledHTTPError):
    """Raised when the response status is rejected by the request's status policy.

    The response has been fully read into memory before raising, so its
    headers and body remain available for inspection.

    Args:
        response: The rejected, fully buffered response.
    """

    exit_code = EXIT_STATUS_REJECTED

    def __init__(self, response: Response, message: Optional[str] = None):
        self.response = response
        self.status_code = response.status_code
        if message is None:
            reason = f" {response.reason_phrase}" if response.reason_phrase else ""
            message = f"HTTP {response.status_code}{reason} for {response.url}"
        super().__init__(message)


class TooManyRedirects(PooledHTTPError):
    """Raised when a redirect chain exceeds the request's redirect limit.

    Args:
        message: Error description.
        history: The redirect responses seen so far, oldest first.
    """

    exit_code = EXIT_TOO_MANY_REDIRECTS

    def __init__(self, message: str, history: Optional[list[Response]] = None):
        super().__init__(message)
        self.history = list(history or [])


class PoolClosedError(PooledHTTPError):
    """Raised when a connection is requested from a manager that has been closed."""


class StreamError(PooledHTTPError):
    """Base class for misuse of a streaming response body."""


class StreamConsumed(StreamError):
    """Raised when a single-pass response body is iterated a second time."""


class ResponseNotRead(StreamError):
    """Raised when ``content`` is accessed on a streaming response that has not been read."""
