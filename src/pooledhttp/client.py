"""Client facade binding request defaults to an explicitly supplied manager.

:class:`Client` is a convenience layer over :mod:`pooledhttp.executor`. It
keeps default headers and request settings and exposes verb helpers, but
every request still goes through the :class:`~pooledhttp.pool.Manager`
given to it. There is no hidden global manager.

By default a client does **not** own its manager: closing the client
leaves the manager (and its pooled connections) open for other users.
:meth:`Client.create` builds a client that owns a fresh manager and closes
it on exit.

Example::

    with Manager() as manager:
        client = Client(manager, headers={"Accept": "application/json"})
        users = client.get("https://api.example.com/users").json()

        with client.stream("GET", "https://example.com/big.iso") as response:
            for chunk in response.iter_bytes():
                sink.write(chunk)
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional, Union

import httpx

from pooledhttp.executor import send
from pooledhttp.models import ClientConfig, RequestConfig
from pooledhttp.pool import Manager
from pooledhttp.request import RequestDescriptor, header_pairs, parse_request
from pooledhttp.response import Response


class Client:
    """Request facade over a shared :class:`~pooledhttp.pool.Manager`.

    Args:
        manager: The connection manager every request is sent through.
        config: Request defaults; ``redirect_limit`` seeds each request.
            Defaults to the manager's own request config.
        headers: Headers added to every request. Per-request headers win
            on a name collision.
        owns_manager: Close *manager* when the client is closed.
    """

    def __init__(
        self,
        manager: Manager,
        config: Optional[RequestConfig] = None,
        headers: Optional[Any] = None,
        owns_manager: bool = False,
    ) -> None:
        self._manager = manager
        self._config = config or manager.request_config
        self._headers = header_pairs(headers) if headers is not None else ()
        self._owns_manager = owns_manager

    @classmethod
    def create(cls, config: Optional[ClientConfig] = None, headers: Optional[Any] = None) -> Client:
        """Build a client that owns a new manager configured from *config*."""
        config = config or ClientConfig()
        manager = Manager(config.pool, config.request)
        return cls(manager, config=config.request, headers=headers, owns_manager=True)

    # ------------------------------------------------------------------ #
    # Context manager
    # ------------------------------------------------------------------ #

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the manager if this client owns it."""
        if self._owns_manager:
            self._manager.close_all()

    @property
    def manager(self) -> Manager:
        return self._manager

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    def build_request(self, method: str, url: Union[str, httpx.URL], **overrides: Any) -> RequestDescriptor:
        """Parse *url* and apply client defaults followed by *overrides*."""
        request = parse_request(url, method=method, redirect_limit=self._config.redirect_limit)
        if self._headers:
            request = request.replace(headers=self._headers)
        return request.replace(**overrides)

    def request(self, method: str, url: Union[str, httpx.URL], **overrides: Any) -> Response:
        """Send a request and return the buffered response.

        Args:
            method: HTTP method.
            url: Absolute URL.
            **overrides: Request overrides (``headers``, ``body``,
                ``json_body``, ``redirect_limit``, ``status_policy``,
                ``proxy``, ``follow_redirects``, ``timeout``).

        Raises:
            InvalidURL: For a malformed URL.
            ConnectError: If the connection cannot be established.
            ConnectionLost: On mid-request I/O failure.
            StatusError: If the status policy rejects the response.
            TooManyRedirects: If the redirect limit is exceeded.
        """
        return send(self.build_request(method, url, **overrides), self._manager)

    @contextmanager
    def stream(self, method: str, url: Union[str, httpx.URL], **overrides: Any) -> Iterator[Response]:
        """Send a request and yield a streaming response, closed on exit."""
        response = send(self.build_request(method, url, **overrides), self._manager, stream=True)
        try:
            yield response
        except BaseException:
            response.abort()
            raise
        finally:
            response.close()

    def get(self, url: Union[str, httpx.URL], **overrides: Any) -> Response:
        return self.request("GET", url, **overrides)

    def head(self, url: Union[str, httpx.URL], **overrides: Any) -> Response:
        return self.request("HEAD", url, **overrides)

    def post(self, url: Union[str, httpx.URL], **overrides: Any) -> Response:
        return self.request("POST", url, **overrides)

    def put(self, url: Union[str, httpx.URL], **overrides: Any) -> Response:
        return self.request("PUT", url, **overrides)

    def patch(self, url: Union[str, httpx.URL], **overrides: Any) -> Response:
        return self.request("PATCH", url, **overrides)

    def delete(self, url: Union[str, httpx.URL], **overrides: Any) -> Response:
        return self.request("DELETE", url, **overrides)
