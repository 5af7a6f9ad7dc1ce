"""pooledhttp -- HTTP/1.1 client with keep-alive connection pooling.

The core is a transport layer usable by any caller: an explicitly created
:class:`Manager` owns a pool of reusable connections keyed by endpoint and
reaps idle ones in the background; :func:`parse_request` builds immutable
request descriptors; :func:`fetch` and :func:`stream` execute them with
redirect following and a configurable status policy.

Typical use::

    from pooledhttp import Manager, fetch, parse_request, stream

    with Manager() as manager:
        response = fetch(parse_request("https://example.com/"), manager)
        print(response.status_code, len(response.content))

        with stream(parse_request("https://example.com/big"), manager) as response:
            for chunk in response.iter_bytes():
                ...

Modules:
    connection: One HTTP/1.1 link to an endpoint (h11 framing).
    pool: The connection manager and its reaper.
    request: Request descriptors, URL parsing and overrides.
    redirects: Redirect method and header policy.
    response: Buffered and streaming responses.
    executor: The request pipeline (send / fetch / stream).
    client: Convenience facade over a manager.
    models: Pydantic models shared across the package.
    config: XDG-aware configuration loading.
    exceptions: Exception hierarchy with exit-code mapping.
    app: Typer CLI entry point.
"""

__version__ = "0.1.0"

from pooledhttp.client import Client  # noqa: E402
from pooledhttp.exceptions import (  # noqa: E402
    ConnectError,
    ConnectionLost,
    InvalidURL,
    PoolClosedError,
    PooledHTTPError,
    ProtocolError,
    RequestTimeout,
    StatusError,
    TooManyRedirects,
)
from pooledhttp.executor import fetch, open_stream, send, stream  # noqa: E402
from pooledhttp.models import ClientConfig, EndpointKey, PoolConfig, RequestConfig  # noqa: E402
from pooledhttp.pool import Manager  # noqa: E402
from pooledhttp.request import (  # noqa: E402
    RequestDescriptor,
    accept_any_status,
    default_status_policy,
    parse_request,
)
from pooledhttp.response import Response  # noqa: E402

__all__ = [
    "Client",
    "ClientConfig",
    "ConnectError",
    "ConnectionLost",
    "EndpointKey",
    "InvalidURL",
    "Manager",
    "PoolClosedError",
    "PoolConfig",
    "PooledHTTPError",
    "ProtocolError",
    "RequestConfig",
    "RequestDescriptor",
    "RequestTimeout",
    "Response",
    "StatusError",
    "TooManyRedirects",
    "accept_any_status",
    "default_status_policy",
    "fetch",
    "open_stream",
    "parse_request",
    "send",
    "stream",
]
