"""Request builder: URL parsing and pure override application.

:func:`parse_request` turns an absolute URL string into an immutable
:class:`RequestDescriptor`; :func:`apply_overrides` derives a new
descriptor with some fields replaced. Descriptors are never mutated in
place, so one descriptor can safely be reused as a template by many
threads.

Override semantics:

==================  =====================================================
``method``          replace (upper-cased)
``headers``         merge; on a case-insensitive name collision every
                    existing value for that name is dropped in favour of
                    the override's values
``body``            replace (``bytes``, ``str`` or an iterable of bytes)
``json_body``       serialise to JSON, replace body, set Content-Type
``redirect_limit``  replace
``status_policy``   replace (``None`` restores the default)
``proxy``           replace (``None`` removes the proxy)
``follow_redirects``  replace
``timeout``         replace
==================  =====================================================
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Union

import httpx
from pydantic import ValidationError

from pooledhttp.exceptions import InvalidURL, InvalidUsageError
from pooledhttp.models import DEFAULT_PORTS, EndpointKey, RequestOverrides

Body = Union[None, bytes, Iterable[bytes]]
HeaderPairs = tuple[tuple[str, str], ...]
StatusPolicy = Callable[[int], bool]

DEFAULT_REDIRECT_LIMIT = 10


def default_status_policy(status_code: int) -> bool:
    """Accept 2xx responses, reject everything else."""
    return 200 <= status_code < 300


def accept_any_status(status_code: int) -> bool:
    """Accept every status code."""
    return True


@dataclass(frozen=True)
class RequestDescriptor:
    """An immutable, fully parsed request.

    Build one with :func:`parse_request`; derive variants with
    :meth:`replace`.

    Attributes:
        method: HTTP verb, upper-case.
        url: Absolute ``http`` or ``https`` URL.
        headers: Ordered ``(name, value)`` pairs. Duplicates are allowed;
            lookups are case-insensitive.
        body: ``None``, in-memory bytes, or an iterable producing bytes
            (sent with chunked transfer encoding).
        redirect_limit: Maximum number of redirect hops to follow.
        proxy: Optional ``http://`` proxy URL.
        status_policy: Predicate deciding which final status codes count
            as success.
        follow_redirects: Follow 3xx responses carrying a Location header.
        timeout: Socket timeout for this request; ``None`` uses the
            manager's configured read timeout.
    """

    method: str
    url: httpx.URL
    headers: HeaderPairs = ()
    body: Body = None
    redirect_limit: int = DEFAULT_REDIRECT_LIMIT
    proxy: Optional[httpx.URL] = None
    status_policy: StatusPolicy = default_status_policy
    follow_redirects: bool = True
    timeout: Optional[float] = None

    @property
    def scheme(self) -> str:
        return self.url.scheme

    @property
    def host(self) -> str:
        return self.url.host

    @property
    def port(self) -> int:
        return self.url.port or DEFAULT_PORTS[self.url.scheme]

    @property
    def is_tls(self) -> bool:
        return self.url.scheme == "https"

    @property
    def endpoint_key(self) -> EndpointKey:
        """The pool identity this request is sent over."""
        return EndpointKey.from_url(self.url, self.proxy)

    @property
    def target(self) -> bytes:
        """The request-target written on the request line.

        Plain-HTTP requests through a proxy use the absolute form; all
        others use the origin form (path and query).
        """
        if self.proxy is not None and not self.is_tls:
            return str(self.url).split("#", 1)[0].encode("ascii")
        return self.url.raw_path

    @property
    def authority(self) -> str:
        """Value for the ``Host`` header (port omitted when it is the scheme default)."""
        host = self.url.raw_host.decode("ascii")
        if ":" in host:
            host = f"[{host}]"
        if self.url.port is not None and self.url.port != DEFAULT_PORTS[self.url.scheme]:
            return f"{host}:{self.url.port}"
        return host

    def get_header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Return the first value of header *name* (case-insensitive)."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return default

    def has_header(self, name: str) -> bool:
        lowered = name.lower()
        return any(key.lower() == lowered for key, _ in self.headers)

    def without_headers(self, *names: str) -> RequestDescriptor:
        """Return a copy with every header in *names* removed."""
        dropped = {n.lower() for n in names}
        kept = tuple((k, v) for k, v in self.headers if k.lower() not in dropped)
        return dataclasses.replace(self, headers=kept)

    def replace(self, **overrides: Any) -> RequestDescriptor:
        """Shorthand for :func:`apply_overrides` on this descriptor."""
        return apply_overrides(self, **overrides)


def parse_request(url: Union[str, httpx.URL], **overrides: Any) -> RequestDescriptor:
    """Parse *url* into a ``GET`` request and apply *overrides*.

    No network activity takes place.

    Args:
        url: Absolute ``http://`` or ``https://`` URL.
        **overrides: Any field accepted by
            :class:`~pooledhttp.models.RequestOverrides`.

    Returns:
        A new :class:`RequestDescriptor`.

    Raises:
        InvalidURL: If *url* is malformed, relative, has no host, or uses
            an unsupported scheme.
        InvalidUsageError: If an override is unknown or has the wrong type.

    Example::

        request = parse_request(
            "https://api.example.com/items",
            method="POST",
            json_body={"name": "widget"},
            redirect_limit=3,
        )
    """
    return apply_overrides(RequestDescriptor(method="GET", url=parse_url(url)), **overrides)


def parse_url(url: Union[str, httpx.URL]) -> httpx.URL:
    """Validate *url* as an absolute http(s) URL.

    Raises:
        InvalidURL: On any parse failure or unsupported scheme.
    """
    try:
        parsed = url if isinstance(url, httpx.URL) else httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        raise InvalidURL(f"Invalid URL {url!r}: {exc}") from exc
    if not parsed.scheme:
        raise InvalidURL(f"URL {str(parsed)!r} is not absolute")
    if parsed.scheme not in DEFAULT_PORTS:
        raise InvalidURL(f"Unsupported URL scheme {parsed.scheme!r} in {str(parsed)!r}")
    if not parsed.host:
        raise InvalidURL(f"URL {str(parsed)!r} has no host")
    return parsed


def apply_overrides(descriptor: RequestDescriptor, **overrides: Any) -> RequestDescriptor:
    """Return a copy of *descriptor* with *overrides* applied.

    Raises:
        InvalidUsageError: For unknown override names, invalid values, or
            when both ``body`` and ``json_body`` are given.
        InvalidURL: For a malformed ``proxy`` URL.
    """
    if not overrides:
        return descriptor
    try:
        validated = RequestOverrides(**overrides)
    except ValidationError as exc:
        raise InvalidUsageError(f"Invalid request overrides: {exc}") from exc

    given = validated.model_fields_set
    if "body" in given and "json_body" in given:
        raise InvalidUsageError("Pass either body or json_body, not both")

    changes: dict[str, Any] = {}
    headers = descriptor.headers

    if validated.method is not None:
        changes["method"] = validated.method
    if "headers" in given and validated.headers is not None:
        headers = merge_headers(headers, header_pairs(validated.headers))
    if "body" in given:
        changes["body"] = _coerce_body(validated.body)
    if "json_body" in given:
        changes["body"] = json.dumps(validated.json_body).encode("utf-8")
        headers = merge_headers(headers, (("Content-Type", "application/json"),))
    if validated.redirect_limit is not None:
        changes["redirect_limit"] = validated.redirect_limit
    if "status_policy" in given:
        changes["status_policy"] = validated.status_policy or default_status_policy
    if "proxy" in given:
        changes["proxy"] = _parse_proxy(validated.proxy) if validated.proxy else None
    if validated.follow_redirects is not None:
        changes["follow_redirects"] = validated.follow_redirects
    if "timeout" in given:
        changes["timeout"] = validated.timeout

    return dataclasses.replace(descriptor, headers=headers, **changes)


def merge_headers(base: HeaderPairs, override: HeaderPairs) -> HeaderPairs:
    """Merge *override* into *base*; override names replace all prior values."""
    replaced = {name.lower() for name, _ in override}
    kept = tuple((k, v) for k, v in base if k.lower() not in replaced)
    return kept + tuple(override)


def header_pairs(headers: Any) -> HeaderPairs:
    """Normalise a dict, :class:`httpx.Headers`, or list of pairs into header pairs."""
    if isinstance(headers, httpx.Headers):
        items: Iterable[Any] = headers.multi_items()
    elif isinstance(headers, dict):
        items = headers.items()
    elif isinstance(headers, (list, tuple)):
        items = headers
    else:
        raise InvalidUsageError(f"Unsupported headers type: {type(headers).__name__}")
    pairs = []
    for item in items:
        try:
            name, value = item
        except (TypeError, ValueError) as exc:
            raise InvalidUsageError(f"Header entries must be (name, value) pairs, got {item!r}") from exc
        pairs.append((str(name), str(value)))
    return tuple(pairs)


def _coerce_body(body: Any) -> Body:
    if body is None or isinstance(body, bytes):
        return body
    if isinstance(body, (bytearray, memoryview)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    if isinstance(body, dict):
        raise InvalidUsageError("Use json_body for dict payloads")
    if isinstance(body, Iterable):
        return body
    raise InvalidUsageError(f"Unsupported body type: {type(body).__name__}")


def _parse_proxy(proxy: Union[str, httpx.URL]) -> httpx.URL:
    url = parse_url(proxy)
    if url.scheme != "http":
        raise InvalidURL(f"Only http:// proxies are supported, got {str(proxy)!r}")
    return url
