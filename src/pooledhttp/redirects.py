"""Redirect policy.

The rules follow the conventions shared by browsers, ``requests`` and
``httpx``:

* **301, 302** -- ``POST`` is rewritten to ``GET`` without a body; every
  other method is kept.
* **303** -- every method except ``HEAD`` becomes ``GET`` without a body.
* **307, 308** -- method and body are kept. A body that cannot be sent
  twice (a one-shot iterator) makes the redirect unfollowable; the 3xx
  response then becomes the final response.

When the method is rewritten the ``Content-Length``, ``Content-Type`` and
``Transfer-Encoding`` headers go with the body. When the redirect leaves
the original origin (scheme, host or port) the ``Authorization``,
``Cookie`` and ``Host`` headers are dropped.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterator
from typing import Optional

import httpx

from pooledhttp.exceptions import InvalidURL
from pooledhttp.request import RequestDescriptor, parse_url

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

_BODY_HEADERS = ("Content-Length", "Content-Type", "Transfer-Encoding")
_CREDENTIAL_HEADERS = ("Authorization", "Cookie", "Host")


def is_redirect(status_code: int, headers: httpx.Headers) -> bool:
    """True for a redirect status that carries a ``Location`` header."""
    return status_code in REDIRECT_STATUSES and "location" in headers


def redirect_method(method: str, status_code: int) -> str:
    """Return the method to use for the next hop."""
    if status_code == 303 and method != "HEAD":
        return "GET"
    if status_code in (301, 302) and method == "POST":
        return "GET"
    return method


def resolve_location(current: httpx.URL, location: str) -> httpx.URL:
    """Resolve a ``Location`` value against *current*.

    Raises:
        InvalidURL: If the location is malformed or not http(s).
    """
    try:
        url = current.join(location.strip())
    except (httpx.InvalidURL, ValueError) as exc:
        raise InvalidURL(f"Invalid redirect location {location!r}: {exc}") from exc
    url = parse_url(url)
    if not url.fragment and current.fragment:
        url = url.copy_with(fragment=current.fragment)
    return url


def same_origin(a: httpx.URL, b: httpx.URL) -> bool:
    return (a.scheme, a.host, a.port) == (b.scheme, b.host, b.port)


def build_redirect(request: RequestDescriptor, status_code: int, location: str) -> Optional[RequestDescriptor]:
    """Build the request for the next hop, or ``None`` if it cannot be followed.

    The returned descriptor has ``redirect_limit`` decremented by one.
    """
    url = resolve_location(request.url, location)
    method = redirect_method(request.method, status_code)
    body = request.body
    if method != request.method:
        body = None
    elif not _is_replayable(body):
        return None

    next_request = dataclasses.replace(
        request,
        method=method,
        url=url,
        body=body,
        redirect_limit=max(request.redirect_limit - 1, 0),
    )
    if body is None and request.body is not None:
        next_request = next_request.without_headers(*_BODY_HEADERS)
    if not same_origin(request.url, url):
        next_request = next_request.without_headers(*_CREDENTIAL_HEADERS)
    return next_request


def _is_replayable(body: object) -> bool:
    return not isinstance(body, Iterator)
