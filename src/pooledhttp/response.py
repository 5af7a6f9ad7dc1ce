"""Response model with buffered and streaming body access.

A :class:`Response` is produced by :mod:`pooledhttp.executor`. Its body
lives in one of two places:

* **Buffered** -- ``content`` holds the whole body; the connection has
  already gone back to the pool.
* **Streaming** -- the body is pulled on demand from the leased
  connection through a :class:`BodySource`. The first complete pass
  through :meth:`Response.iter_bytes` (or :meth:`Response.read`) releases
  the connection as healthy. :meth:`Response.close` before the end drains
  a bounded remainder so the connection can still be reused, and
  otherwise discards the connection.

A streaming response is single-pass, forward-only and not safe for
concurrent reads. Closing it is the caller's obligation: an unclosed
response keeps its connection leased until the manager's reaper reclaims
it after ``idle_timeout``. Use it as a context manager to close it on
every exit path.
"""

from __future__ import annotations

import codecs
import json
from typing import TYPE_CHECKING, Any, Iterator, Optional, Protocol

import httpx

from pooledhttp.exceptions import ResponseNotRead, StreamConsumed

if TYPE_CHECKING:
    from pooledhttp.request import RequestDescriptor


class BodySource(Protocol):
    """Pull interface between a streaming :class:`Response` and its connection lease."""

    def read_chunk(self) -> bytes:
        """Return the next body chunk, ``b""`` at end of body."""

    def close(self) -> None:
        """Stop reading: drain a bounded remainder if cheap, then release the connection."""

    def abort(self) -> None:
        """Stop reading and discard the connection immediately."""


class Response:
    """An HTTP response.

    Args:
        status_code: Numeric status code.
        headers: Response headers (ordered, case-insensitive, duplicates kept).
        url: The URL this response was received from.
        request: The request that produced it.
        reason_phrase: Reason phrase from the status line.
        http_version: Protocol version string, e.g. ``"HTTP/1.1"``.
        content: The complete body for buffered responses.
        stream: The body source for streaming responses.
    """

    def __init__(
        self,
        status_code: int,
        *,
        headers: Optional[httpx.Headers] = None,
        url: Optional[httpx.URL] = None,
        request: Optional[RequestDescriptor] = None,
        reason_phrase: str = "",
        http_version: str = "HTTP/1.1",
        content: Optional[bytes] = None,
        stream: Optional[BodySource] = None,
    ) -> None:
        self.status_code = status_code
        self.headers = headers if headers is not None else httpx.Headers()
        self.url = url if url is not None else (request.url if request is not None else httpx.URL())
        self.request = request
        self.reason_phrase = reason_phrase
        self.http_version = http_version
        self.history: list[Response] = []
        self._content = content
        self._stream = stream
        self._stream_consumed = False
        self._closed = stream is None

    def __repr__(self) -> str:
        return f"<Response [{self.status_code} {self.reason_phrase}]>"

    def __enter__(self) -> Response:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Status helpers
    # ------------------------------------------------------------------ #

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status_code < 400 and "location" in self.headers

    @property
    def is_closed(self) -> bool:
        """True once the body's connection has been released (always true when buffered)."""
        return self._closed

    @property
    def is_stream_consumed(self) -> bool:
        return self._stream_consumed

    # ------------------------------------------------------------------ #
    # Body access
    # ------------------------------------------------------------------ #

    @property
    def content(self) -> bytes:
        """The full body.

        Raises:
            ResponseNotRead: For a streaming response before :meth:`read`.
        """
        if self._content is None:
            raise ResponseNotRead(
                "Response body has not been read; call read() or iterate the stream first"
            )
        return self._content

    @property
    def encoding(self) -> str:
        """Charset from ``Content-Type``, falling back to UTF-8."""
        content_type = self.headers.get("content-type", "")
        for part in content_type.split(";")[1:]:
            key, _, value = part.strip().partition("=")
            if key.lower() == "charset" and value:
                charset = value.strip("\"' ")
                try:
                    codecs.lookup(charset)
                except LookupError:
                    break
                return charset
        return "utf-8"

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding, errors="replace")

    def json(self, **kwargs: Any) -> Any:
        return json.loads(self.content, **kwargs)

    def read(self) -> bytes:
        """Read the rest of a streaming body into memory and return the full body."""
        if self._content is None:
            self._content = b"".join(self.iter_raw())
        return self._content

    def iter_bytes(self, chunk_size: Optional[int] = None) -> Iterator[bytes]:
        """Iterate the body, optionally re-chunked to *chunk_size* bytes.

        Buffered responses may be iterated any number of times; a streaming
        body can be iterated once.
        """
        if self._content is not None:
            size = chunk_size or len(self._content) or 1
            for start in range(0, len(self._content), size):
                yield self._content[start : start + size]
            return
        if chunk_size is None:
            yield from self.iter_raw()
            return
        pending = b""
        for chunk in self.iter_raw():
            pending += chunk
            while len(pending) >= chunk_size:
                yield pending[:chunk_size]
                pending = pending[chunk_size:]
        if pending:
            yield pending

    def iter_raw(self) -> Iterator[bytes]:
        """Yield body chunks exactly as they arrive from the connection.

        Raises:
            StreamConsumed: If the stream was already iterated or closed.
        """
        if self._content is not None:
            if self._content:
                yield self._content
            return
        if self._stream_consumed or self._stream is None:
            raise StreamConsumed("Response stream has already been consumed or closed")
        self._stream_consumed = True
        stream = self._stream
        try:
            while True:
                chunk = stream.read_chunk()
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def iter_text(self) -> Iterator[str]:
        decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")
        for chunk in self.iter_bytes():
            text = decoder.decode(chunk)
            if text:
                yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    def iter_lines(self) -> Iterator[str]:
        """Yield decoded lines without their line terminators."""
        pending = ""
        for text in self.iter_text():
            pending += text
            lines = pending.splitlines(keepends=True)
            pending = ""
            if lines and not lines[-1].endswith(("\n", "\r")):
                pending = lines.pop()
            for line in lines:
                yield line.rstrip("\r\n")
        if pending:
            yield pending

    # ------------------------------------------------------------------ #
    # Release
    # ------------------------------------------------------------------ #

    def close(self) -> None:
        """Release the connection behind a streaming body.

        Drains a bounded remainder to keep the connection reusable when
        that is cheap; otherwise the connection is discarded. Idempotent.
        """
        if self._closed:
            return
        self._closed = True
        self._stream_consumed = True
        if self._stream is not None:
            self._stream.close()

    def abort(self) -> None:
        """Discard the connection immediately without draining. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._stream_consumed = True
        if self._stream is not None:
            self._stream.abort()
