"""End-to-end tests for the request executor against a local keep-alive server.

The server counts accepted TCP connections, so connection reuse, draining
and discarding are observable from the outside as well as through
:meth:`Manager.stats`.
"""

from __future__ import annotations

import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator

import httpx
import pytest

from pooledhttp.exceptions import (
    ConnectError,
    ConnectionLost,
    PoolClosedError,
    RequestTimeout,
    StatusError,
    TooManyRedirects,
)
from pooledhttp.executor import fetch, open_stream, send, stream, wire_headers
from pooledhttp.models import PoolConfig, RequestConfig
from pooledhttp.pool import Manager
from pooledhttp.request import accept_any_status, parse_request


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def truncating_server() -> Iterator[str]:
    """A one-shot server that announces 100 body bytes, sends 10 and hangs up."""
    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]

    def serve() -> None:
        conn, _ = listener.accept()
        with conn:
            received = b""
            while b"\r\n\r\n" not in received:
                chunk = conn.recv(4096)
                if not chunk:
                    return
                received += chunk
            conn.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 100\r\n\r\n0123456789")

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{port}/truncated"
    finally:
        thread.join(timeout=2)
        listener.close()


# ---------------------------------------------------------------------------
# Basic exchange and reuse
# ---------------------------------------------------------------------------


class TestFetch:
    def test_simple_get(self, http_server, manager: Manager) -> None:
        response = fetch(parse_request(http_server.url("/hello")), manager)
        assert response.status_code == 200
        assert response.reason_phrase == "OK"
        assert response.http_version == "HTTP/1.1"
        assert response.content == b"hello"
        assert response.is_closed

    def test_url_string_accepted(self, http_server, manager: Manager) -> None:
        assert fetch(http_server.url("/hello"), manager).text == "hello"

    def test_sequential_requests_reuse_one_connection(self, http_server, manager: Manager) -> None:
        for _ in range(5):
            assert fetch(http_server.url("/hello"), manager).content == b"hello"
        stats = manager.stats()
        assert stats.opened == 1
        assert stats.reused == 4
        assert stats.idle == 1
        assert stats.leased == 0
        assert http_server.connections == 1

    def test_chunked_response(self, http_server, manager: Manager) -> None:
        response = fetch(http_server.url("/chunked"), manager)
        assert response.text == "alpha\nbeta\ngamma\n"
        fetch(http_server.url("/hello"), manager)
        assert http_server.connections == 1

    def test_json_response(self, http_server, manager: Manager) -> None:
        response = fetch(http_server.url("/json"), manager)
        assert response.json() == {"ok": True, "items": [1, 2, 3]}

    def test_head_has_no_body(self, http_server, manager: Manager) -> None:
        response = fetch(parse_request(http_server.url("/hello"), method="HEAD"), manager)
        assert response.status_code == 200
        assert response.content == b""
        assert response.headers["content-length"] == "5"
        fetch(http_server.url("/hello"), manager)
        assert manager.stats().opened == 1

    def test_connection_close_is_not_pooled(self, http_server, manager: Manager) -> None:
        assert fetch(http_server.url("/close"), manager).content == b"bye"
        assert manager.stats().idle == 0
        fetch(http_server.url("/hello"), manager)
        assert manager.stats().opened == 2

    def test_default_headers_sent(self, http_server, manager: Manager) -> None:
        data = fetch(http_server.url("/echo"), manager).json()
        assert data["headers"]["host"] == f"127.0.0.1:{http_server.port}"
        assert data["headers"]["user-agent"].startswith("pooledhttp/")
        assert data["headers"]["accept"] == "*/*"

    def test_response_headers_exposed(self, http_server, manager: Manager) -> None:
        response = fetch(parse_request(http_server.url("/status/404"), status_policy=accept_any_status), manager)
        assert response.headers["x-status"] == "404"
        assert response.headers.get_list("content-type") == ["text/plain; charset=utf-8"]


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class TestRequestBodies:
    def test_post_bytes(self, http_server, manager: Manager) -> None:
        request = parse_request(http_server.url("/echo"), method="POST", body=b"payload")
        data = fetch(request, manager).json()
        assert data["method"] == "POST"
        assert data["body"] == "payload"
        assert data["headers"]["content-length"] == "7"

    def test_post_json_body(self, http_server, manager: Manager) -> None:
        request = parse_request(http_server.url("/echo"), method="POST", json_body={"a": 1})
        data = fetch(request, manager).json()
        assert data["body"] == '{"a": 1}'
        assert data["headers"]["content-type"] == "application/json"

    def test_streamed_upload_uses_chunked_encoding(self, http_server, manager: Manager) -> None:
        def chunks():
            for i in range(5):
                yield f"part{i};".encode()

        request = parse_request(http_server.url("/echo"), method="PUT", body=chunks())
        data = fetch(request, manager).json()
        assert data["body"] == "part0;part1;part2;part3;part4;"
        assert data["headers"]["transfer-encoding"] == "chunked"
        fetch(http_server.url("/hello"), manager)
        assert manager.stats().opened == 1

    def test_empty_post_sends_zero_length(self, http_server, manager: Manager) -> None:
        data = fetch(parse_request(http_server.url("/echo"), method="POST"), manager).json()
        assert data["headers"]["content-length"] == "0"


class TestWireHeaders:
    def test_caller_host_wins(self) -> None:
        request = parse_request("http://h/", headers={"Host": "virtual.example"})
        headers = wire_headers(request, RequestConfig())
        assert [v for k, v in headers if k.lower() == "host"] == ["virtual.example"]

    def test_host_first_and_framing(self) -> None:
        request = parse_request("http://h:8080/", method="POST", body=b"abc")
        headers = wire_headers(request, RequestConfig(user_agent="ua/1"))
        assert headers[0] == ("Host", "h:8080")
        assert ("User-Agent", "ua/1") in headers
        assert ("Content-Length", "3") in headers

    def test_iterable_body_chunked(self) -> None:
        request = parse_request("http://h/", method="POST", body=iter([b"a"]))
        headers = wire_headers(request, RequestConfig())
        assert ("Transfer-Encoding", "chunked") in headers
        assert not any(k == "Content-Length" for k, _ in headers)

    def test_get_without_body_has_no_framing(self) -> None:
        headers = wire_headers(parse_request("http://h/"), RequestConfig())
        assert not any(k in ("Content-Length", "Transfer-Encoding") for k, _ in headers)


# ---------------------------------------------------------------------------
# Redirects
# ---------------------------------------------------------------------------


class TestRedirects:
    def test_302_followed_over_one_connection(self, http_server, manager: Manager) -> None:
        response = fetch(parse_request(http_server.url("/old"), redirect_limit=5), manager)
        assert response.status_code == 200
        assert response.content == b"new page"
        assert str(response.url).endswith("/new")
        assert [r.status_code for r in response.history] == [302]
        assert manager.stats().opened == 1
        assert http_server.connections == 1

    def test_chain_within_limit(self, http_server, manager: Manager) -> None:
        response = fetch(parse_request(http_server.url("/redirect/3"), redirect_limit=3), manager)
        assert response.content == b"done"
        assert len(response.history) == 3

    def test_chain_exceeding_limit(self, http_server, manager: Manager) -> None:
        with pytest.raises(TooManyRedirects) as exc_info:
            fetch(parse_request(http_server.url("/redirect/4"), redirect_limit=3), manager)
        assert exc_info.value.exit_code == 6
        assert len(exc_info.value.history) == 4
        assert manager.stats().leased == 0

    def test_redirect_loop(self, http_server, manager: Manager) -> None:
        with pytest.raises(TooManyRedirects):
            fetch(parse_request(http_server.url("/loop"), redirect_limit=2), manager)

    def test_zero_limit_returns_redirect(self, http_server, manager: Manager) -> None:
        request = parse_request(http_server.url("/old"), redirect_limit=0, status_policy=accept_any_status)
        response = fetch(request, manager)
        assert response.status_code == 302
        assert response.headers["location"] == "/new"
        assert response.history == []

    def test_follow_disabled(self, http_server, manager: Manager) -> None:
        request = parse_request(http_server.url("/old"), follow_redirects=False, status_policy=accept_any_status)
        assert fetch(request, manager).status_code == 302

    def test_unfollowed_redirect_rejected_by_default_policy(self, http_server, manager: Manager) -> None:
        with pytest.raises(StatusError) as exc_info:
            fetch(parse_request(http_server.url("/old"), follow_redirects=False), manager)
        assert exc_info.value.status_code == 302

    def test_303_turns_post_into_get(self, http_server, manager: Manager) -> None:
        request = parse_request(http_server.url("/see-other"), method="POST", body=b"form")
        data = fetch(request, manager).json()
        assert data["method"] == "GET"
        assert data["body"] == ""
        assert "content-length" not in data["headers"]

    def test_307_keeps_post_body(self, http_server, manager: Manager) -> None:
        request = parse_request(http_server.url("/temporary"), method="POST", body=b"keep me")
        data = fetch(request, manager).json()
        assert data["method"] == "POST"
        assert data["body"] == "keep me"

    def test_307_with_streamed_body_not_followed(self, http_server, manager: Manager) -> None:
        request = parse_request(
            http_server.url("/temporary"),
            method="POST",
            body=iter([b"one-shot"]),
            status_policy=accept_any_status,
        )
        response = fetch(request, manager)
        assert response.status_code == 307


# ---------------------------------------------------------------------------
# Status policy
# ---------------------------------------------------------------------------


class TestStatusPolicy:
    def test_rejected_status_raises_with_readable_body(self, http_server, manager: Manager) -> None:
        with pytest.raises(StatusError) as exc_info:
            fetch(http_server.url("/status/404"), manager)
        err = exc_info.value
        assert err.status_code == 404
        assert err.response.content == b"status 404"
        assert err.exit_code == 5
        assert "404" in str(err)

    def test_connection_reused_after_status_error(self, http_server, manager: Manager) -> None:
        with pytest.raises(StatusError):
            fetch(http_server.url("/status/500"), manager)
        fetch(http_server.url("/hello"), manager)
        assert manager.stats().opened == 1
        assert manager.stats().leased == 0

    def test_custom_policy(self, http_server, manager: Manager) -> None:
        request = parse_request(http_server.url("/status/404"), status_policy=lambda code: code in (200, 404))
        assert fetch(request, manager).status_code == 404

    def test_streaming_status_error_is_buffered(self, http_server, manager: Manager) -> None:
        with pytest.raises(StatusError) as exc_info:
            open_stream(http_server.url("/status/503"), manager)
        assert exc_info.value.response.content == b"status 503"
        assert manager.stats().leased == 0


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStreaming:
    def test_stream_full_read_releases(self, http_server, manager: Manager) -> None:
        with stream(http_server.url("/big?size=200000"), manager) as response:
            assert manager.stats().leased == 1
            total = sum(len(chunk) for chunk in response.iter_bytes())
        assert total == 200000
        stats = manager.stats()
        assert stats.leased == 0
        assert stats.idle == 1

    def test_early_close_drains_small_remainder(self, http_server, manager: Manager) -> None:
        with stream(http_server.url("/big?size=1000"), manager) as response:
            assert response.status_code == 200
        assert manager.stats().idle == 1
        fetch(http_server.url("/hello"), manager)
        assert http_server.connections == 1

    def test_early_close_discards_large_remainder(self, http_server) -> None:
        m = Manager(PoolConfig(max_drain_bytes=1024), start_reaper=False)
        try:
            with stream(http_server.url("/big?size=5000000"), m) as response:
                next(response.iter_bytes())
            stats = m.stats()
            assert stats.leased == 0
            assert stats.idle == 0
            assert stats.closed == 1
            fetch(http_server.url("/hello"), m)
            assert http_server.connections == 2
        finally:
            m.close_all()

    def test_exception_in_block_discards_connection(self, http_server, manager: Manager) -> None:
        with pytest.raises(RuntimeError):
            with stream(http_server.url("/big?size=100"), manager):
                raise RuntimeError("boom")
        stats = manager.stats()
        assert stats.leased == 0
        assert stats.idle == 0

    def test_abandoned_stream_reclaimed_by_reaper(self, http_server) -> None:
        m = Manager(PoolConfig(idle_timeout=0.05), start_reaper=False)
        try:
            response = open_stream(http_server.url("/big?size=100000"), m)
            assert m.stats().leased == 1
            time.sleep(0.1)
            assert m.reap() == 1
            assert m.stats().leased == 0
            # The caller's late close is harmless.
            response.close()
            assert m.stats().idle == 0
        finally:
            m.close_all()

    def test_send_stream_flag(self, http_server, manager: Manager) -> None:
        response = send(http_server.url("/chunked"), manager, stream=True)
        assert list(response.iter_lines()) == ["alpha", "beta", "gamma"]
        assert manager.stats().idle == 1

    def test_zero_drain_budget_discards_unfinished_body(self, http_server) -> None:
        m = Manager(PoolConfig(max_drain_bytes=0), start_reaper=False)
        try:
            with stream(http_server.url("/big?size=10"), m) as response:
                assert response.status_code == 200
            stats = m.stats()
            assert stats.idle == 0
            assert stats.closed == 1

            with stream(http_server.url("/big?size=10"), m) as response:
                assert response.read() == b"x" * 10
            assert m.stats().idle == 1
        finally:
            m.close_all()


# ---------------------------------------------------------------------------
# Proxies
# ---------------------------------------------------------------------------


class TestProxy:
    def test_plain_http_sent_in_absolute_form(self, http_server, manager: Manager) -> None:
        request = parse_request("http://example.invalid/hello", proxy=http_server.base_url)
        assert fetch(request, manager).content == b"hello"
        _, target, headers, _ = http_server.requests[-1]
        assert target == "http://example.invalid/hello"
        assert {k.lower(): v for k, v in headers.items()}["host"] == "example.invalid"

    def test_proxied_requests_share_the_proxy_connection(self, http_server, manager: Manager) -> None:
        proxy = httpx.URL(http_server.base_url)
        for path in ("/hello", "/json"):
            fetch(parse_request(f"http://example.invalid{path}", proxy=proxy), manager)
        assert manager.stats().opened == 1

        fetch(http_server.url("/hello"), manager)
        assert manager.stats().opened == 2
        assert http_server.connections == 2

    def test_refused_tunnel_raises_connect_error(self, http_server, manager: Manager) -> None:
        request = parse_request("https://example.invalid/", proxy=http_server.base_url)
        with pytest.raises(ConnectError, match="refused tunnel to example.invalid:443"):
            fetch(request, manager)
        stats = manager.stats()
        assert stats.leased == 0
        assert stats.idle == 0


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_connect_refused(self, manager: Manager) -> None:
        with pytest.raises(ConnectError) as exc_info:
            fetch(f"http://127.0.0.1:{_free_port()}/", manager)
        assert exc_info.value.exit_code == 3
        assert manager.stats().leased == 0

    def test_read_timeout_discards_connection(self, http_server, manager: Manager) -> None:
        request = parse_request(http_server.url("/slow?delay=1.0"), timeout=0.1)
        with pytest.raises(RequestTimeout):
            fetch(request, manager)
        stats = manager.stats()
        assert stats.leased == 0
        assert stats.idle == 0
        assert stats.closed == 1

    def test_closed_manager(self, http_server, manager: Manager) -> None:
        manager.close_all()
        with pytest.raises(PoolClosedError):
            fetch(http_server.url("/hello"), manager)

    def test_interrupt_in_upload_releases_unhealthy(self, http_server, manager: Manager) -> None:
        def body():
            yield b"start"
            raise KeyboardInterrupt

        request = parse_request(http_server.url("/echo"), method="POST", body=body())
        with pytest.raises(KeyboardInterrupt):
            fetch(request, manager)
        stats = manager.stats()
        assert stats.leased == 0
        assert stats.idle == 0

    def test_server_closing_mid_body_discards_connection(self, truncating_server: str, manager: Manager) -> None:
        with pytest.raises(ConnectionLost, match="mid-response"):
            fetch(truncating_server, manager)
        stats = manager.stats()
        assert stats.leased == 0
        assert stats.idle == 0
        assert stats.opened == 1
        assert stats.closed == 1


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentRequests:
    def test_parallel_fetches(self, http_server, manager: Manager) -> None:
        urls = [http_server.url("/hello")] * 40
        with ThreadPoolExecutor(max_workers=8) as pool:
            bodies = list(pool.map(lambda u: fetch(u, manager).content, urls))
        assert bodies == [b"hello"] * 40
        stats = manager.stats()
        assert stats.leased == 0
        assert stats.opened <= 8
        assert stats.opened + stats.reused == 40
