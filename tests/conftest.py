"""Shared test fixtures for pooledhttp.

Provides a threaded local HTTP/1.1 keep-alive server that counts accepted
TCP connections (so connection reuse is observable), managers wired to
it, config isolation, and output-state resets. These fixtures are
automatically discovered by pytest.
"""

from __future__ import annotations

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Iterator
from urllib.parse import parse_qs, urlsplit

import pytest

from pooledhttp.models import PoolConfig, RequestConfig
from pooledhttp.output import reset_output
from pooledhttp.pool import Manager


# ---------------------------------------------------------------------------
# Local HTTP server
# ---------------------------------------------------------------------------


class _CountingServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.lock = threading.Lock()
        self.connections = 0
        self.requests: list[tuple[str, str, dict[str, str], bytes]] = []


class _Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server: _CountingServer

    def setup(self) -> None:
        super().setup()
        with self.server.lock:
            self.server.connections += 1

    def log_message(self, format: str, *args: object) -> None:
        pass  # keep test output quiet

    def do_GET(self) -> None:
        self._dispatch()

    def do_POST(self) -> None:
        self._dispatch()

    def do_PUT(self) -> None:
        self._dispatch()

    def do_DELETE(self) -> None:
        self._dispatch()

    def do_HEAD(self) -> None:
        self._dispatch()

    # -- helpers -----------------------------------------------------------

    def _read_body(self) -> bytes:
        if self.headers.get("Transfer-Encoding", "").lower() == "chunked":
            parts = []
            while True:
                size = int(self.rfile.readline().split(b";")[0].strip(), 16)
                if size == 0:
                    while self.rfile.readline() not in (b"\r\n", b"\n", b""):
                        pass
                    break
                parts.append(self.rfile.read(size))
                self.rfile.readline()
            return b"".join(parts)
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length else b""

    def _reply(
        self,
        status: int,
        body: bytes = b"",
        content_type: str = "text/plain; charset=utf-8",
        headers: dict[str, str] | None = None,
        close: bool = False,
    ) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        if close:
            self.send_header("Connection", "close")
            self.close_connection = True
        self.end_headers()
        if self.command != "HEAD" and body:
            self.wfile.write(body)

    def _dispatch(self) -> None:
        parts = urlsplit(self.path)
        path = parts.path
        query = parse_qs(parts.query)
        body = self._read_body()
        with self.server.lock:
            self.server.requests.append((self.command, self.path, dict(self.headers), body))

        if path == "/hello":
            self._reply(200, b"hello")
        elif path == "/json":
            self._reply(200, json.dumps({"ok": True, "items": [1, 2, 3]}).encode(), "application/json")
        elif path == "/echo":
            payload = {
                "method": self.command,
                "path": self.path,
                "body": body.decode("utf-8", errors="replace"),
                "headers": {k.lower(): v for k, v in self.headers.items()},
            }
            self._reply(200, json.dumps(payload).encode(), "application/json")
        elif path == "/old":
            self._reply(302, b"moved", headers={"Location": "/new"})
        elif path == "/new":
            self._reply(200, b"new page")
        elif path.startswith("/redirect/"):
            remaining = int(path.rsplit("/", 1)[1])
            if remaining <= 0:
                self._reply(200, b"done")
            else:
                self._reply(302, b"", headers={"Location": f"/redirect/{remaining - 1}"})
        elif path == "/loop":
            self._reply(302, b"", headers={"Location": "/loop"})
        elif path == "/see-other":
            self._reply(303, b"", headers={"Location": "/echo"})
        elif path == "/temporary":
            self._reply(307, b"", headers={"Location": "/echo"})
        elif path.startswith("/status/"):
            code = int(path.rsplit("/", 1)[1])
            self._reply(code, f"status {code}".encode(), headers={"X-Status": str(code)})
        elif path == "/big":
            size = int(query.get("size", ["1000"])[0])
            self._reply(200, b"x" * size, "application/octet-stream")
        elif path == "/chunked":
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Transfer-Encoding", "chunked")
            self.end_headers()
            for piece in (b"alpha\n", b"beta\n", b"gamma\n"):
                self.wfile.write(f"{len(piece):x}\r\n".encode() + piece + b"\r\n")
            self.wfile.write(b"0\r\n\r\n")
        elif path == "/close":
            self._reply(200, b"bye", close=True)
        elif path == "/slow":
            time.sleep(float(query.get("delay", ["1.0"])[0]))
            self._reply(200, b"slow")
        else:
            self._reply(404, b"not found")


class LocalServer:
    """Handle on the running test server."""

    def __init__(self, server: _CountingServer) -> None:
        self._server = server
        host, port = server.server_address[:2]
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}"

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @property
    def connections(self) -> int:
        with self._server.lock:
            return self._server.connections

    @property
    def requests(self) -> list[tuple[str, str, dict[str, str], bytes]]:
        with self._server.lock:
            return list(self._server.requests)


@pytest.fixture
def http_server() -> Iterator[LocalServer]:
    """A local keep-alive HTTP/1.1 server on an ephemeral port."""
    server = _CountingServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield LocalServer(server)
    finally:
        server.shutdown()
        server.server_close()


# ---------------------------------------------------------------------------
# Managers
# ---------------------------------------------------------------------------


@pytest.fixture
def manager() -> Iterator[Manager]:
    """A manager with the reaper thread disabled; tests call reap() by hand."""
    m = Manager(
        PoolConfig(idle_timeout=30.0, reaper_interval=5.0),
        RequestConfig(connect_timeout=2.0, read_timeout=5.0),
        start_reaper=False,
    )
    yield m
    m.close_all()


# ---------------------------------------------------------------------------
# Global state isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> Iterator[None]:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time; Typer's CliRunner swaps those streams per invocation.
    """
    yield
    reset_output()


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point XDG directories at tmp_path and clear POOLEDHTTP_* variables."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr("pooledhttp.config._is_xdg_platform", lambda: True)

    from pooledhttp.config import ENV_OVERRIDES

    for var in ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path
