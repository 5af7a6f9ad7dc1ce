"""Request command -- send one HTTP request from the command line.

``pooledhttp request URL`` builds a request from the CLI flags, sends it
through a :class:`~pooledhttp.pool.Manager` scoped to the command, and
prints the result: the status line on stderr, the body on stdout (JSON
bodies pretty-printed according to the output mode). ``--stream`` writes
body chunks as they arrive instead of buffering them.

Rejected statuses still print the body before exiting with
:data:`~pooledhttp.exit_codes.EXIT_STATUS_REJECTED`.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Iterator, Optional

import typer

from pooledhttp.exceptions import InvalidUsageError, PooledHTTPError, StatusError
from pooledhttp.output import debug, error, format_response, get_output, info, print_data
from pooledhttp.request import accept_any_status
from pooledhttp.response import Response

_UPLOAD_CHUNK = 64 * 1024


def request_command(
    url: str = typer.Argument(help="Absolute http:// or https:// URL."),
    method: Optional[str] = typer.Option(
        None, "-X", "--method", help="HTTP method (default GET, or POST with a body)."
    ),
    header: Optional[list[str]] = typer.Option(
        None, "-H", "--header", help="Request header 'Name: value' (repeatable)."
    ),
    data: Optional[str] = typer.Option(
        None, "-d", "--data", help="Request body. '@file' streams a file, '@-' streams stdin."
    ),
    json_body: Optional[str] = typer.Option(None, "--json-body", help="JSON request body."),
    max_redirects: Optional[int] = typer.Option(
        None, "--max-redirects", min=0, help="Maximum redirect hops (0 disables following)."
    ),
    no_follow: bool = typer.Option(False, "--no-follow", help="Do not follow redirects."),
    proxy: Optional[str] = typer.Option(None, "--proxy", help="http:// proxy URL."),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0.001, help="Read timeout in seconds."),
    connect_timeout: Optional[float] = typer.Option(
        None, "--connect-timeout", min=0.001, help="Connect timeout in seconds."
    ),
    insecure: bool = typer.Option(False, "-k", "--insecure", help="Skip TLS certificate verification."),
    stream_body: bool = typer.Option(False, "--stream", help="Write the body as it arrives."),
    include: bool = typer.Option(False, "-i", "--include", help="Print response headers to stdout."),
    accept_any: bool = typer.Option(
        False, "--accept-any-status", help="Treat every status code as success."
    ),
) -> None:
    """Send an HTTP request and print the response.

    Example::

        pooledhttp request https://httpbin.org/get
        pooledhttp request https://httpbin.org/post -d @payload.bin -H 'Content-Type: application/octet-stream'
        pooledhttp --json request https://api.example.com/items --json-body '{"name": "widget"}'
    """
    from pooledhttp.client import Client
    from pooledhttp.config import resolve_config
    from pooledhttp.pool import Manager

    cli_overrides: dict[str, str] = {}
    if connect_timeout is not None:
        cli_overrides["request.connect_timeout"] = str(connect_timeout)
    if insecure:
        cli_overrides["request.verify_ssl"] = "false"

    try:
        config = resolve_config(cli_overrides)
        overrides = _build_overrides(
            header, data, json_body, max_redirects, no_follow, proxy, timeout, accept_any
        )
        verb = method or ("POST" if data is not None or json_body is not None else "GET")

        with Manager(config.pool, config.request) as manager:
            client = Client(manager, config=config.request)
            if stream_body:
                with client.stream(verb, url, **overrides) as response:
                    _print_head(response, include)
                    output = get_output()
                    for chunk in response.iter_bytes():
                        output.write_bytes(chunk)
            else:
                response = client.request(verb, url, **overrides)
                _print_head(response, include)
                _print_body(response)
            debug(f"Pool: {manager.stats().model_dump()}")
    except StatusError as exc:
        _print_head(exc.response, include)
        _print_body(exc.response)
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    except PooledHTTPError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None


def _build_overrides(
    header: Optional[list[str]],
    data: Optional[str],
    json_body: Optional[str],
    max_redirects: Optional[int],
    no_follow: bool,
    proxy: Optional[str],
    timeout: Optional[float],
    accept_any: bool,
) -> dict[str, Any]:
    """Translate CLI flags into request overrides."""
    overrides: dict[str, Any] = {}
    if header:
        overrides["headers"] = [_parse_header(h) for h in header]
    if data is not None and json_body is not None:
        raise InvalidUsageError("Use either --data or --json-body, not both")
    if data is not None:
        overrides["body"] = _body_source(data)
    if json_body is not None:
        import json

        try:
            overrides["json_body"] = json.loads(json_body)
        except json.JSONDecodeError as exc:
            raise InvalidUsageError(f"--json-body is not valid JSON: {exc}") from exc
    if max_redirects is not None:
        overrides["redirect_limit"] = max_redirects
    if no_follow:
        overrides["follow_redirects"] = False
    if proxy:
        overrides["proxy"] = proxy
    if timeout is not None:
        overrides["timeout"] = timeout
    if accept_any:
        overrides["status_policy"] = accept_any_status
    return overrides


def _parse_header(raw: str) -> tuple[str, str]:
    name, sep, value = raw.partition(":")
    if not sep or not name.strip():
        raise InvalidUsageError(f"Invalid header {raw!r}; expected 'Name: value'")
    return name.strip(), value.strip()


def _body_source(data: str) -> Any:
    """Return the body for ``--data``: literal text, or a chunk iterator for ``@file``/``@-``."""
    if not data.startswith("@"):
        return data.encode("utf-8")
    if data == "@-":
        return _iter_file(sys.stdin.buffer)
    path = Path(data[1:]).expanduser()
    if not path.is_file():
        raise InvalidUsageError(f"Body file not found: {path}")
    return _iter_path(path)


def _iter_path(path: Path) -> Iterator[bytes]:
    with path.open("rb") as f:
        yield from _iter_file(f)


def _iter_file(f: Any) -> Iterator[bytes]:
    while True:
        chunk = f.read(_UPLOAD_CHUNK)
        if not chunk:
            return
        yield chunk


def _print_head(response: Response, include: bool) -> None:
    status_line = f"{response.http_version} {response.status_code} {response.reason_phrase}".rstrip()
    for hop in response.history:
        info(f"{hop.http_version} {hop.status_code} -> {hop.headers.get('location', '')}")
    info(status_line)
    if include:
        print_data(status_line)
        for name, value in response.headers.multi_items():
            print_data(f"{name}: {value}")
        print_data("")


def _print_body(response: Response) -> None:
    content = response.content
    if not content:
        return
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            format_response(response.json(), content_type)
            return
        except ValueError:
            pass
    if content_type.startswith("text/") or "json" in content_type or "xml" in content_type:
        print_data(response.text)
    else:
        get_output().write_bytes(content)
