"""Canonical Pydantic models shared across all pooledhttp modules.

The models fall into three groups:

**Pool identity and state** -- :class:`EndpointKey` (the identity that
partitions the connection pool), :class:`ConnectionState`, and
:class:`PoolStats` (a point-in-time snapshot of a
:class:`~pooledhttp.pool.Manager`).

**Configuration models** -- serialised as JSON in the user's config
directory: :class:`PoolConfig`, :class:`RequestConfig`,
:class:`OutputConfig`, and the top-level :class:`ClientConfig`.

**Request overrides** -- :class:`RequestOverrides`, the validated form of
the keyword overrides accepted by
:func:`~pooledhttp.request.parse_request`.

All models use Pydantic v2.
"""

from __future__ import annotations

import enum
from typing import Any, Callable, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pooledhttp import __version__

DEFAULT_PORTS = {"http": 80, "https": 443}
"""Default TCP port per supported scheme."""


# --- Pool identity ---


class EndpointKey(BaseModel):
    """Identity of a pooled connection's destination.

    Two requests share a connection only if their keys compare equal. The
    ``proxy`` field is itself a key (the proxy's own host and port), so a
    direct connection and a proxied one to the same origin never mix.

    Example::

        EndpointKey(host="example.com", port=443, is_tls=True)
    """

    model_config = ConfigDict(frozen=True)

    host: str
    port: int
    is_tls: bool = False
    proxy: Optional[EndpointKey] = None

    @classmethod
    def from_url(cls, url: httpx.URL, proxy: Optional[httpx.URL] = None) -> EndpointKey:
        """Build the key for *url*, optionally routed through *proxy*."""
        proxy_key = None
        if proxy is not None:
            proxy_key = cls(
                host=proxy.host,
                port=proxy.port or DEFAULT_PORTS[proxy.scheme],
                is_tls=proxy.scheme == "https",
            )
        return cls(
            host=url.host,
            port=url.port or DEFAULT_PORTS[url.scheme],
            is_tls=url.scheme == "https",
            proxy=proxy_key,
        )

    def __str__(self) -> str:
        scheme = "https" if self.is_tls else "http"
        base = f"{scheme}://{self.host}:{self.port}"
        if self.proxy is not None:
            return f"{base} via {self.proxy.host}:{self.proxy.port}"
        return base


class ConnectionState(str, enum.Enum):
    """Lifecycle state of a :class:`~pooledhttp.connection.Connection`."""

    IDLE = "idle"
    LEASED = "leased"
    CLOSED = "closed"


class PoolStats(BaseModel):
    """Snapshot of a manager's bookkeeping counters."""

    idle: int = 0
    leased: int = 0
    opened: int = 0
    reused: int = 0
    closed: int = 0
    reaped: int = 0
    endpoints: int = 0
    is_closed: bool = False


# --- Configuration ---


class PoolConfig(BaseModel):
    """Connection pool behaviour."""

    idle_timeout: float = Field(
        default=30.0, gt=0, description="Seconds an idle connection may sit in the pool"
    )
    reaper_interval: float = Field(
        default=5.0, gt=0, description="Seconds between reaper sweeps"
    )
    max_drain_bytes: int = Field(
        default=65536,
        ge=0,
        description="Most body bytes read and discarded to keep a connection reusable",
    )


class RequestConfig(BaseModel):
    """Per-request defaults applied by the connection layer and the client facade."""

    connect_timeout: float = Field(default=10.0, gt=0, description="TCP/TLS connect timeout in seconds")
    read_timeout: float = Field(default=30.0, gt=0, description="Socket read/write timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates")
    redirect_limit: int = Field(default=10, ge=0, description="Maximum redirect hops")
    user_agent: str = Field(default=f"pooledhttp/{__version__}")


OUTPUT_FORMATS = ("auto", "json", "plain", "rich")


class OutputConfig(BaseModel):
    """CLI output preferences."""

    format: str = Field(default="auto", description="Output format: auto, json, plain, rich")

    @field_validator("format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in OUTPUT_FORMATS:
            raise ValueError(f"unknown output format {value!r}; expected one of {', '.join(OUTPUT_FORMATS)}")
        return value


class ClientConfig(BaseModel):
    """Top-level configuration persisted as ``config.json``.

    Example::

        {
          "pool": {"idle_timeout": 30.0, "reaper_interval": 5.0},
          "request": {"connect_timeout": 10.0, "redirect_limit": 10},
          "output": {"format": "auto"}
        }
    """

    pool: PoolConfig = Field(default_factory=PoolConfig)
    request: RequestConfig = Field(default_factory=RequestConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)


# --- Request overrides ---


class RequestOverrides(BaseModel):
    """The override record accepted when building a request.

    Only fields the caller actually passed are applied (see
    ``model_fields_set``), so ``body=None`` clears a body while omitting
    ``body`` keeps the existing one. Unknown keys are rejected.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    method: Optional[str] = None
    headers: Any = None
    body: Any = None
    json_body: Any = None
    redirect_limit: Optional[int] = Field(default=None, ge=0)
    status_policy: Optional[Callable[[int], bool]] = None
    proxy: Optional[Union[str, httpx.URL]] = None
    follow_redirects: Optional[bool] = None
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("method")
    @classmethod
    def _normalise_method(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().upper()
        if not value or not value.isalpha():
            raise ValueError(f"invalid HTTP method: {value!r}")
        return value
