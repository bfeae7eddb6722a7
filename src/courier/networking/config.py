"""Configuration models for the HttpClient interface."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import Mapping, Sequence

from requests.structures import CaseInsensitiveDict

from .cookies import Cookie
from .errors import ConfigurationError, FormatError
from .proxy import normalize_proxy

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_IDLE_CONNECTIONS = 1000
DEFAULT_MAX_IDLE_CONNECTIONS_PER_HOST = 100
DEFAULT_IDLE_CONNECTION_TIMEOUT_SECONDS = 90.0
DEFAULT_DIAL_TIMEOUT_SECONDS = 10.0
DEFAULT_DIAL_KEEP_ALIVE_SECONDS = 30.0
DEFAULT_TLS_HANDSHAKE_TIMEOUT_SECONDS = 10.0
DEFAULT_USER_AGENT = "Mozilla/5.0"

# Zero means "use the default" for every numeric field below.
_NUMERIC_DEFAULTS: Mapping[str, float] = MappingProxyType(
    {
        "timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
        "max_idle_connections": DEFAULT_MAX_IDLE_CONNECTIONS,
        "max_idle_connections_per_host": DEFAULT_MAX_IDLE_CONNECTIONS_PER_HOST,
        "idle_connection_timeout_seconds": (
            DEFAULT_IDLE_CONNECTION_TIMEOUT_SECONDS
        ),
        "dial_timeout_seconds": DEFAULT_DIAL_TIMEOUT_SECONDS,
        "dial_keep_alive_seconds": DEFAULT_DIAL_KEEP_ALIVE_SECONDS,
        "tls_handshake_timeout_seconds": DEFAULT_TLS_HANDSHAKE_TIMEOUT_SECONDS,
    }
)


def _default_headers() -> Mapping[str, str]:
    """Return immutable empty default headers mapping."""

    return MappingProxyType({})


def _frozen_headers(headers: Mapping[str, str]) -> Mapping[str, str]:
    """Copy ``headers`` into a read-only, case-insensitive mapping."""

    return MappingProxyType(CaseInsensitiveDict(headers))


@dataclass(frozen=True)
class HttpClientConfig:
    """Configuration for HttpClient behavior.

    Numeric fields left at ``0`` are replaced by their defaults once, at
    construction. ``proxy`` accepts either a proxy URL or the
    ``host:port:username:password`` shorthand; the normalized form is
    exposed as ``proxy_url``.
    """

    timeout_seconds: float = 0.0
    proxy: str = ""
    user_agent: str | None = DEFAULT_USER_AGENT
    default_headers: Mapping[str, str] = field(default_factory=_default_headers)
    max_idle_connections: int = 0
    max_idle_connections_per_host: int = 0
    idle_connection_timeout_seconds: float = 0.0
    dial_timeout_seconds: float = 0.0
    dial_keep_alive_seconds: float = 0.0
    tls_handshake_timeout_seconds: float = 0.0
    verify_tls: bool = True
    proxy_url: str = field(init=False, default="")

    def __post_init__(self) -> None:
        for item in fields(self):
            default = _NUMERIC_DEFAULTS.get(item.name)
            if default is None:
                continue
            value = getattr(self, item.name)
            if value < 0:
                raise ConfigurationError(f"{item.name} must be >= 0")
            if value == 0:
                object.__setattr__(self, item.name, default)

        try:
            proxy_url = normalize_proxy(self.proxy)
        except FormatError as exc:
            raise ConfigurationError(f"invalid proxy: {exc}") from exc
        object.__setattr__(self, "proxy_url", proxy_url)

        # Freeze copied headers to avoid post-init mutation side effects.
        object.__setattr__(
            self,
            "default_headers",
            _frozen_headers(self.default_headers),
        )


@dataclass(frozen=True)
class RequestOptions:
    """Per-call overlays applied on top of the client's defaults.

    ``headers`` win over the client's base headers and ``query`` wins over
    parameters already present in the target URL. ``cookies`` are sent with
    this call only and never reach the client's cookie store.
    """

    headers: Mapping[str, str] = field(default_factory=_default_headers)
    query: Mapping[str, str] = field(default_factory=_default_headers)
    cookies: Sequence[Cookie] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", _frozen_headers(self.headers))
        object.__setattr__(self, "query", MappingProxyType(dict(self.query)))
        object.__setattr__(self, "cookies", tuple(self.cookies))
