"""Pooled keep-alive transport for the HttpClient.

Connection handling itself belongs to ``requests``/``urllib3``; this module
turns an :class:`HttpClientConfig` into a tuned adapter, the proxy mapping
and the timeout pair the client sends with every request. Connections made
by the adapter report their socket to the :class:`CallAbort` bound to the
calling thread, so an in-flight call can be torn down from another thread.
"""

from __future__ import annotations

import logging
import socket
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from time import monotonic
from types import MappingProxyType
from typing import Any, Iterator, Mapping

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from .config import HttpClientConfig
from .errors import HttpClientError

logger = logging.getLogger(__name__)

SocketOption = tuple[int, int, int]

_bound = threading.local()


def _shutdown(sock: socket.socket) -> None:
    # socket.socket.shutdown also works on SSL sockets without unwrapping.
    try:
        socket.socket.shutdown(sock, socket.SHUT_RDWR)
    except OSError as exc:
        logger.debug("socket already closed: %s", exc)


class CallAbort:
    """Abort switch for one in-flight call.

    The connection carrying the call attaches its socket; :meth:`abort`
    records why the call ended and shuts that socket down, which wakes the
    thread blocked on it.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._sock: socket.socket | None = None
        self._error: HttpClientError | None = None

    @property
    def error(self) -> HttpClientError | None:
        return self._error

    def attach(self, sock: socket.socket) -> None:
        with self._lock:
            self._sock = sock
            aborted = self._error is not None
        if aborted:
            _shutdown(sock)

    def abort(self, error: HttpClientError) -> None:
        with self._lock:
            if self._error is not None:
                return
            self._error = error
            sock = self._sock
        logger.debug("aborting in-flight call: %s", error)
        if sock is not None:
            _shutdown(sock)


@contextmanager
def abortable(call: CallAbort) -> Iterator[CallAbort]:
    """Attach every connection this thread uses to ``call`` until exit."""
    previous = getattr(_bound, "call", None)
    _bound.call = call
    try:
        yield call
    finally:
        _bound.call = previous


def _attach(sock: socket.socket | None) -> None:
    call: CallAbort | None = getattr(_bound, "call", None)
    if call is not None and sock is not None:
        call.attach(sock)


class _AbortableConnectionMixin:
    sock: socket.socket | None

    def _new_conn(self) -> socket.socket:
        sock: socket.socket = super()._new_conn()  # type: ignore[misc]
        _attach(sock)
        return sock

    def request(self, *args: Any, **kwargs: Any) -> None:
        # Pooled connections are already connected.
        _attach(self.sock)
        super().request(*args, **kwargs)  # type: ignore[misc]


class _AbortableHTTPConnection(_AbortableConnectionMixin, HTTPConnection):
    pass


class _AbortableHTTPSConnection(_AbortableConnectionMixin, HTTPSConnection):
    pass


class _AbortableHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = _AbortableHTTPConnection


class _AbortableHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = _AbortableHTTPSConnection


_POOL_CLASSES: Mapping[str, type[HTTPConnectionPool]] = MappingProxyType(
    {
        "http": _AbortableHTTPConnectionPool,
        "https": _AbortableHTTPSConnectionPool,
    }
)


def keep_alive_socket_options(idle_seconds: float) -> list[SocketOption]:
    """Return urllib3 socket options enabling TCP keep-alive probes."""
    seconds = max(1, int(idle_seconds))
    options: list[SocketOption] = list(HTTPConnection.default_socket_options)
    options.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))
    if hasattr(socket, "TCP_KEEPIDLE"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, seconds))
    elif hasattr(socket, "TCP_KEEPALIVE"):  # macOS
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, seconds))
    if hasattr(socket, "TCP_KEEPINTVL"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, seconds))
    return options


class PooledTransport(HTTPAdapter):
    """HTTPAdapter with keep-alive sockets and idle pool expiry.

    ``pool_maxsize`` bounds the connections kept per destination host and
    ``pool_connections`` the number of host pools, so together they cap the
    total number of idle connections. Pools are dropped when the adapter has
    not been used for ``idle_connection_timeout_seconds``.
    """

    def __init__(
        self,
        *,
        max_idle_connections: int,
        max_idle_connections_per_host: int,
        idle_connection_timeout_seconds: float,
        keep_alive_seconds: float,
    ) -> None:
        # init_poolmanager runs inside HTTPAdapter.__init__.
        self._socket_options = keep_alive_socket_options(keep_alive_seconds)
        self._idle_timeout = idle_connection_timeout_seconds
        self._idle_lock = Lock()
        self._last_used = monotonic()
        per_host = max(1, max_idle_connections_per_host)
        super().__init__(
            pool_connections=max(1, max_idle_connections // per_host),
            pool_maxsize=per_host,
        )

    def init_poolmanager(
        self,
        connections: int,
        maxsize: int,
        block: bool = False,
        **pool_kwargs: Any,
    ) -> None:
        pool_kwargs.setdefault("socket_options", self._socket_options)
        super().init_poolmanager(connections, maxsize, block, **pool_kwargs)
        self.poolmanager.pool_classes_by_scheme = dict(_POOL_CLASSES)

    def proxy_manager_for(self, proxy: str, **proxy_kwargs: Any) -> Any:
        proxy_kwargs.setdefault("socket_options", self._socket_options)
        manager = super().proxy_manager_for(proxy, **proxy_kwargs)
        # SOCKS managers bring their own connection classes.
        if not proxy.lower().startswith("socks"):
            manager.pool_classes_by_scheme = dict(_POOL_CLASSES)
        return manager

    def send(
        self, request: requests.PreparedRequest, *args: Any, **kwargs: Any
    ) -> requests.Response:
        self._expire_idle_pools()
        try:
            return super().send(request, *args, **kwargs)
        finally:
            with self._idle_lock:
                self._last_used = monotonic()

    def _expire_idle_pools(self) -> None:
        """Drop pooled connections after the idle timeout.

        ``PoolManager.clear`` leaves connections that are checked out
        untouched, so concurrent calls are unaffected.
        """
        now = monotonic()
        with self._idle_lock:
            idle_for = now - self._last_used
            self._last_used = now
        if idle_for < self._idle_timeout:
            return
        logger.debug("dropping idle connection pools after %.1fs", idle_for)
        self.poolmanager.clear()
        for manager in self.proxy_manager.values():
            manager.clear()


@dataclass(frozen=True)
class Transport:
    """The pooled adapter plus per-request transport settings."""

    adapter: PooledTransport
    proxies: Mapping[str, str]
    connect_timeout_seconds: float
    read_timeout_seconds: float

    @property
    def timeout(self) -> tuple[float, float]:
        return (self.connect_timeout_seconds, self.read_timeout_seconds)

    def mount(self, session: requests.Session) -> None:
        """Route every http/https request of ``session`` through the pool."""
        session.mount("http://", self.adapter)
        session.mount("https://", self.adapter)
        # Session proxies are what redirects are re-sent through.
        session.proxies.update(self.proxies)

    def close(self) -> None:
        """Release every pooled connection."""
        self.adapter.close()


def build_transport(config: HttpClientConfig) -> Transport:
    """Build the long-lived transport for one client.

    urllib3 applies the connect timeout to both the TCP dial and the TLS
    handshake, so the larger of the two configured values bounds the
    connect phase. ``timeout_seconds`` bounds each socket read here; the
    client also enforces it over the whole exchange.
    """
    adapter = PooledTransport(
        max_idle_connections=config.max_idle_connections,
        max_idle_connections_per_host=config.max_idle_connections_per_host,
        idle_connection_timeout_seconds=config.idle_connection_timeout_seconds,
        keep_alive_seconds=config.dial_keep_alive_seconds,
    )
    proxies: dict[str, str] = {}
    if config.proxy_url:
        proxies = {"http": config.proxy_url, "https": config.proxy_url}
    logger.debug(
        "built transport: max_idle=%d per_host=%d proxy=%s",
        config.max_idle_connections,
        config.max_idle_connections_per_host,
        "configured" if proxies else "environment",
    )
    return Transport(
        adapter=adapter,
        proxies=MappingProxyType(proxies),
        connect_timeout_seconds=max(
            config.dial_timeout_seconds,
            config.tls_handshake_timeout_seconds,
        ),
        read_timeout_seconds=config.timeout_seconds,
    )
