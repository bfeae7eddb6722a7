"""Cookie store shared by every call issued through one HttpClient.

The store wraps a :class:`requests.cookies.RequestsCookieJar` so that the
session writes server ``Set-Cookie`` headers into the same jar callers read
from. Deletion is a tombstone write: storing an already expired cookie
removes the matching entry immediately instead of waiting for a sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from http.cookiejar import Cookie as JarCookie
from time import time
from typing import Any, Iterator, Sequence
from urllib.parse import SplitResult, urlsplit

from requests.cookies import RequestsCookieJar, create_cookie

from .errors import FormatError

logger = logging.getLogger(__name__)

# http.cookiejar files host-only cookies of dotless hosts under "<host>.local".
_LOCAL_SUFFIX = ".local"


@dataclass(frozen=True)
class Cookie:
    """A single cookie as seen by callers.

    ``domain`` is empty for cookies scoped to the URL host they are written
    for; a leading dot marks a cookie valid for the domain and its
    subdomains. ``expires`` is a Unix timestamp.
    """

    name: str
    value: str
    path: str = "/"
    domain: str = ""
    expires: float | None = None
    max_age: int | None = None
    secure: bool = False

    def is_tombstone(self, now: float | None = None) -> bool:
        if self.max_age is not None and self.max_age < 0:
            return True
        if self.expires is None:
            return False
        return self.expires <= (time() if now is None else now)

    def to_jar_cookie(self, host: str) -> JarCookie:
        domain = self.domain or host
        expires = self.expires
        if self.max_age is not None:
            expires = time() + self.max_age
        return create_cookie(
            self.name,
            self.value,
            domain=domain,
            path=self.path or "/",
            expires=int(expires) if expires is not None else None,
            secure=self.secure,
        )

    @classmethod
    def from_jar_cookie(cls, cookie: JarCookie) -> Cookie:
        return cls(
            name=cookie.name,
            value=cookie.value or "",
            path=cookie.path,
            domain=cookie.domain,
            expires=cookie.expires,
            secure=cookie.secure,
        )


class SynchronizedCookieJar(RequestsCookieJar):
    """RequestsCookieJar that is safe to share between threads.

    ``http.cookiejar`` guards writes with an internal lock but iterates its
    storage unguarded; iteration here works on a snapshot taken under that
    same lock. Expired cookies are never stored. The jar remembers the order
    in which cookies were first written so listings can follow it.
    """

    def __init__(self, policy: Any = None) -> None:
        super().__init__(policy)
        self._write_order: dict[tuple[str, str, str], int] = {}
        self._writes = 0

    def __iter__(self) -> Iterator[JarCookie]:
        with self._cookies_lock:
            snapshot = list(super().__iter__())
        return iter(snapshot)

    def set_cookie(self, cookie: JarCookie, *args: Any, **kwargs: Any) -> Any:
        if cookie.expires is not None and cookie.is_expired():
            self._remove(cookie.domain, cookie.path, cookie.name)
            return None
        with self._cookies_lock:
            key = (cookie.domain, cookie.path, cookie.name)
            # Replacing a value keeps the cookie's first position.
            if key not in self._write_order:
                self._write_order[key] = self._writes
                self._writes += 1
            return super().set_cookie(cookie, *args, **kwargs)

    def clear(
        self,
        domain: str | None = None,
        path: str | None = None,
        name: str | None = None,
    ) -> None:
        with self._cookies_lock:
            super().clear(domain, path, name)
            wanted = (domain, path, name)
            for key in list(self._write_order):
                if all(w is None or w == k for w, k in zip(wanted, key)):
                    del self._write_order[key]

    def write_order(self, cookie: JarCookie) -> int:
        """Position of ``cookie`` among the writes to this jar."""
        key = (cookie.domain, cookie.path, cookie.name)
        return self._write_order.get(key, -1)

    def _remove(self, domain: str, path: str, name: str) -> None:
        with self._cookies_lock:
            cookies = self._cookies.get(domain, {}).get(path, {})
            if name in cookies:
                self.clear(domain, path, name)


def _split_url(url: str) -> SplitResult:
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise FormatError(f"invalid URL {url!r}: {exc}") from exc
    if not parts.hostname:
        raise FormatError(f"URL {url!r} has no host")
    return parts


def _domain_matches(domain: str, host: str) -> bool:
    domain = domain.lower()
    hosts = {host}
    if "." not in host:
        hosts.add(host + _LOCAL_SUFFIX)
    if domain.startswith("."):
        return any(h == domain[1:] or h.endswith(domain) for h in hosts)
    return domain in hosts


def _path_matches(cookie_path: str, request_path: str) -> bool:
    if request_path == cookie_path:
        return True
    if not request_path.startswith(cookie_path):
        return False
    return cookie_path.endswith("/") or request_path[len(cookie_path)] == "/"


class CookieStore:
    """Set, delete and enumerate cookies per destination URL."""

    def __init__(self, jar: SynchronizedCookieJar | None = None) -> None:
        self._jar = jar if jar is not None else SynchronizedCookieJar()

    @property
    def jar(self) -> SynchronizedCookieJar:
        """The underlying jar, shared with the HTTP session."""
        return self._jar

    def add(self, url: str, cookie: Cookie) -> None:
        """Store ``cookie`` for ``url``; tombstones remove instead."""
        host = _split_url(url).hostname
        assert host is not None
        jar_cookie = cookie.to_jar_cookie(host)
        if cookie.is_tombstone():
            logger.debug(
                "removing cookie %s for %s%s",
                cookie.name,
                jar_cookie.domain,
                jar_cookie.path,
            )
        self._jar.set_cookie(jar_cookie)

    def set(self, url: str, name: str, value: str) -> None:
        """Store ``name=value`` for the URL host with path ``/``."""
        self.add(url, Cookie(name=name, value=value, path="/"))

    def delete(self, url: str, name: str) -> None:
        """Remove ``name`` for the URL host by writing a tombstone."""
        self.add(
            url,
            Cookie(name=name, value="", path="/", expires=0, max_age=-1),
        )

    def list(self, url: str) -> Sequence[Cookie]:
        """Return the cookies a request to ``url`` would carry.

        A cookie applies when its domain matches the URL host (or is a
        parent of it for domain cookies), its path is a prefix of the URL
        path, it has not expired and, if secure, the URL is https. Cookies
        come back in the order they were first written.
        """
        parts = _split_url(url)
        host = (parts.hostname or "").lower()
        path = parts.path or "/"
        secure = parts.scheme == "https"
        now = time()
        matches = [
            cookie
            for cookie in self._jar
            if _domain_matches(cookie.domain, host)
            and _path_matches(cookie.path, path)
            and not cookie.is_expired(now)
            and (secure or not cookie.secure)
        ]
        matches.sort(key=self._jar.write_order)
        return [Cookie.from_jar_cookie(cookie) for cookie in matches]

    def dump(self, url: str) -> list[str]:
        """Log and return ``name=value`` lines for the cookies of ``url``."""
        lines = [f"{cookie.name}={cookie.value}" for cookie in self.list(url)]
        if lines:
            logger.info("cookies for %s: %s", url, "; ".join(lines))
        else:
            logger.info("cookies for %s: (no cookies)", url)
        return lines
