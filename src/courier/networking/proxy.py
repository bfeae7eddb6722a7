"""Proxy descriptor normalization.

Operators paste proxies either as full URLs (``http://user:pw@host:port``,
``socks5://host:1080``) or in the ``host:port:username:password`` shorthand
used by most proxy-list vendors. Both forms normalize to a single URL.
"""

from __future__ import annotations

from urllib.parse import quote, urlsplit

from .errors import FormatError

_SCHEME_DELIMITER = "://"
_SHORTHAND_FIELDS = 4


def normalize_proxy(raw: str) -> str:
    """Return the canonical proxy URL for ``raw``.

    Args:
        raw: Proxy URL or ``host:port:username:password`` descriptor.

    Returns:
        The proxy URL, or an empty string when ``raw`` is blank.

    Raises:
        FormatError: If the descriptor is neither a valid URL nor a
            well-formed shorthand.
    """
    descriptor = raw.strip()
    if not descriptor:
        return ""

    if _SCHEME_DELIMITER in descriptor:
        _validate_url(descriptor)
        return descriptor

    parts = descriptor.split(":")
    if len(parts) != _SHORTHAND_FIELDS:
        raise FormatError(
            "proxy descriptor must be host:port:username:password, "
            f"got {len(parts)} field(s)"
        )
    host, port, username, password = parts
    if not host or not port:
        raise FormatError("proxy descriptor has an empty host or port")

    return (
        f"http://{quote(username, safe='')}:{quote(password, safe='')}"
        f"@{host}:{port}"
    )


def _validate_url(url: str) -> None:
    """Raise FormatError unless ``url`` parses and names a host."""
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise FormatError(f"invalid proxy URL {url!r}: {exc}") from exc
    if not parts.scheme or not parts.hostname:
        raise FormatError(f"invalid proxy URL {url!r}: missing scheme or host")
