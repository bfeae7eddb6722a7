"""Error taxonomy for the courier networking layer."""

from __future__ import annotations


class HttpClientError(Exception):
    """Base class for every error surfaced by the HTTP client."""


class ConfigurationError(HttpClientError, ValueError):
    """Raised when a client configuration cannot be built."""


class FormatError(HttpClientError, ValueError):
    """A URL, query overlay or proxy descriptor is malformed."""


class TransportError(HttpClientError):
    """DNS, TCP, TLS or connection pool failure during dispatch."""


class RequestTimeoutError(TransportError):
    """The transport gave up waiting for the remote end."""


class CancellationError(HttpClientError):
    """The caller's cancel token fired before the call completed."""


class SerializationError(HttpClientError):
    """A payload could not be encoded or a response body decoded."""
