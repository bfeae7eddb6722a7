"""Bounded reads of streamed response bodies."""

from __future__ import annotations

import codecs

import requests

from .errors import TransportError
from .types import Err, Ok, Result

_CHUNK_SIZE = 8192
_FALLBACK_ENCODING = "utf-8"


def _encoding_of(response: requests.Response) -> str:
    encoding = response.encoding or _FALLBACK_ENCODING
    try:
        codecs.lookup(encoding)
    except LookupError:
        return _FALLBACK_ENCODING
    return encoding


def read_body(
    response: requests.Response, max_bytes: int
) -> Result[str, TransportError]:
    """Read at most ``max_bytes`` of the body and release the response.

    Longer bodies are truncated silently. The response is closed exactly
    once on every path; a failed read comes back as a TransportError.
    """
    buffer = bytearray()
    try:
        if max_bytes < 0:
            raise ValueError("max_bytes must be >= 0")
        if max_bytes:
            chunk_size = min(_CHUNK_SIZE, max_bytes)
            for chunk in response.iter_content(chunk_size=chunk_size):
                buffer += chunk[: max_bytes - len(buffer)]
                if len(buffer) >= max_bytes:
                    break
    except requests.exceptions.RequestException as exc:
        error = TransportError(f"body read failed: {exc}")
        error.__cause__ = exc
        return Err(
            error,
            meta={
                "bytes_read": len(buffer),
                "max_bytes": max_bytes,
                "final_error": type(exc).__name__,
            },
        )
    finally:
        response.close()

    text = bytes(buffer).decode(_encoding_of(response), errors="replace")
    return Ok(text, meta={"bytes_read": len(buffer), "max_bytes": max_bytes})
