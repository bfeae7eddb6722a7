"""Synchronous HTTP client for the courier networking layer.

Every call issued through one :class:`HttpClient` shares a single pooled
transport and a single cookie store. Network operations do not raise for
transport problems; they return a Result that carries either a value or an
error plus request metadata. No call is ever retried.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import replace
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests
from requests.structures import CaseInsensitiveDict

from .cancel import CancelToken
from .config import HttpClientConfig, RequestOptions
from .cookies import Cookie, CookieStore
from .errors import (
    CancellationError,
    FormatError,
    HttpClientError,
    RequestTimeoutError,
    SerializationError,
    TransportError,
)
from .transport import CallAbort, Transport, abortable, build_transport
from .types import Err, Ok, Result

logger = logging.getLogger(__name__)

Timeout = tuple[float, float]

_NO_OPTIONS = RequestOptions()
_JSON_CONTENT_TYPE = "application/json"
_MALFORMED_REQUEST_ERRORS = (
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
    requests.exceptions.InvalidHeader,
)


def apply_query(url: str, query: Mapping[str, str]) -> str:
    """Merge ``query`` into the query string of ``url``.

    Existing parameters named in ``query`` are replaced, the others kept.
    The merged query is encoded with keys in sorted order.

    Raises:
        FormatError: If ``url`` cannot be parsed.
    """
    if not query:
        return url
    try:
        parts = urlsplit(url)
        existing = parse_qsl(parts.query, keep_blank_values=True)
    except ValueError as exc:
        raise FormatError(f"invalid URL {url!r}: {exc}") from exc
    pairs = [(key, value) for key, value in existing if key not in query]
    pairs.extend(query.items())
    pairs.sort(key=lambda pair: pair[0])
    return urlunsplit(parts._replace(query=urlencode(pairs)))


def _append_call_cookies(
    prepared: requests.PreparedRequest, cookies: Sequence[Cookie]
) -> None:
    """Add per-call cookies after the store's, keeping every entry."""
    if not cookies:
        return
    extra = "; ".join(f"{cookie.name}={cookie.value}" for cookie in cookies)
    existing = prepared.headers.get("Cookie")
    prepared.headers["Cookie"] = f"{existing}; {extra}" if existing else extra


class HttpClient:
    """Core HTTP client (sync).

    The client is immutable after construction apart from its cookie store,
    and is safe to share between threads.
    """

    def __init__(
        self,
        config: HttpClientConfig | None = None,
        *,
        cookie_store: CookieStore | None = None,
    ) -> None:
        self._config = config if config is not None else HttpClientConfig()
        self._transport: Transport = build_transport(self._config)
        self._cookies = (
            cookie_store if cookie_store is not None else CookieStore()
        )
        self._session = requests.Session()
        self._session.cookies = self._cookies.jar
        self._transport.mount(self._session)
        if self._config.user_agent:
            self._session.headers["User-Agent"] = self._config.user_agent
        self._session.headers.update(self._config.default_headers)

    @property
    def config(self) -> HttpClientConfig:
        return self._config

    @property
    def cookies(self) -> CookieStore:
        return self._cookies

    @property
    def base_headers(self) -> Mapping[str, str]:
        """Read-only copy of the headers sent with every request."""
        return MappingProxyType(CaseInsensitiveDict(self._session.headers))

    def close(self) -> None:
        """Release the connection pool."""
        self._transport.close()

    def __enter__(self) -> HttpClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _get_timeout(self, cancel: CancelToken | None) -> Timeout:
        """Resolve the (connect, read) timeout, capped by the deadline."""
        connect, read = self._transport.timeout
        remaining = cancel.remaining() if cancel is not None else None
        if remaining is None:
            return (connect, read)
        return (min(connect, remaining), min(read, remaining))

    @contextmanager
    def _in_flight(self, cancel: CancelToken | None) -> Iterator[CallAbort]:
        """Abort the call's connection on cancel or once it overruns.

        ``timeout_seconds`` bounds the whole exchange, not only each read.
        """
        limit = self._config.timeout_seconds
        call = CallAbort()
        unregister: list[Callable[[], None]] = [
            CancelToken.with_timeout(limit).on_cancel(
                lambda: call.abort(
                    RequestTimeoutError(f"call exceeded {limit:g}s")
                )
            )
        ]
        if cancel is not None:
            unregister.append(
                cancel.on_cancel(
                    lambda: call.abort(
                        CancellationError("call cancelled while in flight")
                    )
                )
            )
        try:
            with abortable(call):
                yield call
        finally:
            for callback in unregister:
                callback()

    def _build_meta(
        self,
        method: str,
        request_url: str,
        response: requests.Response | None,
        context: Mapping[str, Any] | None,
        timeout: Timeout | None,
        final_error: str | None = None,
    ) -> dict[str, Any]:
        """Construct metadata dictionary from response and context."""
        meta: dict[str, Any] = {}
        meta["method"] = method
        meta["url"] = request_url
        meta["timeout_s"] = timeout
        if context:
            context_dict = dict(context)
            meta["context"] = context_dict
            for key, value in context_dict.items():
                meta.setdefault(key, value)

        if response is not None:
            meta["status"] = response.status_code
            meta["status_code"] = response.status_code
            meta["url"] = response.url
            meta["reason"] = response.reason
            try:
                meta["elapsed_s"] = response.elapsed.total_seconds()
            except AttributeError:
                pass  # In case elapsed is not available or mocked
        if final_error is not None:
            meta["final_error"] = final_error

        return meta

    def _failure(
        self,
        method: str,
        request_url: str,
        error: HttpClientError,
        context: Mapping[str, Any] | None,
        timeout: Timeout | None,
    ) -> Err[HttpClientError]:
        logger.debug("%s %s failed: %r", method, request_url, error)
        return Err(
            error,
            meta=self._build_meta(
                method,
                request_url,
                None,
                context,
                timeout,
                final_error=type(error).__name__,
            ),
        )

    def _handle_request_exception(
        self,
        method: str,
        request_url: str,
        e: requests.exceptions.RequestException,
        call: CallAbort,
        cancel: CancelToken | None,
        context: Mapping[str, Any] | None,
        timeout: Timeout,
    ) -> Err[HttpClientError]:
        """Map requests exceptions to courier errors."""
        error: HttpClientError
        if call.error is not None:
            error = call.error
        elif cancel is not None and cancel.cancelled:
            error = CancellationError(f"call cancelled: {e}")
        elif isinstance(e, requests.exceptions.Timeout):
            error = RequestTimeoutError(str(e))
        elif isinstance(e, _MALFORMED_REQUEST_ERRORS):
            # e.g. a redirect to an unusable Location.
            error = FormatError(str(e))
        else:
            error = TransportError(str(e))
        error.__cause__ = e
        logger.debug("%s %s failed: %r", method, request_url, e)
        return Err(
            error,
            meta=self._build_meta(
                method,
                request_url,
                e.response,
                context,
                timeout,
                final_error=type(e).__name__,
            ),
        )

    def _prepare(
        self,
        method: str,
        url: str,
        body: Any,
        options: RequestOptions,
    ) -> requests.PreparedRequest:
        """Compose the outgoing request.

        Session headers are overlaid by ``options.headers`` (set, not
        appended). Per-call cookies follow the store's cookies in the
        ``Cookie`` header of this request only.
        """
        request = requests.Request(
            method=method,
            url=apply_query(url, options.query),
            headers=dict(options.headers),
            data=body,
        )
        try:
            prepared = self._session.prepare_request(request)
        except _MALFORMED_REQUEST_ERRORS as exc:
            raise FormatError(str(exc)) from exc
        _append_call_cookies(prepared, options.cookies)
        return prepared

    def dispatch(
        self,
        method: str,
        url: str,
        *,
        body: Any | None = None,
        options: RequestOptions | None = None,
        cancel: CancelToken | None = None,
        allow_redirects: bool = True,
        context: Mapping[str, Any] | None = None,
    ) -> Result[requests.Response, HttpClientError]:
        """Send one request through the pooled transport.

        Returns a Result holding the streamed response, whose body the
        caller owns, or a FormatError, CancellationError or TransportError.
        ``context`` is copied into the metadata for logging and tracing.
        """
        with self._in_flight(cancel) as call:
            return self._dispatch(
                method,
                url,
                call,
                body=body,
                options=options,
                cancel=cancel,
                allow_redirects=allow_redirects,
                context=context,
            )

    def _dispatch(
        self,
        method: str,
        url: str,
        call: CallAbort,
        *,
        body: Any | None,
        options: RequestOptions | None,
        cancel: CancelToken | None,
        allow_redirects: bool,
        context: Mapping[str, Any] | None,
    ) -> Result[requests.Response, HttpClientError]:
        method = method.upper()
        options = options if options is not None else _NO_OPTIONS
        try:
            prepared = self._prepare(method, url, body, options)
        except FormatError as exc:
            return self._failure(method, url, exc, context, None)

        if cancel is not None:
            try:
                cancel.raise_if_cancelled()
            except CancellationError as exc:
                return self._failure(method, url, exc, context, None)

        timeout = self._get_timeout(cancel)
        request_url = prepared.url or url
        settings = self._session.merge_environment_settings(
            request_url,
            dict(self._transport.proxies),
            True,
            self._config.verify_tls,
            None,
        )
        logger.debug("%s %s timeout=%s", method, request_url, timeout)
        try:
            response = self._session.send(
                prepared,
                timeout=timeout,
                allow_redirects=allow_redirects,
                **settings,
            )
        except requests.exceptions.RequestException as exc:
            return self._handle_request_exception(
                method, request_url, exc, call, cancel, context, timeout
            )

        if call.error is not None:
            response.close()
            return self._failure(
                method, request_url, call.error, context, timeout
            )
        return Ok(
            response,
            meta=self._build_meta(
                method, request_url, response, context, timeout
            ),
        )

    def get(
        self,
        url: str,
        *,
        options: RequestOptions | None = None,
        cancel: CancelToken | None = None,
        allow_redirects: bool = True,
        context: Mapping[str, Any] | None = None,
    ) -> Result[requests.Response, HttpClientError]:
        """Perform an HTTP GET request. See :meth:`dispatch`."""
        return self.dispatch(
            "GET",
            url,
            options=options,
            cancel=cancel,
            allow_redirects=allow_redirects,
            context=context,
        )

    def head(
        self,
        url: str,
        *,
        options: RequestOptions | None = None,
        cancel: CancelToken | None = None,
        allow_redirects: bool = False,
        context: Mapping[str, Any] | None = None,
    ) -> Result[requests.Response, HttpClientError]:
        return self.dispatch(
            "HEAD",
            url,
            options=options,
            cancel=cancel,
            allow_redirects=allow_redirects,
            context=context,
        )

    def post(
        self,
        url: str,
        body: Any | None = None,
        *,
        options: RequestOptions | None = None,
        cancel: CancelToken | None = None,
        allow_redirects: bool = True,
        context: Mapping[str, Any] | None = None,
    ) -> Result[requests.Response, HttpClientError]:
        """Perform an HTTP POST request. See :meth:`dispatch`."""
        return self.dispatch(
            "POST",
            url,
            body=body,
            options=options,
            cancel=cancel,
            allow_redirects=allow_redirects,
            context=context,
        )

    def post_json(
        self,
        url: str,
        payload: Any,
        *,
        decode: bool = True,
        options: RequestOptions | None = None,
        cancel: CancelToken | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> Result[Any, HttpClientError]:
        """POST ``payload`` as JSON.

        ``Content-Type: application/json`` is added unless ``options``
        already sets a content type. With ``decode`` the body is decoded
        and the response closed, all within the call's timeout; otherwise
        the streamed response is returned untouched. Encoding and decoding
        failures are reported as SerializationError.
        """
        options = options if options is not None else _NO_OPTIONS
        try:
            body = json.dumps(payload, allow_nan=False).encode("utf-8")
        except (TypeError, ValueError) as exc:
            error = SerializationError(f"cannot encode payload: {exc}")
            error.__cause__ = exc
            return self._failure("POST", url, error, context, None)

        if not options.headers.get("Content-Type"):
            headers = CaseInsensitiveDict(options.headers)
            headers["Content-Type"] = _JSON_CONTENT_TYPE
            options = replace(options, headers=headers)

        with self._in_flight(cancel) as call:
            result = self._dispatch(
                "POST",
                url,
                call,
                body=body,
                options=options,
                cancel=cancel,
                allow_redirects=True,
                context=context,
            )
            if not decode or isinstance(result, Err):
                return result
            return self._decode(result.value, result.meta, call)

    def _decode(
        self,
        response: requests.Response,
        meta: Mapping[str, Any],
        call: CallAbort,
    ) -> Result[Any, HttpClientError]:
        # The body arrives over the connection already attached to ``call``.
        error: HttpClientError
        try:
            value = response.json()
        except ValueError as exc:
            error = call.error or SerializationError(
                f"cannot decode response: {exc}"
            )
            error.__cause__ = exc
            return Err(
                error, meta={**meta, "final_error": type(error).__name__}
            )
        except requests.exceptions.RequestException as exc:
            error = call.error or TransportError(str(exc))
            error.__cause__ = exc
            return Err(
                error, meta={**meta, "final_error": type(exc).__name__}
            )
        finally:
            response.close()
        return Ok(value, meta=meta)

    def set_cookie(self, url: str, name: str, value: str) -> None:
        self._cookies.set(url, name, value)

    def delete_cookie(self, url: str, name: str) -> None:
        self._cookies.delete(url, name)

    def get_cookies(self, url: str) -> Sequence[Cookie]:
        return self._cookies.list(url)

    def dump_cookies(self, url: str) -> list[str]:
        return self._cookies.dump(url)
