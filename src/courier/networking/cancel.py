"""Caller-owned cancellation and deadline handle."""

from __future__ import annotations

from threading import Event, Lock, Timer
from time import monotonic
from typing import Callable

from .errors import CancellationError


class CancelToken:
    """Cancellation handle bound to one or more calls.

    A token fires either when :meth:`cancel` is called or when its deadline
    (a :func:`time.monotonic` timestamp) passes. Firing a token only affects
    the calls it was passed to; each of them registers an abort callback
    through :meth:`on_cancel` while it is in flight.
    """

    def __init__(self, deadline: float | None = None) -> None:
        self._deadline = deadline
        self._event = Event()
        self._lock = Lock()
        self._callbacks: dict[object, Callable[[], None]] = {}
        self._timer: Timer | None = None

    @classmethod
    def with_timeout(cls, seconds: float) -> CancelToken:
        """Create a token that expires ``seconds`` from now."""
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        return cls(deadline=monotonic() + seconds)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and monotonic() >= self._deadline

    def cancel(self) -> None:
        self._event.set()
        self._fire()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, ``None`` without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - monotonic())

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError("call was cancelled")
        if self.cancelled:
            raise CancellationError("call deadline exceeded")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` once when the token fires.

        A token that already fired runs ``callback`` immediately. Returns a
        function that unregisters the callback; calling it after the token
        fired is harmless.
        """
        key = object()
        with self._lock:
            fired = self.cancelled
            if not fired:
                self._callbacks[key] = callback
                remaining = self.remaining()
                if remaining is not None and self._timer is None:
                    self._timer = Timer(remaining, self._fire)
                    self._timer.daemon = True
                    self._timer.start()
        if fired:
            callback()

        def unregister() -> None:
            with self._lock:
                self._callbacks.pop(key, None)
                timer = self._timer if not self._callbacks else None
                if timer is not None:
                    self._timer = None
            if timer is not None:
                timer.cancel()

        return unregister

    def _fire(self) -> None:
        with self._lock:
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        for callback in callbacks:
            callback()
