from __future__ import annotations

import threading

from slidesift.core.errors import OperationCancelledError


class CancellationToken:
    """Cooperative cancellation shared by rendering, backoff sleeps and remote calls."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, context: str = "analysis") -> None:
        if self._event.is_set():
            raise OperationCancelledError(f"{context} cancelled by control request.")

    def sleep(self, seconds: float, context: str = "backoff") -> None:
        """Wait up to ``seconds``; wake up and raise as soon as the token is cancelled."""
        if seconds > 0 and self._event.wait(seconds):
            raise OperationCancelledError(f"{context} cancelled by control request.")
        self.raise_if_cancelled(context)


def ensure_token(token: CancellationToken | None) -> CancellationToken:
    return token if token is not None else CancellationToken()
