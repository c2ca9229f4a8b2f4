"""Cooperative cancellation token shared between caller and operation."""

import threading

from .exceptions import OperationCancelledError


class Cancellable:
    """Thread-safe cancellation flag.

    The caller keeps a reference and calls ``cancel()`` from any thread; the
    running operation checks it between steps and the object store may check
    it during transfers.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if cancel() was called."""
        if self._event.is_set():
            raise OperationCancelledError("Operation was cancelled")


def check_cancelled(cancellable: Cancellable | None) -> None:
    if cancellable is not None:
        cancellable.raise_if_cancelled()
