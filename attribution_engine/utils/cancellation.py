"""
Cooperative cancellation for long-running engine operations
"""
import threading

from attribution_engine.exceptions import OperationCancelled


class CancellationToken:
    """Cancellation signal shared between a caller and a running operation.

    The operation calls ``raise_if_cancelled()`` at safe points; nothing it
    computed before that point is published.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str = "operation"):
        if self._event.is_set():
            raise OperationCancelled(f"{operation} cancelled")
