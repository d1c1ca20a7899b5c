"""
Cooperative cancellation for extraction pipelines.

Worker threads cannot be interrupted from outside, so long-running stages
poll a token between steps and unwind through ``AnalysisCancelledError``.
"""

import threading
from typing import Optional

from soundmatch.utils.errors import AnalysisCancelledError


class CancellationToken:
    """Thread-safe, one-shot cancellation flag with a reason."""

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._lock = threading.Lock()

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Request cancellation.

        Returns:
            True if this call cancelled the token, False if already cancelled
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self, stage: str = "") -> None:
        """Raise AnalysisCancelledError if cancellation was requested."""
        if self._event.is_set():
            where = f" during {stage}" if stage else ""
            raise AnalysisCancelledError(
                f"Analysis cancelled{where}: {self._reason}",
                reason=self._reason
            )

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


def checkpoint(token: Optional[CancellationToken], stage: str) -> None:
    """Raise if ``token`` is cancelled; no-op for ``None``."""
    if token is not None:
        token.raise_if_cancelled(stage)
