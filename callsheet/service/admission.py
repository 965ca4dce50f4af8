"""
Admission control for concurrent extractions.

Two independent caps guard AI work:
- a global cap on simultaneous extractions
- a per-user cap on one user's parallel extractions

Callers over either cap wait in a bounded queue; once max_queue_depth
callers are already waiting, further callers are rejected immediately
with AdmissionRejected (backpressure).

Usage:
    controller = AdmissionController(global_limit=10, per_user_limit=2)
    with controller.acquire("user-42"):
        ...  # run the extraction
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from ..extract.errors import AdmissionRejected

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"


@dataclass
class AdmissionStats:
    global_active: int = 0
    global_pending: int = 0
    per_user: dict[str, int] = field(default_factory=dict)


class Permit:
    """Held while an extraction runs. Releases once, on exit or release()."""

    def __init__(self, controller: "AdmissionController", user_id: str):
        self._controller = controller
        self.user_id = user_id
        self.acquired_at = time.monotonic()
        self._released = False

    def release(self):
        if not self._released:
            self._released = True
            self._controller._release(self.user_id)

    def __enter__(self) -> "Permit":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


class AdmissionController:
    """Global and per-user concurrency caps with a bounded wait queue."""

    def __init__(self, global_limit: int = 10, per_user_limit: int = 2, max_queue_depth: int = 20):
        if global_limit <= 0 or per_user_limit <= 0:
            raise ValueError("Admission limits must be positive")
        self.global_limit = global_limit
        self.per_user_limit = per_user_limit
        self.max_queue_depth = max_queue_depth

        self._cond = threading.Condition()
        self._active = 0
        self._pending = 0
        self._per_user: dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings) -> "AdmissionController":
        return cls(
            global_limit=settings.global_limit,
            per_user_limit=settings.per_user_limit,
            max_queue_depth=settings.max_queue_depth,
        )

    def _can_admit(self, user_id: str) -> bool:
        return (
            self._active < self.global_limit
            and self._per_user.get(user_id, 0) < self.per_user_limit
        )

    def acquire(self, user_id: Optional[str] = None, timeout: Optional[float] = None) -> Permit:
        """
        Wait for a slot and return a Permit.

        Args:
            user_id: Caller identity for the per-user cap
            timeout: Seconds to wait in the queue (None = wait indefinitely)

        Raises:
            AdmissionRejected: Queue full, or timeout expired while waiting
        """
        user = user_id or ANONYMOUS_USER
        with self._cond:
            if not self._can_admit(user):
                if self._pending >= self.max_queue_depth:
                    logger.warning(
                        f"Admission rejected for {user}: {self._active} active, "
                        f"{self._pending} queued (max {self.max_queue_depth})"
                    )
                    raise AdmissionRejected(
                        f"Extraction queue full ({self._pending} waiting)"
                    )
                self._pending += 1
                try:
                    admitted = self._cond.wait_for(lambda: self._can_admit(user), timeout)
                finally:
                    self._pending -= 1
                if not admitted:
                    raise AdmissionRejected(f"Timed out after {timeout}s waiting for a slot")

            self._active += 1
            self._per_user[user] = self._per_user.get(user, 0) + 1
            logger.debug(f"Admitted {user} ({self._active}/{self.global_limit} active)")
            return Permit(self, user)

    def _release(self, user_id: str):
        with self._cond:
            self._active = max(0, self._active - 1)
            remaining = self._per_user.get(user_id, 0) - 1
            if remaining > 0:
                self._per_user[user_id] = remaining
            else:
                self._per_user.pop(user_id, None)
            self._cond.notify_all()

    def stats(self) -> AdmissionStats:
        with self._cond:
            return AdmissionStats(
                global_active=self._active,
                global_pending=self._pending,
                per_user=dict(self._per_user),
            )
