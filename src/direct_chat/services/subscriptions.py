"""Cancellable subscription handles shared by the stores."""

from threading import RLock
from typing import Callable, Optional, TypeVar

import structlog

from ..backends.base import ListenerRegistration

logger = structlog.get_logger()

T = TypeVar("T")


class SubscriptionHandle:
    """Token for an active stream of change notifications.

    Delivery and cancellation share a lock, so once ``unsubscribe`` returns
    no callback is running and none will start, even for notifications the
    backend dispatches late.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = RLock()
        self._active = True
        self._registration: Optional[ListenerRegistration] = None

    @property
    def active(self) -> bool:
        return self._active

    def attach(self, registration: ListenerRegistration) -> None:
        with self._lock:
            if not self._active:
                registration.remove()
                return
            self._registration = registration

    def deliver(self, callback: Callable[[T], None], item: T) -> bool:
        """Run ``callback(item)`` unless the handle was cancelled."""
        with self._lock:
            if not self._active:
                logger.debug("late_notification_dropped", subscription=self.name)
                return False
            callback(item)
            return True

    def unsubscribe(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
            registration, self._registration = self._registration, None
        if registration is not None:
            registration.remove()
        logger.debug("unsubscribed", subscription=self.name)
