"""State change notifications for UI layers.

Subscribers are held weakly by default so the engine never keeps a screen or
view model alive.  A subscriber that raises is logged and skipped; it cannot
break the publisher or other subscribers.
"""

from __future__ import annotations

import inspect
import logging
import threading
import weakref
from dataclasses import dataclass, field
from typing import Callable

from notifyme.exposure.base import ExposureResultSet

logger = logging.getLogger("notifyme.exposure.notifier")

EXPOSURES_CHANGED = "exposures"
DIARY_CHANGED = "diary"


@dataclass(frozen=True)
class StateChange:
    """A published change.

    Attributes:
        kind:      ``"exposures"`` or ``"diary"``.
        exposures: The new exposure result set (exposure changes only).
        check_in_ids: Diary records affected (diary changes only).
    """

    kind: str
    exposures: ExposureResultSet | None = None
    check_in_ids: tuple[str, ...] = field(default_factory=tuple)


Listener = Callable[[StateChange], None]


class Subscription:
    """Handle returned by ``StateNotifier.subscribe``."""

    def __init__(self, notifier: "StateNotifier", token: int) -> None:
        self._notifier = weakref.ref(notifier)
        self._token = token

    def cancel(self) -> None:
        notifier = self._notifier()
        if notifier is not None:
            notifier._unsubscribe(self._token)


class StateNotifier:
    """Observer list the UI subscribes to.

    Usage::

        notifier = StateNotifier()
        subscription = notifier.subscribe(view_model.on_state_change)
        ...
        subscription.cancel()
    """

    def __init__(self) -> None:
        self._listeners: dict[int, Callable[[], Listener | None]] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(self, callback: Listener, weak: bool = True) -> Subscription:
        """Register ``callback`` for every published StateChange.

        Args:
            callback: Called with the StateChange.
            weak:     Hold the callback through a weak reference.  Pass False
                      for closures and lambdas, which would otherwise be
                      collected immediately.
        """
        if not weak:
            ref: Callable[[], Listener | None] = lambda: callback
        elif inspect.ismethod(callback):
            ref = weakref.WeakMethod(callback)
        else:
            ref = weakref.ref(callback)

        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = ref
        return Subscription(self, token)

    def _unsubscribe(self, token: int) -> None:
        with self._lock:
            self._listeners.pop(token, None)

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for ref in self._listeners.values() if ref() is not None)

    def publish(self, change: StateChange) -> None:
        with self._lock:
            items = list(self._listeners.items())

        dead: list[int] = []
        for token, ref in items:
            listener = ref()
            if listener is None:
                dead.append(token)
                continue
            try:
                listener(change)
            except Exception:
                logger.exception("State listener failed for %s change", change.kind)

        if dead:
            with self._lock:
                for token in dead:
                    self._listeners.pop(token, None)

    def exposures_changed(self, exposures: ExposureResultSet) -> None:
        self.publish(StateChange(kind=EXPOSURES_CHANGED, exposures=exposures))

    def diary_changed(self, *check_in_ids: str) -> None:
        self.publish(StateChange(kind=DIARY_CHANGED, check_in_ids=tuple(check_in_ids)))
