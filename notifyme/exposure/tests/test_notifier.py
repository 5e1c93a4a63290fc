"""Tests for the state notifier — weak subscriptions and failure isolation."""

from __future__ import annotations

import gc

from notifyme.exposure.base import ExposureResultSet
from notifyme.exposure.notifier import StateChange, StateNotifier


class _Screen:
    def __init__(self) -> None:
        self.changes: list[StateChange] = []

    def on_change(self, change: StateChange) -> None:
        self.changes.append(change)


class TestStateNotifier:
    def test_bound_method_receives_changes(self) -> None:
        notifier = StateNotifier()
        screen = _Screen()
        notifier.subscribe(screen.on_change)

        notifier.exposures_changed(ExposureResultSet())

        assert len(screen.changes) == 1
        assert screen.changes[0].kind == "exposures"

    def test_subscriber_is_not_kept_alive(self) -> None:
        notifier = StateNotifier()
        screen = _Screen()
        notifier.subscribe(screen.on_change)
        assert len(notifier) == 1

        del screen
        gc.collect()

        assert len(notifier) == 0
        notifier.diary_changed("a")  # dead reference is skipped

    def test_strong_subscription_for_closures(self) -> None:
        notifier = StateNotifier()
        received: list[str] = []
        notifier.subscribe(lambda change: received.append(change.kind), weak=False)
        gc.collect()

        notifier.diary_changed("a")

        assert received == ["diary"]

    def test_cancel_stops_delivery(self) -> None:
        notifier = StateNotifier()
        screen = _Screen()
        subscription = notifier.subscribe(screen.on_change)
        subscription.cancel()

        notifier.diary_changed("a")

        assert screen.changes == []

    def test_failing_subscriber_does_not_block_others(self) -> None:
        notifier = StateNotifier()
        screen = _Screen()

        def _broken(change: StateChange) -> None:
            raise RuntimeError("view is gone")

        notifier.subscribe(_broken, weak=False)
        notifier.subscribe(screen.on_change)

        notifier.diary_changed("a")

        assert len(screen.changes) == 1
