"""Tests for persisted sync state — cursor monotonicity, ledger dedup, storage."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

from notifyme.exposure.base import ExposureMatch, ExposureResultSet
from notifyme.exposure.results import ExposureRepository
from notifyme.exposure.storage import (
    LAST_SYNC_KEY,
    NOTIFIED_IDS_KEY,
    InMemoryStore,
    JsonFileStore,
)
from notifyme.exposure.sync.cursor import SyncCursor
from notifyme.exposure.sync.dedup import NotificationLedger
from notifyme.exposure.tests.conftest import FlakyStore, recent_time


def _result_set(*ids: str) -> ExposureResultSet:
    t = recent_time()
    return ExposureResultSet(
        {
            i: ExposureMatch(check_in_id=i, window_start=t, window_end=t + timedelta(hours=1))
            for i in ids
        }
    )


class TestSyncCursor:
    def test_absent_on_first_run(self, store: InMemoryStore) -> None:
        assert SyncCursor(store).value is None

    def test_commit_stores_candidate(self, store: InMemoryStore) -> None:
        cursor = SyncCursor(store)
        assert cursor.commit(1_000) == 1_000
        assert store.get(LAST_SYNC_KEY) == 1_000

    def test_none_candidate_keeps_cursor(self, store: InMemoryStore) -> None:
        cursor = SyncCursor(store)
        cursor.commit(1_000)
        assert cursor.commit(None) == 1_000

    @pytest.mark.parametrize(
        "candidates",
        [
            [1_000, 2_000, 3_000],
            [3_000, 1_000, 2_000],
            [5_000, 5_000, 4_999, 6_000],
        ],
    )
    def test_cursor_never_decreases(self, store: InMemoryStore, candidates: list[int]) -> None:
        cursor = SyncCursor(store)
        seen: list[int] = []
        for candidate in candidates:
            cursor.commit(candidate)
            seen.append(cursor.value)
        assert seen == sorted(seen)
        assert cursor.value == max(candidates)

    def test_clear(self, store: InMemoryStore) -> None:
        cursor = SyncCursor(store)
        cursor.commit(1_000)
        cursor.clear()
        assert cursor.value is None

    def test_corrupt_value_reads_as_absent(self) -> None:
        assert SyncCursor(InMemoryStore({LAST_SYNC_KEY: "yesterday"})).value is None


class TestNotificationLedger:
    def test_new_ids_need_notification(self, store: InMemoryStore) -> None:
        ledger = NotificationLedger(store)
        diff = ledger.diff_against_notified(_result_set("42"))
        assert diff.newly_flagged_ids == ("42",)
        assert diff.needs_notification
        assert "42" in ledger

    def test_known_ids_do_not_need_notification(self, store: InMemoryStore) -> None:
        ledger = NotificationLedger(store)
        ledger.diff_against_notified(_result_set("42"))
        diff = ledger.diff_against_notified(_result_set("42"))
        assert diff.newly_flagged_ids == ()
        assert not diff.needs_notification

    def test_only_the_difference_is_flagged(self, store: InMemoryStore) -> None:
        ledger = NotificationLedger(store)
        ledger.diff_against_notified(_result_set("a"))
        diff = ledger.diff_against_notified(_result_set("a", "b", "c"))
        assert diff.newly_flagged_ids == ("b", "c")

    def test_each_id_flagged_at_most_once(self, store: InMemoryStore) -> None:
        ledger = NotificationLedger(store)
        passes = [("a",), ("a", "b"), ("b",), (), ("a", "b", "c"), ("c",)]
        flagged: list[str] = []
        for ids in passes:
            flagged.extend(ledger.diff_against_notified(_result_set(*ids)).newly_flagged_ids)
        assert sorted(flagged) == ["a", "b", "c"]

    def test_empty_result_set(self, store: InMemoryStore) -> None:
        assert not NotificationLedger(store).diff_against_notified(ExposureResultSet()).needs_notification

    def test_ledger_survives_reload(self, store: InMemoryStore) -> None:
        NotificationLedger(store).diff_against_notified(_result_set("a", "b"))
        reloaded = NotificationLedger(store)
        assert reloaded.ids == {"a", "b"}
        assert store.get(NOTIFIED_IDS_KEY) == ["a", "b"]

    def test_failed_write_leaves_ledger_unchanged(self) -> None:
        store = FlakyStore()
        ledger = NotificationLedger(store)
        ledger.diff_against_notified(_result_set("a"))
        store.failing_keys.add(NOTIFIED_IDS_KEY)

        with pytest.raises(OSError):
            ledger.diff_against_notified(_result_set("a", "b"))

        assert ledger.ids == {"a"}
        assert store.get(NOTIFIED_IDS_KEY) == ["a"]

        store.failing_keys.clear()
        assert ledger.diff_against_notified(_result_set("a", "b")).newly_flagged_ids == ("b",)

    def test_clear(self, store: InMemoryStore) -> None:
        ledger = NotificationLedger(store)
        ledger.diff_against_notified(_result_set("a"))
        ledger.clear()
        assert len(ledger) == 0
        assert ledger.diff_against_notified(_result_set("a")).needs_notification


class TestExposureRepository:
    def test_save_and_load(self, store: InMemoryStore) -> None:
        repo = ExposureRepository(store)
        result = _result_set("a", "b")
        repo.save(result)
        assert repo.load() == result

    def test_binary_message_survives_persistence(self, store: InMemoryStore) -> None:
        t = recent_time()
        match = ExposureMatch(
            check_in_id="bin", window_start=t, window_end=t, message=b"\x00\xff\x10"
        )
        repo = ExposureRepository(store)
        repo.save(ExposureResultSet({"bin": match}))
        assert repo.load()["bin"].message == b"\x00\xff\x10"


class TestJsonFileStore:
    def test_values_survive_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        JsonFileStore(path).set(LAST_SYNC_KEY, 42)
        assert JsonFileStore(path).get(LAST_SYNC_KEY) == 42
        assert json.loads(path.read_text()) == {LAST_SYNC_KEY: 42}

    def test_delete(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path / "state.json")
        store.set("k", [1, 2])
        store.delete("k")
        assert store.get("k", "default") == "default"

    def test_returned_values_are_copies(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path / "state.json")
        store.set("k", ["a"])
        store.get("k").append("b")
        assert store.get("k") == ["a"]

    def test_corrupt_file_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(ValueError):
            JsonFileStore(path)
