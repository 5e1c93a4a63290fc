"""Exposure match engine — find which diary visits overlap a flagged event.

For every decoded problematic event the engine asks the match provider about
each diary record whose visit window overlaps the event window.  The provider
alone decides whether the pair is the same occasion.

The result set is recomputed from the whole snapshot on every pass and then
laid over the previous result set, so matches established by earlier passes
(whose events are no longer in the incremental batch, or whose check-ins were
pruned by retention) are kept until an explicit reset.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable

from notifyme.exposure.base import (
    CheckInRecord,
    ExposureMatch,
    ExposureResultSet,
    MatchProvider,
    ProblematicEventRecord,
    utc_now,
)
from notifyme.exposure.config_loader import ExposureConfig, get_exposure_config
from notifyme.exposure.diary import DiarySnapshot, DiaryStore

logger = logging.getLogger("notifyme.exposure.match_engine")


def _overlap_seconds(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> int:
    """Return the number of seconds two time intervals overlap (0 if none)."""
    overlap_start = max(start_a, start_b)
    overlap_end = min(end_a, end_b)
    delta = (overlap_end - overlap_start).total_seconds()
    return int(max(0.0, delta))


def _is_eligible(record: CheckInRecord, cutoff: datetime, now: datetime) -> bool:
    """A visit is matchable while any part of it lies inside the retention horizon."""
    _, end = record.window(now)
    return end >= cutoff


class MatchEngine:
    """Match decoded events against the diary through a MatchProvider.

    Usage::

        engine = MatchEngine(provider)
        engine.sweep(diary)
        result = engine.recompute(diary.snapshot(), events, previous)
    """

    def __init__(
        self, provider: MatchProvider, config: ExposureConfig | None = None
    ) -> None:
        self._provider = provider
        self._config = config or get_exposure_config()

    @property
    def retention_days(self) -> int:
        return self._config.retention.max_days_to_keep

    def retention_cutoff(self, now: datetime | None = None) -> datetime:
        return (now or utc_now()) - timedelta(days=self.retention_days)

    def sweep(self, diary: DiaryStore, now: datetime | None = None) -> list[str]:
        """Purge data older than the retention horizon.

        Provider-side data is always purged.  Diary visits that ended before
        the horizon are removed when ``retention.prune_diary`` is set.  Matches
        already in the result set are not touched.

        Returns:
            Ids of the diary records removed.
        """
        self._provider.clean_up_old_data(self.retention_days)
        if not self._config.retention.prune_diary:
            return []
        return diary.remove_ended_before(self.retention_cutoff(now))

    def match_events(
        self,
        snapshot: DiarySnapshot,
        events: Iterable[ProblematicEventRecord],
        now: datetime | None = None,
    ) -> dict[str, ExposureMatch]:
        """Compute fresh matches for ``events`` from scratch.

        When several events match the same check-in, the last one in batch
        order wins.

        Returns:
            check-in id → ExposureMatch for every positive match.
        """
        now = now or snapshot.taken_at
        cutoff = self.retention_cutoff(now)
        fresh: dict[str, ExposureMatch] = {}
        pairs_checked = 0

        for event in events:
            candidates = snapshot.records_overlapping(
                event.window_start, event.window_end, now
            )
            for record in candidates:
                if not _is_eligible(record, cutoff, now):
                    continue
                pairs_checked += 1
                try:
                    payload = self._provider.try_match(event, record)
                except Exception:
                    logger.exception(
                        "Match provider failed for check-in %s; treating as no match",
                        record.id,
                    )
                    continue
                if payload is None:
                    continue

                start, end = record.window(now)
                fresh[record.id] = ExposureMatch(
                    check_in_id=record.id,
                    window_start=start,
                    window_end=end,
                    message=payload.message,
                    metadata=dict(payload.metadata),
                    matched_at=now,
                )
                logger.debug(
                    "Check-in %s matched event window %s–%s (%ds overlap)",
                    record.id,
                    event.window_start.isoformat(),
                    event.window_end.isoformat(),
                    _overlap_seconds(start, end, event.window_start, event.window_end),
                )

        logger.debug(
            "MatchEngine: %d pairs checked → %d matches", pairs_checked, len(fresh)
        )
        return fresh

    def recompute(
        self,
        snapshot: DiarySnapshot,
        events: Iterable[ProblematicEventRecord],
        previous: ExposureResultSet | None = None,
        now: datetime | None = None,
    ) -> ExposureResultSet:
        """Return the new exposure result set.

        Fresh matches overwrite previous entries for the same check-in id;
        previous entries without a fresh match are kept.  Identical inputs
        always produce an identical result.

        Args:
            snapshot: Diary snapshot taken once for this pass.
            events:   Decoded problematic events.
            previous: Result set from earlier passes.
            now:      Pass time (defaults to the snapshot time).
        """
        fresh = self.match_events(snapshot, events, now)
        result = (previous or ExposureResultSet()).merged_with(fresh)
        logger.info(
            "MatchEngine: %d new/updated matches, %d total exposures",
            len(fresh),
            len(result),
        )
        return result
