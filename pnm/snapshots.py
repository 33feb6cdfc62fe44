"""Historical snapshots: periodic capture of the directory and score backfill."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from pnm.aggregator import aggregate, snapshot_entry
from pnm.health import score_network
from pnm.models import HistoricalSnapshot
from pnm.store import DirectoryStore

logger = logging.getLogger(__name__)


def interval_label(ts: datetime, minutes: int = 10) -> str:
    """Label the snapshot interval containing *ts*.

    The label is ``YYYY-MM-DD-HH-MM`` in UTC with the minutes floored to a
    multiple of *minutes*, e.g. ``2024-05-01-13-20`` for 13:27.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    ts = ts.astimezone(UTC)
    floored = ts.minute - ts.minute % minutes
    return f"{ts:%Y-%m-%d-%H}-{floored:02d}"


class SnapshotRecorder:
    """Freeze the directory into one snapshot per interval.

    The store lock is held only while the directory is read; scoring and
    the insert happen after it is released.

    Args:
        store: Directory store to read from and write to.
        interval_minutes: Width of one snapshot interval.
        clock: UTC time source, injectable for tests.
    """

    def __init__(
        self,
        store: DirectoryStore,
        interval_minutes: int = 10,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.interval_minutes = interval_minutes
        self._clock = clock

    def label(self, now: datetime | None = None) -> str:
        return interval_label(now or self._clock(), self.interval_minutes)

    def due(self, now: datetime | None = None) -> bool:
        """Whether the current interval has no snapshot yet."""
        return not self.store.snapshot_exists(self.label(now))

    def capture(self, now: datetime | None = None) -> HistoricalSnapshot | None:
        """Capture the directory for the current interval.

        Returns:
            The stored snapshot, or ``None`` if the interval already has one.
        """
        now = now or self._clock()
        label = self.label(now)
        if self.store.snapshot_exists(label):
            logger.debug("Snapshot %s already recorded", label)
            return None

        with self.store.lock:
            nodes = self.store.get_all_nodes()

        entries = [snapshot_entry(n) for n in nodes]
        stats = aggregate(entries)
        snapshot = HistoricalSnapshot(
            timestamp=now,
            interval_label=label,
            entries=entries,
            total_nodes=stats.status_counts["total"],
            online_nodes=stats.status_counts["online"],
            offline_nodes=stats.status_counts["offline"],
            syncing_nodes=stats.status_counts["syncing"],
            version_distribution=dict(stats.version_distribution),
            health=score_network(entries),
        )

        if not self.store.insert_snapshot(snapshot):
            logger.debug("Snapshot %s recorded concurrently; skipping", label)
            return None
        logger.info(
            "Snapshot %s: %d nodes, health %d",
            label,
            snapshot.total_nodes,
            snapshot.health.overall,
        )
        return snapshot


@dataclass
class BackfillResult:
    """Counts from one backfill run."""

    examined: int = 0
    updated: int = 0
    skipped: int = 0


def backfill_health_scores(store: DirectoryStore) -> BackfillResult:
    """Score every snapshot that has no health scores yet.

    Snapshots that already carry scores are never touched, so running this
    twice changes nothing the second time.
    """
    result = BackfillResult()
    for snapshot in store.snapshots_missing_scores():
        result.examined += 1
        health = score_network(snapshot.entries)
        if store.set_snapshot_scores(snapshot.id, health):
            result.updated += 1
            logger.debug("Backfilled %s: overall %d", snapshot.interval_label, health.overall)
        else:
            result.skipped += 1

    logger.info("Backfill: %d of %d snapshots scored", result.updated, result.examined)
    return result
