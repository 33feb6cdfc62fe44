"""Crawl cycle orchestration: crawl, merge, enrich, upsert, snapshot."""

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime

from pnm.address import host_of
from pnm.balance import BalanceCache
from pnm.config import PnmConfig, validate_config
from pnm.geoip import GeoLocator
from pnm.gossip import GossipClient, GossipCrawler
from pnm.latency import measure_latency
from pnm.models import CycleReport, NodeIdentity
from pnm.resolver import IdentityResolver, MergePlan, needs_balance, needs_geolocation
from pnm.snapshots import SnapshotRecorder
from pnm.store import DirectoryStore

logger = logging.getLogger(__name__)

LatencyProbe = Callable[..., float | None]


class CrawlPipeline:
    """Run crawl cycles against one directory store.

    A cycle is one crawl result merged into one plan and written as one
    upsert batch.  Only one cycle runs at a time: ``run_cycle`` called while
    another cycle holds the lock returns ``None`` immediately.

    Args:
        config: Validated at the start of every cycle.
        store: Directory store.
        crawler, geolocator, balance_cache, resolver, recorder: Collaborators;
            built from *config* when omitted.
        latency_probe: Callable ``(address, rpc_port=, timeout=)``.
        clock: Wall-clock source used for enrichment freshness.
    """

    def __init__(
        self,
        config: PnmConfig,
        store: DirectoryStore,
        crawler: GossipCrawler | None = None,
        geolocator: GeoLocator | None = None,
        balance_cache: BalanceCache | None = None,
        resolver: IdentityResolver | None = None,
        recorder: SnapshotRecorder | None = None,
        latency_probe: LatencyProbe = measure_latency,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.crawler = crawler or GossipCrawler(
            GossipClient(timeout=config.gossip_timeout),
            max_workers=config.enrichment_concurrency,
        )
        self.geolocator = geolocator or GeoLocator(config, store=store)
        self.balance_cache = balance_cache or BalanceCache(config, store=store)
        self.resolver = resolver or IdentityResolver(
            store, previous_address_limit=config.previous_address_limit
        )
        self.recorder = recorder or SnapshotRecorder(
            store, interval_minutes=config.snapshot_interval_minutes
        )
        self.latency_probe = latency_probe
        self._clock = clock
        self._cycle_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._cycle_lock.locked()

    def run_cycle(self) -> CycleReport | None:
        """Run one crawl cycle.

        Returns:
            The cycle report, or ``None`` if a cycle was already running.

        Raises:
            ConfigError: If the configuration cannot support a cycle.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Crawl cycle already in progress; skipping")
            return None
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleReport:
        validate_config(self.config)
        started = time.monotonic()
        report = CycleReport(timestamp=datetime.now(UTC))

        crawl = self.crawler.crawl(self.config.seed_endpoints)
        report.endpoints_queried = crawl.endpoints_queried
        report.endpoints_ok = crawl.endpoints_ok
        report.endpoints_failed = crawl.endpoints_failed
        report.peers_fetched = crawl.fetched
        report.peers_discarded = crawl.discarded

        if crawl.endpoints_ok == 0:
            report.outcome = "no_data"
            report.duration_seconds = time.monotonic() - started
            logger.warning("No gossip endpoint answered; directory left unchanged")
            self.store.save_cycle_report(report)
            return report

        plan = self.resolver.merge(crawl.peers, now=report.timestamp)
        _fill_merge_counts(report, plan)

        self._enrich(plan.observed(), report)

        result = self.store.upsert_many(plan.records, plan.address_owners)
        report.upserted = result.upserted
        report.upsert_failed = result.failed
        if result.failed:
            report.outcome = "partial"
            logger.warning(
                "Upserted %d of %d records", result.upserted, result.attempted
            )

        # Unwritten records keep their old status; their transitions are
        # logged by whichever cycle writes them.
        failed = set(result.failed_keys)
        events = [e for e in plan.activity if e.identity_key not in failed]
        if events:
            try:
                report.activity_events = self.store.save_activity(events)
            except sqlite3.Error as exc:
                logger.warning("Activity log write failed: %s", exc)

        report.snapshot_label = self._snapshot(report.timestamp)
        report.duration_seconds = time.monotonic() - started
        self.store.save_cycle_report(report)
        logger.info(
            "Cycle %s: %d created, %d updated, %d offline in %.1fs",
            report.outcome,
            report.identities_created,
            report.identities_updated,
            report.marked_offline,
            report.duration_seconds,
        )
        return report

    def _enrich(self, records: list[NodeIdentity], report: CycleReport) -> None:
        """Attach fresh geolocation, balance and latency to *records*.

        Every lookup may come back empty; the record then keeps whatever it
        had and is retried next cycle.
        """
        now = self._clock()

        geo_targets = [
            r for r in records if needs_geolocation(r, now, self.config.geo_cache_ttl)
        ]
        if geo_targets:
            located = self.geolocator.get_many(host_of(r.current_address) for r in geo_targets)
            for record in geo_targets:
                loc = located.get(host_of(record.current_address))
                if loc is not None:
                    record.location_data = loc
                    report.geo_enriched += 1

        balance_targets = [
            r for r in records if needs_balance(r, now, self.config.balance_cache_ttl)
        ]
        latency_targets = records if self.config.measure_latency else []
        if not balance_targets and not latency_targets:
            return

        with ThreadPoolExecutor(max_workers=self.config.enrichment_concurrency) as executor:
            futures = {}
            for record in balance_targets:
                future = executor.submit(self.balance_cache.get, record.identity_key)
                futures[future] = ("balance", record)
            for record in latency_targets:
                future = executor.submit(
                    self.latency_probe,
                    record.current_address,
                    rpc_port=record.rpc_port,
                    timeout=self.config.ping_timeout,
                )
                futures[future] = ("latency", record)

            for future in as_completed(futures):
                kind, record = futures[future]
                try:
                    value = future.result()
                except Exception as exc:
                    logger.warning("%s lookup for %s failed: %s", kind, record.identity_key, exc)
                    continue
                if value is None:
                    continue
                if kind == "balance":
                    record.balance_data = value
                    report.balance_enriched += 1
                else:
                    record.latency_ms = value
                    report.latency_measured += 1

        logger.debug(
            "Enriched: %d geo, %d balance, %d latency",
            report.geo_enriched,
            report.balance_enriched,
            report.latency_measured,
        )

    def _snapshot(self, now: datetime) -> str | None:
        if not self.recorder.due(now):
            return None
        try:
            snapshot = self.recorder.capture(now)
        except sqlite3.Error as exc:
            logger.warning("Snapshot capture failed: %s", exc)
            return None
        return snapshot.interval_label if snapshot else None

    def run_forever(
        self,
        interval: float | None = None,
        max_cycles: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> int:
        """Run cycles back to back, *interval* seconds apart.

        Returns:
            Number of cycles that ran.
        """
        interval = self.config.crawl_interval_seconds if interval is None else interval
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            if self.run_cycle() is not None:
                cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            sleep(interval)
        return cycles

    def close(self) -> None:
        self.geolocator.close()


def _fill_merge_counts(report: CycleReport, plan: MergePlan) -> None:
    report.invalid_keys = plan.invalid
    report.identities_created = plan.created
    report.identities_updated = plan.updated
    report.address_changes = plan.address_changes
    report.address_conflicts = len(plan.conflicts)
    report.marked_offline = plan.marked_offline
