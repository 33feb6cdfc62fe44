"""Identity resolution: merge a cycle's gossip observations into the directory.

The resolver never writes.  It reads the directory once, computes every
merge decision for the cycle, and hands back a ``MergePlan`` that the
pipeline applies as a single upsert batch.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pnm.address import host_of, is_public_ip
from pnm.keys import is_valid_identity_key, normalize_identity_key
from pnm.models import ActivityEvent, NodeIdentity, PeerObservation

if TYPE_CHECKING:
    from pnm.store import DirectoryStore

logger = logging.getLogger(__name__)


@dataclass
class AddressConflict:
    """Two identities claimed the same address.

    Attributes:
        address: The contested ``host:port``.
        claimant: Identity that now holds the address.
        previous_holder: Identity that held it before; its record is left
            untouched.
    """

    address: str
    claimant: str
    previous_holder: str


@dataclass
class MergePlan:
    """Every directory change computed for one crawl cycle.

    Attributes:
        records: Records to upsert: every observed identity plus every
            existing identity flipped or kept offline.
        created: Identities seen for the first time.
        updated: Existing identities observed this cycle.
        address_changes: Identities whose address changed.
        conflicts: Address reuse events between distinct identities.
        marked_offline: Identities that were online and were not observed.
        invalid: Observations dropped for lack of a valid identity key.
        address_owners: Address index changes; ``None`` releases an address.
        activity: New identities and status transitions, in record order.
    """

    records: list[NodeIdentity] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    address_changes: int = 0
    conflicts: list[AddressConflict] = field(default_factory=list)
    marked_offline: int = 0
    invalid: int = 0
    address_owners: dict[str, str | None] = field(default_factory=dict)
    activity: list[ActivityEvent] = field(default_factory=list)

    def observed(self) -> list[NodeIdentity]:
        return [r for r in self.records if r.seen_in_last_crawl]


def remember_address(previous: list[str], address: str, limit: int) -> list[str]:
    """Append *address* to an address history, deduplicated and bounded.

    An address already in the list keeps its position.  When the list grows
    past *limit*, the oldest entries are dropped.
    """
    history = list(previous)
    if address not in history:
        history.append(address)
    if limit <= 0:
        return []
    return history[-limit:]


class IdentityResolver:
    """Map peer observations onto stable node identities.

    Args:
        store: Directory store consulted for existing identities.
        previous_address_limit: How many earlier addresses to keep per
            identity.
    """

    def __init__(self, store: DirectoryStore, previous_address_limit: int = 10) -> None:
        self.store = store
        self.previous_address_limit = previous_address_limit

    def merge(
        self,
        observations: Iterable[PeerObservation],
        now: datetime | None = None,
    ) -> MergePlan:
        """Compute the merge plan for one cycle's observations.

        Args:
            observations: Peers returned by the crawler for this cycle.
            now: Cycle timestamp; defaults to the current UTC time.

        Returns:
            The plan.  Applying it and merging the same observations again
            yields a plan with no address changes.
        """
        now = now or datetime.now(UTC)
        existing = {r.identity_key: r for r in self.store.get_all_nodes()}
        owners: dict[str, str] = self.store.address_owners()

        plan = MergePlan()
        working: dict[str, NodeIdentity] = {}
        observed: set[str] = set()

        for obs in observations:
            key = normalize_identity_key(obs.identity_key)
            if key is None:
                plan.invalid += 1
                logger.debug(
                    "Skipping peer %s: identity key %s",
                    obs.address,
                    is_valid_identity_key.reason(obs.identity_key),
                )
                continue

            record = working.get(key)
            if record is None and key in existing:
                record = _copy(existing[key])
                plan.updated += 1
            if record is None:
                record = NodeIdentity(
                    identity_key=key,
                    current_address=obs.address,
                    first_seen_at=now,
                )
                plan.created += 1
                logger.debug("New identity %s at %s", key, obs.address)
            elif record.current_address != obs.address:
                old = record.current_address
                record.previous_addresses = remember_address(
                    record.previous_addresses, old, self.previous_address_limit
                )
                record.current_address = obs.address
                plan.address_changes += 1
                if owners.get(old) == key:
                    del owners[old]
                    plan.address_owners[old] = None
                logger.info("%s moved %s -> %s", key, old, obs.address)

            holder = owners.get(obs.address)
            if holder is not None and holder != key:
                plan.conflicts.append(
                    AddressConflict(
                        address=obs.address, claimant=key, previous_holder=holder
                    )
                )
                logger.info(
                    "Address %s reassigned from %s to %s", obs.address, holder, key
                )
            if holder != key:
                owners[obs.address] = key
                plan.address_owners[obs.address] = key

            _apply_observation(record, obs, now)
            working[key] = record
            observed.add(key)

        for key, stored in existing.items():
            if key in observed:
                continue
            record = _copy(stored)
            if record.seen_in_last_crawl:
                plan.marked_offline += 1
                logger.debug("%s not observed, marking offline", key)
            record.seen_in_last_crawl = False
            record.missed_cycles += 1
            working[key] = record

        plan.records = list(working.values())
        plan.activity = status_changes(existing, plan.records, now)
        return plan


def status_changes(
    previous: dict[str, NodeIdentity],
    records: Iterable[NodeIdentity],
    now: datetime,
) -> list[ActivityEvent]:
    """Compare *records* against their *previous* versions.

    A record with no previous version yields ``new_node``; one whose
    derived status differs yields ``node_<status>``.
    """
    events: list[ActivityEvent] = []
    for record in records:
        old = previous.get(record.identity_key)
        if old is None:
            event_type, old_status = "new_node", None
        elif old.status != record.status:
            event_type, old_status = f"node_{record.status}", old.status
        else:
            continue
        events.append(
            ActivityEvent(
                identity_key=record.identity_key,
                event_type=event_type,
                address=record.current_address,
                status=record.status,
                previous_status=old_status,
                timestamp=now,
            )
        )
    return events


def _copy(record: NodeIdentity) -> NodeIdentity:
    return replace(record, previous_addresses=list(record.previous_addresses))


def _apply_observation(record: NodeIdentity, obs: PeerObservation, now: datetime) -> None:
    """Overlay the observation's data; fields it does not report are kept."""
    if obs.protocol_version is not None:
        record.protocol_version = obs.protocol_version
    if obs.capacity_metrics.reported():
        record.capacity_metrics = obs.capacity_metrics
    if obs.peer_count is not None:
        record.peer_count = obs.peer_count
    if obs.rpc_port is not None:
        record.rpc_port = obs.rpc_port
    if obs.is_public is not None:
        record.is_public = obs.is_public
    record.syncing = obs.syncing
    record.seen_in_last_crawl = True
    record.missed_cycles = 0
    record.last_seen_at = now
    record.last_updated_at = now


def needs_geolocation(record: NodeIdentity, now: float, ttl: float) -> bool:
    """Whether *record* should be (re)located this cycle.

    True when the record has a public IP and its location is missing,
    older than *ttl*, or was resolved for a different IP.
    """
    host = host_of(record.current_address)
    if host is None or not is_public_ip(host):
        return False
    loc = record.location_data
    if loc is None or loc.ip != host:
        return True
    return now - loc.fetched_at >= ttl


def needs_balance(record: NodeIdentity, now: float, ttl: float) -> bool:
    """Whether *record*'s balance is missing or older than *ttl*."""
    if record.balance_data is None:
        return True
    return now - record.balance_data.fetched_at >= ttl
