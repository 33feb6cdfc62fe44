"""Aggregator: status counts, version and country distribution."""

import logging
from dataclasses import dataclass, field

from pnm.models import NodeIdentity, SnapshotEntry

logger = logging.getLogger(__name__)


@dataclass
class AggregatedResult:
    """Aggregated statistics computed from the directory.

    Attributes:
        status_counts: Dict with keys ``online``, ``offline``, ``syncing``
            and ``total``.
        version_distribution: ``(version, count)`` pairs sorted by count
            descending.
        country_distribution: ``(country_name, count)`` pairs sorted by
            count descending.
        cities: Number of distinct known cities.
    """

    status_counts: dict[str, int] = field(default_factory=dict)
    version_distribution: list[tuple[str, int]] = field(default_factory=list)
    country_distribution: list[tuple[str, int]] = field(default_factory=list)
    cities: int = 0


def snapshot_entry(node: NodeIdentity) -> SnapshotEntry:
    """Reduce a directory record to its snapshot form."""
    loc = node.location_data
    return SnapshotEntry(
        identity_key=node.identity_key,
        status=node.status,
        version=node.protocol_version,
        country=loc.country if loc else None,
        city=loc.city if loc else None,
    )


def aggregate(entries: list[SnapshotEntry]) -> AggregatedResult:
    """Compute aggregate statistics from snapshot entries.

    Args:
        entries: Per-node status entries, e.g. from ``snapshot_entry``.

    Returns:
        An ``AggregatedResult`` with status counts, version distribution,
        country distribution and the distinct city count.
    """
    status_counts = {"online": 0, "offline": 0, "syncing": 0, "total": len(entries)}
    version_counts: dict[str, int] = {}
    country_counts: dict[str, int] = {}
    cities: set[str] = set()

    for entry in entries:
        status_counts[entry.status] += 1

        if entry.version:
            version_counts[entry.version] = version_counts.get(entry.version, 0) + 1

        if entry.country:
            country_counts[entry.country] = country_counts.get(entry.country, 0) + 1
        if entry.city:
            cities.add(entry.city)

    version_distribution = sorted(
        version_counts.items(), key=lambda item: item[1], reverse=True
    )
    country_distribution = sorted(
        country_counts.items(), key=lambda item: item[1], reverse=True
    )

    return AggregatedResult(
        status_counts=status_counts,
        version_distribution=version_distribution,
        country_distribution=country_distribution,
        cities=len(cities),
    )


def aggregate_nodes(nodes: list[NodeIdentity]) -> AggregatedResult:
    """Convenience wrapper around ``aggregate()`` for directory records."""
    return aggregate([snapshot_entry(n) for n in nodes])
