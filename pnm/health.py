"""Network health scoring over a list of node status entries."""

import math
from collections.abc import Iterable, Sequence

from pnm.models import HealthScore, SnapshotEntry

AVAILABILITY_WEIGHT = 0.40
VERSION_WEIGHT = 0.35
DISTRIBUTION_WEIGHT = 0.25

COUNTRY_WEIGHT = 0.6
CITY_WEIGHT = 0.4
COUNTRIES_FOR_FULL_SCORE = 10
CITIES_FOR_FULL_SCORE = 20

_UNKNOWN_VERSIONS = {"unknown"}


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def _known_version(version: str | None) -> str | None:
    if not version or not version.strip():
        return None
    if version.strip().lower() in _UNKNOWN_VERSIONS:
        return None
    return version


def most_common_version(versions: Iterable[str | None]) -> str | None:
    """Return the most frequent known version.

    Ties go to the version encountered first.  Empty and ``unknown``
    versions are ignored.
    """
    counts: dict[str, int] = {}
    for version in versions:
        known = _known_version(version)
        if known is not None:
            counts[known] = counts.get(known, 0) + 1
    if not counts:
        return None
    # max() keeps the first maximal item, and dicts preserve insertion order.
    return max(counts, key=counts.__getitem__)


def score_network(entries: Sequence[SnapshotEntry]) -> HealthScore:
    """Compute health sub-scores and the weighted overall score.

    Availability is the share of ``online`` nodes.  Version currency is the
    share of all nodes running the most common known version.  Distribution
    blends country and city diversity, saturating at 10 countries and 20
    cities.  Each sub-score is rounded before the weighted sum, and the
    sum is rounded again.

    Returns:
        A ``HealthScore``; all zeros for an empty list.
    """
    total = len(entries)
    if total == 0:
        return HealthScore()

    online = sum(1 for e in entries if e.status == "online")
    availability = round_half_up(online / total * 100)

    latest = most_common_version(e.version for e in entries)
    on_latest = sum(1 for e in entries if latest is not None and e.version == latest)
    version = round_half_up(on_latest / total * 100)

    countries = {e.country for e in entries if e.country}
    cities = {e.city for e in entries if e.city}
    country_diversity = min(100.0, len(countries) / COUNTRIES_FOR_FULL_SCORE * 100)
    city_diversity = min(100.0, len(cities) / CITIES_FOR_FULL_SCORE * 100)
    distribution = round_half_up(
        country_diversity * COUNTRY_WEIGHT + city_diversity * CITY_WEIGHT
    )

    overall = round_half_up(
        availability * AVAILABILITY_WEIGHT
        + version * VERSION_WEIGHT
        + distribution * DISTRIBUTION_WEIGHT
    )
    return HealthScore(
        availability=availability,
        version=version,
        distribution=distribution,
        overall=overall,
        countries=len(countries),
        cities=len(cities),
    )
