"""Tests for pnm.health — network health scoring."""

import pytest

from pnm.health import most_common_version, round_half_up, score_network
from pnm.models import HealthScore, SnapshotEntry


def _entry(
    i: int,
    status: str = "online",
    version: str | None = "0.8.0",
    country: str | None = "Germany",
    city: str | None = "Nuremberg",
) -> SnapshotEntry:
    return SnapshotEntry(
        identity_key=f"key{i}",
        status=status,  # type: ignore[arg-type]
        version=version,
        country=country,
        city=city,
    )


class TestRoundHalfUp:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(0.5, 1), (1.5, 2), (2.5, 3), (2.49, 2), (77.0, 77), (0.0, 0)],
    )
    def test_values(self, value: float, expected: int) -> None:
        assert round_half_up(value) == expected


class TestMostCommonVersion:
    def test_majority(self) -> None:
        assert most_common_version(["a", "b", "b"]) == "b"

    def test_tie_goes_to_first_encountered(self) -> None:
        assert most_common_version(["b", "a", "a", "b"]) == "b"
        assert most_common_version(["a", "b", "b", "a"]) == "a"

    def test_ignores_empty_and_unknown(self) -> None:
        assert most_common_version([None, "", "unknown", "Unknown", "0.8.0"]) == "0.8.0"

    def test_nothing_known(self) -> None:
        assert most_common_version([None, "unknown"]) is None


class TestScoreNetwork:
    def test_zero_nodes(self) -> None:
        assert score_network([]) == HealthScore(availability=0, version=0, distribution=0, overall=0)

    def test_uniform_population(self) -> None:
        score = score_network([_entry(i) for i in range(25)])

        assert score.availability == 100
        assert score.version == 100
        # One country of ten (10) and one city of twenty (5): 0.6*10 + 0.4*5.
        assert score.distribution == 8
        assert score.overall == 77
        assert (score.countries, score.cities) == (1, 1)

    def test_availability_counts_only_online(self) -> None:
        entries = [_entry(0), _entry(1, status="syncing"), _entry(2, status="offline"), _entry(3)]
        assert score_network(entries).availability == 50

    def test_version_share_of_all_nodes(self) -> None:
        entries = [_entry(0, version="0.8.0"), _entry(1, version="0.8.0"),
                   _entry(2, version="0.7.0"), _entry(3, version=None)]
        assert score_network(entries).version == 50

    def test_no_versions(self) -> None:
        entries = [_entry(0, version=None), _entry(1, version="unknown")]
        assert score_network(entries).version == 0

    def test_distribution_saturates(self) -> None:
        entries = [_entry(i, country=f"C{i % 12}", city=f"City{i}") for i in range(30)]
        score = score_network(entries)
        assert score.distribution == 100
        assert (score.countries, score.cities) == (12, 30)

    def test_no_locations(self) -> None:
        entries = [_entry(i, country=None, city=None) for i in range(3)]
        assert score_network(entries).distribution == 0

    def test_sub_scores_rounded_before_combining(self) -> None:
        # 2 of 3 online -> 66.67 -> 67; 1 of 3 on the latest version -> 33.
        entries = [
            _entry(0, version="a", country="A", city="x"),
            _entry(1, version="b", country="B", city="y"),
            _entry(2, status="offline", version="c", country="C", city="z"),
        ]
        score = score_network(entries)
        assert score.availability == 67
        assert score.version == 33
        # countries 30, cities 15 -> 0.6*30 + 0.4*15 = 24
        assert score.distribution == 24
        # 67*0.4 + 33*0.35 + 24*0.25 = 26.8 + 11.55 + 6 = 44.35
        assert score.overall == 44
