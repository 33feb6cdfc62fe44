"""Tests for pnm.resolver — identity reconciliation across crawl cycles."""

from datetime import UTC, datetime, timedelta

import pytest

from pnm.models import BalanceData, CapacityMetrics, LocationData, NodeIdentity, PeerObservation
from pnm.resolver import (
    IdentityResolver,
    MergePlan,
    needs_balance,
    needs_geolocation,
    remember_address,
)
from pnm.store import DirectoryStore, init_db

KEY_A = "6Bzz3KPvzQruqBg2vtsvkuitd6Qb4iCcr5DViifCwLsL"
KEY_B = "So11111111111111111111111111111111111111112"
KEY_C = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

X = "173.212.203.145:9001"
Y = "8.8.8.8:9001"
Z = "1.1.1.1:9001"

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def store() -> DirectoryStore:
    s = DirectoryStore(init_db(":memory:"))
    yield s
    s.close()


def _obs(address: str, key: str | None, **extra: object) -> PeerObservation:
    return PeerObservation(address=address, identity_key=key, **extra)


def _cycle(
    resolver: IdentityResolver,
    observations: list[PeerObservation],
    now: datetime = T0,
) -> MergePlan:
    """Merge and apply one cycle, the way the pipeline does."""
    plan = resolver.merge(observations, now=now)
    result = resolver.store.upsert_many(plan.records, plan.address_owners)
    assert result.failed == 0
    return plan


def _node(store: DirectoryStore, key: str) -> NodeIdentity:
    node = store.find_by_identity_key(key)
    assert node is not None
    return node


class TestRememberAddress:
    def test_appends(self) -> None:
        assert remember_address(["a"], "b", 10) == ["a", "b"]

    def test_deduplicates(self) -> None:
        assert remember_address(["a", "b"], "a", 10) == ["a", "b"]

    def test_trims_oldest(self) -> None:
        assert remember_address(["a", "b", "c"], "d", 3) == ["b", "c", "d"]

    def test_zero_limit(self) -> None:
        assert remember_address(["a"], "b", 0) == []


class TestNewIdentities:
    def test_created_with_first_seen(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)

        plan = _cycle(resolver, [_obs(X, KEY_A, protocol_version="0.8.0")])

        assert plan.created == 1
        node = _node(store, KEY_A)
        assert node.current_address == X
        assert node.previous_addresses == []
        assert node.first_seen_at == T0
        assert node.protocol_version == "0.8.0"
        assert node.status == "online"

    def test_first_seen_preserved(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A)])
        _cycle(resolver, [_obs(X, KEY_A)], now=T0 + timedelta(minutes=1))

        node = _node(store, KEY_A)
        assert node.first_seen_at == T0
        assert node.last_seen_at == T0 + timedelta(minutes=1)

    @pytest.mark.parametrize("key", [None, "", "pubkey1", "1" * 32, "173.212.203.145"])
    def test_invalid_keys_not_persisted(self, store: DirectoryStore, key: str | None) -> None:
        plan = _cycle(IdentityResolver(store), [_obs(X, key)])

        assert plan.invalid == 1
        assert plan.created == 0
        assert store.get_all_nodes() == []

    def test_key_whitespace_normalized(self, store: DirectoryStore) -> None:
        _cycle(IdentityResolver(store), [_obs(X, f" {KEY_A} ")])
        assert _node(store, KEY_A).identity_key == KEY_A


class TestAddressChurn:
    def test_move_records_previous_address_once(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A)])

        plan = _cycle(resolver, [_obs(Y, KEY_A)])

        assert plan.address_changes == 1
        assert plan.created == 0
        node = _node(store, KEY_A)
        assert node.current_address == Y
        assert node.previous_addresses == [X]
        assert len(store.get_all_nodes()) == 1

    def test_identical_cycles_are_idempotent(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A)])
        _cycle(resolver, [_obs(Y, KEY_A)])
        before = _node(store, KEY_A)

        plan = _cycle(resolver, [_obs(Y, KEY_A)])

        after = _node(store, KEY_A)
        assert plan.address_changes == 0
        assert plan.conflicts == []
        assert after.previous_addresses == before.previous_addresses == [X]
        assert after.current_address == Y

    def test_moving_back_keeps_history_deduplicated(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        for address in (X, Y, X, Y):
            _cycle(resolver, [_obs(address, KEY_A)])

        assert _node(store, KEY_A).previous_addresses == [X, Y]

    def test_history_bounded(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store, previous_address_limit=2)
        for address in ("8.8.8.8:1", "8.8.8.8:2", "8.8.8.8:3", "8.8.8.8:4"):
            _cycle(resolver, [_obs(address, KEY_A)])

        assert _node(store, KEY_A).previous_addresses == ["8.8.8.8:2", "8.8.8.8:3"]

    def test_moved_address_released(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A)])
        _cycle(resolver, [_obs(Y, KEY_A)])

        assert store.find_by_address(X) is None
        assert store.find_by_address(Y).identity_key == KEY_A


class TestAddressReuse:
    @pytest.mark.parametrize("order", [(KEY_A, KEY_B), (KEY_B, KEY_A)])
    def test_two_keys_one_address_one_cycle(
        self, store: DirectoryStore, order: tuple[str, str]
    ) -> None:
        plan = _cycle(IdentityResolver(store), [_obs(X, order[0]), _obs(X, order[1])])

        nodes = store.get_all_nodes()
        assert {n.identity_key for n in nodes} == {KEY_A, KEY_B}
        assert all(n.current_address == X for n in nodes)
        assert len(plan.conflicts) == 1
        assert plan.conflicts[0].claimant == order[1]
        assert plan.conflicts[0].previous_holder == order[0]
        assert store.find_by_address(X).identity_key == order[1]

    def test_new_claimant_does_not_evict_old_holder(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A)])

        plan = _cycle(resolver, [_obs(X, KEY_B), _obs(Y, KEY_A)])

        assert [(c.address, c.claimant, c.previous_holder) for c in plan.conflicts] == [
            (X, KEY_B, KEY_A)
        ]
        assert _node(store, KEY_B).current_address == X
        assert _node(store, KEY_A).current_address == Y
        assert _node(store, KEY_A).previous_addresses == [X]

    def test_stale_holder_keeps_address_until_observed(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A)])

        _cycle(resolver, [_obs(X, KEY_B)])

        old = _node(store, KEY_A)
        assert old.current_address == X
        assert old.status == "offline"
        assert store.find_by_address(X).identity_key == KEY_B

    def test_reuse_is_not_repeated_once_claimed(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A)])
        _cycle(resolver, [_obs(X, KEY_B)])

        plan = _cycle(resolver, [_obs(X, KEY_B)])

        assert plan.conflicts == []

    def test_released_address_found_through_remaining_record(
        self, store: DirectoryStore
    ) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A)])
        _cycle(resolver, [_obs(X, KEY_B)], T0 + timedelta(minutes=1))

        _cycle(resolver, [_obs(Y, KEY_B)], T0 + timedelta(minutes=2))

        assert X not in store.address_owners()
        assert store.find_by_address(X).identity_key == KEY_A
        assert store.find_by_address(Y).identity_key == KEY_B


class TestSeenInLastCrawl:
    def test_unobserved_goes_offline_then_back_online(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A), _obs(Y, KEY_B)])

        for i in range(3):
            plan = _cycle(resolver, [_obs(Y, KEY_B)])
            assert plan.marked_offline == (1 if i == 0 else 0)

        node = _node(store, KEY_A)
        assert node.seen_in_last_crawl is False
        assert node.status == "offline"
        assert node.missed_cycles == 3

        _cycle(resolver, [_obs(X, KEY_A), _obs(Y, KEY_B)])

        node = _node(store, KEY_A)
        assert node.status == "online"
        assert node.missed_cycles == 0

    def test_syncing_signal(self, store: DirectoryStore) -> None:
        _cycle(IdentityResolver(store), [_obs(X, KEY_A, syncing=True)])
        assert _node(store, KEY_A).status == "syncing"

    def test_every_identity_in_plan(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A), _obs(Y, KEY_B)])

        plan = resolver.merge([_obs(Z, KEY_C)], now=T0)

        assert {r.identity_key for r in plan.records} == {KEY_A, KEY_B, KEY_C}
        assert [r.identity_key for r in plan.observed()] == [KEY_C]

    def test_merge_does_not_write(self, store: DirectoryStore) -> None:
        IdentityResolver(store).merge([_obs(X, KEY_A)], now=T0)
        assert store.get_all_nodes() == []


class TestActivity:
    @staticmethod
    def _events(plan: MergePlan) -> list[tuple[str, str, str | None, str]]:
        return [(e.identity_key, e.event_type, e.previous_status, e.status) for e in plan.activity]

    def test_new_node(self, store: DirectoryStore) -> None:
        plan = _cycle(IdentityResolver(store), [_obs(X, KEY_A)])

        assert self._events(plan) == [(KEY_A, "new_node", None, "online")]
        assert plan.activity[0].address == X
        assert plan.activity[0].timestamp == T0

    def test_new_node_syncing(self, store: DirectoryStore) -> None:
        plan = _cycle(IdentityResolver(store), [_obs(X, KEY_A, syncing=True)])
        assert self._events(plan) == [(KEY_A, "new_node", None, "syncing")]

    def test_each_transition(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A)])

        syncing = _cycle(resolver, [_obs(X, KEY_A, syncing=True)], T0 + timedelta(minutes=1))
        offline = _cycle(resolver, [], T0 + timedelta(minutes=2))
        online = _cycle(resolver, [_obs(Y, KEY_A)], T0 + timedelta(minutes=3))

        assert self._events(syncing) == [(KEY_A, "node_syncing", "online", "syncing")]
        assert self._events(offline) == [(KEY_A, "node_offline", "syncing", "offline")]
        assert self._events(online) == [(KEY_A, "node_online", "offline", "online")]
        assert online.activity[0].address == Y
        assert online.activity[0].timestamp == T0 + timedelta(minutes=3)

    def test_unchanged_status_is_quiet(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A), _obs(Y, KEY_B)])
        _cycle(resolver, [_obs(Y, KEY_B)])

        assert _cycle(resolver, [_obs(Z, KEY_B)]).activity == []
        assert _cycle(resolver, [_obs(Z, KEY_B)]).activity == []

    def test_invalid_keys_produce_no_events(self, store: DirectoryStore) -> None:
        plan = _cycle(IdentityResolver(store), [_obs(X, "pubkey1"), _obs(Y, None)])
        assert plan.activity == []


class TestObservationOverlay:
    def test_absent_fields_keep_previous_values(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A, protocol_version="0.8.0", peer_count=12,
                               capacity_metrics=CapacityMetrics(storage_committed=100))])

        _cycle(resolver, [_obs(X, KEY_A)])

        node = _node(store, KEY_A)
        assert node.protocol_version == "0.8.0"
        assert node.peer_count == 12
        assert node.capacity_metrics.storage_committed == 100

    def test_reported_fields_overwrite(self, store: DirectoryStore) -> None:
        resolver = IdentityResolver(store)
        _cycle(resolver, [_obs(X, KEY_A, protocol_version="0.7.0")])
        _cycle(resolver, [_obs(X, KEY_A, protocol_version="0.8.0")])
        assert _node(store, KEY_A).protocol_version == "0.8.0"

    def test_same_key_twice_in_one_cycle(self, store: DirectoryStore) -> None:
        plan = _cycle(IdentityResolver(store), [_obs(X, KEY_A), _obs(Y, KEY_A)])

        assert plan.created == 1
        assert len(plan.records) == 1
        node = _node(store, KEY_A)
        assert node.current_address == Y
        assert node.previous_addresses == [X]


class TestEnrichmentSelection:
    NOW = 1_700_000_000.0

    def _node(self, **kw: object) -> NodeIdentity:
        return NodeIdentity(identity_key=KEY_A, current_address=Y, **kw)

    def test_missing_location(self) -> None:
        assert needs_geolocation(self._node(), self.NOW, 86400)

    def test_fresh_location(self) -> None:
        loc = LocationData(ip="8.8.8.8", fetched_at=self.NOW - 10)
        assert not needs_geolocation(self._node(location_data=loc), self.NOW, 86400)

    def test_stale_location(self) -> None:
        loc = LocationData(ip="8.8.8.8", fetched_at=self.NOW - 86400)
        assert needs_geolocation(self._node(location_data=loc), self.NOW, 86400)

    def test_location_for_old_ip(self) -> None:
        loc = LocationData(ip="173.212.203.145", fetched_at=self.NOW)
        assert needs_geolocation(self._node(location_data=loc), self.NOW, 86400)

    def test_private_address_never_located(self) -> None:
        node = NodeIdentity(identity_key=KEY_A, current_address="10.0.0.5:9001")
        assert not needs_geolocation(node, self.NOW, 86400)

    def test_balance(self) -> None:
        assert needs_balance(self._node(), self.NOW, 300)
        fresh = BalanceData(balance=1.0, fetched_at=self.NOW - 299)
        assert not needs_balance(self._node(balance_data=fresh), self.NOW, 300)
        stale = BalanceData(balance=1.0, fetched_at=self.NOW - 300)
        assert needs_balance(self._node(balance_data=stale), self.NOW, 300)
