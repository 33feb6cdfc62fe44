"""Data models: node identities, gossip observations, snapshots, cycle reports."""

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Literal

NodeStatus = Literal["online", "offline", "syncing"]


@dataclass
class CapacityMetrics:
    """Operational metrics reported by a node through gossip.

    Every field is independently nullable: ``None`` means the node did not
    report it, which is not the same as zero.
    """

    storage_committed: int | None = None
    storage_used: int | None = None
    storage_usage_percent: float | None = None
    ram_used: int | None = None
    ram_total: int | None = None
    cpu_percent: float | None = None
    uptime: int | None = None
    packets_received: int | None = None
    packets_sent: int | None = None
    active_streams: int | None = None
    total_pages: int | None = None
    data_operations_handled: int | None = None

    def reported(self) -> int:
        """Return how many metrics carry a value."""
        return sum(1 for f in fields(self) if getattr(self, f.name) is not None)


@dataclass
class LocationData:
    """Geolocation payload for one IP address.

    Attributes:
        ip: The address that was located.  A record whose current IP differs
            from this one needs to be located again.
        latitude: Latitude in degrees.
        longitude: Longitude in degrees.
        city: City name, if known.
        country: Country name, if known.
        country_code: ISO 3166-1 alpha-2 country code, if known.
        fetched_at: UTC timestamp (seconds since epoch) of the lookup.
    """

    ip: str
    latitude: float | None = None
    longitude: float | None = None
    city: str | None = None
    country: str | None = None
    country_code: str | None = None
    fetched_at: float = 0.0


@dataclass
class BalanceData:
    """On-chain balance payload for one identity key."""

    balance: float
    fetched_at: float = 0.0


@dataclass
class PeerObservation:
    """One normalized peer entry returned by a gossip endpoint.

    Attributes:
        address: ``host:port`` of the peer.
        identity_key: Public key reported for the peer, unvalidated.
        protocol_version: Software version string, if reported.
        capacity_metrics: Metrics from ``get-pods-with-stats``.
        peer_count: Number of peers the node knows about, if reported.
        last_seen_timestamp: Gossip ``last_seen_timestamp`` normalized to
            seconds since epoch.
        syncing: Whether the observation signals a sync in progress.
        rpc_port: pRPC port advertised by the node.
        is_public: Whether the node's pRPC is publicly reachable.
        source: Endpoint and method that produced the observation.
    """

    address: str
    identity_key: str | None = None
    protocol_version: str | None = None
    capacity_metrics: CapacityMetrics = field(default_factory=CapacityMetrics)
    peer_count: int | None = None
    last_seen_timestamp: float | None = None
    syncing: bool = False
    rpc_port: int | None = None
    is_public: bool | None = None
    source: str = ""

    def richness(self) -> int:
        """Score used to pick between duplicate observations of one peer."""
        optional = (
            self.identity_key,
            self.protocol_version,
            self.peer_count,
            self.last_seen_timestamp,
            self.rpc_port,
            self.is_public,
        )
        return sum(1 for v in optional if v is not None) + self.capacity_metrics.reported()


@dataclass
class NodeIdentity:
    """A long-lived node in the directory, keyed by its public key.

    Attributes:
        identity_key: Base58 public key.  Immutable once assigned.
        current_address: ``host:port`` last reported by gossip.
        previous_addresses: Earlier addresses, oldest first, deduplicated and
            trimmed from the oldest end.
        protocol_version: Last reported software version.
        capacity_metrics: Last reported metrics.
        peer_count: Last reported peer count.
        rpc_port: Last advertised pRPC port.
        is_public: Whether pRPC was advertised as public.
        location_data: Geolocation enrichment, possibly stale or missing.
        balance_data: Balance enrichment, possibly stale or missing.
        latency_ms: Last measured round trip in milliseconds.
        seen_in_last_crawl: Whether the last applied cycle observed the node.
        syncing: Whether the last observation carried a sync signal.
        missed_cycles: Consecutive cycles without an observation.
        first_seen_at: When the identity was created (UTC).
        last_seen_at: When the identity was last observed (UTC).
        last_updated_at: When the record was last written (UTC).
    """

    identity_key: str
    current_address: str
    previous_addresses: list[str] = field(default_factory=list)
    protocol_version: str | None = None
    capacity_metrics: CapacityMetrics = field(default_factory=CapacityMetrics)
    peer_count: int | None = None
    rpc_port: int | None = None
    is_public: bool | None = None
    location_data: LocationData | None = None
    balance_data: BalanceData | None = None
    latency_ms: float | None = None
    seen_in_last_crawl: bool = True
    syncing: bool = False
    missed_cycles: int = 0
    first_seen_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_seen_at: datetime | None = None
    last_updated_at: datetime | None = None

    @property
    def status(self) -> NodeStatus:
        """Derive the node status from the last crawl."""
        if not self.seen_in_last_crawl:
            return "offline"
        if self.syncing:
            return "syncing"
        return "online"


@dataclass
class SnapshotEntry:
    """Per-node record frozen into a historical snapshot."""

    identity_key: str
    status: NodeStatus
    version: str | None = None
    country: str | None = None
    city: str | None = None


@dataclass
class HealthScore:
    """Network health sub-scores and their weighted combination (0-100)."""

    availability: int = 0
    version: int = 0
    distribution: int = 0
    overall: int = 0
    countries: int = 0
    cities: int = 0


@dataclass
class HistoricalSnapshot:
    """Immutable capture of the directory at one interval.

    ``health`` is ``None`` only for snapshots written before scoring
    existed; backfill fills it in.
    """

    timestamp: datetime
    interval_label: str
    entries: list[SnapshotEntry]
    total_nodes: int = 0
    online_nodes: int = 0
    offline_nodes: int = 0
    syncing_nodes: int = 0
    version_distribution: dict[str, int] = field(default_factory=dict)
    health: HealthScore | None = None
    id: int | None = None


@dataclass
class NodeHistoryPoint:
    """One node's entry in one snapshot, for per-node history queries."""

    timestamp: datetime
    interval_label: str
    status: NodeStatus
    version: str | None = None
    country: str | None = None
    city: str | None = None


ActivityType = Literal["new_node", "node_online", "node_offline", "node_syncing"]


@dataclass
class ActivityEvent:
    """A node appearing for the first time or changing status.

    Attributes:
        identity_key: The node concerned.
        event_type: ``new_node`` for a first sighting, otherwise
            ``node_<status>`` for the status the node moved to.
        address: The node's address when the event was recorded.
        status: Status after the event.
        previous_status: Status before the event; ``None`` for a new node.
        timestamp: Cycle timestamp (UTC).
        id: Row id assigned at persist time.
    """

    identity_key: str
    event_type: ActivityType
    address: str
    status: NodeStatus
    previous_status: NodeStatus | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: int | None = None


@dataclass
class CycleReport:
    """Audit record for a single crawl cycle.

    Attributes:
        outcome: ``"ok"`` when every record was written, ``"partial"`` when
            some upserts failed, ``"no_data"`` when no endpoint answered and
            the cycle was not applied.
        id: UUID assigned at persist time; None until persisted.
        timestamp: When the cycle started (UTC).
    """

    outcome: Literal["ok", "partial", "no_data"] = "ok"
    endpoints_queried: int = 0
    endpoints_ok: int = 0
    endpoints_failed: int = 0
    peers_fetched: int = 0
    peers_discarded: int = 0
    invalid_keys: int = 0
    identities_created: int = 0
    identities_updated: int = 0
    address_changes: int = 0
    address_conflicts: int = 0
    marked_offline: int = 0
    geo_enriched: int = 0
    balance_enriched: int = 0
    latency_measured: int = 0
    activity_events: int = 0
    upserted: int = 0
    upsert_failed: int = 0
    duration_seconds: float = 0.0
    snapshot_label: str | None = None
    id: str | None = None
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(UTC),
    )
