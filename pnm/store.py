"""SQLite directory store: node identities, address index, cycle audit, history."""

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from pathlib import Path

from pnm.keys import is_valid_identity_key
from pnm.models import (
    ActivityEvent,
    BalanceData,
    CapacityMetrics,
    CycleReport,
    HealthScore,
    HistoricalSnapshot,
    LocationData,
    NodeHistoryPoint,
    NodeIdentity,
    NodeStatus,
    SnapshotEntry,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 4

_SCHEMA_V1 = """\
CREATE TABLE IF NOT EXISTS crawl_runs (
    id                TEXT PRIMARY KEY,
    timestamp         TEXT NOT NULL,
    outcome           TEXT NOT NULL,
    duration_seconds  REAL NOT NULL,
    meta              TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS nodes (
    identity_key        TEXT PRIMARY KEY,
    current_address     TEXT NOT NULL,
    previous_addresses  TEXT NOT NULL DEFAULT '[]',
    protocol_version    TEXT,
    capacity_metrics    TEXT NOT NULL DEFAULT '{}',
    peer_count          INTEGER,
    rpc_port            INTEGER,
    is_public           INTEGER,
    location_data       TEXT,
    balance_data        TEXT,
    latency_ms          REAL,
    seen_in_last_crawl  INTEGER NOT NULL DEFAULT 1,
    syncing             INTEGER NOT NULL DEFAULT 0,
    missed_cycles       INTEGER NOT NULL DEFAULT 0,
    first_seen_at       TEXT NOT NULL,
    last_seen_at        TEXT,
    last_updated_at     TEXT
);

CREATE INDEX IF NOT EXISTS nodes_current_address ON nodes (current_address);

CREATE TABLE IF NOT EXISTS address_index (
    address       TEXT PRIMARY KEY,
    identity_key  TEXT NOT NULL
);
"""

_SCHEMA_V2 = """\
CREATE TABLE IF NOT EXISTS snapshots (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    interval_label        TEXT NOT NULL UNIQUE,
    timestamp             TEXT NOT NULL,
    total_nodes           INTEGER NOT NULL,
    online_nodes          INTEGER NOT NULL,
    offline_nodes         INTEGER NOT NULL,
    syncing_nodes         INTEGER NOT NULL,
    version_distribution  TEXT NOT NULL DEFAULT '{}',
    entries               TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS snapshots_timestamp ON snapshots (timestamp);
"""

# Health scores arrived after snapshots; rows from v2 have NULL scores.
_SCHEMA_V3 = """\
ALTER TABLE snapshots ADD COLUMN availability_score INTEGER;
ALTER TABLE snapshots ADD COLUMN version_score INTEGER;
ALTER TABLE snapshots ADD COLUMN distribution_score INTEGER;
ALTER TABLE snapshots ADD COLUMN overall_score INTEGER;
ALTER TABLE snapshots ADD COLUMN countries INTEGER;
ALTER TABLE snapshots ADD COLUMN cities INTEGER;
"""

_SCHEMA_V4 = """\
CREATE TABLE IF NOT EXISTS activity_log (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp        TEXT NOT NULL,
    identity_key     TEXT NOT NULL,
    event_type       TEXT NOT NULL,
    address          TEXT NOT NULL,
    status           TEXT NOT NULL,
    previous_status  TEXT
);

CREATE INDEX IF NOT EXISTS activity_log_timestamp ON activity_log (timestamp);
CREATE INDEX IF NOT EXISTS activity_log_identity ON activity_log (identity_key, timestamp);
"""

_NODE_COLUMNS = (
    "identity_key",
    "current_address",
    "previous_addresses",
    "protocol_version",
    "capacity_metrics",
    "peer_count",
    "rpc_port",
    "is_public",
    "location_data",
    "balance_data",
    "latency_ms",
    "seen_in_last_crawl",
    "syncing",
    "missed_cycles",
    "first_seen_at",
    "last_seen_at",
    "last_updated_at",
)

_UPSERT_NODE = (
    f"INSERT INTO nodes ({', '.join(_NODE_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _NODE_COLUMNS)}) "
    "ON CONFLICT (identity_key) DO UPDATE SET "
    + ", ".join(
        f"{c} = excluded.{c}"
        for c in _NODE_COLUMNS
        if c not in ("identity_key", "first_seen_at")
    )
)

_SNAPSHOT_COLUMNS = (
    "id, interval_label, timestamp, total_nodes, online_nodes, offline_nodes, "
    "syncing_nodes, version_distribution, entries, availability_score, "
    "version_score, distribution_score, overall_score, countries, cities"
)


@dataclass
class UpsertResult:
    """Outcome of a bulk upsert.

    Attributes:
        attempted: Records handed to ``upsert_many``.
        upserted: Records written.
        failed: Records that could not be written.
        failed_keys: Identity keys of the failed records.
    """

    attempted: int = 0
    upserted: int = 0
    failed: int = 0
    failed_keys: list[str] = field(default_factory=list)


def init_db(db_path: str) -> sqlite3.Connection:
    """Open (or create) the SQLite database and apply pending migrations.

    Args:
        db_path: Filesystem path for the database, or ``":memory:"`` for
            an in-memory database (useful in tests).  Missing parent
            directories are created.

    Returns:
        An open ``sqlite3.Connection`` usable from worker threads; callers
        serialize access through ``DirectoryStore.lock``.
    """
    if db_path != ":memory:":
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        db_path = str(Path(db_path).expanduser())
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.row_factory = sqlite3.Row
    _migrate(conn)
    return conn


class DirectoryStore:
    """Directory persistence: lookups by key and address, bulk upsert, history.

    All access goes through one connection guarded by ``lock``.  The lock
    is reentrant so a caller can hold it across several reads to get a
    consistent view.

    Args:
        conn: Connection from :func:`init_db`.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.lock = threading.RLock()

    @classmethod
    def open(cls, db_path: str) -> "DirectoryStore":
        return cls(init_db(db_path))

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    # -- Live directory ------------------------------------------------

    def find_by_identity_key(self, identity_key: str) -> NodeIdentity | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM nodes WHERE identity_key = ?", (identity_key,)
            ).fetchone()
        return _row_to_node(row) if row else None

    def find_by_address(self, address: str) -> NodeIdentity | None:
        """Return the identity that last claimed *address*, if any.

        The address index decides.  An address with no index entry (released
        after a move, or never claimed) falls back to the most recently seen
        record still reporting it as its current address.
        """
        with self.lock:
            row = self.conn.execute(
                "SELECT n.* FROM address_index a "
                "JOIN nodes n ON n.identity_key = a.identity_key "
                "WHERE a.address = ?",
                (address,),
            ).fetchone()
            if row is None:
                row = self.conn.execute(
                    "SELECT * FROM nodes WHERE current_address = ? "
                    "ORDER BY last_seen_at DESC LIMIT 1",
                    (address,),
                ).fetchone()
        return _row_to_node(row) if row else None

    def address_owners(self) -> dict[str, str]:
        """Return the whole address index as ``{address: identity_key}``."""
        with self.lock:
            rows = self.conn.execute(
                "SELECT address, identity_key FROM address_index"
            ).fetchall()
        return {r["address"]: r["identity_key"] for r in rows}

    def find_location(self, ip: str) -> LocationData | None:
        """Return the freshest stored location resolved for *ip*."""
        with self.lock:
            row = self.conn.execute(
                "SELECT location_data FROM nodes "
                "WHERE json_extract(location_data, '$.ip') = ? "
                "ORDER BY json_extract(location_data, '$.fetched_at') DESC LIMIT 1",
                (ip,),
            ).fetchone()
        if row is None:
            return None
        return LocationData(**json.loads(row["location_data"]))

    def query_all(
        self,
        status: NodeStatus | None = None,
        seen: bool | None = None,
    ) -> list[NodeIdentity]:
        """Return directory records, optionally filtered.

        Args:
            status: Keep only records whose derived status matches.
            seen: Keep only records with this ``seen_in_last_crawl`` value.
        """
        clauses: list[str] = []
        params: list[object] = []
        if status == "offline":
            clauses.append("seen_in_last_crawl = 0")
        elif status == "syncing":
            clauses.append("seen_in_last_crawl = 1 AND syncing = 1")
        elif status == "online":
            clauses.append("seen_in_last_crawl = 1 AND syncing = 0")
        elif status is not None:
            raise ValueError(f"Unknown status filter: {status!r}")
        if seen is not None:
            clauses.append("seen_in_last_crawl = ?")
            params.append(int(seen))

        sql = "SELECT * FROM nodes"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY identity_key"
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_node(r) for r in rows]

    def get_all_nodes(self) -> list[NodeIdentity]:
        return self.query_all()

    def upsert_many(
        self,
        records: list[NodeIdentity],
        address_owners: Mapping[str, str | None] | None = None,
    ) -> UpsertResult:
        """Upsert node records and address index changes.

        The batch is written in one transaction.  If that fails, each record
        is retried on its own so one bad row costs only itself; the result
        counts what was and was not written.  ``first_seen_at`` is never
        overwritten on conflict.

        Args:
            records: Records to write.
            address_owners: ``{address: identity_key}`` claims to record;
                a ``None`` owner releases the address.
        """
        owners = dict(address_owners or {})
        result = UpsertResult(attempted=len(records))

        with self.lock:
            try:
                self.conn.executemany(_UPSERT_NODE, [_node_to_row(r) for r in records])
                self._write_owners(owners)
                self.conn.commit()
                result.upserted = len(records)
                return result
            except sqlite3.Error as exc:
                self.conn.rollback()
                logger.warning("Batch upsert failed (%s); retrying record by record", exc)

            for record in records:
                try:
                    self.conn.execute(_UPSERT_NODE, _node_to_row(record))
                    self.conn.commit()
                    result.upserted += 1
                except sqlite3.Error as exc:
                    self.conn.rollback()
                    result.failed += 1
                    result.failed_keys.append(record.identity_key)
                    logger.warning("Upsert of %s failed: %s", record.identity_key, exc)

            try:
                self._write_owners(owners)
                self.conn.commit()
            except sqlite3.Error as exc:
                self.conn.rollback()
                logger.warning("Address index update failed: %s", exc)

        return result

    def _write_owners(self, owners: Mapping[str, str | None]) -> None:
        released = [(a,) for a, k in owners.items() if k is None]
        claimed = [(a, k) for a, k in owners.items() if k is not None]
        if released:
            self.conn.executemany("DELETE FROM address_index WHERE address = ?", released)
        if claimed:
            self.conn.executemany(
                "INSERT INTO address_index (address, identity_key) VALUES (?, ?) "
                "ON CONFLICT (address) DO UPDATE SET identity_key = excluded.identity_key",
                claimed,
            )

    def purge_invalid_identities(self) -> int:
        """Delete records whose identity key fails validation.

        Such records predate key validation or were written by hand.  Their
        address index entries go with them.

        Returns:
            Number of records removed.
        """
        with self.lock:
            rows = self.conn.execute("SELECT identity_key FROM nodes").fetchall()
            invalid = [
                (r["identity_key"],)
                for r in rows
                if not is_valid_identity_key(r["identity_key"])
            ]
            if not invalid:
                return 0
            self.conn.executemany("DELETE FROM address_index WHERE identity_key = ?", invalid)
            self.conn.executemany("DELETE FROM nodes WHERE identity_key = ?", invalid)
            self.conn.commit()
        for (key,) in invalid:
            logger.info("Removed %r: identity key %s", key, is_valid_identity_key.reason(key))
        return len(invalid)

    # -- Activity ------------------------------------------------------

    def save_activity(self, events: list[ActivityEvent]) -> int:
        """Append *events* to the activity log; each gets its row id."""
        with self.lock:
            try:
                for event in events:
                    cur = self.conn.execute(
                        "INSERT INTO activity_log (timestamp, identity_key, event_type, "
                        "address, status, previous_status) VALUES (?, ?, ?, ?, ?, ?)",
                        (
                            _iso(event.timestamp),
                            event.identity_key,
                            event.event_type,
                            event.address,
                            event.status,
                            event.previous_status,
                        ),
                    )
                    event.id = cur.lastrowid
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        return len(events)

    def get_activity(
        self,
        identity_key: str | None = None,
        event_type: str | None = None,
        limit: int = 50,
    ) -> list[ActivityEvent]:
        """Return logged events, newest first, optionally filtered."""
        clauses: list[str] = []
        params: list[object] = []
        if identity_key is not None:
            clauses.append("identity_key = ?")
            params.append(identity_key)
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type)
        sql = "SELECT * FROM activity_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [
            ActivityEvent(
                id=r["id"],
                timestamp=datetime.fromisoformat(r["timestamp"]),
                identity_key=r["identity_key"],
                event_type=r["event_type"],
                address=r["address"],
                status=r["status"],
                previous_status=r["previous_status"],
            )
            for r in rows
        ]

    # -- Cycle audit ---------------------------------------------------

    def save_cycle_report(self, report: CycleReport) -> str:
        """Persist a cycle report and assign it a UUID.

        The generated UUID is written back to ``report.id``.
        """
        run_id = uuid.uuid4().hex
        report.id = run_id
        meta = {
            f.name: getattr(report, f.name)
            for f in fields(report)
            if f.name not in ("id", "timestamp", "outcome", "duration_seconds")
        }
        with self.lock:
            self.conn.execute(
                "INSERT INTO crawl_runs (id, timestamp, outcome, duration_seconds, meta) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    run_id,
                    _iso(report.timestamp),
                    report.outcome,
                    report.duration_seconds,
                    json.dumps(meta),
                ),
            )
            self.conn.commit()
        return run_id

    def recent_cycle_reports(self, limit: int = 10) -> list[CycleReport]:
        """Return the latest cycle reports, newest first."""
        with self.lock:
            rows = self.conn.execute(
                "SELECT * FROM crawl_runs ORDER BY timestamp DESC LIMIT ?", (limit,)
            ).fetchall()
        known = {f.name for f in fields(CycleReport)}
        reports = []
        for row in rows:
            meta = {k: v for k, v in json.loads(row["meta"]).items() if k in known}
            reports.append(
                CycleReport(
                    id=row["id"],
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                    outcome=row["outcome"],
                    duration_seconds=row["duration_seconds"],
                    **meta,
                )
            )
        return reports

    # -- History -------------------------------------------------------

    def insert_snapshot(self, snapshot: HistoricalSnapshot) -> bool:
        """Write *snapshot* unless one already exists for its interval.

        Returns:
            ``True`` if written (``snapshot.id`` is then set), ``False`` if
            the interval was already captured.
        """
        health = snapshot.health
        with self.lock:
            cur = self.conn.execute(
                "INSERT INTO snapshots (interval_label, timestamp, total_nodes, "
                "online_nodes, offline_nodes, syncing_nodes, version_distribution, "
                "entries, availability_score, version_score, distribution_score, "
                "overall_score, countries, cities) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (interval_label) DO NOTHING",
                (
                    snapshot.interval_label,
                    _iso(snapshot.timestamp),
                    snapshot.total_nodes,
                    snapshot.online_nodes,
                    snapshot.offline_nodes,
                    snapshot.syncing_nodes,
                    json.dumps(snapshot.version_distribution),
                    json.dumps([asdict(e) for e in snapshot.entries]),
                    *_health_row(health),
                ),
            )
            self.conn.commit()
        if cur.rowcount != 1:
            return False
        snapshot.id = cur.lastrowid
        return True

    def snapshot_exists(self, interval_label: str) -> bool:
        with self.lock:
            row = self.conn.execute(
                "SELECT 1 FROM snapshots WHERE interval_label = ?", (interval_label,)
            ).fetchone()
        return row is not None

    def get_snapshots(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[HistoricalSnapshot]:
        """Return snapshots in ``[start, end]``, oldest first.

        With *limit*, only the most recent *limit* snapshots of the range
        are returned.
        """
        clauses, params = _range_clause("timestamp", start, end)
        sql = f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots{clauses} ORDER BY timestamp DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_snapshot(r) for r in reversed(rows)]

    def get_node_history(
        self,
        identity_key: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[NodeHistoryPoint]:
        """Return *identity_key*'s entry in every snapshot of the range."""
        clauses, params = _range_clause("s.timestamp", start, end)
        key_clause = "json_extract(e.value, '$.identity_key') = ?"
        where = f"{clauses} AND {key_clause}" if clauses else f" WHERE {key_clause}"
        params.append(identity_key)
        with self.lock:
            rows = self.conn.execute(
                "SELECT s.timestamp, s.interval_label, e.value AS entry "
                f"FROM snapshots s, json_each(s.entries) e{where} "
                "ORDER BY s.timestamp",
                params,
            ).fetchall()

        points = []
        for row in rows:
            entry = json.loads(row["entry"])
            points.append(
                NodeHistoryPoint(
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                    interval_label=row["interval_label"],
                    status=entry["status"],
                    version=entry.get("version"),
                    country=entry.get("country"),
                    city=entry.get("city"),
                )
            )
        return points

    def snapshots_missing_scores(self) -> list[HistoricalSnapshot]:
        with self.lock:
            rows = self.conn.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots "
                "WHERE overall_score IS NULL ORDER BY timestamp"
            ).fetchall()
        return [_row_to_snapshot(r) for r in rows]

    def set_snapshot_scores(self, snapshot_id: int, health: HealthScore) -> bool:
        """Fill in scores on a snapshot that has none.

        Returns:
            ``False`` if the snapshot does not exist or is already scored.
        """
        with self.lock:
            cur = self.conn.execute(
                "UPDATE snapshots SET availability_score = ?, version_score = ?, "
                "distribution_score = ?, overall_score = ?, countries = ?, cities = ? "
                "WHERE id = ? AND overall_score IS NULL",
                (*_health_row(health), snapshot_id),
            )
            self.conn.commit()
        return cur.rowcount == 1


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _json_or_none(value: object) -> str | None:
    return json.dumps(asdict(value)) if value is not None else None


def _bool_or_none(value: int | None) -> bool | None:
    return bool(value) if value is not None else None


def _range_clause(
    column: str, start: datetime | None, end: datetime | None
) -> tuple[str, list[object]]:
    clauses: list[str] = []
    params: list[object] = []
    if start is not None:
        clauses.append(f"{column} >= ?")
        params.append(_iso(start))
    if end is not None:
        clauses.append(f"{column} <= ?")
        params.append(_iso(end))
    return (" WHERE " + " AND ".join(clauses) if clauses else "", params)


def _health_row(health: HealthScore | None) -> tuple:
    if health is None:
        return (None,) * 6
    return (
        health.availability,
        health.version,
        health.distribution,
        health.overall,
        health.countries,
        health.cities,
    )


def _node_to_row(n: NodeIdentity) -> tuple:
    return (
        n.identity_key,
        n.current_address,
        json.dumps(n.previous_addresses),
        n.protocol_version,
        json.dumps(asdict(n.capacity_metrics)),
        n.peer_count,
        n.rpc_port,
        int(n.is_public) if n.is_public is not None else None,
        _json_or_none(n.location_data),
        _json_or_none(n.balance_data),
        n.latency_ms,
        int(n.seen_in_last_crawl),
        int(n.syncing),
        n.missed_cycles,
        _iso(n.first_seen_at),
        _iso(n.last_seen_at) if n.last_seen_at else None,
        _iso(n.last_updated_at) if n.last_updated_at else None,
    )


def _row_to_node(row: sqlite3.Row) -> NodeIdentity:
    location = row["location_data"]
    balance = row["balance_data"]
    return NodeIdentity(
        identity_key=row["identity_key"],
        current_address=row["current_address"],
        previous_addresses=json.loads(row["previous_addresses"]),
        protocol_version=row["protocol_version"],
        capacity_metrics=CapacityMetrics(**json.loads(row["capacity_metrics"])),
        peer_count=row["peer_count"],
        rpc_port=row["rpc_port"],
        is_public=_bool_or_none(row["is_public"]),
        location_data=LocationData(**json.loads(location)) if location else None,
        balance_data=BalanceData(**json.loads(balance)) if balance else None,
        latency_ms=row["latency_ms"],
        seen_in_last_crawl=bool(row["seen_in_last_crawl"]),
        syncing=bool(row["syncing"]),
        missed_cycles=row["missed_cycles"],
        first_seen_at=datetime.fromisoformat(row["first_seen_at"]),
        last_seen_at=_parse_dt(row["last_seen_at"]),
        last_updated_at=_parse_dt(row["last_updated_at"]),
    )


def _row_to_snapshot(row: sqlite3.Row) -> HistoricalSnapshot:
    health = None
    if row["overall_score"] is not None:
        health = HealthScore(
            availability=row["availability_score"],
            version=row["version_score"],
            distribution=row["distribution_score"],
            overall=row["overall_score"],
            countries=row["countries"] or 0,
            cities=row["cities"] or 0,
        )
    return HistoricalSnapshot(
        id=row["id"],
        interval_label=row["interval_label"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        entries=[SnapshotEntry(**e) for e in json.loads(row["entries"])],
        total_nodes=row["total_nodes"],
        online_nodes=row["online_nodes"],
        offline_nodes=row["offline_nodes"],
        syncing_nodes=row["syncing_nodes"],
        version_distribution=json.loads(row["version_distribution"]),
        health=health,
    )


def _migrate(conn: sqlite3.Connection) -> None:
    """Apply database migrations up to ``_SCHEMA_VERSION``.

    Uses the SQLite ``user_version`` pragma to track the current schema
    version.  Each version bump is applied in order so that databases
    created at any prior version are brought up to date.
    """
    (current,) = conn.execute("PRAGMA user_version").fetchone()

    if current >= _SCHEMA_VERSION:
        return

    if current < 1:
        logger.debug("Applying schema migration v0 -> v1")
        conn.executescript(_SCHEMA_V1)
    if current < 2:
        logger.debug("Applying schema migration v1 -> v2")
        conn.executescript(_SCHEMA_V2)
    if current < 3:
        logger.debug("Applying schema migration v2 -> v3")
        conn.executescript(_SCHEMA_V3)
    if current < 4:
        logger.debug("Applying schema migration v3 -> v4")
        conn.executescript(_SCHEMA_V4)

    conn.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
    conn.commit()
    logger.debug("Database schema at version %d", _SCHEMA_VERSION)
