"""Output renderer: rich table formatter, JSON formatter, per-view dispatch."""

import dataclasses
import json
import logging
import sys
from collections.abc import Callable
from io import StringIO

from rich.console import Console
from rich.table import Table

from pnm.aggregator import AggregatedResult
from pnm.models import (
    ActivityEvent,
    CycleReport,
    HealthScore,
    HistoricalSnapshot,
    NodeHistoryPoint,
    NodeIdentity,
)

logger = logging.getLogger(__name__)

FORMATS = ("table", "json")

# How many entries to show in distribution tables.
_TOP_N = 10

_STATUS_STYLE = {"online": "green", "syncing": "yellow", "offline": "red"}


def _check_format(fmt: str) -> None:
    if fmt not in FORMATS:
        raise ValueError(f"Unknown output format: {fmt!r}")


def _console(file: object | None, width: int | None) -> Console:
    return Console(file=file or sys.stdout, highlight=False, width=width)


def _dump_json(payload: object, file: object | None) -> None:
    out = file or sys.stdout
    json.dump(payload, out, indent=2, default=str)
    out.write("\n")  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------


def render_nodes(
    nodes: list[NodeIdentity],
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render directory records as a table or a JSON list.

    Raises:
        ValueError: If *fmt* is not ``"table"`` or ``"json"``.
    """
    _check_format(fmt)
    if fmt == "json":
        _dump_json([_node_to_dict(n) for n in nodes], file)
        return

    console = _console(file, width)
    table = Table(title=f"pNodes — {len(nodes)} nodes")
    for header in ("Identity", "Address", "Status", "Version", "City", "Country",
                   "Balance", "Latency (ms)"):
        table.add_column(header)

    for node in nodes:
        loc = node.location_data
        style = _STATUS_STYLE.get(node.status, "")
        table.add_row(
            _short_key(node.identity_key),
            node.current_address,
            f"[{style}]{node.status}[/{style}]" if style else node.status,
            _fmt(node.protocol_version),
            _fmt(loc.city if loc else None),
            _fmt(loc.country if loc else None),
            _fmt(f"{node.balance_data.balance:.4f}" if node.balance_data else None),
            _fmt(node.latency_ms),
        )

    console.print(table)
    online = sum(1 for n in nodes if n.status == "online")
    console.print(f"  {len(nodes)} nodes, {online} online")


# ---------------------------------------------------------------------------
# Cycle report
# ---------------------------------------------------------------------------

_REPORT_ROWS = [
    ("Endpoints ok / queried", None),
    ("Peers fetched", "peers_fetched"),
    ("Peers discarded", "peers_discarded"),
    ("Invalid keys", "invalid_keys"),
    ("Identities created", "identities_created"),
    ("Identities updated", "identities_updated"),
    ("Address changes", "address_changes"),
    ("Address conflicts", "address_conflicts"),
    ("Marked offline", "marked_offline"),
    ("Geolocated", "geo_enriched"),
    ("Balances", "balance_enriched"),
    ("Latency measured", "latency_measured"),
    ("Activity events", "activity_events"),
    ("Upserted", "upserted"),
    ("Upsert failures", "upsert_failed"),
    ("Snapshot", "snapshot_label"),
]


def render_cycle_report(
    report: CycleReport,
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render one crawl cycle's audit record."""
    _check_format(fmt)
    if fmt == "json":
        _dump_json(dataclasses.asdict(report), file)
        return

    console = _console(file, width)
    table = Table(title=f"Crawl cycle — {report.outcome} ({report.duration_seconds:.1f}s)")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for label, attr in _REPORT_ROWS:
        if attr is None:
            value = f"{report.endpoints_ok} / {report.endpoints_queried}"
        else:
            value = _fmt(getattr(report, attr))
        table.add_row(label, value)
    console.print(table)


def render_cycle_reports(
    reports: list[CycleReport],
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render recent cycle reports, newest first, one row each."""
    _check_format(fmt)
    if fmt == "json":
        _dump_json([dataclasses.asdict(r) for r in reports], file)
        return

    console = _console(file, width)
    table = Table(title=f"Recent cycles — {len(reports)}")
    for header in ("Started", "Outcome", "Endpoints", "Created", "Updated", "Offline",
                   "Failures", "Duration"):
        table.add_column(header, justify="left" if header in ("Started", "Outcome") else "right")
    for r in reports:
        table.add_row(
            r.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            r.outcome,
            f"{r.endpoints_ok} / {r.endpoints_queried}",
            str(r.identities_created),
            str(r.identities_updated),
            str(r.marked_offline),
            str(r.upsert_failed),
            f"{r.duration_seconds:.1f}s",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------


def render_activity(
    events: list[ActivityEvent],
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render activity log entries, newest first."""
    _check_format(fmt)
    if fmt == "json":
        _dump_json([dataclasses.asdict(e) for e in events], file)
        return

    console = _console(file, width)
    table = Table(title=f"Activity — {len(events)} events")
    for header in ("Time", "Event", "Node", "Address", "Status"):
        table.add_column(header)
    for e in events:
        style = _STATUS_STYLE.get(e.status, "")
        status = f"[{style}]{e.status}[/{style}]" if style else e.status
        table.add_row(
            e.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            e.event_type,
            _short_key(e.identity_key),
            e.address,
            f"{e.previous_status} → {status}" if e.previous_status else status,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def render_health(
    health: HealthScore,
    stats: AggregatedResult,
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render the live health score with status and distribution tables."""
    _check_format(fmt)
    if fmt == "json":
        _dump_json(
            {"health": dataclasses.asdict(health), "stats": dataclasses.asdict(stats)},
            file,
        )
        return

    console = _console(file, width)
    console.print(f"\n[bold]Network health: {health.overall}/100[/bold]\n")

    t = Table(title="Sub-scores")
    t.add_column("Component")
    t.add_column("Score", justify="right")
    t.add_row("Availability", str(health.availability))
    t.add_row("Version currency", str(health.version))
    t.add_row("Distribution", str(health.distribution))
    t.add_row("Countries / cities", f"{health.countries} / {health.cities}")
    console.print(t)

    counts = stats.status_counts
    if counts:
        t = Table(title="Status")
        t.add_column("Status")
        t.add_column("Nodes", justify="right")
        for status in ("online", "syncing", "offline", "total"):
            t.add_row(status.capitalize(), str(counts.get(status, 0)))
        console.print(t)

    for title, header, dist in (
        ("Top versions", "Version", stats.version_distribution),
        ("Top countries", "Country", stats.country_distribution),
    ):
        if not dist:
            continue
        t = Table(title=title)
        t.add_column(header)
        t.add_column("Nodes", justify="right")
        for name, count in dist[:_TOP_N]:
            t.add_row(name, str(count))
        console.print(t)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


def render_history(
    snapshots: list[HistoricalSnapshot],
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render snapshot summaries, oldest first.  Entries are JSON-only."""
    _check_format(fmt)
    if fmt == "json":
        _dump_json([dataclasses.asdict(s) for s in snapshots], file)
        return

    console = _console(file, width)
    table = Table(title=f"History — {len(snapshots)} snapshots")
    for header in ("Interval", "Total", "Online", "Syncing", "Offline", "Health"):
        table.add_column(header, justify="left" if header == "Interval" else "right")
    for snap in snapshots:
        table.add_row(
            snap.interval_label,
            str(snap.total_nodes),
            str(snap.online_nodes),
            str(snap.syncing_nodes),
            str(snap.offline_nodes),
            _fmt(snap.health.overall if snap.health else None),
        )
    console.print(table)


def render_node_history(
    identity_key: str,
    points: list[NodeHistoryPoint],
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render one node's status across snapshots."""
    _check_format(fmt)
    if fmt == "json":
        _dump_json(
            {"identity_key": identity_key, "history": [dataclasses.asdict(p) for p in points]},
            file,
        )
        return

    console = _console(file, width)
    table = Table(title=f"{_short_key(identity_key)} — {len(points)} snapshots")
    for header in ("Interval", "Status", "Version", "City", "Country"):
        table.add_column(header)
    for p in points:
        table.add_row(p.interval_label, p.status, _fmt(p.version), _fmt(p.city), _fmt(p.country))
    console.print(table)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _node_to_dict(node: NodeIdentity) -> dict:
    data = dataclasses.asdict(node)
    data["status"] = node.status
    return data


def _short_key(key: str) -> str:
    return f"{key[:6]}…{key[-4:]}" if len(key) > 12 else key


def _fmt(value: object) -> str:
    """Format a field value for table display.

    ``None`` becomes ``"—"``, everything else is stringified.
    """
    if value is None:
        return "—"
    return str(value)


def render_to_string(
    renderer: Callable[..., None],
    *args: object,
    width: int = 200,
) -> str:
    """Run *renderer* into a string instead of stdout.

    Args:
        renderer: One of the ``render_*`` functions.
        *args: Its positional arguments, format last.
        width: Console width for table rendering (default: 200).
    """
    buf = StringIO()
    renderer(*args, file=buf, width=width)
    return buf.getvalue()
