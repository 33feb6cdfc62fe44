"""CLI entry point for the pnm tool."""

import logging
import sys
from datetime import UTC, datetime, timedelta

import click

from pnm.aggregator import aggregate_nodes, snapshot_entry
from pnm.config import ConfigError, PnmConfig, load_config
from pnm.health import score_network
from pnm.output import (
    FORMATS,
    render_activity,
    render_cycle_report,
    render_cycle_reports,
    render_health,
    render_history,
    render_node_history,
    render_nodes,
)
from pnm.pipeline import CrawlPipeline
from pnm.snapshots import backfill_health_scores
from pnm.store import DirectoryStore

logger = logging.getLogger(__name__)

STATUSES = ("online", "syncing", "offline")
EVENT_TYPES = ("new_node", "node_online", "node_offline", "node_syncing")

format_option = click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Output format.",
)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to YAML config file (default: ~/.pnm/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Monitor the pNode network through its gossip layer."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        cfg = load_config(config_path)
    except (ConfigError, FileNotFoundError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    logger.debug("Config loaded: %s", cfg)
    ctx.obj = cfg


def _open_store(cfg: PnmConfig) -> DirectoryStore:
    return DirectoryStore.open(cfg.db_path)


@main.command()
@format_option
@click.pass_obj
def crawl(cfg: PnmConfig, output_format: str) -> None:
    """Run one crawl cycle and print its report."""
    store = _open_store(cfg)
    pipeline = CrawlPipeline(cfg, store)
    try:
        report = pipeline.run_cycle()
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    finally:
        pipeline.close()
        store.close()

    if report is not None:
        render_cycle_report(report, output_format)


@main.command()
@click.option(
    "--interval",
    "-i",
    type=float,
    default=None,
    help="Seconds between cycles (default: crawl_interval_seconds).",
)
@click.option("--cycles", "-n", type=int, default=None, help="Stop after N cycles.")
@click.pass_obj
def watch(cfg: PnmConfig, interval: float | None, cycles: int | None) -> None:
    """Crawl continuously, one cycle at a time."""
    store = _open_store(cfg)
    pipeline = CrawlPipeline(cfg, store)
    try:
        ran = pipeline.run_forever(interval=interval, max_cycles=cycles)
        click.echo(f"Completed {ran} cycle(s)")
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("Stopped")
    finally:
        pipeline.close()
        store.close()


@main.command()
@click.option(
    "--status",
    "-s",
    type=click.Choice(STATUSES, case_sensitive=False),
    default=None,
    help="Only show nodes with this status.",
)
@format_option
@click.pass_obj
def nodes(cfg: PnmConfig, status: str | None, output_format: str) -> None:
    """List the node directory from the last cycle."""
    store = _open_store(cfg)
    try:
        records = store.query_all(status=status)
    finally:
        store.close()
    render_nodes(records, output_format)


@main.command()
@format_option
@click.pass_obj
def health(cfg: PnmConfig, output_format: str) -> None:
    """Score the current directory."""
    store = _open_store(cfg)
    try:
        records = store.get_all_nodes()
    finally:
        store.close()
    entries = [snapshot_entry(n) for n in records]
    render_health(score_network(entries), aggregate_nodes(records), output_format)


@main.command()
@click.option("--node", "identity_key", default=None, help="Show one node's history.")
@click.option(
    "--hours",
    type=float,
    default=24.0,
    show_default=True,
    help="How far back to look.",
)
@click.option("--limit", type=int, default=None, help="Most recent N snapshots only.")
@format_option
@click.pass_obj
def history(
    cfg: PnmConfig,
    identity_key: str | None,
    hours: float,
    limit: int | None,
    output_format: str,
) -> None:
    """Show historical snapshots, or one node's status over time."""
    start = datetime.now(UTC) - timedelta(hours=hours)
    store = _open_store(cfg)
    try:
        if identity_key:
            points = store.get_node_history(identity_key, start=start)
        else:
            snapshots = store.get_snapshots(start=start, limit=limit)
    finally:
        store.close()

    if identity_key:
        render_node_history(identity_key, points, output_format)
    else:
        render_history(snapshots, output_format)


@main.command()
@click.pass_obj
def backfill(cfg: PnmConfig) -> None:
    """Fill in health scores on snapshots recorded without them."""
    store = _open_store(cfg)
    try:
        result = backfill_health_scores(store)
    finally:
        store.close()
    click.echo(
        f"Backfilled {result.updated} of {result.examined} snapshot(s)"
        f" ({result.skipped} skipped)"
    )


@main.command()
@click.option("--limit", "-n", type=int, default=10, show_default=True, help="How many cycles.")
@format_option
@click.pass_obj
def runs(cfg: PnmConfig, limit: int, output_format: str) -> None:
    """Show the most recent crawl cycles."""
    store = _open_store(cfg)
    try:
        reports = store.recent_cycle_reports(limit=limit)
    finally:
        store.close()
    render_cycle_reports(reports, output_format)


@main.command()
@click.option("--node", "identity_key", default=None, help="Only events for this node.")
@click.option(
    "--type",
    "event_type",
    type=click.Choice(EVENT_TYPES),
    default=None,
    help="Only events of this type.",
)
@click.option("--limit", "-n", type=int, default=50, show_default=True, help="How many events.")
@format_option
@click.pass_obj
def activity(
    cfg: PnmConfig,
    identity_key: str | None,
    event_type: str | None,
    limit: int,
    output_format: str,
) -> None:
    """Show new nodes and status changes, newest first."""
    store = _open_store(cfg)
    try:
        events = store.get_activity(identity_key=identity_key, event_type=event_type, limit=limit)
    finally:
        store.close()
    render_activity(events, output_format)


@main.command()
@click.pass_obj
def cleanup(cfg: PnmConfig) -> None:
    """Remove directory records whose identity key is not valid."""
    store = _open_store(cfg)
    try:
        removed = store.purge_invalid_identities()
    finally:
        store.close()
    click.echo(f"Removed {removed} record(s) with invalid identity keys")
