"""YAML configuration file loading."""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".pnm"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DB_PATH = str(DEFAULT_CONFIG_DIR / "pnm.db")

DEFAULT_SEED_ENDPOINTS: tuple[str, ...] = (
    "https://rpc1.pchednode.com/rpc",
    "https://rpc2.pchednode.com/rpc",
    "https://rpc3.pchednode.com/rpc",
    "https://rpc4.pchednode.com/rpc",
    "173.212.203.145:6000",
    "173.212.220.65:6000",
    "161.97.97.41:6000",
    "192.190.136.36:6000",
    "207.244.255.1:6000",
)


@dataclass
class PnmConfig:
    """Top-level configuration for the pnm pipeline.

    Every field has a default so a bare install can crawl the public
    network without a config file.

    Attributes:
        db_path: Path to the SQLite directory database.
        seed_endpoints: Gossip entry points, as URLs or ``host:port``.
        gossip_timeout: Seconds allowed per gossip call.
        maxmind_city_db: Path to GeoLite2-City.mmdb, or None to skip the
            local geolocation layer.
        geo_api_url: Base URL of the ip-api compatible geolocation service.
        geo_timeout: Seconds allowed per single geolocation lookup.
        geo_batch_timeout: Seconds allowed per batch geolocation call.
        geo_rate_limit: External geolocation calls allowed per minute.
        geo_cache_ttl: Geolocation freshness in seconds.
        balance_rpc_url: Solana JSON-RPC endpoint for balance lookups.
        balance_timeout: Seconds allowed per balance lookup.
        balance_rate_limit: Balance calls allowed per minute.
        balance_cache_ttl: Balance freshness in seconds.
        measure_latency: Whether to ping nodes directly each cycle.
        ping_timeout: Seconds allowed per latency probe.
        enrichment_concurrency: Upper bound on concurrent enrichment calls.
        previous_address_limit: How many earlier addresses each identity
            keeps.
        snapshot_interval_minutes: Width of a historical snapshot interval.
        crawl_interval_seconds: Delay between cycles in ``pnm watch``.
    """

    db_path: str = DEFAULT_DB_PATH
    seed_endpoints: list[str] = field(
        default_factory=lambda: list(DEFAULT_SEED_ENDPOINTS)
    )
    gossip_timeout: float = 10.0
    maxmind_city_db: str | None = None
    geo_api_url: str = "http://ip-api.com"
    geo_timeout: float = 3.0
    geo_batch_timeout: float = 10.0
    geo_rate_limit: int = 40
    geo_cache_ttl: float = 24 * 60 * 60.0
    balance_rpc_url: str = "https://api.devnet.xandeum.com:8899"
    balance_timeout: float = 5.0
    balance_rate_limit: int = 100
    balance_cache_ttl: float = 5 * 60.0
    measure_latency: bool = True
    ping_timeout: float = 2.0
    enrichment_concurrency: int = 8
    previous_address_limit: int = 10
    snapshot_interval_minutes: int = 10
    crawl_interval_seconds: float = 60.0


# Keys in the YAML file that map to PnmConfig fields.
_YAML_KEY_TO_FIELD: dict[str, str] = {f.name: f.name for f in fields(PnmConfig)}


def load_config(path: Path | str | None = None) -> PnmConfig:
    """Load configuration from a YAML file.

    Args:
        path: Explicit path to a YAML config file.  If ``None``, the
            default location (``~/.pnm/config.yaml``) is tried.  If the
            default file doesn't exist, a ``PnmConfig`` with all defaults
            is returned silently.

    Returns:
        A populated ``PnmConfig`` instance.

    Raises:
        FileNotFoundError: If an explicit *path* was given but doesn't exist.
        ConfigError: If the file contains invalid YAML, has an unexpected
            top-level structure, or sets a field to an unusable value.
    """
    resolved = _resolve_path(path)

    if resolved is None:
        logger.debug("No config file found; using defaults")
        return PnmConfig()

    logger.debug("Loading config from %s", resolved)
    text = resolved.read_text(encoding="utf-8")

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if raw is None:
        # Empty file: all defaults.
        return PnmConfig()

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {resolved}, "
            f"got {type(raw).__name__}"
        )

    return _build_config(raw, source=resolved)


def validate_config(cfg: PnmConfig) -> None:
    """Check the settings a crawl cycle cannot run without.

    Raises:
        ConfigError: If no seed endpoint is configured or a bound is not
            positive.
    """
    endpoints = [e for e in cfg.seed_endpoints if isinstance(e, str) and e.strip()]
    if not endpoints:
        raise ConfigError("No gossip seed endpoints configured")

    for name in (
        "gossip_timeout",
        "geo_timeout",
        "balance_timeout",
        "ping_timeout",
        "enrichment_concurrency",
        "snapshot_interval_minutes",
    ):
        if getattr(cfg, name) <= 0:
            raise ConfigError(f"{name} must be positive, got {getattr(cfg, name)}")

    if cfg.previous_address_limit < 0:
        raise ConfigError("previous_address_limit must be >= 0")


class ConfigError(Exception):
    """Raised when a configuration file is malformed or unusable."""


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _resolve_path(path: Path | str | None) -> Path | None:
    """Return a concrete ``Path`` to read, or ``None`` if nothing to read.

    Raises:
        FileNotFoundError: If the caller supplied an explicit path that
            doesn't exist on disk.
    """
    if path is not None:
        p = Path(path).expanduser()
        if not p.is_file():
            raise FileNotFoundError(f"Config file not found: {p}")
        return p

    # Try the default location.
    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.is_file():
        return default
    return None


def _build_config(raw: dict, source: Path) -> PnmConfig:
    """Map raw YAML dict to a ``PnmConfig``, ignoring unknown keys."""
    kwargs: dict[str, object] = {}

    for yaml_key, field_name in _YAML_KEY_TO_FIELD.items():
        if yaml_key in raw:
            kwargs[field_name] = raw[yaml_key]

    unknown = set(raw) - set(_YAML_KEY_TO_FIELD)
    if unknown:
        logger.warning(
            "Ignoring unknown config keys in %s: %s",
            source,
            ", ".join(sorted(unknown)),
        )

    if "seed_endpoints" in kwargs and kwargs["seed_endpoints"] is None:
        kwargs["seed_endpoints"] = []
    seeds = kwargs.get("seed_endpoints")
    if seeds is not None and not isinstance(seeds, list):
        raise ConfigError(
            f"seed_endpoints in {source} must be a list, got {type(seeds).__name__}"
        )
    if seeds and not all(isinstance(s, str) for s in seeds):
        raise ConfigError(f"seed_endpoints in {source} must be a list of strings")

    defaults = PnmConfig()
    for name, value in kwargs.items():
        default = getattr(defaults, name)
        expected = _expected_type(default)
        if expected is not None and not _matches(value, default):
            raise ConfigError(
                f"{name} in {source} must be {expected}, got {type(value).__name__} {value!r}"
            )

    return PnmConfig(**kwargs)


def _expected_type(default: object) -> str | None:
    if default is None:
        return "a string or null"
    if isinstance(default, bool):
        return "true or false"
    if isinstance(default, int):
        return "an integer"
    if isinstance(default, float):
        return "a number"
    if isinstance(default, str):
        return "a string"
    return None


def _matches(value: object, default: object) -> bool:
    """Whether *value* is acceptable for a field whose default is *default*."""
    if default is None:
        return value is None or isinstance(value, str)
    if isinstance(value, bool) or isinstance(default, bool):
        return isinstance(value, bool) and isinstance(default, bool)
    if isinstance(default, int):
        return isinstance(value, int)
    if isinstance(default, float):
        return isinstance(value, (int, float))
    return isinstance(value, type(default))
