"""Gossip crawler: query pRPC endpoints for the visible peer set."""

import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import requests

from pnm.address import normalize_address
from pnm.keys import normalize_identity_key
from pnm.models import CapacityMetrics, PeerObservation

logger = logging.getLogger(__name__)

RICH_METHOD = "get-pods-with-stats"
BASIC_METHOD = "get-pods"

# A peer whose gossip heartbeat is older than this is reported as syncing.
SYNC_LAG_SECONDS = 5 * 60

# (CapacityMetrics field, snake_case key, camelCase key)
_METRIC_KEYS: tuple[tuple[str, str, str], ...] = (
    ("storage_committed", "storage_committed", "storageCommitted"),
    ("storage_used", "storage_used", "storageUsed"),
    ("storage_usage_percent", "storage_usage_percent", "storageUsagePercent"),
    ("ram_used", "ram_used", "ramUsed"),
    ("ram_total", "ram_total", "ramTotal"),
    ("cpu_percent", "cpu_percent", "cpuPercent"),
    ("uptime", "uptime", "uptimeSeconds"),
    ("packets_received", "packets_received", "packetsReceived"),
    ("packets_sent", "packets_sent", "packetsSent"),
    ("active_streams", "active_streams", "activeStreams"),
    ("total_pages", "total_pages", "totalPages"),
    ("data_operations_handled", "data_operations_handled", "dataOperationsHandled"),
)


@dataclass
class CrawlResult:
    """Deduplicated outcome of one crawl over all seed endpoints.

    Attributes:
        peers: Unique observations, in first-seen order.
        endpoints_queried: Number of seed endpoints asked.
        endpoints_ok: Endpoints that returned a recognizable pod list.
        endpoints_failed: Endpoints where no call returned one.
        discarded: Pods dropped for lack of a usable address.
        fetched: Observations before deduplication.
    """

    peers: list[PeerObservation] = field(default_factory=list)
    endpoints_queried: int = 0
    endpoints_ok: int = 0
    endpoints_failed: int = 0
    discarded: int = 0
    fetched: int = 0


def endpoint_url(endpoint: str) -> str:
    """Turn a seed (``host:port`` or full URL) into a pRPC URL."""
    endpoint = endpoint.strip()
    if endpoint.startswith(("http://", "https://")):
        return endpoint
    return f"http://{endpoint}/rpc"


def extract_pods(result: object) -> list[dict] | None:
    """Pull the pod list out of the response shapes seen across versions.

    Returns:
        The pods (possibly empty), or ``None`` if the shape is unknown.
    """
    if isinstance(result, list):
        pods = result
    elif isinstance(result, dict):
        inner = result.get("result")
        if isinstance(result.get("pods"), list):
            pods = result["pods"]
        elif isinstance(result.get("nodes"), list):
            pods = result["nodes"]
        elif isinstance(inner, list):
            pods = inner
        elif isinstance(inner, dict) and isinstance(inner.get("pods"), list):
            pods = inner["pods"]
        elif result.get("total_count") == 0:
            pods = []
        else:
            logger.debug("Unrecognized pod response keys: %s", ", ".join(map(str, result)))
            return None
    else:
        return None
    return [p for p in pods if isinstance(p, dict)]


def _first(pod: dict, *keys: str) -> object:
    for key in keys:
        value = pod.get(key)
        if value is not None:
            return value
    return None


def _number(value: object) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            return None
    return None


def normalize_timestamp(value: object) -> float | None:
    """Normalize a gossip timestamp (seconds or milliseconds) to seconds."""
    num = _number(value)
    if num is None:
        return None
    if num > 1e12:
        return num / 1000
    if num > 1e9:
        return float(num)
    return None


def parse_pod(
    pod: dict,
    source: str = "",
    now: float | None = None,
) -> PeerObservation | None:
    """Map one raw pod onto a ``PeerObservation``.

    Returns:
        The observation, or ``None`` if the pod has no usable address.
    """
    address = normalize_address(_first(pod, "address", "addr", "gossip_address"))
    if address is None:
        logger.warning(
            "Discarding peer without usable address from %s: %r",
            source or "gossip",
            pod.get("address"),
        )
        return None

    raw_key = _first(pod, "pubkey", "publicKey", "public_key")
    key = normalize_identity_key(raw_key)
    # Keep an invalid key as-is so the resolver can count it.
    identity_key = key if key is not None else (raw_key if isinstance(raw_key, str) else None)

    metrics = CapacityMetrics()
    for attr, snake, camel in _METRIC_KEYS:
        setattr(metrics, attr, _number(_first(pod, snake, camel)))
    if metrics.uptime is None:
        metrics.uptime = _number(pod.get("uptime_seconds"))

    last_seen = normalize_timestamp(_first(pod, "last_seen_timestamp", "lastSeenTimestamp"))
    current = time.time() if now is None else now
    explicit_sync = _first(pod, "syncing", "is_syncing", "isSyncing")
    syncing = bool(explicit_sync) or (
        last_seen is not None and current - last_seen >= SYNC_LAG_SECONDS
    )

    version = pod.get("version")
    rpc_port = _number(_first(pod, "rpc_port", "rpcPort"))
    peer_count = _number(_first(pod, "peer_count", "peerCount"))
    is_public = _first(pod, "is_public", "isPublic")

    return PeerObservation(
        address=address,
        identity_key=identity_key,
        protocol_version=version.strip() or None if isinstance(version, str) else None,
        capacity_metrics=metrics,
        peer_count=int(peer_count) if peer_count is not None else None,
        last_seen_timestamp=last_seen,
        syncing=syncing,
        rpc_port=int(rpc_port) if rpc_port is not None else None,
        is_public=is_public if isinstance(is_public, bool) else None,
        source=source,
    )


def dedup_key(peer: PeerObservation) -> str:
    """Identity key when valid, otherwise the address."""
    key = normalize_identity_key(peer.identity_key)
    return f"key:{key}" if key else f"addr:{peer.address}"


def deduplicate(peers: Iterable[PeerObservation]) -> list[PeerObservation]:
    """Collapse duplicate observations, keeping the richer one.

    First-seen order is preserved; a later duplicate replaces an earlier
    one in place only when it carries strictly more data.
    """
    chosen: dict[str, PeerObservation] = {}
    for peer in peers:
        key = dedup_key(peer)
        existing = chosen.get(key)
        if existing is None or peer.richness() > existing.richness():
            chosen[key] = peer
    return list(chosen.values())


class GossipClient:
    """JSON-RPC 2.0 caller for pRPC endpoints.

    Failures never raise: transport errors, non-200 answers and JSON-RPC
    errors are logged and reported as ``None``.
    """

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout

    def call(self, endpoint: str, method: str) -> object | None:
        url = endpoint_url(endpoint)
        payload = {"jsonrpc": "2.0", "method": method, "id": 1, "params": []}
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.debug("%s %s failed: %s", url, method, exc)
            return None

        if not isinstance(data, dict):
            return None
        if data.get("error") is not None:
            logger.debug("%s %s error: %s", url, method, data["error"])
            return None
        return data.get("result")


class GossipCrawler:
    """Collect the current peer set from redundant gossip endpoints.

    Each endpoint gets the richer ``get-pods-with-stats`` call and, only if
    that yields nothing, one ``get-pods`` fallback.  Endpoints are queried
    in parallel and fail independently.

    Args:
        client: JSON-RPC caller.
        max_workers: Upper bound on concurrent endpoint queries.
        clock: Wall-clock source used for sync-lag detection.
    """

    def __init__(
        self,
        client: GossipClient | None = None,
        max_workers: int = 8,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client or GossipClient()
        self.max_workers = max_workers
        self._clock = clock

    def _query(self, endpoint: str) -> tuple[list[PeerObservation], int] | None:
        """Query one endpoint.

        Returns:
            ``(observations, discarded)`` or ``None`` if neither call returned a
            recognizable pod list.
        """
        answered = False
        now = self._clock()
        for method in (RICH_METHOD, BASIC_METHOD):
            result = self.client.call(endpoint, method)
            if result is None:
                continue
            pods = extract_pods(result)
            if pods is None:
                logger.debug("%s %s: unrecognized response", endpoint, method)
                continue
            answered = True
            if not pods:
                continue

            source = f"{endpoint} {method}"
            peers: list[PeerObservation] = []
            discarded = 0
            for pod in pods:
                peer = parse_pod(pod, source=source, now=now)
                if peer is None:
                    discarded += 1
                else:
                    peers.append(peer)
            return peers, discarded

        return ([], 0) if answered else None

    def crawl(self, seeds: Iterable[str]) -> CrawlResult:
        """Query every seed and merge their views of the network."""
        endpoints = list(dict.fromkeys(s.strip() for s in seeds if s and s.strip()))
        result = CrawlResult(endpoints_queried=len(endpoints))
        if not endpoints:
            return result

        collected: dict[str, list[PeerObservation]] = {}
        workers = max(1, min(self.max_workers, len(endpoints)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._query, ep): ep for ep in endpoints}
            for future in as_completed(futures):
                endpoint = futures[future]
                try:
                    outcome = future.result()
                except Exception as exc:
                    logger.warning("Crawl of %s failed: %s", endpoint, exc)
                    outcome = None

                if outcome is None:
                    result.endpoints_failed += 1
                    logger.info("%s: no response", endpoint)
                    continue

                peers, discarded = outcome
                result.endpoints_ok += 1
                result.discarded += discarded
                collected[endpoint] = peers
                logger.info("%s: %d peers", endpoint, len(peers))

        # Merge in seed order so the result does not depend on timing.
        merged = [p for ep in endpoints for p in collected.get(ep, [])]
        result.fetched = len(merged)
        result.peers = deduplicate(merged)
        logger.info(
            "Crawl: %d unique peers from %d/%d endpoints",
            len(result.peers),
            result.endpoints_ok,
            result.endpoints_queried,
        )
        return result
