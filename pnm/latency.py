"""Direct latency probe against a node's pRPC port."""

import logging
import time

import requests

from pnm.address import format_address, is_public_ip, parse_address

logger = logging.getLogger(__name__)

DEFAULT_RPC_PORT = 6000


def measure_latency(
    address: str,
    rpc_port: int | None = None,
    timeout: float = 2.0,
) -> float | None:
    """Time a lightweight ``get-version`` call to the node at *address*.

    The probe targets the advertised pRPC port (default 6000) on the host
    of *address*.  Measurement stops when response headers arrive, so the
    body transfer does not count.

    Returns:
        Round trip in milliseconds, or ``None`` if the node is not public,
        did not answer in time, or answered with an error status.
    """
    parsed = parse_address(address)
    if parsed is None or not is_public_ip(parsed[0]):
        return None

    url = f"http://{format_address(parsed[0], rpc_port or DEFAULT_RPC_PORT)}/rpc"
    payload = {"jsonrpc": "2.0", "id": 1, "method": "get-version", "params": []}

    start = time.perf_counter()
    try:
        with requests.post(url, json=payload, timeout=timeout, stream=True) as response:
            elapsed = (time.perf_counter() - start) * 1000
            if response.status_code >= 400:
                logger.debug("Latency probe %s: HTTP %d", url, response.status_code)
                return None
    except requests.RequestException as exc:
        logger.debug("Latency probe %s failed: %s", url, exc)
        return None

    return round(elapsed, 1)
