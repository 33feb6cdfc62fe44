"""On-chain balance enrichment over Solana JSON-RPC."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import requests

from pnm.cache import LayeredLookup, TTLCache
from pnm.config import PnmConfig
from pnm.keys import is_valid_identity_key
from pnm.models import BalanceData
from pnm.ratelimit import RateLimiter, shared_limiter

if TYPE_CHECKING:
    from pnm.store import DirectoryStore

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
BALANCE_LIMITER_NAME = "balance"


class SolanaRpcClient:
    """Minimal JSON-RPC client for ``getBalance``."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._clock = clock
        self.calls = 0

    def get_balance(self, identity_key: str) -> BalanceData | None:
        """Fetch the SOL balance of *identity_key*.

        Returns:
            A ``BalanceData``, or ``None`` on any transport or RPC error.
        """
        self.calls += 1
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getBalance",
            "params": [identity_key, {"commitment": "confirmed"}],
        }
        try:
            response = requests.post(self.rpc_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Balance lookup failed for %s: %s", identity_key, exc)
            return None

        if not isinstance(data, dict) or "error" in data:
            logger.warning(
                "Balance RPC error for %s: %s",
                identity_key,
                data.get("error") if isinstance(data, dict) else data,
            )
            return None

        result = data.get("result")
        # getBalance answers {"context": {...}, "value": lamports}.
        lamports = result.get("value") if isinstance(result, dict) else result
        if not isinstance(lamports, int):
            return None
        return BalanceData(balance=lamports / LAMPORTS_PER_SOL, fetched_at=self._clock())


class BalanceCache:
    """Balance enrichment cache with a short TTL.

    Lookup order: memory cache, then the balance already stored on the
    directory record if younger than the TTL, then the RPC under the
    shared balance rate limiter.
    """

    def __init__(
        self,
        config: PnmConfig,
        store: DirectoryStore | None = None,
        client: SolanaRpcClient | None = None,
        limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = config.balance_cache_ttl
        self._clock = clock
        self._store = store
        self.client = client or SolanaRpcClient(
            config.balance_rpc_url, timeout=config.balance_timeout, clock=clock
        )
        self.limiter = limiter or shared_limiter(
            BALANCE_LIMITER_NAME, config.balance_rate_limit
        )
        self.cache: TTLCache[BalanceData] = TTLCache(self.ttl, clock=clock)
        self._lookup = LayeredLookup(
            self.cache,
            [("persisted", self._from_store), ("rpc", self._from_rpc)],
        )

    def _from_store(self, identity_key: str) -> BalanceData | None:
        if self._store is None:
            return None
        record = self._store.find_by_identity_key(identity_key)
        if record is None or record.balance_data is None:
            return None
        if self._clock() - record.balance_data.fetched_at >= self.ttl:
            return None
        return record.balance_data

    def _from_rpc(self, identity_key: str) -> BalanceData | None:
        if not self.limiter.try_acquire():
            logger.warning(
                "Balance rate limit reached, deferring %s (retry in %.0fs)",
                identity_key,
                self.limiter.retry_after(),
            )
            return None
        return self.client.get_balance(identity_key)

    def get(self, identity_key: str) -> BalanceData | None:
        """Return the balance of *identity_key*, or ``None`` to enrich later."""
        if not is_valid_identity_key(identity_key):
            return None
        return self._lookup.get(identity_key)

    def clear(self) -> None:
        """Administrative clear of the memory cache."""
        self.cache.clear()
