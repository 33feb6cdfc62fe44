"""Tests for pnm.balance — Solana balance enrichment."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from pnm.balance import LAMPORTS_PER_SOL, BalanceCache, SolanaRpcClient
from pnm.config import PnmConfig
from pnm.models import BalanceData, NodeIdentity
from pnm.ratelimit import RateLimiter

NOW = 1_700_000_000.0
KEY = "6Bzz3KPvzQruqBg2vtsvkuitd6Qb4iCcr5DViifCwLsL"
OTHER_KEY = "So11111111111111111111111111111111111111112"


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _response(payload: object) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = payload
    return resp


def _cache(
    clock: FakeClock,
    store: MagicMock | None = None,
    limit: int = 100,
) -> BalanceCache:
    client = MagicMock()
    client.get_balance.side_effect = lambda key: BalanceData(balance=2.5, fetched_at=clock.now)
    return BalanceCache(
        PnmConfig(),
        store=store,
        client=client,
        limiter=RateLimiter(limit, clock=clock),
        clock=clock,
    )


class TestSolanaRpcClient:
    @patch("pnm.balance.requests.post")
    def test_converts_lamports(self, mock_post: MagicMock) -> None:
        mock_post.return_value = _response(
            {"jsonrpc": "2.0", "id": 1, "result": {"context": {"slot": 1}, "value": 1_500_000_000}}
        )
        client = SolanaRpcClient("https://rpc.example.com", timeout=5, clock=FakeClock())

        data = client.get_balance(KEY)

        assert data == BalanceData(balance=1.5, fetched_at=NOW)
        payload = mock_post.call_args.kwargs["json"]
        assert payload["method"] == "getBalance"
        assert payload["params"][0] == KEY
        assert mock_post.call_args.kwargs["timeout"] == 5

    @patch("pnm.balance.requests.post")
    def test_zero_balance(self, mock_post: MagicMock) -> None:
        mock_post.return_value = _response({"result": {"value": 0}})
        assert SolanaRpcClient("https://rpc.example.com").get_balance(KEY).balance == 0

    @patch("pnm.balance.requests.post")
    def test_rpc_error(self, mock_post: MagicMock) -> None:
        mock_post.return_value = _response({"error": {"code": -32602, "message": "Invalid param"}})
        assert SolanaRpcClient("https://rpc.example.com").get_balance(KEY) is None

    @patch("pnm.balance.requests.post")
    def test_timeout(self, mock_post: MagicMock) -> None:
        mock_post.side_effect = requests.Timeout("slow")
        assert SolanaRpcClient("https://rpc.example.com").get_balance(KEY) is None

    @patch("pnm.balance.requests.post")
    def test_unexpected_result(self, mock_post: MagicMock) -> None:
        mock_post.return_value = _response({"result": {"value": "lots"}})
        assert SolanaRpcClient("https://rpc.example.com").get_balance(KEY) is None

    def test_lamports_constant(self) -> None:
        assert LAMPORTS_PER_SOL == 10**9


class TestBalanceCache:
    def test_invalid_key_never_fetched(self) -> None:
        cache = _cache(FakeClock())
        assert cache.get("pubkey1") is None
        assert cache.get("") is None
        cache.client.get_balance.assert_not_called()

    def test_short_ttl(self) -> None:
        clock = FakeClock()
        cache = _cache(clock)

        cache.get(KEY)
        clock.now += 299
        cache.get(KEY)
        assert cache.client.get_balance.call_count == 1

        clock.now += 1
        cache.get(KEY)
        assert cache.client.get_balance.call_count == 2

    def test_fresh_persisted_balance_used(self) -> None:
        clock = FakeClock()
        store = MagicMock()
        store.find_by_identity_key.return_value = NodeIdentity(
            identity_key=KEY,
            current_address="8.8.8.8:9001",
            balance_data=BalanceData(balance=9.0, fetched_at=NOW - 60),
        )
        cache = _cache(clock, store=store)

        assert cache.get(KEY).balance == 9.0
        cache.client.get_balance.assert_not_called()

    def test_stale_persisted_balance_refetched(self) -> None:
        clock = FakeClock()
        store = MagicMock()
        store.find_by_identity_key.return_value = NodeIdentity(
            identity_key=KEY,
            current_address="8.8.8.8:9001",
            balance_data=BalanceData(balance=9.0, fetched_at=NOW - 600),
        )
        cache = _cache(clock, store=store)

        assert cache.get(KEY).balance == 2.5

    def test_rate_limit_defers(self) -> None:
        cache = _cache(FakeClock(), limit=1)
        assert cache.get(KEY) is not None
        assert cache.get(OTHER_KEY) is None
        assert cache.client.get_balance.call_count == 1

    def test_rate_limit_logs_retry_delay(self, caplog: pytest.LogCaptureFixture) -> None:
        cache = _cache(FakeClock(), limit=1)
        cache.get(KEY)

        with caplog.at_level("WARNING", logger="pnm.balance"):
            cache.get(OTHER_KEY)

        assert f"deferring {OTHER_KEY} (retry in 60s)" in caplog.text

    def test_clear(self) -> None:
        cache = _cache(FakeClock())
        cache.get(KEY)
        cache.clear()
        cache.get(KEY)
        assert cache.client.get_balance.call_count == 2
