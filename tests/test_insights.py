"""Tests for scheduled chain snapshot collection."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from httpx import Response

from chainpulse.app.clients.models import ContractCreation, Transaction
from chainpulse.app.clients.rpc import RpcClient
from chainpulse.app.exceptions import CycleFailedError, TransientProbeFailure
from chainpulse.app.resilience.health import HealthMonitor
from chainpulse.app.resilience.models import BackoffResult
from chainpulse.app.resilience.rate_limit import RateLimitTracker
from chainpulse.app.resilience.retry import BackoffPolicy, RetryOrchestrator
from chainpulse.app.services.insights import ChainSnapshot, InsightsService, build_insights_job

RPC_URL = "https://rpc.test/"

TX = Transaction(
    hash="0x1", from_address="0xa", to_address="0xb", value="600", block_number=1000, timestamp=1
)
CONTRACT = ContractCreation(hash="0xc", creator="0xa", contract_address="0xd", block_number=1000, timestamp=1)


def _failed(name):
    return BackoffResult(ok=False, error=TransientProbeFailure(name, 3, RuntimeError("limit")), attempts=3)


def _mock_rpc(large=None, contracts=None, transfers=None):
    rpc = MagicMock()
    rpc.fetch_large_transactions = AsyncMock(return_value=large or BackoffResult(ok=True, value=[TX]))
    rpc.fetch_new_contracts = AsyncMock(return_value=contracts or BackoffResult(ok=True, value=[CONTRACT]))
    rpc.fetch_token_transfers = AsyncMock(return_value=transfers or BackoffResult(ok=True, value=[]))
    return rpc


class TestInsightsService:
    """Tests for InsightsService.collect and run_cycle."""

    @pytest.mark.asyncio
    async def test_collect_uses_configured_thresholds(self):
        """Each source is fetched with the auto-post thresholds."""
        rpc = _mock_rpc()
        service = InsightsService(rpc)

        snapshot = await service.collect()

        rpc.fetch_large_transactions.assert_awaited_once_with("500", 10)
        rpc.fetch_new_contracts.assert_awaited_once_with(100)
        rpc.fetch_token_transfers.assert_awaited_once_with(None, 30)
        assert snapshot.large_transactions == [TX]
        assert snapshot.new_contracts == [CONTRACT]
        assert snapshot.token_transfers == []
        assert not snapshot.is_partial

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_other_sources(self):
        """One failed source leaves an empty list and is recorded."""
        rpc = _mock_rpc(transfers=_failed("getTokenTransfers"))

        snapshot = await InsightsService(rpc).collect()

        assert snapshot.large_transactions == [TX]
        assert snapshot.new_contracts == [CONTRACT]
        assert snapshot.token_transfers == []
        assert snapshot.failed_sources == ["token_transfers"]
        assert snapshot.is_partial

    @pytest.mark.asyncio
    async def test_all_sources_failing_fails_the_cycle(self):
        """Only a cycle where every fetch failed is a failed cycle."""
        rpc = _mock_rpc(
            large=_failed("getLargeTransactions"),
            contracts=_failed("getNewContracts"),
            transfers=_failed("getTokenTransfers"),
        )

        with pytest.raises(CycleFailedError):
            await InsightsService(rpc).collect()

    @pytest.mark.asyncio
    async def test_run_cycle_hands_snapshot_to_handler(self):
        handler = AsyncMock()
        service = InsightsService(_mock_rpc(), handler=handler)

        snapshot = await service.run_cycle()

        handler.assert_awaited_once_with(snapshot)
        assert isinstance(snapshot, ChainSnapshot)

    @pytest.mark.asyncio
    async def test_parallel_fetches_with_one_rate_limited_source(self, respx_mock):
        """Two fetches succeed and the rate-limited one yields an empty list without raising."""
        block = {
            "number": hex(1000),
            "timestamp": hex(1_700_000_000),
            "transactions": [
                {"hash": "0x1", "from": "0xa", "to": "0xb", "value": hex(600 * 10**18), "gasPrice": hex(10**9)},
                {"hash": "0xc", "from": "0xa", "to": None, "input": "0x6080"},
            ],
        }

        def node(request):
            body = json.loads(request.content)
            method = body["method"]
            if method == "eth_getLogs":
                return Response(200, json={
                    "jsonrpc": "2.0", "id": body["id"],
                    "error": {"code": -32005, "message": "limit exceeded"},
                })
            result = {
                "eth_blockNumber": hex(1000),
                "eth_getBlockByNumber": block if body["params"][0] == hex(1000) else None,
                "eth_getTransactionReceipt": {"contractAddress": "0xd", "gasUsed": hex(50000)},
            }[method]
            return Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

        respx_mock.post(RPC_URL).mock(side_effect=node)

        async with httpx.AsyncClient() as http_client:
            rpc = RpcClient(http_client, RPC_URL, backoff=BackoffPolicy(schedule=(1, 2, 4)))
            with patch("asyncio.sleep", new_callable=AsyncMock):
                snapshot = await InsightsService(rpc).collect()

        assert [tx.hash for tx in snapshot.large_transactions] == ["0x1"]
        assert [c.contract_address for c in snapshot.new_contracts] == ["0xd"]
        assert snapshot.token_transfers == []
        assert snapshot.failed_sources == ["token_transfers"]


class TestInsightsJob:
    """Tests for the health-gated insights job."""

    def test_build_insights_job(self, clock):
        """The interval is configured in minutes."""
        monitor = HealthMonitor(
            RetryOrchestrator(RateLimitTracker(clock=clock)),
            {"gasPrice": AsyncMock(return_value="1")},
            clock=clock,
        )
        service = InsightsService(_mock_rpc())

        job = build_insights_job(service, monitor, interval_minutes=30)

        assert job.name == "bnb-insights"
        assert job.interval == 1800
        assert job.monitor is monitor

    @pytest.mark.asyncio
    async def test_degraded_node_skips_fetches(self, clock):
        """A degraded node means zero data fetches that cycle."""
        monitor = HealthMonitor(
            RetryOrchestrator(RateLimitTracker(clock=clock)),
            {"gasPrice": AsyncMock(return_value="0")},
            clock=clock,
        )
        rpc = _mock_rpc()
        job = build_insights_job(InsightsService(rpc), monitor, interval_minutes=30)

        assert await job.run_once() is False

        rpc.fetch_large_transactions.assert_not_called()
        rpc.fetch_new_contracts.assert_not_called()
        rpc.fetch_token_transfers.assert_not_called()
