"""Scheduled chain snapshot collection.

Every cycle fetches three independent data sources in parallel. Each fetch
is best effort, so one failing source does not cost the others; only a
cycle in which every source fails counts as a failed cycle. What happens to
a snapshot (analysis, posting) is up to the injected handler.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from chainpulse.app.clients.models import ContractCreation, TokenTransfer, Transaction
from chainpulse.app.clients.rpc import RpcClient
from chainpulse.app.core.logging import get_log_context, get_logger
from chainpulse.app.exceptions import CycleFailedError
from chainpulse.app.resilience.health import HealthMonitor, ScheduledJob

logger = get_logger(__name__)

JOB_NAME = "bnb-insights"


@dataclass
class ChainSnapshot:
    large_transactions: List[Transaction] = field(default_factory=list)
    new_contracts: List[ContractCreation] = field(default_factory=list)
    token_transfers: List[TokenTransfer] = field(default_factory=list)
    failed_sources: List[str] = field(default_factory=list)
    collected_at: float = field(default_factory=time.time)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_sources)


SnapshotHandler = Callable[[ChainSnapshot], Awaitable[None]]


class InsightsService:
    """Collects chain snapshots and hands them to a handler.

    Defaults mirror the auto-post thresholds: transfers of at least 500
    native units, up to 10 of them, contracts from the last 100 blocks and
    up to 30 token transfers.
    """

    def __init__(
        self,
        rpc: RpcClient,
        handler: Optional[SnapshotHandler] = None,
        min_value: str = "500",
        transaction_limit: int = 10,
        contract_block_range: int = 100,
        transfer_limit: int = 30,
    ):
        self.rpc = rpc
        self.handler = handler
        self.min_value = min_value
        self.transaction_limit = transaction_limit
        self.contract_block_range = contract_block_range
        self.transfer_limit = transfer_limit

    async def collect(self) -> ChainSnapshot:
        """Fetch all sources concurrently.

        Raises:
            CycleFailedError: Every source failed
        """
        sources = ("large_transactions", "new_contracts", "token_transfers")
        results = await asyncio.gather(
            self.rpc.fetch_large_transactions(self.min_value, self.transaction_limit),
            self.rpc.fetch_new_contracts(self.contract_block_range),
            self.rpc.fetch_token_transfers(None, self.transfer_limit),
        )

        failed = [name for name, result in zip(sources, results) if not result.ok]
        if len(failed) == len(sources):
            raise CycleFailedError("All chain data fetches failed")
        if failed:
            logger.warning(
                f"Partial chain snapshot, failed sources: {', '.join(failed)}",
                extra=get_log_context(operation=JOB_NAME),
            )

        large_transactions, new_contracts, token_transfers = (r.value_or([]) for r in results)
        return ChainSnapshot(
            large_transactions=large_transactions,
            new_contracts=new_contracts,
            token_transfers=token_transfers,
            failed_sources=failed,
        )

    async def run_cycle(self) -> ChainSnapshot:
        logger.info("Running scheduled BNB Chain insight check...")
        snapshot = await self.collect()
        logger.info(
            f"Collected {len(snapshot.large_transactions)} large transactions, "
            f"{len(snapshot.new_contracts)} new contracts, "
            f"{len(snapshot.token_transfers)} token transfers",
            extra=get_log_context(operation=JOB_NAME),
        )
        if self.handler is not None:
            await self.handler(snapshot)
        return snapshot


def build_insights_job(
    service: InsightsService,
    monitor: HealthMonitor,
    interval_minutes: float,
) -> ScheduledJob:
    """Wrap an InsightsService in a health-gated ScheduledJob."""
    return ScheduledJob(JOB_NAME, monitor, service.run_cycle, interval=interval_minutes * 60)
