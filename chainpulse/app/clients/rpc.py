"""JSON-RPC client for BNB Smart Chain.

Reads are best effort: every public method goes through a BackoffPolicy,
and price/balance lookups are cached in a TTLCache. The ``fetch_*``
methods return a BackoffResult so callers can tell a failed fetch from an
empty one; the ``get_*`` twins collapse failure to an empty value.
"""

import itertools
import time
from decimal import Decimal
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from chainpulse.app.clients.models import ContractCreation, TokenTransfer, Transaction
from chainpulse.app.core.cache import TTLCache
from chainpulse.app.core.config import Settings
from chainpulse.app.core.logging import get_logger
from chainpulse.app.exceptions import RpcError
from chainpulse.app.resilience.factory import build_backoff_policy
from chainpulse.app.resilience.models import BackoffResult
from chainpulse.app.resilience.retry import BackoffPolicy

logger = get_logger(__name__)

WEI_PER_UNIT = Decimal(10) ** 18

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
# balanceOf(address)
BALANCE_OF_SELECTOR = "0x70a08231"

LARGE_TX_BLOCKS = 5
NEW_CONTRACT_MAX_BLOCKS = 10


def wei_to_native(wei: int) -> str:
    """Format a wei amount as a decimal string in native units."""
    if wei == 0:
        return "0"
    return format((Decimal(wei) / WEI_PER_UNIT).normalize(), "f")


def _hex_to_int(value: Optional[str]) -> int:
    if not value or value == "0x":
        return 0
    return int(value, 16)


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:]


class RpcClient:
    """Best-effort reads from a JSON-RPC node.

    Args:
        http_client: Shared HTTP client
        rpc_url: JSON-RPC endpoint URL
        backoff: Bounded backoff policy for every read
        cache: Optional cache for gas price and balance lookups
        block_range: Block window for log queries
        clock: Returns the current time in seconds
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        rpc_url: str,
        backoff: Optional[BackoffPolicy] = None,
        cache: Optional[TTLCache] = None,
        block_range: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self._http_client = http_client
        self.rpc_url = rpc_url
        self.backoff = backoff or BackoffPolicy()
        self.cache = cache
        self.block_range = block_range
        self._clock = clock
        self._ids = itertools.count(1)

        cache_ttl = f"{int(cache.ttl * 1000)}ms" if cache is not None else "disabled"
        logger.info(
            f"BNB RPC client initialized with block range: {self.block_range}, "
            f"retry attempts: {self.backoff.max_attempts}, cache TTL: {cache_ttl}"
        )

    @classmethod
    def from_settings(
        cls,
        http_client: httpx.AsyncClient,
        config: Settings,
        cache: Optional[TTLCache] = None,
    ) -> "RpcClient":
        return cls(
            http_client,
            config.rpc_url,
            backoff=build_backoff_policy(config),
            cache=cache,
            block_range=config.rpc_block_range,
        )

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Send one JSON-RPC request and return its ``result``.

        Raises:
            httpx.HTTPStatusError: Non-2xx HTTP status (429 included)
            RpcError: The node answered with a JSON-RPC error object
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        response = await self._http_client.post(self.rpc_url, json=payload)
        response.raise_for_status()
        body = response.json()
        error = body.get("error")
        if error:
            raise RpcError(
                code=int(error.get("code", 0)),
                message=str(error.get("message", "unknown error")),
                data=error.get("data"),
            )
        return body.get("result")

    def _cached(self, key: str) -> Optional[str]:
        if self.cache is None:
            return None
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"{key} served from cache")
        return cached

    def _store(self, key: str, value: Optional[str]) -> None:
        if self.cache is not None and value and value != "0":
            self.cache.set(key, value)

    async def _latest_block(self) -> int:
        return _hex_to_int(await self.call("eth_blockNumber"))

    async def _block(self, number: int) -> Dict[str, Any]:
        block = await self.call("eth_getBlockByNumber", [hex(number), True])
        return block or {"transactions": []}

    async def get_block_number(self) -> int:
        """Latest block number, or 0 on failure."""
        return await self.backoff.run("getBlockNumber", self._latest_block, default=0)

    async def get_gas_price(self, use_cache: bool = True) -> str:
        """Current gas price in native units, or "0" on failure.

        With ``use_cache=False`` the node is always asked; the fresh value
        still refreshes the cache. Health probes use this form.
        """
        cache_key = "gasPrice"
        cached = self._cached(cache_key) if use_cache else None
        if cached is not None:
            return cached

        async def operation() -> str:
            return wei_to_native(_hex_to_int(await self.call("eth_gasPrice")))

        result = await self.backoff.run("getGasPrice", operation)
        self._store(cache_key, result)
        return result or "0"

    def health_probes(self) -> Dict[str, Callable[[], Awaitable[Any]]]:
        """Lightweight reads that always reach the node, keyed by endpoint."""
        return {
            "gasPrice": partial(self.get_gas_price, use_cache=False),
            "blockNumber": self.get_block_number,
        }

    async def get_balance(self, address: str, token_address: Optional[str] = None) -> str:
        """Native balance in native units, or a raw ERC-20 balance; "0" on failure."""
        cache_key = f"balance:{address}:{token_address or 'BNB'}"
        cached = self._cached(cache_key)
        if cached is not None:
            return cached

        async def operation() -> str:
            if not token_address:
                return wei_to_native(_hex_to_int(await self.call("eth_getBalance", [address, "latest"])))
            data = BALANCE_OF_SELECTOR + address.lower().removeprefix("0x").rjust(64, "0")
            raw = await self.call("eth_call", [{"to": token_address, "data": data}, "latest"])
            return str(_hex_to_int(raw))

        result = await self.backoff.run("getTokenBalance", operation)
        self._store(cache_key, result)
        return result or "0"

    async def fetch_large_transactions(
        self, min_value: str = "100", limit: int = 10
    ) -> BackoffResult:
        """Transactions moving at least ``min_value`` native units in the latest blocks."""
        min_wei = int(Decimal(min_value) * WEI_PER_UNIT)

        async def operation() -> List[Transaction]:
            latest = await self._latest_block()
            transactions: List[Transaction] = []
            for offset in range(LARGE_TX_BLOCKS):
                if len(transactions) >= limit:
                    break
                block = await self._block(latest - offset)
                for tx in block.get("transactions", []):
                    value = _hex_to_int(tx.get("value"))
                    if value < min_wei:
                        continue
                    transactions.append(
                        Transaction(
                            hash=tx["hash"],
                            from_address=tx["from"],
                            to_address=tx.get("to") or "0x0",
                            value=wei_to_native(value),
                            block_number=_hex_to_int(block.get("number")),
                            timestamp=_hex_to_int(block.get("timestamp")),
                            gas_price=wei_to_native(_hex_to_int(tx.get("gasPrice"))),
                        )
                    )
                    if len(transactions) >= limit:
                        break
            return transactions

        return await self.backoff.attempt("getLargeTransactions", operation)

    async def fetch_new_contracts(self, block_range: int = 100) -> BackoffResult:
        """Contract deployments in the latest blocks (at most ten are scanned)."""

        async def operation() -> List[ContractCreation]:
            latest = await self._latest_block()
            contracts: List[ContractCreation] = []
            for offset in range(min(block_range, NEW_CONTRACT_MAX_BLOCKS)):
                block = await self._block(latest - offset)
                for tx in block.get("transactions", []):
                    # Contract creation has no 'to' address
                    if tx.get("to") or len(tx.get("input") or "") <= 2:
                        continue
                    receipt = await self.call("eth_getTransactionReceipt", [tx["hash"]])
                    if not receipt or not receipt.get("contractAddress"):
                        continue
                    contracts.append(
                        ContractCreation(
                            hash=tx["hash"],
                            creator=tx["from"],
                            contract_address=receipt["contractAddress"],
                            block_number=_hex_to_int(block.get("number")),
                            timestamp=_hex_to_int(block.get("timestamp")),
                            gas_used=str(_hex_to_int(receipt.get("gasUsed"))),
                        )
                    )
            return contracts

        return await self.backoff.attempt("getNewContracts", operation)

    async def fetch_token_transfers(
        self, token_address: Optional[str] = None, limit: int = 20
    ) -> BackoffResult:
        """ERC-20 Transfer events over the configured block range."""

        async def operation() -> List[TokenTransfer]:
            latest = await self._latest_block()
            log_filter: Dict[str, Any] = {
                "fromBlock": hex(max(latest - self.block_range, 0)),
                "toBlock": hex(latest),
                "topics": [TRANSFER_TOPIC],
            }
            if token_address:
                log_filter["address"] = token_address

            logs = await self.call("eth_getLogs", [log_filter]) or []
            now = int(self._clock())
            transfers: List[TokenTransfer] = []
            for log in logs:
                topics = log.get("topics") or []
                # ERC-721 transfers index the token id as a fourth topic
                if len(topics) != 3:
                    continue
                transfers.append(
                    TokenTransfer(
                        hash=log["transactionHash"],
                        token_address=log["address"],
                        from_address=_topic_address(topics[1]),
                        to_address=_topic_address(topics[2]),
                        value=str(_hex_to_int(log.get("data"))),
                        block_number=_hex_to_int(log.get("blockNumber")),
                        timestamp=now,
                    )
                )
                if len(transfers) >= limit:
                    break
            return transfers

        return await self.backoff.attempt("getTokenTransfers", operation)

    async def get_large_transactions(self, min_value: str = "100", limit: int = 10) -> List[Transaction]:
        return (await self.fetch_large_transactions(min_value, limit)).value_or([])

    async def get_new_contracts(self, block_range: int = 100) -> List[ContractCreation]:
        return (await self.fetch_new_contracts(block_range)).value_or([])

    async def get_token_transfers(
        self, token_address: Optional[str] = None, limit: int = 20
    ) -> List[TokenTransfer]:
        return (await self.fetch_token_transfers(token_address, limit)).value_or([])
