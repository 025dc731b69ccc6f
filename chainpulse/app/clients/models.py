"""Chain data records returned by the RPC client."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class Transaction:
    hash: str
    from_address: str
    to_address: str
    value: str  # native units, decimal string
    block_number: int
    timestamp: int
    gas_price: str = "0"
    gas_used: str = "0"


@dataclass
class TokenTransfer:
    hash: str
    token_address: str
    from_address: str
    to_address: str
    value: str  # raw token units
    block_number: int
    timestamp: int
    token_symbol: Optional[str] = None
    token_name: Optional[str] = None


@dataclass
class ContractCreation:
    hash: str
    creator: str
    contract_address: str
    block_number: int
    timestamp: int
    gas_used: str = "0"
