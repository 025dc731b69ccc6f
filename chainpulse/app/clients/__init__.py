"""API clients for the external services."""

from chainpulse.app.clients.models import ContractCreation, TokenTransfer, Transaction
from chainpulse.app.clients.rpc import RpcClient, wei_to_native
from chainpulse.app.clients.twitter import ApiResponse, TwitterApiClient

__all__ = [
    "ContractCreation",
    "TokenTransfer",
    "Transaction",
    "RpcClient",
    "wei_to_native",
    "ApiResponse",
    "TwitterApiClient",
]
