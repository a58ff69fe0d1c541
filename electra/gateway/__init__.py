# Ledger gateways
# Web3Gateway is imported from electra.gateway.web3_gateway on demand.
from .base import (
    LedgerGateway,
    LedgerGatewayError,
    LedgerRPCError,
    LedgerConnectionError,
    LedgerTimeoutError,
    RawEvent,
)
from .decoding import DecodeError
from .memory import InMemoryLedger
from ..config import GatewayDriver, get_gateway_driver, get_memory_owner


def create_gateway() -> LedgerGateway:
    """Build the gateway selected by ELECTRA_GATEWAY_DRIVER / ELECTRA_RPC_URL."""
    if get_gateway_driver() == GatewayDriver.WEB3:
        from .web3_gateway import Web3Gateway
        return Web3Gateway.from_env()
    return InMemoryLedger(owner=get_memory_owner())


__all__ = [
    "LedgerGateway",
    "LedgerGatewayError",
    "LedgerRPCError",
    "LedgerConnectionError",
    "LedgerTimeoutError",
    "RawEvent",
    "DecodeError",
    "InMemoryLedger",
    "create_gateway",
]
