"""
Client Configuration

Handles tuning for reads, writes and event delivery, plus gateway
selection for the HTTP surface.

Environment Variables:
    ELECTRA_MAX_RETRIES: Total submission attempts per write (default 3)
    ELECTRA_RETRY_DELAY: Base backoff delay in seconds (default 1.0)
    ELECTRA_CACHE_TTL: Read cache TTL in seconds (default 30)
    ELECTRA_MAX_GAS_PRICE: Gas price ceiling in wei (default 50 gwei)
    ELECTRA_GAS_BUFFER_MULTIPLIER: Gas estimate multiplier (default 1.2)
    ELECTRA_BATCH_SIZE: Concurrent reads per batch (default 10)
    ELECTRA_EVENT_POLLING_INTERVAL: Polling fallback interval in seconds (default 5)
    ELECTRA_CONFIRMATION_TIMEOUT: Receipt wait in seconds (default 120)

    ELECTRA_GATEWAY_DRIVER: Which ledger gateway to use
        - "memory" (default if no RPC configured)
        - "web3" (requires ELECTRA_RPC_URL and ELECTRA_CONTRACT_ADDRESS)
    ELECTRA_RPC_URL: JSON-RPC endpoint
    ELECTRA_CONTRACT_ADDRESS: Deployed Electra contract address
    ELECTRA_MEMORY_OWNER: Commissioner address of the in-memory ledger
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

GWEI = 10 ** 9


class GatewayDriver(str, Enum):
    """Supported ledger gateway drivers."""
    MEMORY = "memory"
    WEB3 = "web3"


@dataclass
class ClientConfig:
    """Tuning for the cache, transaction manager and event monitor."""
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds, doubled per attempt
    cache_ttl: float = 30.0
    max_gas_price: int = 50 * GWEI
    gas_buffer_multiplier: float = 1.2
    batch_size: int = 10
    event_polling_interval: float = 5.0
    confirmation_timeout: float = 120.0
    confirmations: int = 1
    nonce_cache_ttl: float = 10.0
    history_limit: int = 100
    revert_reason_max_length: int = 120
    event_resubscribe_attempts: int = 5
    max_resubscribe_delay: float = 30.0
    stale_while_revalidate: bool = True

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.gas_buffer_multiplier < 1:
            raise ValueError("gas_buffer_multiplier must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("ELECTRA_MAX_RETRIES", "3")),
            retry_delay=float(os.getenv("ELECTRA_RETRY_DELAY", "1.0")),
            cache_ttl=float(os.getenv("ELECTRA_CACHE_TTL", "30")),
            max_gas_price=int(os.getenv("ELECTRA_MAX_GAS_PRICE", str(50 * GWEI))),
            gas_buffer_multiplier=float(os.getenv("ELECTRA_GAS_BUFFER_MULTIPLIER", "1.2")),
            batch_size=int(os.getenv("ELECTRA_BATCH_SIZE", "10")),
            event_polling_interval=float(os.getenv("ELECTRA_EVENT_POLLING_INTERVAL", "5")),
            confirmation_timeout=float(os.getenv("ELECTRA_CONFIRMATION_TIMEOUT", "120")),
            confirmations=int(os.getenv("ELECTRA_CONFIRMATIONS", "1")),
            stale_while_revalidate=os.getenv("ELECTRA_STALE_WHILE_REVALIDATE", "1").lower()
            in ("1", "true", "yes"),
        )


def get_rpc_url() -> Optional[str]:
    return os.getenv("ELECTRA_RPC_URL") or None


def get_contract_address() -> Optional[str]:
    return os.getenv("ELECTRA_CONTRACT_ADDRESS") or None


def get_gateway_driver() -> GatewayDriver:
    """
    Determine which gateway driver to use.

    Priority:
    1. ELECTRA_GATEWAY_DRIVER environment variable (explicit)
    2. If ELECTRA_RPC_URL is set, use web3
    3. Otherwise, use the in-memory ledger
    """
    explicit = os.getenv("ELECTRA_GATEWAY_DRIVER", "").lower()

    if explicit:
        try:
            return GatewayDriver(explicit)
        except ValueError:
            valid = [d.value for d in GatewayDriver]
            raise ValueError(
                f"Invalid ELECTRA_GATEWAY_DRIVER: {explicit}. "
                f"Must be one of: {valid}"
            )

    if get_rpc_url():
        return GatewayDriver.WEB3

    return GatewayDriver.MEMORY


# Owner (commissioner) of the in-memory ledger used by the memory driver
DEFAULT_MEMORY_OWNER = "0x00000000000000000000000000000000000000a1"


def get_memory_owner() -> str:
    return os.getenv("ELECTRA_MEMORY_OWNER", DEFAULT_MEMORY_OWNER)
