"""
Web3 Gateway

LedgerGateway over a deployed Electra contract using web3.py's
AsyncWeb3. Writes are sent from node-managed accounts (eth_sendTransaction);
signing keys never pass through the client.

The event channel polls eth_getLogs from the last seen block, which
works against any HTTP endpoint.

Configuration comes from the environment when built with from_env():
    ELECTRA_RPC_URL, ELECTRA_CONTRACT_ADDRESS, ELECTRA_CONTRACT_ABI (optional path)
"""

import asyncio
import os
from typing import Any, AsyncIterator, Iterable, Optional

from web3 import AsyncWeb3
from web3.exceptions import (
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    Web3Exception,
    Web3RPCError,
)

from ..config import get_contract_address, get_rpc_url
from ..observability import get_logger
from ..schemas import EventKind, TxReceipt, TxRequest
from .abi import ELECTRA_ABI, load_abi
from .base import (
    LedgerConnectionError,
    LedgerGateway,
    LedgerGatewayError,
    LedgerRPCError,
    LedgerTimeoutError,
    RawEvent,
)
from .decoding import to_hex

logger = get_logger(__name__)

_REVERT_PREFIX = "execution reverted"


def _revert_reason(message: str) -> Optional[str]:
    if _REVERT_PREFIX not in message:
        return None
    _, _, reason = message.partition(_REVERT_PREFIX)
    return reason.lstrip(": ").strip()


def _translate(error: Exception) -> LedgerGatewayError:
    """web3 / transport exception → raw gateway error."""
    if isinstance(error, LedgerGatewayError):
        return error
    if isinstance(error, TimeExhausted):
        return LedgerTimeoutError(str(error))
    if isinstance(error, asyncio.TimeoutError):
        return LedgerTimeoutError("RPC request timed out")
    if isinstance(error, (ProviderConnectionError, ConnectionError, OSError)):
        return LedgerConnectionError(str(error))
    if isinstance(error, ContractLogicError):
        message = getattr(error, "message", None) or str(error)
        return LedgerRPCError(message, data=getattr(error, "data", None), revert_reason=_revert_reason(message) or "")
    if isinstance(error, Web3RPCError):
        response = getattr(error, "rpc_response", None) or {}
        rpc_error = response.get("error") or {}
        message = rpc_error.get("message") or getattr(error, "message", None) or str(error)
        return LedgerRPCError(
            message,
            code=rpc_error.get("code"),
            data=rpc_error.get("data"),
            revert_reason=_revert_reason(message),
        )
    return LedgerRPCError(str(error))


class Web3Gateway(LedgerGateway):
    """
    Args:
        rpc_url: JSON-RPC HTTP endpoint
        contract_address: Deployed contract address
        abi: Contract ABI (defaults to ELECTRA_ABI)
        poll_interval: Seconds between eth_getLogs polls for stream_events
        request_timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        abi: Optional[list] = None,
        poll_interval: float = 2.0,
        request_timeout: float = 30.0,
    ):
        self._w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            rpc_url, request_kwargs={"timeout": request_timeout},
        ))
        self._contract = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=abi or ELECTRA_ABI,
        )
        self._poll_interval = poll_interval
        logger.info("Web3 gateway configured", contract=contract_address)

    @classmethod
    def from_env(cls) -> "Web3Gateway":
        rpc_url = get_rpc_url()
        address = get_contract_address()
        if not rpc_url or not address:
            raise ValueError("ELECTRA_RPC_URL and ELECTRA_CONTRACT_ADDRESS must be set")
        abi_path = os.getenv("ELECTRA_CONTRACT_ABI")
        return cls(rpc_url, address, abi=load_abi(abi_path) if abi_path else None)

    @staticmethod
    def _arg(value: Any) -> Any:
        if isinstance(value, str) and value.startswith("0x") and len(value) == 42:
            return AsyncWeb3.to_checksum_address(value)
        return value

    def _function(self, method: str, params: Iterable[Any]):
        try:
            fn = getattr(self._contract.functions, method)
        except AttributeError as e:
            raise LedgerRPCError(f"Unknown contract function {method}") from e
        return fn(*[self._arg(p) for p in params])

    def _tx_params(self, request: TxRequest) -> dict:
        params: dict = {"from": self._arg(request.from_address), "value": request.value}
        if request.gas is not None:
            params["gas"] = request.gas
        if request.gas_price is not None:
            params["gasPrice"] = request.gas_price
        if request.nonce is not None:
            params["nonce"] = request.nonce
        return params

    # ----------------------------------------------------------------
    # Primitives
    # ----------------------------------------------------------------

    async def call(self, method: str, *args: Any) -> Any:
        try:
            return await self._function(method, args).call()
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise _translate(e) from e

    async def estimate_gas(self, request: TxRequest) -> int:
        params = self._tx_params(request)
        params.pop("gas", None)
        params.pop("nonce", None)
        try:
            return await self._function(request.method, request.params).estimate_gas(params)
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise _translate(e) from e

    async def gas_price(self) -> int:
        try:
            return await self._w3.eth.gas_price
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise _translate(e) from e

    async def transaction_count(self, address: str) -> int:
        try:
            return await self._w3.eth.get_transaction_count(self._arg(address), "pending")
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise _translate(e) from e

    async def send_transaction(self, request: TxRequest) -> str:
        try:
            tx_hash = await self._function(request.method, request.params).transact(
                self._tx_params(request)
            )
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise _translate(e) from e
        return to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise LedgerTimeoutError(str(e), tx_hash) from e
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise _translate(e) from e

        return TxReceipt(
            tx_hash=to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            status=receipt["status"] == 1,
        )

    async def block_number(self) -> int:
        try:
            return await self._w3.eth.block_number
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise _translate(e) from e

    async def get_past_events(
        self,
        kind: EventKind,
        from_block: int = 0,
        to_block: Optional[int] = None,
    ) -> list[RawEvent]:
        event = getattr(self._contract.events, EventKind(kind).value)
        try:
            logs = await event.get_logs(
                from_block=from_block,
                to_block="latest" if to_block is None else to_block,
            )
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise _translate(e) from e
        return [self._raw_event(log) for log in logs]

    @staticmethod
    def _raw_event(log) -> RawEvent:
        return RawEvent(
            name=log["event"],
            args=dict(log["args"]),
            block_number=log["blockNumber"],
            tx_hash=to_hex(log["transactionHash"]),
            log_index=log["logIndex"],
        )

    @property
    def supports_subscriptions(self) -> bool:
        return True

    async def stream_events(
        self,
        kinds: Iterable[EventKind],
        from_block: Optional[int] = None,
    ) -> AsyncIterator[RawEvent]:
        kinds = [EventKind(k) for k in kinds]
        try:
            cursor = from_block if from_block is not None else await self._w3.eth.block_number + 1
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise LedgerConnectionError(str(e)) from e

        while True:
            try:
                head = await self._w3.eth.block_number
                batch: list[RawEvent] = []
                if head >= cursor:
                    for kind in kinds:
                        batch.extend(await self.get_past_events(kind, cursor, head))
            except (LedgerGatewayError, Web3Exception, OSError, asyncio.TimeoutError) as e:
                raise LedgerConnectionError(f"Log polling failed: {e}") from e

            batch.sort(key=lambda ev: (ev.block_number or 0, ev.log_index or 0))
            for event in batch:
                yield event
            if head >= cursor:
                cursor = head + 1
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        provider = self._w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
