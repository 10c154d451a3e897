"""
Chain Client Adapter - the single point of contact with the blockchain RPC endpoint

Reads go through registered contract ABIs, writes are signed locally with the
agent key and broadcast as raw transactions. Web3 and aiohttp exceptions are
translated into the errors module's taxonomy here and never leak further.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

from .abis import (
    AGENT_REGISTRY_ABI,
    ERC20_ABI,
    ERC20_TRANSFER_TOPIC,
    PERMISSION_ABI,
    UNISWAP_V3_QUOTER_ABI,
)
from .errors import (
    InsufficientFundsError,
    NonceError,
    ReceiptTimeoutError,
    RevertError,
    RevertedError,
    RpcError,
)
from .gas import apply_gas_fields, buffered_gas_limit, get_gas_recommendation, to_gwei_string
from .models import PermissionState, QuoteResult, TxHandle

logger = logging.getLogger(__name__)

EXECUTION_STARTED_TOPIC = Web3.to_hex(
    Web3.keccak(text="ExecutionStarted(uint256,uint256,address,uint256,address,address)")
)

_RPC_FAILURES = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, ValueError)


def translate_rpc_error(error: Exception, method: Optional[str] = None) -> Exception:
    """Map a web3/aiohttp failure onto the agent error taxonomy"""
    if isinstance(error, ContractLogicError):
        reason = getattr(error, "message", None) or str(error)
        return RevertError(reason, method)

    message = str(error)
    lowered = message.lower()
    if "insufficient funds" in lowered:
        return InsufficientFundsError(message)
    if "nonce" in lowered:
        return NonceError(message)
    if "execution reverted" in lowered:
        return RevertError(message, method)
    if isinstance(error, asyncio.TimeoutError):
        return RpcError(f"RPC timeout{' calling ' + method if method else ''}")
    return RpcError(f"RPC failure{' calling ' + method if method else ''}: {message}")


@dataclass
class PreparedTransaction:
    """Signed transaction whose hash is known before broadcast"""
    tx_hash: str
    raw_transaction: bytes
    nonce: int
    to: str
    method: str


class ChainClient:
    """Async read/write access to one chain on behalf of one signing key"""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        chain_id: int,
        request_timeout: float = 30.0,
        receipt_poll_seconds: float = 3.0
    ):
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            rpc_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)}
        ))
        self.account = Account.from_key(private_key)
        self.address = self.account.address
        self.chain_id = chain_id
        self.receipt_poll_seconds = receipt_poll_seconds
        self._contracts: Dict[str, Any] = {}

    # ============================================
    # Contracts and reads
    # ============================================

    def register_contract(self, address: str, abi: List[Dict]):
        """Bind an ABI to an address; later reads and writes look it up by address"""
        checksum = Web3.to_checksum_address(address)
        contract = self.w3.eth.contract(address=checksum, abi=abi)
        self._contracts[checksum] = contract
        return contract

    def _contract(self, address: str, default_abi: Optional[List[Dict]] = None):
        checksum = Web3.to_checksum_address(address)
        contract = self._contracts.get(checksum)
        if contract is None:
            if default_abi is None:
                raise ValueError(f"No ABI registered for contract {checksum}")
            contract = self.register_contract(checksum, default_abi)
        return contract

    async def read_contract_value(self, address: str, method: str, args: Sequence[Any] = ()) -> Any:
        """
        Call a view method

        Raises:
            RpcError: network failure or timeout
            RevertError: the call reverted, with the revert reason
        """
        contract = self._contract(address)
        try:
            return await getattr(contract.functions, method)(*args).call()
        except _RPC_FAILURES as e:
            raise translate_rpc_error(e, method) from e

    async def get_native_balance(self, address: Optional[str] = None) -> int:
        try:
            return await self.w3.eth.get_balance(Web3.to_checksum_address(address or self.address))
        except _RPC_FAILURES as e:
            raise translate_rpc_error(e, "eth_getBalance") from e

    async def get_token_balance(self, token_address: str, owner: Optional[str] = None) -> int:
        self._contract(token_address, ERC20_ABI)
        owner = Web3.to_checksum_address(owner or self.address)
        return await self.read_contract_value(token_address, "balanceOf", [owner])

    async def get_allowance(self, token_address: str, spender: str, owner: Optional[str] = None) -> int:
        self._contract(token_address, ERC20_ABI)
        owner = Web3.to_checksum_address(owner or self.address)
        return await self.read_contract_value(
            token_address, "allowance", [owner, Web3.to_checksum_address(spender)]
        )

    async def get_registered_agent_id(self, registry_address: str) -> Optional[int]:
        """On-chain agent id of the signing wallet, None when it is not registered"""
        self._contract(registry_address, AGENT_REGISTRY_ABI)
        registered = await self.read_contract_value(registry_address, "isRegisteredAgent", [self.address])
        if not registered:
            return None
        agent_id, _metadata = await self.read_contract_value(registry_address, "getAgentByWallet", [self.address])
        return int(agent_id)

    async def get_permission_state(self, permission_address: str, user: str, token: str) -> PermissionState:
        self._contract(permission_address, PERMISSION_ABI)
        amount_remaining, expires_at, is_active = await self.read_contract_value(
            permission_address,
            "getPermission",
            [Web3.to_checksum_address(user), self.address, Web3.to_checksum_address(token)],
        )
        return PermissionState(
            amount_remaining=int(amount_remaining),
            expires_at=int(expires_at),
            is_active=bool(is_active),
        )

    async def quote_exact_input_single(
        self,
        quoter_address: str,
        token_in: str,
        token_out: str,
        amount_in: int,
        fee: int
    ) -> QuoteResult:
        """Quote an exact-input single-pool swap via the V3 quoter (eth_call only)"""
        self._contract(quoter_address, UNISWAP_V3_QUOTER_ABI)
        params = (
            Web3.to_checksum_address(token_in),
            Web3.to_checksum_address(token_out),
            amount_in,
            fee,
            0,
        )
        amount_out, _sqrt_price_after, _ticks_crossed, gas_estimate = await self.read_contract_value(
            quoter_address, "quoteExactInputSingle", [params]
        )
        return QuoteResult(amount_out=int(amount_out), gas_estimate=int(gas_estimate))

    # ============================================
    # Writes
    # ============================================

    async def prepare_transaction(
        self,
        address: str,
        method: str,
        args: Sequence[Any] = (),
        value: int = 0
    ) -> PreparedTransaction:
        """
        Build and sign a contract call at the node's pending nonce

        Gas is estimated here, so a call that would revert fails with
        RevertError before anything is broadcast.
        """
        contract = self._contract(address)
        function = getattr(contract.functions, method)(*args)
        try:
            nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
            estimate = await function.estimate_gas({"from": self.address, "value": value})
            recommendation = await get_gas_recommendation(self.w3)
            tx = {
                "from": self.address,
                "nonce": nonce,
                "value": value,
                "chainId": self.chain_id,
                "gas": buffered_gas_limit(estimate),
            }
            apply_gas_fields(tx, recommendation)
            tx = await function.build_transaction(tx)
        except _RPC_FAILURES as e:
            raise translate_rpc_error(e, method) from e

        fee = recommendation["maxFeePerGas"] or recommendation["legacyGasPrice"]
        logger.debug(f"Signing {method} nonce={nonce} gas={tx['gas']} fee={to_gwei_string(fee)} gwei")

        signed = self.account.sign_transaction(tx)
        return PreparedTransaction(
            tx_hash=Web3.to_hex(signed.hash),
            raw_transaction=bytes(signed.raw_transaction),
            nonce=nonce,
            to=contract.address,
            method=method,
        )

    async def broadcast(self, prepared: PreparedTransaction) -> TxHandle:
        """
        Send a signed transaction

        Raises:
            InsufficientFundsError, NonceError: rejected by the node
            RpcError: outcome unknown, the transaction may have reached the pool
        """
        try:
            await self.w3.eth.send_raw_transaction(prepared.raw_transaction)
        except _RPC_FAILURES as e:
            if "already known" not in str(e).lower():
                raise translate_rpc_error(e, prepared.method) from e
            logger.info(f"Transaction {prepared.tx_hash} already in the pool")
        logger.info(f"Broadcast {prepared.method} tx {prepared.tx_hash} (nonce {prepared.nonce})")
        return TxHandle(
            tx_hash=prepared.tx_hash,
            nonce=prepared.nonce,
            to=prepared.to,
            method=prepared.method,
        )

    async def submit_transaction(
        self,
        address: str,
        method: str,
        args: Sequence[Any] = (),
        value: int = 0
    ) -> TxHandle:
        """Sign and broadcast a contract call, returning as soon as the node accepts it"""
        prepared = await self.prepare_transaction(address, method, args, value)
        return await self.broadcast(prepared)

    # ============================================
    # Receipts
    # ============================================

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Normalized receipt, None while the transaction is not mined"""
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except _RPC_FAILURES as e:
            raise translate_rpc_error(e, "eth_getTransactionReceipt") from e
        if receipt is None or receipt.get("blockNumber") is None:
            return None
        return self._normalize_receipt(receipt)

    async def transaction_known(self, tx_hash: str) -> bool:
        """Whether the node still knows the transaction (mined or in its pool)"""
        try:
            await self.w3.eth.get_transaction(tx_hash)
            return True
        except TransactionNotFound:
            return False
        except _RPC_FAILURES as e:
            raise translate_rpc_error(e, "eth_getTransactionByHash") from e

    async def wait_for_receipt(
        self,
        handle: TxHandle,
        timeout: float,
        poll_interval: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Poll until the transaction is mined

        Raises:
            ReceiptTimeoutError: not mined within ``timeout`` seconds; it may still confirm later
            RevertedError: mined with status 0
        """
        poll_interval = poll_interval or self.receipt_poll_seconds
        deadline = time.monotonic() + timeout

        while True:
            try:
                receipt = await self.get_receipt(handle.tx_hash)
            except RpcError as e:
                logger.warning(f"Error checking receipt for {handle.tx_hash}: {e}")
                receipt = None

            if receipt is not None:
                if receipt["status"] == 0:
                    reason = await self._revert_reason(handle.tx_hash, receipt["blockNumber"])
                    raise RevertedError(handle.tx_hash, reason, receipt)
                return receipt

            if time.monotonic() >= deadline:
                raise ReceiptTimeoutError(handle.tx_hash, timeout)
            await asyncio.sleep(poll_interval)

    async def _revert_reason(self, tx_hash: str, block_number: int) -> str:
        """Replay a reverted transaction as eth_call to recover its reason"""
        try:
            tx = await self.w3.eth.get_transaction(tx_hash)
            await self.w3.eth.call(
                {"from": tx["from"], "to": tx["to"], "data": tx["input"], "value": tx["value"]},
                block_number,
            )
        except ContractLogicError as e:
            return getattr(e, "message", None) or str(e)
        except _RPC_FAILURES as e:
            logger.debug(f"Could not replay {tx_hash} for a revert reason: {e}")
        return "execution reverted"

    @staticmethod
    def _normalize_receipt(receipt) -> Dict[str, Any]:
        return {
            "transactionHash": Web3.to_hex(receipt["transactionHash"]),
            "blockNumber": receipt["blockNumber"],
            "status": receipt["status"],
            "gasUsed": receipt["gasUsed"],
            "logs": [
                {
                    "address": log["address"],
                    "topics": [Web3.to_hex(topic) for topic in log["topics"]],
                    "data": Web3.to_hex(log["data"]),
                }
                for log in receipt.get("logs", [])
            ],
        }

    @staticmethod
    def transfer_amount_from_receipt(receipt: Dict[str, Any], token_address: str, recipient: str) -> int:
        """Sum of ERC-20 Transfer amounts of ``token_address`` to ``recipient`` in a normalized receipt"""
        total = 0
        for log in receipt.get("logs", []):
            topics = log.get("topics", [])
            if len(topics) < 3 or topics[0].lower() != ERC20_TRANSFER_TOPIC:
                continue
            if log["address"].lower() != token_address.lower():
                continue
            if "0x" + topics[2][-40:].lower() != recipient.lower():
                continue
            total += int(log["data"], 16)
        return total

    @staticmethod
    def execution_id_from_receipt(receipt: Dict[str, Any], execution_address: str) -> Optional[int]:
        """executionId emitted by ExecutionStarted in a normalized receipt"""
        for log in receipt.get("logs", []):
            topics = log.get("topics", [])
            if (
                topics
                and topics[0].lower() == EXECUTION_STARTED_TOPIC
                and log["address"].lower() == execution_address.lower()
            ):
                return int(topics[1], 16)
        return None

    async def close(self):
        try:
            await self.w3.provider.disconnect()
        except Exception as e:
            logger.debug(f"Error closing RPC provider: {e}")
