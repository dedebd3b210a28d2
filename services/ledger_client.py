"""
Ledger Client
=============

Read/write proxy to the DealPact escrow contract on Base. The contract is the
source of truth for funds; the bot only mirrors its status.

``LedgerClient`` is the interface the rest of the bot depends on.
``Web3EscrowLedger`` implements it with web3.py. web3's HTTP provider is
blocking, so every call runs in a worker thread and is bounded with
``asyncio.wait_for``. All failures surface as ``LedgerUnavailableError``.

Writes are submit-then-confirm: a write whose receipt does not arrive within the
confirmation timeout returns ``LedgerWriteResult(tx_hash, confirmed=False)``
and is settled later by reconciliation re-reading the contract.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, NamedTuple, Optional, TypeVar

from web3 import Web3
from web3.exceptions import TimeExhausted

from config import Config
from models import LedgerStatus
from utils.datetime_helpers import from_unix_timestamp
from utils.deal_errors import LedgerUnavailableError
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerSnapshot(NamedTuple):
    """One read of a deal on the contract"""

    exists: bool
    status: Optional[LedgerStatus] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    chain_deal_id: Optional[int] = None


class LedgerWriteResult(NamedTuple):
    tx_hash: Optional[str]
    confirmed: bool


NOT_ON_LEDGER = LedgerSnapshot(exists=False)


class LedgerClient(ABC):
    """Contract operations used by the deal service and reconciler; ``ref`` is the external id (deal code)"""

    @abstractmethod
    async def create_escrow(self, external_id: str, seller_wallet: str, buyer_wallet: str,
                            amount: Decimal) -> LedgerWriteResult:
        ...

    @abstractmethod
    async def get_status(self, external_id: str) -> LedgerSnapshot:
        ...

    @abstractmethod
    async def mark_disputed(self, ref: str) -> LedgerWriteResult:
        ...

    @abstractmethod
    async def resolve_release(self, ref: str) -> LedgerWriteResult:
        ...

    @abstractmethod
    async def resolve_refund(self, ref: str) -> LedgerWriteResult:
        ...


async def guarded_ledger_call(call: Awaitable[T], operation: str, timeout: float = None,
                              deal_id: Optional[str] = None) -> T:
    """
    Bound a ledger call with a timeout; timeouts and transport errors become
    LedgerUnavailableError so callers handle one failure type.
    """
    timeout = timeout or Config.LEDGER_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except LedgerUnavailableError:
        raise
    except asyncio.TimeoutError:
        logger.warning(f"⏱️ LEDGER_TIMEOUT: {operation} {deal_id or ''} after {timeout}s")
        raise LedgerUnavailableError(operation, f"timed out after {timeout}s", deal_id)
    except Exception as e:
        logger.error(f"❌ LEDGER_ERROR: {operation} {deal_id or ''}: {e}")
        raise LedgerUnavailableError(operation, str(e), deal_id) from e


ESCROW_ABI = [
    {
        "name": "createDeal",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_externalId", "type": "string"},
            {"name": "_seller", "type": "address"},
            {"name": "_buyer", "type": "address"},
            {"name": "_amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "externalIdToDealId",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "string"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "deals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "uint256"}],
        "outputs": [
            {"name": "externalId", "type": "string"},
            {"name": "seller", "type": "address"},
            {"name": "buyer", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "status", "type": "uint8"},
            {"name": "createdAt", "type": "uint256"},
            {"name": "completedAt", "type": "uint256"},
        ],
    },
    {
        "name": "dispute",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_dealId", "type": "uint256"}],
        "outputs": [],
    },
    {
        "name": "resolveRelease",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_dealId", "type": "uint256"}],
        "outputs": [],
    },
    {
        "name": "refund",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_dealId", "type": "uint256"}],
        "outputs": [],
    },
]


class Web3EscrowLedger(LedgerClient):
    """web3.py implementation against the deployed escrow contract"""

    def __init__(self, rpc_url: str = None, contract_address: str = None, private_key: str = None,
                 chain_id: int = None, gas_limit: int = None, read_timeout: float = None,
                 confirm_timeout: float = None):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url or Config.RPC_URL,
                                         request_kwargs={"timeout": read_timeout or Config.LEDGER_TIMEOUT_SECONDS}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address or Config.CONTRACT_ADDRESS),
            abi=ESCROW_ABI,
        )
        self._private_key = private_key or Config.PRIVATE_KEY
        self.account = self.w3.eth.account.from_key(self._private_key)
        self.chain_id = chain_id or Config.CHAIN_ID
        self.gas_limit = gas_limit or Config.LEDGER_GAS_LIMIT
        self.read_timeout = read_timeout or Config.LEDGER_TIMEOUT_SECONDS
        self.confirm_timeout = confirm_timeout or Config.LEDGER_CONFIRM_TIMEOUT_SECONDS
        # Nonces come from the pending count, so submissions must not interleave
        self._send_lock = threading.Lock()
        logger.info(f"⛓️ LEDGER_CLIENT: contract {self.contract.address} on chain {self.chain_id} as {self.account.address}")

    # ---------------------------------------------------------------- reads

    def _read_status_sync(self, external_id: str) -> LedgerSnapshot:
        chain_deal_id = self.contract.functions.externalIdToDealId(external_id).call()
        if int(chain_deal_id) == 0:
            return NOT_ON_LEDGER
        record = self.contract.functions.deals(chain_deal_id).call()
        return LedgerSnapshot(
            exists=True,
            status=LedgerStatus(int(record[4])),
            created_at=from_unix_timestamp(record[5]),
            completed_at=from_unix_timestamp(record[6]),
            chain_deal_id=int(chain_deal_id),
        )

    async def get_status(self, external_id: str) -> LedgerSnapshot:
        return await guarded_ledger_call(
            asyncio.to_thread(self._read_status_sync, external_id),
            "get_status", self.read_timeout, external_id,
        )

    # --------------------------------------------------------------- writes

    def _send_sync(self, fn, operation: str, ref: str) -> LedgerWriteResult:
        with self._send_lock:
            nonce = self.w3.eth.get_transaction_count(self.account.address, "pending")
            tx = fn.build_transaction({
                "from": self.account.address,
                "nonce": nonce,
                "gas": self.gas_limit,
                "gasPrice": int(self.w3.eth.gas_price * 1.2),
                "chainId": self.chain_id,
            })
            signed = self.w3.eth.account.sign_transaction(tx, private_key=self._private_key)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(f"📤 LEDGER_TX_SENT: {operation} {ref} tx={tx_hash_hex}")

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirm_timeout)
        except TimeExhausted:
            logger.warning(f"⏳ LEDGER_TX_UNCONFIRMED: {operation} {ref} tx={tx_hash_hex}")
            return LedgerWriteResult(tx_hash_hex, confirmed=False)

        if receipt.status != 1:
            raise LedgerUnavailableError(operation, f"transaction {tx_hash_hex} reverted", ref)
        logger.info(f"✅ LEDGER_TX_CONFIRMED: {operation} {ref} block={receipt.blockNumber}")
        return LedgerWriteResult(tx_hash_hex, confirmed=True)

    def _chain_deal_id_sync(self, ref: str) -> int:
        chain_deal_id = int(self.contract.functions.externalIdToDealId(ref).call())
        if chain_deal_id == 0:
            raise LedgerUnavailableError("lookup", f"{ref} is not on the ledger", ref)
        return chain_deal_id

    async def _write(self, operation: str, ref: str, build_fn) -> LedgerWriteResult:
        def run():
            return self._send_sync(build_fn(), operation, ref)

        return await guarded_ledger_call(
            asyncio.to_thread(run), operation, self.read_timeout + self.confirm_timeout, ref,
        )

    async def create_escrow(self, external_id: str, seller_wallet: str, buyer_wallet: str,
                            amount: Decimal) -> LedgerWriteResult:
        units = FeeCalculator.to_token_units(amount)
        return await self._write(
            "create_escrow", external_id,
            lambda: self.contract.functions.createDeal(
                external_id,
                Web3.to_checksum_address(seller_wallet),
                Web3.to_checksum_address(buyer_wallet),
                units,
            ),
        )

    async def mark_disputed(self, ref: str) -> LedgerWriteResult:
        def run():
            snapshot = self._read_status_sync(ref)
            # The contract only accepts dispute() on a funded deal
            if not snapshot.exists or snapshot.status != LedgerStatus.FUNDED:
                logger.info(f"⏭️ LEDGER_DISPUTE_SKIPPED: {ref} ledger status {snapshot.status}")
                return LedgerWriteResult(None, confirmed=snapshot.status == LedgerStatus.DISPUTED)
            return self._send_sync(self.contract.functions.dispute(snapshot.chain_deal_id), "mark_disputed", ref)

        return await guarded_ledger_call(
            asyncio.to_thread(run), "mark_disputed", self.read_timeout + self.confirm_timeout, ref,
        )

    async def resolve_release(self, ref: str) -> LedgerWriteResult:
        return await self._write(
            "resolve_release", ref,
            lambda: self.contract.functions.resolveRelease(self._chain_deal_id_sync(ref)),
        )

    async def resolve_refund(self, ref: str) -> LedgerWriteResult:
        return await self._write(
            "resolve_refund", ref,
            lambda: self.contract.functions.refund(self._chain_deal_id_sync(ref)),
        )
