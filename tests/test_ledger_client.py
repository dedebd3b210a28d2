"""
Ledger client tests - timeout guard and contract status decoding with a mocked contract
"""

import asyncio
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from models import LedgerStatus
from services.ledger_client import NOT_ON_LEDGER, Web3EscrowLedger, guarded_ledger_call
from utils.deal_errors import LedgerUnavailableError


def contract_ledger(chain_deal_id: int, record=None) -> Web3EscrowLedger:
    """Web3EscrowLedger with its contract replaced; no RPC connection is made"""
    ledger = Web3EscrowLedger.__new__(Web3EscrowLedger)
    ledger.contract = MagicMock()
    ledger.contract.functions.externalIdToDealId.return_value.call.return_value = chain_deal_id
    ledger.contract.functions.deals.return_value.call.return_value = record
    ledger.read_timeout = 1
    ledger.confirm_timeout = 1
    return ledger


class TestGuardedLedgerCall:

    @pytest.mark.asyncio
    async def test_passes_result_through(self):
        async def read():
            return 42

        assert await guarded_ledger_call(read(), "get_status", timeout=1) == 42

    @pytest.mark.asyncio
    async def test_timeout_becomes_ledger_unavailable(self):
        with pytest.raises(LedgerUnavailableError) as exc:
            await guarded_ledger_call(asyncio.sleep(1), "get_status", timeout=0.01, deal_id="DP-AB12")
        assert exc.value.operation == "get_status"
        assert "timed out" in exc.value.reason
        assert exc.value.deal_id == "DP-AB12"

    @pytest.mark.asyncio
    async def test_transport_error_becomes_ledger_unavailable(self):
        async def broken():
            raise ConnectionError("connection refused")

        with pytest.raises(LedgerUnavailableError) as exc:
            await guarded_ledger_call(broken(), "resolve_release", timeout=1)
        assert exc.value.reason == "connection refused"
        assert "Please try again" in exc.value.user_message


class TestStatusDecoding:

    @pytest.mark.asyncio
    async def test_unknown_external_id(self):
        ledger = contract_ledger(0)
        assert await ledger.get_status("DP-AB12") == NOT_ON_LEDGER
        ledger.contract.functions.deals.assert_not_called()

    @pytest.mark.asyncio
    async def test_funded_deal(self):
        record = ("DP-AB12", "0xseller", "0xbuyer", 50_000_000, 1, 1767225600, 0)
        ledger = contract_ledger(7, record)

        snapshot = await ledger.get_status("DP-AB12")

        assert snapshot.exists
        assert snapshot.status == LedgerStatus.FUNDED
        assert snapshot.chain_deal_id == 7
        assert snapshot.created_at == datetime(2026, 1, 1)
        assert snapshot.completed_at is None
        ledger.contract.functions.deals.assert_called_once_with(7)

    @pytest.mark.asyncio
    async def test_rpc_failure_surfaces_as_ledger_unavailable(self):
        ledger = contract_ledger(7)
        ledger.contract.functions.externalIdToDealId.return_value.call.side_effect = OSError("rpc down")
        with pytest.raises(LedgerUnavailableError):
            await ledger.get_status("DP-AB12")

    @pytest.mark.asyncio
    async def test_dispute_marker_skipped_unless_funded(self):
        record = ("DP-AB12", "0xseller", "0xbuyer", 50_000_000, 4, 1767225600, 0)
        ledger = contract_ledger(7, record)

        result = await ledger.mark_disputed("DP-AB12")

        assert result.tx_hash is None
        assert result.confirmed is True
        ledger.contract.functions.dispute.assert_not_called()
