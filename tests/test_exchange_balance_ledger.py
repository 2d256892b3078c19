"""
Exchange balance ledger tests
Deposits, locks under concurrency and the withdrawal lifecycle
"""

import asyncio
from decimal import Decimal

import pytest

from services.errors import (
    ConflictError, ForbiddenError, InsufficientBalanceError, InvalidTransitionError, UnauthorizedError,
    ValidationError
)
from services.exchange_balance_ledger import ExchangeBalanceLedger

pytestmark = pytest.mark.usefixtures("database")

WALLET = "0xa11ce00000000000000000000000000000000001"
OTHER = "0x0b0b000000000000000000000000000000000002"


class TestDeposits:
    """Deposits credit exactly once per transaction hash"""

    @pytest.mark.asyncio
    async def test_deposit_credits_available(self):
        result = await ExchangeBalanceLedger.confirm_deposit(WALLET.upper(), "usdc", "100", "0xDEP1")

        assert result.replayed is False
        assert result.wallet_address == WALLET
        assert result.token == "USDC"

        balance = await ExchangeBalanceLedger.get_balance(WALLET, "USDC")
        assert balance.available == Decimal("100")
        assert balance.locked == Decimal("0")

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self):
        first = await ExchangeBalanceLedger.confirm_deposit(WALLET, "USDC", "100", "0xdep1")
        replay = await ExchangeBalanceLedger.confirm_deposit(WALLET, "USDC", "100", "0xDEP1")

        assert replay.replayed is True
        assert replay.deposit_id == first.deposit_id
        assert (await ExchangeBalanceLedger.get_balance(WALLET, "USDC")).available == Decimal("100")

    @pytest.mark.asyncio
    async def test_divergent_replay_conflicts(self):
        await ExchangeBalanceLedger.confirm_deposit(WALLET, "USDC", "100", "0xdep1")
        with pytest.raises(ConflictError):
            await ExchangeBalanceLedger.confirm_deposit(WALLET, "USDC", "150", "0xdep1")
        with pytest.raises(ConflictError):
            await ExchangeBalanceLedger.confirm_deposit(OTHER, "USDC", "100", "0xdep1")

    @pytest.mark.asyncio
    async def test_concurrent_replays_credit_once(self):
        results = await asyncio.gather(
            *[ExchangeBalanceLedger.confirm_deposit(WALLET, "ETH", "2", "0xsame") for _ in range(4)],
            return_exceptions=True,
        )
        assert not [r for r in results if isinstance(r, Exception)]
        assert sum(1 for r in results if not r.replayed) == 1
        assert (await ExchangeBalanceLedger.get_balance(WALLET, "ETH")).available == Decimal("2")

    @pytest.mark.asyncio
    async def test_invalid_input(self):
        with pytest.raises(ValidationError):
            await ExchangeBalanceLedger.confirm_deposit(WALLET, "USDC", "0", "0xdep")
        with pytest.raises(ValidationError):
            await ExchangeBalanceLedger.confirm_deposit(WALLET, "USDC", "10", "")
        with pytest.raises(UnauthorizedError):
            await ExchangeBalanceLedger.confirm_deposit("", "USDC", "10", "0xdep")


class TestLocking:
    """available/locked moves are checked at update time"""

    @pytest.mark.asyncio
    async def test_lock_and_unlock(self, fund_wallet):
        await fund_wallet(WALLET, "USDC", "100")

        balance = await ExchangeBalanceLedger.lock_balance(WALLET, "USDC", "60")
        assert (balance.available, balance.locked) == (Decimal("40"), Decimal("60"))
        assert balance.total == Decimal("100")

        balance = await ExchangeBalanceLedger.unlock_balance(WALLET, "USDC", "60")
        assert (balance.available, balance.locked) == (Decimal("100"), Decimal("0"))

    @pytest.mark.asyncio
    async def test_lock_beyond_available_leaves_balance_untouched(self, fund_wallet):
        await fund_wallet(WALLET, "USDC", "100")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ExchangeBalanceLedger.lock_balance(WALLET, "USDC", "100.5")
        assert exc_info.value.required == Decimal("100.5")
        assert exc_info.value.available == Decimal("100")

        balance = await ExchangeBalanceLedger.get_balance(WALLET, "USDC")
        assert (balance.available, balance.locked) == (Decimal("100"), Decimal("0"))

    @pytest.mark.asyncio
    async def test_lock_without_balance_row(self):
        with pytest.raises(InsufficientBalanceError):
            await ExchangeBalanceLedger.lock_balance(WALLET, "BTC", "1")

    @pytest.mark.asyncio
    async def test_unlock_more_than_locked(self, fund_wallet):
        await fund_wallet(WALLET, "USDC", "100")
        await ExchangeBalanceLedger.lock_balance(WALLET, "USDC", "10")
        with pytest.raises(InsufficientBalanceError):
            await ExchangeBalanceLedger.unlock_balance(WALLET, "USDC", "20")

    @pytest.mark.asyncio
    async def test_concurrent_locks_never_overdraw(self, fund_wallet):
        await fund_wallet(WALLET, "USDC", "100")

        results = await asyncio.gather(
            *[ExchangeBalanceLedger.lock_balance(WALLET, "USDC", "30") for _ in range(5)],
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 3
        assert len(failed) == 2
        assert all(isinstance(e, InsufficientBalanceError) for e in failed)

        balance = await ExchangeBalanceLedger.get_balance(WALLET, "USDC")
        assert (balance.available, balance.locked) == (Decimal("10"), Decimal("90"))

    @pytest.mark.asyncio
    async def test_balances_listed_per_token(self, fund_wallet):
        await fund_wallet(WALLET, "USDC", "100")
        await fund_wallet(WALLET, "ETH", "1.5")

        balances = await ExchangeBalanceLedger.get_balances(WALLET)
        assert [b.token for b in balances] == ["ETH", "USDC"]
        assert balances[0].available == Decimal("1.5")

    @pytest.mark.asyncio
    async def test_unknown_wallet_reads_zero(self):
        balance = await ExchangeBalanceLedger.get_balance(OTHER, "USDC")
        assert balance.total == Decimal("0")


class TestWithdrawals:
    """pending -> completed (debit) or cancelled (unlock)"""

    @pytest.mark.asyncio
    async def test_request_and_confirm(self, fund_wallet):
        await fund_wallet(WALLET, "USDC", "100")

        withdrawal = await ExchangeBalanceLedger.request_withdrawal(WALLET, "USDC", "40", "0xdestination")
        assert withdrawal.status == "pending"
        balance = await ExchangeBalanceLedger.get_balance(WALLET, "USDC")
        assert (balance.available, balance.locked) == (Decimal("60"), Decimal("40"))

        completed = await ExchangeBalanceLedger.confirm_withdrawal(withdrawal.id, "0xWTX")
        assert completed.status == "completed"
        assert completed.tx_hash == "0xwtx"
        balance = await ExchangeBalanceLedger.get_balance(WALLET, "USDC")
        assert (balance.available, balance.locked) == (Decimal("60"), Decimal("0"))

        replay = await ExchangeBalanceLedger.confirm_withdrawal(withdrawal.id, "0xwtx")
        assert replay.status == "completed"
        assert (await ExchangeBalanceLedger.get_balance(WALLET, "USDC")).locked == Decimal("0")

        with pytest.raises(InvalidTransitionError):
            await ExchangeBalanceLedger.cancel_withdrawal(withdrawal.id, WALLET)

    @pytest.mark.asyncio
    async def test_cancel_returns_funds(self, fund_wallet):
        await fund_wallet(WALLET, "USDC", "100")
        withdrawal = await ExchangeBalanceLedger.request_withdrawal(WALLET, "USDC", "25", "0xdestination")

        with pytest.raises(ForbiddenError):
            await ExchangeBalanceLedger.cancel_withdrawal(withdrawal.id, OTHER)

        cancelled = await ExchangeBalanceLedger.cancel_withdrawal(withdrawal.id, WALLET)
        assert cancelled.status == "cancelled"
        balance = await ExchangeBalanceLedger.get_balance(WALLET, "USDC")
        assert (balance.available, balance.locked) == (Decimal("100"), Decimal("0"))

        with pytest.raises(InvalidTransitionError):
            await ExchangeBalanceLedger.confirm_withdrawal(withdrawal.id, "0xlate")

    @pytest.mark.asyncio
    async def test_withdrawal_requires_funds(self, fund_wallet):
        await fund_wallet(WALLET, "USDC", "10")
        with pytest.raises(InsufficientBalanceError):
            await ExchangeBalanceLedger.request_withdrawal(WALLET, "USDC", "11", "0xdestination")
        with pytest.raises(ValidationError):
            await ExchangeBalanceLedger.request_withdrawal(WALLET, "USDC", "5", " ")
