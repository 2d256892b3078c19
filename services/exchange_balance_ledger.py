"""
Exchange Balance Ledger
Custody bookkeeping for per-wallet, per-token available/locked balances.

Every mutation is a single conditional UPDATE (``available = available - x WHERE
available >= x``); there is no read-then-write path, so concurrent order placement,
fills and withdrawals on the same row cannot overdraw it.
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_managed_session
from models import (
    ExchangeBalance, ExchangeDeposit, ExchangeWithdrawal, WithdrawalStatus, utc_now
)
from services.errors import (
    ConflictError, ForbiddenError, InsufficientBalanceError, InvalidTransitionError,
    NotFoundError, UnauthorizedError, ValidationError
)
from utils.atomic_transactions import insert_ignore_conflict, update_if
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


class BalanceSnapshot(NamedTuple):
    wallet_address: str
    token: str
    available: Decimal
    locked: Decimal

    @property
    def total(self) -> Decimal:
        return self.available + self.locked


class DepositResult(NamedTuple):
    deposit_id: int
    wallet_address: str
    token: str
    amount: Decimal
    tx_hash: str
    replayed: bool


@asynccontextmanager
async def session_scope(session: Optional[AsyncSession] = None):
    """Join the caller's transaction, or run in a new managed one"""
    if session is not None:
        yield session
    else:
        async with async_managed_session() as new_session:
            yield new_session


def _normalize_token(token: str) -> str:
    if not token or not token.strip():
        raise ValidationError("token is required", details={"field": "token"})
    return token.strip().upper()


def _require_wallet(wallet: Optional[str]) -> str:
    normalized = (wallet or "").strip().lower()
    if not normalized:
        raise UnauthorizedError()
    return normalized


class ExchangeBalanceLedger:
    """Atomic per-(wallet, token) balance mutations"""

    @classmethod
    async def _ensure_row(cls, session: AsyncSession, wallet: str, token: str):
        await insert_ignore_conflict(
            session,
            ExchangeBalance,
            {
                "wallet_address": wallet,
                "token": token,
                "available_balance": Decimal("0"),
                "locked_balance": Decimal("0"),
                "created_at": utc_now(),
                "updated_at": utc_now(),
            },
            conflict_columns=("wallet_address", "token"),
        )

    @classmethod
    async def _read(cls, session: AsyncSession, wallet: str, token: str) -> BalanceSnapshot:
        row = (await session.execute(
            select(ExchangeBalance.available_balance, ExchangeBalance.locked_balance).where(
                ExchangeBalance.wallet_address == wallet,
                ExchangeBalance.token == token,
            )
        )).first()
        if row is None:
            return BalanceSnapshot(wallet, token, Decimal("0"), Decimal("0"))
        return BalanceSnapshot(wallet, token, Decimal(row[0]), Decimal(row[1]))

    @classmethod
    async def lock(cls, session: AsyncSession, wallet: str, token: str, amount) -> Decimal:
        """Move ``amount`` from available to locked, atomically checked at update time"""
        wallet = _require_wallet(wallet)
        token = _normalize_token(token)
        amount = MonetaryDecimal.quantize_ledger(MonetaryDecimal.to_positive(amount, "lock amount"))

        updated = await update_if(
            session,
            ExchangeBalance,
            where=[
                ExchangeBalance.wallet_address == wallet,
                ExchangeBalance.token == token,
                ExchangeBalance.available_balance >= amount,
            ],
            values={
                "available_balance": ExchangeBalance.available_balance - amount,
                "locked_balance": ExchangeBalance.locked_balance + amount,
            },
        )
        if updated != 1:
            current = await cls._read(session, wallet, token)
            logger.warning(
                f"BALANCE_LOCK_REJECTED: wallet={wallet}, token={token}, "
                f"required={amount}, available={current.available}"
            )
            raise InsufficientBalanceError(wallet, token, amount, current.available)

        logger.debug(f"🔒 Locked {amount} {token} for {wallet}")
        return amount

    @classmethod
    async def unlock(cls, session: AsyncSession, wallet: str, token: str, amount) -> Decimal:
        """Return ``amount`` from locked to available"""
        wallet = _require_wallet(wallet)
        token = _normalize_token(token)
        amount = MonetaryDecimal.quantize_ledger(MonetaryDecimal.to_positive(amount, "unlock amount"))

        updated = await update_if(
            session,
            ExchangeBalance,
            where=[
                ExchangeBalance.wallet_address == wallet,
                ExchangeBalance.token == token,
                ExchangeBalance.locked_balance >= amount,
            ],
            values={
                "available_balance": ExchangeBalance.available_balance + amount,
                "locked_balance": ExchangeBalance.locked_balance - amount,
            },
        )
        if updated != 1:
            current = await cls._read(session, wallet, token)
            logger.error(
                f"BALANCE_UNLOCK_REJECTED: wallet={wallet}, token={token}, "
                f"amount={amount}, locked={current.locked}"
            )
            raise InsufficientBalanceError(wallet, token, amount, current.locked, balance_field="locked")

        logger.debug(f"🔓 Unlocked {amount} {token} for {wallet}")
        return amount

    @classmethod
    async def debit_locked(cls, session: AsyncSession, wallet: str, token: str, amount) -> Decimal:
        """Remove ``amount`` from locked (funds leave the wallet)"""
        wallet = _require_wallet(wallet)
        token = _normalize_token(token)
        amount = MonetaryDecimal.quantize_ledger(MonetaryDecimal.to_positive(amount, "debit amount"))

        updated = await update_if(
            session,
            ExchangeBalance,
            where=[
                ExchangeBalance.wallet_address == wallet,
                ExchangeBalance.token == token,
                ExchangeBalance.locked_balance >= amount,
            ],
            values={"locked_balance": ExchangeBalance.locked_balance - amount},
        )
        if updated != 1:
            current = await cls._read(session, wallet, token)
            raise InsufficientBalanceError(wallet, token, amount, current.locked, balance_field="locked")
        return amount

    @classmethod
    async def credit(cls, session: AsyncSession, wallet: str, token: str, amount) -> Decimal:
        """Add ``amount`` to available, creating the balance row on first use"""
        wallet = _require_wallet(wallet)
        token = _normalize_token(token)
        amount = MonetaryDecimal.quantize_ledger(MonetaryDecimal.to_positive(amount, "credit amount"))

        await cls._ensure_row(session, wallet, token)
        updated = await update_if(
            session,
            ExchangeBalance,
            where=[ExchangeBalance.wallet_address == wallet, ExchangeBalance.token == token],
            values={"available_balance": ExchangeBalance.available_balance + amount},
        )
        if updated != 1:
            # _ensure_row guarantees the row; anything else is a store fault
            raise ConflictError(f"Balance row for {wallet}/{token} vanished during credit")
        return amount

    @classmethod
    async def settle(
        cls,
        session: AsyncSession,
        wallet: str,
        debit_token: str,
        locked_delta,
        credit_token: str,
        available_delta,
    ):
        """
        Settle one side of a fill: debit ``locked_delta`` of ``debit_token`` from locked,
        then credit ``available_delta`` of ``credit_token``.

        Both writes join the caller's transaction, so other readers see either
        neither or both. The debit is issued first; a failing debit aborts before
        any credit exists.
        """
        locked_delta = MonetaryDecimal.to_decimal(locked_delta, "locked delta")
        available_delta = MonetaryDecimal.to_decimal(available_delta, "available delta")

        if locked_delta > 0:
            await cls.debit_locked(session, wallet, debit_token, locked_delta)
        if available_delta > 0:
            await cls.credit(session, wallet, credit_token, available_delta)

    # ------------------------------------------------------------------
    # Standalone operations
    # ------------------------------------------------------------------

    @classmethod
    async def lock_balance(cls, wallet: str, token: str, amount) -> BalanceSnapshot:
        """Lock in its own transaction and return the resulting balance"""
        async with async_managed_session() as session:
            await cls.lock(session, wallet, token, amount)
            return await cls._read(session, _require_wallet(wallet), _normalize_token(token))

    @classmethod
    async def unlock_balance(cls, wallet: str, token: str, amount) -> BalanceSnapshot:
        async with async_managed_session() as session:
            await cls.unlock(session, wallet, token, amount)
            return await cls._read(session, _require_wallet(wallet), _normalize_token(token))

    @classmethod
    async def get_balance(cls, wallet: str, token: str, session: Optional[AsyncSession] = None) -> BalanceSnapshot:
        wallet = _require_wallet(wallet)
        token = _normalize_token(token)
        async with session_scope(session) as s:
            return await cls._read(s, wallet, token)

    @classmethod
    async def get_balances(cls, wallet: str) -> List[BalanceSnapshot]:
        wallet = _require_wallet(wallet)
        async with async_managed_session() as session:
            rows = (await session.execute(
                select(ExchangeBalance)
                .where(ExchangeBalance.wallet_address == wallet)
                .order_by(ExchangeBalance.token)
            )).scalars().all()
        return [
            BalanceSnapshot(r.wallet_address, r.token, Decimal(r.available_balance), Decimal(r.locked_balance))
            for r in rows
        ]

    @classmethod
    async def confirm_deposit(cls, wallet: str, token: str, amount, tx_hash: str) -> DepositResult:
        """
        Credit a confirmed on-chain deposit exactly once per transaction hash.

        A replay with identical parameters returns the original deposit; a replay
        with a different wallet, token or amount raises ConflictError.
        """
        wallet = _require_wallet(wallet)
        token = _normalize_token(token)
        amount = MonetaryDecimal.quantize_ledger(MonetaryDecimal.to_positive(amount, "deposit amount"))
        tx_hash = (tx_hash or "").strip().lower()
        if not tx_hash:
            raise ValidationError("tx_hash is required", details={"field": "tx_hash"})

        existing = await cls._find_deposit(tx_hash)
        if existing is not None:
            return cls._replayed_deposit(existing, wallet, token, amount)

        try:
            async with async_managed_session() as session:
                deposit = ExchangeDeposit(wallet_address=wallet, token=token, amount=amount, tx_hash=tx_hash)
                session.add(deposit)
                await session.flush()
                await cls.credit(session, wallet, token, amount)
                deposit_id = deposit.id
        except IntegrityError:
            # Concurrent confirmation of the same hash won the insert
            existing = await cls._find_deposit(tx_hash)
            if existing is None:
                raise
            return cls._replayed_deposit(existing, wallet, token, amount)

        logger.info(f"✅ DEPOSIT_CONFIRMED: wallet={wallet}, amount={amount} {token}, tx={tx_hash}")
        return DepositResult(deposit_id, wallet, token, amount, tx_hash, replayed=False)

    @classmethod
    async def _find_deposit(cls, tx_hash: str) -> Optional[ExchangeDeposit]:
        async with async_managed_session() as session:
            return (await session.execute(
                select(ExchangeDeposit).where(ExchangeDeposit.tx_hash == tx_hash)
            )).scalar_one_or_none()

    @classmethod
    def _replayed_deposit(cls, existing: ExchangeDeposit, wallet: str, token: str, amount: Decimal) -> DepositResult:
        if (
            existing.wallet_address != wallet
            or existing.token != token
            or Decimal(existing.amount) != amount
        ):
            logger.error(
                f"DEPOSIT_REPLAY_CONFLICT: tx={existing.tx_hash}, recorded={existing.wallet_address}/"
                f"{existing.amount} {existing.token}, replay={wallet}/{amount} {token}"
            )
            raise ConflictError(
                f"Deposit {existing.tx_hash} already confirmed with different parameters",
                details={"tx_hash": existing.tx_hash},
            )
        logger.info(f"DEPOSIT_REPLAY_IGNORED: tx={existing.tx_hash}")
        return DepositResult(existing.id, wallet, token, amount, existing.tx_hash, replayed=True)

    @classmethod
    async def request_withdrawal(cls, wallet: str, token: str, amount, destination_address: str) -> ExchangeWithdrawal:
        """Lock the amount and record a pending withdrawal for settlement"""
        wallet = _require_wallet(wallet)
        token = _normalize_token(token)
        amount = MonetaryDecimal.quantize_ledger(MonetaryDecimal.to_positive(amount, "withdrawal amount"))
        if not destination_address or not destination_address.strip():
            raise ValidationError("destination_address is required", details={"field": "destination_address"})

        async with async_managed_session() as session:
            await cls.lock(session, wallet, token, amount)
            withdrawal = ExchangeWithdrawal(
                wallet_address=wallet,
                token=token,
                amount=amount,
                destination_address=destination_address.strip(),
                status=WithdrawalStatus.PENDING.value,
            )
            session.add(withdrawal)
            await session.flush()

        logger.info(f"💸 WITHDRAWAL_REQUESTED: id={withdrawal.id}, wallet={wallet}, amount={amount} {token}")
        return withdrawal

    @classmethod
    async def confirm_withdrawal(cls, withdrawal_id: int, tx_hash: str) -> ExchangeWithdrawal:
        """Settlement confirmed on-chain: debit the locked amount"""
        tx_hash = (tx_hash or "").strip().lower()
        if not tx_hash:
            raise ValidationError("tx_hash is required", details={"field": "tx_hash"})

        async with async_managed_session() as session:
            withdrawal = await cls._get_withdrawal(session, withdrawal_id)
            if withdrawal.status == WithdrawalStatus.COMPLETED.value and withdrawal.tx_hash == tx_hash:
                return withdrawal

            updated = await update_if(
                session,
                ExchangeWithdrawal,
                where=[
                    ExchangeWithdrawal.id == withdrawal_id,
                    ExchangeWithdrawal.status == WithdrawalStatus.PENDING.value,
                ],
                values={
                    "status": WithdrawalStatus.COMPLETED.value,
                    "tx_hash": tx_hash,
                    "completed_at": utc_now(),
                },
            )
            if updated != 1:
                raise InvalidTransitionError(
                    withdrawal.status, WithdrawalStatus.COMPLETED.value, entity="withdrawal"
                )
            await cls.debit_locked(session, withdrawal.wallet_address, withdrawal.token, withdrawal.amount)
            withdrawal = await cls._get_withdrawal(session, withdrawal_id)

        logger.info(f"✅ WITHDRAWAL_COMPLETED: id={withdrawal_id}, tx={tx_hash}")
        return withdrawal

    @classmethod
    async def cancel_withdrawal(cls, withdrawal_id: int, caller_wallet: str) -> ExchangeWithdrawal:
        """Owner cancels a pending withdrawal; the amount returns to available"""
        caller = _require_wallet(caller_wallet)

        async with async_managed_session() as session:
            withdrawal = await cls._get_withdrawal(session, withdrawal_id)
            if withdrawal.wallet_address != caller:
                raise ForbiddenError()

            updated = await update_if(
                session,
                ExchangeWithdrawal,
                where=[
                    ExchangeWithdrawal.id == withdrawal_id,
                    ExchangeWithdrawal.status == WithdrawalStatus.PENDING.value,
                ],
                values={"status": WithdrawalStatus.CANCELLED.value},
            )
            if updated != 1:
                raise InvalidTransitionError(
                    withdrawal.status, WithdrawalStatus.CANCELLED.value, entity="withdrawal"
                )
            await cls.unlock(session, withdrawal.wallet_address, withdrawal.token, withdrawal.amount)
            withdrawal = await cls._get_withdrawal(session, withdrawal_id)

        logger.info(f"WITHDRAWAL_CANCELLED: id={withdrawal_id}, wallet={caller}")
        return withdrawal

    @classmethod
    async def _get_withdrawal(cls, session: AsyncSession, withdrawal_id: int) -> ExchangeWithdrawal:
        withdrawal = (await session.execute(
            select(ExchangeWithdrawal)
            .where(ExchangeWithdrawal.id == withdrawal_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if withdrawal is None:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
        return withdrawal
