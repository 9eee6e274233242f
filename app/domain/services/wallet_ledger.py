"""
Wallet Ledger - the only writer of Wallet and Transaction rows

Mutations lock the affected wallets, check balances against the locked rows,
update balances and append Transaction rows. Methods that take part in a larger
unit of work (transfer, credit, debit, reserve/settle) never commit; the
caller owns the transaction. Methods that are a unit on their own
(open_wallet, purchase_coins) commit.

Locking:
1. In-process: ``wallet_locks`` keyed by user id, acquired in sorted order
   under a deadline (callers hold it until commit).
2. Cross-process: SELECT ... FOR UPDATE on the wallet rows, ordered by wallet
   id, with a bounded ``lock_timeout`` on PostgreSQL.
"""
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import AsyncIterator, Iterable

from sqlalchemy import func, select, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    InsufficientBalanceError,
    InvalidOperationError,
    InvariantViolationError,
    LockTimeoutError,
    NotFoundException,
    ValidationException,
    WalletNotFoundError,
)
from app.core.locks import wallet_locks
from app.core.logging import get_logger
from app.core.validation import quantize_money, validate_coin_amount
from app.db.database import utcnow
from app.db.models.transaction import Transaction, TransactionStatus, TransactionType
from app.db.models.wallet import Wallet
from app.domain.services.alert_service import AlertKind, AlertService
from app.domain.services.integrations import PaymentRail

logger = get_logger(__name__)

ZERO = Decimal("0.00")

# תנועות שנספרות כהכנסה של יוצר
EARNING_TYPES = (TransactionType.GIFT_RECEIVED, TransactionType.SUBSCRIPTION_EARNING)

# PostgreSQL lock_not_available
_PG_LOCK_NOT_AVAILABLE = "55P03"


@dataclass
class TransactionPair:
    """The two linked legs of a transfer. `received` is None for a plain spend."""
    sent: Transaction
    received: Transaction | None
    correlation_id: str


@dataclass
class ReconciliationReport:
    user_id: int
    wallet_id: int
    coins: int
    coins_from_ledger: int
    total_earnings: Decimal
    total_earnings_from_ledger: Decimal
    paid_out_earnings: Decimal
    paid_out_from_ledger: Decimal
    reserved_earnings: Decimal
    pending_earnings: Decimal
    expected_pending_earnings: Decimal
    mismatches: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def is_consistent(self) -> bool:
        return not self.mismatches


def coins_to_money(coins: int) -> Decimal:
    """ערך כספי של מטבעות לפי מחיר יחידה"""
    return quantize_money(Decimal(coins) * Decimal(str(settings.COIN_UNIT_PRICE)))


def _is_lock_timeout(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == _PG_LOCK_NOT_AVAILABLE


class WalletLedger:
    """Coin balances and creator earnings with an append-only audit trail"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== locking ====================

    @asynccontextmanager
    async def locked(self, *user_ids: int | None) -> AsyncIterator[None]:
        """
        In-process exclusive region over the given wallets.

        Hold it across the whole unit of work, commit included.

        Raises:
            LockTimeoutError: not acquired within LOCK_TIMEOUT_SECONDS
        """
        keys = [uid for uid in user_ids if uid is not None]
        async with wallet_locks.hold(keys, settings.LOCK_TIMEOUT_SECONDS):
            yield

    async def _apply_db_lock_timeout(self) -> None:
        if self.db.get_bind().dialect.name != "postgresql":
            return
        timeout_ms = int(settings.LOCK_TIMEOUT_SECONDS * 1000)
        await self.db.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))

    async def _lock_wallets(self, user_ids: Iterable[int]) -> dict[int, Wallet]:
        """SELECT ... FOR UPDATE on every wallet, ordered by wallet id"""
        ids = sorted(set(user_ids))
        await self._apply_db_lock_timeout()
        try:
            result = await self.db.execute(
                select(Wallet)
                .where(Wallet.user_id.in_(ids))
                .order_by(Wallet.id)
                .with_for_update()
            )
        except DBAPIError as exc:
            if _is_lock_timeout(exc):
                raise LockTimeoutError(f"wallet:{ids}", settings.LOCK_TIMEOUT_SECONDS) from exc
            raise
        wallets = {wallet.user_id: wallet for wallet in result.scalars().all()}
        for uid in ids:
            if uid not in wallets:
                raise WalletNotFoundError(uid)
        return wallets

    # ==================== invariants ====================

    @staticmethod
    def _assert_invariants(wallet: Wallet) -> None:
        if wallet.coins < 0:
            raise InvariantViolationError(
                "wallet.coins >= 0",
                details={"user_id": wallet.user_id, "coins": wallet.coins},
            )
        if wallet.pending_earnings < 0:
            raise InvariantViolationError(
                "wallet.pending_earnings >= 0",
                details={"user_id": wallet.user_id, "pending_earnings": str(wallet.pending_earnings)},
            )
        if wallet.paid_out_earnings > wallet.total_earnings:
            raise InvariantViolationError(
                "wallet.paid_out_earnings <= wallet.total_earnings",
                details={
                    "user_id": wallet.user_id,
                    "paid_out_earnings": str(wallet.paid_out_earnings),
                    "total_earnings": str(wallet.total_earnings),
                },
            )

    async def report_invariant_violation(self, exc: InvariantViolationError) -> None:
        """
        Roll back the aborted unit, then persist an ops alert on its own.

        Call from the code that owns the transaction.
        """
        await self.db.rollback()
        await AlertService(self.db).raise_alert(
            AlertKind.INVARIANT_VIOLATION,
            {"invariant": exc.invariant, **exc.details},
        )
        await self.db.commit()

    def _entry(
        self,
        wallet: Wallet,
        tx_type: TransactionType,
        *,
        coins: int | None = None,
        amount: Decimal = ZERO,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        correlation_id: str | None = None,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> Transaction:
        now = utcnow()
        entry = Transaction(
            wallet_id=wallet.id,
            type=tx_type,
            status=status,
            coins=coins,
            amount=amount,
            currency=wallet.currency,
            correlation_id=correlation_id,
            reference_id=reference_id,
            description=description,
            created_at=now,
            completed_at=now if status == TransactionStatus.COMPLETED else None,
        )
        self.db.add(entry)
        return entry

    # ==================== reads ====================

    async def get_wallet(self, user_id: int, for_update: bool = False) -> Wallet:
        query = select(Wallet).where(Wallet.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        wallet = result.scalar_one_or_none()
        if wallet is None:
            raise WalletNotFoundError(user_id)
        return wallet

    async def history(self, user_id: int, limit: int = 20, offset: int = 0) -> list[Transaction]:
        """Newest first"""
        wallet = await self.get_wallet(user_id)
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.wallet_id == wallet.id)
            .order_by(Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    # ==================== units of work (commit) ====================

    async def open_wallet(self, user_id: int, currency: str | None = None) -> Wallet:
        """
        Create the wallet with the welcome bonus. Idempotent per user.
        """
        result = await self.db.execute(select(Wallet).where(Wallet.user_id == user_id))
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing

        bonus = settings.WELCOME_BONUS_COINS
        wallet = Wallet(
            user_id=user_id,
            coins=bonus,
            pending_earnings=ZERO,
            total_earnings=ZERO,
            paid_out_earnings=ZERO,
            currency=currency or settings.DEFAULT_CURRENCY,
        )
        self.db.add(wallet)
        try:
            await self.db.flush()
            if bonus:
                self._entry(
                    wallet,
                    TransactionType.WELCOME_BONUS,
                    coins=bonus,
                    reference_id=f"welcome:{user_id}",
                    description="Welcome bonus",
                )
            await self.db.commit()
        except IntegrityError:
            # פתיחה מקבילית לאותו משתמש
            await self.db.rollback()
            return await self.get_wallet(user_id)

        logger.info(
            "Wallet opened",
            extra_data={"user_id": user_id, "wallet_id": wallet.id, "welcome_bonus": bonus},
        )
        return wallet

    async def purchase_coins(
        self,
        user_id: int,
        coins: int,
        payment_method: str,
        payment_rail: PaymentRail,
    ) -> Transaction:
        """
        Charge the payment rail, then credit the coins.

        The rail is called before any lock is taken or row written, so a
        declined charge leaves nothing behind.

        Raises:
            PaymentFailedError: the rail declined
            ExternalServiceException: the rail is unreachable
        """
        validate_coin_amount(coins, settings.MAX_GIFT_COINS)
        wallet = await self.get_wallet(user_id)
        price = coins_to_money(coins)
        reference = f"coin_purchase:{uuid.uuid4().hex}"

        charge = await payment_rail.charge(
            user_id=user_id,
            amount=price,
            currency=wallet.currency,
            description=f"{coins} coins via {payment_method}",
            reference=reference,
        )

        try:
            async with self.locked(user_id):
                entry = await self.credit(
                    user_id,
                    coins,
                    TransactionType.COIN_PURCHASE,
                    amount=price,
                    correlation_id=reference,
                    reference_id=charge.reference,
                    description=f"Purchased {coins} coins",
                )
                await self.db.commit()
        except InvariantViolationError as exc:
            await self.report_invariant_violation(exc)
            raise
        except Exception as exc:
            # הכסף נגבה אבל המטבעות לא זוכו - חייב טיפול ידני
            await self.db.rollback()
            await AlertService(self.db).raise_alert(
                AlertKind.RECONCILIATION_MISMATCH,
                {
                    "user_id": user_id,
                    "coins": coins,
                    "charge_reference": charge.reference,
                    "error": str(exc),
                },
            )
            await self.db.commit()
            raise

        logger.info(
            "Coins purchased",
            extra_data={"user_id": user_id, "coins": coins, "amount": str(price)},
        )
        return entry

    # ==================== building blocks (no commit) ====================

    async def transfer(
        self,
        from_user_id: int,
        to_user_id: int | None,
        coins_out: int,
        payout_share: Decimal = ZERO,
        correlation_id: str | None = None,
        reference_id: str | None = None,
    ) -> TransactionPair:
        """
        Move coins out of the sender and credit the payout share to the receiver.

        Writes GIFT_SENT (and GIFT_RECEIVED when there is a receiver) sharing
        one correlation id. Does not commit.

        Raises:
            InsufficientBalanceError: sender.coins < coins_out (nothing written)
            WalletNotFoundError: either wallet is missing
        """
        if to_user_id is not None and to_user_id == from_user_id:
            raise InvalidOperationError("Cannot transfer to the same wallet")
        if coins_out <= 0:
            raise ValidationException("Transfer amount must be positive", field="coins")
        payout_share = quantize_money(Decimal(payout_share))
        if payout_share < 0:
            raise ValidationException("Payout share cannot be negative", field="payout_share")

        correlation_id = correlation_id or uuid.uuid4().hex
        participants = [from_user_id] + ([to_user_id] if to_user_id is not None else [])
        wallets = await self._lock_wallets(participants)
        sender = wallets[from_user_id]

        if sender.coins < coins_out:
            raise InsufficientBalanceError(from_user_id, sender.coins, coins_out)

        sender.coins -= coins_out
        sent = self._entry(
            sender,
            TransactionType.GIFT_SENT,
            coins=-coins_out,
            amount=-coins_to_money(coins_out),
            correlation_id=correlation_id,
            reference_id=reference_id,
        )

        received = None
        if to_user_id is not None:
            receiver = wallets[to_user_id]
            receiver.pending_earnings += payout_share
            receiver.total_earnings += payout_share
            received = self._entry(
                receiver,
                TransactionType.GIFT_RECEIVED,
                amount=payout_share,
                correlation_id=correlation_id,
                reference_id=reference_id,
                description=f"{coins_out} coins",
            )
            self._assert_invariants(receiver)

        self._assert_invariants(sender)
        await self.db.flush()
        return TransactionPair(sent=sent, received=received, correlation_id=correlation_id)

    async def credit(
        self,
        user_id: int,
        coins: int,
        tx_type: TransactionType,
        *,
        amount: Decimal = ZERO,
        correlation_id: str | None = None,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> Transaction:
        """Add spendable coins (purchases, bonuses). Does not commit."""
        if coins <= 0:
            raise ValidationException("Credit amount must be positive", field="coins")
        wallet = (await self._lock_wallets([user_id]))[user_id]
        wallet.coins += coins
        entry = self._entry(
            wallet,
            tx_type,
            coins=coins,
            amount=amount,
            correlation_id=correlation_id,
            reference_id=reference_id,
            description=description,
        )
        self._assert_invariants(wallet)
        await self.db.flush()
        return entry

    async def debit(
        self,
        user_id: int,
        coins: int,
        tx_type: TransactionType = TransactionType.COIN_SPEND,
        *,
        correlation_id: str | None = None,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> Transaction:
        """
        Standalone spend. Does not commit.

        Raises:
            InsufficientBalanceError: wallet.coins < coins (nothing written)
        """
        if coins <= 0:
            raise ValidationException("Debit amount must be positive", field="coins")
        wallet = (await self._lock_wallets([user_id]))[user_id]
        if wallet.coins < coins:
            raise InsufficientBalanceError(user_id, wallet.coins, coins)
        wallet.coins -= coins
        entry = self._entry(
            wallet,
            tx_type,
            coins=-coins,
            amount=-coins_to_money(coins),
            correlation_id=correlation_id,
            reference_id=reference_id,
            description=description,
        )
        self._assert_invariants(wallet)
        await self.db.flush()
        return entry

    async def record_external_charge(
        self,
        user_id: int,
        amount: Decimal,
        *,
        correlation_id: str,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> Transaction:
        """
        Audit row for money charged by the rail (subscriptions).

        No coin balance moves, so the row carries no coins. Does not commit.
        """
        wallet = (await self._lock_wallets([user_id]))[user_id]
        entry = self._entry(
            wallet,
            TransactionType.SUBSCRIPTION_CHARGE,
            amount=-quantize_money(Decimal(amount)),
            correlation_id=correlation_id,
            reference_id=reference_id,
            description=description,
        )
        await self.db.flush()
        return entry

    async def credit_earnings(
        self,
        user_id: int,
        amount: Decimal,
        tx_type: TransactionType = TransactionType.SUBSCRIPTION_EARNING,
        *,
        correlation_id: str | None = None,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> Transaction:
        """Credit creator earnings (payable later). Does not commit."""
        if tx_type not in EARNING_TYPES:
            raise ValidationException(f"{tx_type.value} is not an earning type", field="type")
        amount = quantize_money(Decimal(amount))
        if amount <= 0:
            raise ValidationException("Earning amount must be positive", field="amount")
        wallet = (await self._lock_wallets([user_id]))[user_id]
        wallet.pending_earnings += amount
        wallet.total_earnings += amount
        entry = self._entry(
            wallet,
            tx_type,
            amount=amount,
            correlation_id=correlation_id,
            reference_id=reference_id,
            description=description,
        )
        self._assert_invariants(wallet)
        await self.db.flush()
        return entry

    async def reserve_earnings(
        self,
        user_id: int,
        amount: Decimal,
        *,
        reference_id: str | None = None,
    ) -> Transaction:
        """
        Move earnings out of pending into a PENDING PAYOUT transaction.

        Raises:
            InsufficientBalanceError: pending_earnings < amount
        """
        amount = quantize_money(Decimal(amount))
        wallet = (await self._lock_wallets([user_id]))[user_id]
        if wallet.pending_earnings < amount:
            raise InsufficientBalanceError(user_id, wallet.pending_earnings, amount)
        wallet.pending_earnings -= amount
        entry = self._entry(
            wallet,
            TransactionType.PAYOUT,
            amount=-amount,
            status=TransactionStatus.PENDING,
            correlation_id=uuid.uuid4().hex,
            reference_id=reference_id,
            description="Payout reservation",
        )
        self._assert_invariants(wallet)
        await self.db.flush()
        return entry

    async def settle_reserved_earnings(self, transaction_id: int, succeeded: bool) -> Transaction:
        """
        Close a payout reservation.

        Success marks the reserved amount paid; failure returns it to
        pending_earnings. Settling an already-settled reservation is a no-op.
        """
        result = await self.db.execute(select(Transaction).where(Transaction.id == transaction_id))
        entry = result.scalar_one_or_none()
        if entry is None or entry.type != TransactionType.PAYOUT:
            raise NotFoundException("Payout transaction", transaction_id)
        if entry.status != TransactionStatus.PENDING:
            return entry

        wallet_result = await self.db.execute(select(Wallet).where(Wallet.id == entry.wallet_id))
        owner = wallet_result.scalar_one()
        wallet = (await self._lock_wallets([owner.user_id]))[owner.user_id]
        reserved = -Decimal(entry.amount)

        if succeeded:
            wallet.paid_out_earnings += reserved
            entry.status = TransactionStatus.COMPLETED
        else:
            wallet.pending_earnings += reserved
            entry.status = TransactionStatus.FAILED
        entry.completed_at = utcnow()

        self._assert_invariants(wallet)
        await self.db.flush()
        return entry

    # ==================== reconciliation ====================

    async def _sum(self, column, *conditions) -> Decimal:
        result = await self.db.execute(select(func.coalesce(func.sum(column), 0)).where(*conditions))
        return Decimal(str(result.scalar_one()))

    async def reconcile(self, user_id: int) -> ReconciliationReport:
        """
        Compare wallet balances with the sum of its COMPLETED transactions.

        pending_earnings is expected to equal
        total earnings - paid out - amounts reserved by PENDING payouts.
        """
        wallet = await self.get_wallet(user_id)
        completed = (Transaction.wallet_id == wallet.id, Transaction.status == TransactionStatus.COMPLETED)

        coins_ledger = int(await self._sum(Transaction.coins, *completed, Transaction.coins.is_not(None)))
        earnings_ledger = quantize_money(
            await self._sum(Transaction.amount, *completed, Transaction.type.in_(EARNING_TYPES))
        )
        paid_ledger = quantize_money(
            -await self._sum(Transaction.amount, *completed, Transaction.type == TransactionType.PAYOUT)
        )
        reserved = quantize_money(
            -await self._sum(
                Transaction.amount,
                Transaction.wallet_id == wallet.id,
                Transaction.status == TransactionStatus.PENDING,
                Transaction.type == TransactionType.PAYOUT,
            )
        )
        expected_pending = earnings_ledger - paid_ledger - reserved

        report = ReconciliationReport(
            user_id=user_id,
            wallet_id=wallet.id,
            coins=wallet.coins,
            coins_from_ledger=coins_ledger,
            total_earnings=quantize_money(Decimal(wallet.total_earnings)),
            total_earnings_from_ledger=earnings_ledger,
            paid_out_earnings=quantize_money(Decimal(wallet.paid_out_earnings)),
            paid_out_from_ledger=paid_ledger,
            reserved_earnings=reserved,
            pending_earnings=quantize_money(Decimal(wallet.pending_earnings)),
            expected_pending_earnings=expected_pending,
        )
        checks = {
            "coins": (report.coins, report.coins_from_ledger),
            "total_earnings": (report.total_earnings, report.total_earnings_from_ledger),
            "paid_out_earnings": (report.paid_out_earnings, report.paid_out_from_ledger),
            "pending_earnings": (report.pending_earnings, report.expected_pending_earnings),
        }
        for name, (actual, expected) in checks.items():
            if actual != expected:
                report.mismatches[name] = {"wallet": str(actual), "ledger": str(expected)}

        if report.mismatches:
            logger.error(
                "Wallet reconciliation mismatch",
                extra_data={"user_id": user_id, "mismatches": report.mismatches},
            )
        return report
