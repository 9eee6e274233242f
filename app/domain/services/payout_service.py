"""
Payout Processor - creator withdrawals

PENDING -> PROCESSING -> COMPLETED | FAILED

The requested amount is reserved out of pending_earnings when the payout is
created (a PENDING PAYOUT transaction). COMPLETED turns the reservation into
paid-out earnings; FAILED returns it to pending_earnings, so a failed payout
never loses funds.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable

from kombu.exceptions import OperationalError
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    BelowMinimumPayoutError,
    ExternalServiceException,
    InvalidStateTransitionError,
    InvariantViolationError,
    PaymentFailedError,
    PayoutNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import AmountValidator
from app.db.database import utcnow
from app.db.models.outbox_message import OutboxEventType
from app.db.models.payout import Payout, PayoutStatus
from app.domain.services.alert_service import AlertKind, AlertService
from app.domain.services.integrations import PaymentRail
from app.domain.services.outbox_service import OutboxService
from app.domain.services.wallet_ledger import WalletLedger

logger = get_logger(__name__)

PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: [PayoutStatus.PROCESSING, PayoutStatus.COMPLETED, PayoutStatus.FAILED],
    PayoutStatus.PROCESSING: [PayoutStatus.COMPLETED, PayoutStatus.FAILED],
    PayoutStatus.COMPLETED: [],
    PayoutStatus.FAILED: [],
}


def _enqueue_process_payout(payout_id: int) -> None:
    from app.workers.tasks import process_payout
    try:
        process_payout.delay(payout_id)
    except OperationalError as exc:
        # ה-payout כבר נשמר; resubmit_stale_payouts יגיש אותו
        logger.warning(
            "Payout submission not queued, left for the stale payout sweep",
            extra_data={"payout_id": payout_id, "error": str(exc)},
        )


def payout_payload(payout: Payout) -> dict[str, Any]:
    return {
        "payout_id": payout.id,
        "user_id": payout.user_id,
        "amount": str(payout.amount),
        "currency": payout.currency,
        "status": payout.status.value,
        "failure_reason": payout.failure_reason,
    }


class PayoutProcessor:
    def __init__(
        self,
        db: AsyncSession,
        payment_rail: PaymentRail,
        enqueue_submission: Callable[[int], None] | None = _enqueue_process_payout,
    ):
        self.db = db
        self.payment_rail = payment_rail
        self.enqueue_submission = enqueue_submission
        self.ledger = WalletLedger(db)
        self.outbox = OutboxService(db)

    def _transition(self, payout: Payout, target: PayoutStatus) -> None:
        if target not in PAYOUT_TRANSITIONS[payout.status]:
            raise InvalidStateTransitionError(payout.status.value, target.value, entity="payout")
        payout.status = target

    async def get(self, payout_id: int) -> Payout:
        result = await self.db.execute(select(Payout).where(Payout.id == payout_id))
        payout = result.scalar_one_or_none()
        if payout is None:
            raise PayoutNotFoundError(payout_id)
        return payout

    async def list_for_user(self, user_id: int, limit: int = 20) -> list[Payout]:
        result = await self.db.execute(
            select(Payout).where(Payout.user_id == user_id).order_by(Payout.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def stale_payouts(self, older_than_minutes: int | None = None, limit: int = 50) -> list[Payout]:
        """
        Payouts that never reached the rail: PENDING ones whose submission was
        lost, and PROCESSING ones with no rail reference (the worker died mid-call).
        """
        minutes = older_than_minutes if older_than_minutes is not None else settings.PAYOUT_RESUBMIT_AFTER_MINUTES
        cutoff = utcnow() - timedelta(minutes=minutes)
        result = await self.db.execute(
            select(Payout)
            .where(
                or_(
                    and_(Payout.status == PayoutStatus.PENDING, Payout.created_at < cutoff),
                    and_(
                        Payout.status == PayoutStatus.PROCESSING,
                        Payout.external_reference.is_(None),
                        Payout.processed_at < cutoff,
                    ),
                )
            )
            .order_by(Payout.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def request_payout(self, user_id: int, amount: Decimal | float | str, method: str) -> Payout:
        """
        Reserve earnings and create a PENDING payout.

        Raises:
            ValidationException: malformed amount or method
            BelowMinimumPayoutError: amount < MIN_PAYOUT_AMOUNT
            InsufficientBalanceError: amount > pending_earnings
        """
        amount = AmountValidator.validate_positive(AmountValidator.to_money(amount))
        method = (method or "").strip()
        if not method or len(method) > 50:
            raise ValidationException("method must be 1-50 characters", field="method")

        wallet = await self.ledger.get_wallet(user_id)
        minimum = AmountValidator.to_money(settings.MIN_PAYOUT_AMOUNT)
        if amount < minimum:
            raise BelowMinimumPayoutError(user_id, amount, minimum, wallet.currency)

        try:
            async with self.ledger.locked(user_id):
                payout = Payout(
                    user_id=user_id,
                    amount=amount,
                    currency=wallet.currency,
                    method=method,
                    status=PayoutStatus.PENDING,
                    created_at=utcnow(),
                )
                self.db.add(payout)
                await self.db.flush()
                reservation = await self.ledger.reserve_earnings(
                    user_id, amount, reference_id=f"payout:{payout.id}"
                )
                payout.transaction_id = reservation.id
                await self.db.commit()
        except InvariantViolationError as exc:
            await self.ledger.report_invariant_violation(exc)
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Payout requested",
            extra_data={"payout_id": payout.id, "user_id": user_id, "amount": str(amount), "method": method},
        )
        if self.enqueue_submission is not None:
            self.enqueue_submission(payout.id)
        return payout

    async def submit(self, payout_id: int) -> Payout:
        """
        Hand a PENDING payout to the payment rail.

        A PROCESSING payout without a rail reference is sent again; the rail
        dedups by payout id. A rail error fails the payout and restores the
        reservation. Payouts the rail already accepted are returned untouched.
        """
        payout = await self.get(payout_id)
        if payout.status == PayoutStatus.PENDING:
            self._transition(payout, PayoutStatus.PROCESSING)
            payout.processed_at = utcnow()
            await self.db.commit()
        elif payout.status != PayoutStatus.PROCESSING or payout.external_reference:
            return payout

        try:
            submission = await self.payment_rail.submit_payout(
                payout_id=payout.id,
                user_id=payout.user_id,
                amount=Decimal(payout.amount),
                currency=payout.currency,
                method=payout.method,
            )
        except (PaymentFailedError, ExternalServiceException) as exc:
            reason = exc.message
            await AlertService(self.db).raise_alert(
                AlertKind.PAYOUT_RAIL_ERROR,
                {"payout_id": payout.id, "user_id": payout.user_id, "error": reason},
            )
            return await self._settle(payout, succeeded=False, failure_reason=reason)

        payout.external_reference = submission.external_reference
        await self.db.commit()
        logger.info(
            "Payout submitted to rail",
            extra_data={"payout_id": payout.id, "external_reference": submission.external_reference},
        )
        return payout

    async def handle_callback(
        self,
        payout_id: int,
        succeeded: bool,
        external_reference: str | None = None,
        failure_reason: str | None = None,
    ) -> Payout:
        """
        Apply the rail's verdict. Repeated callbacks on a terminal payout are
        acknowledged without any change.
        """
        payout = await self.get(payout_id)
        if payout.is_terminal:
            logger.info(
                "Duplicate payout callback ignored",
                extra_data={"payout_id": payout_id, "status": payout.status.value},
            )
            return payout
        if external_reference:
            payout.external_reference = external_reference
        return await self._settle(payout, succeeded=succeeded, failure_reason=failure_reason)

    async def _settle(self, payout: Payout, *, succeeded: bool, failure_reason: str | None = None) -> Payout:
        target = PayoutStatus.COMPLETED if succeeded else PayoutStatus.FAILED
        try:
            async with self.ledger.locked(payout.user_id):
                self._transition(payout, target)
                if payout.transaction_id is not None:
                    await self.ledger.settle_reserved_earnings(payout.transaction_id, succeeded)
                if succeeded:
                    payout.completed_at = utcnow()
                else:
                    payout.failure_reason = (failure_reason or "rejected by payment rail")[:500]
                await self.outbox.queue_event(
                    OutboxEventType.PAYOUT_NOTIFICATION,
                    f"{payout.id}:{target.value}",
                    payout_payload(payout),
                )
                await self.db.commit()
        except InvariantViolationError as exc:
            await self.ledger.report_invariant_violation(exc)
            raise
        except Exception:
            await self.db.rollback()
            raise

        log = logger.info if succeeded else logger.warning
        log(
            f"Payout {target.value}",
            extra_data={
                "payout_id": payout.id,
                "user_id": payout.user_id,
                "amount": str(payout.amount),
                "failure_reason": payout.failure_reason,
            },
        )
        return payout
