"""
Subscription Ledger - recurring creator subscriptions

State machine:
    ACTIVE   -> ACTIVE (renewed) | PAST_DUE (charge failed) | CANCELED
    PAST_DUE -> ACTIVE (charge recovered) | PAST_DUE | CANCELED
    CANCELED -> (terminal)

Every successful charge writes SUBSCRIPTION_CHARGE on the subscriber's wallet
and SUBSCRIPTION_EARNING (creator share) on the creator's, in the same DB
transaction as the state change. The rail is charged before anything is
written, so a declined first charge leaves no row behind.
"""
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AlreadySubscribedError,
    ExternalServiceException,
    ForbiddenError,
    InvalidOperationError,
    InvalidStateTransitionError,
    InvariantViolationError,
    PaymentFailedError,
    SubscriptionNotFoundError,
)
from app.core.logging import get_logger
from app.core.validation import quantize_money
from app.db.database import utcnow
from app.db.models.subscription import (
    Subscription,
    SubscriptionInterval,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.domain.services.alert_service import AlertKind, AlertService
from app.domain.services.integrations import PaymentRail
from app.domain.services.wallet_ledger import WalletLedger

logger = get_logger(__name__)


SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.ACTIVE: [
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    ],
    SubscriptionStatus.PAST_DUE: [
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    ],
    SubscriptionStatus.CANCELED: [],
}

# ניסיון חיוב חוזר למנוי PAST_DUE לכל היותר פעם ביום
PAST_DUE_RETRY_INTERVAL = timedelta(days=1)

PERIOD_LENGTH = {
    SubscriptionInterval.MONTHLY: timedelta(days=30),
    SubscriptionInterval.YEARLY: timedelta(days=365),
}


def subscription_price(tier: SubscriptionTier, interval: SubscriptionInterval) -> Decimal:
    prices = settings.subscription_prices[tier.name]
    return quantize_money(Decimal(str(prices[interval.value])))


def creator_cut(amount: Decimal) -> Decimal:
    return quantize_money(Decimal(amount) * Decimal(str(settings.CREATOR_SHARE)))


class SubscriptionLedger:
    def __init__(self, db: AsyncSession, payment_rail: PaymentRail):
        self.db = db
        self.payment_rail = payment_rail
        self.ledger = WalletLedger(db)

    @staticmethod
    def _is_valid_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
        return target in SUBSCRIPTION_TRANSITIONS.get(current, [])

    def _transition(self, subscription: Subscription, target: SubscriptionStatus) -> None:
        if not self._is_valid_transition(subscription.status, target):
            raise InvalidStateTransitionError(subscription.status.value, target.value, entity="subscription")
        subscription.status = target

    async def get(self, subscription_id: int) -> Subscription:
        result = await self.db.execute(select(Subscription).where(Subscription.id == subscription_id))
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def get_open_subscription(self, subscriber_id: int, creator_id: int) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.subscriber_id == subscriber_id,
                Subscription.creator_id == creator_id,
                Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE]),
            )
        )
        return result.scalars().first()

    async def _book_charge(self, subscription: Subscription, charge_reference: str, correlation_id: str) -> None:
        """Ledger rows for one successful charge. Does not commit."""
        period = subscription.current_period_start.date().isoformat()
        await self.ledger.record_external_charge(
            subscription.subscriber_id,
            subscription.amount,
            correlation_id=correlation_id,
            reference_id=charge_reference,
            description=f"{subscription.tier.value} subscription ({period})",
        )
        await self.ledger.credit_earnings(
            subscription.creator_id,
            creator_cut(subscription.amount),
            correlation_id=correlation_id,
            reference_id=f"subscription:{subscription.id}",
            description=f"{subscription.tier.value} subscriber",
        )

    async def _alert_unbooked_charge(self, details: dict, exc: Exception) -> None:
        # החיוב עבר ברשת התשלומים אבל לא נרשם אצלנו
        await self.db.rollback()
        await AlertService(self.db).raise_alert(
            AlertKind.RECONCILIATION_MISMATCH,
            {**details, "error": str(exc)},
        )
        await self.db.commit()

    async def create(
        self,
        subscriber_id: int,
        creator_id: int,
        tier: SubscriptionTier,
        interval: SubscriptionInterval = SubscriptionInterval.MONTHLY,
    ) -> Subscription:
        """
        Subscribe with a first charge.

        The open-subscription check, the rail charge and the insert all run
        under the pair's lock; the partial unique index catches a concurrent
        create from another process.

        Raises:
            InvalidOperationError: subscriber == creator
            AlreadySubscribedError: an ACTIVE or PAST_DUE subscription exists
            PaymentFailedError: the rail declined (nothing persisted)
        """
        if subscriber_id == creator_id:
            raise InvalidOperationError("Cannot subscribe to yourself")

        amount = subscription_price(tier, interval)
        async with self.ledger.locked(subscriber_id, creator_id):
            if await self.get_open_subscription(subscriber_id, creator_id) is not None:
                raise AlreadySubscribedError(subscriber_id, creator_id)

            subscriber_wallet = await self.ledger.get_wallet(subscriber_id)
            await self.ledger.get_wallet(creator_id)

            reference = f"subscription:{subscriber_id}:{creator_id}:{utcnow().strftime('%Y%m%d%H%M%S%f')}"
            charge = await self.payment_rail.charge(
                user_id=subscriber_id,
                amount=amount,
                currency=subscriber_wallet.currency,
                description=f"{tier.value} {interval.value} subscription",
                reference=reference,
            )

            now = utcnow()
            unbooked = {"subscriber_id": subscriber_id, "creator_id": creator_id, "charge_reference": charge.reference}
            try:
                subscription = Subscription(
                    subscriber_id=subscriber_id,
                    creator_id=creator_id,
                    tier=tier,
                    interval=interval,
                    status=SubscriptionStatus.ACTIVE,
                    amount=amount,
                    currency=subscriber_wallet.currency,
                    current_period_start=now,
                    current_period_end=now + PERIOD_LENGTH[interval],
                    failed_charge_count=0,
                    external_reference=charge.reference,
                )
                self.db.add(subscription)
                await self.db.flush()
                await self._book_charge(subscription, charge.reference, reference)
                await self.db.commit()
            except IntegrityError as exc:
                await self._alert_unbooked_charge(unbooked, exc)
                # תהליך אחר פתח מנוי לאותו זוג בין הבדיקה ל-insert
                if await self.get_open_subscription(subscriber_id, creator_id) is not None:
                    raise AlreadySubscribedError(subscriber_id, creator_id) from exc
                raise
            except InvariantViolationError as exc:
                await self.ledger.report_invariant_violation(exc)
                raise
            except Exception as exc:
                await self._alert_unbooked_charge(unbooked, exc)
                raise

        logger.info(
            "Subscription created",
            extra_data={
                "subscription_id": subscription.id,
                "subscriber_id": subscriber_id,
                "creator_id": creator_id,
                "tier": tier.value,
                "amount": str(amount),
            },
        )
        return subscription

    async def renew(self, subscription_id: int) -> Subscription:
        """
        Charge the next period.

        Success returns the subscription to ACTIVE and advances the period.
        A declined charge moves it to PAST_DUE, and to CANCELED once
        SUBSCRIPTION_MAX_FAILED_CHARGES consecutive charges have failed.
        """
        subscription = await self.get(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELED:
            raise InvalidStateTransitionError(
                subscription.status.value, SubscriptionStatus.ACTIVE.value, entity="subscription"
            )

        if subscription.status == SubscriptionStatus.PAST_DUE:
            # תקופה חדשה מתחילה מרגע ההחלמה
            period_start = max(subscription.current_period_end, utcnow())
        else:
            period_start = subscription.current_period_end
        reference = f"subscription:{subscription.id}:{period_start.strftime('%Y%m%d')}"

        try:
            charge = await self.payment_rail.charge(
                user_id=subscription.subscriber_id,
                amount=Decimal(subscription.amount),
                currency=subscription.currency,
                description=f"{subscription.tier.value} {subscription.interval.value} renewal",
                reference=reference,
            )
        except (PaymentFailedError, ExternalServiceException) as exc:
            return await self._record_failed_charge(subscription, exc)

        try:
            async with self.ledger.locked(subscription.subscriber_id, subscription.creator_id):
                self._transition(subscription, SubscriptionStatus.ACTIVE)
                subscription.current_period_start = period_start
                subscription.current_period_end = period_start + PERIOD_LENGTH[subscription.interval]
                subscription.failed_charge_count = 0
                subscription.external_reference = charge.reference
                await self._book_charge(subscription, charge.reference, reference)
                await self.db.commit()
        except InvariantViolationError as exc:
            await self.ledger.report_invariant_violation(exc)
            raise
        except Exception as exc:
            await self._alert_unbooked_charge(
                {"subscription_id": subscription_id, "charge_reference": charge.reference},
                exc,
            )
            raise

        logger.info(
            "Subscription renewed",
            extra_data={
                "subscription_id": subscription.id,
                "period_end": subscription.current_period_end.isoformat(),
            },
        )
        return subscription

    async def _record_failed_charge(self, subscription: Subscription, exc: Exception) -> Subscription:
        subscription.failed_charge_count = (subscription.failed_charge_count or 0) + 1
        if subscription.failed_charge_count >= settings.SUBSCRIPTION_MAX_FAILED_CHARGES:
            self._transition(subscription, SubscriptionStatus.CANCELED)
            subscription.canceled_at = utcnow()
        else:
            self._transition(subscription, SubscriptionStatus.PAST_DUE)
        await self.db.commit()

        logger.warning(
            "Subscription renewal charge failed",
            extra_data={
                "subscription_id": subscription.id,
                "failed_charge_count": subscription.failed_charge_count,
                "status": subscription.status.value,
                "error": str(exc),
            },
        )
        return subscription

    async def cancel(self, subscription_id: int, acting_user_id: int) -> Subscription:
        """
        Owner-only, terminal.

        Raises:
            ForbiddenError: acting user is not the subscriber
            InvalidStateTransitionError: already CANCELED
        """
        subscription = await self.get(subscription_id)
        if subscription.subscriber_id != acting_user_id:
            raise ForbiddenError("Only the subscriber can cancel this subscription")
        self._transition(subscription, SubscriptionStatus.CANCELED)
        subscription.canceled_at = utcnow()
        await self.db.commit()

        if subscription.external_reference:
            try:
                await self.payment_rail.cancel_subscription(subscription.external_reference)
            except ExternalServiceException as exc:
                # הביטול אצלנו סופי; החיובים הבאים נחסמים ממילא לפי הסטטוס
                logger.warning(
                    "Rail subscription cancel failed",
                    extra_data={"subscription_id": subscription.id, "error": exc.message},
                )

        logger.info(
            "Subscription canceled",
            extra_data={"subscription_id": subscription.id, "acting_user_id": acting_user_id},
        )
        return subscription

    async def due_for_renewal(self, now: datetime | None = None, limit: int = 100) -> list[Subscription]:
        """
        ACTIVE subscriptions whose period has ended, and PAST_DUE ones whose
        last failed attempt is older than PAST_DUE_RETRY_INTERVAL.
        """
        now = now or utcnow()
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.current_period_end <= now,
                or_(
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    and_(
                        Subscription.status == SubscriptionStatus.PAST_DUE,
                        Subscription.updated_at <= now - PAST_DUE_RETRY_INTERVAL,
                    ),
                ),
            )
            .order_by(Subscription.current_period_end)
            .limit(limit)
        )
        return list(result.scalars().all())
