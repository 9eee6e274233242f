"""
Unit tests for SubscriptionLedger: first charge, renewals, dunning and cancel.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.core.exceptions import (
    AlreadySubscribedError,
    ForbiddenError,
    InvalidOperationError,
    InvalidStateTransitionError,
    PaymentFailedError,
    SubscriptionNotFoundError,
)
from app.db.database import utcnow
from app.db.models.outbox_message import OutboxEventType, OutboxMessage
from app.db.models.subscription import (
    Subscription,
    SubscriptionInterval,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.db.models.transaction import Transaction, TransactionType
from app.domain.services.subscription_service import (
    SubscriptionLedger,
    creator_cut,
    subscription_price,
)
from app.domain.services.wallet_ledger import WalletLedger


@pytest.fixture
async def fan_and_creator(user_factory, wallet_factory):
    fan = await user_factory(username="fan")
    creator = await user_factory(username="creator")
    await wallet_factory(user_id=fan.id)
    await wallet_factory(user_id=creator.id)
    return fan, creator


@pytest.mark.unit
@pytest.mark.parametrize("tier,interval,expected", [
    (SubscriptionTier.BASIC, SubscriptionInterval.MONTHLY, Decimal("4.99")),
    (SubscriptionTier.PREMIUM, SubscriptionInterval.YEARLY, Decimal("99.99")),
    (SubscriptionTier.VIP, SubscriptionInterval.MONTHLY, Decimal("24.99")),
])
def test_subscription_price_table(tier, interval, expected):
    assert subscription_price(tier, interval) == expected


@pytest.mark.unit
def test_creator_cut_rounds_to_cents():
    assert creator_cut(Decimal("4.99")) == Decimal("3.49")


@pytest.mark.unit
async def test_create_charges_and_books_both_legs(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    ledger = SubscriptionLedger(db_session, fake_rail)

    sub = await ledger.create(fan.id, creator.id, SubscriptionTier.BASIC)

    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.amount == Decimal("4.99")
    assert sub.current_period_end - sub.current_period_start == timedelta(days=30)
    assert sub.external_reference == "ch_1"
    assert fake_rail.charges[0]["amount"] == Decimal("4.99")

    wallets = WalletLedger(db_session)
    assert (await wallets.get_wallet(creator.id)).pending_earnings == Decimal("3.49")
    fan_wallet = await wallets.get_wallet(fan.id)
    result = await db_session.execute(select(Transaction).where(Transaction.wallet_id == fan_wallet.id))
    [charge] = result.scalars().all()
    assert charge.type == TransactionType.SUBSCRIPTION_CHARGE
    assert charge.amount == Decimal("-4.99")
    assert charge.coins is None
    assert fan_wallet.coins == 0


@pytest.mark.unit
async def test_yearly_period_is_365_days(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator

    sub = await SubscriptionLedger(db_session, fake_rail).create(
        fan.id, creator.id, SubscriptionTier.VIP, SubscriptionInterval.YEARLY
    )

    assert sub.current_period_end - sub.current_period_start == timedelta(days=365)


@pytest.mark.unit
async def test_cannot_subscribe_to_self(db_session, fan_and_creator, fake_rail):
    fan, _ = fan_and_creator

    with pytest.raises(InvalidOperationError):
        await SubscriptionLedger(db_session, fake_rail).create(fan.id, fan.id, SubscriptionTier.BASIC)


@pytest.mark.unit
async def test_duplicate_open_subscription_rejected(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    ledger = SubscriptionLedger(db_session, fake_rail)
    await ledger.create(fan.id, creator.id, SubscriptionTier.BASIC)

    with pytest.raises(AlreadySubscribedError) as exc_info:
        await ledger.create(fan.id, creator.id, SubscriptionTier.VIP)
    assert exc_info.value.status_code == 409
    assert len(fake_rail.charges) == 1


@pytest.mark.unit
async def test_open_pair_unique_index(db_session, fan_and_creator):
    fan, creator = fan_and_creator
    now = utcnow()

    def _row(status):
        return Subscription(
            subscriber_id=fan.id,
            creator_id=creator.id,
            tier=SubscriptionTier.BASIC,
            status=status,
            amount=Decimal("4.99"),
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
        )

    # מנוי מבוטל לא תופס את הזוג
    db_session.add_all([_row(SubscriptionStatus.CANCELED), _row(SubscriptionStatus.ACTIVE)])
    await db_session.commit()

    db_session.add(_row(SubscriptionStatus.PAST_DUE))
    with pytest.raises(IntegrityError):
        await db_session.flush()
    await db_session.rollback()


@pytest.mark.unit
async def test_create_losing_race_maps_to_already_subscribed(db_session, fan_and_creator, fake_rail, monkeypatch):
    """Another process inserted between our check and our insert"""
    fan, creator = fan_and_creator
    ledger = SubscriptionLedger(db_session, fake_rail)
    await ledger.create(fan.id, creator.id, SubscriptionTier.BASIC)

    original = SubscriptionLedger.get_open_subscription
    calls = []

    async def _stale_check(self, subscriber_id, creator_id):
        calls.append(subscriber_id)
        if len(calls) == 1:
            return None
        return await original(self, subscriber_id, creator_id)

    monkeypatch.setattr(SubscriptionLedger, "get_open_subscription", _stale_check)

    with pytest.raises(AlreadySubscribedError):
        await ledger.create(fan.id, creator.id, SubscriptionTier.VIP)

    subs = (await db_session.execute(select(Subscription))).scalars().all()
    assert len(subs) == 1
    # החיוב השני עבר ברשת ולא נרשם, ולכן יש התראה
    [alert] = (
        await db_session.execute(
            select(OutboxMessage).where(OutboxMessage.event_type == OutboxEventType.OPS_ALERT)
        )
    ).scalars().all()
    assert alert.payload["details"]["charge_reference"] == "ch_2"


@pytest.mark.unit
async def test_declined_first_charge_persists_nothing(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    fake_rail.decline = True

    with pytest.raises(PaymentFailedError):
        await SubscriptionLedger(db_session, fake_rail).create(fan.id, creator.id, SubscriptionTier.BASIC)

    assert (await db_session.execute(select(Subscription))).scalars().all() == []
    assert (await db_session.execute(select(Transaction))).scalars().all() == []


@pytest.mark.unit
async def test_renew_advances_period(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    ledger = SubscriptionLedger(db_session, fake_rail)
    sub = await ledger.create(fan.id, creator.id, SubscriptionTier.BASIC)
    old_end = sub.current_period_end

    renewed = await ledger.renew(sub.id)

    assert renewed.status == SubscriptionStatus.ACTIVE
    assert renewed.current_period_start == old_end
    assert renewed.current_period_end == old_end + timedelta(days=30)
    assert (await WalletLedger(db_session).get_wallet(creator.id)).pending_earnings == Decimal("6.98")


@pytest.mark.unit
async def test_failed_renewals_go_past_due_then_canceled(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    ledger = SubscriptionLedger(db_session, fake_rail)
    sub = await ledger.create(fan.id, creator.id, SubscriptionTier.BASIC)
    fake_rail.decline = True

    statuses = []
    for _ in range(settings.SUBSCRIPTION_MAX_FAILED_CHARGES):
        statuses.append((await ledger.renew(sub.id)).status)

    assert statuses[:-1] == [SubscriptionStatus.PAST_DUE] * (settings.SUBSCRIPTION_MAX_FAILED_CHARGES - 1)
    assert statuses[-1] == SubscriptionStatus.CANCELED
    assert sub.canceled_at is not None
    with pytest.raises(InvalidStateTransitionError):
        await ledger.renew(sub.id)


@pytest.mark.unit
async def test_rail_outage_counts_as_failed_charge(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    ledger = SubscriptionLedger(db_session, fake_rail)
    sub = await ledger.create(fan.id, creator.id, SubscriptionTier.BASIC)
    fake_rail.unavailable = True

    result = await ledger.renew(sub.id)

    assert result.status == SubscriptionStatus.PAST_DUE
    assert result.failed_charge_count == 1


@pytest.mark.unit
async def test_past_due_recovers_on_successful_charge(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    ledger = SubscriptionLedger(db_session, fake_rail)
    sub = await ledger.create(fan.id, creator.id, SubscriptionTier.BASIC)
    fake_rail.decline = True
    await ledger.renew(sub.id)
    fake_rail.decline = False

    recovered = await ledger.renew(sub.id)

    assert recovered.status == SubscriptionStatus.ACTIVE
    assert recovered.failed_charge_count == 0


@pytest.mark.unit
async def test_cancel_is_owner_only_and_terminal(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    ledger = SubscriptionLedger(db_session, fake_rail)
    sub = await ledger.create(fan.id, creator.id, SubscriptionTier.BASIC)

    with pytest.raises(ForbiddenError):
        await ledger.cancel(sub.id, creator.id)

    canceled = await ledger.cancel(sub.id, fan.id)
    assert canceled.status == SubscriptionStatus.CANCELED
    assert fake_rail.canceled == ["ch_1"]

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        await ledger.cancel(sub.id, fan.id)
    assert exc_info.value.status_code == 409


@pytest.mark.unit
async def test_cancel_survives_rail_outage(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    ledger = SubscriptionLedger(db_session, fake_rail)
    sub = await ledger.create(fan.id, creator.id, SubscriptionTier.BASIC)
    fake_rail.unavailable = True

    canceled = await ledger.cancel(sub.id, fan.id)

    assert canceled.status == SubscriptionStatus.CANCELED


@pytest.mark.unit
async def test_resubscribe_after_cancel(db_session, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    ledger = SubscriptionLedger(db_session, fake_rail)
    first = await ledger.create(fan.id, creator.id, SubscriptionTier.BASIC)
    await ledger.cancel(first.id, fan.id)

    second = await ledger.create(fan.id, creator.id, SubscriptionTier.PREMIUM)
    assert second.id != first.id


@pytest.mark.unit
async def test_get_unknown_subscription(db_session, fake_rail):
    with pytest.raises(SubscriptionNotFoundError):
        await SubscriptionLedger(db_session, fake_rail).get(404)


@pytest.mark.unit
async def test_due_for_renewal_selection(db_session, user_factory, wallet_factory, fake_rail):
    creator = await user_factory()
    await wallet_factory(user_id=creator.id)
    fans = []
    for _ in range(3):
        fan = await user_factory()
        await wallet_factory(user_id=fan.id)
        fans.append(fan)
    ledger = SubscriptionLedger(db_session, fake_rail)
    due, not_yet, past_due_recent = [await ledger.create(f.id, creator.id, SubscriptionTier.BASIC) for f in fans]

    now = utcnow()
    due.current_period_end = now - timedelta(hours=1)
    past_due_recent.current_period_end = now - timedelta(hours=1)
    past_due_recent.status = SubscriptionStatus.PAST_DUE
    past_due_recent.updated_at = now - timedelta(hours=2)
    await db_session.commit()

    selected = await ledger.due_for_renewal(now=now)

    assert [s.id for s in selected] == [due.id]
    assert not_yet.id not in [s.id for s in selected]
