"""
Celery Tasks

Worker side of the transactional outbox (gift chat events, notifications,
ops alerts) plus the periodic money jobs: payout submission and its stale
sweep, subscription renewal and wallet reconciliation.
"""
import asyncio
from contextlib import contextmanager

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.workers.celery_app import celery_app
from app.core.exceptions import AppException
from app.core.logging import correlation_scope, get_logger, log_async_operation
from app.db.database import get_task_session
from app.db.models.payout import PayoutStatus
from app.db.models.wallet import Wallet
from app.domain.services.alert_service import AlertKind, AlertService
from app.domain.services.chat_relay import ChatRelay
from app.domain.services.integrations import (
    get_moderation_client,
    get_notification_client,
    get_payment_rail,
)
from app.domain.services.outbox_dispatcher import OutboxDispatcher
from app.domain.services.outbox_service import OutboxService
from app.domain.services.payout_service import PayoutProcessor
from app.domain.services.subscription_service import SubscriptionLedger
from app.domain.services.wallet_ledger import WalletLedger
from app.realtime.fanout import get_chat_fanout

logger = get_logger(__name__)

_RECONCILE_BATCH_SIZE = 200


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop, מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Run async code in a sync Celery task under its own correlation ID"""
    with correlation_scope():
        with get_event_loop() as loop:
            return loop.run_until_complete(coro)


def _build_dispatcher(db) -> OutboxDispatcher:
    # ה-worker לא מחזיק sockets; עם CHAT_FANOUT_BACKEND=redis האירוע מגיע לתהליכי ה-API
    chat_relay = ChatRelay(db, None, get_moderation_client(), get_chat_fanout())
    return OutboxDispatcher(db, chat_relay, get_notification_client())


@celery_app.task(name="app.workers.tasks.process_outbox_messages")
def process_outbox_messages(limit: int = 50):
    """
    Deliver pending outbox rows.
    Rows already claimed by the request fast path are skipped.
    """

    async def _process():
        async with get_task_session() as db:
            return await _build_dispatcher(db).dispatch_pending(limit=limit)

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.dispatch_outbox_message")
def dispatch_outbox_message(message_id: int):
    """Deliver a specific outbox row by ID"""

    async def _dispatch():
        async with get_task_session() as db:
            outcome = await _build_dispatcher(db).dispatch(message_id)
            return {"message_id": message_id, "sent": outcome}

    return run_async(_dispatch())


@celery_app.task(name="app.workers.tasks.release_stuck_outbox_messages")
def release_stuck_outbox_messages(older_than_minutes: int = 10):
    async def _release():
        async with get_task_session() as db:
            released = await OutboxService(db).release_stuck_messages(older_than_minutes)
            if released:
                logger.warning(
                    "Released stuck outbox messages",
                    extra_data={"count": released},
                )
            return {"released": released}

    return run_async(_release())


@celery_app.task(name="app.workers.tasks.cleanup_old_outbox_messages")
def cleanup_old_outbox_messages(days: int = 7):
    """Clean up old delivered messages from the outbox"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await OutboxService(db).cleanup_sent_messages(days)
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(
    name="app.workers.tasks.process_payout",
    autoretry_for=(SQLAlchemyError,),
    retry_backoff=True,
    max_retries=5,
)
def process_payout(payout_id: int):
    """Submit a PENDING payout to the payment rail"""

    @log_async_operation("submit_payout")
    async def _submit():
        async with get_task_session() as db:
            processor = PayoutProcessor(db, get_payment_rail(), enqueue_submission=None)
            payout = await processor.submit(payout_id)
            return {"payout_id": payout.id, "status": payout.status.value}

    return run_async(_submit())


@celery_app.task(name="app.workers.tasks.resubmit_stale_payouts")
def resubmit_stale_payouts(limit: int = 50):
    """
    Submit payouts whose enqueue was lost or whose worker died mid-call.
    The rail dedups by payout id, so a second submission is safe.
    """

    @log_async_operation("resubmit_stale_payouts")
    async def _resubmit():
        results = {"submitted": 0, "failed": 0, "errors": 0}
        async with get_task_session() as db:
            processor = PayoutProcessor(db, get_payment_rail(), enqueue_submission=None)
            for payout in await processor.stale_payouts(limit=limit):
                try:
                    outcome = await processor.submit(payout.id)
                except AppException as exc:
                    await db.rollback()
                    results["errors"] += 1
                    logger.error(
                        "Stale payout resubmission failed",
                        extra_data={"payout_id": payout.id, "error": exc.message},
                    )
                    continue
                key = "failed" if outcome.status == PayoutStatus.FAILED else "submitted"
                results[key] += 1

        if any(results.values()):
            logger.warning("Stale payouts resubmitted", extra_data=results)
        return results

    return run_async(_resubmit())


@celery_app.task(name="app.workers.tasks.renew_due_subscriptions")
def renew_due_subscriptions(limit: int = 100):
    """
    Charge every subscription whose period ended.
    Failures are counted per subscription and never stop the batch.
    """

    @log_async_operation("renew_due_subscriptions")
    async def _renew():
        results = {"renewed": 0, "past_due": 0, "canceled": 0, "errors": 0}
        async with get_task_session() as db:
            ledger = SubscriptionLedger(db, get_payment_rail())
            due = await ledger.due_for_renewal(limit=limit)
            for subscription in due:
                try:
                    renewed = await ledger.renew(subscription.id)
                except AppException as exc:
                    await db.rollback()
                    results["errors"] += 1
                    logger.error(
                        "Subscription renewal failed",
                        extra_data={"subscription_id": subscription.id, "error": exc.message},
                    )
                    continue
                key = {"active": "renewed"}.get(renewed.status.value, renewed.status.value)
                results[key] += 1

        logger.info("Subscription renewal run finished", extra_data=results)
        return results

    return run_async(_renew())


@celery_app.task(name="app.workers.tasks.reconcile_wallets")
def reconcile_wallets():
    """
    Compare every wallet against its transactions.
    Each mismatch raises a RECONCILIATION_MISMATCH alert for the ops team.
    """

    @log_async_operation("reconcile_wallets")
    async def _reconcile():
        checked = 0
        mismatched = []
        async with get_task_session() as db:
            ledger = WalletLedger(db)
            alerts = AlertService(db)
            last_id = 0
            while True:
                result = await db.execute(
                    select(Wallet.id, Wallet.user_id)
                    .where(Wallet.id > last_id)
                    .order_by(Wallet.id)
                    .limit(_RECONCILE_BATCH_SIZE)
                )
                rows = result.all()
                if not rows:
                    break
                for wallet_id, user_id in rows:
                    report = await ledger.reconcile(user_id)
                    checked += 1
                    if not report.is_consistent:
                        mismatched.append(user_id)
                        await alerts.raise_alert(
                            AlertKind.RECONCILIATION_MISMATCH,
                            {"user_id": user_id, "wallet_id": wallet_id, "mismatches": report.mismatches},
                        )
                        await db.commit()
                last_id = rows[-1][0]

        logger.info(
            "Wallet reconciliation finished",
            extra_data={"checked": checked, "mismatched": len(mismatched)},
        )
        return {"checked": checked, "mismatched": mismatched}

    return run_async(_reconcile())
