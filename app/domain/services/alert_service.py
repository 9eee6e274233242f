"""
Alert Service: התראות תפעול על באגים ופערים בכספים

כל התראה נרשמת ללוג ברמת CRITICAL ונכנסת ל-outbox כ-ops_alert, כך
שהיא נמסרת גם אם שירות ההתראות לא זמין כרגע.

סוגי התראות:
- invariant_violation: יחידת עבודה ניסתה לכתוב מצב לא עקבי
- reconciliation_mismatch: יתרות ארנק לא תואמות להיסטוריית התנועות
- payout_rail_error: רשת התשלומים דחתה העברה
"""
import enum
import json
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger, get_correlation_id
from app.db.database import utcnow
from app.db.models.outbox_message import OutboxEventType, OutboxMessage
from app.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)


class AlertKind(str, enum.Enum):
    INVARIANT_VIOLATION = "invariant_violation"
    RECONCILIATION_MISMATCH = "reconciliation_mismatch"
    PAYOUT_RAIL_ERROR = "payout_rail_error"


class AlertService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self._outbox = OutboxService(db)

    async def raise_alert(self, kind: AlertKind, details: dict[str, Any]) -> OutboxMessage:
        """
        Log at CRITICAL and queue an ops_alert row in the current session.

        The caller commits. After a rolled-back unit of work the caller
        commits the alert on its own.
        """
        logger.critical(
            f"Ops alert: {kind.value}",
            extra_data={"alert_kind": kind.value, **details},
        )
        return await self._outbox.queue_event(
            OutboxEventType.OPS_ALERT,
            f"{kind.value}:{uuid.uuid4().hex}",
            {
                "kind": kind.value,
                # Decimal ו-datetime לא נתמכים בעמודת JSON
                "details": json.loads(json.dumps(details, default=str)),
                "correlation_id": get_correlation_id(),
                "raised_at": utcnow().isoformat(),
            },
        )
