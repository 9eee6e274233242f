"""
אימות חתימת callback נכנס מרשת התשלומים.

רשת התשלומים חותמת על גוף הבקשה הגולמי ב-HMAC-SHA256 עם
``PAYMENT_RAIL_WEBHOOK_SECRET`` ושולחת את ה-hex digest בכותרת
``X-Rail-Signature``.

שימוש:
    @router.post("/callback")
    async def payout_callback(
        ...,
        _: None = Depends(verify_rail_signature),
    ):
        ...
"""
import hashlib
import hmac

from fastapi import Header, HTTPException, Request, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def verify_rail_signature(
    request: Request,
    x_rail_signature: str | None = Header(None),
) -> None:
    """
    - אם ``PAYMENT_RAIL_WEBHOOK_SECRET`` לא מוגדר: מדלג רק ב-DEBUG, אחרת 403.
    - אם הכותרת חסרה או לא תואמת: 403 Forbidden.
    """
    secret = settings.PAYMENT_RAIL_WEBHOOK_SECRET
    if not secret:
        if settings.DEBUG:
            logger.warning("Rail callback accepted without signature (DEBUG, no secret configured)")
            return
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Rail callback secret is not configured",
        )

    if not x_rail_signature:
        logger.warning("Rail callback without X-Rail-Signature header")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing callback signature",
        )

    expected = sign_payload(await request.body(), secret)
    if not hmac.compare_digest(x_rail_signature.lower(), expected):
        logger.warning("Rail callback with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid callback signature",
        )
