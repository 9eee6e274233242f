"""
External collaborators: payment rail, content moderation, push notifications.

The core only depends on the interfaces in ``base``; the factories below pick
the httpx implementation when the service URL is configured.
"""
from app.core.circuit_breaker import (
    get_moderation_circuit_breaker,
    get_notification_circuit_breaker,
    get_payment_rail_circuit_breaker,
)
from app.core.config import settings
from app.domain.services.integrations.base import (
    ChargeResult,
    ModerationClient,
    ModerationVerdict,
    NotificationClient,
    PaymentRail,
    PayoutSubmission,
)
from app.domain.services.integrations.http_clients import (
    AllowAllModerationClient,
    HttpModerationClient,
    HttpNotificationClient,
    HttpPaymentRail,
    LoggingNotificationClient,
    UnconfiguredPaymentRail,
)


def get_payment_rail() -> PaymentRail:
    if not settings.PAYMENT_RAIL_URL:
        return UnconfiguredPaymentRail()
    return HttpPaymentRail(
        settings.PAYMENT_RAIL_URL,
        get_payment_rail_circuit_breaker(),
        settings.EXTERNAL_HTTP_TIMEOUT_SECONDS,
        api_key=settings.PAYMENT_RAIL_API_KEY,
    )


def get_moderation_client() -> ModerationClient:
    if not settings.MODERATION_SERVICE_URL:
        return AllowAllModerationClient()
    return HttpModerationClient(
        settings.MODERATION_SERVICE_URL,
        get_moderation_circuit_breaker(),
        settings.EXTERNAL_HTTP_TIMEOUT_SECONDS,
    )


def get_notification_client() -> NotificationClient:
    if not settings.NOTIFICATION_SERVICE_URL:
        return LoggingNotificationClient()
    return HttpNotificationClient(
        settings.NOTIFICATION_SERVICE_URL,
        get_notification_circuit_breaker(),
        settings.EXTERNAL_HTTP_TIMEOUT_SECONDS,
    )


__all__ = [
    "ChargeResult",
    "ModerationClient",
    "ModerationVerdict",
    "NotificationClient",
    "PaymentRail",
    "PayoutSubmission",
    "get_payment_rail",
    "get_moderation_client",
    "get_notification_client",
]
