"""
httpx implementations of the external collaborator interfaces.

Each call goes through the service's circuit breaker; a timeout or a 5xx
counts as a failure, a declined charge does not.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.exceptions import (
    ExternalServiceException,
    PaymentFailedError,
    ServiceTimeoutError,
)
from app.core.logging import get_logger
from app.domain.services.integrations.base import (
    ChargeResult,
    ModerationClient,
    ModerationVerdict,
    NotificationClient,
    PaymentRail,
    PayoutSubmission,
)

logger = get_logger(__name__)


class _HttpService:
    service_name = "external"

    def __init__(
        self,
        base_url: str,
        circuit_breaker: CircuitBreaker,
        timeout_seconds: float,
        api_key: str = "",
    ):
        self._base_url = base_url
        self._circuit_breaker = circuit_breaker
        self._timeout = timeout_seconds
        self._api_key = api_key

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if extra:
            headers.update(extra)
        return headers

    async def _post(
        self,
        path: str,
        payload: dict[str, Any],
        operation: str,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        async def _send() -> httpx.Response:
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(
                        f"{self._base_url}{path}",
                        json=payload,
                        headers=self._headers(headers),
                    )
            except httpx.TimeoutException as exc:
                raise ServiceTimeoutError(self.service_name, self._timeout) from exc
            except httpx.RequestError as exc:
                raise ExternalServiceException(
                    self.service_name,
                    f"{self.service_name} {operation} network error: {exc}",
                    details={"operation": operation},
                ) from exc
            if response.status_code >= 500:
                raise ExternalServiceException.from_response(self.service_name, operation, response)
            return response

        return await self._circuit_breaker.execute(_send)


class HttpPaymentRail(_HttpService, PaymentRail):
    service_name = "payment_rail"

    async def charge(
        self,
        user_id: int,
        amount: Decimal,
        currency: str,
        description: str,
        reference: str,
    ) -> ChargeResult:
        response = await self._post(
            "/charges",
            {
                "user_id": user_id,
                "amount": str(amount),
                "currency": currency,
                "description": description,
            },
            operation="charge",
            headers={"Idempotency-Key": reference},
        )
        if response.status_code in (200, 201):
            body = response.json()
            return ChargeResult(reference=str(body.get("id") or reference))
        if response.status_code in (400, 402, 422):
            reason = _error_reason(response)
            logger.info(
                "Payment rail declined charge",
                extra_data={"user_id": user_id, "reference": reference, "reason": reason},
            )
            raise PaymentFailedError(user_id, reason)
        raise ExternalServiceException.from_response(self.service_name, "charge", response)

    async def submit_payout(
        self,
        payout_id: int,
        user_id: int,
        amount: Decimal,
        currency: str,
        method: str,
    ) -> PayoutSubmission:
        response = await self._post(
            "/payouts",
            {
                "payout_id": payout_id,
                "user_id": user_id,
                "amount": str(amount),
                "currency": currency,
                "method": method,
            },
            operation="payouts",
            headers={"Idempotency-Key": f"payout:{payout_id}"},
        )
        if response.status_code in (200, 201, 202):
            body = response.json()
            return PayoutSubmission(external_reference=str(body.get("id") or f"payout:{payout_id}"))
        raise ExternalServiceException.from_response(self.service_name, "payouts", response)

    async def cancel_subscription(self, reference: str) -> None:
        response = await self._post(
            "/subscriptions/cancel",
            {"reference": reference},
            operation="cancel_subscription",
        )
        if response.status_code not in (200, 202, 204, 404):
            raise ExternalServiceException.from_response(self.service_name, "cancel_subscription", response)


class UnconfiguredPaymentRail(PaymentRail):
    """Used when PAYMENT_RAIL_URL is empty: every money movement fails loudly"""

    def _fail(self, operation: str) -> ExternalServiceException:
        return ExternalServiceException(
            "payment_rail",
            "Payment rail is not configured",
            details={"operation": operation},
        )

    async def charge(self, user_id, amount, currency, description, reference) -> ChargeResult:
        raise self._fail("charge")

    async def submit_payout(self, payout_id, user_id, amount, currency, method) -> PayoutSubmission:
        raise self._fail("payouts")

    async def cancel_subscription(self, reference: str) -> None:
        raise self._fail("cancel_subscription")


class HttpModerationClient(_HttpService, ModerationClient):
    service_name = "moderation"

    async def review(self, user_id: int, stream_id: int, content: str) -> ModerationVerdict:
        response = await self._post(
            "/review",
            {"user_id": user_id, "stream_id": stream_id, "content": content},
            operation="review",
        )
        if response.status_code != 200:
            raise ExternalServiceException.from_response(self.service_name, "review", response)
        body = response.json()
        return ModerationVerdict(allowed=bool(body.get("allowed", False)), reason=body.get("reason"))


class AllowAllModerationClient(ModerationClient):
    """ללא שירות מודרציה מוגדר, כל ההודעות מאושרות"""

    async def review(self, user_id: int, stream_id: int, content: str) -> ModerationVerdict:
        return ModerationVerdict(allowed=True)


class HttpNotificationClient(_HttpService, NotificationClient):
    service_name = "notifications"

    async def send(self, user_id: int, kind: str, payload: dict[str, Any]) -> None:
        response = await self._post(
            "/notifications",
            {"user_id": user_id, "kind": kind, "payload": payload},
            operation="send",
        )
        if response.status_code not in (200, 201, 202):
            raise ExternalServiceException.from_response(self.service_name, "send", response)

    async def notify_ops(self, kind: str, payload: dict[str, Any]) -> None:
        response = await self._post(
            "/ops-alerts",
            {"kind": kind, "payload": payload},
            operation="notify_ops",
        )
        if response.status_code not in (200, 201, 202):
            raise ExternalServiceException.from_response(self.service_name, "notify_ops", response)


class LoggingNotificationClient(NotificationClient):
    """ללא שירות התראות מוגדר, ההתראה נרשמת ללוג בלבד"""

    async def send(self, user_id: int, kind: str, payload: dict[str, Any]) -> None:
        logger.info(
            "Notification (no service configured)",
            extra_data={"user_id": user_id, "kind": kind},
        )

    async def notify_ops(self, kind: str, payload: dict[str, Any]) -> None:
        logger.critical(
            "Ops alert (no notification service configured)",
            extra_data={"alert_kind": kind, **payload},
        )


def _error_reason(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("reason") or body.get("message")
    return None
