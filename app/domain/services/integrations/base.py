"""
ממשקים לשירותים חיצוניים: Dependency Inversion.

הליבה תלויה רק בממשקים האלה: רשת התשלומים, שירות המודרציה ושירות ההתראות.
כל מימוש אחראי על HTTP, circuit breaker ומיפוי שגיאות ל-AppException.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class ChargeResult:
    reference: str


@dataclass(frozen=True)
class PayoutSubmission:
    external_reference: str


@dataclass(frozen=True)
class ModerationVerdict:
    allowed: bool
    reason: str | None = None


class PaymentRail(ABC):
    """Charges and payouts. The rail itself is an external system."""

    @abstractmethod
    async def charge(
        self,
        user_id: int,
        amount: Decimal,
        currency: str,
        description: str,
        reference: str,
    ) -> ChargeResult:
        """
        Charge the user's payment method.

        `reference` is sent as the rail's idempotency key, so retrying the same
        charge never bills twice.

        Raises:
            PaymentFailedError: the rail declined the charge
            ExternalServiceException: the rail could not be reached
        """

    @abstractmethod
    async def submit_payout(
        self,
        payout_id: int,
        user_id: int,
        amount: Decimal,
        currency: str,
        method: str,
    ) -> PayoutSubmission:
        """
        Hand a payout to the rail. The result arrives later via callback.

        Raises:
            ExternalServiceException: the rail rejected or could not take the payout
        """

    @abstractmethod
    async def cancel_subscription(self, reference: str) -> None:
        """Stop recurring billing on the rail side"""


class ModerationClient(ABC):
    @abstractmethod
    async def review(self, user_id: int, stream_id: int, content: str) -> ModerationVerdict:
        """Return the moderation verdict for a chat line"""


class NotificationClient(ABC):
    @abstractmethod
    async def send(self, user_id: int, kind: str, payload: dict[str, Any]) -> None:
        """
        Push a notification to a user.

        Raises:
            ExternalServiceException: delivery failed (the outbox retries)
        """

    @abstractmethod
    async def notify_ops(self, kind: str, payload: dict[str, Any]) -> None:
        """Page the operations channel (alerts)"""
