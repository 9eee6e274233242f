"""
Input Validation Utilities

Validation and sanitization for user-supplied chat and gift text and for
monetary amounts.
"""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from app.core.exceptions import ValidationException

CENTS = Decimal("0.01")

# תווי בקרה חוץ מ-\n ו-\t
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

# escape מלא של markup: & < > " ' /
_HTML_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}
_HTML_ESCAPE_RE = re.compile(r"[&<>\"'/]")


class TextSanitizer:
    """Text sanitization for chat content"""

    @staticmethod
    def remove_control_characters(text: str) -> str:
        if not text:
            return ""
        return _CONTROL_CHARS_RE.sub("", text)

    @staticmethod
    def escape_markup(text: str) -> str:
        """
        Escape markup so stored chat content is inert when rendered.

        Examples:
            >>> TextSanitizer.escape_markup("<b>hi</b>")
            '&lt;b&gt;hi&lt;&#x2F;b&gt;'
        """
        if not text:
            return ""
        return _HTML_ESCAPE_RE.sub(lambda m: _HTML_ESCAPES[m.group(0)], text)

    @classmethod
    def sanitize_chat(cls, text: str, max_length: int, field: str = "content") -> str:
        """
        Normalize and escape chat text.

        Length is checked on the raw text (after trimming), before escaping,
        so escaping never pushes a legal message over the limit.

        Raises:
            ValidationException: empty after trimming, or longer than max_length
        """
        cleaned = cls.remove_control_characters(text or "").strip()
        if not cleaned:
            raise ValidationException("Message cannot be empty", field=field)
        if len(cleaned) > max_length:
            raise ValidationException(
                f"Message too long (maximum {max_length} characters)",
                field=field,
                details={"max_length": max_length, "length": len(cleaned)},
            )
        return cls.escape_markup(cleaned)


class AmountValidator:
    """Monetary amount validation"""

    @staticmethod
    def to_money(amount: Decimal | float | int | str, field: str = "amount") -> Decimal:
        """
        Convert to a Decimal with at most two decimal places.

        Raises:
            ValidationException: not a number, or more than 2 decimal places
        """
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationException("Amount must be a number", field=field) from exc
        if not value.is_finite():
            raise ValidationException("Amount must be a number", field=field)
        if value != value.quantize(CENTS):
            raise ValidationException("Amount cannot have more than 2 decimal places", field=field)
        return value.quantize(CENTS)

    @staticmethod
    def validate_positive(amount: Decimal, field: str = "amount") -> Decimal:
        if amount <= 0:
            raise ValidationException("Amount must be positive", field=field)
        return amount


def quantize_money(value: Decimal) -> Decimal:
    """עיגול לסנטים (half-up)"""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def validate_coin_amount(coins: int, max_coins: int, field: str = "coins") -> int:
    """Coins must be a positive integer no larger than max_coins"""
    if isinstance(coins, bool) or not isinstance(coins, int):
        raise ValidationException("Coin amount must be an integer", field=field)
    if coins <= 0:
        raise ValidationException("Coin amount must be positive", field=field)
    if coins > max_coins:
        raise ValidationException(
            f"Coin amount cannot exceed {max_coins}",
            field=field,
            details={"max_coins": max_coins},
        )
    return coins
