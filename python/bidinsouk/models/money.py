"""Fixed-point currency values.

Amounts are held as integer minor units (centimes for MAD) so bid
arithmetic never touches floating point.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union


# Largest amount a SQLite INTEGER column can hold
MAX_MINOR_UNITS = 2**63 - 1

MINOR_UNITS_PER_MAJOR = 100


class MoneyError(ValueError):
    """Base class for invalid money arithmetic."""


class CurrencyMismatch(MoneyError):
    """Operands carry different currency codes."""

    def __init__(self, left: str, right: str):
        super().__init__(f"Currency mismatch: {left} vs {right}")
        self.left = left
        self.right = right


class NegativeAmount(MoneyError):
    """A result or input would be below zero."""


class AmountOverflow(MoneyError):
    """A result would not fit in a 64-bit minor-unit amount."""


def _check_range(amount: int) -> int:
    if amount < 0:
        raise NegativeAmount(f"Amount cannot be negative: {amount}")
    if amount > MAX_MINOR_UNITS:
        raise AmountOverflow(f"Amount exceeds {MAX_MINOR_UNITS} minor units")
    return amount


@dataclass(frozen=True)
class Money:
    """Non-negative amount of a single currency in minor units."""
    amount: int
    currency: str = "MAD"

    def __post_init__(self):
        # bool is an int subclass; reject it along with floats
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise TypeError(
                f"Money amount must be an int of minor units, got {type(self.amount).__name__}"
            )
        if not self.currency or len(self.currency) != 3:
            raise MoneyError(f"Invalid currency code: {self.currency!r}")
        _check_range(self.amount)

    @classmethod
    def zero(cls, currency: str = "MAD") -> "Money":
        return cls(0, currency)

    @classmethod
    def from_major(cls, value: Union[str, int, Decimal], currency: str = "MAD") -> "Money":
        """Build from a major-unit value such as "1250.50".

        Floats are refused; pass a string or Decimal instead.
        """
        if isinstance(value, float):
            raise TypeError("Use a string or Decimal for major-unit amounts, not float")
        try:
            major = Decimal(value)
        except InvalidOperation as e:
            raise MoneyError(f"Invalid amount: {value!r}") from e
        minor = major * MINOR_UNITS_PER_MAJOR
        if minor != minor.to_integral_value():
            raise MoneyError(f"Amount has more than two decimal places: {value!r}")
        return cls(int(minor), currency)

    def _check_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatch(self.currency, other.currency)

    def add(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(_check_range(self.amount + other.amount), self.currency)

    def subtract(self, other: "Money") -> "Money":
        self._check_currency(other)
        result = self.amount - other.amount
        if result < 0:
            raise NegativeAmount(
                f"{self.format()} - {other.format()} would be negative"
            )
        return Money(result, self.currency)

    def compare(self, other: "Money") -> int:
        """Return -1, 0 or 1 like a classic comparator."""
        self._check_currency(other)
        return (self.amount > other.amount) - (self.amount < other.amount)

    def multiply_by_ratio(self, numerator: int, denominator: int) -> "Money":
        """Scale by numerator/denominator, rounding half-up to a minor unit."""
        if denominator <= 0:
            raise MoneyError("Ratio denominator must be positive")
        if numerator < 0:
            raise NegativeAmount("Ratio numerator cannot be negative")
        quotient, remainder = divmod(self.amount * numerator, denominator)
        if remainder * 2 >= denominator:
            quotient += 1
        return Money(_check_range(quotient), self.currency)

    def __add__(self, other: "Money") -> "Money":
        return self.add(other)

    def __sub__(self, other: "Money") -> "Money":
        return self.subtract(other)

    def __lt__(self, other: "Money") -> bool:
        return self.compare(other) < 0

    def __le__(self, other: "Money") -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: "Money") -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: "Money") -> bool:
        return self.compare(other) >= 0

    def to_decimal(self) -> Decimal:
        return (Decimal(self.amount) / MINOR_UNITS_PER_MAJOR).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )

    def format(self) -> str:
        """Human readable form, e.g. "1250.50 MAD"."""
        return f"{self.to_decimal()} {self.currency}"

    def to_dict(self) -> dict:
        return {"amount": self.amount, "currency": self.currency}

    @staticmethod
    def from_dict(data: dict) -> "Money":
        return Money(int(data["amount"]), data.get("currency", "MAD"))
