#!/usr/bin/env python3
"""
Fixed-Point Money Utilities for Escrow Calculations
Amounts are integer counts of a currency's minor unit, so splits and sums
never drift the way floats do.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Tuple, Union

from utils.exceptions import CurrencyMismatch, InvalidAmount

logger = logging.getLogger(__name__)

# ISO 4217 exponents that differ from the usual 2
MINOR_UNIT_EXPONENTS = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
}
DEFAULT_EXPONENT = 2


def minor_unit_exponent(currency: str) -> int:
    return MINOR_UNIT_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)


def _normalize_currency(currency: str) -> str:
    if not isinstance(currency, str) or len(currency.strip()) != 3 or not currency.strip().isalpha():
        raise InvalidAmount(f"Invalid currency code: {currency!r}")
    return currency.strip().upper()


@dataclass(frozen=True, order=False)
class Money:
    """Non-negative amount in minor units of a single currency"""

    minor_units: int
    currency: str

    def __post_init__(self):
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise InvalidAmount(
                f"Minor units must be an integer, got {type(self.minor_units).__name__}"
            )
        if self.minor_units < 0:
            raise InvalidAmount(f"Amount cannot be negative: {self.minor_units}")
        object.__setattr__(self, "currency", _normalize_currency(self.currency))

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def of_minor(cls, minor_units: int, currency: str) -> "Money":
        return cls(minor_units, currency)

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, value: Union[str, int, Decimal], currency: str) -> "Money":
        """Convert a major-unit value ("24375.00") into minor units.

        Floats are refused outright; a value with more precision than the
        currency's minor unit is refused rather than rounded.
        """
        if isinstance(value, float):
            raise InvalidAmount("Float amounts are not accepted, pass a Decimal or string")
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidAmount(f"Not a number: {value!r}")
        if not amount.is_finite():
            raise InvalidAmount(f"Amount must be finite: {value!r}")

        code = _normalize_currency(currency)
        scaled = amount.scaleb(minor_unit_exponent(code))
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(
                f"{value} has more precision than {code} minor units allow"
            )
        return cls(int(scaled), code)

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def _check_currency(self, other: "Money"):
        if not isinstance(other, Money):
            raise InvalidAmount(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatch(
                f"Currency mismatch: {self.currency} vs {other.currency}"
            )

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.minor_units + other.minor_units, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        if other.minor_units > self.minor_units:
            raise InvalidAmount(
                f"Subtraction would go negative: {self.format()} - {other.format()}"
            )
        return Money(self.minor_units - other.minor_units, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.minor_units < other.minor_units

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.minor_units <= other.minor_units

    def __gt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.minor_units > other.minor_units

    def __ge__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.minor_units >= other.minor_units

    @property
    def is_zero(self) -> bool:
        return self.minor_units == 0

    def split_half(self) -> Tuple["Money", "Money"]:
        """Return (buyer, supplier) halves; an odd minor unit goes to the supplier."""
        buyer = self.minor_units // 2
        return Money(buyer, self.currency), Money(self.minor_units - buyer, self.currency)

    def to_decimal(self) -> Decimal:
        return Decimal(self.minor_units).scaleb(-minor_unit_exponent(self.currency))

    def format(self) -> str:
        exponent = minor_unit_exponent(self.currency)
        return f"{self.to_decimal():,.{exponent}f} {self.currency}"

    def __str__(self) -> str:
        return self.format()


def sum_money(amounts, currency: str) -> Money:
    """Sum an iterable of Money, all of which must share ``currency``"""
    total = Money.zero(currency)
    for amount in amounts:
        total = total + amount
    return total


__all__ = ["Money", "sum_money", "minor_unit_exponent"]
