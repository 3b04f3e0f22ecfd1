"""
Money Module

ISO 4217 currency codes and an immutable Money value with proper Decimal
precision. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    INR = ("INR", 2)  # Indian Rupee
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    JPY = ("JPY", 0)  # Japanese Yen

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01"""
        return Decimal('0.1') ** self.precision


def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    """Coerce a user-supplied amount into Decimal, going through str for floats"""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount


def round_half_up(amount: Decimal, places: int = 2) -> Decimal:
    """Round to a fixed number of places, halves away from zero"""
    return amount.quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))
        object.__setattr__(self, 'amount', round_half_up(self.amount, self.currency.precision))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def to_dict(self) -> dict:
        return {'amount': str(self.amount), 'currency': self.currency.code}

    @classmethod
    def from_dict(cls, data: dict) -> 'Money':
        return cls(Decimal(data['amount']), Currency[data['currency']])

    def _check_currency(self, other: 'Money') -> None:
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency.code} vs {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def split(self, parts: int) -> list:
        """
        Split into `parts` installments rounded to the currency precision.

        Every part but the last is the rounded quotient; the last absorbs the
        remainder so the parts always sum back to this amount exactly.
        """
        if parts <= 0:
            raise ValueError("parts must be positive")
        share = Money(self.amount / Decimal(parts), self.currency)
        last = Money(self.amount - share.amount * (parts - 1), self.currency)
        return [share] * (parts - 1) + [last]
