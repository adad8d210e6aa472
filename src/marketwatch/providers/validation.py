"""Payload value extraction and validation.

Parsers pull one raw scalar out of a provider payload and wrap it in a
ParsedValue; ``validate_value`` then turns that scalar into a Decimal or
rejects it. A rejected value is never replaced with a default.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from marketwatch.exceptions import PayloadValidationError


@dataclass
class ParsedValue:
    """Raw scalar extracted from a payload, plus provider-side context."""

    raw: Any
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ValueDomain:
    """Closed (or half-open) numeric range a metric's value must fall in."""

    min_value: Decimal | None = None
    max_value: Decimal | None = None
    exclusive_min: bool = False

    def contains(self, value: Decimal) -> bool:
        if self.min_value is not None:
            if self.exclusive_min and value <= self.min_value:
                return False
            if value < self.min_value:
                return False
        if self.max_value is not None and value > self.max_value:
            return False
        return True

    def describe(self) -> str:
        low = "-inf" if self.min_value is None else str(self.min_value)
        high = "+inf" if self.max_value is None else str(self.max_value)
        opener = "(" if self.exclusive_min or self.min_value is None else "["
        return f"{opener}{low}, {high}]"


POSITIVE = ValueDomain(min_value=Decimal("0"), exclusive_min=True)
NON_NEGATIVE = ValueDomain(min_value=Decimal("0"))
PERCENTAGE = ValueDomain(min_value=Decimal("0"), max_value=Decimal("100"))
INDEX_0_100 = PERCENTAGE
YIELD = ValueDomain(min_value=Decimal("-5"), max_value=Decimal("50"))
FUNDING_RATE = ValueDomain(min_value=Decimal("-1"), max_value=Decimal("1"))


def to_decimal(raw: Any) -> Decimal:
    """Convert a raw payload scalar to Decimal, via str() for floats.

    Raises:
        PayloadValidationError: Non-numeric, boolean, NaN or infinite input.
    """
    if raw is None or isinstance(raw, bool):
        raise PayloadValidationError(f"non-numeric value {raw!r}")
    if isinstance(raw, Decimal):
        value = raw
    else:
        try:
            value = Decimal(str(raw).strip())
        except (InvalidOperation, ValueError) as e:
            raise PayloadValidationError(f"non-numeric value {raw!r}") from e
    if not value.is_finite():
        raise PayloadValidationError(f"non-finite value {raw!r}")
    return value


def validate_value(raw: Any, domain: ValueDomain) -> Decimal:
    """Return ``raw`` as a Decimal if it is numeric, finite and inside ``domain``.

    Raises:
        PayloadValidationError: With the reason the value was rejected.
    """
    value = to_decimal(raw)
    if not domain.contains(value):
        raise PayloadValidationError(f"value {value} outside {domain.describe()}")
    return value


def extract(payload: Any, getter: Callable[[Any], Any]) -> Any:
    """Apply ``getter`` to a payload, mapping shape errors to PayloadValidationError."""
    try:
        return getter(payload)
    except (KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
        raise PayloadValidationError(f"unexpected payload shape: {type(e).__name__} {e}") from e
