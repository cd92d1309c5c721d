"""
exact decimal helpers for every money computation.

all values are decimal.Decimal truncated (ROUND_DOWN) to 18 fractional digits,
computed in a dedicated context so the result never depends on the calling
thread's decimal context. comparison/equality are the plain Decimal operators.
"""

from decimal import (
    ROUND_DOWN,
    Context,
    Decimal,
    DivisionByZero,
    InvalidOperation,
    Overflow,
)
from typing import Iterable, Union

from errors import InvalidInput

SCALE = 18
MAX_INTEGER_DIGITS = 10  # NUMERIC(28, 18)

MONEY_CONTEXT = Context(
    prec=38,
    rounding=ROUND_DOWN,
    traps=[InvalidOperation, DivisionByZero, Overflow],
)

QUANTUM = Decimal(1).scaleb(-SCALE)
ZERO = Decimal(0).quantize(QUANTUM)

DecimalLike = Union[Decimal, int, str]


def truncate(value: Decimal) -> Decimal:
    """cut value down to 18 fractional digits, rounding toward zero."""
    return value.quantize(QUANTUM, rounding=ROUND_DOWN, context=MONEY_CONTEXT)


def to_decimal(value: DecimalLike) -> Decimal:
    """
    parse a money value.

    accepts Decimal, int or a decimal string. floats are refused on purpose:
    they already lost precision before reaching us.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidInput(f"unsupported money value {value!r}")

    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, int):
        d = Decimal(value)
    elif isinstance(value, str):
        try:
            d = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidInput(f"malformed decimal {value!r}")
    else:
        raise InvalidInput(f"unsupported money value {value!r}")

    if not d.is_finite():
        raise InvalidInput(f"non-finite decimal {value!r}")

    if d != 0 and d.adjusted() >= MAX_INTEGER_DIGITS:
        raise InvalidInput(f"{value!r} exceeds {MAX_INTEGER_DIGITS} integer digits")

    return truncate(d)


def add(*values: Decimal) -> Decimal:
    return dsum(values)


def dsum(values: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for v in values:
        total = MONEY_CONTEXT.add(total, v)
    return truncate(total)


def subtract(a: Decimal, b: Decimal) -> Decimal:
    return truncate(MONEY_CONTEXT.subtract(a, b))


def multiply(a: Decimal, b: Decimal) -> Decimal:
    # exact product first, single truncation at the end
    return truncate(MONEY_CONTEXT.multiply(a, b))


def to_decimal_string(value: DecimalLike) -> str:
    """
    fixed-point rendering with exactly 18 fractional digits.

    already computed Decimals (aggregated totals included) are rendered as
    they are; the integer digit cap only applies when parsing raw input.
    """
    if not isinstance(value, Decimal):
        value = to_decimal(value)
    elif not value.is_finite():
        raise InvalidInput(f"non-finite decimal {value!r}")
    return format(truncate(value), "f")
