"""
Money - exact millisatoshi amounts and fee splitting.

Amounts are Python ints end to end. Floats are accepted at the boundary only
when they carry an exactly representable integer.
"""

import math
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from bitindie.exceptions import InvalidAmountError

# Largest value a PostgreSQL BIGINT column can hold
MAX_AMOUNT_MSAT = 2**63 - 1

# Integers above this are not exactly representable as IEEE-754 doubles
MAX_SAFE_FLOAT_INTEGER = 2**53

BPS_DENOMINATOR = 10_000

_DIGITS_RE = re.compile(r"^[0-9]+$")


@dataclass(frozen=True)
class FeeSplit:
    """Platform fee and developer net for one purchase amount."""

    amount_msat: int
    fee_bps: int
    platform_fee_msat: int
    developer_net_msat: int


def _check_bounds(amount: int) -> int:
    if amount < 0:
        raise InvalidAmountError("amountMsat must be a non-negative integer")
    if amount > MAX_AMOUNT_MSAT:
        raise InvalidAmountError("amountMsat is too large")
    return amount


def parse_amount_msat(value: Any) -> int:
    """
    Parse a wire amount into an exact non-negative int.

    Accepts int, integral float (exactly representable), integral Decimal or a
    string of decimal digits. Rejects everything else instead of coercing.

    Raises:
        InvalidAmountError: value is fractional, negative, non-finite,
            non-numeric or out of range
    """
    # bool is an int subclass; True is not an amount
    if isinstance(value, bool):
        raise InvalidAmountError("amountMsat must be an integer")

    if isinstance(value, int):
        return _check_bounds(value)

    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise InvalidAmountError("amountMsat must be a non-negative integer")
        if abs(value) > MAX_SAFE_FLOAT_INTEGER:
            raise InvalidAmountError("amountMsat exceeds exact numeric range; send it as a string")
        return _check_bounds(int(value))

    if isinstance(value, Decimal):
        if not value.is_finite() or value != value.to_integral_value():
            raise InvalidAmountError("amountMsat must be a non-negative integer")
        return _check_bounds(int(value))

    if isinstance(value, str):
        text = value.strip()
        if not _DIGITS_RE.match(text):
            raise InvalidAmountError("amountMsat must be an integer string")
        try:
            return _check_bounds(int(text))
        except (ValueError, InvalidOperation) as exc:
            raise InvalidAmountError("amountMsat must be an integer string") from exc

    raise InvalidAmountError("amountMsat must be a string or number")


def split_fee(amount_msat: int, fee_bps: int) -> FeeSplit:
    """
    Split an amount into platform fee and developer net.

    platform_fee = floor(amount * fee_bps / 10000), developer_net is the rest,
    so the two always sum to the amount.
    """
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise ValueError(f"fee_bps must be between 0 and {BPS_DENOMINATOR}: {fee_bps}")
    _check_bounds(amount_msat)

    platform_fee_msat = amount_msat * fee_bps // BPS_DENOMINATOR
    return FeeSplit(
        amount_msat=amount_msat,
        fee_bps=fee_bps,
        platform_fee_msat=platform_fee_msat,
        developer_net_msat=amount_msat - platform_fee_msat,
    )
