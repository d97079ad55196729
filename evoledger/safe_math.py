"""Checked unsigned 256-bit arithmetic for ledger counters.

Python integers never wrap, so overflow is detected explicitly: any result
outside ``[0, UINT256_MAX]`` raises instead of being stored.
"""

from __future__ import annotations

from evoledger.exceptions import ArithmeticOverflowError

UINT256_MAX = 2**256 - 1


def check_uint(value: int, name: str = "value") -> int:
    if value < 0:
        raise ArithmeticOverflowError(f"{name} underflow: {value}")
    if value > UINT256_MAX:
        raise ArithmeticOverflowError(f"{name} overflow")
    return value


def checked_add(a: int, b: int, name: str = "value") -> int:
    return check_uint(a + b, name)


def checked_sub(a: int, b: int, name: str = "value") -> int:
    return check_uint(a - b, name)


def checked_mul(a: int, b: int, name: str = "value") -> int:
    return check_uint(a * b, name)
