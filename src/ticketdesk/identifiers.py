"""Sortable ``id57`` row identifiers.

An identifier is 11 base57 digits of creation time in microseconds followed by
22 digits of a random UUID.  The alphabet leaves out ``0``, ``1``, ``I``, ``O``
and ``l`` and is in code point order, so identifiers compare in creation order.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Callable

ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
TIMESTAMP_DIGITS = 11
RANDOM_DIGITS = 22

_DIGIT_VALUES = {char: position for position, char in enumerate(ALPHABET)}


def base57_encode(value: int, *, pad_to: int | None = None) -> str:
    if value < 0:
        raise ValueError(f"cannot encode negative value {value} as base57")
    digits = []
    while True:
        value, digit = divmod(value, len(ALPHABET))
        digits.append(ALPHABET[digit])
        if not value:
            break
    return "".join(reversed(digits)).rjust(pad_to or 0, ALPHABET[0])


def decode57(value: str) -> int:
    number = 0
    for char in value:
        if char not in _DIGIT_VALUES:
            raise ValueError(f"{char!r} is not a base57 digit")
        number = number * len(ALPHABET) + _DIGIT_VALUES[char]
    return number


def generate_id57(
    *,
    timestamp: dt.datetime | None = None,
    random_source: Callable[[], uuid.UUID] = uuid.uuid4,
) -> str:
    moment = timestamp or dt.datetime.now(dt.timezone.utc)
    micros = int(moment.timestamp() * 1_000_000)
    return base57_encode(micros, pad_to=TIMESTAMP_DIGITS) + base57_encode(random_source().int, pad_to=RANDOM_DIGITS)


__all__ = ["ALPHABET", "base57_encode", "decode57", "generate_id57"]
