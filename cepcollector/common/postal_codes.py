"""Postal-code (CEP) parsing, formatting and enumeration.

CEPs are eight-digit numbers. The source site accepts and displays them as
``NNNNN-NNN``, with the separator after the fifth digit.
"""

from __future__ import annotations

import re
from collections.abc import Iterator

CODE_WIDTH = 8
SEPARATOR = "-"
SEPARATOR_OFFSET = 5

DATASET_CODE_RE = re.compile(r"^(\d{5}-\d{3}|\d{8})$")
_NON_DIGITS = re.compile(r"\D")


def digits(code: str) -> str:
    """Strip everything but digits from a postal code.

    ``"38400-000"`` and ``"38400000"`` both become ``"38400000"``, which is
    the form used to compare codes for equality.
    """
    return _NON_DIGITS.sub("", code)


def is_valid(code: str) -> bool:
    """Return True if *code* carries exactly eight digits."""
    return len(digits(code)) == CODE_WIDTH


def format_code(value: str | int) -> str:
    """Format a postal code as ``NNNNN-NNN``.

    Args:
        value: An integer, a bare digit string or an already formatted code.

    Returns:
        The zero-padded, separator-formatted code.

    Raises:
        ValueError: If the value does not hold between one and eight digits.
    """
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Postal code cannot be negative: {value}")
        raw = str(value)
    else:
        raw = digits(value)

    if not raw or len(raw) > CODE_WIDTH:
        raise ValueError(f"Not a postal code: {value!r}")

    padded = raw.zfill(CODE_WIDTH)
    return (
        f"{padded[:SEPARATOR_OFFSET]}{SEPARATOR}{padded[SEPARATOR_OFFSET:]}"
    )


def to_number(code: str) -> int:
    """Convert a postal code to its integer value."""
    if not is_valid(code):
        raise ValueError(f"Not a postal code: {code!r}")
    return int(digits(code))


def iter_codes(start_code: str, end_code: str) -> Iterator[str]:
    """Yield formatted codes from *start_code* to *end_code* inclusive.

    Yields nothing if the start lies after the end.
    """
    for number in range(to_number(start_code), to_number(end_code) + 1):
        yield format_code(number)
