from __future__ import annotations

import math
import mmap
import re
from typing import Union

Buffer = Union[bytes, bytearray, mmap.mmap]

HEADER_MARKER = b"%PDF-"
TERMINATOR_MARKER = b"%%EOF"
VERSION_TOKEN_LENGTH = 3

# Both markers open with the same byte, so one index lookup finds either.
MARKER_LEAD = HEADER_MARKER[:1]

_NUMERIC_PREFIX_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
# Leading whitespace skipped before the number, as in ECMAScript parseFloat.
_LEADING_SPACE = " \t\n\v\f\r\xa0"


def match_at(buffer: Buffer, position: int, pattern: bytes) -> bool:
    if position < 0 or position + len(pattern) > len(buffer):
        return False
    return bytes(buffer[position : position + len(pattern)]) == pattern


def parse_version(token: bytes) -> float | None:
    """Read the longest numeric prefix of `token`, or None when there is none."""
    text = token.decode("latin-1").lstrip(_LEADING_SPACE)
    match = _NUMERIC_PREFIX_RE.match(text)
    if match is None:
        return None
    return float(match.group(0))


def is_version_token(token: bytes) -> bool:
    """Accept non-integer numbers such as `1.7` or `.55`; reject `123`, `2.0` and `1.x`."""
    value = parse_version(token)
    if value is None or not math.isfinite(value):
        return False
    return not value.is_integer()


def is_document_start(buffer: Buffer, position: int) -> bool:
    if not match_at(buffer, position, HEADER_MARKER):
        return False
    token_start = position + len(HEADER_MARKER)
    token = bytes(buffer[token_start : token_start + VERSION_TOKEN_LENGTH])
    if len(token) < VERSION_TOKEN_LENGTH:
        return False
    return is_version_token(token)


def is_terminator(buffer: Buffer, position: int) -> bool:
    return match_at(buffer, position, TERMINATOR_MARKER)
