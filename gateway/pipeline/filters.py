"""Structured filter-graph model with validation and escaping.

User-supplied values never reach the engine by string interpolation. They
are validated here, then rendered through ``quote_value`` which is the only
place a filter option value is written into a graph description.

FFmpeg unescapes a filter graph twice: once when the graph is split into
filters (``,`` ``;`` ``[`` ``]`` are special, single quotes and backslashes
quote) and once when a filter's options are split (``:`` and ``=`` are
special, same quoting rules). A value wrapped in single quotes at the graph
level survives the first pass verbatim; rejecting quotes, backslashes and
colons makes the second pass a no-op.
"""

import math
import re
import unicodedata
from dataclasses import dataclass
from typing import Union

from gateway.exceptions import InvalidFieldValueError, MissingFieldError, UnsafeOverlayTextError

FilterValue = Union[str, int, float]

# Characters that terminate or re-open quoting at either unescaping level.
UNSAFE_TEXT_CHARS = frozenset("'\"\\:`")

# Values made only of these characters are emitted without quotes.
_BARE_VALUE_RE = re.compile(r"^[A-Za-z0-9_.#@+\-*/()]+$")

_NAMED_COLOR_RE = re.compile(r"^[A-Za-z]{1,32}$")
_HEX_COLOR_RE = re.compile(r"^(#|0x)[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?$")
_ALPHA_RE = re.compile(r"^(0(\.\d{1,3})?|1(\.0{1,3})?)$")


def validate_overlay_text(text: str | None, *, max_length: int = 200) -> str:
    """Validate text destined for a drawtext filter.

    Args:
        text: Raw text from the request
        max_length: Maximum accepted length after trimming

    Returns:
        The trimmed text

    Raises:
        MissingFieldError: If the text is empty
        UnsafeOverlayTextError: If the text contains quote, backslash, colon
            or control characters, or is too long
    """
    if text is None or not text.strip():
        raise MissingFieldError("text")

    cleaned = text.strip()
    for ch in cleaned:
        if ch in UNSAFE_TEXT_CHARS or unicodedata.category(ch).startswith("C"):
            raise UnsafeOverlayTextError()

    if len(cleaned) > max_length:
        raise UnsafeOverlayTextError(f"unsafe overlay text: longer than {max_length} characters")

    return cleaned


def validate_color(color: str | None, *, field: str = "color") -> str:
    """Validate a color token (``white``, ``#FFAA00``, ``0xFFAA00``, optional ``@alpha``)."""
    if color is None or not color.strip():
        raise MissingFieldError(field)

    token = color.strip()
    base, _, alpha = token.partition("@")
    if not (_NAMED_COLOR_RE.match(base) or _HEX_COLOR_RE.match(base)):
        raise InvalidFieldValueError(field=field)
    if alpha and not _ALPHA_RE.match(alpha):
        raise InvalidFieldValueError(field=field)
    return token


def validate_positive_int(value: object, *, field: str, max_value: int | None = None) -> int:
    """Coerce and validate a strictly positive integer."""
    if isinstance(value, bool):
        raise InvalidFieldValueError(field=field, value=value)
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise InvalidFieldValueError(field=field, value=value)
        value = int(value)
    if isinstance(value, str):
        if not value.strip().isdigit():
            raise InvalidFieldValueError(field=field, value=value)
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise InvalidFieldValueError(field=field, value=value)
    if max_value is not None and value > max_value:
        raise InvalidFieldValueError(
            f"Value {value} for field '{field}' exceeds maximum {max_value}", field=field
        )
    return value


def quote_value(value: FilterValue) -> str:
    """Render a filter option value so it cannot break out of its option.

    Numbers and simple tokens are emitted as-is; anything else is wrapped in
    single quotes.

    Raises:
        UnsafeOverlayTextError: If the value contains characters that cannot
            be represented inside single quotes
    """
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise InvalidFieldValueError(value=value)
        return format(value, "g") if isinstance(value, float) else str(value)

    if _BARE_VALUE_RE.match(value):
        return value
    if any(ch in UNSAFE_TEXT_CHARS for ch in value) or any(
        unicodedata.category(ch).startswith("C") for ch in value
    ):
        raise UnsafeOverlayTextError()
    return f"'{value}'"


@dataclass(frozen=True)
class Filter:
    """One filter in a chain: a name plus ordered options."""

    name: str
    options: tuple[tuple[str, FilterValue], ...] = ()

    def render(self) -> str:
        if not self.options:
            return self.name
        rendered = ":".join(f"{key}={quote_value(value)}" for key, value in self.options)
        return f"{self.name}={rendered}"


def render_chain(filters: list[Filter] | tuple[Filter, ...]) -> str:
    """Join filters into a single linear chain (``a=...,b=...``)."""
    return ",".join(f.render() for f in filters)
