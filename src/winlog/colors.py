"""Deterministic tag colors.

The hash is the classic ``h * 31 + c`` string hash with 32-bit wraparound on
the shift, computed over UTF-16 code units, so a tag keeps the same color
on every device that renders it.
"""

from __future__ import annotations

TAG_COLORS = (
    "#3B82F6",
    "#EF4444",
    "#10B981",
    "#F59E0B",
    "#8B5CF6",
    "#EC4899",
    "#06B6D4",
)

DEFAULT_COLOR = "#888"


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _code_units(text: str) -> list[int]:
    raw = text.encode("utf-16-le", errors="surrogatepass")
    return [raw[i] | (raw[i + 1] << 8) for i in range(0, len(raw), 2)]


def tag_hash(tag: str) -> int:
    h = 0
    for code in _code_units(tag):
        h = code + (_to_int32(_to_int32(h) << 5) - h)
    return h


def color_for(tag: str | None) -> str:
    """Map a tag to a palette color; empty input gets ``DEFAULT_COLOR``."""
    if not tag:
        return DEFAULT_COLOR
    return TAG_COLORS[abs(tag_hash(str(tag))) % len(TAG_COLORS)]
