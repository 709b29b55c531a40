"""Display helpers for inbound payloads."""

from __future__ import annotations

ELLIPSIS = "…"
MAX_MESSAGE_CHARS = 500
MAX_HEX_CHARS = 512


def truncate(text: str, max_chars: int = MAX_MESSAGE_CHARS) -> str:
    if max_chars < 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + ELLIPSIS


def hex_dump(data: bytes, max_chars: int = MAX_HEX_CHARS) -> str:
    """Render bytes as ``0x`` + uppercase hex, capped at max_chars hex digits."""
    digits = data.hex().upper()
    if len(digits) > max_chars:
        digits = digits[:max_chars] + ELLIPSIS
    return "0x" + digits


def decode_payload(data: bytes) -> str:
    """Decode a characteristic value as UTF-8 text, or fall back to a hex dump."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return hex_dump(data)
    if not text:
        return hex_dump(data)
    return text
