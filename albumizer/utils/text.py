# albumizer/utils/text.py
# Repair for text the export mis-encoded: UTF-8 bytes that were decoded as
# latin-1 and escaped into the JSON ("Ã©" instead of "é").

from __future__ import annotations

from typing import Optional


def looks_double_encoded(raw: bytes) -> bool:
    """
    True when `raw` (the latin-1 byte image of a string) is evidence of
    double encoding: it has at least one non-ASCII byte and the whole thing
    decodes strictly as UTF-8.
    """
    if not any(b >= 0x80 for b in raw):
        return False
    try:
        raw.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def repair_mojibake(raw: bytes) -> str:
    """Decode `raw` as UTF-8 if it was double encoded, else as latin-1 (unchanged text)."""
    if looks_double_encoded(raw):
        return raw.decode("utf-8")
    return raw.decode("latin-1")


def fix_text(value: Optional[str]) -> Optional[str]:
    """Apply repair_mojibake to a str; code points above U+00FF mean it is already real text."""
    if value is None:
        return None
    try:
        raw = value.encode("latin-1")
    except UnicodeEncodeError:
        return value
    return repair_mojibake(raw)
