"""
validator.py

Post-recognition validation and cleaning layer.

Responsibilities:
  - Enforce CARD_FIELDS as the single source of truth for field names and order.
  - Flatten {"value": ...} wrappers the model sometimes returns.
  - Coerce every field to a stripped string or None.
  - Map placeholder answers ("N/A", "unknown", "无", ...) to None.
  - Normalise phone numbers to "(+CC)-digits" when a country code is present.

Never raises on odd model output — unexpected shapes are logged and nulled.
"""

import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

# ── Card fields ────────────────────────────────────────────────────────────────
# Single source of truth for field names, order, and Excel columns.

CARD_FIELDS = ["country", "name", "position", "company", "phone"]

COLUMN_DISPLAY_NAMES = {
    "country":  "Country",
    "name":     "Name",
    "position": "Position",
    "company":  "Company",
    "phone":    "Phone",
}

# Lower-cased answers that mean "not on the card".
_NULL_MARKERS = {
    "", "null", "none", "n/a", "na", "nil", "unknown", "not found",
    "not specified", "-", "--", "无", "未知", "暂无",
}

# "+86 138-1234-5678", "(+86)-13812345678", "(+1) 415 555 0100"
# The code must be closed by ")" or a separator, otherwise "+8613812345678"
# would be split at an arbitrary digit.
_PHONE_WITH_CODE_RE = re.compile(r"^\(?\s*\+\s*(\d{1,4})(?:\s*\)|[\s\-.])[\s\-.]*(.*)$")


# ── Internal helpers ───────────────────────────────────────────────────────────

def _coerce_text(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict) and "value" in value:
        return _coerce_text(value.get("value"), field_name)
    if isinstance(value, bool):
        logger.warning(f"Field '{field_name}' got boolean {value}. Setting null.")
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    if isinstance(value, list):
        parts = [_coerce_text(v, field_name) for v in value]
        parts = [p for p in parts if p]
        if not parts:
            return None
        logger.info(f"Field '{field_name}' returned {len(parts)} values; joined.")
        return " / ".join(parts)
    if not isinstance(value, str):
        logger.warning(
            f"Field '{field_name}' unexpected type {type(value).__name__}. Setting null."
        )
        return None

    text = " ".join(value.split())
    if text.lower() in _NULL_MARKERS:
        return None
    return text


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Normalise a phone string to "(+CC)-digits".
        "+86 138 1234 5678"  → "(+86)-13812345678"
        "(+86)-13812345678"  → "(+86)-13812345678"
        "+8613812345678"     → "+8613812345678" (code not delimited — "+" kept)
        "13812345678"        → "13812345678"   (no code — left as digits)
    Anything without digits is returned unchanged.
    """
    if not raw:
        return raw

    text = raw.strip()
    match = _PHONE_WITH_CODE_RE.match(text)
    if match:
        code, rest = match.group(1), match.group(2)
        digits = re.sub(r"\D", "", rest)
        if digits:
            return f"(+{code})-{digits}"
        return raw

    digits = re.sub(r"\D", "", text)
    if not digits:
        return raw
    if text.lstrip("( ").startswith("+"):
        return f"+{digits}"
    return digits


# ── Main public API ────────────────────────────────────────────────────────────

def validate_card_record(raw_data: dict) -> dict:
    """
    Validate and clean one recognised card.

    Returns a dict with exactly the CARD_FIELDS keys, in order, each a
    non-empty string or None.  Keys outside CARD_FIELDS are dropped.
    """
    extra = [k for k in raw_data if k not in CARD_FIELDS]
    if extra:
        logger.info(f"Ignoring unexpected card field(s): {extra}")

    cleaned: dict = {}
    for col in CARD_FIELDS:
        cleaned[col] = _coerce_text(raw_data.get(col), col)

    cleaned["phone"] = normalize_phone(cleaned["phone"])
    return cleaned


def count_fields(record: dict) -> tuple[int, int]:
    """Returns (fields_filled, fields_null) over CARD_FIELDS."""
    filled = sum(1 for col in CARD_FIELDS if record.get(col) is not None)
    return filled, len(CARD_FIELDS) - filled
