import re
from typing import Iterable, Optional


def normalize_text(text: Optional[str]) -> str:
    """Lowercase and straighten curly apostrophes so phrase tables match STT output."""
    if not text:
        return ""
    return text.lower().replace("’", "'").replace("‘", "'")


def match_any_phrase(text: str, phrases: Iterable[str]) -> bool:
    """Case-insensitive substring test against a phrase list."""
    lower = normalize_text(text)
    return any(p in lower for p in phrases)


def matched_phrases(text: str, phrases: Iterable[str]) -> list[str]:
    """Phrases found in text, in table order."""
    lower = normalize_text(text)
    return [p for p in phrases if p in lower]


SENTINEL_VALUES = {
    "not provided", "n/a", "na", "unknown", "none", "tbd",
    "{{customer_name}}", "{{postcode}}", "auto", "customer_name",
}


# --- UK postcodes ---

POSTCODE_REGEX = re.compile(r"\b([A-Z]{1,2}\d[A-Z\d]?\s*\d[A-Z]{2})\b", re.IGNORECASE)
OUTWARD_CODE_REGEX = re.compile(r"\b([A-Z]{1,2}\d[A-Z\d]?)\b", re.IGNORECASE)
_FULL_POSTCODE = re.compile(r"^[A-Z]{1,2}\d[A-Z\d]? \d[A-Z]{2}$")
_OUTWARD_ONLY = re.compile(r"^[A-Z]{1,2}\d[A-Z\d]?$")

# Precision ranks used when deciding whether one postcode value may replace another.
POSTCODE_FULL = 3
POSTCODE_OUTWARD = 2
POSTCODE_AREA = 1


def normalize_postcode(value: str) -> str:
    """Uppercase and put exactly one space before the inward code ("sw112ab" -> "SW11 2AB")."""
    compact = re.sub(r"\s+", "", value).upper()
    if len(compact) < 5:
        return compact
    return f"{compact[:-3]} {compact[-3:]}"


def is_valid_uk_postcode(value: Optional[str]) -> bool:
    if not value:
        return False
    return bool(_FULL_POSTCODE.match(normalize_postcode(value.strip())))


def postcode_precision(value: Optional[str]) -> int:
    """0 for nothing, then area name < outward code < full postcode."""
    if not value:
        return 0
    if _FULL_POSTCODE.match(value):
        return POSTCODE_FULL
    if _OUTWARD_ONLY.match(value):
        return POSTCODE_OUTWARD
    return POSTCODE_AREA


def validate_postcode(value: Optional[str]) -> str:
    if not value:
        return ""
    cleaned = value.strip()
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    if is_valid_uk_postcode(cleaned):
        return normalize_postcode(cleaned)
    return cleaned


# --- Names and phone numbers ---

def validate_name(value: Optional[str]) -> str:
    if not value:
        return ""
    cleaned = value.strip()
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    # Reject phone numbers used as names
    if re.match(r"^[\d+\-() ]{7,}$", cleaned):
        return ""
    if "{{" in cleaned or "}}" in cleaned:
        return ""
    return cleaned


UK_PHONE_REGEX = re.compile(r"(?:\+44\s?|\b0)(?:\d\s?){9,10}\b")


def validate_phone(value: Optional[str]) -> str:
    """Compact a UK phone number, or "" when it has the wrong number of digits."""
    if not value:
        return ""
    digits = re.sub(r"[^\d+]", "", value)
    if digits.startswith("+44"):
        return digits if len(digits) in (12, 13) else ""
    if digits.startswith("0") and len(digits) in (10, 11):
        return digits
    return ""
