"""Rule-based extraction of caller facts from transcript text.

Everything here is a pure function of its input: no I/O, no shared mutable
state, safe to call from any thread on every transcript update.
"""

import re
from typing import Iterable, Optional

from tubemap.session import CapturedInfo
from tubemap.transcript import TranscriptEntry, caller_text, transcript_to_string
from tubemap.validation import (
    OUTWARD_CODE_REGEX,
    POSTCODE_REGEX,
    UK_PHONE_REGEX,
    match_any_phrase,
    normalize_postcode,
    normalize_text,
    validate_name,
    validate_phone,
)

MAX_JOB_LENGTH = 150

JOB_KEYWORDS = (
    # Plumbing
    "boiler", "tap", "leak", "leaking", "dripping", "plumbing", "toilet", "sink",
    "bath", "shower", "radiator", "heating", "pipe", "drain", "stopcock",
    "cistern", "flush", "overflow",
    # Electrical
    "electrical", "light", "socket", "switch", "fuse", "wiring", "bulb",
    "extractor", "fan",
    # Carpentry
    "door", "shelf", "shelves", "cupboard", "cabinet", "wardrobe", "drawer",
    "handle", "hinge", "lock",
    # Walls and ceilings
    "painting", "paint", "plaster", "plastering", "tile", "tiles", "tiling",
    "grouting", "ceiling", "wall",
    # Outdoor
    "fence", "gate", "gutter", "roof", "window", "blind", "curtain", "shed",
    "decking", "patio",
    # Mounting
    "mount", "mounting", "tv mount", "mirror", "picture", "bracket", "rail", "hook",
    # General
    "repair", "fix", "replace", "install", "fit", "broken", "stuck", "jammed",
)

_JOB_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(k) for k in sorted(JOB_KEYWORDS, key=len, reverse=True)) + r")(?:s|es)?\b",
    re.IGNORECASE,
)
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_LEADING_FILLER = re.compile(r"^(?:(?:hi|hello|hey|yeah|yes|so|um|uh|well|right)\b[\s,]*)+", re.IGNORECASE)

# Known London areas, used as a location hint when no postcode is given.
AREA_KEYWORDS = (
    "brixton", "clapham", "battersea", "wandsworth", "fulham", "chelsea",
    "kensington", "hammersmith", "shepherds bush", "notting hill", "paddington",
    "camden", "islington", "hackney", "shoreditch", "stratford", "greenwich",
    "lewisham", "peckham", "dulwich", "streatham", "tooting", "wimbledon",
    "putney", "richmond", "croydon", "bromley",
)

NOT_DECISION_MAKER = (
    "need to check with", "i'll have to ask", "i'm just getting quotes",
    "he'll decide", "she'll decide", "they'll decide", "i'm calling on behalf",
    "for my boss", "for my landlord", "i'm the tenant", "checking for",
    "my manager", "i rent it", "i rent the", "i'm renting",
)
DECISION_MAKER = (
    "i'm the owner", "i own", "it's my", "it's mine", "my property", "my house",
    "my flat", "i can approve", "i make the decision", "i live there",
    "i'm the landlord",
)

REMOTE = (
    "not local", "can't be there", "cannot be there", "won't be there",
    "not on site", "i'm up in", "i'm down in", "i live in", "abroad",
    "overseas", "out of the country", "miles away", "hours away",
    "manchester", "birmingham", "leeds", "liverpool", "bristol", "newcastle",
    "edinburgh", "glasgow", "scotland", "wales",
)
LOCAL = (
    "i'll be there", "i'm local", "i'll wait in", "just round the corner",
    "can let you in", "i work from home", "i'll be home", "i'm at home",
    "i live there",
)

PROPERTY_EMPTY = (
    "empty", "vacant", "between tenants", "just moved out", "nobody living there",
    "unoccupied", "ready for new tenant", "before tenant moves in",
    "before the new tenant",
)
TENANTED = (
    "my tenant", "the tenant", "tenant called", "tenant reported", "tenant said",
    "tenant needs", "renter", "letting to", "let to someone",
    "someone living there", "currently let", "tenants",
)

_NAME_PATTERN = re.compile(
    r"(?i:\bmy name is|\bmy name's|\bname's|\bthis is)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"
)


def extract_postcode(text: str) -> Optional[str]:
    """Full postcode, else outward code, else a known area name."""
    if not text:
        return None
    full = POSTCODE_REGEX.search(text)
    if full:
        return normalize_postcode(full.group(1))

    outward = OUTWARD_CODE_REGEX.search(text)
    if outward:
        return outward.group(1).upper()

    lower = normalize_text(text)
    for area in AREA_KEYWORDS:
        if area in lower:
            return area.title()
    return None


def extract_job(text: str) -> Optional[str]:
    """First sentence that mentions a job term, minus leading fillers."""
    if not text:
        return None
    for sentence in _SENTENCE_SPLIT.split(text):
        if not _JOB_PATTERN.search(sentence):
            continue
        cleaned = _LEADING_FILLER.sub("", sentence.strip()).strip()
        if cleaned:
            return cleaned[:MAX_JOB_LENGTH]
    return None


def extract_contact(text: str) -> Optional[str]:
    if not text:
        return None
    for match in UK_PHONE_REGEX.finditer(text):
        phone = validate_phone(match.group(0))
        if phone:
            return phone
    return None


def extract_name(text: str) -> Optional[str]:
    if not text:
        return None
    match = _NAME_PATTERN.search(text)
    if not match:
        return None
    return validate_name(match.group(1)) or None


def detect_decision_maker(text: str) -> Optional[bool]:
    """True/False when the caller says so either way, None when unclear.

    Deferring cues ("need to check with") win over ownership cues.
    """
    if not text:
        return None
    if match_any_phrase(text, NOT_DECISION_MAKER):
        return False
    if match_any_phrase(text, DECISION_MAKER):
        return True
    return None


def detect_remote(text: str) -> Optional[bool]:
    if not text:
        return None
    if match_any_phrase(text, REMOTE):
        return True
    if match_any_phrase(text, LOCAL):
        return False
    return None


def detect_tenant(text: str) -> Optional[bool]:
    if not text:
        return None
    if match_any_phrase(text, PROPERTY_EMPTY):
        return False
    if match_any_phrase(text, TENANTED):
        return True
    return None


def extract_info(text: str) -> CapturedInfo:
    """Extract every field from one block of text."""
    if not text or not text.strip():
        return CapturedInfo()
    return CapturedInfo(
        job=extract_job(text),
        postcode=extract_postcode(text),
        name=extract_name(text),
        contact=extract_contact(text),
        is_decision_maker=detect_decision_maker(text),
        is_remote=detect_remote(text),
        has_tenant=detect_tenant(text),
    )


def extract_info_from_entries(entries: Iterable[TranscriptEntry]) -> CapturedInfo:
    """Job, postcode and contact from everything said; personal cues from the caller only."""
    entries = list(entries)
    full = transcript_to_string(entries)
    caller = caller_text(entries)
    return CapturedInfo(
        job=extract_job(full),
        postcode=extract_postcode(full),
        name=extract_name(caller),
        contact=extract_contact(full),
        is_decision_maker=detect_decision_maker(caller),
        is_remote=detect_remote(caller),
        has_tenant=detect_tenant(caller),
    )
