from dataclasses import dataclass
from typing import Any, Iterable, Mapping

CALLER = "caller"
AGENT = "agent"

# Telephony tracks label speakers differently; everything maps onto caller/agent.
_SPEAKER_ALIASES = {
    "caller": CALLER,
    "inbound": CALLER,
    "customer": CALLER,
    "user": CALLER,
    "agent": AGENT,
    "outbound": AGENT,
    "assistant": AGENT,
    "va": AGENT,
}


def normalize_speaker(speaker: str) -> str:
    return _SPEAKER_ALIASES.get((speaker or "").strip().lower(), AGENT)


@dataclass(frozen=True)
class TranscriptEntry:
    speaker: str
    text: str
    time_offset_seconds: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "speaker", normalize_speaker(self.speaker))

    @property
    def is_caller(self) -> bool:
        return self.speaker == CALLER

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TranscriptEntry":
        return cls(
            speaker=data.get("speaker", ""),
            text=data.get("text", "") or "",
            time_offset_seconds=float(data.get("time_offset_seconds", 0.0) or 0.0),
        )


def caller_text(entries: Iterable[TranscriptEntry]) -> str:
    """Join caller utterances only, in order."""
    return " ".join(e.text for e in entries if e.is_caller and e.text)


def transcript_to_string(entries: Iterable[TranscriptEntry]) -> str:
    """Join every utterance, caller and agent, in order."""
    return " ".join(e.text for e in entries if e.text)


def to_plain_text(entries: Iterable[TranscriptEntry]) -> str:
    """Render entries as "Caller:" / "Agent:" lines."""
    lines = []
    for entry in entries:
        label = "Caller" if entry.is_caller else "Agent"
        lines.append(f"{label}: {entry.text}")
    return "\n".join(lines)


def to_json_array(entries: Iterable[TranscriptEntry]) -> list[dict]:
    return [
        {"speaker": e.speaker, "text": e.text, "time_offset_seconds": e.time_offset_seconds}
        for e in entries
    ]
