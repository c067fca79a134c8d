import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from tubemap.segments import (
    SEGMENT_CONFIGS,
    SIGNALS_FOR_FULL_CONFIDENCE,
    get_segment_config,
    is_fast_track_eligible,
    priority_rank,
)
from tubemap.states import Segment
from tubemap.tier2 import ClassificationUnavailable, Tier2Classifier
from tubemap.validation import matched_phrases, normalize_text

logger = logging.getLogger(__name__)

MAX_ALTERNATES = 3
DEFAULT_TIER2_THRESHOLD = 70


@dataclass(frozen=True)
class SegmentMatch:
    segment: Optional[Segment]
    confidence: int
    signals: tuple[str, ...] = ()
    tier: int = 1

    def to_dict(self) -> dict:
        return {
            "segment": self.segment.value if self.segment else None,
            "confidence": self.confidence,
            "signals": list(self.signals),
            "tier": self.tier,
        }


NO_MATCH = SegmentMatch(segment=None, confidence=0)


@dataclass(frozen=True)
class ClassificationResult:
    primary: SegmentMatch
    alternates: tuple[SegmentMatch, ...] = ()
    tier: int = 1
    processing_time_ms: float = field(default=0.0, compare=False)

    @property
    def segment(self) -> Optional[Segment]:
        return self.primary.segment

    @property
    def confidence(self) -> int:
        return self.primary.confidence

    @property
    def signals(self) -> tuple[str, ...]:
        return self.primary.signals

    def to_dict(self) -> dict:
        return {
            "primary": self.primary.to_dict(),
            "alternates": [a.to_dict() for a in self.alternates],
            "tier": self.tier,
            "processing_time_ms": round(self.processing_time_ms, 3),
        }


def score_to_confidence(score: float) -> int:
    return min(100, round(score / SIGNALS_FOR_FULL_CONFIDENCE * 100))


def tier1_pattern_match(text: str) -> list[SegmentMatch]:
    """Score every segment against the text, best first.

    A signal category counts once however many of its phrases appear.
    Equal scores resolve by business risk (EMERGENCY first).
    Segments with no matching signal are left out.
    """
    lower = normalize_text(text)
    if not lower.strip():
        return []

    scored = []
    for segment, config in SEGMENT_CONFIGS.items():
        score = 0.0
        signals: list[str] = []
        for category in config.signals:
            hits = matched_phrases(lower, category.phrases)
            if hits:
                score += category.weight
                signals.extend(hits)
        if score > 0:
            scored.append((score, segment, signals))

    scored.sort(key=lambda item: (-item[0], priority_rank(item[1])))
    return [
        SegmentMatch(segment=segment, confidence=score_to_confidence(score), signals=tuple(signals))
        for score, segment, signals in scored
    ]


def classify_sync(text: str) -> ClassificationResult:
    """Tier-1 only. Never blocks, never raises."""
    start = time.perf_counter()
    matches = tier1_pattern_match(text or "")
    elapsed_ms = (time.perf_counter() - start) * 1000
    if not matches:
        return ClassificationResult(primary=NO_MATCH, tier=1, processing_time_ms=elapsed_ms)
    return ClassificationResult(
        primary=matches[0],
        alternates=tuple(matches[1:1 + MAX_ALTERNATES]),
        tier=1,
        processing_time_ms=elapsed_ms,
    )


def check_disqualifying_signals(text: str, segment: Segment) -> list[str]:
    """Disqualifying phrases for the segment that appear in the text."""
    return matched_phrases(text or "", get_segment_config(segment).disqualifiers)


def should_auto_fast_track(result: ClassificationResult, text: str, min_confidence: int) -> bool:
    """Whether a streamed classification is strong enough to skip the agent.

    Fast-track is terminal, so a single weak signal, or a caller who has
    said something that rules the segment out ("no rush"), is left for the
    agent to confirm.
    """
    segment = result.segment
    if not is_fast_track_eligible(segment) or result.confidence < min_confidence:
        return False
    blockers = check_disqualifying_signals(text, segment)
    if blockers:
        logger.info("Not fast-tracking %s: caller said %s", segment.value, ", ".join(blockers))
        return False
    return True


class SegmentClassifier:
    """Tier-1 always, Tier-2 when Tier-1 is unsure or deeper analysis is asked for.

    classify() always returns a result: any Tier-2 failure is logged and the
    Tier-1 answer stands.
    """

    def __init__(
        self,
        tier2: Optional[Tier2Classifier] = None,
        tier2_threshold: int = DEFAULT_TIER2_THRESHOLD,
    ):
        self.tier2 = tier2
        self.tier2_threshold = tier2_threshold

    def classify_sync(self, text: str) -> ClassificationResult:
        return classify_sync(text)

    def _wants_tier2(self, tier1: ClassificationResult, use_tier2: bool, deep: bool) -> bool:
        if self.tier2 is None or not self.tier2.enabled:
            return False
        if deep:
            return True
        return use_tier2 and tier1.confidence < self.tier2_threshold

    async def classify(self, text: str, use_tier2: bool = True, deep: bool = False) -> ClassificationResult:
        start = time.perf_counter()
        tier1 = classify_sync(text)
        if not text or not text.strip():
            return tier1
        if not self._wants_tier2(tier1, use_tier2, deep):
            return tier1

        try:
            segment, confidence, signals = await self.tier2.classify(text)
        except ClassificationUnavailable as e:
            logger.warning("Tier2 unavailable, using Tier1 result (%s)", e)
            return tier1

        primary = SegmentMatch(segment=segment, confidence=confidence, signals=tuple(signals), tier=2)
        tier1_matches = [tier1.primary, *tier1.alternates] if tier1.segment else []
        alternates = tuple(m for m in tier1_matches if m.segment != segment)[:MAX_ALTERNATES]
        return ClassificationResult(
            primary=primary,
            alternates=alternates,
            tier=2,
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )
