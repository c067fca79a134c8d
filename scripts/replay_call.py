#!/usr/bin/env python3
"""Replay a saved call transcript through the routing engine.

Usage:
    python scripts/replay_call.py call.txt                 # human-readable result
    python scripts/replay_call.py call.txt --json          # final state as JSON
    python scripts/replay_call.py call.txt --qualified no  # caller fails QUALIFY
    python scripts/replay_call.py call.txt --no-advance    # classify and extract only
    python scripts/replay_call.py call.txt --tier2         # allow the LLM tier (needs OPENAI_API_KEY)
    cat call.txt | python scripts/replay_call.py -

Transcript lines look like "Caller: ..." / "Agent: ...", optionally prefixed
with a time offset ("[12.5s] Caller: ..."), or are JSON objects with
speaker/text/time_offset_seconds keys. Blank lines and "#" comments are skipped.
"""

import argparse
import asyncio
import json
import re
import sys
from typing import Optional

from dotenv import load_dotenv

from tubemap.classification import (
    SegmentClassifier,
    check_disqualifying_signals,
    classify_sync,
    should_auto_fast_track,
)
from tubemap.config import Settings, validate_config
from tubemap.extraction import extract_info_from_entries
from tubemap.session import CallSession
from tubemap.state_machine import CallScriptStateMachine
from tubemap.states import Station
from tubemap.tier2 import Tier2Classifier
from tubemap.transcript import TranscriptEntry, caller_text

_LINE = re.compile(r"^(?:\[(?P<t>\d+(?:\.\d+)?)s?\]\s*)?(?P<speaker>[A-Za-z]+)\s*:\s*(?P<text>.*)$")


def parse_transcript_lines(lines: list[str]) -> list[TranscriptEntry]:
    """Parse transcript lines into entries, skipping anything unrecognised."""
    entries = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("{"):
            try:
                entries.append(TranscriptEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, TypeError, ValueError):
                continue
            continue
        match = _LINE.match(line)
        if not match or not match.group("text").strip():
            continue
        offset = float(match.group("t")) if match.group("t") else 0.0
        entries.append(TranscriptEntry(match.group("speaker"), match.group("text").strip(), offset))
    return entries


def replay(
    entries: list[TranscriptEntry],
    *,
    call_id: str = "replay",
    qualified: bool = True,
    advance: bool = True,
    classifier: Optional[SegmentClassifier] = None,
    min_confidence: int = Settings.auto_fast_track_min_confidence,
) -> CallSession:
    """Run one transcript through extraction, classification and the station workflow."""
    machine = CallScriptStateMachine(call_id)
    machine.update_captured_info(extract_info_from_entries(entries))

    text = caller_text(entries)
    if classifier is not None:
        result = asyncio.run(classifier.classify(text))
    else:
        result = classify_sync(text)
    machine.update_segment(result.segment, result.confidence, result.signals)

    if not advance:
        return machine.get_state()

    if should_auto_fast_track(result, text, min_confidence) and machine.fast_track_to_destination().success:
        return machine.get_state()

    while not machine.is_at_final_station():
        if machine.get_current_station() is Station.QUALIFY:
            machine.set_qualified(qualified)
        outcome = machine.confirm_station()
        if not outcome.success:
            break
    return machine.get_state()


def format_state(session: CallSession, entries: list[TranscriptEntry]) -> str:
    """Human-readable summary of a replayed call."""
    lines = []
    segment = session.segment.value if session.segment else "none"
    lines.append(f"Call {session.call_id} | {len(entries)} entries | segment {segment} ({session.segment_confidence}%)")
    lines.append("\u2550" * 55)
    if session.segment_signals:
        lines.append(f"Signals:      {', '.join(session.segment_signals)}")
    if session.segment is not None:
        disqualifiers = check_disqualifying_signals(caller_text(entries), session.segment)
        if disqualifiers:
            lines.append(f"Disqualifiers: {', '.join(disqualifiers)}")
    for name, value in session.captured_info.to_dict().items():
        if value is not None:
            lines.append(f"{name:<18}{value}")
    lines.append("")
    completed = " -> ".join(s.value for s in session.completed_stations) or "-"
    lines.append(f"Completed:    {completed}")
    lines.append(f"Station:      {session.current_station.value}{' (fast-tracked)' if session.fast_tracked else ''}")
    destination = session.recommended_destination.value if session.recommended_destination else "-"
    lines.append(f"Destination:  {destination}")
    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(description="Replay a call transcript through the routing engine")
    parser.add_argument("path", help="Transcript file, or - for stdin")
    parser.add_argument("--json", action="store_true", help="Print final state as JSON")
    parser.add_argument("--qualified", choices=["yes", "no"], default="yes", help="QUALIFY outcome to apply")
    parser.add_argument("--no-advance", action="store_true", help="Classify and extract only")
    parser.add_argument("--tier2", action="store_true", help="Allow Tier-2 classification")
    args = parser.parse_args()

    if args.path == "-":
        lines = sys.stdin.read().splitlines()
    else:
        try:
            with open(args.path, encoding="utf-8") as f:
                lines = f.read().splitlines()
        except OSError as e:
            print(f"Cannot read {args.path}: {e}", file=sys.stderr)
            sys.exit(1)

    entries = parse_transcript_lines(lines)
    if not entries:
        print("No transcript entries found.", file=sys.stderr)
        sys.exit(1)

    classifier = None
    if args.tier2:
        load_dotenv()
        settings = validate_config()
        if settings.tier2_enabled:
            tier2 = Tier2Classifier(
                api_key=settings.openai_api_key,
                model=settings.tier2_model,
                timeout=settings.tier2_timeout_s,
            )
            classifier = SegmentClassifier(tier2=tier2, tier2_threshold=settings.tier2_threshold)
        else:
            print("OPENAI_API_KEY not set, using Tier-1 only.", file=sys.stderr)

    session = replay(
        entries,
        qualified=args.qualified == "yes",
        advance=not args.no_advance,
        classifier=classifier,
    )

    if args.json:
        print(json.dumps(session.to_dict(), indent=2))
    else:
        print(format_state(session, entries))


if __name__ == "__main__":
    main()
