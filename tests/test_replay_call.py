import json
import os
import sys

# Add scripts to path so we can import the module
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "scripts"))
from replay_call import format_state, parse_transcript_lines, replay

from tubemap.states import Destination, Segment, Station
from tubemap.transcript import to_plain_text


class TestParseTranscriptLines:
    def test_speaker_lines(self):
        entries = parse_transcript_lines([
            "Agent: How can I help?",
            "Caller: My tap is leaking.",
        ])
        assert [e.speaker for e in entries] == ["agent", "caller"]
        assert entries[1].text == "My tap is leaking."

    def test_time_offsets(self):
        entries = parse_transcript_lines(["[12.5s] Caller: Hello"])
        assert entries[0].time_offset_seconds == 12.5

    def test_json_lines(self):
        line = json.dumps({"speaker": "inbound", "text": "It's flooding", "time_offset_seconds": 3})
        entries = parse_transcript_lines([line])
        assert entries[0].is_caller
        assert entries[0].time_offset_seconds == 3.0

    def test_skips_comments_blanks_and_garbage(self):
        entries = parse_transcript_lines([
            "# exported 2024-05-01",
            "",
            "no speaker here",
            "Caller:   ",
            "{not json",
            "Caller: Hi",
        ])
        assert len(entries) == 1

    def test_plain_text_round_trip(self, landlord_call):
        assert [e.text for e in parse_transcript_lines(to_plain_text(landlord_call).splitlines())] == [
            e.text for e in landlord_call
        ]


class TestReplay:
    def test_landlord_reaches_quote(self, landlord_call):
        session = replay(landlord_call)
        assert session.segment is Segment.LANDLORD
        assert session.current_station is Station.DESTINATION
        assert session.recommended_destination is Destination.INSTANT_QUOTE
        assert not session.fast_tracked

    def test_emergency_fast_tracked(self, emergency_call):
        session = replay(emergency_call)
        assert session.fast_tracked
        assert session.recommended_destination is Destination.EMERGENCY_DISPATCH

    def test_weak_emergency_walks_the_stations(self):
        entries = parse_transcript_lines(["Caller: The kitchen tap is dripping, can you fix it?"])
        session = replay(entries)
        assert session.segment is Segment.EMERGENCY
        assert not session.fast_tracked

    def test_unqualified_budget_exits(self, budget_call):
        session = replay(budget_call, qualified=False)
        assert session.recommended_destination is Destination.EXIT

    def test_no_advance_stays_at_listen(self, busy_pro_call):
        session = replay(busy_pro_call, advance=False)
        assert session.current_station is Station.LISTEN
        assert session.segment is Segment.BUSY_PRO
        assert session.captured_info.postcode == "SW11 2AB"

    def test_stops_at_first_refused_station(self):
        entries = parse_transcript_lines(["Caller: Hello, is anyone there?"])
        session = replay(entries)
        assert session.current_station is Station.LISTEN


class TestFormatState:
    def test_summary(self, landlord_call):
        output = format_state(replay(landlord_call), landlord_call)
        assert "segment LANDLORD (100%)" in output
        assert "Destination:  INSTANT_QUOTE" in output
        assert "LISTEN -> SEGMENT -> QUALIFY" in output

    def test_disqualifiers_shown(self):
        entries = parse_transcript_lines(["Caller: My tenant says the tap is dripping, but I live there too"])
        output = format_state(replay(entries, advance=False), entries)
        assert "Disqualifiers: i live there" in output
