import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tubemap.config import Settings
from tubemap.realtime import PIPELINE_KEY, RealtimeHandler
from tubemap.session_manager import SessionManager, SessionNotFound
from tubemap.states import Destination, Segment, Station

DEBOUNCE_MS = 10


async def settle():
    await asyncio.sleep(DEBOUNCE_MS / 1000 * 5)


@pytest.fixture
def events():
    return []


@pytest.fixture
def routing_client():
    client = MagicMock()
    client.send_routing_decision = AsyncMock(return_value={"success": True})
    return client


@pytest.fixture
def handler(events, routing_client):
    h = RealtimeHandler(
        manager=SessionManager(shards=4),
        settings=Settings(debounce_ms=DEBOUNCE_MS),
        routing_client=routing_client,
    )
    h.subscribe(lambda event_type, data: events.append((event_type, data)))
    return h


def event_types(events):
    return [event_type for event_type, _ in events]


class TestCallLifecycle:
    @pytest.mark.asyncio
    async def test_start_call(self, handler, events):
        state = handler.start_call("call_1", "+447700900123")
        assert state.current_station is Station.LISTEN
        assert handler.get_active_session_count() == 1
        assert events[0] == ("session_started", {"call_id": "call_1", "phone": "+447700900123"})

    @pytest.mark.asyncio
    async def test_start_call_twice_keeps_one_pipeline(self, handler, events):
        handler.start_call("call_1")
        pipeline = handler.manager.get_entry("call_1").attachments[PIPELINE_KEY]
        handler.start_call("call_1")
        assert handler.manager.get_entry("call_1").attachments[PIPELINE_KEY] is pipeline
        assert event_types(events).count("session_started") == 1

    @pytest.mark.asyncio
    async def test_landlord_call_classified_and_extracted(self, handler, events, landlord_call):
        handler.start_call("call_1")
        for entry in landlord_call:
            assert handler.handle_entry("call_1", entry)
        await settle()

        state = handler.get_state("call_1")
        assert state.detected_segment is Segment.LANDLORD
        assert state.segment_confidence == 100
        assert state.captured_info.postcode == "Brixton"
        assert state.current_station is Station.LISTEN
        assert "segment_detected" in event_types(events)
        assert "info_captured" in event_types(events)

    @pytest.mark.asyncio
    async def test_agent_speech_alone_classifies_nothing(self, handler):
        handler.start_call("call_1")
        handler.handle_text("call_1", "agent", "Is this a rental? Is it flooding?")
        await settle()
        assert handler.get_state("call_1").detected_segment is None

    @pytest.mark.asyncio
    async def test_end_call_runs_final_pass(self, handler, events, routing_client, busy_pro_call):
        handler.settings = Settings(debounce_ms=10_000)
        handler.start_call("call_1")
        for entry in busy_pro_call:
            handler.handle_entry("call_1", entry)

        final = await handler.end_call("call_1")
        assert final.detected_segment is Segment.BUSY_PRO
        assert final.captured_info.job == "I need someone to fix a leaking tap"
        assert final.captured_info.postcode == "SW11 2AB"
        assert handler.get_active_session_count() == 0
        assert event_types(events)[-1] == "session_ended"
        routing_client.send_routing_decision.assert_awaited_once_with(final, "call_ended")

    @pytest.mark.asyncio
    async def test_end_unknown_call(self, handler):
        assert await handler.end_call("nope") is None

    @pytest.mark.asyncio
    async def test_pipeline_closed_on_end(self, handler):
        handler.start_call("call_1")
        pipeline = handler.manager.get_entry("call_1").attachments[PIPELINE_KEY]
        await handler.end_call("call_1")
        assert pipeline.classifier.closed
        assert pipeline.extractor.closed

    @pytest.mark.asyncio
    async def test_aclose_ends_everything(self, handler):
        handler.start_call("a")
        handler.start_call("b")
        await handler.aclose()
        assert handler.get_active_session_count() == 0


class TestLazyCreation:
    @pytest.mark.asyncio
    async def test_transcript_before_start_creates_session(self, handler, events):
        assert handler.handle_text("late", "caller", "my tenant called")
        assert handler.manager.has("late")
        assert "session_started" in event_types(events)

    @pytest.mark.asyncio
    async def test_disabled_drops_entry(self):
        handler = RealtimeHandler(settings=Settings(debounce_ms=DEBOUNCE_MS), auto_create=False)
        assert not handler.handle_text("late", "caller", "my tenant called")
        assert handler.get_active_session_count() == 0


class TestFastTrack:
    @pytest.mark.asyncio
    async def test_emergency_fast_tracked(self, handler, events, routing_client, emergency_call):
        handler.start_call("call_1")
        for entry in emergency_call[:2]:
            handler.handle_entry("call_1", entry)
        await settle()

        state = handler.get_state("call_1")
        assert state.current_station is Station.DESTINATION
        assert state.recommended_destination is Destination.EMERGENCY_DISPATCH
        assert state.fast_tracked
        assert "station_changed" in event_types(events)

        await handler.aclose()
        published = [c.args[1] for c in routing_client.send_routing_decision.await_args_list]
        assert published == ["destination_reached", "call_ended"]

    @pytest.mark.asyncio
    async def test_fast_track_can_be_disabled(self, handler, emergency_call):
        handler.settings = Settings(debounce_ms=DEBOUNCE_MS, auto_fast_track=False)
        handler.start_call("call_1")
        for entry in emergency_call:
            handler.handle_entry("call_1", entry)
        await settle()
        state = handler.get_state("call_1")
        assert state.detected_segment is Segment.EMERGENCY
        assert state.current_station is Station.LISTEN

    @pytest.mark.asyncio
    async def test_single_weak_emergency_signal_stays_at_listen(self, handler, routing_client):
        handler.start_call("call_1")
        handler.handle_text("call_1", "caller", "The kitchen tap is dripping, can you fix it?")
        await settle()

        state = handler.get_state("call_1")
        assert state.detected_segment is Segment.EMERGENCY
        assert state.segment_confidence == 17
        assert state.current_station is Station.LISTEN
        assert state.recommended_destination is None
        routing_client.send_routing_decision.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_caller_saying_no_rush_stays_at_listen(self, handler, routing_client):
        handler.start_call("call_1")
        handler.handle_text("call_1", "caller", "Water coming through the ceiling from a burst pipe.")
        handler.handle_text("call_1", "caller", "No rush at all though, whenever you can.")
        await settle()

        state = handler.get_state("call_1")
        assert state.detected_segment is Segment.EMERGENCY
        assert state.segment_confidence >= 67
        assert state.current_station is Station.LISTEN
        assert not state.fast_tracked
        routing_client.send_routing_decision.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_min_confidence_is_configurable(self, handler, emergency_call):
        handler.settings = Settings(debounce_ms=DEBOUNCE_MS, auto_fast_track_min_confidence=100)
        handler.start_call("call_1")
        for entry in emergency_call[:2]:
            handler.handle_entry("call_1", entry)
        await settle()
        assert handler.get_state("call_1").current_station is Station.LISTEN

    @pytest.mark.asyncio
    async def test_agent_can_still_fast_track_weak_emergency(self, handler):
        handler.start_call("call_1")
        handler.handle_text("call_1", "caller", "The kitchen tap is dripping, can you fix it?")
        await settle()
        assert handler.handle_action("call_1", "fast_track")["success"]
        assert handler.get_state("call_1").recommended_destination is Destination.EMERGENCY_DISPATCH

    @pytest.mark.asyncio
    async def test_landlord_not_fast_tracked(self, handler, landlord_call):
        handler.start_call("call_1")
        for entry in landlord_call:
            handler.handle_entry("call_1", entry)
        await settle()
        assert handler.get_state("call_1").current_station is Station.LISTEN

    @pytest.mark.asyncio
    async def test_publish_failure_is_logged(self, handler, routing_client, caplog, emergency_call):
        routing_client.send_routing_decision.side_effect = RuntimeError("webhook down")
        handler.start_call("call_1")
        handler.handle_entry("call_1", emergency_call[1])
        await settle()
        await handler.aclose()
        assert "webhook down" in caplog.text


class TestActions:
    @pytest.mark.asyncio
    async def test_unknown_session(self, handler):
        result = handler.handle_action("nope", "confirm_station")
        assert result == {"success": False, "reason": "session_not_found", "state": None}

    @pytest.mark.asyncio
    async def test_unknown_action(self, handler):
        handler.start_call("call_1")
        result = handler.handle_action("call_1", "teleport")
        assert result["reason"] == "unknown_action"
        assert result["state"]["current_station"] == "LISTEN"

    @pytest.mark.asyncio
    async def test_refused_transition(self, handler):
        handler.start_call("call_1")
        result = handler.handle_action("call_1", "confirm_station")
        assert not result["success"]
        assert result["reason"] == "job_not_captured"

    @pytest.mark.asyncio
    async def test_agent_driven_walk(self, handler, events):
        handler.start_call("call_1")
        assert handler.handle_action("call_1", "update_info", {"info": {"job": "Fit a shelf"}})["success"]
        assert handler.handle_action("call_1", "confirm_station")["success"]
        assert handler.handle_action("call_1", "confirm_segment", {"segment": "OAP"})["success"]
        assert handler.handle_action("call_1", "confirm_station")["success"]
        assert handler.handle_action("call_1", "set_qualified", {"qualified": True, "reasons": ["owner"]})["success"]
        result = handler.handle_action("call_1", "confirm_station")
        assert result["success"]
        assert result["state"]["recommended_destination"] == "SITE_VISIT"
        assert "action_applied" in event_types(events)

        assert handler.handle_action("call_1", "select_destination", {"destination": "CALLBACK"})["success"]
        assert handler.get_state("call_1").final_destination is Destination.CALLBACK

    @pytest.mark.asyncio
    async def test_update_info_overwrites(self, handler):
        handler.start_call("call_1")
        handler.handle_action("call_1", "update_info", {"job": "Tap"})
        handler.handle_action("call_1", "update_info", {"job": "Shower"})
        assert handler.get_state("call_1").captured_info.job == "Shower"

    @pytest.mark.asyncio
    async def test_single_reason_string_kept_whole(self, handler):
        handler.start_call("call_1")
        handler.handle_action("call_1", "set_qualified", {"qualified": False, "reasons": "not the owner"})
        assert handler.get_state("call_1").qualification_reasons == ("not the owner",)

    @pytest.mark.asyncio
    async def test_update_info_normalises_typed_postcode(self, handler):
        handler.start_call("call_1")
        handler.handle_action("call_1", "update_info", {"postcode": " sw112ab ", "name": " Sarah "})
        info = handler.get_state("call_1").captured_info
        assert info.postcode == "SW11 2AB"
        assert info.name == "Sarah"

    @pytest.mark.asyncio
    async def test_update_info_ignores_placeholders(self, handler):
        handler.start_call("call_1")
        handler.handle_action("call_1", "update_info", {"postcode": "SW4 7AB"})
        result = handler.handle_action("call_1", "update_info", {"postcode": "unknown", "name": "{{customer_name}}"})
        assert result["success"]
        info = handler.get_state("call_1").captured_info
        assert info.postcode == "SW4 7AB"
        assert info.name is None

    @pytest.mark.asyncio
    async def test_update_info_keeps_area_names(self, handler):
        handler.start_call("call_1")
        handler.handle_action("call_1", "update_info", {"postcode": "Brixton"})
        assert handler.get_state("call_1").captured_info.postcode == "Brixton"

    @pytest.mark.asyncio
    async def test_fast_track_action(self, handler):
        handler.start_call("call_1")
        assert handler.handle_action("call_1", "fast_track")["reason"] == "not_fast_track_eligible"
        handler.handle_action("call_1", "confirm_segment", {"segment": "EMERGENCY"})
        assert handler.handle_action("call_1", "fast_track")["success"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action,payload", [
        ("set_qualified", {"qualified": "yes"}),
        ("set_qualified", {}),
        ("confirm_segment", {"segment": "ALIEN"}),
        ("select_destination", {"destination": "MOON"}),
        ("update_info", {"postcode": 12345}),
        ("advance_journey", {"option": 3}),
    ])
    async def test_invalid_payload(self, handler, action, payload):
        handler.start_call("call_1")
        result = handler.handle_action("call_1", action, payload)
        assert result["reason"] == "invalid_payload"
        assert handler.get_state("call_1").is_qualified is None


class TestJourneyActions:
    @pytest.mark.asyncio
    async def test_landlord_journey_to_video_quote(self, handler):
        handler.start_call("call_1")
        handler.handle_action("call_1", "confirm_segment", {"segment": "LANDLORD"})
        assert handler.get_state("call_1").current_journey_station == "REASSURE"

        assert handler.handle_action("call_1", "advance_journey")["success"]
        result = handler.handle_action("call_1", "advance_journey", {"option": "tenant_sends"})
        assert result["state"]["current_journey_station"] == "QUOTE_FORK"
        assert result["state"]["journey_flags"] == {"media_method": "tenant_sends"}
        assert result["state"]["captured_info"]["has_tenant"] is True

        result = handler.handle_action("call_1", "advance_journey", {"option": "video"})
        assert result["success"]
        assert result["state"]["selected_destination"] == "VIDEO_QUOTE"

    @pytest.mark.asyncio
    async def test_choice_without_option_refused(self, handler):
        handler.start_call("call_1")
        handler.handle_action("call_1", "confirm_segment", {"segment": "BUDGET"})
        result = handler.handle_action("call_1", "advance_journey")
        assert not result["success"]
        assert result["reason"] == "option_required"

    @pytest.mark.asyncio
    async def test_back_and_reset(self, handler):
        handler.start_call("call_1")
        assert handler.handle_action("call_1", "journey_back")["reason"] == "no_segment_confirmed"
        handler.handle_action("call_1", "confirm_segment", {"segment": "OAP"})
        assert handler.handle_action("call_1", "journey_back")["reason"] == "at_journey_start"
        handler.handle_action("call_1", "advance_journey")
        assert handler.handle_action("call_1", "journey_back")["state"]["current_journey_station"] == "TRUST_BUILD"

        handler.handle_action("call_1", "advance_journey")
        result = handler.handle_action("call_1", "reset_journey")
        assert result["state"]["journey_path"] == ["TRUST_BUILD"]


class TestReads:
    @pytest.mark.asyncio
    async def test_transcript_keeps_both_speakers(self, handler, landlord_call):
        handler.start_call("call_1")
        for entry in landlord_call:
            handler.handle_entry("call_1", entry)
        transcript = handler.get_transcript("call_1")
        assert [e.text for e in transcript] == [e.text for e in landlord_call]
        assert any(not e.is_caller for e in transcript)

    @pytest.mark.asyncio
    async def test_transcript_of_unknown_call(self, handler):
        with pytest.raises(SessionNotFound):
            handler.get_transcript("nope")

    @pytest.mark.asyncio
    async def test_summaries(self, handler):
        handler.start_call("a", "+447700900123")
        summaries = handler.get_active_session_summaries()
        assert summaries[0]["call_id"] == "a"
        assert summaries[0]["phone"] == "+447700900123"

    def test_from_settings_without_keys(self):
        handler = RealtimeHandler.from_settings(Settings())
        assert handler.classifier.tier2 is None
        assert handler.routing_client is None

    def test_from_settings_with_keys(self):
        settings = Settings(openai_api_key="sk-test", routing_webhook_url="https://example.com/hook", tier2_threshold=60)
        handler = RealtimeHandler.from_settings(settings)
        assert handler.classifier.tier2.enabled
        assert handler.classifier.tier2_threshold == 60
        assert handler.routing_client.url == "https://example.com/hook"
