import asyncio
import inspect
import logging
from functools import partial
from typing import Any, Callable, Optional

from tubemap.classification import ClassificationResult, SegmentClassifier, should_auto_fast_track
from tubemap.config import Settings
from tubemap.extraction import extract_info_from_entries
from tubemap.routing_sync import RoutingClient
from tubemap.session import CallSession, CapturedInfo
from tubemap.session_manager import SessionEntry, SessionManager, SessionNotFound
from tubemap.state_machine import (
    EVENT_STATION_CHANGED,
    CallScriptStateMachine,
    JourneyResult,
    TransitionResult,
)
from tubemap.states import Destination, Segment
from tubemap.streaming import StreamingClassifier, StreamingInfoExtractor
from tubemap.tier2 import Tier2Classifier
from tubemap.transcript import TranscriptEntry
from tubemap.validation import validate_name, validate_postcode

logger = logging.getLogger(__name__)

PIPELINE_KEY = "pipeline"

Subscriber = Callable[[str, dict], Any]


class CallPipeline:
    """Per-call streaming components, attached to the session entry."""

    def __init__(self, classifier: StreamingClassifier, extractor: StreamingInfoExtractor):
        self.classifier = classifier
        self.extractor = extractor
        self.transcript: list[TranscriptEntry] = []

    def feed(self, entry: TranscriptEntry) -> None:
        self.transcript.append(entry)
        if entry.is_caller:
            self.classifier.add_chunk(entry.text)
            self.extractor.add_chunk(entry.text)

    async def flush(self) -> None:
        await self.classifier.flush()
        await self.extractor.flush()

    def close(self) -> None:
        self.classifier.close()
        self.extractor.close()


class RealtimeHandler:
    """Bridges transcript entries for many concurrent calls onto their sessions.

    Every mutation of a call's session happens on the event loop through this
    handler (streaming callbacks and agent actions), so each session has a
    single logical owner.
    """

    def __init__(
        self,
        manager: Optional[SessionManager] = None,
        classifier: Optional[SegmentClassifier] = None,
        settings: Optional[Settings] = None,
        routing_client: Optional[RoutingClient] = None,
        auto_create: bool = True,
    ):
        self.settings = settings or Settings()
        self.manager = manager or SessionManager()
        self.classifier = classifier or SegmentClassifier(tier2_threshold=self.settings.tier2_threshold)
        self.routing_client = routing_client
        self.auto_create = auto_create
        self._subscribers: list[Subscriber] = []
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings, manager: Optional[SessionManager] = None) -> "RealtimeHandler":
        tier2 = None
        if settings.tier2_enabled:
            tier2 = Tier2Classifier(
                api_key=settings.openai_api_key,
                model=settings.tier2_model,
                timeout=settings.tier2_timeout_s,
            )
        routing_client = None
        if settings.routing_webhook_url:
            routing_client = RoutingClient(
                url=settings.routing_webhook_url,
                webhook_secret=settings.routing_webhook_secret,
            )
        return cls(
            manager=manager,
            classifier=SegmentClassifier(tier2=tier2, tier2_threshold=settings.tier2_threshold),
            settings=settings,
            routing_client=routing_client,
        )

    # --- Subscribers ---

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def _broadcast(self, event_type: str, data: dict) -> None:
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event_type, data)
                if inspect.isawaitable(result):
                    self._spawn(result)
            except Exception as e:
                logger.error(f"Broadcast of {event_type} failed: {e}")

    def _spawn(self, coro) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, dropping background work")
            coro.close()
            return
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # --- Call lifecycle ---

    def start_call(self, call_id: str, phone: str = "") -> CallSession:
        entry = self.manager.create_entry(call_id, phone)
        if PIPELINE_KEY not in entry.attachments:
            self._attach(call_id, entry)
            self._broadcast("session_started", {"call_id": call_id, "phone": phone})
        return entry.machine.get_state()

    def _attach(self, call_id: str, entry: SessionEntry) -> CallPipeline:
        debounce_ms = self.settings.debounce_ms
        pipeline = CallPipeline(
            classifier=StreamingClassifier(
                self.classifier,
                on_update=partial(self._on_classification, call_id),
                debounce_ms=debounce_ms,
            ),
            extractor=StreamingInfoExtractor(
                on_update=partial(self._on_info, call_id),
                debounce_ms=debounce_ms,
            ),
        )
        entry.attachments[PIPELINE_KEY] = pipeline
        entry.machine.on(EVENT_STATION_CHANGED, partial(self._on_station_changed, call_id))
        return pipeline

    def handle_entry(self, call_id: str, entry: TranscriptEntry) -> bool:
        """Feed one transcript entry. Only caller speech drives classification and extraction."""
        try:
            session_entry = self.manager.get_entry(call_id)
        except SessionNotFound:
            if not self.auto_create:
                logger.warning("[%s] Transcript for unknown call, dropping (broken call linkage)", call_id)
                return False
            logger.info("[%s] Transcript before start_call, creating session", call_id)
            self.start_call(call_id)
            session_entry = self.manager.get_entry(call_id)

        pipeline = session_entry.attachments.get(PIPELINE_KEY)
        if pipeline is None:
            pipeline = self._attach(call_id, session_entry)
        pipeline.feed(entry)
        self.manager.touch(call_id)
        return True

    def handle_text(self, call_id: str, speaker: str, text: str, time_offset_seconds: float = 0.0) -> bool:
        return self.handle_entry(call_id, TranscriptEntry(speaker, text, time_offset_seconds))

    async def end_call(self, call_id: str) -> Optional[CallSession]:
        """Final classification and extraction pass, then dispose and publish."""
        try:
            entry = self.manager.get_entry(call_id)
        except SessionNotFound:
            logger.warning("[%s] end_call for unknown session", call_id)
            return None

        pipeline = entry.attachments.get(PIPELINE_KEY)
        if pipeline is not None:
            await pipeline.flush()
            if pipeline.transcript:
                entry.machine.update_captured_info(extract_info_from_entries(pipeline.transcript))

        final = self.manager.end(call_id)
        if final is None:
            return None
        self._broadcast("session_ended", {"call_id": call_id, "state": final.to_dict()})
        if self.routing_client is not None:
            await self._safe_publish(final, "call_ended")
        return final

    # --- Reads ---

    def get_state(self, call_id: str) -> CallSession:
        return self.manager.get(call_id).get_state()

    def get_transcript(self, call_id: str) -> list[TranscriptEntry]:
        """Every entry fed for the call so far, agent lines included."""
        pipeline = self.manager.get_entry(call_id).attachments.get(PIPELINE_KEY)
        return list(pipeline.transcript) if pipeline is not None else []

    def _pipeline(self, call_id: str) -> Optional[CallPipeline]:
        try:
            return self.manager.get_entry(call_id).attachments.get(PIPELINE_KEY)
        except SessionNotFound:
            return None

    def get_active_session_summaries(self) -> list[dict]:
        return self.manager.summaries()

    def get_active_session_count(self) -> int:
        return self.manager.count()

    # --- Streaming callbacks ---

    def _on_classification(self, call_id: str, result: ClassificationResult) -> None:
        machine = self.manager.find(call_id)
        if machine is None:
            return
        machine.update_segment(result.segment, result.confidence, result.signals)
        self._broadcast("segment_detected", {"call_id": call_id, "classification": result.to_dict()})

        if not self.settings.auto_fast_track or machine.is_at_final_station():
            return
        pipeline = self._pipeline(call_id)
        text = pipeline.classifier.accumulated_text if pipeline is not None else ""
        if should_auto_fast_track(result, text, self.settings.auto_fast_track_min_confidence):
            outcome = machine.fast_track_to_destination()
            if not outcome.success:
                logger.debug("[%s] Auto fast-track refused: %s", call_id, outcome.reason.value)

    def _on_info(self, call_id: str, info: CapturedInfo) -> None:
        machine = self.manager.find(call_id)
        if machine is None:
            return
        merged = machine.update_captured_info(info)
        self._broadcast("info_captured", {"call_id": call_id, "captured_info": merged.to_dict()})

    def _on_station_changed(self, call_id: str, event: str, session: CallSession) -> None:
        self._broadcast("station_changed", {"call_id": call_id, "state": session.to_dict()})
        if session.current_station.is_terminal and self.routing_client is not None:
            self._spawn(self._safe_publish(session, "destination_reached"))

    async def _safe_publish(self, session: CallSession, event: str) -> None:
        try:
            await self.routing_client.send_routing_decision(session, event)
        except Exception as e:
            logger.error(f"[{session.call_id}] Routing publish failed: {e}")

    # --- Agent actions ---

    def handle_action(self, call_id: str, action: str, payload: Optional[dict] = None) -> dict:
        """Apply an agent action. Always returns {success, reason, state}."""
        try:
            machine = self.manager.get(call_id)
        except SessionNotFound:
            return {"success": False, "reason": "session_not_found", "state": None}

        handler = getattr(self, f"_action_{action}", None)
        if handler is None:
            logger.warning("[%s] Unknown action: %s", call_id, action)
            return {"success": False, "reason": "unknown_action", "state": machine.get_state().to_dict()}

        try:
            result = handler(machine, payload or {})
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("[%s] Bad payload for %s: %s", call_id, action, e)
            return {"success": False, "reason": "invalid_payload", "state": machine.get_state().to_dict()}

        self.manager.touch(call_id)
        state = machine.get_state().to_dict()
        if isinstance(result, (TransitionResult, JourneyResult)) and not result.success:
            return {"success": False, "reason": result.reason.value, "state": state}
        self._broadcast("action_applied", {"call_id": call_id, "action": action, "state": state})
        return {"success": True, "reason": None, "state": state}

    def _action_confirm_station(self, machine: CallScriptStateMachine, payload: dict) -> TransitionResult:
        return machine.confirm_station()

    def _action_confirm_segment(self, machine: CallScriptStateMachine, payload: dict) -> None:
        machine.confirm_segment(Segment(payload["segment"]))

    def _action_set_qualified(self, machine: CallScriptStateMachine, payload: dict) -> None:
        qualified = payload["qualified"]
        if not isinstance(qualified, bool):
            raise TypeError("qualified must be a boolean")
        reasons = payload.get("reasons") or ()
        if isinstance(reasons, str):
            reasons = [reasons]
        machine.set_qualified(qualified, reasons)

    def _action_select_destination(self, machine: CallScriptStateMachine, payload: dict) -> None:
        machine.select_destination(Destination(payload["destination"]))

    def _action_update_info(self, machine: CallScriptStateMachine, payload: dict) -> None:
        # Agent corrections are authoritative
        machine.update_captured_info(_clean_agent_info(payload.get("info", payload)), overwrite=True)

    def _action_fast_track(self, machine: CallScriptStateMachine, payload: dict) -> TransitionResult:
        return machine.fast_track_to_destination()

    def _action_advance_journey(self, machine: CallScriptStateMachine, payload: dict) -> JourneyResult:
        option = payload.get("option")
        if option is not None and not isinstance(option, str):
            raise TypeError("option must be a string")
        return machine.advance_journey(option)

    def _action_journey_back(self, machine: CallScriptStateMachine, payload: dict) -> JourneyResult:
        return machine.go_back_in_journey()

    def _action_reset_journey(self, machine: CallScriptStateMachine, payload: dict) -> JourneyResult:
        machine.reset_journey("manual_reset")
        return machine.initialize_journey()

    async def aclose(self) -> None:
        """End every live call and wait for outstanding publishes."""
        for call_id in self.manager.active_ids():
            await self.end_call(call_id)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


def _clean_agent_info(info: dict) -> dict:
    """Normalise typed postcodes and names; placeholders like "unknown" are dropped."""
    info = dict(info)
    for key, validate in (("postcode", validate_postcode), ("name", validate_name)):
        value = info.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise TypeError(f"{key} must be a string")
        info[key] = validate(value) or None
    return info
