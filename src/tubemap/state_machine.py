import logging
import time
from collections import defaultdict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from tubemap.journeys import (
    JourneyContext,
    JourneyOption,
    JourneyStation,
    JourneyStationType,
    get_journey_entry_station,
    get_journey_station,
    get_next_station,
    is_option_available,
)
from tubemap.prompts import get_station_prompt
from tubemap.segments import get_segment_config, is_fast_track_eligible
from tubemap.session import CallSession, CapturedInfo, merge_captured_info
from tubemap.states import Destination, Segment, Station, STATION_ORDER

logger = logging.getLogger(__name__)

# Forward-only progression; fast-track is the only way to skip ahead.
TRANSITIONS = {
    Station.LISTEN: Station.SEGMENT,
    Station.SEGMENT: Station.QUALIFY,
    Station.QUALIFY: Station.DESTINATION,
    Station.DESTINATION: None,
}

EVENT_STATION_CHANGED = "station_changed"
EVENT_SEGMENT_DETECTED = "segment_detected"
EVENT_SEGMENT_CONFIRMED = "segment_confirmed"
EVENT_INFO_CAPTURED = "info_captured"
EVENT_QUALIFIED_SET = "qualified_set"
EVENT_DESTINATION_SELECTED = "destination_selected"
EVENT_ERROR = "error"
EVENT_JOURNEY_STARTED = "journey_started"
EVENT_JOURNEY_STATION_CHANGED = "journey_station_changed"
EVENT_JOURNEY_FLAG_SET = "journey_flag_set"
EVENT_JOURNEY_RESET = "journey_reset"

EVENTS = frozenset({
    EVENT_STATION_CHANGED, EVENT_SEGMENT_DETECTED, EVENT_SEGMENT_CONFIRMED,
    EVENT_INFO_CAPTURED, EVENT_QUALIFIED_SET, EVENT_DESTINATION_SELECTED, EVENT_ERROR,
    EVENT_JOURNEY_STARTED, EVENT_JOURNEY_STATION_CHANGED, EVENT_JOURNEY_FLAG_SET, EVENT_JOURNEY_RESET,
})


class InvalidTransition(Enum):
    ALREADY_AT_DESTINATION = "already_at_destination"
    JOB_NOT_CAPTURED = "job_not_captured"
    SEGMENT_UNKNOWN = "segment_unknown"
    QUALIFICATION_PENDING = "qualification_pending"
    NOT_FAST_TRACK_ELIGIBLE = "not_fast_track_eligible"


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    station: Station
    reason: Optional[InvalidTransition] = None
    destination: Optional[Destination] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "station": self.station.value,
            "reason": self.reason.value if self.reason else None,
            "destination": self.destination.value if self.destination else None,
        }


class JourneyError(Enum):
    NO_SEGMENT = "no_segment_confirmed"
    NOT_STARTED = "journey_not_started"
    OPTION_REQUIRED = "option_required"
    OPTION_NOT_FOUND = "option_not_found"
    AT_JOURNEY_START = "at_journey_start"


@dataclass(frozen=True)
class JourneyResult:
    """Outcome of moving through a journey tree. ended=True when the journey finished."""

    success: bool
    station: Optional[JourneyStation] = None
    reason: Optional[JourneyError] = None
    ended: bool = False
    destination: Optional[Destination] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "station": self.station.id if self.station else None,
            "reason": self.reason.value if self.reason else None,
            "ended": self.ended,
            "destination": self.destination.value if self.destination else None,
        }


Listener = Callable[[str, Any], None]


class CallScriptStateMachine:
    """Workflow for one call: LISTEN -> SEGMENT -> QUALIFY -> DESTINATION.

    State lives in an immutable CallSession that is swapped on every change,
    so get_state() hands out snapshots nobody can mutate. Failed operations
    come back as TransitionResult(success=False) and leave state untouched.
    """

    def __init__(
        self,
        call_id: str,
        phone: str = "",
        clock: Callable[[], float] = time.time,
        session: Optional[CallSession] = None,
    ):
        self._clock = clock
        now = clock()
        self._session = session or CallSession(
            call_id=call_id,
            phone=phone,
            created_at=now,
            updated_at=now,
            station_entered_at=now,
        )
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    @property
    def call_id(self) -> str:
        return self._session.call_id

    def _log_prefix(self) -> str:
        return f"[{self.call_id}] [{self._session.current_station.value}]"

    def _update(self, **changes) -> CallSession:
        self._session = replace(self._session, updated_at=self._clock(), **changes)
        return self._session

    # --- Reads ---

    def get_state(self) -> CallSession:
        return self._session

    def get_current_station(self) -> Station:
        return self._session.current_station

    def has_segment(self) -> bool:
        return self._session.segment is not None

    def is_at_final_station(self) -> bool:
        return self._session.current_station.is_terminal

    def get_time_in_current_station(self) -> float:
        return max(0.0, self._clock() - self._session.station_entered_at)

    def get_current_prompt(self) -> dict:
        return get_station_prompt(self._session)

    def get_available_destinations(self) -> list[Destination]:
        """Routable destinations, recommended one first when known."""
        options = [d for d in Destination if d is not Destination.NO_ACTION]
        recommended = self._session.recommended_destination
        if recommended in options:
            options.remove(recommended)
            options.insert(0, recommended)
        return options

    # --- Data capture ---

    def update_captured_info(
        self,
        partial: Union[CapturedInfo, Mapping[str, Any]],
        overwrite: bool = False,
    ) -> CapturedInfo:
        current = self._session.captured_info
        merged = merge_captured_info(current, partial, overwrite=overwrite)
        if merged != current:
            self._update(captured_info=merged)
            logger.debug("%s Captured info: %s", self._log_prefix(), merged.filled_fields)
            self._emit(EVENT_INFO_CAPTURED, merged)
        return merged

    def update_segment(
        self,
        segment: Optional[Segment],
        confidence: int,
        signals: Iterable[str] = (),
    ) -> None:
        """Record the latest automatic classification. Never moves the station."""
        if segment is None:
            return
        self._update(
            detected_segment=segment,
            segment_confidence=max(0, min(100, int(confidence))),
            segment_signals=tuple(signals),
        )
        logger.info(
            "%s Segment detected: %s (%d%%)",
            self._log_prefix(), segment.value, self._session.segment_confidence,
        )
        self._emit(EVENT_SEGMENT_DETECTED, self._session)

    def add_segment_signal(self, signal: str) -> None:
        if not signal or signal in self._session.segment_signals:
            return
        self._update(segment_signals=self._session.segment_signals + (signal,))

    def confirm_segment(self, segment: Segment) -> None:
        """Agent's authoritative segment. Starts that segment's journey, restarting it on a change."""
        previous = self._session.confirmed_segment
        if previous is not None and previous is not segment and self.has_active_journey():
            self.reset_journey("segment_change")
        self._update(confirmed_segment=segment)
        logger.info("%s Segment confirmed: %s", self._log_prefix(), segment.value)
        self._emit(EVENT_SEGMENT_CONFIRMED, segment)
        if not self.has_active_journey():
            self.initialize_journey()

    def set_qualified(self, qualified: bool, reasons: Iterable[str] = ()) -> None:
        if isinstance(reasons, str):
            reasons = (reasons,)
        self._update(is_qualified=qualified, qualification_reasons=tuple(reasons))
        logger.info("%s Qualified: %s", self._log_prefix(), qualified)
        self._emit(EVENT_QUALIFIED_SET, qualified)

    def add_qualification_reason(self, reason: str) -> None:
        if not reason or reason in self._session.qualification_reasons:
            return
        self._update(qualification_reasons=self._session.qualification_reasons + (reason,))

    def select_destination(self, destination: Destination) -> None:
        """Agent's explicit routing choice, kept alongside the recommendation."""
        self._update(selected_destination=destination)
        logger.info("%s Destination selected: %s", self._log_prefix(), destination.value)
        self._emit(EVENT_DESTINATION_SELECTED, destination)

    # --- Transitions ---

    def confirm_station(self) -> TransitionResult:
        station = self._session.current_station
        next_station = TRANSITIONS[station]
        if next_station is None:
            return self._fail(InvalidTransition.ALREADY_AT_DESTINATION)

        guard = getattr(self, f"_can_leave_{station.value.lower()}")
        blocked = guard()
        if blocked is not None:
            return self._fail(blocked)
        return self._advance_to(next_station)

    def fast_track_to_destination(self) -> TransitionResult:
        """Jump straight to DESTINATION for a fast-track segment, completing every earlier station."""
        session = self._session
        if session.current_station.is_terminal:
            return self._fail(InvalidTransition.ALREADY_AT_DESTINATION)
        segment = session.segment
        if not is_fast_track_eligible(segment):
            return self._fail(InvalidTransition.NOT_FAST_TRACK_ELIGIBLE)

        config = get_segment_config(segment)
        destination = config.fast_track_destination or config.default_destination
        completed = tuple(
            Station(name) for name in STATION_ORDER if not Station(name).is_terminal
        )
        from_station = session.current_station
        self._update(
            current_station=Station.DESTINATION,
            completed_stations=completed,
            recommended_destination=destination,
            fast_tracked=True,
            station_entered_at=self._clock(),
        )
        logger.info(
            "[%s] Fast-tracked %s -> DESTINATION (%s, %s)",
            self.call_id, from_station.value, segment.value, destination.value,
        )
        self._emit(EVENT_STATION_CHANGED, self._session)
        return TransitionResult(success=True, station=Station.DESTINATION, destination=destination)

    def compute_destination(self) -> Destination:
        """Routing outcome for the current segment and qualification. Confirmed segment wins."""
        segment = self._session.segment
        if segment is None:
            return Destination.NO_ACTION
        return get_segment_config(segment).destination_for(self._session.is_qualified)

    def _can_leave_listen(self) -> Optional[InvalidTransition]:
        if not self._session.captured_info.job:
            return InvalidTransition.JOB_NOT_CAPTURED
        return None

    def _can_leave_segment(self) -> Optional[InvalidTransition]:
        if self._session.segment is None:
            return InvalidTransition.SEGMENT_UNKNOWN
        return None

    def _can_leave_qualify(self) -> Optional[InvalidTransition]:
        if self._session.is_qualified is None:
            return InvalidTransition.QUALIFICATION_PENDING
        return None

    def _advance_to(self, station: Station) -> TransitionResult:
        session = self._session
        completed = session.completed_stations
        if session.current_station not in completed:
            completed = completed + (session.current_station,)
        changes = {
            "current_station": station,
            "completed_stations": completed,
            "station_entered_at": self._clock(),
        }
        destination = None
        if station.is_terminal:
            destination = self.compute_destination()
            changes["recommended_destination"] = destination
        from_station = session.current_station
        self._update(**changes)
        logger.info("[%s] Station %s -> %s", self.call_id, from_station.value, station.value)
        self._emit(EVENT_STATION_CHANGED, self._session)
        return TransitionResult(success=True, station=station, destination=destination)

    def _fail(self, reason: InvalidTransition) -> TransitionResult:
        logger.info("%s Transition refused: %s", self._log_prefix(), reason.value)
        self._emit(EVENT_ERROR, reason)
        return TransitionResult(success=False, station=self._session.current_station, reason=reason)

    # --- Journey tree ---

    def initialize_journey(self) -> JourneyResult:
        """Start the confirmed segment's journey at its entry station, clearing path and flags."""
        segment = self._session.confirmed_segment
        if segment is None:
            return self._journey_fail(JourneyError.NO_SEGMENT)
        entry = get_journey_entry_station(segment)
        self._update(journey_path=(entry.id,), current_journey_station=entry.id, journey_flags={})
        logger.info("%s Journey started: %s at %s", self._log_prefix(), segment.value, entry.id)
        self._emit(EVENT_JOURNEY_STARTED, {"segment": segment, "entry_station": entry.id})
        self._emit(EVENT_JOURNEY_STATION_CHANGED, {"from": None, "to": entry.id, "station": entry})
        return JourneyResult(success=True, station=entry)

    def get_current_journey_station(self) -> Optional[JourneyStation]:
        segment = self._session.confirmed_segment
        if segment is None:
            return None
        return get_journey_station(segment, self._session.current_journey_station)

    def get_journey_options(self, context: Optional[JourneyContext] = None) -> list[JourneyOption]:
        station = self.get_current_journey_station()
        if station is None:
            return []
        if context is None:
            context = JourneyContext(is_emergency=self._session.confirmed_segment is Segment.EMERGENCY)
        return [o for o in station.options if is_option_available(o, context)]

    def advance_journey(self, option_id: Optional[str] = None) -> JourneyResult:
        """Move on from the current journey station.

        Choice and destination stations need the chosen option_id. The
        option's flags and captures are applied first; an option (or a
        station) with nowhere further to go ends the journey, selecting its
        destination when it names one.
        """
        segment = self._session.confirmed_segment
        if segment is None:
            return self._journey_fail(JourneyError.NO_SEGMENT)
        station = self.get_current_journey_station()
        if station is None:
            return self._journey_fail(JourneyError.NOT_STARTED)

        destination = station.destination
        if station.type.needs_option:
            if not option_id:
                return self._journey_fail(JourneyError.OPTION_REQUIRED)
            option = station.get_option(option_id)
            if option is None:
                return self._journey_fail(JourneyError.OPTION_NOT_FOUND)
            for key, value in option.flags.items():
                self.set_journey_flag(key, value)
            if option.captures:
                self.update_captured_info(option.captures)
            destination = option.destination

        next_station = get_next_station(segment, station.id, option_id)
        if next_station is None:
            logger.info("%s Journey ended at %s", self._log_prefix(), station.id)
            if destination is not None:
                self.select_destination(destination)
            return JourneyResult(success=True, station=station, ended=True, destination=destination)

        self._update(
            journey_path=self._session.journey_path + (next_station.id,),
            current_journey_station=next_station.id,
        )
        logger.info("%s Journey %s -> %s", self._log_prefix(), station.id, next_station.id)
        self._emit(EVENT_JOURNEY_STATION_CHANGED, {"from": station.id, "to": next_station.id, "station": next_station})
        return JourneyResult(success=True, station=next_station)

    def go_back_in_journey(self) -> JourneyResult:
        path = self._session.journey_path
        if self._session.confirmed_segment is None:
            return self._journey_fail(JourneyError.NO_SEGMENT)
        if len(path) <= 1:
            return self._journey_fail(JourneyError.AT_JOURNEY_START)
        previous = get_journey_station(self._session.confirmed_segment, path[-2])
        if previous is None:
            return self._journey_fail(JourneyError.NOT_STARTED)
        self._update(journey_path=path[:-1], current_journey_station=previous.id)
        logger.info("%s Journey back %s -> %s", self._log_prefix(), path[-1], previous.id)
        self._emit(EVENT_JOURNEY_STATION_CHANGED, {"from": path[-1], "to": previous.id, "station": previous})
        return JourneyResult(success=True, station=previous)

    def reset_journey(self, reason: str = "manual_reset") -> None:
        self._update(journey_path=(), current_journey_station=None, journey_flags={})
        logger.info("%s Journey reset: %s", self._log_prefix(), reason)
        self._emit(EVENT_JOURNEY_RESET, {"reason": reason, "segment": self._session.confirmed_segment})

    def set_journey_flag(self, key: str, value: Any) -> None:
        self._update(journey_flags={**self._session.journey_flags, key: value})
        self._emit(EVENT_JOURNEY_FLAG_SET, {key: value})

    def get_journey_flags(self) -> dict:
        return dict(self._session.journey_flags)

    def has_active_journey(self) -> bool:
        return self._session.current_journey_station is not None

    def is_journey_complete(self) -> bool:
        """True once the journey has reached its quote fork."""
        station = self.get_current_journey_station()
        return station is not None and station.type is JourneyStationType.DESTINATION

    def _journey_fail(self, reason: JourneyError) -> JourneyResult:
        logger.info("%s Journey move refused: %s", self._log_prefix(), reason.value)
        self._emit(EVENT_ERROR, reason)
        return JourneyResult(success=False, station=self.get_current_journey_station(), reason=reason)

    # --- Events ---

    def on(self, event: str, listener: Listener) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    def _emit(self, event: str, payload: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(event, payload)
            except Exception as e:
                logger.error(f"[{self.call_id}] {event} listener failed: {e}")

    # --- Persistence ---

    def reset(self) -> None:
        now = self._clock()
        self._session = CallSession(
            call_id=self.call_id,
            phone=self._session.phone,
            created_at=now,
            updated_at=now,
            station_entered_at=now,
        )

    def to_dict(self) -> dict:
        return self._session.to_dict()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], clock: Callable[[], float] = time.time) -> "CallScriptStateMachine":
        session = CallSession.from_dict(data)
        return cls(session.call_id, phone=session.phone, clock=clock, session=session)
