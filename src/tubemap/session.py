import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping, Optional, Union

from tubemap.states import Destination, Segment, Station
from tubemap.validation import postcode_precision

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapturedInfo:
    job: Optional[str] = None
    postcode: Optional[str] = None
    name: Optional[str] = None
    contact: Optional[str] = None
    is_decision_maker: Optional[bool] = None
    is_remote: Optional[bool] = None
    has_tenant: Optional[bool] = None

    @classmethod
    def from_partial(cls, partial: Mapping[str, Any]) -> "CapturedInfo":
        """Build from a dict, ignoring keys that are not CapturedInfo fields."""
        known = {f.name for f in fields(cls)}
        unknown = set(partial) - known
        if unknown:
            logger.warning("Ignoring unknown captured info keys: %s", sorted(unknown))
        return cls(**{k: v for k, v in partial.items() if k in known})

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @property
    def filled_fields(self) -> list[str]:
        return [f.name for f in fields(self) if getattr(self, f.name) is not None]


def _field_confidence(name: str, value: Any) -> int:
    if name == "postcode":
        return postcode_precision(value)
    return 1


def merge_captured_info(
    current: CapturedInfo,
    update: Union[CapturedInfo, Mapping[str, Any]],
    overwrite: bool = False,
) -> CapturedInfo:
    """Fold an update into current captured info.

    None never blanks a populated field. Empty fields are filled. A populated
    field is only replaced by a strictly more confident value (postcodes rank
    by precision: full postcode over outward code over area name). With
    overwrite=True any non-None value replaces the current one.
    """
    if not isinstance(update, CapturedInfo):
        update = CapturedInfo.from_partial(update)

    changes = {}
    for f in fields(CapturedInfo):
        new = getattr(update, f.name)
        if new is None:
            continue
        old = getattr(current, f.name)
        if old == new:
            continue
        if old is None or overwrite:
            changes[f.name] = new
        elif _field_confidence(f.name, new) > _field_confidence(f.name, old):
            changes[f.name] = new

    if not changes:
        return current
    return replace(current, **changes)


@dataclass(frozen=True)
class CallSession:
    """Immutable snapshot of one call's workflow state."""

    call_id: str
    phone: str = ""
    current_station: Station = Station.LISTEN
    completed_stations: tuple[Station, ...] = ()

    # Automatic classification, then the agent's authoritative choice
    detected_segment: Optional[Segment] = None
    segment_confidence: int = 0
    segment_signals: tuple[str, ...] = ()
    confirmed_segment: Optional[Segment] = None

    captured_info: CapturedInfo = field(default_factory=CapturedInfo)

    # From QUALIFY
    is_qualified: Optional[bool] = None
    qualification_reasons: tuple[str, ...] = ()

    # From DESTINATION
    recommended_destination: Optional[Destination] = None
    selected_destination: Optional[Destination] = None
    fast_tracked: bool = False

    # Journey tree for the confirmed segment
    journey_path: tuple[str, ...] = ()
    current_journey_station: Optional[str] = None
    journey_flags: Mapping[str, Any] = field(default_factory=dict)

    created_at: float = 0.0
    updated_at: float = 0.0
    station_entered_at: float = 0.0

    @property
    def segment(self) -> Optional[Segment]:
        """The segment routing acts on: confirmed wins over detected."""
        return self.confirmed_segment or self.detected_segment

    @property
    def final_destination(self) -> Optional[Destination]:
        return self.selected_destination or self.recommended_destination

    def is_completed(self, station: Station) -> bool:
        return station in self.completed_stations

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "phone": self.phone,
            "current_station": self.current_station.value,
            "completed_stations": [s.value for s in self.completed_stations],
            "detected_segment": _value(self.detected_segment),
            "segment_confidence": self.segment_confidence,
            "segment_signals": list(self.segment_signals),
            "confirmed_segment": _value(self.confirmed_segment),
            "captured_info": self.captured_info.to_dict(),
            "is_qualified": self.is_qualified,
            "qualification_reasons": list(self.qualification_reasons),
            "recommended_destination": _value(self.recommended_destination),
            "selected_destination": _value(self.selected_destination),
            "fast_tracked": self.fast_tracked,
            "journey_path": list(self.journey_path),
            "current_journey_station": self.current_journey_station,
            "journey_flags": dict(self.journey_flags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "station_entered_at": self.station_entered_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CallSession":
        return cls(
            call_id=data["call_id"],
            phone=data.get("phone", ""),
            current_station=Station(data.get("current_station", Station.LISTEN.value)),
            completed_stations=tuple(Station(s) for s in data.get("completed_stations", [])),
            detected_segment=_enum_or_none(Segment, data.get("detected_segment")),
            segment_confidence=int(data.get("segment_confidence", 0)),
            segment_signals=tuple(data.get("segment_signals", [])),
            confirmed_segment=_enum_or_none(Segment, data.get("confirmed_segment")),
            captured_info=CapturedInfo.from_partial(data.get("captured_info", {})),
            is_qualified=data.get("is_qualified"),
            qualification_reasons=tuple(data.get("qualification_reasons", [])),
            recommended_destination=_enum_or_none(Destination, data.get("recommended_destination")),
            selected_destination=_enum_or_none(Destination, data.get("selected_destination")),
            fast_tracked=bool(data.get("fast_tracked", False)),
            journey_path=tuple(data.get("journey_path", [])),
            current_journey_station=data.get("current_journey_station"),
            journey_flags=dict(data.get("journey_flags") or {}),
            created_at=float(data.get("created_at", 0.0)),
            updated_at=float(data.get("updated_at", 0.0)),
            station_entered_at=float(data.get("station_entered_at", 0.0)),
        )


def _value(member):
    return member.value if member is not None else None


def _enum_or_none(enum_cls, value):
    return enum_cls(value) if value is not None else None
