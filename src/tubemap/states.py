from enum import Enum
from typing import Optional

STATION_ORDER = ("LISTEN", "SEGMENT", "QUALIFY", "DESTINATION")
TERMINAL_STATIONS = {"DESTINATION"}


class Station(Enum):
    LISTEN = "LISTEN"
    SEGMENT = "SEGMENT"
    QUALIFY = "QUALIFY"
    DESTINATION = "DESTINATION"

    @property
    def order(self) -> int:
        return STATION_ORDER.index(self.value)

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_STATIONS

    @property
    def next(self) -> Optional["Station"]:
        """The station one step forward, or None at the terminal station."""
        if self.is_terminal:
            return None
        return Station(STATION_ORDER[self.order + 1])

    def precedes(self, other: "Station") -> bool:
        return self.order < other.order


class Segment(Enum):
    LANDLORD = "LANDLORD"
    BUSY_PRO = "BUSY_PRO"
    PROP_MGR = "PROP_MGR"
    OAP = "OAP"
    SMALL_BIZ = "SMALL_BIZ"
    EMERGENCY = "EMERGENCY"
    BUDGET = "BUDGET"


class Destination(Enum):
    EMERGENCY_DISPATCH = "EMERGENCY_DISPATCH"
    INSTANT_QUOTE = "INSTANT_QUOTE"
    VIDEO_QUOTE = "VIDEO_QUOTE"
    SITE_VISIT = "SITE_VISIT"
    CALLBACK = "CALLBACK"
    EXIT = "EXIT"
    NO_ACTION = "NO_ACTION"

    @property
    def ends_engagement(self) -> bool:
        return self in (Destination.EXIT, Destination.NO_ACTION)
