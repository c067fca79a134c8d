"""Static segment configuration.

Each segment carries its weighted signal categories (what Tier-1 looks for),
its disqualifying phrases, and its routing data: default destination,
optional qualified/unqualified overrides, and fast-track eligibility.
Qualification branching lives here as data so the state machine never
special-cases a segment by name.
"""

from dataclasses import dataclass
from typing import Optional

from tubemap.states import Destination, Segment


@dataclass(frozen=True)
class SignalCategory:
    """A group of phrases that count as one signal, however many match."""

    name: str
    phrases: tuple[str, ...]
    weight: float = 1.0


@dataclass(frozen=True)
class SegmentConfig:
    segment: Segment
    name: str
    description: str
    one_liner: str
    signals: tuple[SignalCategory, ...]
    disqualifiers: tuple[str, ...]
    default_destination: Destination
    qualified_destination: Optional[Destination] = None
    unqualified_destination: Optional[Destination] = None
    fast_track: bool = False
    fast_track_destination: Optional[Destination] = None

    def destination_for(self, is_qualified: Optional[bool]) -> Destination:
        """Destination after QUALIFY. Undecided qualification uses the default."""
        if is_qualified is True and self.qualified_destination is not None:
            return self.qualified_destination
        if is_qualified is False and self.unqualified_destination is not None:
            return self.unqualified_destination
        return self.default_destination


# Signals the classifier needs before it reaches full confidence.
SIGNALS_FOR_FULL_CONFIDENCE = 3

# Ties in Tier-1 score resolve towards the segment that is costlier to miss.
SEGMENT_PRIORITY = (
    Segment.EMERGENCY,
    Segment.LANDLORD,
    Segment.BUDGET,
    Segment.PROP_MGR,
    Segment.SMALL_BIZ,
    Segment.OAP,
    Segment.BUSY_PRO,
)


SEGMENT_CONFIGS: dict[Segment, SegmentConfig] = {
    Segment.EMERGENCY: SegmentConfig(
        segment=Segment.EMERGENCY,
        name="Emergency",
        description="Urgent issue (flooding, no heating, locked out, sparks) - needs immediate help",
        one_liner="Stay calm, get the address, and confirm someone is on the way.",
        signals=(
            SignalCategory("water_ingress", (
                "flooding", "flooded", "water everywhere", "water coming through",
                "water pouring", "pouring through",
            )),
            SignalCategory("burst", ("burst", "bursted", "pipe has gone", "pipe's gone")),
            SignalCategory("loss_of_service", (
                "no heating", "no hot water", "boiler broken", "boiler's broken",
                "no power", "no electric", "locked out", "sparks", "sparking",
            )),
            SignalCategory("urgency", (
                "urgent", "emergency", "asap", "right now", "immediately",
                "straight away", "come today", "today",
            )),
            SignalCategory("leak", ("leak", "leaking", "dripping"), weight=0.5),
        ),
        disqualifiers=("no rush", "whenever you can", "been like this for weeks"),
        default_destination=Destination.EMERGENCY_DISPATCH,
        fast_track=True,
        fast_track_destination=Destination.EMERGENCY_DISPATCH,
    ),
    Segment.LANDLORD: SegmentConfig(
        segment=Segment.LANDLORD,
        name="Landlord",
        description="Owns rental property, may have tenants, often remote from property",
        one_liner="Offer photo proof and tenant coordination so they never need to attend.",
        signals=(
            SignalCategory("rental", (
                "rental", "buy to let", "buy-to-let", "investment property",
                "renting out", "property i own", "let it out",
            )),
            SignalCategory("tenant", ("tenant",)),
            SignalCategory("landlord", ("landlord",)),
            SignalCategory("absent_owner", (
                "not local", "can't be there", "cannot be there", "i'm up in",
                "don't live there", "live elsewhere", "not on site",
            )),
        ),
        disqualifiers=("i live there", "i'm the tenant", "it's my home", "i'm renting"),
        default_destination=Destination.INSTANT_QUOTE,
        unqualified_destination=Destination.CALLBACK,
    ),
    Segment.BUDGET: SegmentConfig(
        segment=Segment.BUDGET,
        name="Budget Conscious",
        description="Price-focused, asking about hourly rates, wants cheapest option",
        one_liner="Anchor on value and a fixed price, never on an hourly rate.",
        signals=(
            SignalCategory("rate_shopping", (
                "per hour", "hourly rate", "day rate", "how much do you charge",
                "how much you charge",
            )),
            SignalCategory("cheapest", ("cheapest", "cheaper", "cheap", "budget")),
            SignalCategory("comparing", (
                "beat this price", "beat that", "other quotes", "another quote",
                "quote shopping", "too expensive", "price match",
            )),
        ),
        disqualifiers=("done properly", "quality work", "price doesn't matter"),
        default_destination=Destination.EXIT,
        qualified_destination=Destination.INSTANT_QUOTE,
        unqualified_destination=Destination.EXIT,
    ),
    Segment.PROP_MGR: SegmentConfig(
        segment=Segment.PROP_MGR,
        name="Property Manager",
        description="Property manager/agency, manages multiple properties, wants account/SLA",
        one_liner="Talk accounts, response times and invoicing, not one-off jobs.",
        signals=(
            SignalCategory("portfolio", (
                "portfolio", "multiple units", "multiple properties",
                "several properties", "properties we manage", "manage properties",
            )),
            SignalCategory("agency", (
                "letting agent", "letting agency", "estate agent", "managing agent",
                "property management", "block management", "agency",
            )),
            SignalCategory("procurement", (
                "purchase order", "work order", "preferred contractor",
                "regular contractor", "account with",
            )),
        ),
        disqualifiers=("just one property", "my own place", "i'm the owner myself"),
        default_destination=Destination.INSTANT_QUOTE,
        unqualified_destination=Destination.CALLBACK,
    ),
    Segment.SMALL_BIZ: SegmentConfig(
        segment=Segment.SMALL_BIZ,
        name="Small Business",
        description="Business owner (shop, restaurant, cafe), needs after-hours, minimal disruption",
        one_liner="Promise work around trading hours with zero disruption.",
        signals=(
            SignalCategory("premises", (
                "shop", "restaurant", "salon", "cafe", "clinic", "surgery",
                "premises", "our office",
            )),
            SignalCategory("business", ("my business", "our business", "customers", "staff")),
            SignalCategory("trading_hours", (
                "after hours", "before we open", "close up", "opening hours",
                "out of hours", "trading hours",
            )),
        ),
        disqualifiers=("home office", "residential", "my house"),
        default_destination=Destination.INSTANT_QUOTE,
        unqualified_destination=Destination.CALLBACK,
    ),
    Segment.OAP: SegmentConfig(
        segment=Segment.OAP,
        name="Trust Seeker",
        description="Elderly/trust-seeker, values safety and trust, may live alone, wants to meet first",
        one_liner="Slow down, reassure on vetting, and offer a visit before any work.",
        signals=(
            SignalCategory("alone", ("live alone", "on my own", "husband passed", "wife passed", "widow")),
            SignalCategory("age", ("elderly", "retired", "pension", "at my age")),
            SignalCategory("trust", ("dbs", "trustworthy", "vetted", "careful who i let in")),
            SignalCategory("family", ("daughter helps", "son helps", "my daughter", "my grandson")),
        ),
        disqualifiers=("i'll do it myself", "i'm quite capable", "just need a quick job"),
        default_destination=Destination.SITE_VISIT,
        unqualified_destination=Destination.CALLBACK,
    ),
    Segment.BUSY_PRO: SegmentConfig(
        segment=Segment.BUSY_PRO,
        name="Busy Professional",
        description="Working professional, time-poor, needs flexibility, has key safe",
        one_liner="Lead with convenience: key safe access and a fixed arrival window.",
        signals=(
            SignalCategory("at_work", ("at work", "in the office", "working all day", "meetings")),
            SignalCategory("unavailable", ("won't be home", "won't be in", "out all day", "not home during")),
            SignalCategory("access", ("key safe", "key box", "leave a key", "neighbour has a key")),
            SignalCategory("scheduling", ("after work", "before work", "lunch break", "call me back", "text me")),
        ),
        disqualifiers=("i work from home", "i'm retired", "i'm always available"),
        default_destination=Destination.INSTANT_QUOTE,
        unqualified_destination=Destination.CALLBACK,
    ),
}


def get_segment_config(segment: Segment) -> SegmentConfig:
    return SEGMENT_CONFIGS[segment]


def is_fast_track_eligible(segment: Optional[Segment]) -> bool:
    return segment is not None and SEGMENT_CONFIGS[segment].fast_track


def fast_track_segments() -> list[Segment]:
    return [s for s in SEGMENT_PRIORITY if SEGMENT_CONFIGS[s].fast_track]


def priority_rank(segment: Segment) -> int:
    return SEGMENT_PRIORITY.index(segment)
