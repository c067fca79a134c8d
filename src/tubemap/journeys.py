"""Per-segment journey trees.

Once the agent confirms a segment, the call follows a small tree of
sub-stations written around that segment's primary fear: a landlord hears
that they don't need to attend, a budget caller is asked whether they want
the cheapest job or the best value. Stations are prompts, choices, info
captures or the quote fork; choosing an option may set journey flags and
either moves to another station or ends the journey at a destination.

The trees are data. CallScriptStateMachine walks them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from tubemap.states import Destination, Segment


class JourneyStationType(Enum):
    PROMPT = "prompt"
    CHOICE = "choice"
    INFO_CAPTURE = "info_capture"
    DESTINATION = "destination"

    @property
    def needs_option(self) -> bool:
        return self in (JourneyStationType.CHOICE, JourneyStationType.DESTINATION)


class OptionCondition(Enum):
    ALWAYS = "always"
    SKU_MATCH = "sku_match"
    HAS_VIDEO = "has_video"
    EMERGENCY_TYPE = "emergency_type"


@dataclass(frozen=True)
class JourneyOption:
    id: str
    label: str
    # None ends the journey
    next_station: Optional[str] = None
    condition: OptionCondition = OptionCondition.ALWAYS
    flags: Mapping[str, Any] = field(default_factory=dict)
    # CapturedInfo fields the choice settles
    captures: Mapping[str, Any] = field(default_factory=dict)
    destination: Optional[Destination] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "next_station": self.next_station,
            "condition": self.condition.value,
            "destination": self.destination.value if self.destination else None,
        }


@dataclass(frozen=True)
class JourneyStation:
    id: str
    type: JourneyStationType
    label: str
    prompt: str
    description: str = ""
    next_station: Optional[str] = None
    options: tuple[JourneyOption, ...] = ()
    capture_fields: tuple[str, ...] = ()
    # Where the journey lands when it ends on this station
    destination: Optional[Destination] = None

    def get_option(self, option_id: str) -> Optional[JourneyOption]:
        for option in self.options:
            if option.id == option_id:
                return option
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "label": self.label,
            "prompt": self.prompt,
            "description": self.description,
            "next_station": self.next_station,
            "options": [o.to_dict() for o in self.options],
            "capture_fields": list(self.capture_fields),
        }


@dataclass(frozen=True)
class SegmentJourney:
    segment: Segment
    name: str
    primary_fear: str
    entry_station: str
    stations: Mapping[str, JourneyStation]
    optimizations: tuple[str, ...]
    final_destinations: tuple[Destination, ...]


@dataclass(frozen=True)
class JourneyContext:
    """What the agent knows that decides which options are offered."""

    has_sku_match: bool = False
    has_video: bool = False
    is_emergency: bool = False


def _quote_fork(prompt: str, description: str = "Route to the right quote method") -> JourneyStation:
    return JourneyStation(
        id="QUOTE_FORK",
        type=JourneyStationType.DESTINATION,
        label="Quote Options",
        prompt=prompt,
        description=description,
        options=(
            JourneyOption("instant", "Instant Quote", condition=OptionCondition.SKU_MATCH,
                          destination=Destination.INSTANT_QUOTE),
            JourneyOption("video", "Video Quote", destination=Destination.VIDEO_QUOTE),
            JourneyOption("visit", "Site Visit", destination=Destination.SITE_VISIT),
        ),
    )


def _stations(*stations: JourneyStation) -> dict[str, JourneyStation]:
    return {s.id: s for s in stations}


STANDARD_QUOTE_DESTINATIONS = (
    Destination.INSTANT_QUOTE,
    Destination.VIDEO_QUOTE,
    Destination.SITE_VISIT,
)


SEGMENT_JOURNEYS: dict[Segment, SegmentJourney] = {
    Segment.EMERGENCY: SegmentJourney(
        segment=Segment.EMERGENCY,
        name="Emergency",
        primary_fear="Will you come NOW?",
        entry_station="TYPE",
        stations=_stations(
            JourneyStation(
                id="TYPE",
                type=JourneyStationType.CHOICE,
                label="Emergency Type",
                prompt="Is this water, gas, heating, or lockout?",
                description="Identify the type of emergency to route correctly",
                options=tuple(
                    JourneyOption(kind, label, next_station="PACKAGES", flags={"emergency_type": kind})
                    for kind, label in (
                        ("water", "Water/Flooding"),
                        ("gas", "Gas Issue"),
                        ("heating", "No Heating"),
                        ("lockout", "Lockout"),
                    )
                ),
            ),
            JourneyStation(
                id="PACKAGES",
                type=JourneyStationType.PROMPT,
                label="Emergency Packages",
                prompt=(
                    "We can have someone there within 2 hours. Emergency callout is £89, "
                    "which includes the first hour. Do you want me to dispatch now?"
                ),
                description="Show emergency pricing and availability",
                next_station="DISPATCH",
            ),
            JourneyStation(
                id="DISPATCH",
                type=JourneyStationType.INFO_CAPTURE,
                label="Dispatch Details",
                prompt="Great, I'm dispatching now. What's the full address including postcode?",
                description="Capture address and confirm ETA",
                capture_fields=("address", "postcode", "contact"),
                destination=Destination.EMERGENCY_DISPATCH,
            ),
        ),
        optimizations=(
            "Fast track - get address NOW",
            "Skip qualification for genuine emergencies",
            "Confirm ETA immediately",
            "Don't ask unnecessary questions",
        ),
        final_destinations=(Destination.EMERGENCY_DISPATCH, Destination.SITE_VISIT),
    ),
    Segment.LANDLORD: SegmentJourney(
        segment=Segment.LANDLORD,
        name="Landlord",
        primary_fear="I can't be there",
        entry_station="REASSURE",
        stations=_stations(
            JourneyStation(
                id="REASSURE",
                type=JourneyStationType.PROMPT,
                label="Distance Pain Acknowledgment",
                prompt=(
                    "You don't need to be there. We handle everything - coordinate with your tenant, "
                    "send photos before and after, and invoice goes straight to your email."
                ),
                description="Acknowledge the distance challenge and reassure",
                next_station="MEDIA_METHOD",
            ),
            JourneyStation(
                id="MEDIA_METHOD",
                type=JourneyStationType.CHOICE,
                label="Media Method",
                prompt="How would you like us to assess the job?",
                description="Let them choose how we see the job",
                options=(
                    JourneyOption("you_send", "You Send Media", next_station="QUOTE_FORK",
                                  flags={"media_method": "landlord_sends"}),
                    JourneyOption("tenant_sends", "Tenant Sends Media", next_station="QUOTE_FORK",
                                  flags={"media_method": "tenant_sends"}, captures={"has_tenant": True}),
                    JourneyOption("we_visit", "We Visit", next_station="QUOTE_FORK",
                                  flags={"media_method": "site_visit"}),
                ),
            ),
            _quote_fork("Perfect. Let me get you a quote."),
        ),
        optimizations=(
            "Mention photo proof early",
            "Offer tenant coordination",
            "Tax-ready invoice promise",
            "They don't need to be there",
        ),
        final_destinations=STANDARD_QUOTE_DESTINATIONS,
    ),
    Segment.BUSY_PRO: SegmentJourney(
        segment=Segment.BUSY_PRO,
        name="Busy Professional",
        primary_fear="Don't waste my time",
        entry_station="SPEED_PROMISE",
        stations=_stations(
            JourneyStation(
                id="SPEED_PROMISE",
                type=JourneyStationType.PROMPT,
                label="Time Respect",
                prompt="Let me make this quick - 60 seconds, quote in your inbox.",
                description="Acknowledge their time is valuable",
                next_station="QUOTE_FORK",
            ),
            _quote_fork("I'll get this to you right away."),
        ),
        optimizations=(
            "Keep it brief",
            "SMS updates promise",
            "Key safe option",
            "No unnecessary questions",
            "Quote in inbox fast",
        ),
        final_destinations=STANDARD_QUOTE_DESTINATIONS,
    ),
    Segment.PROP_MGR: SegmentJourney(
        segment=Segment.PROP_MGR,
        name="Property Manager",
        primary_fear="Will you be reliable?",
        entry_station="RECOGNITION",
        stations=_stations(
            JourneyStation(
                id="RECOGNITION",
                type=JourneyStationType.PROMPT,
                label="Portfolio Acknowledgment",
                prompt=(
                    "Managing multiple properties? We work with agencies like yours. Consistent pricing, "
                    "same-day invoices, and you get a dedicated contact."
                ),
                description="Acknowledge they manage multiple properties",
                next_station="QUOTE_FORK",
            ),
            # Partner programme is a post-job upsell, never offered here
            _quote_fork("Let me get you a quote for this job."),
        ),
        optimizations=(
            "Mention SLA",
            "Same-day invoicing",
            "Dedicated contact promise",
            "Partner Program is a post-job upsell (not during call)",
            "Photo reports for all jobs",
        ),
        final_destinations=STANDARD_QUOTE_DESTINATIONS,
    ),
    Segment.OAP: SegmentJourney(
        segment=Segment.OAP,
        name="Trust Seeker",
        primary_fear="Can I trust you?",
        entry_station="TRUST_BUILD",
        stations=_stations(
            JourneyStation(
                id="TRUST_BUILD",
                type=JourneyStationType.PROMPT,
                label="Trust Building",
                prompt="We're fully insured - £2M. All team DBS checked. We've been doing this for 10 years.",
                description="Lead with credentials and trust signals",
                next_station="COMFORT",
            ),
            JourneyStation(
                id="COMFORT",
                type=JourneyStationType.CHOICE,
                label="Comfort Options",
                prompt=(
                    "Would you like someone to pop round first? No charge, just to put a face "
                    "to the name and give you a proper quote."
                ),
                description="Offer free site visit to build trust",
                options=(
                    JourneyOption("free_visit", "Yes, Please Visit", flags={"prefers_free_visit": True},
                                  destination=Destination.SITE_VISIT),
                    JourneyOption("proceed", "No, Let's Proceed", next_station="QUOTE_FORK"),
                ),
            ),
            _quote_fork("Let me explain how we work. I'll send you all the details."),
        ),
        optimizations=(
            "Slow down - don't rush",
            "Lead with DBS and insurance",
            "Offer free visit proactively",
            "Be patient with questions",
            "Use reassuring tone",
        ),
        final_destinations=(Destination.SITE_VISIT, Destination.VIDEO_QUOTE, Destination.INSTANT_QUOTE),
    ),
    Segment.SMALL_BIZ: SegmentJourney(
        segment=Segment.SMALL_BIZ,
        name="Small Business",
        primary_fear="Don't disrupt my business",
        entry_station="ZERO_DISRUPTION",
        stations=_stations(
            JourneyStation(
                id="ZERO_DISRUPTION",
                type=JourneyStationType.PROMPT,
                label="Zero Disruption Promise",
                prompt="We can work around your customers - completely invisible. Nobody will even know we're there.",
                description="Promise no business disruption",
                next_station="TIMING",
            ),
            JourneyStation(
                id="TIMING",
                type=JourneyStationType.CHOICE,
                label="Timing Preference",
                prompt="Would you prefer us to come during opening hours or outside?",
                description="Let them choose when we work",
                options=(
                    JourneyOption("during_hours", "During Hours (Invisible)", next_station="QUOTE_FORK",
                                  flags={"preferred_timing": "during_hours"}),
                    JourneyOption("after_hours", "After Hours", next_station="QUOTE_FORK",
                                  flags={"preferred_timing": "after_hours"}),
                ),
            ),
            _quote_fork("Let me get you a quote that works with your schedule."),
        ),
        optimizations=(
            "Zero disruption promise",
            "After hours option",
            "Customer-invisible work",
            "Quick turnaround",
            "Understand business needs",
        ),
        final_destinations=STANDARD_QUOTE_DESTINATIONS,
    ),
    Segment.BUDGET: SegmentJourney(
        segment=Segment.BUDGET,
        name="Budget Shopper",
        primary_fear="Too expensive",
        entry_station="VALUE_CHECK",
        stations=_stations(
            JourneyStation(
                id="VALUE_CHECK",
                type=JourneyStationType.CHOICE,
                label="Value vs Cheapest",
                prompt="Looking for the cheapest option, or the best value?",
                description="Try to convert from price-only to value-seeking",
                options=(
                    JourneyOption("cheapest", "Cheapest", next_station="EXIT_RAMP",
                                  flags={"wants_cheapest": True}),
                    JourneyOption("value", "Best Value", next_station="QUOTE_FORK",
                                  flags={"wants_value": True, "converted": True}),
                ),
            ),
            JourneyStation(
                id="EXIT_RAMP",
                type=JourneyStationType.PROMPT,
                label="Polite Exit",
                prompt=(
                    "I appreciate the call. We're probably not the cheapest - we focus on quality and "
                    "warranty. TaskRabbit might be worth a look if price is the main factor."
                ),
                description="Graceful exit with alternative suggestion",
                destination=Destination.EXIT,
            ),
            _quote_fork(
                "Great - let me show you what we can do. Our quotes include everything - no surprises.",
                description="Quote fork for converted budget shoppers",
            ),
        ),
        optimizations=(
            "Try to convert from cheapest to value",
            "Polite exit if they insist on cheapest",
            "Mention warranty and quality",
            "Suggest alternatives gracefully",
            "No hard sell",
        ),
        final_destinations=(Destination.EXIT,) + STANDARD_QUOTE_DESTINATIONS,
    ),
}


def get_segment_journey(segment: Segment) -> SegmentJourney:
    return SEGMENT_JOURNEYS[segment]


def get_journey_entry_station(segment: Segment) -> JourneyStation:
    journey = SEGMENT_JOURNEYS[segment]
    return journey.stations[journey.entry_station]


def get_journey_station(segment: Segment, station_id: Optional[str]) -> Optional[JourneyStation]:
    if station_id is None:
        return None
    return SEGMENT_JOURNEYS[segment].stations.get(station_id)


def get_next_station(
    segment: Segment,
    station_id: str,
    option_id: Optional[str] = None,
) -> Optional[JourneyStation]:
    """Station reached from station_id, or None when the journey ends there.

    Prompt and info-capture stations follow their own next_station; choice
    and destination stations follow the chosen option's.
    """
    station = get_journey_station(segment, station_id)
    if station is None:
        return None
    if station.type.needs_option:
        option = station.get_option(option_id) if option_id else None
        next_id = option.next_station if option else None
    else:
        next_id = station.next_station
    return get_journey_station(segment, next_id)


def is_option_available(option: JourneyOption, context: JourneyContext) -> bool:
    if option.condition is OptionCondition.SKU_MATCH:
        return context.has_sku_match
    if option.condition is OptionCondition.HAS_VIDEO:
        return context.has_video
    if option.condition is OptionCondition.EMERGENCY_TYPE:
        return context.is_emergency
    return True
