from dataclasses import dataclass

from tubemap.journeys import get_journey_station
from tubemap.segments import get_segment_config
from tubemap.session import CallSession
from tubemap.states import Destination, Station


@dataclass(frozen=True)
class StationPrompt:
    instruction: str
    prompt: str = ""
    watch_for: tuple[str, ...] = ()
    tips: tuple[str, ...] = ()


@dataclass(frozen=True)
class DestinationPrompt:
    name: str
    prompt: str
    description: str


STATION_PROMPTS = {
    Station.LISTEN: StationPrompt(
        instruction="Listen to the job, capture basics",
        tips=(
            "Let them finish explaining the job",
            "Note the postcode early if mentioned",
            "Listen for segment clues (landlord, business, urgent)",
        ),
    ),
    Station.SEGMENT: StationPrompt(
        instruction="Confirm segment, one click",
        prompt="Is this a rental you own?",
        tips=(
            "If unsure, ask one clarifying question",
            "You can adjust the segment later",
            "Watch for hidden signals (managing agent = PROP_MGR)",
        ),
    ),
    Station.QUALIFY: StationPrompt(
        instruction="Confirm decision-maker and fit",
        prompt="And you're the owner yourself?",
        watch_for=(
            "need to check with landlord = not decision maker",
            "need to check with partner = may need callback",
            "just getting prices = BUDGET signal",
        ),
        tips=(
            "Decision-maker question is crucial",
            "A polite exit is fine for BUDGET callers",
            "Remote landlords love the photo proof promise",
        ),
    ),
    Station.DESTINATION: StationPrompt(
        instruction="Push to the right outcome",
        prompt="I'll send you a quote now. What's your name and best email?",
        tips=(
            "State the action, don't ask permission",
            "Always get name and contact before ending",
            "Recap the job to confirm understanding",
        ),
    ),
}

DESTINATION_PROMPTS = {
    Destination.EMERGENCY_DISPATCH: DestinationPrompt(
        name="Emergency Dispatch",
        prompt="I'm getting someone to you right now. What's the address?",
        description="Immediate dispatch for emergencies",
    ),
    Destination.INSTANT_QUOTE: DestinationPrompt(
        name="Instant Quote",
        prompt="I'll send you a quote right now. What's the best email for that?",
        description="Send quote link immediately via WhatsApp/SMS",
    ),
    Destination.VIDEO_QUOTE: DestinationPrompt(
        name="Video Quote",
        prompt="Could you send us a quick video of the job? It helps us give you an accurate quote.",
        description="Request a video to assess the job remotely",
    ),
    Destination.SITE_VISIT: DestinationPrompt(
        name="Site Visit",
        prompt="I think the best thing is for one of our team to pop round and take a look. When works for you?",
        description="Book a site visit for complex or trust-sensitive jobs",
    ),
    Destination.CALLBACK: DestinationPrompt(
        name="Callback",
        prompt="Let me get one of the team to call you back once you've had a chance to check. What's the best number?",
        description="Schedule a callback when the caller cannot commit yet",
    ),
    Destination.EXIT: DestinationPrompt(
        name="Polite Exit",
        prompt="I appreciate the call, but I don't think we're the right fit for what you're looking for.",
        description="Graceful exit for budget shoppers or poor fit",
    ),
    Destination.NO_ACTION: DestinationPrompt(
        name="No Action",
        prompt="Thanks for calling. Is there anything else I can help with?",
        description="Nothing to route",
    ),
}


def get_station_prompt(session: CallSession) -> dict:
    """Coaching card for the agent at the session's current station."""
    station_prompt = STATION_PROMPTS[session.current_station]
    card = {
        "station": session.current_station.value,
        "instruction": station_prompt.instruction,
        "prompt": station_prompt.prompt,
        "watch_for": list(station_prompt.watch_for),
        "tips": list(station_prompt.tips),
        "context": _build_context(session),
    }
    if session.segment is not None:
        card["segment_hint"] = get_segment_config(session.segment).one_liner
    if session.confirmed_segment is not None:
        journey_station = get_journey_station(session.confirmed_segment, session.current_journey_station)
        if journey_station is not None:
            card["journey"] = journey_station.to_dict()
    destination = session.final_destination
    if session.current_station.is_terminal and destination is not None:
        # Destination script replaces the generic closing line
        card["prompt"] = DESTINATION_PROMPTS[destination].prompt
    return card


def _build_context(session: CallSession) -> list[str]:
    info = session.captured_info
    parts = []
    if info.name:
        parts.append(f"Caller's name: {info.name}")
    if info.job:
        parts.append(f"Job: {info.job}")
    if info.postcode:
        parts.append(f"Postcode: {info.postcode}")
    if info.is_remote:
        parts.append("Caller is not at the property")
    if info.has_tenant:
        parts.append("Property is tenanted, coordinate access")
    if info.is_decision_maker is False:
        parts.append("Caller is NOT the decision maker")
    if session.segment is not None:
        config = get_segment_config(session.segment)
        label = "confirmed" if session.confirmed_segment else f"{session.segment_confidence}% detected"
        parts.append(f"Segment: {config.name} ({label})")
    return parts
