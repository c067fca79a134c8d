import pytest

from tubemap.session_manager import SessionManager
from tubemap.state_machine import CallScriptStateMachine
from tubemap.transcript import TranscriptEntry

GREETING = "Hey, Handy Services, how can I help?"


def _entries(*lines):
    return [TranscriptEntry(speaker, text, float(i * 5)) for i, (speaker, text) in enumerate(lines)]


LANDLORD_CALL = _entries(
    ("agent", GREETING),
    ("caller", "Hi yeah, I've got a rental property in Brixton, the boiler's not working. "
               "My tenant called me about it this morning."),
    ("agent", "No problem, boiler issues are never fun. So this is a rental you own?"),
    ("caller", "Yeah, buy to let. I'm up in Manchester so can't be there myself."),
    ("agent", "And you're the owner yourself?"),
    ("caller", "Yes, it's my property."),
)

BUSY_PRO_CALL = _entries(
    ("agent", GREETING),
    ("caller", "Hi, I need someone to fix a leaking tap. I'm at work all day so won't be home."),
    ("agent", "No problem. Do you have a key safe or someone who can let us in?"),
    ("caller", "Yeah I've got a key safe, I can give you the code."),
    ("agent", "Perfect. What's the postcode there?"),
    ("caller", "SW11 2AB"),
)

EMERGENCY_CALL = _entries(
    ("agent", GREETING),
    ("caller", "Help! There's water coming through my ceiling! I think a pipe has burst."),
    ("agent", "Okay, stay calm. Can you turn off the stopcock?"),
    ("caller", "I don't know where it is. Can someone come today?"),
    ("agent", "Yes, what's the address?"),
    ("caller", "42 High Street, SW4 7AB"),
)

BUDGET_CALL = _entries(
    ("agent", GREETING),
    ("caller", "Hi, how much do you charge per hour?"),
    ("agent", "We quote per job rather than hourly. What needs doing?"),
    ("caller", "I've had another quote already, can you beat that?"),
    ("agent", "What's the job?"),
    ("caller", "I just want the cheapest option to fix a dripping tap."),
)


@pytest.fixture
def machine():
    return CallScriptStateMachine("call_1", phone="+447700900123")


@pytest.fixture
def manager():
    return SessionManager(shards=4)


@pytest.fixture
def landlord_call():
    return LANDLORD_CALL


@pytest.fixture
def busy_pro_call():
    return BUSY_PRO_CALL


@pytest.fixture
def emergency_call():
    return EMERGENCY_CALL


@pytest.fixture
def budget_call():
    return BUDGET_CALL


class FakeClock:
    """Manually advanced clock for TTL and timing tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
