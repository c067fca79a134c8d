import pytest

from tubemap.journeys import (
    SEGMENT_JOURNEYS,
    JourneyContext,
    JourneyOption,
    JourneyStationType,
    OptionCondition,
    get_journey_entry_station,
    get_journey_station,
    get_next_station,
    get_segment_journey,
    is_option_available,
)
from tubemap.session import CapturedInfo
from tubemap.states import Destination, Segment


class TestJourneyTable:
    def test_every_segment_has_a_journey(self):
        assert set(SEGMENT_JOURNEYS) == set(Segment)

    @pytest.mark.parametrize("segment", list(Segment))
    def test_links_point_at_real_stations(self, segment):
        journey = get_segment_journey(segment)
        assert journey.entry_station in journey.stations
        for station_id, station in journey.stations.items():
            assert station.id == station_id
            assert station.prompt
            targets = [station.next_station] + [o.next_station for o in station.options]
            for target in targets:
                assert target is None or target in journey.stations

    @pytest.mark.parametrize("segment", list(Segment))
    def test_every_station_reachable(self, segment):
        journey = get_segment_journey(segment)
        seen, queue = set(), [journey.entry_station]
        while queue:
            station = journey.stations[queue.pop()]
            if station.id in seen:
                continue
            seen.add(station.id)
            queue.extend(t for t in [station.next_station, *(o.next_station for o in station.options)] if t)
        assert seen == set(journey.stations)

    @pytest.mark.parametrize("segment", list(Segment))
    def test_choices_have_options(self, segment):
        for station in get_segment_journey(segment).stations.values():
            if station.type.needs_option:
                assert station.options
            else:
                assert not station.options

    def test_option_captures_are_captured_info_fields(self):
        fields = set(CapturedInfo().to_dict())
        for journey in SEGMENT_JOURNEYS.values():
            for station in journey.stations.values():
                for option in station.options:
                    assert set(option.captures) <= fields

    def test_entry_stations(self):
        assert get_journey_entry_station(Segment.EMERGENCY).id == "TYPE"
        assert get_journey_entry_station(Segment.LANDLORD).prompt.startswith("You don't need to be there")
        assert get_journey_entry_station(Segment.BUDGET).type is JourneyStationType.CHOICE

    def test_final_destinations(self):
        assert get_segment_journey(Segment.BUDGET).final_destinations[0] is Destination.EXIT
        assert get_segment_journey(Segment.OAP).final_destinations[0] is Destination.SITE_VISIT
        assert Destination.EMERGENCY_DISPATCH in get_segment_journey(Segment.EMERGENCY).final_destinations


class TestNavigation:
    def test_prompt_follows_next_station(self):
        assert get_next_station(Segment.LANDLORD, "REASSURE").id == "MEDIA_METHOD"

    def test_choice_follows_option(self):
        assert get_next_station(Segment.BUDGET, "VALUE_CHECK", "cheapest").id == "EXIT_RAMP"
        assert get_next_station(Segment.BUDGET, "VALUE_CHECK", "value").id == "QUOTE_FORK"

    def test_choice_without_option_goes_nowhere(self):
        assert get_next_station(Segment.BUDGET, "VALUE_CHECK") is None
        assert get_next_station(Segment.BUDGET, "VALUE_CHECK", "free") is None

    def test_end_of_journey(self):
        assert get_next_station(Segment.EMERGENCY, "DISPATCH") is None
        assert get_next_station(Segment.OAP, "COMFORT", "free_visit") is None
        assert get_next_station(Segment.BUSY_PRO, "QUOTE_FORK", "video") is None

    def test_unknown_station(self):
        assert get_journey_station(Segment.LANDLORD, "NOWHERE") is None
        assert get_journey_station(Segment.LANDLORD, None) is None
        assert get_next_station(Segment.LANDLORD, "NOWHERE") is None


class TestOptionConditions:
    @pytest.mark.parametrize("condition,context", [
        (OptionCondition.SKU_MATCH, JourneyContext(has_sku_match=True)),
        (OptionCondition.HAS_VIDEO, JourneyContext(has_video=True)),
        (OptionCondition.EMERGENCY_TYPE, JourneyContext(is_emergency=True)),
    ])
    def test_condition_needs_its_context(self, condition, context):
        option = JourneyOption("x", "X", condition=condition)
        assert is_option_available(option, context)
        assert not is_option_available(option, JourneyContext())

    def test_always_available(self):
        assert is_option_available(JourneyOption("x", "X"), JourneyContext())

    def test_quote_fork_instant_needs_sku(self):
        fork = get_journey_station(Segment.LANDLORD, "QUOTE_FORK")
        instant = fork.get_option("instant")
        assert instant.condition is OptionCondition.SKU_MATCH
        assert instant.destination is Destination.INSTANT_QUOTE
        assert fork.get_option("video").destination is Destination.VIDEO_QUOTE
