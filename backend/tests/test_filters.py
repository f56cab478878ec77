from datetime import timedelta

import pytest

from services.alarm_triage import LineageView
from services.alarm_triage.filters import LineageFilter, lineage_stats, number_from_value, sort_lineages
from services.alarm_triage.lineage import group_lineages
from services.alarm_triage.triage import TriageStatus

from factories import BASE_TS, make_occurrence

NOW = BASE_TS + timedelta(hours=3)


def views():
    lineages = group_lineages([
        make_occurrence("1", site="Boiler-1", point="Temp", value="85 °C", priority=200, minutes=170),
        make_occurrence("2", site="Boiler-2", point="Pressure", value="2,5 bar", priority=50, acknowledged=True),
        make_occurrence("3", site="Pump-7", point="State", value="off", priority=10, discarded=True, minutes=90),
    ])
    statuses = {"Temp": TriageStatus.HANDLED, "Pressure": TriageStatus.COMPLETED, "State": TriageStatus.NOT_HANDLED}
    return [LineageView(ln, statuses[ln.key.point]) for ln in lineages]


def points(vs):
    return [v.key.point for v in vs]


def test_number_from_value():
    assert number_from_value("2,5 bar") == 2.5
    assert number_from_value("-3") == -3.0
    assert number_from_value("off") is None


@pytest.mark.parametrize(
    "flt,expected",
    [
        (LineageFilter(), {"Temp", "Pressure", "State"}),
        (LineageFilter(site="boiler"), {"Temp", "Pressure"}),
        (LineageFilter(value="BAR"), {"Pressure"}),
        (LineageFilter(priority_min=40, priority_max=100), {"Pressure"}),
        (LineageFilter(acknowledged=False), {"Temp", "State"}),
        (LineageFilter(discarded=True), {"State"}),
        (LineageFilter(status=TriageStatus.HANDLED), {"Temp"}),
        (LineageFilter(date_from=BASE_TS + timedelta(minutes=60)), {"Temp", "State"}),
        (LineageFilter(date_to=BASE_TS + timedelta(minutes=60)), {"Pressure"}),
    ],
)
def test_filter(flt, expected):
    assert set(points(filter(flt, views()))) == expected


def test_sort_by_date_and_age():
    assert points(sort_lineages(views(), "date_time", "desc", now=NOW)) == ["Temp", "State", "Pressure"]
    assert points(sort_lineages(views(), "age", "desc", now=NOW)) == ["Pressure", "State", "Temp"]


def test_sort_value_numbers_before_text():
    assert points(sort_lineages(views(), "value", "asc", now=NOW)) == ["Pressure", "Temp", "State"]


def test_unknown_sort_key():
    with pytest.raises(ValueError):
        sort_lineages(views(), "colour")


def test_stats():
    stats = lineage_stats(views(), now=NOW)

    assert stats["total"] == 3
    assert stats["acknowledged"] == 1
    assert stats["not_acknowledged"] == 2
    assert stats["discarded"] == 1
    assert stats["older_than_2h"] == 1
    assert stats["up_to_2h"] == 2
    assert stats["by_status"] == {"not_handled": 1, "handled": 1, "completed": 1, "opportunity": 0}
