import pytest

from services.alarm_triage.detector import OccurrenceChangeDetector, is_new_occurrence
from services.alarm_triage.lineage import LineageKey, group_lineages

from factories import make_occurrence

KEY = LineageKey("A", "Site1", "PointX")


def _lineages(count: int, point: str = "PointX"):
    return group_lineages([make_occurrence(f"{point}-{i}", point=point, minutes=i) for i in range(count)])


def _cycle(detector: OccurrenceChangeDetector, lineages):
    changes = detector.detect(lineages)
    detector.commit(lineages)
    return changes


@pytest.mark.parametrize(
    "previous,current,expected",
    [
        (1, 2, True),
        (3, 7, True),
        (2, 2, False),
        (3, 1, False),
        (0, 1, False),
        (0, 0, False),
    ],
)
def test_is_new_occurrence(previous, current, expected):
    assert is_new_occurrence(previous, current) is expected


def test_first_sighting_is_not_a_new_occurrence():
    detector = OccurrenceChangeDetector()
    assert _cycle(detector, _lineages(3)) == {}
    assert detector.previous_counts == {KEY: 3}


def test_growth_is_flagged_with_counts():
    detector = OccurrenceChangeDetector()
    _cycle(detector, _lineages(1))

    changes = _cycle(detector, _lineages(2))

    assert list(changes) == [KEY]
    assert (changes[KEY].previous, changes[KEY].current) == (1, 2)


def test_detect_does_not_touch_counts_until_commit():
    detector = OccurrenceChangeDetector()
    _cycle(detector, _lineages(1))

    assert list(detector.detect(_lineages(2))) == [KEY]
    assert detector.previous_counts == {KEY: 1}
    # uncommitted cycle: the same growth is flagged again
    assert list(detector.detect(_lineages(2))) == [KEY]


def test_shrink_or_equal_is_not_flagged():
    detector = OccurrenceChangeDetector()
    _cycle(detector, _lineages(3))
    assert _cycle(detector, _lineages(3)) == {}
    assert _cycle(detector, _lineages(2)) == {}


def test_counts_map_is_replaced_wholesale():
    detector = OccurrenceChangeDetector()
    _cycle(detector, _lineages(2) + _lineages(1, point="Gone"))

    _cycle(detector, _lineages(2))

    assert detector.previous_counts == {KEY: 2}


def test_vanished_lineage_coming_back_is_a_first_sighting():
    detector = OccurrenceChangeDetector()
    _cycle(detector, _lineages(1))
    _cycle(detector, [])

    assert _cycle(detector, _lineages(5)) == {}


def test_reset_forgets_counts():
    detector = OccurrenceChangeDetector()
    _cycle(detector, _lineages(1))
    detector.reset()

    assert _cycle(detector, _lineages(2)) == {}
