from datetime import datetime

import pytest

from services.alarm_triage.audit_store import AuditLogStore
from services.alarm_triage.detector import OccurrenceChange
from services.alarm_triage.lineage import LineageKey, group_lineages
from services.alarm_triage.triage import (
    Rule, StatusReason, TriageStateMachine, TriageStatus,
    derive_status, promote_on_comment, reset_comment,
)

from factories import make_occurrence

KEY = LineageKey("A", "Site1", "PointX")
AT = datetime(2026, 10, 17, 12, 0, 0)


# --- pure rules ---

@pytest.mark.parametrize("stored", [None, *TriageStatus])
@pytest.mark.parametrize("new_occurrence", [False, True])
def test_acknowledged_or_discarded_always_completed(stored, new_occurrence):
    for flags in ({"acknowledged": True}, {"discarded": True}):
        rep = make_occurrence("1", **flags)
        decision = derive_status(rep, new_occurrence, stored)
        assert decision.status is TriageStatus.COMPLETED
        assert decision.rule is Rule.UPSTREAM_OVERRIDE


@pytest.mark.parametrize("stored", [None, *TriageStatus])
def test_new_occurrence_resets_to_not_handled(stored):
    decision = derive_status(make_occurrence("1"), True, stored)
    assert decision.status is TriageStatus.NOT_HANDLED
    assert decision.rule is Rule.NEW_OCCURRENCE_RESET


def test_stored_status_otherwise():
    rep = make_occurrence("1")
    assert derive_status(rep, False, TriageStatus.OPPORTUNITY).status is TriageStatus.OPPORTUNITY
    assert derive_status(rep, False, None).status is TriageStatus.NOT_HANDLED


@pytest.mark.parametrize(
    "current,expected",
    [
        (None, TriageStatus.HANDLED),
        (TriageStatus.NOT_HANDLED, TriageStatus.HANDLED),
        (TriageStatus.HANDLED, TriageStatus.HANDLED),
        (TriageStatus.OPPORTUNITY, TriageStatus.HANDLED),
        (TriageStatus.COMPLETED, TriageStatus.COMPLETED),
    ],
)
def test_promote_on_comment(current, expected):
    assert promote_on_comment(current) is expected


def test_reset_comment_text():
    text = reset_comment(OccurrenceChange(KEY, 2, 3))
    assert text == (
        "New occurrence detected (3 occurrences, previously 2). "
        "Status automatically reset to Not handled."
    )


# --- state machine over the store ---

async def test_reset_persists_status_comment_and_entry(session_factory):
    store = AuditLogStore(session_factory)
    await store.set_status(KEY, TriageStatus.HANDLED, at=AT)
    machine = TriageStateMachine(store)
    lineages = group_lineages([make_occurrence("1"), make_occurrence("2", minutes=1)])

    statuses, transitions = await machine.apply_cycle(
        lineages, {KEY: OccurrenceChange(KEY, 1, 2)}, AT,
    )

    assert statuses == {KEY: TriageStatus.NOT_HANDLED}
    assert [(t.previous, t.status, t.rule) for t in transitions] == [
        (TriageStatus.HANDLED, TriageStatus.NOT_HANDLED, Rule.NEW_OCCURRENCE_RESET),
    ]
    assert await store.get_status(KEY) is TriageStatus.NOT_HANDLED
    comments = await store.list_comments(KEY)
    changes = await store.list_status_changes(KEY)
    assert [c.text for c in comments] == [reset_comment(OccurrenceChange(KEY, 1, 2))]
    assert [(c.status, c.reason) for c in changes] == [
        (TriageStatus.NOT_HANDLED, StatusReason.AUTO_NEW_OCCURRENCE),
    ]


async def test_acknowledged_wins_over_new_occurrence(session_factory):
    store = AuditLogStore(session_factory)
    machine = TriageStateMachine(store)
    lineages = group_lineages([
        make_occurrence("1"),
        make_occurrence("2", minutes=1, acknowledged=True),
    ])

    statuses, _ = await machine.apply_cycle(lineages, {KEY: OccurrenceChange(KEY, 1, 2)}, AT)

    assert statuses[KEY] is TriageStatus.COMPLETED
    assert await store.get_status(KEY) is TriageStatus.COMPLETED
    assert await store.list_comments(KEY) == []
    assert await store.list_status_changes(KEY) == []


async def test_upstream_override_written_once(session_factory):
    store = AuditLogStore(session_factory)
    machine = TriageStateMachine(store)
    lineages = group_lineages([make_occurrence("1", discarded=True)])

    _, first = await machine.apply_cycle(lineages, {}, AT)
    _, second = await machine.apply_cycle(lineages, {}, AT)

    assert len(first) == 1 and first[0].rule is Rule.UPSTREAM_OVERRIDE
    assert second == []


async def test_stored_status_is_kept_without_writes(session_factory):
    store = AuditLogStore(session_factory)
    await store.set_status(KEY, TriageStatus.OPPORTUNITY, at=AT)
    machine = TriageStateMachine(store)

    statuses, transitions = await machine.apply_cycle(
        group_lineages([make_occurrence("1")]), {}, AT,
    )

    assert statuses[KEY] is TriageStatus.OPPORTUNITY
    assert transitions == []


async def test_unknown_lineage_defaults_to_not_handled(session_factory):
    machine = TriageStateMachine(AuditLogStore(session_factory))
    statuses, _ = await machine.apply_cycle(group_lineages([make_occurrence("1")]), {}, AT)
    assert statuses[KEY] is TriageStatus.NOT_HANDLED
