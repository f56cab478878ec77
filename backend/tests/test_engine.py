import asyncio

from services.alarm_triage import AlarmTriageEngine, LineageKey, TriageStatus
from services.alarm_triage.config import REDIS_CHANNEL_CYCLES, REDIS_CHANNEL_TRIAGE
from services.alarm_triage.triage import StatusReason

from factories import Ticker, client_factory_for, no_network_factory, raw_alarm, source_fields

KEY = LineageKey("A", "Site1", "PointX")


async def _add(engine, *labels):
    return [await engine.registry.create(source_fields(label)) for label in labels]


async def test_second_occurrence_resets_status(triage_engine, fakes):
    await _add(triage_engine, "A")
    fakes["A"].items = [raw_alarm("1")]

    first = await triage_engine.trigger_manual_refresh()
    assert first.new_occurrences == []
    assert triage_engine.get_lineage(KEY).status is TriageStatus.NOT_HANDLED

    fakes["A"].items.append(raw_alarm("2", minutes=5))
    second = await triage_engine.trigger_manual_refresh()

    assert second.new_occurrences == [KEY]
    view = triage_engine.get_lineage(KEY)
    assert view.count == 2
    assert view.representative.native_id == "2"
    assert view.status is TriageStatus.NOT_HANDLED

    comments = await triage_engine.store.list_comments(KEY)
    changes = await triage_engine.store.list_status_changes(KEY)
    assert len(comments) == 1
    assert "2 occurrences, previously 1" in comments[0].text
    assert [(c.status, c.reason) for c in changes] == [
        (TriageStatus.NOT_HANDLED, StatusReason.AUTO_NEW_OCCURRENCE),
    ]


async def test_handled_lineage_is_reset_when_it_fires_again(triage_engine, fakes):
    await _add(triage_engine, "A")
    fakes["A"].items = [raw_alarm("1")]
    await triage_engine.trigger_manual_refresh()
    await triage_engine.set_status(KEY, TriageStatus.HANDLED)

    fakes["A"].items.append(raw_alarm("2", minutes=5))
    await triage_engine.trigger_manual_refresh()

    assert triage_engine.get_lineage(KEY).status is TriageStatus.NOT_HANDLED
    history = await triage_engine.get_history(KEY)
    assert [e.kind for e in history] == ["status", "comment", "status"]
    assert history[0].text == "Status changed to Handled by user"
    assert history[2].text == "Status automatically reset to Not handled (new occurrence detected)"


async def test_upstream_acknowledge_completes(triage_engine, fakes):
    await _add(triage_engine, "A")
    fakes["A"].items = [raw_alarm("1")]
    await triage_engine.trigger_manual_refresh()
    await triage_engine.set_status(KEY, TriageStatus.HANDLED)

    fakes["A"].items = [raw_alarm("1", acknowledged=True)]
    await triage_engine.trigger_manual_refresh()

    assert triage_engine.get_lineage(KEY).status is TriageStatus.COMPLETED
    assert await triage_engine.store.get_status(KEY) is TriageStatus.COMPLETED


async def test_acknowledged_new_occurrence_is_not_reset(triage_engine, fakes):
    await _add(triage_engine, "A")
    fakes["A"].items = [raw_alarm("1")]
    await triage_engine.trigger_manual_refresh()

    fakes["A"].items.append(raw_alarm("2", minutes=5, acknowledged=True))
    result = await triage_engine.trigger_manual_refresh()

    assert result.new_occurrences == [KEY]
    assert triage_engine.get_lineage(KEY).status is TriageStatus.COMPLETED
    assert await triage_engine.store.list_comments(KEY) == []


async def test_comment_promotes_to_handled(triage_engine, fakes):
    await _add(triage_engine, "A")
    fakes["A"].items = [raw_alarm("1")]
    await triage_engine.trigger_manual_refresh()

    status = await triage_engine.submit_comment(KEY, "  checking the valve  ")

    assert status is TriageStatus.HANDLED
    assert triage_engine.get_lineage(KEY).status is TriageStatus.HANDLED
    assert [c.text for c in await triage_engine.store.list_comments(KEY)] == ["checking the valve"]
    assert await triage_engine.store.list_status_changes(KEY) == []


async def test_comment_on_completed_keeps_completed(triage_engine):
    await triage_engine.set_status(KEY, TriageStatus.COMPLETED)

    assert await triage_engine.submit_comment(KEY, "closing note") is TriageStatus.COMPLETED
    assert await triage_engine.store.get_status(KEY) is TriageStatus.COMPLETED


async def test_empty_comment_is_ignored(triage_engine):
    assert await triage_engine.submit_comment(KEY, "   ") is None
    assert await triage_engine.store.list_comments(KEY) == []
    assert await triage_engine.store.get_status(KEY) is None


async def test_zero_sources_gives_empty_result(session_factory):
    engine = AlarmTriageEngine(
        session_factory, client_factory=no_network_factory, interval=60, clock=Ticker(),
    )

    result = await engine.trigger_manual_refresh()

    assert engine.get_lineages() == []
    assert result.failures == {}
    assert not result.stale


async def test_partial_failure_shows_the_healthy_source(triage_engine, fakes):
    a, b = await _add(triage_engine, "A", "B")
    fakes["A"].items = [raw_alarm("1")]
    fakes["B"].items = [raw_alarm("1", site="Other")]
    fakes["B"].fail_login = True

    result = await triage_engine.trigger_manual_refresh()

    assert [v.key for v in triage_engine.get_lineages()] == [KEY]
    assert list(result.failures) == [b.id]
    assert triage_engine.failures == {b.id: result.failures[b.id]}
    assert not result.stale


async def test_all_sources_failing_keeps_previous_lineages(triage_engine, fakes):
    await _add(triage_engine, "A")
    fakes["A"].items = [raw_alarm("1")]
    await triage_engine.trigger_manual_refresh()

    fakes["A"].fail_login = True
    result = await triage_engine.trigger_manual_refresh()

    assert result.stale
    assert [v.key for v in triage_engine.get_lineages()] == [KEY]
    assert triage_engine.detector.previous_counts == {KEY: 1}


async def test_failed_state_update_is_retried_next_cycle(triage_engine, fakes, monkeypatch):
    await _add(triage_engine, "A")
    fakes["A"].items = [raw_alarm("1")]
    await triage_engine.trigger_manual_refresh()

    real_get_statuses = triage_engine.store.get_statuses
    calls = []

    async def flaky_get_statuses(keys):
        calls.append(keys)
        if len(calls) == 1:
            raise RuntimeError("db locked")
        return await real_get_statuses(keys)

    monkeypatch.setattr(triage_engine.store, "get_statuses", flaky_get_statuses)
    fakes["A"].items.append(raw_alarm("2", minutes=5))

    failed = await triage_engine.trigger_manual_refresh()
    assert failed.stale
    assert failed.error == "db locked"
    assert triage_engine.detector.previous_counts == {KEY: 1}
    assert triage_engine.get_lineage(KEY).count == 1

    retry = await triage_engine.trigger_manual_refresh()

    assert retry.new_occurrences == [KEY]
    assert triage_engine.detector.previous_counts == {KEY: 2}
    assert triage_engine.get_lineage(KEY).status is TriageStatus.NOT_HANDLED
    changes = await triage_engine.store.list_status_changes(KEY)
    assert [c.reason for c in changes] == [StatusReason.AUTO_NEW_OCCURRENCE]


async def test_lineage_predicate(triage_engine, fakes):
    await _add(triage_engine, "A")
    fakes["A"].items = [raw_alarm("1"), raw_alarm("2", point="PointY")]
    await triage_engine.trigger_manual_refresh()

    selected = triage_engine.get_lineages(lambda v: v.key.point == "PointY")

    assert [v.key.point for v in selected] == ["PointY"]


async def test_cycle_listeners_and_events(triage_engine, fakes, fake_redis):
    await _add(triage_engine, "A")
    fakes["A"].items = [raw_alarm("1")]
    seen = []

    async def listener(result):
        seen.append(result.trigger)

    async def broken_listener(result):
        raise RuntimeError("listener bug")

    triage_engine.on_cycle_complete(broken_listener)
    triage_engine.on_cycle_complete(listener)

    await triage_engine.trigger_manual_refresh()
    fakes["A"].items.append(raw_alarm("2", minutes=1))
    await triage_engine.trigger_manual_refresh()

    assert seen == ["manual", "manual"]
    cycles = fake_redis.on(REDIS_CHANNEL_CYCLES)
    assert [c["lineage_count"] for c in cycles] == [1, 1]
    assert cycles[1]["new_occurrences"] == [KEY.as_dict()]
    events = fake_redis.on(REDIS_CHANNEL_TRIAGE)
    assert events[-1]["status"] == "not_handled"
    assert events[-1]["reason"] == "new_occurrence_reset"


async def test_countdown_resets_after_manual_refresh(triage_engine):
    await triage_engine.trigger_manual_refresh()
    assert triage_engine.get_countdown() == 60
    assert not triage_engine.in_flight


async def test_mirror_note_sent_on_comment(session_factory, fakes):
    engine = AlarmTriageEngine(
        session_factory,
        client_factory=client_factory_for(fakes),
        interval=60,
        source_timeout=2,
        mirror_enabled=True,
        clock=Ticker(),
    )
    await _add(engine, "A")
    fakes["A"].items = [raw_alarm("1")]
    await engine.trigger_manual_refresh()

    await engine.submit_comment(KEY, "valve replaced")
    await engine.flush_mirrors()

    assert len(fakes["A"].notes) == 1
    assert fakes["A"].notes[0]["comment"] == "valve replaced"
    assert fakes["A"].notes[0]["status"] == "handled"
    await engine.stop()


async def test_mirror_failure_does_not_touch_local_state(session_factory, fakes):
    engine = AlarmTriageEngine(
        session_factory,
        client_factory=client_factory_for(fakes),
        interval=60,
        source_timeout=2,
        mirror_enabled=True,
        clock=Ticker(),
    )
    await _add(engine, "A")
    fakes["A"].items = [raw_alarm("1")]
    fakes["A"].fail_notes = True
    await engine.trigger_manual_refresh()

    await engine.set_status(KEY, TriageStatus.OPPORTUNITY)
    await engine.flush_mirrors()

    assert engine.get_lineage(KEY).status is TriageStatus.OPPORTUNITY
    assert await engine.store.get_status(KEY) is TriageStatus.OPPORTUNITY
    await engine.stop()


async def test_timer_runs_first_cycle_on_start(triage_engine, fakes):
    await _add(triage_engine, "A")
    fakes["A"].items = [raw_alarm("1")]
    seen = []

    async def listener(result):
        seen.append(result.trigger)

    triage_engine.on_cycle_complete(listener)
    await triage_engine.start()
    for _ in range(200):
        if seen:
            break
        await asyncio.sleep(0.01)
    await triage_engine.stop()

    assert seen == ["timer"]
    assert [v.key for v in triage_engine.get_lineages()] == [KEY]
    assert not triage_engine.scheduler.running
