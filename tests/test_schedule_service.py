import pytest
from datetime import datetime
from sqlalchemy import DateTime, update
from sqlmodel import Session, select

from formtester.core.config import Settings
from formtester.core.exceptions import ConflictError, NotFoundError, ValidationError
from formtester.models import Schedule, TestRun
from formtester.services.schedule import ScheduleService


def _rule(schedule):
    return f"form-test-schedule-{schedule.id}"

def _add_run(session, schedule_id, status="success", created_at=None):
    test_run = TestRun(url="https://x.test/login", schedule_id=schedule_id, status=status)
    if created_at:
        test_run.created_at = created_at
    session.add(test_run)
    session.commit()
    session.refresh(test_run)
    return test_run


def test_create_active_schedule_links_a_rule(schedule_service, timer, schedule_payload):
    schedule = schedule_service.create_schedule(schedule_payload)

    assert schedule.cron_expression == "cron(0 8 * * ? *)"
    assert schedule.active is True
    assert schedule.rule_arn.endswith(_rule(schedule))
    assert schedule.next_run_time is not None
    assert schedule.runs == []
    assert (schedule.stats_total, schedule.stats_success, schedule.stats_failed) == (0, 0, 0)

    rule = timer.rules[_rule(schedule)]
    assert rule["enabled"] is True
    assert rule["payload"]["scheduleId"] == schedule.id
    assert rule["payload"]["formConfig"]["submitButtonSelector"] == "#go"
    assert rule["payload"]["userData"] == {"email": "a@b.com"}

def test_create_inactive_schedule_never_touches_the_timer(schedule_service, timer, schedule_payload):
    schedule = schedule_service.create_schedule({**schedule_payload, "active": False})

    assert timer.calls == []
    assert schedule.rule_arn is None
    assert schedule.next_run_time is None

@pytest.mark.parametrize("missing", ["name", "url", "formConfig", "userData", "frequency"])
def test_create_requires_fields(schedule_service, schedule_payload, missing):
    payload = dict(schedule_payload)
    payload.pop(missing)
    with pytest.raises(ValidationError):
        schedule_service.create_schedule(payload)

def test_create_rejects_bad_frequency(schedule_service, schedule_payload, session):
    with pytest.raises(ValidationError):
        schedule_service.create_schedule({**schedule_payload, "frequency": "fortnightly"})
    with pytest.raises(ValidationError):
        schedule_service.create_schedule({**schedule_payload, "frequency": "custom", "customCronExpression": "0 8 * * * *"})
    assert session.exec(select(Schedule)).all() == []

def test_create_custom_uses_expression_verbatim(schedule_service, schedule_payload):
    schedule = schedule_service.create_schedule(
        {**schedule_payload, "frequency": "custom", "customCronExpression": "0 12 ? * FRI *"}
    )
    assert schedule.cron_expression == "0 12 ? * FRI *"
    assert schedule.custom_cron_expression == "0 12 ? * FRI *"

def test_rule_failure_keeps_the_schedule(schedule_service, timer, schedule_payload, session):
    timer.fail_on.add("put_rule")
    schedule = schedule_service.create_schedule(schedule_payload)

    assert session.get(Schedule, schedule.id) is not None
    assert schedule.active is True
    assert schedule.rule_arn is None

def test_update_time_of_day_recomputes_cron(schedule_service, timer, schedule_payload):
    schedule = schedule_service.create_schedule(schedule_payload)
    version = schedule.version
    updated, changed = schedule_service.update_schedule(schedule.id, {"specific_time": "17:45"})

    assert changed
    assert updated.cron_expression == "cron(45 17 * * ? *)"
    assert updated.specific_time == "17:45"
    assert updated.version == version + 1
    assert timer.rules[_rule(schedule)]["cron"] == "cron(45 17 * * ? *)"

def test_update_payload_rewrites_the_rule(schedule_service, timer, schedule_payload):
    schedule = schedule_service.create_schedule(schedule_payload)
    schedule_service.update_schedule(schedule.id, {"user_data": {"email": "new@b.com"}})
    assert timer.rules[_rule(schedule)]["payload"]["userData"] == {"email": "new@b.com"}

def test_deactivate_disables_rule_and_keeps_next_run(schedule_service, timer, schedule_payload):
    schedule = schedule_service.create_schedule(schedule_payload)
    next_run = schedule.next_run_time

    updated, changed = schedule_service.set_active(schedule.id, False)

    assert changed
    assert updated.active is False
    assert updated.next_run_time == next_run
    assert updated.rule_arn == schedule.rule_arn
    assert timer.rules[_rule(schedule)]["enabled"] is False
    assert ("delete_rule", _rule(schedule)) not in timer.calls

def test_reactivate_enables_existing_rule(schedule_service, timer, schedule_payload):
    schedule = schedule_service.create_schedule(schedule_payload)
    schedule_service.set_active(schedule.id, False)
    updated, changed = schedule_service.set_active(schedule.id, True)

    assert changed
    assert updated.active is True
    assert timer.calls[-1] == ("enable_rule", _rule(schedule))
    assert timer.rules[_rule(schedule)]["enabled"] is True

def test_activate_creates_missing_rule(schedule_service, timer, schedule_payload):
    schedule = schedule_service.create_schedule({**schedule_payload, "active": False})
    updated, _ = schedule_service.set_active(schedule.id, True)

    assert updated.rule_arn is not None
    assert updated.next_run_time is not None
    assert timer.calls == [("put_rule", _rule(schedule))]

def test_reactivating_active_schedule_is_a_noop(schedule_service, timer, schedule_payload):
    schedule = schedule_service.create_schedule(schedule_payload)
    calls = list(timer.calls)
    version = schedule.version

    updated, changed = schedule_service.set_active(schedule.id, True)

    assert not changed
    assert updated.version == version
    assert timer.calls == calls

def test_update_with_identical_values_is_a_noop(schedule_service, schedule_payload):
    schedule = schedule_service.create_schedule(schedule_payload)
    _, changed = schedule_service.update_schedule(schedule.id, {"name": "Login form", "specific_time": "08:00"})
    assert not changed

def test_update_unknown_schedule(schedule_service):
    with pytest.raises(NotFoundError):
        schedule_service.update_schedule("missing", {"name": "x"})

def test_update_with_stale_version_conflicts(schedule_service, schedule_payload):
    schedule = schedule_service.create_schedule(schedule_payload)
    with pytest.raises(ConflictError):
        schedule_service.update_schedule(schedule.id, {"name": "Renamed"}, expected_version=schedule.version - 1)

def test_update_rejects_invalid_custom_cron(schedule_service, schedule_payload):
    schedule = schedule_service.create_schedule(schedule_payload)
    with pytest.raises(ValidationError):
        schedule_service.update_schedule(schedule.id, {"frequency": "custom", "custom_cron_expression": "0 8 ? * ? *"})

def test_delete_removes_rule_and_record(schedule_service, timer, schedule_payload, session):
    schedule = schedule_service.create_schedule(schedule_payload)
    schedule_id, rule_name = schedule.id, _rule(schedule)
    schedule_service.delete_schedule(schedule_id)

    assert rule_name not in timer.rules
    assert session.get(Schedule, schedule_id) is None

def test_delete_survives_rule_cleanup_failure(schedule_service, timer, schedule_payload, session):
    schedule = schedule_service.create_schedule(schedule_payload)
    schedule_id = schedule.id
    timer.fail_on.add("delete_rule")

    schedule_service.delete_schedule(schedule_id)

    assert session.get(Schedule, schedule_id) is None

def test_delete_unknown_schedule(schedule_service):
    with pytest.raises(NotFoundError):
        schedule_service.delete_schedule("missing")

def test_record_run_completion_counts_outcomes(schedule_service, schedule_payload, session):
    schedule = schedule_service.create_schedule(schedule_payload)
    ok = _add_run(session, schedule.id, "success")
    bad = _add_run(session, schedule.id, "failed")
    done = _add_run(session, schedule.id, "completed")

    schedule_service.record_run_completion(schedule.id, ok.id, "success")
    schedule_service.record_run_completion(schedule.id, bad.id, "failed")
    updated = schedule_service.record_run_completion(schedule.id, done.id, "completed")

    assert updated.stats_total == 3
    assert updated.stats_success == 1
    # completed counts as failed under the default policy
    assert updated.stats_failed == 2
    assert updated.stats_total == updated.stats_success + updated.stats_failed
    assert updated.runs == [ok.id, bad.id, done.id]
    assert updated.last_test_id == done.id
    assert updated.last_test_status == "completed"
    assert updated.last_run_time is not None

def test_completed_can_count_as_success(session, timer, schedule_payload):
    service = ScheduleService(session, timer, Settings(COMPLETED_RUN_OUTCOME="success"))
    schedule = service.create_schedule(schedule_payload)
    done = _add_run(session, schedule.id, "completed")

    updated = service.record_run_completion(schedule.id, done.id, "completed")

    assert (updated.stats_success, updated.stats_failed) == (1, 0)

def test_recording_the_same_run_twice_does_not_double_count(schedule_service, schedule_payload, session):
    schedule = schedule_service.create_schedule(schedule_payload)
    test_run = _add_run(session, schedule.id, "success")

    schedule_service.record_run_completion(schedule.id, test_run.id, "success")
    updated = schedule_service.record_run_completion(schedule.id, test_run.id, "success")

    assert updated.stats_total == 1
    assert updated.runs == [test_run.id]

def test_completion_on_inactive_schedule_keeps_next_run(schedule_service, schedule_payload, session):
    schedule = schedule_service.create_schedule(schedule_payload)
    schedule, _ = schedule_service.set_active(schedule.id, False)
    next_run = schedule.next_run_time
    test_run = _add_run(session, schedule.id)

    updated = schedule_service.record_run_completion(schedule.id, test_run.id, "success")

    assert updated.next_run_time == next_run
    assert updated.stats_total == 1

def test_record_run_completion_rejects_running(schedule_service, schedule_payload):
    schedule = schedule_service.create_schedule(schedule_payload)
    with pytest.raises(ValidationError):
        schedule_service.record_run_completion(schedule.id, "r1", "running")

def test_record_run_completion_retries_on_version_conflict(schedule_service, schedule_payload, session, monkeypatch):
    schedule = schedule_service.create_schedule(schedule_payload)
    test_run = _add_run(session, schedule.id)

    original = schedule_service._compare_and_swap
    attempts = []

    def flaky(schedule_id, expected_version, values):
        attempts.append(expected_version)
        if len(attempts) == 1:
            return False
        return original(schedule_id, expected_version, values)

    monkeypatch.setattr(schedule_service, "_compare_and_swap", flaky)
    updated = schedule_service.record_run_completion(schedule.id, test_run.id, "success")

    assert len(attempts) == 2
    assert updated.stats_total == 1

def test_record_run_completion_gives_up_after_retry_budget(session, timer, schedule_payload, monkeypatch):
    service = ScheduleService(session, timer, Settings(STATS_WRITE_RETRIES=2))
    schedule = service.create_schedule(schedule_payload)
    monkeypatch.setattr(service, "_compare_and_swap", lambda *args: False)

    with pytest.raises(ConflictError):
        service.record_run_completion(schedule.id, "r1", "success")

def test_schedule_runs_newest_first_with_token(schedule_service, schedule_payload, session):
    schedule = schedule_service.create_schedule(schedule_payload)
    runs = [_add_run(session, schedule.id, created_at=datetime(2025, 1, day)) for day in (1, 2, 3)]
    for test_run in runs:
        schedule_service.record_run_completion(schedule.id, test_run.id, "success")

    page, token, total = schedule_service.get_schedule_runs(schedule.id, limit=2)
    assert [r.id for r in page] == [runs[2].id, runs[1].id]
    assert total == 3
    assert token == runs[1].id

    page, token, _ = schedule_service.get_schedule_runs(schedule.id, limit=2, start_key=token)
    assert [r.id for r in page] == [runs[0].id]
    assert token is None

def test_list_schedules_paginates(schedule_service, schedule_payload):
    created = [schedule_service.create_schedule({**schedule_payload, "name": f"s{i}"}) for i in range(3)]
    schedule_service.set_active(created[0].id, False)

    first, token = schedule_service.list_schedules(limit=2)
    second, last_token = schedule_service.list_schedules(limit=2, start_key=token)

    assert token is not None and last_token is None
    assert {s.id for s in first + second} == {s.id for s in created}

    active, _ = schedule_service.list_schedules(active=True)
    assert created[0].id not in {s.id for s in active}

def test_list_schedules_rejects_bad_token(schedule_service):
    with pytest.raises(ValidationError):
        schedule_service.list_schedules(start_key="not-a-token")

def test_due_schedules(schedule_service, schedule_payload, session):
    due = schedule_service.create_schedule(schedule_payload)
    schedule_service.create_schedule({**schedule_payload, "active": False})

    assert [s.id for s in schedule_service.due_schedules(datetime(2100, 1, 1))] == [due.id]
    assert schedule_service.due_schedules(datetime(2000, 1, 1)) == []

def _bump_version(engine, schedule_id):
    with Session(engine) as other:
        other.exec(update(Schedule).where(Schedule.id == schedule_id).values(version=Schedule.version + 1))
        other.commit()

def test_lost_update_puts_the_rule_back(schedule_service, timer, schedule_payload, engine, monkeypatch):
    schedule = schedule_service.create_schedule(schedule_payload)
    schedule_id, name = schedule.id, _rule(schedule)
    disable = timer.disable_rule

    def disable_while_a_run_completes(rule):
        disable(rule)
        _bump_version(engine, schedule_id)

    monkeypatch.setattr(timer, "disable_rule", disable_while_a_run_completes)

    with pytest.raises(ConflictError):
        schedule_service.set_active(schedule_id, False)

    stored = schedule_service._reload(schedule_id)
    assert stored.active is True
    assert timer.rules[name]["enabled"] is True
    assert timer.rules[name]["cron"] == stored.cron_expression

def test_lost_update_on_rewrite_restores_the_stored_expression(schedule_service, timer, schedule_payload, engine, monkeypatch):
    schedule = schedule_service.create_schedule(schedule_payload)
    schedule_id, name = schedule.id, _rule(schedule)
    put = timer.put_rule

    def put_while_a_run_completes(*args, **kwargs):
        arn = put(*args, **kwargs)
        if args[1] == "cron(45 17 * * ? *)":
            _bump_version(engine, schedule_id)
        return arn

    monkeypatch.setattr(timer, "put_rule", put_while_a_run_completes)

    with pytest.raises(ConflictError):
        schedule_service.update_schedule(schedule_id, {"specific_time": "17:45"})

    assert timer.rules[name]["cron"] == "cron(0 8 * * ? *)"
    assert timer.rules[name]["enabled"] is True

def test_create_race_drops_the_new_rule(schedule_service, timer, schedule_payload, monkeypatch):
    monkeypatch.setattr(schedule_service, "_compare_and_swap", lambda *args: False)

    schedule = schedule_service.create_schedule(schedule_payload)

    assert schedule.rule_arn is None
    assert _rule(schedule) not in timer.rules
    assert timer.calls[-1] == ("delete_rule", _rule(schedule))

def test_timestamps_are_stored_as_naive_utc(schedule_service, schedule_payload):
    for column in ("created_at", "updated_at", "last_run_time", "next_run_time"):
        assert type(Schedule.__table__.c[column].type) is DateTime
    for column in ("start_time", "end_time", "created_at", "updated_at"):
        assert type(TestRun.__table__.c[column].type) is DateTime

    schedule = schedule_service.create_schedule(schedule_payload)
    assert schedule.next_run_time.tzinfo is None
    assert schedule.created_at.tzinfo is None
