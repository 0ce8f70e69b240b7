from datetime import datetime, timezone

import pytest

from rekur.errors import (
    ExceptionConflictError,
    InvalidInputError,
    NotFoundError,
    ScopeError,
    TaskBlockedError,
)
from rekur.models import ExceptionKind, TaskQuery, TaskStatus
from rekur.scope import EditResult, TaskChanges


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def ctrl(test_controller, freeze_at):
    """A controller whose clock reads Monday 2025-01-06 07:00 New York."""
    with freeze_at("2025-01-06 12:00:00"):
        yield test_controller


@pytest.fixture
def standup(ctrl):
    _, series = ctrl.add_recurring_task(
        "standup", "FREQ=DAILY", datetime(2025, 1, 6, 9, 0), tags=["work"]
    )
    return series


def instance_at(ctrl, series, *args):
    return ctrl.db_manager.find_instance(series.id, utc(*args))


@pytest.mark.unit
def test_add_recurring_task_materializes_the_window(ctrl):
    template, series = ctrl.add_recurring_task(
        "water plants", "FREQ=DAILY", datetime(2025, 1, 6, 9, 0), tags=["#home"]
    )
    assert series.template_task_id == template.id
    assert series.timezone == "America/New_York"
    instances = ctrl.db_manager.series_instances(series.id)
    assert len(instances) == 30
    assert instances[0].due_at == utc(2025, 1, 6, 14)
    assert instances[0].tags == ["home"]
    # The template itself is never listed.
    assert template.id not in {t.id for t in ctrl.list_tasks()}


@pytest.mark.unit
def test_complete_instance_reports_what_comes_next(ctrl, standup):
    first = instance_at(ctrl, standup, 2025, 1, 6, 14)
    result = ctrl.complete_task(first.short_id)

    assert result.completed.status == TaskStatus.COMPLETED
    assert result.series_id == standup.id
    assert result.next_task.due_at == utc(2025, 1, 7, 14)
    assert result.next_occurrence == utc(2025, 1, 7, 14)
    with pytest.raises(InvalidInputError):
        ctrl.complete_task(first.id)


@pytest.mark.unit
def test_templates_cannot_be_completed(ctrl, standup):
    with pytest.raises(InvalidInputError):
        ctrl.complete_task(standup.template_task_id)


@pytest.mark.unit
def test_blocked_task_cannot_be_completed(ctrl):
    report = ctrl.add_task("write report")
    review = ctrl.add_task("review report", depends_on=[report.short_id])

    with pytest.raises(TaskBlockedError) as info:
        ctrl.complete_task(review.id)
    assert info.value.blocking == [f"{report.short_id} write report"]

    ctrl.complete_task(report.id)
    assert ctrl.complete_task(review.id).completed.status == TaskStatus.COMPLETED


@pytest.mark.unit
def test_skip_cancels_pending_instance_and_restore_reopens_it(ctrl, standup):
    target = instance_at(ctrl, standup, 2025, 1, 8, 14)
    exc = ctrl.skip_occurrence(target.id, notes="holiday")

    assert exc.kind == ExceptionKind.SKIP
    assert ctrl.get_task(target.id).status == TaskStatus.CANCELLED
    assert target.id not in {t.id for t in ctrl.list_tasks()}

    assert ctrl.remove_exceptions(standup.id) == 1
    assert ctrl.get_task(target.id).status == TaskStatus.PENDING
    assert ctrl.list_exceptions(standup.id) == []


@pytest.mark.unit
def test_skip_completed_occurrence_conflicts(ctrl, standup):
    first = instance_at(ctrl, standup, 2025, 1, 6, 14)
    ctrl.complete_task(first.id)
    with pytest.raises(ExceptionConflictError):
        ctrl.skip_occurrence(first.id)


@pytest.mark.unit
def test_skip_beyond_the_boundary_by_series_and_instant(ctrl, standup):
    ctrl.skip_occurrence(standup.id, at=datetime(2025, 3, 3, 9, 0))
    assert ctrl.list_exceptions(standup.id)[0].occurrence_dt == utc(2025, 3, 3, 14)
    upcoming = ctrl.list_tasks(TaskQuery(due_before=utc(2025, 3, 5)))
    assert utc(2025, 3, 3, 14) not in {t.due_at for t in upcoming}
    assert utc(2025, 3, 4, 14) in {t.due_at for t in upcoming}


@pytest.mark.unit
def test_move_keeps_identity_and_restore_resets_due(ctrl, standup):
    target = instance_at(ctrl, standup, 2025, 1, 9, 14)
    exc = ctrl.move_occurrence(target.id, datetime(2025, 1, 9, 17, 0))

    assert exc.kind == ExceptionKind.MOVE and exc.task_id == target.id
    moved = ctrl.get_task(target.id)
    assert moved.due_at == utc(2025, 1, 9, 22)
    assert moved.occurrence_dt == utc(2025, 1, 9, 14)

    with pytest.raises(NotFoundError):
        ctrl.remove_exceptions(standup.id, [utc(2025, 1, 10, 14)])
    assert ctrl.remove_exceptions(standup.id, [utc(2025, 1, 9, 14)]) == 1
    assert ctrl.get_task(target.id).due_at == utc(2025, 1, 9, 14)


@pytest.mark.unit
def test_move_of_skipped_occurrence_conflicts(ctrl, standup):
    target = instance_at(ctrl, standup, 2025, 1, 9, 14)
    ctrl.skip_occurrence(target.id)
    with pytest.raises(ExceptionConflictError):
        ctrl.move_occurrence(target.id, datetime(2025, 1, 9, 17, 0))


@pytest.mark.unit
def test_deleted_instance_is_not_materialized_again(ctrl, standup):
    target = instance_at(ctrl, standup, 2025, 1, 10, 14)
    ctrl.delete_task(target.id)

    exc = ctrl.list_exceptions(standup.id)[0]
    assert exc.kind == ExceptionKind.SKIP and exc.occurrence_dt == utc(2025, 1, 10, 14)

    ctrl.rollback_boundary(standup.id)
    ctrl.materialize()
    assert instance_at(ctrl, standup, 2025, 1, 10, 14) is None
    assert instance_at(ctrl, standup, 2025, 1, 11, 14) is not None


@pytest.mark.unit
def test_instance_edit_needs_a_scope(ctrl, standup):
    target = instance_at(ctrl, standup, 2025, 1, 8, 14)
    with pytest.raises(ScopeError):
        ctrl.edit_task(target.id, TaskChanges(name="standup (remote)"))
    with pytest.raises(InvalidInputError):
        ctrl.edit_task(target.id, TaskChanges(), scope="occurrence", due=datetime(2025, 1, 8, 10))

    result = ctrl.edit_task(target.id, TaskChanges(name="standup (remote)"), scope="occurrence")
    assert isinstance(result, EditResult)
    assert ctrl.get_task(target.id).name == "standup (remote)"
    assert instance_at(ctrl, standup, 2025, 1, 9, 14).name == "standup"


@pytest.mark.unit
def test_template_edit_is_a_series_edit(ctrl, standup):
    result = ctrl.edit_task(standup.template_task_id, TaskChanges(add_tags=["daily"]))
    assert result.task.tags == ["daily", "work"]
    assert instance_at(ctrl, standup, 2025, 1, 7, 14).tags == ["daily", "work"]
    with pytest.raises(ScopeError):
        ctrl.edit_task(standup.template_task_id, TaskChanges(name="x"), scope="occurrence")


@pytest.mark.unit
def test_plain_task_edit(ctrl):
    task = ctrl.add_task("call mom")
    with pytest.raises(ScopeError):
        ctrl.edit_task(task.id, TaskChanges(name="call mum"), scope="series")
    with pytest.raises(InvalidInputError):
        ctrl.edit_task(task.id, TaskChanges(rrule="FREQ=WEEKLY"))

    edited = ctrl.edit_task(task.id, TaskChanges(name="call mum"), due=datetime(2025, 1, 7, 18))
    assert edited.name == "call mum"
    assert edited.due_at == utc(2025, 1, 7, 23)


@pytest.mark.unit
def test_listing_far_ahead_extends_materialization(ctrl, standup):
    tasks = ctrl.list_tasks(TaskQuery(due_before=utc(2025, 3, 1)))
    assert len(tasks) == 54
    assert tasks[-1].due_at == utc(2025, 2, 28, 14)


@pytest.mark.unit
def test_series_lookup_by_any_member(ctrl, standup):
    instance = instance_at(ctrl, standup, 2025, 1, 7, 14)
    assert ctrl.series_for(standup.short_id).id == standup.id
    assert ctrl.series_for(standup.template_task_id).id == standup.id
    assert ctrl.series_for(instance.short_id).id == standup.id

    plain = ctrl.add_task("not recurring")
    with pytest.raises(NotFoundError):
        ctrl.series_for(plain.id)


@pytest.mark.unit
def test_preview_and_statistics(ctrl, standup):
    ctrl.skip_occurrence(standup.id, at=datetime(2025, 1, 7, 9, 0))
    preview = ctrl.preview_series(standup.id, limit=3)
    assert [o.effective_at.day for o in preview] == [6, 8, 9]

    stats = ctrl.series_statistics(standup.id)
    assert stats.next_occurrence == utc(2025, 1, 6, 14)
    assert stats.pending_instances == 29


@pytest.mark.unit
def test_pause_and_resume(ctrl):
    _, series = ctrl.add_recurring_task(
        "weekly review", "FREQ=WEEKLY;BYDAY=FR", datetime(2025, 1, 10, 16)
    )
    assert not ctrl.pause_series(series.id).active
    assert ctrl.materialize().instances_created == 0
    resumed = ctrl.resume_series(series.id)
    assert resumed.active


@pytest.mark.unit
def test_parse_when_reads_configured_zone(ctrl):
    assert ctrl.parse_when("tomorrow 9am") == utc(2025, 1, 7, 14)
    assert ctrl.fmt_user(utc(2025, 1, 7, 14)).endswith("09:00")


@pytest.mark.unit
def test_statistics_and_preview_materialize_first(test_controller, freeze_at):
    with freeze_at("2025-01-06 12:00:00"):
        _, series = test_controller.add_recurring_task(
            "standup", "FREQ=DAILY", datetime(2025, 1, 6, 9, 0)
        )
    with freeze_at("2025-01-26 12:00:00"):
        stats = test_controller.series_statistics(series.id)
        assert stats.total_instances == 50
        assert stats.next_occurrence == utc(2025, 1, 26, 14)
    with freeze_at("2025-02-20 12:00:00"):
        preview = test_controller.preview_series(series.id, limit=1)
        assert preview[0].effective_at == utc(2025, 2, 20, 14)
        # Through 2025-03-21, 09:00 EDT after the switch.
        instances = test_controller.db_manager.series_instances(series.id)
        assert len(instances) == 75
        assert instances[-1].due_at == utc(2025, 3, 21, 13)
