from __future__ import annotations

import datetime
import json
import sys
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import AuditLog, Job, WorkRouteAssignment, delete_branch  # noqa: E402
import materializer as materializer_module  # noqa: E402
from errors import StoreError, ValidationError  # noqa: E402
from jobs import JobService  # noqa: E402
from materializer import AssignmentMaterializer  # noqa: E402
from notifications import change_feed  # noqa: E402
from receipts import ReceiptImage  # noqa: E402

DAY = datetime.date(2024, 6, 10)


def _jobs(session_factory):
    with session_factory() as session:
        return list(session.scalars(select(Job).order_by(Job.scheduled_date.asc(), Job.id.asc())))


def _fill_template(editor, index, employee_id, client_id, branch_ids, time="09:00"):
    editor.stage_stops(index, employee_id, client_id, branch_ids, time)
    return editor.commit_pending(index)


def test_assign_creates_one_pending_job_per_stop(editor, materializer, session_factory, directory):
    _fill_template(editor, 2, directory.dana, directory.acme, [directory.main_st])
    result = materializer.assign(DAY, 2, actor="dispatcher")

    assert result.jobs_created == 1
    assert result.warnings == []
    (job,) = _jobs(session_factory)
    assert job.scheduled_date == datetime.datetime(2024, 6, 10, 9, 0)
    assert (job.employee_id, job.branch_id, job.status) == (directory.dana, directory.main_st, "pending")
    assert materializer.assignments == {DAY: 2}

    with session_factory() as session:
        assignment = session.scalars(select(WorkRouteAssignment)).one()
        audit = session.scalars(select(AuditLog).where(AuditLog.action == "ROUTE_ASSIGN")).one()
    assert (assignment.date, assignment.template_index, assignment.employee_id) == (DAY, 2, directory.dana)
    assert audit.user_id == "dispatcher"
    assert json.loads(audit.payloadJSON)["jobs_created"] == 1


def test_reassigning_a_date_replaces_its_jobs(editor, materializer, session_factory, directory):
    _fill_template(editor, 0, directory.dana, directory.acme, [directory.main_st, directory.harbor])
    _fill_template(editor, 1, directory.omar, directory.globex, [directory.plaza], "13:30")
    materializer.assign(DAY, 0)
    result = materializer.assign(DAY, 1)

    assert result.jobs_deleted == 2
    jobs = _jobs(session_factory)
    assert [(job.branch_id, job.employee_id) for job in jobs] == [(directory.plaza, directory.omar)]
    assert jobs[0].scheduled_date == datetime.datetime(2024, 6, 10, 13, 30)
    with session_factory() as session:
        rows = list(session.scalars(select(WorkRouteAssignment)))
    assert [(row.template_index, row.employee_id) for row in rows] == [(1, directory.omar)]


def test_assign_leaves_other_days_alone(editor, materializer, session_factory, directory):
    _fill_template(editor, 0, directory.dana, directory.acme, [directory.main_st], "23:55")
    materializer.assign(DAY, 0)
    materializer.assign(DAY + datetime.timedelta(days=1), 0)
    materializer.assign(DAY, 0)
    assert len(_jobs(session_factory)) == 2


def test_stops_with_deleted_branches_are_skipped(editor, materializer, session_factory, directory):
    _fill_template(editor, 0, directory.dana, directory.acme, [directory.main_st, directory.harbor])
    with session_factory() as session:
        delete_branch(session, directory.harbor)

    result = materializer.assign(DAY, 0)

    assert result.jobs_created == 1
    assert [stop.branch_id for stop in result.dropped_stops] == [directory.harbor]
    assert len(result.warnings) == 1
    assert [job.branch_id for job in _jobs(session_factory)] == [directory.main_st]


def test_no_surviving_branch_keeps_existing_jobs(editor, materializer, session_factory, directory):
    _fill_template(editor, 0, directory.dana, directory.acme, [directory.main_st])
    _fill_template(editor, 1, directory.omar, directory.globex, [directory.plaza])
    materializer.assign(DAY, 1)
    with session_factory() as session:
        delete_branch(session, directory.main_st)

    with pytest.raises(ValidationError):
        materializer.assign(DAY, 0)

    jobs = _jobs(session_factory)
    assert [job.branch_id for job in jobs] == [directory.plaza]
    assert materializer.assignments == {DAY: 1}


def test_empty_template_cannot_be_assigned(materializer, session_factory):
    with pytest.raises(ValidationError):
        materializer.assign(DAY, 5)
    assert _jobs(session_factory) == []


def test_unassign_removes_jobs_and_assignment(editor, materializer, session_factory, directory):
    _fill_template(editor, 0, directory.dana, directory.acme, [directory.main_st, directory.harbor])
    materializer.assign(DAY, 0)

    assert materializer.unassign(DAY, actor="dispatcher") == 2
    assert _jobs(session_factory) == []
    assert materializer.assignments == {}
    with session_factory() as session:
        assert list(session.scalars(select(WorkRouteAssignment))) == []


def test_unassign_without_assignment_is_silent(materializer):
    seen = []
    unsubscribe = change_feed.subscribe("jobs", seen.append)
    try:
        assert materializer.unassign(DAY) == 0
    finally:
        unsubscribe()
    assert seen == []


def test_load_reads_assignments_back(editor, materializer, store, session_factory, directory):
    _fill_template(editor, 3, directory.dana, directory.acme, [directory.main_st])
    materializer.assign("2024-06-11", 3)
    fresh = AssignmentMaterializer(store, session_factory)
    assert fresh.load() == {datetime.date(2024, 6, 11): 3}
    with pytest.raises(ValidationError):
        fresh.assign("June 11", 3)


def test_month_calendar_pads_sunday_first_weeks(editor, materializer, directory):
    _fill_template(editor, 2, directory.dana, directory.acme, [directory.main_st])
    materializer.assign(DAY, 2)
    weeks = materializer.month_calendar(2024, 6)

    # June 1st 2024 was a Saturday.
    assert weeks[0][:6] == [None] * 6
    assert weeks[0][6]["date"] == "2024-06-01"
    cells = [cell for week in weeks for cell in week if cell]
    assert len(cells) == 30
    tenth = next(cell for cell in cells if cell["date"] == "2024-06-10")
    assert (tenth["template_index"], tenth["template_name"]) == (2, "Template 3")


def test_example_workday_end_to_end(editor, store, session_factory, directory, failing_receipts):
    editor.stage_stops(2, directory.dana, directory.acme, [directory.main_st], "09:00")
    assert len(editor.pending) == 1
    with pytest.raises(ValidationError):
        editor.stage_stops(2, directory.dana, directory.acme, [directory.main_st], "09:00")
    assert len(editor.pending) == 1
    slot = editor.commit_pending(2)
    assert slot.id is not None and len(slot.stops) == 1

    materializer = AssignmentMaterializer(store, session_factory)
    materializer.assign(DAY, 2)
    (job,) = _jobs(session_factory)
    assert job.scheduled_date == datetime.datetime(2024, 6, 10, 9, 0)

    receipt = ReceiptImage(filename="receipt.txt", content_type="text/plain", data=b"signed")
    completion = JobService(session_factory, receipt_store=failing_receipts).complete_job(job.id, receipt)
    assert completion.job["status"] == "completed"
    assert completion.job["completed_date"] is not None
    assert completion.job["receipt_url"] is None
    assert completion.receipt_attached is False


def _failing_audit(*args, **kwargs):
    raise OperationalError("INSERT INTO audit_log", {}, Exception("database is locked"))


def test_assign_audit_failure_rolls_back_everything(editor, materializer, session_factory, directory, monkeypatch):
    _fill_template(editor, 0, directory.dana, directory.acme, [directory.main_st])
    monkeypatch.setattr(materializer_module, "record_audit_log", _failing_audit)

    with pytest.raises(StoreError):
        materializer.assign(DAY, 0)

    assert _jobs(session_factory) == []
    with session_factory() as session:
        assert list(session.scalars(select(WorkRouteAssignment))) == []
    assert materializer.assignments == {}


def test_unassign_audit_failure_keeps_the_date(editor, materializer, session_factory, directory, monkeypatch):
    _fill_template(editor, 0, directory.dana, directory.acme, [directory.main_st])
    materializer.assign(DAY, 0)
    monkeypatch.setattr(materializer_module, "record_audit_log", _failing_audit)

    with pytest.raises(StoreError):
        materializer.unassign(DAY)

    assert len(_jobs(session_factory)) == 1
    with session_factory() as session:
        assert len(list(session.scalars(select(WorkRouteAssignment)))) == 1
    assert materializer.assignments == {DAY: 0}
