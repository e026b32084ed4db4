from __future__ import annotations

import argparse
import datetime
import mimetypes
import sys
from pathlib import Path
from typing import Dict, List, Optional

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import Branch, Client, Employee, SessionLocal, init_database  # noqa: E402
from jobs import JobService  # noqa: E402
from materializer import AssignmentMaterializer  # noqa: E402
from receipts import ReceiptImage  # noqa: E402
from stop_editor import StopEditor  # noqa: E402
from template_store import TemplateStore  # noqa: E402

SMOKE_EMPLOYEE = "Smoke Test Employee"
SMOKE_CLIENT = "Smoke Test Client"
SMOKE_BRANCHES = [
    ("Smoke Branch North", "12 North Road"),
    ("Smoke Branch South", "48 South Avenue"),
]


def _default_day(today: datetime.date | None = None) -> datetime.date:
    return (today or datetime.date.today()) + datetime.timedelta(days=1)


def _seed_directory(session_factory) -> Dict[str, object]:
    """Create (or reuse) one employee, one client and its branches."""
    with session_factory() as session:
        employee = session.scalars(select(Employee).where(Employee.full_name == SMOKE_EMPLOYEE)).first()
        if not employee:
            employee = Employee(full_name=SMOKE_EMPLOYEE, phone_number="555-0100", status="active")
            session.add(employee)
        employee.status = "active"
        client = session.scalars(select(Client).where(Client.full_name == SMOKE_CLIENT)).first()
        if not client:
            client = Client(full_name=SMOKE_CLIENT)
            session.add(client)
            session.flush()
        branch_ids: List[int] = []
        for name, address in SMOKE_BRANCHES:
            branch = session.scalars(
                select(Branch).where(Branch.client_id == client.id, Branch.name == name)
            ).first()
            if not branch:
                branch = Branch(client_id=client.id, name=name, address=address)
                session.add(branch)
                session.flush()
            branch_ids.append(branch.id)
        session.commit()
        return {"employee_id": employee.id, "client_id": client.id, "branch_ids": branch_ids}


def _load_receipt(path: Optional[Path]) -> Optional[ReceiptImage]:
    if path is None:
        return None
    content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return ReceiptImage(filename=path.name, content_type=content_type, data=path.read_bytes())


def run_workflow(
    day: datetime.date,
    template_index: int,
    actor: str,
    *,
    session_factory=SessionLocal,
    receipt_store=None,
    receipt_path: Optional[Path] = None,
) -> Dict[str, object]:
    seeded = _seed_directory(session_factory)
    store = TemplateStore(session_factory)
    store.load()
    editor = StopEditor(store, session_factory)
    materializer = AssignmentMaterializer(store, session_factory)
    materializer.load()
    jobs = JobService(session_factory, receipt_store=receipt_store)

    slot = store.slot(template_index)
    existing = {stop.branch_id for stop in slot.stops if stop.employee_id == seeded["employee_id"]}
    missing = [branch_id for branch_id in seeded["branch_ids"] if branch_id not in existing]
    if missing:
        editor.stage_stops(template_index, seeded["employee_id"], seeded["client_id"], missing, "08:00")
        slot = editor.commit_pending(template_index)
        print(f"[workflow] Added {len(missing)} stop(s) to {slot.name}.")
    else:
        print(f"[workflow] {slot.name} already holds the smoke stops.")

    result = materializer.assign(day, template_index, actor=actor)
    print(
        f"[workflow] Assigned {slot.name} to {day.isoformat()}: "
        f"{result.jobs_created} job(s) created, {result.jobs_deleted} replaced."
    )
    for warning in result.warnings:
        print(f"[workflow][warning] {warning}")

    page = jobs.list_jobs(status="pending", employee_id=seeded["employee_id"], day=day, sort="asc")
    if not page.jobs:
        raise SystemExit(f"No pending jobs were created for {day.isoformat()}.")
    first = page.jobs[0]
    completion = jobs.complete_job(first["id"], _load_receipt(receipt_path), actor=actor)
    print(
        f"[workflow] Completed job {first['id']} at {first['branch_name']} "
        f"(receipt attached: {completion.receipt_attached})."
    )
    return {
        "date": day.isoformat(),
        "template": slot.name,
        "jobs_created": result.jobs_created,
        "completed_job_id": first["id"],
        "receipt_attached": completion.receipt_attached,
        "remaining_pending": len(jobs.list_jobs(status="pending", day=day).jobs),
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run an end-to-end smoke test that seeds a client, stages stops into a template, "
            "assigns it to a date and completes the first generated job."
        )
    )
    parser.add_argument("--date", help="ISO date (YYYY-MM-DD) to assign. Defaults to tomorrow.")
    parser.add_argument("--template", type=int, default=1, help="Template number (1-21).")
    parser.add_argument("--receipt", type=Path, help="Optional image to attach when completing the job.")
    parser.add_argument("--actor", default="workflow_smoke", help="Audit trail actor name.")
    return parser.parse_args()


def main() -> None:
    init_database()
    args = parse_args()
    if args.date:
        try:
            day = datetime.date.fromisoformat(args.date)
        except ValueError as exc:
            raise SystemExit(f"Invalid --date value: {exc}") from exc
    else:
        day = _default_day()
    print(f"[workflow] Target date: {day.isoformat()}")
    summary = run_workflow(day, args.template - 1, args.actor, receipt_path=args.receipt)
    print(f"[workflow] Pending jobs left on {summary['date']}: {summary['remaining_pending']}")


if __name__ == "__main__":
    main()
