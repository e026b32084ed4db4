from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
DATABASE_URL = f"sqlite:///{(DATA_DIR / 'routes.db').as_posix()}"
TEMPLATE_SLOT_COUNT = 21
EMPLOYEE_STATUS_CHOICES = {"active", "inactive"}
JOB_STATUS_CHOICES = {"pending", "completed"}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def day_bounds(day: datetime.date) -> tuple[datetime.datetime, datetime.datetime]:
    """Return the [start, next-day start) window covering ``day``."""
    if isinstance(day, datetime.datetime):
        day = day.date()
    start = datetime.datetime.combine(day, datetime.time(0, 0))
    return start, start + datetime.timedelta(days=1)


class Base(DeclarativeBase):
    """Metadata for directory, route and job tables living in routes.db."""

    pass


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    status: Mapped[str] = mapped_column(String(12), default="active", nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )

    @property
    def is_active(self) -> bool:
        return (self.status or "").strip().lower() == "active"


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    branches: Mapped[List["Branch"]] = relationship(back_populates="client")


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    address: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    client: Mapped[Client] = relationship(back_populates="branches")


class WorkRouteTemplate(Base):
    __tablename__ = "work_route_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slot_index: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(40), nullable=False)
    stopsJSON: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )

    def stops_list(self) -> List[Dict[str, Any]]:
        try:
            value = json.loads(self.stopsJSON or "[]")
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
        except json.JSONDecodeError:
            pass
        return []


class WorkRouteAssignment(Base):
    __tablename__ = "work_route_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    template_index: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (UniqueConstraint("date", name="uq_work_route_assignment_date"),)


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Plain integers: a deleted branch or employee must not take its jobs with it.
    branch_id: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_date: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    completed_date: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    receipt_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Job")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(engine)


def template_slot_name(slot_index: int) -> str:
    return f"Template {slot_index + 1}"


# ---------------------------------------------------------------------------
# Directory: employees, clients, branches


def list_employees(session, only_active: bool = True) -> List[Dict[str, Any]]:
    stmt = select(Employee)
    if only_active:
        stmt = stmt.where(Employee.status == "active")
    stmt = stmt.order_by(Employee.full_name.asc())
    return [
        {
            "id": employee.id,
            "name": employee.full_name,
            "phone_number": employee.phone_number,
            "status": employee.status,
        }
        for employee in session.scalars(stmt)
    ]


def list_clients(session) -> List[Dict[str, Any]]:
    stmt = select(Client).order_by(Client.full_name.asc())
    return [{"id": client.id, "name": client.full_name} for client in session.scalars(stmt)]


def list_client_branches(session, client_id: int) -> List[Dict[str, Any]]:
    stmt = select(Branch).where(Branch.client_id == client_id).order_by(Branch.name.asc())
    return [
        {
            "id": branch.id,
            "client_id": branch.client_id,
            "name": branch.name,
            "address": branch.address,
        }
        for branch in session.scalars(stmt)
    ]


def existing_branch_ids(session, branch_ids: Iterable[int]) -> Set[int]:
    ids = {int(value) for value in branch_ids}
    if not ids:
        return set()
    stmt = select(Branch.id).where(Branch.id.in_(ids))
    return set(session.scalars(stmt))


def delete_branch(session, branch_id: int) -> None:
    """Remove a branch without touching template stops or jobs that reference it."""
    session.execute(delete(Branch).where(Branch.id == branch_id))
    session.commit()


# ---------------------------------------------------------------------------
# Work route templates and assignments


def get_templates_by_slot(session) -> Dict[int, WorkRouteTemplate]:
    stmt = select(WorkRouteTemplate).order_by(WorkRouteTemplate.slot_index.asc())
    return {row.slot_index: row for row in session.scalars(stmt)}


def write_template(
    session,
    slot_index: int,
    stops: List[Dict[str, Any]],
    template_id: Optional[int] = None,
) -> WorkRouteTemplate:
    if template_id is not None:
        template = session.get(WorkRouteTemplate, template_id)
        if not template:
            raise LookupError(f"Work route template with id {template_id} was not found.")
    else:
        template = WorkRouteTemplate(slot_index=slot_index)
        session.add(template)
    template.slot_index = slot_index
    template.name = template_slot_name(slot_index)
    template.stopsJSON = json.dumps(stops)
    session.commit()
    session.refresh(template)
    return template


def get_assignments(session) -> List[WorkRouteAssignment]:
    stmt = select(WorkRouteAssignment).order_by(WorkRouteAssignment.date.asc())
    return list(session.scalars(stmt))


def upsert_assignment(
    session,
    day: datetime.date,
    template_index: int,
    employee_id: Optional[int],
) -> WorkRouteAssignment:
    existing = session.scalars(select(WorkRouteAssignment).where(WorkRouteAssignment.date == day)).first()
    if existing:
        existing.template_index = template_index
        existing.employee_id = employee_id
        return existing
    assignment = WorkRouteAssignment(date=day, template_index=template_index, employee_id=employee_id)
    session.add(assignment)
    return assignment


def delete_jobs_for_day(session, day: datetime.date) -> int:
    start, end = day_bounds(day)
    result = session.execute(
        delete(Job).where(Job.scheduled_date >= start, Job.scheduled_date < end)
    )
    return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# Jobs


def job_to_dict(
    job: Job,
    branch: Optional[Branch] = None,
    client: Optional[Client] = None,
    employee: Optional[Employee] = None,
) -> Dict[str, Any]:
    return {
        "id": job.id,
        "branch_id": job.branch_id,
        "employee_id": job.employee_id,
        "scheduled_date": job.scheduled_date,
        "status": job.status,
        "completed_date": job.completed_date,
        "receipt_url": job.receipt_url,
        "note": job.note,
        "branch_name": branch.name if branch else None,
        "branch_address": branch.address if branch else None,
        "client_id": client.id if client else None,
        "client_name": client.full_name if client else None,
        "employee_name": employee.full_name if employee else None,
    }


def hydrate_jobs(session, jobs: Iterable[Job]) -> List[Dict[str, Any]]:
    """Attach branch, client and employee display data to job rows."""
    jobs = list(jobs)
    branch_ids = {job.branch_id for job in jobs}
    employee_ids = {job.employee_id for job in jobs}
    branches: Dict[int, Branch] = {}
    employees: Dict[int, Employee] = {}
    if branch_ids:
        branches = {row.id: row for row in session.scalars(select(Branch).where(Branch.id.in_(branch_ids)))}
    if employee_ids:
        employees = {
            row.id: row for row in session.scalars(select(Employee).where(Employee.id.in_(employee_ids)))
        }
    client_ids = {branch.client_id for branch in branches.values()}
    clients: Dict[int, Client] = {}
    if client_ids:
        clients = {row.id: row for row in session.scalars(select(Client).where(Client.id.in_(client_ids)))}
    payload = []
    for job in jobs:
        branch = branches.get(job.branch_id)
        client = clients.get(branch.client_id) if branch else None
        payload.append(job_to_dict(job, branch, client, employees.get(job.employee_id)))
    return payload


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Job",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> AuditLog:
    """Add an audit row; with ``commit=False`` it rides on the caller's transaction."""
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    if commit:
        session.commit()
    return log
