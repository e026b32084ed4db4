"""Job records: the pending -> completed lifecycle and manual job upkeep."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from database import (
    Branch,
    Client,
    Employee,
    Job,
    day_bounds,
    hydrate_jobs,
    job_to_dict,
    record_audit_log,
)
from errors import RecordNotFound, StoreError, ValidationError
from notifications import change_feed
from receipts import (
    ImageCompressor,
    LocalReceiptStore,
    ObjectStore,
    ReceiptImage,
    compress_receipt_image,
    receipt_object_name,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
_UNSET: Any = object()


@dataclass
class JobCompletion:
    job: Dict[str, Any]
    receipt_attached: bool
    jobs: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class JobPage:
    jobs: List[Dict[str, Any]]
    total: int
    page: int
    page_size: int


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _clean_note(note: Optional[str]) -> Optional[str]:
    if note is None:
        return None
    text = str(note).strip()
    return text or None


class JobService:
    def __init__(
        self,
        session_factory: Callable,
        *,
        receipt_store: Optional[ObjectStore] = None,
        compressor: Optional[ImageCompressor] = None,
    ) -> None:
        self.session_factory = session_factory
        self.receipt_store = receipt_store if receipt_store is not None else LocalReceiptStore()
        self.compressor = compressor or compress_receipt_image

    # ------------------------------------------------------------------
    # Lifecycle

    def complete_job(
        self,
        job_id: int,
        receipt: Optional[ReceiptImage] = None,
        *,
        actor: str = "system",
    ) -> JobCompletion:
        """Mark a job completed, then attach the receipt best-effort.

        Only the first write can fail the call. The receipt upload and the
        refreshed read that follow it are logged and skipped on error.
        """
        image = self._compress(receipt) if receipt is not None else None

        with self.session_factory() as session:
            job = self._get_job(session, job_id)
            if job.status == "completed":
                raise ValidationError("This job is already completed.")
            job.status = "completed"
            job.completed_date = _utcnow()
            try:
                record_audit_log(
                    session,
                    user_id=actor,
                    action="JOB_COMPLETE",
                    target_id=job_id,
                    payload={"receipt_provided": image is not None},
                    commit=False,
                )
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise StoreError(f"Could not complete job {job_id}: {exc}") from exc
            employee_id = job.employee_id
            completed = job_to_dict(job)
        change_feed.publish("jobs")

        attached = False
        if image is not None:
            attached = self._attach_receipt(job_id, image, actor)
        logger.info("Job %s completed (receipt attached: %s)", job_id, attached)

        try:
            with self.session_factory() as session:
                completed = hydrate_jobs(session, [self._get_job(session, job_id)])[0]
            pending = self.list_employee_jobs(employee_id, status="pending", until=datetime.date.today())
        except SQLAlchemyError as exc:
            logger.warning("Could not refresh jobs after completing job %s: %s", job_id, exc)
            pending = []
        return JobCompletion(job=completed, receipt_attached=attached, jobs=pending)

    def _compress(self, receipt: ReceiptImage) -> ReceiptImage:
        try:
            return self.compressor(receipt)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Receipt compression failed for %s: %s", receipt.filename, exc)
            return receipt

    def _attach_receipt(self, job_id: int, image: ReceiptImage, actor: str) -> bool:
        """Upload the receipt and link it to the job; failures are logged, never raised."""
        try:
            reference = self.receipt_store.store(
                receipt_object_name(job_id, image), image.data, image.content_type
            )
            with self.session_factory() as session:
                job = self._get_job(session, job_id)
                job.receipt_url = reference
                record_audit_log(
                    session,
                    user_id=actor,
                    action="JOB_RECEIPT_ATTACH",
                    target_id=job_id,
                    payload={"receipt_url": reference},
                    commit=False,
                )
                session.commit()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error uploading receipt for job %s: %s", job_id, exc)
            return False
        change_feed.publish("jobs")
        return True

    def replace_receipt(self, job_id: int, receipt: ReceiptImage, *, actor: str = "system") -> Dict[str, Any]:
        """Swap the receipt of a completed job; the old object is removed best-effort."""
        if not receipt.is_image:
            raise ValidationError("Choose a valid image file.")
        image = self._compress(receipt)
        with self.session_factory() as session:
            job = self._get_job(session, job_id)
            if job.status != "completed":
                raise ValidationError("Only completed jobs carry a receipt.")
            old_reference = job.receipt_url
            reference = self.receipt_store.store(
                receipt_object_name(job_id, image), image.data, image.content_type
            )
            job.receipt_url = reference
            try:
                record_audit_log(
                    session,
                    user_id=actor,
                    action="JOB_RECEIPT_REPLACE",
                    target_id=job_id,
                    payload={"receipt_url": reference},
                    commit=False,
                )
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                self._remove_receipt(reference)
                raise StoreError(f"Could not update receipt for job {job_id}: {exc}") from exc
            payload = hydrate_jobs(session, [job])[0]
        if old_reference:
            self._remove_receipt(old_reference)
        change_feed.publish("jobs")
        return payload

    def _remove_receipt(self, reference: str) -> None:
        try:
            self.receipt_store.remove(reference)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not remove receipt %s: %s", reference, exc)

    # ------------------------------------------------------------------
    # Manual upkeep

    def create_job(
        self,
        *,
        branch_id: int,
        employee_id: int,
        scheduled_date: datetime.datetime,
        note: Optional[str] = None,
        actor: str = "system",
    ) -> Dict[str, Any]:
        if not isinstance(scheduled_date, datetime.datetime):
            raise ValidationError("Scheduled date must include a date and a time.")
        with self.session_factory() as session:
            self._require_active_employee(session, employee_id)
            if not session.get(Branch, branch_id):
                raise RecordNotFound(f"Branch {branch_id} was not found.")
            job = Job(
                branch_id=branch_id,
                employee_id=employee_id,
                scheduled_date=scheduled_date.replace(tzinfo=None),
                status="pending",
                note=_clean_note(note),
            )
            session.add(job)
            self._commit(session, "create job", actor=actor, action="JOB_CREATE", job=job)
            payload = hydrate_jobs(session, [job])[0]
        change_feed.publish("jobs")
        return payload

    def update_job(
        self,
        job_id: int,
        *,
        employee_id: Optional[int] = None,
        scheduled_date: Optional[datetime.datetime] = None,
        note: Any = _UNSET,
        actor: str = "system",
    ) -> Dict[str, Any]:
        with self.session_factory() as session:
            job = self._get_job(session, job_id)
            if employee_id is not None and int(employee_id) != job.employee_id:
                self._require_active_employee(session, employee_id)
                job.employee_id = int(employee_id)
            if scheduled_date is not None:
                if not isinstance(scheduled_date, datetime.datetime):
                    raise ValidationError("Scheduled date must include a date and a time.")
                job.scheduled_date = scheduled_date.replace(tzinfo=None)
            if note is not _UNSET:
                job.note = _clean_note(note)
            self._commit(session, f"update job {job_id}", actor=actor, action="JOB_UPDATE", job=job)
            payload = hydrate_jobs(session, [job])[0]
        change_feed.publish("jobs")
        return payload

    def bulk_update_jobs(
        self,
        job_ids: Iterable[int],
        *,
        employee_id: Optional[int],
        day: Optional[datetime.date],
        actor: str = "system",
    ) -> List[Dict[str, Any]]:
        """Give the selected jobs one employee and one date, keeping each job's time of day."""
        ids = sorted({int(value) for value in job_ids or []})
        if not ids:
            raise ValidationError("Select at least one job.")
        if not employee_id or day is None:
            raise ValidationError("Choose an employee and a date.")
        with self.session_factory() as session:
            self._require_active_employee(session, employee_id)
            jobs = list(session.scalars(select(Job).where(Job.id.in_(ids))))
            missing = set(ids) - {job.id for job in jobs}
            if missing:
                raise RecordNotFound(f"Jobs not found: {', '.join(str(value) for value in sorted(missing))}.")
            for job in jobs:
                job.employee_id = int(employee_id)
                job.scheduled_date = datetime.datetime.combine(day, job.scheduled_date.time())
            self._commit(
                session,
                "bulk update jobs",
                actor=actor,
                action="JOB_BULK_UPDATE",
                payload={"job_ids": ids, "employee_id": employee_id, "date": day.isoformat()},
            )
            payload = hydrate_jobs(session, jobs)
        change_feed.publish("jobs")
        return payload

    def delete_job(self, job_id: int, *, actor: str = "system") -> None:
        with self.session_factory() as session:
            job = self._get_job(session, job_id)
            reference = job.receipt_url
            session.execute(delete(Job).where(Job.id == job_id))
            self._commit(session, f"delete job {job_id}", actor=actor, action="JOB_DELETE", target_id=job_id)
        if reference:
            self._remove_receipt(reference)
        change_feed.publish("jobs")

    # ------------------------------------------------------------------
    # Queries

    def get_job(self, job_id: int) -> Dict[str, Any]:
        with self.session_factory() as session:
            return hydrate_jobs(session, [self._get_job(session, job_id)])[0]

    def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        employee_id: Optional[int] = None,
        day: Optional[datetime.date] = None,
        date_field: str = "scheduled",
        search: Optional[str] = None,
        sort: str = "desc",
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> JobPage:
        column = Job.completed_date if date_field == "completed" else Job.scheduled_date
        stmt = select(Job)
        if status and status.lower() != "all":
            if status.lower() not in {"pending", "completed"}:
                raise ValidationError(f"Unsupported job status '{status}'.")
            stmt = stmt.where(Job.status == status.lower())
        if employee_id:
            stmt = stmt.where(Job.employee_id == employee_id)
        if day is not None:
            start, end = day_bounds(day)
            stmt = stmt.where(column >= start, column < end)
        term = (search or "").strip().lower()
        if term:
            pattern = f"%{term}%"
            branch_match = select(Branch.id).join(Client, Client.id == Branch.client_id).where(
                or_(
                    func.lower(Branch.name).like(pattern),
                    func.lower(Branch.address).like(pattern),
                    func.lower(Client.full_name).like(pattern),
                )
            )
            employee_match = select(Employee.id).where(func.lower(Employee.full_name).like(pattern))
            stmt = stmt.where(
                or_(
                    Job.branch_id.in_(branch_match),
                    Job.employee_id.in_(employee_match),
                    func.lower(func.coalesce(Job.note, "")).like(pattern),
                )
            )
        page = max(1, int(page or 1))
        page_size = max(1, int(page_size or DEFAULT_PAGE_SIZE))
        order = column.asc() if sort == "asc" else column.desc()
        with self.session_factory() as session:
            total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
            rows = session.scalars(
                stmt.order_by(order, Job.id.asc()).offset((page - 1) * page_size).limit(page_size)
            )
            jobs = hydrate_jobs(session, rows)
        return JobPage(jobs=jobs, total=int(total), page=page, page_size=page_size)

    def list_employee_jobs(
        self,
        employee_id: int,
        *,
        status: str = "pending",
        until: Optional[datetime.date] = None,
    ) -> List[Dict[str, Any]]:
        """Jobs of one employee; pending ones due by ``until`` (inclusive) oldest first."""
        stmt = select(Job).where(Job.employee_id == employee_id, Job.status == status)
        if until is not None:
            _, end = day_bounds(until)
            stmt = stmt.where(Job.scheduled_date < end)
        if status == "completed":
            stmt = stmt.order_by(Job.completed_date.desc(), Job.id.desc())
        else:
            stmt = stmt.order_by(Job.scheduled_date.asc(), Job.id.asc())
        with self.session_factory() as session:
            return hydrate_jobs(session, session.scalars(stmt))

    # ------------------------------------------------------------------
    # Helpers

    def _get_job(self, session, job_id: int) -> Job:
        job = session.get(Job, job_id)
        if not job:
            raise RecordNotFound(f"Job {job_id} was not found.")
        return job

    def _require_active_employee(self, session, employee_id: int) -> Employee:
        employee = session.get(Employee, int(employee_id))
        if not employee:
            raise RecordNotFound(f"Employee {employee_id} was not found.")
        if not employee.is_active:
            raise ValidationError(f"{employee.full_name} is inactive and cannot be assigned.")
        return employee

    def _commit(
        self,
        session,
        what: str,
        *,
        actor: str,
        action: str,
        job: Optional[Job] = None,
        target_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Commit the pending changes together with their audit row."""
        try:
            session.flush()
            record_audit_log(
                session,
                user_id=actor,
                action=action,
                target_id=job.id if job is not None else target_id,
                payload=payload,
                commit=False,
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(f"Could not {what}: {exc}") from exc
