"""FastAPI wrapper over the work route engine.

Each endpoint is one request/response action: it either returns refreshed
state or a single ``detail`` message. Templates are addressed by their
0-based slot index.
"""

from __future__ import annotations

import base64
import binascii
import datetime
import sys
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

# Ensure absolute imports (e.g., "import database") resolve when run from the repo root.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import init_database, list_client_branches, list_clients, list_employees  # noqa: E402
from errors import RecordNotFound, StoreError, ValidationError  # noqa: E402
from jobs import JobService  # noqa: E402
from materializer import AssignmentMaterializer  # noqa: E402
from receipts import ReceiptImage  # noqa: E402
from stop_editor import StopEditor  # noqa: E402
from template_store import TemplateStore  # noqa: E402


class RouteWorkspace:
    """Services sharing one template catalog for the lifetime of the app."""

    def __init__(self, session_factory, *, receipt_store=None) -> None:
        self.store = TemplateStore(session_factory)
        self.editor = StopEditor(self.store, session_factory)
        self.materializer = AssignmentMaterializer(self.store, session_factory)
        self.jobs = JobService(session_factory, receipt_store=receipt_store)

    def refresh(self) -> None:
        self.store.load()
        self.materializer.load()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database()
    workspace = RouteWorkspace(database.SessionLocal)
    workspace.refresh()
    app.state.workspace = workspace
    yield


app = FastAPI(title="Work Route Assistant API", version="0.1", lifespan=lifespan)


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_workspace(request: Request) -> RouteWorkspace:
    return request.app.state.workspace


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=exc.message) from exc
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail=f"store failure: {exc}") from exc


def _parse_date(value: Any, field: str = "date") -> datetime.date:
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _parse_datetime(value: Any, field: str = "scheduled_date") -> datetime.datetime:
    try:
        return datetime.datetime.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be an ISO date and time")


def _optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{key} must be an integer")


def _int_list(payload: Dict[str, Any], key: str) -> List[int]:
    values = payload.get(key)
    if values in (None, ""):
        return []
    if not isinstance(values, list):
        raise HTTPException(status_code=400, detail=f"{key} must be a list of integers")
    try:
        return [int(value) for value in values]
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{key} must be a list of integers")


def _key_list(payload: Dict[str, Any]) -> List[str]:
    keys = payload.get("keys")
    if keys is None:
        return []
    if not isinstance(keys, list) or not all(isinstance(key, str) for key in keys):
        raise HTTPException(status_code=400, detail="keys must be a list of stop keys")
    return keys


def _receipt_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[ReceiptImage]:
    if not payload:
        return None
    try:
        data = base64.b64decode(payload.get("data") or "", validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="receipt data must be base64 encoded")
    if not data:
        return None
    return ReceiptImage(
        filename=str(payload.get("filename") or "receipt.jpg"),
        content_type=str(payload.get("content_type") or "application/octet-stream"),
        data=data,
    )


def _actor(payload: Optional[Dict[str, Any]]) -> str:
    return ((payload or {}).get("actor") or "api").strip() or "api"


def _slot_payload(workspace: RouteWorkspace, index: int) -> Dict[str, Any]:
    return workspace.store.slot(index).to_dict()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Directory


@app.get("/api/v1/employees")
def employees(include_inactive: bool = Query(False), db=Depends(get_db)) -> JSONResponse:
    with _translate_errors():
        payload = list_employees(db, only_active=not include_inactive)
    return JSONResponse(content=jsonable_encoder({"employees": payload}))


@app.get("/api/v1/clients")
def clients(db=Depends(get_db)) -> JSONResponse:
    with _translate_errors():
        payload = list_clients(db)
    return JSONResponse(content=jsonable_encoder({"clients": payload}))


@app.get("/api/v1/clients/{client_id}/branches")
def client_branches(client_id: int, db=Depends(get_db)) -> JSONResponse:
    with _translate_errors():
        payload = list_client_branches(db, client_id)
    return JSONResponse(content=jsonable_encoder({"client_id": client_id, "branches": payload}))


# ---------------------------------------------------------------------------
# Templates and stops


@app.get("/api/v1/templates")
def templates(search: Optional[str] = Query(None), workspace=Depends(get_workspace)) -> JSONResponse:
    with _translate_errors():
        workspace.store.load()
        slots = workspace.store.filter_slots(search or "")
    return JSONResponse(content=jsonable_encoder({"templates": [slot.to_dict() for slot in slots]}))


@app.get("/api/v1/templates/{index}/stops")
def template_stops(
    index: int,
    search: Optional[str] = Query(None),
    workspace=Depends(get_workspace),
) -> JSONResponse:
    with _translate_errors():
        slot = workspace.store.slot(index)
        stops = workspace.editor.filter_stops(index, search or "")
    return JSONResponse(
        content=jsonable_encoder(
            {
                "index": index,
                "name": slot.name,
                "total": len(slot.stops),
                "stops": [dict(stop.to_dict(), key=stop.key) for stop in stops],
            }
        )
    )


@app.get("/api/v1/pending")
def pending(workspace=Depends(get_workspace)) -> JSONResponse:
    editor = workspace.editor
    return JSONResponse(
        content=jsonable_encoder(
            {
                "template_index": editor.pending_index,
                "working_time": editor.working_time,
                "stops": [dict(stop.to_dict(), key=stop.key) for stop in editor.pending],
            }
        )
    )


@app.post("/api/v1/templates/{index}/pending")
def stage_pending(index: int, payload: Dict[str, Any], workspace=Depends(get_workspace)) -> JSONResponse:
    with _translate_errors():
        added = workspace.editor.stage_stops(
            index,
            _optional_int(payload, "employee_id"),
            _optional_int(payload, "client_id"),
            _int_list(payload, "branch_ids"),
            payload.get("time"),
        )
    return JSONResponse(
        content=jsonable_encoder(
            {
                "added": [dict(stop.to_dict(), key=stop.key) for stop in added],
                "pending": [dict(stop.to_dict(), key=stop.key) for stop in workspace.editor.pending],
                "working_time": workspace.editor.working_time,
            }
        )
    )


@app.delete("/api/v1/pending")
def clear_pending(key: Optional[str] = Query(None), workspace=Depends(get_workspace)) -> JSONResponse:
    with _translate_errors():
        if key:
            workspace.editor.unstage_stop(key)
        else:
            workspace.editor.clear_pending()
    return JSONResponse(
        content=jsonable_encoder({"pending": [stop.to_dict() for stop in workspace.editor.pending]})
    )


@app.post("/api/v1/templates/{index}/pending/commit")
def commit_pending(index: int, workspace=Depends(get_workspace)) -> JSONResponse:
    with _translate_errors():
        slot = workspace.editor.commit_pending(index)
    return JSONResponse(content=jsonable_encoder(slot.to_dict()))


@app.delete("/api/v1/templates/{index}/stops")
def remove_stop(index: int, key: str = Query(...), workspace=Depends(get_workspace)) -> JSONResponse:
    with _translate_errors():
        slot = workspace.editor.remove_stop(index, key)
    return JSONResponse(content=jsonable_encoder(slot.to_dict()))


@app.put("/api/v1/templates/{index}/stops")
def edit_stop(index: int, payload: Dict[str, Any], workspace=Depends(get_workspace)) -> JSONResponse:
    key = payload.get("key")
    if not key:
        raise HTTPException(status_code=400, detail="key is required")
    with _translate_errors():
        slot = workspace.editor.edit_stop(
            index,
            key,
            employee_id=_optional_int(payload, "employee_id"),
            client_id=_optional_int(payload, "client_id"),
            branch_id=_optional_int(payload, "branch_id"),
            time=payload.get("time"),
        )
    return JSONResponse(content=jsonable_encoder(slot.to_dict()))


@app.post("/api/v1/templates/{index}/stops/reassign")
def reassign_stops(index: int, payload: Dict[str, Any], workspace=Depends(get_workspace)) -> JSONResponse:
    with _translate_errors():
        slot = workspace.editor.bulk_reassign_employee(
            index,
            _key_list(payload),
            _optional_int(payload, "employee_id"),
        )
    return JSONResponse(content=jsonable_encoder(slot.to_dict()))


@app.post("/api/v1/templates/{index}/stops/move")
def move_stops(index: int, payload: Dict[str, Any], workspace=Depends(get_workspace)) -> JSONResponse:
    target = _optional_int(payload, "target_index")
    if target is None:
        raise HTTPException(status_code=400, detail="target_index is required")
    with _translate_errors():
        source_slot, target_slot = workspace.editor.move_stops(index, target, _key_list(payload))
    return JSONResponse(
        content=jsonable_encoder({"source": source_slot.to_dict(), "target": target_slot.to_dict()})
    )


# ---------------------------------------------------------------------------
# Assignments


@app.get("/api/v1/assignments")
def assignments(workspace=Depends(get_workspace)) -> JSONResponse:
    with _translate_errors():
        mapping = workspace.materializer.load()
    return JSONResponse(
        content=jsonable_encoder(
            {"assignments": {day.isoformat(): index for day, index in sorted(mapping.items())}}
        )
    )


@app.get("/api/v1/assignments/calendar/{year}/{month}")
def assignment_calendar(year: int, month: int, workspace=Depends(get_workspace)) -> JSONResponse:
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="month must be between 1 and 12")
    with _translate_errors():
        weeks = workspace.materializer.month_calendar(year, month)
    return JSONResponse(content=jsonable_encoder({"year": year, "month": month, "weeks": weeks}))


@app.put("/api/v1/assignments/{day}")
def assign_template(day: str, payload: Dict[str, Any], workspace=Depends(get_workspace)) -> JSONResponse:
    target_day = _parse_date(day)
    template_index = _optional_int(payload, "template_index")
    if template_index is None:
        raise HTTPException(status_code=400, detail="template_index is required")
    with _translate_errors():
        result = workspace.materializer.assign(target_day, template_index, actor=_actor(payload))
    return JSONResponse(content=jsonable_encoder(result.to_dict()))


@app.delete("/api/v1/assignments/{day}")
def unassign_template(day: str, actor: str = Query("api"), workspace=Depends(get_workspace)) -> JSONResponse:
    target_day = _parse_date(day)
    with _translate_errors():
        deleted = workspace.materializer.unassign(target_day, actor=actor)
    return JSONResponse(content=jsonable_encoder({"date": target_day.isoformat(), "jobs_deleted": deleted}))


# ---------------------------------------------------------------------------
# Jobs


@app.get("/api/v1/jobs")
def jobs(
    status: Optional[str] = Query(None),
    employee_id: Optional[int] = Query(None),
    day: Optional[str] = Query(None, alias="date"),
    date_field: str = Query("scheduled"),
    search: Optional[str] = Query(None),
    sort: str = Query("desc"),
    page: int = Query(1),
    page_size: int = Query(50),
    workspace=Depends(get_workspace),
) -> JSONResponse:
    selected_day = _parse_date(day) if day else None
    with _translate_errors():
        result = workspace.jobs.list_jobs(
            status=status,
            employee_id=employee_id,
            day=selected_day,
            date_field=date_field,
            search=search,
            sort=sort,
            page=page,
            page_size=page_size,
        )
    return JSONResponse(
        content=jsonable_encoder(
            {"jobs": result.jobs, "total": result.total, "page": result.page, "page_size": result.page_size}
        )
    )


@app.post("/api/v1/jobs")
def create_job(payload: Dict[str, Any], workspace=Depends(get_workspace)) -> JSONResponse:
    branch_id = _optional_int(payload, "branch_id")
    employee_id = _optional_int(payload, "employee_id")
    if branch_id is None or employee_id is None or not payload.get("scheduled_date"):
        raise HTTPException(status_code=400, detail="branch_id, employee_id and scheduled_date are required")
    with _translate_errors():
        job = workspace.jobs.create_job(
            branch_id=branch_id,
            employee_id=employee_id,
            scheduled_date=_parse_datetime(payload["scheduled_date"]),
            note=payload.get("note"),
            actor=_actor(payload),
        )
    return JSONResponse(status_code=201, content=jsonable_encoder(job))


@app.get("/api/v1/jobs/{job_id}")
def job_detail(job_id: int, workspace=Depends(get_workspace)) -> JSONResponse:
    with _translate_errors():
        job = workspace.jobs.get_job(job_id)
    return JSONResponse(content=jsonable_encoder(job))


@app.put("/api/v1/jobs/{job_id}")
def update_job(job_id: int, payload: Dict[str, Any], workspace=Depends(get_workspace)) -> JSONResponse:
    changes: Dict[str, Any] = {}
    if "note" in payload:
        changes["note"] = payload.get("note")
    if payload.get("scheduled_date"):
        changes["scheduled_date"] = _parse_datetime(payload["scheduled_date"])
    with _translate_errors():
        job = workspace.jobs.update_job(
            job_id,
            employee_id=_optional_int(payload, "employee_id"),
            actor=_actor(payload),
            **changes,
        )
    return JSONResponse(content=jsonable_encoder(job))


@app.post("/api/v1/jobs/bulk-update")
def bulk_update_jobs(payload: Dict[str, Any], workspace=Depends(get_workspace)) -> JSONResponse:
    day = _parse_date(payload.get("date")) if payload.get("date") else None
    with _translate_errors():
        updated = workspace.jobs.bulk_update_jobs(
            _int_list(payload, "job_ids"),
            employee_id=_optional_int(payload, "employee_id"),
            day=day,
            actor=_actor(payload),
        )
    return JSONResponse(content=jsonable_encoder({"jobs": updated}))


@app.delete("/api/v1/jobs/{job_id}")
def delete_job(job_id: int, actor: str = Query("api"), workspace=Depends(get_workspace)) -> JSONResponse:
    with _translate_errors():
        workspace.jobs.delete_job(job_id, actor=actor)
    return JSONResponse(content={"id": job_id, "deleted": True})


@app.post("/api/v1/jobs/{job_id}/complete")
def complete_job(
    job_id: int,
    payload: Optional[Dict[str, Any]] = None,
    workspace=Depends(get_workspace),
) -> JSONResponse:
    receipt = _receipt_from_payload((payload or {}).get("receipt"))
    with _translate_errors():
        completion = workspace.jobs.complete_job(job_id, receipt, actor=_actor(payload))
    return JSONResponse(
        content=jsonable_encoder(
            {
                "job": completion.job,
                "receipt_attached": completion.receipt_attached,
                "jobs": completion.jobs,
            }
        )
    )


@app.post("/api/v1/jobs/{job_id}/receipt")
def replace_receipt(job_id: int, payload: Dict[str, Any], workspace=Depends(get_workspace)) -> JSONResponse:
    receipt = _receipt_from_payload(payload.get("receipt"))
    if receipt is None:
        raise HTTPException(status_code=400, detail="receipt is required")
    with _translate_errors():
        job = workspace.jobs.replace_receipt(job_id, receipt, actor=_actor(payload))
    return JSONResponse(content=jsonable_encoder(job))


@app.get("/api/v1/employees/{employee_id}/jobs")
def employee_jobs(
    employee_id: int,
    status: str = Query("pending"),
    until: Optional[str] = Query(None),
    workspace=Depends(get_workspace),
) -> JSONResponse:
    if status not in {"pending", "completed"}:
        raise HTTPException(status_code=400, detail="status must be pending or completed")
    until_day = _parse_date(until, "until") if until else None
    with _translate_errors():
        payload = workspace.jobs.list_employee_jobs(employee_id, status=status, until=until_day)
    return JSONResponse(content=jsonable_encoder({"employee_id": employee_id, "jobs": payload}))
