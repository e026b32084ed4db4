"""Editing operations over one template's stop list.

Every operation builds a brand-new tuple of stops and hands it to the
``TemplateStore``; stop lists are never patched in place. Validation errors
are raised before anything is written.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from database import Branch, Client, Employee
from errors import RecordNotFound, StoreError, ValidationError
from stops import (
    DEFAULT_STOP_TIME,
    STOP_TIME_STEP_MINUTES,
    RouteStop,
    advance_time,
    duplicate_keys,
    normalize_time,
    sort_stops,
    stop_key,
    stop_keys,
    stop_matches,
)
from template_store import TemplateSlot, TemplateStore

logger = logging.getLogger(__name__)


class StopEditor:
    def __init__(self, store: TemplateStore, session_factory: Callable) -> None:
        self.store = store
        self.session_factory = session_factory
        self.working_time = DEFAULT_STOP_TIME
        self._pending: Tuple[RouteStop, ...] = ()
        self._pending_index: Optional[int] = None

    # ------------------------------------------------------------------
    # Pending list

    @property
    def pending(self) -> Tuple[RouteStop, ...]:
        return self._pending

    @property
    def pending_index(self) -> Optional[int]:
        return self._pending_index if self._pending else None

    def stage_stops(
        self,
        template_index: int,
        employee_id: Optional[int],
        client_id: Optional[int],
        branch_ids: Optional[Sequence[int]],
        time: Optional[str] = None,
    ) -> Tuple[RouteStop, ...]:
        """Add one pending stop per selected branch and return the ones added."""
        slot = self.store.slot(template_index)
        if self._pending and self._pending_index != template_index:
            raise ValidationError(
                f"Pending stops belong to template {self._pending_index + 1}; commit or clear them first."
            )
        stop_time = normalize_time(time if time is not None else self.working_time)
        candidates = self._build_candidates(employee_id, client_id, branch_ids, stop_time)

        seen = stop_keys(slot.stops) | stop_keys(self._pending)
        survivors: List[RouteStop] = []
        for candidate in candidates:
            key = stop_key(candidate)
            if key in seen:
                continue
            seen.add(key)
            survivors.append(candidate)
        if not survivors:
            raise ValidationError("This stop already exists in the template at the same time with the same employee.")

        self._pending = sort_stops(self._pending + tuple(survivors))
        self._pending_index = template_index
        self.working_time = advance_time(stop_time, STOP_TIME_STEP_MINUTES)
        return tuple(survivors)

    def unstage_stop(self, key: str) -> Tuple[RouteStop, ...]:
        remaining = tuple(stop for stop in self._pending if stop_key(stop) != key)
        if len(remaining) == len(self._pending):
            raise ValidationError("The pending stop was not found.")
        self._pending = remaining
        return self._pending

    def clear_pending(self) -> None:
        self._pending = ()
        self._pending_index = None

    def commit_pending(self, template_index: int) -> TemplateSlot:
        if not self._pending or self._pending_index != template_index:
            raise ValidationError("There are no pending stops to add to this template.")
        slot = self.store.slot(template_index)
        existing = stop_keys(slot.stops)
        survivors = tuple(stop for stop in self._pending if stop_key(stop) not in existing)
        if not survivors:
            raise ValidationError("All pending stops already exist in the template.")
        stored = self.store.save(template_index, sort_stops(slot.stops + survivors), slot.id)
        self.clear_pending()
        return stored

    # ------------------------------------------------------------------
    # Stored stops

    def remove_stop(self, template_index: int, key: str) -> TemplateSlot:
        snapshot = self.store.slot(template_index)
        remaining = tuple(stop for stop in snapshot.stops if stop_key(stop) != key)
        if len(remaining) == len(snapshot.stops):
            raise ValidationError("The stop was not found in the template.")
        self.store.replace_in_memory(
            template_index,
            TemplateSlot(index=snapshot.index, id=snapshot.id, name=snapshot.name, stops=remaining),
        )
        try:
            return self.store.save(template_index, remaining, snapshot.id)
        except Exception:
            self.store.replace_in_memory(template_index, snapshot)
            raise

    def edit_stop(
        self,
        template_index: int,
        key: str,
        *,
        employee_id: Optional[int] = None,
        client_id: Optional[int] = None,
        branch_id: Optional[int] = None,
        time: Optional[str] = None,
    ) -> TemplateSlot:
        slot = self.store.slot(template_index)
        position = _find_stop(slot.stops, key)
        if position is None:
            raise ValidationError("The stop was not found in the template.")
        original = slot.stops[position]
        updated = self._apply_edit(original, employee_id, client_id, branch_id, time)
        new_key = stop_key(updated)
        if any(stop_key(stop) == new_key for idx, stop in enumerate(slot.stops) if idx != position):
            raise ValidationError("Another stop in this template already has this branch, time and employee.")
        stops = list(slot.stops)
        stops[position] = updated
        return self.store.save(template_index, sort_stops(stops), slot.id)

    def bulk_reassign_employee(
        self,
        template_index: int,
        keys: Iterable[str],
        employee_id: Optional[int],
    ) -> TemplateSlot:
        selected = set(keys or [])
        if not selected:
            raise ValidationError("Select at least one stop.")
        slot = self.store.slot(template_index)
        if not any(stop_key(stop) in selected for stop in slot.stops):
            raise ValidationError("None of the selected stops were found in the template.")
        employee = self._active_employee(employee_id)
        stops = [
            stop.with_changes(employee_id=employee.id, employee_name=employee.full_name)
            if stop_key(stop) in selected
            else stop
            for stop in slot.stops
        ]
        collisions = duplicate_keys(stops)
        if collisions:
            raise ValidationError(
                f"Reassigning to {employee.full_name} would create {len(collisions)} duplicate stop(s)."
            )
        return self.store.save(template_index, sort_stops(stops), slot.id)

    def move_stops(
        self,
        source_index: int,
        target_index: int,
        keys: Iterable[str],
    ) -> Tuple[TemplateSlot, TemplateSlot]:
        """Move the selected stops to another template and return (source, target)."""
        if source_index == target_index:
            raise ValidationError("Choose a different template to move the stops to.")
        selected = set(keys or [])
        source = self.store.slot(source_index)
        target = self.store.slot(target_index)
        moved = tuple(stop for stop in source.stops if stop_key(stop) in selected)
        if not moved:
            raise ValidationError("None of the selected stops were found in the template.")
        remaining = tuple(stop for stop in source.stops if stop_key(stop) not in selected)
        clashes = stop_keys(moved) & stop_keys(target.stops)
        if clashes:
            raise ValidationError(
                f"{len(clashes)} of the selected stops already exist in {target.name}."
            )
        # Target first: a failure on the source write leaves stops duplicated, never lost.
        stored_target = self.store.save(target_index, sort_stops(target.stops + moved), target.id)
        stored_source = self.store.save(source_index, remaining, source.id)
        logger.info(
            "Moved %d stop(s) from %s to %s", len(moved), stored_source.name, stored_target.name
        )
        return stored_source, stored_target

    def filter_stops(self, template_index: int, term: str) -> List[RouteStop]:
        slot = self.store.slot(template_index)
        return [stop for stop in slot.stops if stop_matches(stop, term)]

    # ------------------------------------------------------------------
    # Directory lookups

    def _build_candidates(
        self,
        employee_id: Optional[int],
        client_id: Optional[int],
        branch_ids: Optional[Sequence[int]],
        stop_time: str,
    ) -> List[RouteStop]:
        if not employee_id:
            raise ValidationError("Select an employee.")
        if not client_id or not branch_ids:
            raise ValidationError("Select a client and at least one branch.")
        employee = self._active_employee(employee_id)
        client, branches = self._client_branches(client_id, branch_ids)
        return [
            RouteStop(
                branch_id=branch.id,
                employee_id=employee.id,
                client_id=client.id,
                time=stop_time,
                employee_name=employee.full_name,
                client_name=client.full_name,
                branch_name=branch.name,
                branch_address=branch.address,
            )
            for branch in branches
        ]

    def _apply_edit(
        self,
        stop: RouteStop,
        employee_id: Optional[int],
        client_id: Optional[int],
        branch_id: Optional[int],
        time: Optional[str],
    ) -> RouteStop:
        changes: Dict[str, object] = {}
        if time is not None:
            changes["time"] = normalize_time(time)
        if employee_id is not None and int(employee_id) != stop.employee_id:
            employee = self._active_employee(employee_id)
            changes.update(employee_id=employee.id, employee_name=employee.full_name)
        client_changed = client_id is not None and int(client_id) != stop.client_id
        branch_changed = branch_id is not None and int(branch_id) != stop.branch_id
        if client_changed and not branch_changed:
            raise ValidationError("Select a branch of the new client.")
        if branch_changed:
            client, branches = self._client_branches(client_id or stop.client_id, [branch_id])
            branch = branches[0]
            changes.update(
                client_id=client.id,
                client_name=client.full_name,
                branch_id=branch.id,
                branch_name=branch.name,
                branch_address=branch.address,
            )
        return stop.with_changes(**changes) if changes else stop

    def _active_employee(self, employee_id: Optional[int]) -> Employee:
        if not employee_id:
            raise ValidationError("Select an employee.")
        try:
            with self.session_factory() as session:
                employee = session.get(Employee, int(employee_id))
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load employee: {exc}") from exc
        if not employee:
            raise RecordNotFound(f"Employee {employee_id} was not found.")
        if not employee.is_active:
            raise ValidationError(f"{employee.full_name} is inactive and cannot be assigned.")
        return employee

    def _client_branches(self, client_id: int, branch_ids: Sequence[int]) -> Tuple[Client, List[Branch]]:
        wanted: List[int] = []
        for value in branch_ids:
            if int(value) not in wanted:
                wanted.append(int(value))
        try:
            with self.session_factory() as session:
                client = session.get(Client, int(client_id))
                rows = {
                    row.id: row
                    for row in session.scalars(select(Branch).where(Branch.id.in_(wanted)))
                }
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load branches: {exc}") from exc
        if not client:
            raise RecordNotFound(f"Client {client_id} was not found.")
        branches: List[Branch] = []
        for branch_id in wanted:
            branch = rows.get(branch_id)
            if not branch:
                raise RecordNotFound(f"Branch {branch_id} was not found.")
            if branch.client_id != client.id:
                raise ValidationError(f"Branch {branch.name} does not belong to {client.full_name}.")
            branches.append(branch)
        return client, branches


def _find_stop(stops: Sequence[RouteStop], key: str) -> Optional[int]:
    for index, stop in enumerate(stops):
        if stop_key(stop) == key:
            return index
    return None
