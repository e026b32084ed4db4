"""Fixed catalog of work route templates.

Exactly ``TEMPLATE_SLOT_COUNT`` slots exist at all times. A slot without a
stored row is synthesized as an empty template and only gets a row once it
holds at least one stop. Every write replaces the slot's whole stop list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

import database
from database import get_templates_by_slot, template_slot_name, write_template
from errors import RecordNotFound, StoreError, ValidationError
from notifications import change_feed
from stops import RouteStop, stop_matches, stops_from_payload, stops_to_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateSlot:
    index: int
    id: Optional[int]
    name: str
    stops: Tuple[RouteStop, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.stops

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "id": self.id,
            "name": self.name,
            "stops": stops_to_payload(self.stops),
            "stop_count": len(self.stops),
        }


def empty_slot(index: int) -> TemplateSlot:
    return TemplateSlot(index=index, id=None, name=template_slot_name(index), stops=())


class TemplateStore:
    def __init__(self, session_factory: Callable, *, slot_count: Optional[int] = None) -> None:
        self.session_factory = session_factory
        self.slot_count = slot_count or database.TEMPLATE_SLOT_COUNT
        self._slots: List[TemplateSlot] = [empty_slot(index) for index in range(self.slot_count)]

    @property
    def slots(self) -> Tuple[TemplateSlot, ...]:
        return tuple(self._slots)

    def slot(self, index: int) -> TemplateSlot:
        self._check_index(index)
        return self._slots[index]

    def load(self) -> Tuple[TemplateSlot, ...]:
        try:
            with self.session_factory() as session:
                rows = get_templates_by_slot(session)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load work route templates: {exc}") from exc
        slots = [empty_slot(index) for index in range(self.slot_count)]
        for slot_index, row in rows.items():
            if 0 <= slot_index < self.slot_count:
                slots[slot_index] = TemplateSlot(
                    index=slot_index,
                    id=row.id,
                    name=row.name or template_slot_name(slot_index),
                    stops=stops_from_payload(row.stops_list()),
                )
            else:
                logger.warning("Ignoring template row %s outside the catalog (slot %s)", row.id, slot_index)
        self._slots = slots
        return self.slots

    def save(
        self,
        index: int,
        stops: Iterable[RouteStop],
        existing_id: Optional[int] = None,
    ) -> TemplateSlot:
        """Persist ``stops`` as the slot's complete list and return the stored slot.

        A slot that was never stored and is saved empty is not written; it is
        reset to the canonical empty template instead. On failure the
        in-memory slot is left as it was.
        """
        self._check_index(index)
        stops = tuple(stops)
        if existing_id is None and not stops:
            self._slots[index] = empty_slot(index)
            return self._slots[index]
        session = self.session_factory()
        try:
            row = write_template(session, index, stops_to_payload(stops), existing_id)
            stored = TemplateSlot(
                index=index,
                id=row.id,
                name=row.name,
                stops=stops_from_payload(row.stops_list()),
            )
        except LookupError as exc:
            session.rollback()
            raise RecordNotFound(str(exc)) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(f"Could not save {template_slot_name(index)}: {exc}") from exc
        finally:
            session.close()
        self._slots[index] = stored
        change_feed.publish("work_route_templates")
        return stored

    def replace_in_memory(self, index: int, slot: TemplateSlot) -> None:
        self._check_index(index)
        self._slots[index] = slot

    def filter_slots(self, term: str) -> List[TemplateSlot]:
        needle = (term or "").strip().lower()
        if not needle:
            return list(self._slots)
        return [
            slot
            for slot in self._slots
            if needle in slot.name.lower() or any(stop_matches(stop, needle) for stop in slot.stops)
        ]

    def _check_index(self, index: int) -> None:
        if not isinstance(index, int) or not (0 <= index < self.slot_count):
            raise ValidationError(f"Template slot must be between 1 and {self.slot_count}.")
