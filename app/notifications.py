from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

RECORD_KINDS = {
    "employees",
    "clients",
    "branches",
    "work_route_templates",
    "work_route_assignments",
    "jobs",
}

Listener = Callable[[str], None]


class ChangeFeed:
    """In-process "something changed, re-fetch" signal per record kind.

    Listeners receive only the kind that changed; no delta payload is sent.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def subscribe(self, kind: str, listener: Listener) -> Callable[[], None]:
        if kind not in RECORD_KINDS:
            raise ValueError(f"Unknown record kind '{kind}'.")
        self._listeners[kind].append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners[kind].remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, kind: str) -> None:
        for listener in list(self._listeners.get(kind, [])):
            try:
                listener(kind)
            except Exception:  # noqa: BLE001
                logger.exception("Change listener for %s failed", kind)

    def listener_count(self, kind: str) -> int:
        return len(self._listeners.get(kind, []))


change_feed = ChangeFeed()
