"""Mutation events for caches that mirror the project list.

A UI cache subscribes once and applies each event locally instead of
re-querying the whole list after every edit.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    TAGS_CHANGED = "tags_changed"
    RATING_CHANGED = "rating_changed"
    ENTRY_REMOVED = "entry_removed"
    PROJECT_SCANNED = "project_scanned"


@dataclass
class ProjectEvent:
    kind: EventKind
    entry_id: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[ProjectEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: ProjectEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event listener failed for %s", event.kind.value)
