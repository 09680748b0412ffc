"""In-memory project model: the authoritative entry list plus its mutations.

Every mutation is persist-first: the sidecar (or rating file) is written, then
the in-memory entry is updated, then subscribers get an event.  A failed write
raises and leaves the in-memory state untouched.

Per-image writes are serialized by contract rather than by a lock table.  The
one overlap the engine itself could create, a manual edit landing on an image
whose AI caption is in flight, is rejected with ``AlreadyInProgress``; while
the manual write runs, the batch cannot start captioning that image.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from lorastudio.captioning.batch import (
    DEFAULT_CONCURRENCY,
    BatchHandle,
    ProgressFn,
)
from lorastudio.captioning.providers import CaptionProvider
from lorastudio.data import captions
from lorastudio.data.duplicates import find_duplicates
from lorastudio.data.events import EventBus, EventKind, ProjectEvent
from lorastudio.data.export import ExportResult, ExportSpec, export_dataset
from lorastudio.data.files import resolve_root
from lorastudio.data.ratings import RatingStore
from lorastudio.data.scanner import scan_project
from lorastudio.data.schema import DuplicateReport, ImageEntry, Rating
from lorastudio.errors import AlreadyInProgress, InvalidArgument, NotFound

logger = logging.getLogger(__name__)


@dataclass
class TagChange:
    entry_id: str
    previous_tags: List[str]
    new_tags: List[str]


class Project:
    def __init__(self, root: Union[str, Path], *, recursive: bool = True):
        self.root = resolve_root(root)
        self.recursive = recursive
        self.ratings = RatingStore(self.root)
        self.events = EventBus()
        self._lock = threading.RLock()
        self._entries: List[ImageEntry] = []
        self._by_id: Dict[str, ImageEntry] = {}
        self._batch: Optional[BatchHandle] = None

    @classmethod
    def open(cls, root: Union[str, Path], *, recursive: bool = True, progress: bool = False) -> "Project":
        project = cls(root, recursive=recursive)
        project.scan(progress=progress)
        return project

    # -- reading --------------------------------------------------------

    def scan(self, progress: bool = False) -> List[ImageEntry]:
        entries = scan_project(self.root, recursive=self.recursive, ratings=self.ratings, progress=progress)
        with self._lock:
            self._entries = entries
            self._by_id = {e.id: e for e in entries}
        self.events.emit(ProjectEvent(EventKind.PROJECT_SCANNED, data={"count": len(entries)}))
        return list(entries)

    @property
    def entries(self) -> List[ImageEntry]:
        with self._lock:
            return list(self._entries)

    def get(self, entry_id: str) -> ImageEntry:
        with self._lock:
            entry = self._by_id.get(entry_id)
        if entry is None:
            raise NotFound(f"Image '{entry_id}' not found in project {self.root}")
        return entry

    def find_by_path(self, relative_path: str) -> ImageEntry:
        wanted = relative_path.replace("\\", "/").lstrip("/")
        with self._lock:
            for entry in self._entries:
                if entry.relative_path == wanted:
                    return entry
        raise NotFound(f"Image '{relative_path}' not found in project {self.root}")

    # -- caption edits --------------------------------------------------

    @contextmanager
    def _exclusive(self, entry_id: str) -> Iterator[None]:
        """Hold off the active batch for ``entry_id`` during a manual write."""
        batch = self._batch
        if batch is None or batch.done():
            yield
            return
        with batch.holding(entry_id):
            yield

    def _write(self, entry_id: str, write: Callable[[Path], List[str]]) -> List[str]:
        entry = self.get(entry_id)
        with self._exclusive(entry_id):
            tags = write(entry.path)
        return self._apply_tags(entry, tags)

    def _apply_tags(self, entry: ImageEntry, tags: List[str]) -> List[str]:
        entry.tags = tags
        self.events.emit(ProjectEvent(EventKind.TAGS_CHANGED, entry.id, {"tags": list(tags)}))
        return tags

    def set_tags(self, entry_id: str, tags: Iterable[str]) -> List[str]:
        return self._write(entry_id, lambda path: captions.write_tags(path, tags))

    def add_tag(self, entry_id: str, tag: str, *, front: bool = False) -> List[str]:
        return self._write(entry_id, lambda path: captions.add_tag(path, tag, front=front))

    def remove_tag(self, entry_id: str, tag: str) -> List[str]:
        return self._write(entry_id, lambda path: captions.remove_tag(path, tag))

    def reorder(self, entry_id: str, tags: Iterable[str]) -> List[str]:
        return self._write(entry_id, lambda path: captions.reorder_tags(path, tags))

    def add_tag_to_all(self, tag: str, *, ids: Optional[Iterable[str]] = None, front: bool = True) -> List[TagChange]:
        targets = self._targets(ids)
        changes = []
        for entry in targets:
            before = list(entry.tags)
            after = self.add_tag(entry.id, tag, front=front)
            if after != before:
                changes.append(TagChange(entry.id, before, list(after)))
        logger.info("Added '%s' to %d images", tag, len(changes))
        return changes

    def search_replace(
        self,
        find: str,
        replace: str,
        *,
        ids: Optional[Iterable[str]] = None,
        whole_tag: bool = True,
    ) -> List[TagChange]:
        """Replace tag text across entries; the returned changes can be undone."""
        changes = []
        for entry in self._targets(ids):
            before = list(entry.tags)
            after = captions.replace_in_tags(before, find, replace, whole_tag=whole_tag)
            if after == before:
                continue
            persisted = self.set_tags(entry.id, after)
            changes.append(TagChange(entry.id, before, persisted))
        logger.info("Search/replace '%s' -> '%s' changed %d images", find, replace, len(changes))
        return changes

    def undo(self, changes: Sequence[TagChange]) -> int:
        for change in changes:
            self.set_tags(change.entry_id, change.previous_tags)
        return len(changes)

    def clear_all_captions(self) -> int:
        cleared = 0
        for entry in self.entries:
            self.set_tags(entry.id, [])
            cleared += 1
        return cleared

    def _targets(self, ids: Optional[Iterable[str]]) -> List[ImageEntry]:
        if ids is None:
            return self.entries
        return [self.get(i) for i in ids]

    # -- ratings and removal --------------------------------------------

    def set_rating(self, entry_id: str, rating: Union[Rating, str]) -> Rating:
        entry = self.get(entry_id)
        stored = self.ratings.set(entry.relative_path, rating)
        entry.rating = stored
        self.events.emit(ProjectEvent(EventKind.RATING_CHANGED, entry.id, {"rating": stored.value}))
        return stored

    def delete_entry(self, entry_id: str) -> None:
        entry = self.get(entry_id)
        with self._exclusive(entry_id):
            captions.delete_image(entry.path)
        if self.ratings.get(entry.relative_path) is not Rating.NONE:
            self.ratings.forget(entry.relative_path)
        with self._lock:
            self._entries = [e for e in self._entries if e.id != entry_id]
            self._by_id.pop(entry_id, None)
        self.events.emit(ProjectEvent(EventKind.ENTRY_REMOVED, entry_id, {"relative_path": entry.relative_path}))

    # -- bulk passes ----------------------------------------------------

    def find_duplicates(self, **kwargs) -> DuplicateReport:
        kwargs.setdefault("recursive", self.recursive)
        return find_duplicates(self.root, **kwargs)

    @property
    def active_batch(self) -> Optional[BatchHandle]:
        batch = self._batch
        if batch is not None and not batch.done():
            return batch
        return None

    def start_batch(
        self,
        entries: Sequence[ImageEntry],
        provider: CaptionProvider,
        endpoint: str,
        model: str,
        prompt: str,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        on_progress: Optional[ProgressFn] = None,
    ) -> BatchHandle:
        """One batch at a time per project; captions land through this model."""
        unknown = [e.id for e in entries if e.id not in self._by_id]
        if unknown:
            raise InvalidArgument(f"{len(unknown)} entries do not belong to this project")
        with self._lock:
            if self.active_batch is not None:
                raise AlreadyInProgress("A captioning batch is already running")
            handle = BatchHandle(
                entries,
                provider,
                endpoint,
                model,
                prompt,
                concurrency=concurrency,
                commit=self._commit_batch_tags,
                on_progress=on_progress,
            )
            self._batch = handle
        return handle.start()

    def _commit_batch_tags(self, entry: ImageEntry, tags: List[str]) -> List[str]:
        return self._apply_tags(entry, captions.write_tags(entry.path, tags))

    def export(self, spec: ExportSpec, progress: bool = False) -> ExportResult:
        return export_dataset(self.entries, spec, project_root=self.root, progress=progress)
