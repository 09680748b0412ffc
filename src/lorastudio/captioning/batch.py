"""Batch captioning orchestrator.

Runs caption requests for many entries with at most ``concurrency`` in flight.

Per-item state machine::

    pending -> in_flight -> done | failed
    pending -> skipped            (on cancel)

Cancellation is cooperative: ``cancel()`` flips every still-pending item to
``skipped``; in-flight requests are left to finish and their captions are
written.  An item is only marked ``done`` after its caption is persisted, so
``done`` always means "on disk".  Failures are terminal within the batch and
never retried here; ``BatchSummary.failed_ids`` lists them for the caller.

Each entry appears at most once per batch, so the orchestrator never has two
writes in flight for the same sidecar.
"""
from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from lorastudio.captioning.prompts import validate_prompt
from lorastudio.captioning.providers import CaptionProvider, CaptionResult
from lorastudio.data.captions import parse_tags, write_tags
from lorastudio.data.schema import ImageEntry, Rating
from lorastudio.errors import AlreadyInProgress, Cancelled, DatasetError, InvalidArgument, ProviderFailure

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 2


class ItemStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class BatchItem:
    entry_id: str
    entry: ImageEntry
    status: ItemStatus = ItemStatus.PENDING
    caption: str = ""
    tags: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass(frozen=True)
class BatchProgress:
    completed: int
    total: int
    in_flight: int = 0
    done: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False
    last_id: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.completed >= self.total


@dataclass
class BatchSummary:
    items: Dict[str, BatchItem]
    cancelled: bool = False

    def _ids(self, status: ItemStatus) -> List[str]:
        return [i for i, item in self.items.items() if item.status is status]

    @property
    def done_ids(self) -> List[str]:
        return self._ids(ItemStatus.DONE)

    @property
    def failed_ids(self) -> List[str]:
        return self._ids(ItemStatus.FAILED)

    @property
    def skipped_ids(self) -> List[str]:
        return self._ids(ItemStatus.SKIPPED)

    @property
    def outcome(self) -> str:
        return Cancelled.kind if self.cancelled else "completed"

    def errors(self) -> Dict[str, str]:
        return {i: item.error or "" for i, item in self.items.items() if item.status is ItemStatus.FAILED}


CommitFn = Callable[[ImageEntry, List[str]], List[str]]
ProgressFn = Callable[[BatchProgress], None]


def write_entry_tags(entry: ImageEntry, tags: List[str]) -> List[str]:
    """Persist first, then update the in-memory entry."""
    persisted = write_tags(entry.path, tags)
    entry.tags = persisted
    return persisted


def select_batch_entries(
    entries: Iterable[ImageEntry],
    *,
    ratings: Optional[Iterable[Rating]] = None,
    ids: Optional[Iterable[str]] = None,
    only_uncaptioned: bool = False,
) -> List[ImageEntry]:
    """Target list for a batch: optional id subset, rating filter, uncaptioned-only."""
    wanted_ids: Optional[Set[str]] = set(ids) if ids is not None else None
    wanted_ratings = {Rating.parse(r) for r in ratings} if ratings else None
    out = []
    for entry in entries:
        if wanted_ids is not None and entry.id not in wanted_ids:
            continue
        if wanted_ratings is not None and entry.rating not in wanted_ratings:
            continue
        if only_uncaptioned and entry.has_caption:
            continue
        out.append(entry)
    return out


class BatchHandle:
    def __init__(
        self,
        entries: Sequence[ImageEntry],
        provider: CaptionProvider,
        endpoint: str,
        model: str,
        prompt: str,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        commit: CommitFn = write_entry_tags,
        on_progress: Optional[ProgressFn] = None,
    ):
        if concurrency < 1:
            raise InvalidArgument(f"Concurrency must be at least 1, got {concurrency}")
        self.provider = provider
        self.endpoint = endpoint
        self.model = model
        self.prompt = validate_prompt(prompt)
        self.concurrency = concurrency
        self._commit = commit
        self._on_progress = on_progress

        self.items: Dict[str, BatchItem] = {}
        for entry in entries:
            self.items.setdefault(entry.id, BatchItem(entry_id=entry.id, entry=entry))
        if not self.items:
            raise InvalidArgument("No images to caption")

        self._lock = threading.Lock()
        self._cancelled = False
        self._completed = 0
        self._finished = threading.Event()
        self._events: "queue.Queue[BatchProgress]" = queue.Queue()
        self._started = False

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def done(self) -> bool:
        return self._finished.is_set()

    def start(self) -> "BatchHandle":
        with self._lock:
            if self._started:
                return self
            self._started = True
        logger.info(
            "Starting batch: %d images, model=%s, concurrency=%d",
            self.total,
            self.model,
            self.concurrency,
        )
        pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="caption")
        for item in list(self.items.values()):
            pool.submit(self._run, item)
        # Queued work still runs; this only releases the threads once drained.
        pool.shutdown(wait=False)
        return self

    def cancel(self) -> int:
        """Skip every item that has not started yet; returns how many were skipped.

        A no-op once every item is terminal, so a finished batch keeps its outcome.
        """
        with self._lock:
            if self._completed >= self.total:
                return 0
            self._cancelled = True
            skipped = 0
            for item in self.items.values():
                if item.status is ItemStatus.PENDING:
                    item.status = ItemStatus.SKIPPED
                    skipped += 1
            self._completed += skipped
            snapshot = self._snapshot_locked()
        if skipped:
            logger.info("Batch cancelled: %d pending items skipped", skipped)
        self._publish(snapshot)
        return skipped

    @contextmanager
    def holding(self, entry_id: str) -> Iterator[None]:
        """Keep ``entry_id`` from starting while the caller writes its sidecar.

        Raises ``AlreadyInProgress`` if its caption request is already in flight.
        The batch lock is held for the whole block, so keep the block short and
        do not call back into this handle from inside it.
        """
        with self._lock:
            item = self.items.get(entry_id)
            if item is not None and item.status is ItemStatus.IN_FLIGHT:
                raise AlreadyInProgress(f"Caption for '{entry_id}' is being generated")
            yield

    def status_of(self, entry_id: str) -> ItemStatus:
        with self._lock:
            return self.items[entry_id].status

    def progress(self) -> BatchProgress:
        with self._lock:
            return self._snapshot_locked()

    def events(self, timeout: Optional[float] = None) -> Iterator[BatchProgress]:
        """Live progress stream, ending with the terminal snapshot.  Single consumer."""
        while True:
            try:
                snapshot = self._events.get(timeout=timeout)
            except queue.Empty:
                raise TimeoutError("No batch progress within timeout") from None
            yield snapshot
            if snapshot.finished:
                return

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)

    def result(self, timeout: Optional[float] = None) -> BatchSummary:
        if not self._finished.wait(timeout):
            raise TimeoutError("Batch still running")
        with self._lock:
            items = {k: replace(v, tags=list(v.tags)) for k, v in self.items.items()}
            return BatchSummary(items=items, cancelled=self._cancelled)

    def _snapshot_locked(self, last_id: Optional[str] = None) -> BatchProgress:
        counts = {status: 0 for status in ItemStatus}
        for item in self.items.values():
            counts[item.status] += 1
        return BatchProgress(
            completed=self._completed,
            total=self.total,
            in_flight=counts[ItemStatus.IN_FLIGHT],
            done=counts[ItemStatus.DONE],
            failed=counts[ItemStatus.FAILED],
            skipped=counts[ItemStatus.SKIPPED],
            cancelled=self._cancelled,
            last_id=last_id,
        )

    def _publish(self, snapshot: BatchProgress) -> None:
        self._events.put(snapshot)
        if self._on_progress is not None:
            try:
                self._on_progress(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("Progress callback failed")
        if snapshot.finished:
            self._finished.set()

    def _run(self, item: BatchItem) -> None:
        with self._lock:
            if self._cancelled or item.status is not ItemStatus.PENDING:
                return
            item.status = ItemStatus.IN_FLIGHT
            snapshot = self._snapshot_locked(last_id=item.entry_id)
        self._publish(snapshot)

        try:
            status, kind, error, caption, tags = self._caption_one(item)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error captioning %s", item.entry.relative_path)
            status, kind, error, caption, tags = ItemStatus.FAILED, "error", f"{type(exc).__name__}: {exc}", "", []

        with self._lock:
            item.status = status
            item.error = error
            item.error_kind = kind
            item.caption = caption
            item.tags = tags
            self._completed += 1
            snapshot = self._snapshot_locked(last_id=item.entry_id)
        if status is ItemStatus.FAILED:
            logger.warning("Caption failed for %s: %s", item.entry.relative_path, error)
        self._publish(snapshot)

    def _caption_one(self, item: BatchItem):
        entry = item.entry
        try:
            result = self.provider.generate(entry.path, self.endpoint, self.model, self.prompt)
        except Exception as exc:  # noqa: BLE001
            result = CaptionResult.fail(f"{type(exc).__name__}: {exc}")

        if not result.success:
            return ItemStatus.FAILED, ProviderFailure.kind, result.error or "caption generation failed", "", []

        tags = parse_tags(result.caption)
        if not tags:
            return ItemStatus.FAILED, ProviderFailure.kind, "empty caption", result.caption, []
        try:
            persisted = self._commit(entry, tags)
        except DatasetError as exc:
            return ItemStatus.FAILED, exc.kind, f"write failed: {exc}", result.caption, []
        return ItemStatus.DONE, None, None, result.caption, list(persisted)


def start_batch(
    entries: Sequence[ImageEntry],
    provider: CaptionProvider,
    endpoint: str,
    model: str,
    prompt: str,
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    commit: CommitFn = write_entry_tags,
    on_progress: Optional[ProgressFn] = None,
) -> BatchHandle:
    return BatchHandle(
        entries,
        provider,
        endpoint,
        model,
        prompt,
        concurrency=concurrency,
        commit=commit,
        on_progress=on_progress,
    ).start()
