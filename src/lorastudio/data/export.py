"""Export a filtered copy of the dataset for a trainer.

Layouts:
  - ``folder``: flat folder of image + ``.txt`` pairs.
  - ``zip``: the same pairs inside one archive.
  - ``by_rating``: ``good/``, ``bad/``, ``needs_edit/`` subfolders; unrated images are left out.
  - ``kohya``: ``<dest>/<repeats>_<concept>/`` as kohya sd-scripts expects.

Captions are read from the sidecars at export time, so the artifact always
reflects what is on disk.  With a trigger word configured it is moved (or
inserted) to the first tag slot.

A failed copy skips that image and the run continues; only whole-run problems
(bad destination, nothing eligible, disk full) end in ``success=False``.
"""
from __future__ import annotations

import errno
import json
import logging
import os
import shutil
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from tqdm import tqdm

from lorastudio.data.captions import format_tags, read_tags
from lorastudio.data.schema import ImageEntry, Rating
from lorastudio.errors import DatasetError, InvalidArgument, IoFailure

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.jsonl"
RATING_BUCKETS = (Rating.GOOD, Rating.BAD, Rating.NEEDS_EDIT)


class ExportLayout(str, Enum):
    FOLDER = "folder"
    ZIP = "zip"
    BY_RATING = "by_rating"
    KOHYA = "kohya"


class ExportFilter(str, Enum):
    ALL = "all"
    SELECTED = "selected"
    RATING = "rating"
    BY_RATING = "by_rating"


class CaptionFormat(str, Enum):
    TXT = "txt"
    JSONL = "jsonl"


@dataclass
class ExportSpec:
    destination: Path
    layout: ExportLayout = ExportLayout.FOLDER
    filter: ExportFilter = ExportFilter.ALL
    selected_ids: Optional[Set[str]] = None
    rating: Optional[Rating] = None
    only_captioned: bool = False
    sequential_naming: bool = False
    trigger_word: Optional[str] = None
    kohya_repeats: int = 10
    kohya_concept: Optional[str] = None
    caption_format: CaptionFormat = CaptionFormat.TXT


@dataclass
class ExportResult:
    success: bool
    exported_count: int = 0
    skipped_count: int = 0
    output_path: str = ""
    error: Optional[str] = None
    error_kind: Optional[str] = None
    errors: List[Tuple[str, str]] = field(default_factory=list)


def apply_trigger(tags: List[str], trigger_word: Optional[str]) -> List[str]:
    """Trigger word first; an existing copy (any case) is moved, not duplicated."""
    trigger = (trigger_word or "").strip()
    if not trigger:
        return list(tags)
    rest = [t for t in tags if t.lower() != trigger.lower()]
    return [trigger] + rest


def resolve_subset(entries: Iterable[ImageEntry], spec: ExportSpec) -> List[ImageEntry]:
    """Entries chosen by ``spec.filter`` (before the only-captioned check)."""
    entries = list(entries)
    kind = ExportFilter(spec.filter)
    if kind is ExportFilter.SELECTED:
        if not spec.selected_ids:
            raise InvalidArgument("No images selected")
        chosen = [e for e in entries if e.id in spec.selected_ids]
    elif kind is ExportFilter.RATING:
        if spec.rating is None:
            raise InvalidArgument("Rating filter needs a rating")
        wanted = Rating.parse(spec.rating)
        chosen = [e for e in entries if e.rating is wanted]
    elif kind is ExportFilter.BY_RATING:
        chosen = [e for e in entries if e.rating is not Rating.NONE]
    else:
        chosen = entries
    if ExportLayout(spec.layout) is ExportLayout.BY_RATING:
        chosen = [e for e in chosen if e.rating is not Rating.NONE]
    return sorted(chosen, key=lambda e: e.relative_path)


def kohya_folder_name(repeats: int, concept: str) -> str:
    cleaned = concept.strip().replace("/", "_").replace("\\", "_")
    if not cleaned:
        raise InvalidArgument("Kohya layout needs a concept name")
    return f"{repeats}_{cleaned}"


class _NameAllocator:
    """Unique file names inside one output folder, case-insensitively."""

    def __init__(self, taken: Callable[[str], bool] = lambda name: False):
        self._used: Set[str] = set()
        self._taken = taken
        self._counter = 0

    def _free(self, name: str) -> bool:
        return name.lower() not in self._used and not self._taken(name)

    def allocate(self, source: Path, sequential: bool) -> str:
        ext = source.suffix.lower() if sequential else source.suffix
        if sequential:
            while True:
                self._counter += 1
                name = f"{self._counter:04d}{ext}"
                if self._free(name) and self._free(f"{self._counter:04d}.txt"):
                    break
        else:
            stem, n = source.stem, 0
            name = source.name
            while not (self._free(name) and self._free(f"{Path(name).stem}.txt")):
                n += 1
                name = f"{stem}_{n}{ext}"
        self._used.add(name.lower())
        self._used.add(f"{Path(name).stem}.txt".lower())
        return name


class _FolderSink:
    def __init__(self, folder: Path, caption_format: CaptionFormat):
        self.folder = folder
        self.caption_format = caption_format
        self.names = _NameAllocator(taken=lambda name: (folder / name).exists())
        self.metadata: List[Dict[str, str]] = []
        self._created = False

    def _ensure(self) -> None:
        if not self._created:
            try:
                self.folder.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise IoFailure(f"Cannot create {self.folder}: {exc}") from exc
            self._created = True

    def add(self, source: Path, name: str, caption: str) -> None:
        self._ensure()
        dest_img = self.folder / name
        dest_txt = dest_img.with_suffix(".txt")
        try:
            shutil.copy2(source, dest_img)
            if self.caption_format is CaptionFormat.TXT:
                if caption:
                    dest_txt.write_text(caption, encoding="utf-8")
            else:
                self.metadata.append({"file_name": name, "text": caption})
        except OSError as exc:
            for leftover in (dest_img, dest_txt):
                try:
                    leftover.unlink(missing_ok=True)
                except OSError:
                    pass
            if exc.errno == errno.ENOSPC:
                raise IoFailure(f"Out of disk space writing {dest_img}") from exc
            raise

    def close(self) -> None:
        if self.caption_format is CaptionFormat.JSONL and self.metadata:
            lines = [json.dumps(m, ensure_ascii=False) for m in self.metadata]
            try:
                (self.folder / METADATA_FILE).write_text("\n".join(lines) + "\n", encoding="utf-8")
            except OSError as exc:
                raise IoFailure(f"Cannot write {METADATA_FILE}: {exc}") from exc


class _ZipSink:
    def __init__(self, archive: zipfile.ZipFile, caption_format: CaptionFormat):
        self.archive = archive
        self.caption_format = caption_format
        self.names = _NameAllocator()
        self.metadata: List[Dict[str, str]] = []

    def add(self, source: Path, name: str, caption: str) -> None:
        data = source.read_bytes()
        try:
            self.archive.writestr(name, data)
            if self.caption_format is CaptionFormat.TXT:
                if caption:
                    self.archive.writestr(f"{Path(name).stem}.txt", caption)
            else:
                self.metadata.append({"file_name": name, "text": caption})
        except OSError as exc:
            # The archive cannot recover from a failed member write.
            if exc.errno == errno.ENOSPC:
                raise IoFailure(f"Out of disk space writing {name}") from exc
            raise IoFailure(f"Cannot write {name} to archive: {exc}") from exc

    def close(self) -> None:
        if self.caption_format is CaptionFormat.JSONL and self.metadata:
            lines = [json.dumps(m, ensure_ascii=False) for m in self.metadata]
            self.archive.writestr(METADATA_FILE, "\n".join(lines) + "\n")


def _check_destination(spec: ExportSpec) -> Path:
    dest = Path(spec.destination).expanduser()
    layout = ExportLayout(spec.layout)
    if layout is ExportLayout.ZIP:
        if dest.is_dir():
            raise InvalidArgument(f"ZIP destination is a directory: {dest}")
        parent = dest.parent
    else:
        if dest.exists() and not dest.is_dir():
            raise InvalidArgument(f"Destination is not a directory: {dest}")
        parent = dest
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise IoFailure(f"Cannot create destination {parent}: {exc}") from exc
    return dest


def _route(entries: List[ImageEntry], spec: ExportSpec, dest: Path, project_root: Optional[Path]) -> Dict[Path, List[ImageEntry]]:
    """Output folder -> entries, in a stable order."""
    layout = ExportLayout(spec.layout)
    if layout is ExportLayout.BY_RATING:
        routed: Dict[Path, List[ImageEntry]] = {}
        for bucket in RATING_BUCKETS:
            members = [e for e in entries if e.rating is bucket]
            if members:
                routed[dest / bucket.value] = members
        return routed
    if layout is ExportLayout.KOHYA:
        if spec.kohya_repeats < 1:
            raise InvalidArgument(f"Kohya repeat count must be at least 1, got {spec.kohya_repeats}")
        concept = spec.kohya_concept or spec.trigger_word or (project_root.name if project_root else "")
        return {dest / kohya_folder_name(spec.kohya_repeats, concept or ""): entries}
    return {dest: entries}


def _collect(entries: List[ImageEntry], spec: ExportSpec) -> Tuple[List[Tuple[ImageEntry, List[str]]], List[Tuple[str, str]]]:
    """Pair each entry with its on-disk tags, applying only-captioned."""
    eligible: List[Tuple[ImageEntry, List[str]]] = []
    errors: List[Tuple[str, str]] = []
    for entry in entries:
        try:
            tags = read_tags(entry.path)
        except DatasetError as exc:
            logger.warning("Skipping %s: %s", entry.relative_path, exc)
            errors.append((entry.relative_path, str(exc)))
            continue
        if spec.only_captioned and not tags:
            continue
        eligible.append((entry, tags))
    return eligible, errors


def _fail(exc: DatasetError, output_path: str = "", **counts: int) -> ExportResult:
    logger.error("Export failed: %s", exc)
    return ExportResult(success=False, output_path=output_path, error=str(exc), error_kind=exc.kind, **counts)


def export_dataset(
    entries: Iterable[ImageEntry],
    spec: ExportSpec,
    *,
    project_root: Optional[Union[str, Path]] = None,
    progress: bool = False,
) -> ExportResult:
    root = Path(project_root) if project_root else None
    try:
        subset = resolve_subset(entries, spec)
        eligible, errors = _collect(subset, spec)
        if not eligible:
            raise InvalidArgument("No images to export")
        dest = _check_destination(spec)
        by_folder = _route([e for e, _ in eligible], spec, dest, root)
    except DatasetError as exc:
        return _fail(exc)

    tags_by_id = {e.id: tags for e, tags in eligible}
    skipped = len(errors)
    layout = ExportLayout(spec.layout)
    caption_format = CaptionFormat(spec.caption_format)

    def _export_into(sink, folder_entries: List[ImageEntry], bar) -> int:
        nonlocal skipped
        exported = 0
        for entry in folder_entries:
            name = sink.names.allocate(entry.path, spec.sequential_naming)
            caption = format_tags(apply_trigger(tags_by_id[entry.id], spec.trigger_word))
            try:
                sink.add(entry.path, name, caption)
            except OSError as exc:
                logger.warning("Skipping %s: %s", entry.relative_path, exc)
                errors.append((entry.relative_path, str(exc)))
                skipped += 1
            else:
                exported += 1
            bar.update(1)
        sink.close()
        return exported

    total = sum(len(v) for v in by_folder.values())
    exported = 0
    with tqdm(total=total, desc="Exporting", unit="img", dynamic_ncols=True, disable=not progress) as bar:
        if layout is ExportLayout.ZIP:
            part = dest.with_name(dest.name + ".part")
            try:
                with zipfile.ZipFile(part, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                    for folder_entries in by_folder.values():
                        exported += _export_into(_ZipSink(archive, caption_format), folder_entries, bar)
                os.replace(part, dest)
            except OSError as exc:
                part.unlink(missing_ok=True)
                return _fail(IoFailure(f"Cannot write archive {dest}: {exc}"), str(dest), skipped_count=skipped)
            except IoFailure as exc:
                part.unlink(missing_ok=True)
                return _fail(exc, str(dest), exported_count=exported, skipped_count=skipped)
        else:
            try:
                for folder, folder_entries in by_folder.items():
                    exported += _export_into(_FolderSink(folder, caption_format), folder_entries, bar)
            except IoFailure as exc:
                return _fail(exc, str(dest), exported_count=exported, skipped_count=skipped)

    logger.info("Exported %d images to %s (%d skipped)", exported, dest, skipped)
    return ExportResult(
        success=True,
        exported_count=exported,
        skipped_count=skipped,
        output_path=str(dest),
        errors=errors,
    )
