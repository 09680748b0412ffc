"""Exact-duplicate detection across a project folder.

Every image under the root is fingerprinted on a thread pool sized to the
machine; hashlib releases the GIL while digesting large buffers, so threads
scale with cores for this pass.  Workers insert into one shared
fingerprint -> paths map guarded by a single lock.  The map is only read after
the pool has joined.
"""
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from tqdm import tqdm

from lorastudio.data.files import iter_image_paths, relative_key, resolve_root
from lorastudio.data.hashing import CHUNK_SIZE, fingerprint
from lorastudio.data.schema import DuplicateGroup, DuplicateReport
from lorastudio.errors import DatasetError

logger = logging.getLogger(__name__)


def default_workers() -> int:
    return max(1, os.cpu_count() or 1)


class _FingerprintMap:
    """Insert-only map shared by the hashing workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._groups: Dict[str, List[str]] = {}

    def insert(self, digest: str, rel_path: str) -> None:
        with self._lock:
            self._groups.setdefault(digest, []).append(rel_path)

    def snapshot(self) -> Dict[str, List[str]]:
        with self._lock:
            return {k: list(v) for k, v in self._groups.items()}


def find_duplicates(
    root: Union[str, Path],
    *,
    workers: Optional[int] = None,
    recursive: bool = True,
    chunk_size: int = CHUNK_SIZE,
    progress: bool = False,
) -> DuplicateReport:
    """Group byte-identical images under ``root``.

    A file that cannot be read is reported in ``errors`` and the scan carries
    on; a missing or non-directory root raises.
    """
    root_path = resolve_root(root)
    paths = iter_image_paths(root_path, recursive=recursive)
    workers = workers or default_workers()

    shared = _FingerprintMap()
    errors: List[Tuple[str, str]] = []
    errors_lock = threading.Lock()

    def _work(path: Path) -> None:
        rel = relative_key(path, root_path)
        try:
            digest = fingerprint(path, chunk_size=chunk_size)
        except DatasetError as exc:
            logger.warning("Hashing failed for %s: %s", rel, exc)
            with errors_lock:
                errors.append((rel, str(exc)))
            return
        shared.insert(digest, rel)

    logger.info("Hashing %d images under %s with %d workers", len(paths), root_path, workers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_work, p) for p in paths]
        for future in tqdm(
            as_completed(futures),
            total=len(futures),
            desc="Hashing",
            unit="img",
            dynamic_ncols=True,
            disable=not progress,
        ):
            future.result()

    groups = [
        DuplicateGroup(fingerprint=digest, paths=sorted(rels))
        for digest, rels in shared.snapshot().items()
        if len(rels) >= 2
    ]
    groups.sort(key=lambda g: g.paths[0])
    errors.sort()

    report = DuplicateReport(groups=groups, errors=errors, scanned=len(paths))
    logger.info(
        "Duplicate scan done: %d files, %d groups, %d removable, %d errors",
        report.scanned,
        len(report.groups),
        report.duplicate_count,
        len(report.errors),
    )
    return report
