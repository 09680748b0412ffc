"""Scan a project folder into ``ImageEntry`` records."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError
from tqdm import tqdm

from lorastudio.data.captions import read_tags
from lorastudio.data.files import iter_image_paths, relative_key, resolve_root
from lorastudio.data.ratings import RatingStore
from lorastudio.data.schema import ImageEntry, entry_id_for
from lorastudio.errors import IoFailure

logger = logging.getLogger(__name__)


def image_dimensions(path: Path) -> Tuple[Optional[int], Optional[int]]:
    """Best-effort (width, height); ``(None, None)`` for unreadable images."""
    try:
        with Image.open(path) as im:
            w, h = im.size
        return w, h
    except (OSError, UnidentifiedImageError, ValueError) as exc:
        logger.debug("No dimensions for %s: %s", path, exc)
        return None, None


def build_entry(path: Path, root: Path, ratings: RatingStore) -> ImageEntry:
    rel = relative_key(path, root)
    try:
        file_size = path.stat().st_size
    except OSError as exc:
        raise IoFailure(f"Cannot stat {path}: {exc}") from exc

    try:
        tags = read_tags(path)
    except IoFailure as exc:
        logger.warning("Caption unreadable for %s, treating as empty: %s", rel, exc)
        tags = []

    width, height = image_dimensions(path)
    return ImageEntry(
        id=entry_id_for(rel),
        path=path,
        relative_path=rel,
        filename=path.name,
        width=width,
        height=height,
        file_size=file_size,
        tags=tags,
        rating=ratings.get(rel),
    )


def scan_project(
    root: Union[str, Path],
    *,
    recursive: bool = True,
    ratings: Optional[RatingStore] = None,
    progress: bool = False,
) -> List[ImageEntry]:
    """Build the entry list for ``root``.

    Scanning an unchanged folder twice yields the same ids, tags and ratings.
    Files that vanish between listing and stat are skipped with a warning.
    """
    root_path = resolve_root(root)
    ratings = ratings or RatingStore(root_path)
    ratings.load()

    paths = iter_image_paths(root_path, recursive=recursive)
    entries: List[ImageEntry] = []
    for path in tqdm(paths, total=len(paths), desc="Scanning", unit="img", dynamic_ncols=True, disable=not progress):
        try:
            entries.append(build_entry(path, root_path, ratings))
        except IoFailure as exc:
            logger.warning("Skipping %s: %s", path, exc)

    captioned = sum(1 for e in entries if e.has_caption)
    logger.info("Scanned %s: %d images, %d captioned", root_path, len(entries), captioned)
    return entries
