"""Caption sidecar store.

Each image ``name.ext`` pairs with ``name.txt`` in the same folder holding a
comma-separated tag list.  A missing sidecar and an empty one mean the same
thing: no caption.

Writes are atomic (temp file + replace), so a concurrent reader sees either
the old or the new content.  There is no lock table: callers must not issue
two overlapping writes for the same image.  The batch orchestrator and the
manual-edit path in ``Project`` both honour that contract.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Union

from lorastudio.data.files import atomic_write_text, iter_image_paths, resolve_root
from lorastudio.errors import InvalidArgument, IoFailure, NotFound

logger = logging.getLogger(__name__)

TAG_SEPARATOR = ", "


@dataclass
class CaptionData:
    exists: bool
    raw: str
    tags: List[str]


def caption_path_for(image_path: Union[str, Path]) -> Path:
    return Path(image_path).with_suffix(".txt")


def parse_tags(raw: str) -> List[str]:
    """Split on commas, trim, drop empties, keep order."""
    return [t.strip() for t in raw.split(",") if t.strip()]


def normalize_tags(tags: Iterable[str]) -> List[str]:
    """The exact list ``read_tags`` would return after writing ``tags``."""
    return parse_tags(",".join(str(t) for t in tags))


def format_tags(tags: Iterable[str]) -> str:
    return TAG_SEPARATOR.join(normalize_tags(tags))


def read_caption(image_path: Union[str, Path]) -> CaptionData:
    caption_path = caption_path_for(image_path)
    try:
        raw = caption_path.read_text(encoding="utf-8-sig")
    except FileNotFoundError:
        return CaptionData(exists=False, raw="", tags=[])
    except OSError as exc:
        raise IoFailure(f"Cannot read caption {caption_path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise IoFailure(f"Caption {caption_path} is not valid UTF-8: {exc}") from exc
    return CaptionData(exists=True, raw=raw.strip(), tags=parse_tags(raw))


def read_tags(image_path: Union[str, Path]) -> List[str]:
    return read_caption(image_path).tags


def write_tags(image_path: Union[str, Path], tags: Iterable[str]) -> List[str]:
    """Fully replace the sidecar; returns the tags as they now read back.

    An empty list leaves an empty sidecar.
    """
    normalized = normalize_tags(tags)
    atomic_write_text(caption_path_for(image_path), TAG_SEPARATOR.join(normalized))
    return normalized


def add_tag(image_path: Union[str, Path], tag: str, *, front: bool = False) -> List[str]:
    """Append (or prepend) ``tag`` unless already present, ignoring case."""
    tag = tag.strip()
    if not tag:
        raise InvalidArgument("Tag is empty")
    tags = read_tags(image_path)
    if any(t.lower() == tag.lower() for t in tags):
        return tags
    tags = [tag] + tags if front else tags + [tag]
    return write_tags(image_path, tags)


def remove_tag(image_path: Union[str, Path], tag: str) -> List[str]:
    if not caption_path_for(image_path).exists():
        return []
    wanted = tag.strip().lower()
    tags = [t for t in read_tags(image_path) if t.lower() != wanted]
    return write_tags(image_path, tags)


def reorder_tags(image_path: Union[str, Path], tags: Iterable[str]) -> List[str]:
    return write_tags(image_path, tags)


def replace_in_tags(tags: List[str], find: str, replace: str, *, whole_tag: bool = True) -> List[str]:
    """Search-and-replace inside one tag list.

    ``whole_tag`` matches complete tags case-insensitively; otherwise a
    substring replace is applied inside every tag.  Replacing with an empty
    string drops a matched tag.  Duplicates created by the replace collapse to
    their first occurrence.
    """
    if not find.strip():
        raise InvalidArgument("Search text is empty")
    out: List[str] = []
    needle = find.strip().lower()
    for tag in tags:
        if whole_tag:
            new = replace.strip() if tag.lower() == needle else tag
        else:
            new = tag.replace(find, replace).strip()
        out.extend(normalize_tags([new]))
    seen = set()
    deduped = []
    for tag in out:
        if tag.lower() in seen:
            continue
        seen.add(tag.lower())
        deduped.append(tag)
    return deduped


def clear_all_captions(root: Union[str, Path], recursive: bool = True) -> int:
    """Empty the sidecar of every image in the project; returns the count."""
    root_path = resolve_root(root)
    cleared = 0
    for image in iter_image_paths(root_path, recursive=recursive):
        write_tags(image, [])
        cleared += 1
    logger.info("Cleared %d captions under %s", cleared, root_path)
    return cleared


def delete_image(image_path: Union[str, Path]) -> None:
    """Remove an image and its sidecar from disk."""
    path = Path(image_path)
    if not path.is_file():
        raise NotFound(f"Image file not found: {path}")
    try:
        path.unlink()
    except OSError as exc:
        raise IoFailure(f"Cannot delete {path}: {exc}") from exc
    caption = caption_path_for(path)
    try:
        caption.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Image %s deleted but caption %s was not: %s", path, caption, exc)
