"""File-walk and write helpers shared by the scanner, detector, store and export."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import List, Union

from lorastudio.errors import IoFailure, NotADirectory, NotFound

SUPPORTED_EXTS = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp"}

# Per-project state lives here; never walked as dataset content.
STATE_DIR = ".lorastudio"


def is_image_path(path: Union[str, Path]) -> bool:
    return Path(path).suffix.lower() in SUPPORTED_EXTS


def resolve_root(root: Union[str, Path]) -> Path:
    """Validate a project root and return its resolved absolute path."""
    path = Path(root).expanduser()
    if not path.exists():
        raise NotFound(f"Project folder does not exist: {path}")
    if not path.is_dir():
        raise NotADirectory(f"Not a directory: {path}")
    try:
        return path.resolve()
    except OSError as exc:
        raise IoFailure(f"Cannot resolve {path}: {exc}") from exc


def iter_image_paths(root: Path, recursive: bool = True) -> List[Path]:
    """Every image file under ``root``, sorted.

    The scanner and the duplicate detector both use this so they always agree
    on what belongs to a project.  Symlinks are not followed.
    """
    paths: List[Path] = []
    if not recursive:
        try:
            with os.scandir(root) as it:
                for entry in it:
                    if entry.is_file(follow_symlinks=False) and is_image_path(entry.name):
                        paths.append(Path(entry.path))
        except OSError as exc:
            raise IoFailure(f"Cannot list {root}: {exc}") from exc
        return sorted(paths)

    def _onerror(exc: OSError) -> None:
        raise IoFailure(f"Cannot list {exc.filename}: {exc.strerror}") from exc

    for dirpath, dirnames, filenames in os.walk(root, onerror=_onerror):
        dirnames[:] = [d for d in dirnames if d != STATE_DIR]
        for fname in filenames:
            if is_image_path(fname):
                paths.append(Path(dirpath) / fname)
    return sorted(paths)


def relative_key(path: Path, root: Path) -> str:
    try:
        rel = path.relative_to(root)
    except ValueError:
        return path.name
    return rel.as_posix()


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers never see a partial file.

    Writes a temp file next to the target, fsyncs it, then ``os.replace``s it in.
    """
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    except OSError as exc:
        raise IoFailure(f"Failed to write {path}: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise IoFailure(f"Failed to write {path}: {exc}") from exc
