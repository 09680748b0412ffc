"""Shared data schemas for images, captions, ratings and duplicate reports.

``ImageEntry`` is the in-memory record the UI renders; the sidecar files on
disk stay the durable source of truth and are always written first.
"""
from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


class Rating(str, Enum):
    NONE = "none"
    GOOD = "good"
    BAD = "bad"
    NEEDS_EDIT = "needs_edit"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Rating":
        """Lenient parse: unknown or missing values are ``NONE``."""
        if isinstance(value, Rating):
            return value
        if not value:
            return cls.NONE
        cleaned = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        if cleaned == "needsedit":
            cleaned = "needs_edit"
        try:
            return cls(cleaned)
        except ValueError:
            return cls.NONE


def normalize_relative(rel: str) -> str:
    """Forward slashes, no leading slash."""
    return rel.replace("\\", "/").lstrip("/")


def entry_id_for(relative_path: str) -> str:
    """Stable id for an image: derived from its relative path only."""
    key = normalize_relative(relative_path)
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


@dataclass
class ImageEntry:
    id: str
    path: Path
    relative_path: str
    filename: str
    width: Optional[int] = None
    height: Optional[int] = None
    file_size: int = 0
    tags: List[str] = field(default_factory=list)
    rating: Rating = Rating.NONE

    @property
    def has_caption(self) -> bool:
        return bool(self.tags)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["path"] = str(self.path)
        data["rating"] = self.rating.value
        data["has_caption"] = self.has_caption
        return data


@dataclass
class DuplicateGroup:
    fingerprint: str
    paths: List[str]


@dataclass
class DuplicateReport:
    groups: List[DuplicateGroup] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)
    scanned: int = 0

    @property
    def duplicate_count(self) -> int:
        """Files that could be removed while keeping one copy per group."""
        return sum(len(g.paths) - 1 for g in self.groups)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "groups": [asdict(g) for g in self.groups],
            "errors": [{"path": p, "reason": r} for p, r in self.errors],
        }
