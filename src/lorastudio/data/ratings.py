"""Project-wide rating store (good / bad / needs_edit).

Ratings are metadata, not content, so they live in one JSON file per project
rather than one file per image: ``<root>/.lorastudio/ratings.json``.
Missing keys read as ``none``; setting ``none`` drops the key.
"""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Union

from lorastudio.data.files import STATE_DIR, atomic_write_text
from lorastudio.data.schema import Rating, normalize_relative
from lorastudio.errors import InvalidArgument, IoFailure

logger = logging.getLogger(__name__)

RATINGS_FILE = "ratings.json"
RATINGS_VERSION = 1


def ratings_path(root: Union[str, Path]) -> Path:
    return Path(root) / STATE_DIR / RATINGS_FILE


def _lookup_key(rel: str) -> str:
    return normalize_relative(rel).lower()


class RatingStore:
    """In-memory view of one project's ratings, persisted on every change."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.path = ratings_path(self.root)
        self._lock = threading.Lock()
        self._ratings: Dict[str, str] = {}
        self._loaded = False

    def load(self) -> "RatingStore":
        with self._lock:
            self._ratings = self._read()
            self._loaded = True
        return self

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Ignoring unreadable ratings file %s: %s", self.path, exc)
            return {}
        except OSError as exc:
            raise IoFailure(f"Cannot read ratings {self.path}: {exc}") from exc
        ratings = data.get("ratings", {}) if isinstance(data, dict) else None
        if not isinstance(ratings, dict):
            logger.warning("Ignoring malformed ratings file %s: expected a \"ratings\" mapping", self.path)
            return {}
        return {str(k): str(v) for k, v in ratings.items()}

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def get(self, relative_path: str) -> Rating:
        """Exact key, then case-insensitive, then keys stored as absolute paths."""
        self._ensure_loaded()
        rel_key = normalize_relative(relative_path)
        with self._lock:
            if rel_key in self._ratings:
                return Rating.parse(self._ratings[rel_key])
            if relative_path in self._ratings:
                return Rating.parse(self._ratings[relative_path])

            want = rel_key.lower()
            root_norm = _lookup_key(str(self.root))
            for key, value in self._ratings.items():
                key_norm = _lookup_key(key)
                if key_norm == want:
                    return Rating.parse(value)
                if root_norm and len(key_norm) > len(root_norm) and key_norm.startswith(root_norm):
                    suffix = key_norm[len(root_norm):].lstrip("/")
                    if suffix == want:
                        return Rating.parse(value)
        return Rating.NONE

    def set(self, relative_path: str, rating: Union[Rating, str]) -> Rating:
        if isinstance(rating, str) and not isinstance(rating, Rating):
            try:
                rating = Rating(rating)
            except ValueError as exc:
                raise InvalidArgument(f"Unknown rating: {rating!r}") from exc
        rel_key = normalize_relative(relative_path)
        if not rel_key:
            raise InvalidArgument("Relative path is empty")
        self._ensure_loaded()
        with self._lock:
            updated = dict(self._ratings)
            for key in [k for k in updated if _lookup_key(k) == rel_key.lower()]:
                del updated[key]
            if rating is not Rating.NONE:
                updated[rel_key] = rating.value
            self._write(updated)
            self._ratings = updated
        return rating

    def forget(self, relative_path: str) -> None:
        self.set(relative_path, Rating.NONE)

    def all(self) -> Dict[str, Rating]:
        self._ensure_loaded()
        with self._lock:
            return {k: Rating.parse(v) for k, v in self._ratings.items()}

    def _write(self, ratings: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IoFailure(f"Cannot create {self.path.parent}: {exc}") from exc
        payload = {"version": RATINGS_VERSION, "ratings": dict(sorted(ratings.items()))}
        atomic_write_text(self.path, json.dumps(payload, ensure_ascii=False, indent=2))


def load_ratings(root: Union[str, Path]) -> RatingStore:
    return RatingStore(root).load()


def set_rating(
    root: Union[str, Path],
    relative_path: str,
    rating: Union[Rating, str],
    store: Optional[RatingStore] = None,
) -> Rating:
    store = store or RatingStore(root)
    return store.set(relative_path, rating)
