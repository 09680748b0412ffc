"""Typed failures raised by the dataset engine.

Every public operation either returns its success payload or raises one of
these.  ``kind`` names the failure class so callers (CLI, UI bridge) can map
it without string matching on messages.
"""
from __future__ import annotations


class DatasetError(RuntimeError):
    """Base class for all engine failures."""

    kind = "error"


class NotFound(DatasetError):
    """Root folder or image path does not exist."""

    kind = "not_found"


class InvalidArgument(DatasetError):
    """Empty filter, zero eligible entries, malformed prompt, bad option."""

    kind = "invalid_argument"


class NotADirectory(InvalidArgument):
    kind = "not_a_directory"


class IoFailure(DatasetError):
    """File read/write/copy failed.  Retryable by the caller, never by the engine."""

    kind = "io_failure"


class AlreadyInProgress(DatasetError):
    kind = "already_in_progress"


class Cancelled(DatasetError):
    """Caller-requested stop.  A terminal state, not a fault."""

    kind = "cancelled"


class ProviderFailure(DatasetError):
    """Caption generation failed for one item."""

    kind = "provider_failure"
