"""
MedRefer error types.

Every failure raised by the persistence, sync and audit layers derives from
MedReferError so callers can report it in one place.
"""

from __future__ import annotations


class MedReferError(Exception):
    """Base class for all MedRefer errors."""


class PersistenceError(MedReferError):
    """Raised when the local database rejects an operation."""


class DuplicateRecordError(PersistenceError):
    """Raised when a record with the same unique key already exists."""


class RecordNotFoundError(PersistenceError):
    """Raised when an update or lookup targets a missing record."""


class ValidationError(MedReferError):
    """Raised when a record is missing required fields or has invalid values."""


class SyncError(MedReferError):
    """Raised when the offline sync service cannot queue or initialize."""
