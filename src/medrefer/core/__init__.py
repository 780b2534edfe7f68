"""
MedRefer Core - Service wiring.

Contains configuration, logging, error types and session management
shared by the persistence, sync and audit layers.
"""

from medrefer.core.config import MedReferConfig
from medrefer.core.errors import (
    DuplicateRecordError,
    MedReferError,
    PersistenceError,
    RecordNotFoundError,
    SyncError,
    ValidationError,
)
from medrefer.core.logging import get_logger, setup_logging
from medrefer.core.session import Session

__all__ = [
    "MedReferConfig",
    "MedReferError",
    "PersistenceError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "ValidationError",
    "SyncError",
    "Session",
    "get_logger",
    "setup_logging",
]
