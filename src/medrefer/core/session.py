"""
MedRefer Session Management.

Wires the database, data service, sync service and audit trail together
and keeps a report of what happened during the session.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from medrefer.audit.service import SecurityAuditService
from medrefer.core.config import MedReferConfig, load_config
from medrefer.core.logging import bind_session, get_logger, setup_logging, unbind_session
from medrefer.database.data_service import DataService
from medrefer.database.db import Database
from medrefer.sync.models import SyncResult
from medrefer.sync.remote import ConnectivityMonitor, InMemoryRemoteStore, RemoteStore
from medrefer.sync.service import OfflineSyncService

logger = get_logger(__name__)


@dataclass
class SessionReport:
    """Summary of a session, written to disk on close."""

    session_id: str
    started_at: datetime
    ended_at: datetime | None = None
    sync_passes: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    config_snapshot: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": (
                (self.ended_at - self.started_at).total_seconds()
                if self.ended_at
                else None
            ),
            "sync_passes": self.sync_passes,
            "errors": self.errors,
            "config_snapshot": self.config_snapshot,
            "summary": {
                "total_passes": len(self.sync_passes),
                "successful_passes": sum(
                    1 for sync_pass in self.sync_passes if sync_pass.get("success", False)
                ),
                "operations_synced": sum(
                    sync_pass.get("success_count", 0) for sync_pass in self.sync_passes
                ),
                "operations_failed": sum(
                    sync_pass.get("failure_count", 0) for sync_pass in self.sync_passes
                ),
                "total_errors": len(self.errors),
            },
        }

    def save(self, path: Path) -> None:
        """Save report to file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)


class Session:
    """
    A MedRefer session: configuration, database and services.

    This is the main entry point for all MedRefer operations.
    """

    def __init__(
        self,
        config: MedReferConfig | None = None,
        session_id: str | None = None,
        remote: RemoteStore | None = None,
        connectivity: ConnectivityMonitor | None = None,
        user_id: str = "system",
    ) -> None:
        self.id = session_id or str(uuid.uuid4())
        self.config = config or load_config()
        self.started_at = datetime.now()
        self._closed = False

        setup_logging(self.config.logging)
        bind_session(self.id)

        self.db = Database.open(
            self.config.database.path,
            busy_timeout_ms=self.config.database.busy_timeout_ms,
        )
        self.remote = remote or InMemoryRemoteStore()
        self.connectivity = connectivity or ConnectivityMonitor()

        self.audit = SecurityAuditService(
            self.db,
            self.config.audit,
            session_id=f"session_{self.id[:8]}",
        )
        self.sync = OfflineSyncService(
            self.db,
            self.remote,
            self.config.sync,
            connectivity=self.connectivity,
        )
        self.data = DataService(self.db, user_id=user_id)

        self._report = SessionReport(
            session_id=self.id,
            started_at=self.started_at,
            config_snapshot=self.config.model_dump(mode="json"),
        )

        self.sync.add_result_listener(self._track_sync)
        self.audit.initialize()
        self.sync.initialize()
        self.data.attach(sync_service=self.sync, audit_service=self.audit)

        self.audit.log_system_event("session_started", metadata={"session_id": self.id})
        logger.info("Session started", session_id=self.id, database=str(self.config.database.path))

    def perform_sync(self) -> SyncResult:
        return self.sync.perform_sync()

    def _track_sync(self, result: SyncResult) -> None:
        record = {"timestamp": datetime.now().isoformat(), **result.to_dict()}
        self._report.sync_passes.append(record)
        if result.message and not result.success:
            self._report.errors.append(
                {"timestamp": record["timestamp"], "error": result.message}
            )
        for error in result.errors:
            self._report.errors.append({"timestamp": record["timestamp"], "error": error})

    def get_report(self) -> SessionReport:
        """Get the current session report."""
        return self._report

    def close(self) -> Path:
        """Close the session and save the report."""
        report_path = self.config.session_directory / f"report_{self.id[:8]}.json"
        if self._closed:
            return report_path

        self._report.ended_at = datetime.now()
        self.audit.log_system_event("session_closed", metadata={"session_id": self.id})
        self.sync.dispose()
        self.db.close()
        self._closed = True

        self._report.save(report_path)
        logger.info(
            "Session closed",
            session_id=self.id,
            duration_seconds=(self._report.ended_at - self.started_at).total_seconds(),
            report_path=str(report_path),
        )
        unbind_session()
        return report_path

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
