"""
Tests for medrefer.core.session module.
"""

import json
from datetime import datetime

import structlog

from medrefer.core.config import MedReferConfig
from medrefer.core.session import Session, SessionReport
from medrefer.database.models import SecurityEventType
from medrefer.sync.remote import ConnectivityMonitor, InMemoryRemoteStore


class TestSessionReport:
    """Tests for SessionReport."""

    def test_summary(self) -> None:
        report = SessionReport(
            session_id="s1",
            started_at=datetime(2025, 1, 1, 10, 0),
            ended_at=datetime(2025, 1, 1, 10, 5),
            sync_passes=[
                {"success": True, "success_count": 3, "failure_count": 0},
                {"success": False, "success_count": 1, "failure_count": 2},
            ],
            errors=[{"error": "x"}],
        )

        data = report.to_dict()

        assert data["duration_seconds"] == 300
        assert data["summary"] == {
            "total_passes": 2,
            "successful_passes": 1,
            "operations_synced": 4,
            "operations_failed": 2,
            "total_errors": 1,
        }

    def test_open_report(self) -> None:
        data = SessionReport(session_id="s1", started_at=datetime.now()).to_dict()
        assert data["ended_at"] is None
        assert data["duration_seconds"] is None


class TestSession:
    """Tests for Session wiring and lifecycle."""

    def test_services_wired(self, sample_config: MedReferConfig, make_patient) -> None:
        with Session(config=sample_config) as session:
            assert session.sync.is_initialized
            assert sample_config.database.path.exists()

            patient = make_patient()
            session.data.create_patient(patient)

            assert session.sync.queue_size == 1
            actions = [log.action for log in session.audit.get_audit_logs()]
            assert "create_patient_profile" in actions
            assert "session_started" in actions

    def test_audit_session_id(self, sample_config: MedReferConfig) -> None:
        with Session(config=sample_config, session_id="abcdef0123456789") as session:
            entry = session.audit.get_audit_logs(event_type=SecurityEventType.SYSTEM)[0]
            assert entry.session_id == "session_abcdef01"
            assert entry.metadata == {"session_id": "abcdef0123456789"}

    def test_sync_passes_tracked(self, sample_config: MedReferConfig, make_patient) -> None:
        remote = InMemoryRemoteStore()
        session = Session(config=sample_config, remote=remote)
        session.data.create_patient(make_patient())

        result = session.perform_sync()
        report_path = session.close()

        assert result.success is True
        data = json.loads(report_path.read_text())
        assert data["summary"]["total_passes"] == 1
        assert data["summary"]["operations_synced"] == 1
        assert data["sync_passes"][0]["success_count"] == 1
        assert data["config_snapshot"]["sync"]["auto_sync"] is False

    def test_failures_reported(self, sample_config: MedReferConfig, make_patient) -> None:
        remote = InMemoryRemoteStore()
        session = Session(config=sample_config, remote=remote)
        patient = make_patient()
        remote.fail_for("patient", patient.id)
        session.data.create_patient(patient)

        session.perform_sync()
        report = session.get_report()
        session.close()

        assert report.sync_passes[0]["failure_count"] == 1
        assert report.errors == []

    def test_offline_pass_recorded_as_error(self, sample_config: MedReferConfig) -> None:
        session = Session(config=sample_config, connectivity=ConnectivityMonitor(online=False))
        session.perform_sync()
        session.close()

        errors = session.get_report().errors
        assert [error["error"] for error in errors] == ["Device is offline"]

    def test_session_id_bound_to_log_context(self, sample_config: MedReferConfig) -> None:
        session = Session(config=sample_config, session_id="ctx-session")
        assert structlog.contextvars.get_contextvars()["session_id"] == "ctx-session"

        session.close()
        assert "session_id" not in structlog.contextvars.get_contextvars()

    def test_close_is_idempotent(self, sample_config: MedReferConfig) -> None:
        session = Session(config=sample_config, session_id="12345678-aaaa")
        first = session.close()
        second = session.close()

        assert first == second
        assert first == sample_config.session_directory / "report_12345678.json"
        assert first.exists()
        assert session.get_report().ended_at is not None

    def test_queue_survives_restart(self, sample_config: MedReferConfig, make_patient) -> None:
        offline = ConnectivityMonitor(online=False)
        with Session(config=sample_config, connectivity=offline) as session:
            session.data.create_patient(make_patient())

        remote = InMemoryRemoteStore()
        with Session(config=sample_config, remote=remote) as session:
            assert session.sync.queue_size == 1
            assert session.perform_sync().success_count == 1
            closed = session.audit.get_audit_logs(event_type=SecurityEventType.SYSTEM)
            assert "session_closed" in [log.action for log in closed]
