"""
Pytest configuration and fixtures for MedRefer tests.
"""

import sys
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Generator

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config(temp_dir: Path) -> "MedReferConfig":
    """Create a sample configuration rooted in a temporary directory."""
    from medrefer.core.config import MedReferConfig

    config = MedReferConfig(
        session_directory=temp_dir / "sessions",
    )
    config.logging.log_directory = temp_dir / "logs"
    config.logging.console_enabled = False
    config.logging.file_enabled = False
    config.database.path = temp_dir / "medrefer.db"
    config.sync.auto_sync = False
    config.ensure_directories()
    return config


@pytest.fixture
def database() -> Generator["Database", None, None]:
    """In-memory database with the full schema."""
    from medrefer.database.db import Database

    db = Database.in_memory()
    yield db
    db.close()


@pytest.fixture
def remote_store() -> "InMemoryRemoteStore":
    from medrefer.sync.remote import InMemoryRemoteStore

    return InMemoryRemoteStore()


@pytest.fixture
def connectivity() -> "ConnectivityMonitor":
    from medrefer.sync.remote import ConnectivityMonitor

    return ConnectivityMonitor(online=True)


@pytest.fixture
def sync_config() -> "SyncConfig":
    from medrefer.core.config import SyncConfig

    return SyncConfig(auto_sync=False)


@pytest.fixture
def sync_service(
    database: "Database",
    remote_store: "InMemoryRemoteStore",
    connectivity: "ConnectivityMonitor",
    sync_config: "SyncConfig",
) -> Generator["OfflineSyncService", None, None]:
    """Initialized sync service without a background scheduler."""
    from medrefer.sync.service import OfflineSyncService

    service = OfflineSyncService(database, remote_store, sync_config, connectivity=connectivity)
    service.initialize()
    yield service
    service.dispose()


@pytest.fixture
def audit_service(database: "Database") -> "SecurityAuditService":
    from medrefer.audit.service import SecurityAuditService

    service = SecurityAuditService(database, session_id="session_test")
    service.initialize()
    return service


@pytest.fixture
def data_service(database: "Database") -> "DataService":
    """Data service with no sync or audit hooks attached."""
    from medrefer.database.data_service import DataService

    return DataService(database)


@pytest.fixture
def make_patient():
    """Factory for valid patients."""
    from medrefer.database.models import Patient

    counter = {"n": 0}

    def factory(**overrides):
        counter["n"] += 1
        values = {
            "name": f"Patient {counter['n']}",
            "age": 40,
            "medical_record_number": f"MRN{counter['n']:05d}",
            "date_of_birth": datetime(1985, 3, 14),
            "gender": "Female",
            "phone": f"+2547000000{counter['n']:02d}",
        }
        values.update(overrides)
        return Patient(**values)

    return factory


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
