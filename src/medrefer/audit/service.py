"""
MedRefer security audit service.

Records authentication, data access and system events to a persistent
audit trail, tracks failed logins and raises alerts for high-risk events.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from medrefer.core.config import AuditConfig
from medrefer.core.logging import OperationLogger, get_logger
from medrefer.database.dao import AuditLogDao
from medrefer.database.db import Database
from medrefer.database.models import (
    DataAccessType,
    SecurityAuditLog,
    SecurityEventType,
    SecurityRiskLevel,
)

logger = get_logger(__name__)

AlertCallback = Callable[[SecurityAuditLog], None]

HIGH_RISK_RESOURCES = frozenset({"patient_medical_record", "sensitive_document"})
MEDIUM_RISK_RESOURCES = frozenset({"patient_profile", "referral"})

REPORT_WINDOW = timedelta(days=30)


def data_access_risk(resource_type: str, access_type: DataAccessType) -> SecurityRiskLevel:
    """Risk of touching ``resource_type``. Deletes raise the level by one."""
    deleting = access_type is DataAccessType.DELETE
    if resource_type in HIGH_RISK_RESOURCES:
        return SecurityRiskLevel.HIGH if deleting else SecurityRiskLevel.MEDIUM
    if resource_type in MEDIUM_RISK_RESOURCES:
        return SecurityRiskLevel.MEDIUM if deleting else SecurityRiskLevel.LOW
    return SecurityRiskLevel.LOW


@dataclass(frozen=True)
class SecurityReport:
    start_date: datetime
    end_date: datetime
    total_events: int
    authentication_events: int
    data_access_events: int
    system_events: int
    high_risk_events: int
    failed_login_attempts: int
    unique_active_users: int
    blocked_users: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "total_events": self.total_events,
            "authentication_events": self.authentication_events,
            "data_access_events": self.data_access_events,
            "system_events": self.system_events,
            "high_risk_events": self.high_risk_events,
            "failed_login_attempts": self.failed_login_attempts,
            "unique_active_users": self.unique_active_users,
            "blocked_users": self.blocked_users,
        }


class SecurityAuditService:
    """Persistent security audit trail with login lockout tracking."""

    def __init__(
        self,
        db: Database,
        config: AuditConfig | None = None,
        session_id: str | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or AuditConfig()
        self.dao = AuditLogDao(db)
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        self._clock = clock
        self._lock = threading.Lock()
        self._failed_logins: dict[str, int] = {}
        self._last_attempts: dict[str, datetime] = {}
        self._blocked_ips: set[str] = set()
        self._alert_callbacks: list[AlertCallback] = []
        self._initialized = False

    def initialize(self) -> None:
        if self._initialized:
            return
        removed = self.cleanup_old_logs()
        self._initialized = True
        logger.info("Security audit service initialized", removed_entries=removed)

    def add_alert_callback(self, callback: AlertCallback) -> None:
        self._alert_callbacks.append(callback)

    # Event logging

    def log_security_event(
        self,
        event_type: SecurityEventType,
        user_id: str,
        action: str,
        resource_id: str | None = None,
        ip_address: str | None = None,
        metadata: dict[str, Any] | None = None,
        risk_level: SecurityRiskLevel = SecurityRiskLevel.LOW,
    ) -> SecurityAuditLog:
        entry = SecurityAuditLog(
            event_type=event_type,
            user_id=user_id,
            action=action,
            resource_id=resource_id,
            ip_address=ip_address or "unknown",
            risk_level=risk_level,
            metadata=dict(metadata or {}),
            session_id=self.session_id,
            timestamp=self._clock(),
        )
        self.dao.append(entry)

        if risk_level.is_alerting:
            self._trigger_alert(entry)

        if self.dao.count() > self.config.max_log_entries:
            self.dao.trim_to(self.config.max_log_entries)

        logger.debug(
            "Security event logged",
            event_type=event_type.value,
            action=action,
            user_id=user_id,
            risk_level=risk_level.value,
        )
        return entry

    def log_authentication_attempt(
        self,
        user_id: str,
        is_successful: bool,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Record a login attempt. Returns whether the login is allowed."""
        ip = ip_address or "unknown"

        if ip in self._blocked_ips:
            self.log_security_event(
                SecurityEventType.AUTHENTICATION,
                user_id,
                "login_attempt_blocked_ip",
                ip_address=ip,
                risk_level=SecurityRiskLevel.HIGH,
                metadata={"reason": "blocked_ip"},
            )
            return False

        now = self._clock()
        if is_successful:
            with self._lock:
                self._failed_logins.pop(user_id, None)
                self._last_attempts[user_id] = now
            self.log_security_event(
                SecurityEventType.AUTHENTICATION,
                user_id,
                "login_success",
                ip_address=ip,
                metadata={"user_agent": user_agent},
            )
            return True

        with self._lock:
            failed = self._failed_logins.get(user_id, 0) + 1
            self._failed_logins[user_id] = failed
            self._last_attempts[user_id] = now

        threshold_reached = failed >= self.config.max_failed_logins
        self.log_security_event(
            SecurityEventType.AUTHENTICATION,
            user_id,
            "login_failed",
            ip_address=ip,
            risk_level=SecurityRiskLevel.HIGH if threshold_reached else SecurityRiskLevel.MEDIUM,
            metadata={"failed_attempts": failed, "user_agent": user_agent},
        )
        if threshold_reached:
            self._block_user(user_id, ip)
        return False

    def log_data_access(
        self,
        user_id: str,
        resource_type: str,
        resource_id: str,
        access_type: DataAccessType,
        metadata: dict[str, Any] | None = None,
    ) -> SecurityAuditLog:
        return self.log_security_event(
            SecurityEventType.DATA_ACCESS,
            user_id,
            f"{access_type.value}_{resource_type}",
            resource_id=resource_id,
            risk_level=data_access_risk(resource_type, access_type),
            metadata={
                "resource_type": resource_type,
                "access_type": access_type.value,
                **(metadata or {}),
            },
        )

    def log_system_event(
        self,
        action: str,
        user_id: str | None = None,
        risk_level: SecurityRiskLevel = SecurityRiskLevel.LOW,
        metadata: dict[str, Any] | None = None,
    ) -> SecurityAuditLog:
        return self.log_security_event(
            SecurityEventType.SYSTEM,
            user_id or "system",
            action,
            risk_level=risk_level,
            metadata=metadata,
        )

    # Lockout

    def is_user_blocked(self, user_id: str) -> bool:
        with self._lock:
            failed = self._failed_logins.get(user_id, 0)
            last_attempt = self._last_attempts.get(user_id)
        if failed < self.config.max_failed_logins or last_attempt is None:
            return False
        return self._clock() - last_attempt < self.config.lockout_duration

    def failed_attempts(self, user_id: str) -> int:
        return self._failed_logins.get(user_id, 0)

    def block_ip(self, ip_address: str) -> None:
        self._blocked_ips.add(ip_address)
        self.log_security_event(
            SecurityEventType.SECURITY,
            "system",
            "ip_blocked",
            ip_address=ip_address,
            risk_level=SecurityRiskLevel.MEDIUM,
        )

    def unblock_ip(self, ip_address: str) -> None:
        self._blocked_ips.discard(ip_address)
        self.log_security_event(
            SecurityEventType.SECURITY,
            "system",
            "ip_unblocked",
            ip_address=ip_address,
        )

    @property
    def blocked_ips(self) -> frozenset[str]:
        return frozenset(self._blocked_ips)

    def _block_user(self, user_id: str, ip_address: str) -> None:
        self.log_security_event(
            SecurityEventType.SECURITY,
            user_id,
            "user_blocked",
            ip_address=ip_address,
            risk_level=SecurityRiskLevel.HIGH,
            metadata={
                "reason": "excessive_failed_login_attempts",
                "block_duration_minutes": self.config.lockout_minutes,
            },
        )

    def _trigger_alert(self, entry: SecurityAuditLog) -> None:
        logger.warning(
            "Security alert",
            event_type=entry.event_type.value,
            action=entry.action,
            risk_level=entry.risk_level.value,
            user_id=entry.user_id,
            metadata=entry.metadata,
        )
        for callback in list(self._alert_callbacks):
            try:
                callback(entry)
            except Exception as e:
                logger.error("Security alert callback failed", error=str(e))

    # Queries

    def get_audit_logs(
        self,
        user_id: str | None = None,
        event_type: SecurityEventType | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
    ) -> list[SecurityAuditLog]:
        return self.dao.query(
            user_id=user_id,
            event_type=event_type,
            start=start_date,
            end=end_date,
            limit=limit,
        )

    def generate_security_report(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> SecurityReport:
        now = self._clock()
        start = start_date or now - REPORT_WINDOW
        # the upper bound is exclusive, nudge it past "now"
        end = end_date or now + timedelta(microseconds=1)
        logs = self.get_audit_logs(start_date=start, end_date=end)

        def count(event_type: SecurityEventType) -> int:
            return sum(1 for log in logs if log.event_type is event_type)

        with self._lock:
            tracked_users = list(self._failed_logins)

        return SecurityReport(
            start_date=start,
            end_date=end,
            total_events=len(logs),
            authentication_events=count(SecurityEventType.AUTHENTICATION),
            data_access_events=count(SecurityEventType.DATA_ACCESS),
            system_events=count(SecurityEventType.SYSTEM),
            high_risk_events=sum(1 for log in logs if log.risk_level.is_alerting),
            failed_login_attempts=sum(
                1
                for log in logs
                if log.event_type is SecurityEventType.AUTHENTICATION
                and log.action == "login_failed"
            ),
            unique_active_users=len({log.user_id for log in logs}),
            blocked_users=sum(1 for user in tracked_users if self.is_user_blocked(user)),
        )

    def cleanup_old_logs(self) -> int:
        """Apply the retention period and the entry cap. Returns rows removed."""
        with OperationLogger("audit log cleanup", logger) as op:
            cutoff = self._clock() - self.config.retention_period
            removed = self.dao.delete_older_than(cutoff)
            removed += self.dao.trim_to(self.config.max_log_entries)
            op.update(removed=removed)
        return removed
