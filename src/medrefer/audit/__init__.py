"""
MedRefer audit module.

Security audit trail for authentication, data access and system events.
"""

from medrefer.audit.service import SecurityAuditService, SecurityReport, data_access_risk
from medrefer.database.models import (
    DataAccessType,
    SecurityAuditLog,
    SecurityEventType,
    SecurityRiskLevel,
)

__all__ = [
    "SecurityAuditService",
    "SecurityReport",
    "SecurityAuditLog",
    "SecurityEventType",
    "SecurityRiskLevel",
    "DataAccessType",
    "data_access_risk",
]
