"""
MedRefer database module.

SQLite persistence: connection and migrations, record models, DAOs and the
data service facade.
"""

from medrefer.database.dao import (
    AppointmentDao,
    AuditLogDao,
    BaseDao,
    CartDao,
    ClinicalDecisionDao,
    PatientDao,
    PaymentDao,
    QualityMetricDao,
    ReferralDao,
    SpecialistDao,
)
from medrefer.database.data_service import DataService
from medrefer.database.db import Database
from medrefer.database.models import (
    Appointment,
    CartItem,
    ClinicalDecision,
    Patient,
    Payment,
    QualityMetric,
    Referral,
    Specialist,
)

__all__ = [
    "Database",
    "DataService",
    "BaseDao",
    "PatientDao",
    "SpecialistDao",
    "ReferralDao",
    "AppointmentDao",
    "PaymentDao",
    "CartDao",
    "ClinicalDecisionDao",
    "QualityMetricDao",
    "AuditLogDao",
    "Patient",
    "Specialist",
    "Referral",
    "Appointment",
    "Payment",
    "CartItem",
    "ClinicalDecision",
    "QualityMetric",
]
