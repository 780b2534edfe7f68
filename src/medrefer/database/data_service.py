"""
MedRefer data service.

Single entry point for screens and commands. Wraps the DAOs and, when the
services are attached, queues sync operations and writes data-access audit
events for every change to a synced entity.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from medrefer.core.errors import SyncError
from medrefer.core.logging import get_logger
from medrefer.database.dao import (
    AppointmentDao,
    CartDao,
    ClinicalDecisionDao,
    PatientDao,
    PaymentDao,
    QualityMetricDao,
    ReferralDao,
    SpecialistDao,
)
from medrefer.database.db import Database
from medrefer.database.models import (
    Appointment,
    CartItem,
    ClinicalDecision,
    DataAccessType,
    Patient,
    Payment,
    QualityMetric,
    Record,
    Referral,
    Specialist,
)
from medrefer.sync.models import OperationType, SyncOperation, SyncPriority

if TYPE_CHECKING:
    from medrefer.audit.service import SecurityAuditService
    from medrefer.sync.service import OfflineSyncService

logger = get_logger(__name__)

# entity type -> audit resource type
SYNCED_ENTITIES: dict[str, str] = {
    "patient": "patient_profile",
    "specialist": "specialist",
    "referral": "referral",
    "appointment": "appointment",
    "payment": "payment",
}

_ACCESS_TYPES = {
    OperationType.CREATE: DataAccessType.CREATE,
    OperationType.UPDATE: DataAccessType.UPDATE,
    OperationType.DELETE: DataAccessType.DELETE,
}


class DataService:
    """CRUD facade over the local database."""

    def __init__(
        self,
        db: Database,
        sync_service: OfflineSyncService | None = None,
        audit_service: SecurityAuditService | None = None,
        user_id: str = "system",
    ) -> None:
        self.db = db
        self.sync_service = sync_service
        self.audit_service = audit_service
        self.user_id = user_id

        self.patients = PatientDao(db)
        self.specialists = SpecialistDao(db)
        self.referrals = ReferralDao(db)
        self.appointments = AppointmentDao(db)
        self.payments = PaymentDao(db)
        self.cart = CartDao(db)
        self.clinical_decisions = ClinicalDecisionDao(db)
        self.quality_metrics = QualityMetricDao(db)

    def attach(
        self,
        sync_service: OfflineSyncService | None = None,
        audit_service: SecurityAuditService | None = None,
    ) -> None:
        if sync_service is not None:
            self.sync_service = sync_service
        if audit_service is not None:
            self.audit_service = audit_service

    def _record_change(
        self,
        entity_type: str,
        operation_type: OperationType,
        entity_id: str,
        record: Record | None = None,
        priority: SyncPriority = SyncPriority.NORMAL,
    ) -> None:
        """Queue the committed change for sync and write its audit entry.

        The local write has already been committed at this point, so a
        queueing failure is logged rather than raised.
        """
        if self.sync_service is not None:
            data: dict[str, Any] = record.to_dict() if record is not None else {"id": entity_id}
            try:
                self.sync_service.queue_operation(
                    SyncOperation(
                        operation_type=operation_type,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        data=data,
                        priority=priority,
                    )
                )
            except SyncError as e:
                logger.error(
                    "Change stored locally but not queued for sync",
                    entity_type=entity_type,
                    entity_id=entity_id,
                    operation_type=operation_type.value,
                    error=str(e),
                )

        if self.audit_service is not None:
            self.audit_service.log_data_access(
                self.user_id,
                SYNCED_ENTITIES[entity_type],
                entity_id,
                _ACCESS_TYPES[operation_type],
            )

    # Patients

    def get_patients(self, limit: int | None = None, offset: int = 0) -> list[Patient]:
        return self.patients.get_all_patients(limit=limit, offset=offset)

    def get_patient_by_id(self, patient_id: str) -> Patient | None:
        return self.patients.get_patient_by_id(patient_id)

    def search_patients(self, term: str) -> list[Patient]:
        return self.patients.search_patients(term)

    def create_patient(self, patient: Patient) -> str:
        patient_id = self.patients.create_patient(patient)
        self._record_change("patient", OperationType.CREATE, patient_id, patient)
        return patient_id

    def update_patient(self, patient: Patient) -> bool:
        self.patients.update_patient(patient)
        self._record_change("patient", OperationType.UPDATE, patient.id, patient)
        return True

    def delete_patient(self, patient_id: str) -> bool:
        deleted = self.patients.delete_patient(patient_id)
        if deleted:
            self._record_change("patient", OperationType.DELETE, patient_id)
        return deleted

    # Specialists

    def get_specialists(self) -> list[Specialist]:
        return self.specialists.find_all(order_by="name ASC")

    def get_specialist_by_id(self, specialist_id: str) -> Specialist | None:
        return self.specialists.find_by_id(specialist_id)

    def get_available_specialists(self) -> list[Specialist]:
        return self.specialists.get_available()

    def filter_specialists(self, **criteria: Any) -> list[Specialist]:
        return self.specialists.filter(**criteria)

    def create_specialist(self, specialist: Specialist) -> str:
        specialist_id = self.specialists.insert(specialist)
        self._record_change("specialist", OperationType.CREATE, specialist_id, specialist)
        return specialist_id

    # Referrals

    def get_referrals(self) -> list[Referral]:
        return self.referrals.get_all_referrals()

    def get_referral_by_id(self, referral_id: str) -> Referral | None:
        return self.referrals.find_by_id(referral_id)

    def get_referrals_by_patient_id(self, patient_id: str) -> list[Referral]:
        return self.referrals.get_by_patient(patient_id)

    def get_referrals_by_status(self, status: str) -> list[Referral]:
        return self.referrals.get_by_status(status)

    def create_referral(self, referral: Referral) -> str:
        referral_id = self.referrals.create_referral(referral)
        priority = (
            SyncPriority.CRITICAL
            if referral.is_emergency or referral.is_critical
            else SyncPriority.HIGH if referral.is_urgent else SyncPriority.NORMAL
        )
        self._record_change("referral", OperationType.CREATE, referral_id, referral, priority)
        return referral_id

    def update_referral_status(self, referral_id: str, status: str) -> bool:
        if not self.referrals.update_status(referral_id, status):
            return False
        self._record_change(
            "referral",
            OperationType.UPDATE,
            referral_id,
            self.referrals.find_by_id(referral_id),
        )
        return True

    # Appointments

    def get_appointment_history(self, patient_id: str) -> list[Appointment]:
        return self.appointments.get_history(patient_id)

    def get_upcoming_appointments(self, now: datetime | None = None) -> list[Appointment]:
        return self.appointments.get_upcoming(now)

    def create_appointment(self, appointment: Appointment) -> str:
        appointment_id = self.appointments.insert(appointment)
        self._record_change("appointment", OperationType.CREATE, appointment_id, appointment)
        return appointment_id

    def update_appointment_status(self, appointment_id: str, status: str) -> bool:
        if not self.appointments.update_status(appointment_id, status):
            return False
        self._record_change(
            "appointment",
            OperationType.UPDATE,
            appointment_id,
            self.appointments.find_by_id(appointment_id),
        )
        return True

    # Payments

    def get_payment_history(self, patient_id: str) -> list[Payment]:
        return self.payments.get_history(patient_id)

    def create_payment(self, payment: Payment) -> str:
        payment_id = self.payments.insert(payment)
        self._record_change("payment", OperationType.CREATE, payment_id, payment)
        return payment_id

    def get_total_revenue(self) -> float:
        return self.payments.get_total_revenue()

    # Pharmacy cart

    def get_cart_items(self) -> list[CartItem]:
        return self.cart.get_cart_items()

    def add_to_cart(self, drug_id: str, name: str, unit_price: float, quantity: int = 1) -> CartItem:
        return self.cart.add_item(drug_id, name, unit_price, quantity)

    def update_cart_quantity(self, drug_id: str, quantity: int) -> CartItem | None:
        return self.cart.update_quantity(drug_id, quantity)

    def remove_from_cart(self, drug_id: str) -> bool:
        return self.cart.remove_item(drug_id)

    def clear_cart(self) -> int:
        return self.cart.clear_cart()

    def get_cart_total(self) -> float:
        return self.cart.get_cart_total()

    # Clinical decisions and quality metrics

    def get_clinical_decisions(self, patient_id: str | None = None) -> list[ClinicalDecision]:
        if patient_id is not None:
            return self.clinical_decisions.get_by_patient(patient_id)
        return self.clinical_decisions.find_all(order_by="created_at DESC")

    def create_clinical_decision(self, decision: ClinicalDecision) -> str:
        return self.clinical_decisions.insert(decision)

    def get_quality_metrics(self, category: str | None = None) -> list[QualityMetric]:
        if category is not None:
            return self.quality_metrics.get_by_category(category)
        return self.quality_metrics.find_all(order_by="measurement_date DESC")

    def create_quality_metric(self, metric: QualityMetric) -> str:
        return self.quality_metrics.insert(metric)
