"""
MedRefer data access objects.

Each DAO wraps one table with CRUD operations and the lookups the
application screens rely on.
"""

from __future__ import annotations

import dataclasses
import sqlite3
import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any, Generic, TypeVar

from medrefer.core.errors import (
    DuplicateRecordError,
    PersistenceError,
    RecordNotFoundError,
    ValidationError,
)
from medrefer.core.logging import get_logger
from medrefer.database.db import Database
from medrefer.database.models import (
    Appointment,
    CartItem,
    ClinicalDecision,
    Patient,
    Payment,
    QualityMetric,
    Record,
    Referral,
    SecurityAuditLog,
    SecurityEventType,
    Specialist,
    to_iso,
)

T = TypeVar("T", bound=Record)
logger = get_logger(__name__)


class BaseDao(Generic[T]):
    """Generic CRUD operations over one table."""

    model: type[T]

    def __init__(self, db: Database) -> None:
        self.db = db

    @property
    def table_name(self) -> str:
        return self.model.table

    def from_row(self, row: Mapping[str, Any]) -> T:
        return self.model.from_row(row)  # type: ignore[attr-defined]

    def to_row(self, obj: T) -> dict[str, Any]:
        return obj.to_row()

    def insert(self, obj: T) -> str:
        """Insert a new record. Returns its id."""
        row = self.to_row(obj)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        sql = f"INSERT INTO {self.table_name} ({columns}) VALUES ({placeholders})"
        try:
            self.db.execute(sql, list(row.values()))
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(f"{self.table_name}: {e}") from e
        return obj.id

    def update(self, obj: T) -> int:
        """Update an existing record by id. Returns the affected row count."""
        row = self.to_row(obj)
        row.pop("id")
        row.pop("created_at", None)
        assignments = ", ".join(f"{column} = ?" for column in row)
        sql = f"UPDATE {self.table_name} SET {assignments} WHERE id = ?"
        try:
            return self.db.execute(sql, [*row.values(), obj.id])
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(f"{self.table_name}: {e}") from e

    def upsert(self, obj: T) -> str:
        """Insert the record, or overwrite the stored copy with the same id."""
        row = self.to_row(obj)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        updates = ", ".join(f"{column} = excluded.{column}" for column in row if column != "id")
        sql = (
            f"INSERT INTO {self.table_name} ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}"
        )
        try:
            self.db.execute(sql, list(row.values()))
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(f"{self.table_name}: {e}") from e
        return obj.id

    def delete(self, record_id: str) -> int:
        return self.raw_update(f"DELETE FROM {self.table_name} WHERE id = ?", [record_id])

    def find_all(
        self,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[T]:
        return self.find_where(None, (), order_by=order_by, limit=limit, offset=offset)

    def find_where(
        self,
        where: str | None,
        params: Sequence[Any] = (),
        order_by: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[T]:
        sql = f"SELECT * FROM {self.table_name}"
        args = list(params)
        if where:
            sql += f" WHERE {where}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            args.extend([limit, offset])
        return [self.from_row(row) for row in self.db.query(sql, args)]

    def find_by_id(self, record_id: str) -> T | None:
        row = self.db.query_one(
            f"SELECT * FROM {self.table_name} WHERE id = ? LIMIT 1", [record_id]
        )
        return self.from_row(row) if row is not None else None

    def get(self, record_id: str) -> T:
        """Like find_by_id but raises when the record is missing."""
        obj = self.find_by_id(record_id)
        if obj is None:
            raise RecordNotFoundError(f"{self.table_name}: no record with id {record_id}")
        return obj

    def count(self, where: str | None = None, params: Sequence[Any] = ()) -> int:
        sql = f"SELECT COUNT(*) FROM {self.table_name}"
        if where:
            sql += f" WHERE {where}"
        return int(self.db.scalar(sql, params) or 0)

    def raw_query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return [dict(row) for row in self.db.query(sql, params)]

    def raw_update(self, sql: str, params: Sequence[Any] = ()) -> int:
        try:
            return self.db.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise PersistenceError(f"{self.table_name}: {e}") from e


class PatientDao(BaseDao[Patient]):
    """Patients, with a short-lived read-through cache."""

    model = Patient
    CACHE_TTL = timedelta(minutes=5)

    def __init__(self, db: Database) -> None:
        super().__init__(db)
        self._cache: dict[str, tuple[Patient, datetime]] = {}

    def clear_cache(self, patient_id: str | None = None) -> None:
        if patient_id is None:
            self._cache.clear()
        else:
            self._cache.pop(patient_id, None)

    # Entries are private copies; callers may mutate what they are given.
    def _cache_put(self, patient: Patient) -> None:
        self._cache[patient.id] = (dataclasses.replace(patient), datetime.now())

    def _cache_get(self, patient_id: str) -> Patient | None:
        entry = self._cache.get(patient_id)
        if entry is None:
            return None
        patient, stored_at = entry
        if datetime.now() - stored_at >= self.CACHE_TTL:
            self._cache.pop(patient_id, None)
            return None
        return dataclasses.replace(patient)

    @staticmethod
    def validate(patient: Patient) -> None:
        errors = []
        if not patient.name.strip():
            errors.append("name is required")
        if not patient.medical_record_number.strip():
            errors.append("medical record number is required")
        if not patient.gender.strip():
            errors.append("gender is required")
        if patient.age < 0:
            errors.append("age must not be negative")
        if errors:
            raise ValidationError("Invalid patient: " + "; ".join(errors))

    def create_patient(self, patient: Patient) -> str:
        self.validate(patient)
        if self.get_patient_by_mrn(patient.medical_record_number) is not None:
            raise DuplicateRecordError(
                f"Patient with MRN {patient.medical_record_number} already exists"
            )
        patient_id = self.insert(patient)
        self._cache_put(patient)
        logger.debug("Patient created", patient_id=patient_id)
        return patient_id

    def get_all_patients(self, limit: int | None = None, offset: int = 0) -> list[Patient]:
        return self.find_all(order_by="name ASC", limit=limit, offset=offset)

    def get_patient_by_id(self, patient_id: str) -> Patient | None:
        cached = self._cache_get(patient_id)
        if cached is not None:
            return cached
        patient = self.find_by_id(patient_id)
        if patient is not None:
            self._cache_put(patient)
        return patient

    def get_patient_by_mrn(self, mrn: str) -> Patient | None:
        matches = self.find_where("medical_record_number = ?", [mrn], limit=1)
        return matches[0] if matches else None

    def search_patients(self, term: str) -> list[Patient]:
        pattern = f"%{term.strip()}%"
        return self.find_where(
            "name LIKE ? OR medical_record_number LIKE ? OR phone LIKE ?",
            [pattern, pattern, pattern],
            order_by="name ASC",
        )

    def update_patient(self, patient: Patient) -> bool:
        self.validate(patient)
        patient.touch()
        if self.update(patient) == 0:
            raise RecordNotFoundError(f"Patient {patient.id} not found")
        self._cache_put(patient)
        return True

    def delete_patient(self, patient_id: str) -> bool:
        deleted = self.delete(patient_id) > 0
        self.clear_cache(patient_id)
        return deleted


class SpecialistDao(BaseDao[Specialist]):
    model = Specialist

    def get_by_specialty(self, specialty: str) -> list[Specialist]:
        return self.find_where(
            "LOWER(specialty) = LOWER(?)", [specialty], order_by="rating DESC"
        )

    def get_available(self) -> list[Specialist]:
        return self.find_where("is_available = 1", order_by="rating DESC")

    def search(self, term: str) -> list[Specialist]:
        pattern = f"%{term.strip()}%"
        return self.find_where(
            "name LIKE ? OR specialty LIKE ? OR hospital LIKE ?",
            [pattern, pattern, pattern],
            order_by="rating DESC",
        )

    def filter(
        self,
        specialty: str | None = None,
        min_rating: float | None = None,
        available_only: bool = False,
        language: str | None = None,
        insurance: str | None = None,
    ) -> list[Specialist]:
        clauses: list[str] = []
        params: list[Any] = []
        if specialty:
            clauses.append("LOWER(specialty) = LOWER(?)")
            params.append(specialty)
        if min_rating is not None:
            clauses.append("rating >= ?")
            params.append(min_rating)
        if available_only:
            clauses.append("is_available = 1")

        specialists = self.find_where(
            " AND ".join(clauses) or None, params, order_by="rating DESC"
        )

        # list columns are comma-joined text, so match them in Python
        if language:
            wanted = language.lower()
            specialists = [s for s in specialists if wanted in (lang.lower() for lang in s.languages)]
        if insurance:
            wanted = insurance.lower()
            specialists = [s for s in specialists if wanted in (i.lower() for i in s.insurance)]
        return specialists


class ReferralDao(BaseDao[Referral]):
    model = Referral

    @staticmethod
    def generate_tracking_number(now: datetime | None = None) -> str:
        now = now or datetime.now()
        return f"REF-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"

    def create_referral(self, referral: Referral) -> str:
        if not referral.patient_id:
            raise ValidationError("Invalid referral: patient is required")
        if not referral.urgency:
            raise ValidationError("Invalid referral: urgency is required")
        if not referral.tracking_number:
            referral.tracking_number = self.generate_tracking_number()
        return self.insert(referral)

    def get_all_referrals(self) -> list[Referral]:
        return self.find_all(order_by="created_at DESC")

    def get_by_patient(self, patient_id: str) -> list[Referral]:
        return self.find_where("patient_id = ?", [patient_id], order_by="created_at DESC")

    def get_by_status(self, status: str) -> list[Referral]:
        return self.find_where(
            "LOWER(status) = LOWER(?)", [status], order_by="created_at DESC"
        )

    def get_by_tracking_number(self, tracking_number: str) -> Referral | None:
        matches = self.find_where("tracking_number = ?", [tracking_number], limit=1)
        return matches[0] if matches else None

    def update_status(self, referral_id: str, status: str) -> bool:
        updated = self.raw_update(
            f"UPDATE {self.table_name} SET status = ?, updated_at = ? WHERE id = ?",
            [status, to_iso(datetime.now()), referral_id],
        )
        return updated > 0


class AppointmentDao(BaseDao[Appointment]):
    model = Appointment

    def get_history(self, patient_id: str) -> list[Appointment]:
        return self.find_where(
            "patient_id = ?", [patient_id], order_by="appointment_date DESC"
        )

    def get_upcoming(self, now: datetime | None = None) -> list[Appointment]:
        now = now or datetime.now()
        return self.find_where(
            "appointment_date >= ? AND LOWER(status) NOT IN ('cancelled', 'completed')",
            [to_iso(now)],
            order_by="appointment_date ASC",
        )

    def update_status(self, appointment_id: str, status: str) -> bool:
        updated = self.raw_update(
            f"UPDATE {self.table_name} SET status = ?, updated_at = ? WHERE id = ?",
            [status, to_iso(datetime.now()), appointment_id],
        )
        return updated > 0


class PaymentDao(BaseDao[Payment]):
    model = Payment

    def get_history(self, patient_id: str) -> list[Payment]:
        return self.find_where("patient_id = ?", [patient_id], order_by="created_at DESC")

    def get_total_revenue(self) -> float:
        total = self.db.scalar(
            f"SELECT SUM(amount) FROM {self.table_name} WHERE LOWER(status) = 'completed'"
        )
        return float(total or 0.0)


class CartDao(BaseDao[CartItem]):
    """Pharmacy cart. One row per drug."""

    model = CartItem

    def get_cart_items(self) -> list[CartItem]:
        return self.find_all(order_by="created_at ASC")

    def get_by_drug(self, drug_id: str) -> CartItem | None:
        matches = self.find_where("drug_id = ?", [drug_id], limit=1)
        return matches[0] if matches else None

    def add_item(self, drug_id: str, name: str, unit_price: float, quantity: int = 1) -> CartItem:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if unit_price < 0:
            raise ValidationError("Unit price must not be negative")

        existing = self.get_by_drug(drug_id)
        if existing is not None:
            existing.quantity += quantity
            existing.unit_price = unit_price
            existing.touch()
            self.update(existing)
            return existing

        item = CartItem(drug_id=drug_id, name=name, quantity=quantity, unit_price=unit_price)
        self.insert(item)
        return item

    def update_quantity(self, drug_id: str, quantity: int) -> CartItem | None:
        """Set an item's quantity. Zero removes the item and returns None."""
        if quantity < 0:
            raise ValidationError("Quantity must not be negative")
        item = self.get_by_drug(drug_id)
        if item is None:
            raise RecordNotFoundError(f"Drug {drug_id} is not in the cart")
        if quantity == 0:
            self.remove_item(drug_id)
            return None
        item.quantity = quantity
        item.touch()
        self.update(item)
        return item

    def remove_item(self, drug_id: str) -> bool:
        return self.raw_update(f"DELETE FROM {self.table_name} WHERE drug_id = ?", [drug_id]) > 0

    def clear_cart(self) -> int:
        return self.raw_update(f"DELETE FROM {self.table_name}")

    def get_cart_total(self) -> float:
        return round(sum(item.total_price for item in self.get_cart_items()), 2)


class ClinicalDecisionDao(BaseDao[ClinicalDecision]):
    model = ClinicalDecision

    def get_by_patient(self, patient_id: str) -> list[ClinicalDecision]:
        return self.find_where(
            "patient_id = ? AND is_active = 1", [patient_id], order_by="created_at DESC"
        )

    def get_pending(self) -> list[ClinicalDecision]:
        return self.find_where(
            "LOWER(status) = 'pending' AND is_active = 1", order_by="created_at ASC"
        )

    def review(
        self,
        decision_id: str,
        status: str,
        reviewed_by: str,
        notes: str | None = None,
    ) -> ClinicalDecision:
        decision = self.get(decision_id)
        reviewed = decision.copy_with(
            status=status,
            reviewed_by=reviewed_by,
            review_notes=notes,
            reviewed_at=datetime.now(),
            updated_at=datetime.now(),
        )
        self.update(reviewed)
        return reviewed


class QualityMetricDao(BaseDao[QualityMetric]):
    model = QualityMetric

    def get_by_category(self, category: str) -> list[QualityMetric]:
        return self.find_where(
            "LOWER(category) = LOWER(?) AND is_active = 1",
            [category],
            order_by="measurement_date DESC",
        )

    def get_below_target(self) -> list[QualityMetric]:
        return self.find_where(
            "current_value < target_value AND is_active = 1",
            order_by="measurement_date DESC",
        )


class AuditLogDao:
    """Append-mostly store for the security audit trail."""

    table_name = "security_audit_logs"

    def __init__(self, db: Database) -> None:
        self.db = db

    def append(self, entry: SecurityAuditLog) -> None:
        row = entry.to_row()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        self.db.execute(
            f"INSERT INTO {self.table_name} ({columns}) VALUES ({placeholders})",
            list(row.values()),
        )

    def query(
        self,
        user_id: str | None = None,
        event_type: SecurityEventType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[SecurityAuditLog]:
        """Filter entries. Date bounds are exclusive. Newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type.value)
        if start is not None:
            clauses.append("timestamp > ?")
            params.append(to_iso(start))
        if end is not None:
            clauses.append("timestamp < ?")
            params.append(to_iso(end))

        sql = f"SELECT * FROM {self.table_name}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [SecurityAuditLog.from_row(row) for row in self.db.query(sql, params)]

    def count(self) -> int:
        return int(self.db.scalar(f"SELECT COUNT(*) FROM {self.table_name}") or 0)

    def delete_older_than(self, cutoff: datetime) -> int:
        return self.db.execute(
            f"DELETE FROM {self.table_name} WHERE timestamp < ?", [to_iso(cutoff)]
        )

    def trim_to(self, max_entries: int) -> int:
        """Drop the oldest entries so at most ``max_entries`` remain."""
        excess = self.count() - max_entries
        if excess <= 0:
            return 0
        return self.db.execute(
            f"DELETE FROM {self.table_name} WHERE id IN "
            f"(SELECT id FROM {self.table_name} ORDER BY timestamp ASC LIMIT ?)",
            [excess],
        )
