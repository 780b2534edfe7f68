"""
MedRefer data models.

Defines the records stored in the local database and their row mappings.
"""

from __future__ import annotations

import dataclasses
import json
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, TypeVar

R = TypeVar("R", bound="Record")


def new_id() -> str:
    return str(uuid.uuid4())


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_datetime(value: Any, default: datetime | None = None) -> datetime | None:
    """Parse an ISO-8601 string (or pass a datetime through)."""
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return default


def join_list(values: list[str]) -> str:
    return ",".join(values)


def split_list(value: Any) -> list[str]:
    """Parse a comma-joined column back into a list. Empty text gives []."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [part.strip() for part in str(value).split(",") if part.strip()]


def dump_json(value: Mapping[str, Any] | None) -> str:
    return json.dumps(dict(value or {}), default=str, sort_keys=True)


def load_json(value: Any) -> dict[str, Any]:
    if value is None or value == "":
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    try:
        loaded = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return loaded if isinstance(loaded, dict) else {}


class Record(ABC):
    """Shared behaviour for stored records.

    Subclasses are dataclasses declaring ``id``, ``created_at`` and
    ``updated_at`` plus their own columns.
    """

    table: ClassVar[str] = ""
    touch_on_copy: ClassVar[bool] = False

    id: str
    created_at: datetime
    updated_at: datetime

    def touch(self) -> None:
        self.updated_at = datetime.now()

    def copy_with(self: R, **changes: Any) -> R:
        """Return a copy with ``changes`` applied."""
        if self.touch_on_copy and "updated_at" not in changes:
            changes["updated_at"] = datetime.now()
        return dataclasses.replace(self, **changes)  # type: ignore[type-var]

    def _base_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @staticmethod
    def _base_fields(data: Mapping[str, Any]) -> dict[str, Any]:
        now = datetime.now()
        return {
            "id": data.get("id") or new_id(),
            "created_at": parse_datetime(data.get("created_at"), now),
            "updated_at": parse_datetime(data.get("updated_at"), now),
        }

    @abstractmethod
    def to_row(self) -> dict[str, Any]: ...

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation."""
        return {
            key: (value.isoformat() if isinstance(value, datetime) else value)
            for key, value in dataclasses.asdict(self).items()  # type: ignore[call-overload]
        }


@dataclass
class Patient(Record):
    """A patient registered in the referral system."""

    table: ClassVar[str] = "patients"
    touch_on_copy: ClassVar[bool] = True

    name: str
    age: int
    medical_record_number: str
    date_of_birth: datetime
    gender: str
    blood_type: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    insurance: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_row(self) -> dict[str, Any]:
        row = self._base_row()
        row.update(
            {
                "name": self.name,
                "age": self.age,
                "medical_record_number": self.medical_record_number,
                "date_of_birth": to_iso(self.date_of_birth),
                "gender": self.gender,
                "blood_type": self.blood_type,
                "phone": self.phone,
                "email": self.email,
                "address": self.address,
                "insurance": self.insurance,
            }
        )
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Patient:
        data = dict(row)
        return cls(
            name=data.get("name") or "",
            age=int(data.get("age") or 0),
            medical_record_number=data.get("medical_record_number") or "",
            date_of_birth=parse_datetime(data.get("date_of_birth"), datetime.now()),
            gender=data.get("gender") or "",
            blood_type=data.get("blood_type"),
            phone=data.get("phone"),
            email=data.get("email"),
            address=data.get("address"),
            insurance=data.get("insurance"),
            **cls._base_fields(data),
        )


@dataclass
class Specialist(Record):
    """A specialist that can receive referrals."""

    table: ClassVar[str] = "specialists"

    name: str
    specialty: str
    hospital: str
    credentials: str | None = None
    is_available: bool = True
    rating: float = 0.0
    languages: list[str] = field(default_factory=list)
    insurance: list[str] = field(default_factory=list)
    hospital_network: str | None = None
    success_rate: float = 0.0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_row(self) -> dict[str, Any]:
        row = self._base_row()
        row.update(
            {
                "name": self.name,
                "credentials": self.credentials,
                "specialty": self.specialty,
                "hospital": self.hospital,
                "is_available": 1 if self.is_available else 0,
                "rating": self.rating,
                "languages": join_list(self.languages),
                "insurance": join_list(self.insurance),
                "hospital_network": self.hospital_network,
                "success_rate": self.success_rate,
            }
        )
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Specialist:
        data = dict(row)
        is_available = data.get("is_available")
        return cls(
            name=data.get("name") or "",
            specialty=data.get("specialty") or "",
            hospital=data.get("hospital") or "",
            credentials=data.get("credentials"),
            is_available=True if is_available is None else int(is_available) == 1,
            rating=float(data.get("rating") or 0.0),
            languages=split_list(data.get("languages")),
            insurance=split_list(data.get("insurance")),
            hospital_network=data.get("hospital_network"),
            success_rate=float(data.get("success_rate") or 0.0),
            **cls._base_fields(data),
        )


@dataclass
class Referral(Record):
    """A referral of a patient to a specialist."""

    table: ClassVar[str] = "referrals"
    touch_on_copy: ClassVar[bool] = True

    tracking_number: str
    patient_id: str
    urgency: str
    specialist_id: str | None = None
    status: str = "Pending"
    symptoms_description: str | None = None
    ai_confidence: float = 0.0
    department: str | None = None
    referring_physician: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_pending(self) -> bool:
        return self.status.lower() == "pending"

    @property
    def is_approved(self) -> bool:
        return self.status.lower() == "approved"

    @property
    def is_completed(self) -> bool:
        return self.status.lower() == "completed"

    @property
    def is_cancelled(self) -> bool:
        return self.status.lower() == "cancelled"

    @property
    def is_emergency(self) -> bool:
        return self.urgency.lower() == "emergency"

    @property
    def is_urgent(self) -> bool:
        return self.urgency.lower() in ("urgent", "high")

    @property
    def is_critical(self) -> bool:
        return self.urgency.lower() == "critical"

    def to_row(self) -> dict[str, Any]:
        row = self._base_row()
        row.update(
            {
                "tracking_number": self.tracking_number,
                "patient_id": self.patient_id,
                "specialist_id": self.specialist_id,
                "status": self.status,
                "urgency": self.urgency,
                "symptoms_description": self.symptoms_description,
                "ai_confidence": self.ai_confidence,
                "department": self.department,
                "referring_physician": self.referring_physician,
            }
        )
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Referral:
        data = dict(row)
        return cls(
            tracking_number=data.get("tracking_number") or "",
            patient_id=data.get("patient_id") or "",
            urgency=data.get("urgency") or "",
            specialist_id=data.get("specialist_id"),
            status=data.get("status") or "Pending",
            symptoms_description=data.get("symptoms_description"),
            ai_confidence=float(data.get("ai_confidence") or 0.0),
            department=data.get("department"),
            referring_physician=data.get("referring_physician"),
            **cls._base_fields(data),
        )


@dataclass
class Appointment(Record):
    table: ClassVar[str] = "appointments"
    touch_on_copy: ClassVar[bool] = True

    patient_id: str
    specialist_id: str | None = None
    referral_id: str | None = None
    appointment_date: datetime | None = None
    status: str = "scheduled"
    reason: str | None = None
    type: str | None = None
    duration_minutes: int | None = None
    location: str | None = None
    notes: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_row(self) -> dict[str, Any]:
        row = self._base_row()
        row.update(
            {
                "patient_id": self.patient_id,
                "specialist_id": self.specialist_id,
                "referral_id": self.referral_id,
                "appointment_date": to_iso(self.appointment_date),
                "status": self.status,
                "reason": self.reason,
                "type": self.type,
                "duration_minutes": self.duration_minutes,
                "location": self.location,
                "notes": self.notes,
            }
        )
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Appointment:
        data = dict(row)
        duration = data.get("duration_minutes")
        return cls(
            patient_id=data.get("patient_id") or "",
            specialist_id=data.get("specialist_id"),
            referral_id=data.get("referral_id"),
            appointment_date=parse_datetime(data.get("appointment_date")),
            status=data.get("status") or "scheduled",
            reason=data.get("reason"),
            type=data.get("type"),
            duration_minutes=int(duration) if duration is not None else None,
            location=data.get("location"),
            notes=data.get("notes"),
            **cls._base_fields(data),
        )


@dataclass
class Payment(Record):
    table: ClassVar[str] = "payments"
    touch_on_copy: ClassVar[bool] = True

    patient_id: str
    amount: float
    currency: str = "KES"
    referral_id: str | None = None
    appointment_id: str | None = None
    payment_method: str | None = None
    status: str = "pending"
    transaction_id: str | None = None
    payment_date: datetime | None = None
    description: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_completed(self) -> bool:
        return self.status.lower() == "completed"

    def to_row(self) -> dict[str, Any]:
        row = self._base_row()
        row.update(
            {
                "patient_id": self.patient_id,
                "referral_id": self.referral_id,
                "appointment_id": self.appointment_id,
                "amount": self.amount,
                "currency": self.currency,
                "payment_method": self.payment_method,
                "status": self.status,
                "transaction_id": self.transaction_id,
                "payment_date": to_iso(self.payment_date),
                "description": self.description,
            }
        )
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Payment:
        data = dict(row)
        return cls(
            patient_id=data.get("patient_id") or "",
            amount=float(data.get("amount") or 0.0),
            currency=data.get("currency") or "KES",
            referral_id=data.get("referral_id"),
            appointment_id=data.get("appointment_id"),
            payment_method=data.get("payment_method"),
            status=data.get("status") or "pending",
            transaction_id=data.get("transaction_id"),
            payment_date=parse_datetime(data.get("payment_date")),
            description=data.get("description"),
            **cls._base_fields(data),
        )


@dataclass
class CartItem(Record):
    """A pharmacy item waiting in the checkout cart."""

    table: ClassVar[str] = "cart_items"

    drug_id: str
    name: str
    quantity: int = 1
    unit_price: float = 0.0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def total_price(self) -> float:
        return round(self.quantity * self.unit_price, 2)

    def to_row(self) -> dict[str, Any]:
        row = self._base_row()
        row.update(
            {
                "drug_id": self.drug_id,
                "name": self.name,
                "quantity": self.quantity,
                "unit_price": self.unit_price,
            }
        )
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> CartItem:
        data = dict(row)
        return cls(
            drug_id=data.get("drug_id") or "",
            name=data.get("name") or "",
            quantity=int(data.get("quantity") or 0),
            unit_price=float(data.get("unit_price") or 0.0),
            **cls._base_fields(data),
        )


@dataclass
class ClinicalDecision(Record):
    """A recorded clinical decision awaiting or past review."""

    table: ClassVar[str] = "clinical_decisions"

    patient_id: str
    specialist_id: str
    condition_id: str
    decision_type: str
    title: str
    description: str = ""
    rationale: str = ""
    confidence: str = "medium"
    evidence: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    contraindications: list[str] = field(default_factory=list)
    status: str = "pending"
    priority: str = "medium"
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    review_notes: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    expires_at: datetime | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_row(self) -> dict[str, Any]:
        row = self._base_row()
        row.update(
            {
                "patient_id": self.patient_id,
                "specialist_id": self.specialist_id,
                "condition_id": self.condition_id,
                "decision_type": self.decision_type,
                "title": self.title,
                "description": self.description,
                "rationale": self.rationale,
                "confidence": self.confidence,
                "evidence": join_list(self.evidence),
                "recommendations": join_list(self.recommendations),
                "contraindications": join_list(self.contraindications),
                "status": self.status,
                "priority": self.priority,
                "reviewed_at": to_iso(self.reviewed_at),
                "reviewed_by": self.reviewed_by,
                "review_notes": self.review_notes,
                "metadata": dump_json(self.metadata),
                "is_active": 1 if self.is_active else 0,
                "expires_at": to_iso(self.expires_at),
            }
        )
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ClinicalDecision:
        data = dict(row)
        return cls(
            patient_id=data.get("patient_id") or "",
            specialist_id=data.get("specialist_id") or "",
            condition_id=data.get("condition_id") or "",
            decision_type=data.get("decision_type") or "",
            title=data.get("title") or "",
            description=data.get("description") or "",
            rationale=data.get("rationale") or "",
            confidence=data.get("confidence") or "",
            evidence=split_list(data.get("evidence")),
            recommendations=split_list(data.get("recommendations")),
            contraindications=split_list(data.get("contraindications")),
            status=data.get("status") or "",
            priority=data.get("priority") or "",
            reviewed_at=parse_datetime(data.get("reviewed_at")),
            reviewed_by=data.get("reviewed_by"),
            review_notes=data.get("review_notes"),
            metadata=load_json(data.get("metadata")),
            is_active=int(data.get("is_active") or 0) == 1,
            expires_at=parse_datetime(data.get("expires_at")),
            **cls._base_fields(data),
        )


@dataclass
class QualityMetric(Record):
    """A tracked quality indicator with a target value."""

    table: ClassVar[str] = "quality_metrics"

    metric_type: str
    title: str
    category: str
    target_value: float
    current_value: float
    description: str = ""
    measurement: str = "percentage"
    unit: str = "%"
    period: str = "monthly"
    measurement_date: datetime = field(default_factory=datetime.now)
    department_id: str | None = None
    specialist_id: str | None = None
    facility_id: str | None = None
    breakdown: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    status: str = "good"
    notes: str | None = None
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def performance_percentage(self) -> float:
        if self.target_value <= 0:
            return 0.0
        return round(self.current_value / self.target_value * 100, 2)

    @property
    def is_target_met(self) -> bool:
        return self.current_value >= self.target_value

    @property
    def performance_status(self) -> str:
        percentage = self.performance_percentage
        if percentage >= 100:
            return "excellent"
        if percentage >= 80:
            return "good"
        if percentage >= 60:
            return "fair"
        return "poor"

    def to_row(self) -> dict[str, Any]:
        row = self._base_row()
        row.update(
            {
                "metric_type": self.metric_type,
                "title": self.title,
                "description": self.description,
                "category": self.category,
                "measurement": self.measurement,
                "target_value": self.target_value,
                "current_value": self.current_value,
                "unit": self.unit,
                "period": self.period,
                "measurement_date": to_iso(self.measurement_date),
                "department_id": self.department_id,
                "specialist_id": self.specialist_id,
                "facility_id": self.facility_id,
                "breakdown": dump_json(self.breakdown),
                "tags": join_list(self.tags),
                "status": self.status,
                "notes": self.notes,
                "is_active": 1 if self.is_active else 0,
            }
        )
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> QualityMetric:
        data = dict(row)
        return cls(
            metric_type=data.get("metric_type") or "",
            title=data.get("title") or "",
            category=data.get("category") or "",
            target_value=float(data.get("target_value") or 0.0),
            current_value=float(data.get("current_value") or 0.0),
            description=data.get("description") or "",
            measurement=data.get("measurement") or "",
            unit=data.get("unit") or "",
            period=data.get("period") or "",
            measurement_date=parse_datetime(data.get("measurement_date"), datetime.now()),
            department_id=data.get("department_id"),
            specialist_id=data.get("specialist_id"),
            facility_id=data.get("facility_id"),
            breakdown=load_json(data.get("breakdown")),
            tags=split_list(data.get("tags")),
            status=data.get("status") or "",
            notes=data.get("notes"),
            is_active=int(data.get("is_active") or 0) == 1,
            **cls._base_fields(data),
        )


class SecurityEventType(Enum):
    """Category of an audited security event."""

    AUTHENTICATION = "authentication"
    DATA_ACCESS = "data_access"
    SYSTEM = "system"
    SECURITY = "security"
    COMPLIANCE = "compliance"


class DataAccessType(Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    EXPORT = "export"
    SHARE = "share"


class SecurityRiskLevel(Enum):
    """Risk level of an audited event, ordered from low to critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def is_alerting(self) -> bool:
        return self in (SecurityRiskLevel.HIGH, SecurityRiskLevel.CRITICAL)


@dataclass
class SecurityAuditLog:
    """One entry of the security audit trail."""

    event_type: SecurityEventType
    user_id: str
    action: str
    risk_level: SecurityRiskLevel = SecurityRiskLevel.LOW
    resource_id: str | None = None
    ip_address: str = "unknown"
    metadata: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "action": self.action,
            "resource_id": self.resource_id,
            "ip_address": self.ip_address,
            "risk_level": self.risk_level.value,
            "metadata": dump_json(self.metadata),
            "session_id": self.session_id,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> SecurityAuditLog:
        data = dict(row)
        return cls(
            id=data["id"],
            timestamp=parse_datetime(data.get("timestamp"), datetime.now()),
            event_type=SecurityEventType(data["event_type"]),
            user_id=data.get("user_id") or "",
            action=data.get("action") or "",
            resource_id=data.get("resource_id"),
            ip_address=data.get("ip_address") or "unknown",
            risk_level=SecurityRiskLevel(data.get("risk_level") or "low"),
            metadata=load_json(data.get("metadata")),
            session_id=data.get("session_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        row = self.to_row()
        row["metadata"] = dict(self.metadata)
        return row
