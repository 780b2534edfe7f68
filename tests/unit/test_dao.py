"""
Tests for medrefer.database.dao module.
"""

import re
from datetime import datetime, timedelta

import pytest

from medrefer.core.errors import (
    DuplicateRecordError,
    RecordNotFoundError,
    ValidationError,
)
from medrefer.database.dao import (
    AppointmentDao,
    AuditLogDao,
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
    ClinicalDecision,
    Payment,
    QualityMetric,
    Referral,
    SecurityAuditLog,
    SecurityEventType,
    Specialist,
)


class TestBaseDao:
    """Generic CRUD through PatientDao."""

    def test_insert_and_find(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        patient = make_patient()
        dao.insert(patient)

        found = dao.find_by_id(patient.id)
        assert found is not None
        assert found.name == patient.name
        assert found.date_of_birth == patient.date_of_birth

    def test_insert_duplicate_id(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        patient = make_patient()
        dao.insert(patient)
        with pytest.raises(DuplicateRecordError):
            dao.insert(patient)

    def test_update_returns_rowcount(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        patient = make_patient()
        assert dao.update(patient) == 0

        dao.insert(patient)
        patient.age = 41
        assert dao.update(patient) == 1
        assert dao.find_by_id(patient.id).age == 41

    def test_upsert(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        patient = make_patient()
        dao.upsert(patient)
        dao.upsert(patient.copy_with(name="Renamed"))

        assert dao.count() == 1
        assert dao.find_by_id(patient.id).name == "Renamed"

    def test_delete(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        patient = make_patient()
        dao.insert(patient)

        assert dao.delete(patient.id) == 1
        assert dao.delete(patient.id) == 0
        assert dao.find_by_id(patient.id) is None

    def test_get_missing_raises(self, database: Database) -> None:
        with pytest.raises(RecordNotFoundError):
            PatientDao(database).get("missing")

    def test_find_all_paging(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        for name in ("Carol", "Alice", "Bob"):
            dao.insert(make_patient(name=name))

        page = dao.find_all(order_by="name ASC", limit=2, offset=1)
        assert [p.name for p in page] == ["Bob", "Carol"]

    def test_raw_query_returns_dicts(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        dao.insert(make_patient(name="Alice"))
        rows = dao.raw_query("SELECT name FROM patients")
        assert rows == [{"name": "Alice"}]


class TestPatientDao:
    """Tests for PatientDao."""

    def test_create_validates(self, database: Database, make_patient) -> None:
        with pytest.raises(ValidationError):
            PatientDao(database).create_patient(make_patient(name="  "))

    def test_create_rejects_negative_age(self, database: Database, make_patient) -> None:
        with pytest.raises(ValidationError):
            PatientDao(database).create_patient(make_patient(age=-1))

    def test_duplicate_mrn(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        dao.create_patient(make_patient(medical_record_number="MRN-1"))
        with pytest.raises(DuplicateRecordError):
            dao.create_patient(make_patient(medical_record_number="MRN-1"))

    def test_get_by_mrn(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        patient = make_patient(medical_record_number="MRN-42")
        dao.create_patient(patient)
        assert dao.get_patient_by_mrn("MRN-42").id == patient.id
        assert dao.get_patient_by_mrn("nope") is None

    def test_search(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        dao.create_patient(make_patient(name="Jane Wanjiku", phone="0711000111"))
        dao.create_patient(make_patient(name="John Kamau", phone="0722000222"))

        assert [p.name for p in dao.search_patients("wanj")] == ["Jane Wanjiku"]
        assert [p.name for p in dao.search_patients("0722")] == ["John Kamau"]
        assert len(dao.search_patients("")) == 2

    def test_cache_served_until_cleared(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        patient = make_patient()
        dao.create_patient(patient)

        database.execute("UPDATE patients SET name = 'Changed' WHERE id = ?", [patient.id])
        assert dao.get_patient_by_id(patient.id).name == patient.name

        dao.clear_cache(patient.id)
        assert dao.get_patient_by_id(patient.id).name == "Changed"

    def test_cache_expires(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        patient = make_patient()
        dao.create_patient(patient)
        database.execute("UPDATE patients SET name = 'Changed' WHERE id = ?", [patient.id])

        stale, stored_at = dao._cache[patient.id]
        dao._cache[patient.id] = (stale, stored_at - timedelta(minutes=6))

        assert dao.get_patient_by_id(patient.id).name == "Changed"

    def test_rejected_update_leaves_cache_intact(
        self, database: Database, make_patient
    ) -> None:
        dao = PatientDao(database)
        first = make_patient()
        second = make_patient()
        dao.create_patient(first)
        dao.create_patient(second)

        loaded = dao.get_patient_by_id(first.id)
        loaded.medical_record_number = second.medical_record_number
        with pytest.raises(DuplicateRecordError):
            dao.update_patient(loaded)

        assert dao.get_patient_by_id(first.id).medical_record_number == first.medical_record_number
        assert dao.find_by_id(first.id).medical_record_number == first.medical_record_number

    def test_cached_patient_is_a_copy(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        patient = make_patient(name="Original")
        dao.create_patient(patient)

        patient.name = "Edited by caller"
        dao.get_patient_by_id(patient.id).name = "Edited again"

        assert dao.get_patient_by_id(patient.id).name == "Original"

    def test_update_missing_patient(self, database: Database, make_patient) -> None:
        with pytest.raises(RecordNotFoundError):
            PatientDao(database).update_patient(make_patient())

    def test_delete_clears_cache(self, database: Database, make_patient) -> None:
        dao = PatientDao(database)
        patient = make_patient()
        dao.create_patient(patient)

        assert dao.delete_patient(patient.id) is True
        assert dao.get_patient_by_id(patient.id) is None


class TestSpecialistDao:
    """Tests for SpecialistDao."""

    @pytest.fixture
    def dao(self, database: Database) -> SpecialistDao:
        dao = SpecialistDao(database)
        dao.insert(
            Specialist(
                name="Dr. Achieng",
                specialty="Cardiology",
                hospital="Aga Khan",
                rating=4.8,
                languages=["English", "Luo"],
                insurance=["NHIF"],
            )
        )
        dao.insert(
            Specialist(
                name="Dr. Mwangi",
                specialty="cardiology",
                hospital="KNH",
                rating=4.1,
                is_available=False,
                languages=["Swahili"],
            )
        )
        dao.insert(
            Specialist(
                name="Dr. Patel",
                specialty="Neurology",
                hospital="MP Shah",
                rating=4.5,
                languages=["English"],
                insurance=["AAR", "NHIF"],
            )
        )
        return dao

    def test_by_specialty_case_insensitive(self, dao: SpecialistDao) -> None:
        names = [s.name for s in dao.get_by_specialty("Cardiology")]
        assert names == ["Dr. Achieng", "Dr. Mwangi"]

    def test_available(self, dao: SpecialistDao) -> None:
        assert {s.name for s in dao.get_available()} == {"Dr. Achieng", "Dr. Patel"}

    def test_search(self, dao: SpecialistDao) -> None:
        assert [s.name for s in dao.search("shah")] == ["Dr. Patel"]

    def test_filter_combined(self, dao: SpecialistDao) -> None:
        assert [s.name for s in dao.filter(min_rating=4.4, insurance="nhif")] == [
            "Dr. Achieng",
            "Dr. Patel",
        ]
        assert [s.name for s in dao.filter(language="swahili")] == ["Dr. Mwangi"]
        assert dao.filter(language="swahili", available_only=True) == []


class TestReferralDao:
    """Tests for ReferralDao."""

    def test_tracking_number_generated(self, database: Database, make_patient) -> None:
        patient = make_patient()
        PatientDao(database).create_patient(patient)
        dao = ReferralDao(database)

        referral = Referral(tracking_number="", patient_id=patient.id, urgency="Urgent")
        dao.create_referral(referral)

        assert re.fullmatch(r"REF-\d{8}-[0-9A-F]{6}", referral.tracking_number)
        assert referral.tracking_number[4:12] == datetime.now().strftime("%Y%m%d")
        assert dao.get_by_tracking_number(referral.tracking_number).id == referral.id

    def test_tracking_number_format(self) -> None:
        number = ReferralDao.generate_tracking_number(datetime(2024, 5, 17))
        assert number.startswith("REF-20240517-")
        assert len(number) == len("REF-20240517-XXXXXX")

    def test_requires_patient(self, database: Database) -> None:
        with pytest.raises(ValidationError):
            ReferralDao(database).create_referral(
                Referral(tracking_number="", patient_id="", urgency="Low")
            )

    def test_status_queries(self, database: Database, make_patient) -> None:
        patient = make_patient()
        PatientDao(database).create_patient(patient)
        dao = ReferralDao(database)
        first = Referral(tracking_number="REF-A", patient_id=patient.id, urgency="Low")
        second = Referral(tracking_number="REF-B", patient_id=patient.id, urgency="High")
        dao.create_referral(first)
        dao.create_referral(second)

        assert dao.update_status(first.id, "Approved") is True
        assert dao.update_status("missing", "Approved") is False

        assert [r.id for r in dao.get_by_status("approved")] == [first.id]
        assert {r.id for r in dao.get_by_patient(patient.id)} == {first.id, second.id}

    def test_patient_delete_cascades(self, database: Database, make_patient) -> None:
        patient = make_patient()
        PatientDao(database).create_patient(patient)
        dao = ReferralDao(database)
        dao.create_referral(Referral(tracking_number="REF-A", patient_id=patient.id, urgency="Low"))

        PatientDao(database).delete_patient(patient.id)

        assert dao.count() == 0


class TestAppointmentDao:
    def test_history_and_upcoming(self, database: Database, make_patient) -> None:
        patient = make_patient()
        PatientDao(database).create_patient(patient)
        dao = AppointmentDao(database)
        now = datetime(2025, 6, 1, 9, 0)

        past = Appointment(patient_id=patient.id, appointment_date=now - timedelta(days=3))
        soon = Appointment(patient_id=patient.id, appointment_date=now + timedelta(days=1))
        later = Appointment(patient_id=patient.id, appointment_date=now + timedelta(days=7))
        cancelled = Appointment(
            patient_id=patient.id,
            appointment_date=now + timedelta(days=2),
            status="cancelled",
        )
        for appointment in (past, soon, later, cancelled):
            dao.insert(appointment)

        assert [a.id for a in dao.get_history(patient.id)] == [
            later.id,
            cancelled.id,
            soon.id,
            past.id,
        ]
        assert [a.id for a in dao.get_upcoming(now)] == [soon.id, later.id]

        assert dao.update_status(soon.id, "completed") is True
        assert [a.id for a in dao.get_upcoming(now)] == [later.id]


class TestPaymentDao:
    def test_total_revenue_counts_completed_only(self, database: Database) -> None:
        dao = PaymentDao(database)
        dao.insert(Payment(patient_id="p1", amount=1500.0, status="completed"))
        dao.insert(Payment(patient_id="p1", amount=250.5, status="Completed"))
        dao.insert(Payment(patient_id="p2", amount=999.0, status="pending"))

        assert dao.get_total_revenue() == pytest.approx(1750.5)
        assert len(dao.get_history("p1")) == 2

    def test_empty_revenue(self, database: Database) -> None:
        assert PaymentDao(database).get_total_revenue() == 0.0


class TestCartDao:
    """Tests for CartDao."""

    def test_add_merges_quantity(self, database: Database) -> None:
        dao = CartDao(database)
        dao.add_item("d1", "Amoxicillin", 120.0, quantity=2)
        item = dao.add_item("d1", "Amoxicillin", 120.0, quantity=3)

        assert item.quantity == 5
        assert len(dao.get_cart_items()) == 1

    def test_total(self, database: Database) -> None:
        dao = CartDao(database)
        dao.add_item("d1", "Amoxicillin", 120.0, quantity=2)
        dao.add_item("d2", "Paracetamol", 35.5)
        assert dao.get_cart_total() == 275.5

    def test_update_quantity_zero_removes(self, database: Database) -> None:
        dao = CartDao(database)
        dao.add_item("d1", "Amoxicillin", 120.0)

        assert dao.update_quantity("d1", 0) is None
        assert dao.get_cart_items() == []

    def test_update_quantity(self, database: Database) -> None:
        dao = CartDao(database)
        dao.add_item("d1", "Amoxicillin", 120.0)
        assert dao.update_quantity("d1", 4).quantity == 4
        assert dao.get_by_drug("d1").quantity == 4

    def test_invalid_quantities(self, database: Database) -> None:
        dao = CartDao(database)
        with pytest.raises(ValidationError):
            dao.add_item("d1", "Amoxicillin", 120.0, quantity=0)
        dao.add_item("d1", "Amoxicillin", 120.0)
        with pytest.raises(ValidationError):
            dao.update_quantity("d1", -1)
        with pytest.raises(RecordNotFoundError):
            dao.update_quantity("d2", 1)

    def test_remove_and_clear(self, database: Database) -> None:
        dao = CartDao(database)
        dao.add_item("d1", "Amoxicillin", 120.0)
        dao.add_item("d2", "Paracetamol", 35.5)

        assert dao.remove_item("d1") is True
        assert dao.remove_item("d1") is False
        assert dao.clear_cart() == 1
        assert dao.get_cart_total() == 0


class TestClinicalDecisionDao:
    def test_pending_and_review(self, database: Database) -> None:
        dao = ClinicalDecisionDao(database)
        decision = ClinicalDecision(
            patient_id="p1",
            specialist_id="s1",
            condition_id="c1",
            decision_type="treatment",
            title="Start ACE inhibitor",
            evidence=["guideline"],
        )
        dao.insert(decision)
        assert [d.id for d in dao.get_pending()] == [decision.id]

        reviewed = dao.review(decision.id, "approved", "dr-lead", notes="Agreed")

        assert reviewed.reviewed_by == "dr-lead"
        assert reviewed.reviewed_at is not None
        assert dao.get_pending() == []
        stored = dao.get(decision.id)
        assert stored.status == "approved"
        assert stored.review_notes == "Agreed"
        assert stored.evidence == ["guideline"]
        assert [d.id for d in dao.get_by_patient("p1")] == [decision.id]

    def test_review_missing(self, database: Database) -> None:
        with pytest.raises(RecordNotFoundError):
            ClinicalDecisionDao(database).review("missing", "approved", "dr")


class TestQualityMetricDao:
    def test_category_and_below_target(self, database: Database) -> None:
        dao = QualityMetricDao(database)
        low = QualityMetric(
            metric_type="wait_time",
            title="Wait time",
            category="Access",
            target_value=90.0,
            current_value=70.0,
        )
        met = QualityMetric(
            metric_type="satisfaction",
            title="Satisfaction",
            category="Experience",
            target_value=80.0,
            current_value=85.0,
        )
        dao.insert(low)
        dao.insert(met)

        assert [m.id for m in dao.get_by_category("access")] == [low.id]
        assert [m.id for m in dao.get_below_target()] == [low.id]


class TestAuditLogDao:
    def _entry(self, user: str, when: datetime) -> SecurityAuditLog:
        return SecurityAuditLog(
            event_type=SecurityEventType.SYSTEM,
            user_id=user,
            action="ping",
            timestamp=when,
        )

    def test_query_filters_and_order(self, database: Database) -> None:
        dao = AuditLogDao(database)
        base = datetime(2025, 1, 1, 12, 0)
        for offset, user in enumerate(["a", "b", "a"]):
            dao.append(self._entry(user, base + timedelta(minutes=offset)))

        logs = dao.query(user_id="a")
        assert [log.timestamp for log in logs] == [
            base + timedelta(minutes=2),
            base,
        ]
        # bounds are exclusive
        assert dao.query(start=base, end=base + timedelta(minutes=2))[0].user_id == "b"
        assert len(dao.query(limit=1)) == 1

    def test_trim_and_retention(self, database: Database) -> None:
        dao = AuditLogDao(database)
        base = datetime(2025, 1, 1)
        for day in range(5):
            dao.append(self._entry("u", base + timedelta(days=day)))

        assert dao.delete_older_than(base + timedelta(days=1)) == 1
        assert dao.trim_to(2) == 2
        assert [log.timestamp for log in dao.query()] == [
            base + timedelta(days=4),
            base + timedelta(days=3),
        ]
        assert dao.trim_to(10) == 0
