"""Tests for the appointment state machine and cross-entity cascades."""

import threading
from datetime import datetime

import pytest

from healthcare_api import workflow
from healthcare_api.errors import Conflict, Denied, InvalidState, InvalidTransition, NotFound, ValidationFailed
from healthcare_api.models import (
    Appointment, AppointmentStatus, Consultation, MedicalProfile, Prescription, Role, User,
)

from conftest import caller_of, make_appointment

PENDING = AppointmentStatus.PENDING.value
CONFIRMED = AppointmentStatus.CONFIRMED.value
CANCELLED = AppointmentStatus.CANCELLED.value
COMPLETED = AppointmentStatus.COMPLETED.value


def make_prescription(db, patient, doctor, **overrides) -> Prescription:
    values = dict(
        doctor_id=doctor.id,
        patient_id=patient.id,
        medication="Amoxicillin",
        dosage="500mg",
        instructions="Three times daily",
        start_date=datetime.utcnow(),
    )
    values.update(overrides)
    prescription = Prescription(**values)
    db.add(prescription)
    db.commit()
    db.refresh(prescription)
    return prescription


class TestCheckTransition:
    @pytest.mark.parametrize("current,requested,role", [
        (PENDING, CONFIRMED, Role.DOCTOR.value),
        (PENDING, CONFIRMED, Role.ADMIN.value),
        (PENDING, CANCELLED, Role.PATIENT.value),
        (CONFIRMED, CANCELLED, Role.PATIENT.value),
        (CONFIRMED, CANCELLED, Role.DOCTOR.value),
    ])
    def test_allowed(self, current, requested, role):
        workflow.check_transition(current, requested, role)

    @pytest.mark.parametrize("current,requested", [
        (PENDING, PENDING),
        (CONFIRMED, CONFIRMED),
        (CONFIRMED, PENDING),
        (PENDING, COMPLETED),
        (CONFIRMED, COMPLETED),
        (CANCELLED, PENDING),
        (CANCELLED, CONFIRMED),
        (COMPLETED, CANCELLED),
        (COMPLETED, COMPLETED),
    ])
    def test_rejected_for_everyone(self, current, requested):
        with pytest.raises(InvalidTransition):
            workflow.check_transition(current, requested, Role.ADMIN.value)

    def test_patient_cannot_confirm(self):
        with pytest.raises(InvalidTransition):
            workflow.check_transition(PENDING, CONFIRMED, Role.PATIENT.value)

    def test_invalid_transition_is_an_invalid_state(self):
        assert issubclass(InvalidTransition, InvalidState)


class TestChangeStatus:
    def test_applies_transition(self, db, doctor, pending_appointment):
        workflow.change_status(db, pending_appointment, CONFIRMED, caller_of(doctor))
        db.commit()
        db.expire_all()
        assert db.get(Appointment, pending_appointment.id).status == CONFIRMED

    def test_lost_race_is_a_conflict(self, db, session_factory, doctor, patient, pending_appointment):
        appointment_id = pending_appointment.id
        # another request cancels after we read the appointment
        other = session_factory()
        try:
            other_copy = other.get(Appointment, appointment_id)
            workflow.change_status(other, other_copy, CANCELLED, caller_of(patient))
            other.commit()
        finally:
            other.close()

        with pytest.raises(Conflict):
            workflow.change_status(db, pending_appointment, CONFIRMED, caller_of(doctor))
        db.expire_all()
        assert db.get(Appointment, appointment_id).status == CANCELLED


class TestCreateConsultation:
    def test_creates_and_completes_appointment(self, db, doctor, confirmed_appointment):
        consultation = workflow.create_consultation(
            db, caller_of(doctor), confirmed_appointment.id, notes="Chest clear", diagnosis="Viral cough",
        )
        assert consultation.id is not None
        db.expire_all()
        assert db.get(Appointment, confirmed_appointment.id).status == COMPLETED

    def test_missing_appointment(self, db, doctor):
        with pytest.raises(NotFound):
            workflow.create_consultation(db, caller_of(doctor), 9999, notes="n", diagnosis="d")

    def test_unassigned_doctor_is_denied_before_state_check(self, db, other_doctor, pending_appointment):
        # pending would be InvalidState, but authorization is decided first
        with pytest.raises(Denied):
            workflow.create_consultation(db, caller_of(other_doctor), pending_appointment.id, notes="n", diagnosis="d")

    @pytest.mark.parametrize("status", [PENDING, CANCELLED, COMPLETED])
    def test_requires_confirmed_appointment(self, db, doctor, patient, facility, status):
        appointment = make_appointment(db, patient, doctor, facility, status=status)
        with pytest.raises(InvalidState):
            workflow.create_consultation(db, caller_of(doctor), appointment.id, notes="n", diagnosis="d")
        assert db.query(Consultation).count() == 0
        db.expire_all()
        assert db.get(Appointment, appointment.id).status == status

    def test_second_consultation_is_a_conflict(self, db, doctor, confirmed_appointment):
        workflow.create_consultation(db, caller_of(doctor), confirmed_appointment.id, notes="n", diagnosis="d")
        with pytest.raises(Conflict):
            # the appointment is Completed now, but the outcome is still a duplicate
            workflow.create_consultation(db, caller_of(doctor), confirmed_appointment.id, notes="n", diagnosis="d")
        assert db.query(Consultation).count() == 1

    def test_unknown_prescription_leaves_nothing_behind(self, db, doctor, confirmed_appointment):
        with pytest.raises(NotFound):
            workflow.create_consultation(
                db, caller_of(doctor), confirmed_appointment.id, notes="n", diagnosis="d", prescription_id=404,
            )
        assert db.query(Consultation).count() == 0
        db.expire_all()
        assert db.get(Appointment, confirmed_appointment.id).status == CONFIRMED

    def test_prescription_of_another_patient_is_rejected(self, db, doctor, other_patient, confirmed_appointment):
        foreign = make_prescription(db, other_patient, doctor)
        with pytest.raises(ValidationFailed) as excinfo:
            workflow.create_consultation(
                db, caller_of(doctor), confirmed_appointment.id, notes="n", diagnosis="d", prescription_id=foreign.id,
            )
        assert excinfo.value.fields == ["prescription_id"]
        assert db.query(Consultation).count() == 0

    def test_concurrent_creation_commits_exactly_one(self, db, session_factory, doctor, confirmed_appointment):
        attempts = 6
        caller = caller_of(doctor)
        appointment_id = confirmed_appointment.id
        barrier = threading.Barrier(attempts)
        outcomes = []
        lock = threading.Lock()

        def attempt(i):
            session = session_factory()
            try:
                barrier.wait()
                workflow.create_consultation(session, caller, appointment_id, notes=f"attempt {i}", diagnosis="d")
                outcome = "created"
            except Conflict:
                outcome = "conflict"
            except InvalidState:
                outcome = "invalid_state"
            finally:
                session.close()
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(attempts)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(outcomes) == attempts
        assert outcomes.count("created") == 1
        assert outcomes.count("conflict") == attempts - 1
        assert db.query(Consultation).filter(Consultation.appointment_id == appointment_id).count() == 1
        db.expire_all()
        assert db.get(Appointment, appointment_id).status == COMPLETED


class TestLinkPrescription:
    def test_links_when_assigned_doctor(self, db, doctor, patient, confirmed_appointment):
        consultation = workflow.create_consultation(
            db, caller_of(doctor), confirmed_appointment.id, notes="n", diagnosis="d",
        )
        prescription = make_prescription(db, patient, doctor)
        assert workflow.link_prescription(db, caller_of(doctor), consultation.id, prescription)
        db.expire_all()
        assert db.get(Consultation, consultation.id).prescription_id == prescription.id

    def test_skipped_for_missing_consultation(self, db, doctor, patient):
        prescription = make_prescription(db, patient, doctor)
        assert not workflow.link_prescription(db, caller_of(doctor), 9999, prescription)
        assert db.get(Prescription, prescription.id) is not None

    def test_skipped_for_unauthorized_caller(self, db, doctor, other_doctor, patient, confirmed_appointment):
        consultation = workflow.create_consultation(
            db, caller_of(doctor), confirmed_appointment.id, notes="n", diagnosis="d",
        )
        prescription = make_prescription(db, patient, other_doctor)
        assert not workflow.link_prescription(db, caller_of(other_doctor), consultation.id, prescription)
        db.expire_all()
        assert db.get(Consultation, consultation.id).prescription_id is None


    def test_skipped_for_another_patients_prescription(self, db, doctor, other_patient, confirmed_appointment):
        consultation = workflow.create_consultation(
            db, caller_of(doctor), confirmed_appointment.id, notes="n", diagnosis="d",
        )
        prescription = make_prescription(db, other_patient, doctor)
        assert not workflow.link_prescription(db, caller_of(doctor), consultation.id, prescription)
        db.expire_all()
        assert db.get(Consultation, consultation.id).prescription_id is None


class TestDeletePrescription:
    def test_unlinks_referencing_consultations(self, db, doctor, patient, facility):
        prescription = make_prescription(db, patient, doctor)
        prescription_id = prescription.id
        consultation_ids = []
        for _ in range(2):
            appointment = make_appointment(db, patient, doctor, facility, status=CONFIRMED)
            consultation = workflow.create_consultation(
                db, caller_of(doctor), appointment.id, notes="n", diagnosis="d", prescription_id=prescription_id,
            )
            consultation_ids.append(consultation.id)

        assert workflow.delete_prescription(db, prescription) == 2
        db.expire_all()
        assert db.get(Prescription, prescription_id) is None
        for consultation_id in consultation_ids:
            assert db.get(Consultation, consultation_id).prescription_id is None


class TestDeleteUser:
    def test_patient_profile_goes_with_them(self, db, patient):
        patient_id = patient.id
        assert db.query(MedicalProfile).filter(MedicalProfile.user_id == patient_id).count() == 1
        workflow.delete_user(db, patient)
        assert db.get(User, patient_id) is None
        assert db.query(MedicalProfile).filter(MedicalProfile.user_id == patient_id).count() == 0

    def test_referenced_doctor_is_kept(self, db, doctor, pending_appointment):
        with pytest.raises(Conflict):
            workflow.delete_user(db, doctor)
        assert db.get(User, doctor.id) is not None

    def test_patient_with_appointments_is_kept(self, db, patient, pending_appointment):
        with pytest.raises(Conflict):
            workflow.delete_user(db, patient)
        assert db.get(User, patient.id) is not None
        assert db.query(MedicalProfile).filter(MedicalProfile.user_id == patient.id).count() == 1

    def test_patient_with_prescriptions_is_kept(self, db, doctor, patient):
        make_prescription(db, patient, doctor)
        with pytest.raises(Conflict):
            workflow.delete_user(db, patient)

    def test_unreferenced_doctor_is_deleted(self, db, other_doctor):
        doctor_id = other_doctor.id
        workflow.delete_user(db, other_doctor)
        assert db.get(User, doctor_id) is None
