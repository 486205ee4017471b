"""Appointment state machine and the cascades that cross entity boundaries.

Pending -> Confirmed -> Completed, either open state -> Cancelled. Completed is
only reached by creating a consultation.
"""

import logging
from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import Conflict, Denied, InvalidState, InvalidTransition, NotFound, ValidationFailed
from .models import (
    Appointment, AppointmentStatus, Consultation, MedicalProfile, Prescription, Role, User,
)
from .policy import Action, Caller, ResourceKind, decide

logger = logging.getLogger(__name__)

TERMINAL_STATES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED})

# (from, to) -> roles allowed to request it
TRANSITIONS = {
    (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED): frozenset({Role.DOCTOR.value, Role.ADMIN.value}),
    (AppointmentStatus.PENDING, AppointmentStatus.CANCELLED): frozenset({r.value for r in Role}),
    (AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED): frozenset({r.value for r in Role}),
}


def check_transition(current: str, requested: str, role: str) -> None:
    """Raise InvalidTransition unless ``role`` may move ``current`` to ``requested``."""
    current = AppointmentStatus(current)
    requested = AppointmentStatus(requested)
    if current in TERMINAL_STATES:
        raise InvalidTransition(f"Appointment is {current.value}; no further status changes are accepted")
    if requested == AppointmentStatus.COMPLETED:
        raise InvalidTransition("Appointments are completed by creating a consultation")
    roles = TRANSITIONS.get((current, requested))
    if roles is None:
        raise InvalidTransition(f"Cannot change appointment status from {current.value} to {requested.value}")
    if role not in roles:
        raise InvalidTransition(f"Role {role} cannot change appointment status to {requested.value}")


def _guarded_status_update(db: Session, appointment_id: int, expected: str, new: str) -> bool:
    # False when another writer changed the status first
    result = db.execute(
        update(Appointment)
        .where(Appointment.id == appointment_id, Appointment.status == expected)
        .values(status=new, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def change_status(db: Session, appointment: Appointment, new_status: str, caller: Caller) -> None:
    # the caller commits
    previous = appointment.status
    check_transition(previous, new_status, caller.role)
    if not _guarded_status_update(db, appointment.id, previous, AppointmentStatus(new_status).value):
        db.rollback()
        raise Conflict("Appointment was modified by another request; reload and retry")
    logger.info({
        "message": "appointment status changed",
        "appointment_id": appointment.id,
        "from": previous,
        "to": AppointmentStatus(new_status).value,
        "caller_id": caller.id,
    })


def check_prescription_patient(db: Session, prescription_id: int, patient_id: int) -> Prescription:
    prescription = db.get(Prescription, prescription_id)
    if prescription is None:
        raise NotFound("Prescription not found")
    if prescription.patient_id != patient_id:
        raise ValidationFailed("Prescription belongs to a different patient", ["prescription_id"])
    return prescription


def create_consultation(
    db: Session,
    caller: Caller,
    appointment_id: int,
    notes: str,
    diagnosis: str,
    prescription_id: int | None = None,
) -> Consultation:
    """Insert the consultation and complete its appointment in one transaction."""
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")

    decision = decide(caller, Action.CREATE, ResourceKind.CONSULTATION, appointment)
    if not decision.allowed:
        raise Denied(decision.reason)

    existing = db.query(Consultation.id).filter(Consultation.appointment_id == appointment_id).first()
    if appointment.status != AppointmentStatus.CONFIRMED:
        if existing is not None:
            # completed by an earlier consultation: a duplicate, not a bad state
            raise Conflict("Consultation already exists for this appointment")
        raise InvalidState("Consultation can only be created for confirmed appointments")
    if existing is not None:
        raise Conflict("Consultation already exists for this appointment")

    if prescription_id is not None:
        check_prescription_patient(db, prescription_id, appointment.patient_id)

    consultation = Consultation(
        appointment_id=appointment_id,
        notes=notes,
        diagnosis=diagnosis,
        prescription_id=prescription_id,
    )
    try:
        db.add(consultation)
        db.flush()
        # cascade step: the appointment is completed by this consultation
        if not _guarded_status_update(
            db, appointment_id, AppointmentStatus.CONFIRMED.value, AppointmentStatus.COMPLETED.value
        ):
            db.rollback()
            raise Conflict("Appointment was modified by another request; reload and retry")
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info({
            "message": "duplicate consultation rejected",
            "appointment_id": appointment_id,
            "caller_id": caller.id,
        })
        raise Conflict("Consultation already exists for this appointment")

    db.refresh(consultation)
    db.refresh(appointment)
    logger.info({
        "message": "consultation created, appointment completed",
        "consultation_id": consultation.id,
        "appointment_id": appointment_id,
        "caller_id": caller.id,
    })
    return consultation


def link_prescription(db: Session, caller: Caller, consultation_id: int, prescription: Prescription) -> bool:
    # best effort: a skipped or failed link leaves the committed prescription alone
    consultation = db.get(Consultation, consultation_id)
    if consultation is None:
        logger.warning({
            "message": "prescription back-link skipped: consultation not found",
            "consultation_id": consultation_id,
            "prescription_id": prescription.id,
        })
        return False

    decision = decide(caller, Action.UPDATE, ResourceKind.CONSULTATION, consultation)
    if not decision.allowed:
        logger.warning({
            "message": "prescription back-link skipped: caller may not update consultation",
            "consultation_id": consultation_id,
            "prescription_id": prescription.id,
            "caller_id": caller.id,
        })
        return False

    appointment = consultation.appointment
    if appointment is None or appointment.patient_id != prescription.patient_id:
        logger.warning({
            "message": "prescription back-link skipped: consultation is for another patient",
            "consultation_id": consultation_id,
            "prescription_id": prescription.id,
        })
        return False

    try:
        consultation.prescription_id = prescription.id
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning(
            {
                "message": "prescription back-link failed",
                "consultation_id": consultation_id,
                "prescription_id": prescription.id,
            },
            exc_info=True,
        )
        return False
    return True


def delete_prescription(db: Session, prescription: Prescription) -> int:
    """Unlink referencing consultations and delete, in one transaction. Returns the unlink count."""
    prescription_id = prescription.id
    result = db.execute(
        update(Consultation)
        .where(Consultation.prescription_id == prescription.id)
        .values(prescription_id=None, updated_at=datetime.utcnow())
        .execution_options(synchronize_session="fetch")
    )
    unlinked = result.rowcount
    db.delete(prescription)
    db.commit()
    logger.info({
        "message": "prescription deleted",
        "prescription_id": prescription_id,
        "consultations_unlinked": unlinked,
    })
    return unlinked


def delete_user(db: Session, user: User) -> None:
    # a patient or doctor still on appointments or prescriptions is kept (Conflict)
    user_id, role = user.id, user.role
    if role in (Role.DOCTOR, Role.PATIENT):
        appointment_owner = Appointment.doctor_id if role == Role.DOCTOR else Appointment.patient_id
        prescription_owner = Prescription.doctor_id if role == Role.DOCTOR else Prescription.patient_id
        appointments = db.query(func.count(Appointment.id)).filter(appointment_owner == user_id).scalar()
        prescriptions = db.query(func.count(Prescription.id)).filter(prescription_owner == user_id).scalar()
        if appointments or prescriptions:
            raise Conflict(
                f"{role} is referenced by {appointments} appointment(s) and "
                f"{prescriptions} prescription(s); remove them first"
            )

    if role == Role.PATIENT:
        profile = db.query(MedicalProfile).filter(MedicalProfile.user_id == user.id).first()
        if profile is not None:
            db.delete(profile)

    db.delete(user)
    db.commit()
    logger.info({"message": "user deleted", "user_id": user_id, "role": role})

