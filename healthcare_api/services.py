"""Per-resource operations: load, authorize, then write. Listings are scoped in SQL."""

import logging
import math
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from . import workflow
from .errors import Conflict, Denied, NotFound, ValidationFailed
from .models import (
    REMINDER_WINDOW,
    Appointment,
    AppointmentStatus,
    Consultation,
    Facility,
    MedicalProfile,
    Prescription,
    Role,
    User,
)
from .policy import Action, Caller, ResourceKind, decide, list_scope
from .schemas import (
    AppointmentCreate,
    AppointmentFilter,
    ConsultationCreate,
    FacilityCreate,
    MedicalProfileCreate,
    Patch,
    PrescriptionCreate,
    RegisterUser,
)
from .security import hash_password

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6378.1
UNKNOWN_BIRTH_DATE = datetime(1900, 1, 1)


class ResourceService:
    model = None
    kind: ResourceKind = None
    label = "Resource"

    def __init__(self, db: Session):
        self.db = db

    # ---- helpers ----
    def _load(self, record_id: int):
        record = self.db.get(self.model, record_id)
        if record is None:
            raise NotFound(f"{self.label} not found")
        return record

    def _authorize(self, caller: Caller, action: Action, resource=None, changes=None) -> None:
        decision = decide(caller, action, self.kind, resource, changes)
        if not decision.allowed:
            logger.info({
                "message": "access denied",
                "caller_id": caller.id,
                "role": caller.role,
                "action": action.value,
                "kind": self.kind.value,
                "resource_id": getattr(resource, "id", None),
            })
            raise Denied(decision.reason)

    def _base_query(self) -> Query:
        return self.db.query(self.model)

    def _owner_model(self):
        return self.model

    def _scoped_query(self, caller: Caller) -> Query:
        self._authorize(caller, Action.LIST)
        query = self._base_query()
        scope = list_scope(caller, self.kind)
        if not scope.unrestricted:
            owner = self._owner_model()
            query = query.filter(or_(*[getattr(owner, name) == caller.id for name in scope.owner_fields]))
        return query

    def _apply(self, record, changes: dict) -> None:
        for name, value in changes.items():
            setattr(record, name, value)

    # ---- operations ----
    def list(self, caller: Caller, filters=None) -> list:
        return self._scoped_query(caller).order_by(self.model.id.desc()).all()

    def get(self, caller: Caller, record_id: int):
        record = self._load(record_id)
        self._authorize(caller, Action.READ, record)
        return record

    def update(self, caller: Caller, record_id: int, patch: Patch):
        record = self._load(record_id)
        changes = patch.changes()
        self._authorize(caller, Action.UPDATE, record, changes)
        self._apply(record, changes)
        self.db.commit()
        self.db.refresh(record)
        return record

    def delete(self, caller: Caller, record_id: int) -> None:
        record = self._load(record_id)
        self._authorize(caller, Action.DELETE, record)
        self._remove(record)

    def _remove(self, record) -> None:
        record_id = record.id
        self.db.delete(record)
        self.db.commit()
        logger.info({"message": f"{self.label.lower()} deleted", "id": record_id})


# -------------------- Users --------------------
class UserService(ResourceService):
    model = User
    kind = ResourceKind.USER
    label = "User"

    def _check_email_free(self, email: str, exclude_id: int | None = None) -> None:
        query = self.db.query(User.id).filter(User.email == email)
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        if query.first() is not None:
            raise ValidationFailed("Email already registered", ["email"])

    def register(self, data: RegisterUser) -> User:
        """Create an account; a patient gets an empty medical profile in the same transaction."""
        email = data.email.lower().strip()
        self._check_email_free(email)
        user = User(
            full_name=data.full_name,
            email=email,
            phone_number=data.phone_number,
            password_hash=hash_password(data.password),
            role=data.role,
        )
        try:
            self.db.add(user)
            self.db.flush()
            if user.role == Role.PATIENT:
                self.db.add(MedicalProfile(
                    user_id=user.id,
                    date_of_birth=data.date_of_birth or UNKNOWN_BIRTH_DATE,
                    gender=data.gender or "Other",
                    blood_type="Unknown",
                    allergies=[],
                    chronic_conditions=[],
                ))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise Conflict("Email already registered")
        self.db.refresh(user)
        logger.info({"message": "user registered", "user_id": user.id, "role": user.role})
        return user

    def self_register(self, data: RegisterUser) -> User:
        # staff accounts are created by an admin through create()
        if data.role != Role.PATIENT:
            raise Denied("Only patient accounts can self-register")
        return self.register(data)

    def create(self, caller: Caller, data: RegisterUser) -> User:
        self._authorize(caller, Action.CREATE)
        return self.register(data)

    def update(self, caller: Caller, record_id: int, patch: Patch):
        user = self._load(record_id)
        changes = patch.changes()
        self._authorize(caller, Action.UPDATE, user, changes)
        if "email" in changes:
            changes["email"] = changes["email"].lower().strip()
            self._check_email_free(changes["email"], exclude_id=user.id)
        self._apply(user, changes)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise Conflict("Email already registered")
        self.db.refresh(user)
        return user

    def _remove(self, record) -> None:
        workflow.delete_user(self.db, record)


# -------------------- Medical profiles --------------------
class MedicalProfileService(ResourceService):
    model = MedicalProfile
    kind = ResourceKind.MEDICAL_PROFILE
    label = "Medical profile"

    def mine(self, caller: Caller) -> MedicalProfile:
        profile = self.db.query(MedicalProfile).filter(MedicalProfile.user_id == caller.id).first()
        if profile is None:
            raise NotFound("Medical profile not found")
        return profile

    def create(self, caller: Caller, data: MedicalProfileCreate) -> MedicalProfile:
        self._authorize(caller, Action.CREATE)
        user = self.db.get(User, data.user_id)
        if user is None:
            raise NotFound("User not found")
        if user.role != Role.PATIENT:
            raise ValidationFailed("Medical profiles can only belong to patients", ["user_id"])
        existing = self.db.query(MedicalProfile.id).filter(MedicalProfile.user_id == data.user_id).first()
        if existing is not None:
            raise ValidationFailed("Medical profile already exists for this user", ["user_id"])

        profile = MedicalProfile(**data.model_dump())
        try:
            self.db.add(profile)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise Conflict("Medical profile already exists for this user")
        self.db.refresh(profile)
        return profile


# -------------------- Facilities --------------------
def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


class FacilityService(ResourceService):
    model = Facility
    kind = ResourceKind.FACILITY
    label = "Facility"

    def list(self, caller: Caller, filters=None) -> list:
        return self._scoped_query(caller).order_by(Facility.name).all()

    def within_radius(self, caller: Caller, latitude: float, longitude: float, radius_km: float) -> list:
        facilities = self._scoped_query(caller).all()
        return [
            f for f in facilities
            if haversine_km(latitude, longitude, f.latitude, f.longitude) <= radius_km
        ]

    def create(self, caller: Caller, data: FacilityCreate) -> Facility:
        self._authorize(caller, Action.CREATE)
        facility = Facility(**data.model_dump())
        self.db.add(facility)
        self.db.commit()
        self.db.refresh(facility)
        return facility

    def _remove(self, record) -> None:
        booked = self.db.query(Appointment.id).filter(Appointment.facility_id == record.id).first()
        if booked is not None:
            raise Conflict("Facility has appointments; remove them first")
        super()._remove(record)


# -------------------- Appointments --------------------
class AppointmentService(ResourceService):
    model = Appointment
    kind = ResourceKind.APPOINTMENT
    label = "Appointment"

    def list(self, caller: Caller, filters: AppointmentFilter | None = None) -> list:
        query = self._scoped_query(caller)
        if filters is not None:
            if filters.status:
                query = query.filter(Appointment.status == filters.status)
            if filters.start_date:
                query = query.filter(Appointment.appointment_time >= filters.start_date)
            if filters.end_date:
                query = query.filter(Appointment.appointment_time <= filters.end_date)
            if filters.patient_id is not None:
                query = query.filter(Appointment.patient_id == filters.patient_id)
            if filters.doctor_id is not None:
                query = query.filter(Appointment.doctor_id == filters.doctor_id)
            if filters.facility_id is not None:
                query = query.filter(Appointment.facility_id == filters.facility_id)
        return query.order_by(Appointment.appointment_time.asc()).all()

    def reminders(self, caller: Caller) -> list:
        """Confirmed appointments within the next 24 hours that have not been reminded."""
        now = datetime.utcnow()
        return (
            self._scoped_query(caller)
            .filter(
                Appointment.status == AppointmentStatus.CONFIRMED.value,
                Appointment.reminder_sent.is_(False),
                Appointment.appointment_time > now,
                Appointment.appointment_time <= now + REMINDER_WINDOW,
            )
            .order_by(Appointment.appointment_time.asc())
            .all()
        )

    def stats(self, caller: Caller) -> dict:
        today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        tomorrow = today + timedelta(days=1)
        next_week = today + timedelta(days=7)
        scoped = self._scoped_query(caller)

        def count_status(status: AppointmentStatus) -> int:
            return scoped.filter(Appointment.status == status.value).count()

        return {
            "total": scoped.count(),
            "byStatus": {
                "pending": count_status(AppointmentStatus.PENDING),
                "confirmed": count_status(AppointmentStatus.CONFIRMED),
                "cancelled": count_status(AppointmentStatus.CANCELLED),
                "completed": count_status(AppointmentStatus.COMPLETED),
            },
            "today": scoped.filter(
                Appointment.appointment_time >= today, Appointment.appointment_time < tomorrow
            ).count(),
            "upcoming": scoped.filter(
                Appointment.appointment_time >= today,
                Appointment.appointment_time < next_week,
                Appointment.status.in_([AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value]),
            ).count(),
            "needAttention": scoped.filter(
                Appointment.status == AppointmentStatus.PENDING.value,
                Appointment.appointment_time >= today,
                Appointment.appointment_time < tomorrow,
            ).count(),
        }

    def _resolve_patient(self, caller: Caller, data: AppointmentCreate) -> int:
        # a patient always books for themselves, whatever the payload says
        if caller.role == Role.PATIENT:
            return caller.id
        if data.patient_id is None:
            raise ValidationFailed("patient_id is required when booking on behalf of a patient", ["patient_id"])
        patient = self.db.get(User, data.patient_id)
        if patient is None:
            raise NotFound("Patient not found")
        if patient.role != Role.PATIENT:
            raise ValidationFailed("patient_id must reference a patient", ["patient_id"])
        return patient.id

    def create(self, caller: Caller, data: AppointmentCreate) -> Appointment:
        self._authorize(caller, Action.CREATE)
        patient_id = self._resolve_patient(caller, data)

        doctor = self.db.get(User, data.doctor_id)
        if doctor is None:
            raise NotFound("Doctor not found")
        if doctor.role != Role.DOCTOR:
            raise ValidationFailed("doctor_id must reference a doctor", ["doctor_id"])
        if self.db.get(Facility, data.facility_id) is None:
            raise NotFound("Facility not found")

        appointment = Appointment(
            patient_id=patient_id,
            doctor_id=doctor.id,
            facility_id=data.facility_id,
            status=AppointmentStatus.PENDING.value,
            appointment_time=data.appointment_time,
            reason=data.reason,
            notes=data.notes,
        )
        self.db.add(appointment)
        self.db.commit()
        self.db.refresh(appointment)
        logger.info({
            "message": "appointment booked",
            "appointment_id": appointment.id,
            "patient_id": patient_id,
            "doctor_id": doctor.id,
            "caller_id": caller.id,
        })
        return appointment

    def update(self, caller: Caller, record_id: int, patch: Patch) -> Appointment:
        appointment = self._load(record_id)
        changes = patch.changes()
        self._authorize(caller, Action.UPDATE, appointment, changes)

        status = changes.pop("status", None)
        if status is not None:
            workflow.change_status(self.db, appointment, status, caller)
        self._apply(appointment, changes)
        self.db.commit()
        self.db.refresh(appointment)
        return appointment

    def _remove(self, record) -> None:
        if record.consultation is not None:
            raise Conflict("Appointment has a consultation; delete the consultation first")
        super()._remove(record)


# -------------------- Consultations --------------------
class ConsultationService(ResourceService):
    model = Consultation
    kind = ResourceKind.CONSULTATION
    label = "Consultation"

    def _load(self, record_id: int) -> Consultation:
        consultation = super()._load(record_id)
        if consultation.appointment is None:
            raise NotFound("Associated appointment not found")
        return consultation

    def _base_query(self) -> Query:
        return self.db.query(Consultation).outerjoin(Appointment, Appointment.id == Consultation.appointment_id)

    def _owner_model(self):
        return Appointment

    def create(self, caller: Caller, data: ConsultationCreate) -> Consultation:
        return workflow.create_consultation(
            self.db,
            caller,
            appointment_id=data.appointment_id,
            notes=data.notes,
            diagnosis=data.diagnosis,
            prescription_id=data.prescription_id,
        )

    def update(self, caller: Caller, record_id: int, patch: Patch) -> Consultation:
        consultation = self._load(record_id)
        changes = patch.changes()
        self._authorize(caller, Action.UPDATE, consultation, changes)
        prescription_id = changes.get("prescription_id")
        if prescription_id is not None:
            workflow.check_prescription_patient(self.db, prescription_id, consultation.appointment.patient_id)
        self._apply(consultation, changes)
        self.db.commit()
        self.db.refresh(consultation)
        return consultation


# -------------------- Prescriptions --------------------
class PrescriptionService(ResourceService):
    model = Prescription
    kind = ResourceKind.PRESCRIPTION
    label = "Prescription"

    def active(self, caller: Caller, patient_id: int) -> list:
        """Prescriptions of one patient with no end date or an end date in the future."""
        now = datetime.utcnow()
        return (
            self._scoped_query(caller)
            .filter(Prescription.patient_id == patient_id)
            .filter(or_(Prescription.end_date.is_(None), Prescription.end_date > now))
            .order_by(Prescription.start_date.desc())
            .all()
        )

    def _resolve_doctor(self, caller: Caller, data: PrescriptionCreate) -> int:
        if caller.role == Role.DOCTOR:
            return caller.id
        if data.doctor_id is None:
            raise ValidationFailed("doctor_id is required when prescribing on behalf of a doctor", ["doctor_id"])
        doctor = self.db.get(User, data.doctor_id)
        if doctor is None:
            raise NotFound("Doctor not found")
        if doctor.role != Role.DOCTOR:
            raise ValidationFailed("doctor_id must reference a doctor", ["doctor_id"])
        return doctor.id

    def create(self, caller: Caller, data: PrescriptionCreate) -> Prescription:
        self._authorize(caller, Action.CREATE)
        doctor_id = self._resolve_doctor(caller, data)

        patient = self.db.get(User, data.patient_id)
        if patient is None:
            raise NotFound("Patient not found")
        if patient.role != Role.PATIENT:
            raise ValidationFailed("patient_id must reference a patient", ["patient_id"])

        prescription = Prescription(
            doctor_id=doctor_id,
            patient_id=patient.id,
            medication=data.medication,
            dosage=data.dosage,
            instructions=data.instructions,
            start_date=data.start_date or datetime.utcnow(),
            end_date=data.end_date,
            refills=data.refills,
        )
        self.db.add(prescription)
        self.db.commit()
        self.db.refresh(prescription)
        logger.info({
            "message": "prescription created",
            "prescription_id": prescription.id,
            "patient_id": patient.id,
            "doctor_id": doctor_id,
        })

        # eventual linkage: a failed back-link leaves the prescription in place
        if data.consultation_id is not None:
            workflow.link_prescription(self.db, caller, data.consultation_id, prescription)
            self.db.refresh(prescription)
        return prescription

    def update(self, caller: Caller, record_id: int, patch: Patch) -> Prescription:
        prescription = self._load(record_id)
        changes = patch.changes()
        self._authorize(caller, Action.UPDATE, prescription, changes)
        start = changes.get("start_date", prescription.start_date)
        end = changes.get("end_date", prescription.end_date)
        if end is not None and end < start:
            raise ValidationFailed("end_date must not be before start_date", ["end_date"])
        self._apply(prescription, changes)
        self.db.commit()
        self.db.refresh(prescription)
        return prescription

    def _remove(self, record) -> None:
        workflow.delete_prescription(self.db, record)
