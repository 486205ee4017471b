import enum
from datetime import datetime, timedelta

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text,
)
from sqlalchemy.orm import relationship

from .database import Base


class Role(str, enum.Enum):
    PATIENT = "Patient"
    DOCTOR = "Doctor"
    ADMIN = "Admin"


class AppointmentStatus(str, enum.Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"


REMINDER_WINDOW = timedelta(hours=24)


class User(Base):
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    phone_number = Column(String(50), nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=Role.PATIENT.value)  # Patient | Doctor | Admin
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    medical_profile = relationship("MedicalProfile", back_populates="user", uselist=False)


class MedicalProfile(Base):
    __tablename__ = "medical_profiles"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    # one profile per patient
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    date_of_birth = Column(DateTime, nullable=False)
    gender = Column(String(10), nullable=False, default="Other")
    blood_type = Column(String(10), nullable=False, default="Unknown")
    allergies = Column(JSON, nullable=False, default=list)
    chronic_conditions = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="medical_profile")


class Facility(Base):
    __tablename__ = "facilities"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    address = Column(String(255), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    facility_type = Column(String(20), nullable=False)  # Clinic | Hospital | GP | Specialist | Other
    services = Column(JSON, nullable=False, default=list)
    operating_hours = Column(String(120), nullable=True)
    contact_number = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    facility_id = Column(Integer, ForeignKey("facilities.id"), nullable=False)
    status = Column(String(20), nullable=False, default=AppointmentStatus.PENDING.value, index=True)
    appointment_time = Column(DateTime, nullable=False, index=True)
    reason = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    consultation = relationship("Consultation", back_populates="appointment", uselist=False)

    @property
    def is_upcoming(self) -> bool:
        return self.appointment_time > datetime.utcnow() and self.status != AppointmentStatus.CANCELLED

    @property
    def needs_reminder(self) -> bool:
        until = self.appointment_time - datetime.utcnow()
        return (
            not self.reminder_sent
            and self.status == AppointmentStatus.CONFIRMED
            and timedelta(0) < until <= REMINDER_WINDOW
        )


class Consultation(Base):
    __tablename__ = "consultations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    # unique: at most one consultation per appointment, enforced by the store
    appointment_id = Column(Integer, ForeignKey("appointments.id"), unique=True, nullable=False)
    notes = Column(Text, nullable=False)
    diagnosis = Column(Text, nullable=False)
    # weak reference, nulled when the prescription is deleted
    prescription_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    appointment = relationship("Appointment", back_populates="consultation")


class Prescription(Base):
    __tablename__ = "prescriptions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    medication = Column(String(200), nullable=False)
    dosage = Column(String(200), nullable=False)
    instructions = Column(Text, nullable=False)
    start_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    end_date = Column(DateTime, nullable=True)
    refills = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_active(self) -> bool:
        if self.end_date is None:
            return True
        return self.end_date > datetime.utcnow()
