"""Shared pytest fixtures."""

import os
import tempfile
from datetime import datetime, timedelta

# keep the app's default engine away from the working directory
os.environ.setdefault(
    "DATABASE_URL", "sqlite:///" + os.path.join(tempfile.gettempdir(), "healthcare_api_default.db")
)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from healthcare_api.database import build_engine, get_db, init_db
from healthcare_api.main import app
from healthcare_api.models import Appointment, AppointmentStatus, Facility, Role, User
from healthcare_api.policy import Caller
from healthcare_api.schemas import RegisterUser
from healthcare_api.services import UserService
from healthcare_api.security import hash_password, token_for


@pytest.fixture
def engine(tmp_path):
    """A fresh SQLite file per test so concurrent sessions really share it."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, role: str, email: str, name: str = "Test User") -> User:
    if role == Role.PATIENT:
        # goes through registration so the medical profile exists
        return UserService(db).register(RegisterUser(
            full_name=name, email=email, phone_number="555-0100", password="secret123", role=role,
        ))
    user = User(
        full_name=name,
        email=email,
        phone_number="555-0100",
        password_hash=hash_password("secret123"),
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def auth_header(user: User) -> dict:
    token = token_for(user)
    return {"Authorization": f"Bearer {token}"}


def caller_of(user: User) -> Caller:
    return Caller(id=user.id, role=user.role)


def make_appointment(db, patient, doctor, facility, status=AppointmentStatus.PENDING, hours_ahead=48) -> Appointment:
    appointment = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        facility_id=facility.id,
        status=AppointmentStatus(status).value,
        appointment_time=datetime.utcnow() + timedelta(hours=hours_ahead),
        reason="Persistent cough",
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    return appointment


@pytest.fixture
def admin(db):
    return make_user(db, Role.ADMIN.value, "admin@example.com", "Ada Admin")


@pytest.fixture
def doctor(db):
    return make_user(db, Role.DOCTOR.value, "doctor@example.com", "Dana Doctor")


@pytest.fixture
def other_doctor(db):
    return make_user(db, Role.DOCTOR.value, "doctor2@example.com", "Drew Doctor")


@pytest.fixture
def patient(db):
    return make_user(db, Role.PATIENT.value, "patient@example.com", "Pat Patient")


@pytest.fixture
def other_patient(db):
    return make_user(db, Role.PATIENT.value, "patient2@example.com", "Pia Patient")


@pytest.fixture
def facility(db):
    facility = Facility(
        name="Northside Clinic",
        address="1 Main St",
        latitude=51.5074,
        longitude=-0.1278,
        facility_type="Clinic",
        services=["General"],
    )
    db.add(facility)
    db.commit()
    db.refresh(facility)
    return facility


@pytest.fixture
def pending_appointment(db, patient, doctor, facility):
    return make_appointment(db, patient, doctor, facility)


@pytest.fixture
def confirmed_appointment(db, patient, doctor, facility):
    return make_appointment(db, patient, doctor, facility, status=AppointmentStatus.CONFIRMED)
