from pydantic import AfterValidator, BaseModel, EmailStr, Field, model_validator
from typing import Annotated, ClassVar, Literal, Optional, List
from datetime import datetime, timezone


Role = Literal["Patient", "Doctor", "Admin"]
Gender = Literal["Male", "Female", "Other"]
BloodType = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-", "Unknown"]
FacilityType = Literal["Clinic", "Hospital", "GP", "Specialist", "Other"]
AppointmentStatus = Literal["Pending", "Confirmed", "Cancelled", "Completed"]


def naive_utc(value: datetime | None) -> datetime | None:
    # timestamps are stored as naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UTCDateTime = Annotated[datetime, AfterValidator(naive_utc)]


class Patch(BaseModel):
    """Partial update: unknown fields are rejected, omitted fields untouched.

    An explicit null only clears the fields listed in ``clearable``; for the
    rest it is treated as omitted.
    """

    clearable: ClassVar[tuple[str, ...]] = ()

    class Config:
        extra = "forbid"

    def changes(self) -> dict:
        data = self.model_dump(exclude_unset=True)
        return {k: v for k, v in data.items() if v is not None or k in self.clearable}


# -------------------- Auth & users --------------------
class RegisterUser(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=120)
    email: EmailStr
    phone_number: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=128)
    role: Role = "Patient"
    date_of_birth: Optional[UTCDateTime] = None
    gender: Optional[Gender] = None


class UserUpdate(Patch):
    full_name: Optional[str] = Field(None, min_length=2, max_length=120)
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = Field(None, min_length=3, max_length=50)


class UserOut(BaseModel):
    id: int
    full_name: str
    email: EmailStr
    phone_number: str
    role: Role
    created_at: datetime

    class Config:
        from_attributes = True


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    authorization: str


# -------------------- Medical profiles --------------------
class MedicalProfileCreate(BaseModel):
    user_id: int
    date_of_birth: UTCDateTime
    gender: Gender
    blood_type: BloodType = "Unknown"
    allergies: List[str] = []
    chronic_conditions: List[str] = []


class MedicalProfileUpdate(Patch):
    date_of_birth: Optional[UTCDateTime] = None
    gender: Optional[Gender] = None
    blood_type: Optional[BloodType] = None
    allergies: Optional[List[str]] = None
    chronic_conditions: Optional[List[str]] = None


class MedicalProfileOut(BaseModel):
    id: int
    user_id: int
    date_of_birth: datetime
    gender: Gender
    blood_type: BloodType
    allergies: List[str]
    chronic_conditions: List[str]

    class Config:
        from_attributes = True


# -------------------- Facilities --------------------
class FacilityCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    address: str = Field(..., min_length=1, max_length=255)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    facility_type: FacilityType
    services: List[str] = []
    operating_hours: Optional[str] = None
    contact_number: Optional[str] = None


class FacilityUpdate(Patch):
    clearable: ClassVar[tuple[str, ...]] = ("operating_hours", "contact_number")

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    address: Optional[str] = Field(None, min_length=1, max_length=255)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    facility_type: Optional[FacilityType] = None
    services: Optional[List[str]] = None
    operating_hours: Optional[str] = None
    contact_number: Optional[str] = None


class FacilityOut(BaseModel):
    id: int
    name: str
    address: str
    latitude: float
    longitude: float
    facility_type: FacilityType
    services: List[str]
    operating_hours: Optional[str]
    contact_number: Optional[str]

    class Config:
        from_attributes = True


# -------------------- Appointments --------------------
class AppointmentCreate(BaseModel):
    patient_id: Optional[int] = None  # forced to the caller for patients
    doctor_id: int
    facility_id: int
    appointment_time: UTCDateTime
    reason: str = Field(..., min_length=1)
    notes: Optional[str] = None


class AppointmentUpdate(Patch):
    clearable: ClassVar[tuple[str, ...]] = ("notes",)

    status: Optional[AppointmentStatus] = None
    appointment_time: Optional[UTCDateTime] = None
    reason: Optional[str] = Field(None, min_length=1)
    notes: Optional[str] = None
    reminder_sent: Optional[bool] = None


class AppointmentFilter(BaseModel):
    status: Optional[AppointmentStatus] = None
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    patient_id: Optional[int] = None
    doctor_id: Optional[int] = None
    facility_id: Optional[int] = None


class AppointmentOut(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    facility_id: int
    status: AppointmentStatus
    appointment_time: datetime
    reason: str
    notes: Optional[str] = None
    reminder_sent: bool
    is_upcoming: bool
    needs_reminder: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AppointmentStatusCounts(BaseModel):
    pending: int
    confirmed: int
    cancelled: int
    completed: int


class AppointmentStats(BaseModel):
    total: int
    byStatus: AppointmentStatusCounts
    today: int
    upcoming: int
    needAttention: int


# -------------------- Consultations --------------------
class ConsultationCreate(BaseModel):
    appointment_id: int
    notes: str = Field(..., min_length=1)
    diagnosis: str = Field(..., min_length=1)
    prescription_id: Optional[int] = None


class ConsultationUpdate(Patch):
    clearable: ClassVar[tuple[str, ...]] = ("prescription_id",)

    notes: Optional[str] = Field(None, min_length=1)
    diagnosis: Optional[str] = Field(None, min_length=1)
    prescription_id: Optional[int] = None


class ConsultationOut(BaseModel):
    id: int
    appointment_id: int
    notes: str
    diagnosis: str
    prescription_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# -------------------- Prescriptions --------------------
class PrescriptionCreate(BaseModel):
    patient_id: int
    doctor_id: Optional[int] = None  # forced to the caller for doctors
    medication: str = Field(..., min_length=1, max_length=200)
    dosage: str = Field(..., min_length=1, max_length=200)
    instructions: str = Field(..., min_length=1)
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    refills: int = Field(0, ge=0)
    consultation_id: Optional[int] = None

    @model_validator(mode="after")
    def end_after_start(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class PrescriptionUpdate(Patch):
    clearable: ClassVar[tuple[str, ...]] = ("end_date",)

    medication: Optional[str] = Field(None, min_length=1, max_length=200)
    dosage: Optional[str] = Field(None, min_length=1, max_length=200)
    instructions: Optional[str] = Field(None, min_length=1)
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    refills: Optional[int] = Field(None, ge=0)


class PrescriptionOut(BaseModel):
    id: int
    doctor_id: int
    patient_id: int
    medication: str
    dosage: str
    instructions: str
    start_date: datetime
    end_date: Optional[datetime] = None
    refills: int
    is_active: bool

    class Config:
        from_attributes = True
