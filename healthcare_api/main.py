from fastapi import FastAPI, Depends, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

import logging
import time
from datetime import datetime
from typing import Literal, Optional

from .config import is_production
from .database import get_db, init_db
from .errors import ServiceError, StoreFailure, ValidationFailed
from .logging_utils import configure_logging
from .models import User
from .policy import Caller
from .schemas import (
    RegisterUser, UserUpdate, UserOut, LoginRequest, TokenResponse,
    MedicalProfileCreate, MedicalProfileUpdate, MedicalProfileOut,
    FacilityCreate, FacilityUpdate, FacilityOut,
    AppointmentCreate, AppointmentUpdate, AppointmentFilter, AppointmentOut, AppointmentStats,
    ConsultationCreate, ConsultationUpdate, ConsultationOut,
    PrescriptionCreate, PrescriptionUpdate, PrescriptionOut,
)
from .services import (
    UserService, MedicalProfileService, FacilityService,
    AppointmentService, ConsultationService, PrescriptionService,
)
from .security import get_caller, get_current_user, token_for, verify_password

logger = logging.getLogger(__name__)

# -------------------- App & CORS --------------------
app = FastAPI(
    title="Healthcare Scheduling API",
    version="1.0.0",
    swagger_ui_parameters={"persistAuthorization": True},
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "request handled",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 1),
        },
    )
    return response

# -------------------- Envelope --------------------
def ok(data, schema=None, message: str | None = None):
    if schema is not None:
        data = schema.model_validate(data).model_dump(mode="json")
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def ok_list(items, schema):
    data = [schema.model_validate(item).model_dump(mode="json") for item in items]
    return {"success": True, "count": len(data), "data": data}


# -------------------- Error handling --------------------
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    body = {"success": False, "message": exc.message}
    if isinstance(exc, ValidationFailed) and exc.fields:
        body["fields"] = exc.fields
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in err["loc"] if part not in ("body", "query", "path")),
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "message": "Validation failed",
            "fields": [e["field"] for e in errors],
            "errors": errors,
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(SQLAlchemyError)
async def store_failure_handler(request: Request, exc: SQLAlchemyError):
    logger.error(
        {"message": "store failure", "method": request.method, "path": request.url.path},
        exc_info=exc,
    )
    failure = StoreFailure("Server error")
    return JSONResponse(
        status_code=failure.status_code,
        content={
            "success": False,
            "message": failure.message,
            "error": None if is_production() else str(exc),
        },
    )


# -------------------- OpenAPI --------------------
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(
        title=app.title,
        version=app.version,
        description="Healthcare scheduling API with role-gated access",
        routes=app.routes,
    )
    schema.setdefault("components", {})
    schema["components"]["securitySchemes"] = {
        "HTTPBearer": {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}
    }
    schema["security"] = [{"HTTPBearer": []}]
    app.openapi_schema = schema
    return app.openapi_schema

app.openapi = custom_openapi

# -------------------- Lifecycle --------------------
@app.on_event("startup")
def on_startup():
    configure_logging()
    init_db()

# -------------------- Health --------------------
@app.get("/health")
def health():
    return {"success": True, "message": "ok"}

# -------------------- Auth --------------------
@app.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterUser, db: Session = Depends(get_db)):
    user = UserService(db).self_register(payload)
    return ok(user, UserOut)


@app.post("/auth/login")
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == payload.email.lower().strip()).first()
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    access_token = token_for(user)
    token = TokenResponse(access_token=access_token, authorization=f"Bearer {access_token}")
    return ok(token.model_dump())


@app.get("/auth/me")
def me(current_user: User = Depends(get_current_user)):
    return ok(current_user, UserOut)

# -------------------- Users (admin) --------------------
@app.get("/users")
def list_users(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok_list(UserService(db).list(caller), UserOut)


@app.get("/users/{user_id}")
def get_user(user_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok(UserService(db).get(caller, user_id), UserOut)


@app.post("/users", status_code=status.HTTP_201_CREATED)
def create_user(payload: RegisterUser, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok(UserService(db).create(caller, payload), UserOut)


@app.put("/users/{user_id}")
def update_user(
    user_id: int, payload: UserUpdate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(UserService(db).update(caller, user_id, payload), UserOut)


@app.delete("/users/{user_id}")
def delete_user(user_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    UserService(db).delete(caller, user_id)
    return ok({})

# -------------------- Facilities --------------------
@app.get("/facilities")
def list_facilities(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok_list(FacilityService(db).list(caller), FacilityOut)


@app.get("/facilities/radius")
def facilities_in_radius(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(..., gt=0),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    facilities = FacilityService(db).within_radius(caller, latitude, longitude, radius_km)
    return ok_list(facilities, FacilityOut)


@app.get("/facilities/{facility_id}")
def get_facility(facility_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok(FacilityService(db).get(caller, facility_id), FacilityOut)


@app.post("/facilities", status_code=status.HTTP_201_CREATED)
def create_facility(payload: FacilityCreate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok(FacilityService(db).create(caller, payload), FacilityOut)


@app.put("/facilities/{facility_id}")
def update_facility(
    facility_id: int, payload: FacilityUpdate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(FacilityService(db).update(caller, facility_id, payload), FacilityOut)


@app.delete("/facilities/{facility_id}")
def delete_facility(facility_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    FacilityService(db).delete(caller, facility_id)
    return ok({})

# -------------------- Medical profiles --------------------
@app.get("/medical-profiles")
def list_medical_profiles(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok_list(MedicalProfileService(db).list(caller), MedicalProfileOut)


@app.get("/medical-profiles/me")
def my_medical_profile(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok(MedicalProfileService(db).mine(caller), MedicalProfileOut)


@app.get("/medical-profiles/{profile_id}")
def get_medical_profile(profile_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok(MedicalProfileService(db).get(caller, profile_id), MedicalProfileOut)


@app.post("/medical-profiles", status_code=status.HTTP_201_CREATED)
def create_medical_profile(
    payload: MedicalProfileCreate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(MedicalProfileService(db).create(caller, payload), MedicalProfileOut)


@app.put("/medical-profiles/{profile_id}")
def update_medical_profile(
    profile_id: int, payload: MedicalProfileUpdate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(MedicalProfileService(db).update(caller, profile_id, payload), MedicalProfileOut)


@app.delete("/medical-profiles/{profile_id}")
def delete_medical_profile(profile_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    MedicalProfileService(db).delete(caller, profile_id)
    return ok({})

# -------------------- Appointments --------------------
@app.get("/appointments")
def list_appointments(
    status: Optional[Literal["Pending", "Confirmed", "Cancelled", "Completed"]] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    patient_id: Optional[int] = None,
    doctor_id: Optional[int] = None,
    facility_id: Optional[int] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    filters = AppointmentFilter(
        status=status,
        start_date=start_date,
        end_date=end_date,
        patient_id=patient_id,
        doctor_id=doctor_id,
        facility_id=facility_id,
    )
    return ok_list(AppointmentService(db).list(caller, filters), AppointmentOut)


@app.get("/appointments/reminders")
def appointments_needing_reminders(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok_list(AppointmentService(db).reminders(caller), AppointmentOut)


@app.get("/appointments/stats")
def appointment_stats(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok(AppointmentService(db).stats(caller), AppointmentStats)


@app.get("/appointments/{appointment_id}")
def get_appointment(appointment_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok(AppointmentService(db).get(caller, appointment_id), AppointmentOut)


@app.post("/appointments", status_code=status.HTTP_201_CREATED)
def create_appointment(
    payload: AppointmentCreate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(AppointmentService(db).create(caller, payload), AppointmentOut)


@app.put("/appointments/{appointment_id}")
def update_appointment(
    appointment_id: int, payload: AppointmentUpdate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(AppointmentService(db).update(caller, appointment_id, payload), AppointmentOut)


@app.delete("/appointments/{appointment_id}")
def delete_appointment(appointment_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    AppointmentService(db).delete(caller, appointment_id)
    return ok({})

# -------------------- Consultations --------------------
@app.get("/consultations")
def list_consultations(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok_list(ConsultationService(db).list(caller), ConsultationOut)


@app.get("/consultations/{consultation_id}")
def get_consultation(consultation_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok(ConsultationService(db).get(caller, consultation_id), ConsultationOut)


@app.post("/consultations", status_code=status.HTTP_201_CREATED)
def create_consultation(
    payload: ConsultationCreate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(ConsultationService(db).create(caller, payload), ConsultationOut)


@app.put("/consultations/{consultation_id}")
def update_consultation(
    consultation_id: int, payload: ConsultationUpdate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(ConsultationService(db).update(caller, consultation_id, payload), ConsultationOut)


@app.delete("/consultations/{consultation_id}")
def delete_consultation(consultation_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    ConsultationService(db).delete(caller, consultation_id)
    return ok({})

# -------------------- Prescriptions --------------------
@app.get("/prescriptions")
def list_prescriptions(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok_list(PrescriptionService(db).list(caller), PrescriptionOut)


@app.get("/prescriptions/active/{patient_id}")
def active_prescriptions(patient_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok_list(PrescriptionService(db).active(caller, patient_id), PrescriptionOut)


@app.get("/prescriptions/{prescription_id}")
def get_prescription(prescription_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ok(PrescriptionService(db).get(caller, prescription_id), PrescriptionOut)


@app.post("/prescriptions", status_code=status.HTTP_201_CREATED)
def create_prescription(
    payload: PrescriptionCreate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(PrescriptionService(db).create(caller, payload), PrescriptionOut)


@app.put("/prescriptions/{prescription_id}")
def update_prescription(
    prescription_id: int, payload: PrescriptionUpdate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    return ok(PrescriptionService(db).update(caller, prescription_id, payload), PrescriptionOut)


@app.delete("/prescriptions/{prescription_id}")
def delete_prescription(prescription_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    PrescriptionService(db).delete(caller, prescription_id)
    return ok({})


# -------------------- Dev runner --------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("healthcare_api.main:app", host="0.0.0.0", port=8000, reload=True)
