"""Authorization as one ordered rule table; the first rule covering a request decides it."""

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .models import AppointmentStatus, Role


class Action(str, enum.Enum):
    LIST = "List"
    READ = "Read"
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class ResourceKind(str, enum.Enum):
    USER = "User"
    MEDICAL_PROFILE = "MedicalProfile"
    FACILITY = "Facility"
    APPOINTMENT = "Appointment"
    CONSULTATION = "Consultation"
    PRESCRIPTION = "Prescription"


@dataclass(frozen=True)
class Caller:
    id: int
    role: str

    @classmethod
    def from_user(cls, user) -> "Caller":
        return cls(id=user.id, role=user.role)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


@dataclass(frozen=True)
class PolicyRequest:
    caller: Caller
    action: Action
    kind: ResourceKind
    resource: Any = None
    changes: Mapping[str, Any] = field(default_factory=dict)


ALL_ACTIONS = frozenset(Action)
ALL_KINDS = frozenset(ResourceKind)
READS = frozenset({Action.LIST, Action.READ})
CLINICAL_RECORDS = frozenset({
    ResourceKind.APPOINTMENT,
    ResourceKind.CONSULTATION,
    ResourceKind.PRESCRIPTION,
})


@dataclass(frozen=True)
class Rule:
    name: str
    actions: frozenset
    kinds: frozenset
    check: Callable[[PolicyRequest], Decision]
    roles: frozenset | None = None

    def covers(self, request: PolicyRequest) -> bool:
        if request.action not in self.actions or request.kind not in self.kinds:
            return False
        return self.roles is None or request.caller.role in self.roles


def parties(kind: ResourceKind, resource) -> tuple[int | None, int | None]:
    # a consultation takes its parties from its appointment
    if resource is None:
        return None, None
    if kind == ResourceKind.CONSULTATION:
        appointment = resource.appointment
        if appointment is None:
            return None, None
        return appointment.patient_id, appointment.doctor_id
    return resource.patient_id, resource.doctor_id


def _label(kind: ResourceKind) -> str:
    return {
        ResourceKind.MEDICAL_PROFILE: "medical profile",
    }.get(kind, kind.value.lower())


def _allow_all(request: PolicyRequest) -> Decision:
    return ALLOW


def _party_read(request: PolicyRequest) -> Decision:
    if request.resource is None:
        # List without an instance: the service applies list_scope as a query filter
        if request.action == Action.LIST:
            return ALLOW
        return deny(f"Not authorized to access this {_label(request.kind)}")
    if request.caller.id in parties(request.kind, request.resource):
        return ALLOW
    return deny(f"Not authorized to access this {_label(request.kind)}")


def _profile_read(request: PolicyRequest) -> Decision:
    # Doctors may read any patient's profile
    if request.caller.role == Role.DOCTOR:
        return ALLOW
    if request.resource is None:
        return ALLOW if request.action == Action.LIST else deny("Not authorized to access this medical profile")
    if request.resource.user_id == request.caller.id:
        return ALLOW
    return deny("Not authorized to access this medical profile")


def _create_appointment(request: PolicyRequest) -> Decision:
    if request.caller.role == Role.PATIENT:
        return ALLOW
    return deny("Only patients or admins can book appointments")


def _create_consultation(request: PolicyRequest) -> Decision:
    if request.caller.role != Role.DOCTOR:
        return deny("Only doctors can create consultations")
    appointment = request.resource
    if appointment is None or appointment.doctor_id != request.caller.id:
        return deny("You are not the doctor assigned to this appointment")
    return ALLOW


def _create_prescription(request: PolicyRequest) -> Decision:
    if request.caller.role == Role.DOCTOR:
        return ALLOW
    return deny("Only doctors can create prescriptions")


def _update_appointment(request: PolicyRequest) -> Decision:
    appointment = request.resource
    if appointment is None:
        return deny("Not authorized to update this appointment")
    if appointment.doctor_id == request.caller.id:
        return ALLOW
    if appointment.patient_id == request.caller.id:
        status = request.changes.get("status")
        if status is not None and status != AppointmentStatus.CANCELLED:
            return deny("Patients can only cancel appointments")
        return ALLOW
    return deny("Not authorized to update this appointment")


def _update_clinical(request: PolicyRequest) -> Decision:
    _, doctor_id = parties(request.kind, request.resource)
    if doctor_id is not None and doctor_id == request.caller.id:
        return ALLOW
    return deny(f"Not authorized to update this {_label(request.kind)}")


def _update_profile(request: PolicyRequest) -> Decision:
    if request.resource is not None and request.resource.user_id == request.caller.id:
        return ALLOW
    return deny("Not authorized to update this medical profile")


POLICY: tuple[Rule, ...] = (
    Rule("admin", ALL_ACTIONS, ALL_KINDS, _allow_all, roles=frozenset({Role.ADMIN.value})),
    Rule("party-read", READS, CLINICAL_RECORDS, _party_read),
    Rule("profile-read", READS, frozenset({ResourceKind.MEDICAL_PROFILE}), _profile_read),
    Rule("facility-read", READS, frozenset({ResourceKind.FACILITY}), _allow_all),
    Rule("book-appointment", frozenset({Action.CREATE}), frozenset({ResourceKind.APPOINTMENT}), _create_appointment),
    Rule("create-consultation", frozenset({Action.CREATE}), frozenset({ResourceKind.CONSULTATION}), _create_consultation),
    Rule("create-prescription", frozenset({Action.CREATE}), frozenset({ResourceKind.PRESCRIPTION}), _create_prescription),
    Rule("update-appointment", frozenset({Action.UPDATE}), frozenset({ResourceKind.APPOINTMENT}), _update_appointment),
    Rule(
        "update-clinical",
        frozenset({Action.UPDATE}),
        frozenset({ResourceKind.CONSULTATION, ResourceKind.PRESCRIPTION}),
        _update_clinical,
    ),
    Rule("update-profile", frozenset({Action.UPDATE}), frozenset({ResourceKind.MEDICAL_PROFILE}), _update_profile),
)


def decide(
    caller: Caller,
    action: Action,
    kind: ResourceKind,
    resource=None,
    changes: Mapping[str, Any] | None = None,
) -> Decision:
    request = PolicyRequest(caller, action, kind, resource, changes or {})
    for rule in POLICY:
        if rule.covers(request):
            return rule.check(request)
    return deny(f"User role {caller.role} is not authorized to {action.value.lower()} {_label(kind)} records")


@dataclass(frozen=True)
class ListScope:
    # rows match when the caller id equals any owner field; no fields means all rows
    owner_fields: tuple[str, ...] = ()

    @property
    def unrestricted(self) -> bool:
        return not self.owner_fields


UNRESTRICTED = ListScope()

_OWNER_FIELDS = {
    ResourceKind.APPOINTMENT: ("patient_id", "doctor_id"),
    ResourceKind.CONSULTATION: ("patient_id", "doctor_id"),
    ResourceKind.PRESCRIPTION: ("patient_id", "doctor_id"),
    ResourceKind.MEDICAL_PROFILE: ("user_id",),
}


def list_scope(caller: Caller, kind: ResourceKind) -> ListScope:
    """Query-level counterpart of the read rules; call after decide(LIST) allows."""
    if caller.is_admin:
        return UNRESTRICTED
    if kind == ResourceKind.MEDICAL_PROFILE and caller.role == Role.DOCTOR:
        return UNRESTRICTED
    return ListScope(_OWNER_FIELDS.get(kind, ()))
