"""Business outcomes raised by the services and mapped to HTTP responses."""


class ServiceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ServiceError):
    status_code = 404


class Denied(ServiceError):
    status_code = 403


class ValidationFailed(ServiceError):
    status_code = 400

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class InvalidState(ServiceError):
    status_code = 400


class InvalidTransition(InvalidState):
    pass


class Conflict(ServiceError):
    """Lost a race on a uniqueness or status guard; the caller may retry."""
    status_code = 409


class StoreFailure(ServiceError):
    status_code = 500
