class WardflowError(Exception):
    """Base class for the error kinds surfaced by the patient-flow core."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(WardflowError):
    kind = "validation_error"
    status_code = 422


class NotFoundError(WardflowError):
    kind = "not_found"
    status_code = 404


class ConflictError(WardflowError):
    """Resource already in the claimed state, or busy. Safe to retry with fresh data."""

    kind = "conflict"
    status_code = 409


class StateError(WardflowError):
    kind = "state_error"
    status_code = 422


class InternalError(WardflowError):
    kind = "internal_error"
    status_code = 500
