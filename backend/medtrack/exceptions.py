class MedTrackError(Exception):
    """Base class for every failure the scheduling core reports to its caller."""

    code = "error"
    status_code = 400

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class AuthenticationError(MedTrackError):
    code = "authentication_failed"
    status_code = 401


class SessionExpiredError(MedTrackError):
    code = "session_expired"
    status_code = 401


class AuthorizationError(MedTrackError):
    code = "not_authorized"
    status_code = 403


class ValidationError(MedTrackError):
    code = "validation_error"
    status_code = 422


class NotFoundError(MedTrackError):
    code = "not_found"
    status_code = 404


class SlotConflictError(MedTrackError):
    code = "slot_conflict"
    status_code = 409


class InvalidTransitionError(MedTrackError):
    code = "invalid_transition"
    status_code = 409


class TransientError(MedTrackError):
    """Storage did not answer in time; safe for the client to retry later."""

    code = "transient_failure"
    status_code = 503
