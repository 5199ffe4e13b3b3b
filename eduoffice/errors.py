class ServiceError(Exception):
    """Base class for business-rule failures raised by the engines.

    ``kind`` is the stable identifier returned to API clients and
    ``status_code`` the HTTP status the blueprint layer answers with.
    """

    kind = "error"
    status_code = 400

    def __init__(self, message, payload=None):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self):
        return {
            "success": False,
            "error": self.kind,
            "message": self.message,
            "data": self.payload,
        }


class NotFoundError(ServiceError):
    kind = "not_found"
    status_code = 404


class ConflictError(ServiceError):
    kind = "conflict"
    status_code = 409


class InvalidStateError(ServiceError):
    kind = "invalid_state"
    status_code = 422


class ValidationFailure(ServiceError):
    kind = "validation_failed"
    status_code = 400


class PermissionDenied(ServiceError):
    kind = "permission_denied"
    status_code = 403
