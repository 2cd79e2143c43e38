"""Error taxonomy shared by the stores, the lifecycle manager and the HTTP layer."""


class LabRequestError(Exception):
    status_code = 400
    error = "BadRequest"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LabRequestError):
    status_code = 404
    error = "NotFound"


class PermissionDenied(LabRequestError):
    status_code = 403
    error = "Forbidden"


class PersistenceError(LabRequestError):
    status_code = 503
    error = "PersistenceError"


class LabLockedError(LabRequestError):
    """Raised for an intent against a lab request that already left `requested`."""

    status_code = 409
    error = "LabLocked"


class ViewNotReady(LabRequestError):
    status_code = 409
    error = "ViewNotReady"


class CommitInProgress(LabRequestError):
    """Raised for an edit that arrives while the draft is being saved."""

    status_code = 409
    error = "CommitInProgress"


class Unauthorized(LabRequestError):
    status_code = 401
    error = "Unauthorized"


ERROR_NAMES = {
    400: "BadRequest",
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    409: "Conflict",
    410: "Gone",
    422: "ValidationError",
}


def error_name(status_code: int) -> str:
    if status_code >= 500:
        return "InternalServerError"
    return ERROR_NAMES.get(status_code, "HTTPError")


def error_body(status_code: int, message: str, error: str | None = None, **extra) -> dict:
    return {"statusCode": status_code, "message": message, "error": error or error_name(status_code), **extra}
