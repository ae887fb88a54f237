"""Error taxonomy shared by the lifecycle and recommendation cores.

Each error carries the client-visible ``code`` and the HTTP status the API
layer renders it with.
"""

from __future__ import annotations


class ServiceError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(ServiceError):
    code = "NOT_FOUND"
    status_code = 404


class JobNotFound(NotFoundError):
    code = "JOB_NOT_FOUND"


class ApplicationNotFound(NotFoundError):
    code = "APPLICATION_NOT_FOUND"


class SavedJobNotFound(NotFoundError):
    code = "SAVED_JOB_NOT_FOUND"


class ResumeNotFound(NotFoundError):
    code = "RESUME_NOT_FOUND"


class ProfileNotFound(NotFoundError):
    code = "PROFILE_NOT_FOUND"


class ConflictError(ServiceError):
    code = "CONFLICT"
    status_code = 409


class AlreadyApplied(ConflictError):
    code = "ALREADY_APPLIED"


class JobAlreadySaved(ConflictError):
    code = "JOB_ALREADY_SAVED"


class Forbidden(ServiceError):
    code = "FORBIDDEN"
    status_code = 403


class Unauthorized(ServiceError):
    code = "UNAUTHORIZED"
    status_code = 401


class BadRequestError(ServiceError):
    code = "BAD_REQUEST"
    status_code = 400


class InvalidTransition(BadRequestError):
    code = "INVALID_TRANSITION"


class CannotWithdraw(BadRequestError):
    code = "CANNOT_WITHDRAW"


class InvalidFeedbackType(BadRequestError):
    code = "INVALID_FEEDBACK_TYPE"


class JobNotActive(BadRequestError):
    code = "JOB_NOT_ACTIVE"


class InvalidResumeData(BadRequestError):
    code = "INVALID_RESUME_DATA"


class InvalidStatus(BadRequestError):
    code = "INVALID_STATUS"


class Unavailable(ServiceError):
    code = "UNAVAILABLE"
    status_code = 503


class ProfileUnavailable(Unavailable):
    code = "PROFILE_SERVICE_UNAVAILABLE"


class JobDirectoryUnavailable(Unavailable):
    code = "JOB_DIRECTORY_UNAVAILABLE"
