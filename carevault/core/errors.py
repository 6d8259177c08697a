"""Client-facing error taxonomy.

Services raise these; a single exception handler in ``carevault.main`` renders
them as ``{"success": false, "code": ..., "message": ..., **context}``.
"""
from typing import Any


class AppError(Exception):
    status_code: int = 500
    code: str = "ERROR"
    message: str = "Request failed"

    def __init__(self, message: str | None = None, **context: Any):
        self.message = message or self.message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "code": self.code, "message": self.message, **self.context}


# ---- families ----

class BadRequest(AppError):
    status_code = 400
    code = "BAD_REQUEST"
    message = "Bad request"

class InvalidCredential(AppError):
    status_code = 401
    code = "INVALID_CREDENTIAL"
    message = "Invalid credential"

class Forbidden(AppError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Forbidden"

class NotFound(AppError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Not found"

class Conflict(AppError):
    status_code = 409
    code = "CONFLICT"
    message = "Conflict"

class Expired(AppError):
    status_code = 410
    code = "EXPIRED"
    message = "Expired"

class Upstream(AppError):
    status_code = 502
    code = "UPSTREAM"
    message = "Upstream service failed"

class Unavailable(AppError):
    status_code = 503
    code = "UNAVAILABLE"
    message = "Service temporarily unavailable"


# ---- concrete ----

class SubjectNotFound(NotFound):
    code = "SUBJECT_NOT_FOUND"
    message = "Patient not found"

class SessionNotFound(NotFound):
    code = "SESSION_NOT_FOUND"
    message = "Session request not found"

class NotificationNotFound(NotFound):
    code = "NOTIFICATION_NOT_FOUND"
    message = "Notification not found"

class RecipientNotFound(NotFound):
    code = "RECIPIENT_NOT_FOUND"
    message = "Recipient not found"

class RoleNotAllowed(Forbidden):
    code = "ROLE_NOT_ALLOWED"
    message = "Your role cannot perform this action"

class NotSessionSubject(Forbidden):
    code = "NOT_SESSION_SUBJECT"
    message = "You can only respond to your own session requests"

class NoActiveGrant(Forbidden):
    code = "NO_ACTIVE_SESSION"
    message = "Session validation failed"

class DuplicateActiveGrant(Conflict):
    code = "DUPLICATE_ACTIVE_SESSION"
    message = "You already have an active session request with this patient"

class AlreadyResolved(Conflict):
    code = "ALREADY_RESOLVED"
    message = "Session request has already been resolved"

class SessionExpired(Expired):
    code = "SESSION_EXPIRED"
    message = "Session request has expired"

class InvalidOrExpired(InvalidCredential):
    code = "CAPABILITY_INVALID_OR_EXPIRED"
    message = "QR expired or invalid"

class PushDeliveryError(Upstream):
    code = "PUSH_FAILED"
    message = "Push delivery failed"

class NoRecipients(BadRequest):
    code = "NO_RECIPIENTS"
    message = "None of the requested recipients could be found"

class GrantCheckTimeout(Unavailable):
    code = "GRANT_CHECK_TIMEOUT"
    message = "Access could not be verified in time; try again"

class LedgerWriteTimeout(Unavailable):
    code = "LEDGER_WRITE_TIMEOUT"
    message = "Notification could not be recorded in time; try again"
