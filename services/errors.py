from __future__ import annotations


class ExamPortalError(Exception):
    """
    Base error carrying an HTTP status class and a short client-facing message.

    Handlers turn these into `{"ok": False, "error": code, "message": message}`.
    """

    status = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidPayload(ExamPortalError):
    status = 400
    code = "invalid_payload"
    default_message = "Invalid request payload"


class NotFound(ExamPortalError):
    status = 404
    code = "not_found"
    default_message = "Not found"


class AlreadySubmitted(ExamPortalError):
    status = 409
    code = "already_submitted"
    default_message = "Exam already submitted"


class StorageWriteFailed(ExamPortalError):
    code = "storage_write_failed"
    default_message = "Failed to store file"


class StorageReadFailed(ExamPortalError):
    code = "storage_read_failed"
    default_message = "Failed to read file"


class PersistenceFailed(ExamPortalError):
    code = "storage_failure"
    default_message = "Storage failure"
