from typing import Any, Optional


class ServiceError(Exception):
    """Base class for errors raised by the service layer."""
    pass


class InvalidInputError(ServiceError):
    """Empty or malformed identifier, status or payload."""
    pass


class DuplicateAttendanceError(ServiceError):
    """A record already exists for this student on this calendar day."""

    def __init__(self, message: str, barcode_id: str, existing_record: Optional[Any] = None, method: Optional[str] = None):
        super().__init__(message)
        self.barcode_id = barcode_id
        self.existing_record = existing_record
        self.method = method


class StoreUnavailableError(ServiceError):
    """The store could not answer a read-only query."""
    pass


class PermissionDeniedError(ServiceError):
    def __init__(self, message: str, permission: Optional[str] = None):
        super().__init__(message)
        self.permission = permission


class RateLimitExceededError(ServiceError):
    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class SuspiciousActivityError(ServiceError):
    def __init__(self, message: str, severity: Optional[str] = None):
        super().__init__(message)
        self.severity = severity


class SequenceExhaustedError(ServiceError):
    """Every sequence number 001..999 is taken for a year/department prefix."""
    pass


class RecordNotFoundError(ServiceError):
    pass
