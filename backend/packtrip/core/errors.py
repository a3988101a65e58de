"""
Domain error taxonomy shared by the booking, payment and webhook layers.

The API layer maps these to HTTP responses in ``packtrip.main``; core code
never raises ``HTTPException`` directly.
"""

from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def as_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class DomainError(Exception):
    """Base class for errors raised by the core services"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    """Bad input shape or semantics; carries field-level messages"""

    status_code = 422

    def __init__(self, errors: List[FieldError], message: str = "Validation failed"):
        super().__init__(message)
        self.errors = list(errors)

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([FieldError(field, message)], message)


class NotFoundError(DomainError):
    status_code = 404


class PermissionDeniedError(DomainError):
    status_code = 403


class ConflictError(DomainError):
    """A concurrent writer won a compare-and-set race"""

    status_code = 409


class GatewayError(DomainError):
    """The payment provider was unreachable or rejected the request"""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


class StorageError(DomainError):
    """Database or transaction failure; the unit of work was rolled back"""

    status_code = 500
