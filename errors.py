"""Error taxonomy shared by every ledger component.

Each error carries a machine-readable ``kind`` and renders to the payload
``{"code": ..., "message": ..., "cause": ...}`` returned by the HTTP layer.
Raw store exceptions are never raised past ``resilience.classify_error``;
everything above it sees only these classes.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    validation_error = "VALIDATION_ERROR"
    invalid_transaction_type = "INVALID_TRANSACTION_TYPE"
    invalid_envelope_transfer = "INVALID_ENVELOPE_TRANSFER"
    not_found = "NOT_FOUND"
    conflict = "CONFLICT"
    already_exists = "ALREADY_EXISTS"
    unauthorized = "UNAUTHORIZED"
    session_expired = "SESSION_EXPIRED"
    service_unavailable = "SERVICE_UNAVAILABLE"
    internal_error = "INTERNAL_ERROR"


class LedgerError(Exception):
    kind: ErrorKind = ErrorKind.internal_error
    status_code: int = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def payload(self) -> dict[str, object]:
        data: dict[str, object] = {"code": self.kind.value, "message": self.message}
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data


class ValidationError(LedgerError):
    kind = ErrorKind.validation_error
    status_code = 400


class InvalidTransactionType(ValidationError):
    kind = ErrorKind.invalid_transaction_type


class InvalidEnvelopeTransfer(ValidationError):
    kind = ErrorKind.invalid_envelope_transfer


class NotFoundError(LedgerError):
    kind = ErrorKind.not_found
    status_code = 404


class ConflictError(LedgerError):
    kind = ErrorKind.conflict
    status_code = 409


class AlreadyExistsError(ConflictError):
    kind = ErrorKind.already_exists


class UnauthorizedError(LedgerError):
    kind = ErrorKind.unauthorized
    status_code = 401


class SessionExpiredError(UnauthorizedError):
    kind = ErrorKind.session_expired


class ServiceUnavailableError(LedgerError):
    kind = ErrorKind.service_unavailable
    status_code = 503


class InternalError(LedgerError):
    kind = ErrorKind.internal_error
    status_code = 500


# Never retried: the input or the addressed record is the problem.
STRUCTURAL_ERRORS = (ValidationError, NotFoundError, ConflictError, InternalError)

# Retried once after a credential refresh.
REFRESHABLE_ERRORS = (UnauthorizedError, ServiceUnavailableError)
