"""Retry and credential-refresh handling around ledger store calls.

This is the only module that looks at raw store exceptions. ``classify_error``
maps them onto the ``errors`` taxonomy; ``ResilienceWrapper`` then decides
whether a failure is surfaced, retried once after a credential refresh, or
retried with exponential backoff.
"""

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy import exc as sa_exc
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import get_settings
from errors import (
    AlreadyExistsError,
    InternalError,
    LedgerError,
    ServiceUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from identity import IdentityProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
CHECK_VIOLATION = "23514"
NOT_NULL_VIOLATION = "23502"


def _sqlstate(error: sa_exc.DBAPIError) -> Optional[str]:
    orig = error.orig
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def _classify_integrity(error: sa_exc.IntegrityError) -> LedgerError:
    code = _sqlstate(error)
    text = str(error.orig).lower()
    if code == UNIQUE_VIOLATION or "unique" in text or "duplicate" in text:
        return AlreadyExistsError("Resource already exists", cause=error.orig)
    if code == FOREIGN_KEY_VIOLATION or "foreign key" in text:
        return ValidationError("Invalid reference", cause=error.orig)
    if code == CHECK_VIOLATION or "check constraint" in text:
        return ValidationError("Check constraint violation", cause=error.orig)
    if code == NOT_NULL_VIOLATION or "not null" in text:
        return ValidationError("Missing required value", cause=error.orig)
    return ValidationError("Integrity constraint violated", cause=error.orig)


def classify_error(error: BaseException) -> Optional[LedgerError]:
    """Map a raised exception onto the ledger taxonomy.

    Taxonomy errors are returned unchanged. ``None`` means the exception did
    not come from the store and must propagate untouched.
    """
    if isinstance(error, LedgerError):
        return error
    if isinstance(error, sa_exc.IntegrityError):
        return _classify_integrity(error)
    if isinstance(
        error,
        (
            sa_exc.OperationalError,
            sa_exc.InterfaceError,
            sa_exc.DisconnectionError,
            sa_exc.TimeoutError,
        ),
    ):
        return ServiceUnavailableError("Ledger store unavailable", cause=error)
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return ServiceUnavailableError("Ledger store connection lost", cause=error)
    if isinstance(error, sa_exc.SQLAlchemyError):
        return InternalError("Unexpected ledger store failure", cause=error)
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ServiceUnavailableError("Ledger store unreachable", cause=error)
    return None


class ResilienceWrapper:
    def __init__(
        self,
        identity: Optional[IdentityProvider] = None,
        on_failure: Optional[Callable[[], None]] = None,
        *,
        attempts: Optional[int] = None,
        wait_min: Optional[float] = None,
        wait_max: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.identity = identity
        self.on_failure = on_failure
        self.attempts = settings.retry_attempts if attempts is None else attempts
        self.wait_min = settings.retry_wait_min_secs if wait_min is None else wait_min
        self.wait_max = settings.retry_wait_max_secs if wait_max is None else wait_max

    def _run(self, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except Exception as exc:
            if self.on_failure is not None:
                self.on_failure()
            error = classify_error(exc)
            if error is None or error is exc:
                raise
            raise error from exc

    def _refresh(self) -> bool:
        if self.identity is None:
            return False
        return self.identity.refresh()

    def _attempt(self, operation: Callable[[], T], retry_transient: bool) -> T:
        try:
            return self._run(operation)
        except UnauthorizedError as exc:
            if not self._refresh():
                raise
            logger.info("resilience_retry: kind=%s after refresh", exc.kind.value)
            return self._run(operation)
        except ServiceUnavailableError as exc:
            if not retry_transient:
                raise
            self._refresh()
            logger.info("resilience_retry: kind=%s once", exc.kind.value)
            return self._run(operation)

    def call(self, operation: Callable[[], T]) -> T:
        """Run ``operation``; retry once after a credential refresh when the
        failure is an expired identity or a transient store error."""
        return self._attempt(operation, retry_transient=True)

    def _log_attempt(self, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            "resilience_backoff: attempt=%s error=%s", state.attempt_number, error
        )

    def call_with_retry(self, operation: Callable[[], T]) -> T:
        """Retry transient failures with backoff, at most ``attempts`` runs in
        total. An expired identity still gets its single refresh."""
        retryer = Retrying(
            stop=stop_after_attempt(max(1, self.attempts)),
            wait=wait_exponential(
                multiplier=self.wait_min, min=self.wait_min, max=self.wait_max
            ),
            retry=retry_if_exception_type(ServiceUnavailableError),
            before_sleep=self._log_attempt,
            reraise=True,
        )
        return retryer(self._attempt, operation, False)
