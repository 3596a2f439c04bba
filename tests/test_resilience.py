import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from errors import (
    AlreadyExistsError,
    NotFoundError,
    ServiceUnavailableError,
    SessionExpiredError,
    ValidationError,
)
from resilience import ResilienceWrapper, classify_error


class RefreshingIdentity:
    def __init__(self, allowed: bool = True) -> None:
        self.allowed = allowed
        self.refreshes = 0

    def current_user_id(self) -> int:
        return 1

    def refresh(self) -> bool:
        self.refreshes += 1
        return self.allowed


def _flaky(failures: int, error: Exception):
    calls = {"n": 0}

    def operation() -> str:
        calls["n"] += 1
        if calls["n"] <= failures:
            raise error
        return "ok"

    return operation, calls


def _wrapper(identity=None, on_failure=None, attempts: int = 3) -> ResilienceWrapper:
    return ResilienceWrapper(
        identity, on_failure, attempts=attempts, wait_min=0, wait_max=0
    )


def test_classify_store_errors() -> None:
    unique = IntegrityError(
        "INSERT", {}, Exception("UNIQUE constraint failed: payees.name")
    )
    foreign = IntegrityError(
        "INSERT", {}, Exception("FOREIGN KEY constraint failed")
    )
    locked = OperationalError("SELECT 1", {}, Exception("database is locked"))

    assert isinstance(classify_error(unique), AlreadyExistsError)
    assert isinstance(classify_error(foreign), ValidationError)
    assert isinstance(classify_error(locked), ServiceUnavailableError)
    assert classify_error(ValueError("boom")) is None

    original = NotFoundError("Payee not found")
    assert classify_error(original) is original


def test_store_errors_surface_as_ledger_errors() -> None:
    rollbacks = []
    wrapper = _wrapper(on_failure=lambda: rollbacks.append(1))
    operation, _calls = _flaky(
        1, IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
    )

    with pytest.raises(AlreadyExistsError) as excinfo:
        wrapper.call(operation)

    assert excinfo.value.payload()["code"] == "ALREADY_EXISTS"
    assert "cause" in excinfo.value.payload()
    assert rollbacks == [1]


def test_structural_errors_are_not_retried() -> None:
    identity = RefreshingIdentity()
    wrapper = _wrapper(identity)
    operation, calls = _flaky(5, ValidationError("bad input"))

    with pytest.raises(ValidationError):
        wrapper.call_with_retry(operation)

    assert calls["n"] == 1
    assert identity.refreshes == 0


def test_expired_session_is_refreshed_and_retried_once() -> None:
    identity = RefreshingIdentity()
    wrapper = _wrapper(identity)
    operation, calls = _flaky(1, SessionExpiredError("Session expired"))

    assert wrapper.call(operation) == "ok"
    assert calls["n"] == 2
    assert identity.refreshes == 1


def test_failed_refresh_surfaces_the_original_error() -> None:
    identity = RefreshingIdentity(allowed=False)
    wrapper = _wrapper(identity)
    operation, calls = _flaky(1, SessionExpiredError("Session expired"))

    with pytest.raises(SessionExpiredError):
        wrapper.call(operation)
    assert calls["n"] == 1


def test_write_path_retries_transient_failure_once() -> None:
    wrapper = _wrapper()
    locked = OperationalError("UPDATE", {}, Exception("database is locked"))
    operation, calls = _flaky(1, locked)

    assert wrapper.call(operation) == "ok"
    assert calls["n"] == 2

    operation, calls = _flaky(2, locked)
    with pytest.raises(ServiceUnavailableError):
        wrapper.call(operation)
    assert calls["n"] == 2


def test_read_path_backs_off_until_store_recovers() -> None:
    wrapper = _wrapper(attempts=3)
    locked = OperationalError("SELECT 1", {}, Exception("database is locked"))
    operation, calls = _flaky(2, locked)

    assert wrapper.call_with_retry(operation) == "ok"
    assert calls["n"] == 3

    operation, calls = _flaky(10, locked)
    with pytest.raises(ServiceUnavailableError):
        wrapper.call_with_retry(operation)
    assert calls["n"] == 3


def test_read_path_expired_session_refreshes_without_extra_backoff() -> None:
    identity = RefreshingIdentity()
    wrapper = _wrapper(identity, attempts=1)
    operation, calls = _flaky(1, SessionExpiredError("Session expired"))

    assert wrapper.call_with_retry(operation) == "ok"
    assert calls["n"] == 2
    assert identity.refreshes == 1
