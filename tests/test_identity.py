import pytest

from errors import SessionExpiredError, UnauthorizedError
from identity import TokenIdentity, issue_tokens, refresh_access_token
from resilience import ResilienceWrapper


def test_issued_access_token_resolves_user() -> None:
    pair = issue_tokens(42)

    assert TokenIdentity(pair.access_token).current_user_id() == 42


def test_expired_access_token_raises_session_expired() -> None:
    pair = issue_tokens(42)
    identity = TokenIdentity(pair.access_token, access_max_age=-1)

    with pytest.raises(SessionExpiredError) as excinfo:
        identity.current_user_id()
    assert excinfo.value.payload()["code"] == "SESSION_EXPIRED"


def test_tampered_token_is_unauthorized() -> None:
    pair = issue_tokens(42)
    identity = TokenIdentity(pair.access_token[:-2] + "xx")

    with pytest.raises(UnauthorizedError) as excinfo:
        identity.current_user_id()
    assert not isinstance(excinfo.value, SessionExpiredError)


def test_access_token_cannot_be_used_as_refresh_token() -> None:
    pair = issue_tokens(42)

    with pytest.raises(UnauthorizedError):
        refresh_access_token(pair.access_token)
    assert refresh_access_token(pair.refresh_token).refresh_token == pair.refresh_token


def test_expired_identity_is_renewed_once_through_resilience() -> None:
    pair = issue_tokens(7)
    identity = TokenIdentity(
        pair.access_token, pair.refresh_token, access_max_age=-1
    )
    wrapper = ResilienceWrapper(identity, attempts=1, wait_min=0, wait_max=0)

    assert wrapper.call(identity.current_user_id) == 7
    assert identity.refresh() is False


def test_identity_without_refresh_token_stays_expired() -> None:
    pair = issue_tokens(7)
    identity = TokenIdentity(pair.access_token, access_max_age=-1)
    wrapper = ResilienceWrapper(identity, attempts=1, wait_min=0, wait_max=0)

    with pytest.raises(SessionExpiredError):
        wrapper.call(identity.current_user_id)
