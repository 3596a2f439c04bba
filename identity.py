import logging
from typing import Optional, Protocol

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import SessionExpiredError, UnauthorizedError
from schemas import TokenPair

logger = logging.getLogger(__name__)

ACCESS_SALT = "envelopes-access-token"
REFRESH_SALT = "envelopes-refresh-token"


class IdentityProvider(Protocol):
    """Resolves the acting user for one unit of work."""

    def current_user_id(self) -> int: ...

    def refresh(self) -> bool:
        """Try to renew expired credentials; ``True`` when a retry makes sense."""
        ...


class StaticIdentity:
    """Identity fixed at construction (scheduler jobs, tests, trusted callers)."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id

    def current_user_id(self) -> int:
        return self.user_id

    def refresh(self) -> bool:
        return False


def _serializer(salt: str) -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt=salt)


def issue_tokens(user_id: int) -> TokenPair:
    return TokenPair(
        access_token=_serializer(ACCESS_SALT).dumps({"u": user_id}),
        refresh_token=_serializer(REFRESH_SALT).dumps({"u": user_id}),
    )


def _load_user_id(token: str, salt: str, max_age: int) -> int:
    try:
        data = _serializer(salt).loads(token, max_age=max_age)
    except SignatureExpired as exc:
        raise SessionExpiredError("Session expired", cause=exc) from exc
    except BadSignature as exc:
        raise UnauthorizedError("Invalid credentials", cause=exc) from exc
    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise UnauthorizedError("Invalid credentials")
    return user_id


def refresh_access_token(
    refresh_token: str, *, max_age: Optional[int] = None
) -> TokenPair:
    settings = get_settings()
    ttl = settings.refresh_token_ttl_secs if max_age is None else max_age
    user_id = _load_user_id(refresh_token, REFRESH_SALT, ttl)
    return TokenPair(
        access_token=_serializer(ACCESS_SALT).dumps({"u": user_id}),
        refresh_token=refresh_token,
    )


class TokenIdentity:
    """Identity carried by a signed access token, renewable with a refresh token."""

    def __init__(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        *,
        access_max_age: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.access_max_age = (
            settings.access_token_ttl_secs if access_max_age is None else access_max_age
        )
        self._refreshed = False

    def current_user_id(self) -> int:
        return _load_user_id(self.access_token, ACCESS_SALT, self.access_max_age)

    def refresh(self) -> bool:
        if not self.refresh_token or self._refreshed:
            return False
        try:
            pair = refresh_access_token(self.refresh_token)
        except UnauthorizedError:
            logger.info("identity_refresh: refresh token rejected")
            return False
        self.access_token = pair.access_token
        # A freshly minted token is verified against the regular lifetime.
        self.access_max_age = get_settings().access_token_ttl_secs
        self._refreshed = True
        logger.info("identity_refresh: access token renewed")
        return True
