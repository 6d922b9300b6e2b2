from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings
from errors import Unauthenticated


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str = "user"


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def issue_token(user_id: str, role: str = "user") -> str:
    """Sign a bearer token for ``user_id``. Used by tests and local tooling."""
    return _serializer().dumps({"u": user_id, "r": role})


def principal_from_token(token: str, max_age_secs: Optional[int] = None) -> Principal:
    settings = get_settings()
    max_age = max_age_secs if max_age_secs is not None else settings.token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadSignature as exc:  # SignatureExpired included
        raise Unauthenticated() from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not user_id:
        raise Unauthenticated()
    return Principal(user_id=str(user_id), role=str(data.get("r") or "user"))


def principal_from_header(authorization: Optional[str]) -> Principal:
    if not authorization:
        raise Unauthenticated()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated()
    return principal_from_token(token.strip())
