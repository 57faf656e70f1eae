from typing import Optional

from fastapi import Header
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="owner-token")


def issue_owner_token(owner_id: str) -> str:
    return _serializer().dumps({"o": owner_id})


def resolve_owner_id(token: Optional[str]) -> Optional[str]:
    """Owner id carried by a signed token, or ``None`` when it does not verify."""
    if not token:
        return None
    max_age = get_settings().token_max_age_hours * 3600
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadSignature:
        return None
    if not isinstance(data, dict):
        return None
    owner_id = data.get("o")
    return str(owner_id) if owner_id else None


def current_owner_id(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return resolve_owner_id(token.strip())
