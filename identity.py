from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import Unauthorized


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.identity_secret, salt="user-token")


def issue_user_token(user_id: str) -> str:
    """Sign a user id as handed over by the external auth provider."""
    if not user_id:
        raise ValueError("user_id is required")
    return _serializer().dumps({"u": user_id})


def resolve_user_token(token: Optional[str], max_age_hours: Optional[int] = None) -> str:
    if not token:
        raise Unauthorized("Missing user token")
    max_age = max_age_hours or get_settings().token_max_age_hours
    try:
        data = _serializer().loads(token, max_age=max_age * 3600)
    except SignatureExpired as exc:
        raise Unauthorized("User token expired") from exc
    except BadSignature as exc:
        raise Unauthorized("Invalid user token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not user_id:
        raise Unauthorized("Invalid user token")
    return str(user_id)
