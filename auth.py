import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.auth_secret, salt="user-token")


def issue_token(user_id: int, max_age_hours: Optional[int] = None) -> str:
    hours = max_age_hours or get_settings().token_max_age_hours
    timestamp = int(time.time())
    return _serializer().dumps(
        {"u": user_id, "ts": timestamp, "exp": timestamp + hours * 3600}
    )


def read_token(token: str) -> Optional[int]:
    """User id carried by a valid, unexpired token, else None."""
    try:
        data = _serializer().loads(token)
    except BadSignature:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("u"), int):
        return None
    if int(time.time()) > int(data.get("exp", 0)):
        return None
    return data["u"]
