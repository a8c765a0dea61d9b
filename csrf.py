import time

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="mess-ledger-csrf")


def generate_csrf_token(scope: str = "ledger") -> str:
    return _serializer().dumps({"s": scope, "ts": int(time.time())})


def validate_csrf_token(token: str, scope: str = "ledger", max_age_hours: int = 2) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("s") == scope
