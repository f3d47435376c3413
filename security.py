from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext

from config import get_settings


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # malformed stored hash
        return False


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="access-token")


def generate_access_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def validate_access_token(
    token: str, max_age_hours: Optional[int] = None
) -> Optional[int]:
    settings = get_settings()
    max_age = max_age_hours or settings.token_max_age_hours
    try:
        data = _serializer().loads(token, max_age=max_age * 3600)
    except (SignatureExpired, BadSignature):
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        return None
    return user_id
