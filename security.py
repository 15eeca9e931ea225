"""Password hashing and signed bearer tokens.

Passwords use passlib's pbkdf2_sha256. Tokens are itsdangerous timed
signatures: access tokens carry ``{"uid"}``, password-reset tokens carry
``{"uid", "email"}`` under a different salt so neither can stand in for the
other.
"""
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext

from config import Settings, get_settings
from errors import Unauthorized


pwd_ctx = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

ACCESS_SALT = "access-token"
RESET_SALT = "password-reset"


def hash_password(password: str) -> str:
    if password is None:
        raise ValueError("password cannot be None")
    return pwd_ctx.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    if plain is None or hashed is None:
        return False
    try:
        return pwd_ctx.verify(plain, hashed)
    except ValueError:
        return False


def _serializer(salt: str, settings: Optional[Settings]) -> URLSafeTimedSerializer:
    settings = settings or get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt=salt)


def create_access_token(user_id: int, settings: Optional[Settings] = None) -> str:
    return _serializer(ACCESS_SALT, settings).dumps({"uid": user_id})


def decode_access_token(token: str, settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    try:
        data = _serializer(ACCESS_SALT, settings).loads(
            token, max_age=settings.access_token_days * 86400
        )
    except SignatureExpired as exc:
        raise Unauthorized("Token expired, please log in again") from exc
    except BadSignature as exc:
        raise Unauthorized("Not authorized, token failed") from exc
    user_id = data.get("uid") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise Unauthorized("Not authorized, token failed")
    return user_id


def create_reset_token(user_id: int, email: str, settings: Optional[Settings] = None) -> str:
    return _serializer(RESET_SALT, settings).dumps({"uid": user_id, "email": email})


def decode_reset_token(token: str, settings: Optional[Settings] = None) -> dict:
    settings = settings or get_settings()
    try:
        return _serializer(RESET_SALT, settings).loads(
            token, max_age=settings.reset_token_minutes * 60
        )
    except BadSignature as exc:
        raise Unauthorized("Invalid or expired reset token") from exc
