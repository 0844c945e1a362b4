# agrimarket/auth_utils.py
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

import jwt

from agrimarket.config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES
from agrimarket.errors import AuthRequired


def hash_password(password: str, salt: str = None) -> str:
    """Хэширует пароль с солью (SHA-256), формат ``salt$digest``."""
    salt = salt or secrets.token_hex(8)
    digest = hashlib.sha256(f"{salt}{password}".encode()).hexdigest()
    return f"{salt}${digest}"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    salt, _, _ = hashed_password.partition("$")
    return hmac.compare_digest(hash_password(plain_password, salt), hashed_password)


def create_access_token(data: dict, expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES):
    """Создает JWT токен с указанным временем истечения."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthRequired("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthRequired("Invalid token")
    if payload.get("id") is None:
        raise AuthRequired("Invalid token")
    return payload
