"""Password hashing and JWT issuing."""

from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from codepods.config import jwt_expire_days, jwt_secret

JWT_ALGORITHM = "HS256"


class AuthError(Exception):
    """Raised when a token cannot be verified."""


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Not a bcrypt hash
        return False


def create_token(user: dict) -> str:
    """Issue a signed token for a user row."""
    payload = {
        "id": user["id"],
        "email": user.get("email"),
        "github_id": user.get("github_id"),
        "exp": datetime.now(timezone.utc) + timedelta(days=jwt_expire_days()),
    }
    return jwt.encode(payload, jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Verify a token and return its payload.

    Raises:
        AuthError: If the signature is invalid, the token expired, or the
            payload has no user id.
    """
    try:
        payload = jwt.decode(token, jwt_secret(), algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise AuthError(str(e)) from e

    if not payload.get("id"):
        raise AuthError("Token payload has no user id")
    return payload
