"""Access-token signing and verification.

Access tokens are stateless: nothing is stored, and they cannot be revoked
before they expire. Refresh tokens live in the database (see tokens.py).

Token claims:
  - sub:    user ID
  - email:  user email
  - role:   legacy role name
  - type:   "access"
  - exp:    expiry timestamp
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from app.config import settings
from app.middleware.exceptions import AuthenticationError

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str) -> timedelta:
    """Parse a "<number><s|m|h|d>" lifetime string, e.g. "15m" or "7d"."""
    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid duration {value!r}: expected <number><s|m|h|d>")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    role: str
    expires_at: datetime


def create_access_token(
    user_id: str,
    email: str,
    role: str,
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or parse_duration(settings.jwt_access_expires_in)
    )
    payload = {
        "sub": user_id,
        "email": email,
        "role": role,
        "type": "access",
        "exp": expire,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_access_token(token: str) -> AccessClaims:
    """Check signature and expiry, returning the claims.

    Raises AuthenticationError with reason "expired" or "malformed". Both
    map to the same 401 response.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm]
        )
    except ExpiredSignatureError:
        raise AuthenticationError(reason="expired")
    except JWTError:
        raise AuthenticationError(reason="malformed")

    user_id = payload.get("sub")
    if not user_id or payload.get("type") != "access":
        raise AuthenticationError(reason="malformed")

    return AccessClaims(
        user_id=user_id,
        email=payload.get("email", ""),
        role=payload.get("role", ""),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )
