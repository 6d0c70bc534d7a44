"""Refresh-token store and token-pair issuance.

Refresh tokens are opaque random strings stored in `refresh_tokens`.
Each one can be used once: `rotate()` revokes the presented token and
issues a new pair in the same transaction. A revoked token is never
reactivated; `sweep_expired()` deletes rows that are expired or revoked.
"""

import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.jwt import AccessClaims, create_access_token, parse_duration, verify_access_token
from app.config import settings
from app.middleware.exceptions import AuthenticationError
from app.models.refresh_token import RefreshToken
from app.models.user import User
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

# 64 random bytes, hex encoded (512 bits of entropy)
REFRESH_TOKEN_BYTES = 64


class RefreshTokenFailure(str, enum.Enum):
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    USER_INACTIVE = "user_inactive"


class RefreshTokenError(AuthenticationError):
    """A refresh token was rejected; `reason` says why."""

    _messages = {
        RefreshTokenFailure.NOT_FOUND: "Invalid refresh token",
        RefreshTokenFailure.REVOKED: "Refresh token has been revoked",
        RefreshTokenFailure.EXPIRED: "Refresh token has expired",
        RefreshTokenFailure.USER_INACTIVE: "User not found or inactive",
    }

    def __init__(self, failure: RefreshTokenFailure):
        self.failure = failure
        super().__init__(
            message=self._messages[failure],
            error_code=f"REFRESH_TOKEN_{failure.name}",
            reason=failure.value,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenService:
    """Issues, verifies, rotates and revokes tokens."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    # ── Access tokens ───────────────────────────────────────

    @staticmethod
    def issue_access_token(user: User) -> str:
        return create_access_token(user_id=user.id, email=user.email, role=user.role)

    @staticmethod
    def verify_access_token(token: str) -> AccessClaims:
        return verify_access_token(token)

    # ── Refresh tokens ──────────────────────────────────────

    @staticmethod
    def _new_refresh_row(user_id: str) -> RefreshToken:
        return RefreshToken(
            token=secrets.token_hex(REFRESH_TOKEN_BYTES),
            user_id=user_id,
            expires_at=utcnow() + parse_duration(settings.jwt_refresh_expires_in),
            is_revoked=False,
        )

    async def issue_refresh_token(self, user_id: str) -> str:
        async with self._sessions.begin() as db:
            row = self._new_refresh_row(user_id)
            db.add(row)
        return row.token

    async def issue_token_pair(self, user: User) -> TokenPair:
        """Used by login, first-admin init and refresh."""
        refresh_token = await self.issue_refresh_token(user.id)
        return TokenPair(
            access_token=self.issue_access_token(user),
            refresh_token=refresh_token,
        )

    async def _check_refresh(self, db: AsyncSession, token: str) -> tuple[RefreshToken, User]:
        row = (
            await db.execute(select(RefreshToken).where(RefreshToken.token == token))
        ).scalar_one_or_none()
        if row is None:
            raise RefreshTokenError(RefreshTokenFailure.NOT_FOUND)
        if row.is_revoked:
            raise RefreshTokenError(RefreshTokenFailure.REVOKED)
        if row.expires_at < utcnow():
            raise RefreshTokenError(RefreshTokenFailure.EXPIRED)

        user = await db.get(User, row.user_id)
        if user is None or not user.is_active:
            raise RefreshTokenError(RefreshTokenFailure.USER_INACTIVE)
        return row, user

    async def verify_refresh_token(self, token: str) -> User:
        """Return the owning user or raise RefreshTokenError."""
        async with self._sessions() as db:
            _, user = await self._check_refresh(db, token)
            return user

    async def rotate(self, token: str) -> tuple[User, TokenPair]:
        """Exchange a refresh token for a new pair, revoking the old one.

        The revoke is a conditional update on `is_revoked = false`; when two
        requests race on the same token only one sees a row count of 1, the
        other fails as revoked and nothing is issued for it.
        """
        async with self._sessions.begin() as db:
            try:
                row, user = await self._check_refresh(db, token)
            except RefreshTokenError as exc:
                logger.info("Refresh rejected: %s", exc.failure.value)
                raise

            result = await db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == row.id, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.info("Refresh rejected: token rotated concurrently")
                raise RefreshTokenError(RefreshTokenFailure.REVOKED)

            new_row = self._new_refresh_row(user.id)
            db.add(new_row)

        pair = TokenPair(
            access_token=self.issue_access_token(user),
            refresh_token=new_row.token,
        )
        return user, pair

    async def revoke(self, token: str) -> None:
        """Mark one refresh token revoked. Unknown tokens are ignored."""
        async with self._sessions.begin() as db:
            await db.execute(
                update(RefreshToken)
                .where(RefreshToken.token == token)
                .values(is_revoked=True)
                .execution_options(synchronize_session=False)
            )

    async def revoke_all(self, user_id: str) -> int:
        async with self._sessions.begin() as db:
            result = await db.execute(
                update(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete expired or revoked rows; return how many were removed."""
        cutoff = now or utcnow()
        async with self._sessions.begin() as db:
            result = await db.execute(
                delete(RefreshToken)
                .where(or_(RefreshToken.expires_at < cutoff, RefreshToken.is_revoked.is_(True)))
                .execution_options(synchronize_session=False)
            )
        return result.rowcount
