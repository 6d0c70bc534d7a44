"""FastAPI dependencies for authentication and authorization.

Dependencies:
  get_current_user              → verify the bearer token, load the active User
  require_permission(...)       → user must hold ALL listed permissions
  require_any_permission(...)   → user must hold at least one of them
  require_role_or_higher(name)  → linked role level ≥ the named role's level

Service providers (get_role_hierarchy, get_authorizer, get_token_service,
get_ledger) build components around the session factory from
get_sessionmaker, so tests can swap the database in one place.
"""

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.jwt import verify_access_token
from app.auth.permissions import Authorizer
from app.auth.roles import RoleHierarchy
from app.auth.tokens import TokenService
from app.database import get_sessionmaker
from app.middleware.exceptions import AuthenticationError, PermissionDeniedError
from app.models.user import User
from app.services.ledger import LedgerService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


# ── Service providers ───────────────────────────────────────

def get_role_hierarchy(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> RoleHierarchy:
    return RoleHierarchy(sessions)


def get_authorizer(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    hierarchy: RoleHierarchy = Depends(get_role_hierarchy),
) -> Authorizer:
    return Authorizer(sessions, hierarchy)


def get_token_service(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> TokenService:
    return TokenService(sessions)


def get_ledger(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> LedgerService:
    return LedgerService(sessions)


# ── Core user dependency ────────────────────────────────────

async def get_current_user(
    token: str | None = Depends(oauth2_scheme),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> User:
    """Verify the access token and return the active user it names."""
    if not token:
        raise AuthenticationError("Authentication required", error_code="AUTH_REQUIRED")

    claims = verify_access_token(token)

    async with sessions() as db:
        user = await db.get(User, claims.user_id)
    if not user or not user.is_active:
        raise AuthenticationError("User not found or inactive", reason="user_inactive")
    return user


# ── Permission-based access control ─────────────────────────

def require_permission(*perms: str):
    """Dependency factory: restrict to users who hold ALL listed permissions.

    Permissions are resolved from the database on every call, so role
    edits take effect without waiting for the access token to expire.

    Usage:
        @router.post("/")
        async def create_product(user: User = Depends(require_permission("products:create"))):
            ...
    """
    async def _check(
        user: User = Depends(get_current_user),
        authorizer: Authorizer = Depends(get_authorizer),
    ) -> User:
        granted = await authorizer.resolve_user_permissions(user.id)
        missing = [p for p in perms if p not in granted]
        if missing:
            raise PermissionDeniedError(f"Missing permissions: {', '.join(missing)}")
        return user

    return _check


def require_any_permission(*perms: str):
    """Dependency factory: restrict to users who hold at least one permission."""
    async def _check(
        user: User = Depends(get_current_user),
        authorizer: Authorizer = Depends(get_authorizer),
    ) -> User:
        if not await authorizer.has_any(user.id, perms):
            raise PermissionDeniedError(f"Requires one of: {', '.join(perms)}")
        return user

    return _check


# ── Role-based access control ───────────────────────────────

def require_role_or_higher(role_name: str):
    """Dependency factory: restrict by linked role level.

    Users that only have a legacy role name are refused.
    """
    async def _check(
        user: User = Depends(get_current_user),
        authorizer: Authorizer = Depends(get_authorizer),
    ) -> User:
        if not await authorizer.has_role_or_higher(user.id, role_name):
            raise PermissionDeniedError(f"Requires role: {role_name} or higher")
        return user

    return _check
