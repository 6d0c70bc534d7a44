"""Auth routes: first-admin init, login, token refresh, logout, users.

Route overview:
  POST /init         - create the first admin (refused once any user exists)
  POST /login        - email + password login → access + refresh token pair
  POST /refresh      - exchange a refresh token for a new pair (single use)
  POST /logout       - revoke one refresh token
  POST /logout-all   - revoke every refresh token of the current user
  GET  /check-admin  - has the first admin been created?
  GET  /profile      - current user + effective permissions
  POST /register     - admin creates another user
"""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.deps import (
    get_authorizer,
    get_current_user,
    get_role_hierarchy,
    get_token_service,
    require_role_or_higher,
)
from app.auth.password import hash_password, verify_password
from app.auth.permissions import ROLE_DEFAULTS, Authorizer
from app.auth.roles import RoleHierarchy
from app.auth.tokens import TokenPair, TokenService
from app.database import get_sessionmaker
from app.middleware.exceptions import (
    AuthenticationError,
    BusinessLogicError,
    ConflictError,
    InvalidRequestError,
    PermissionDeniedError,
)
from app.models.role import Role
from app.models.user import User
from app.schemas.auth import (
    AdminExistsOut,
    InitAdminRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserOut,
)
from app.schemas.common import ApiResponse, ok

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Helpers ──────────────────────────────────────────────────

def _build_user_out(user: User, permissions: set[str]) -> UserOut:
    out = UserOut.model_validate(user)
    out.permissions = sorted(permissions)
    return out


async def _build_token_response(
    user: User,
    pair: TokenPair,
    authorizer: Authorizer,
) -> TokenResponse:
    permissions = await authorizer.resolve_user_permissions(user.id)
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        user=_build_user_out(user, permissions),
    )


async def _user_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(User.id)))).scalar_one()


# ── POST /init ──────────────────────────────────────────────

@router.post(
    "/init",
    response_model=ApiResponse[TokenResponse],
    status_code=status.HTTP_201_CREATED,
)
async def init_admin(
    body: InitAdminRequest,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    hierarchy: RoleHierarchy = Depends(get_role_hierarchy),
    tokens: TokenService = Depends(get_token_service),
    authorizer: Authorizer = Depends(get_authorizer),
):
    """Seed the default roles and create the first administrator."""
    async with sessions() as db:
        if await _user_count(db) > 0:
            raise BusinessLogicError(
                "An administrator already exists", error_code="ALREADY_INITIALIZED"
            )

    await hierarchy.initialize_default_roles()

    async with sessions.begin() as db:
        admin_role_id = (
            await db.execute(select(Role.id).where(Role.name == "admin"))
        ).scalar_one()
        user = User(
            email=body.email,
            hashed_password=hash_password(body.password),
            full_name=body.full_name,
            role="admin",
            role_id=admin_role_id,
            is_active=True,
        )
        db.add(user)

    logger.info("First administrator %s created", user.email)
    pair = await tokens.issue_token_pair(user)
    return ok(
        await _build_token_response(user, pair, authorizer),
        message="Administrator created",
    )


# ── POST /login ──────────────────────────────────────────────

@router.post("/login", response_model=ApiResponse[TokenResponse])
async def login(
    body: LoginRequest,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    tokens: TokenService = Depends(get_token_service),
    authorizer: Authorizer = Depends(get_authorizer),
):
    """Email + password login."""
    async with sessions() as db:
        user = (
            await db.execute(select(User).where(User.email == body.email))
        ).scalar_one_or_none()

    if not user or not verify_password(body.password, user.hashed_password):
        raise AuthenticationError("Invalid credentials", error_code="INVALID_CREDENTIALS")
    if not user.is_active:
        raise PermissionDeniedError("Account deactivated", error_code="ACCOUNT_DISABLED")

    pair = await tokens.issue_token_pair(user)
    return ok(await _build_token_response(user, pair, authorizer))


# ── POST /refresh ────────────────────────────────────────────

@router.post("/refresh", response_model=ApiResponse[TokenResponse])
async def refresh(
    body: RefreshRequest,
    tokens: TokenService = Depends(get_token_service),
    authorizer: Authorizer = Depends(get_authorizer),
):
    """Exchange a refresh token for a new pair. The presented token is revoked."""
    user, pair = await tokens.rotate(body.refresh_token)
    return ok(await _build_token_response(user, pair, authorizer))


# ── POST /logout, /logout-all ───────────────────────────────

@router.post("/logout", response_model=ApiResponse[None])
async def logout(
    body: LogoutRequest,
    tokens: TokenService = Depends(get_token_service),
):
    await tokens.revoke(body.refresh_token)
    return ok(message="Logged out")


@router.post("/logout-all", response_model=ApiResponse[None])
async def logout_all(
    user: User = Depends(get_current_user),
    tokens: TokenService = Depends(get_token_service),
):
    """Revoke every refresh token of the current user (all devices)."""
    revoked = await tokens.revoke_all(user.id)
    return ok(message=f"{revoked} session(s) revoked")


# ── GET /check-admin ────────────────────────────────────────

@router.get("/check-admin", response_model=ApiResponse[AdminExistsOut])
async def check_admin(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
):
    async with sessions() as db:
        exists = await _user_count(db) > 0
    return ok(AdminExistsOut(admin_exists=exists))


# ── GET /profile ────────────────────────────────────────────

@router.get("/profile", response_model=ApiResponse[UserOut])
async def profile(
    user: User = Depends(get_current_user),
    authorizer: Authorizer = Depends(get_authorizer),
):
    """Return the current user's profile and effective permissions."""
    permissions = await authorizer.resolve_user_permissions(user.id)
    return ok(_build_user_out(user, permissions))


# ── POST /register (admin creates a user) ───────────────────

@router.post(
    "/register",
    response_model=ApiResponse[UserOut],
    status_code=status.HTTP_201_CREATED,
)
async def register(
    body: RegisterRequest,
    admin: User = Depends(require_role_or_higher("admin")),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    authorizer: Authorizer = Depends(get_authorizer),
):
    """Create a user. `role` names a role; the user is linked to it when it exists."""
    async with sessions.begin() as db:
        existing = await db.execute(select(User.id).where(User.email == body.email))
        if existing.scalar_one_or_none():
            raise ConflictError("Email already registered")

        role_id = (
            await db.execute(select(Role.id).where(Role.name == body.role))
        ).scalar_one_or_none()
        if role_id is None and body.role not in ROLE_DEFAULTS:
            raise InvalidRequestError(f"Unknown role: {body.role}", error_code="INVALID_ROLE")

        user = User(
            email=body.email,
            hashed_password=hash_password(body.password),
            full_name=body.full_name,
            role=body.role,
            role_id=role_id,
            is_active=True,
        )
        db.add(user)

    logger.info("User %s (%s) created by %s", user.email, user.role, admin.id)
    permissions = await authorizer.resolve_user_permissions(user.id)
    return ok(_build_user_out(user, permissions), message="User created")
