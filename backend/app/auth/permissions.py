"""Permission catalog and authorization engine.

Permission naming: `<category>:<action>`, e.g. "products:create".

A user's effective permissions come from two places:
  1. their role, identified either by `role_id` (a row in `roles`, whose
     permissions are inherited up the parent chain) or, for older rows
     without one, by the legacy `role` name looked up in ROLE_DEFAULTS;
  2. permissions granted directly to the user (`user_permissions`).

The engine is read-only apart from the explicit grant/revoke helpers.
A denied check returns False; database errors propagate.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Union

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.middleware.exceptions import InvalidRequestError, ResourceNotFoundError
from app.models.role import Permission, Role, UserPermission
from app.models.user import User

if TYPE_CHECKING:
    from app.auth.roles import RoleHierarchy


# ── All known permissions ───────────────────────────────────

PRODUCTS_READ = "products:read"
PRODUCTS_CREATE = "products:create"
PRODUCTS_UPDATE = "products:update"
PRODUCTS_DELETE = "products:delete"
PRODUCTS_RESTOCK = "products:restock"

SALES_READ = "sales:read"
SALES_CREATE = "sales:create"
SALES_DELETE = "sales:delete"

CLIENTS_READ = "clients:read"
CLIENTS_CREATE = "clients:create"
CLIENTS_UPDATE = "clients:update"
CLIENTS_DELETE = "clients:delete"

CREDITS_READ = "credits:read"
CREDITS_PAY = "credits:pay"

EXPENSES_READ = "expenses:read"
EXPENSES_CREATE = "expenses:create"
EXPENSES_DELETE = "expenses:delete"

STATS_READ = "stats:read"

USERS_READ = "users:read"
USERS_CREATE = "users:create"
USERS_UPDATE = "users:update"
USERS_DELETE = "users:delete"
USERS_MANAGE_PERMISSIONS = "users:manage_permissions"

ALL_PERMISSIONS: tuple[str, ...] = (
    PRODUCTS_READ, PRODUCTS_CREATE, PRODUCTS_UPDATE, PRODUCTS_DELETE, PRODUCTS_RESTOCK,
    SALES_READ, SALES_CREATE, SALES_DELETE,
    CLIENTS_READ, CLIENTS_CREATE, CLIENTS_UPDATE, CLIENTS_DELETE,
    CREDITS_READ, CREDITS_PAY,
    EXPENSES_READ, EXPENSES_CREATE, EXPENSES_DELETE,
    STATS_READ,
    USERS_READ, USERS_CREATE, USERS_UPDATE, USERS_DELETE, USERS_MANAGE_PERMISSIONS,
)


# ── Role → default permissions ──────────────────────────────
# Direct sets only; inheritance comes from the parent chain in the
# roles table. Also the fallback for users without a role_id.

ROLE_DEFAULTS: dict[str, frozenset[str]] = {
    "admin": frozenset(ALL_PERMISSIONS),

    "manager": frozenset({
        PRODUCTS_READ, PRODUCTS_CREATE, PRODUCTS_UPDATE, PRODUCTS_RESTOCK,
        SALES_READ, SALES_CREATE,
        CLIENTS_READ, CLIENTS_CREATE, CLIENTS_UPDATE,
        CREDITS_READ, CREDITS_PAY,
        EXPENSES_READ, EXPENSES_CREATE,
        STATS_READ,
    }),

    "cashier": frozenset({
        PRODUCTS_READ,
        SALES_READ, SALES_CREATE,
        CLIENTS_READ, CLIENTS_CREATE,
    }),

    "user": frozenset({
        PRODUCTS_READ,
        SALES_READ,
        CLIENTS_READ,
        STATS_READ,
    }),
}

_PERMISSION_RE = re.compile(r"^[a-z_]+:[a-z_]+$")


def permission_category(name: str) -> str:
    return name.split(":", 1)[0]


def validate_permission_names(names: Iterable[str]) -> list[str]:
    """Return the names de-duplicated in order; reject anything not category:action."""
    seen: list[str] = []
    for name in names:
        if not isinstance(name, str) or not _PERMISSION_RE.match(name):
            raise InvalidRequestError(
                f"Invalid permission name: {name!r} (expected 'category:action')",
                error_code="INVALID_PERMISSION",
            )
        if name not in seen:
            seen.append(name)
    return seen


async def get_or_create_permission(db: AsyncSession, name: str) -> Permission:
    """Load a Permission by name, creating it on first use."""
    permission = (
        await db.execute(select(Permission).where(Permission.name == name))
    ).scalar_one_or_none()
    if permission is None:
        permission = Permission(
            name=name,
            category=permission_category(name),
            description=f"Permission pour {name}",
        )
        db.add(permission)
        await db.flush()
    return permission


# ── Role references ─────────────────────────────────────────

@dataclass(frozen=True)
class ByName:
    """Legacy reference: the role name string stored on the user row."""
    name: str


@dataclass(frozen=True)
class ByForeignKey:
    """Authoritative reference: a row in the roles table."""
    role_id: str


RoleReference = Union[ByName, ByForeignKey]


def role_reference(user: User) -> RoleReference:
    if user.role_id:
        return ByForeignKey(user.role_id)
    return ByName(user.role)


# ── Authorization engine ────────────────────────────────────

class Authorizer:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        hierarchy: RoleHierarchy,
    ):
        self._sessions = sessions
        self._hierarchy = hierarchy

    async def role_permissions(self, db: AsyncSession, ref: RoleReference) -> set[str]:
        """Permissions carried by a role reference, whichever kind it is."""
        if isinstance(ref, ByForeignKey):
            return await self._hierarchy.effective_permissions_in(db, ref.role_id)
        return set(ROLE_DEFAULTS.get(ref.name, frozenset()))

    async def direct_permissions(self, db: AsyncSession, user_id: str) -> set[str]:
        result = await db.execute(
            select(Permission.name)
            .join(UserPermission, UserPermission.permission_id == Permission.id)
            .where(UserPermission.user_id == user_id)
        )
        return set(result.scalars().all())

    async def resolve_in(self, db: AsyncSession, user_id: str) -> set[str]:
        user = await db.get(User, user_id)
        if user is None:
            return set()
        permissions = await self.role_permissions(db, role_reference(user))
        return permissions | await self.direct_permissions(db, user.id)

    async def resolve_user_permissions(self, user_id: str) -> set[str]:
        async with self._sessions() as db:
            return await self.resolve_in(db, user_id)

    async def has_permission(self, user_id: str, permission: str) -> bool:
        return permission in await self.resolve_user_permissions(user_id)

    async def has_all(self, user_id: str, permissions: Iterable[str]) -> bool:
        resolved = await self.resolve_user_permissions(user_id)
        return all(p in resolved for p in permissions)

    async def has_any(self, user_id: str, permissions: Iterable[str]) -> bool:
        resolved = await self.resolve_user_permissions(user_id)
        return any(p in resolved for p in permissions)

    async def has_role_or_higher(self, user_id: str, role_name: str) -> bool:
        """True iff the user's linked role is at least as high as `role_name`.

        Users that only carry a legacy role name never pass.
        """
        async with self._sessions() as db:
            user = await db.get(User, user_id)
            if user is None or not user.role_id:
                return False
            own = await db.get(Role, user.role_id)
            target = (
                await db.execute(select(Role).where(Role.name == role_name))
            ).scalar_one_or_none()
            if own is None or target is None:
                return False
            return own.level >= target.level

    # ── Direct grants ───────────────────────────────────────

    async def grant_permission(
        self, user_id: str, name: str, granted_by: str | None = None
    ) -> None:
        validate_permission_names([name])
        async with self._sessions.begin() as db:
            if await db.get(User, user_id) is None:
                raise ResourceNotFoundError("User", user_id)
            permission = await get_or_create_permission(db, name)
            existing = (
                await db.execute(
                    select(UserPermission).where(
                        UserPermission.user_id == user_id,
                        UserPermission.permission_id == permission.id,
                    )
                )
            ).scalar_one_or_none()
            if existing is None:
                db.add(UserPermission(
                    user_id=user_id,
                    permission_id=permission.id,
                    granted_by=granted_by,
                ))
            else:
                existing.granted_by = granted_by

    async def revoke_permission(self, user_id: str, name: str) -> None:
        async with self._sessions.begin() as db:
            permission_id = (
                await db.execute(select(Permission.id).where(Permission.name == name))
            ).scalar_one_or_none()
            if permission_id is None:
                return
            await db.execute(
                delete(UserPermission).where(
                    UserPermission.user_id == user_id,
                    UserPermission.permission_id == permission_id,
                )
            )
