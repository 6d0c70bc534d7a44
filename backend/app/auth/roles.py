"""Role hierarchy store.

Roles form a tree: each role may name a parent with a strictly higher
level, and inherits every permission attached to its ancestors. Levels
are also the only basis for "who can manage whom": a role manages
another iff its level is strictly greater.

Seeded system roles (descending):
  admin (100) → manager (75) → cashier (50) → user (25)

System roles keep their level and parent; attempts to change either are
refused with PermissionDeniedError.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.permissions import (
    ALL_PERMISSIONS,
    ROLE_DEFAULTS,
    get_or_create_permission,
    validate_permission_names,
)
from app.middleware.exceptions import (
    BusinessLogicError,
    ConflictError,
    InvalidRequestError,
    PermissionDeniedError,
    ResourceNotFoundError,
)
from app.models.role import Permission, Role, RolePermission
from app.models.user import User

logger = logging.getLogger(__name__)

# Upper bound on parent hops when walking the ancestor chain.
MAX_ROLE_DEPTH = 32


@dataclass(frozen=True)
class DefaultRole:
    name: str
    display_name: str
    description: str
    level: int
    parent: str | None
    permissions: frozenset[str] = field(default_factory=frozenset)


# Parents before children.
DEFAULT_ROLES: tuple[DefaultRole, ...] = (
    DefaultRole(
        name="admin",
        display_name="Administrateur",
        description="Accès complet au système",
        level=100,
        parent=None,
        permissions=frozenset(ALL_PERMISSIONS),
    ),
    DefaultRole(
        name="manager",
        display_name="Gestionnaire",
        description="Gestion des produits, ventes, clients et dépenses",
        level=75,
        parent="admin",
        permissions=ROLE_DEFAULTS["manager"],
    ),
    DefaultRole(
        name="cashier",
        display_name="Caissier",
        description="Enregistrement des ventes et gestion des clients",
        level=50,
        parent="manager",
        permissions=ROLE_DEFAULTS["cashier"],
    ),
    DefaultRole(
        name="user",
        display_name="Utilisateur",
        description="Consultation des produits, ventes et statistiques",
        level=25,
        parent="cashier",
        permissions=ROLE_DEFAULTS["user"],
    ),
)


class RoleHierarchy:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    # ── Seeding ─────────────────────────────────────────────

    async def initialize_default_roles(self, granted_by: str | None = None) -> list[Role]:
        """Upsert the four system roles and link their permissions.

        Safe to re-run. Permissions linked out-of-band are left alone.
        """
        seeded: list[Role] = []
        async with self._sessions.begin() as db:
            by_name: dict[str, Role] = {}
            for seed in DEFAULT_ROLES:
                parent_id = by_name[seed.parent].id if seed.parent else None
                role = (
                    await db.execute(select(Role).where(Role.name == seed.name))
                ).scalar_one_or_none()
                if role is None:
                    role = Role(name=seed.name)
                    db.add(role)
                role.display_name = seed.display_name
                role.description = seed.description
                role.level = seed.level
                role.parent_role_id = parent_id
                role.is_system = True
                role.is_active = True
                await db.flush()
                by_name[seed.name] = role

                linked = set(
                    (
                        await db.execute(
                            select(RolePermission.permission_id).where(
                                RolePermission.role_id == role.id
                            )
                        )
                    ).scalars().all()
                )
                for name in sorted(seed.permissions):
                    permission = await get_or_create_permission(db, name)
                    if permission.id not in linked:
                        db.add(RolePermission(
                            role_id=role.id,
                            permission_id=permission.id,
                            granted_by=granted_by,
                        ))
                        linked.add(permission.id)
                seeded.append(role)

        logger.info("Default roles initialized: %s", ", ".join(r.name for r in seeded))
        return seeded

    # ── Queries ─────────────────────────────────────────────

    async def direct_permissions_in(self, db: AsyncSession, role_id: str) -> set[str]:
        result = await db.execute(
            select(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id)
        )
        return set(result.scalars().all())

    async def ancestors_in(self, db: AsyncSession, role_id: str) -> list[Role]:
        """The role itself followed by its parents, nearest first.

        Stops at MAX_ROLE_DEPTH hops or on a repeated role, logging the
        broken chain instead of looping forever.
        """
        chain: list[Role] = []
        visited: set[str] = set()
        current: str | None = role_id
        while current is not None:
            if current in visited:
                logger.warning("Cycle in role parents at %s (chain from %s)", current, role_id)
                break
            if len(chain) >= MAX_ROLE_DEPTH:
                logger.warning("Role chain from %s exceeds %d levels", role_id, MAX_ROLE_DEPTH)
                break
            role = await db.get(Role, current)
            if role is None:
                break
            visited.add(current)
            chain.append(role)
            current = role.parent_role_id
        return chain

    async def effective_permissions_in(self, db: AsyncSession, role_id: str) -> set[str]:
        permissions: set[str] = set()
        for role in await self.ancestors_in(db, role_id):
            permissions |= await self.direct_permissions_in(db, role.id)
        return permissions

    async def get_effective_permissions(self, role_id: str) -> set[str]:
        """Direct permissions of the role plus everything inherited. Unknown id → empty."""
        async with self._sessions() as db:
            return await self.effective_permissions_in(db, role_id)

    async def can_manage_in(self, db: AsyncSession, acting_role_id: str, target_role_id: str) -> bool:
        acting = await db.get(Role, acting_role_id)
        target = await db.get(Role, target_role_id)
        if acting is None or target is None:
            return False
        return acting.level > target.level

    async def can_manage(self, acting_role_id: str, target_role_id: str) -> bool:
        async with self._sessions() as db:
            return await self.can_manage_in(db, acting_role_id, target_role_id)

    async def list_manageable_roles(self, acting_role_id: str) -> list[Role]:
        async with self._sessions() as db:
            acting = await db.get(Role, acting_role_id)
            if acting is None:
                return []
            result = await db.execute(
                select(Role)
                .where(Role.is_active.is_(True), Role.level < acting.level)
                .order_by(Role.level.desc())
            )
            return list(result.scalars().all())

    async def list_roles(self) -> list[dict[str, Any]]:
        """Active roles by level (highest first) with permissions and user counts."""
        async with self._sessions() as db:
            roles = (
                await db.execute(
                    select(Role).where(Role.is_active.is_(True)).order_by(Role.level.desc())
                )
            ).scalars().all()
            counts = dict(
                (
                    await db.execute(
                        select(User.role_id, func.count(User.id))
                        .where(User.role_id.is_not(None))
                        .group_by(User.role_id)
                    )
                ).all()
            )
            return [
                {
                    "role": role,
                    "permissions": sorted(await self.direct_permissions_in(db, role.id)),
                    "user_count": counts.get(role.id, 0),
                }
                for role in roles
            ]

    async def describe_role(self, role_id: str) -> dict[str, Any]:
        async with self._sessions() as db:
            role = await db.get(Role, role_id)
            if role is None:
                raise ResourceNotFoundError("Role", role_id)
            parent = await db.get(Role, role.parent_role_id) if role.parent_role_id else None
            children = (
                await db.execute(
                    select(Role).where(Role.parent_role_id == role.id).order_by(Role.level.desc())
                )
            ).scalars().all()
            user_count = (
                await db.execute(select(func.count(User.id)).where(User.role_id == role.id))
            ).scalar_one()
            return {
                "role": role,
                "permissions": sorted(await self.direct_permissions_in(db, role.id)),
                "all_permissions": sorted(await self.effective_permissions_in(db, role.id)),
                "parent": parent,
                "children": list(children),
                "user_count": user_count,
            }

    # ── Administration ──────────────────────────────────────

    async def _actor_role(self, db: AsyncSession, actor: User) -> Role:
        role = await db.get(Role, actor.role_id) if actor.role_id else None
        if role is None:
            raise PermissionDeniedError("User role not found")
        return role

    async def _require_manage(
        self, db: AsyncSession, actor_role: Role, target: Role, action: str
    ) -> None:
        if not await self.can_manage_in(db, actor_role.id, target.id):
            logger.info(
                "Role %s (level %d) may not %s role %s (level %d)",
                actor_role.name, actor_role.level, action, target.name, target.level,
            )
            raise PermissionDeniedError(f"You do not have permission to {action} this role")

    async def _link_permissions(
        self, db: AsyncSession, role: Role, names: Iterable[str], granted_by: str | None
    ) -> None:
        for name in names:
            permission = await get_or_create_permission(db, name)
            db.add(RolePermission(
                role_id=role.id,
                permission_id=permission.id,
                granted_by=granted_by,
            ))

    async def create_role(
        self,
        actor: User,
        *,
        name: str,
        display_name: str,
        level: int,
        description: str | None = None,
        parent_role_id: str | None = None,
        permissions: list[str] | None = None,
    ) -> Role:
        names = validate_permission_names(permissions or [])
        async with self._sessions.begin() as db:
            actor_role = await self._actor_role(db, actor)

            if parent_role_id:
                parent = await db.get(Role, parent_role_id)
                if parent is None:
                    raise ResourceNotFoundError("Role", parent_role_id)
                if not await self.can_manage_in(db, actor_role.id, parent.id):
                    raise PermissionDeniedError("You cannot create a role under this parent role")
                if level >= parent.level:
                    raise InvalidRequestError(
                        "Role level must be lower than the parent role level",
                        error_code="INVALID_ROLE_LEVEL",
                    )
            if level >= actor_role.level:
                raise PermissionDeniedError("You cannot create a role at or above your own level")

            existing = (
                await db.execute(select(Role.id).where(Role.name == name))
            ).scalar_one_or_none()
            if existing is not None:
                raise ConflictError("A role with this name already exists")

            role = Role(
                name=name,
                display_name=display_name,
                description=description,
                level=level,
                parent_role_id=parent_role_id or None,
                is_system=False,
                is_active=True,
            )
            db.add(role)
            await db.flush()
            await self._link_permissions(db, role, names, actor.id)

        logger.info("Role %s created by %s", role.name, actor.id)
        return role

    async def update_role(self, actor: User, role_id: str, changes: dict[str, Any]) -> Role:
        """Apply a partial update.

        `changes` holds only the fields the caller sent; a present
        `parent_role_id` of None detaches the role.
        """
        async with self._sessions.begin() as db:
            role = await db.get(Role, role_id)
            if role is None:
                raise ResourceNotFoundError("Role", role_id)

            if role.is_system and ("level" in changes or "parent_role_id" in changes):
                raise PermissionDeniedError("System roles cannot change level or parent")

            actor_role = await self._actor_role(db, actor)
            await self._require_manage(db, actor_role, role, "update")

            new_level = changes.get("level")
            if new_level is None:
                new_level = role.level
            new_parent_id = changes.get("parent_role_id", role.parent_role_id) or None

            if new_level >= actor_role.level:
                raise PermissionDeniedError("You cannot raise a role to or above your own level")

            if new_parent_id is not None:
                if new_parent_id == role.id:
                    raise InvalidRequestError(
                        "A role cannot be its own parent", error_code="ROLE_CYCLE"
                    )
                parent = await db.get(Role, new_parent_id)
                if parent is None:
                    raise ResourceNotFoundError("Role", new_parent_id)
                if new_parent_id != role.parent_role_id:
                    if not await self.can_manage_in(db, actor_role.id, parent.id):
                        raise PermissionDeniedError("You cannot move a role under this parent role")
                    ancestry = await self.ancestors_in(db, parent.id)
                    if any(r.id == role.id for r in ancestry):
                        raise InvalidRequestError(
                            "A role cannot be moved under one of its descendants",
                            error_code="ROLE_CYCLE",
                        )
                if new_level >= parent.level:
                    raise InvalidRequestError(
                        "Role level must be lower than the parent role level",
                        error_code="INVALID_ROLE_LEVEL",
                    )

            if new_level != role.level:
                blocking_child = (
                    await db.execute(
                        select(Role.name).where(
                            Role.parent_role_id == role.id, Role.level >= new_level
                        ).limit(1)
                    )
                ).scalar_one_or_none()
                if blocking_child is not None:
                    raise InvalidRequestError(
                        f"Child role {blocking_child} must stay below the new level",
                        error_code="INVALID_ROLE_LEVEL",
                    )

            for key in ("display_name", "description", "is_active"):
                if key in changes and changes[key] is not None:
                    setattr(role, key, changes[key])
            role.level = new_level
            role.parent_role_id = new_parent_id

        return role

    async def delete_role(self, actor: User, role_id: str) -> None:
        async with self._sessions.begin() as db:
            role = await db.get(Role, role_id)
            if role is None:
                raise ResourceNotFoundError("Role", role_id)
            if role.is_system:
                raise PermissionDeniedError("System roles cannot be deleted")

            user_count = (
                await db.execute(select(func.count(User.id)).where(User.role_id == role.id))
            ).scalar_one()
            if user_count > 0:
                raise BusinessLogicError(
                    "This role is assigned to users and cannot be deleted",
                    error_code="ROLE_IN_USE",
                )

            actor_role = await self._actor_role(db, actor)
            await self._require_manage(db, actor_role, role, "delete")

            await db.execute(
                update(Role).where(Role.parent_role_id == role.id).values(parent_role_id=None)
            )
            await db.execute(delete(RolePermission).where(RolePermission.role_id == role.id))
            await db.delete(role)

        logger.info("Role %s deleted by %s", role.name, actor.id)

    async def set_role_permissions(self, actor: User, role_id: str, names: list[str]) -> list[str]:
        """Replace the role's direct permissions with `names`."""
        names = validate_permission_names(names)
        async with self._sessions.begin() as db:
            role = await db.get(Role, role_id)
            if role is None:
                raise ResourceNotFoundError("Role", role_id)
            actor_role = await self._actor_role(db, actor)
            await self._require_manage(db, actor_role, role, "modify")

            await db.execute(delete(RolePermission).where(RolePermission.role_id == role.id))
            await self._link_permissions(db, role, names, actor.id)
        return names
