"""Tests for the role hierarchy: seeding, inheritance, manageability, administration."""

import logging

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.auth.permissions import ALL_PERMISSIONS, ROLE_DEFAULTS
from app.auth.roles import MAX_ROLE_DEPTH, RoleHierarchy
from app.middleware.exceptions import (
    BusinessLogicError,
    ConflictError,
    InvalidRequestError,
    PermissionDeniedError,
)
from app.models.role import Permission, Role, RolePermission
from app.models.user import User

from conftest import fetch_all, make_user, reload


async def add_role(sessions, name, level, parent_id=None, is_system=False) -> Role:
    async with sessions.begin() as db:
        role = Role(
            name=name,
            display_name=name.title(),
            level=level,
            parent_role_id=parent_id,
            is_system=is_system,
            is_active=True,
        )
        db.add(role)
    return role


async def actor_at(sessions, level: int, name: str = "actor") -> User:
    """A user linked to a fresh custom role at `level`."""
    role = await add_role(sessions, f"{name}-role", level)
    return await make_user(sessions, f"{name}@example.com", role=role.name, role_id=role.id)


@pytest.mark.roles
@pytest.mark.asyncio
class TestDefaultRoles:
    """Seeding of the four system roles."""

    async def test_seeds_four_roles_in_level_order(self, hierarchy: RoleHierarchy, sessions):
        roles = await hierarchy.initialize_default_roles()

        assert [(r.name, r.level) for r in roles] == [
            ("admin", 100), ("manager", 75), ("cashier", 50), ("user", 25),
        ]
        assert all(r.is_system for r in roles)
        by_name = {r.name: r for r in roles}
        assert by_name["admin"].parent_role_id is None
        assert by_name["manager"].parent_role_id == by_name["admin"].id
        assert by_name["cashier"].parent_role_id == by_name["manager"].id
        assert by_name["user"].parent_role_id == by_name["cashier"].id

    async def test_is_idempotent(self, hierarchy: RoleHierarchy, sessions):
        """Re-running creates no duplicate roles, permissions or links."""
        await hierarchy.initialize_default_roles()
        await hierarchy.initialize_default_roles()

        assert len(await fetch_all(sessions, select(Role))) == 4
        assert len(await fetch_all(sessions, select(Permission))) == len(ALL_PERMISSIONS)
        expected_links = sum(
            len(ROLE_DEFAULTS[name]) for name in ("manager", "cashier", "user")
        ) + len(ALL_PERMISSIONS)
        assert len(await fetch_all(sessions, select(RolePermission))) == expected_links

    async def test_keeps_out_of_band_permissions(self, hierarchy: RoleHierarchy, sessions):
        """Links added by hand survive a re-seed."""
        roles = {r.name: r for r in await hierarchy.initialize_default_roles()}
        async with sessions.begin() as db:
            extra = Permission(name="reports:export", category="reports")
            db.add(extra)
            await db.flush()
            db.add(RolePermission(role_id=roles["user"].id, permission_id=extra.id))

        await hierarchy.initialize_default_roles()

        assert "reports:export" in await hierarchy.get_effective_permissions(roles["user"].id)

    async def test_permission_category_from_name(self, hierarchy: RoleHierarchy, sessions):
        await hierarchy.initialize_default_roles()

        permission = (
            await fetch_all(sessions, select(Permission).where(Permission.name == "credits:pay"))
        )[0]
        assert permission.category == "credits"


@pytest.mark.roles
@pytest.mark.asyncio
class TestInheritance:
    """Effective permissions follow the parent chain."""

    async def test_role_without_parent_has_only_direct(self, hierarchy: RoleHierarchy, sessions):
        role = await add_role(sessions, "stock-clerk", 10)
        admin = await actor_at(sessions, 90, "boss")
        await hierarchy.set_role_permissions(admin, role.id, ["products:read"])

        assert await hierarchy.get_effective_permissions(role.id) == {"products:read"}

    async def test_child_inherits_parent_permissions(self, hierarchy: RoleHierarchy, sessions):
        parent = await add_role(sessions, "lead", 60)
        child = await add_role(sessions, "clerk", 40, parent_id=parent.id)
        admin = await actor_at(sessions, 90, "boss")
        await hierarchy.set_role_permissions(admin, parent.id, ["stats:read", "sales:read"])
        await hierarchy.set_role_permissions(admin, child.id, ["sales:read", "sales:create"])

        assert await hierarchy.get_effective_permissions(child.id) == {
            "stats:read", "sales:read", "sales:create",
        }
        assert await hierarchy.get_effective_permissions(parent.id) == {
            "stats:read", "sales:read",
        }

    async def test_seeded_roles_inherit_from_admin(self, hierarchy: RoleHierarchy, default_roles):
        """Every seeded role sits under admin and so carries its permissions."""
        effective = await hierarchy.get_effective_permissions(default_roles["user"].id)

        assert effective == set(ALL_PERMISSIONS)

    async def test_unknown_role_has_no_permissions(self, hierarchy: RoleHierarchy):
        assert await hierarchy.get_effective_permissions("missing") == set()

    async def test_cycle_is_bounded(self, hierarchy: RoleHierarchy, sessions, caplog):
        """A corrupt parent cycle terminates and is logged."""
        a = await add_role(sessions, "a", 30)
        b = await add_role(sessions, "b", 20, parent_id=a.id)
        async with sessions.begin() as db:
            (await db.get(Role, a.id)).parent_role_id = b.id
        admin = await actor_at(sessions, 90, "boss")
        await hierarchy.set_role_permissions(admin, a.id, ["products:read"])
        await hierarchy.set_role_permissions(admin, b.id, ["sales:read"])

        with caplog.at_level(logging.WARNING):
            effective = await hierarchy.get_effective_permissions(b.id)

        assert effective == {"products:read", "sales:read"}
        assert "Cycle in role parents" in caplog.text

    async def test_long_chain_is_cut_at_max_depth(self, hierarchy: RoleHierarchy, sessions):
        """Walking stops after MAX_ROLE_DEPTH roles."""
        parent_id = None
        for i in range(MAX_ROLE_DEPTH + 5):
            role = await add_role(sessions, f"r{i}", 1000 - i, parent_id=parent_id)
            parent_id = role.id

        async with sessions() as db:
            chain = await hierarchy.ancestors_in(db, parent_id)

        assert len(chain) == MAX_ROLE_DEPTH


@pytest.mark.roles
@pytest.mark.asyncio
class TestManageability:
    """Level comparison decides who can manage whom."""

    async def test_strictly_higher_level_manages(self, hierarchy: RoleHierarchy, default_roles):
        assert await hierarchy.can_manage(default_roles["admin"].id, default_roles["manager"].id)
        assert not await hierarchy.can_manage(default_roles["manager"].id, default_roles["admin"].id)

    async def test_equal_level_does_not_manage(self, hierarchy: RoleHierarchy, default_roles):
        assert not await hierarchy.can_manage(default_roles["cashier"].id, default_roles["cashier"].id)

    async def test_unknown_role_is_false(self, hierarchy: RoleHierarchy, default_roles):
        assert not await hierarchy.can_manage("missing", default_roles["user"].id)
        assert not await hierarchy.can_manage(default_roles["admin"].id, "missing")

    async def test_list_manageable_roles(self, hierarchy: RoleHierarchy, default_roles):
        roles = await hierarchy.list_manageable_roles(default_roles["manager"].id)

        assert [r.name for r in roles] == ["cashier", "user"]


@pytest.mark.roles
@pytest.mark.asyncio
class TestRoleAdministration:
    """Create / update / delete rules."""

    async def test_delete_respects_levels(self, hierarchy: RoleHierarchy, sessions):
        """A level-50 actor cannot delete a level-75 role but can delete a level-25 one."""
        actor = await actor_at(sessions, 50)
        higher = await add_role(sessions, "senior", 75)
        lower = await add_role(sessions, "junior", 25)

        with pytest.raises(PermissionDeniedError):
            await hierarchy.delete_role(actor, higher.id)

        await hierarchy.delete_role(actor, lower.id)
        assert await reload(sessions, Role, lower.id) is None
        assert await reload(sessions, Role, higher.id) is not None

    async def test_delete_system_role_refused(self, hierarchy: RoleHierarchy, sessions, default_roles):
        actor = await make_user(
            sessions, "root@example.com", role="admin", role_id=default_roles["admin"].id
        )

        with pytest.raises(PermissionDeniedError):
            await hierarchy.delete_role(actor, default_roles["user"].id)

    async def test_delete_role_in_use(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 90)
        role = await add_role(sessions, "busy", 10)
        await make_user(sessions, "member@example.com", role="busy", role_id=role.id)

        with pytest.raises(BusinessLogicError) as exc_info:
            await hierarchy.delete_role(actor, role.id)

        assert exc_info.value.error_code == "ROLE_IN_USE"

    async def test_delete_detaches_children(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 90)
        parent = await add_role(sessions, "team-lead", 40)
        child = await add_role(sessions, "trainee", 20, parent_id=parent.id)

        await hierarchy.delete_role(actor, parent.id)

        assert (await reload(sessions, Role, child.id)).parent_role_id is None

    async def test_create_below_parent(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 90)
        parent = await add_role(sessions, "supervisor", 60)

        role = await hierarchy.create_role(
            actor,
            name="assistant",
            display_name="Assistant",
            level=30,
            parent_role_id=parent.id,
            permissions=["sales:read", "sales:read", "products:read"],
        )

        assert role.parent_role_id == parent.id
        assert await hierarchy.get_effective_permissions(role.id) == {
            "sales:read", "products:read",
        }

    async def test_create_at_parent_level_refused(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 90)
        parent = await add_role(sessions, "supervisor", 60)

        with pytest.raises(InvalidRequestError) as exc_info:
            await hierarchy.create_role(
                actor, name="peer", display_name="Peer", level=60, parent_role_id=parent.id
            )

        assert exc_info.value.error_code == "INVALID_ROLE_LEVEL"

    async def test_create_at_own_level_refused(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 50)

        with pytest.raises(PermissionDeniedError):
            await hierarchy.create_role(actor, name="equal", display_name="Equal", level=50)

    async def test_create_without_linked_role_refused(self, hierarchy: RoleHierarchy, sessions):
        actor = await make_user(sessions, "legacy@example.com", role="admin")

        with pytest.raises(PermissionDeniedError):
            await hierarchy.create_role(actor, name="x", display_name="X", level=1)

    async def test_create_duplicate_name(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 90)
        await add_role(sessions, "dup", 10)

        with pytest.raises(ConflictError):
            await hierarchy.create_role(actor, name="dup", display_name="Dup", level=5)

    async def test_create_with_malformed_permission(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 90)

        with pytest.raises(InvalidRequestError) as exc_info:
            await hierarchy.create_role(
                actor, name="bad", display_name="Bad", level=5, permissions=["everything"]
            )

        assert exc_info.value.error_code == "INVALID_PERMISSION"

    async def test_system_role_level_is_frozen(self, hierarchy: RoleHierarchy, sessions, default_roles):
        actor = await make_user(
            sessions, "root@example.com", role="admin", role_id=default_roles["admin"].id
        )

        with pytest.raises(PermissionDeniedError):
            await hierarchy.update_role(actor, default_roles["cashier"].id, {"level": 60})
        with pytest.raises(PermissionDeniedError):
            await hierarchy.update_role(actor, default_roles["cashier"].id, {"parent_role_id": None})

    async def test_system_role_display_name_is_editable(
        self, hierarchy: RoleHierarchy, sessions, default_roles
    ):
        actor = await make_user(
            sessions, "root@example.com", role="admin", role_id=default_roles["admin"].id
        )

        role = await hierarchy.update_role(
            actor, default_roles["cashier"].id, {"display_name": "Vendeur"}
        )

        assert role.display_name == "Vendeur"
        assert role.level == 50

    async def test_update_level_must_stay_below_parent(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 90)
        parent = await add_role(sessions, "lead", 60)
        child = await add_role(sessions, "member", 30, parent_id=parent.id)

        with pytest.raises(InvalidRequestError) as exc_info:
            await hierarchy.update_role(actor, child.id, {"level": 70})

        assert exc_info.value.error_code == "INVALID_ROLE_LEVEL"

    async def test_update_level_must_stay_above_children(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 90)
        parent = await add_role(sessions, "lead", 60)
        await add_role(sessions, "member", 30, parent_id=parent.id)

        with pytest.raises(InvalidRequestError) as exc_info:
            await hierarchy.update_role(actor, parent.id, {"level": 20})

        assert exc_info.value.error_code == "INVALID_ROLE_LEVEL"

    async def test_update_cannot_create_cycle(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 90)
        top = await add_role(sessions, "top", 60)
        bottom = await add_role(sessions, "bottom", 30, parent_id=top.id)

        with pytest.raises(InvalidRequestError) as exc_info:
            await hierarchy.update_role(actor, top.id, {"parent_role_id": bottom.id})
        assert exc_info.value.error_code == "ROLE_CYCLE"

        with pytest.raises(InvalidRequestError):
            await hierarchy.update_role(actor, top.id, {"parent_role_id": top.id})

    async def test_set_permissions_replaces(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 90)
        role = await add_role(sessions, "helper", 10)

        await hierarchy.set_role_permissions(actor, role.id, ["sales:read", "stats:read"])
        await hierarchy.set_role_permissions(actor, role.id, ["products:read"])

        assert await hierarchy.get_effective_permissions(role.id) == {"products:read"}

    async def test_set_permissions_on_higher_role_refused(self, hierarchy: RoleHierarchy, sessions):
        actor = await actor_at(sessions, 30)
        role = await add_role(sessions, "boss", 80)

        with pytest.raises(PermissionDeniedError):
            await hierarchy.set_role_permissions(actor, role.id, ["sales:read"])


@pytest.mark.roles
@pytest.mark.asyncio
class TestRoleEndpoints:
    """Role administration over HTTP."""

    async def test_list_roles(self, client: AsyncClient, auth_headers: dict):
        response = await client.get("/api/roles/", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 4
        names = [r["name"] for r in body["data"]]
        assert names == ["admin", "manager", "cashier", "user"]
        assert body["data"][0]["user_count"] == 1

    async def test_get_role_detail(self, client: AsyncClient, auth_headers: dict, default_roles):
        response = await client.get(
            f"/api/roles/{default_roles['manager'].id}", headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["parent"]["name"] == "admin"
        assert [c["name"] for c in data["children"]] == ["cashier"]
        assert set(data["all_permissions"]) == set(ALL_PERMISSIONS)
        assert "users:delete" not in data["permissions"]

    async def test_get_unknown_role(self, client: AsyncClient, auth_headers: dict):
        response = await client.get("/api/roles/nope", headers=auth_headers)

        assert response.status_code == 404

    async def test_manageable_roles(self, client: AsyncClient, auth_headers: dict):
        response = await client.get("/api/roles/manageable", headers=auth_headers)

        assert response.status_code == 200
        assert [r["name"] for r in response.json()["data"]] == ["manager", "cashier", "user"]

    async def test_create_update_delete(self, client: AsyncClient, auth_headers: dict, default_roles):
        response = await client.post(
            "/api/roles/",
            headers=auth_headers,
            json={
                "name": "stockist",
                "display_name": "Magasinier",
                "level": 40,
                "parent_role_id": default_roles["manager"].id,
                "permissions": ["products:read", "products:restock"],
            },
        )
        assert response.status_code == 201
        role_id = response.json()["data"]["id"]

        response = await client.put(
            f"/api/roles/{role_id}", headers=auth_headers, json={"level": 45}
        )
        assert response.status_code == 200
        assert response.json()["data"]["level"] == 45

        response = await client.post(
            f"/api/roles/{role_id}/permissions",
            headers=auth_headers,
            json={"permissions": ["products:read"]},
        )
        assert response.status_code == 200
        assert response.json()["data"] == ["products:read"]

        response = await client.delete(f"/api/roles/{role_id}", headers=auth_headers)
        assert response.status_code == 200

    async def test_delete_system_role_over_http(
        self, client: AsyncClient, auth_headers: dict, default_roles
    ):
        response = await client.delete(
            f"/api/roles/{default_roles['cashier'].id}", headers=auth_headers
        )

        assert response.status_code == 403
        assert response.json()["code"] == "PERMISSION_DENIED"

    async def test_roles_require_permission(self, client: AsyncClient, cashier_headers: dict):
        response = await client.get("/api/roles/", headers=cashier_headers)

        assert response.status_code == 403

    async def test_init_default_roles_endpoint(self, client: AsyncClient, auth_headers: dict):
        response = await client.post("/api/roles/init/default", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["count"] == 4
