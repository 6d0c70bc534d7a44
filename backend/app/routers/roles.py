"""Role administration router.

Endpoints:
    GET    /api/roles/                  Active roles, highest level first
    GET    /api/roles/manageable        Roles below the caller's own role
    GET    /api/roles/{id}              Role with direct + inherited permissions
    POST   /api/roles/                  Create a custom role
    PUT    /api/roles/{id}              Update a role
    DELETE /api/roles/{id}              Delete an unused custom role
    POST   /api/roles/{id}/permissions  Replace the role's permissions
    POST   /api/roles/init/default      Seed / repair the system roles
"""

from fastapi import APIRouter, Depends, status

from app.auth.deps import get_role_hierarchy, require_permission
from app.auth.permissions import (
    USERS_CREATE,
    USERS_DELETE,
    USERS_MANAGE_PERMISSIONS,
    USERS_READ,
    USERS_UPDATE,
)
from app.auth.roles import RoleHierarchy
from app.models.user import User
from app.schemas.common import ApiResponse, ok, ok_list
from app.schemas.role import (
    RoleCreate,
    RoleDetail,
    RoleOut,
    RolePermissionsUpdate,
    RoleRef,
    RoleSummary,
    RoleUpdate,
)

router = APIRouter()


@router.get("/", response_model=ApiResponse[list[RoleSummary]])
async def list_roles(
    hierarchy: RoleHierarchy = Depends(get_role_hierarchy),
    _user: User = Depends(require_permission(USERS_READ)),
):
    rows = await hierarchy.list_roles()
    return ok_list([
        RoleSummary(
            **RoleOut.model_validate(row["role"]).model_dump(),
            permissions=row["permissions"],
            user_count=row["user_count"],
        )
        for row in rows
    ])


@router.get("/manageable", response_model=ApiResponse[list[RoleOut]])
async def list_manageable(
    hierarchy: RoleHierarchy = Depends(get_role_hierarchy),
    user: User = Depends(require_permission(USERS_READ)),
):
    """Roles the caller may manage (strictly lower level). Empty without a linked role."""
    roles = await hierarchy.list_manageable_roles(user.role_id) if user.role_id else []
    return ok_list([RoleOut.model_validate(r) for r in roles])


@router.get("/{role_id}", response_model=ApiResponse[RoleDetail])
async def get_role(
    role_id: str,
    hierarchy: RoleHierarchy = Depends(get_role_hierarchy),
    _user: User = Depends(require_permission(USERS_READ)),
):
    info = await hierarchy.describe_role(role_id)
    return ok(RoleDetail(
        **RoleOut.model_validate(info["role"]).model_dump(),
        permissions=info["permissions"],
        user_count=info["user_count"],
        all_permissions=info["all_permissions"],
        parent=RoleRef.model_validate(info["parent"]) if info["parent"] else None,
        children=[RoleRef.model_validate(c) for c in info["children"]],
    ))


@router.post("/", response_model=ApiResponse[RoleOut], status_code=status.HTTP_201_CREATED)
async def create_role(
    body: RoleCreate,
    hierarchy: RoleHierarchy = Depends(get_role_hierarchy),
    user: User = Depends(require_permission(USERS_CREATE)),
):
    role = await hierarchy.create_role(
        user,
        name=body.name,
        display_name=body.display_name,
        description=body.description,
        level=body.level,
        parent_role_id=body.parent_role_id,
        permissions=body.permissions,
    )
    return ok(RoleOut.model_validate(role), message="Role created")


@router.put("/{role_id}", response_model=ApiResponse[RoleOut])
async def update_role(
    role_id: str,
    body: RoleUpdate,
    hierarchy: RoleHierarchy = Depends(get_role_hierarchy),
    user: User = Depends(require_permission(USERS_UPDATE)),
):
    role = await hierarchy.update_role(user, role_id, body.model_dump(exclude_unset=True))
    return ok(RoleOut.model_validate(role), message="Role updated")


@router.delete("/{role_id}", response_model=ApiResponse[None])
async def delete_role(
    role_id: str,
    hierarchy: RoleHierarchy = Depends(get_role_hierarchy),
    user: User = Depends(require_permission(USERS_DELETE)),
):
    await hierarchy.delete_role(user, role_id)
    return ok(message="Role deleted")


@router.post("/{role_id}/permissions", response_model=ApiResponse[list[str]])
async def set_permissions(
    role_id: str,
    body: RolePermissionsUpdate,
    hierarchy: RoleHierarchy = Depends(get_role_hierarchy),
    user: User = Depends(require_permission(USERS_MANAGE_PERMISSIONS)),
):
    names = await hierarchy.set_role_permissions(user, role_id, body.permissions)
    return ok(names, message="Permissions assigned")


@router.post("/init/default", response_model=ApiResponse[list[RoleOut]])
async def init_default_roles(
    hierarchy: RoleHierarchy = Depends(get_role_hierarchy),
    user: User = Depends(require_permission(USERS_MANAGE_PERMISSIONS)),
):
    roles = await hierarchy.initialize_default_roles(granted_by=user.id)
    return ok_list([RoleOut.model_validate(r) for r in roles], message="Default roles initialized")
