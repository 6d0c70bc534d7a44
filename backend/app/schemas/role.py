from datetime import datetime

from pydantic import BaseModel, Field


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    display_name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    level: int = Field(..., ge=0)
    parent_role_id: str | None = None
    permissions: list[str] | None = None


class RoleUpdate(BaseModel):
    display_name: str | None = None
    description: str | None = None
    level: int | None = Field(None, ge=0)
    parent_role_id: str | None = None
    is_active: bool | None = None


class RolePermissionsUpdate(BaseModel):
    permissions: list[str]


class RoleRef(BaseModel):
    id: str
    name: str
    display_name: str
    level: int

    model_config = {"from_attributes": True}


class RoleOut(BaseModel):
    id: str
    name: str
    display_name: str
    description: str | None
    level: int
    parent_role_id: str | None
    is_system: bool
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class RoleSummary(RoleOut):
    permissions: list[str] = []
    user_count: int = 0


class RoleDetail(RoleSummary):
    all_permissions: list[str] = []
    parent: RoleRef | None = None
    children: list[RoleRef] = []
