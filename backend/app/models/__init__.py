"""Aggregate model imports for Alembic auto-detection."""

from app.models.user import User  # noqa: F401
from app.models.role import Permission, Role, RolePermission, UserPermission  # noqa: F401
from app.models.refresh_token import RefreshToken  # noqa: F401

from app.models.product import Product  # noqa: F401
from app.models.client import Client  # noqa: F401
from app.models.sale import Credit, CreditStatus, Sale, SaleType  # noqa: F401
from app.models.expense import Expense  # noqa: F401
