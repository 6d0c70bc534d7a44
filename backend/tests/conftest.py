"""Pytest configuration and fixtures for the Boutique POS tests.

Every test gets a fresh SQLite database file (aiosqlite) created from the
model metadata. The app's session dependencies are overridden to point at
it, so routes and services share the same data. Redis is not needed:
caching and rate limiting are switched off through the environment before
the app is imported.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "Test-Signing-Key-For-The-Suite-0123456789-abcdef")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("CACHE_ENABLED", "false")

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.models  # noqa: F401  (registers every table on Base.metadata)
from app.auth.password import hash_password
from app.auth.permissions import Authorizer
from app.auth.roles import RoleHierarchy
from app.auth.tokens import TokenService
from app.database import Base, get_db, get_sessionmaker
from app.main import app
from app.models.client import Client
from app.models.product import Product
from app.models.role import Role
from app.models.user import User
from app.services.ledger import LedgerService

ADMIN_PASSWORD = "AdminPassword123!"
USER_PASSWORD = "UserPassword123!"


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a throwaway SQLite database with every table."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def sessions(test_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def client(sessions) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with overridden database dependencies."""

    async def override_get_db():
        async with sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sessionmaker] = lambda: sessions

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Services ─────────────────────────────────────────────────────

@pytest.fixture
def hierarchy(sessions) -> RoleHierarchy:
    return RoleHierarchy(sessions)


@pytest.fixture
def authorizer(sessions, hierarchy) -> Authorizer:
    return Authorizer(sessions, hierarchy)


@pytest.fixture
def tokens(sessions) -> TokenService:
    return TokenService(sessions)


@pytest.fixture
def ledger(sessions) -> LedgerService:
    return LedgerService(sessions)


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def default_roles(hierarchy) -> dict[str, Role]:
    """Seed the four system roles, keyed by name."""
    roles = await hierarchy.initialize_default_roles()
    return {r.name: r for r in roles}


async def make_user(
    sessions: async_sessionmaker[AsyncSession],
    email: str,
    role: str = "user",
    role_id: str | None = None,
    password: str = USER_PASSWORD,
    is_active: bool = True,
) -> User:
    async with sessions.begin() as db:
        user = User(
            email=email,
            hashed_password=hash_password(password),
            full_name=email.split("@")[0].title(),
            role=role,
            role_id=role_id,
            is_active=is_active,
        )
        db.add(user)
    return user


@pytest_asyncio.fixture
async def admin_user(sessions, default_roles) -> User:
    """Administrator linked to the seeded admin role."""
    return await make_user(
        sessions,
        "admin@example.com",
        role="admin",
        role_id=default_roles["admin"].id,
        password=ADMIN_PASSWORD,
    )


@pytest_asyncio.fixture
async def cashier_user(sessions) -> User:
    """Cashier with only the legacy role name (no role_id)."""
    return await make_user(sessions, "cashier@example.com", role="cashier")


@pytest.fixture
def admin_token(tokens, admin_user) -> str:
    return tokens.issue_access_token(admin_user)


@pytest.fixture
def auth_headers(admin_token: str) -> dict:
    """Authorization headers for the admin user."""
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture
def cashier_headers(tokens, cashier_user) -> dict:
    return {"Authorization": f"Bearer {tokens.issue_access_token(cashier_user)}"}


@pytest_asyncio.fixture
async def product(sessions) -> Product:
    """Product with stock=10, stock_min=5, selling at 1000."""
    async with sessions.begin() as db:
        product = Product(
            code="RIZ-25",
            name="Riz 25kg",
            category="Alimentation",
            supplier="Grossiste Central",
            purchase_price=800,
            sale_price=1000,
            stock=10,
            stock_min=5,
        )
        db.add(product)
    return product


@pytest_asyncio.fixture
async def customer(sessions) -> Client:
    """Client with a zero balance."""
    async with sessions.begin() as db:
        customer = Client(name="Awa Diop", phone="770000001", address="Dakar")
        db.add(customer)
    return customer


async def reload(sessions: async_sessionmaker[AsyncSession], model, ident: str):
    """Fetch a fresh copy of a row."""
    async with sessions() as db:
        return await db.get(model, ident)


async def fetch_all(sessions: async_sessionmaker[AsyncSession], query):
    async with sessions() as db:
        return list((await db.execute(query)).scalars().all())


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "auth: Authentication tests")
    config.addinivalue_line("markers", "roles: Role hierarchy and permission tests")
    config.addinivalue_line("markers", "ledger: Sale / credit / stock transaction tests")
    config.addinivalue_line("markers", "cache: Redis cache tests")

