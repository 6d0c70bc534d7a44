"""Management CLI.

Usage:
    python -m app.cli init-roles      # Create / repair the default roles
    python -m app.cli assign-roles    # Link users without role_id to a role
    python -m app.cli sweep-tokens    # Delete expired and revoked refresh tokens
    python -m app.cli serve           # Run the API (HTTPS when configured)
"""

import argparse
import asyncio
import logging
import os

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.roles import RoleHierarchy
from app.config import settings
from app.database import async_session
from app.models.role import Role
from app.models.user import User
from app.services.scheduler import sweep_refresh_tokens

logger = logging.getLogger("boutique.cli")

FALLBACK_ROLE = "user"


async def init_roles(sessions: async_sessionmaker[AsyncSession] = async_session) -> list[Role]:
    roles = await RoleHierarchy(sessions).initialize_default_roles()
    for role in roles:
        print(f"  {role.name:<10} level {role.level:>3}  {role.display_name}")
    return roles


async def assign_roles(sessions: async_sessionmaker[AsyncSession] = async_session) -> int:
    """Link every user without a role_id to the role named by its legacy `role`.

    Unknown role names fall back to the "user" role. Returns the number of
    users linked.
    """
    async with sessions.begin() as db:
        roles = {
            r.name: r for r in (await db.execute(select(Role))).scalars().all()
        }
        if FALLBACK_ROLE not in roles:
            raise RuntimeError("Default roles missing; run `init-roles` first")

        users = (
            await db.execute(select(User).where(User.role_id.is_(None)))
        ).scalars().all()
        for user in users:
            role = roles.get(user.role)
            if role is None:
                logger.warning(
                    "User %s has unknown role %r, assigning %r",
                    user.email, user.role, FALLBACK_ROLE,
                )
                role = roles[FALLBACK_ROLE]
            user.role_id = role.id
            user.role = role.name
            print(f"  {user.email} -> {role.name}")

    return len(users)


def serve() -> None:
    import uvicorn

    ssl_options = {}
    if settings.https_enabled:
        if os.path.exists(settings.ssl_key_path) and os.path.exists(settings.ssl_cert_path):
            ssl_options = {
                "ssl_keyfile": settings.ssl_key_path,
                "ssl_certfile": settings.ssl_cert_path,
            }
        else:
            logger.warning(
                "HTTPS enabled but certificate files are missing (%s, %s); serving plain HTTP",
                settings.ssl_key_path, settings.ssl_cert_path,
            )

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        **ssl_options,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m app.cli",
        description="Boutique POS management commands",
    )
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    commands.add_parser("init-roles", help="Create or repair the default roles")
    commands.add_parser("assign-roles", help="Link users without role_id to a role")
    commands.add_parser("sweep-tokens", help="Delete expired and revoked refresh tokens")
    commands.add_parser("serve", help="Run the API (HTTPS when configured)")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "init-roles":
        roles = asyncio.run(init_roles())
        print(f"\n{len(roles)} role(s) ready")
    elif args.command == "assign-roles":
        linked = asyncio.run(assign_roles())
        print(f"\n{linked} user(s) linked")
    elif args.command == "sweep-tokens":
        deleted = asyncio.run(sweep_refresh_tokens())
        print(f"{deleted} token(s) deleted")
    elif args.command == "serve":
        serve()


if __name__ == "__main__":
    main()
