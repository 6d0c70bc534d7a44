"""Tests for background tasks, management commands and health checks."""

import asyncio
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app import cli
from app.models.refresh_token import RefreshToken
from app.models.user import User
from app.routers import health as health_module
from app.services.scheduler import PeriodicTask, sweep_refresh_tokens
from app.utils.time import utcnow

from conftest import fetch_all, make_user, reload


@pytest.mark.unit
@pytest.mark.asyncio
class TestPeriodicTask:
    """The asyncio loop behind the token sweep."""

    async def test_runs_until_stopped(self):
        calls = 0

        async def job():
            nonlocal calls
            calls += 1

        task = PeriodicTask("test-task", 0.01, job)
        task.start()
        assert task.running
        await asyncio.sleep(0.05)
        await task.stop()

        assert not task.running
        assert calls >= 1

    async def test_failing_run_does_not_stop_the_loop(self):
        calls = 0

        async def job():
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        task = PeriodicTask("failing-task", 0.01, job)
        task.start()
        await asyncio.sleep(0.05)
        assert task.running
        await task.stop()

        assert calls >= 2

    async def test_start_twice_and_stop_unstarted(self):
        async def job():
            pass

        task = PeriodicTask("idle-task", 60, job)
        await task.stop()

        task.start()
        first = task._task
        task.start()
        assert task._task is first
        await task.stop()


@pytest.mark.auth
@pytest.mark.asyncio
class TestTokenSweep:
    async def test_sweep_deletes_dead_tokens(self, sessions, tokens):
        user = await make_user(sessions, "sweep@example.com")
        live = await tokens.issue_refresh_token(user.id)
        dead = await tokens.issue_refresh_token(user.id)
        await tokens.revoke(dead)

        assert await sweep_refresh_tokens(sessions) == 1
        assert await fetch_all(sessions, select(RefreshToken.token)) == [live]

    async def test_sweep_with_nothing_to_do(self, sessions):
        assert await sweep_refresh_tokens(sessions) == 0


@pytest.mark.roles
@pytest.mark.asyncio
class TestManagementCommands:
    """init-roles and assign-roles."""

    async def test_init_roles(self, sessions, capsys):
        roles = await cli.init_roles(sessions)

        assert [r.name for r in roles] == ["admin", "manager", "cashier", "user"]
        assert "manager" in capsys.readouterr().out

    async def test_assign_roles_links_legacy_users(self, sessions, default_roles):
        cashier = await make_user(sessions, "c@example.com", role="cashier")
        odd = await make_user(sessions, "odd@example.com", role="intern")
        linked = await make_user(
            sessions, "linked@example.com", role="manager", role_id=default_roles["manager"].id
        )

        assert await cli.assign_roles(sessions) == 2

        assert (await reload(sessions, User, cashier.id)).role_id == default_roles["cashier"].id
        stored = await reload(sessions, User, odd.id)
        assert stored.role_id == default_roles["user"].id
        assert stored.role == "user"
        assert (await reload(sessions, User, linked.id)).role_id == default_roles["manager"].id

    async def test_assign_roles_requires_default_roles(self, sessions):
        await make_user(sessions, "c@example.com", role="cashier")

        with pytest.raises(RuntimeError):
            await cli.assign_roles(sessions)


class HealthyRedis:
    async def ping(self):
        return True


class DownRedis:
    async def ping(self):
        raise ConnectionError("Connection refused")


@pytest.mark.integration
@pytest.mark.asyncio
class TestHealth:
    """Liveness and readiness endpoints."""

    async def test_liveness(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "boutique-pos"

    async def test_ready(self, client: AsyncClient, test_engine, monkeypatch):
        async def redis_up():
            return HealthyRedis()

        monkeypatch.setattr(health_module, "engine", test_engine)
        monkeypatch.setattr(health_module, "get_redis", redis_up)

        response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_degraded_without_redis(self, client: AsyncClient, test_engine, monkeypatch):
        async def redis_down():
            return DownRedis()

        monkeypatch.setattr(health_module, "engine", test_engine)
        monkeypatch.setattr(health_module, "get_redis", redis_down)

        response = await client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["checks"]["database"] == "ok"
        assert body["checks"]["redis"].startswith("error")


@pytest.mark.unit
class TestCommandLine:
    """Argument parsing of the management CLI."""

    @pytest.mark.parametrize("command", ["init-roles", "assign-roles", "sweep-tokens", "serve"])
    def test_known_commands(self, command):
        assert cli.build_parser().parse_args([command]).command == command

    def test_missing_command_is_a_usage_error(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.build_parser().parse_args([])

        assert exc_info.value.code == 2
        assert "usage:" in capsys.readouterr().err

    def test_unknown_command_is_a_usage_error(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["drop-everything"])

        assert exc_info.value.code == 2

    def test_help_lists_commands(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.build_parser().parse_args(["--help"])

        assert exc_info.value.code == 0
        out = capsys.readouterr().out
        assert "assign-roles" in out
        assert "sweep-tokens" in out

    def test_main_dispatches_sweep(self, monkeypatch, capsys):
        async def fake_sweep():
            return 3

        monkeypatch.setattr(cli, "sweep_refresh_tokens", fake_sweep)

        cli.main(["sweep-tokens"])

        assert "3 token(s) deleted" in capsys.readouterr().out
