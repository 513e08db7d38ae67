"""
Tests for the operational debug router.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from app.core.scheduler import register_job, unregister_all_jobs
from app.debug import router


def _failing_session_maker():
    session_maker = MagicMock()
    session_maker.return_value.__aenter__ = AsyncMock(side_effect=ConnectionError("db down"))
    session_maker.return_value.__aexit__ = AsyncMock(return_value=False)
    return session_maker


@pytest.fixture
def app():
    application = FastAPI()
    application.include_router(router)
    return application


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture(autouse=True)
def _clean_registry():
    yield
    unregister_all_jobs()


class TestDependencyProbe:
    @pytest.mark.asyncio
    async def test_reports_each_dependency(self, app, client):
        counter_store = MagicMock()
        counter_store.is_available.return_value = True
        counter_store.client.ping = AsyncMock(return_value=True)
        app.state.counter_store = counter_store

        with patch("app.debug.async_session_maker", _failing_session_maker()):
            response = await client.get("/debug/dependencies")

        body = response.json()
        assert response.status_code == 200
        assert body["database"] == {"ok": False, "error": "db down"}
        assert body["redis"] == {"ok": True}

    @pytest.mark.asyncio
    async def test_redis_missing_is_reported(self, client):
        with patch("app.debug.async_session_maker", _failing_session_maker()):
            response = await client.get("/debug/dependencies")

        assert response.json()["redis"]["ok"] is False


class TestJobControl:
    @pytest.mark.asyncio
    async def test_run_registered_job(self, client):
        job = AsyncMock(return_value={"expired": 2})
        register_job("invites_expire_stale", job, CronTrigger(hour=3))

        listed = await client.get("/debug/jobs")
        assert [entry["job_id"] for entry in listed.json()] == ["invites_expire_stale"]

        response = await client.post("/debug/jobs/invites_expire_stale/run")
        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert response.json()["result"] == {"expired": 2}

    @pytest.mark.asyncio
    async def test_unknown_job_is_404(self, client):
        response = await client.post("/debug/jobs/nope/run")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_pause_without_scheduler(self, client):
        response = await client.post("/debug/jobs/invites_expire_stale/pause")
        assert response.json() == {"job_id": "invites_expire_stale", "paused": False}
