"""Tests for the FastAPI service surface: health, readiness, metrics, lifespan."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from src.meetsync.main import create_app
from src.meetsync.meetings.providers import MeetingsProvider


class TestHealthEndpoints:
    """Probe endpoints without running the lifespan."""

    @pytest.mark.asyncio
    async def test_health_reports_environment_and_workers(self, settings):
        app = create_app(settings=settings)
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["environment"] == "development"
        assert body["workers"] == 0

    @pytest.mark.asyncio
    async def test_ready_when_database_answers(self, settings, engine):
        app = create_app(settings=settings)
        transport = ASGITransport(app=app)
        with patch("src.meetsync.main.get_engine", return_value=engine):
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready", "checks": {"database": "ok"}}

    @pytest.mark.asyncio
    async def test_degraded_when_database_fails(self, settings):
        broken = MagicMock()
        broken.connect.side_effect = ConnectionRefusedError("connection refused")
        app = create_app(settings=settings)
        transport = ASGITransport(app=app)
        with patch("src.meetsync.main.get_engine", return_value=broken):
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/health/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "degraded"
        assert body["checks"]["database"] == "error"
        assert "connection refused" in body["checks"]["database_error"]

    @pytest.mark.asyncio
    async def test_metrics_exposes_sync_counters(self, settings):
        app = create_app(settings=settings)
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "meeting_sync_duration_seconds" in response.text
        assert "meeting_errors_rearmed_total" in response.text


class TestLifespan:
    """Startup and shutdown wiring."""

    @pytest.mark.asyncio
    async def test_workers_run_while_app_is_up(self, settings):
        manager = MagicMock()
        manager.stop = AsyncMock()
        providers = {"zoom": MagicMock(spec=MeetingsProvider)}
        app = create_app(providers=providers, settings=settings)

        with (
            patch("src.meetsync.main.init_db", new=AsyncMock()) as init_db,
            patch("src.meetsync.main.close_db", new=AsyncMock()) as close_db,
            patch("src.meetsync.main.build_manager", return_value=manager) as build,
        ):
            async with app.router.lifespan_context(app):
                init_db.assert_awaited_once()
                build.assert_called_once_with(providers, settings)
                manager.start.assert_called_once()
                assert app.state.manager is manager

            manager.stop.assert_awaited_once()
            close_db.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_workers_without_providers(self, settings):
        app = create_app(settings=settings)

        with (
            patch("src.meetsync.main.init_db", new=AsyncMock()),
            patch("src.meetsync.main.close_db", new=AsyncMock()),
            patch("src.meetsync.main.build_manager") as build,
        ):
            async with app.router.lifespan_context(app):
                assert app.state.manager is None

        build.assert_not_called()
