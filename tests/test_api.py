"""
Tests for the ingestion trigger API.
"""

import pytest
from fastapi.testclient import TestClient

from services.api.main import create_app
from services.api.routes import get_pipeline_factory
from utils.config import get_settings
from utils.schemas import RunResult


class FakePipeline:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.closed = False

    async def run(self):
        if self.error is not None:
            raise self.error
        return self.result

    async def aclose(self):
        self.closed = True


@pytest.fixture
def pipeline():
    return FakePipeline(
        RunResult(
            processed=3,
            successful=1,
            total_offers=12,
            new_offers=2,
            output_path="data/parsed_comps.json",
        )
    )


@pytest.fixture
def client(settings, pipeline):
    settings.CRON_SECRET = "s3cret"
    settings.CRON_TRUSTED_HEADER = "x-vercel-cron"

    app = create_app()
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_pipeline_factory] = lambda: (lambda _settings: pipeline)
    return TestClient(app)


class TestCronEndpoint:
    """GET /api/cron"""

    def test_success(self, client, pipeline):
        response = client.get("/api/cron", headers={"Authorization": "Bearer s3cret"})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Data refreshed successfully",
            "processed": 3,
            "successful": 1,
            "totalOffers": 12,
            "newOffers": 2,
            "outputPath": "data/parsed_comps.json",
        }
        assert pipeline.closed

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "s3cret"}])
    def test_unauthorized(self, client, pipeline, headers):
        response = client.get("/api/cron", headers=headers)

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}
        assert not pipeline.closed

    def test_trusted_scheduler_header_bypasses_token(self, client):
        response = client.get("/api/cron", headers={"x-vercel-cron": "1"})

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_open_without_secret(self, client, settings):
        settings.CRON_SECRET = None

        assert client.get("/api/cron").status_code == 200

    def test_failure(self, client, pipeline):
        pipeline.error = RuntimeError("forum unreachable")

        response = client.get("/api/cron", headers={"Authorization": "Bearer s3cret"})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to refresh data", "details": "forum unreachable"}
        assert pipeline.closed


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestTrustedHeaderValue:
    """CRON_TRUSTED_HEADER_VALUE pins the scheduler header to a value."""

    @pytest.fixture(autouse=True)
    def pin_value(self, settings):
        settings.CRON_TRUSTED_HEADER_VALUE = "1"

    def test_matching_value_accepted(self, client):
        assert client.get("/api/cron", headers={"x-vercel-cron": "1"}).status_code == 200

    def test_other_value_rejected(self, client, pipeline):
        response = client.get("/api/cron", headers={"x-vercel-cron": "anything"})

        assert response.status_code == 401
        assert not pipeline.closed

    def test_bearer_still_accepted(self, client):
        response = client.get("/api/cron", headers={"x-vercel-cron": "no", "Authorization": "Bearer s3cret"})

        assert response.status_code == 200


class TestShutdown:
    """Active ingestion bookkeeping and shutdown interrupt."""

    def test_pipeline_registered_while_running(self, client, pipeline):
        seen = []
        original_run = pipeline.run

        async def run():
            seen.append(client.app.state.active_pipeline)
            return await original_run()

        pipeline.run = run

        client.get("/api/cron", headers={"Authorization": "Bearer s3cret"})

        assert seen == [pipeline]
        assert client.app.state.active_pipeline is None

    def test_shutdown_interrupts_active_pipeline(self, client):
        interrupts = []

        class RunningPipeline:
            def interrupt(self):
                interrupts.append(True)

        with client:
            client.app.state.active_pipeline = RunningPipeline()

        assert interrupts == [True]

    def test_shutdown_without_active_pipeline(self, client):
        with client:
            pass

        assert client.app.state.active_pipeline is None
