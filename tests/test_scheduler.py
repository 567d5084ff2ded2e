"""
Tests for the ingestion scheduler and configuration.
"""

import asyncio
import logging
import signal

import orjson
import pytest

from apps.ingestor.pipeline import IngestionPipeline
from apps.ingestor.scheduler import IngestionScheduler
from utils.config import Settings
from utils.errors import ConfigurationError
from utils.logging import JsonFormatter
from utils.schemas import RunResult


class FakePipeline:
    def __init__(self, interrupted=False):
        self.interrupts = 0
        self.closed = False
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.release.set()
        self._interrupted = interrupted

    def interrupt(self):
        self.interrupts += 1
        self._interrupted = True
        self.release.set()

    async def run(self):
        self.started.set()
        await self.release.wait()
        return RunResult(
            processed=1,
            interrupted=self._interrupted,
            stop_reason="interrupted" if self._interrupted else "completed",
        )

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_pipeline(monkeypatch):
    pipeline = FakePipeline()
    monkeypatch.setattr(IngestionPipeline, "from_settings", classmethod(lambda cls, settings: pipeline))
    return pipeline


class TestIngestionScheduler:
    async def test_run_once_signals_shutdown(self, settings, fake_pipeline):
        scheduler = IngestionScheduler(settings, run_once=True)

        result = await scheduler.execute_ingestion()

        assert result.processed == 1
        assert fake_pipeline.closed
        assert scheduler.shutdown_event.is_set()

    async def test_scheduled_run_keeps_running(self, settings, fake_pipeline):
        scheduler = IngestionScheduler(settings)

        await scheduler.execute_ingestion()

        assert not scheduler.shutdown_event.is_set()

    async def test_signal_interrupts_active_run(self, settings, fake_pipeline):
        fake_pipeline.release.clear()
        scheduler = IngestionScheduler(settings)

        task = asyncio.create_task(scheduler.execute_ingestion())
        await fake_pipeline.started.wait()
        scheduler._handle_signal(signal.SIGTERM)
        result = await task

        assert fake_pipeline.interrupts == 1
        assert result.interrupted
        assert scheduler.shutdown_event.is_set()

    async def test_start_requires_api_key(self, settings):
        settings.GEMINI_API_KEY = None
        scheduler = IngestionScheduler(settings, run_once=True)

        with pytest.raises(ConfigurationError):
            await scheduler.start()


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.DAILY_CALL_BUDGET == 240
        assert settings.FORUM_PAGE_SIZE == 50
        assert settings.EXTRACT_SCHEDULE_CRON == "0 3 * * *"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("DAILY_CALL_BUDGET", "100")
        monkeypatch.setenv("MODEL_PROVIDER", "perplexity")
        monkeypatch.setenv("PERPLEXITY_API_KEY", "pplx-key")

        settings = Settings(_env_file=None)

        assert settings.DAILY_CALL_BUDGET == 100
        assert settings.require_model_api_key() == "pplx-key"

    def test_gist_enabled(self, settings):
        assert not settings.gist_enabled

        settings.GIST_ID = "abc"

        assert settings.gist_enabled


def test_json_formatter_includes_extra():
    record = logging.LogRecord("ingestor", logging.INFO, __file__, 1, "Saved %d offers", (3,), None)
    record.output_path = "data/parsed_comps.json"

    payload = orjson.loads(JsonFormatter().format(record))

    assert payload["message"] == "Saved 3 offers"
    assert payload["level"] == "INFO"
    assert payload["output_path"] == "data/parsed_comps.json"
