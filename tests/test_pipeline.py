"""
Unit tests for the ingestion pipeline.
"""

import asyncio

import orjson
import pytest

from apps.ingestor.parser import OfferExtractor
from apps.ingestor.pipeline import CallBudget, IngestionPipeline, merge_offers
from apps.ingestor.store import LocalSnapshotStore
from utils.errors import ConfigurationError, ModelCallError
from utils.schemas import Cursor, Offer
from tests.conftest import FakeBackend, make_post, offers_reply


class FakeSource:
    """Post source yielding a fixed list, honoring cursor and limit."""

    def __init__(self, posts):
        self.posts = posts
        self.requests = []

    async def iter_posts(self, last_post_id=None, max_posts=2000):
        self.requests.append((last_post_id, max_posts))
        count = 0
        for post in self.posts:
            if count >= max_posts:
                break
            if last_post_id is not None and post.numeric_id <= int(last_post_id):
                break
            yield post
            count += 1


def make_offer(company, role="SDE", total_offer=50, post_id="1"):
    return Offer(company=company, role=role, total_offer=total_offer, post_id=post_id)


def build_pipeline(tmp_path, posts, backend, sleep, budget=None):
    store = LocalSnapshotStore(tmp_path / "comps.json", tmp_path / "meta.json")
    return IngestionPipeline(
        store=store,
        source=FakeSource(posts),
        extractor=OfferExtractor(backend, sleep=sleep),
        budget=budget,
        sleep=sleep,
    )


def read_dataset(tmp_path):
    return orjson.loads((tmp_path / "comps.json").read_bytes())


def read_cursor(tmp_path):
    return orjson.loads((tmp_path / "meta.json").read_bytes())


class TestMergeOffers:
    """Deduplicating merge."""

    def test_appends_new_offers(self):
        existing = [make_offer("Acme")]
        merged, added = merge_offers(existing, [make_offer("Globex", post_id="2")])

        assert [o.company for o in merged] == ["Acme", "Globex"]
        assert [o.company for o in added] == ["Globex"]

    def test_idempotent(self):
        batch = [make_offer("Acme"), make_offer("Globex", post_id="2")]

        once, _ = merge_offers([], batch)
        twice, added = merge_offers(once, batch)

        assert twice == once
        assert added == []

    def test_duplicates_within_batch_dropped(self):
        merged, added = merge_offers([], [make_offer("Acme"), make_offer("Acme")])

        assert len(merged) == 1
        assert len(added) == 1

    def test_key_distinguishes_post(self):
        merged, _ = merge_offers([make_offer("Acme", post_id="1")], [make_offer("Acme", post_id="2")])

        assert len(merged) == 2


class TestCallBudget:
    def test_exhausted_at_limit(self):
        budget = CallBudget(limit=2, used=1)
        assert not budget.exhausted

        budget.spend()

        assert budget.exhausted


class TestIngestionPipeline:
    """End-to-end runs with a fake source and model."""

    async def test_end_to_end_first_run(self, tmp_path, sleep):
        backend = FakeBackend(
            [
                offers_reply(
                    '[{"company": "Acme", "role": "SDE", "total_offer": 50},'
                    ' {"company": "Acme", "role": "SDE II", "total_offer": 70}]'
                ),
                "Sorry, no compensation information in this post.",
                offers_reply('[{"role": "Intern"}]'),
            ]
        )
        posts = [make_post(3), make_post(2), make_post(1)]
        pipeline = build_pipeline(tmp_path, posts, backend, sleep)

        result = await pipeline.run()

        assert result.processed == 3
        assert result.successful == 1
        assert result.new_offers == 2
        assert result.total_offers == 2
        assert result.stop_reason == "completed"
        assert not result.interrupted
        assert pipeline.state == "done"

        dataset = read_dataset(tmp_path)
        assert [o["role"] for o in dataset] == ["SDE", "SDE II"]
        assert dataset[0]["post_id"] == "3"
        assert dataset[0]["post_date"] == "2024-03-01"

        cursor = read_cursor(tmp_path)
        assert cursor["lastPostId"] == "3"
        assert cursor["totalOffers"] == 2
        assert isinstance(cursor["lastFetchTime"], int)

    async def test_existing_dataset_with_odd_record_survives_run(self, tmp_path, sleep):
        records = [make_offer(f"Company {i}", post_id=str(i)).model_dump() for i in range(50)]
        records.append({"company": "Legacy", "visa_sponsorship": "maybe"})
        (tmp_path / "comps.json").write_bytes(orjson.dumps(records))
        backend = FakeBackend([offers_reply('[{"company": "Acme", "total_offer": 70}]')])
        pipeline = build_pipeline(tmp_path, [make_post(100)], backend, sleep)

        result = await pipeline.run()

        assert result.new_offers == 1
        assert result.total_offers == 52
        dataset = read_dataset(tmp_path)
        assert len(dataset) == 52
        assert dataset[50]["company"] == "Legacy"
        assert dataset[50]["visa_sponsorship"] == "maybe"
        assert dataset[-1]["company"] == "Acme"

    async def test_full_mode_without_cursor(self, tmp_path, sleep):
        pipeline = build_pipeline(tmp_path, [], FakeBackend(), sleep)

        await pipeline.run()

        assert pipeline.source.requests == [(None, 2000)]

    async def test_incremental_mode_with_cursor(self, tmp_path, sleep):
        (tmp_path / "meta.json").write_bytes(orjson.dumps({"lastPostId": "2", "lastFetchTime": 1, "totalOffers": 0}))
        backend = FakeBackend(default=offers_reply('[{"company": "Acme"}]'))
        pipeline = build_pipeline(tmp_path, [make_post(4), make_post(3), make_post(2)], backend, sleep)

        result = await pipeline.run()

        assert pipeline.source.requests == [("2", 500)]
        assert result.processed == 2
        assert read_cursor(tmp_path)["lastPostId"] == "4"

    async def test_nothing_new_keeps_cursor(self, tmp_path, sleep):
        (tmp_path / "meta.json").write_bytes(orjson.dumps({"lastPostId": "9"}))
        pipeline = build_pipeline(tmp_path, [make_post(9)], FakeBackend(), sleep)

        result = await pipeline.run()

        assert result.processed == 0
        assert read_cursor(tmp_path) == {"lastPostId": "9"}
        assert read_dataset(tmp_path) == []

    async def test_negative_votes_skipped_without_call(self, tmp_path, sleep):
        backend = FakeBackend(default=offers_reply('[{"company": "Acme"}]'))
        posts = [make_post(2, vote_count=-3), make_post(1)]
        pipeline = build_pipeline(tmp_path, posts, backend, sleep)

        result = await pipeline.run()

        assert result.processed == 2
        assert backend.calls == 1
        assert read_cursor(tmp_path)["lastPostId"] == "2"

    async def test_budget_cap(self, tmp_path, sleep):
        backend = FakeBackend(default=offers_reply('[{"company": "Acme"}]'))
        posts = [make_post(3), make_post(2), make_post(1)]
        budget = CallBudget(limit=240, used=239)
        pipeline = build_pipeline(tmp_path, posts, backend, sleep, budget=budget)

        result = await pipeline.run()

        assert backend.calls == 1
        assert budget.used == 240
        assert result.processed == 1
        assert result.stop_reason == "budget"
        assert read_cursor(tmp_path)["lastPostId"] == "3"

    async def test_quota_stops_run_and_saves(self, tmp_path, sleep):
        backend = FakeBackend(
            [
                offers_reply('[{"company": "Acme"}]'),
                ModelCallError("Quota exceeded", status=429, quota_exceeded=True),
            ]
        )
        posts = [make_post(3), make_post(2), make_post(1)]
        pipeline = build_pipeline(tmp_path, posts, backend, sleep)

        result = await pipeline.run()

        assert result.stop_reason == "quota"
        assert backend.calls == 2
        assert result.processed == 2
        assert result.new_offers == 1
        assert [o["company"] for o in read_dataset(tmp_path)] == ["Acme"]

    async def test_throttling_cadence(self, tmp_path, sleep):
        backend = FakeBackend()
        posts = [make_post(i) for i in range(12, 0, -1)]
        pipeline = build_pipeline(tmp_path, posts, backend, sleep)

        await pipeline.run()

        # No pause before the first call; the long pause after every 10th
        assert sleep.delays == [0.5] * 9 + [2.0, 0.5]

    async def test_source_failure_still_saves(self, tmp_path, sleep):
        class BrokenSource(FakeSource):
            async def iter_posts(self, last_post_id=None, max_posts=2000):
                yield make_post(5)
                raise RuntimeError("connection reset")

        backend = FakeBackend(default=offers_reply('[{"company": "Acme"}]'))
        pipeline = build_pipeline(tmp_path, [], backend, sleep)
        pipeline.source = BrokenSource([])

        result = await pipeline.run()

        assert result.stop_reason == "error"
        assert result.new_offers == 1
        assert read_cursor(tmp_path)["lastPostId"] == "5"

    async def test_interrupt_saves_collected_offers(self, tmp_path, sleep):
        existing = [make_offer("Initech", post_id="1")]
        (tmp_path / "comps.json").write_bytes(orjson.dumps([o.model_dump() for o in existing]))

        class InterruptingBackend(FakeBackend):
            async def generate(self, prompt):
                if len(self.prompts) == 1:
                    pipeline.interrupt()
                    await asyncio.sleep(0)
                return await super().generate(prompt)

        backend = InterruptingBackend(
            default=offers_reply(
                '[{"company": "Acme", "total_offer": 50}, {"company": "Acme", "total_offer": 50}]'
            )
        )
        posts = [make_post(5), make_post(4), make_post(3)]
        pipeline = build_pipeline(tmp_path, posts, backend, sleep)

        result = await pipeline.run()

        assert result.interrupted
        assert result.stop_reason == "interrupted"
        assert result.new_offers == 1
        assert pipeline.state == "done"

        dataset = read_dataset(tmp_path)
        assert [(o["company"], o["post_id"]) for o in dataset] == [("Initech", "1"), ("Acme", "5")]
        assert read_cursor(tmp_path)["lastPostId"] == "5"

    async def test_cancelled_run_saves_then_propagates(self, tmp_path, sleep):
        class StallingBackend(FakeBackend):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                self.stalled = asyncio.Event()

            async def generate(self, prompt):
                if len(self.prompts) == 1:
                    self.stalled.set()
                    await asyncio.Event().wait()
                return await super().generate(prompt)

        backend = StallingBackend(default=offers_reply('[{"company": "Acme"}]'))
        pipeline = build_pipeline(tmp_path, [make_post(5), make_post(4)], backend, sleep)

        task = asyncio.create_task(pipeline.run())
        await backend.stalled.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert pipeline.interrupted
        assert pipeline.state == "done"
        assert [o["post_id"] for o in read_dataset(tmp_path)] == ["5"]
        assert read_cursor(tmp_path)["lastPostId"] == "5"

    async def test_interrupt_is_one_shot(self, tmp_path, sleep):
        pipeline = build_pipeline(tmp_path, [make_post(1)], FakeBackend(), sleep)

        pipeline.interrupt()
        pipeline.interrupt()
        result = await pipeline.run()

        assert result.interrupted
        assert result.processed == 0
        assert read_dataset(tmp_path) == []

    def test_from_settings_requires_api_key(self, settings):
        settings.GEMINI_API_KEY = None

        with pytest.raises(ConfigurationError):
            IngestionPipeline.from_settings(settings)

    async def test_from_settings_wires_limits(self, settings):
        settings.DAILY_CALL_BUDGET = 10
        extractor = OfferExtractor(FakeBackend())

        pipeline = IngestionPipeline.from_settings(settings, extractor=extractor)

        assert pipeline.budget.limit == 10
        assert pipeline.incremental_max_posts == 500
        assert pipeline.full_max_posts == 2000
        assert pipeline.store.output_path == settings.DATASET_PATH

        await pipeline.aclose()
        assert extractor.backend.closed


class TestCursor:
    def test_numeric_id_coerced(self):
        assert Cursor.model_validate({"lastPostId": 42}).last_post_id == "42"
