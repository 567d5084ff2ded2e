"""
Ingestion Pipeline - Fetch, Extract, Merge, Save

Drives one end-to-end ingestion run:

    Idle -> Loading -> Fetching/Extracting -> Saving -> Done
                              |                  ^
                              +-- Interrupted ---+

Features:
- Full vs. incremental mode from the stored cursor
- Daily model-call budget and cooperative delays between calls
- Quota exhaustion and budget cap end the loop early without failing the run
- One-shot interrupt: whatever was collected is merged and saved
- Cancellation from outside also saves before propagating
- Deduplicating merge on (company, role, total_offer, post_id)

Usage:
    pipeline = IngestionPipeline.from_settings(get_settings())
    try:
        result = await pipeline.run()
    finally:
        await pipeline.aclose()
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from apps.ingestor.forum import ForumClient
from apps.ingestor.llm import build_backend
from apps.ingestor.parser import OfferExtractor
from apps.ingestor.store import SnapshotStore, build_store
from utils.config import Settings
from utils.errors import QuotaExhaustedError
from utils.schemas import Cursor, ForumPost, Offer, RunResult, StopReason

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class CallBudget:
    """Counter of model calls against a daily cap.

    The cap sits below the provider's advertised daily limit to leave headroom.
    """

    def __init__(self, limit: int = 240, used: int = 0) -> None:
        self.limit = limit
        self.used = used

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def spend(self) -> None:
        self.used += 1


def merge_offers(existing: list[Offer], new: list[Offer]) -> tuple[list[Offer], list[Offer]]:
    """
    Append new offers that are not already present.

    Existing offers keep their order. A later offer with the same
    (company, role, total_offer, post_id) as an earlier one is dropped, so
    merging the same batch twice adds nothing the second time.

    Returns:
        (merged dataset, offers actually added)
    """
    seen = {offer.key() for offer in existing}
    added: list[Offer] = []

    for offer in new:
        key = offer.key()
        if key in seen:
            continue
        seen.add(key)
        added.append(offer)

    return existing + added, added


@dataclass
class RunProgress:
    """Mutable state of the fetch/extract loop."""

    processed: int = 0
    successful: int = 0
    calls: int = 0
    offers: list[Offer] = field(default_factory=list)
    last_post: Optional[ForumPost] = None

    def observe(self, post: ForumPost) -> None:
        if self.last_post is None or post.numeric_id > self.last_post.numeric_id:
            self.last_post = post


class IngestionPipeline:
    """
    Orchestrates a single ingestion run.

    A pipeline instance is meant for one run; build a fresh one per run.
    """

    def __init__(
        self,
        store: SnapshotStore,
        source: ForumClient,
        extractor: OfferExtractor,
        budget: Optional[CallBudget] = None,
        incremental_max_posts: int = 500,
        full_max_posts: int = 2000,
        call_delay: float = 0.5,
        long_pause_every: int = 10,
        long_pause: float = 2.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """
        Initialize pipeline.

        Args:
            store: Where the dataset and cursor live
            source: Forum post source
            extractor: Model-backed offer extractor
            budget: Daily call budget (default: 240 calls, none used)
            incremental_max_posts: Post limit when a cursor exists
            full_max_posts: Post limit without a cursor
            call_delay: Pause between model calls
            long_pause_every: Take the long pause after every this many calls
            long_pause: Length of the long pause
            sleep: Awaitable sleep, replaceable in tests
        """
        self.store = store
        self.source = source
        self.extractor = extractor
        self.budget = budget or CallBudget()
        self.incremental_max_posts = incremental_max_posts
        self.full_max_posts = full_max_posts
        self.call_delay = call_delay
        self.long_pause_every = long_pause_every
        self.long_pause = long_pause
        self._sleep = sleep

        self.state = "idle"
        self._interrupted = False
        self._loop_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "IngestionPipeline":
        """
        Build a pipeline from settings.

        Raises:
            ConfigurationError: If the model API key is missing (before any network call)
        """
        if "extractor" not in overrides:
            backend = build_backend(settings)
            overrides["extractor"] = OfferExtractor.from_settings(settings, backend)

        params: dict[str, Any] = {
            "store": build_store(settings),
            "source": ForumClient.from_settings(settings),
            "budget": CallBudget(limit=settings.DAILY_CALL_BUDGET),
            "incremental_max_posts": settings.INCREMENTAL_MAX_POSTS,
            "full_max_posts": settings.FULL_MAX_POSTS,
            "call_delay": settings.CALL_DELAY_SECONDS,
            "long_pause_every": settings.LONG_PAUSE_EVERY_CALLS,
            "long_pause": settings.LONG_PAUSE_SECONDS,
        }
        params.update(overrides)
        return cls(**params)

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    def interrupt(self) -> None:
        """Stop fetching and save what has been collected. Later calls are no-ops."""
        if self._interrupted:
            return
        self._interrupted = True
        logger.warning("Interrupted! Saving collected data...")

        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()

    async def _throttle(self, calls: int) -> None:
        if calls == 0:
            return
        if calls % self.long_pause_every == 0:
            logger.info("Rate limiting: waiting %.1fs... (%d API calls made)", self.long_pause, calls)
            await self._sleep(self.long_pause)
        else:
            await self._sleep(self.call_delay)

    async def _ingest(self, last_post_id: Optional[str], max_posts: int, progress: RunProgress) -> StopReason:
        posts = self.source.iter_posts(last_post_id=last_post_id, max_posts=max_posts)

        async with aclosing(posts):
            async for post in posts:
                if self.budget.exhausted:
                    logger.warning(
                        "Approaching daily API limit (%d/%d). Stopping to avoid quota errors. "
                        "Remaining posts will be processed in the next run.",
                        self.budget.used,
                        self.budget.limit,
                        extra={"processed": progress.processed, "successful": progress.successful},
                    )
                    return "budget"

                progress.processed += 1
                progress.observe(post)
                logger.info('[%d] Parsing "%s"', progress.processed, post.title)

                if post.vote_count < 0:
                    logger.info("Skipping post %s due to negative votes", post.id)
                    continue

                await self._throttle(progress.calls)

                self.budget.spend()
                progress.calls += 1

                try:
                    extracted = await self.extractor.extract(post)
                except QuotaExhaustedError:
                    logger.warning(
                        "Daily quota exceeded. Stopping processing. Remaining posts will be processed tomorrow.",
                        extra={"processed": progress.processed, "successful": progress.successful},
                    )
                    return "quota"

                if extracted:
                    progress.successful += 1
                    progress.offers.extend(Offer.from_extracted(offer, post) for offer in extracted)
                    logger.info("Found %d offer(s) in post %s", len(extracted), post.id)
                else:
                    logger.info("No valid offers found in post %s", post.id)

        return "completed"

    async def run(self) -> RunResult:
        """
        Execute the run and persist the result.

        Returns:
            Run summary; `interrupted` is set when interrupt() cut the loop short
        """
        self.state = "loading"
        snapshot = await self.store.load()

        incremental = snapshot.cursor is not None
        last_post_id = snapshot.cursor.last_post_id if snapshot.cursor else None
        max_posts = self.incremental_max_posts if incremental else self.full_max_posts

        if incremental:
            logger.info("Incremental update mode: fetching new posts since %s", last_post_id)
        else:
            logger.info("Full fetch mode: fetching all posts")

        progress = RunProgress()
        stop_reason: StopReason = "completed"
        external_cancel: Optional[asyncio.CancelledError] = None

        if self._interrupted:
            stop_reason = "interrupted"
        else:
            self.state = "fetching"
            self._loop_task = asyncio.create_task(self._ingest(last_post_id, max_posts, progress))
            try:
                stop_reason = await self._loop_task
            except asyncio.CancelledError as e:
                if not self._interrupted:
                    # Cancelled from outside (server shutdown, caller timeout):
                    # save what was collected, then let the cancellation through
                    logger.warning("Ingestion cancelled! Saving collected data...")
                    self._interrupted = True
                    external_cancel = e
                self.state = "interrupted"
                stop_reason = "interrupted"
            except Exception as e:
                logger.error("Error during processing, saving collected data", extra={"error": str(e)}, exc_info=True)
                stop_reason = "error"
            finally:
                self._loop_task = None

        self.state = "saving"
        merged, added = merge_offers(snapshot.offers, progress.offers)
        cursor = Cursor(last_post_id=progress.last_post.id) if progress.last_post else None
        await self.store.save(merged, cursor)

        self.state = "done"
        result = RunResult(
            processed=progress.processed,
            successful=progress.successful,
            total_offers=len(merged),
            new_offers=len(added),
            output_path=self.store.output_path,
            stop_reason=stop_reason,
            interrupted=self._interrupted,
        )

        logger.info(
            "Done! Processed: %d new posts, successful: %d, new offers: %d, total offers: %d (%d existing + %d new)",
            result.processed,
            result.successful,
            result.new_offers,
            result.total_offers,
            len(snapshot.offers),
            result.new_offers,
            extra={"stop_reason": stop_reason, "output_path": result.output_path},
        )

        if external_cancel is not None:
            raise external_cancel
        return result

    async def aclose(self) -> None:
        await self.extractor.backend.aclose()
