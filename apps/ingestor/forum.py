"""
Forum Post Source

Pages through the compensation category of the forum's GraphQL API and
yields full posts, newest first.

Features:
- Incremental fetch: stops at the first post at or below the cursor id
- Per-post isolation: a failed body fetch skips that post only
- Cooperative pause every few pages
- Exponential backoff retries on listing requests (tenacity)
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx
import orjson
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from apps.ingestor.queries import topic_content_payload, topic_list_payload
from utils.config import Settings
from utils.errors import ForumError
from utils.schemas import ForumPost

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class ForumClient:
    """Lazy, newest-first source of compensation posts."""

    def __init__(
        self,
        graphql_url: str,
        page_size: int = 50,
        pause_every_pages: int = 4,
        pause_seconds: float = 1.0,
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """
        Initialize forum client.

        Args:
            graphql_url: Forum GraphQL endpoint
            page_size: Topics requested per listing page
            pause_every_pages: Pause after this many pages
            pause_seconds: Length of the pause
            timeout: Request timeout in seconds
            max_retries: Attempts per listing request
            transport: Optional httpx transport (tests inject a MockTransport)
            sleep: Awaitable sleep, replaceable in tests
        """
        self.graphql_url = graphql_url
        self.page_size = page_size
        self.pause_every_pages = pause_every_pages
        self.pause_seconds = pause_seconds
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "ForumClient":
        return cls(
            graphql_url=settings.FORUM_GRAPHQL_URL,
            page_size=settings.FORUM_PAGE_SIZE,
            pause_every_pages=settings.FORUM_PAUSE_EVERY_PAGES,
            pause_seconds=settings.FORUM_PAUSE_SECONDS,
            timeout=settings.FORUM_TIMEOUT,
            max_retries=settings.FORUM_MAX_RETRIES,
            **kwargs,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"Content-Type": "application/json", "User-Agent": "compfeed-backend"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> dict[str, Any]:
        response = await client.post(self.graphql_url, content=orjson.dumps(payload))
        response.raise_for_status()
        return orjson.loads(response.content)

    async def _fetch_page(self, client: httpx.AsyncClient, skip: int) -> list[dict[str, Any]]:
        """Fetch one listing page with retries on transport errors and 5xx."""
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=1, max=5),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                data = await self._post(client, topic_list_payload(skip, self.page_size))

        topic_list = (data.get("data") or {}).get("categoryTopicList") or {}
        return topic_list.get("edges") or []

    async def fetch_content(self, client: httpx.AsyncClient, topic_id: int) -> str:
        """Fetch the full body of one topic.

        Raises:
            ForumError: If the response carries no content
            httpx.HTTPError: On transport or HTTP status failure
        """
        data = await self._post(client, topic_content_payload(topic_id))
        topic = (data.get("data") or {}).get("topic") or {}
        content = (topic.get("post") or {}).get("content")
        if not content:
            raise ForumError(f"Failed to fetch content for post_id={topic_id}")
        return content

    async def _build_post(self, client: httpx.AsyncClient, node: dict[str, Any]) -> ForumPost:
        topic_id = int(node["id"])
        content = await self.fetch_content(client, topic_id)
        post_meta = node.get("post") or {}
        return ForumPost(
            id=str(node["id"]),
            title=node.get("title") or "",
            content=content,
            vote_count=post_meta.get("voteCount") or 0,
            comment_count=node.get("commentCount") or 0,
            view_count=node.get("viewCount") or 0,
            creation_date=datetime.fromtimestamp(post_meta["creationDate"], tz=timezone.utc),
        )

    async def iter_posts(
        self,
        last_post_id: Optional[str] = None,
        max_posts: int = 2000,
    ) -> AsyncIterator[ForumPost]:
        """
        Yield posts newest-first until a stop condition is met.

        Stops when max_posts have been yielded, when a post id is at or below
        last_post_id, or when a page signals the end of the data. Never raises
        on exhaustion.

        Args:
            last_post_id: Cursor id; posts with id <= this were already processed
            max_posts: Maximum number of posts to yield
        """
        cursor_id = int(last_post_id) if last_post_id else None
        skip = 0
        pages = 0
        total = 0

        async with self._client() as client:
            while total < max_posts:
                try:
                    edges = await self._fetch_page(client, skip)
                except (httpx.HTTPError, ValueError) as e:
                    logger.error(
                        "Failed to fetch topic list, ending fetch",
                        extra={"skip": skip, "error": str(e)},
                    )
                    break

                if not edges:
                    logger.info("No more posts available at skip=%d. Total fetched: %d", skip, total)
                    break

                # Length before dropping the pinned post decides end-of-data
                original_count = len(edges)
                if skip == 0:
                    edges = edges[1:]

                yielded_on_page = 0
                reached_cursor = False

                for edge in edges:
                    if total >= max_posts:
                        break

                    node = edge.get("node") or {}
                    post_id = node.get("id")
                    try:
                        numeric_id = int(post_id)
                    except (TypeError, ValueError):
                        logger.warning("Skipping listing entry without a usable id: %r", post_id)
                        continue

                    if cursor_id is not None and numeric_id <= cursor_id:
                        logger.info(
                            "Reached last known post ID: %s (current: %s). Stopping incremental fetch.",
                            last_post_id,
                            post_id,
                        )
                        reached_cursor = True
                        break

                    try:
                        post = await self._build_post(client, node)
                    except (httpx.HTTPError, ForumError, KeyError, TypeError, ValueError, ValidationError) as e:
                        logger.warning("Skipping post %s: %s", post_id, e)
                        continue

                    yield post
                    total += 1
                    yielded_on_page += 1

                if reached_cursor:
                    break

                if original_count < self.page_size or yielded_on_page == 0:
                    logger.info(
                        "Reached end of posts at skip=%d (page=%d, yielded=%d, total=%d)",
                        skip,
                        original_count,
                        yielded_on_page,
                        total,
                    )
                    break

                skip += self.page_size
                pages += 1

                if pages % self.pause_every_pages == 0:
                    logger.info("Progress: fetched %d posts so far", total)
                    await self._sleep(self.pause_seconds)

        logger.info("Finished fetching posts. Total: %d", total)
