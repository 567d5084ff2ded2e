"""
Offer Extraction

Sends one post to the language model and turns the reply into validated
offers.

A reply is usable only if it contains a fenced ```json block holding an array
of offer objects. Anything else means "no offers" for that post. Model call
failures never propagate, with one exception: a quota-exceeded 429 on the
first attempt raises QuotaExhaustedError so the caller stops for the day.
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Optional

import orjson
from pydantic import TypeAdapter, ValidationError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from apps.ingestor.llm import ModelBackend
from apps.ingestor.prompts import build_prompt
from utils.config import Settings
from utils.errors import ModelCallError, QuotaExhaustedError
from utils.schemas import ExtractedOffer, ForumPost

logger = logging.getLogger(__name__)

JSON_BLOCK_RE = re.compile(r"```json\s*\n(.*?)\n\s*```", re.DOTALL)

_offers_adapter = TypeAdapter(list[ExtractedOffer])

SleepFn = Callable[[float], Awaitable[None]]


def parse_json_markdown(markdown: str) -> Any:
    """Return the parsed content of the first ```json block, or None."""
    match = JSON_BLOCK_RE.search(markdown or "")
    if not match:
        return None
    try:
        return orjson.loads(match.group(1))
    except orjson.JSONDecodeError:
        return None


def validate_offers(payload: Any) -> Optional[list[ExtractedOffer]]:
    """Validate a parsed payload and keep only valid offers.

    Returns:
        The valid offers, or None if the payload is malformed or none survive
    """
    if payload is None:
        return None

    try:
        offers = _offers_adapter.validate_python(payload)
    except ValidationError:
        return None

    valid = [offer for offer in offers if offer.is_valid()]
    return valid or None


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, ModelCallError) and exc.rate_limited


class OfferExtractor:
    """Extract compensation offers from a post with a language model."""

    def __init__(
        self,
        backend: ModelBackend,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """
        Initialize extractor.

        Args:
            backend: Model backend that answers prompts
            max_retries: Retries after a rate-limited first attempt
            backoff_base: Delay before retry n is backoff_base * 2**n seconds
            sleep: Awaitable sleep, replaceable in tests
        """
        self.backend = backend
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, backend: ModelBackend, **kwargs: Any) -> "OfferExtractor":
        return cls(
            backend=backend,
            max_retries=settings.EXTRACT_MAX_RETRIES,
            backoff_base=settings.EXTRACT_BACKOFF_BASE,
            **kwargs,
        )

    def _backoff(self, retry_state: RetryCallState) -> float:
        """Server-suggested delay if present, else 2s, 4s, 8s..."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, ModelCallError) and exc.retry_after is not None:
            return exc.retry_after
        return self.backoff_base * (2 ** (retry_state.attempt_number - 1))

    def _log_retry(self, post: ForumPost) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "[Post %s] Rate limited. Retrying in %.1fs... (attempt %d/%d)",
                post.id,
                delay,
                retry_state.attempt_number,
                self.max_retries,
            )

        return before_sleep

    async def _generate(self, post: ForumPost, prompt: str) -> str:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_rate_limited),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._backoff,
            sleep=self._sleep,
            before_sleep=self._log_retry(post),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                try:
                    return await self.backend.generate(prompt)
                except ModelCallError as e:
                    # Only a quota signal on the first attempt is treated as
                    # daily exhaustion; later ones retry as plain rate limits.
                    if e.rate_limited and e.quota_exceeded and attempt.retry_state.attempt_number == 1:
                        logger.warning(
                            "Quota exceeded! Daily limit reached. Stopping processing to avoid further errors.",
                            extra={"post_id": post.id, "provider": self.backend.name},
                        )
                        raise QuotaExhaustedError(e.message) from e
                    raise

    async def extract(self, post: ForumPost) -> Optional[list[ExtractedOffer]]:
        """
        Extract offers from a single post.

        Args:
            post: Post to extract from

        Returns:
            Non-empty list of valid offers, or None when the post has no usable
            compensation data or the call failed

        Raises:
            QuotaExhaustedError: If the provider's daily quota is spent
        """
        prompt = build_prompt(post.title, post.content)

        try:
            text = await self._generate(post, prompt)
        except QuotaExhaustedError:
            raise
        except ModelCallError as e:
            if e.rate_limited:
                logger.error("[Post %s] Max retries reached. Skipping.", post.id)
            else:
                logger.error("[Post %s] Error parsing: %s", post.id, e.message)
            return None
        except Exception as e:
            logger.error("[Post %s] Error parsing: %s", post.id, e, exc_info=True)
            return None

        return validate_offers(parse_json_markdown(text))
