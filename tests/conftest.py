"""Shared pytest fixtures."""

from datetime import datetime, timezone
from typing import Optional, Union

import pytest

from apps.ingestor.llm import ModelBackend
from utils.config import Settings
from utils.schemas import ForumPost

Reply = Union[str, Exception]


def offers_reply(body: str) -> str:
    """Wrap a JSON body the way the model does."""
    return f"Here are the offers:\n```json\n{body}\n```\n"


class FakeBackend(ModelBackend):
    """Model backend answering from a script of replies or errors."""

    name = "fake"

    def __init__(self, replies: Optional[list[Reply]] = None, default: Reply = "") -> None:
        self.replies = list(replies or [])
        self.default = default
        self.prompts: list[str] = []
        self.closed = False

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def aclose(self) -> None:
        self.closed = True


class SleepRecorder:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_post(post_id: int, title: str = "", content: str = "", vote_count: int = 0) -> ForumPost:
    return ForumPost(
        id=str(post_id),
        title=title or f"Offer post {post_id}",
        content=content or f"Company X, SDE, total 100k ({post_id})",
        vote_count=vote_count,
        creation_date=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        GEMINI_API_KEY="test-key",
        DATASET_PATH=str(tmp_path / "data" / "parsed_comps.json"),
        CURSOR_PATH=str(tmp_path / "data" / ".leetcomp_metadata.json"),
    )
