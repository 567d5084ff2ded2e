"""
Pydantic Schemas - Data Validation Models

Defines all Pydantic schemas for data validation throughout the pipeline:
- Forum posts fetched from the discussion API
- Offers returned by the language model
- Offers persisted in the dataset file
- The cursor record and run summary

Usage:
    from utils.schemas import ExtractedOffer

    offer = ExtractedOffer(**raw_data)
    if not offer.is_valid():
        ...
"""

from datetime import datetime
from typing import Any, Literal, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, field_validator

# Model output must carry real JSON numbers; "120000" is a structural error.
StrictNumber = Union[StrictInt, StrictFloat]

VisaSponsorship = Literal["yes", "no"]

OfferKey = tuple[Any, Any, Any, Any]


class ForumPost(BaseModel):
    """A compensation post fetched from the forum.

    The id is an opaque ordinal string; a numerically higher id is a newer post.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Topic ID")
    title: str
    content: str = Field(..., description="Raw post body")
    vote_count: int = 0
    comment_count: int = 0
    view_count: int = 0
    creation_date: datetime = Field(..., description="Post creation time (UTC)")

    @property
    def numeric_id(self) -> int:
        return int(self.id)


class OfferFields(BaseModel):
    """Offer attributes shared by model output and persisted records."""

    company: Optional[str] = None
    role: Optional[str] = None
    yoe: Optional[float] = None
    base_offer: Optional[float] = None
    total_offer: Optional[float] = None
    location: Optional[str] = None
    visa_sponsorship: Optional[VisaSponsorship] = None

    def is_valid(self) -> bool:
        """An offer needs a company name or some compensation figure."""
        has_company = bool(self.company)
        has_compensation = bool(self.base_offer or self.total_offer)
        return has_company or has_compensation


class ExtractedOffer(OfferFields):
    """One offer object as returned by the language model.

    Every field is optional and nullable. Wrong types invalidate the payload;
    out-of-range numbers are nulled instead.
    """

    model_config = ConfigDict(extra="ignore")

    yoe: Optional[StrictNumber] = None
    base_offer: Optional[StrictNumber] = None
    total_offer: Optional[StrictNumber] = None

    @field_validator("visa_sponsorship", mode="before")
    @classmethod
    def normalize_visa(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("yoe")
    @classmethod
    def drop_negative_yoe(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            return None
        return v

    @field_validator("base_offer", "total_offer")
    @classmethod
    def drop_non_positive_compensation(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            return None
        return v


def _hashable(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return orjson.dumps(value, option=orjson.OPT_SORT_KEYS)
    return value


class Offer(OfferFields):
    """A dataset record: an extracted offer stamped with its source post."""

    model_config = ConfigDict(extra="allow")

    yoe: Optional[Union[int, float]] = None
    base_offer: Optional[Union[int, float]] = None
    total_offer: Optional[Union[int, float]] = None

    post_id: Optional[str] = None
    post_title: Optional[str] = None
    post_date: Optional[str] = Field(default=None, description="YYYY-MM-DD (UTC)")
    post_timestamp: Optional[int] = Field(default=None, description="Epoch milliseconds")

    @field_validator("post_id", mode="before")
    @classmethod
    def coerce_post_id(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v

    @classmethod
    def from_extracted(cls, extracted: ExtractedOffer, post: ForumPost) -> "Offer":
        """Stamp provenance fields from the source post onto an extracted offer."""
        return cls(
            **extracted.model_dump(),
            post_id=post.id,
            post_title=post.title,
            post_date=post.creation_date.date().isoformat(),
            post_timestamp=int(post.creation_date.timestamp() * 1000),
        )

    def key(self) -> OfferKey:
        """Uniqueness key within the dataset.

        Records kept verbatim from an older dataset may hold arbitrary JSON in
        these fields; containers are keyed by their serialized form.
        """
        return tuple(_hashable(value) for value in (self.company, self.role, self.total_offer, self.post_id))


class Cursor(BaseModel):
    """Bookmark for incremental fetching.

    Serialized with camelCase keys: {lastPostId, lastFetchTime, totalOffers}.
    """

    model_config = ConfigDict(populate_by_name=True)

    last_post_id: str = Field(..., alias="lastPostId")
    last_fetch_time: Optional[int] = Field(default=None, alias="lastFetchTime")
    total_offers: Optional[int] = Field(default=None, alias="totalOffers")

    @field_validator("last_post_id", mode="before")
    @classmethod
    def coerce_last_post_id(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v


StopReason = Literal["completed", "budget", "quota", "error", "interrupted"]


class RunResult(BaseModel):
    """Summary of one ingestion run."""

    model_config = ConfigDict(populate_by_name=True)

    processed: int = 0
    successful: int = 0
    total_offers: int = Field(default=0, alias="totalOffers")
    new_offers: int = Field(default=0, alias="newOffers")
    output_path: str = Field(default="", alias="outputPath")
    stop_reason: StopReason = "completed"
    interrupted: bool = False

    def counts(self) -> dict[str, Any]:
        """Counts in the shape the trigger endpoint returns."""
        return self.model_dump(
            by_alias=True,
            include={"processed", "successful", "total_offers", "new_offers", "output_path"},
        )
