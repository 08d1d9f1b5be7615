"""Pydantic schemas for the feed and engagement endpoints.

Responses serialize with camelCase aliases (``likeCount``, ``nextCursor``)
because that is the shape the web client already consumes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class FeedSort(str, Enum):
    NEWEST = "newest"
    POPULAR = "popular"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class QuoteOut(_CamelModel):
    """A quote as stored, without engagement annotations."""

    id: str
    text: str
    author: str | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime


class FeedItem(QuoteOut):
    """A quote annotated with its like count and the caller's membership flags.

    ``liked`` and ``saved`` stay ``None`` for anonymous callers.
    """

    like_count: int = Field(0, ge=0)
    liked: bool | None = None
    saved: bool | None = None


class FeedPage(_CamelModel):
    items: list[FeedItem] = Field(default_factory=list)
    next_cursor: str | None = None
    next_offset: int | None = None


class QuoteListResponse(_CamelModel):
    items: list[FeedItem] = Field(default_factory=list)
    total: int = 0


class EngagementResult(_CamelModel):
    """Outcome of a like/save write.

    ``created`` distinguishes a new edge (HTTP 201) from an idempotent repeat
    (HTTP 200).  ``like_count`` is ``None`` when no store could report it.
    """

    quote_id: str
    active: bool
    created: bool = False
    like_count: int | None = Field(None, ge=0)


__all__ = [
    "EngagementResult",
    "FeedItem",
    "FeedPage",
    "FeedSort",
    "QuoteListResponse",
    "QuoteOut",
]
