"""SQLAlchemy ORM models for quotes and their engagement edges.

``quote_likes`` and ``saved_quotes`` are pure join tables keyed by the
``(user_id, quote_id)`` pair.  The composite primary key is what makes edge
writes idempotent: inserting an existing pair is resolved with
``ON CONFLICT DO NOTHING`` by the engagement repository.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Quote(Base):
    __tablename__ = "quotes"
    __table_args__ = (Index("ix_quotes_created_at_id", "created_at", "id"),)

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        index=True,
        doc="Opaque identifier of the owning user; only the owner may delete.",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class QuoteLike(Base):
    """A user liked a quote.  At most one row per pair."""

    __tablename__ = "quote_likes"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    quote_id: Mapped[str] = mapped_column(
        ForeignKey("quotes.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class SavedQuote(Base):
    """A user saved a quote.  Independent of :class:`QuoteLike`."""

    __tablename__ = "saved_quotes"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    quote_id: Mapped[str] = mapped_column(
        ForeignKey("quotes.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


__all__ = [
    "Base",
    "Quote",
    "QuoteLike",
    "SavedQuote",
    "utcnow",
]
