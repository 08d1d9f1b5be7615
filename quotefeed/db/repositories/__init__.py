"""Repositories wrapping SQLAlchemy access for quotes and engagement edges."""

from quotefeed.db.repositories.engagement_repository import EngagementRepository
from quotefeed.db.repositories.quote_repository import QuoteRepository

__all__ = ["EngagementRepository", "QuoteRepository"]
