"""Owner-scoped quote management."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from quotefeed.services.dependencies import get_current_user_id, get_engagement_service
from quotefeed.services.engagement_service import EngagementService

router = APIRouter()


@router.delete("/{quote_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_quote(
    quote_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: EngagementService = Depends(get_engagement_service),
) -> Response:
    """Delete a quote the caller owns, along with its likes and saves.

    Quotes owned by someone else answer 404 so their existence is not revealed.
    """

    await service.purge_quote(str(quote_id), owner_id=user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
