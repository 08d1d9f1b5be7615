"""FastAPI router for the engagement feed: likes, saves and feed pages."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from quotefeed.schemas.feed import EngagementResult, FeedPage, FeedSort, QuoteListResponse
from quotefeed.services.dependencies import (
    get_current_user_id,
    get_engagement_service,
    get_feed_service,
    get_optional_user_id,
)
from quotefeed.services.engagement_service import EngagementService
from quotefeed.services.feed_service import MAX_PAGE_SIZE, FeedService

router = APIRouter()


def _write_status(result: EngagementResult, response: Response) -> EngagementResult:
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return result


@router.get("", response_model=FeedPage, response_model_exclude_none=True)
async def get_feed(
    sort: FeedSort = Query(FeedSort.NEWEST, description="Feed ordering"),
    cursor: str | None = Query(None, description="Opaque cursor from a previous newest page"),
    offset: int = Query(0, ge=0, description="Row offset for the popular feed"),
    limit: int | None = Query(None, ge=1, le=MAX_PAGE_SIZE),
    user_id: str | None = Depends(get_optional_user_id),
    service: FeedService = Depends(get_feed_service),
) -> FeedPage:
    """Return one feed page; ``liked``/``saved`` are only set for signed-in callers."""

    return await service.get_feed(
        sort=sort, cursor=cursor, offset=offset, limit=limit, user_id=user_id
    )


@router.get("/likes", response_model=QuoteListResponse)
async def list_liked_quotes(
    user_id: str = Depends(get_current_user_id),
    service: FeedService = Depends(get_feed_service),
) -> QuoteListResponse:
    return await service.list_liked(user_id)


@router.post(
    "/likes/{quote_id}",
    response_model=EngagementResult,
    status_code=status.HTTP_201_CREATED,
    responses={200: {"description": "Quote was already liked"}},
)
async def like_quote(
    quote_id: UUID,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    service: EngagementService = Depends(get_engagement_service),
) -> EngagementResult:
    result = await service.like(user_id, str(quote_id))
    return _write_status(result, response)


@router.delete("/likes/{quote_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlike_quote(
    quote_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: EngagementService = Depends(get_engagement_service),
) -> Response:
    """Remove a like.  Unliking a quote that was never liked is still a 204."""

    await service.unlike(user_id, str(quote_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/saved", response_model=QuoteListResponse)
async def list_saved_quotes(
    user_id: str = Depends(get_current_user_id),
    service: FeedService = Depends(get_feed_service),
) -> QuoteListResponse:
    return await service.list_saved(user_id)


@router.post(
    "/saved/{quote_id}",
    response_model=EngagementResult,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    responses={200: {"description": "Quote was already saved"}},
)
async def save_quote(
    quote_id: UUID,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    service: EngagementService = Depends(get_engagement_service),
) -> EngagementResult:
    result = await service.save(user_id, str(quote_id))
    return _write_status(result, response)


@router.delete("/saved/{quote_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unsave_quote(
    quote_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: EngagementService = Depends(get_engagement_service),
) -> Response:
    await service.unsave(user_id, str(quote_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
