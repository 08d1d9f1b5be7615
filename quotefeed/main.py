import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sqlalchemy.exc import (
    DatabaseError,
    DBAPIError,
    OperationalError,
)
from sqlalchemy.exc import (
    TimeoutError as SQLAlchemyTimeoutError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

from quotefeed.api import feed, quotes
from quotefeed.cache import RedisConnection
from quotefeed.db.connection import (
    create_engine,
    create_session_factory,
    init_models,
    sanitize_database_url,
)
from quotefeed.events.kafka_log import KafkaEventProducer
from quotefeed.schemas.error import ErrorType, ValidationErrorDetail
from quotefeed.services.counter_store import CounterStore
from quotefeed.services.engagement_service import (
    EngagementUnavailableError,
    QuoteNotFoundError,
)
from quotefeed.services.event_publisher import EventPublisher
from quotefeed.services.feed_service import InvalidCursorError
from quotefeed.settings import get_settings
from quotefeed.utils.error_responses import (
    build_error_response,
    build_validation_error_response,
    error_json_response,
)
from quotefeed.utils.request_context import (
    REQUEST_ID_HEADER,
    clear_request_id,
    get_request_id,
    request_id_from_header,
    set_request_id,
)
from quotefeed.warmup import warmup_all

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level_numeric,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def validate_environment() -> None:
    """Log warnings for unset optional configuration."""

    warnings = settings.optional_config_warnings()
    if warnings:
        logger.warning("=" * 60)
        logger.warning("Environment Configuration Warnings:")
        for warning in warnings:
            logger.warning("  • %s", warning)
        logger.warning("=" * 60)


def build_event_publisher() -> EventPublisher:
    brokers = settings.kafka_brokers
    producer = (
        KafkaEventProducer(brokers, client_id=settings.kafka_client_id) if brokers else None
    )
    return EventPublisher(
        producer,
        likes_topic=settings.kafka_likes_topic,
        saves_topic=settings.kafka_saves_topic,
        timeout_seconds=settings.event_publish_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the engine, Redis connection and event producer for the app's lifetime."""
    validate_environment()

    logger.info("=" * 60)
    logger.info("Quote Feed API - Startup")
    logger.info("=" * 60)
    logger.info("Database Type: %s", settings.database_type.upper())
    logger.info("Database URL: %s", sanitize_database_url(settings.resolved_database_url))
    logger.info("Kafka brokers: %s", ", ".join(settings.kafka_brokers) or "(disabled)")
    logger.info("=" * 60)

    engine = create_engine(settings)
    await init_models(engine)
    redis_connection = RedisConnection(
        settings.redis_url, retry_backoff_seconds=settings.redis_retry_backoff_seconds
    )
    publisher = build_event_publisher()

    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.redis_connection = redis_connection
    app.state.counter_store = CounterStore(redis_connection)
    app.state.event_publisher = publisher

    await warmup_all(engine, redis_connection)

    try:
        yield
    finally:
        logger.info("Shutting down Quote Feed API")
        await publisher.close()
        await redis_connection.close()
        await engine.dispose()


app = FastAPI(
    title="Quote Feed API",
    version="0.1.0",
    description="Feed pages and like/save engagement for shared quotes.",
    lifespan=lifespan,
    redirect_slashes=False,
)

if settings.cors_allow_origins:
    logger.info("Configured CORS allow_origins: %s", ", ".join(settings.cors_allow_origins))

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Tag each request with an id that error payloads and logs can quote."""
    request_id = request_id_from_header(request.headers.get(REQUEST_ID_HEADER))
    token = set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        clear_request_id(token)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def _validation_details(errors: list[dict]) -> list[ValidationErrorDetail]:
    return [
        ValidationErrorDetail(
            field=".".join(str(loc) for loc in error["loc"]),
            message=error["msg"],
            value=error.get("input"),
        )
        for error in errors
    ]


# Exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle FastAPI request validation errors."""
    errors = _validation_details(exc.errors())

    logger.warning(
        "Validation error for request %s to %s: %s errors",
        get_request_id(),
        request.url.path,
        len(errors),
    )

    return error_json_response(
        build_validation_error_response(
            message="Request validation failed",
            detail=f"{len(errors)} validation error(s)",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            path=str(request.url.path),
            errors=errors,
        )
    )


@app.exception_handler(ValidationError)
async def pydantic_validation_exception_handler(request: Request, exc: ValidationError):
    """Handle Pydantic validation errors raised inside services."""
    errors = _validation_details(exc.errors())

    logger.warning(
        "Pydantic validation error for request %s to %s: %s errors",
        get_request_id(),
        request.url.path,
        len(errors),
    )

    return error_json_response(
        build_validation_error_response(
            message="Data validation failed",
            detail=f"{len(errors)} validation error(s)",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            path=str(request.url.path),
            errors=errors,
        )
    )


def _http_error_type(status_code: int) -> ErrorType:
    if status_code == status.HTTP_401_UNAUTHORIZED:
        return ErrorType.AUTHENTICATION_ERROR
    if status_code == status.HTTP_404_NOT_FOUND:
        return ErrorType.NOT_FOUND
    if status_code < status.HTTP_500_INTERNAL_SERVER_ERROR:
        return ErrorType.VALIDATION_ERROR
    return ErrorType.INTERNAL_ERROR


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Give errors raised by dependencies and routing the same JSON shape."""
    payload = build_error_response(
        error_type=_http_error_type(exc.status_code),
        message=str(exc.detail),
        detail=str(exc.detail),
        status_code=exc.status_code,
        path=str(request.url.path),
    )
    response = error_json_response(payload)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(InvalidCursorError)

async def invalid_cursor_exception_handler(request: Request, exc: InvalidCursorError):
    logger.info("Rejected feed cursor for request %s: %s", get_request_id(), exc)

    return error_json_response(
        build_error_response(
            error_type=ErrorType.VALIDATION_ERROR,
            message="Invalid feed cursor",
            detail=str(exc),
            status_code=status.HTTP_400_BAD_REQUEST,
            path=str(request.url.path),
        )
    )


@app.exception_handler(QuoteNotFoundError)
async def quote_not_found_exception_handler(request: Request, exc: QuoteNotFoundError):
    return error_json_response(
        build_error_response(
            error_type=ErrorType.NOT_FOUND,
            message="Quote not found",
            detail=str(exc),
            status_code=status.HTTP_404_NOT_FOUND,
            path=str(request.url.path),
        )
    )


@app.exception_handler(EngagementUnavailableError)
async def engagement_unavailable_exception_handler(
    request: Request, exc: EngagementUnavailableError
):
    """Both the counter store and the database rejected a like/save."""
    logger.error(
        "Engagement write failed for request %s to %s: %s",
        get_request_id(),
        request.url.path,
        str(exc),
    )

    return error_json_response(
        build_error_response(
            error_type=ErrorType.ENGAGEMENT_UNAVAILABLE,
            message="Engagement storage unavailable",
            detail=str(exc),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            path=str(request.url.path),
            retry_after=5,
        )
    )


@app.exception_handler(OperationalError)
@app.exception_handler(DBAPIError)
async def database_connection_exception_handler(request: Request, exc: Exception):
    """Handle database connection errors."""
    logger.error(
        "Database connection error for request %s to %s: %s",
        get_request_id(),
        request.url.path,
        str(exc),
    )

    return error_json_response(
        build_error_response(
            error_type=ErrorType.DATABASE_ERROR,
            message="Database connection failed",
            detail="Unable to connect to the database. Please try again later.",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            path=str(request.url.path),
            retry_after=5,
        )
    )


@app.exception_handler(SQLAlchemyTimeoutError)
async def database_timeout_exception_handler(
    request: Request, exc: SQLAlchemyTimeoutError
):
    """Handle connection pool timeouts."""
    logger.error(
        "Database timeout error for request %s to %s: %s",
        get_request_id(),
        request.url.path,
        str(exc),
    )

    return error_json_response(
        build_error_response(
            error_type=ErrorType.TIMEOUT_ERROR,
            message="Database query timeout",
            detail="The database query took too long to complete. Please try again.",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            path=str(request.url.path),
            retry_after=3,
        )
    )


@app.exception_handler(DatabaseError)
async def database_generic_exception_handler(request: Request, exc: DatabaseError):
    """Handle generic database errors."""
    logger.error(
        "Database error for request %s to %s: %s",
        get_request_id(),
        request.url.path,
        str(exc),
    )

    return error_json_response(
        build_error_response(
            error_type=ErrorType.DATABASE_ERROR,
            message="Database operation failed",
            detail="An error occurred while accessing the database. Please try again.",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            path=str(request.url.path),
            retry_after=3,
        )
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle all other unhandled exceptions."""
    logger.exception(
        "Unhandled exception for request %s to %s: %s",
        get_request_id(),
        request.url.path,
        type(exc).__name__,
    )

    return error_json_response(
        build_error_response(
            error_type=ErrorType.INTERNAL_ERROR,
            message="Internal server error",
            detail=f"An unexpected error occurred: {type(exc).__name__}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            path=str(request.url.path),
            retry_after=5,
        )
    )


@app.get("/health", tags=["system"])
async def healthcheck(request: Request) -> dict[str, str]:
    """Readiness check; Redis being down degrades the service but does not fail it."""
    connection: RedisConnection | None = getattr(request.app.state, "redis_connection", None)
    redis_state = "up" if connection is not None and connection.healthy() else "down"
    return {"status": "ok", "redis": redis_state}


app.include_router(feed.router, prefix="/feed", tags=["feed"])
app.include_router(quotes.router, prefix="/quotes", tags=["quotes"])
