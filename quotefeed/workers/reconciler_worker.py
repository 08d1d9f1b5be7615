"""``quotefeed-reconciler`` command line entry point.

``run`` consumes the engagement topics and folds them into the database until
it receives SIGINT/SIGTERM.  ``sweep`` rebuilds the Redis counters and sets
from the database.  ``init-db`` creates any missing tables.
"""

from __future__ import annotations

import asyncio
import logging
import signal

import click

from quotefeed.cache import RedisConnection
from quotefeed.db.connection import (
    create_engine,
    create_session_factory,
    init_models,
    sanitize_database_url,
)
from quotefeed.events.kafka_log import KafkaEventConsumer, KafkaTopicAdmin
from quotefeed.schemas.events import EngagementKind
from quotefeed.services.counter_store import CounterStore, CounterStoreUnavailable
from quotefeed.services.reconciler import (
    Backoff,
    EventReconciler,
    ReconcilerStartupError,
    wait_for_topics,
)
from quotefeed.services.sweeper import EngagementSweeper
from quotefeed.settings import AppSettings, get_settings

logger = logging.getLogger(__name__)


def topic_kinds(settings: AppSettings) -> dict[str, EngagementKind]:
    return {
        settings.kafka_likes_topic: EngagementKind.LIKE,
        settings.kafka_saves_topic: EngagementKind.SAVE,
    }


def _install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            logger.debug("Signal handler for %s not installed", signum)


async def run_reconciler(settings: AppSettings, *, once: bool = False) -> None:
    brokers = settings.kafka_brokers
    if not brokers:
        raise click.ClickException("KAFKA_BROKERS must be set to run the reconciler")

    engine = create_engine(settings)
    try:
        await init_models(engine)
        admin = KafkaTopicAdmin(brokers, client_id=settings.kafka_client_id)
        try:
            await wait_for_topics(
                admin,
                settings.engagement_topics,
                retries=settings.reconciler_startup_retries,
                delay_seconds=settings.reconciler_startup_delay_seconds,
            )
        finally:
            await admin.close()

        consumer = KafkaEventConsumer(
            brokers,
            settings.engagement_topics,
            group_id=settings.kafka_consumer_group,
            client_id=f"{settings.kafka_client_id}-reconciler",
        )
        reconciler = EventReconciler(
            consumer,
            create_session_factory(engine),
            topic_kinds=topic_kinds(settings),
            batch_size=settings.reconciler_batch_size,
            poll_timeout_ms=settings.reconciler_poll_timeout_ms,
            backoff=Backoff(
                settings.reconciler_backoff_initial_seconds,
                settings.reconciler_backoff_max_seconds,
            ),
        )
        try:
            if once:
                outcome = await reconciler.run_once()
                if outcome is None:
                    click.echo("No pending engagement events")
                else:
                    click.echo(
                        f"Reconciled {outcome.records} records "
                        f"({outcome.writes} writes, {outcome.skipped} skipped)"
                    )
            else:
                stop = asyncio.Event()
                _install_stop_handlers(stop)
                await reconciler.run(stop)
        finally:
            await reconciler.close()
    finally:
        await engine.dispose()


async def run_sweep(settings: AppSettings) -> None:
    engine = create_engine(settings)
    connection = RedisConnection(
        settings.redis_url, retry_backoff_seconds=settings.redis_retry_backoff_seconds
    )
    try:
        sweeper = EngagementSweeper(create_session_factory(engine), CounterStore(connection))
        report = await sweeper.sweep()
    finally:
        await connection.close()
        await engine.dispose()
    click.echo(
        f"Rebuilt {report.counters} counters and {report.user_sets} user sets; "
        f"cleared {report.cleared_sets} stale sets"
    )


async def run_init_db(settings: AppSettings) -> None:
    engine = create_engine(settings)
    try:
        await init_models(engine)
    finally:
        await engine.dispose()
    click.echo("✓ Database tables created successfully")


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override LOG_LEVEL for this process",
)
def cli(log_level: str | None) -> None:
    """Quote feed engagement background jobs."""
    settings = get_settings()
    logging.basicConfig(
        level=log_level.upper() if log_level else settings.log_level_numeric,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command()
@click.option("--once", is_flag=True, help="Process a single batch and exit")
def run(once: bool) -> None:
    """Consume engagement events and apply them to the database."""
    settings = get_settings()
    click.echo("=" * 60)
    click.echo("Quote Feed Event Reconciler")
    click.echo(f"Brokers: {', '.join(settings.kafka_brokers) or '(none)'}")
    click.echo(f"Topics: {', '.join(settings.engagement_topics)}")
    click.echo(f"Database: {sanitize_database_url(settings.resolved_database_url)}")
    click.echo("=" * 60)
    try:
        asyncio.run(run_reconciler(settings, once=once))
    except ReconcilerStartupError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
def sweep() -> None:
    """Rebuild Redis counters and membership sets from the database.

    Run it while the reconciler has no lag; cache-only mutations that have not
    reached the database yet are overwritten.
    """
    try:
        asyncio.run(run_sweep(get_settings()))
    except CounterStoreUnavailable as exc:
        raise click.ClickException(f"Redis unavailable: {exc}") from exc


@cli.command("init-db")
def init_db() -> None:
    """Create missing database tables."""
    asyncio.run(run_init_db(get_settings()))


if __name__ == "__main__":
    cli()
