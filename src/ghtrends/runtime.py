"""Process wiring: build the store once and hand it to each pipeline entry point."""
from datetime import timedelta

from ghtrends.api.github_client import GithubSearchClient
from ghtrends.config import Settings
from ghtrends.core.discovery import DiscoveryDriver, DiscoverySummary
from ghtrends.core.scoring import ScoringDriver, ScoringSummary
from ghtrends.core.seeder import SeedConfig
from ghtrends.db import Store, create_store_engine, make_sessionmaker


def build_store(settings: Settings) -> Store:
    return Store(make_sessionmaker(create_store_engine(settings.db_url)))


def seed_config(settings: Settings) -> SeedConfig:
    return SeedConfig(
        created_from=settings.discovery_created_from,
        stars_min=settings.discovery_stars_min,
        pushed_after=settings.discovery_pushed_after,
        refresh_every_days=settings.refresh_every_days,
    )


async def run_discovery(settings: Settings, store: Store) -> DiscoverySummary:
    # fail before touching the queue when the credential is missing
    token = settings.require_github_token()
    async with GithubSearchClient(
        token,
        api_base=settings.github_api_base,
        delay_seconds=settings.search_delay_seconds,
        max_attempts=settings.search_max_attempts,
    ) as client:
        driver = DiscoveryDriver(
            store,
            client,
            seed_config=seed_config(settings),
            max_tasks=settings.max_tasks_per_run,
            max_pages=settings.max_pages_per_task,
            per_page=settings.search_per_page,
            max_failures=settings.max_consecutive_failures,
            stale_after=timedelta(minutes=settings.stale_task_minutes),
        )
        return await driver.run()


def run_scoring(settings: Settings, store: Store) -> ScoringSummary:
    driver = ScoringDriver(
        store,
        window=timedelta(days=settings.trend_window_days),
        use_batch=settings.scoring_use_batch,
    )
    return driver.run()
