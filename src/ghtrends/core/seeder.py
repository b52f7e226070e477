"""Partition the discovery space into (creation month × star band) search tasks.

A single search query never yields more than 1,000 results, so the space is cut
into monthly creation windows crossed with star bands. Each cell becomes one
row in `search_tasks`.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import date

from ghtrends.db.records import TaskSignature

logger = logging.getLogger(__name__)

# (min, max) inclusive; None = no upper bound
STAR_BANDS: tuple[tuple[int, int | None], ...] = (
    (100, 200),
    (201, 500),
    (501, 1000),
    (1001, 5000),
    (5001, 20000),
    (20001, None),
)

DEFAULT_REFRESH_EVERY_DAYS = 7


@dataclass(frozen=True)
class SeedConfig:
    created_from: date
    stars_min: int = 100
    pushed_after: date | None = None
    refresh_every_days: int = DEFAULT_REFRESH_EVERY_DAYS


@dataclass(frozen=True)
class SeedResult:
    created: int
    skipped: int


def monthly_windows(start: date, today: date) -> list[tuple[date, date]]:
    """Full calendar months from `start`'s month through `today`'s month."""
    windows = []
    year, month = start.year, start.month
    while (year, month) <= (today.year, today.month):
        last_day = calendar.monthrange(year, month)[1]
        windows.append((date(year, month, 1), date(year, month, last_day)))
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return windows


def plan_partitions(config: SeedConfig, today: date) -> list[TaskSignature]:
    partitions = []
    for window_from, window_to in monthly_windows(config.created_from, today):
        for band_min, band_max in STAR_BANDS:
            if band_max is not None and config.stars_min > band_max:
                continue
            partitions.append(
                TaskSignature(
                    created_from=window_from,
                    created_to=window_to,
                    stars_min=max(band_min, config.stars_min),
                    stars_max=band_max,
                    pushed_after=config.pushed_after,
                )
            )
    return partitions


def seed_tasks(store, config: SeedConfig, today: date | None = None) -> SeedResult:
    """Insert every planned partition that is not in the queue yet.

    Existing signatures are read first, so re-running is a no-op. Two seeders
    racing on a brand new partition are settled by the signature index: the
    loser's row is dropped and counted as skipped.
    """
    today = today or date.today()
    planned = plan_partitions(config, today)
    existing = store.task_signatures()

    missing = [sig for sig in planned if sig not in existing]
    created = store.insert_tasks(missing, config.refresh_every_days) if missing else 0
    skipped = len(planned) - created

    logger.info(
        f"Seeded {created} search tasks ({skipped} already present) "
        f"from {config.created_from} with stars >= {config.stars_min}"
    )
    return SeedResult(created=created, skipped=skipped)
