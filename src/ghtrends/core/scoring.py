"""14-day growth scoring.

score = abs_growth * ln(1 + max(pct_growth, 0)), and 0 whenever the star count
did not grow. pct_growth divides by max(stars_prev, 1) so a repo that had no
stars two weeks ago still gets a finite value.
"""
import logging
import math
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ghtrends.db.dal import BatchUnavailableError
from ghtrends.db.records import RunRecord, TrendPair, TrendRecord
from .discovery import utcnow

logger = logging.getLogger(__name__)

ENDPOINT = "github-score"
TREND_WINDOW = timedelta(days=14)


@dataclass(frozen=True)
class Growth:
    abs_growth: int
    pct_growth: float
    score: float


def compute_score(abs_growth: int, pct_growth: float) -> float:
    if abs_growth <= 0:
        return 0.0
    return abs_growth * math.log1p(max(pct_growth, 0.0))


def compute_growth(stars_now: int, stars_prev: int) -> Growth:
    abs_growth = stars_now - stars_prev
    pct_growth = abs_growth / max(stars_prev, 1)
    return Growth(abs_growth, pct_growth, compute_score(abs_growth, pct_growth))


def trend_record(pair: TrendPair, computed_at: datetime) -> TrendRecord:
    if pair.stars_prev is None:
        return TrendRecord(
            repo_id=pair.repo_id,
            computed_at=computed_at,
            stars_now=pair.stars_now,
            is_new=True,
        )
    growth = compute_growth(pair.stars_now, pair.stars_prev)
    return TrendRecord(
        repo_id=pair.repo_id,
        computed_at=computed_at,
        stars_now=pair.stars_now,
        stars_prev=pair.stars_prev,
        prev_captured_at=pair.prev_captured_at,
        abs_growth_14d=growth.abs_growth,
        pct_growth_14d=growth.pct_growth,
        score=growth.score,
        is_new=False,
    )


@dataclass
class ScoringSummary:
    repos_processed: int = 0
    repos_with_growth: int = 0
    new_repos: int = 0
    used_batch: bool = False
    errors: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> dict:
        return {
            "message": "Scoring completed" if self.ok else "Scoring failed",
            "reposProcessed": self.repos_processed,
            "reposWithGrowth": self.repos_with_growth,
            "newRepos": self.new_repos,
            "usedBatch": self.used_batch,
            "errors": len(self.errors),
            "error": self.error,
            "durationMs": self.duration_ms,
        }


class ScoringDriver:
    def __init__(
        self,
        store,
        *,
        window: timedelta = TREND_WINDOW,
        use_batch: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.window = window
        self.use_batch = use_batch
        self.clock = clock

    def _pairs_per_repository(self) -> Iterator[TrendPair]:
        """Slow path: two lookups per repository, same result as the batch query."""
        for repo_id in self.store.list_repository_ids():
            latest = self.store.latest_snapshot(repo_id)
            if latest is None:
                continue
            prev = self.store.latest_snapshot(
                repo_id, at_or_before=latest.captured_at - self.window
            )
            yield TrendPair(
                repo_id=repo_id,
                stars_now=latest.stars_count,
                captured_at=latest.captured_at,
                stars_prev=prev.stars_count if prev else None,
                prev_captured_at=prev.captured_at if prev else None,
            )

    def pairs(self, summary: ScoringSummary) -> Iterator[TrendPair]:
        if self.use_batch:
            try:
                pairs = self.store.fetch_trend_pairs(self.window)
            except BatchUnavailableError as exc:
                logger.warning(f"Batch trend query unavailable ({exc}); scoring per repository")
            else:
                summary.used_batch = True
                return iter(pairs)
        return self._pairs_per_repository()

    def run(self) -> ScoringSummary:
        summary = ScoringSummary()
        started_at = self.clock()
        started = time.monotonic()

        try:
            for pair in self.pairs(summary):
                try:
                    record = trend_record(pair, self.clock())
                    self.store.upsert_trend(record)
                except Exception as exc:
                    message = f"Repo {pair.repo_id} failed: {exc}"
                    logger.error(message, exc_info=True)
                    summary.errors.append(message)
                    continue
                summary.repos_processed += 1
                if record.is_new:
                    summary.new_repos += 1
                else:
                    summary.repos_with_growth += 1
        except Exception as exc:
            logger.error(f"Scoring run failed: {exc}", exc_info=True)
            summary.error = str(exc)

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        self._log_run(summary, started_at)
        logger.info(
            f"Scoring finished: {summary.repos_processed} repos "
            f"({summary.repos_with_growth} with growth, {summary.new_repos} new), "
            f"{len(summary.errors)} errors"
        )
        return summary

    def _log_run(self, summary: ScoringSummary, started_at: datetime) -> None:
        errors = [*summary.errors, summary.error] if summary.error else summary.errors
        try:
            self.store.record_run(
                RunRecord(
                    endpoint=ENDPOINT,
                    started_at=started_at,
                    completed_at=self.clock(),
                    repos_upserted=summary.repos_processed,
                    errors_count=len(errors),
                    error_message="; ".join(errors) or None,
                )
            )
        except Exception as exc:
            logger.warning(f"Could not record run log: {exc}")
