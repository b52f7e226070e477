import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from ghtrends.api.github_client import RepoItem, SearchQuery, MAX_PER_PAGE
from ghtrends.db.records import (
    RepositoryRecord,
    RunRecord,
    SnapshotRecord,
    TaskOutcome,
    TaskRecord,
    TaskStatus,
)
from .seeder import SeedConfig, seed_tasks

logger = logging.getLogger(__name__)

ENDPOINT = "github-discover"
DEFAULT_MAX_TASKS = 3
DEFAULT_MAX_PAGES = 3
DEFAULT_MAX_FAILURES = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DiscoverySummary:
    tasks_claimed: int = 0
    tasks_processed: int = 0
    tasks_failed: int = 0
    repos_upserted: int = 0
    snapshots_upserted: int = 0
    errors: list[str] = field(default_factory=list)
    error: str | None = None  # invocation-level failure
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> dict:
        return {
            "message": "Discovery completed" if self.ok else "Discovery failed",
            "tasksClaimed": self.tasks_claimed,
            "tasksProcessed": self.tasks_processed,
            "tasksFailed": self.tasks_failed,
            "reposUpserted": self.repos_upserted,
            "snapshotsUpserted": self.snapshots_upserted,
            "errors": len(self.errors),
            "error": self.error,
            "durationMs": self.duration_ms,
        }


def repository_record(item: RepoItem, seen_at: datetime) -> RepositoryRecord:
    return RepositoryRecord(
        repo_id=item.id,
        full_name=item.full_name,
        html_url=item.html_url,
        api_url=item.url,
        owner_login=item.owner.login,
        owner_type=item.owner.type,
        description=item.description,
        language=item.language,
        is_fork=item.fork,
        is_archived=item.archived,
        created_at=item.created_at,
        pushed_at=item.pushed_at,
        last_seen_at=seen_at,
    )


def snapshot_record(item: RepoItem, captured_at: datetime) -> SnapshotRecord:
    return SnapshotRecord(
        repo_id=item.id,
        captured_at=captured_at,
        captured_date=captured_at.astimezone(timezone.utc).date(),
        stars_count=item.stargazers_count,
        forks_count=item.forks_count,
        open_issues_count=item.open_issues_count,
    )


class DiscoveryDriver:
    """One discovery invocation: seed, claim, crawl each task, log the run."""

    def __init__(
        self,
        store,
        client,
        *,
        seed_config: SeedConfig | None = None,
        max_tasks: int = DEFAULT_MAX_TASKS,
        max_pages: int = DEFAULT_MAX_PAGES,
        per_page: int = MAX_PER_PAGE,
        max_failures: int = DEFAULT_MAX_FAILURES,
        stale_after: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.client = client
        self.seed_config = seed_config
        self.max_tasks = max_tasks
        self.max_pages = max_pages
        self.per_page = per_page
        self.max_failures = max_failures
        self.stale_after = stale_after
        self.clock = clock

    def _query(self, task: TaskRecord, page: int) -> SearchQuery:
        return SearchQuery(
            created_from=task.created_from,
            created_to=task.created_to,
            stars_min=task.stars_min,
            stars_max=task.stars_max,
            pushed_after=task.pushed_after,
            page=page,
            per_page=self.per_page,
        )

    async def process_task(self, task: TaskRecord) -> TaskOutcome:
        """Crawl up to `max_pages` pages of one task starting at its cursor.

        Never raises: a failure is returned as an outcome carrying the error
        and the page that failed, so earlier pages are not fetched again.
        """
        page = task.page
        repos_upserted = snapshots_upserted = pages_fetched = 0

        try:
            for _ in range(self.max_pages):
                query = self._query(task, page)
                result = await self.client.search(query)
                pages_fetched += 1

                seen_at = self.clock()
                repos_upserted += self.store.upsert_repositories(
                    repository_record(item, seen_at) for item in result.items
                )
                snapshots_upserted += self.store.upsert_snapshots(
                    snapshot_record(item, seen_at) for item in result.items
                )

                count = len(result.items)
                logger.info(
                    f"Task {task.id} page {page}: {count} items "
                    f"(total_count={result.total_count}, incomplete={result.incomplete_results})"
                )

                # total_count is only an estimate when the search timed out
                counted_out = (
                    not result.incomplete_results
                    and page * query.per_page >= result.total_count
                )
                if count < query.per_page or counted_out:
                    status, page = TaskStatus.DONE, 1
                    break
                if page >= query.max_page:
                    logger.warning(
                        f"Task {task.id} ({query.expression()}) still full at page {page}; "
                        f"{result.total_count} results exceed what pagination can reach"
                    )
                    status = TaskStatus.NEEDS_SPLIT
                    break
                page += 1
            else:
                # page budget spent; resume from the cursor next run
                status = TaskStatus.READY
        except Exception as exc:
            logger.error(f"Task {task.id} failed on page {page}: {exc}", exc_info=True)
            return TaskOutcome(
                status=TaskStatus.READY,
                page=page,
                error=str(exc) or exc.__class__.__name__,
                repos_upserted=repos_upserted,
                snapshots_upserted=snapshots_upserted,
                pages_fetched=pages_fetched,
            )

        return TaskOutcome(
            status=status,
            page=page,
            repos_upserted=repos_upserted,
            snapshots_upserted=snapshots_upserted,
            pages_fetched=pages_fetched,
        )

    async def run(self) -> DiscoverySummary:
        summary = DiscoverySummary()
        started_at = self.clock()
        started = time.monotonic()

        try:
            if self.seed_config is not None:
                seed_tasks(self.store, self.seed_config, today=started_at.date())

            tasks = self.store.claim_tasks(self.max_tasks, stale_after=self.stale_after)
            summary.tasks_claimed = len(tasks)
            if not tasks:
                logger.info("No tasks available")

            for task in tasks:
                outcome = await self.process_task(task)
                summary.repos_upserted += outcome.repos_upserted
                summary.snapshots_upserted += outcome.snapshots_upserted

                if outcome.failed:
                    summary.tasks_failed += 1
                    summary.errors.append(f"Task {task.id} failed: {outcome.error}")
                else:
                    summary.tasks_processed += 1

                try:
                    stored = self.store.finish_task(
                        task, outcome, max_failures=self.max_failures
                    )
                except Exception as exc:
                    logger.error(f"Failed to update task {task.id}: {exc}", exc_info=True)
                    summary.errors.append(f"Task {task.id} status update failed: {exc}")
                    continue
                if stored is None:
                    logger.warning(f"Task {task.id} was reclaimed elsewhere; outcome dropped")
                elif stored is TaskStatus.DISABLED:
                    logger.warning(
                        f"Task {task.id} disabled after {self.max_failures} consecutive failures"
                    )
        except Exception as exc:
            logger.error(f"Discovery run failed: {exc}", exc_info=True)
            summary.error = str(exc)

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        self._log_run(summary, started_at)
        logger.info(
            f"Discovery finished: {summary.tasks_processed}/{summary.tasks_claimed} tasks, "
            f"{summary.repos_upserted} repos, {summary.snapshots_upserted} snapshots, "
            f"{len(summary.errors)} errors"
        )
        return summary

    def _log_run(self, summary: DiscoverySummary, started_at: datetime) -> None:
        if summary.error is not None:
            errors_count = len(summary.errors) + 1
            message = "; ".join([*summary.errors, summary.error])
        else:
            errors_count = len(summary.errors)
            message = "; ".join(summary.errors) or None
        try:
            self.store.record_run(
                RunRecord(
                    endpoint=ENDPOINT,
                    started_at=started_at,
                    completed_at=self.clock(),
                    tasks_processed=summary.tasks_processed,
                    repos_upserted=summary.repos_upserted,
                    snapshots_upserted=summary.snapshots_upserted,
                    errors_count=errors_count,
                    error_message=message,
                )
            )
        except Exception as exc:
            logger.warning(f"Could not record run log: {exc}")
