"""In-memory stand-ins for the store and the search client used by unit tests."""
from datetime import date, datetime, timedelta, timezone

from ghtrends.api.github_client import (
    SEARCH_RESULT_CAP,
    Owner,
    RepoItem,
    SearchAPIError,
    SearchPage,
)
from ghtrends.db.dal import BatchUnavailableError
from ghtrends.db.records import (
    SnapshotPoint,
    TaskRecord,
    TaskStatus,
    TrendPair,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def make_item(repo_id: int, stars: int = 150, **overrides) -> RepoItem:
    fields = dict(
        id=repo_id,
        full_name=f"owner{repo_id}/repo{repo_id}",
        html_url=f"https://github.com/owner{repo_id}/repo{repo_id}",
        url=f"https://api.github.com/repos/owner{repo_id}/repo{repo_id}",
        owner=Owner(login=f"owner{repo_id}", type="User"),
        description="test repo",
        language="Python",
        created_at=datetime(2026, 9, 1, tzinfo=timezone.utc),
        pushed_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
        stargazers_count=stars,
        forks_count=3,
        open_issues_count=1,
    )
    fields.update(overrides)
    return RepoItem(**fields)


def make_task(task_id: int = 1, page: int = 1, status: TaskStatus = TaskStatus.READY, **overrides) -> TaskRecord:
    fields = dict(
        id=task_id,
        created_from=date(2026, 9, 1),
        created_to=date(2026, 9, 30),
        stars_min=100,
        stars_max=200,
        status=status,
        page=page,
    )
    fields.update(overrides)
    return TaskRecord(**fields)


class FakeSearchClient:
    """Serves a partition holding `total` results, `per_page` at a time."""

    def __init__(
        self,
        total: int,
        *,
        fail_on_pages=(),
        id_offset: int = 0,
        stars: int = 150,
        reported_total: int | None = None,
        incomplete: bool = False,
    ):
        self.total = total
        self.reported_total = total if reported_total is None else reported_total
        self.incomplete = incomplete
        self.fail_on_pages = set(fail_on_pages)
        self.id_offset = id_offset
        self.stars = stars
        self.calls: list[int] = []

    async def search(self, query):
        self.calls.append(query.page)
        if query.page in self.fail_on_pages:
            raise SearchAPIError(502, "bad gateway")
        start = (query.page - 1) * query.per_page
        reachable = min(self.total, SEARCH_RESULT_CAP)
        count = max(0, min(query.per_page, reachable - start))
        items = [
            make_item(self.id_offset + start + i + 1, stars=self.stars) for i in range(count)
        ]
        return SearchPage(
            total_count=self.reported_total, incomplete_results=self.incomplete, items=items
        )


class FakeStore:
    """Dict-backed store with the same observable semantics as `Store`."""

    def __init__(self, tasks=(), *, batch: bool = False):
        self.tasks = {t.id: t for t in tasks}
        self.signatures = set()
        self.repos = {}
        self.snapshots = {}
        self.trends = {}
        self.runs = []
        self.finished = []
        self.batch = batch
        self.claim_error: Exception | None = None
        self.failing_trend_repos: set[int] = set()
        self.claims = 0

    # tasks
    def task_signatures(self):
        return set(self.signatures)

    def insert_tasks(self, signatures, refresh_every_days):
        created = 0
        for sig in signatures:
            if sig in self.signatures:
                continue
            self.signatures.add(sig)
            task_id = len(self.tasks) + 1
            self.tasks[task_id] = TaskRecord(
                id=task_id,
                **sig.model_dump(),
                status=TaskStatus.READY,
                page=1,
                refresh_every_days=refresh_every_days,
            )
            created += 1
        return created

    def claim_tasks(self, limit, *, stale_after=None):
        if self.claim_error is not None:
            raise self.claim_error
        claimed = []
        for task in sorted(self.tasks.values(), key=lambda t: t.id):
            if len(claimed) >= limit:
                break
            if task.status is not TaskStatus.READY:
                continue
            self.claims += 1
            task = task.model_copy(
                update={
                    "status": TaskStatus.IN_PROGRESS,
                    "last_error": None,
                    "last_started_at": NOW + timedelta(seconds=self.claims),
                }
            )
            self.tasks[task.id] = task
            claimed.append(task)
        return claimed

    def finish_task(self, claimed, outcome, *, max_failures):
        task_id = claimed.id
        self.finished.append((task_id, outcome))
        task = self.tasks[task_id]
        if (
            task.status is not TaskStatus.IN_PROGRESS
            or task.last_started_at != claimed.last_started_at
        ):
            return None
        if outcome.failed:
            failures = task.consecutive_failures + 1
            status = TaskStatus.DISABLED if failures >= max_failures else TaskStatus.READY
            update = dict(status=status, page=outcome.page, last_error=outcome.error,
                          consecutive_failures=failures)
        else:
            update = dict(status=outcome.status, page=outcome.page, last_error=None,
                          consecutive_failures=0)
        self.tasks[task_id] = task.model_copy(update=update)
        return self.tasks[task_id].status

    # repositories / snapshots
    def upsert_repositories(self, records):
        records = list(records)
        for r in records:
            self.repos[r.repo_id] = r
        return len({r.repo_id for r in records})

    def upsert_snapshots(self, records):
        records = list(records)
        for r in records:
            key = (r.repo_id, r.captured_date)
            current = self.snapshots.get(key)
            if current is None or current.captured_at <= r.captured_at:
                self.snapshots[key] = r
        return len({(r.repo_id, r.captured_date) for r in records})

    def list_repository_ids(self):
        return sorted(self.repos)

    def latest_snapshot(self, repo_id, at_or_before=None):
        candidates = [
            s for (rid, _), s in self.snapshots.items()
            if rid == repo_id and (at_or_before is None or s.captured_at <= at_or_before)
        ]
        if not candidates:
            return None
        best = max(candidates, key=lambda s: s.captured_at)
        return SnapshotPoint(captured_at=best.captured_at, stars_count=best.stars_count)

    def fetch_trend_pairs(self, window: timedelta):
        if not self.batch:
            raise BatchUnavailableError("batch disabled in fake")
        pairs = []
        for repo_id in sorted({rid for rid, _ in self.snapshots}):
            latest = self.latest_snapshot(repo_id)
            prev = self.latest_snapshot(repo_id, latest.captured_at - window)
            pairs.append(
                TrendPair(
                    repo_id=repo_id,
                    stars_now=latest.stars_count,
                    captured_at=latest.captured_at,
                    stars_prev=prev.stars_count if prev else None,
                    prev_captured_at=prev.captured_at if prev else None,
                )
            )
        return pairs

    # trends / runs
    def upsert_trend(self, record):
        if record.repo_id in self.failing_trend_repos:
            raise RuntimeError(f"write rejected for {record.repo_id}")
        self.trends[record.repo_id] = record

    def record_run(self, record):
        self.runs.append(record)
