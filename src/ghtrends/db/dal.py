"""High-level, sync helpers around SQLAlchemy session.

These keep SQL in **one place**: every statement the pipeline sends to
Postgres goes through :class:`Store`, which is built once per process from a
sessionmaker and handed to the seeder and both drivers.
"""
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
import logging

from sqlalchemy import Text, and_, case, cast, func, or_, select, tuple_, update
from sqlalchemy.dialects.postgresql import distinct_on, insert
from sqlalchemy.exc import NotSupportedError, ProgrammingError
from sqlalchemy.orm import Session, aliased, sessionmaker

from .models import Repository, RepoSnapshot, RepoTrend, Run, SearchTask
from .records import (
    RepositoryRecord,
    RunRecord,
    SnapshotPoint,
    SnapshotRecord,
    TaskOutcome,
    TaskRecord,
    TaskSignature,
    TaskStatus,
    TrendPair,
    TrendRecord,
    TrendView,
)

logger = logging.getLogger(__name__)

# Postgres caps bind parameters per statement; keep multi-row inserts well below it.
INSERT_BATCH_SIZE = 500
MAX_ERROR_LENGTH = 2000


class BatchUnavailableError(RuntimeError):
    """The single-statement trend pairing query cannot run on this store."""


def _chunks(rows: list, size: int = INSERT_BATCH_SIZE) -> Iterator[list]:
    for i in range(0, len(rows), size):
        yield rows[i : i + size]


class Store:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @property
    def dialect_name(self) -> str:
        with self._session_factory() as s:
            return s.get_bind().dialect.name

    # --- repositories -------------------------------------------------

    def upsert_repositories(self, records: Iterable[RepositoryRecord]) -> int:
        """Insert new repos, refresh mutable metadata and `last_seen_at` on existing ones."""
        rows = list(
            {
                r.repo_id: {**r.model_dump(), "first_seen_at": r.last_seen_at}
                for r in records
            }.values()
        )
        if not rows:
            return 0
        with self.session_scope() as s:
            for chunk in _chunks(rows):
                self._release_slugs(s, chunk)
                stmt = insert(Repository).values(chunk)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[Repository.repo_id],
                    set_={
                        key: stmt.excluded[key]
                        for key in chunk[0]
                        if key not in ("repo_id", "first_seen_at")
                    },
                )
                s.execute(stmt)
        return len(rows)

    def _release_slugs(self, s: Session, chunk: list[dict]) -> None:
        """Park slugs still held by other ids after a rename or transfer.

        The parked name (`slug#id`) cannot collide with a real slug and is
        replaced the next time search returns that repository.
        """
        claimed = [(row["full_name"], row["repo_id"]) for row in chunk]
        stmt = (
            update(Repository)
            .where(
                Repository.full_name.in_([name for name, _ in claimed]),
                tuple_(Repository.full_name, Repository.repo_id).not_in(claimed),
            )
            .values(full_name=Repository.full_name + "#" + cast(Repository.repo_id, Text))
            .returning(Repository.repo_id, Repository.full_name)
            .execution_options(synchronize_session=False)
        )
        for repo_id, parked in s.execute(stmt):
            logger.warning(f"Repository {repo_id} lost its slug to another id; parked as {parked}")

    def list_repository_ids(self) -> list[int]:
        with self.session_scope() as s:
            return list(s.scalars(select(Repository.repo_id).order_by(Repository.repo_id)))

    # --- snapshots ----------------------------------------------------

    def upsert_snapshots(self, records: Iterable[SnapshotRecord]) -> int:
        """One row per (repo, day). A later capture overwrites, an older one never does."""
        rows = list(
            {(r.repo_id, r.captured_date): r.model_dump() for r in records}.values()
        )
        if not rows:
            return 0
        with self.session_scope() as s:
            for chunk in _chunks(rows):
                stmt = insert(RepoSnapshot).values(chunk)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[RepoSnapshot.repo_id, RepoSnapshot.captured_date],
                    set_={
                        "captured_at": stmt.excluded.captured_at,
                        "stars_count": stmt.excluded.stars_count,
                        "forks_count": stmt.excluded.forks_count,
                        "open_issues_count": stmt.excluded.open_issues_count,
                        "source": stmt.excluded.source,
                    },
                    where=RepoSnapshot.captured_at <= stmt.excluded.captured_at,
                )
                s.execute(stmt)
        return len(rows)

    def latest_snapshot(
        self, repo_id: int, at_or_before: datetime | None = None
    ) -> SnapshotPoint | None:
        stmt = select(RepoSnapshot.captured_at, RepoSnapshot.stars_count).where(
            RepoSnapshot.repo_id == repo_id
        )
        if at_or_before is not None:
            stmt = stmt.where(RepoSnapshot.captured_at <= at_or_before)
        stmt = stmt.order_by(RepoSnapshot.captured_at.desc()).limit(1)
        with self.session_scope() as s:
            row = s.execute(stmt).first()
        return SnapshotPoint.model_validate(dict(row._mapping)) if row else None

    def fetch_trend_pairs(self, window: timedelta) -> list[TrendPair]:
        """Latest snapshot per repo joined with the newest one at least `window` older.

        Runs as one statement (two DISTINCT ON passes), so it needs Postgres.
        """
        if self.dialect_name != "postgresql":
            raise BatchUnavailableError(f"DISTINCT ON is not available on {self.dialect_name}")

        latest = (
            select(RepoSnapshot.repo_id, RepoSnapshot.captured_at, RepoSnapshot.stars_count)
            .ext(distinct_on(RepoSnapshot.repo_id))
            .order_by(RepoSnapshot.repo_id, RepoSnapshot.captured_at.desc())
            .subquery("latest")
        )
        prior = aliased(RepoSnapshot, name="prior")
        prev = (
            select(prior.repo_id, prior.captured_at, prior.stars_count)
            .join(latest, prior.repo_id == latest.c.repo_id)
            .where(prior.captured_at <= latest.c.captured_at - window)
            .ext(distinct_on(prior.repo_id))
            .order_by(prior.repo_id, prior.captured_at.desc())
            .subquery("prev")
        )
        stmt = select(
            latest.c.repo_id,
            latest.c.stars_count.label("stars_now"),
            latest.c.captured_at,
            prev.c.stars_count.label("stars_prev"),
            prev.c.captured_at.label("prev_captured_at"),
        ).outerjoin(prev, prev.c.repo_id == latest.c.repo_id)

        try:
            with self.session_scope() as s:
                rows = s.execute(stmt).all()
        except (ProgrammingError, NotSupportedError) as exc:
            raise BatchUnavailableError(str(exc)) from exc
        return [TrendPair.model_validate(dict(r._mapping)) for r in rows]

    # --- search tasks -------------------------------------------------

    def count_tasks(self) -> int:
        with self.session_scope() as s:
            return s.scalar(select(func.count()).select_from(SearchTask)) or 0

    def task_signatures(self) -> set[TaskSignature]:
        stmt = select(
            SearchTask.created_from,
            SearchTask.created_to,
            SearchTask.stars_min,
            SearchTask.stars_max,
            SearchTask.pushed_after,
        )
        with self.session_scope() as s:
            return {TaskSignature.model_validate(dict(r._mapping)) for r in s.execute(stmt)}

    def insert_tasks(self, signatures: Iterable[TaskSignature], refresh_every_days: int) -> int:
        """Insert `ready` tasks; rows colliding on the signature index are skipped.

        Returns how many rows were actually created.
        """
        rows = [
            {
                **sig.model_dump(),
                "status": TaskStatus.READY.value,
                "page": 1,
                "refresh_every_days": refresh_every_days,
            }
            for sig in signatures
        ]
        created = 0
        if not rows:
            return created
        with self.session_scope() as s:
            for chunk in _chunks(rows):
                stmt = (
                    insert(SearchTask)
                    .values(chunk)
                    .on_conflict_do_nothing()
                    .returning(SearchTask.id)
                )
                created += len(s.execute(stmt).all())
        return created

    def claim_tasks(self, limit: int, *, stale_after: timedelta | None = None) -> list[TaskRecord]:
        """Atomically move up to `limit` eligible tasks to `in_progress` and return them.

        Rows locked by a concurrent claim are skipped, not waited on, so
        overlapping invocations never receive the same task.
        """
        if limit <= 0:
            return []

        now = func.now()
        eligible = or_(
            SearchTask.status == TaskStatus.READY.value,
            and_(
                SearchTask.status == TaskStatus.DONE.value,
                or_(
                    SearchTask.last_completed_at.is_(None),
                    SearchTask.last_completed_at
                    < now - func.make_interval(0, 0, 0, SearchTask.refresh_every_days),
                ),
            ),
        )
        if stale_after is not None:
            # abandoned by a crashed or timed-out invocation
            eligible = or_(
                eligible,
                and_(
                    SearchTask.status == TaskStatus.IN_PROGRESS.value,
                    or_(
                        SearchTask.last_started_at.is_(None),
                        SearchTask.last_started_at < now - stale_after,
                    ),
                ),
            )

        claimed = (
            select(SearchTask.id)
            .where(eligible)
            .order_by(SearchTask.last_started_at.asc().nulls_first(), SearchTask.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .cte("claimed")
        )
        stmt = (
            update(SearchTask)
            .where(SearchTask.id == claimed.c.id)
            .values(
                status=TaskStatus.IN_PROGRESS.value,
                last_started_at=now,
                last_error=None,
                page=case(
                    (SearchTask.status == TaskStatus.DONE.value, 1),
                    else_=SearchTask.page,
                ),
            )
            .returning(*SearchTask.__table__.c)
            .execution_options(synchronize_session=False)
        )
        with self.session_scope() as s:
            rows = s.execute(stmt).all()
        tasks = [TaskRecord.model_validate(dict(r._mapping)) for r in rows]
        tasks.sort(key=lambda t: t.id)
        return tasks

    def finish_task(
        self, task: TaskRecord, outcome: TaskOutcome, *, max_failures: int
    ) -> TaskStatus | None:
        """Persist the result of a crawl attempt. Returns the stored status.

        Only the claim that produced `task` may finish it: the row must still be
        `in_progress` with the same `last_started_at`. None means the task was
        reclaimed by another invocation since, and the outcome is dropped.
        """
        values: dict = {"page": outcome.page}
        if outcome.failed:
            failures = SearchTask.consecutive_failures + 1
            values.update(
                status=case(
                    (failures >= max_failures, TaskStatus.DISABLED.value),
                    else_=TaskStatus.READY.value,
                ),
                last_error=outcome.error[:MAX_ERROR_LENGTH],
                consecutive_failures=failures,
            )
        else:
            values.update(status=outcome.status.value, last_error=None, consecutive_failures=0)
            if outcome.status is TaskStatus.DONE:
                values.update(last_completed_at=func.now(), page=1)

        stmt = (
            update(SearchTask)
            .where(
                SearchTask.id == task.id,
                SearchTask.status == TaskStatus.IN_PROGRESS.value,
                SearchTask.last_started_at == task.last_started_at,
            )
            .values(**values)
            .returning(SearchTask.status)
            .execution_options(synchronize_session=False)
        )
        with self.session_scope() as s:
            status = s.execute(stmt).scalar_one_or_none()
        return TaskStatus(status) if status is not None else None

    # --- trends -------------------------------------------------------

    def upsert_trend(self, record: TrendRecord) -> None:
        """Replace the trend row for a repo; an older computation never wins."""
        stmt = insert(RepoTrend).values(record.model_dump())
        stmt = stmt.on_conflict_do_update(
            index_elements=[RepoTrend.repo_id],
            set_={
                key: stmt.excluded[key]
                for key in record.model_dump()
                if key != "repo_id"
            },
            where=RepoTrend.computed_at <= stmt.excluded.computed_at,
        )
        with self.session_scope() as s:
            s.execute(stmt)

    def list_trends(
        self,
        *,
        max_stars: int | None = None,
        min_growth: int | None = None,
        limit: int = 200,
    ) -> list[TrendView]:
        """Read-only ranking for the dashboard: best score first, unscored last."""
        stmt = (
            select(
                RepoTrend.repo_id,
                Repository.full_name,
                Repository.html_url,
                Repository.description,
                Repository.language,
                RepoTrend.stars_now,
                RepoTrend.abs_growth_14d,
                RepoTrend.pct_growth_14d,
                RepoTrend.score,
                RepoTrend.is_new,
                RepoTrend.computed_at,
            )
            .join(Repository, Repository.repo_id == RepoTrend.repo_id)
            .order_by(RepoTrend.score.desc().nulls_last(), RepoTrend.repo_id)
            .limit(limit)
        )
        if max_stars is not None:
            stmt = stmt.where(RepoTrend.stars_now <= max_stars)
        if min_growth is not None:
            stmt = stmt.where(RepoTrend.abs_growth_14d >= min_growth)
        with self.session_scope() as s:
            return [TrendView.model_validate(dict(r._mapping)) for r in s.execute(stmt)]

    # --- run log ------------------------------------------------------

    def record_run(self, record: RunRecord) -> None:
        with self.session_scope() as s:
            s.add(Run(**record.model_dump()))
