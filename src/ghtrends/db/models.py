from datetime import datetime, date
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    TIMESTAMP,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

TASK_STATUSES = ("ready", "in_progress", "done", "needs_split", "disabled")


class Base(DeclarativeBase):
    pass  # shared metadata lives here


class Repository(Base):
    __tablename__ = "repositories"

    repo_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    full_name: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    html_url: Mapped[str] = mapped_column(Text, nullable=False)
    api_url: Mapped[str] = mapped_column(Text, nullable=False)
    owner_login: Mapped[str] = mapped_column(Text, nullable=False)
    owner_type: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    language: Mapped[str | None] = mapped_column(Text)
    is_fork: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    created_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True))
    pushed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), index=True)
    first_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    snapshots = relationship("RepoSnapshot", back_populates="repo", cascade="all, delete")
    trend = relationship("RepoTrend", back_populates="repo", cascade="all, delete", uselist=False)


class RepoSnapshot(Base):
    __tablename__ = "repo_snapshots"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.repo_id", ondelete="CASCADE"), nullable=False, index=True
    )
    captured_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    # UTC day, one snapshot per repo per day
    captured_date: Mapped[date] = mapped_column(Date, nullable=False)
    stars_count: Mapped[int] = mapped_column(Integer, nullable=False)
    forks_count: Mapped[int | None] = mapped_column(Integer)
    open_issues_count: Mapped[int | None] = mapped_column(Integer)
    source: Mapped[str] = mapped_column(Text, default="search", server_default="search")

    repo = relationship("Repository", back_populates="snapshots")

    __table_args__ = (
        Index("uq_repo_snapshots_repo_date", "repo_id", "captured_date", unique=True),
    )


class SearchTask(Base):
    __tablename__ = "search_tasks"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    created_from: Mapped[date] = mapped_column(Date, nullable=False)
    created_to: Mapped[date] = mapped_column(Date, nullable=False)
    stars_min: Mapped[int] = mapped_column(Integer, nullable=False)
    stars_max: Mapped[int | None] = mapped_column(Integer)  # NULL = no upper bound
    pushed_after: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="ready", server_default="ready")
    page: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    refresh_every_days: Mapped[int] = mapped_column(
        Integer, nullable=False, default=7, server_default="7"
    )
    last_started_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True))
    last_completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ({})".format(", ".join(f"'{s}'" for s in TASK_STATUSES)),
            name="ck_search_tasks_status",
        ),
        # NULL-safe signature uniqueness: (window, band, pushed-after filter)
        Index(
            "uq_search_tasks_signature",
            "created_from",
            "created_to",
            "stars_min",
            text("coalesce(stars_max, -1)"),
            text("coalesce(pushed_after, '1970-01-01'::date)"),
            unique=True,
        ),
        Index("ix_search_tasks_status_completed", "status", "last_completed_at"),
    )


class RepoTrend(Base):
    __tablename__ = "repo_trends"

    repo_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.repo_id", ondelete="CASCADE"), primary_key=True
    )
    computed_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    stars_now: Mapped[int] = mapped_column(Integer, nullable=False)
    stars_prev: Mapped[int | None] = mapped_column(Integer)
    prev_captured_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True))
    abs_growth_14d: Mapped[int | None] = mapped_column(Integer)
    pct_growth_14d: Mapped[float | None] = mapped_column(Float)
    score: Mapped[float | None] = mapped_column(Float)
    is_new: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")

    repo = relationship("Repository", back_populates="trend")


Index("ix_repo_trends_score", RepoTrend.score.desc().nulls_last())


class Run(Base):
    __tablename__ = "runs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True))
    tasks_processed: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    repos_upserted: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    snapshots_upserted: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    errors_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    error_message: Mapped[str | None] = mapped_column(Text)
