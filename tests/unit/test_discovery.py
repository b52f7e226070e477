import math
from datetime import date, datetime, timedelta, timezone

import pytest

from ghtrends.core.discovery import DiscoveryDriver, snapshot_record
from ghtrends.core.seeder import STAR_BANDS, SeedConfig
from ghtrends.db.records import TaskStatus
from tests.fixtures import NOW, FakeSearchClient, FakeStore, make_item, make_task


def ticking_clock(start):
    """Clock advancing one minute per reading."""
    readings = iter(range(10_000))
    return lambda: start + timedelta(minutes=next(readings))


def make_driver(store, client, **kwargs):
    kwargs.setdefault("clock", lambda: NOW)
    return DiscoveryDriver(store, client, **kwargs)


@pytest.mark.asyncio
@pytest.mark.parametrize("total", [0, 42, 100, 200, 250, 999, 1000])
async def test_partition_crawl_ends_done_after_ceil_pages(total):
    store = FakeStore([make_task()])
    client = FakeSearchClient(total)
    driver = make_driver(store, client, max_pages=10)

    outcome = await driver.process_task(make_task())

    assert outcome.status is TaskStatus.DONE
    assert outcome.page == 1
    assert client.calls == list(range(1, max(1, math.ceil(total / 100)) + 1))
    assert outcome.repos_upserted == total


@pytest.mark.asyncio
@pytest.mark.parametrize("incomplete, expected_calls", [(False, [1]), (True, [1, 2, 3])])
async def test_total_count_ends_crawl_only_when_complete(incomplete, expected_calls):
    # 250 results served, GitHub reporting 100 of them
    client = FakeSearchClient(250, reported_total=100, incomplete=incomplete)
    driver = make_driver(FakeStore(), client, max_pages=10)

    outcome = await driver.process_task(make_task())

    assert outcome.status is TaskStatus.DONE
    assert client.calls == expected_calls


@pytest.mark.asyncio
async def test_oversized_partition_needs_split_at_page_ten():
    client = FakeSearchClient(4321)
    driver = make_driver(FakeStore(), client, max_pages=20)

    outcome = await driver.process_task(make_task())

    assert outcome.status is TaskStatus.NEEDS_SPLIT
    assert outcome.page == 10
    assert client.calls == list(range(1, 11))


@pytest.mark.asyncio
async def test_page_budget_leaves_cursor_for_next_invocation():
    client = FakeSearchClient(4321)
    driver = make_driver(FakeStore(), client, max_pages=3)

    outcome = await driver.process_task(make_task(page=4))

    assert outcome.status is TaskStatus.READY
    assert outcome.page == 7
    assert client.calls == [4, 5, 6]


@pytest.mark.asyncio
async def test_partition_consumed_incrementally_across_runs():
    store = FakeStore([make_task()])
    client = FakeSearchClient(1000)
    driver = make_driver(store, client, max_tasks=1, max_pages=3)

    statuses = []
    for _ in range(4):
        await driver.run()
        statuses.append(store.tasks[1].status)

    assert statuses == [TaskStatus.READY, TaskStatus.READY, TaskStatus.READY, TaskStatus.DONE]
    assert client.calls == list(range(1, 11))
    assert store.tasks[1].page == 1
    assert len(store.repos) == 1000


@pytest.mark.asyncio
async def test_items_become_repository_and_snapshot_records():
    store = FakeStore([make_task()])
    driver = make_driver(store, FakeSearchClient(3, stars=180))

    summary = await driver.run()

    assert summary.repos_upserted == 3
    assert summary.snapshots_upserted == 3
    repo = store.repos[1]
    assert repo.full_name == "owner1/repo1"
    assert repo.owner_login == "owner1"
    assert repo.api_url.startswith("https://api.github.com/repos/")
    assert repo.last_seen_at == NOW
    snap = store.snapshots[(1, NOW.date())]
    assert snap.stars_count == 180
    assert snap.forks_count == 3
    assert snap.source == "search"


def test_snapshot_day_is_utc():
    late_evening = datetime(2026, 10, 18, 22, 30, tzinfo=timezone(timedelta(hours=-5)))
    record = snapshot_record(make_item(7), late_evening)
    assert record.captured_date == date(2026, 10, 19)


@pytest.mark.asyncio
async def test_same_day_recrawl_overwrites_snapshot():
    store = FakeStore([make_task(1), make_task(2, stars_min=201, stars_max=500)])
    driver = DiscoveryDriver(store, FakeSearchClient(1, stars=150), clock=ticking_clock(NOW))

    await driver.run()
    assert store.snapshots[(1, NOW.date())].stars_count == 150

    store.tasks[1] = store.tasks[1].model_copy(update={"status": TaskStatus.READY})
    driver = DiscoveryDriver(
        store, FakeSearchClient(1, stars=155), clock=ticking_clock(NOW + timedelta(hours=3))
    )
    await driver.run()

    day_rows = [k for k in store.snapshots if k[0] == 1]
    assert day_rows == [(1, NOW.date())]
    assert store.snapshots[(1, NOW.date())].stars_count == 155


@pytest.mark.asyncio
async def test_failing_task_goes_back_to_ready_and_siblings_continue():
    store = FakeStore([make_task(1), make_task(2)])
    client = FakeSearchClient(250, fail_on_pages={2})
    driver = make_driver(store, client, max_pages=3)

    summary = await driver.run()

    assert summary.ok
    assert summary.tasks_claimed == 2
    assert summary.tasks_failed == 2
    assert len(summary.errors) == 2
    failed = store.tasks[1]
    assert failed.status is TaskStatus.READY
    assert failed.page == 2
    assert failed.consecutive_failures == 1
    assert "502" in failed.last_error
    # page 1 of each task was stored before the failure
    assert summary.repos_upserted == 200
    run = store.runs[-1]
    assert run.endpoint == "github-discover"
    assert run.errors_count == 2


@pytest.mark.asyncio
async def test_repeated_failures_disable_task():
    store = FakeStore([make_task(1)])
    driver = make_driver(store, FakeSearchClient(10, fail_on_pages={1}), max_failures=2)

    await driver.run()
    assert store.tasks[1].status is TaskStatus.READY
    await driver.run()

    assert store.tasks[1].status is TaskStatus.DISABLED
    assert store.tasks[1].consecutive_failures == 2


@pytest.mark.asyncio
async def test_store_write_failure_is_task_level():
    store = FakeStore([make_task(1)])

    def broken(records):
        raise RuntimeError("duplicate key value violates unique constraint")

    store.upsert_snapshots = broken
    summary = await make_driver(store, FakeSearchClient(5)).run()

    assert summary.ok
    assert summary.tasks_failed == 1
    assert store.tasks[1].status is TaskStatus.READY
    assert "unique constraint" in store.tasks[1].last_error


@pytest.mark.asyncio
async def test_claim_failure_aborts_invocation_but_logs_run():
    store = FakeStore([make_task(1)])
    store.claim_error = RuntimeError("connection refused")
    client = FakeSearchClient(5)

    summary = await make_driver(store, client).run()

    assert not summary.ok
    assert summary.error == "connection refused"
    assert summary.as_dict()["message"] == "Discovery failed"
    assert client.calls == []
    assert store.runs[-1].error_message == "connection refused"
    assert store.runs[-1].errors_count == 1


@pytest.mark.asyncio
async def test_run_log_failure_is_swallowed():
    store = FakeStore()

    def broken(record):
        raise RuntimeError("runs table missing")

    store.record_run = broken
    summary = await make_driver(store, FakeSearchClient(0)).run()

    assert summary.ok
    assert summary.tasks_claimed == 0


@pytest.mark.asyncio
async def test_run_seeds_then_claims():
    store = FakeStore()
    client = FakeSearchClient(0)
    driver = make_driver(
        store,
        client,
        seed_config=SeedConfig(created_from=date(2026, 10, 1)),
        max_tasks=2,
    )

    summary = await driver.run()

    assert len(store.tasks) == len(STAR_BANDS)
    assert summary.tasks_claimed == 2
    assert summary.tasks_processed == 2
    assert [store.tasks[i].status for i in (1, 2)] == [TaskStatus.DONE, TaskStatus.DONE]
    assert store.tasks[3].status is TaskStatus.READY
