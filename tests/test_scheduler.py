"""Tests for the per-user scheduler."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from conftest import OWNER
from inbox_vetter.errors import AlreadyActive, CredentialsMissing, IntervalTooShort, ListingFailed
from inbox_vetter.models import Subscription, VetterState, parse_timestamp
from inbox_vetter.scheduler import InboxScheduler, normalize_interval, should_auto_run

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeRunner:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def execute(self, email, overrides=None, trigger="manual"):
        self.calls.append((email, trigger))
        if self.error is not None:
            raise self.error
        report = SimpleNamespace(created_at="2024-06-01T12:00:00+00:00", snippet="Important 0 • Trash 0 • Keep 1")
        return SimpleNamespace(report=report)


def _make_eligible(store, email: str) -> None:
    store.upsert_user(email)
    store.update_subscription(email, plan="pro", status="active")
    store.save_credentials(email, json.dumps({"token": "t", "refresh_token": "r"}))


@pytest.fixture
def eligible(store) -> str:
    _make_eligible(store, OWNER)
    return OWNER


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def scheduler(store, runner) -> InboxScheduler:
    sched = InboxScheduler(store, runner, interval_seconds=300)
    yield sched
    sched.shutdown()


@pytest.mark.parametrize(
    "sub, expected",
    [
        (None, False),
        (Subscription(plan="free"), False),
        (Subscription(plan=""), False),
        (Subscription(plan="pro", status="active"), True),
        (Subscription(plan="pro", status="canceled"), False),
        (Subscription(plan="pro", status="scheduled_for_cancellation", renews_at=None), False),
        (Subscription(plan="pro", status="scheduled_for_cancellation", renews_at=(NOW + timedelta(days=3)).isoformat()), True),
        (Subscription(plan="pro", status="scheduled_for_cancellation", renews_at=(NOW - timedelta(days=3)).isoformat()), False),
        (Subscription(plan="pro", status="scheduled_for_cancellation", renews_at="2024-06-04T00:00:00Z"), True),
        (Subscription(plan="pro", status="scheduled_for_cancellation", renews_at="2024-05-29T00:00:00Z"), False),
        (Subscription(plan="pro", status="scheduled_for_cancellation", renews_at="soon"), False),
    ],
)
def test_should_auto_run(sub, expected):
    assert should_auto_run(sub, now=NOW) is expected


@pytest.mark.parametrize(
    "value",
    ["2024-06-01T12:00:00Z", "2024-06-01T12:00:00+00:00", "2024-06-01T12:00:00", "2024-06-01T14:00:00+02:00"],
)
def test_parse_timestamp_normalises_to_utc(value):
    assert parse_timestamp(value) == NOW


def test_parse_timestamp_rejects_garbage():
    with pytest.raises(ValueError):
        parse_timestamp("not a date")


def test_interval_floor():
    assert normalize_interval(None) > 0
    assert normalize_interval(60) == 60
    with pytest.raises(IntervalTooShort):
        normalize_interval(59)


def test_scheduler_rejects_short_default_interval(store, runner):
    with pytest.raises(IntervalTooShort):
        InboxScheduler(store, runner, interval_seconds=10)


def test_start_requires_paid_plan(store, scheduler, owner):
    store.save_credentials(owner, json.dumps({"refresh_token": "r"}))
    assert scheduler.start_for_user(owner) is None
    assert scheduler.jobs() == []


def test_start_requires_credentials(store, scheduler, owner):
    store.update_subscription(owner, plan="pro")
    assert scheduler.start_for_user(owner) is None


def test_start_is_idempotent(scheduler, eligible):
    first = scheduler.start_for_user(eligible)
    second = scheduler.start_for_user(eligible)
    assert first is not None
    assert second is first
    assert len(scheduler.jobs()) == 1


def test_start_with_new_interval_replaces_job(scheduler, eligible):
    first = scheduler.start_for_user(eligible)
    replaced = scheduler.start_for_user(eligible, interval_seconds=900)

    assert replaced is not first
    assert replaced.interval_seconds == 900
    assert scheduler.get_job(eligible) is replaced
    assert scheduler._scheduler.get_job(f"inbox-review:{eligible}") is not None


def test_start_rejects_short_interval(scheduler, eligible):
    with pytest.raises(IntervalTooShort):
        scheduler.start_for_user(eligible, interval_seconds=5)


def test_start_for_ineligible_user_drops_existing_job(store, scheduler, eligible):
    scheduler.start_for_user(eligible)
    store.update_subscription(eligible, status="canceled")
    assert scheduler.start_for_user(eligible) is None
    assert scheduler.get_job(eligible) is None


def test_stop_for_user(scheduler, eligible):
    scheduler.start_for_user(eligible)
    assert scheduler.stop_for_user(eligible) is True
    assert scheduler.get_job(eligible) is None
    assert scheduler._scheduler.get_job(f"inbox-review:{eligible}") is None
    assert scheduler.stop_for_user(eligible) is False


def test_bootstrap_starts_only_eligible(store, scheduler):
    _make_eligible(store, "a@example.com")
    _make_eligible(store, "b@example.com")
    store.upsert_user("free@example.com")
    store.begin_run("a@example.com")
    store._conn.execute(
        "UPDATE vetter_state SET last_run_at = ? WHERE email = ?",
        ((datetime.now(timezone.utc) - timedelta(hours=2)).isoformat(), "a@example.com"),
    )
    store._conn.commit()

    started = scheduler.bootstrap()

    assert started == ["a@example.com", "b@example.com"]
    assert store.get_state("a@example.com").active is False


@pytest.mark.asyncio
async def test_run_job_executes_scheduled_run(scheduler, runner, eligible):
    job = scheduler.start_for_user(eligible)

    await scheduler.run_job(eligible)

    assert runner.calls == [(eligible, "scheduled")]
    assert job.last_run == "2024-06-01T12:00:00+00:00"
    assert job.running is False


@pytest.mark.asyncio
async def test_run_job_skips_when_already_active(store, scheduler, runner, eligible):
    runner.error = AlreadyActive(eligible, VetterState(active=True))
    job = scheduler.start_for_user(eligible)

    await scheduler.run_job(eligible)

    assert scheduler.get_job(eligible) is job
    assert job.last_error is None


@pytest.mark.asyncio
async def test_run_job_stops_when_credentials_missing_mid_run(scheduler, runner, eligible):
    runner.error = CredentialsMissing(eligible, "token refresh failed")
    scheduler.start_for_user(eligible)

    await scheduler.run_job(eligible)

    assert scheduler.get_job(eligible) is None


@pytest.mark.asyncio
async def test_run_job_stops_when_credentials_removed(store, scheduler, runner, eligible):
    scheduler.start_for_user(eligible)
    store.clear_credentials(eligible)

    await scheduler.run_job(eligible)

    assert runner.calls == []
    assert scheduler.get_job(eligible) is None


@pytest.mark.asyncio
async def test_run_job_stops_when_plan_canceled(store, scheduler, runner, eligible):
    scheduler.start_for_user(eligible)
    store.update_subscription(eligible, plan="free", status="canceled")

    await scheduler.run_job(eligible)

    assert runner.calls == []
    assert scheduler.get_job(eligible) is None
    assert scheduler._scheduler.get_job(f"inbox-review:{eligible}") is None


@pytest.mark.asyncio
async def test_run_job_stops_after_cancellation_date_passes(store, scheduler, runner, eligible):
    scheduler.start_for_user(eligible)
    past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    store.update_subscription(eligible, status="scheduled_for_cancellation", renews_at=past)

    await scheduler.run_job(eligible)

    assert runner.calls == []
    assert scheduler.get_job(eligible) is None


@pytest.mark.asyncio
async def test_run_job_keeps_job_after_transient_failure(scheduler, runner, eligible):
    runner.error = ListingFailed("Listing messages failed: 503")
    job = scheduler.start_for_user(eligible)

    await scheduler.run_job(eligible)

    assert scheduler.get_job(eligible) is job
    assert "503" in job.last_error


@pytest.mark.asyncio
async def test_run_job_for_unscheduled_user_is_noop(scheduler, runner):
    await scheduler.run_job("nobody@example.com")
    assert runner.calls == []


@pytest.mark.asyncio
async def test_started_scheduler_fires_immediately(scheduler, runner, eligible):
    scheduler.start()
    scheduler.start_for_user(eligible)

    for _ in range(50):
        if runner.calls:
            break
        await asyncio.sleep(0.05)

    assert runner.calls == [(eligible, "scheduled")]
    scheduler.shutdown()
    assert scheduler.jobs() == []
