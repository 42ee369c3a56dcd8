"""Background scheduler: one recurring inbox review job per eligible user.

Uses APScheduler's ``AsyncIOScheduler`` with an ``IntervalTrigger`` per
user.  Jobs are started and stopped explicitly as subscription or Gmail
connection state changes; ``bootstrap()`` rebuilds them at process start
since no schedule is persisted.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from inbox_vetter.constants import DEFAULT_POLL_INTERVAL_SECONDS, MIN_POLL_INTERVAL_SECONDS, NO_AUTO_RUN_PLANS
from inbox_vetter.errors import AlreadyActive, CredentialsMissing, IntervalTooShort
from inbox_vetter.models import Subscription, parse_timestamp
from inbox_vetter.runner import InboxRunner
from inbox_vetter.store import VetterStore

logger = logging.getLogger(__name__)


def should_auto_run(sub: Subscription | None, now: datetime | None = None) -> bool:
    """Whether a subscription entitles the user to scheduled reviews."""
    if sub is None:
        return False
    if (sub.plan or "").strip().lower() in NO_AUTO_RUN_PLANS:
        return False
    status = (sub.status or "").strip().lower()
    if status == "canceled":
        return False
    if status == "scheduled_for_cancellation":
        if not sub.renews_at:
            return False
        try:
            renews_at = parse_timestamp(sub.renews_at)
        except ValueError:
            logger.warning("Ignoring unparseable renews_at %r", sub.renews_at)
            return False
        return renews_at > (now or datetime.now(timezone.utc))
    return True


def normalize_interval(seconds: float | None) -> float:
    """Default a missing interval; reject anything below the floor."""
    if seconds is None:
        return float(DEFAULT_POLL_INTERVAL_SECONDS)
    if seconds < MIN_POLL_INTERVAL_SECONDS:
        raise IntervalTooShort(seconds, MIN_POLL_INTERVAL_SECONDS)
    return float(seconds)


@dataclass
class ScheduledJob:
    """In-memory record of one user's recurring job. Never persisted."""

    email: str
    interval_seconds: float
    handle: Job
    running: bool = False
    last_run: str | None = None
    last_error: str | None = None


class InboxScheduler:
    """Keyed registry of per-user jobs guarded by a lock."""

    def __init__(
        self,
        store: VetterStore,
        runner: InboxRunner,
        interval_seconds: float | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.default_interval = normalize_interval(interval_seconds)
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._jobs: dict[str, ScheduledJob] = {}
        self._lock = threading.RLock()

    # --- eligibility ---

    def is_eligible(self, email: str) -> bool:
        return should_auto_run(self.store.get_subscription(email)) and self.store.has_credentials(email)

    # --- job lifecycle ---

    def start_for_user(self, email: str, interval_seconds: float | None = None) -> ScheduledJob | None:
        """Schedule ``email``; an immediate first run plus one every interval.

        Idempotent for an unchanged interval.  Returns None (and drops any
        existing job) when the user is not eligible.
        """
        email = email.lower()
        interval = normalize_interval(interval_seconds) if interval_seconds is not None else self.default_interval

        if not self.is_eligible(email):
            self.stop_for_user(email)
            return None

        with self._lock:
            existing = self._jobs.get(email)
            if existing is not None:
                if existing.interval_seconds == interval:
                    return existing
                self.stop_for_user(email)

            handle = self._scheduler.add_job(
                self.run_job,
                trigger=IntervalTrigger(seconds=interval, timezone=timezone.utc),
                args=[email],
                id=f"inbox-review:{email}",
                name=f"Inbox review for {email}",
                next_run_time=datetime.now(timezone.utc),
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            job = ScheduledJob(email=email, interval_seconds=interval, handle=handle)
            self._jobs[email] = job

        logger.info("[scheduler][%s] Scheduled inbox processing every %ds.", email, round(interval))
        return job

    def stop_for_user(self, email: str) -> bool:
        """Cancel future ticks for ``email``. An in-flight run finishes normally."""
        email = email.lower()
        with self._lock:
            job = self._jobs.pop(email, None)
            if job is None:
                return False
            if self._scheduler.get_job(job.handle.id) is not None:
                self._scheduler.remove_job(job.handle.id)
        logger.info("[scheduler][%s] Stopped inbox processing job.", email)
        return True

    def stop_all(self) -> None:
        with self._lock:
            emails = list(self._jobs)
        for email in emails:
            self.stop_for_user(email)

    def get_job(self, email: str) -> ScheduledJob | None:
        with self._lock:
            return self._jobs.get(email.lower())

    def jobs(self) -> list[ScheduledJob]:
        with self._lock:
            return list(self._jobs.values())

    def bootstrap(self) -> list[str]:
        """Start jobs for every eligible, connected user. Returns their emails."""
        stale = self.store.clear_stale_runs()
        for email in stale:
            logger.warning("[scheduler][%s] Cleared stale active run.", email)

        started = []
        for user in self.store.list_users():
            if self.start_for_user(user.email) is not None:
                started.append(user.email)
        logger.info("Scheduler bootstrapped %d job(s).", len(started))
        return started

    # --- process lifecycle ---

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self) -> None:
        """Cancel every outstanding job and stop the scheduler."""
        self.stop_all()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    # --- ticks ---

    async def run_job(self, email: str) -> None:
        """One scheduler tick for ``email``."""
        job = self.get_job(email)
        if job is None or job.running:
            return
        if not should_auto_run(self.store.get_subscription(email)):
            logger.info("[scheduler][%s] No longer eligible for scheduled reviews; stopping job.", email)
            self.stop_for_user(email)
            return
        job.running = True
        try:
            if not self.store.has_credentials(email):
                raise CredentialsMissing(email)
            outcome = await self.runner.execute(email, trigger="scheduled")
            job.last_run = outcome.report.created_at
            job.last_error = None
            logger.info(
                "[scheduler][%s] Reviewed inbox: %s",
                email,
                outcome.report.snippet,
            )
        except AlreadyActive:
            logger.debug("[scheduler][%s] Previous run still in flight; skipping tick.", email)
        except CredentialsMissing as exc:
            job.last_error = str(exc)
            logger.warning("[scheduler][%s] Stopping job: %s", email, exc)
            self.stop_for_user(email)
        except Exception as exc:  # noqa: BLE001
            job.last_error = str(exc)
            logger.error("[scheduler][%s] Job run failed: %s", email, exc)
        finally:
            job.running = False
