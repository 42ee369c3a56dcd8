"""Executes one inbox review for a user, wrapped in the run lifecycle."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from inbox_vetter.classifier import Classifier, OpenAIClassifier
from inbox_vetter.config import build_run_config
from inbox_vetter.constants import DEFAULT_POLL_INTERVAL_SECONDS, USERS_DIR
from inbox_vetter.gmail_client import GmailGateway, MailboxGateway
from inbox_vetter.lifecycle import RunLifecycle
from inbox_vetter.models import LogEntry, PipelineRun, ReportRecord, ResultItem, RunStats, VetterState, random_suffix
from inbox_vetter.pipeline import review_inbox
from inbox_vetter.store import VetterStore

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[VetterStore, str], Awaitable[MailboxGateway]]


@dataclass
class RunOutcome:
    email: str
    report: ReportRecord
    stats: RunStats
    state: VetterState
    descriptor: str = ""
    results: list[ResultItem] = field(default_factory=list)
    logs: list[LogEntry] = field(default_factory=list)


def user_report_dir(email: str, base: Path = USERS_DIR) -> Path:
    return base / re.sub(r"[^a-z0-9]+", "_", email.lower()) / "reports"


def compute_next_run(generated_at: str, interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS) -> str:
    return (datetime.fromisoformat(generated_at) + timedelta(seconds=interval_seconds)).isoformat()


def build_report_record(email: str, run: PipelineRun, trigger: str = "manual") -> ReportRecord:
    stats = run.stats
    if stats.important:
        title = f"Important inbox alerts ({stats.important})"
        description = f"{stats.important} message(s) flagged as important."
        status = "urgent"
    else:
        title = f"Inbox review ({stats.total} messages)"
        description = f"Reviewed {stats.total} message(s); nothing marked important."
        status = "completed"

    return ReportRecord(
        id=f"inbox-{int(time.time() * 1000)}-{random_suffix()}",
        email=email,
        title=title,
        description=description,
        status=status,
        snippet=f"Important {stats.important} • Trash {stats.trash} • Keep {stats.keep}",
        created_at=run.report.generated_at,
        meta={
            "descriptor": run.descriptor,
            "trigger": trigger,
            "stats": asdict(stats),
            "reportFile": run.report.file_name,
            "reportPath": run.report.path,
            "results": [item.to_dict() for item in run.results],
        },
    )


class InboxRunner:
    """Runs review pipelines; at most one per user is active at a time."""

    def __init__(
        self,
        store: VetterStore,
        classifier: Classifier | None = None,
        gateway_factory: GatewayFactory = GmailGateway.for_user,
        users_dir: Path = USERS_DIR,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.store = store
        self.classifier = classifier or OpenAIClassifier()
        self.gateway_factory = gateway_factory
        self.users_dir = users_dir
        self.poll_interval = poll_interval
        self.lifecycle = RunLifecycle(store)

    async def execute(
        self,
        email: str,
        overrides: Mapping[str, Any] | None = None,
        trigger: str = "manual",
    ) -> RunOutcome:
        """Run one review.

        Raises ``AlreadyActive`` without touching state when a run is in
        flight.  Any other failure is recorded via ``fail`` and re-raised.
        """
        ctx = await self.lifecycle.begin(email, trigger)
        try:
            settings = self.store.get_settings(ctx.email)
            config = build_run_config(settings, overrides)
            gateway = await self.gateway_factory(self.store, ctx.email)
            descriptor = await self.classifier.describe_importance(settings)

            ctx.log("Collecting Gmail messages.")
            run = await review_inbox(
                gateway,
                self.classifier,
                config,
                ctx.state.processed_message_ids,
                report_dir=user_report_dir(ctx.email, self.users_dir),
                omitted_senders=settings.omitted_sender_list(),
                descriptor=descriptor,
                log=ctx.log,
            )
            stats = run.stats
            ctx.log(f"Review complete: Important {stats.important}, Trash {stats.trash}, Keep {stats.keep}.")

            record = build_report_record(ctx.email, run, trigger)
            next_run_at = (overrides or {}).get("next_run_at") or compute_next_run(
                run.report.generated_at, self.poll_interval
            )
            state = self.lifecycle.finalize(ctx, record, run.processed_ids, next_run_at)
        except Exception as exc:
            self.lifecycle.fail(ctx, str(exc) or type(exc).__name__)
            raise

        return RunOutcome(
            email=ctx.email,
            report=record,
            stats=stats,
            state=state,
            descriptor=descriptor,
            results=run.results,
            logs=list(ctx.logs),
        )
