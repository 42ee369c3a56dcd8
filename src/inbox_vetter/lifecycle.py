"""Run lifecycle: begin / finalize / fail transitions on the persisted vetter state.

    Idle --begin--> Active --finalize--> Idle
                           --fail------> Idle

``begin`` is the only way into Active and refuses with ``AlreadyActive``
while another run holds the flag.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable

from inbox_vetter.models import LogEntry, ReportRecord, VetterState, utcnow_iso
from inbox_vetter.store import VetterStore

logger = logging.getLogger(__name__)

_LEVELS = {"error": logging.ERROR, "warning": logging.WARNING}


@dataclass
class RunContext:
    """Mutable per-run context handed out by ``RunLifecycle.begin``."""

    email: str
    trigger: str
    state: VetterState
    started_at: str = field(default_factory=utcnow_iso)
    logs: list[LogEntry] = field(default_factory=list)

    def log(self, message: str, level: str = "info") -> None:
        self.logs.append(LogEntry.create(message, level))
        logger.log(_LEVELS.get(level, logging.INFO), "[%s] %s", self.email, message)


class RunLifecycle:
    """Owns the per-user mutual exclusion around pipeline runs.

    The check-and-set itself happens inside one SQLite ``BEGIN IMMEDIATE``
    transaction (see ``VetterStore.begin_run``); the per-user asyncio lock
    serializes begins issued from the same event loop.
    """

    def __init__(self, store: VetterStore) -> None:
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, email: str) -> asyncio.Lock:
        return self._locks.setdefault(email.lower(), asyncio.Lock())

    async def begin(self, email: str, trigger: str = "manual") -> RunContext:
        """Enter Active. Raises ``AlreadyActive`` or ``UnknownUser``."""
        async with self._lock_for(email):
            state = self.store.begin_run(email, f"Starting {trigger} inbox review.")
        return RunContext(email=email.lower(), trigger=trigger, state=state)

    def finalize(
        self,
        ctx: RunContext,
        report: ReportRecord,
        processed_ids: Iterable[str],
        next_run_at: str | None = None,
    ) -> VetterState:
        ctx.log("Inbox review completed.", "success")
        ctx.state = self.store.finalize_run(ctx.email, report, processed_ids, ctx.logs, next_run_at)
        return ctx.state

    def fail(self, ctx: RunContext, error_message: str) -> VetterState:
        logger.error("Inbox review failed for %s: %s", ctx.email, error_message)
        ctx.state = self.store.fail_run(ctx.email, error_message, ctx.logs)
        return ctx.state
