# /chatflow/utils/scheduler.py

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chatflow.workflows.stores import SessionStore

# Wake-ups for sessions parked on a delay node. Each parked session owns one
# one-shot job; the job only calls back into the service, which re-reads the
# session under its customer lock before advancing it.

logger = logging.getLogger(__name__)

JOB_PREFIX = "flow-delay:"


def job_id_for(session_id: str) -> str:
    return f"{JOB_PREFIX}{session_id}"


class DelayScheduler:
    def __init__(self, wake: Callable[[str], Awaitable[object]], scheduler: Optional[AsyncIOScheduler] = None):
        self.wake = wake
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Delay scheduler started.")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Delay scheduler stopped.")

    def schedule(self, session_id: str, run_at: datetime) -> None:
        now = datetime.now(timezone.utc)
        if run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=timezone.utc)
        self.scheduler.add_job(
            self.wake,
            "date",
            run_date=max(run_at, now),
            args=[session_id],
            id=job_id_for(session_id),
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.debug(f"Scheduled delay wake-up for session {session_id} at {run_at.isoformat()}")

    def cancel(self, session_id: str) -> None:
        if self.scheduler.get_job(job_id_for(session_id)):
            self.scheduler.remove_job(job_id_for(session_id))

    async def restore_pending(self, session_store: SessionStore) -> int:
        """Re-creates wake-up jobs for every active session still parked on a delay."""
        pending = await session_store.list_pending_delays()
        for session in pending:
            self.schedule(session.id, session.resume_at)
        if pending:
            logger.info(f"Restored {len(pending)} pending delay wake-ups.")
        return len(pending)
