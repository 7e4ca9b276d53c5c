"""Analysis freshness and the per-repository status state machine.

    pending ──► analyzing ──► completed
                   ▲   │          │
                   │   ▼          │
                   └─ failed ◄────┘ (re-analysis goes back through analyzing)

Entering `analyzing` is a compare-and-swap in the store; the winner gets a
run id (a lease) that it must present to complete or fail the run. A lease
older than `stale_after` seconds may be reclaimed by a new run, and the
abandoned run's late write is then rejected.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable

from . import config
from .errors import NotFoundError, RequestTimeoutError, StateTransitionError
from .logger import get_logger
from .schema import AnalysisResult, AnalysisStatus, RepoMetadata, Repository, utcnow
from .store import DocumentStore

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[AnalysisStatus, frozenset[AnalysisStatus]] = {
    AnalysisStatus.PENDING: frozenset({AnalysisStatus.ANALYZING}),
    AnalysisStatus.ANALYZING: frozenset({AnalysisStatus.COMPLETED, AnalysisStatus.FAILED}),
    AnalysisStatus.COMPLETED: frozenset({AnalysisStatus.ANALYZING}),
    AnalysisStatus.FAILED: frozenset({AnalysisStatus.ANALYZING}),
}


def validate_transition(current: AnalysisStatus, new: AnalysisStatus) -> None:
    if new not in ALLOWED_TRANSITIONS[current]:
        raise StateTransitionError(f"Cannot move analysis from {current.value} to {new.value}")


class FreshnessTracker:
    """Owns Repository status. All store access is pushed off the event loop."""

    def __init__(
        self,
        store: DocumentStore,
        stale_after: float = config.STALE_ANALYSIS_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.stale_after = timedelta(seconds=stale_after)
        self.clock = clock

    async def get_repository(self, repo_id: str) -> Repository:
        return await asyncio.to_thread(self.store.require_repository, repo_id)

    async def check_freshness(self, repo_id: str, live_pushed_at: datetime | None) -> bool:
        """True when the last completed result is at least as new as upstream.

        Read-only. Looks at the last completed result even while a new run
        holds the lease, since the run itself asks this question.
        """
        analysis = await asyncio.to_thread(self.store.get_last_completed_analysis, repo_id)
        if analysis is None:
            return False
        stored = analysis.upstream_pushed_at
        if live_pushed_at is None:
            return True
        if stored is None:
            return False
        return stored >= live_pushed_at

    async def begin_analysis(self, repo_id: str) -> str | None:
        """Try to take the single-flight lease. Returns the run id, or None if another run holds it."""
        await self.get_repository(repo_id)
        run_id = uuid.uuid4().hex
        now = self.clock()
        won = await asyncio.to_thread(
            self.store.claim_analysis, repo_id, run_id, now, now - self.stale_after
        )
        if not won:
            since = await asyncio.to_thread(self.store.status_changed_at, repo_id)
            if since is None:
                logger.info("Analysis of %s already in progress; not starting another run", repo_id)
            else:
                logger.info(
                    "Analysis of %s in progress since %s; reclaimable after %s",
                    repo_id, since.isoformat(), (since + self.stale_after).isoformat(),
                )
            return None
        logger.info("Analysis of %s started (run %s)", repo_id, run_id[:8])
        return run_id

    async def complete(
        self,
        repo_id: str,
        run_id: str,
        analysis: AnalysisResult,
        metadata: RepoMetadata | None = None,
    ) -> Repository:
        """analyzing → completed, publishing `analysis` in the same write."""
        done = await asyncio.to_thread(
            self.store.complete_analysis, repo_id, run_id, analysis, metadata, self.clock()
        )
        if not done:
            raise StateTransitionError(await self._lease_lost_reason(repo_id, run_id, "complete"))
        logger.info("Analysis of %s completed: %d files, %d subsystems",
                    repo_id, analysis.file_count, len(analysis.subsystems))
        return await self.get_repository(repo_id)

    async def fail(self, repo_id: str, run_id: str, message: str) -> Repository:
        """analyzing → failed with a categorized message."""
        done = await asyncio.to_thread(self.store.fail_analysis, repo_id, run_id, message, self.clock())
        if not done:
            raise StateTransitionError(await self._lease_lost_reason(repo_id, run_id, "fail"))
        logger.info("Analysis of %s failed: %s", repo_id, message)
        return await self.get_repository(repo_id)

    async def transition_status(
        self,
        repo_id: str,
        new_status: AnalysisStatus,
        *,
        run_id: str | None = None,
        analysis: AnalysisResult | None = None,
        metadata: RepoMetadata | None = None,
        error: str | None = None,
    ) -> str | None:
        """Single entry point over the state machine.

        Moving to ANALYZING returns the new run id, or None when another
        actor already holds it. COMPLETED needs `analysis`, FAILED needs
        `error`; both need the run id returned when the run started.
        Forbidden transitions raise StateTransitionError.
        """
        if new_status is AnalysisStatus.ANALYZING:
            return await self.begin_analysis(repo_id)

        repo = await self.get_repository(repo_id)
        validate_transition(repo.analysis_status, new_status)
        if not run_id:
            raise StateTransitionError(f"A run id is required to move {repo_id} to {new_status.value}")

        if new_status is AnalysisStatus.COMPLETED:
            if analysis is None:
                raise StateTransitionError("Completing an analysis requires its result")
            await self.complete(repo_id, run_id, analysis, metadata)
        else:
            await self.fail(repo_id, run_id, error or "Unexpected error: analysis failed")
        return run_id

    async def wait_for_analysis(
        self,
        repo_id: str,
        timeout: float = 300.0,
        poll_interval: float = 2.0,
    ) -> Repository:
        """Poll until the repository leaves `analyzing`."""
        deadline = time.monotonic() + timeout
        while True:
            repo = await self.get_repository(repo_id)
            if repo.analysis_status is not AnalysisStatus.ANALYZING:
                return repo
            if time.monotonic() >= deadline:
                raise RequestTimeoutError(f"Timed out waiting for analysis of {repo_id}")
            await asyncio.sleep(poll_interval)

    async def _lease_lost_reason(self, repo_id: str, run_id: str, action: str) -> str:
        repo = await asyncio.to_thread(self.store.get_repository, repo_id)
        if repo is None:
            raise NotFoundError(f"Unknown repository: {repo_id}")
        if repo.analysis_status is not AnalysisStatus.ANALYZING:
            return f"Cannot {action} {repo_id}: status is {repo.analysis_status.value}, not analyzing"
        return f"Cannot {action} {repo_id}: run {run_id[:8]} no longer holds the analysis lease"
