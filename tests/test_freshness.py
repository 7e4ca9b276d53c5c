"""Tests for the freshness tracker and analysis state machine."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from repolens.analyzer import analyze_tree
from repolens.errors import RequestTimeoutError, StateTransitionError
from repolens.freshness import FreshnessTracker, validate_transition
from repolens.schema import AnalysisStatus

from conftest import PUSHED_AT, SVELTE_TREE, svelte_metadata


@pytest.fixture
def repo_id(store):
    return store.find_or_create_repository("acme__web", "acme", "web", "https://github.com/acme/web").id


@pytest.fixture
def tracker(store):
    return FreshnessTracker(store, stale_after=900)


def _analysis():
    return analyze_tree(SVELTE_TREE, metadata=svelte_metadata(), tree_sha="tree-1")


class TestTransitions:
    def test_new_repository_is_pending(self, store, repo_id):
        assert store.get_repository(repo_id).analysis_status is AnalysisStatus.PENDING

    def test_full_lifecycle(self, store, tracker, repo_id):
        async def run():
            run_id = await tracker.transition_status(repo_id, AnalysisStatus.ANALYZING)
            assert run_id
            assert store.get_repository(repo_id).analysis_status is AnalysisStatus.ANALYZING
            await tracker.transition_status(
                repo_id, AnalysisStatus.COMPLETED, run_id=run_id,
                analysis=_analysis(), metadata=svelte_metadata(),
            )

        asyncio.run(run())
        repo = store.get_repository(repo_id)
        assert repo.analysis_status is AnalysisStatus.COMPLETED
        assert repo.last_analyzed is not None
        assert repo.stars == 42
        assert repo.upstream_pushed_at == PUSHED_AT
        assert store.get_analysis(repo_id).file_count == len(SVELTE_TREE)

    def test_completed_to_completed_forbidden(self, store, tracker, repo_id):
        async def run():
            run_id = await tracker.begin_analysis(repo_id)
            await tracker.complete(repo_id, run_id, _analysis())
            with pytest.raises(StateTransitionError):
                await tracker.transition_status(
                    repo_id, AnalysisStatus.COMPLETED, run_id=run_id, analysis=_analysis()
                )
            with pytest.raises(StateTransitionError):
                await tracker.complete(repo_id, run_id, _analysis())

        asyncio.run(run())
        assert store.get_repository(repo_id).analysis_status is AnalysisStatus.COMPLETED

    def test_pending_to_failed_forbidden(self, tracker, repo_id):
        with pytest.raises(StateTransitionError):
            asyncio.run(tracker.transition_status(repo_id, AnalysisStatus.FAILED, run_id="x", error="boom"))

    def test_validate_transition_table(self):
        validate_transition(AnalysisStatus.FAILED, AnalysisStatus.ANALYZING)
        validate_transition(AnalysisStatus.COMPLETED, AnalysisStatus.ANALYZING)
        with pytest.raises(StateTransitionError):
            validate_transition(AnalysisStatus.PENDING, AnalysisStatus.COMPLETED)

    def test_failed_run_records_error_and_can_retry(self, store, tracker, repo_id):
        async def run():
            run_id = await tracker.begin_analysis(repo_id)
            await tracker.fail(repo_id, run_id, "Not found: acme/web")
            assert store.get_repository(repo_id).last_error == "Not found: acme/web"
            return await tracker.begin_analysis(repo_id)

        retry_id = asyncio.run(run())
        assert retry_id
        repo = store.get_repository(repo_id)
        assert repo.analysis_status is AnalysisStatus.ANALYZING
        assert repo.last_error is None

    def test_result_hidden_while_analyzing(self, store, tracker, repo_id):
        async def run():
            first = await tracker.begin_analysis(repo_id)
            await tracker.complete(repo_id, first, _analysis())
            assert store.get_analysis(repo_id) is not None
            await tracker.begin_analysis(repo_id)

        asyncio.run(run())
        assert store.get_analysis(repo_id) is None
        # Still available internally for freshness decisions
        assert store.get_last_completed_analysis(repo_id) is not None


class TestSingleFlight:
    def test_concurrent_callers_one_winner(self, store, tracker, repo_id):
        async def run():
            return await asyncio.gather(
                tracker.transition_status(repo_id, AnalysisStatus.ANALYZING),
                tracker.transition_status(repo_id, AnalysisStatus.ANALYZING),
            )

        results = asyncio.run(run())
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert store.get_run_id(repo_id) == winners[0]

    def test_second_tracker_on_same_database_loses(self, store, tmp_path, repo_id):
        from repolens.store import DocumentStore

        other = DocumentStore(tmp_path / "repolens.db")
        try:
            first = asyncio.run(FreshnessTracker(store).begin_analysis(repo_id))
            second = asyncio.run(FreshnessTracker(other).begin_analysis(repo_id))
        finally:
            other.close()
        assert first is not None
        assert second is None

    def test_stale_lease_reclaimed_and_late_write_rejected(self, store, repo_id):
        now = datetime.now(timezone.utc)
        early = FreshnessTracker(store, stale_after=900, clock=lambda: now)
        later = FreshnessTracker(store, stale_after=900, clock=lambda: now + timedelta(hours=1))

        async def run():
            abandoned = await early.begin_analysis(repo_id)
            reclaimed = await later.begin_analysis(repo_id)
            assert reclaimed and reclaimed != abandoned
            with pytest.raises(StateTransitionError, match="no longer holds"):
                await early.complete(repo_id, abandoned, _analysis())
            await later.complete(repo_id, reclaimed, _analysis())

        asyncio.run(run())
        assert store.get_repository(repo_id).analysis_status is AnalysisStatus.COMPLETED

    def test_fresh_lease_not_reclaimed(self, store, repo_id):
        now = datetime.now(timezone.utc)
        tracker = FreshnessTracker(store, stale_after=900, clock=lambda: now)
        soon = FreshnessTracker(store, stale_after=900, clock=lambda: now + timedelta(minutes=5))

        async def run():
            assert await tracker.begin_analysis(repo_id)
            return await soon.begin_analysis(repo_id)

        assert asyncio.run(run()) is None

    def test_lost_claim_reports_when_lease_expires(self, store, repo_id, caplog):
        now = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
        tracker = FreshnessTracker(store, stale_after=900, clock=lambda: now)
        soon = FreshnessTracker(store, stale_after=900, clock=lambda: now + timedelta(minutes=5))

        async def run():
            assert await tracker.begin_analysis(repo_id)
            return await soon.begin_analysis(repo_id)

        with caplog.at_level(logging.INFO, logger="repolens.freshness"):
            assert asyncio.run(run()) is None

        assert store.status_changed_at(repo_id) == now
        assert "reclaimable after 2026-05-01T12:15:00+00:00" in caplog.text


class TestCheckFreshness:
    def _complete(self, tracker, repo_id, pushed_at):
        async def run():
            run_id = await tracker.begin_analysis(repo_id)
            metadata = svelte_metadata(pushed_at)
            analysis = analyze_tree(SVELTE_TREE, metadata=metadata)
            await tracker.complete(repo_id, run_id, analysis, metadata)

        asyncio.run(run())

    def test_no_analysis_is_stale(self, tracker, repo_id):
        assert asyncio.run(tracker.check_freshness(repo_id, PUSHED_AT)) is False

    def test_same_timestamp_is_fresh(self, tracker, repo_id):
        self._complete(tracker, repo_id, PUSHED_AT)
        assert asyncio.run(tracker.check_freshness(repo_id, PUSHED_AT)) is True

    def test_newer_upstream_is_stale(self, tracker, repo_id):
        self._complete(tracker, repo_id, PUSHED_AT)
        later = PUSHED_AT + timedelta(minutes=1)
        assert asyncio.run(tracker.check_freshness(repo_id, later)) is False

    def test_idempotent(self, store, tracker, repo_id):
        self._complete(tracker, repo_id, PUSHED_AT)
        before = store.get_repository(repo_id)
        first = asyncio.run(tracker.check_freshness(repo_id, PUSHED_AT))
        second = asyncio.run(tracker.check_freshness(repo_id, PUSHED_AT))
        assert first == second
        assert store.get_repository(repo_id).updated_at == before.updated_at


class TestWaitForAnalysis:
    def test_returns_when_not_analyzing(self, tracker, repo_id):
        repo = asyncio.run(tracker.wait_for_analysis(repo_id, timeout=1, poll_interval=0.01))
        assert repo.analysis_status is AnalysisStatus.PENDING

    def test_waits_for_other_run(self, tracker, repo_id):
        async def run():
            run_id = await tracker.begin_analysis(repo_id)

            async def finish_later():
                await asyncio.sleep(0.05)
                await tracker.complete(repo_id, run_id, _analysis())

            finisher = asyncio.ensure_future(finish_later())
            repo = await tracker.wait_for_analysis(repo_id, timeout=5, poll_interval=0.01)
            await finisher
            return repo

        assert asyncio.run(run()).analysis_status is AnalysisStatus.COMPLETED

    def test_times_out(self, tracker, repo_id):
        async def run():
            await tracker.begin_analysis(repo_id)
            await tracker.wait_for_analysis(repo_id, timeout=0.05, poll_interval=0.01)

        with pytest.raises(RequestTimeoutError):
            asyncio.run(run())
