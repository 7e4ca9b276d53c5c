"""End-to-end tests for the analysis pipeline against fake GitHub and Ollama."""

import asyncio
import json
import logging
import time
from collections import Counter
from datetime import datetime, timezone

import httpx
import pytest

from repolens.cache import DescriptionCache
from repolens.errors import (
    CANCELLED_MESSAGE,
    InvalidInputError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
)
from repolens.freshness import FreshnessTracker
from repolens.generator import DescriptionSynthesizer
from repolens.github import GitHubClient
from repolens.pipeline import AnalysisPipeline
from repolens.schema import AnalysisStatus, Framework

from conftest import SVELTE_TREE


class FakeGitHub:
    """MockTransport handler serving one repository and its tree."""

    def __init__(self, pushed_at="2026-03-01T12:00:00Z"):
        self.pushed_at = pushed_at
        self.metadata_status = 200
        self.calls = Counter()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] += 1
        if path == "/repos/acme/web":
            if self.metadata_status >= 500:
                return httpx.Response(self.metadata_status, json={"message": "Bad Gateway"})
            if self.metadata_status == 404:
                return httpx.Response(404, json={"message": "Not Found"})
            if self.metadata_status == 403:
                return httpx.Response(
                    403,
                    json={"message": "API rate limit exceeded"},
                    headers={
                        "x-ratelimit-limit": "60",
                        "x-ratelimit-remaining": "0",
                        "x-ratelimit-reset": str(int(time.time()) + 600),
                    },
                )
            return httpx.Response(200, json={
                "full_name": "acme/web",
                "html_url": "https://github.com/acme/web",
                "stargazers_count": 42,
                "forks_count": 7,
                "default_branch": "main",
                "pushed_at": self.pushed_at,
                "language": "Svelte",
            })
        if path == "/repos/acme/web/git/trees/main":
            return httpx.Response(200, json={
                "sha": "tree-1",
                "tree": [
                    {"path": f.path, "type": "blob", "size": f.size, "sha": f.sha} for f in SVELTE_TREE
                ],
            })
        return httpx.Response(404, json={"message": "Not Found"})

    @property
    def tree_fetches(self):
        return self.calls["/repos/acme/web/git/trees/main"]


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def pipeline(store, fake_github):
    github = GitHubClient(token="", retry_base_delay=0, transport=httpx.MockTransport(fake_github))
    return AnalysisPipeline(github, store, FreshnessTracker(store))


class TestAnalyze:
    def test_completes(self, store, pipeline):
        outcome = asyncio.run(pipeline.analyze("https://github.com/acme/web"))

        assert outcome.started
        assert not outcome.reused
        assert outcome.analysis.framework is Framework.SVELTE
        assert outcome.analysis.file_count == len(SVELTE_TREE)
        repo = store.get_repository("acme__web")
        assert repo.analysis_status is AnalysisStatus.COMPLETED
        assert repo.stars == 42
        assert store.get_analysis("acme__web").tree_sha == "tree-1"

    def test_unchanged_upstream_reuses_result(self, store, pipeline, fake_github):
        asyncio.run(pipeline.analyze("acme/web"))
        first = store.get_analysis("acme__web")

        outcome = asyncio.run(pipeline.analyze("acme/web"))

        assert outcome.reused
        assert fake_github.tree_fetches == 1
        assert store.get_repository("acme__web").analysis_status is AnalysisStatus.COMPLETED
        assert store.get_analysis("acme__web").analyzed_at == first.analyzed_at

    def test_force_reanalyzes(self, pipeline, fake_github):
        asyncio.run(pipeline.analyze("acme/web"))
        outcome = asyncio.run(pipeline.analyze("acme/web", force=True))

        assert not outcome.reused
        assert fake_github.tree_fetches == 2

    def test_newer_push_reanalyzes(self, pipeline, fake_github):
        asyncio.run(pipeline.analyze("acme/web"))
        fake_github.pushed_at = "2026-03-02T08:00:00Z"

        outcome = asyncio.run(pipeline.analyze("acme/web"))

        assert not outcome.reused
        assert fake_github.tree_fetches == 2
        assert outcome.analysis.upstream_pushed_at == datetime(2026, 3, 2, 8, tzinfo=timezone.utc)

    def test_invalid_reference_creates_nothing(self, store, pipeline, fake_github):
        with pytest.raises(InvalidInputError):
            asyncio.run(pipeline.analyze("https://github.com/acme/web/tree/main"))
        assert store.list_repositories() == []
        assert sum(fake_github.calls.values()) == 0

    def test_progress_reported(self, pipeline):
        updates = []
        asyncio.run(pipeline.analyze("acme/web", progress_callback=lambda s, c, t: updates.append((c, t))))
        assert updates == [(1, 4), (2, 4), (3, 4), (4, 4)]


class TestFailures:
    def test_not_found_marks_failed(self, store, pipeline, fake_github):
        fake_github.metadata_status = 404

        with pytest.raises(NotFoundError):
            asyncio.run(pipeline.analyze("acme/web"))

        repo = store.get_repository("acme__web")
        assert repo.analysis_status is AnalysisStatus.FAILED
        assert repo.last_error.startswith("Not found:")
        assert store.get_analysis("acme__web") is None

    def test_rate_limit_marks_failed(self, store, pipeline, fake_github):
        fake_github.metadata_status = 403

        with pytest.raises(RateLimitedError):
            asyncio.run(pipeline.analyze("acme/web"))

        repo = store.get_repository("acme__web")
        assert repo.analysis_status is AnalysisStatus.FAILED
        assert repo.last_error.startswith("Rate limited:")
        assert "resets at" in repo.last_error

    def test_upstream_outage_marks_failed(self, store, pipeline, fake_github, caplog):
        fake_github.metadata_status = 502

        with caplog.at_level(logging.WARNING, logger="repolens.pipeline"):
            with pytest.raises(NetworkError):
                asyncio.run(pipeline.analyze("acme/web"))

        assert store.get_repository("acme__web").last_error.startswith("Network error:")
        messages = [r.getMessage() for r in caplog.records if r.name == "repolens.pipeline"]
        assert any("transient" in m for m in messages)

    def test_terminal_failure_not_reported_as_transient(self, pipeline, fake_github, caplog):
        fake_github.metadata_status = 404

        with caplog.at_level(logging.WARNING, logger="repolens.pipeline"):
            with pytest.raises(NotFoundError):
                asyncio.run(pipeline.analyze("acme/web"))

        records = [r for r in caplog.records if r.name == "repolens.pipeline"]
        assert [r.levelno for r in records] == [logging.WARNING]
        assert "transient" not in records[0].getMessage()

    def test_failed_repository_can_be_retried(self, store, pipeline, fake_github):
        fake_github.metadata_status = 404
        with pytest.raises(NotFoundError):
            asyncio.run(pipeline.analyze("acme/web"))

        fake_github.metadata_status = 200
        outcome = asyncio.run(pipeline.analyze("acme/web"))

        assert outcome.started
        repo = store.get_repository("acme__web")
        assert repo.analysis_status is AnalysisStatus.COMPLETED
        assert repo.last_error is None


class TestSingleFlight:
    def test_lease_held_elsewhere(self, store, pipeline, fake_github):
        store.find_or_create_repository("acme__web", "acme", "web", "https://github.com/acme/web")
        now = datetime.now(timezone.utc)
        assert store.claim_analysis("acme__web", "other-run", now, now)

        outcome = asyncio.run(pipeline.analyze("acme/web"))

        assert not outcome.started
        assert outcome.analysis is None
        assert outcome.repository.analysis_status is AnalysisStatus.ANALYZING
        assert sum(fake_github.calls.values()) == 0
        assert store.get_run_id("acme__web") == "other-run"

    def test_concurrent_requests_run_once(self, store, pipeline, fake_github):
        async def run():
            return await asyncio.gather(pipeline.analyze("acme/web"), pipeline.analyze("acme/web"))

        outcomes = asyncio.run(run())

        assert sorted(o.started for o in outcomes) == [False, True]
        assert fake_github.calls["/repos/acme/web"] == 1
        assert store.get_repository("acme__web").analysis_status is AnalysisStatus.COMPLETED


class TestEnrich:
    def test_enrich_describes_subsystems(self, store, fake_github, fake_ollama, ollama_client):
        fake_ollama.response = json.dumps({"description": "d", "purpose": "p"})
        github = GitHubClient(token="", transport=httpx.MockTransport(fake_github))
        synthesizer = DescriptionSynthesizer(ollama_client, store, DescriptionCache(store))
        pipeline = AnalysisPipeline(github, store, FreshnessTracker(store), synthesizer)

        outcome = asyncio.run(pipeline.analyze("acme/web", enrich=True))

        assert len(outcome.analysis.subsystem_descriptions) == len(outcome.analysis.subsystems)
        assert fake_ollama.generate_calls == len(outcome.analysis.subsystems)
        assert all(d.purpose == "p" for d in outcome.analysis.subsystem_descriptions)

    def test_enrichment_failure_keeps_analysis(self, store, fake_github, fake_ollama, ollama_client):
        fake_ollama.status_code = 500
        github = GitHubClient(token="", transport=httpx.MockTransport(fake_github))
        synthesizer = DescriptionSynthesizer(ollama_client, store, DescriptionCache(store))
        pipeline = AnalysisPipeline(github, store, FreshnessTracker(store), synthesizer)

        outcome = asyncio.run(pipeline.analyze("acme/web", enrich=True))

        assert store.get_repository("acme__web").analysis_status is AnalysisStatus.COMPLETED
        assert outcome.analysis.subsystem_descriptions == []


def slow_github(fake_github, delay=0.1):
    """GitHubClient whose every request takes `delay` seconds."""

    async def handler(request):
        await asyncio.sleep(delay)
        return fake_github(request)

    return GitHubClient(token="", retry_base_delay=0, transport=httpx.MockTransport(handler))


async def wait_for_status(store, status, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        repo = store.get_repository("acme__web")
        if repo and repo.analysis_status is status:
            return repo
        await asyncio.sleep(0.01)
    raise AssertionError(f"acme__web never reached {status.value}")


class TestCancellation:
    def test_abandoned_caller_still_completes(self, store, fake_github):
        pipeline = AnalysisPipeline(slow_github(fake_github), store, FreshnessTracker(store))

        async def run():
            caller = asyncio.ensure_future(pipeline.analyze("acme/web"))
            await wait_for_status(store, AnalysisStatus.ANALYZING)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller
            return await wait_for_status(store, AnalysisStatus.COMPLETED)

        repo = asyncio.run(run())

        assert repo.last_error is None
        assert fake_github.tree_fetches == 1
        assert store.get_analysis("acme__web").tree_sha == "tree-1"

    def test_cancelled_run_releases_lease(self, store, fake_github):
        pipeline = AnalysisPipeline(slow_github(fake_github), store, FreshnessTracker(store))

        async def run():
            asyncio.ensure_future(pipeline.analyze("acme/web"))
            await wait_for_status(store, AnalysisStatus.ANALYZING)
            # What asyncio.run does to leftover tasks on shutdown
            others = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            for task in others:
                task.cancel()
            return await asyncio.gather(*others, return_exceptions=True)

        results = asyncio.run(run())

        assert all(isinstance(r, asyncio.CancelledError) for r in results)
        repo = store.get_repository("acme__web")
        assert repo.analysis_status is AnalysisStatus.FAILED
        assert repo.last_error == CANCELLED_MESSAGE

    def test_cancelled_repository_can_be_retried(self, store, fake_github, pipeline):
        async def cancel_run():
            asyncio.ensure_future(
                AnalysisPipeline(slow_github(fake_github), store, FreshnessTracker(store)).analyze("acme/web")
            )
            await wait_for_status(store, AnalysisStatus.ANALYZING)
            others = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            for task in others:
                task.cancel()
            await asyncio.gather(*others, return_exceptions=True)

        asyncio.run(cancel_run())
        outcome = asyncio.run(pipeline.analyze("acme/web"))

        assert outcome.started
        assert store.get_repository("acme__web").analysis_status is AnalysisStatus.COMPLETED
