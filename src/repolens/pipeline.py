"""Analysis pipeline - fetch, classify, partition, publish, enrich.

One run per repository at a time. The run takes the analyzing lease first,
then asks upstream whether anything changed; a fresh repository is
re-published with its existing result, a stale one is fully re-analyzed.
Any failure inside the run marks the repository failed with a categorized
message before the error propagates.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from .analyzer import analyze_tree
from .errors import RETRYABLE_ERRORS, TERMINAL_ERRORS, categorized_message
from .freshness import FreshnessTracker
from .generator import DescriptionSynthesizer
from .github import GitHubClient, parse_github_url
from .logger import get_logger
from .schema import AnalysisResult, AnalysisStatus, Repository
from .store import DocumentStore

logger = get_logger(__name__)


@dataclass
class AnalysisOutcome:
    repository: Repository
    analysis: AnalysisResult | None
    # False when another actor already held the analysis lease
    started: bool = True
    # True when upstream had not changed and the stored result was kept
    reused: bool = False


class AnalysisPipeline:
    """Coordinates the fetcher, analyzer, freshness tracker and synthesizer.

    All collaborators are constructed by the caller and passed in.
    """

    def __init__(
        self,
        github: GitHubClient,
        store: DocumentStore,
        tracker: FreshnessTracker,
        synthesizer: DescriptionSynthesizer | None = None,
    ):
        self.github = github
        self.store = store
        self.tracker = tracker
        self.synthesizer = synthesizer
        # The event loop keeps only weak references to tasks
        self._runs: set[asyncio.Task] = set()

    async def analyze(
        self,
        reference: str,
        force: bool = False,
        enrich: bool = False,
        wait: bool = False,
        progress_callback=None,
    ) -> AnalysisOutcome:
        """Analyze a repository URL or `owner/repo` reference.

        The run is shielded: if the caller is cancelled it still finishes
        and releases the lease.
        """
        ref = parse_github_url(reference)
        repo = await asyncio.to_thread(
            self.store.find_or_create_repository, ref.id, ref.owner, ref.name, ref.url
        )

        run_id = await self.tracker.begin_analysis(repo.id)
        if run_id is None:
            if wait:
                _notify(progress_callback, "Waiting for the analysis already in progress...", 0, 0)
                repo = await self.tracker.wait_for_analysis(repo.id)
            else:
                repo = await self.tracker.get_repository(repo.id)
            analysis = await asyncio.to_thread(self.store.get_analysis, repo.id)
            return AnalysisOutcome(repository=repo, analysis=analysis, started=False)

        task = asyncio.ensure_future(self._run(repo, run_id, force, progress_callback))
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        outcome = await asyncio.shield(task)

        if enrich and self.synthesizer is not None:
            await self.synthesizer.enrich_all(repo.id, progress_callback=progress_callback)
            outcome.analysis = await asyncio.to_thread(self.store.get_analysis, repo.id)
        return outcome

    async def _run(self, repo: Repository, run_id: str, force: bool, progress_callback) -> AnalysisOutcome:
        total = 4
        try:
            _notify(progress_callback, f"Fetching metadata for {repo.full_name}...", 1, total)
            metadata = await self.github.fetch_metadata(repo.owner, repo.name)

            if not force and await self.tracker.check_freshness(repo.id, metadata.pushed_at):
                analysis = await asyncio.to_thread(self.store.get_last_completed_analysis, repo.id)
                _notify(progress_callback, "Stored analysis is up to date", total, total)
                updated = await self.tracker.complete(repo.id, run_id, analysis, metadata)
                return AnalysisOutcome(repository=updated, analysis=analysis, reused=True)

            _notify(progress_callback, f"Fetching file tree ({metadata.default_branch})...", 2, total)
            tree = await self.github.fetch_file_tree(repo.owner, repo.name, metadata.default_branch)

            _notify(progress_callback, f"Analyzing {len(tree.files)} files...", 3, total)
            analysis = analyze_tree(tree.files, metadata=metadata, tree_sha=tree.sha)

            _notify(progress_callback, "Saving analysis...", 4, total)
            updated = await self.tracker.complete(repo.id, run_id, analysis, metadata)
            return AnalysisOutcome(repository=updated, analysis=analysis)

        except asyncio.CancelledError as e:
            # asyncio.run cancels the shielded run too when the process is interrupted
            logger.warning("Analysis of %s was cancelled", repo.id)
            await self._release(repo, run_id, categorized_message(e))
            raise
        except Exception as e:
            message = categorized_message(e)
            if isinstance(e, TERMINAL_ERRORS):
                logger.warning("Analysis of %s failed: %s", repo.id, message)
            elif isinstance(e, RETRYABLE_ERRORS):
                logger.warning("Analysis of %s failed: %s (transient, retry later)", repo.id, message)
            else:
                logger.error("Analysis of %s failed: %s", repo.id, message, exc_info=True)
            await self._release(repo, run_id, message)
            raise

    async def _release(self, repo: Repository, run_id: str, message: str) -> None:
        """Mark the run failed if it still holds the lease."""
        current = await asyncio.to_thread(self.store.get_repository, repo.id)
        holder = await asyncio.to_thread(self.store.get_run_id, repo.id)
        # A reclaimed lease belongs to the newer run; leave it alone
        if current and current.analysis_status is AnalysisStatus.ANALYZING and holder == run_id:
            await self.tracker.fail(repo.id, run_id, message)


def _notify(progress_callback, status: str, current: int, total: int) -> None:
    if progress_callback:
        progress_callback(status, current, total)
