"""Description synthesizer - enrichment over a completed analysis.

Builds prompts from the stored analysis, calls the model, caches the text
with a TTL and persists it back into the AnalysisResult. Enrichment is
best-effort: a GenerationError degrades to the last cached text (even if
expired) or a fallback, and never fails the caller.
"""

from __future__ import annotations

import asyncio
import json

from . import config
from .analyzer import summary_for_prompt
from .cache import DescriptionCache, architecture_key, file_key, subsystem_key
from .errors import GenerationError, NotFoundError, RepoLensError
from .github import GitHubClient
from .logger import get_logger
from .model import OllamaClient
from .prompts import SYSTEM_PROMPT, architecture_prompt, file_prompt, subsystem_prompt
from .schema import (
    AnalysisResult,
    FileExplanation,
    Repository,
    Subsystem,
    SubsystemDescription,
    encode_path_key,
    utcnow,
)
from .store import DocumentStore

logger = get_logger(__name__)

NO_EXPLANATION = "No explanation available for this file."


def fallback_description(subsystem: Subsystem) -> SubsystemDescription:
    """Placeholder built from partition-time data only."""
    return SubsystemDescription(
        name=subsystem.name,
        purpose=subsystem.description,
        description=subsystem.description,
        key_files=subsystem.files[:5],
        fallback=True,
    )


def fallback_architecture(analysis: AnalysisResult) -> str:
    framework = analysis.framework.display_name
    lines = [
        f"This {framework} repository is organized into "
        f"{len(analysis.subsystems)} subsystems:",
        "",
    ]
    for subsystem in analysis.subsystems:
        lines.append(
            f"- **{subsystem.name}**: {len(subsystem.files)} files, "
            f"{subsystem.description.lower()}"
        )
    return "\n".join(lines)


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, (str, int, float))]


class DescriptionSynthesizer:
    """Generates and caches subsystem descriptions and file explanations."""

    def __init__(
        self,
        client: OllamaClient,
        store: DocumentStore,
        cache: DescriptionCache,
        github: GitHubClient | None = None,
        concurrency: int = config.ENRICH_CONCURRENCY,
    ):
        self.client = client
        self.store = store
        self.cache = cache
        self.github = github
        self.concurrency = max(1, concurrency)

    async def _load(self, repo_id: str) -> tuple[Repository, AnalysisResult]:
        repo = await asyncio.to_thread(self.store.require_repository, repo_id)
        analysis = await asyncio.to_thread(self.store.get_analysis, repo_id)
        if analysis is None:
            raise NotFoundError(f"No completed analysis for {repo_id}")
        return repo, analysis

    async def describe_subsystem(
        self,
        repo_id: str,
        name: str,
        regenerate: bool = False,
    ) -> SubsystemDescription:
        repo, analysis = await self._load(repo_id)
        subsystem = analysis.get_subsystem(name)
        if subsystem is None:
            raise NotFoundError(f"Subsystem {name!r} not found in {repo_id}")
        return await self._describe(repo, analysis, subsystem, regenerate)

    async def _describe(
        self,
        repo: Repository,
        analysis: AnalysisResult,
        subsystem: Subsystem,
        regenerate: bool,
    ) -> SubsystemDescription:
        key = subsystem_key(repo.id, subsystem)
        if not regenerate:
            cached = await self.cache.get_fresh(key)
            if cached:
                return await self._cached_description(repo, analysis, cached.content)

        async with self.cache.lock(key):
            # Another task may have filled the key while we waited
            if not regenerate:
                cached = await self.cache.get_fresh(key)
                if cached:
                    return await self._cached_description(repo, analysis, cached.content)

            context = summary_for_prompt(analysis, repo.full_name, repo.primary_language)
            prompt = subsystem_prompt(
                context, subsystem.name, subsystem.files, analysis.framework.display_name
            )
            try:
                data = await self.client.generate_json(prompt, system=SYSTEM_PROMPT)
            except GenerationError as e:
                return await self._subsystem_fallback(key, subsystem, e)

            description = self._description_from_model(subsystem, data)
            await self.cache.put(key, json.dumps(description.to_dict()))
            await asyncio.to_thread(self.store.upsert_subsystem_description, repo.id, description)
            return description

    async def _cached_description(
        self, repo: Repository, analysis: AnalysisResult, content: str
    ) -> SubsystemDescription:
        """Restore a cached description, writing it into the analysis if absent.

        A re-analysis starts with no descriptions while the cache still holds
        text for every unchanged subsystem.
        """
        description = SubsystemDescription.from_dict(json.loads(content))
        stored = analysis.get_description(description.name)
        if stored is None or stored.to_dict() != description.to_dict():
            await asyncio.to_thread(self.store.upsert_subsystem_description, repo.id, description)
        return description

    async def _cached_explanation(
        self, repo: Repository, analysis: AnalysisResult, path: str, text: str
    ) -> str:
        stored = analysis.get_file_explanation(path)
        if stored is None or stored.explanation != text:
            await asyncio.to_thread(
                self.store.set_file_explanation,
                repo.id,
                encode_path_key(path),
                FileExplanation(explanation=text, generated_at=utcnow()),
            )
        return text

    async def _subsystem_fallback(
        self, key: str, subsystem: Subsystem, error: GenerationError
    ) -> SubsystemDescription:
        stale = await self.cache.get_any(key)
        if stale:
            logger.warning("Description of %s failed (%s); using cached text", subsystem.name, error.message)
            return SubsystemDescription.from_dict(json.loads(stale.content))
        logger.warning("Description of %s failed (%s); using fallback", subsystem.name, error.message)
        return fallback_description(subsystem)

    def _description_from_model(self, subsystem: Subsystem, data: dict) -> SubsystemDescription:
        files = set(subsystem.files)
        purpose = str(data.get("purpose") or "").strip() or subsystem.description
        return SubsystemDescription(
            name=subsystem.name,
            purpose=purpose,
            description=str(data.get("description") or "").strip() or subsystem.description,
            # Only paths that really belong to the subsystem
            entry_points=[p for p in _string_list(data.get("entryPoints")) if p in files],
            key_files=[p for p in _string_list(data.get("keyFiles")) if p in files],
            dependencies=_string_list(data.get("dependencies")),
            technologies=_string_list(data.get("technologies")),
            generated_at=utcnow(),
        )

    async def explain_file(self, repo_id: str, path: str) -> str:
        repo, analysis = await self._load(repo_id)
        record = analysis.get_file(path)
        if record is None:
            raise NotFoundError(f"File {path} is not part of the analysis of {repo_id}")

        key = file_key(repo.id, record)
        cached = await self.cache.get_fresh(key)
        if cached:
            return await self._cached_explanation(repo, analysis, path, cached.content)

        async with self.cache.lock(key):
            cached = await self.cache.get_fresh(key)
            if cached:
                return await self._cached_explanation(repo, analysis, path, cached.content)

            content = await self._file_content(repo, analysis, path)
            owner = next((s.name for s in analysis.subsystems if path in s.files), None)
            context = summary_for_prompt(analysis, repo.full_name, repo.primary_language)
            try:
                text = await self.client.generate(file_prompt(context, path, owner, content), system=SYSTEM_PROMPT)
            except GenerationError as e:
                stale = await self.cache.get_any(key)
                if stale:
                    logger.warning("Explanation of %s failed (%s); using cached text", path, e.message)
                    return stale.content
                logger.warning("Explanation of %s failed (%s); no explanation available", path, e.message)
                return NO_EXPLANATION

            await self.cache.put(key, text)
            return await self._cached_explanation(repo, analysis, path, text)

    async def _file_content(self, repo: Repository, analysis: AnalysisResult, path: str) -> str:
        if self.github is None:
            return ""
        try:
            content = await self.github.fetch_file_content(
                repo.owner, repo.name, path, ref=analysis.default_branch
            )
        except RepoLensError as e:
            logger.warning("Could not fetch %s for explanation: %s", path, e.message)
            return ""
        return content[: config.MAX_FILE_CONTENT_CHARS]

    async def describe_architecture(self, repo_id: str, regenerate: bool = False) -> str:
        repo, analysis = await self._load(repo_id)
        key = architecture_key(repo.id, analysis.tree_sha, analysis.subsystems)
        if not regenerate:
            cached = await self.cache.get_fresh(key)
            if cached:
                return await self._cached_architecture(repo, analysis, cached.content)

        async with self.cache.lock(key):
            if not regenerate:
                cached = await self.cache.get_fresh(key)
                if cached:
                    return await self._cached_architecture(repo, analysis, cached.content)

            context = summary_for_prompt(analysis, repo.full_name, repo.primary_language)
            lines = [f"- {s.name}: {len(s.files)} files" for s in analysis.subsystems]
            prompt = architecture_prompt(context, lines, analysis.framework.display_name)
            try:
                text = await self.client.generate(prompt, system=SYSTEM_PROMPT)
            except GenerationError as e:
                stale = await self.cache.get_any(key)
                if stale:
                    logger.warning("Architecture description failed (%s); using cached text", e.message)
                    return stale.content
                logger.warning("Architecture description failed (%s); using fallback", e.message)
                return fallback_architecture(analysis)

            await self.cache.put(key, text)
            return await self._cached_architecture(repo, analysis, text)

    async def _cached_architecture(self, repo: Repository, analysis: AnalysisResult, text: str) -> str:
        if analysis.architecture_description != text:
            await asyncio.to_thread(self.store.set_architecture_description, repo.id, text)
        return text

    async def enrich_all(self, repo_id: str, progress_callback=None) -> list[SubsystemDescription]:
        """Describe every subsystem, at most `concurrency` model calls at a time."""
        repo, analysis = await self._load(repo_id)
        total = len(analysis.subsystems)
        semaphore = asyncio.Semaphore(self.concurrency)
        done = 0

        async def run(subsystem: Subsystem) -> SubsystemDescription:
            nonlocal done
            async with semaphore:
                description = await self._describe(repo, analysis, subsystem, regenerate=False)
            done += 1
            if progress_callback:
                progress_callback(f"Described {subsystem.name}", done, total)
            return description

        return list(await asyncio.gather(*(run(s) for s in analysis.subsystems)))
