"""Grounded question answering over a completed analysis."""

from __future__ import annotations

import asyncio

from . import config
from .analyzer import summary_for_prompt
from .errors import GenerationError, InvalidInputError, NotFoundError
from .github import citation_url
from .logger import get_logger
from .model import OllamaClient
from .prompts import chat_prompt, chat_system_prompt
from .schema import AnalysisResult, ChatMessage, MessageRole, Repository
from .sessions import SessionStore
from .store import DocumentStore

logger = get_logger(__name__)

MAX_CITED_FILES = 25


def build_system_prompt(repo: Repository, analysis: AnalysisResult) -> str:
    context = summary_for_prompt(analysis, repo.full_name, repo.primary_language)

    notes = []
    for subsystem in analysis.subsystems:
        described = analysis.get_description(subsystem.name)
        purpose = described.purpose if described else subsystem.description
        notes.append(f"- {subsystem.name} ({len(subsystem.files)} files): {purpose}")

    cited = list(dict.fromkeys(analysis.main_files + analysis.config_files))
    # Only link files that exist in the analyzed tree
    known = analysis.file_paths()
    for description in analysis.subsystem_descriptions:
        cited.extend(p for p in description.key_files if p in known and p not in cited)
    citations = [
        f"- {path}: {citation_url(repo.full_name, path, branch=analysis.default_branch)}"
        for path in cited[:MAX_CITED_FILES]
    ]
    return chat_system_prompt(context, notes, citations)


class ChatAssistant:
    def __init__(
        self,
        client: OllamaClient,
        store: DocumentStore,
        sessions: SessionStore,
        context_messages: int = config.CHAT_CONTEXT_MESSAGES,
    ):
        self.client = client
        self.store = store
        self.sessions = sessions
        self.context_messages = context_messages

    async def ask(self, repo_id: str, question: str, client_id: str = "default") -> ChatMessage:
        """Store the question, answer it from the analysis, store the answer.

        A generation failure raises GenerationError; the user message stays
        recorded.
        """
        if not question.strip():
            raise InvalidInputError("Question is empty")
        repo = await asyncio.to_thread(self.store.require_repository, repo_id)
        analysis = await asyncio.to_thread(self.store.get_analysis, repo_id)
        if analysis is None:
            raise NotFoundError(f"No completed analysis for {repo_id}; run `repolens analyze` first")

        session = await self.sessions.get_or_create_session(repo_id, client_id)
        history = await self.sessions.load_messages(session.id, limit=self.context_messages)
        await self.sessions.append_message(session.id, MessageRole.USER, question)

        prompt = chat_prompt([(m.role.value, m.content) for m in history], question)
        result = await self.client.complete(prompt, system=build_system_prompt(repo, analysis))
        if not result.success:
            logger.warning("Chat answer for %s failed: %s", repo_id, result.error)
            raise GenerationError(result.error or "Generation failed")

        return await self.sessions.append_message(session.id, MessageRole.ASSISTANT, result.data.strip())
