"""Prompt templates for descriptions, explanations and chat.

Each template takes the structural analysis context and builds a focused,
deterministic prompt: identical inputs produce identical text.
"""

from __future__ import annotations

SYSTEM_PROMPT = """You are an expert software architect analyzing codebases.
Write precise, practical technical explanations for developers new to the project.
Focus on responsibilities and how parts fit together, not obvious facts.
Use only the concrete details provided; do not invent files or libraries.
Write in a professional technical style, not promotional."""

MAX_LISTED_FILES = 10


def subsystem_prompt(context: str, name: str, files: list[str], framework: str) -> str:
    """Prompt for one subsystem; the model must answer with a JSON object."""
    file_list = "\n".join(files[:MAX_LISTED_FILES])
    more = f"\n... and {len(files) - MAX_LISTED_FILES} more" if len(files) > MAX_LISTED_FILES else ""
    return f"""Analyze the "{name}" subsystem of this {framework} repository.

REPOSITORY ANALYSIS:
{context}

FILES IN THIS SUBSYSTEM:
{file_list}{more}

Respond with a JSON object with EXACTLY these keys:
{{
  "description": "Brief description of what this subsystem does",
  "purpose": "Main purpose and responsibility",
  "keyFiles": ["most important files, chosen from the list above"],
  "entryPoints": ["files where execution or usage starts, chosen from the list above"],
  "technologies": ["relevant technologies used"],
  "dependencies": ["key libraries or services it relies on"]
}}

Keep descriptions concise and focused on practical information for developers."""


def file_prompt(context: str, path: str, subsystem: str | None, content: str = "") -> str:
    """Prompt for a single-file explanation."""
    location = f'It belongs to the "{subsystem}" subsystem.' if subsystem else ""
    source = f"FILE CONTENT:\n```\n{content}\n```" if content else "The file content is not available."
    return f"""Explain the file `{path}` in this repository. {location}

REPOSITORY ANALYSIS:
{context}

{source}

In under 200 words, explain:
1. What this file is responsible for
2. Its most important functions, classes or exports
3. How it connects to the rest of the codebase"""


def architecture_prompt(context: str, subsystem_lines: list[str], framework: str) -> str:
    """Prompt for the repository-level architecture narrative."""
    subsystems = "\n".join(subsystem_lines)
    return f"""Analyze the architecture of this {framework} repository.

REPOSITORY ANALYSIS:
{context}

SUBSYSTEMS:
{subsystems}

Provide a clear, technical explanation of:
1. The overall architecture pattern used
2. How the subsystems interact with each other
3. The data flow through the application
4. Key architectural decisions and their trade-offs
5. Areas where developers should focus for maintenance

Keep it under 500 words and practical."""


def chat_system_prompt(context: str, subsystem_notes: list[str], citations: list[str]) -> str:
    """System prompt grounding chat answers in the stored analysis."""
    notes = "\n".join(subsystem_notes) or "(no subsystem descriptions yet)"
    links = "\n".join(citations) or "(none)"
    return f"""{SYSTEM_PROMPT}

You answer questions about one repository using the analysis below.
When you mention a file, cite it with its GitHub link from the list.
If the analysis does not contain the answer, say so plainly.

REPOSITORY ANALYSIS:
{context}

SUBSYSTEMS:
{notes}

FILE LINKS:
{links}"""


def chat_prompt(history: list[tuple[str, str]], question: str) -> str:
    """Conversation transcript followed by the new question."""
    lines = [f"{role.upper()}: {content}" for role, content in history]
    lines.append(f"USER: {question}")
    lines.append("ASSISTANT:")
    return "\n\n".join(lines)
