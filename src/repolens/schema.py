"""Data model for repositories, analysis artifacts and chat sessions.

Everything here is a plain dataclass with `to_dict` / `from_dict` so the
document store can persist it as JSON and downstream renderers can consume
the same shape.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def from_iso(value: str | None) -> datetime | None:
    """Parse an ISO timestamp; GitHub's trailing `Z` is accepted."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# --- Closed enumerations ---


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class Framework(str, Enum):
    REACT = "react"
    NEXTJS = "nextjs"
    SVELTE = "svelte"
    FLASK = "flask"
    FASTAPI = "fastapi"
    PYTHON_CLI = "python-cli"
    PYTHON_LIB = "python-lib"
    MULTI_FRAMEWORK = "multi-framework"
    UNKNOWN = "unknown"

    @property
    def display_name(self) -> str:
        return FRAMEWORK_DISPLAY_NAMES[self]


FRAMEWORK_DISPLAY_NAMES = {
    Framework.REACT: "React",
    Framework.NEXTJS: "Next.js",
    Framework.SVELTE: "Svelte / SvelteKit",
    Framework.FLASK: "Flask",
    Framework.FASTAPI: "FastAPI",
    Framework.PYTHON_CLI: "Python CLI",
    Framework.PYTHON_LIB: "Python library",
    Framework.MULTI_FRAMEWORK: "Multi-framework",
    Framework.UNKNOWN: "Unknown",
}


class Role(str, Enum):
    ENTRY = "entry"
    UI = "ui"
    SERVICE = "service"
    OTHER = "other"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# --- File path keys ---


def encode_path_key(path: str) -> str:
    """Stable, reversible key for a file path.

    URL-safe base64 without padding: no `/`, `.` or quotes, so the key can
    sit inside a JSON path expression without escaping.
    """
    return base64.urlsafe_b64encode(path.encode("utf-8")).decode("ascii").rstrip("=")


def decode_path_key(key: str) -> str:
    padding = "=" * (-len(key) % 4)
    return base64.urlsafe_b64decode(key + padding).decode("utf-8")


# --- Repository ---


@dataclass
class RepoMetadata:
    """Live metadata returned by the hosting API."""

    full_name: str
    url: str
    stars: int = 0
    forks: int = 0
    default_branch: str = "main"
    pushed_at: datetime | None = None
    description: str | None = None
    primary_language: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "full_name": self.full_name,
            "url": self.url,
            "stars": self.stars,
            "forks": self.forks,
            "default_branch": self.default_branch,
            "pushed_at": to_iso(self.pushed_at),
            "description": self.description,
            "primary_language": self.primary_language,
        }


@dataclass
class Repository:
    """Persistent repository record, owned by the freshness tracker."""

    id: str
    owner: str
    name: str
    url: str
    full_name: str = ""
    description: str | None = None
    stars: int = 0
    forks: int = 0
    primary_language: str | None = None
    default_branch: str = "main"
    upstream_pushed_at: datetime | None = None
    analysis_status: AnalysisStatus = AnalysisStatus.PENDING
    last_analyzed: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self):
        if not self.full_name:
            self.full_name = f"{self.owner}/{self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "name": self.name,
            "url": self.url,
            "full_name": self.full_name,
            "description": self.description,
            "stars": self.stars,
            "forks": self.forks,
            "primary_language": self.primary_language,
            "default_branch": self.default_branch,
            "upstream_pushed_at": to_iso(self.upstream_pushed_at),
            "analysis_status": self.analysis_status.value,
            "last_analyzed": to_iso(self.last_analyzed),
            "last_error": self.last_error,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Repository:
        return cls(
            id=data["id"],
            owner=data["owner"],
            name=data["name"],
            url=data["url"],
            full_name=data.get("full_name", ""),
            description=data.get("description"),
            stars=data.get("stars", 0),
            forks=data.get("forks", 0),
            primary_language=data.get("primary_language"),
            default_branch=data.get("default_branch", "main"),
            upstream_pushed_at=from_iso(data.get("upstream_pushed_at")),
            analysis_status=AnalysisStatus(data.get("analysis_status", "pending")),
            last_analyzed=from_iso(data.get("last_analyzed")),
            last_error=data.get("last_error"),
            created_at=from_iso(data.get("created_at")),
            updated_at=from_iso(data.get("updated_at")),
        )


# --- Analysis artifacts ---


@dataclass
class FileRecord:
    path: str
    size: int = 0
    sha: str = ""

    @property
    def extension(self) -> str:
        name = self.path.rsplit("/", 1)[-1]
        if "." not in name.lstrip("."):
            return ""
        return "." + name.rsplit(".", 1)[-1].lower()

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "size": self.size, "extension": self.extension, "sha": self.sha}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileRecord:
        return cls(path=data["path"], size=data.get("size", 0), sha=data.get("sha", ""))


@dataclass
class Subsystem:
    name: str
    files: list[str] = field(default_factory=list)
    description: str = ""
    pattern: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "files": list(self.files),
            "description": self.description,
            "pattern": self.pattern,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subsystem:
        return cls(
            name=data["name"],
            files=list(data.get("files", [])),
            description=data.get("description", ""),
            pattern=data.get("pattern", ""),
        )


@dataclass
class SubsystemDescription:
    name: str
    purpose: str
    description: str = ""
    entry_points: list[str] = field(default_factory=list)
    key_files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    technologies: list[str] = field(default_factory=list)
    generated_at: datetime | None = None
    # True when this is the partition-time placeholder, not model output
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "purpose": self.purpose,
            "description": self.description,
            "entry_points": list(self.entry_points),
            "key_files": list(self.key_files),
            "dependencies": list(self.dependencies),
            "technologies": list(self.technologies),
            "generated_at": to_iso(self.generated_at),
            "fallback": self.fallback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubsystemDescription:
        return cls(
            name=data["name"],
            purpose=data.get("purpose", ""),
            description=data.get("description", ""),
            entry_points=list(data.get("entry_points", [])),
            key_files=list(data.get("key_files", [])),
            dependencies=list(data.get("dependencies", [])),
            technologies=list(data.get("technologies", [])),
            generated_at=from_iso(data.get("generated_at")),
            fallback=data.get("fallback", False),
        )


@dataclass
class FileExplanation:
    explanation: str
    generated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"explanation": self.explanation, "generated_at": to_iso(self.generated_at)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileExplanation:
        return cls(explanation=data["explanation"], generated_at=from_iso(data.get("generated_at")))


@dataclass
class AnalysisResult:
    """Structural analysis of one repository snapshot."""

    framework: Framework
    file_tree: list[FileRecord] = field(default_factory=list)
    languages: dict[str, int] = field(default_factory=dict)  # language -> bytes
    subsystems: list[Subsystem] = field(default_factory=list)
    subsystem_descriptions: list[SubsystemDescription] = field(default_factory=list)
    file_explanations: dict[str, FileExplanation] = field(default_factory=dict)  # path key -> explanation
    main_files: list[str] = field(default_factory=list)
    config_files: list[str] = field(default_factory=list)
    documentation_files: list[str] = field(default_factory=list)
    test_files: list[str] = field(default_factory=list)
    analyzed_at: datetime | None = None
    upstream_pushed_at: datetime | None = None
    default_branch: str = "main"
    tree_sha: str = ""
    architecture_description: str | None = None

    @property
    def file_count(self) -> int:
        return len(self.file_tree)

    def file_paths(self) -> set[str]:
        return {f.path for f in self.file_tree}

    def get_file(self, path: str) -> FileRecord | None:
        for record in self.file_tree:
            if record.path == path:
                return record
        return None

    def get_subsystem(self, name: str) -> Subsystem | None:
        """Look up a subsystem by name, case-insensitively."""
        lowered = name.lower()
        for subsystem in self.subsystems:
            if subsystem.name.lower() == lowered:
                return subsystem
        return None

    def get_description(self, name: str) -> SubsystemDescription | None:
        for description in self.subsystem_descriptions:
            if description.name == name:
                return description
        return None

    def get_file_explanation(self, path: str) -> FileExplanation | None:
        return self.file_explanations.get(encode_path_key(path))

    def to_dict(self) -> dict[str, Any]:
        return {
            "framework": self.framework.value,
            "file_tree": [f.to_dict() for f in self.file_tree],
            "file_count": self.file_count,
            "languages": dict(self.languages),
            "subsystems": [s.to_dict() for s in self.subsystems],
            "subsystem_descriptions": [d.to_dict() for d in self.subsystem_descriptions],
            "file_explanations": {k: v.to_dict() for k, v in self.file_explanations.items()},
            "main_files": list(self.main_files),
            "config_files": list(self.config_files),
            "documentation_files": list(self.documentation_files),
            "test_files": list(self.test_files),
            "analyzed_at": to_iso(self.analyzed_at),
            "upstream_pushed_at": to_iso(self.upstream_pushed_at),
            "default_branch": self.default_branch,
            "tree_sha": self.tree_sha,
            "architecture_description": self.architecture_description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisResult:
        return cls(
            framework=Framework(data.get("framework", "unknown")),
            file_tree=[FileRecord.from_dict(f) for f in data.get("file_tree", [])],
            languages=dict(data.get("languages", {})),
            subsystems=[Subsystem.from_dict(s) for s in data.get("subsystems", [])],
            subsystem_descriptions=[
                SubsystemDescription.from_dict(d) for d in data.get("subsystem_descriptions", [])
            ],
            file_explanations={
                k: FileExplanation.from_dict(v) for k, v in data.get("file_explanations", {}).items()
            },
            main_files=list(data.get("main_files", [])),
            config_files=list(data.get("config_files", [])),
            documentation_files=list(data.get("documentation_files", [])),
            test_files=list(data.get("test_files", [])),
            analyzed_at=from_iso(data.get("analyzed_at")),
            upstream_pushed_at=from_iso(data.get("upstream_pushed_at")),
            default_branch=data.get("default_branch", "main"),
            tree_sha=data.get("tree_sha", ""),
            architecture_description=data.get("architecture_description"),
        )


@dataclass
class CachedDescription:
    key: str
    content: str
    generated_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


# --- Graph model ---


@dataclass
class GraphNode:
    id: str
    label: str
    role: Role

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "label": self.label, "role": self.role.value}


@dataclass
class GraphEdge:
    source: str
    target: str
    kind: str = "flow"

    def to_dict(self) -> dict[str, Any]:
        return {"from": self.source, "to": self.target, "kind": self.kind}


@dataclass
class Graph:
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


# --- Chat ---


@dataclass
class ChatMessage:
    id: str
    role: MessageRole
    content: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": to_iso(self.timestamp),
        }


@dataclass
class ChatSession:
    id: str
    repo_id: str
    created_at: datetime
    last_updated: datetime
    client_id: str = "default"
    messages: list[ChatMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "repo_id": self.repo_id,
            "client_id": self.client_id,
            "created_at": to_iso(self.created_at),
            "last_updated": to_iso(self.last_updated),
            "messages": [m.to_dict() for m in self.messages],
        }
