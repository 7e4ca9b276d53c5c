"""Shared fixtures: a temporary store, fake HTTP services and sample trees."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from repolens.analyzer import analyze_tree
from repolens.model import OllamaClient
from repolens.schema import FileRecord, RepoMetadata
from repolens.store import DocumentStore

PUSHED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

SVELTE_TREE = [
    FileRecord("package.json", 800, "p1"),
    FileRecord("svelte.config.js", 200, "s1"),
    FileRecord("README.md", 1500, "r1"),
    FileRecord("src/routes/+page.svelte", 900, "a1"),
    FileRecord("src/routes/about/+page.svelte", 400, "a2"),
    FileRecord("src/lib/components/Header.svelte", 600, "c1"),
    FileRecord("src/lib/components/Footer.svelte", 300, "c2"),
    FileRecord("src/lib/stores/user.ts", 250, "st1"),
    FileRecord("src/lib/services/api.ts", 700, "sv1"),
    FileRecord("src/lib/utils/format.ts", 150, "u1"),
    FileRecord("static/favicon.png", 1200, "f1"),
]


def svelte_metadata(pushed_at=PUSHED_AT):
    return RepoMetadata(
        full_name="acme/web",
        url="https://github.com/acme/web",
        stars=42,
        forks=7,
        default_branch="main",
        pushed_at=pushed_at,
        description="Demo web app",
        primary_language="Svelte",
    )


@pytest.fixture
def store(tmp_path):
    s = DocumentStore(tmp_path / "repolens.db")
    yield s
    s.close()


@pytest.fixture
def completed_repo(store):
    """acme/web with a completed svelte analysis. Returns the repo id."""
    repo = store.find_or_create_repository("acme__web", "acme", "web", "https://github.com/acme/web")
    metadata = svelte_metadata()
    now = datetime.now(timezone.utc)
    assert store.claim_analysis(repo.id, "run-1", now, now)
    analysis = analyze_tree(SVELTE_TREE, metadata=metadata, tree_sha="tree-1")
    assert store.complete_analysis(repo.id, "run-1", analysis, metadata, now)
    return repo.id


class FakeOllama:
    """MockTransport handler for the Ollama API that counts generate calls."""

    def __init__(self, response="A generated answer.", status_code=200, models=("qwen2.5-coder:7b",)):
        self.response = response
        self.status_code = status_code
        self.models = list(models)
        self.generate_calls = 0
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": m} for m in self.models]})
        if request.url.path == "/api/generate":
            self.generate_calls += 1
            self.requests.append(json.loads(request.content))
            if self.status_code != 200:
                return httpx.Response(self.status_code, text="model exploded")
            return httpx.Response(200, json={"response": self.response})
        return httpx.Response(404)


@pytest.fixture
def fake_ollama():
    return FakeOllama()


@pytest.fixture
def ollama_client(fake_ollama):
    return OllamaClient(model="qwen2.5-coder:7b", transport=httpx.MockTransport(fake_ollama))
