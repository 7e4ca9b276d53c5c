"""Heuristic repository analyzer. No model needed.

Classifies the project framework from file-tree signatures, measures the
language mix, flags main/config/docs/test files and assembles the
AnalysisResult that the rest of the pipeline reads.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime

from .partitioner import partition
from .schema import AnalysisResult, FileRecord, Framework, RepoMetadata, utcnow

# --- File tree patterns ---

IGNORE_DIRS = {
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    ".tox", ".mypy_cache", ".pytest_cache", ".ruff_cache",
    ".next", ".nuxt", ".output", ".svelte-kit",
    "Pods", ".build", ".swiftpm", "DerivedData",
    ".nyc_output", "htmlcov", ".idea", ".gradle",
}

# Example directories that name a framework; two or more means a comparison repo
MULTI_FRAMEWORK_HINTS = (
    "angular", "react", "vue", "ember", "backbone", "knockout",
    "polymer", "svelte", "mithril", "riot", "aurelia",
)

NEXT_CONFIGS = ("next.config.js", "next.config.ts", "next.config.mjs", "next.config.cjs")
SVELTE_CONFIGS = ("svelte.config.js", "svelte.config.ts", "svelte.config.mjs")
CLI_HINTS = ("cli", "command", "main.py", "__main__.py", "console_scripts", "bin/")
PY_PACKAGING = ("poetry.lock", "setup.py", "setup.cfg", "pyproject.toml")
PY_APP_FILES = ("app.py", "main.py", "wsgi.py")

MAIN_FILE_NAMES = {
    "readme.md", "index.js", "index.ts", "main.py", "app.py", "index.html", "package.json",
}

CONFIG_MARKERS = ("config", "package.json", "requirements.txt", "pyproject.toml", ".env", "dockerfile")

# Extension -> Language mapping
EXT_LANG = {
    ".py": "Python", ".pyi": "Python",
    ".js": "JavaScript", ".mjs": "JavaScript", ".cjs": "JavaScript", ".jsx": "JavaScript",
    ".ts": "TypeScript", ".tsx": "TypeScript", ".mts": "TypeScript",
    ".svelte": "Svelte",
    ".vue": "Vue",
    ".rs": "Rust",
    ".go": "Go",
    ".java": "Java", ".kt": "Kotlin", ".kts": "Kotlin",
    ".rb": "Ruby",
    ".php": "PHP",
    ".swift": "Swift",
    ".c": "C", ".h": "C/C++",
    ".cpp": "C++", ".cc": "C++", ".cxx": "C++", ".hpp": "C++",
    ".cs": "C#",
    ".sql": "SQL",
    ".sh": "Shell", ".bash": "Shell", ".zsh": "Shell",
    ".yaml": "YAML", ".yml": "YAML",
    ".toml": "TOML",
    ".json": "JSON",
    ".md": "Markdown", ".mdx": "Markdown",
    ".html": "HTML", ".htm": "HTML",
    ".css": "CSS", ".scss": "SCSS", ".sass": "SCSS", ".less": "LESS",
}


def filter_tree(files: list[FileRecord]) -> list[FileRecord]:
    """Drop vendored and generated directories; order is preserved."""
    return [f for f in files if not any(part in IGNORE_DIRS for part in f.path.split("/")[:-1])]


def classify(files: list[FileRecord]) -> Framework:
    """Assign exactly one framework label from path/name signatures.

    Checks run from most to least specific; the first match wins.
    """
    paths = [f.path.lower() for f in files]
    names = {p.rsplit("/", 1)[-1] for p in paths}

    def any_path(predicate) -> bool:
        return any(predicate(p) for p in paths)

    has_package_json = "package.json" in names
    has_py = any_path(lambda p: p.endswith(".py"))
    has_pyproject = "pyproject.toml" in names
    has_py_manifest = has_pyproject or "requirements.txt" in names

    # Comparison repos with an examples/ directory per framework
    if has_package_json and "readme.md" in names:
        example_paths = [p for p in paths if p.startswith("examples/")]
        found = [fw for fw in MULTI_FRAMEWORK_HINTS if any(fw in p for p in example_paths)]
        if len(found) >= 2:
            return Framework.MULTI_FRAMEWORK

    if names & set(NEXT_CONFIGS):
        return Framework.NEXTJS
    if has_package_json and any_path(lambda p: p.startswith(("pages/", "app/"))):
        return Framework.NEXTJS

    if has_package_json and any_path(lambda p: p.endswith((".jsx", ".tsx"))):
        return Framework.REACT

    if names & set(SVELTE_CONFIGS) or any_path(lambda p: p.endswith(".svelte")):
        return Framework.SVELTE

    if has_py and names & {"app.py", "run.py"}:
        return Framework.FLASK

    if "main.py" in names and has_py_manifest:
        return Framework.FASTAPI

    if has_pyproject and has_py:
        has_cli = any_path(lambda p: any(hint in p for hint in CLI_HINTS))
        has_lib_layout = (
            any_path(lambda p: p.startswith("src/"))
            and any_path(lambda p: "tests/" in p)
            and not names & {"app.py", "main.py"}
        )
        if has_cli:
            return Framework.PYTHON_CLI
        if has_lib_layout:
            return Framework.PYTHON_LIB

    if names & {"setup.py", "pyproject.toml"} and has_py and not names & set(PY_APP_FILES):
        return Framework.PYTHON_LIB

    return Framework.UNKNOWN


def language_bytes(files: list[FileRecord]) -> dict[str, int]:
    """Bytes per language, largest first. Unknown extensions use their uppercase name."""
    totals: Counter = Counter()
    for f in files:
        ext = f.extension
        if not ext or not f.size:
            continue
        totals[EXT_LANG.get(ext, ext.lstrip(".").upper())] += f.size
    return dict(totals.most_common())


def main_files(files: list[FileRecord]) -> list[str]:
    return [f.path for f in files if f.path.lower() in MAIN_FILE_NAMES]


def config_files(files: list[FileRecord]) -> list[str]:
    return [f.path for f in files if any(marker in f.path.lower() for marker in CONFIG_MARKERS)]


def documentation_files(files: list[FileRecord]) -> list[str]:
    result = []
    for f in files:
        lower = f.path.lower()
        if lower.endswith((".md", ".mdx", ".rst")) or "docs/" in lower or "documentation/" in lower:
            result.append(f.path)
    return result


def test_files(files: list[FileRecord]) -> list[str]:
    result = []
    for f in files:
        lower = f.path.lower()
        name = lower.rsplit("/", 1)[-1]
        in_test_dir = any(part in ("test", "tests", "__tests__", "spec", "specs") for part in lower.split("/")[:-1])
        if in_test_dir or name.startswith("test_") or any(
            marker in name for marker in ("_test.", ".test.", ".spec.", "_spec.")
        ):
            result.append(f.path)
    return result


def analyze_tree(
    files: list[FileRecord],
    metadata: RepoMetadata | None = None,
    tree_sha: str = "",
    analyzed_at: datetime | None = None,
) -> AnalysisResult:
    """Run the full structural analysis over a fetched file tree."""
    tree = filter_tree(files)
    framework = classify(tree)

    return AnalysisResult(
        framework=framework,
        file_tree=tree,
        languages=language_bytes(tree),
        subsystems=partition(tree, framework),
        main_files=main_files(tree),
        config_files=config_files(tree),
        documentation_files=documentation_files(tree),
        test_files=test_files(tree),
        analyzed_at=analyzed_at or utcnow(),
        upstream_pushed_at=metadata.pushed_at if metadata else None,
        default_branch=metadata.default_branch if metadata else "main",
        tree_sha=tree_sha,
    )


def summary_for_prompt(analysis: AnalysisResult, full_name: str, primary_language: str | None = None) -> str:
    """Concise repository summary used as LLM prompt context."""
    lines = [f"Repository: {full_name}"]
    lines.append(f"Framework: {analysis.framework.display_name}")
    lines.append(f"Main language: {primary_language or 'Mixed'}")
    lines.append(f"Files: {analysis.file_count}")

    if analysis.languages:
        total = sum(analysis.languages.values()) or 1
        lang_str = ", ".join(
            f"{lang} ({size / total * 100:.0f}%)" for lang, size in list(analysis.languages.items())[:6]
        )
        lines.append(f"Languages: {lang_str}")

    if analysis.subsystems:
        subs = ", ".join(f"{s.name} ({len(s.files)} files)" for s in analysis.subsystems)
        lines.append(f"Subsystems: {subs}")

    if analysis.main_files:
        lines.append(f"Main files: {', '.join(analysis.main_files[:8])}")

    return "\n".join(lines)
