"""Subsystem partitioner.

Groups every file of a tree into exactly one named subsystem using an
ordered, framework-scoped list of path rules. Files no rule claims land in
"Other", so the result is always a partition of the input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .schema import FileRecord, Framework, Role, Subsystem

OTHER = "Other"
OTHER_DESCRIPTION = "Files that don't fit into specific categories"

# Pattern meaning "file sits at the repository root"
ROOT = "/"


@dataclass(frozen=True)
class SubsystemRule:
    name: str
    description: str
    patterns: tuple[str, ...]
    extensions: tuple[str, ...] | None = None

    def matches(self, path: str) -> bool:
        lower = path.lower()
        if self.extensions and not lower.endswith(self.extensions):
            return False
        for pattern in self.patterns:
            if pattern == ROOT:
                if "/" not in lower:
                    return True
            elif lower.startswith(pattern) or f"/{pattern}" in lower:
                return True
        return False


def _docs() -> SubsystemRule:
    return SubsystemRule(
        "Documentation",
        "Project documentation and guides",
        ("docs/", "documentation/", "readme", "changelog", "contributing"),
        (".md", ".mdx", ".txt", ".rst"),
    )


def _js_config() -> SubsystemRule:
    return SubsystemRule(
        "Configuration",
        "Configuration files and settings",
        ("config/", "src/config/", ".github/", ".vscode/", "static/", "public/"),
    )


def _py_config() -> SubsystemRule:
    return SubsystemRule(
        "Configuration",
        "Configuration files and project setup",
        ("config/", "settings/", ".github/", "instance/", "migrations/", "docker/", "deployment/", ROOT),
        (".py", ".json", ".yaml", ".yml", ".toml", ".env", ".cfg", ".ini", ".txt", ".lock"),
    )


def _py_tests() -> SubsystemRule:
    return SubsystemRule("Tests", "Test files and test utilities", ("tests/", "test/", "test_data/"))


# Ordered: earlier rules claim files first
FRAMEWORK_RULES: dict[Framework, tuple[SubsystemRule, ...]] = {
    Framework.REACT: (
        SubsystemRule("Components", "React components and UI elements", ("src/components/", "components/", "src/ui/")),
        SubsystemRule(
            "Pages/Routes", "Page components and routing logic",
            ("src/pages/", "pages/", "src/routes/", "routes/", "src/views/", "views/"),
        ),
        SubsystemRule("Hooks", "Custom React hooks", ("src/hooks/", "hooks/", "src/lib/hooks/")),
        SubsystemRule(
            "Services/API", "API calls and external services",
            ("src/services/", "services/", "src/api/", "api/", "src/lib/api/"),
        ),
        SubsystemRule(
            "Context/State", "State management and context providers",
            ("src/context/", "context/", "src/store/", "store/", "src/state/", "state/"),
        ),
        SubsystemRule(
            "Utils", "Utility functions and helpers",
            ("src/utils/", "utils/", "src/lib/", "lib/", "src/helpers/", "helpers/"),
        ),
        _js_config(),
        _docs(),
    ),
    Framework.NEXTJS: (
        SubsystemRule("API Routes", "Next.js API routes", ("pages/api/", "app/api/", "src/pages/api/", "src/app/api/")),
        SubsystemRule("Pages/Routes", "Next.js pages and app router routes", ("pages/", "app/", "src/pages/", "src/app/")),
        SubsystemRule("Components", "React components and UI elements", ("src/components/", "components/", "src/ui/", "ui/")),
        SubsystemRule("Hooks", "Custom React hooks", ("src/hooks/", "hooks/", "src/lib/hooks/")),
        SubsystemRule(
            "Services/API", "API calls and external services",
            ("src/services/", "services/", "src/lib/api/", "lib/api/"),
        ),
        SubsystemRule(
            "Utils", "Utility functions and helpers",
            ("src/utils/", "utils/", "src/lib/", "lib/", "src/helpers/", "helpers/"),
        ),
        _js_config(),
        _docs(),
    ),
    Framework.SVELTE: (
        SubsystemRule("Routes", "SvelteKit routes and pages", ("src/routes/", "routes/")),
        SubsystemRule("Components", "Svelte components", ("src/lib/components/", "src/components/", "components/")),
        SubsystemRule("Stores", "Svelte stores for state management", ("src/lib/stores/", "src/stores/", "stores/")),
        SubsystemRule("Server", "Server-side logic and utilities", ("src/lib/server/", "src/server/")),
        SubsystemRule(
            "Services", "External services and integrations",
            ("src/lib/firebase/", "src/lib/services/", "src/services/"),
        ),
        SubsystemRule("Models", "Data models and types", ("src/lib/models/", "src/models/", "src/lib/types/")),
        SubsystemRule("Utils", "Utility functions and helpers", ("src/lib/utils/", "src/utils/", "utils/", "src/lib/")),
        _js_config(),
        _docs(),
    ),
    Framework.FLASK: (
        SubsystemRule("Models", "Database models and schemas", ("models/", "app/models/", "src/models/")),
        SubsystemRule("Services", "Business logic and services", ("services/", "app/services/", "src/services/")),
        SubsystemRule("Auth", "Authentication and authorization", ("auth/", "app/auth/", "src/auth/")),
        SubsystemRule("Utils", "Utility functions and helpers", ("utils/", "helpers/", "app/utils/", "src/utils/")),
        _py_tests(),
        _py_config(),
        SubsystemRule(
            "Routes/Endpoints", "Flask routes and API endpoints",
            ("app/", "src/", "routes/", "views/", "blueprints/"),
            (".py",),
        ),
        _docs(),
    ),
    Framework.FASTAPI: (
        SubsystemRule("Models", "Pydantic models and database schemas", ("models/", "app/models/", "src/models/", "schemas/")),
        SubsystemRule("Services", "Business logic and services", ("services/", "app/services/", "src/services/")),
        SubsystemRule("Auth", "Authentication and authorization", ("auth/", "app/auth/", "src/auth/")),
        SubsystemRule("Utils", "Utility functions and helpers", ("utils/", "helpers/", "app/utils/", "src/utils/")),
        _py_tests(),
        _py_config(),
        SubsystemRule(
            "Routes/Endpoints", "FastAPI routes and API endpoints",
            ("routers/", "routes/", "api/", "app/", "src/", ROOT),
            (".py",),
        ),
        _docs(),
    ),
    Framework.PYTHON_CLI: (
        _py_tests(),
        SubsystemRule(
            "CLI/Commands", "Command-line interface and command implementations",
            ("cli/", "commands/", "bin/", "cli.py", "__main__.py", "main.py"),
        ),
        SubsystemRule("Core/Library", "Core library functionality and modules", ("src/", "lib/", "core/"), (".py",)),
        _docs(),
        _py_config(),
        SubsystemRule(
            "Assets/Resources", "Static assets and resource files",
            ("assets/", "resources/", "static/", "imgs/", "media/"),
        ),
    ),
    Framework.PYTHON_LIB: (
        _py_tests(),
        SubsystemRule("API/Interface", "Public API and interface definitions", ("api/", "interface/"), (".py",)),
        SubsystemRule("Source/Library", "Main library source code and modules", ("src/", "lib/"), (".py",)),
        SubsystemRule("Examples", "Usage examples and sample code", ("examples/", "samples/", "demo/")),
        _docs(),
        _py_config(),
    ),
    Framework.MULTI_FRAMEWORK: (
        SubsystemRule(
            "Examples/Implementations", "Framework-specific implementations and examples",
            ("examples/", "implementations/", "samples/"),
        ),
        SubsystemRule("Testing", "Testing infrastructure and test files", ("tests/", "test/", "cypress/", "e2e/")),
        SubsystemRule("Tooling/Build", "Build tools and development utilities", ("tools/", "tooling/", "build/", "tasks/", "scripts/")),
        SubsystemRule("Site/Assets", "Website assets and static resources", ("site-assets/", "static/", "public/", "media/")),
        SubsystemRule("Shared/Common", "Shared resources and common files", ("shared/", "common/", "assets/", "css/", "js/")),
        _docs(),
        SubsystemRule(
            "Configuration", "Configuration files and project setup",
            ("config/", ".github/", ROOT),
            (".json", ".js", ".yml", ".yaml", ".toml"),
        ),
    ),
    Framework.UNKNOWN: (
        SubsystemRule("Tests", "Test files and test utilities", ("tests/", "test/", "spec/", "__tests__/")),
        _docs(),
        SubsystemRule("Source", "Main source code", ("src/", "lib/", "pkg/", "internal/", "cmd/", "app/")),
        SubsystemRule(
            "Configuration", "Configuration files and project setup",
            ("config/", ".github/", ROOT),
            (".json", ".yml", ".yaml", ".toml", ".cfg", ".ini", ".lock"),
        ),
    ),
}


def rules_for(framework: Framework) -> tuple[SubsystemRule, ...]:
    return FRAMEWORK_RULES[framework]


def partition(files: list[FileRecord], framework: Framework) -> list[Subsystem]:
    """Assign each file to exactly one subsystem.

    Rules are applied in order; a file claimed by an earlier rule is not
    considered again. Rules that claim nothing are omitted. Deterministic
    for identical inputs; file order within a subsystem follows the tree.
    """
    claimed: set[str] = set()
    subsystems: list[Subsystem] = []

    for rule in rules_for(framework):
        matched = [f.path for f in files if f.path not in claimed and rule.matches(f.path)]
        if not matched:
            continue
        claimed.update(matched)
        subsystems.append(
            Subsystem(
                name=rule.name,
                files=matched,
                description=rule.description,
                pattern=", ".join(rule.patterns),
            )
        )

    leftovers = [f.path for f in files if f.path not in claimed]
    if leftovers:
        subsystems.append(
            Subsystem(name=OTHER, files=leftovers, description=OTHER_DESCRIPTION, pattern="Various paths")
        )

    return subsystems


# Name fragments per role, checked in this order
ROLE_KEYWORDS: tuple[tuple[Role, tuple[str, ...]], ...] = (
    (Role.ENTRY, ("route", "page", "endpoint", "cli", "command")),
    (Role.UI, ("component", "view", "ui", "hook", "asset", "site")),
    (Role.SERVICE, (
        "service", "api", "store", "state", "context", "server", "model",
        "auth", "core", "library", "source",
    )),
)


def role_for_name(name: str) -> Role:
    """Architectural role of a subsystem from its declared name.

    Each word of the name is matched by prefix, so "Services/API" is a
    service and "Tooling/Build" does not match "ui".
    """
    words = re.findall(r"[a-z0-9]+", name.lower())
    for role, keywords in ROLE_KEYWORDS:
        if any(word.startswith(keyword) for word in words for keyword in keywords):
            return role
    return Role.OTHER
