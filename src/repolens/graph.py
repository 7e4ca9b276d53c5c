"""Architecture graph model and related-subsystem scoring.

The graph is abstract: nodes are subsystems tagged with a role, edges come
from a per-framework table of typical data flow. Rendering is left to
whatever consumes `Graph.to_dict()`.
"""

from __future__ import annotations

import re

from .partitioner import role_for_name
from .schema import Framework, Graph, GraphEdge, GraphNode, Subsystem

DEFAULT_MAX_RELATED = 4

# (from, to) by subsystem name; an edge is drawn only when both exist
EDGE_RULES: dict[Framework, tuple[tuple[str, str], ...]] = {
    Framework.SVELTE: (
        ("Routes", "Components"),
        ("Components", "Services"),
        ("Components", "Stores"),
        ("Stores", "Services"),
        ("Routes", "Server"),
        ("Server", "Models"),
    ),
    Framework.REACT: (
        ("Pages/Routes", "Components"),
        ("Components", "Hooks"),
        ("Components", "Context/State"),
        ("Hooks", "Services/API"),
        ("Context/State", "Services/API"),
    ),
    Framework.NEXTJS: (
        ("Pages/Routes", "Components"),
        ("Pages/Routes", "API Routes"),
        ("Components", "Hooks"),
        ("Hooks", "Services/API"),
        ("API Routes", "Services/API"),
    ),
    Framework.FLASK: (
        ("Routes/Endpoints", "Auth"),
        ("Routes/Endpoints", "Services"),
        ("Services", "Models"),
    ),
    Framework.FASTAPI: (
        ("Routes/Endpoints", "Auth"),
        ("Routes/Endpoints", "Services"),
        ("Services", "Models"),
    ),
    Framework.PYTHON_CLI: (
        ("CLI/Commands", "Core/Library"),
        ("Core/Library", "Assets/Resources"),
    ),
    Framework.PYTHON_LIB: (
        ("Examples", "API/Interface"),
        ("API/Interface", "Source/Library"),
    ),
    Framework.MULTI_FRAMEWORK: (
        ("Examples/Implementations", "Shared/Common"),
        ("Tooling/Build", "Examples/Implementations"),
    ),
    Framework.UNKNOWN: (
        ("Tests", "Source"),
    ),
}


def node_id(name: str) -> str:
    """Slug for a subsystem name: "Pages/Routes" -> "pages-routes"."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "subsystem"


def build_graph(
    subsystems: list[Subsystem],
    framework: Framework,
    include_related: bool = False,
) -> Graph:
    """Nodes for every subsystem, flow edges from the framework table.

    With `include_related`, pairs that share top-level directories are also
    linked with kind="related" unless a flow edge already joins them.
    """
    ids: dict[str, str] = {}
    nodes: list[GraphNode] = []
    for subsystem in subsystems:
        base = node_id(subsystem.name)
        candidate, n = base, 2
        while candidate in ids.values():
            candidate, n = f"{base}-{n}", n + 1
        ids[subsystem.name] = candidate
        nodes.append(GraphNode(id=candidate, label=subsystem.name, role=role_for_name(subsystem.name)))

    edges: list[GraphEdge] = []
    for source, target in EDGE_RULES[framework]:
        if source in ids and target in ids:
            edges.append(GraphEdge(ids[source], ids[target]))

    if include_related:
        linked = {frozenset((e.source, e.target)) for e in edges}
        for subsystem in subsystems:
            for other in related_subsystems(subsystem.name, subsystems):
                pair = frozenset((ids[subsystem.name], ids[other]))
                if pair in linked:
                    continue
                linked.add(pair)
                edges.append(GraphEdge(ids[subsystem.name], ids[other], kind="related"))

    return Graph(nodes=nodes, edges=edges)


def related_subsystems(
    target: str,
    all_subsystems: list[Subsystem],
    max_results: int = DEFAULT_MAX_RELATED,
) -> list[str]:
    """Subsystems sharing top-level directories with `target`, best first.

    Score is the number of a candidate's files whose first path segment
    also appears in the target's files. Ties keep subsystem order.
    """
    target_subsystem = next((s for s in all_subsystems if s.name == target), None)
    if target_subsystem is None:
        return []
    segments = {path.split("/", 1)[0] for path in target_subsystem.files}

    scored = []
    for subsystem in all_subsystems:
        if subsystem.name == target:
            continue
        score = sum(1 for path in subsystem.files if path.split("/", 1)[0] in segments)
        if score > 0:
            scored.append((score, subsystem.name))

    # sorted() is stable, so equal scores stay in subsystem order
    scored = sorted(scored, key=lambda item: -item[0])
    return [name for _, name in scored[: max(max_results, 0)]]
