"""Tests for the architecture graph builder and related-subsystem scoring."""

from repolens.graph import build_graph, node_id, related_subsystems
from repolens.partitioner import partition
from repolens.schema import FileRecord, Framework, Role, Subsystem


def _scenario_subsystems():
    files = [
        FileRecord("src/routes/a.x"),
        FileRecord("src/components/b.x"),
        FileRecord("src/services/c.x"),
    ]
    return partition(files, Framework.SVELTE)


class TestBuildGraph:
    def test_svelte_scenario_edges(self):
        graph = build_graph(_scenario_subsystems(), Framework.SVELTE)

        edges = [(e.source, e.target) for e in graph.edges]
        assert edges == [("routes", "components"), ("components", "services")]

    def test_nodes_carry_roles(self):
        graph = build_graph(_scenario_subsystems(), Framework.SVELTE)

        roles = {n.label: n.role for n in graph.nodes}
        assert roles == {"Routes": Role.ENTRY, "Components": Role.UI, "Services": Role.SERVICE}

    def test_missing_subsystem_omits_edge(self):
        subsystems = [Subsystem("Routes", ["src/routes/a.x"]), Subsystem("Services", ["src/services/c.x"])]
        graph = build_graph(subsystems, Framework.SVELTE)

        assert len(graph.nodes) == 2
        assert graph.edges == []

    def test_to_dict_shape(self):
        data = build_graph(_scenario_subsystems(), Framework.SVELTE).to_dict()

        assert data["nodes"][0] == {"id": "routes", "label": "Routes", "role": "entry"}
        assert data["edges"][0] == {"from": "routes", "to": "components", "kind": "flow"}

    def test_every_framework_has_rules(self):
        for framework in Framework:
            build_graph([], framework)

    def test_related_edges_optional(self):
        subsystems = [
            Subsystem("Routes", ["src/routes/a.x"]),
            Subsystem("Components", ["src/components/b.x"]),
            Subsystem("Utils", ["src/utils/u.x"]),
        ]
        plain = build_graph(subsystems, Framework.SVELTE)
        assert all(e.kind == "flow" for e in plain.edges)

        enriched = build_graph(subsystems, Framework.SVELTE, include_related=True)
        related = [(e.source, e.target) for e in enriched.edges if e.kind == "related"]
        # Routes->Components already has a flow edge
        assert ("routes", "components") not in related
        assert ("routes", "utils") in related
        pairs = [frozenset(p) for p in related]
        assert len(pairs) == len(set(pairs))


class TestNodeId:
    def test_slug(self):
        assert node_id("Pages/Routes") == "pages-routes"
        assert node_id("API Routes") == "api-routes"
        assert node_id("Other") == "other"

    def test_colliding_slugs_made_unique(self):
        graph = build_graph([Subsystem("A/B", []), Subsystem("A B", [])], Framework.UNKNOWN)
        assert [n.id for n in graph.nodes] == ["a-b", "a-b-2"]


class TestRelatedSubsystems:
    def _subsystems(self):
        return [
            Subsystem("A", ["src/a1.x", "lib/a2.x"]),
            Subsystem("B", ["src/b.x"]),
            Subsystem("C", ["docs/c.md"]),
            Subsystem("D", ["lib/d.x", "src/d2.x"]),
            Subsystem("E", ["src/e.x"]),
        ]

    def test_sorted_by_score_then_original_order(self):
        assert related_subsystems("A", self._subsystems()) == ["D", "B", "E"]

    def test_zero_scores_dropped(self):
        assert "C" not in related_subsystems("A", self._subsystems())
        assert related_subsystems("C", self._subsystems()) == []

    def test_truncated_to_max(self):
        assert related_subsystems("A", self._subsystems(), max_results=2) == ["D", "B"]

    def test_default_max_is_four(self):
        subsystems = [Subsystem("T", ["src/t.x"])] + [Subsystem(f"S{i}", [f"src/{i}.x"]) for i in range(6)]
        assert related_subsystems("T", subsystems) == ["S0", "S1", "S2", "S3"]

    def test_target_never_included(self):
        subsystems = self._subsystems()
        for s in subsystems:
            assert s.name not in related_subsystems(s.name, subsystems, max_results=10)

    def test_deterministic(self):
        subsystems = self._subsystems()
        results = {tuple(related_subsystems("B", subsystems)) for _ in range(5)}
        assert results == {("A", "D", "E")}

    def test_unknown_target(self):
        assert related_subsystems("Nope", self._subsystems()) == []
