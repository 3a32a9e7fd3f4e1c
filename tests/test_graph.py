"""Tests for resource graph construction."""

from typing import Any

import pytest

from graphctl.graph import (
    CyclicGraphError,
    DuplicateResourceError,
    GraphError,
    UnknownReferenceError,
    build_graph,
    build_outputs,
    topological_order,
)
from graphctl.models import Context, OutputSpec, ResourceSpec
from graphctl.policies import PolicySet, ResourceTypePolicy

CONTEXT = Context(project="shop", environment="dev", location="westeurope", owner="team-a")


def spec(name: str, type_: str = "Test/things", **kwargs: Any) -> ResourceSpec:
    return ResourceSpec(type=type_, name=name, **kwargs)


class TestBuildGraph:
    """Tests for build_graph."""

    def test_implicit_and_explicit_edges(self) -> None:
        """References add implicit edges after explicit depends_on."""
        graph = build_graph(
            [
                spec("a"),
                spec("b"),
                spec(
                    "c",
                    attributes={"parent": "${Test/things::b.id}"},
                    depends_on=["Test/things::a"],
                ),
            ],
            CONTEXT,
            {},
        )

        assert graph.nodes["Test/things::c"].depends_on == ["Test/things::a", "Test/things::b"]
        assert graph.dependents("Test/things::a") == ["Test/things::c"]

    def test_duplicate_references_give_one_edge(self) -> None:
        graph = build_graph(
            [
                spec("a"),
                spec("b", attributes={"x": "${Test/things::a.id}", "y": "${Test/things::a.name}"}),
            ],
            CONTEXT,
            {},
        )
        assert graph.nodes["Test/things::b"].depends_on == ["Test/things::a"]

    def test_derived_name_and_tags(self) -> None:
        """Name and context tags are injected; declared values win."""
        graph = build_graph(
            [
                spec("web"),
                spec("named", attributes={"name": "custom", "tags": {"owner": "someone"}}),
            ],
            CONTEXT,
            {},
        )

        web = graph.nodes["Test/things::web"].attributes
        assert web["name"] == "shop-dev-web"
        assert web["tags"] == {"project": "shop", "environment": "dev", "owner": "team-a"}

        named = graph.nodes["Test/things::named"].attributes
        assert named["name"] == "custom"
        assert named["tags"]["owner"] == "someone"

    def test_no_tags_for_untaggable_types(self) -> None:
        graph = build_graph(
            [spec("subnet", "Microsoft.Network/virtualNetworks/subnets")], CONTEXT, {}
        )
        assert "tags" not in graph.nodes["Microsoft.Network/virtualNetworks/subnets::subnet"].attributes

    def test_document_policy_disables_tags(self) -> None:
        policies = PolicySet([ResourceTypePolicy(resource_types=["Test/*"], supports_tags=False)])
        graph = build_graph([spec("a")], CONTEXT, {}, policies)
        assert "tags" not in graph.nodes["Test/things::a"].attributes

    def test_variables_and_context_substituted(self) -> None:
        """Variables and context are substituted; resource references stay symbolic."""
        graph = build_graph(
            [
                spec("a"),
                spec(
                    "b",
                    attributes={
                        "image": "${var.image}",
                        "port": "${var.port}",
                        "location": "${context.location}",
                        "parent": "${Test/things::a.id}",
                    },
                ),
            ],
            CONTEXT,
            {"image": "registry.example.net/shop@sha256:abc", "port": 9000},
        )

        attributes = graph.nodes["Test/things::b"].attributes
        assert attributes["image"] == "registry.example.net/shop@sha256:abc"
        assert attributes["port"] == 9000
        assert attributes["location"] == "westeurope"
        assert attributes["parent"] == "${Test/things::a.id}"

    def test_unknown_resource_reference(self) -> None:
        """The error names the resource and the attribute path."""
        with pytest.raises(UnknownReferenceError) as exc_info:
            build_graph(
                [spec("a", attributes={"properties": {"vnet": "${Test/things::missing.id}"}})],
                CONTEXT,
                {},
            )

        assert exc_info.value.address == "Test/things::a"
        assert exc_info.value.attribute_path == "properties.vnet"
        assert exc_info.value.target == "Test/things::missing"

    def test_unknown_variable(self) -> None:
        with pytest.raises(UnknownReferenceError) as exc_info:
            build_graph([spec("a", attributes={"x": "${var.nope}"})], CONTEXT, {})
        assert exc_info.value.target == "var.nope"

    def test_unset_context_field(self) -> None:
        context = Context(project="shop", environment="dev")
        with pytest.raises(UnknownReferenceError):
            build_graph([spec("a", attributes={"x": "${context.location}"})], context, {})

    def test_unknown_depends_on(self) -> None:
        with pytest.raises(UnknownReferenceError) as exc_info:
            build_graph(
                [spec("a"), spec("b", depends_on=["Test/things::a", "Test/things::zzz"])],
                CONTEXT,
                {},
            )
        assert exc_info.value.attribute_path == "depends_on[1]"

    def test_malformed_reference(self) -> None:
        with pytest.raises(GraphError):
            build_graph([spec("a", attributes={"x": "${bogus}"})], CONTEXT, {})

    def test_duplicate_address(self) -> None:
        with pytest.raises(DuplicateResourceError):
            build_graph([spec("a"), spec("a")], CONTEXT, {})

    def test_self_reference(self) -> None:
        with pytest.raises(CyclicGraphError) as exc_info:
            build_graph([spec("a", attributes={"x": "${Test/things::a.id}"})], CONTEXT, {})
        assert exc_info.value.participants == ["Test/things::a"]

    def test_cycle_names_participants_only(self) -> None:
        """Resources downstream of a cycle are not reported as part of it."""
        with pytest.raises(CyclicGraphError) as exc_info:
            build_graph(
                [
                    spec("a", depends_on=["Test/things::b"]),
                    spec("b", depends_on=["Test/things::a"]),
                    spec("c", depends_on=["Test/things::a"]),
                ],
                CONTEXT,
                {},
            )
        assert exc_info.value.participants == ["Test/things::a", "Test/things::b"]


class TestTopologicalOrder:
    """Tests for ordering."""

    def test_declaration_order_breaks_ties(self) -> None:
        graph = build_graph(
            [
                spec("z"),
                spec("y", depends_on=["Test/things::x"]),
                spec("x"),
            ],
            CONTEXT,
            {},
        )
        assert graph.topological_sort() == ["Test/things::z", "Test/things::x", "Test/things::y"]

    def test_dependencies_first(self) -> None:
        edges = {"d": ["b", "c"], "b": ["a"], "c": ["a"], "a": []}
        order = topological_order(edges, {"a": 0, "b": 1, "c": 2, "d": 3})
        assert order == ["a", "b", "c", "d"]
        for node, deps in edges.items():
            assert all(order.index(dep) < order.index(node) for dep in deps)

    def test_unknown_prerequisites_ignored(self) -> None:
        assert topological_order({"a": ["gone"]}, {"a": 0}) == ["a"]


class TestBuildOutputs:
    """Tests for build_outputs."""

    def test_outputs_prepared(self) -> None:
        graph = build_graph([spec("a")], CONTEXT, {})
        outputs = build_outputs(
            {
                "url": OutputSpec(value="https://${Test/things::a.endpoint}/${var.path}"),
                "secret": OutputSpec(value="${Test/things::a.id}", sensitive=True),
            },
            graph,
            CONTEXT,
            {"path": "shop"},
        )

        assert outputs["url"] == {
            "value": "https://${Test/things::a.endpoint}/shop",
            "sensitive": False,
        }
        assert outputs["secret"]["sensitive"] is True

    def test_output_unknown_resource(self) -> None:
        graph = build_graph([spec("a")], CONTEXT, {})
        with pytest.raises(UnknownReferenceError) as exc_info:
            build_outputs(
                {"url": OutputSpec(value="${Test/things::b.endpoint}")}, graph, CONTEXT, {}
            )
        assert exc_info.value.address == "output.url"
