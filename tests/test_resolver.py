"""Tests for dependency ordering and conditional inclusion."""

from collections.abc import Callable
from typing import Any

import pytest
from provider_mock import simple_resource, template_of

from convergence.errors import CycleError, EvaluationError
from convergence.evaluator import Evaluator
from convergence.graph import build_graph
from convergence.identifiers import NodeId
from convergence.resolver import OrderedGraph, find_cycle, resolve
from convergence.template_loader import parse_template

WIDGET = "Microsoft.Test/widgets"


def widget(name: str) -> NodeId:
    return NodeId(WIDGET, name)


def order(
    make_evaluator: Callable[..., Evaluator],
    template: dict[str, Any],
    parameters: dict[str, Any] | None = None,
) -> OrderedGraph:
    evaluator = make_evaluator(template, parameters)
    graph = build_graph(parse_template(template), evaluator)
    return resolve(graph, evaluator)


class TestTopologicalOrder:
    """Tests for deterministic ordering."""

    def test_dependencies_come_first(self, make_evaluator: Callable[..., Evaluator]) -> None:
        template = template_of(
            simple_resource("app", dependsOn=["plan"]),
            simple_resource("plan"),
        )

        ordered = order(make_evaluator, template)

        assert ordered.order == [widget("plan"), widget("app")]

    def test_independent_nodes_keep_declaration_order(
        self, make_evaluator: Callable[..., Evaluator]
    ) -> None:
        template = template_of(
            simple_resource("c"),
            simple_resource("a"),
            simple_resource("b"),
        )

        ordered = order(make_evaluator, template)

        assert ordered.order == [widget("c"), widget("a"), widget("b")]

    def test_ready_node_declared_first_wins(self, make_evaluator: Callable[..., Evaluator]) -> None:
        template = template_of(
            simple_resource("late", dependsOn=["base"]),
            simple_resource("early"),
            simple_resource("base"),
        )

        ordered = order(make_evaluator, template)

        assert ordered.order == [widget("early"), widget("base"), widget("late")]

    def test_order_is_stable_across_runs(
        self,
        make_evaluator: Callable[..., Evaluator],
        function_app_template: dict[str, Any],
    ) -> None:
        first = order(make_evaluator, function_app_template).order
        second = order(make_evaluator, function_app_template).order

        assert first == second
        assert [n.type for n in first] == [
            "Microsoft.Storage/storageAccounts",
            "Microsoft.Insights/components",
            "Microsoft.Web/serverfarms",
            "Microsoft.KeyVault/vaults",
            "Microsoft.Web/sites",
            "Microsoft.Authorization/roleAssignments",
        ]

    def test_levels_and_dependents(self, make_evaluator: Callable[..., Evaluator]) -> None:
        template = template_of(
            simple_resource("a"),
            simple_resource("b", dependsOn=["a"]),
            simple_resource("c", dependsOn=["b"]),
            simple_resource("d"),
        )

        ordered = order(make_evaluator, template)

        assert ordered.levels == {widget("a"): 0, widget("b"): 1, widget("c"): 2, widget("d"): 0}
        assert ordered.dependents[widget("a")] == [widget("b")]
        assert ordered.transitive_dependents(widget("a")) == [widget("b"), widget("c")]


class TestCycles:
    """Tests for cycle detection."""

    def test_two_node_cycle_names_both(self, make_evaluator: Callable[..., Evaluator]) -> None:
        template = template_of(
            simple_resource("a", dependsOn=["b"]),
            simple_resource("b", dependsOn=["a"]),
        )

        with pytest.raises(CycleError) as exc_info:
            order(make_evaluator, template)

        assert exc_info.value.cycle == [f"{WIDGET}/a", f"{WIDGET}/b", f"{WIDGET}/a"]
        assert f"{WIDGET}/a -> {WIDGET}/b -> {WIDGET}/a" in str(exc_info.value)

    def test_cycle_through_reference(self, make_evaluator: Callable[..., Evaluator]) -> None:
        template = template_of(
            simple_resource("a", properties={"k": "[reference('c').key]"}),
            simple_resource("b", dependsOn=["a"]),
            simple_resource("c", dependsOn=["b"]),
        )

        with pytest.raises(CycleError) as exc_info:
            order(make_evaluator, template)

        assert set(exc_info.value.cycle) == {f"{WIDGET}/a", f"{WIDGET}/b", f"{WIDGET}/c"}

    def test_no_cycle(self, make_evaluator: Callable[..., Evaluator]) -> None:
        template = template_of(simple_resource("a"), simple_resource("b", dependsOn=["a"]))
        evaluator = make_evaluator(template)
        graph = build_graph(parse_template(template), evaluator)

        assert find_cycle(graph) is None


class TestConditions:
    """Tests for condition evaluation."""

    def test_false_condition_excludes_node(self, make_evaluator: Callable[..., Evaluator]) -> None:
        template = template_of(
            simple_resource("a", condition="[equals(parameters('env'), 'prod')]"),
            simple_resource("b"),
            parameters={"env": {"type": "string"}},
        )

        ordered = order(make_evaluator, template, {"env": "dev"})

        assert ordered.excluded == [widget("a")]
        assert ordered.included == [widget("b")]

    def test_literal_false_condition(self, make_evaluator: Callable[..., Evaluator]) -> None:
        ordered = order(make_evaluator, template_of(simple_resource("a", condition=False)))

        assert ordered.excluded == [widget("a")]

    def test_dependents_of_excluded_node_stay_included(
        self, make_evaluator: Callable[..., Evaluator]
    ) -> None:
        template = template_of(
            simple_resource("a", condition=False),
            simple_resource("b", dependsOn=["a"]),
        )

        ordered = order(make_evaluator, template)

        assert ordered.included == [widget("b")]
        assert ordered.order == [widget("a"), widget("b")]

    def test_non_boolean_condition(self, make_evaluator: Callable[..., Evaluator]) -> None:
        template = template_of(simple_resource("a", condition="[concat('yes')]"))

        with pytest.raises(EvaluationError) as exc_info:
            order(make_evaluator, template)

        assert exc_info.value.node_id == f"{WIDGET}/a"
        assert exc_info.value.path == "condition"

    def test_condition_cannot_use_reference(self, make_evaluator: Callable[..., Evaluator]) -> None:
        template = template_of(
            simple_resource("a"),
            simple_resource("b", condition="[reference('a').enabled]"),
        )

        with pytest.raises(EvaluationError) as exc_info:
            order(make_evaluator, template)

        assert "must be known before apply" in str(exc_info.value)
