"""Resource graph construction.

This module turns a validated template into typed resource nodes:
1. Node identity (type + statically evaluated name), unique per template
2. Compiled property bags (expression strings replaced by their AST)
3. Explicit dependencies from dependsOn
4. Implicit dependencies from reference()/resourceId() calls

VALIDATION:
Every issue found in a template (duplicate ids, dangling dependencies,
malformed expressions, unknown functions, invalid parameters) is collected
and reported in a single ValidationError naming the node and property path.
Building is a pure transform; nothing remote is touched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import EvaluationError, ValidationError
from .evaluator import KNOWN_FUNCTIONS, Evaluator
from .expressions import (
    Expression,
    ExpressionSyntaxError,
    FunctionCall,
    Literal,
    compile_tree,
    compile_value,
    is_expression,
    is_reference_call,
    iter_calls,
    iter_expressions,
)
from .identifiers import NodeId, is_resource_id, parse_resource_id
from .models import DeploymentTemplate, ResourceDeclaration

logger = logging.getLogger(__name__)


class NodeStatus(str, Enum):
    """Inclusion status of a node, carried through the whole pipeline."""

    INCLUDED = "included"
    EXCLUDED = "excluded"


@dataclass
class ResourceNode:
    """A declared resource with compiled properties and its edges."""

    id: NodeId
    index: int
    api_version: str
    body: dict[str, Any]
    condition: Any = True
    explicit_dependencies: list[NodeId] = field(default_factory=list)
    implicit_dependencies: list[NodeId] = field(default_factory=list)
    status: NodeStatus = NodeStatus.INCLUDED

    @property
    def included(self) -> bool:
        return self.status == NodeStatus.INCLUDED

    @property
    def dependencies(self) -> list[NodeId]:
        """Explicit then implicit dependencies, without duplicates."""
        seen: set[NodeId] = set()
        result: list[NodeId] = []
        for dep in [*self.explicit_dependencies, *self.implicit_dependencies]:
            if dep not in seen:
                seen.add(dep)
                result.append(dep)
        return result


@dataclass(frozen=True)
class CompiledOutput:
    """A template output with compiled value and condition."""

    name: str
    value: Any
    condition: Any = True


@dataclass
class Graph:
    """Resource nodes in declaration order plus compiled outputs."""

    nodes: dict[NodeId, ResourceNode] = field(default_factory=dict)
    outputs: dict[str, CompiledOutput] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._by_key: dict[str, NodeId] = {}
        self._by_name: dict[str, list[NodeId]] = {}
        for node_id in self.nodes:
            self._index(node_id)

    def _index(self, node_id: NodeId) -> None:
        self._by_key[node_id.key] = node_id
        self._by_name.setdefault(node_id.name.lower(), []).append(node_id)

    def add(self, node: ResourceNode) -> None:
        self.nodes[node.id] = node
        self._index(node.id)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def find(self, node_id: NodeId) -> ResourceNode | None:
        """Case-insensitive node lookup."""
        key = self._by_key.get(node_id.key)
        return self.nodes[key] if key is not None else None

    def matches_by_name(self, name: str) -> list[NodeId]:
        return list(self._by_name.get(name.lower(), []))

    def locate(self, value: str) -> NodeId | None:
        """Find the declared node a dependency string refers to.

        Accepts a full resource id, a "type/name" string or a bare name.
        A bare name that matches several nodes is ambiguous and yields None.
        """
        if is_resource_id(value):
            parsed = parse_resource_id(value)
            return self._by_key.get(parsed.key) if parsed is not None else None

        found = self._by_key.get(value.lower())
        if found is not None:
            return found

        if "/" not in value:
            candidates = self._by_name.get(value.lower(), [])
            if len(candidates) == 1:
                return candidates[0]
        return None


# =============================================================================
# Builder
# =============================================================================


def _coerce_condition(value: Any) -> Any:
    """Compile a condition; literal "true"/"false" strings become booleans."""
    if isinstance(value, bool):
        return value
    if is_expression(value):
        return compile_value(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"condition must be a boolean or an expression, got {value!r}")


class GraphBuilder:
    """Builds a Graph from a template, collecting every issue found."""

    def __init__(self, template: DeploymentTemplate, evaluator: Evaluator) -> None:
        self._template = template
        self._evaluator = evaluator
        self._issues: list[str] = []

    def build(self) -> Graph:
        """Build and validate the resource graph.

        Raises:
            ValidationError: If any issue was found.
        """
        self._issues = list(self._evaluator.syntax_issues)
        self._issues.extend(self._evaluator.bind_parameters())
        self._check_functions_in_variables()

        graph = Graph()
        raw_dependencies: dict[NodeId, list[Any]] = {}
        for index, declaration in enumerate(self._template.resources):
            node = self._build_node(index, declaration, graph)
            if node is None:
                continue
            graph.add(node)
            raw_dependencies[node.id] = self._compile_depends_on(node.id, declaration)

        self._evaluator.attach_graph(graph)

        for node in graph:
            node.explicit_dependencies = self._resolve_explicit(node, raw_dependencies[node.id], graph)
            node.implicit_dependencies = self._discover_implicit(node, graph)

        self._compile_outputs(graph)

        if self._issues:
            logger.error(
                "Template validation failed",
                extra={"issue_count": len(self._issues)},
            )
            raise ValidationError("Template validation failed", self._issues)

        logger.info(
            "Resource graph built",
            extra={
                "node_count": len(graph),
                "edge_count": sum(len(n.dependencies) for n in graph),
                "output_count": len(graph.outputs),
            },
        )
        return graph

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    def _build_node(
        self, index: int, declaration: ResourceDeclaration, graph: Graph
    ) -> ResourceNode | None:
        location = f"resources[{index}]"

        name = self._static_name(location, declaration.name)
        if name is None:
            return None

        node_id = NodeId(declaration.type, name)
        expected_segments = declaration.type.count("/")
        if name.count("/") + 1 != expected_segments:
            self._issues.append(
                f"{node_id}: type '{declaration.type}' needs {expected_segments} "
                f"name segment(s), got '{name}'"
            )
            return None

        existing = graph.find(node_id)
        if existing is not None:
            self._issues.append(
                f"{node_id}: duplicate resource identifier "
                f"(also declared at resources[{existing.index}])"
            )
            return None

        body, errors = compile_tree(declaration.body())
        for path, error in errors:
            self._issues.append(f"{node_id} at '{path}': {error}")

        try:
            condition = _coerce_condition(declaration.condition)
        except (ValueError, ExpressionSyntaxError) as e:
            self._issues.append(f"{node_id} at 'condition': {e}")
            condition = True

        node = ResourceNode(
            id=node_id,
            index=index,
            api_version=declaration.api_version,
            body=body,
            condition=condition,
        )
        self._check_functions(str(node_id), [*iter_expressions(body), *iter_expressions(condition, "condition")])
        return node

    def _static_name(self, location: str, raw_name: str) -> str | None:
        try:
            compiled = compile_value(raw_name)
        except ExpressionSyntaxError as e:
            self._issues.append(f"{location}.name: {e}")
            return None
        try:
            name = self._evaluator.evaluate_static(compiled)
        except EvaluationError as e:
            self._issues.append(f"{location}.name: must be known before apply: {e}")
            return None
        if not isinstance(name, str) or not name:
            self._issues.append(f"{location}.name: must evaluate to a non-empty string, got {name!r}")
            return None
        return name

    def _check_functions(self, location: str, expressions: list[tuple[str, Expression]]) -> None:
        for path, expr in expressions:
            for call in iter_calls(expr):
                if call.name not in KNOWN_FUNCTIONS:
                    where = f"{location} at '{path}'" if path else location
                    self._issues.append(f"{where}: unknown function '{call.name}'")

    def _check_functions_in_variables(self) -> None:
        for name in self._template.variables:
            compiled = self._evaluator.variable_expression(name)
            self._check_functions(f"variables.{name}", list(iter_expressions(compiled)))

    # -------------------------------------------------------------------------
    # Dependencies
    # -------------------------------------------------------------------------

    def _compile_depends_on(self, node_id: NodeId, declaration: ResourceDeclaration) -> list[Any]:
        compiled: list[Any] = []
        for i, entry in enumerate(declaration.depends_on):
            try:
                compiled.append(compile_value(entry))
            except ExpressionSyntaxError as e:
                self._issues.append(f"{node_id} at 'dependsOn[{i}]': {e}")
        return compiled

    def _resolve_explicit(self, node: ResourceNode, entries: list[Any], graph: Graph) -> list[NodeId]:
        result: list[NodeId] = []
        for i, entry in enumerate(entries):
            path = f"dependsOn[{i}]"
            try:
                value = self._evaluator.evaluate_static(entry)
            except EvaluationError as e:
                self._issues.append(f"{node.id} at '{path}': {e}")
                continue
            if not isinstance(value, str):
                self._issues.append(f"{node.id} at '{path}': dependency must be a string, got {value!r}")
                continue

            target = graph.locate(value)
            if target is None:
                if "/" not in value and len(graph.matches_by_name(value)) > 1:
                    self._issues.append(f"{node.id} at '{path}': dependency '{value}' is ambiguous")
                else:
                    self._issues.append(f"{node.id} at '{path}': dependency '{value}' is not declared")
                continue
            if target == node.id:
                self._issues.append(f"{node.id} at '{path}': resource cannot depend on itself")
                continue
            if target not in result:
                result.append(target)
        return result

    def _discover_implicit(self, node: ResourceNode, graph: Graph) -> list[NodeId]:
        result: list[NodeId] = []
        for path, expr in self._expressions_with_variables(node.body):
            for target in self._reference_targets(str(node.id), path, expr, graph, node.id):
                if target != node.id and target not in result:
                    result.append(target)
        return result

    def _expressions_with_variables(self, value: Any) -> Iterator[tuple[str, Expression]]:
        """Yield expressions of a value plus those of the variables it uses."""
        visited: set[str] = set()
        pending = list(iter_expressions(value))
        while pending:
            path, expr = pending.pop(0)
            yield path, expr
            for call in iter_calls(expr):
                if call.name != "variables" or len(call.args) != 1:
                    continue
                arg = call.args[0]
                if not isinstance(arg, Literal) or not isinstance(arg.value, str):
                    continue
                key = arg.value.lower()
                if key in visited:
                    continue
                visited.add(key)
                pending.extend(iter_expressions(self._evaluator.variable_expression(arg.value), path))

    def _reference_targets(
        self,
        location: str,
        path: str,
        expr: Expression,
        graph: Graph,
        self_id: NodeId | None,
    ) -> list[NodeId]:
        targets: list[NodeId] = []
        for call in iter_calls(expr):
            if not is_reference_call(call):
                continue
            where = f"{location} at '{path}'" if path else location
            target_value = self._static_target(where, call)
            if target_value is None:
                continue

            target = graph.locate(target_value)
            if call.name == "reference":
                if target is None:
                    self._issues.append(f"{where}: reference() target '{target_value}' is not declared")
                    continue
                if target == self_id:
                    self._issues.append(f"{where}: resource references its own outputs")
                    continue
            if target is not None:
                targets.append(target)
        return targets

    def _static_target(self, where: str, call: FunctionCall) -> str | None:
        subject = call if call.name == "resourceid" else call.args[0]
        try:
            value = self._evaluator.evaluate_static(subject)
        except EvaluationError as e:
            self._issues.append(f"{where}: {call.name}() target must be known before apply: {e}")
            return None
        if not isinstance(value, str):
            self._issues.append(f"{where}: {call.name}() target must be a string, got {value!r}")
            return None
        return value

    # -------------------------------------------------------------------------
    # Outputs
    # -------------------------------------------------------------------------

    def _compile_outputs(self, graph: Graph) -> None:
        for name, declaration in self._template.outputs.items():
            location = f"outputs.{name}"
            value, errors = compile_tree(declaration.value)
            for path, error in errors:
                self._issues.append(f"{location}{'.' + path if path else ''}: {error}")
            try:
                condition = _coerce_condition(declaration.condition)
            except (ValueError, ExpressionSyntaxError) as e:
                self._issues.append(f"{location}.condition: {e}")
                condition = True

            expressions = [*iter_expressions(value), *iter_expressions(condition, "condition")]
            self._check_functions(location, expressions)
            for path, expr in self._expressions_with_variables(value):
                self._reference_targets(location, path, expr, graph, None)

            graph.outputs[name] = CompiledOutput(name=name, value=value, condition=condition)


def build_graph(template: DeploymentTemplate, evaluator: Evaluator) -> Graph:
    """Build the resource graph of a template.

    Raises:
        ValidationError: Listing every issue found in the template.
    """
    return GraphBuilder(template, evaluator).build()
