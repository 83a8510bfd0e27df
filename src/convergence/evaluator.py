"""Naming and expression evaluation.

The evaluator turns compiled template expressions into concrete values using:
1. Environment constants (subscription, tenant, resource group, location and
   the provider's endpoint suffix tables via environment())
2. Deterministic hash functions (uniqueString, uniqueName, guid)
3. Outputs of other resources, read from the state store

DEFERRED VALUES:
A reference() to a resource that has no record yet cannot be resolved before
that resource is applied. Instead of failing, the evaluator returns a
Deferred placeholder naming the resources it awaits; any function receiving
a Deferred argument is Deferred too. The apply executor re-resolves the node
once its dependencies report success.

SHORT CIRCUIT:
if(), and(), or() and coalesce() evaluate their arguments lazily, so the
untaken branch of if(cond, reference(vault), '') never touches an excluded
vault.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import EvaluationError, ExcludedReferenceError, ValidationError
from .expressions import (
    Expression,
    ExpressionSyntaxError,
    FunctionCall,
    IndexAccess,
    Literal,
    MemberAccess,
    compile_tree,
    compile_value,
)
from .functions import PURE_FUNCTIONS, build_resource_id
from .identifiers import NodeId

if TYPE_CHECKING:
    from .graph import Graph, ResourceNode
    from .models import DeploymentTemplate, ParameterDeclaration
    from .resolver import OrderedGraph
    from .state import StateStore

logger = logging.getLogger(__name__)

LAZY_FUNCTIONS = frozenset({"if", "and", "or", "coalesce"})
SCOPE_FUNCTIONS = frozenset(
    {
        "parameters",
        "variables",
        "resourcegroup",
        "subscription",
        "tenant",
        "deployment",
        "environment",
        "reference",
        "resourceid",
        "subscriptionresourceid",
    }
)
KNOWN_FUNCTIONS = frozenset(PURE_FUNCTIONS) | LAZY_FUNCTIONS | SCOPE_FUNCTIONS


class Deferred:
    """Placeholder for a value that awaits other resources' remote calls."""

    __slots__ = ("awaiting",)

    def __init__(self, awaiting: frozenset[NodeId]) -> None:
        self.awaiting = awaiting

    @staticmethod
    def merge(values: list[Any]) -> Deferred | None:
        """Combine the Deferred values in a list, or None if there are none."""
        awaiting: set[NodeId] = set()
        for value in values:
            awaiting |= _deferred_targets(value)
        return Deferred(frozenset(awaiting)) if awaiting else None

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Deferred) and other.awaiting == self.awaiting

    def __hash__(self) -> int:
        return hash(self.awaiting)

    def __repr__(self) -> str:
        names = ", ".join(sorted(str(n) for n in self.awaiting))
        return f"Deferred({names})"


@dataclass(frozen=True)
class DeploymentEnvironment:
    """Environment-scoped constants visible to expressions."""

    subscription_id: str
    resource_group_name: str
    location: str
    tenant_id: str = "00000000-0000-0000-0000-000000000000"
    deployment_name: str = "convergence"
    cloud_name: str = "AzureCloud"
    cloud_metadata: Mapping[str, Any] = field(default_factory=dict)
    resource_group_tags: Mapping[str, str] = field(default_factory=dict)

    @property
    def resource_group_id(self) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group_name}"


@dataclass
class ResolvedNode:
    """A node with its expressions substituted."""

    node: ResourceNode
    body: dict[str, Any]
    awaiting: frozenset[NodeId] = frozenset()
    pending_paths: list[str] = field(default_factory=list)
    property_hash: str | None = None

    @property
    def id(self) -> NodeId:
        return self.node.id

    @property
    def included(self) -> bool:
        return self.node.included

    @property
    def is_pending(self) -> bool:
        return bool(self.pending_paths)


@dataclass
class ResolvedGraph:
    """Evaluation result for a whole ordered graph."""

    ordered: OrderedGraph
    nodes: dict[NodeId, ResolvedNode]

    def __iter__(self) -> Iterator[ResolvedNode]:
        return iter(self.nodes.values())

    def __getitem__(self, node_id: NodeId) -> ResolvedNode:
        return self.nodes[node_id]

    @property
    def graph(self) -> Graph:
        return self.ordered.graph


@dataclass
class OutputsResult:
    """Resolved outputs plus the names that were left out and why."""

    values: dict[str, Any] = field(default_factory=dict)
    omitted: dict[str, str] = field(default_factory=dict)


def compute_property_hash(api_version: str, body: Mapping[str, Any]) -> str:
    """Stable hash of a fully resolved resource body."""
    canonical = json.dumps(
        {"apiVersion": api_version, "body": body},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class _Frame:
    """Per-evaluation settings."""

    allow_references: bool
    node_id: NodeId | None = None
    # Pre-flight: reference() yields Deferred even when a record exists
    defer_references: bool = False


def _lookup_ci(mapping: Mapping[str, Any], key: str) -> tuple[bool, Any]:
    if key in mapping:
        return True, mapping[key]
    lowered = key.lower()
    for candidate, value in mapping.items():
        if candidate.lower() == lowered:
            return True, value
    return False, None


class Evaluator:
    """Evaluates template expressions against one environment.

    A single evaluator serves the whole pipeline: the graph builder uses it
    for static values (names, dependsOn, conditions), the evaluate() pass
    resolves every node body, and the apply executor re-resolves nodes as
    their dependencies complete.
    """

    def __init__(
        self,
        environment: DeploymentEnvironment,
        template: DeploymentTemplate,
        parameter_values: Mapping[str, Any] | None = None,
        state: StateStore | None = None,
    ) -> None:
        """Initialize the evaluator.

        Args:
            environment: Environment-scoped constants.
            template: Validated template (parameters and variables are read from it).
            parameter_values: Values supplied for template parameters.
            state: Record source for reference(); None means nothing is applied yet.
        """
        self._environment = environment
        self._parameter_decls: dict[str, ParameterDeclaration] = dict(template.parameters)
        self._parameter_values = dict(parameter_values or {})
        self._variables: dict[str, Any] = {}
        self.syntax_issues: list[str] = []
        for name, value in template.variables.items():
            compiled, errors = compile_tree(value, f"variables.{name}")
            self._variables[name] = compiled
            self.syntax_issues.extend(f"{path}: {err}" for path, err in errors)
        self._state = state
        self._graph: Graph | None = None

        self._bound_parameters: dict[str, Any] = {}
        self._resolving: list[str] = []

    @property
    def environment(self) -> DeploymentEnvironment:
        return self._environment

    @property
    def state(self) -> StateStore | None:
        return self._state

    def attach_graph(self, graph: Graph) -> None:
        """Make declared nodes visible to reference() and resourceId()."""
        self._graph = graph

    def attach_state(self, state: StateStore) -> None:
        self._state = state

    # -------------------------------------------------------------------------
    # Parameters
    # -------------------------------------------------------------------------

    def bind_parameters(self) -> list[str]:
        """Bind and validate every declared parameter.

        Returns:
            List of validation issues (empty when all parameters are valid).
        """
        issues: list[str] = []

        declared = {name.lower() for name in self._parameter_decls}
        for supplied in self._parameter_values:
            if supplied.lower() not in declared:
                issues.append(f"parameters.{supplied}: value supplied for undeclared parameter")

        for name in self._parameter_decls:
            try:
                self._parameter(name)
            except (EvaluationError, ExpressionSyntaxError) as e:
                issues.append(f"parameters.{name}: {e}")
        return issues

    def _parameter(self, name: str) -> Any:
        found, decl = _lookup_ci(self._parameter_decls, name)
        if not found:
            raise EvaluationError(f"Parameter '{name}' is not declared")

        key = next(k for k in self._parameter_decls if k.lower() == name.lower())
        if key in self._bound_parameters:
            return self._bound_parameters[key]

        supplied, value = _lookup_ci(self._parameter_values, key)
        if not supplied:
            if not decl.has_default:
                raise EvaluationError(f"Parameter '{key}' has no value and no default")
            try:
                default = compile_value(decl.default_value)
            except ExpressionSyntaxError as e:
                raise EvaluationError(f"Invalid default for parameter '{key}': {e}") from e
            value = self._evaluate_guarded(
                f"parameters.{key}", default, _Frame(allow_references=False)
            )

        self._check_parameter(key, decl, value)
        self._bound_parameters[key] = value
        return value

    @staticmethod
    def _check_parameter(name: str, decl: ParameterDeclaration, value: Any) -> None:
        expected: dict[str, type | tuple[type, ...]] = {
            "string": str,
            "securestring": str,
            "int": int,
            "bool": bool,
            "object": dict,
            "secureobject": dict,
            "array": list,
        }
        python_type = expected[decl.type]
        if decl.type == "int" and isinstance(value, bool):
            raise EvaluationError(f"Parameter '{name}' must be of type int")
        if not isinstance(value, python_type):
            raise EvaluationError(f"Parameter '{name}' must be of type {decl.type}")
        if decl.allowed_values is not None and value not in decl.allowed_values:
            raise EvaluationError(f"Parameter '{name}' must be one of {decl.allowed_values}")
        if isinstance(value, str | list):
            if decl.min_length is not None and len(value) < decl.min_length:
                raise EvaluationError(f"Parameter '{name}' is shorter than {decl.min_length}")
            if decl.max_length is not None and len(value) > decl.max_length:
                raise EvaluationError(f"Parameter '{name}' is longer than {decl.max_length}")
        if isinstance(value, int) and not isinstance(value, bool):
            if decl.min_value is not None and value < decl.min_value:
                raise EvaluationError(f"Parameter '{name}' is below {decl.min_value}")
            if decl.max_value is not None and value > decl.max_value:
                raise EvaluationError(f"Parameter '{name}' is above {decl.max_value}")

    def variable_expression(self, name: str) -> Any:
        """Compiled (unevaluated) value of a variable, or None if undeclared."""
        _, value = _lookup_ci(self._variables, name)
        return value

    def _variable(self, name: str, frame: _Frame) -> Any:
        found, value = _lookup_ci(self._variables, name)
        if not found:
            raise EvaluationError(f"Variable '{name}' is not declared")
        return self._evaluate_guarded(f"variables.{name.lower()}", value, frame)

    def _evaluate_guarded(self, key: str, value: Any, frame: _Frame) -> Any:
        if key in self._resolving:
            chain = " -> ".join([*self._resolving[self._resolving.index(key) :], key])
            raise EvaluationError(f"Circular definition: {chain}")
        self._resolving.append(key)
        try:
            return self._resolve_tree(value, frame)
        finally:
            self._resolving.pop()

    # -------------------------------------------------------------------------
    # Public evaluation entry points
    # -------------------------------------------------------------------------

    def evaluate_static(self, value: Any) -> Any:
        """Evaluate a compiled value that must not depend on other resources.

        Raises:
            EvaluationError: If the value uses reference() or cannot be resolved.
        """
        return self._resolve_tree(value, _Frame(allow_references=False))

    def evaluate_value(self, value: Any, node_id: NodeId | None = None) -> Any:
        """Evaluate a compiled value; references may yield Deferred."""
        return self._resolve_tree(value, _Frame(allow_references=True, node_id=node_id))

    def resolve_node(self, node: ResourceNode) -> ResolvedNode:
        """Substitute every expression in a node body.

        Excluded nodes are not evaluated; their body stays empty.

        Raises:
            EvaluationError: Located at the node and property path that failed.
        """
        if not node.included:
            return ResolvedNode(node=node, body={})

        frame = _Frame(allow_references=True, node_id=node.id)
        pending: list[str] = []
        awaiting: set[NodeId] = set()

        def walk(value: Any, path: str) -> Any:
            if isinstance(value, dict):
                return {k: walk(v, f"{path}.{k}" if path else k) for k, v in value.items()}
            if isinstance(value, list):
                return [walk(v, f"{path}[{i}]") for i, v in enumerate(value)]
            if isinstance(value, Literal | FunctionCall | MemberAccess | IndexAccess):
                try:
                    result = self._resolve_tree(value, frame)
                except EvaluationError as e:
                    raise e.located(str(node.id), path) from e
                targets = _deferred_targets(result)
                if targets:
                    pending.append(path)
                    awaiting.update(targets)
                return result
            return value

        body = walk(node.body, "")
        property_hash = None if pending else compute_property_hash(node.api_version, body)
        return ResolvedNode(
            node=node,
            body=body,
            awaiting=frozenset(awaiting),
            pending_paths=pending,
            property_hash=property_hash,
        )

    def evaluate(self, ordered: OrderedGraph) -> ResolvedGraph:
        """Resolve every node of an ordered graph in dependency order.

        Raises:
            EvaluationError: If a non-deferred expression cannot be resolved.
            ValidationError: If an output cannot be resolved.
        """
        self.attach_graph(ordered.graph)
        resolved: dict[NodeId, ResolvedNode] = {}
        for node_id in ordered.order:
            resolved[node_id] = self.resolve_node(ordered.graph.nodes[node_id])

        issues = self.check_outputs(ordered.graph)
        if issues:
            raise ValidationError("Template outputs cannot be resolved", issues)

        pending = [str(r.id) for r in resolved.values() if r.is_pending]
        logger.info(
            "Graph evaluated",
            extra={
                "node_count": len(resolved),
                "excluded_count": sum(1 for r in resolved.values() if not r.included),
                "pending_nodes": pending,
            },
        )
        return ResolvedGraph(ordered=ordered, nodes=resolved)

    def check_outputs(self, graph: Graph) -> list[str]:
        """Evaluate every output ahead of apply, with all references deferred.

        Returns:
            One issue per output whose value or condition cannot be resolved
            for a reason other than a pending or excluded resource.
        """
        self.attach_graph(graph)
        frame = _Frame(allow_references=True, defer_references=True)
        issues: list[str] = []
        for name, output in graph.outputs.items():
            part = "condition"
            try:
                if self._resolve_tree(output.condition, frame) is False:
                    continue
                part = "value"
                self._resolve_tree(output.value, frame)
            except ExcludedReferenceError:
                continue
            except EvaluationError as e:
                issues.append(f"outputs.{name}.{part}: {e}")
        return issues

    def evaluate_outputs(self, graph: Graph) -> OutputsResult:
        """Resolve template outputs against the current records.

        Outputs whose condition is false, that need an excluded resource, or
        whose value is not available yet are omitted, never set to null.
        """
        result = OutputsResult()
        self.attach_graph(graph)
        frame = _Frame(allow_references=True)

        for name, output in graph.outputs.items():
            try:
                condition = self._resolve_tree(output.condition, frame)
                if isinstance(condition, Deferred):
                    result.omitted[name] = f"condition awaits {condition!r}"
                    continue
                if condition is not True:
                    result.omitted[name] = "condition is false"
                    continue
                value = self._resolve_tree(output.value, frame)
            except ExcludedReferenceError as e:
                result.omitted[name] = f"source excluded: {e.reason}"
                continue
            except EvaluationError as e:
                logger.error("Output evaluation failed", extra={"output": name, "error": str(e)})
                result.omitted[name] = f"evaluation failed: {e}"
                continue

            if _deferred_targets(value):
                result.omitted[name] = "value not available yet"
                continue
            result.values[name] = value

        return result

    # -------------------------------------------------------------------------
    # Core evaluation
    # -------------------------------------------------------------------------

    def _resolve_tree(self, value: Any, frame: _Frame) -> Any:
        if isinstance(value, dict):
            resolved = {k: self._resolve_tree(v, frame) for k, v in value.items()}
            return resolved
        if isinstance(value, list):
            return [self._resolve_tree(v, frame) for v in value]
        if isinstance(value, Literal | FunctionCall | MemberAccess | IndexAccess):
            return self._eval(value, frame)
        return value

    def _eval(self, expr: Expression, frame: _Frame) -> Any:
        match expr:
            case Literal(value=value):
                return value
            case MemberAccess(target=target, member=member):
                base = self._eval(target, frame)
                if isinstance(base, Deferred):
                    return base
                if not isinstance(base, Mapping):
                    raise EvaluationError(
                        f"Cannot read property '{member}' of {type(base).__name__}"
                    )
                found, result = _lookup_ci(base, member)
                if not found:
                    raise EvaluationError(f"Property '{member}' not found")
                return result
            case IndexAccess(target=target, index=index):
                base = self._eval(target, frame)
                key = self._eval(index, frame)
                deferred = Deferred.merge([base, key])
                if deferred is not None:
                    return deferred
                return self._index(base, key)
            case FunctionCall(name=name, args=args):
                return self._call(name, args, frame)
        raise EvaluationError(f"Unsupported expression node {expr!r}")

    @staticmethod
    def _index(base: Any, key: Any) -> Any:
        if isinstance(base, list):
            if isinstance(key, bool) or not isinstance(key, int):
                raise EvaluationError("Array index must be an integer")
            if not -len(base) <= key < len(base):
                raise EvaluationError(f"Index {key} out of range for array of length {len(base)}")
            return base[key]
        if isinstance(base, Mapping):
            found, result = _lookup_ci(base, str(key))
            if not found:
                raise EvaluationError(f"Property '{key}' not found")
            return result
        raise EvaluationError(f"Cannot index into {type(base).__name__}")

    def _call(self, name: str, args: tuple[Expression, ...], frame: _Frame) -> Any:
        if name in LAZY_FUNCTIONS:
            return self._call_lazy(name, args, frame)

        values = [self._eval(arg, frame) for arg in args]
        deferred = Deferred.merge(values)
        if deferred is not None:
            return deferred

        handler = self._scope_handlers().get(name)
        if handler is not None:
            return handler(values, args, frame)

        function = PURE_FUNCTIONS.get(name)
        if function is None:
            raise EvaluationError(f"Unknown function '{name}'")
        return function(*values)

    def _call_lazy(self, name: str, args: tuple[Expression, ...], frame: _Frame) -> Any:
        if name == "if":
            if len(args) != 3:
                raise EvaluationError(f"if() expects 3 arguments, got {len(args)}")
            condition = self._eval(args[0], frame)
            if isinstance(condition, Deferred):
                return condition
            if not isinstance(condition, bool):
                raise EvaluationError(
                    f"if() condition must be a boolean, got {type(condition).__name__}"
                )
            return self._eval(args[1] if condition else args[2], frame)

        if name in ("and", "or"):
            if len(args) < 2:
                raise EvaluationError(f"{name}() expects at least 2 arguments")
            stop_on = name == "or"
            for arg in args:
                value = self._eval(arg, frame)
                if isinstance(value, Deferred):
                    return value
                if not isinstance(value, bool):
                    raise EvaluationError(f"{name}() expects booleans, got {type(value).__name__}")
                if value is stop_on:
                    return stop_on
            return not stop_on

        # coalesce: first non-null argument
        for arg in args:
            value = self._eval(arg, frame)
            if value is not None:
                return value
        return None

    # -------------------------------------------------------------------------
    # Scope functions
    # -------------------------------------------------------------------------

    def _scope_handlers(self) -> dict[str, Callable[[list[Any], tuple[Expression, ...], _Frame], Any]]:
        return {
            "parameters": self._fn_parameters,
            "variables": self._fn_variables,
            "resourcegroup": self._fn_resource_group,
            "subscription": self._fn_subscription,
            "tenant": self._fn_tenant,
            "deployment": self._fn_deployment,
            "environment": self._fn_environment,
            "reference": self._fn_reference,
            "resourceid": self._fn_resource_id,
            "subscriptionresourceid": self._fn_subscription_resource_id,
        }

    def _fn_parameters(self, values: list[Any], _args: tuple[Expression, ...], _frame: _Frame) -> Any:
        if len(values) != 1 or not isinstance(values[0], str):
            raise EvaluationError("parameters() expects a parameter name")
        return self._parameter(values[0])

    def _fn_variables(self, values: list[Any], _args: tuple[Expression, ...], frame: _Frame) -> Any:
        if len(values) != 1 or not isinstance(values[0], str):
            raise EvaluationError("variables() expects a variable name")
        return self._variable(values[0], frame)

    def _fn_resource_group(self, values: list[Any], _args: tuple[Expression, ...], _frame: _Frame) -> Any:
        if values:
            raise EvaluationError("resourceGroup() takes no arguments")
        env = self._environment
        return {
            "id": env.resource_group_id,
            "name": env.resource_group_name,
            "location": env.location,
            "tags": dict(env.resource_group_tags),
        }

    def _fn_subscription(self, values: list[Any], _args: tuple[Expression, ...], _frame: _Frame) -> Any:
        if values:
            raise EvaluationError("subscription() takes no arguments")
        env = self._environment
        return {
            "id": f"/subscriptions/{env.subscription_id}",
            "subscriptionId": env.subscription_id,
            "tenantId": env.tenant_id,
        }

    def _fn_tenant(self, values: list[Any], _args: tuple[Expression, ...], _frame: _Frame) -> Any:
        if values:
            raise EvaluationError("tenant() takes no arguments")
        return {"tenantId": self._environment.tenant_id}

    def _fn_deployment(self, values: list[Any], _args: tuple[Expression, ...], _frame: _Frame) -> Any:
        if values:
            raise EvaluationError("deployment() takes no arguments")
        return {"name": self._environment.deployment_name}

    def _fn_environment(self, values: list[Any], _args: tuple[Expression, ...], _frame: _Frame) -> Any:
        if values:
            raise EvaluationError("environment() takes no arguments")
        if not self._environment.cloud_metadata:
            raise EvaluationError(
                f"No environment metadata available for cloud '{self._environment.cloud_name}'"
            )
        return {"name": self._environment.cloud_name, **self._environment.cloud_metadata}

    def _fn_resource_id(self, values: list[Any], _args: tuple[Expression, ...], _frame: _Frame) -> Any:
        env = self._environment
        return build_resource_id(
            "resourceId", tuple(values), env.subscription_id, env.resource_group_name
        )

    def _fn_subscription_resource_id(
        self, values: list[Any], _args: tuple[Expression, ...], _frame: _Frame
    ) -> Any:
        return build_resource_id(
            "subscriptionResourceId", tuple(values), self._environment.subscription_id, None
        )

    def _fn_reference(self, values: list[Any], _args: tuple[Expression, ...], frame: _Frame) -> Any:
        if not 1 <= len(values) <= 3 or not isinstance(values[0], str):
            raise EvaluationError("reference() expects a resource id or name")
        if not frame.allow_references:
            raise EvaluationError("reference() cannot be used here; the value must be known before apply")
        if self._graph is None:
            raise EvaluationError("reference() used before the resource graph was built")

        target = self._graph.locate(values[0])
        if target is None:
            raise EvaluationError(f"reference() target '{values[0]}' is not a declared resource")
        if target == frame.node_id:
            raise EvaluationError(f"Resource '{target}' references itself")

        node = self._graph.nodes[target]
        if not node.included:
            raise ExcludedReferenceError(f"'{target}' is excluded by its condition")

        if frame.defer_references:
            return Deferred(frozenset({target}))

        record = self._state.get(target) if self._state is not None else None
        if record is None:
            return Deferred(frozenset({target}))

        full = len(values) == 3 and isinstance(values[2], str) and values[2].lower() == "full"
        outputs = record.outputs
        if full:
            return outputs
        properties = outputs.get("properties")
        return properties if isinstance(properties, Mapping) else outputs


def _deferred_targets(value: Any) -> set[NodeId]:
    if isinstance(value, Deferred):
        return set(value.awaiting)
    targets: set[NodeId] = set()
    if isinstance(value, dict):
        for item in value.values():
            targets |= _deferred_targets(item)
    elif isinstance(value, list):
        for item in value:
            targets |= _deferred_targets(item)
    return targets
