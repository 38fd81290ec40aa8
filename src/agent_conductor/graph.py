"""Immutable graph definitions and the builder that validates them."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Union

from .errors import GraphDefinitionError
from .models import RunStatus
from .reducers import StateSchema

START = "__start__"
END = "__end__"
FAIL = "__fail__"
_RESERVED = frozenset({START, END, FAIL})

NodeOutput = Union[Mapping[str, Any], Sequence[Mapping[str, Any]], None]
Router = Callable[[Mapping[str, Any]], str]


@dataclass(frozen=True)
class NodeContext:
    """Per-dispatch context handed to node bodies."""

    thread_id: str
    node: str
    resumed: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


NodeFn = Callable[[Mapping[str, Any], NodeContext], NodeOutput]


@dataclass(frozen=True)
class SubgraphRef:
    """A node that runs another graph in a child thread.

    ``input_mapper`` builds the child's initial values from the parent state;
    ``output_mapper`` turns the child's final state and status into a single
    parent update.
    """

    graph: "GraphDefinition"
    input_mapper: Callable[[Mapping[str, Any]], Mapping[str, Any]]
    output_mapper: Callable[[Mapping[str, Any], RunStatus], Mapping[str, Any]]


@dataclass(frozen=True)
class NodeSpec:
    name: str
    fn: NodeFn | None
    writes: frozenset[str]
    interrupt: bool = False
    subgraph: SubgraphRef | None = None


@dataclass(frozen=True)
class ConditionalEdge:
    router: Router
    path_map: Mapping[str, str] | None = None


@dataclass(frozen=True)
class GraphDefinition:
    name: str
    schema: StateSchema
    entry: str
    nodes: Mapping[str, NodeSpec]
    edges: Mapping[str, str]
    conditional_edges: Mapping[str, ConditionalEdge]

    def node(self, name: str) -> NodeSpec:
        try:
            return self.nodes[name]
        except KeyError as exc:
            raise GraphDefinitionError(f"{self.name}: unknown node {name!r}") from exc

    def resolve_next(self, source: str, state: Mapping[str, Any]) -> str:
        """Resolve the node that follows ``source`` for the given state."""
        if source in self.edges:
            return self.edges[source]
        conditional = self.conditional_edges.get(source)
        if conditional is None:
            raise GraphDefinitionError(f"{self.name}: node {source!r} has no outgoing edge")
        key = conditional.router(state)
        target = conditional.path_map.get(key) if conditional.path_map is not None else key
        if target is None or (target not in self.nodes and target not in (END, FAIL)):
            raise GraphDefinitionError(f"{self.name}: router of {source!r} returned unknown destination {key!r}")
        return target

    def check_output(self, name: str, update: Mapping[str, Any]) -> None:
        undeclared = sorted(set(update) - self.node(name).writes)
        if undeclared:
            raise GraphDefinitionError(f"{self.name}: node {name!r} returned undeclared fields {undeclared}")


class GraphBuilder:
    """Collects nodes and edges, then compiles an immutable ``GraphDefinition``."""

    def __init__(self, name: str, schema: StateSchema) -> None:
        self.name = name
        self.schema = schema
        self._nodes: dict[str, NodeSpec] = {}
        self._edges: dict[str, str] = {}
        self._conditional: dict[str, ConditionalEdge] = {}
        self._entry: str | None = None

    def _add(self, spec: NodeSpec) -> "GraphBuilder":
        if spec.name in _RESERVED:
            raise GraphDefinitionError(f"{self.name}: node name {spec.name!r} is reserved")
        if spec.name in self._nodes:
            raise GraphDefinitionError(f"{self.name}: node {spec.name!r} added twice")
        self.schema.check_fields(spec.writes, owner=f"node {spec.name!r}")
        self._nodes[spec.name] = spec
        return self

    def add_node(
        self,
        name: str,
        fn: NodeFn,
        *,
        writes: Iterable[str] = (),
        interrupt: bool = False,
    ) -> "GraphBuilder":
        return self._add(NodeSpec(name=name, fn=fn, writes=frozenset(writes), interrupt=interrupt))

    def add_subgraph(self, name: str, ref: SubgraphRef, *, writes: Iterable[str] = ()) -> "GraphBuilder":
        return self._add(NodeSpec(name=name, fn=None, writes=frozenset(writes), subgraph=ref))

    def add_edge(self, source: str, target: str) -> "GraphBuilder":
        if source == START:
            return self.set_entry_point(target)
        if source in self._edges or source in self._conditional:
            raise GraphDefinitionError(f"{self.name}: node {source!r} already has an outgoing edge")
        self._edges[source] = target
        return self

    def add_conditional_edges(
        self,
        source: str,
        router: Router,
        path_map: Mapping[str, str] | None = None,
    ) -> "GraphBuilder":
        if source in self._edges or source in self._conditional:
            raise GraphDefinitionError(f"{self.name}: node {source!r} already has an outgoing edge")
        self._conditional[source] = ConditionalEdge(
            router=router,
            path_map=MappingProxyType(dict(path_map)) if path_map is not None else None,
        )
        return self

    def set_entry_point(self, name: str) -> "GraphBuilder":
        self._entry = name
        return self

    def compile(self) -> GraphDefinition:
        if self._entry is None or self._entry not in self._nodes:
            raise GraphDefinitionError(f"{self.name}: entry point {self._entry!r} is not a node")

        def _check_target(source: str, target: str) -> None:
            if target not in self._nodes and target not in (END, FAIL):
                raise GraphDefinitionError(f"{self.name}: edge {source!r} -> {target!r} targets an unknown node")

        for source, target in self._edges.items():
            if source not in self._nodes:
                raise GraphDefinitionError(f"{self.name}: edge source {source!r} is not a node")
            _check_target(source, target)
        for source, conditional in self._conditional.items():
            if source not in self._nodes:
                raise GraphDefinitionError(f"{self.name}: conditional source {source!r} is not a node")
            if conditional.path_map is not None:
                for target in conditional.path_map.values():
                    _check_target(source, target)

        for name, spec in self._nodes.items():
            if name not in self._edges and name not in self._conditional:
                raise GraphDefinitionError(f"{self.name}: node {name!r} has no outgoing edge")
            if spec.interrupt and spec.subgraph is not None:
                raise GraphDefinitionError(f"{self.name}: subgraph node {name!r} cannot be an interrupt")

        return GraphDefinition(
            name=self.name,
            schema=self.schema,
            entry=self._entry,
            nodes=MappingProxyType(dict(self._nodes)),
            edges=MappingProxyType(dict(self._edges)),
            conditional_edges=MappingProxyType(dict(self._conditional)),
        )
