"""
Infra Reconciler - Dependency Graph Builder

Builds a NetworkX DiGraph from a Declaration. An edge A -> B means
A must be applied before B (B references A or lists it in depends_on).
"""

from __future__ import annotations
from typing import Dict, List, Optional, Set
import logging

import networkx as nx

from infra_reconciler.models import (
    Declaration,
    ResourceDeclaration,
    ResourceIdentity,
)

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Base class for errors that fail a plan before anything is applied."""

    def __init__(self, message: str, identity: Optional[str] = None):
        self.message = message
        self.identity = identity
        super().__init__(self.message)


class CycleError(GraphError):
    """Raised when declared references form a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            identity=cycle[0] if cycle else None,
        )


class UnresolvedReferenceError(GraphError):
    """Raised when a reference names a resource that is not declared."""

    def __init__(self, identity: str, target: str):
        self.target = target
        super().__init__(
            f"Resource '{identity}' references undeclared resource '{target}'",
            identity=identity,
        )


def find_cycle(graph: nx.DiGraph) -> Optional[List[str]]:
    """Return one cycle as a closed list of node keys, or None."""
    if nx.is_directed_acyclic_graph(graph):
        return None
    try:
        edges = nx.find_cycle(graph)
    except nx.NetworkXNoCycle:
        return None
    return [edge[0] for edge in edges] + [edges[-1][1]]


class DependencyGraph:
    """
    Directed acyclic dependency graph over declared resources.

    Usage::

        graph = DependencyGraph.build(declaration)
        for identity in graph.topological_order():
            ...
    """

    def __init__(self, graph: nx.DiGraph, declarations: Dict[str, ResourceDeclaration]):
        self._graph = graph
        self._declarations = declarations

    @classmethod
    def build(cls, declaration: Declaration) -> "DependencyGraph":
        """
        Build the graph for a declaration.

        Raises:
            UnresolvedReferenceError: a reference or depends_on names an unknown resource
            CycleError: references form a cycle
        """
        declarations = declaration.by_key()
        graph: nx.DiGraph = nx.DiGraph()
        for key in declarations:
            graph.add_node(key)

        for key, resource in declarations.items():
            for dep in resource.dependency_keys():
                if dep not in declarations:
                    raise UnresolvedReferenceError(key, dep)
                graph.add_edge(dep, key)

        cycle = find_cycle(graph)
        if cycle:
            raise CycleError(cycle)

        logger.debug(
            f"Built dependency graph: {graph.number_of_nodes()} resources, "
            f"{graph.number_of_edges()} edges"
        )
        return cls(graph, declarations)

    def __len__(self) -> int:
        return self._graph.number_of_nodes()

    def __contains__(self, key: object) -> bool:
        if isinstance(key, ResourceIdentity):
            key = key.key
        return key in self._declarations

    @property
    def graph(self) -> nx.DiGraph:
        return self._graph

    def identities(self) -> List[ResourceIdentity]:
        return [self._declarations[k].identity for k in sorted(self._declarations)]

    def declaration(self, key: str) -> ResourceDeclaration:
        return self._declarations[key]

    def topological_order(self) -> List[str]:
        """All identity keys, dependencies first; ties broken by key."""
        return list(nx.lexicographical_topological_sort(self._graph))

    def dependencies(self, key: str) -> List[str]:
        """Keys that *key* depends on directly."""
        return sorted(self._graph.predecessors(key))

    def dependents(self, key: str) -> List[str]:
        """Keys that depend directly on *key*."""
        return sorted(self._graph.successors(key))

    def descendants(self, key: str) -> Set[str]:
        """All keys that transitively depend on *key*."""
        return nx.descendants(self._graph, key)

    def ancestors(self, key: str) -> Set[str]:
        return nx.ancestors(self._graph, key)


def build_graph(declaration: Declaration) -> DependencyGraph:
    """Convenience wrapper around DependencyGraph.build."""
    return DependencyGraph.build(declaration)
