"""Dependency graph for desired-state documents.

Builds a DAG from Document blocks (resources and data sources) using the
references in their attributes plus explicit depends_on entries, and
computes traversal orderings for create (dependencies first) and destroy
(dependents first).
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from config import ConfigError
from document import Block, Document

logger = logging.getLogger(__name__)


@dataclass
class GraphNode:
    """A block in the dependency graph with edges in both directions.

    Attributes:
        block: The underlying Block declaration
        position: Index in document order (data sources first)
        dependencies: Nodes this node references
        dependents: Nodes referencing this node
        depth: Longest path from a node with no dependencies
    """
    block: Block
    position: int = 0
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)
    depth: int = 0

    @property
    def address(self) -> str:
        return self.block.address

    @property
    def is_data(self) -> bool:
        return self.block.is_data

    @property
    def is_root(self) -> bool:
        return not self.dependencies

    @property
    def is_leaf(self) -> bool:
        return not self.dependents

    def __repr__(self) -> str:
        return f"GraphNode({self.address}, depth={self.depth})"


class DependencyGraph:
    """Reference graph built from a Document's blocks.

    Provides ordered traversal for lifecycle operations:
    - create_order(): dependencies before dependents (topological)
    - destroy_order(): dependents before dependencies
    - levels(): batches of nodes with no edges between them
    """

    def __init__(self, document: Document):
        """Build the graph.

        Args:
            document: A loaded document

        Raises:
            ConfigError: On a dangling reference or a cycle
        """
        self.document = document
        self._nodes: dict[str, GraphNode] = {}
        self._build_graph(document.blocks)

    def _build_graph(self, blocks: list[Block]) -> None:
        for position, block in enumerate(blocks):
            self._nodes[block.address] = GraphNode(block=block, position=position)

        for block in blocks:
            node = self._nodes[block.address]
            for address in block.references():
                if address not in self._nodes:
                    raise ConfigError(
                        f"'{block.address}' references unknown declaration '{address}'"
                    )
                if address == block.address:
                    raise ConfigError(f"Cycle detected: {block.address} -> {block.address}")
                dep = self._nodes[address]
                node.dependencies.append(dep)
                dep.dependents.append(node)

        self._check_cycles()

        # Depths follow create order so every dependency is final first
        for node in self.create_order():
            node.depth = max((d.depth + 1 for d in node.dependencies), default=0)

    def _check_cycles(self) -> None:
        """DFS over dependency edges; report the first cycle found."""
        visited: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def _visit(node: GraphNode) -> None:
            visited.add(node.address)
            stack.append(node.address)
            on_stack.add(node.address)
            for dep in node.dependencies:
                if dep.address in on_stack:
                    cycle = stack[stack.index(dep.address):] + [dep.address]
                    raise ConfigError(f"Cycle detected: {' -> '.join(cycle)}")
                if dep.address not in visited:
                    _visit(dep)
            stack.pop()
            on_stack.discard(node.address)

        for node in self._nodes.values():
            if node.address not in visited:
                _visit(node)

    @property
    def nodes(self) -> list[GraphNode]:
        """All nodes in document order."""
        return sorted(self._nodes.values(), key=lambda n: n.position)

    @property
    def roots(self) -> list[GraphNode]:
        """Nodes with no dependencies."""
        return [n for n in self.nodes if n.is_root]

    @property
    def max_depth(self) -> int:
        if not self._nodes:
            return 0
        return max(n.depth for n in self._nodes.values())

    def __contains__(self, address: str) -> bool:
        return address in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, address: str) -> GraphNode:
        """Get a node by address.

        Raises:
            KeyError: If address not found
        """
        return self._nodes[address]

    def dependencies(self, address: str) -> list[str]:
        """Direct dependency addresses of a node."""
        return [d.address for d in self._nodes[address].dependencies]

    def descendants(self, address: str) -> list[str]:
        """Every node that depends on address, directly or transitively.

        Returned in create order.
        """
        found: set[str] = set()
        pending = list(self._nodes[address].dependents)
        while pending:
            node = pending.pop()
            if node.address not in found:
                found.add(node.address)
                pending.extend(node.dependents)
        return [n.address for n in self.create_order() if n.address in found]

    def create_order(self, subset: Optional[set[str]] = None) -> list[GraphNode]:
        """Return nodes in creation order (dependencies first).

        Kahn's algorithm; ties broken by document position so the order
        is stable across runs.

        Args:
            subset: Restrict to these addresses (edges to nodes outside the
                subset are ignored)
        """
        selected = {a: n for a, n in self._nodes.items() if subset is None or a in subset}
        remaining = {
            a: sum(1 for d in n.dependencies if d.address in selected)
            for a, n in selected.items()
        }
        ready = sorted((n for a, n in selected.items() if remaining[a] == 0),
                       key=lambda n: n.position)
        ordered: list[GraphNode] = []

        while ready:
            node = ready.pop(0)
            ordered.append(node)
            for dependent in node.dependents:
                if dependent.address not in remaining:
                    continue
                remaining[dependent.address] -= 1
                if remaining[dependent.address] == 0:
                    ready.append(dependent)
                    ready.sort(key=lambda n: n.position)

        return ordered

    def destroy_order(self, subset: Optional[set[str]] = None) -> list[GraphNode]:
        """Return nodes in destruction order (dependents first).

        Reverse of create_order.
        """
        return list(reversed(self.create_order(subset)))

    def levels(self) -> list[list[GraphNode]]:
        """Group nodes by depth; nodes within a level are independent."""
        grouped: list[list[GraphNode]] = [[] for _ in range(self.max_depth + 1)] if self._nodes else []
        for node in self.nodes:
            grouped[node.depth].append(node)
        return grouped
