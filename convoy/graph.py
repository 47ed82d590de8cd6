"""Dependency graph construction, cycle detection and wave computation.

All functions here are pure: they take item descriptors and edges already
collected from the store and never touch it. Output ordering is
deterministic (node ids sorted alphabetically wherever order matters).
"""

from dataclasses import dataclass, field

from .config import DEP_PARENT_CHILD, EXECUTION_DEP_TYPES, STATUS_CLOSED
from .guards import is_dispatchable_type
from .models import Dependency, WorkItem


@dataclass
class GraphNode:
    """A work item in the staging graph."""
    id: str
    title: str = ""
    type: str = "task"
    status: str = "open"
    target: str = ""
    blocked_by: list[str] = field(default_factory=list)  # execution predecessors
    blocks: list[str] = field(default_factory=list)      # execution successors
    children: list[str] = field(default_factory=list)    # hierarchy only
    parent: str = ""

    @property
    def dispatchable(self) -> bool:
        return is_dispatchable_type(self.type)


@dataclass
class ConvoyGraph:
    """In-memory dependency graph keyed by item id."""
    nodes: dict[str, GraphNode] = field(default_factory=dict)

    def sorted_ids(self) -> list[str]:
        return sorted(self.nodes)

    def dispatchable_ids(self) -> list[str]:
        """Sorted ids of leaf-dispatchable nodes."""
        return sorted(n.id for n in self.nodes.values() if n.dispatchable)

    def sorted_children(self, node_id: str) -> list[str]:
        node = self.nodes.get(node_id)
        if node is None:
            return []
        return sorted(node.children)


@dataclass
class Cycle:
    """A cycle in execution edges.

    ``path`` lists the ids in traversal order; ``edge`` is the
    (blocker, blocked) edge that closes the loop, removing it breaks the cycle.
    """
    path: list[str]
    edge: tuple[str, str]


@dataclass
class Wave:
    """A group of items that may run in parallel."""
    number: int
    items: list[str]


def build_graph(
    items: list[WorkItem],
    deps: list[Dependency],
    targets: dict[str, str] | None = None,
) -> ConvoyGraph:
    """Build a ConvoyGraph from collected items and edges.

    Edge classification:
      - blocks, conditional-blocks, waits-for -> execution edges
      - parent-child -> hierarchy metadata only, never an execution edge
      - tracks, related, discovered-from, ... -> ignored

    Edges referencing items outside the collected set are dropped, as are
    duplicate edges.

    Args:
        items: Work items in the staging set
        deps: Edges where ``item_id`` depends on ``depends_on_id``
        targets: Optional item id -> resolved target environment
    """
    targets = targets or {}
    graph = ConvoyGraph()
    for item in items:
        graph.nodes[item.id] = GraphNode(
            id=item.id,
            title=item.title,
            type=item.type,
            status=item.status,
            target=targets.get(item.id, ""),
        )

    for dep in deps:
        source = graph.nodes.get(dep.depends_on_id)  # blocker / parent
        dest = graph.nodes.get(dep.item_id)          # blocked / child
        if source is None or dest is None:
            continue

        if dep.type in EXECUTION_DEP_TYPES:
            if dest.id not in source.blocks:
                source.blocks.append(dest.id)
                dest.blocked_by.append(source.id)
        elif dep.type == DEP_PARENT_CHILD:
            if dest.id not in source.children:
                source.children.append(dest.id)
            dest.parent = source.id

    return graph


def detect_cycles(graph: ConvoyGraph) -> list[Cycle]:
    """Find cycles in execution edges using a three-colour DFS.

    Every back-edge found closes one cycle; removing all reported edges makes
    the graph acyclic. Traversal order is alphabetical so the report is
    stable for a given graph.
    """
    white, gray, black = 0, 1, 2
    color: dict[str, int] = {node_id: white for node_id in graph.nodes}
    parent: dict[str, str] = {}
    cycles: list[Cycle] = []

    def extract(from_id: str, to_id: str) -> list[str]:
        path = []
        cur = from_id
        while cur != to_id:
            path.append(cur)
            cur = parent[cur]
        path.append(to_id)
        path.reverse()
        return path

    def visit(start: str) -> None:
        # Iterative DFS so long dependency chains don't hit the recursion limit
        color[start] = gray
        stack = [(start, iter(sorted(graph.nodes[start].blocks)))]
        while stack:
            node_id, neighbours = stack[-1]
            advanced = False
            for nxt in neighbours:
                state = color.get(nxt)
                if state == white:
                    parent[nxt] = node_id
                    color[nxt] = gray
                    stack.append((nxt, iter(sorted(graph.nodes[nxt].blocks))))
                    advanced = True
                    break
                if state == gray:
                    cycles.append(Cycle(path=extract(node_id, nxt), edge=(node_id, nxt)))
            if not advanced:
                color[node_id] = black
                stack.pop()

    for node_id in graph.sorted_ids():
        if color[node_id] == white:
            visit(node_id)

    return cycles


def compute_waves(graph: ConvoyGraph) -> list[Wave]:
    """Assign each open dispatchable node to a dispatch wave.

    Kahn-style peeling restricted to leaf-dispatchable, non-closed nodes:
    in-degree counts only predecessors that are themselves in that set.
    Wave 1 holds every node with in-degree 0; removing a wave decrements its
    successors. Items within a wave are sorted by id.

    Containers, meta types and closed items never appear in any wave.

    Raises:
        ValueError: If the remaining nodes form a cycle (callers run
            detect_cycles first, so this indicates a bug upstream)
    """
    eligible = {
        node_id: node
        for node_id, node in graph.nodes.items()
        if node.dispatchable and node.status != STATUS_CLOSED
    }

    in_degree = {
        node_id: sum(1 for b in node.blocked_by if b in eligible)
        for node_id, node in eligible.items()
    }

    waves: list[Wave] = []
    while in_degree:
        ready = sorted(node_id for node_id, deg in in_degree.items() if deg == 0)
        if not ready:
            raise ValueError(f"cycle detected among remaining {len(in_degree)} nodes")

        waves.append(Wave(number=len(waves) + 1, items=ready))
        for node_id in ready:
            del in_degree[node_id]
            for succ in eligible[node_id].blocks:
                if succ in in_degree:
                    in_degree[succ] -= 1

    return waves
