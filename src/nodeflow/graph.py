"""
Graph compilation.

Turns a workflow's nodes and connections into a deterministic execution
order plus the set of adapter nodes the agent hub runs on its own.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence, Set

from nodeflow.errors import CycleError
from nodeflow.models import AGENT_OWNED_NODE_TYPES, HUB_NODE_TYPES, Connection, Node
from nodeflow.observability import get_logger

logger = get_logger(__name__)


def drop_dangling_connections(
    nodes: Sequence[Node], connections: Iterable[Connection]
) -> List[Connection]:
    """Keep only connections whose both endpoints are present in ``nodes``."""
    ids = {node.id for node in nodes}
    kept = []
    for conn in connections:
        if conn.from_node_id in ids and conn.to_node_id in ids:
            kept.append(conn)
        else:
            logger.warning(
                "Dropping dangling connection",
                extra={"from_node": conn.from_node_id, "to_node": conn.to_node_id},
            )
    return kept


def topological_sort(
    nodes: Sequence[Node], connections: Iterable[Connection]
) -> List[Node]:
    """
    Order nodes so every connection's source precedes its target.

    Kahn's algorithm over the input positions: among nodes that are ready
    at the same time, the one listed first in ``nodes`` goes first, so the
    result is reproducible. Nodes without connections are included.

    Args:
        nodes: Workflow nodes in stored order
        connections: Connections between them; dangling ones are ignored

    Returns:
        Nodes in execution order, each exactly once

    Raises:
        CycleError: If the connections contain a cycle (self-loops included)
    """
    # Duplicate ids collapse to their first occurrence
    unique: List[Node] = []
    index_of: dict[str, int] = {}
    for node in nodes:
        if node.id not in index_of:
            index_of[node.id] = len(unique)
            unique.append(node)

    in_degree = [0] * len(unique)
    downstream: List[List[int]] = [[] for _ in unique]
    for conn in connections:
        src = index_of.get(conn.from_node_id)
        dst = index_of.get(conn.to_node_id)
        if src is None or dst is None:
            continue
        downstream[src].append(dst)
        in_degree[dst] += 1

    ready = [i for i, degree in enumerate(in_degree) if degree == 0]
    heapq.heapify(ready)

    ordered: List[Node] = []
    while ready:
        current = heapq.heappop(ready)
        ordered.append(unique[current])
        for nxt in downstream[current]:
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                heapq.heappush(ready, nxt)

    if len(ordered) != len(unique):
        raise CycleError()
    return ordered


def compute_skip_set(
    nodes: Sequence[Node], connections: Iterable[Connection]
) -> Set[str]:
    """
    Ids of adapter nodes wired into an agent hub.

    Chat-model and database adapters connected to a hub are configuration
    providers for it; the hub invokes them itself, so the main pipeline must
    not dispatch them.
    """
    by_id = {node.id: node for node in nodes}
    hub_ids = {node.id for node in nodes if node.type in HUB_NODE_TYPES}

    skip: Set[str] = set()
    for conn in connections:
        if conn.to_node_id not in hub_ids:
            continue
        source = by_id.get(conn.from_node_id)
        if source is not None and source.type in AGENT_OWNED_NODE_TYPES:
            skip.add(source.id)
    return skip


@dataclass
class CompiledWorkflow:
    """Execution order and skip-set for one run."""

    order: List[Node]
    skip_set: Set[str] = field(default_factory=set)
    connections: List[Connection] = field(default_factory=list)

    @property
    def dispatch_order(self) -> List[Node]:
        """Nodes the main pipeline dispatches, in order."""
        return [node for node in self.order if node.id not in self.skip_set]


def compile_workflow(
    nodes: Sequence[Node], connections: Iterable[Connection]
) -> CompiledWorkflow:
    """Drop dangling connections, sort, and compute the skip-set."""
    kept = drop_dangling_connections(nodes, connections)
    order = topological_sort(nodes, kept)
    skip_set = compute_skip_set(nodes, kept)
    logger.debug(
        "Workflow compiled",
        extra={"node_count": len(order), "skipped": sorted(skip_set)},
    )
    return CompiledWorkflow(order=order, skip_set=skip_set, connections=kept)
