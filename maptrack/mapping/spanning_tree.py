"""
Strategies for rebuilding the keyframe spanning tree from covisibility
weights.

A builder receives the covisibility graph as ``{kf_id: {peer_id: weight}}``
and returns ``{child_id: parent_id}`` for every keyframe it could attach
under the root. Keyframes without any path to the root are left out.
"""
import heapq
import logging
from abc import ABC, abstractmethod
from typing import Dict

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import breadth_first_order, minimum_spanning_tree

Graph = Dict[int, Dict[int, int]]


def symmetrize(graph: Graph) -> Graph:
    """Undirected version of a covisibility graph, keeping the larger weight."""
    undirected: Graph = {node: {} for node in graph}
    for node, edges in graph.items():
        for peer, weight in edges.items():
            if peer == node or weight <= 0:
                continue
            undirected.setdefault(peer, {})
            best = max(weight, undirected[node].get(peer, 0))
            undirected[node][peer] = best
            undirected[peer][node] = best
    return undirected


class SpanningTreeBuilder(ABC):
    """Interface of the spanning tree reconstruction strategies."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def build(self, root_id: int, graph: Graph) -> Dict[int, int]:
        """
        Compute parent links for the keyframes reachable from the root.

        Args:
            root_id: Id of the root keyframe (0)
            graph: Covisibility weights per keyframe

        Returns:
            Mapping from child id to parent id
        """
        pass


class GreedyCovisibilityTreeBuilder(SpanningTreeBuilder):
    """
    Grow the tree from the root, always attaching the out-of-tree keyframe
    with the strongest covisibility edge to the tree.

    Ties are broken by priority queue order (lower child id first).
    """

    def build(self, root_id: int, graph: Graph) -> Dict[int, int]:
        graph = symmetrize(graph)
        in_tree = {root_id}
        parents: Dict[int, int] = {}

        frontier = [(-w, peer, root_id) for peer, w in graph.get(root_id, {}).items()]
        heapq.heapify(frontier)

        while frontier:
            _, child, parent = heapq.heappop(frontier)
            if child in in_tree:
                continue
            in_tree.add(child)
            parents[child] = parent
            for peer, weight in graph.get(child, {}).items():
                if peer not in in_tree:
                    heapq.heappush(frontier, (-weight, peer, child))

        unreached = set(graph) - in_tree
        if unreached:
            self.logger.warning(
                f"{len(unreached)} keyframes are not connected to keyframe {root_id}"
            )
        return parents


class ExactMaximumSpanningTreeBuilder(SpanningTreeBuilder):
    """Maximum spanning tree of the root's component computed with scipy."""

    def build(self, root_id: int, graph: Graph) -> Dict[int, int]:
        graph = symmetrize(graph)
        graph.setdefault(root_id, {})
        ids = sorted(graph)
        index = {kf_id: i for i, kf_id in enumerate(ids)}

        rows, cols, data = [], [], []
        max_weight = max(
            (w for edges in graph.values() for w in edges.values()), default=0
        )
        for node, edges in graph.items():
            for peer, weight in edges.items():
                rows.append(index[node])
                cols.append(index[peer])
                # Minimum spanning tree over inverted (strictly positive) weights
                data.append(max_weight + 1 - weight)

        n = len(ids)
        matrix = csr_matrix((data, (rows, cols)), shape=(n, n), dtype=np.float64)
        tree = minimum_spanning_tree(matrix)
        tree = tree + tree.T

        order, predecessors = breadth_first_order(
            tree, index[root_id], directed=False, return_predecessors=True
        )
        parents = {ids[i]: ids[predecessors[i]] for i in order if i != index[root_id]}

        if len(order) < n:
            self.logger.warning(
                f"{n - len(order)} keyframes are not connected to keyframe {root_id}"
            )
        return parents
