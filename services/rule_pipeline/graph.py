"""
Supersedes Graph
================

Directed "rule A supersedes rule B" edges kept apart from the rule rows.
Edges are cycle-checked before insertion; a cyclic edge is skipped and
logged, never stored.

Version: 0.1.0
"""

from collections import defaultdict
from collections.abc import Iterable

from shared.logging import get_logger

logger = get_logger(__name__)


class SupersedesGraph:
    """In-memory adjacency view of supersedes edges."""

    def __init__(self, edges: Iterable[tuple[str, str]] = ()) -> None:
        self._edges: dict[str, set[str]] = defaultdict(set)
        for source, target in edges:
            self.add_edge(source, target)

    def __contains__(self, edge: tuple[str, str]) -> bool:
        source, target = edge
        return target in self._edges.get(source, set())

    def __len__(self) -> int:
        return sum(len(targets) for targets in self._edges.values())

    def _reachable(self, start: str, goal: str) -> bool:
        stack = [start]
        seen: set[str] = set()
        while stack:
            node = stack.pop()
            if node == goal:
                return True
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._edges.get(node, ()))
        return False

    def would_create_cycle(self, source: str, target: str) -> bool:
        """True if adding ``source -> target`` closes a cycle."""
        return source == target or self._reachable(target, source)

    def add_edge(self, source: str, target: str) -> bool:
        """
        Add ``source supersedes target``.

        Returns:
            False if the edge was skipped because it would create a cycle.
        """
        if self.would_create_cycle(source, target):
            logger.warning("supersedes_cycle_skipped", source=source, target=target)
            return False
        self._edges[source].add(target)
        return True

    def superseded_chain(self, rule_id: str) -> list[str]:
        """All rules transitively superseded by ``rule_id``, nearest first."""
        chain: list[str] = []
        frontier = sorted(self._edges.get(rule_id, ()))
        seen = {rule_id}
        while frontier:
            node = frontier.pop(0)
            if node in seen:
                continue
            seen.add(node)
            chain.append(node)
            frontier.extend(sorted(self._edges.get(node, ())))
        return chain
