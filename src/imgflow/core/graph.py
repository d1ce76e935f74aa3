"""DependencyGraph — node dependencies with ordered ready-set levels."""

from typing import Self

from imgflow.core.errors import CycleError, UnknownReferenceError


class DependencyGraph:
    """Dependency structure over node ids.

    Nodes are added with ``add_node``, edges with ``add_edge(source, target)``
    meaning *target depends on source*.

    The ``levels`` property returns successive ready sets: every node in a
    level has all of its dependencies in earlier levels. Within a level nodes
    keep the order in which they were added, so the ordering is stable under
    edits that do not touch the dependency structure.
    """

    def __init__(self) -> None:
        self._order: list[str] = []
        self._successors: dict[str, set[str]] = {}
        self._predecessors: dict[str, set[str]] = {}

    def add_node(self, node_id: str) -> Self:
        if node_id not in self._predecessors:
            self._order.append(node_id)
        self._successors.setdefault(node_id, set())
        self._predecessors.setdefault(node_id, set())
        return self

    def add_edge(self, source: str, target: str) -> Self:
        """Add a dependency edge: *target* cannot be placed before *source*."""
        if source not in self._predecessors:
            raise UnknownReferenceError(f"Edge references non-existent source node: {source!r}")
        if target not in self._predecessors:
            raise UnknownReferenceError(f"Edge references non-existent target node: {target!r}")
        self._successors[source].add(target)
        self._predecessors[target].add(source)
        return self

    def predecessors(self, node_id: str) -> set[str]:
        return set(self._predecessors.get(node_id, set()))

    def successors(self, node_id: str) -> set[str]:
        return set(self._successors.get(node_id, set()))

    @property
    def node_ids(self) -> list[str]:
        return list(self._order)

    @property
    def levels(self) -> list[list[str]]:
        """Ready sets in placement order.

        Raises ``CycleError`` when nodes remain but none is ready, instead of
        dropping the remainder.
        """
        placed: set[str] = set()
        levels: list[list[str]] = []

        while len(placed) < len(self._order):
            ready = [
                nid
                for nid in self._order
                if nid not in placed and self._predecessors[nid] <= placed
            ]
            if not ready:
                unplaced = [nid for nid in self._order if nid not in placed]
                cycle = self._find_cycle(unplaced)
                blocked = [nid for nid in unplaced if nid not in cycle]
                raise CycleError(cycle, blocked)
            placed.update(ready)
            levels.append(ready)

        return levels

    @property
    def order(self) -> list[str]:
        """Flattened topological order."""
        return [nid for level in self.levels for nid in level]

    def _find_cycle(self, unplaced: list[str]) -> list[str]:
        # Every unplaced node has an unplaced predecessor, so walking backwards
        # from any of them must revisit a node.
        pending = set(unplaced)
        path: list[str] = []
        seen: dict[str, int] = {}
        current = unplaced[0]
        while current not in seen:
            seen[current] = len(path)
            path.append(current)
            current = next(p for p in self._order if p in pending and p in self._predecessors[current])
        cycle = path[seen[current]:]
        cycle.reverse()
        return cycle

    def __len__(self) -> int:
        return len(self._order)

    def __repr__(self) -> str:
        return (
            f"DependencyGraph(nodes={len(self._order)}, "
            f"edges={sum(len(s) for s in self._successors.values())})"
        )
