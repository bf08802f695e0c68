"""
Dependency Resolver

Orders an evaluation set so every policy runs after the policies it
depends on. Policies with no ordering constraint between them run most
severe first, then by id, so the order is fully deterministic.
"""

from __future__ import annotations

import heapq
from typing import Iterable, Optional

from policymesh.exceptions import CycleError

from .models import Policy


class DependencyResolver:
    """Topological ordering of policies by their ``depends_on`` edges."""

    def order(self, policies: Iterable[Policy]) -> list[Policy]:
        """
        Return ``policies`` in evaluation order.

        Dependencies that are not part of the evaluation set do not
        constrain the order.

        Raises:
            CycleError: If the dependency graph contains a cycle.
        """
        by_id = {p.id: p for p in policies}
        indegree = {pid: 0 for pid in by_id}
        dependents: dict[str, list[str]] = {pid: [] for pid in by_id}

        for policy in by_id.values():
            for dep in policy.depends_on:
                if dep in by_id:
                    indegree[policy.id] += 1
                    dependents[dep].append(policy.id)

        ready = [self._key(by_id[pid]) for pid, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)

        ordered: list[Policy] = []
        while ready:
            _, pid = heapq.heappop(ready)
            ordered.append(by_id[pid])
            for child in dependents[pid]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, self._key(by_id[child]))

        if len(ordered) != len(by_id):
            remaining = {pid: by_id[pid] for pid, deg in indegree.items() if deg > 0}
            raise CycleError(find_cycle(remaining.values()) or sorted(remaining))

        return ordered

    @staticmethod
    def _key(policy: Policy) -> tuple[int, str]:
        return (policy.severity.rank, policy.id)


def find_cycle(policies: Iterable[Policy]) -> Optional[list[str]]:
    """
    Return one dependency cycle as a closed path (``[a, b, a]``), or None.

    Only edges between the given policies are considered. Traversal is in
    id order so the reported cycle is stable.
    """
    by_id = {p.id: p for p in policies}
    white, grey, black = 0, 1, 2
    color = {pid: white for pid in by_id}

    for start in sorted(by_id):
        if color[start] != white:
            continue
        # Iterative DFS: stack of (node, iterator over its deps)
        path: list[str] = [start]
        color[start] = grey
        stack = [iter(sorted(d for d in by_id[start].depends_on if d in by_id))]
        while stack:
            advanced = False
            for dep in stack[-1]:
                if color[dep] == grey:
                    return path[path.index(dep):] + [dep]
                if color[dep] == white:
                    color[dep] = grey
                    path.append(dep)
                    stack.append(iter(sorted(d for d in by_id[dep].depends_on if d in by_id)))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = black
                stack.pop()
    return None
