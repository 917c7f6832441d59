"""
Enumeration of clone trees consistent with the clonal sum rule.

Clusters are placed in decreasing order of prevalence. Each new cluster is
attached to an already placed cluster that still has room for it, that is
whose prevalence minus the prevalence of its children so far is at least the
new cluster's prevalence. Branches where no parent has room are abandoned,
so only valid trees are produced.

Clusters with equal prevalence may be ancestors of one another in either
direction, so every ordering inside a block of tied prevalences is placed
and trees reached through several orderings are kept once.
"""

import itertools
import logging
from typing import Optional

from .params import TreeSpec
from .utils import CloneTree, FitResult

logger = logging.getLogger(__name__)


def _tie_blocks(order: list, prevalence: dict, tolerance: float) -> list[list]:
    """Split a prevalence-sorted order into runs of equal prevalence."""
    blocks = [[order[0]]]
    for c in order[1:]:
        if prevalence[blocks[-1][0]] - prevalence[c] <= tolerance:
            blocks[-1].append(c)
        else:
            blocks.append([c])
    return blocks


def _placement_orders(blocks: list[list]):
    """Every order obtained by permuting clusters inside each tie block."""
    for combo in itertools.product(*(itertools.permutations(b) for b in blocks)):
        yield [c for block in combo for c in block]


def _enumerate(
    prevalence: dict, tolerance: float, max_trees: Optional[int]
) -> tuple[list[CloneTree], bool]:
    """Trees plus a flag telling whether ``max_trees`` cut the search short."""
    if not prevalence:
        return [], False

    canonical = sorted(prevalence, key=lambda c: (-prevalence[c], c))
    rank = {c: i for i, c in enumerate(canonical)}
    ordered_prevalence = {c: float(prevalence[c]) for c in canonical}
    trees = []
    seen = set()
    truncated = False

    def place(order, i, room, parent_of):
        nonlocal truncated
        if truncated:
            return
        if i == len(order):
            edges = tuple(
                sorted(((parent_of[c], c) for c in order[1:]), key=lambda e: rank[e[1]])
            )
            key = (order[0], edges)
            if key in seen:
                return
            if max_trees is not None and len(trees) >= max_trees:
                truncated = True
                return
            seen.add(key)
            trees.append(
                CloneTree(root=order[0], prevalence=dict(ordered_prevalence), edges=edges)
            )
            return
        node = order[i]
        need = ordered_prevalence[node]
        for candidate in order[:i]:
            if room[candidate] + tolerance < need:
                continue
            parent_of[node] = candidate
            room[candidate] -= need
            room[node] = need
            place(order, i + 1, room, parent_of)
            del room[node]
            room[candidate] += need
            del parent_of[node]

    for order in _placement_orders(_tie_blocks(canonical, ordered_prevalence, tolerance)):
        place(order, 1, {order[0]: ordered_prevalence[order[0]]}, {})
        if truncated:
            break
    return trees, truncated


def enumerate_trees(
    prevalence: dict, tolerance: float = 1e-9, max_trees: Optional[int] = None
) -> list[CloneTree]:
    """
    All rooted trees over ``prevalence`` satisfying the sum rule.

    Parameters
    ----------
    prevalence : dict
        Cluster label -> cellular prevalence.
    tolerance : float
        Slack allowed on the sum rule; prevalences closer than this are tied.
    max_trees : int, optional
        Stop after this many trees.

    Returns
    -------
    list of CloneTree
        Possibly empty. The root is a highest-prevalence cluster; any of
        several tied clusters can be the root. The order of the list only
        depends on prevalences and labels.
    """
    trees, _ = _enumerate(prevalence, tolerance, max_trees)
    return trees


class CloneTreeBuilder:
    """
    Build the clone trees of a selected fit.

    Parameters
    ----------
    spec : TreeSpec, optional
        Prevalence source and enumeration limits.

    Attributes
    ----------
    truncated : bool
        True when the last call stopped at ``max_trees`` with trees left over.
    """

    def __init__(self, spec: Optional[TreeSpec] = None):
        self.spec = spec if spec is not None else TreeSpec()
        self.truncated = False

    def prevalences(self, fit: FitResult) -> dict:
        """Cluster label -> prevalence, ignoring the tail."""
        if self.spec.prevalence == "mean":
            return {c.label: c.mean for c in fit.clusters}
        return {c.label: c.weight for c in fit.clusters}

    def build(self, fit: FitResult) -> list[CloneTree]:
        """
        Enumerate valid trees for the clusters of ``fit``.

        An empty list means no topology satisfies the sum rule; it is
        logged, not raised.
        """
        prevalence = self.prevalences(fit)
        trees, self.truncated = _enumerate(
            prevalence, self.spec.tolerance, self.spec.max_trees
        )
        if self.truncated:
            logger.warning("Tree enumeration stopped at %d trees", self.spec.max_trees)
        if not trees and prevalence:
            logger.warning(
                "No clone tree over %d clusters satisfies the sum rule", len(prevalence)
            )
        else:
            logger.info("%d clone trees over %d clusters", len(trees), len(prevalence))
        return trees
