"""
Grid exploration and model selection.

Every (k, seed, tail) entry of the grid is an independent fit over the same
read-only feature vector, so entries run in a process pool and are gathered
after all of them finish. Candidates are scored with

    score = -2 logL + n_params log N + entropy_weight * sum_i H(r_i)

where H(r_i) is the entropy of mutation i's responsibilities. The lowest
score wins; near-ties go to the model with fewer clusters.
"""

import logging
import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import replace
from typing import Optional

import numpy as np
import pandas as pd

from .mixture import fit_mixture
from .params import GridSpec, MixtureSpec, SelectionSpec
from .utils import (
    FitDivergenceError,
    FitGrid,
    GridFailure,
    NoViableModelError,
    SelectionResult,
    shannon_entropy,
)

logger = logging.getLogger(__name__)


_TABLE_COLUMNS = [
    "k",
    "seed",
    "tail",
    "n_clusters",
    "NLL",
    "n_parameters",
    "entropy",
    "score",
    "converged",
    "selected",
    "status",
]


def _fit_entry(x, k, seed, with_tail, spec):
    """Single grid entry, suitable for ProcessPoolExecutor."""
    try:
        return (k, seed, with_tail), fit_mixture(x, k, seed, with_tail, spec), None
    except FitDivergenceError as e:
        return (k, seed, with_tail), None, f"diverged: {e}"


def fit_grid(
    x: np.ndarray,
    grid: Optional[GridSpec] = None,
    spec: Optional[MixtureSpec] = None,
) -> FitGrid:
    """
    Fit every (k, seed, tail) configuration of the grid.

    Parameters
    ----------
    x : np.ndarray
        VAF or CCF values shared by all fits.
    grid : GridSpec, optional
        Configurations and worker count; defaults to the reduced grid.
    spec : MixtureSpec, optional
        Settings applied to every fit.

    Returns
    -------
    FitGrid
        Fits ordered by (k, seed, tail), independent of completion order.
    """
    grid = grid if grid is not None else GridSpec.reduced()
    spec = spec if spec is not None else MixtureSpec()
    x = np.asarray(x, dtype=float)

    results = []
    failures = []
    entries = []
    for k, seed, with_tail in grid.entries():
        if x.size <= k + int(with_tail):
            failures.append(
                GridFailure(k, seed, with_tail, f"skipped: {x.size} observations")
            )
        else:
            entries.append((k, seed, with_tail))

    def collect(key, fit, reason):
        if fit is None:
            logger.warning("fit k=%d seed=%d tail=%s discarded (%s)", *key, reason)
            failures.append(GridFailure(*key, reason))
        else:
            results.append(fit)

    n_workers = grid.n_workers or os.cpu_count() or 1
    n_workers = max(1, min(n_workers, len(entries)))
    logger.info("Fitting %d grid entries with %d workers", len(entries), n_workers)

    if n_workers == 1:
        for k, seed, with_tail in entries:
            collect(*_fit_entry(x, k, seed, with_tail, spec))
    else:
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = [
                executor.submit(_fit_entry, x, k, seed, with_tail, spec)
                for k, seed, with_tail in entries
            ]
            for future in as_completed(futures):
                collect(*future.result())

    results.sort(key=lambda r: (r.k, r.seed, r.with_tail))
    failures.sort(key=lambda f: (f.k, f.seed, f.with_tail))
    return FitGrid(results=results, failures=failures, n_mutations=int(x.size))


class ModelSelector:
    """
    Penalized selection over a FitGrid.

    Parameters
    ----------
    spec : SelectionSpec, optional
        Entropy weight and tie tolerance.
    """

    def __init__(self, spec: Optional[SelectionSpec] = None):
        self.spec = spec if spec is not None else SelectionSpec()

    @staticmethod
    def entropy(fit) -> float:
        """Row-wise responsibility entropy summed over mutations."""
        return float(np.sum(shannon_entropy(fit.responsibilities, axis=1)))

    def score(self, fit) -> float:
        n = fit.n_mutations
        bic = -2.0 * fit.loglik + fit.n_parameters * np.log(n)
        return float(bic + self.spec.entropy_weight * self.entropy(fit))

    def select(self, grid: FitGrid) -> SelectionResult:
        """
        Score all fits and pick the best converged one.

        Raises
        ------
        NoViableModelError
            If no fit in the grid converged.
        """
        candidates = grid.converged
        if not candidates:
            raise NoViableModelError(
                f"none of {len(grid.results) + len(grid.failures)} grid entries converged"
            )

        scores = {id(fit): self.score(fit) for fit in grid.results}
        best_score = min(scores[id(fit)] for fit in candidates)
        tied = [
            fit
            for fit in candidates
            if scores[id(fit)] <= best_score + self.spec.tie_tolerance
        ]
        best = min(
            tied,
            key=lambda f: (f.n_clusters, f.k, f.seed, f.with_tail),
        )

        rows = []
        for fit in grid.results:
            rows.append(
                {
                    "k": fit.k,
                    "seed": fit.seed,
                    "tail": fit.with_tail,
                    "n_clusters": fit.n_clusters,
                    "NLL": fit.nll,
                    "n_parameters": fit.n_parameters,
                    "entropy": self.entropy(fit),
                    "score": scores[id(fit)],
                    "converged": fit.converged,
                    "selected": fit is best,
                    "status": "ok" if fit.converged else "iteration cap",
                }
            )
        for failure in grid.failures:
            rows.append(
                {
                    "k": failure.k,
                    "seed": failure.seed,
                    "tail": failure.with_tail,
                    "n_clusters": np.nan,
                    "NLL": np.nan,
                    "n_parameters": np.nan,
                    "entropy": np.nan,
                    "score": np.nan,
                    "converged": False,
                    "selected": False,
                    "status": failure.reason,
                }
            )
        table = (
            pd.DataFrame(rows, columns=_TABLE_COLUMNS)
            .sort_values(["score", "k", "seed", "tail"], kind="stable", na_position="last")
            .reset_index(drop=True)
        )

        logger.info(
            "Selected k=%d seed=%d tail=%s with %d clusters (score %.3f)",
            best.k,
            best.seed,
            best.with_tail,
            best.n_clusters,
            scores[id(best)],
        )
        return SelectionResult(
            best=replace(best, score=scores[id(best)]),
            table=table,
            scores={(f.k, f.seed, f.with_tail): scores[id(f)] for f in grid.results},
        )
