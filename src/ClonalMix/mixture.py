"""
Tail + k-cluster mixture over a one-dimensional allele-frequency feature.

Components:
    Tail: truncated Pareto on [x_min, 1] modelling neutral low-frequency
          mutations; x_min is fixed to the smallest observation.
    C1..Ck: Normal (or Beta) clusters for clonal and subclonal populations,
          labelled by increasing mean.

Fitting is EM:
    assignment phase: responsibilities from the current parameters
    update phase:     weighted MLE per component (closed form for Normal,
                      root of the score equation for the tail shape,
                      L-BFGS-B for Beta); weights = responsibility mass / N

Each update maximizes the expected complete-data log-likelihood, so the NLL
trajectory is non-increasing. Variances are floored, clusters whose means
end closer than ``min_separation`` are merged and refit, and clusters are
sorted by mean so labels do not depend on initialization.
"""

import logging
from typing import Optional

import numpy as np
from scipy.optimize import brentq, minimize
from scipy.special import betaln, logsumexp
from sklearn.cluster import kmeans_plusplus

from .params import MixtureSpec
from .utils import (
    ClusterComponent,
    FitDivergenceError,
    FitResult,
    TailComponent,
    ab_from_mean_variance,
)

logger = logging.getLogger(__name__)


def assign_responsibilities(x: np.ndarray, components) -> tuple[np.ndarray, float]:
    """
    Assignment phase against fixed parameters.

    Parameters
    ----------
    x : np.ndarray
        Feature values.
    components : sequence of TailComponent / ClusterComponent

    Returns
    -------
    tuple[np.ndarray, float]
        (responsibilities of shape (N, C), negative log-likelihood)
    """
    x = np.asarray(x, dtype=float)
    with np.errstate(divide="ignore"):
        log_joint = np.column_stack(
            [np.log(c.weight) + c.logpdf(x) for c in components]
        )
    log_norm = logsumexp(log_joint, axis=1)
    with np.errstate(invalid="ignore"):
        resps = np.exp(log_joint - log_norm[:, None])
    return resps, -float(log_norm.sum())


def _tail_score(shape: float, w: float, s: float, log_x_min: float) -> float:
    """Derivative in the shape of the weighted truncated-Pareto log-likelihood."""
    return (
        w / shape
        + w * log_x_min
        - s
        + w * np.exp(shape * log_x_min) * log_x_min / -np.expm1(shape * log_x_min)
    )


def update_tail_shape(
    x: np.ndarray, resp: np.ndarray, x_min: float, bounds: tuple, current: float
) -> float:
    """
    Weighted MLE of the truncated Pareto shape.

    The log-likelihood is concave in the shape, so the root of the score
    is the maximizer; without a sign change the maximizer is a bound.
    """
    w = resp.sum()
    if w <= 1e-12:
        return current
    s = np.sum(resp * np.log(x))
    log_x_min = np.log(x_min)
    lo, hi = bounds
    g_lo = _tail_score(lo, w, s, log_x_min)
    g_hi = _tail_score(hi, w, s, log_x_min)
    if g_lo <= 0:
        return lo
    if g_hi >= 0:
        return hi
    try:
        return brentq(_tail_score, lo, hi, args=(w, s, log_x_min))
    except (ValueError, RuntimeError) as e:
        raise FitDivergenceError(f"tail shape update failed: {e}") from e


def _beta_objective(log_ab, w, s1, s2):
    a, b = np.exp(log_ab)
    return -((a - 1.0) * s1 + (b - 1.0) * s2 - w * betaln(a, b))


def update_beta_cluster(
    x: np.ndarray, resp: np.ndarray, mean: float, variance: float, bounds: tuple
) -> tuple[float, float]:
    """
    Weighted MLE of a Beta cluster, returned as (mean, variance).

    The optimizer starts at the current parameters and its answer is only
    accepted when the weighted log-likelihood does not decrease.
    """
    w = resp.sum()
    if w <= 1e-12:
        return mean, variance
    s1 = np.sum(resp * np.log(x))
    s2 = np.sum(resp * np.log1p(-x))
    a0, b0 = ab_from_mean_variance(mean, variance)
    log_bounds = (np.log(bounds[0]), np.log(bounds[1]))
    x0 = np.clip(np.log([a0, b0]), *log_bounds)

    try:
        result = minimize(
            _beta_objective,
            x0=x0,
            args=(w, s1, s2),
            method="L-BFGS-B",
            bounds=[log_bounds, log_bounds],
        )
    except (ValueError, ArithmeticError) as e:
        raise FitDivergenceError(f"beta cluster update failed: {e}") from e
    if not np.isfinite(result.fun) or result.fun > _beta_objective(x0, w, s1, s2):
        a, b = np.exp(x0)
    else:
        a, b = np.exp(result.x)
    return a / (a + b), a * b / ((a + b) ** 2 * (a + b + 1.0))


class MixtureFitter:
    """
    Fit one (k, seed, tail) configuration of the mixture.

    Parameters
    ----------
    k : int
        Number of cluster components.
    with_tail : bool
        Include the power-law tail component.
    spec : MixtureSpec, optional
        Iteration control and numeric safeguards.

    Attributes
    ----------
    result : FitResult or None
        Set by ``fit``.
    """

    def __init__(
        self,
        k: int,
        with_tail: bool = True,
        spec: Optional[MixtureSpec] = None,
    ):
        if k < 1:
            raise ValueError("k must be at least 1")
        self.k = k
        self.with_tail = with_tail
        self.spec = spec if spec is not None else MixtureSpec()
        self.result: Optional[FitResult] = None

    def prepare(self, x: np.ndarray) -> np.ndarray:
        """Clip the feature to the support of the component densities."""
        x = np.asarray(x, dtype=float)
        hi = 1.0 - self.spec.min_value if self.spec.family == "beta" else 1.0
        return np.clip(x, self.spec.min_value, hi)

    def fit(self, x: np.ndarray, seed: int = 0) -> FitResult:
        """
        Run EM from a seeded initialization.

        Parameters
        ----------
        x : np.ndarray
            VAF or CCF values.
        seed : int
            Seed of the initialization; the fit is a pure function of (x, seed).

        Returns
        -------
        FitResult

        Raises
        ------
        FitDivergenceError
            If the likelihood becomes non-finite or a numerical update fails.
        ValueError
            If there are fewer observations than components.
        """
        x = self.prepare(x)
        n_components = self.k + int(self.with_tail)
        if x.size < n_components + 1:
            raise ValueError(
                f"need more than {n_components} observations, got {x.size}"
            )
        if self.with_tail and x.min() >= 1.0:
            raise FitDivergenceError("tail support [x_min, 1] is empty")

        components = self._initialize(x, seed)
        components, resps, trajectory, converged, n_iter = self._run_em(x, components)

        n_merged = 0
        while True:
            merged, n = self._merge_close(components)
            if n == 0:
                break
            n_merged += n
            logger.debug("k=%d seed=%d: merged %d close clusters", self.k, seed, n)
            components, resps, trajectory, converged, n_iter = self._run_em(x, merged)

        components, resps = self._canonical_order(components, resps)
        self.result = FitResult(
            components=components,
            responsibilities=resps,
            nll_trajectory=np.asarray(trajectory),
            k=self.k,
            seed=seed,
            with_tail=self.with_tail,
            family=self.spec.family,
            converged=converged,
            n_iterations=n_iter,
            n_merged=n_merged,
        )
        logger.debug(
            "k=%d seed=%d tail=%s: NLL %.4f after %d iterations (converged=%s)",
            self.k,
            seed,
            self.with_tail,
            self.result.nll,
            n_iter,
            converged,
        )
        return self.result

    def _initialize(self, x: np.ndarray, seed: int) -> tuple:
        spec = self.spec
        try:
            centers, _ = kmeans_plusplus(
                x.reshape(-1, 1), n_clusters=self.k, random_state=seed
            )
        except ValueError as e:
            raise FitDivergenceError(f"initialization failed: {e}") from e
        means = np.sort(centers.ravel())
        variance = max(np.var(x) / self.k, spec.min_variance)

        tail_weight = spec.tail_weight_init if self.with_tail else 0.0
        cluster_weight = (1.0 - tail_weight) / self.k

        components = []
        if self.with_tail:
            components.append(
                TailComponent(
                    shape=spec.tail_shape_init, weight=tail_weight, x_min=float(x.min())
                )
            )
        for mu in means:
            components.append(
                ClusterComponent(
                    mean=float(mu),
                    variance=float(variance),
                    weight=cluster_weight,
                    family=spec.family,
                )
            )
        return tuple(components)

    def _run_em(self, x: np.ndarray, components: tuple):
        resps, nll = assign_responsibilities(x, components)
        if not np.isfinite(nll):
            raise FitDivergenceError("non-finite likelihood at initialization")
        trajectory = [nll]
        converged = False
        n_iter = 0

        for n_iter in range(1, self.spec.max_iter + 1):
            components = self._update(x, resps, components)
            resps, nll = assign_responsibilities(x, components)
            if not np.isfinite(nll):
                raise FitDivergenceError(f"non-finite likelihood at iteration {n_iter}")
            trajectory.append(nll)
            if trajectory[-2] - nll < self.spec.tol:
                converged = True
                break

        return components, resps, trajectory, converged, n_iter

    def _update(self, x: np.ndarray, resps: np.ndarray, components: tuple) -> tuple:
        spec = self.spec
        weights = resps.sum(axis=0) / x.size
        updated = []
        for j, comp in enumerate(components):
            r = resps[:, j]
            if isinstance(comp, TailComponent):
                shape = update_tail_shape(
                    x, r, comp.x_min, spec.tail_shape_bounds, comp.shape
                )
                updated.append(
                    TailComponent(shape=shape, weight=weights[j], x_min=comp.x_min)
                )
                continue

            mass = r.sum()
            if mass <= 1e-12:
                mean, variance = comp.mean, comp.variance
            elif spec.family == "beta":
                mean, variance = update_beta_cluster(
                    x, r, comp.mean, comp.variance, spec.beta_shape_bounds
                )
            else:
                mean = float(r @ x / mass)
                variance = max(float(r @ (x - mean) ** 2 / mass), spec.min_variance)
            updated.append(
                ClusterComponent(
                    mean=mean, variance=variance, weight=weights[j], family=spec.family
                )
            )
        return tuple(updated)

    def _merge_close(self, components: tuple) -> tuple[tuple, int]:
        """Moment-matched merge of adjacent clusters closer than min_separation."""
        tail = [c for c in components if isinstance(c, TailComponent)]
        clusters = sorted(
            (c for c in components if isinstance(c, ClusterComponent)),
            key=lambda c: c.mean,
        )
        merged = [clusters[0]]
        n = 0
        for c in clusters[1:]:
            prev = merged[-1]
            if c.mean - prev.mean >= self.spec.min_separation:
                merged.append(c)
                continue
            w = prev.weight + c.weight
            if w <= 0:
                mean = 0.5 * (prev.mean + c.mean)
                variance = 0.5 * (prev.variance + c.variance)
            else:
                mean = (prev.weight * prev.mean + c.weight * c.mean) / w
                second = (
                    prev.weight * (prev.variance + prev.mean ** 2)
                    + c.weight * (c.variance + c.mean ** 2)
                ) / w
                variance = max(second - mean ** 2, self.spec.min_variance)
            merged[-1] = ClusterComponent(
                mean=mean, variance=variance, weight=w, family=self.spec.family
            )
            n += 1
        return tuple(tail + merged), n

    @staticmethod
    def _canonical_order(components: tuple, resps: np.ndarray):
        tail_idx = [i for i, c in enumerate(components) if isinstance(c, TailComponent)]
        cluster_idx = sorted(
            (i for i, c in enumerate(components) if isinstance(c, ClusterComponent)),
            key=lambda i: components[i].mean,
        )
        ordered = []
        for i in tail_idx:
            ordered.append(components[i])
        for rank, i in enumerate(cluster_idx, start=1):
            c = components[i]
            ordered.append(
                ClusterComponent(
                    mean=c.mean,
                    variance=c.variance,
                    weight=c.weight,
                    family=c.family,
                    label=f"C{rank}",
                )
            )
        return tuple(ordered), resps[:, tail_idx + cluster_idx]

    def get_result(self) -> FitResult:
        if self.result is None:
            raise ValueError("Must call fit() before get_result()")
        return self.result

    def predict_proba(self, x: np.ndarray) -> np.ndarray:
        """Responsibilities of new data under the fitted parameters."""
        result = self.get_result()
        resps, _ = assign_responsibilities(self.prepare(x), result.components)
        return resps

    def predict(self, x: np.ndarray) -> np.ndarray:
        """Most likely component label for each value."""
        labels = np.array(self.get_result().labels, dtype=object)
        return labels[self.predict_proba(x).argmax(axis=1)]

    def __repr__(self) -> str:
        status = "fitted" if self.result is not None else "not fitted"
        return (
            f"MixtureFitter(k={self.k}, with_tail={self.with_tail}, "
            f"family={self.spec.family!r}, status={status})"
        )


def fit_mixture(
    x: np.ndarray,
    k: int,
    seed: int = 0,
    with_tail: bool = True,
    spec: Optional[MixtureSpec] = None,
) -> FitResult:
    """
    Convenience function to fit a single mixture configuration.

    Parameters
    ----------
    x : np.ndarray
        VAF or CCF values.
    k : int
        Number of clusters.
    seed : int
        Initialization seed.
    with_tail : bool
        Include the tail component.
    spec : MixtureSpec, optional

    Returns
    -------
    FitResult
    """
    return MixtureFitter(k, with_tail=with_tail, spec=spec).fit(x, seed=seed)
