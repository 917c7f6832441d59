from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd
from scipy.special import gammaln, betaln, xlogy, xlog1py


FIT_RESULT_VERSION = 1


class FitDivergenceError(RuntimeError):
    """A single mixture fit produced a non-finite likelihood."""


class NoViableModelError(RuntimeError):
    """No candidate of the fit grid converged."""


# =============================================================================
# Densities
# =============================================================================


def beta_binom_logpmf(
    k: np.ndarray, n: np.ndarray, alpha: float, beta: float
) -> np.ndarray:
    """
    Compute log probability mass function of Beta-Binomial distribution.

    The Beta-Binomial PMF is:
        P(k | n, α, β) = C(n, k) × B(k + α, n - k + β) / B(α, β)

    Parameters
    ----------
    k : np.ndarray
        Number of successes (alt read counts).
    n : np.ndarray
        Number of trials (total depth).
    alpha : float
        First shape parameter of the Beta prior (α > 0).
    beta : float
        Second shape parameter of the Beta prior (β > 0).

    Returns
    -------
    np.ndarray
        Log-probabilities for each observation.
    """
    alpha = np.maximum(alpha, 1e-9)
    beta = np.maximum(beta, 1e-9)

    return (
        gammaln(n + 1.0)
        - gammaln(k + 1.0)
        - gammaln(n - k + 1.0)
        + betaln(k + alpha, n - k + beta)
        - betaln(alpha, beta)
    )


def binom_logpmf(k: np.ndarray, n: np.ndarray, p: float) -> np.ndarray:
    """
    Log PMF of the Binomial distribution, safe at p in {0, 1}.

        log P = log C(n, k) + k log p + (n - k) log(1 - p)
    """
    k = np.asarray(k, dtype=float)
    n = np.asarray(n, dtype=float)
    return (
        gammaln(n + 1.0)
        - gammaln(k + 1.0)
        - gammaln(n - k + 1.0)
        + xlogy(k, p)
        + xlog1py(n - k, -p)
    )


def ab_from_mu_kappa(mu: float, kappa: float) -> tuple[float, float]:
    """
    Convert mean-precision parameterization to standard Beta shape parameters.

    Relationships:
        α = μ × κ
        β = (1 - μ) × κ
        Variance = μ(1-μ) / (κ + 1)
    """
    mu = np.clip(mu, 1e-6, 1.0 - 1e-6)
    return mu * kappa, (1.0 - mu) * kappa


def ab_from_mean_variance(mean: float, variance: float) -> tuple[float, float]:
    """
    Method-of-moments Beta shape parameters.

    The variance is capped just below μ(1-μ) so that the concentration
    stays positive.
    """
    mean = float(np.clip(mean, 1e-6, 1.0 - 1e-6))
    max_var = mean * (1.0 - mean)
    variance = float(np.clip(variance, 1e-12, max_var * (1.0 - 1e-6)))
    kappa = max_var / variance - 1.0
    return ab_from_mu_kappa(mean, kappa)


def normal_logpdf(x: np.ndarray, mean: float, variance: float) -> np.ndarray:
    """Log density of N(mean, variance)."""
    x = np.asarray(x, dtype=float)
    return -0.5 * (np.log(2.0 * np.pi * variance) + (x - mean) ** 2 / variance)


def beta_logpdf(x: np.ndarray, a: float, b: float) -> np.ndarray:
    """Log density of Beta(a, b) on (0, 1)."""
    x = np.asarray(x, dtype=float)
    return xlogy(a - 1.0, x) + xlog1py(b - 1.0, -x) - betaln(a, b)


def pareto_logpdf(
    x: np.ndarray, shape: float, x_min: float, x_max: float = 1.0
) -> np.ndarray:
    """
    Log density of a Pareto Type I distribution truncated to [x_min, x_max].

        f(x) = α x_min^α x^-(α+1) / (1 - (x_min / x_max)^α)

    Values outside the support get -inf.
    """
    x = np.asarray(x, dtype=float)
    log_ratio = np.log(x_min) - np.log(x_max)
    # log(1 - (x_min/x_max)^α) without cancellation for small α
    log_norm = np.log(-np.expm1(shape * log_ratio))
    with np.errstate(divide="ignore", invalid="ignore"):
        out = (
            np.log(shape)
            + shape * np.log(x_min)
            - (shape + 1.0) * np.log(x)
            - log_norm
        )
    outside = (x < x_min) | (x > x_max)
    return np.where(outside, -np.inf, out)


def expected_vaf(multiplicity, major: int, minor: int, purity: float):
    """
    Expected allele frequency of a mutation present on ``multiplicity`` copies.

        VAF(m) = m p / (p (major + minor) + 2 (1 - p))
    """
    return np.asarray(multiplicity, dtype=float) * purity / locus_ploidy(
        major, minor, purity
    )


def locus_ploidy(major: int, minor: int, purity: float) -> float:
    """Average number of chromosome copies at a locus in the sequenced sample."""
    return purity * (major + minor) + 2.0 * (1.0 - purity)


def shannon_entropy(p: np.ndarray, axis: int = -1) -> np.ndarray:
    """Shannon entropy (nats) along ``axis``; zero-probability terms contribute 0."""
    p = np.asarray(p, dtype=float)
    return -np.sum(xlogy(p, p), axis=axis)


# =============================================================================
# Input records
# =============================================================================


@dataclass(frozen=True)
class Mutation:
    """
    A somatic point mutation with its read counts.

    Coordinates are 1-based inclusive. ``vaf`` is always derived from the
    counts and never stored.
    """

    chrom: str
    start: int
    end: int
    ref: str
    alt: str
    dp: int
    nv: int
    is_driver: bool = False

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"start > end for mutation at {self.chrom}:{self.start}")
        if self.dp <= 0:
            raise ValueError("dp must be positive")
        if not 0 <= self.nv <= self.dp:
            raise ValueError(f"nv must satisfy 0 <= nv <= dp (got nv={self.nv}, dp={self.dp})")

    @property
    def vaf(self) -> float:
        return self.nv / self.dp

    @property
    def key(self) -> str:
        return f"{self.chrom}:{self.start}:{self.ref}>{self.alt}"


@dataclass(frozen=True)
class Segment:
    """Copy-number segment with integer major/minor allele counts."""

    chrom: str
    start: int
    end: int
    major: int
    minor: int

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"start > end for segment at {self.chrom}:{self.start}")
        if self.major < 0 or self.minor < 0:
            raise ValueError("copy numbers must be non-negative")

    @property
    def karyotype(self) -> str:
        return f"{self.major}:{self.minor}"

    @property
    def total_cn(self) -> int:
        return self.major + self.minor


@dataclass(frozen=True)
class SampleContext:
    """Sample-level metadata. Purity must lie in (0, 1]."""

    purity: float
    reference_genome: str = "GRCh38"
    sample_id: str = "sample"

    def __post_init__(self):
        if not np.isfinite(self.purity) or not 0 < self.purity <= 1:
            raise ValueError(f"purity must be in (0, 1], got {self.purity}")


@dataclass
class AnnotatedMutation:
    """
    A mutation mapped onto its segment, plus the quantities derived downstream.

    The wrapped ``Mutation`` and ``Segment`` are never modified.
    """

    mutation: Mutation
    segment: Segment
    multiplicity: Optional[int] = None
    ccf: Optional[float] = None
    confidence: Optional[float] = None
    low_confidence: bool = False
    cluster: Optional[str] = None

    @property
    def karyotype(self) -> str:
        return self.segment.karyotype

    @property
    def vaf(self) -> float:
        return self.mutation.vaf

    @property
    def major(self) -> int:
        return self.segment.major

    @property
    def minor(self) -> int:
        return self.segment.minor

    def as_row(self) -> dict:
        m = self.mutation
        return {
            "chr": m.chrom,
            "from": m.start,
            "to": m.end,
            "ref": m.ref,
            "alt": m.alt,
            "DP": m.dp,
            "NV": m.nv,
            "VAF": m.vaf,
            "is_driver": m.is_driver,
            "karyotype": self.karyotype,
            "multiplicity": self.multiplicity,
            "CCF": self.ccf,
            "confidence": self.confidence,
            "low_confidence": self.low_confidence,
            "cluster": self.cluster,
        }


# =============================================================================
# Reporting capability
# =============================================================================


class Reportable(ABC):
    """Output objects that can describe themselves and export a table."""

    @abstractmethod
    def summarize(self) -> str:
        """Human-readable multi-line summary."""

    @abstractmethod
    def export(self) -> pd.DataFrame:
        """Tabular export."""


@dataclass
class AnnotationResult(Reportable):
    """Mutations mapped to segments, and the bookkeeping of what was dropped."""

    annotated: list
    excluded: list
    n_conflicts: int = 0
    n_segment_overlaps: int = 0

    @property
    def n_excluded(self) -> int:
        return len(self.excluded)

    def by_karyotype(self) -> dict:
        groups = {}
        for am in self.annotated:
            groups.setdefault(am.karyotype, []).append(am)
        return groups

    def summarize(self) -> str:
        return (
            f"{len(self.annotated)} mutations annotated, "
            f"{self.n_excluded} excluded (no segment), "
            f"{self.n_conflicts} segment conflicts, "
            f"{self.n_segment_overlaps} overlapping segment pairs"
        )

    def export(self) -> pd.DataFrame:
        return pd.DataFrame([am.as_row() for am in self.annotated])


# =============================================================================
# Quality control
# =============================================================================


@dataclass(frozen=True)
class PeakMatch:
    multiplicity: int
    expected: float
    observed: float

    @property
    def residual(self) -> float:
        return self.observed - self.expected


@dataclass
class KaryotypeQC:
    """Peak analysis for one karyotype."""

    karyotype: str
    n_mutations: int
    expected: dict
    peaks: np.ndarray = field(repr=False)
    matches: list
    score: float
    passed: bool

    @property
    def unmatched(self) -> list[int]:
        """Multiplicities whose expected peak found no empirical partner."""
        claimed = {m.multiplicity for m in self.matches}
        return [m for m in self.expected if m not in claimed]


@dataclass
class QCReport(Reportable):
    """
    Peak-based QC of copy number and purity for one sample.

    ``score`` is the mutation-count weighted mean of per-karyotype
    discordance scores. ``passed`` is advisory only.
    """

    sample_id: str
    purity: float
    karyotypes: dict
    score: float
    passed: bool
    threshold: float
    warnings: list = field(default_factory=list)
    n_excluded: int = 0
    n_conflicts: int = 0

    def summarize(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        lines = [
            f"QC {status} for {self.sample_id} (purity={self.purity:.3f}, "
            f"score={self.score:.4f}, threshold={self.threshold:.4f})",
            f"  excluded mutations: {self.n_excluded}, segment conflicts: {self.n_conflicts}",
        ]
        for kqc in self.karyotypes.values():
            lines.append(
                f"  {kqc.karyotype}: n={kqc.n_mutations}, "
                f"matched={len(kqc.matches)}, score={kqc.score:.4f}"
            )
        for w in self.warnings:
            lines.append(f"  warning: {w}")
        return "\n".join(lines)

    def export(self) -> pd.DataFrame:
        rows = []
        for kqc in self.karyotypes.values():
            for match in kqc.matches:
                rows.append(
                    {
                        "karyotype": kqc.karyotype,
                        "multiplicity": match.multiplicity,
                        "expected": match.expected,
                        "observed": match.observed,
                        "residual": match.residual,
                        "n_mutations": kqc.n_mutations,
                        "karyotype_score": kqc.score,
                        "karyotype_passed": kqc.passed,
                    }
                )
        return pd.DataFrame(
            rows,
            columns=[
                "karyotype",
                "multiplicity",
                "expected",
                "observed",
                "residual",
                "n_mutations",
                "karyotype_score",
                "karyotype_passed",
            ],
        )


# =============================================================================
# Mixture components and fits
# =============================================================================


@dataclass(frozen=True)
class TailComponent:
    """Power-law (truncated Pareto) component for neutral low-frequency mutations."""

    shape: float
    weight: float
    x_min: float
    label: str = "Tail"

    def logpdf(self, x: np.ndarray) -> np.ndarray:
        return pareto_logpdf(x, self.shape, self.x_min)


@dataclass(frozen=True)
class ClusterComponent:
    """
    Clonal or subclonal population, described by its mean and variance.

    For the ``beta`` family the shape parameters follow from the moments.
    """

    mean: float
    variance: float
    weight: float
    family: str = "normal"
    label: str = ""

    @property
    def shape_parameters(self) -> tuple[float, float]:
        return ab_from_mean_variance(self.mean, self.variance)

    def logpdf(self, x: np.ndarray) -> np.ndarray:
        if self.family == "beta":
            a, b = self.shape_parameters
            return beta_logpdf(x, a, b)
        return normal_logpdf(x, self.mean, self.variance)


@dataclass(frozen=True, eq=False)
class FitResult(Reportable):
    """
    One converged (or capped) mixture fit.

    ``components`` holds the tail first (when present) followed by clusters
    sorted by increasing mean; columns of ``responsibilities`` follow the
    same order.
    """

    components: tuple
    responsibilities: np.ndarray = field(repr=False)
    nll_trajectory: np.ndarray = field(repr=False)
    k: int
    seed: int
    with_tail: bool
    family: str
    converged: bool
    n_iterations: int
    n_merged: int = 0
    score: Optional[float] = None
    version: int = FIT_RESULT_VERSION

    @property
    def weights(self) -> np.ndarray:
        return np.array([c.weight for c in self.components])

    @property
    def labels(self) -> list[str]:
        return [c.label for c in self.components]

    @property
    def tail(self) -> Optional[TailComponent]:
        for c in self.components:
            if isinstance(c, TailComponent):
                return c
        return None

    @property
    def clusters(self) -> list[ClusterComponent]:
        return [c for c in self.components if isinstance(c, ClusterComponent)]

    @property
    def n_clusters(self) -> int:
        return len(self.clusters)

    @property
    def n_mutations(self) -> int:
        return self.responsibilities.shape[0]

    @property
    def nll(self) -> float:
        return float(self.nll_trajectory[-1])

    @property
    def loglik(self) -> float:
        return -self.nll

    @property
    def n_parameters(self) -> int:
        """Free parameters: 2 per cluster, 1 for the tail shape, weights on the simplex."""
        n = 2 * self.n_clusters + len(self.components) - 1
        if self.tail is not None:
            n += 1
        return n

    def get_assignments(self, threshold: float = 0.0) -> np.ndarray:
        """
        Hard assignments as component labels.

        Parameters
        ----------
        threshold : float
            Minimum responsibility to assign (otherwise None).
        """
        if self.n_mutations == 0:
            return np.array([], dtype=object)
        labels = np.array(self.labels, dtype=object)
        best = self.responsibilities.argmax(axis=1)
        out = labels[best]
        out[self.responsibilities.max(axis=1) < threshold] = None
        return out

    def summarize(self) -> str:
        lines = [
            f"FitResult k={self.k} seed={self.seed} tail={self.with_tail} "
            f"family={self.family} converged={self.converged} "
            f"iterations={self.n_iterations} NLL={self.nll:.3f}"
        ]
        if self.score is not None:
            lines[0] += f" score={self.score:.3f}"
        for c in self.components:
            if isinstance(c, TailComponent):
                lines.append(f"  {c.label}: shape={c.shape:.3f} weight={c.weight:.3f}")
            else:
                lines.append(
                    f"  {c.label}: mean={c.mean:.3f} sd={np.sqrt(c.variance):.3f} "
                    f"weight={c.weight:.3f}"
                )
        return "\n".join(lines)

    def export(self) -> pd.DataFrame:
        rows = []
        for c in self.components:
            if isinstance(c, TailComponent):
                rows.append(
                    {"component": c.label, "type": "tail", "weight": c.weight,
                     "mean": np.nan, "variance": np.nan, "shape": c.shape}
                )
            else:
                rows.append(
                    {"component": c.label, "type": c.family, "weight": c.weight,
                     "mean": c.mean, "variance": c.variance, "shape": np.nan}
                )
        return pd.DataFrame(rows)


@dataclass(frozen=True)
class GridFailure:
    k: int
    seed: int
    with_tail: bool
    reason: str


@dataclass
class FitGrid(Reportable):
    """All candidates explored for one sample."""

    results: list
    failures: list = field(default_factory=list)
    n_mutations: int = 0

    @property
    def converged(self) -> list:
        return [r for r in self.results if r.converged]

    def summarize(self) -> str:
        return (
            f"FitGrid: {len(self.results)} fits "
            f"({len(self.converged)} converged), {len(self.failures)} diverged"
        )

    def export(self) -> pd.DataFrame:
        rows = [
            {
                "k": r.k,
                "seed": r.seed,
                "tail": r.with_tail,
                "n_clusters": r.n_clusters,
                "NLL": r.nll,
                "n_parameters": r.n_parameters,
                "converged": r.converged,
                "status": "ok",
            }
            for r in self.results
        ]
        rows += [
            {
                "k": f.k,
                "seed": f.seed,
                "tail": f.with_tail,
                "n_clusters": np.nan,
                "NLL": np.nan,
                "n_parameters": np.nan,
                "converged": False,
                "status": f.reason,
            }
            for f in self.failures
        ]
        df = pd.DataFrame(rows)
        if len(df):
            df = df.sort_values(["k", "seed", "tail"], kind="stable").reset_index(drop=True)
        return df


@dataclass
class SelectionResult(Reportable):
    """Selected fit plus the scored grid, sorted by (score, k, seed)."""

    best: FitResult
    table: pd.DataFrame = field(repr=False)
    scores: dict = field(repr=False, default_factory=dict)

    def summarize(self) -> str:
        return (
            f"Selected k={self.best.k} seed={self.best.seed} tail={self.best.with_tail} "
            f"({self.best.n_clusters} clusters) out of {len(self.table)} candidates\n"
            + self.best.summarize()
        )

    def export(self) -> pd.DataFrame:
        return self.table.copy()


# =============================================================================
# Clone trees
# =============================================================================


@dataclass(frozen=True)
class CloneTree(Reportable):
    """Rooted ancestry over cluster labels; ``edges`` are (parent, child) pairs."""

    root: str
    prevalence: dict
    edges: tuple

    @property
    def nodes(self) -> list[str]:
        return list(self.prevalence)

    def children(self, node: str) -> list[str]:
        return [c for p, c in self.edges if p == node]

    def parent(self, node: str) -> Optional[str]:
        for p, c in self.edges:
            if c == node:
                return p
        return None

    def edge_list(self) -> list[tuple[str, str, float]]:
        return [(p, c, self.prevalence[c]) for p, c in self.edges]

    def satisfies_sum_rule(self, tolerance: float = 1e-9) -> bool:
        for node in self.prevalence:
            kids = self.children(node)
            if sum(self.prevalence[c] for c in kids) > self.prevalence[node] + tolerance:
                return False
        return True

    def summarize(self) -> str:
        def render(node, depth):
            out = ["  " * depth + f"{node} ({self.prevalence[node]:.3f})"]
            for child in self.children(node):
                out += render(child, depth + 1)
            return out

        return "\n".join(render(self.root, 0))

    def export(self) -> pd.DataFrame:
        return pd.DataFrame(self.edge_list(), columns=["parent", "child", "prevalence"])
