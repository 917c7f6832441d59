from dataclasses import dataclass, field


_DEFAULT_RESIDUAL_THRESHOLD = 0.05
_DEFAULT_KDE_GRID_SIZE = 1001
_DEFAULT_MATCH_WINDOW = 0.15
_DEFAULT_MIN_KARYOTYPE_MUTATIONS = 10
_DEFAULT_ENTROPY_THRESHOLD = 0.8
_DEFAULT_MIN_VARIANCE = 1e-4
_DEFAULT_MIN_SEPARATION = 0.02
_DEFAULT_TAIL_SHAPE_BOUNDS = (1e-3, 50.0)
_DEFAULT_BETA_SHAPE_BOUNDS = (1e-2, 1e4)
_DEFAULT_ENTROPY_WEIGHT = 2.0
_REDUCED_K = (1, 2, 3)
_REDUCED_SEEDS = (0, 1)
_FULL_K = (1, 2, 3, 4, 5)
_FULL_SEEDS = (0, 1, 2, 3, 4)


@dataclass
class AnnotationSpec:
    """Options for mapping mutations onto copy-number segments."""

    strip_chr_prefix: bool = True


@dataclass
class PeakSpec:
    """
    Specification of the peak-based quality control of copy number and purity.

    ``bandwidth`` is handed to ``scipy.stats.gaussian_kde`` as ``bw_method``;
    ``None`` keeps Scott's rule.
    """

    residual_threshold: float = _DEFAULT_RESIDUAL_THRESHOLD
    bandwidth: float | None = None
    grid_size: int = _DEFAULT_KDE_GRID_SIZE
    min_peak_height: float = 0.05
    match_window: float = _DEFAULT_MATCH_WINDOW
    min_mutations: int = _DEFAULT_MIN_KARYOTYPE_MUTATIONS

    def __post_init__(self):
        if self.residual_threshold < 0:
            raise ValueError("residual_threshold must be non-negative")
        if self.grid_size < 3:
            raise ValueError("grid_size must be at least 3")
        if not 0 <= self.min_peak_height < 1:
            raise ValueError("min_peak_height must be in [0, 1)")
        if self.match_window <= 0:
            raise ValueError("match_window must be positive")
        if self.min_mutations < 2:
            raise ValueError("min_mutations must be at least 2")


@dataclass
class CCFSpec:
    """
    Specification for multiplicity assignment and CCF computation.

    When ``overdispersion`` is set, read counts are scored with a
    Beta-Binomial of that concentration instead of a Binomial.
    """

    entropy_threshold: float = _DEFAULT_ENTROPY_THRESHOLD
    overdispersion: float | None = None

    def __post_init__(self):
        if not 0 <= self.entropy_threshold <= 1:
            raise ValueError("entropy_threshold must be in [0, 1]")
        if self.overdispersion is not None and self.overdispersion <= 0:
            raise ValueError("overdispersion must be positive")


@dataclass
class MixtureSpec:
    """
    Complete specification of a tail + k-cluster mixture fit.
    Owns the numeric safeguards of the iterative fit.
    """

    # Structural
    family: str = "normal"
    tail_shape_bounds: tuple = _DEFAULT_TAIL_SHAPE_BOUNDS
    beta_shape_bounds: tuple = _DEFAULT_BETA_SHAPE_BOUNDS

    # Initialization
    tail_shape_init: float = 1.0
    tail_weight_init: float = 0.1

    # Iteration control
    max_iter: int = 500
    tol: float = 1e-6

    # Safeguards
    min_variance: float = _DEFAULT_MIN_VARIANCE
    min_separation: float = _DEFAULT_MIN_SEPARATION
    min_value: float = 1e-6

    def __post_init__(self):
        if self.family not in ("normal", "beta"):
            raise ValueError("family must be 'normal' or 'beta'")
        if self.max_iter < 1:
            raise ValueError("max_iter must be at least 1")
        if self.tol <= 0:
            raise ValueError("tol must be positive")
        if self.min_variance <= 0:
            raise ValueError("min_variance must be positive")
        if not 0 < self.tail_weight_init < 1:
            raise ValueError("tail_weight_init must be in (0, 1)")
        lo, hi = self.tail_shape_bounds
        if not 0 < lo < hi:
            raise ValueError("tail_shape_bounds must satisfy 0 < low < high")
        if not lo <= self.tail_shape_init <= hi:
            raise ValueError("tail_shape_init must lie within tail_shape_bounds")


@dataclass
class GridSpec:
    """
    Cross product of cluster counts, seeds and tail on/off explored per sample.
    """

    k_values: tuple = _REDUCED_K
    seeds: tuple = _REDUCED_SEEDS
    tail_options: tuple = (True, False)
    n_workers: int | None = None

    def __post_init__(self):
        self.k_values = tuple(int(k) for k in self.k_values)
        self.seeds = tuple(int(s) for s in self.seeds)
        self.tail_options = tuple(bool(t) for t in self.tail_options)
        if not self.k_values or min(self.k_values) < 1:
            raise ValueError("k_values must be non-empty positive integers")
        if not self.seeds:
            raise ValueError("seeds must be non-empty")
        if not self.tail_options:
            raise ValueError("tail_options must be non-empty")
        if self.n_workers is not None and self.n_workers < 1:
            raise ValueError("n_workers must be at least 1")

    @classmethod
    def reduced(cls, **kwargs) -> "GridSpec":
        """Small fixed grid for quick runs."""
        return cls(k_values=_REDUCED_K, seeds=_REDUCED_SEEDS, **kwargs)

    @classmethod
    def full(cls, **kwargs) -> "GridSpec":
        """Larger exploration grid."""
        return cls(k_values=_FULL_K, seeds=_FULL_SEEDS, **kwargs)

    def entries(self) -> list[tuple[int, int, bool]]:
        """All (k, seed, with_tail) combinations in deterministic order."""
        return [
            (k, seed, tail)
            for k in self.k_values
            for seed in self.seeds
            for tail in self.tail_options
        ]


@dataclass
class SelectionSpec:
    """
    Penalized score: -2 logL + n_params log N + entropy_weight * H(responsibilities).
    """

    entropy_weight: float = _DEFAULT_ENTROPY_WEIGHT
    tie_tolerance: float = 1e-3

    def __post_init__(self):
        if self.entropy_weight < 0:
            raise ValueError("entropy_weight must be non-negative")
        if self.tie_tolerance < 0:
            raise ValueError("tie_tolerance must be non-negative")


@dataclass
class TreeSpec:
    """Options for clone tree enumeration."""

    prevalence: str = "weight"
    max_trees: int = 10000
    tolerance: float = 1e-9

    def __post_init__(self):
        if self.prevalence not in ("weight", "mean"):
            raise ValueError("prevalence must be 'weight' or 'mean'")
        if self.max_trees < 1:
            raise ValueError("max_trees must be at least 1")


@dataclass
class PipelineSpec:
    """Aggregate configuration threaded through a full run."""

    feature: str = "vaf"
    annotation: AnnotationSpec = field(default_factory=AnnotationSpec)
    peaks: PeakSpec = field(default_factory=PeakSpec)
    ccf: CCFSpec = field(default_factory=CCFSpec)
    mixture: MixtureSpec = field(default_factory=MixtureSpec)
    grid: GridSpec = field(default_factory=GridSpec)
    selection: SelectionSpec = field(default_factory=SelectionSpec)
    tree: TreeSpec = field(default_factory=TreeSpec)

    def __post_init__(self):
        if self.feature not in ("vaf", "ccf"):
            raise ValueError("feature must be 'vaf' or 'ccf'")
