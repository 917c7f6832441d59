"""
Subclonal deconvolution of tumour mutations.

Tail + k-cluster mixtures over VAF/CCF, peak-based QC of copy number and
purity, and clone tree enumeration.
"""

from .utils import (
    # Distribution functions
    beta_binom_logpmf,
    binom_logpmf,
    ab_from_mu_kappa,
    ab_from_mean_variance,
    normal_logpdf,
    beta_logpdf,
    pareto_logpdf,
    expected_vaf,
    locus_ploidy,
    shannon_entropy,
    # Data classes
    Mutation,
    Segment,
    SampleContext,
    AnnotatedMutation,
    AnnotationResult,
    PeakMatch,
    KaryotypeQC,
    QCReport,
    TailComponent,
    ClusterComponent,
    FitResult,
    FitGrid,
    GridFailure,
    SelectionResult,
    CloneTree,
    Reportable,
    # Errors
    FitDivergenceError,
    NoViableModelError,
)

from .params import (
    AnnotationSpec,
    PeakSpec,
    CCFSpec,
    MixtureSpec,
    GridSpec,
    SelectionSpec,
    TreeSpec,
    PipelineSpec,
)

from .segments import (
    SegmentLookup,
    GenomeAnnotator,
    mutations_from_frame,
    segments_from_frame,
)

from .peaks import PeakDetector, expected_peaks, match_closest
from .ccf import CCFEstimator, ccf_from_vaf
from .mixture import MixtureFitter, fit_mixture, assign_responsibilities
from .selection import ModelSelector, fit_grid
from .trees import CloneTreeBuilder, enumerate_trees
from .pipeline import PipelineResult, run_pipeline

__all__ = [
    # Classes
    "SegmentLookup",
    "GenomeAnnotator",
    "PeakDetector",
    "CCFEstimator",
    "MixtureFitter",
    "ModelSelector",
    "CloneTreeBuilder",
    # Convenience functions
    "run_pipeline",
    "fit_mixture",
    "fit_grid",
    "assign_responsibilities",
    "enumerate_trees",
    "expected_peaks",
    "match_closest",
    "ccf_from_vaf",
    "mutations_from_frame",
    "segments_from_frame",
    # Data classes
    "Mutation",
    "Segment",
    "SampleContext",
    "AnnotatedMutation",
    "AnnotationResult",
    "PeakMatch",
    "KaryotypeQC",
    "QCReport",
    "TailComponent",
    "ClusterComponent",
    "FitResult",
    "FitGrid",
    "GridFailure",
    "SelectionResult",
    "CloneTree",
    "PipelineResult",
    "Reportable",
    # Specs
    "AnnotationSpec",
    "PeakSpec",
    "CCFSpec",
    "MixtureSpec",
    "GridSpec",
    "SelectionSpec",
    "TreeSpec",
    "PipelineSpec",
    # Errors
    "FitDivergenceError",
    "NoViableModelError",
    # Utilities
    "beta_binom_logpmf",
    "binom_logpmf",
    "ab_from_mu_kappa",
    "ab_from_mean_variance",
    "normal_logpdf",
    "beta_logpdf",
    "pareto_logpdf",
    "expected_vaf",
    "locus_ploidy",
    "shannon_entropy",
]

__version__ = "0.1.0"
