"""
End-to-end run: annotation -> QC -> CCF -> mixture grid -> selection -> trees.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from .ccf import CCFEstimator
from .params import PipelineSpec
from .peaks import PeakDetector
from .segments import GenomeAnnotator
from .selection import ModelSelector, fit_grid
from .trees import CloneTreeBuilder
from .utils import (
    AnnotationResult,
    FitGrid,
    QCReport,
    Reportable,
    SampleContext,
    SelectionResult,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult(Reportable):
    """Everything a run produces for one sample."""

    sample: SampleContext
    annotation: AnnotationResult
    qc: QCReport
    grid: FitGrid
    selection: SelectionResult
    trees: list = field(default_factory=list)
    feature: str = "vaf"

    @property
    def best(self):
        return self.selection.best

    def summarize(self) -> str:
        return "\n".join(
            [
                f"Sample {self.sample.sample_id} (feature={self.feature})",
                self.annotation.summarize(),
                self.qc.summarize(),
                self.grid.summarize(),
                self.selection.summarize(),
                f"{len(self.trees)} clone trees",
            ]
        )

    def export(self) -> pd.DataFrame:
        return self.annotation.export()


def run_pipeline(
    mutations,
    segments,
    sample: SampleContext,
    spec: Optional[PipelineSpec] = None,
) -> PipelineResult:
    """
    Complete deconvolution of one sample.

    Parameters
    ----------
    mutations : list of Mutation
    segments : list of Segment
    sample : SampleContext
    spec : PipelineSpec, optional
        Configuration of every stage.

    Returns
    -------
    PipelineResult

    Raises
    ------
    NoViableModelError
        If no grid entry converged.
    """
    spec = spec if spec is not None else PipelineSpec()

    annotation = GenomeAnnotator(segments, spec.annotation).annotate(mutations)
    qc = PeakDetector(spec.peaks).run(annotation, sample)
    CCFEstimator(spec.ccf).estimate(annotation.annotated, sample)

    if spec.feature == "ccf":
        used = [am for am in annotation.annotated if am.ccf is not None and am.ccf > 0]
        x = np.array([am.ccf for am in used])
    else:
        used = [am for am in annotation.annotated if am.mutation.nv > 0]
        x = np.array([am.vaf for am in used])
    logger.info("Fitting %d of %d mutations on %s", len(used), len(annotation.annotated), spec.feature)

    grid = fit_grid(x, spec.grid, spec.mixture)
    selection = ModelSelector(spec.selection).select(grid)

    for am, label in zip(used, selection.best.get_assignments()):
        am.cluster = label

    trees = CloneTreeBuilder(spec.tree).build(selection.best)
    return PipelineResult(
        sample=sample,
        annotation=annotation,
        qc=qc,
        grid=grid,
        selection=selection,
        trees=trees,
        feature=spec.feature,
    )
