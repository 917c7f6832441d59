"""
Peak-based quality control of copy-number segments and purity.

For every karyotype the expected VAF of a clonal mutation on m copies is

    VAF(m) = m p / (p (major + minor) + 2 (1 - p)),    m = 1..major

A kernel density estimate of the observed VAFs of that karyotype is scanned
for local maxima, and each expected value is matched to at most one
empirical peak by minimal absolute distance. The mean absolute residual of
the matched pairs is the karyotype's discordance score; the sample score is
the mutation-count weighted mean over karyotypes. A failing sample is
reported, never rejected.
"""

import logging
from typing import Optional

import numpy as np
from scipy.signal import find_peaks
from scipy.stats import gaussian_kde

from .params import PeakSpec
from .utils import (
    AnnotationResult,
    KaryotypeQC,
    PeakMatch,
    QCReport,
    SampleContext,
    expected_vaf,
)

logger = logging.getLogger(__name__)


def parse_karyotype(karyotype: str) -> tuple[int, int]:
    major, minor = karyotype.split(":")
    return int(major), int(minor)


def expected_peaks(major: int, minor: int, purity: float) -> dict:
    """
    Expected VAF for each multiplicity 1..major.

    Returns an empty dict when the karyotype carries no copy a mutation
    could sit on.
    """
    if major < 1 or major + minor == 0:
        return {}
    m = np.arange(1, major + 1)
    return dict(zip(m.tolist(), expected_vaf(m, major, minor, purity).tolist()))


def match_closest(peaks, expected: dict, window: float = np.inf) -> list[PeakMatch]:
    """
    Pair empirical peaks with expected values by minimal absolute distance.

    Pairs are claimed greedily in order of increasing distance; each
    expected value and each peak is used at most once. Pairs farther apart
    than ``window`` are never formed.
    """
    peaks = np.asarray(peaks, dtype=float)
    candidates = sorted(
        (abs(p - e), i, m)
        for i, p in enumerate(peaks)
        for m, e in expected.items()
        if abs(p - e) <= window
    )
    used_peaks = set()
    used_expected = set()
    matches = []
    for _, i, m in candidates:
        if i in used_peaks or m in used_expected:
            continue
        used_peaks.add(i)
        used_expected.add(m)
        matches.append(PeakMatch(multiplicity=m, expected=expected[m], observed=float(peaks[i])))
    matches.sort(key=lambda pm: pm.multiplicity)
    return matches


class PeakDetector:
    """
    Compare expected and observed VAF peaks per karyotype.

    Parameters
    ----------
    spec : PeakSpec, optional
        Density estimate and threshold settings.
    """

    def __init__(self, spec: Optional[PeakSpec] = None):
        self.spec = spec if spec is not None else PeakSpec()
        self.grid = np.linspace(0.0, 1.0, self.spec.grid_size)

    def detect_peaks(self, vaf: np.ndarray) -> np.ndarray:
        """
        Local maxima of the VAF density on a regular [0, 1] grid.

        Maxima lower than ``min_peak_height`` times the global maximum are
        dropped.
        """
        vaf = np.asarray(vaf, dtype=float)
        if vaf.size < 2 or np.ptp(vaf) == 0:
            # a degenerate sample is a single spike
            return np.unique(vaf)[:1]
        density = gaussian_kde(vaf, bw_method=self.spec.bandwidth)(self.grid)
        # pad so maxima on the grid boundary are detected
        padded = np.concatenate([[-np.inf], density, [-np.inf]])
        idx, _ = find_peaks(padded, height=self.spec.min_peak_height * density.max())
        return self.grid[idx - 1]

    def analyze_karyotype(
        self, karyotype: str, vaf: np.ndarray, purity: float
    ) -> Optional[KaryotypeQC]:
        """QC for one karyotype, or None when it cannot be assessed."""
        major, minor = parse_karyotype(karyotype)
        expected = expected_peaks(major, minor, purity)
        if not expected:
            return None

        peaks = self.detect_peaks(vaf)
        matches = match_closest(peaks, expected, self.spec.match_window)
        score = float(np.mean([abs(m.residual) for m in matches])) if matches else np.nan
        return KaryotypeQC(
            karyotype=karyotype,
            n_mutations=len(vaf),
            expected=expected,
            peaks=peaks,
            matches=matches,
            score=score,
            passed=score <= self.spec.residual_threshold,
        )

    def run(self, annotation: AnnotationResult, sample: SampleContext) -> QCReport:
        """
        QC of all karyotypes present in an annotation.

        Parameters
        ----------
        annotation : AnnotationResult
            Output of GenomeAnnotator.
        sample : SampleContext
            Provides the purity.

        Returns
        -------
        QCReport
        """
        warnings = []
        results = {}
        for karyotype, group in sorted(annotation.by_karyotype().items()):
            vaf = np.array([am.vaf for am in group])
            if len(vaf) < self.spec.min_mutations:
                warnings.append(
                    f"karyotype {karyotype} skipped: {len(vaf)} mutations "
                    f"(< {self.spec.min_mutations})"
                )
                continue
            kqc = self.analyze_karyotype(karyotype, vaf, sample.purity)
            if kqc is None:
                warnings.append(f"karyotype {karyotype} skipped: no expected peak")
                continue
            if not kqc.matches:
                warnings.append(
                    f"karyotype {karyotype}: no peak within {self.spec.match_window} "
                    "of an expected value"
                )
            results[karyotype] = kqc

        finite = [k for k in results.values() if np.isfinite(k.score)]
        if finite:
            n = np.array([k.n_mutations for k in finite], dtype=float)
            s = np.array([k.score for k in finite])
            score = float(np.sum(n * s) / n.sum())
        else:
            score = np.inf
            warnings.append("no karyotype could be assessed")

        for w in warnings:
            logger.warning(w)

        report = QCReport(
            sample_id=sample.sample_id,
            purity=sample.purity,
            karyotypes=results,
            score=score,
            passed=score <= self.spec.residual_threshold,
            threshold=self.spec.residual_threshold,
            warnings=warnings,
            n_excluded=annotation.n_excluded,
            n_conflicts=annotation.n_conflicts,
        )
        if not report.passed:
            logger.warning(
                "QC failed for %s: score %.4f > %.4f",
                sample.sample_id,
                score,
                self.spec.residual_threshold,
            )
        else:
            logger.info("QC passed for %s: score %.4f", sample.sample_id, score)
        return report
