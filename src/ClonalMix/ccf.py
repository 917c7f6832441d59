"""
Cancer cell fraction (CCF) estimation with multiplicity assignment.

For a mutation on a segment with karyotype major:minor, every multiplicity
m = 1..major predicts an allele frequency VAF(m). The read counts are scored
under each candidate (Binomial, or Beta-Binomial when an overdispersion is
configured), each mutation takes its maximum-likelihood multiplicity, and the
entropy of the normalized likelihoods is kept as a confidence signal:

    confidence = 1 - H(posterior) / log(n_candidates)

The CCF follows as

    CCF = VAF * ploidy_at_locus / (purity * m*)

clamped to [0, 1].
"""

import logging
from typing import Optional

import numpy as np
from scipy.special import logsumexp

from .params import CCFSpec
from .utils import (
    SampleContext,
    ab_from_mu_kappa,
    beta_binom_logpmf,
    binom_logpmf,
    expected_vaf,
    locus_ploidy,
    shannon_entropy,
)

logger = logging.getLogger(__name__)


class CCFEstimator:
    """
    Assign multiplicities and CCF values to annotated mutations.

    Parameters
    ----------
    spec : CCFSpec, optional
        Entropy threshold and likelihood settings.

    Attributes
    ----------
    n_unassigned : int
        Mutations whose karyotype carries no mutable copy (major = 0).
    n_low_confidence : int
        Mutations flagged because their multiplicity posterior is too flat.
    """

    def __init__(self, spec: Optional[CCFSpec] = None):
        self.spec = spec if spec is not None else CCFSpec()
        self.n_unassigned: int = 0
        self.n_low_confidence: int = 0

    def _loglik(self, nv: np.ndarray, dp: np.ndarray, p: float) -> np.ndarray:
        if self.spec.overdispersion is None:
            return binom_logpmf(nv, dp, p)
        a, b = ab_from_mu_kappa(p, self.spec.overdispersion)
        return beta_binom_logpmf(nv, dp, a, b)

    def multiplicity_posterior(
        self,
        nv: np.ndarray,
        dp: np.ndarray,
        major: int,
        minor: int,
        purity: float,
    ) -> np.ndarray:
        """
        Normalized likelihood of each multiplicity 1..major (uniform prior).

        Returns
        -------
        np.ndarray
            Array of shape (N, major); rows sum to 1.
        """
        nv = np.asarray(nv, dtype=float)
        dp = np.asarray(dp, dtype=float)
        if major == 1:
            return np.ones((nv.size, 1))
        candidates = np.arange(1, major + 1)
        expected = np.clip(expected_vaf(candidates, major, minor, purity), 0.0, 1.0)
        loglik = np.column_stack([self._loglik(nv, dp, e) for e in expected])
        return np.exp(loglik - logsumexp(loglik, axis=1, keepdims=True))

    def estimate(self, annotated, sample: SampleContext) -> list:
        """
        Fill multiplicity, CCF and confidence on each annotated mutation.

        Mutations are processed in karyotype groups; within a group each
        mutation is assigned independently.

        Parameters
        ----------
        annotated : list of AnnotatedMutation
        sample : SampleContext

        Returns
        -------
        list of AnnotatedMutation
            The same objects, updated.
        """
        self.n_unassigned = 0
        self.n_low_confidence = 0
        purity = sample.purity

        groups = {}
        for am in annotated:
            groups.setdefault((am.major, am.minor), []).append(am)

        for (major, minor), group in sorted(groups.items()):
            if major < 1:
                self.n_unassigned += len(group)
                for am in group:
                    am.multiplicity = None
                    am.ccf = None
                    am.confidence = None
                continue

            nv = np.array([am.mutation.nv for am in group])
            dp = np.array([am.mutation.dp for am in group])
            posterior = self.multiplicity_posterior(nv, dp, major, minor, purity)
            best = posterior.argmax(axis=1) + 1

            if major > 1:
                entropy = shannon_entropy(posterior, axis=1) / np.log(major)
            else:
                entropy = np.zeros(len(group))
            confidence = 1.0 - entropy

            ploidy = locus_ploidy(major, minor, purity)
            vaf = nv / dp
            ccf = np.clip(vaf * ploidy / (purity * best), 0.0, 1.0)

            for i, am in enumerate(group):
                am.multiplicity = int(best[i])
                am.ccf = float(ccf[i])
                am.confidence = float(confidence[i])
                am.low_confidence = bool(entropy[i] > self.spec.entropy_threshold)
            self.n_low_confidence += int(np.sum(entropy > self.spec.entropy_threshold))

        if self.n_unassigned:
            logger.warning(
                "%d mutations on karyotypes without a major allele got no CCF",
                self.n_unassigned,
            )
        logger.info(
            "CCF computed for %d mutations (%d low confidence)",
            len(annotated) - self.n_unassigned,
            self.n_low_confidence,
        )
        return annotated


def ccf_from_vaf(vaf, major: int, minor: int, purity: float, multiplicity: int = 1):
    """Direct CCF conversion for a known multiplicity, clamped to [0, 1]."""
    vaf = np.asarray(vaf, dtype=float)
    return np.clip(
        vaf * locus_ploidy(major, minor, purity) / (purity * multiplicity), 0.0, 1.0
    )
