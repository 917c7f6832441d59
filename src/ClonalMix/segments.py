"""
Mapping of mutations onto copy-number segments.

Each mutation is assigned the segment that contains it; its karyotype
("major:minor") then drives every downstream computation. Mutations that fall
outside every segment are excluded and counted. When segments overlap, the
first containing segment in (start, end, input order) wins and the conflict
is counted.
"""

import logging
from collections import defaultdict
from typing import Optional

import numpy as np
import pandas as pd

from .params import AnnotationSpec
from .utils import AnnotatedMutation, AnnotationResult, Mutation, Segment

logger = logging.getLogger(__name__)


_MUTATION_COLUMNS = ("chr", "from", "to", "ref", "alt", "DP", "NV")
_SEGMENT_COLUMNS = ("chr", "from", "to", "Major", "minor")


def normalize_chrom(chrom, strip_chr_prefix: bool = True) -> str:
    chrom = str(chrom)
    if strip_chr_prefix and chrom.lower().startswith("chr"):
        return chrom[3:]
    return chrom


class SegmentLookup:
    def __init__(self, segments, strip_chr_prefix: bool = True):
        """
        Build per-chromosome interval arrays from a list of segments.

        Parameters
        ----------
        segments : list of Segment
            Copy-number segments, in any order.
        strip_chr_prefix : bool
            Treat 'chr1' and '1' as the same chromosome.
        """
        self.strip_chr_prefix = strip_chr_prefix
        grouped = defaultdict(list)
        for i, seg in enumerate(segments):
            grouped[normalize_chrom(seg.chrom, strip_chr_prefix)].append((seg.start, seg.end, i, seg))

        self._segments = {}
        self._starts = {}
        self._ends = {}
        for chrom, rows in grouped.items():
            rows.sort(key=lambda r: (r[0], r[1], r[2]))
            self._segments[chrom] = [r[3] for r in rows]
            self._starts[chrom] = np.array([r[0] for r in rows], dtype=np.int64)
            self._ends[chrom] = np.array([r[1] for r in rows], dtype=np.int64)

    @property
    def chromosomes(self) -> list[str]:
        return sorted(self._segments)

    def query(self, chrom, start: int, end: Optional[int] = None) -> list[Segment]:
        """
        All segments containing [start, end], in deterministic sort order.

        Returns an empty list when the chromosome is unknown or no segment
        contains the interval.
        """
        if end is None:
            end = start
        chrom = normalize_chrom(chrom, self.strip_chr_prefix)
        if chrom not in self._segments:
            return []
        mask = (self._starts[chrom] <= start) & (self._ends[chrom] >= end)
        return [self._segments[chrom][i] for i in np.flatnonzero(mask)]

    def count_overlaps(self) -> int:
        """Number of segment pairs sharing at least one position."""
        total = 0
        for chrom, starts in self._starts.items():
            ends = self._ends[chrom]
            for i in range(len(starts)):
                # starts are sorted, so later segments overlap i iff they start before i ends
                later = np.searchsorted(starts, ends[i], side="right") - (i + 1)
                total += max(int(later), 0)
        return total


class GenomeAnnotator:
    """
    Attach each mutation to its containing copy-number segment.

    Parameters
    ----------
    segments : list of Segment
        Segmentation of one sample.
    spec : AnnotationSpec, optional
        Chromosome naming options.
    """

    def __init__(self, segments, spec: Optional[AnnotationSpec] = None):
        self.spec = spec if spec is not None else AnnotationSpec()
        self.segments = list(segments)
        self.lookup = SegmentLookup(self.segments, self.spec.strip_chr_prefix)

    def annotate(self, mutations) -> AnnotationResult:
        """
        Map mutations to segments.

        Parameters
        ----------
        mutations : list of Mutation

        Returns
        -------
        AnnotationResult
            Annotated mutations plus exclusion and conflict counts.
        """
        annotated = []
        excluded = []
        n_conflicts = 0

        for mut in mutations:
            hits = self.lookup.query(mut.chrom, mut.start, mut.end)
            if not hits:
                excluded.append(mut)
                continue
            if len(hits) > 1:
                n_conflicts += 1
            annotated.append(AnnotatedMutation(mutation=mut, segment=hits[0]))

        n_overlaps = self.lookup.count_overlaps()
        result = AnnotationResult(
            annotated=annotated,
            excluded=excluded,
            n_conflicts=n_conflicts,
            n_segment_overlaps=n_overlaps,
        )

        if result.n_excluded:
            logger.warning(
                "%d mutations fall outside every segment and were excluded",
                result.n_excluded,
            )
        if n_conflicts:
            logger.warning(
                "%d mutations overlap more than one segment; first match kept",
                n_conflicts,
            )
        logger.info(result.summarize())
        return result


# =============================================================================
# Table helpers
# =============================================================================


def _check_columns(df: pd.DataFrame, required, what: str):
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"{what} table is missing columns: {', '.join(missing)}")


def mutations_from_frame(df: pd.DataFrame) -> list[Mutation]:
    """
    Build mutations from a table with columns chr, from, to, ref, alt, DP, NV
    and optional VAF and is_driver.

    A VAF column is only checked against NV/DP; the stored value is never used.
    """
    _check_columns(df, _MUTATION_COLUMNS, "Mutation")
    if "VAF" in df.columns:
        recomputed = df["NV"].to_numpy(float) / df["DP"].to_numpy(float)
        bad = ~np.isclose(df["VAF"].to_numpy(float), recomputed, atol=1e-6)
        if bad.any():
            logger.warning(
                "%d VAF values disagree with NV/DP; using NV/DP", int(bad.sum())
            )

    drivers = df["is_driver"] if "is_driver" in df.columns else [False] * len(df)
    rows = df[list(_MUTATION_COLUMNS)].itertuples(index=False, name=None)
    return [
        Mutation(
            chrom=str(chrom),
            start=int(start),
            end=int(end),
            ref=str(ref),
            alt=str(alt),
            dp=int(dp),
            nv=int(nv),
            is_driver=bool(drv),
        )
        for (chrom, start, end, ref, alt, dp, nv), drv in zip(rows, drivers)
    ]


def segments_from_frame(df: pd.DataFrame) -> list[Segment]:
    """Build segments from a table with columns chr, from, to, Major, minor."""
    _check_columns(df, _SEGMENT_COLUMNS, "Segment")
    return [
        Segment(
            chrom=str(chrom),
            start=int(start),
            end=int(end),
            major=int(major),
            minor=int(minor),
        )
        for chrom, start, end, major, minor in df[list(_SEGMENT_COLUMNS)].itertuples(
            index=False, name=None
        )
    ]
