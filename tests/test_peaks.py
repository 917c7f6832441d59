import numpy as np
import pytest
from scipy.stats import norm

from ClonalMix.params import PeakSpec
from ClonalMix.peaks import PeakDetector, expected_peaks, match_closest
from ClonalMix.segments import GenomeAnnotator
from ClonalMix.utils import Mutation, SampleContext, Segment


def _symmetric_counts(center: int, spread: float, n: int = 49) -> np.ndarray:
    """Read counts placed on normal quantiles, symmetric around ``center``."""
    q = norm.ppf(np.linspace(0.02, 0.98, n))
    offsets = np.round(np.abs(q) * spread)
    return center + np.sign(q) * offsets


def _mutations(chrom: str, nv: np.ndarray, dp: int = 1000, start: int = 1):
    return [
        Mutation(chrom, start + i, start + i, "A", "T", dp=dp, nv=int(v))
        for i, v in enumerate(nv)
    ]


class TestExpectedPeaks:
    def test_loh(self):
        """2:0 at purity 0.8 expects peaks at 0.4 and 0.8."""
        peaks = expected_peaks(2, 0, 0.8)
        assert list(peaks) == [1, 2]
        assert peaks[1] == pytest.approx(0.4)
        assert peaks[2] == pytest.approx(0.8)

    def test_unsupported(self):
        """Test that karyotypes without a major allele expect nothing."""
        assert expected_peaks(0, 0, 0.5) == {}
        assert expected_peaks(0, 1, 0.5) == {}


class TestMatchClosest:
    def test_exact_match_zero_residual(self):
        matches = match_closest([0.4], expected_peaks(2, 0, 0.8))
        assert len(matches) == 1
        assert matches[0].multiplicity == 1
        assert matches[0].residual == pytest.approx(0.0, abs=1e-12)

    def test_each_expected_claimed_once(self):
        """Test that the nearest pair is formed first and values are not reused."""
        matches = match_closest([0.38, 0.41], {1: 0.4, 2: 0.8})
        by_m = {m.multiplicity: m.observed for m in matches}
        assert by_m == {1: 0.41, 2: 0.38}

    def test_window(self):
        matches = match_closest([0.38, 0.41], {1: 0.4, 2: 0.8}, window=0.1)
        assert [m.multiplicity for m in matches] == [1]

    def test_no_peaks(self):
        assert match_closest([], {1: 0.5}) == []


class TestPeakDetector:
    """Tests for PeakDetector."""

    def test_detect_bimodal(self):
        rng = np.random.default_rng(0)
        vaf = np.concatenate([rng.normal(0.25, 0.02, 200), rng.normal(0.5, 0.02, 200)])
        peaks = PeakDetector().detect_peaks(vaf)

        assert len(peaks) == 2
        np.testing.assert_allclose(np.sort(peaks), [0.25, 0.5], atol=0.02)

    def test_degenerate_sample(self):
        peaks = PeakDetector().detect_peaks(np.full(20, 0.3))
        np.testing.assert_allclose(peaks, [0.3])

    def test_loh_peak_matches(self):
        """A 2:0 peak at 0.4 under purity 0.8 matches multiplicity 1 with no residual."""
        nv = _symmetric_counts(400, 15)
        annotation = GenomeAnnotator([Segment("1", 1, 10_000, 2, 0)]).annotate(
            _mutations("1", nv)
        )
        report = PeakDetector().run(annotation, SampleContext(purity=0.8))

        kqc = report.karyotypes["2:0"]
        assert [m.multiplicity for m in kqc.matches] == [1]
        assert abs(kqc.matches[0].residual) <= 1.5e-3
        assert kqc.unmatched == [2]
        assert report.passed

    def test_wrong_purity_fails(self):
        """Test that a purity inconsistent with the data fails QC without raising."""
        nv = _symmetric_counts(500, 15)
        annotation = GenomeAnnotator([Segment("1", 1, 10_000, 1, 1)]).annotate(
            _mutations("1", nv)
        )
        report = PeakDetector().run(annotation, SampleContext(purity=0.8))

        assert not report.passed
        assert report.score == pytest.approx(0.1, abs=2e-3)
        assert "FAIL" in report.summarize()

    def test_score_weighted_by_mutation_count(self):
        segs = [Segment("1", 1, 10_000, 1, 1), Segment("2", 1, 10_000, 2, 0)]
        muts = _mutations("1", _symmetric_counts(450, 15, n=60)) + _mutations(
            "2", _symmetric_counts(400, 15, n=20)
        )
        annotation = GenomeAnnotator(segs).annotate(muts)
        report = PeakDetector().run(annotation, SampleContext(purity=0.8))

        k11 = report.karyotypes["1:1"]
        k20 = report.karyotypes["2:0"]
        expected = (60 * k11.score + 20 * k20.score) / 80
        assert report.score == pytest.approx(expected)

    def test_small_and_unsupported_karyotypes_skipped(self):
        """Test that sparse or zero-copy karyotypes are skipped with a warning."""
        segs = [
            Segment("1", 1, 10_000, 1, 1),
            Segment("2", 1, 10_000, 0, 1),
            Segment("3", 1, 10_000, 2, 2),
        ]
        muts = (
            _mutations("1", _symmetric_counts(500, 15))
            + _mutations("2", np.full(20, 100))
            + _mutations("3", np.full(3, 250))
        )
        annotation = GenomeAnnotator(segs).annotate(muts)
        report = PeakDetector().run(annotation, SampleContext(purity=1.0))

        assert list(report.karyotypes) == ["1:1"]
        assert any("0:1" in w for w in report.warnings)
        assert any("2:2" in w for w in report.warnings)

    def test_export(self):
        nv = _symmetric_counts(500, 15)
        annotation = GenomeAnnotator([Segment("1", 1, 10_000, 1, 1)]).annotate(
            _mutations("1", nv)
        )
        df = PeakDetector(PeakSpec(bandwidth=0.3)).run(annotation, SampleContext(purity=1.0)).export()
        assert list(df["karyotype"]) == ["1:1"]
        assert df.loc[0, "expected"] == pytest.approx(0.5)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
