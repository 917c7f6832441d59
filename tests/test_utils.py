import dataclasses

import numpy as np
import pytest
from scipy import stats
from scipy.integrate import quad

from ClonalMix.utils import (
    ClusterComponent,
    CloneTree,
    FitResult,
    Mutation,
    SampleContext,
    Segment,
    TailComponent,
    ab_from_mean_variance,
    ab_from_mu_kappa,
    beta_binom_logpmf,
    beta_logpdf,
    binom_logpmf,
    expected_vaf,
    locus_ploidy,
    normal_logpdf,
    pareto_logpdf,
    shannon_entropy,
)


class TestDensities:
    """Log densities against scipy.stats."""

    def test_beta_binom_matches_scipy(self):
        """Verify implementation matches scipy's beta-binomial."""
        result = beta_binom_logpmf(30, 100, 10.0, 20.0)
        expected = stats.betabinom.logpmf(30, 100, 10.0, 20.0)
        np.testing.assert_allclose(result, expected, rtol=1e-10)

    def test_binom_matches_scipy(self):
        k = np.array([0, 10, 50, 100])
        result = binom_logpmf(k, 100, 0.3)
        np.testing.assert_allclose(result, stats.binom.logpmf(k, 100, 0.3), rtol=1e-10)

    def test_binom_certain_success(self):
        """Test p = 1 gives log-probability 0 for k = n."""
        assert binom_logpmf(100, 100, 1.0) == pytest.approx(0.0)
        assert binom_logpmf(99, 100, 1.0) == -np.inf

    def test_normal_matches_scipy(self):
        x = np.linspace(0.1, 0.9, 9)
        np.testing.assert_allclose(
            normal_logpdf(x, 0.4, 0.01), stats.norm.logpdf(x, 0.4, 0.1), rtol=1e-10
        )

    def test_beta_matches_scipy(self):
        x = np.linspace(0.05, 0.95, 10)
        np.testing.assert_allclose(
            beta_logpdf(x, 3.0, 5.0), stats.beta.logpdf(x, 3.0, 5.0), rtol=1e-10
        )

    def test_pareto_normalized(self):
        """Test that the truncated Pareto integrates to 1 on [x_min, 1]."""
        for shape in (0.01, 0.5, 1.0, 3.0):
            total, _ = quad(lambda v: np.exp(pareto_logpdf(v, shape, 0.05)), 0.05, 1.0)
            assert total == pytest.approx(1.0, rel=1e-6)

    def test_pareto_outside_support(self):
        out = pareto_logpdf(np.array([0.01, 0.5]), 1.0, 0.05)
        assert out[0] == -np.inf
        assert np.isfinite(out[1])


class TestParameterConversions:
    def test_mu_kappa(self):
        alpha, beta = ab_from_mu_kappa(0.5, 100.0)
        assert alpha == 50.0
        assert beta == 50.0

    def test_mean_variance_roundtrip(self):
        """Test method-of-moments shapes reproduce mean and variance."""
        a, b = ab_from_mean_variance(0.3, 0.002)
        assert a / (a + b) == pytest.approx(0.3)
        assert a * b / ((a + b) ** 2 * (a + b + 1)) == pytest.approx(0.002)

    def test_mean_variance_capped(self):
        """Test that an impossible variance still yields positive shapes."""
        a, b = ab_from_mean_variance(0.5, 1.0)
        assert a > 0 and b > 0


class TestExpectedVaf:
    def test_loh_example(self):
        """2:0 at purity 0.8, multiplicity 1 -> 0.8 / 2.0."""
        assert expected_vaf(1, 2, 0, 0.8) == pytest.approx(0.4)
        assert expected_vaf(2, 2, 0, 0.8) == pytest.approx(0.8)

    def test_diploid_pure(self):
        assert expected_vaf(1, 1, 1, 1.0) == pytest.approx(0.5)
        assert locus_ploidy(1, 1, 1.0) == pytest.approx(2.0)

    def test_vectorized(self):
        out = expected_vaf(np.array([1, 2, 3]), 3, 1, 0.5)
        assert out.shape == (3,)
        assert np.all(np.diff(out) > 0)


class TestEntropy:
    def test_uniform(self):
        assert shannon_entropy(np.full(4, 0.25)) == pytest.approx(np.log(4))

    def test_certain(self):
        assert shannon_entropy(np.array([1.0, 0.0])) == 0.0

    def test_rows(self):
        p = np.array([[0.5, 0.5], [1.0, 0.0]])
        np.testing.assert_allclose(shannon_entropy(p, axis=1), [np.log(2), 0.0])


class TestRecords:
    """Validation of input records."""

    def test_vaf_derived(self):
        mut = Mutation("1", 100, 100, "A", "T", dp=80, nv=20)
        assert mut.vaf == pytest.approx(20 / 80)

    def test_nv_above_dp(self):
        with pytest.raises(ValueError, match="nv must satisfy"):
            Mutation("1", 100, 100, "A", "T", dp=10, nv=11)

    def test_zero_depth(self):
        with pytest.raises(ValueError, match="dp must be positive"):
            Mutation("1", 100, 100, "A", "T", dp=0, nv=0)

    def test_mutation_frozen(self):
        mut = Mutation("1", 100, 100, "A", "T", dp=80, nv=20)
        with pytest.raises(dataclasses.FrozenInstanceError):
            mut.nv = 30

    def test_segment_karyotype(self):
        seg = Segment("1", 1, 1000, 2, 1)
        assert seg.karyotype == "2:1"
        assert seg.total_cn == 3

    def test_segment_negative_cn(self):
        with pytest.raises(ValueError, match="copy numbers"):
            Segment("1", 1, 1000, -1, 1)

    @pytest.mark.parametrize("purity", [0.0, -0.2, 1.01, float("nan")])
    def test_invalid_purity(self, purity):
        """Test that purity outside (0, 1] is rejected at construction."""
        with pytest.raises(ValueError, match="purity"):
            SampleContext(purity=purity)

    def test_purity_one_allowed(self):
        assert SampleContext(purity=1.0).purity == 1.0


class TestFitResult:
    @pytest.fixture
    def fit(self):
        components = (
            TailComponent(shape=1.0, weight=0.2, x_min=0.05),
            ClusterComponent(mean=0.25, variance=0.001, weight=0.3, label="C1"),
            ClusterComponent(mean=0.5, variance=0.001, weight=0.5, label="C2"),
        )
        resps = np.array([[0.9, 0.1, 0.0], [0.0, 0.2, 0.8]])
        return FitResult(
            components=components,
            responsibilities=resps,
            nll_trajectory=np.array([5.0, 4.0, 3.5]),
            k=2,
            seed=0,
            with_tail=True,
            family="normal",
            converged=True,
            n_iterations=2,
        )

    def test_parameter_count(self, fit):
        """2 per cluster + tail shape + 2 free weights."""
        assert fit.n_parameters == 7

    def test_accessors(self, fit):
        assert fit.nll == 3.5
        assert fit.loglik == -3.5
        assert fit.n_clusters == 2
        assert fit.tail.weight == 0.2
        assert fit.labels == ["Tail", "C1", "C2"]

    def test_assignments(self, fit):
        assert list(fit.get_assignments()) == ["Tail", "C2"]
        assert list(fit.get_assignments(threshold=0.85)) == ["Tail", None]

    def test_export(self, fit):
        df = fit.export()
        assert list(df["component"]) == ["Tail", "C1", "C2"]
        assert "Tail" in fit.summarize()

    def test_versioned(self, fit):
        assert fit.version >= 1


class TestCloneTree:
    def test_sum_rule(self):
        tree = CloneTree(
            root="C2",
            prevalence={"C2": 0.6, "C1": 0.3},
            edges=(("C2", "C1"),),
        )
        assert tree.satisfies_sum_rule()
        assert tree.parent("C1") == "C2"
        assert tree.edge_list() == [("C2", "C1", 0.3)]
        assert list(tree.export().columns) == ["parent", "child", "prevalence"]

    def test_sum_rule_violation(self):
        tree = CloneTree(
            root="A",
            prevalence={"A": 0.5, "B": 0.4, "C": 0.3},
            edges=(("A", "B"), ("A", "C")),
        )
        assert not tree.satisfies_sum_rule()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
