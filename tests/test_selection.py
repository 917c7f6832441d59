import numpy as np
import pytest

import ClonalMix.mixture as mixture
import ClonalMix.selection as selection
from ClonalMix.params import GridSpec, SelectionSpec
from ClonalMix.selection import ModelSelector, fit_grid
from ClonalMix.utils import FitDivergenceError, FitGrid, NoViableModelError


def _single_peak(n=300, seed=0):
    rng = np.random.default_rng(seed)
    return rng.normal(0.5, 0.03, n)


def _two_peaks(seed=1):
    rng = np.random.default_rng(seed)
    return np.concatenate([rng.normal(0.45, 0.03, 200), rng.normal(0.25, 0.03, 200)])


@pytest.fixture
def sequential_grid():
    return GridSpec(k_values=(1, 2, 3), seeds=(0, 1), n_workers=1)


class TestFitGrid:
    """Tests for fit_grid."""

    def test_all_entries_fitted(self, sequential_grid):
        grid = fit_grid(_single_peak(), sequential_grid)

        assert len(grid.results) == len(sequential_grid.entries())
        assert grid.failures == []
        assert grid.n_mutations == 300

    def test_results_in_grid_order(self, sequential_grid):
        grid = fit_grid(_single_peak(), sequential_grid)
        keys = [(r.k, r.seed, r.with_tail) for r in grid.results]
        assert keys == sorted(keys)

    def test_too_small_sample_skipped(self):
        """Test that entries with more components than observations become failures."""
        grid = fit_grid(
            np.array([0.2, 0.3, 0.5]),
            GridSpec(k_values=(1, 3), seeds=(0,), tail_options=(False,), n_workers=1),
        )
        assert [r.k for r in grid.results] == [1]
        assert grid.failures[0].k == 3
        assert "skipped" in grid.failures[0].reason

    def test_diverged_fit_discarded(self, monkeypatch):
        """Test that a diverging entry is recorded as failed and the rest are kept."""
        real_fit = selection.fit_mixture

        def flaky_fit(x, k, seed, with_tail, spec):
            if k == 2:
                raise FitDivergenceError("non-finite likelihood")
            return real_fit(x, k, seed, with_tail, spec)

        monkeypatch.setattr(selection, "fit_mixture", flaky_fit)
        spec = GridSpec(k_values=(1, 2), seeds=(0,), tail_options=(False,), n_workers=1)
        grid = fit_grid(_single_peak(), spec)

        assert [r.k for r in grid.results] == [1]
        assert len(grid.failures) == 1
        assert "diverged" in grid.failures[0].reason

        result = ModelSelector().select(grid)
        assert result.best.k == 1
        assert result.table["status"].iloc[-1].startswith("diverged")

    def test_numerical_failure_isolated(self, monkeypatch):
        """Test that a library error inside one fit only discards that fit."""
        real_init = mixture.kmeans_plusplus

        def fragile_init(X, n_clusters, random_state):
            if n_clusters == 2:
                raise ValueError("n_samples should be >= n_clusters")
            return real_init(X, n_clusters=n_clusters, random_state=random_state)

        monkeypatch.setattr(mixture, "kmeans_plusplus", fragile_init)
        spec = GridSpec(k_values=(1, 2, 3), seeds=(0,), tail_options=(False,), n_workers=1)
        grid = fit_grid(_single_peak(), spec)

        assert [r.k for r in grid.results] == [1, 3]
        assert [f.k for f in grid.failures] == [2]
        assert "initialization failed" in grid.failures[0].reason

    def test_parallel_matches_sequential(self):
        """Test that the worker count does not change the outcome."""
        x = _two_peaks()
        base = dict(k_values=(1, 2), seeds=(0, 1), tail_options=(False,))
        seq = fit_grid(x, GridSpec(n_workers=1, **base))
        par = fit_grid(x, GridSpec(n_workers=2, **base))

        assert [(r.k, r.seed) for r in seq.results] == [(r.k, r.seed) for r in par.results]
        for a, b in zip(seq.results, par.results):
            np.testing.assert_allclose(a.nll_trajectory, b.nll_trajectory)

        selector = ModelSelector()
        assert selector.select(seq).scores == pytest.approx(selector.select(par).scores)


class TestModelSelector:
    """Tests for ModelSelector."""

    def test_single_population(self, sequential_grid):
        """One clonal peak selects a single cluster and no significant tail."""
        result = ModelSelector().select(fit_grid(_single_peak(), sequential_grid))
        best = result.best

        assert best.n_clusters == 1
        assert best.tail is None or best.tail.weight < 0.05
        assert best.clusters[0].mean == pytest.approx(0.5, abs=0.01)

    def test_two_populations(self, sequential_grid):
        """Clonal and subclonal peaks select k=2 over k=1 and k=3."""
        result = ModelSelector().select(fit_grid(_two_peaks(), sequential_grid))
        best = result.best

        assert best.n_clusters == 2
        assert best.k == 2
        np.testing.assert_allclose([c.mean for c in best.clusters], [0.25, 0.45], atol=0.02)

    def test_score_formula(self, sequential_grid):
        grid = fit_grid(_single_peak(), sequential_grid)
        selector = ModelSelector(SelectionSpec(entropy_weight=3.0))
        fit = grid.results[-1]

        entropy_sum = -np.sum(
            fit.responsibilities * np.log(np.clip(fit.responsibilities, 1e-300, None))
        )
        expected = (
            2.0 * fit.nll + fit.n_parameters * np.log(fit.n_mutations) + 3.0 * entropy_sum
        )
        assert selector.score(fit) == pytest.approx(expected)

    def test_table_sorted_by_score(self, sequential_grid):
        result = ModelSelector().select(fit_grid(_two_peaks(), sequential_grid))
        table = result.table

        assert np.all(np.diff(table["score"].to_numpy()) >= 0)
        assert table["selected"].sum() == 1
        best = result.best
        assert best.score == result.scores[(best.k, best.seed, best.with_tail)]
        assert result.summarize().startswith("Selected k=")

    def test_near_ties_prefer_fewer_clusters(self, sequential_grid):
        """Test that within the tie tolerance the most parsimonious fit wins."""
        grid = fit_grid(_two_peaks(), sequential_grid)
        result = ModelSelector(SelectionSpec(tie_tolerance=1e9)).select(grid)

        assert result.best.n_clusters == 1
        assert (result.best.k, result.best.seed, result.best.with_tail) == (1, 0, False)

    def test_nothing_converged(self):
        with pytest.raises(NoViableModelError):
            ModelSelector().select(FitGrid(results=[]))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
