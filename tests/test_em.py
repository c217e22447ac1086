"""
Tests for the PeakHMM EM orchestrator.

Tests cover:
- EMConfig validation
- Seed E-step and M-step
- Rejection control and log-likelihood monotonicity
- Convergence, iteration and time budgets
- Mixture pruning during EM
- End-to-end consensus and differential scenarios
"""
import warnings

import pytest
import numpy as np

import peakhmm.inference.em as em
from peakhmm.core.emissions import EmissionParams
from peakhmm.core.exceptions import (
    ConfigurationError, LikelihoodRegressionWarning, NonConvergenceWarning,
    NumericalInstabilityWarning,
)
from peakhmm.core.simulate import simulate_differential
from peakhmm.inference.assembler import build_model, fit_peaks
from peakhmm.inference.em import EMConfig, run_em, maximize, seed_estep, rejection_control
from peakhmm.inference.initializer import InitialState, PosteriorInitializer
from peakhmm.inference.parallel import run_estep


def assert_monotone(history, skip=()):
    for i in range(1, len(history)):
        if i in skip:
            continue
        assert history[i] >= history[i - 1] - 1e-9 * abs(history[i - 1]), \
            f"log-likelihood dropped at iteration {i}: {history[i - 1]} -> {history[i]}"


class TestEMConfig:

    def test_defaults_valid(self):
        EMConfig().validate()

    @pytest.mark.parametrize("kwargs", [
        {'max_iterations': 0},
        {'tolerance': 0.0},
        {'gap_iterations': 0},
        {'criterion': 'bic'},
        {'pruning_threshold': 1.5},
        {'pruning_threshold': -0.1},
        {'distribution': 'poisson'},
        {'dispersion_bounds': (10.0, 1.0)},
        {'backend': 'mpi'},
        {'n_jobs': -2},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            EMConfig(**kwargs).validate()

    def test_pruning_bounds_inclusive(self):
        EMConfig(pruning_threshold=0.0).validate()
        EMConfig(pruning_threshold=1.0).validate()


class TestSteps:

    def test_seed_estep_counts(self, small_dataset):
        post = np.tile([0.75, 0.25], (small_dataset.n_windows, 1))
        estep = seed_estep(InitialState(post), small_dataset)
        n_chrom = len(small_dataset.chromosome_slices())
        assert estep.start_counts.sum() == pytest.approx(n_chrom)
        assert estep.trans_counts.sum() == pytest.approx(small_dataset.n_windows - n_chrom)
        np.testing.assert_allclose(estep.start_counts, [0.75 * n_chrom, 0.25 * n_chrom])

    def test_maximize_returns_new_model(self, consensus_model, consensus_data):
        dataset, _ = consensus_data
        estep = run_estep(consensus_model, dataset)
        before = consensus_model.parameter_vector()
        candidate, reports = maximize(consensus_model, dataset, estep, EMConfig())

        np.testing.assert_array_equal(consensus_model.parameter_vector(), before)
        assert [r.role for r in reports] == ['background', 'enrichment']
        np.testing.assert_allclose(candidate.transmat_.sum(axis=1), 1.0)
        assert np.exp(candidate.roles['background'].intercept) == pytest.approx(5.0, rel=0.15)
        assert np.exp(candidate.roles['enrichment'].intercept) == pytest.approx(40.0, rel=0.15)

    def test_maximize_does_not_lower_likelihood(self, consensus_model, consensus_data):
        dataset, _ = consensus_data
        consensus_model.roles['enrichment'] = EmissionParams([np.log(25.0)], 5.0)
        estep = run_estep(consensus_model, dataset)
        candidate, _ = maximize(consensus_model, dataset, estep, EMConfig())
        assert run_estep(candidate, dataset).log_likelihood >= estep.log_likelihood

    def test_maximize_updates_mixture(self, differential_model, small_dataset):
        estep = run_estep(differential_model, small_dataset)
        candidate, _ = maximize(differential_model, small_dataset, estep, EMConfig())
        assert candidate.mixture.weights.sum() == pytest.approx(1.0)
        # windows 5-8 are elevated in condition A only
        a = candidate.mixture.labels.index('A')
        assert candidate.mixture.weights[a] > 0.5


class TestRejectionControl:

    def test_reverts_offending_role(self, consensus_model, consensus_data):
        dataset, _ = consensus_data
        current_estep = run_estep(consensus_model, dataset)
        candidate = consensus_model.copy()
        candidate.roles['enrichment'] = EmissionParams([np.log(400.0)], 20.0)

        accepted, estep, blocks = rejection_control(consensus_model, current_estep, candidate,
                                                    dataset, EMConfig())
        assert blocks == ['enrichment']
        assert estep.log_likelihood >= current_estep.log_likelihood
        np.testing.assert_allclose(accepted.roles['enrichment'].coef,
                                   consensus_model.roles['enrichment'].coef)

    def test_reverts_everything_when_needed(self, consensus_model, consensus_data):
        dataset, _ = consensus_data
        current_estep = run_estep(consensus_model, dataset)
        candidate = consensus_model.copy()
        candidate.transmat_ = np.array([[0.01, 0.99], [0.99, 0.01]])

        accepted, estep, blocks = rejection_control(consensus_model, current_estep, candidate,
                                                    dataset, EMConfig())
        assert blocks == ['all']
        assert accepted is consensus_model
        assert estep is current_estep

    def test_regression_triggers_warning(self, consensus_data, monkeypatch):
        dataset, _ = consensus_data
        original = em.maximize
        calls = {'n': 0}

        def sabotaged(*args, **kwargs):
            candidate, reports = original(*args, **kwargs)
            calls['n'] += 1
            if calls['n'] == 3:
                candidate.roles['enrichment'].coef[0] += 3.0
            return candidate, reports

        monkeypatch.setattr(em, 'maximize', sabotaged)
        with pytest.warns(LikelihoodRegressionWarning):
            result = fit_peaks(dataset, config=EMConfig(max_iterations=10))

        assert result.n_rejections >= 1
        assert any('reverted' in m for m in result.messages)
        assert_monotone(result.history)


class TestConsensusFit:

    def test_recovers_parameters(self, consensus_data):
        dataset, states = consensus_data
        result = fit_peaks(dataset, config=EMConfig(max_iterations=200))

        assert result.converged
        model = result.model
        assert np.exp(model.roles['background'].intercept) == pytest.approx(5.0, rel=0.15)
        assert np.exp(model.roles['enrichment'].intercept) == pytest.approx(40.0, rel=0.15)
        assert np.mean(result.posteriors.argmax(axis=1) == states) > 0.95
        assert np.diag(model.transmat_).min() > 0.8

    def test_posteriors_normalized(self, consensus_data, fast_config):
        dataset, _ = consensus_data
        result = fit_peaks(dataset, config=fast_config)
        assert result.posteriors.shape == (dataset.n_windows, 2)
        np.testing.assert_allclose(result.posteriors.sum(axis=1), 1.0, atol=1e-8)
        assert result.mixture_posteriors is None

    def test_log_likelihood_non_decreasing(self, consensus_data, fast_config):
        dataset, _ = consensus_data
        result = fit_peaks(dataset, config=fast_config)
        assert len(result.history) == result.n_iterations + 1
        assert_monotone(result.history)

    def test_fit_updates_model_in_place(self, consensus_data, fast_config):
        dataset, _ = consensus_data
        model = build_model(dataset)
        result = run_em(model, dataset, fast_config)
        assert result.model is model
        assert model.roles['enrichment'].intercept > model.roles['background'].intercept

    def test_model_fit_method(self, consensus_data, fast_config):
        dataset, _ = consensus_data
        model = build_model(dataset)
        result = model.fit(dataset, fast_config)
        assert result.log_likelihood == pytest.approx(model.score(dataset))

    def test_null_data_is_background(self, null_dataset):
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            result = fit_peaks(null_dataset, config=EMConfig(max_iterations=100))
        assert np.mean(result.posteriors[:, 0] > 0.5) > 0.95

    @pytest.mark.parametrize("criterion", ['relative_params', 'absolute_params'])
    def test_parameter_criteria(self, consensus_data, criterion):
        dataset, _ = consensus_data
        result = fit_peaks(dataset, config=EMConfig(max_iterations=300, tolerance=1e-4,
                                                    criterion=criterion))
        assert result.converged

    def test_zero_inflated(self, consensus_data):
        dataset, states = consensus_data
        rng = np.random.default_rng(11)
        counts = np.array(dataset.counts)
        dropout = (rng.random(counts.shape) < 0.3) & (states[:, np.newaxis] == 0)
        counts[dropout] = 0
        zi = type(dataset)(counts, dataset.design, windows=dataset.windows)

        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            result = fit_peaks(zi, config=EMConfig(distribution='zinb', max_iterations=80))

        rho = 1.0 / (1.0 + np.exp(-result.model.roles['background'].zero_inflation))
        assert 0.1 < rho < 0.5
        assert result.model.roles['enrichment'].zero_inflation is None
        assert np.mean(result.posteriors.argmax(axis=1) == states) > 0.9

    def test_inverted_zero_inflated_roles_reported(self, consensus_data):
        dataset, states = consensus_data
        flipped = np.where(states[:, np.newaxis] == 1, [0.9, 0.1], [0.1, 0.9])
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            result = fit_peaks(dataset, config=EMConfig(distribution='zinb', max_iterations=3),
                               initializer=PosteriorInitializer(flipped))
        roles = result.model.roles
        assert roles['background'].intercept > roles['enrichment'].intercept
        assert any('not swapped' in m for m in result.messages)

    def test_inverted_roles_swapped_without_zero_inflation(self, consensus_data):
        dataset, states = consensus_data
        flipped = np.where(states[:, np.newaxis] == 1, [0.9, 0.1], [0.1, 0.9])
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            result = fit_peaks(dataset, config=EMConfig(max_iterations=3),
                               initializer=PosteriorInitializer(flipped))
        roles = result.model.roles
        assert roles['background'].intercept < roles['enrichment'].intercept
        assert not any('not swapped' in m for m in result.messages)

    def test_controls_add_coefficient(self, consensus_data, fast_config):
        dataset, _ = consensus_data
        rng = np.random.default_rng(5)
        controls = rng.poisson(20, size=dataset.counts.shape)
        with_ctrl = type(dataset)(dataset.counts, dataset.design, windows=dataset.windows,
                                  controls=controls)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            result = fit_peaks(with_ctrl, config=fast_config)
        assert result.model.n_coef == 2
        assert np.all(np.isfinite(result.model.roles['background'].coef))
        np.testing.assert_allclose(result.posteriors.sum(axis=1), 1.0, atol=1e-8)


class TestBudgets:

    def test_iteration_cap(self, consensus_data):
        dataset, _ = consensus_data
        with pytest.warns(NonConvergenceWarning):
            result = fit_peaks(dataset, config=EMConfig(max_iterations=2))
        assert not result.converged
        assert result.n_iterations == 2
        assert np.all(np.isfinite(result.posteriors))

    def test_time_budget(self, consensus_data):
        dataset, _ = consensus_data
        with pytest.warns(NonConvergenceWarning):
            result = fit_peaks(dataset, config=EMConfig(max_time=0.0))
        assert not result.converged
        assert result.n_iterations == 1
        assert any('Time budget' in m for m in result.messages)

    def test_min_iterations(self, consensus_data):
        dataset, _ = consensus_data
        result = fit_peaks(dataset, config=EMConfig(tolerance=1.0, min_iterations=5))
        assert result.converged
        assert result.n_iterations == 5

    def test_gap_iterations(self, consensus_data):
        dataset, _ = consensus_data
        result = fit_peaks(dataset, config=EMConfig(tolerance=1.0, min_iterations=0,
                                                    gap_iterations=3))
        assert result.n_iterations == 3

    def test_glm_iteration_cap_is_not_fatal(self, consensus_data):
        dataset, _ = consensus_data
        config = EMConfig(max_iterations=5, irls_max_iterations=1, irls_tolerance=1e-14)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            with pytest.warns(NumericalInstabilityWarning):
                result = fit_peaks(dataset, config=config)
        assert result.n_irls_failures > 0
        assert 1 <= result.n_iterations <= 5
        assert np.isfinite(result.log_likelihood)
        assert np.all(np.isfinite(result.posteriors))
        for params in result.model.roles.values():
            assert np.all(np.isfinite(params.coef))
            assert np.isfinite(params.dispersion)


class TestDifferentialFit:

    def test_single_condition_differential(self, differential_data):
        dataset, truth = differential_data
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            result = fit_peaks(dataset, mode='differential', config=EMConfig(max_iterations=100))

        region = slice(500, 550)
        diff_post = result.posteriors[region, 1]
        assert np.mean(diff_post > 0.5) > 0.9
        assert diff_post.mean() > 0.8

        a_only = result.model.mixture.labels.index('A')
        winners = result.mixture_posteriors[region].argmax(axis=1)
        assert np.mean(winners == a_only) > 0.9

        outside = np.ones(dataset.n_windows, dtype=bool)
        outside[region] = False
        assert np.mean(result.posteriors[outside, 0] > 0.5) > 0.75

    def test_posteriors_normalized(self, differential_data, fast_config):
        dataset, _ = differential_data
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            result = fit_peaks(dataset, mode='differential', config=fast_config)
        np.testing.assert_allclose(result.posteriors.sum(axis=1), 1.0, atol=1e-8)
        np.testing.assert_allclose(result.mixture_posteriors.sum(axis=1), 1.0, atol=1e-8)
        assert result.model.mixture.weights.sum() == pytest.approx(1.0)
        assert_monotone(result.history)


class TestPruning:

    @pytest.fixture
    def three_condition_data(self):
        return simulate_differential(n_windows=1200, replicates=2, conditions=('A', 'B', 'C'),
                                     regions=[(300, 360, ['A']), (700, 760, ['A', 'B'])],
                                     base_mean=10.0, fold=5.0, seed=21)

    def test_components_pruned(self, three_condition_data):
        dataset, _ = three_condition_data
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            result = fit_peaks(dataset, mode='differential',
                               config=EMConfig(max_iterations=150, pruning_threshold=0.05))

        mixture = result.model.mixture
        events = result.pruning_events
        assert len(events) >= 1
        assert mixture.n_active >= 1
        assert mixture.n_active == events[-1].n_remaining

        remaining = [mixture.n_components] + [e.n_remaining for e in events]
        assert all(b == a - 1 for a, b in zip(remaining, remaining[1:]))
        assert all(e.weight < 0.05 for e in events)
        assert len({e.component for e in events}) == len(events)

        for e in events:
            assert not mixture.active[e.component]
            assert mixture.weights[e.component] == 0.0
            assert np.all(result.mixture_posteriors[:, e.component] == 0.0)

        assert_monotone(result.history, skip={e.iteration for e in events})

    def test_one_component_at_a_time(self, three_condition_data):
        dataset, _ = three_condition_data
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            result = fit_peaks(dataset, mode='differential',
                               config=EMConfig(max_iterations=30, pruning_threshold=0.05))
        iterations = [e.iteration for e in result.pruning_events]
        assert len(iterations) == len(set(iterations))

    def test_prune_to_single_component(self, differential_data):
        dataset, _ = differential_data
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            result = fit_peaks(dataset, mode='differential',
                               config=EMConfig(max_iterations=20, pruning_threshold=1.0))
        assert result.model.mixture.n_active == 1
        assert len(result.pruning_events) == 1
        assert any('single component' in m for m in result.messages)

    def test_time_budget_checked_on_pruning_iteration(self, differential_data):
        dataset, _ = differential_data
        with pytest.warns(NonConvergenceWarning):
            result = fit_peaks(dataset, mode='differential',
                               config=EMConfig(max_iterations=20, pruning_threshold=1.0,
                                               max_time=0.0))
        assert result.n_iterations == 1
        assert len(result.pruning_events) == 1
        assert any('Time budget' in m for m in result.messages)

    def test_pruning_report_printed(self, differential_data, capsys):
        dataset, _ = differential_data
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', NonConvergenceWarning)
            fit_peaks(dataset, mode='differential',
                      config=EMConfig(max_iterations=10, pruning_threshold=1.0,
                                      quiet_pruning=False))
        assert 'pruned component' in capsys.readouterr().out

    def test_consensus_ignores_threshold(self, consensus_data):
        dataset, _ = consensus_data
        result = fit_peaks(dataset, config=EMConfig(max_iterations=20, pruning_threshold=0.5))
        assert result.pruning_events == []


class TestVerbose:

    def test_progress_output(self, consensus_data, capsys):
        dataset, _ = consensus_data
        fit_peaks(dataset, config=EMConfig(max_iterations=30, verbose=True))
        out = capsys.readouterr().out
        assert 'Initial log-likelihood' in out
        assert 'EM' in out
