"""
Tests for EM initializers.
"""
import pytest
import numpy as np

from peakhmm.core.exceptions import ConfigurationError
from peakhmm.inference.assembler import build_model
from peakhmm.inference.initializer import QuantileInitializer, PosteriorInitializer, InitialState


class TestQuantileInitializer:

    def test_consensus_seed(self, consensus_data):
        dataset, states = consensus_data
        model = build_model(dataset)
        state = QuantileInitializer(quantile=0.8)(model, dataset)

        assert isinstance(state, InitialState)
        assert state.posteriors.shape == (dataset.n_windows, 2)
        assert state.mixture_posteriors is None
        np.testing.assert_allclose(state.posteriors.sum(axis=1), 1.0)
        # top 20% of windows seeded as enrichment
        assert np.mean(state.posteriors[:, 1] > 0.5) == pytest.approx(0.2, abs=0.01)

    def test_seeds_role_parameters(self, consensus_data):
        dataset, _ = consensus_data
        model = build_model(dataset)
        QuantileInitializer()(model, dataset)
        assert model.roles['enrichment'].intercept > model.roles['background'].intercept

    def test_differential_patterns(self, differential_data):
        dataset, truth = differential_data
        model = build_model(dataset, 'differential')
        state = QuantileInitializer()(model, dataset)

        assert state.posteriors.shape == (dataset.n_windows, 3)
        assert state.mixture_posteriors.shape == (dataset.n_windows, 2)
        np.testing.assert_allclose(state.mixture_posteriors.sum(axis=1), 1.0)

        region = slice(500, 550)
        a_only = model.mixture.labels.index('A')
        seeded_diff = state.posteriors[region].argmax(axis=1) == 1
        assert np.mean(seeded_diff) > 0.7
        winners = state.mixture_posteriors[region].argmax(axis=1)[seeded_diff]
        assert np.all(winners == a_only)

    @pytest.mark.parametrize("kwargs", [{'quantile': 0.0}, {'quantile': 1.0}, {'confidence': 0.0}])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ConfigurationError):
            QuantileInitializer(**kwargs)


class TestPosteriorInitializer:

    def test_user_posteriors(self, small_dataset):
        model = build_model(small_dataset, 'differential')
        post = np.tile([2.0, 1.0, 1.0], (small_dataset.n_windows, 1))
        state = PosteriorInitializer(post)(model, small_dataset)
        np.testing.assert_allclose(state.posteriors[0], [0.5, 0.25, 0.25])
        np.testing.assert_allclose(state.mixture_posteriors, 0.5)

    def test_wrong_shape(self, small_dataset):
        model = build_model(small_dataset)
        with pytest.raises(ConfigurationError):
            PosteriorInitializer(np.ones((3, 2)))(model, small_dataset)

    def test_wrong_mixture_shape(self, small_dataset):
        model = build_model(small_dataset, 'differential')
        post = np.ones((small_dataset.n_windows, 3))
        with pytest.raises(ConfigurationError):
            PosteriorInitializer(post, np.ones((small_dataset.n_windows, 5)))(model, small_dataset)
