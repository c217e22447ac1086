"""
PeakHMM EM initializers

An initializer is any callable `initializer(model, dataset) -> InitialState`.
It provides the seed posteriors the first M-step works from and may set
starting role parameters on the model (used as IRLS starting values).
"""

import numpy as np
from dataclasses import dataclass
from typing import Optional

from peakhmm.core.emissions import moment_params, control_covariate
from peakhmm.core.exceptions import ConfigurationError
from peakhmm.core.hmm import PeakHMM


@dataclass
class InitialState:
    """Seed posteriors for the first M-step."""
    posteriors: np.ndarray                          # (windows, n_states)
    mixture_posteriors: Optional[np.ndarray] = None  # (windows, n_components)


def seed_role_params(model: PeakHMM, dataset, state: InitialState):
    """Set method-of-moments starting parameters on every role from seed posteriors."""
    weights = model.role_weights(state.posteriors, state.mixture_posteriors)
    for role, w in weights.items():
        zero_inflated = model.roles[role].zero_inflation is not None
        model.roles[role] = moment_params(dataset.counts, dataset.offsets, w,
                                          n_coef=model.n_coef, zero_inflated=zero_inflated)


class Initializer:
    """Base class for EM initialization strategies."""

    def __call__(self, model: PeakHMM, dataset) -> InitialState:
        raise NotImplementedError


class QuantileInitializer(Initializer):
    """
    Rank-based split of normalised counts.

    For every condition (a single pooled group in consensus mode) the mean
    of log1p(count) - offset over its samples is ranked; the top
    (1 - quantile) fraction of windows is called "on". The on/off pattern of
    a window picks its seed state: nothing on = background, everything on =
    enrichment, anything else = differential with that exact pattern.
    The seed state gets probability `confidence`, the others share the rest.

    Args:
        quantile: Fraction of windows called "off" per condition
        confidence: Posterior mass put on the seed state/pattern
    """

    def __init__(self, quantile: float = 0.9, confidence: float = 0.9):
        if not 0.0 < quantile < 1.0:
            raise ConfigurationError(f"quantile must be in (0, 1), got {quantile}")
        if not 0.0 < confidence <= 1.0:
            raise ConfigurationError(f"confidence must be in (0, 1], got {confidence}")
        self.quantile = quantile
        self.confidence = confidence

    def _on_calls(self, scores: np.ndarray) -> np.ndarray:
        n = scores.shape[0]
        cut = min(max(int(np.floor(self.quantile * n)), 1), n - 1) if n > 1 else n
        on = np.zeros(scores.shape, dtype=bool)
        for g in range(scores.shape[1]):
            order = np.argsort(scores[:, g], kind='stable')
            on[order[cut:], g] = True
        return on

    def _soft(self, labels: np.ndarray, n_classes: int) -> np.ndarray:
        if n_classes == 1:
            return np.ones((len(labels), 1))
        post = np.full((len(labels), n_classes), (1.0 - self.confidence) / (n_classes - 1))
        post[np.arange(len(labels)), labels] = self.confidence
        return post / post.sum(axis=1, keepdims=True)

    def __call__(self, model: PeakHMM, dataset) -> InitialState:
        score = np.log1p(dataset.counts) - dataset.offsets
        if model.n_coef > 1:
            score = score - control_covariate(dataset.controls)

        if model.mode == 'consensus':
            on = self._on_calls(score.mean(axis=1, keepdims=True))
            state = InitialState(self._soft(on[:, 0].astype(np.int64), 2))
        else:
            n_cond = len(model.conditions)
            group_scores = np.column_stack([
                score[:, model.sample_conditions == g].mean(axis=1) for g in range(n_cond)
            ])
            on = self._on_calls(group_scores)
            n_on = on.sum(axis=1)
            labels = np.where(n_on == 0, 0, np.where(n_on == n_cond, 2, 1))
            masks = on.astype(np.int64) @ (2 ** np.arange(n_cond))

            n_comp = model.mixture.n_components
            mix = np.full((dataset.n_windows, n_comp), 1.0 / n_comp)
            differential = labels == 1
            if np.any(differential):
                mix[differential] = self._soft(masks[differential] - 1, n_comp)
            state = InitialState(self._soft(labels, 3), mix)

        seed_role_params(model, dataset, state)
        return state


class PosteriorInitializer(Initializer):
    """Seed EM from caller-supplied posterior probabilities."""

    def __init__(self, posteriors: np.ndarray, mixture_posteriors: Optional[np.ndarray] = None):
        self.posteriors = np.asarray(posteriors, dtype=float)
        self.mixture_posteriors = (None if mixture_posteriors is None
                                   else np.asarray(mixture_posteriors, dtype=float))

    def __call__(self, model: PeakHMM, dataset) -> InitialState:
        expected = (dataset.n_windows, model.n_states)
        if self.posteriors.shape != expected:
            raise ConfigurationError(
                f"Seed posteriors have shape {self.posteriors.shape}, expected {expected}"
            )
        post = self.posteriors / self.posteriors.sum(axis=1, keepdims=True)

        mix = None
        if model.mixture is not None:
            n_comp = model.mixture.n_components
            if self.mixture_posteriors is None:
                mix = np.full((dataset.n_windows, n_comp), 1.0 / n_comp)
            elif self.mixture_posteriors.shape != (dataset.n_windows, n_comp):
                raise ConfigurationError(
                    f"Seed mixture posteriors have shape {self.mixture_posteriors.shape}, "
                    f"expected {(dataset.n_windows, n_comp)}"
                )
            else:
                mix = self.mixture_posteriors / self.mixture_posteriors.sum(axis=1, keepdims=True)

        state = InitialState(post, mix)
        seed_role_params(model, dataset, state)
        return state
