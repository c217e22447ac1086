"""
PeakHMM mixture layer for the differential state

Every non-empty, non-full subset of the G conditions is one enrichment
pattern (2^G - 2 components). Samples of the "on" conditions of a pattern
are scored with the enrichment role, the rest with the background role;
the role parameters themselves live on the PeakHMM and are shared.

Components are kept in a fixed arena with a live/pruned mask, so indices
never move when components are pruned.
"""

import numpy as np
from typing import List, Optional, Dict, Any

from scipy.special import logsumexp


def enumerate_patterns(n_conditions: int) -> np.ndarray:
    """
    All non-trivial enrichment patterns over n_conditions conditions.

    Pattern k corresponds to bitmask k + 1 (bit g set = condition g enriched),
    so the rows run over masks 1 .. 2^G - 2.

    Returns:
        Boolean array, shape (2^G - 2, G)
    """
    if n_conditions < 2:
        return np.zeros((0, n_conditions), dtype=bool)
    masks = np.arange(1, 2 ** n_conditions - 1)
    bits = np.arange(n_conditions)
    return ((masks[:, np.newaxis] >> bits) & 1).astype(bool)


def pattern_labels(patterns: np.ndarray, conditions: List[str]) -> List[str]:
    """Readable names such as 'A+C' listing the enriched conditions of each pattern."""
    return ['+'.join(c for c, on in zip(conditions, row) if on) for row in patterns]


class MixtureLayer:
    """
    Mixing proportions over combinatorial enrichment patterns.

    Attributes:
        conditions: Condition labels, pattern columns follow this order
        patterns: (n_components, G) boolean enrichment patterns
        weights: (n_components,) mixing proportions, 0 for pruned components
        active: (n_components,) live mask
    """

    def __init__(self, conditions: List[str], weights: Optional[np.ndarray] = None,
                 active: Optional[np.ndarray] = None):
        self.conditions = [str(c) for c in conditions]
        self.patterns = enumerate_patterns(len(self.conditions))
        self.labels = pattern_labels(self.patterns, self.conditions)
        n = len(self.patterns)

        self.active = np.ones(n, dtype=bool) if active is None else np.asarray(active, dtype=bool).copy()
        if weights is None:
            weights = np.ones(n)
        self.weights = np.where(self.active, np.asarray(weights, dtype=float), 0.0)
        self.weights /= self.weights.sum()

    @property
    def n_components(self) -> int:
        """Arena size, pruned components included."""
        return len(self.patterns)

    @property
    def n_active(self) -> int:
        return int(self.active.sum())

    @property
    def active_indices(self) -> np.ndarray:
        return np.flatnonzero(self.active)

    @property
    def log_weights(self) -> np.ndarray:
        with np.errstate(divide='ignore'):
            return np.where(self.active, np.log(self.weights), -np.inf)

    def copy(self) -> 'MixtureLayer':
        return MixtureLayer(self.conditions, self.weights.copy(), self.active.copy())

    def pattern_log_densities(self, background: np.ndarray, enrichment: np.ndarray) -> np.ndarray:
        """
        Log density of every window under every pattern.

        Args:
            background: (windows, G) per-condition sums of background-role log densities
            enrichment: (windows, G) same under the enrichment role

        Returns:
            (windows, n_components); pruned components are -inf
        """
        dens = background.sum(axis=1, keepdims=True) + (enrichment - background) @ self.patterns.T.astype(float)
        dens[:, ~self.active] = -np.inf
        return dens

    def log_density(self, pattern_log_dens: np.ndarray) -> np.ndarray:
        """Mixture log density per window: logsumexp_k(log pi_k + pattern_k)."""
        return logsumexp(pattern_log_dens + self.log_weights, axis=1)

    def conditional_posteriors(self, pattern_log_dens: np.ndarray) -> np.ndarray:
        """P(component | window, differential state); rows sum to 1 over live components."""
        joint = pattern_log_dens + self.log_weights
        post = np.exp(joint - logsumexp(joint, axis=1, keepdims=True))
        post[:, ~self.active] = 0.0
        return post / post.sum(axis=1, keepdims=True)

    def enrichment_probability(self, conditional: np.ndarray) -> np.ndarray:
        """P(condition enriched | window, differential state), shape (windows, G)."""
        return conditional @ self.patterns.astype(float)

    def update_weights(self, expected: np.ndarray, floor: float = 0.0):
        """Set proportions to the normalised expected occupancy of the live components."""
        new = np.where(self.active, np.maximum(np.asarray(expected, dtype=float), floor), 0.0)
        total = new.sum()
        if total <= 0 or not np.isfinite(total):
            return
        self.weights = new / total

    def prune(self, threshold: float) -> Optional[int]:
        """
        Remove the single smallest live component if it falls below threshold.

        Only one component goes per call, even when several are below the
        threshold. Nothing is removed once a single component is left.

        Returns:
            Arena index of the pruned component, or None
        """
        if self.n_active <= 1:
            return None
        live = self.active_indices
        smallest = live[np.argmin(self.weights[live])]
        if self.weights[smallest] >= threshold:
            return None
        self.active[smallest] = False
        self.weights[smallest] = 0.0
        self.weights /= self.weights.sum()
        return int(smallest)

    def complement_permutation(self) -> np.ndarray:
        """Arena index of each pattern's complement (on/off swapped)."""
        full = 2 ** len(self.conditions) - 1
        masks = np.arange(1, full)
        return (full ^ masks) - 1

    def swap_roles(self):
        """Relabel every component as its complement (used when roles are swapped)."""
        perm = self.complement_permutation()
        self.weights = self.weights[perm]
        self.active = self.active[perm]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'conditions': self.conditions,
            'labels': self.labels,
            'weights': self.weights.tolist(),
            'active': self.active.tolist(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'MixtureLayer':
        return cls(d['conditions'], np.array(d['weights']), np.array(d['active'], dtype=bool))
