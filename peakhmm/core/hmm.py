"""
PeakHMM HMM module

Provides:
1. Numba-compiled log-space forward-backward for an arbitrary number of states
2. PeakHMM, the model object: topology (2-state consensus or 3-state
   differential), shared emission roles, mixture layer, start and
   transition probabilities
3. State normalization (background role = lower mean) and dict serialization

States:
    consensus:    0 background, 1 enrichment
    differential: 0 consensus background, 1 differential (mixture over
                  enrichment patterns), 2 consensus enrichment
"""

import copy
import numpy as np
from typing import Optional, Tuple, Dict, Any, List

from numba import jit

from peakhmm.core.emissions import EmissionParams, log_density
from peakhmm.core.mixture import MixtureLayer

MODES = ('consensus', 'differential')
ROLES = ('background', 'enrichment')
STATE_NAMES = {
    'consensus': ('background', 'enrichment'),
    'differential': ('background', 'differential', 'enrichment'),
}
MIN_PROB = 1e-10


# =============================================================================
# Numba JIT-compiled forward-backward
# =============================================================================

@jit(nopython=True, nogil=True, cache=False)
def _logsumexp_1d(buf):
    m = -np.inf
    for v in buf:
        if v > m:
            m = v
    if m == -np.inf:
        return -np.inf
    s = 0.0
    for v in buf:
        s += np.exp(v - m)
    return m + np.log(s)


@jit(nopython=True, nogil=True, cache=False)
def _forward_backward_numba(log_startprob, log_transmat, log_emission):
    """
    Forward-backward over one sequence in log space.

    Args:
        log_startprob: (K,) log start probabilities
        log_transmat: (K, K) log transition matrix
        log_emission: (T, K) log emission densities

    Returns:
        gamma: (T, K) posterior state probabilities
        trans_counts: (K, K) expected transition counts
        log_prob: log-likelihood of the sequence
    """
    T, K = log_emission.shape
    log_alpha = np.empty((T, K))
    log_beta = np.empty((T, K))
    buf = np.empty(K)

    for j in range(K):
        log_alpha[0, j] = log_startprob[j] + log_emission[0, j]
    for t in range(1, T):
        for j in range(K):
            for i in range(K):
                buf[i] = log_alpha[t - 1, i] + log_transmat[i, j]
            log_alpha[t, j] = _logsumexp_1d(buf) + log_emission[t, j]
    log_prob = _logsumexp_1d(log_alpha[T - 1])

    for j in range(K):
        log_beta[T - 1, j] = 0.0
    for t in range(T - 2, -1, -1):
        for i in range(K):
            for j in range(K):
                buf[j] = log_transmat[i, j] + log_emission[t + 1, j] + log_beta[t + 1, j]
            log_beta[t, i] = _logsumexp_1d(buf)

    gamma = np.empty((T, K))
    for t in range(T):
        s = 0.0
        for k in range(K):
            gamma[t, k] = np.exp(log_alpha[t, k] + log_beta[t, k] - log_prob)
            s += gamma[t, k]
        for k in range(K):
            gamma[t, k] /= s

    trans_counts = np.zeros((K, K))
    for t in range(T - 1):
        for i in range(K):
            for j in range(K):
                trans_counts[i, j] += np.exp(log_alpha[t, i] + log_transmat[i, j]
                                             + log_emission[t + 1, j] + log_beta[t + 1, j]
                                             - log_prob)

    return gamma, trans_counts, log_prob


def forward_backward(log_startprob: np.ndarray, log_transmat: np.ndarray,
                     log_emission: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float]:
    """Run forward-backward on one chromosome (see _forward_backward_numba)."""
    if log_emission.shape[0] == 0:
        K = log_emission.shape[1]
        return np.zeros((0, K)), np.zeros((K, K)), 0.0
    gamma, trans_counts, log_prob = _forward_backward_numba(
        np.ascontiguousarray(log_startprob, dtype=np.float64),
        np.ascontiguousarray(log_transmat, dtype=np.float64),
        np.ascontiguousarray(log_emission, dtype=np.float64),
    )
    return gamma, trans_counts, float(log_prob)


def default_transmat(n_states: int, stay: float = 0.9) -> np.ndarray:
    """Sticky transition matrix: `stay` on the diagonal, the rest spread evenly."""
    if n_states == 1:
        return np.ones((1, 1))
    trans = np.full((n_states, n_states), (1.0 - stay) / (n_states - 1))
    np.fill_diagonal(trans, stay)
    return trans


class PeakHMM:
    """
    Peak-calling HMM with shared NB/ZINB emission roles.

    Every state draws its emission parameters from `roles` (background,
    enrichment). The differential state scores each window with the
    mixture layer, which again uses those two role parameter blocks.

    This implementation uses log probabilities throughout for numerical stability.
    """

    def __init__(self, mode: str = 'consensus', conditions: Optional[List[str]] = None,
                 sample_conditions: Optional[np.ndarray] = None,
                 distribution: str = 'nb', n_coef: int = 1):
        self.mode = mode
        self.distribution = distribution
        self.conditions = [str(c) for c in conditions] if conditions else ['all']
        self.sample_conditions = (None if sample_conditions is None
                                  else np.asarray(sample_conditions, dtype=np.int64))

        zi = 0.0 if distribution == 'zinb' else None
        self.roles: Dict[str, EmissionParams] = {
            'background': EmissionParams(np.zeros(n_coef), 10.0, zi),
            'enrichment': EmissionParams(np.concatenate([[1.0], np.zeros(n_coef - 1)]), 10.0, None),
        }
        self.mixture: Optional[MixtureLayer] = (
            MixtureLayer(self.conditions) if mode == 'differential' else None
        )

        n = self.n_states
        self.startprob_: np.ndarray = np.full(n, 1.0 / n)
        self.transmat_: np.ndarray = default_transmat(n)

        self._log_startprob: Optional[np.ndarray] = None
        self._log_transmat: Optional[np.ndarray] = None

    # -------------------------------------------------------------------------
    # Topology
    # -------------------------------------------------------------------------

    @property
    def state_names(self) -> Tuple[str, ...]:
        return STATE_NAMES[self.mode]

    @property
    def n_states(self) -> int:
        return len(STATE_NAMES[self.mode])

    @property
    def n_coef(self) -> int:
        return len(self.roles['background'].coef)

    @property
    def differential_state(self) -> Optional[int]:
        return 1 if self.mode == 'differential' else None

    def copy(self) -> 'PeakHMM':
        return copy.deepcopy(self)

    def _compute_log_probs(self):
        """Convert probabilities to log space."""
        with np.errstate(divide='ignore'):
            self._log_startprob = np.log(self.startprob_)
            self._log_transmat = np.log(self.transmat_)

    # -------------------------------------------------------------------------
    # Emissions
    # -------------------------------------------------------------------------

    def role_log_densities(self, counts: np.ndarray, offsets: np.ndarray,
                           covariate: Optional[np.ndarray] = None) -> Dict[str, np.ndarray]:
        """Windows x samples log densities under each role."""
        return {
            role: log_density(params, counts, offsets, covariate, self.distribution)
            for role, params in self.roles.items()
        }

    def _condition_sums(self, dens: np.ndarray) -> np.ndarray:
        onehot = np.zeros((dens.shape[1], len(self.conditions)))
        onehot[np.arange(dens.shape[1]), self.sample_conditions] = 1.0
        return dens @ onehot

    def log_emissions(self, counts: np.ndarray, offsets: np.ndarray,
                      covariate: Optional[np.ndarray] = None) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """
        Log emission density of every window under every state.

        Returns:
            log_emission: (windows, n_states)
            pattern_log_dens: (windows, n_components) for the differential
                mode, None for consensus
        """
        dens = self.role_log_densities(counts, offsets, covariate)
        if self.mode == 'consensus':
            log_emission = np.column_stack([dens['background'].sum(axis=1),
                                            dens['enrichment'].sum(axis=1)])
            return log_emission, None

        bg = self._condition_sums(dens['background'])
        enr = self._condition_sums(dens['enrichment'])
        pattern_log_dens = self.mixture.pattern_log_densities(bg, enr)
        log_emission = np.column_stack([bg.sum(axis=1),
                                        self.mixture.log_density(pattern_log_dens),
                                        enr.sum(axis=1)])
        return log_emission, pattern_log_dens

    def role_weights(self, posteriors: np.ndarray,
                     mixture_posteriors: Optional[np.ndarray] = None) -> Dict[str, np.ndarray]:
        """
        Posterior probability that each count was drawn from each role.

        Consensus: the state posterior of the window. Differential: the
        consensus state posterior plus the differential-state posterior times
        the probability that the sample's condition is on (enrichment) or
        off (background) under the mixture.

        Returns:
            {role: (windows, samples) case weights}
        """
        n_samples = len(self.sample_conditions)
        if self.mode == 'consensus':
            return {
                'background': np.repeat(posteriors[:, [0]], n_samples, axis=1),
                'enrichment': np.repeat(posteriors[:, [1]], n_samples, axis=1),
            }
        on = self.mixture.enrichment_probability(mixture_posteriors)[:, self.sample_conditions]
        diff = posteriors[:, [1]]
        return {
            'background': posteriors[:, [0]] + diff * (1.0 - on),
            'enrichment': posteriors[:, [2]] + diff * on,
        }

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    def predict_proba(self, dataset, n_jobs: int = 1) -> np.ndarray:
        """
        Posterior state probabilities P(state | counts) for every window.

        Chromosomes are independent sequences. Each row sums to 1.0.
        """
        from peakhmm.inference.parallel import run_estep
        return run_estep(self, dataset, n_jobs=n_jobs).posteriors

    def score(self, dataset, n_jobs: int = 1) -> float:
        """Total log-likelihood summed over chromosomes."""
        from peakhmm.inference.parallel import run_estep
        return run_estep(self, dataset, n_jobs=n_jobs).log_likelihood

    def fit(self, dataset, config=None, initializer=None):
        """Fit by EM (see peakhmm.inference.em.run_em). Returns a PeakFitResult."""
        from peakhmm.inference.em import run_em
        return run_em(self, dataset, config=config, initializer=initializer)

    # -------------------------------------------------------------------------
    # Parameters
    # -------------------------------------------------------------------------

    def set_transitions(self, start_counts: np.ndarray, trans_counts: np.ndarray):
        """Baum-Welch update from expected start and transition counts."""
        start = np.asarray(start_counts, dtype=float)
        if start.sum() > 0:
            start = np.clip(start / start.sum(), MIN_PROB, 1.0)
            self.startprob_ = start / start.sum()

        trans_sums = trans_counts.sum(axis=1, keepdims=True)
        trans = np.where(trans_sums > 0, trans_counts / np.where(trans_sums == 0, 1, trans_sums),
                         self.transmat_)
        trans = np.clip(trans, MIN_PROB, 1.0)
        self.transmat_ = trans / trans.sum(axis=1, keepdims=True)
        self._compute_log_probs()

    def adopt_parameters(self, other: 'PeakHMM'):
        """Take over the fitted roles, mixture and transitions of another model."""
        self.roles = other.roles
        self.mixture = other.mixture
        self.startprob_ = other.startprob_
        self.transmat_ = other.transmat_
        self._compute_log_probs()

    def n_parameters(self) -> int:
        """Free parameter count (roles, start, transitions, live mixing proportions)."""
        k = self.n_states
        n = sum(p.n_parameters() for p in self.roles.values())
        n += (k - 1) + k * (k - 1)
        if self.mixture is not None:
            n += self.mixture.n_active - 1
        return n

    def parameter_vector(self) -> np.ndarray:
        """All parameters flattened (used for parameter-change convergence criteria)."""
        parts = [self.roles[r].vector() for r in ROLES]
        parts += [self.startprob_, self.transmat_.ravel()]
        if self.mixture is not None:
            parts.append(self.mixture.weights)
        return np.concatenate(parts)

    def normalize_states(self, verbose: bool = False) -> bool:
        """
        Ensure the background role has the lower mean.

        EM can converge with the roles exchanged. If the background intercept
        exceeds the enrichment intercept the roles are swapped, together with
        the state order, start/transition probabilities and (differential)
        every mixture pattern is replaced by its complement.

        Zero-inflated models are left alone: the structural-zero component
        belongs to the background role by definition.

        Returns:
            True if roles were swapped, False otherwise
        """
        bg = self.roles['background'].intercept
        enr = self.roles['enrichment'].intercept

        if verbose:
            print(f"Role intercepts: background = {bg:.4f}, enrichment = {enr:.4f}")

        if bg <= enr:
            return False
        if self.roles['background'].zero_inflation is not None:
            if verbose:
                print("Background intercept above enrichment, but the model is zero-inflated; not swapping")
            return False

        if verbose:
            print("Roles are REVERSED - swapping background and enrichment")

        self.roles = {'background': self.roles['enrichment'],
                      'enrichment': self.roles['background']}
        perm = np.arange(self.n_states)[::-1]
        self.startprob_ = self.startprob_[perm]
        self.transmat_ = self.transmat_[perm, :][:, perm]
        if self.mixture is not None:
            self.mixture.swap_roles()

        self._log_startprob = None
        self._log_transmat = None
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Serialize model to dictionary."""
        return {
            'model_type': 'PeakHMM',
            'mode': self.mode,
            'distribution': self.distribution,
            'conditions': self.conditions,
            'sample_conditions': (None if self.sample_conditions is None
                                  else self.sample_conditions.tolist()),
            'roles': {r: p.to_dict() for r, p in self.roles.items()},
            'mixture': self.mixture.to_dict() if self.mixture is not None else None,
            'startprob': self.startprob_.tolist(),
            'transmat': self.transmat_.tolist(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'PeakHMM':
        """Deserialize model from dictionary."""
        roles = {r: EmissionParams.from_dict(p) for r, p in d['roles'].items()}
        model = cls(mode=d['mode'], conditions=d['conditions'],
                    sample_conditions=d.get('sample_conditions'),
                    distribution=d.get('distribution', 'nb'),
                    n_coef=len(roles['background'].coef))
        model.roles = roles
        if d.get('mixture') is not None:
            model.mixture = MixtureLayer.from_dict(d['mixture'])
        model.startprob_ = np.array(d['startprob'])
        model.transmat_ = np.array(d['transmat'])
        return model

    def __repr__(self):
        extra = f", {self.mixture.n_active} components" if self.mixture is not None else ''
        return f"PeakHMM(mode={self.mode!r}, distribution={self.distribution!r}{extra})"
