"""
PeakHMM EM orchestrator

Alternates the chromosome-parallel E-step with an M-step that
1. refits the background and enrichment role GLMs by weighted IRLS
   (posterior probabilities as case weights),
2. updates the mixing proportions of the differential state from the
   expected component occupancy,
3. updates start and transition probabilities (Baum-Welch).

Rejection control: a candidate update that lowers the log-likelihood is
rolled back block by block (one role, then both roles, then everything)
until the log-likelihood no longer drops, so the log-likelihood sequence
never decreases between pruning events.

Pruning: with a threshold set, the single smallest mixture component is
removed after an accepted update whenever its proportion falls below the
threshold; EM then continues from the current parameters.
"""

import time
import warnings
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Tuple

from tqdm import tqdm

from peakhmm.core.emissions import (
    fit_emission, control_covariate, FitReport, DISTRIBUTIONS, DEFAULT_DISPERSION_BOUNDS,
)
from peakhmm.core.exceptions import (
    ConfigurationError, LikelihoodRegressionWarning, NonConvergenceWarning,
)
from peakhmm.core.hmm import PeakHMM, ROLES
from peakhmm.inference.initializer import InitialState, QuantileInitializer
from peakhmm.inference.parallel import EStepResult, run_estep, make_executor, BACKENDS
from peakhmm.inference.stats import PeakFitResult, PruningEvent, bic

CRITERIA = ('loglik', 'relative_params', 'absolute_params')


@dataclass
class EMConfig:
    """
    EM run options.

    Attributes:
        max_iterations: Iteration cap; reaching it is reported, not fatal
        tolerance: Convergence threshold for the chosen criterion
        min_iterations: Iterations to run before convergence is checked
        gap_iterations: Consecutive iterations that must meet the tolerance
        criterion: 'loglik' (relative log-likelihood change),
            'relative_params' or 'absolute_params' (largest parameter change)
        pruning_threshold: Mixing proportion below which a component is
            pruned; None disables pruning
        distribution: 'nb' or 'zinb' (zero inflation on the background role)
        verbose: Progress bar and status lines
        quiet_pruning: Suppress the per-event pruning report
        irls_max_iterations, irls_tolerance: IRLS stopping rule
        dispersion_bounds: (min, max) NB dispersion
        n_jobs: Worker count for chromosome tasks (0 = all cores)
        backend: 'thread' or 'process'
        max_time: Wall-clock budget in seconds (None = unlimited)
        regression_tolerance: Relative log-likelihood drop tolerated before
            an update is rejected
    """
    max_iterations: int = 300
    tolerance: float = 1e-5
    min_iterations: int = 3
    gap_iterations: int = 1
    criterion: str = 'loglik'
    pruning_threshold: Optional[float] = None
    distribution: str = 'nb'
    verbose: bool = False
    quiet_pruning: bool = True
    irls_max_iterations: int = 50
    irls_tolerance: float = 1e-8
    dispersion_bounds: Tuple[float, float] = DEFAULT_DISPERSION_BOUNDS
    n_jobs: int = 1
    backend: str = 'thread'
    max_time: Optional[float] = None
    regression_tolerance: float = 0.0

    def validate(self):
        """Raise ConfigurationError on inconsistent options."""
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.tolerance <= 0:
            raise ConfigurationError(f"tolerance must be positive, got {self.tolerance}")
        if self.min_iterations < 0 or self.gap_iterations < 1:
            raise ConfigurationError("min_iterations must be >= 0 and gap_iterations >= 1")
        if self.criterion not in CRITERIA:
            raise ConfigurationError(f"criterion must be one of {CRITERIA}, got {self.criterion!r}")
        if self.pruning_threshold is not None and not 0.0 <= self.pruning_threshold <= 1.0:
            raise ConfigurationError(
                f"pruning_threshold must be in [0, 1] or None, got {self.pruning_threshold}"
            )
        if self.distribution not in DISTRIBUTIONS:
            raise ConfigurationError(
                f"distribution must be one of {DISTRIBUTIONS}, got {self.distribution!r}"
            )
        lo, hi = self.dispersion_bounds
        if not 0 < lo < hi:
            raise ConfigurationError(f"invalid dispersion_bounds {self.dispersion_bounds}")
        if self.backend not in BACKENDS:
            raise ConfigurationError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if self.n_jobs < 0:
            raise ConfigurationError(f"n_jobs must be >= 0, got {self.n_jobs}")
        if self.regression_tolerance < 0:
            raise ConfigurationError("regression_tolerance must be >= 0")


# =============================================================================
# M-step
# =============================================================================

def _fit_role(args):
    role, params, counts, offsets, weights, covariate, distribution, config = args
    return fit_emission(params, counts, offsets, weights, covariate,
                        distribution=distribution,
                        max_iter=config.irls_max_iterations,
                        tol=config.irls_tolerance,
                        dispersion_bounds=config.dispersion_bounds,
                        role=role)


def maximize(model: PeakHMM, dataset, estep: EStepResult, config: EMConfig,
             covariate: Optional[np.ndarray] = None,
             executor=None) -> Tuple[PeakHMM, List[FitReport]]:
    """
    M-step: new parameters from the posteriors of `estep`.

    The role fits are independent given the posteriors and run on the
    executor when one is given.

    Returns:
        (candidate model, one FitReport per role)
    """
    candidate = model.copy()
    candidate.set_transitions(estep.start_counts, estep.trans_counts)

    if candidate.mixture is not None:
        diff = candidate.differential_state
        expected = (estep.posteriors[:, [diff]] * estep.mixture_posteriors).sum(axis=0)
        candidate.mixture.update_weights(expected)

    weights = model.role_weights(estep.posteriors, estep.mixture_posteriors)
    jobs = [(role, model.roles[role], dataset.counts, dataset.offsets, weights[role],
             covariate, model.distribution, config) for role in ROLES]
    if executor is None:
        fits = [_fit_role(job) for job in jobs]
    else:
        fits = list(executor.map(_fit_role, jobs))

    reports = []
    for role, (params, report) in zip(ROLES, fits):
        candidate.roles[role] = params
        reports.append(report)
    return candidate, reports


def seed_estep(state: InitialState, dataset) -> EStepResult:
    """Pseudo E-step from initializer posteriors (transitions from neighbour products)."""
    post = np.asarray(state.posteriors, dtype=float)
    k = post.shape[1]
    trans_counts = np.zeros((k, k))
    start_counts = np.zeros(k)
    for _, sl in dataset.chromosome_slices():
        g = post[sl]
        if len(g) == 0:
            continue
        start_counts += g[0]
        trans_counts += g[:-1].T @ g[1:]
    return EStepResult(post, state.mixture_posteriors, trans_counts, start_counts, float('nan'))


# =============================================================================
# Rejection control
# =============================================================================

def _is_regression(new_ll: float, old_ll: float, tolerance: float) -> bool:
    if not np.isfinite(new_ll):
        return True
    return new_ll < old_ll - tolerance * abs(old_ll)


def rejection_control(current: PeakHMM, current_estep: EStepResult,
                      candidate: PeakHMM, dataset, config: EMConfig,
                      executor=None) -> Tuple[PeakHMM, EStepResult, List[str]]:
    """
    Roll back parts of an update that lowered the log-likelihood.

    Tries, in order: keeping the previous background role, keeping the
    previous enrichment role, keeping both roles (transition and mixture
    updates only), and finally the previous parameters altogether.

    Returns:
        (accepted model, its E-step, names of the reverted blocks)
    """
    trials = []
    for role in ROLES:
        trial = candidate.copy()
        trial.roles[role] = current.roles[role].copy()
        trials.append(([role], trial))
    trial = candidate.copy()
    for role in ROLES:
        trial.roles[role] = current.roles[role].copy()
    trials.append((list(ROLES), trial))

    old_ll = current_estep.log_likelihood
    for blocks, trial in trials:
        estep = run_estep(trial, dataset, executor=executor)
        if not _is_regression(estep.log_likelihood, old_ll, config.regression_tolerance):
            return trial, estep, blocks

    return current, current_estep, ['all']


# =============================================================================
# Convergence
# =============================================================================

def _change(config: EMConfig, ll: float, ll_prev: float,
            params: np.ndarray, params_prev: np.ndarray) -> float:
    if config.criterion == 'loglik':
        return abs(ll - ll_prev) / (abs(ll_prev) + 1e-300)
    diff = np.abs(params - params_prev)
    if config.criterion == 'relative_params':
        return float(np.max(diff / (np.abs(params_prev) + 1e-8)))
    return float(np.max(diff))


# =============================================================================
# EM loop
# =============================================================================

def _role_order_message(model: PeakHMM) -> Optional[str]:
    """Diagnostic for a fit left with the background role above the enrichment role."""
    bg = model.roles['background'].intercept
    enr = model.roles['enrichment'].intercept
    if bg <= enr:
        return None
    return (f"Background intercept ({bg:.4f}) exceeds enrichment intercept ({enr:.4f}); "
            f"roles were not swapped because the background role is zero-inflated")


def run_em(model: PeakHMM, dataset, config: Optional[EMConfig] = None,
           initializer=None) -> PeakFitResult:
    """
    Fit a PeakHMM by rejection-controlled EM with optional pruning.

    Args:
        model: Assembled PeakHMM (see peakhmm.inference.assembler.build_model);
            updated in place with the final estimates
        dataset: CountDataset
        config: EMConfig (defaults if None)
        initializer: Callable (model, dataset) -> InitialState;
            QuantileInitializer() if None

    Returns:
        PeakFitResult
    """
    config = config or EMConfig()
    config.validate()
    initializer = initializer or QuantileInitializer()
    if model.sample_conditions is None:
        model.sample_conditions = (dataset.condition_index if model.mode == 'differential'
                                   else np.zeros(dataset.n_samples, dtype=np.int64))

    start_time = time.time()
    covariate = control_covariate(dataset.controls) if model.n_coef > 1 else None
    n_obs = dataset.n_windows

    state = initializer(model, dataset)
    lo, hi = config.dispersion_bounds
    for params in model.roles.values():
        params.dispersion = float(np.clip(params.dispersion, lo, hi))

    history: List[float] = []
    pruning_events: List[PruningEvent] = []
    fit_reports: List[FitReport] = []
    messages: List[str] = []
    n_rejections = 0
    converged = False
    streak = 0
    iteration = 0

    executor = make_executor(config.n_jobs, config.backend)
    try:
        # Iteration 0: M-step from the seed posteriors, then the first E-step
        current, reports = maximize(model, dataset, seed_estep(state, dataset), config,
                                    covariate, executor)
        fit_reports.extend(reports)
        estep = run_estep(current, dataset, executor=executor)
        history.append(estep.log_likelihood)

        if config.verbose:
            print(f"Initial log-likelihood: {estep.log_likelihood:.4f}")

        iterator = range(1, config.max_iterations + 1)
        if config.verbose:
            iterator = tqdm(iterator, desc="EM", leave=False)

        for iteration in iterator:
            ll_prev = estep.log_likelihood
            params_prev = current.parameter_vector()

            # M-step and E-step on the candidate
            candidate, reports = maximize(current, dataset, estep, config, covariate, executor)
            fit_reports.extend(reports)
            cand_estep = run_estep(candidate, dataset, executor=executor)

            # Rejection control
            if _is_regression(cand_estep.log_likelihood, ll_prev, config.regression_tolerance):
                n_rejections += 1
                candidate, cand_estep, blocks = rejection_control(
                    current, estep, candidate, dataset, config, executor)
                msg = (f"Iteration {iteration}: update lowered the log-likelihood; "
                       f"reverted {', '.join(blocks)}")
                messages.append(msg)
                warnings.warn(msg, LikelihoodRegressionWarning)

            current, estep = candidate, cand_estep
            history.append(estep.log_likelihood)

            # Pruning check
            pruned = None
            if config.pruning_threshold is not None and current.mixture is not None:
                n_params_before = current.n_parameters()
                weights_before = current.mixture.weights.copy()
                pruned = current.mixture.prune(config.pruning_threshold)
                if pruned is not None:
                    ll_before = estep.log_likelihood
                    estep = run_estep(current, dataset, executor=executor)
                    event = PruningEvent(
                        iteration=iteration,
                        component=pruned,
                        label=current.mixture.labels[pruned],
                        weight=float(weights_before[pruned]),
                        log_likelihood_before=ll_before,
                        log_likelihood_after=estep.log_likelihood,
                        bic_before=bic(ll_before, n_params_before, n_obs),
                        bic_after=bic(estep.log_likelihood, current.n_parameters(), n_obs),
                        n_remaining=current.mixture.n_active,
                    )
                    pruning_events.append(event)
                    history[-1] = estep.log_likelihood
                    if not config.quiet_pruning:
                        print(event.describe())
                    if current.mixture.n_active == 1:
                        messages.append("Degenerate mixture: a single component remains; "
                                        "pruning stopped")
                    streak = 0

            # Convergence check, skipped on the iteration that pruned
            if pruned is None:
                change = _change(config, estep.log_likelihood, ll_prev,
                                 current.parameter_vector(), params_prev)
                streak = streak + 1 if change < config.tolerance else 0

                if config.verbose and hasattr(iterator, 'set_postfix'):
                    iterator.set_postfix({'logL': f'{estep.log_likelihood:.6e}',
                                          'delta': f'{change:.2e}'})

                if iteration >= config.min_iterations and streak >= config.gap_iterations:
                    converged = True
                    break

            if config.max_time is not None and time.time() - start_time > config.max_time:
                messages.append(f"Time budget of {config.max_time:.0f}s exhausted "
                                f"after {iteration} iterations")
                break

        if config.verbose:
            iterator.close()

        if not converged:
            msg = (f"EM did not converge in {iteration} iterations "
                   f"(max_iterations={config.max_iterations}); returning the last estimates")
            messages.append(msg)
            warnings.warn(msg, NonConvergenceWarning)

        if current.normalize_states(verbose=config.verbose):
            estep = run_estep(current, dataset, executor=executor)
            if current.mixture is not None:
                perm = current.mixture.complement_permutation()
                for event in pruning_events:
                    event.component = int(perm[event.component])
                    event.label = current.mixture.labels[event.component]

        order_msg = _role_order_message(current)
        if order_msg is not None:
            messages.append(order_msg)
    finally:
        if executor is not None:
            executor.shutdown()

    # Publish the final estimates on the caller's model object
    model.adopt_parameters(current)

    elapsed = time.time() - start_time
    if config.verbose:
        status = 'converged' if converged else 'stopped'
        print(f"EM {status} after {iteration} iterations ({elapsed:.1f}s), "
              f"log-likelihood {estep.log_likelihood:.4f}")

    return PeakFitResult(
        model=model,
        posteriors=estep.posteriors,
        mixture_posteriors=estep.mixture_posteriors,
        log_likelihood=estep.log_likelihood,
        n_iterations=iteration,
        converged=converged,
        history=history,
        pruning_events=pruning_events,
        n_rejections=n_rejections,
        fit_reports=fit_reports,
        messages=messages,
        n_observations=n_obs,
        elapsed=elapsed,
    )
