"""PeakHMM chromosome-parallel E-step and worker pool management."""

import os
import numpy as np
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, Optional

from peakhmm.core.emissions import control_covariate
from peakhmm.core.hmm import forward_backward, PeakHMM

BACKENDS = ('thread', 'process')


@dataclass
class EStepResult:
    """Joined forward-backward output of all chromosomes."""
    posteriors: np.ndarray                      # (windows, n_states)
    mixture_posteriors: Optional[np.ndarray]    # (windows, n_components), given the differential state
    trans_counts: np.ndarray                    # (n_states, n_states) expected transitions
    start_counts: np.ndarray                    # (n_states,) first-window posteriors, summed
    log_likelihood: float
    chrom_log_likelihoods: Dict[str, float] = field(default_factory=dict)


def resolve_n_jobs(n_jobs: int) -> int:
    """0 means one worker per CPU core."""
    if n_jobs == 0:
        return os.cpu_count() or 1
    return max(1, n_jobs)


def make_executor(n_jobs: int = 1, backend: str = 'thread'):
    """
    Worker pool for per-chromosome tasks, or None for serial execution.

    Threads are the default: the numba kernels release the GIL and no
    arrays need pickling. Processes trade start-up and pickling cost for
    full isolation.
    """
    n_jobs = resolve_n_jobs(n_jobs)
    if n_jobs <= 1:
        return None
    if backend == 'process':
        return ProcessPoolExecutor(max_workers=n_jobs)
    return ThreadPoolExecutor(max_workers=n_jobs)


def _chromosome_estep(task):
    """Emission densities, forward-backward and mixture posteriors for one chromosome."""
    model, chrom, counts, offsets, covariate, log_startprob, log_transmat = task
    log_emission, pattern_log_dens = model.log_emissions(counts, offsets, covariate)
    gamma, trans_counts, log_prob = forward_backward(log_startprob, log_transmat, log_emission)
    mix_post = None
    if pattern_log_dens is not None:
        mix_post = model.mixture.conditional_posteriors(pattern_log_dens)
    return chrom, gamma, mix_post, trans_counts, log_prob


def run_estep(model: PeakHMM, dataset, executor=None, n_jobs: int = 1) -> EStepResult:
    """
    E-step over all chromosomes.

    One task per chromosome is submitted to `executor` (or run serially);
    all results are joined in chromosome order before returning, so the
    caller sees a single barrier between E-step and M-step.

    Args:
        model: Current PeakHMM parameters (read-only here)
        dataset: CountDataset
        executor: Optional concurrent.futures executor to reuse
        n_jobs: Pool size when no executor is passed (1 = serial)

    Returns:
        EStepResult
    """
    model._compute_log_probs()
    covariate = control_covariate(dataset.controls) if model.n_coef > 1 else None

    tasks = []
    for chrom, sl in dataset.chromosome_slices():
        tasks.append((model, chrom, dataset.counts[sl], dataset.offsets[sl],
                      None if covariate is None else covariate[sl],
                      model._log_startprob, model._log_transmat))

    own_executor = None
    if executor is None and n_jobs != 1:
        own_executor = executor = make_executor(n_jobs)

    try:
        if executor is None:
            results = [_chromosome_estep(task) for task in tasks]
        else:
            futures = {executor.submit(_chromosome_estep, task): i for i, task in enumerate(tasks)}
            results = [None] * len(tasks)
            for future in as_completed(futures):
                results[futures[future]] = future.result()
    finally:
        if own_executor is not None:
            own_executor.shutdown()

    k = model.n_states
    posteriors = np.vstack([r[1] for r in results])
    mixture_posteriors = None
    if model.mixture is not None:
        mixture_posteriors = np.vstack([r[2] for r in results])

    trans_counts = np.zeros((k, k))
    start_counts = np.zeros(k)
    chrom_ll = {}
    for chrom, gamma, _, tc, lp in results:
        trans_counts += tc
        if len(gamma):
            start_counts += gamma[0]
        chrom_ll[chrom] = lp

    return EStepResult(
        posteriors=posteriors,
        mixture_posteriors=mixture_posteriors,
        trans_counts=trans_counts,
        start_counts=start_counts,
        log_likelihood=float(sum(chrom_ll.values())),
        chrom_log_likelihoods=chrom_ll,
    )
