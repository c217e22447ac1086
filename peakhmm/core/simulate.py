"""
Synthetic PeakHMM data

Markov-chain state paths and NB/Poisson window counts for demos,
benchmarks and the test suite.
"""

import numpy as np
import pandas as pd
from typing import List, Optional, Sequence, Tuple

from peakhmm.core.dataset import CountDataset
from peakhmm.core.hmm import default_transmat


def simulate_markov_chain(transmat: np.ndarray, n_steps: int,
                          startprob: Optional[np.ndarray] = None,
                          rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """State path of length n_steps drawn from a Markov chain."""
    rng = rng or np.random.default_rng()
    transmat = np.asarray(transmat, dtype=float)
    k = transmat.shape[0]
    if startprob is None:
        startprob = np.full(k, 1.0 / k)

    states = np.empty(n_steps, dtype=np.int64)
    if n_steps == 0:
        return states
    states[0] = rng.choice(k, p=startprob)
    cumulative = np.cumsum(transmat, axis=1)
    draws = rng.random(n_steps)
    for t in range(1, n_steps):
        states[t] = min(np.searchsorted(cumulative[states[t - 1]], draws[t], side='right'), k - 1)
    return states


def simulate_counts(means: np.ndarray, dispersion: Optional[float] = None,
                    rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """
    Counts with the given means: Poisson if dispersion is None, otherwise
    NB with variance mu(1 + mu/dispersion).
    """
    rng = rng or np.random.default_rng()
    means = np.asarray(means, dtype=float)
    if dispersion is None:
        return rng.poisson(means)
    return rng.negative_binomial(dispersion, dispersion / (dispersion + means))


def _design(conditions: Sequence[str], replicates: int) -> pd.DataFrame:
    rows = [(f"{c}{r + 1}", c, r + 1) for c in conditions for r in range(replicates)]
    return pd.DataFrame(rows, columns=['sample', 'condition', 'replicate'])


def _windows(n_windows: int, n_chromosomes: int, width: int) -> pd.DataFrame:
    sizes = np.full(n_chromosomes, n_windows // n_chromosomes)
    sizes[:n_windows % n_chromosomes] += 1
    chrom = np.repeat([f"chr{i + 1}" for i in range(n_chromosomes)], sizes)
    start = np.concatenate([np.arange(s) * width for s in sizes])
    return pd.DataFrame({'chrom': chrom, 'start': start, 'end': start + width})


def simulate_consensus(n_windows: int = 2000, n_samples: int = 2,
                       background_mean: float = 5.0, enrichment_mean: float = 40.0,
                       dispersion: Optional[float] = 20.0, stay: float = 0.95,
                       n_chromosomes: int = 1, width: int = 500,
                       seed: Optional[int] = None) -> Tuple[CountDataset, np.ndarray]:
    """
    Two-state consensus data: every sample follows the same state path.

    Returns:
        (dataset, true states) with 0 = background, 1 = enrichment
    """
    rng = np.random.default_rng(seed)
    windows = _windows(n_windows, n_chromosomes, width)
    states = simulate_markov_chain(default_transmat(2, stay), n_windows, rng=rng)
    means = np.where(states == 1, enrichment_mean, background_mean)
    counts = simulate_counts(np.repeat(means[:, np.newaxis], n_samples, axis=1), dispersion, rng)
    design = _design(['all'], n_samples)
    return CountDataset(counts, design, windows=windows), states


def simulate_null(n_windows: int = 1000, n_samples: int = 2, mean: float = 10.0,
                  conditions: Sequence[str] = ('all',), n_chromosomes: int = 1,
                  seed: Optional[int] = None) -> CountDataset:
    """Poisson(mean) counts everywhere: no enrichment at all."""
    rng = np.random.default_rng(seed)
    design = _design(list(conditions), n_samples)
    counts = rng.poisson(mean, size=(n_windows, len(design)))
    return CountDataset(counts, design, windows=_windows(n_windows, n_chromosomes, 500))


def simulate_differential(n_windows: int = 1000, replicates: int = 2,
                          conditions: Sequence[str] = ('A', 'B'),
                          regions: Optional[List[Tuple[int, int, Sequence[str]]]] = None,
                          base_mean: float = 10.0, fold: float = 5.0,
                          dispersion: Optional[float] = None, n_chromosomes: int = 1,
                          seed: Optional[int] = None) -> Tuple[CountDataset, np.ndarray]:
    """
    Multi-condition data with known enriched regions.

    Args:
        regions: (start, end, enriched conditions) window ranges; defaults to
            one 50-window block enriched in the first condition only
        fold: Mean multiplier inside enriched regions

    Returns:
        (dataset, truth) where truth is a (windows, G) boolean enrichment matrix
    """
    rng = np.random.default_rng(seed)
    conditions = list(conditions)
    if regions is None:
        mid = n_windows // 2
        regions = [(mid, mid + 50, [conditions[0]])]

    truth = np.zeros((n_windows, len(conditions)), dtype=bool)
    for start, end, enriched in regions:
        for cond in enriched:
            truth[start:end, conditions.index(cond)] = True

    design = _design(conditions, replicates)
    cond_idx = np.array([conditions.index(c) for c in design['condition']])
    means = base_mean * np.where(truth[:, cond_idx], fold, 1.0)
    counts = simulate_counts(means, dispersion, rng)
    return CountDataset(counts, design, windows=_windows(n_windows, n_chromosomes, 500)), truth
