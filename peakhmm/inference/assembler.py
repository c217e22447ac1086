"""
PeakHMM model assembly

Builds the HMM topology for a run and checks the inputs before any EM
iteration:
    consensus:    2 states, every sample pooled into a single group
    differential: 3 states, mixture over the 2^G - 2 enrichment patterns
                  of the G conditions
"""

import numpy as np
from typing import Optional

from peakhmm.core.dataset import CountDataset
from peakhmm.core.emissions import DISTRIBUTIONS
from peakhmm.core.exceptions import ConfigurationError
from peakhmm.core.hmm import PeakHMM, MODES
from peakhmm.inference.em import EMConfig, run_em
from peakhmm.inference.stats import PeakFitResult


def check_inputs(dataset, mode: str, distribution: str, config: Optional[EMConfig] = None):
    """Raise ConfigurationError for any invalid combination of inputs."""
    if mode not in MODES:
        raise ConfigurationError(f"mode must be one of {MODES}, got {mode!r}")
    if distribution not in DISTRIBUTIONS:
        raise ConfigurationError(f"distribution must be one of {DISTRIBUTIONS}, got {distribution!r}")
    if not isinstance(dataset, CountDataset):
        raise ConfigurationError(f"Expected a CountDataset, got {type(dataset).__name__}")
    if mode == 'differential' and dataset.n_conditions < 2:
        raise ConfigurationError(
            f"Differential mode needs at least 2 conditions, the design has {dataset.n_conditions}"
        )
    if config is not None:
        config.validate()
        if config.distribution != distribution:
            raise ConfigurationError(
                f"distribution {distribution!r} conflicts with EMConfig.distribution "
                f"{config.distribution!r}"
            )


def build_model(dataset: CountDataset, mode: str = 'consensus',
                distribution: str = 'nb') -> PeakHMM:
    """
    PeakHMM wired for `dataset`.

    A model with control counts gets a second mean-model coefficient for
    the log1p(control) covariate.
    """
    check_inputs(dataset, mode, distribution)
    n_coef = 2 if dataset.has_controls else 1
    if mode == 'consensus':
        return PeakHMM(mode='consensus', conditions=['all'],
                       sample_conditions=np.zeros(dataset.n_samples, dtype=np.int64),
                       distribution=distribution, n_coef=n_coef)
    return PeakHMM(mode='differential', conditions=dataset.conditions,
                   sample_conditions=dataset.condition_index,
                   distribution=distribution, n_coef=n_coef)


def fit_peaks(dataset: CountDataset, mode: str = 'consensus',
              config: Optional[EMConfig] = None, initializer=None) -> PeakFitResult:
    """
    Assemble a PeakHMM and fit it by EM.

    Args:
        dataset: CountDataset
        mode: 'consensus' or 'differential'
        config: EMConfig (defaults if None); its distribution picks NB or ZINB
        initializer: EM initializer (QuantileInitializer if None)

    Returns:
        PeakFitResult
    """
    config = config or EMConfig()
    check_inputs(dataset, mode, config.distribution, config)
    model = build_model(dataset, mode, config.distribution)

    if config.verbose:
        print(f"Fitting {mode} PeakHMM ({config.distribution}) on {dataset!r}")
        if model.mixture is not None:
            print(f"  Mixture components: {model.mixture.n_components} "
                  f"({', '.join(model.mixture.labels)})")

    return run_em(model, dataset, config=config, initializer=initializer)
