"""EM fitting, parallel E-step, initialization and fit statistics."""

from peakhmm.inference.parallel import run_estep, EStepResult
from peakhmm.inference.initializer import (
    InitialState,
    Initializer,
    QuantileInitializer,
    PosteriorInitializer,
)
from peakhmm.inference.em import EMConfig, run_em
from peakhmm.inference.assembler import build_model, fit_peaks
from peakhmm.inference.stats import PeakFitResult, PruningEvent, bic

__all__ = [
    'run_estep',
    'EStepResult',
    'InitialState',
    'Initializer',
    'QuantileInitializer',
    'PosteriorInitializer',
    'EMConfig',
    'run_em',
    'build_model',
    'fit_peaks',
    'PeakFitResult',
    'PruningEvent',
    'bic',
]
