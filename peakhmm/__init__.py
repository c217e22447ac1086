"""
PeakHMM - Hidden Markov Model toolkit for calling consensus and
differential enrichment peaks from multi-sample genomic count data
(ChIP-seq, ATAC-seq and similar assays binned into windows).
"""

__version__ = "1.0.0"

from peakhmm.core.exceptions import (
    ConfigurationError,
    NumericalInstabilityWarning,
    LikelihoodRegressionWarning,
    NonConvergenceWarning,
)
from peakhmm.core.dataset import CountDataset, add_offsets
from peakhmm.core.hmm import PeakHMM
from peakhmm.core.model_io import load_model, save_model, load_model_with_metadata
from peakhmm.inference.em import EMConfig, run_em
from peakhmm.inference.assembler import build_model, fit_peaks
from peakhmm.inference.stats import PeakFitResult
