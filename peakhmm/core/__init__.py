"""Core data containers, emission models, mixture layer and HMM algorithms."""

from peakhmm.core.dataset import CountDataset, add_offsets
from peakhmm.core.emissions import EmissionParams, fit_emission, log_density
from peakhmm.core.mixture import MixtureLayer, enumerate_patterns
from peakhmm.core.hmm import PeakHMM, forward_backward
from peakhmm.core.model_io import load_model, save_model, load_model_with_metadata
