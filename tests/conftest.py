"""
Shared pytest fixtures for PeakHMM tests.
"""
import pytest
import numpy as np
import pandas as pd
import tempfile

from peakhmm.core.dataset import CountDataset
from peakhmm.core.emissions import EmissionParams
from peakhmm.core.hmm import PeakHMM
from peakhmm.core.simulate import simulate_consensus, simulate_null, simulate_differential
from peakhmm.inference.em import EMConfig


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def temp_dir():
    """Temporary directory for file operations."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def two_condition_design():
    """Two conditions, two replicates each."""
    return pd.DataFrame({
        'sample': ['A1', 'A2', 'B1', 'B2'],
        'condition': ['A', 'A', 'B', 'B'],
        'replicate': [1, 2, 1, 2],
    })


@pytest.fixture
def consensus_data():
    """
    Clear two-state data: background mean 5, enrichment mean 40,
    two samples, two chromosomes.
    """
    return simulate_consensus(n_windows=1500, n_samples=2, background_mean=5.0,
                              enrichment_mean=40.0, dispersion=20.0, stay=0.95,
                              n_chromosomes=2, seed=1)


@pytest.fixture(params=[1, 2, 7, 11])
def null_dataset(request):
    """Poisson(10) counts in every window, single chromosome, several seeds."""
    return simulate_null(n_windows=800, n_samples=2, mean=10.0, seed=request.param)


@pytest.fixture
def differential_data():
    """
    Conditions A and B, two replicates each; windows 500-549 are 5x
    elevated in A only.
    """
    return simulate_differential(n_windows=1000, replicates=2, conditions=('A', 'B'),
                                 regions=[(500, 550, ['A'])], base_mean=10.0, fold=5.0,
                                 seed=3)


@pytest.fixture
def fast_config():
    return EMConfig(max_iterations=60, tolerance=1e-6)


@pytest.fixture
def small_dataset(two_condition_design, rng):
    """Tiny 4-sample dataset over two chromosomes (20 windows)."""
    counts = rng.poisson(8, size=(20, 4))
    counts[5:9, :2] += 30
    windows = pd.DataFrame({'chrom': ['chr1'] * 12 + ['chr2'] * 8,
                            'start': np.arange(20) * 200, 'end': np.arange(20) * 200 + 200})
    return CountDataset(counts, two_condition_design, windows=windows)


@pytest.fixture
def differential_model(small_dataset):
    """Hand-set 3-state model for the small dataset."""
    model = PeakHMM(mode='differential', conditions=small_dataset.conditions,
                    sample_conditions=small_dataset.condition_index)
    model.roles['background'] = EmissionParams([np.log(8.0)], 15.0)
    model.roles['enrichment'] = EmissionParams([np.log(38.0)], 8.0)
    model.startprob_ = np.array([0.8, 0.1, 0.1])
    model.transmat_ = np.array([[0.90, 0.05, 0.05],
                                [0.10, 0.85, 0.05],
                                [0.10, 0.05, 0.85]])
    return model


@pytest.fixture
def consensus_model():
    """Hand-set 2-state model for two samples."""
    model = PeakHMM(mode='consensus', sample_conditions=np.zeros(2, dtype=np.int64))
    model.roles['background'] = EmissionParams([np.log(5.0)], 20.0)
    model.roles['enrichment'] = EmissionParams([np.log(40.0)], 20.0)
    model.startprob_ = np.array([0.9, 0.1])
    model.transmat_ = np.array([[0.95, 0.05], [0.05, 0.95]])
    return model
