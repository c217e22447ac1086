"""
PeakHMM count dataset

Holds the inputs of a peak-calling run:
1. Count matrix (genomic windows x samples, non-negative integers)
2. Offset matrix (same shape, log-scale normalization terms)
3. Design table (condition and replicate per sample)
4. Window table (chromosome of each window; chromosomes are contiguous)
5. Optional control-experiment counts (same shape as the counts)

Counts, controls and the design are fixed at construction. Offsets are only
ever accumulated through add_offsets(), which returns a new dataset.
"""

import numpy as np
import pandas as pd
from typing import List, Optional, Tuple, Union

from peakhmm.core.exceptions import ConfigurationError

WINDOW_COLUMNS = ('chrom', 'start', 'end')


def _as_matrix(values, name: str, dtype) -> np.ndarray:
    if isinstance(values, pd.DataFrame):
        values = values.to_numpy()
    arr = np.array(values, dtype=dtype, copy=True)
    if arr.ndim == 1:
        arr = arr[:, np.newaxis]
    if arr.ndim != 2:
        raise ConfigurationError(f"{name} must be a 2-D windows x samples matrix, got {arr.ndim}-D")
    return arr


class CountDataset:
    """Counts, offsets, design and window layout for one PeakHMM run."""

    def __init__(self, counts: Union[np.ndarray, pd.DataFrame],
                 design: pd.DataFrame,
                 windows: Optional[pd.DataFrame] = None,
                 offsets: Optional[Union[np.ndarray, pd.DataFrame]] = None,
                 controls: Optional[Union[np.ndarray, pd.DataFrame]] = None):
        if isinstance(counts, pd.DataFrame) and not np.all(np.isfinite(counts.to_numpy(dtype=float))):
            raise ConfigurationError("Count matrix contains missing or non-finite values")

        raw = _as_matrix(counts, 'Count matrix', float)
        if not np.all(np.isfinite(raw)):
            raise ConfigurationError("Count matrix contains missing or non-finite values")
        if np.any(raw < 0):
            raise ConfigurationError("Count matrix contains negative values")
        if np.any(raw != np.round(raw)):
            raise ConfigurationError("Count matrix must contain integer counts")
        self.counts = raw.astype(np.int64)
        n_windows, n_samples = self.counts.shape

        self.design = self._check_design(design, n_samples, counts)

        if windows is None:
            windows = pd.DataFrame({'chrom': ['chr1'] * n_windows})
        if 'chrom' not in windows.columns:
            raise ConfigurationError("Window table needs a 'chrom' column")
        if len(windows) != n_windows:
            raise ConfigurationError(
                f"Window table has {len(windows)} rows but the count matrix has {n_windows} windows"
            )
        self.windows = windows.reset_index(drop=True).copy()
        self._slices = self._contiguous_slices(self.windows['chrom'].astype(str).to_numpy())

        if offsets is None:
            self.offsets = np.zeros((n_windows, n_samples))
        else:
            self.offsets = self._check_same_shape(_as_matrix(offsets, 'Offset matrix', float),
                                                  'Offset matrix')
            if not np.all(np.isfinite(self.offsets)):
                raise ConfigurationError("Offset matrix contains non-finite values")

        if controls is None:
            self.controls = None
        else:
            ctrl = self._check_same_shape(_as_matrix(controls, 'Control matrix', float),
                                          'Control matrix')
            if not np.all(np.isfinite(ctrl)) or np.any(ctrl < 0):
                raise ConfigurationError("Control matrix must contain non-negative finite counts")
            self.controls = ctrl

        for arr in (self.counts, self.offsets, self.controls):
            if arr is not None:
                arr.setflags(write=False)

    def _check_same_shape(self, arr: np.ndarray, name: str) -> np.ndarray:
        if arr.shape != self.counts.shape:
            raise ConfigurationError(
                f"{name} has shape {arr.shape}, expected {self.counts.shape} (same as counts)"
            )
        return arr

    @staticmethod
    def _check_design(design: pd.DataFrame, n_samples: int, counts) -> pd.DataFrame:
        if not isinstance(design, pd.DataFrame):
            raise ConfigurationError("Design must be a pandas DataFrame")
        design = design.copy()
        if 'sample' in design.columns:
            design = design.set_index('sample')
        missing = [c for c in ('condition', 'replicate') if c not in design.columns]
        if missing:
            raise ConfigurationError(f"Design table is missing column(s): {', '.join(missing)}")
        if len(design) != n_samples:
            raise ConfigurationError(
                f"Design table describes {len(design)} samples but the count matrix has {n_samples}"
            )
        if isinstance(counts, pd.DataFrame):
            sample_cols = [str(c) for c in counts.columns]
            design.index = design.index.astype(str)
            if set(sample_cols) == set(design.index):
                design = design.loc[sample_cols]
        if design.index.has_duplicates:
            raise ConfigurationError("Design table has duplicated sample names")
        design['condition'] = design['condition'].astype(str)
        return design

    @staticmethod
    def _contiguous_slices(chroms: np.ndarray) -> List[Tuple[str, slice]]:
        if len(chroms) == 0:
            raise ConfigurationError("Dataset has no windows")
        breaks = np.flatnonzero(chroms[1:] != chroms[:-1]) + 1
        starts = np.concatenate([[0], breaks])
        ends = np.concatenate([breaks, [len(chroms)]])
        names = [str(chroms[s]) for s in starts]
        if len(set(names)) != len(names):
            raise ConfigurationError("Windows of each chromosome must be contiguous")
        return [(name, slice(int(s), int(e))) for name, s, e in zip(names, starts, ends)]

    @classmethod
    def from_tables(cls, counts: pd.DataFrame, design: pd.DataFrame,
                    offsets: Optional[pd.DataFrame] = None,
                    controls: Optional[pd.DataFrame] = None) -> 'CountDataset':
        """
        Build a dataset from a window table with one count column per sample.

        The counts table carries the window columns (chrom, start, end);
        every other column must be a sample listed in the design. Offset and
        control tables are matched to the samples by column name.
        """
        if 'chrom' not in counts.columns:
            raise ConfigurationError("Counts table needs a 'chrom' column")
        window_cols = [c for c in WINDOW_COLUMNS if c in counts.columns]
        design = design.set_index('sample') if 'sample' in design.columns else design
        design.index = design.index.astype(str)
        samples = list(design.index)
        counts = counts.rename(columns=str)
        missing = [s for s in samples if s not in counts.columns]
        if missing:
            raise ConfigurationError(f"Counts table lacks sample column(s): {', '.join(missing)}")

        def _pick(table, name):
            if table is None:
                return None
            table = table.rename(columns=str)
            absent = [s for s in samples if s not in table.columns]
            if absent:
                raise ConfigurationError(f"{name} table lacks sample column(s): {', '.join(absent)}")
            return table[samples]

        return cls(counts[samples], design, windows=counts[window_cols],
                   offsets=_pick(offsets, 'Offsets'), controls=_pick(controls, 'Controls'))

    @property
    def n_windows(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def sample_names(self) -> List[str]:
        return [str(s) for s in self.design.index]

    @property
    def conditions(self) -> List[str]:
        """Condition labels in order of first appearance."""
        return list(pd.unique(self.design['condition']))

    @property
    def n_conditions(self) -> int:
        return len(self.conditions)

    @property
    def condition_index(self) -> np.ndarray:
        """Integer condition index of every sample."""
        lookup = {c: i for i, c in enumerate(self.conditions)}
        return np.array([lookup[c] for c in self.design['condition']], dtype=np.int64)

    @property
    def has_controls(self) -> bool:
        return self.controls is not None

    def chromosome_slices(self) -> List[Tuple[str, slice]]:
        """(chromosome, row slice) for every independent HMM sequence."""
        return list(self._slices)

    def add_offsets(self, offsets) -> 'CountDataset':
        """Return a copy whose offsets are the current ones plus `offsets`."""
        return add_offsets(self, offsets)

    def __repr__(self):
        return (f"CountDataset({self.n_windows} windows x {self.n_samples} samples, "
                f"{self.n_conditions} condition(s), {len(self._slices)} chromosome(s))")


def add_offsets(dataset: CountDataset, offsets) -> CountDataset:
    """
    Accumulate offsets onto a dataset.

    New offsets are added to the existing ones, never substituted, so
    add_offsets(add_offsets(d, o1), o2) carries the same offsets as
    add_offsets(d, o1 + o2). A vector is broadcast across samples.

    Args:
        dataset: Source dataset (left untouched)
        offsets: Array of shape (windows, samples) or (windows,)

    Returns:
        New CountDataset sharing counts, design and windows
    """
    extra = _as_matrix(offsets, 'Offset matrix', float)
    if extra.shape[1] == 1 and dataset.n_samples > 1:
        extra = np.repeat(extra, dataset.n_samples, axis=1)
    if extra.shape != dataset.counts.shape:
        raise ConfigurationError(
            f"Offset matrix has shape {extra.shape}, expected {dataset.counts.shape}"
        )
    return CountDataset(dataset.counts, dataset.design, windows=dataset.windows,
                        offsets=dataset.offsets + extra, controls=dataset.controls)
