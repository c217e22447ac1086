"""PeakHMM fit results, pruning events and summary statistics."""

import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import List, Optional

from peakhmm.core.emissions import FitReport
from peakhmm.core.hmm import PeakHMM


def bic(log_likelihood: float, n_parameters: int, n_observations: int) -> float:
    """Bayesian information criterion, -2 logL + p log(n)."""
    return -2.0 * log_likelihood + n_parameters * np.log(max(n_observations, 1))


@dataclass
class PruningEvent:
    """One mixture component removed during EM."""
    iteration: int
    component: int
    label: str
    weight: float
    log_likelihood_before: float
    log_likelihood_after: float
    bic_before: float
    bic_after: float
    n_remaining: int

    @property
    def delta_bic(self) -> float:
        return self.bic_after - self.bic_before

    @property
    def delta_log_likelihood(self) -> float:
        return self.log_likelihood_after - self.log_likelihood_before

    def describe(self) -> str:
        return (f"Iteration {self.iteration}: pruned component {self.component} ({self.label}, "
                f"weight {self.weight:.3g}); logL {self.log_likelihood_before:.2f} -> "
                f"{self.log_likelihood_after:.2f}, BIC delta {self.delta_bic:+.2f}, "
                f"{self.n_remaining} component(s) left")


class PeakFitResult:
    """Fitted model, posteriors and run diagnostics of one EM run."""

    def __init__(self, model: PeakHMM, posteriors: np.ndarray,
                 mixture_posteriors: Optional[np.ndarray],
                 log_likelihood: float, n_iterations: int, converged: bool,
                 history: List[float], pruning_events: List[PruningEvent],
                 n_rejections: int, fit_reports: List[FitReport],
                 messages: List[str], n_observations: int, elapsed: float = 0.0):
        self.model = model
        self.posteriors = posteriors
        self.mixture_posteriors = mixture_posteriors
        self.log_likelihood = log_likelihood
        self.n_iterations = n_iterations
        self.converged = converged
        self.history = history
        self.pruning_events = pruning_events
        self.n_rejections = n_rejections
        self.fit_reports = fit_reports
        self.messages = messages
        self.n_observations = n_observations
        self.elapsed = elapsed

    @property
    def bic(self) -> float:
        return bic(self.log_likelihood, self.model.n_parameters(), self.n_observations)

    @property
    def state_names(self):
        return self.model.state_names

    @property
    def n_irls_failures(self) -> int:
        return sum(1 for r in self.fit_reports if not r.converged)

    def posterior_frame(self, windows: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """Window x state posteriors, optionally next to the window coordinates."""
        df = pd.DataFrame(self.posteriors, columns=list(self.state_names))
        if windows is not None:
            df = pd.concat([windows.reset_index(drop=True), df], axis=1)
        return df

    def mixture_posterior_frame(self, windows: Optional[pd.DataFrame] = None) -> Optional[pd.DataFrame]:
        """Window x component posteriors given the differential state (None for consensus)."""
        if self.mixture_posteriors is None:
            return None
        df = pd.DataFrame(self.mixture_posteriors, columns=self.model.mixture.labels)
        if windows is not None:
            df = pd.concat([windows.reset_index(drop=True), df], axis=1)
        return df

    def get_summary(self) -> dict:
        """Generate summary statistics."""
        model = self.model
        summary = {
            'mode': model.mode,
            'distribution': model.distribution,
            'converged': bool(self.converged),
            'n_iterations': int(self.n_iterations),
            'log_likelihood': float(self.log_likelihood),
            'bic': float(self.bic),
            'n_parameters': int(model.n_parameters()),
            'n_windows': int(self.n_observations),
            'n_rejections': int(self.n_rejections),
            'n_irls_failures': int(self.n_irls_failures),
            'elapsed_seconds': float(self.elapsed),
            'startprob': model.startprob_.tolist(),
            'transmat': model.transmat_.tolist(),
        }

        for role, params in model.roles.items():
            summary[f'{role}_coef'] = params.coef.tolist()
            summary[f'{role}_dispersion'] = params.dispersion
            if params.zero_inflation is not None:
                summary[f'{role}_zero_inflation'] = params.zero_inflation

        state_mass = self.posteriors.mean(axis=0)
        for name, mass in zip(model.state_names, state_mass):
            summary[f'pct_windows_{name}'] = 100 * float(np.mean(self.posteriors.argmax(axis=1)
                                                                == model.state_names.index(name)))
            summary[f'mean_posterior_{name}'] = float(mass)

        if model.mixture is not None:
            summary['mixture_weights'] = {
                label: float(w) for label, w, live in
                zip(model.mixture.labels, model.mixture.weights, model.mixture.active) if live
            }
            summary['n_components'] = model.mixture.n_active
            summary['pruning_events'] = [e.describe() for e in self.pruning_events]

        if self.messages:
            summary['messages'] = list(self.messages)

        return summary

    def print_summary(self):
        """Print a short human-readable report."""
        s = self.get_summary()
        status = 'converged' if s['converged'] else 'did NOT converge'
        print(f"PeakHMM ({s['mode']}, {s['distribution']}): {status} after {s['n_iterations']} iterations")
        print(f"  log-likelihood: {s['log_likelihood']:.4f}   BIC: {s['bic']:.4f}")
        for name in self.model.state_names:
            print(f"  {name}: {s[f'pct_windows_{name}']:.2f}% of windows "
                  f"(mean posterior {s[f'mean_posterior_{name}']:.4f})")
        if 'mixture_weights' in s:
            for label, w in s['mixture_weights'].items():
                print(f"    pattern {label}: {w:.4f}")
        if s['n_rejections']:
            print(f"  Rejected updates: {s['n_rejections']}")
        for msg in s.get('messages', []):
            print(f"  Note: {msg}")
