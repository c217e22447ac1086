"""PeakHMM error and diagnostic warning classes.

Only ConfigurationError aborts a run. The warning categories mark
conditions the EM loop recovers from; they are emitted with warnings.warn
and also recorded on the fit result.
"""


class ConfigurationError(ValueError):
    """Invalid design, dimensions or options, raised before EM starts."""


class PeakHMMWarning(UserWarning):
    """Base class for non-fatal PeakHMM diagnostics."""


class NumericalInstabilityWarning(PeakHMMWarning, RuntimeWarning):
    """An IRLS fit did not converge or produced a non-finite iterate."""


class LikelihoodRegressionWarning(PeakHMMWarning):
    """An M-step update lowered the log-likelihood and was rejected."""


class NonConvergenceWarning(PeakHMMWarning):
    """EM stopped at its iteration or time budget before converging."""
