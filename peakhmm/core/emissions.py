"""
PeakHMM emission models

Provides:
1. Negative binomial (NB) and zero-inflated NB (ZINB) log densities with
   window-level offsets
2. EmissionParams, the parameter block of one emission role. The two roles
   (background, enrichment) are shared by the HMM states and the mixture
   components; nothing copies them.
3. Weighted GLM fitting with statsmodels (IRLS for the mean, a likelihood
   search for the dispersion), posterior probabilities acting as case
   weights (the M-step regression of the EM loop)

Mean model: log(mu) = beta_0 + offset [+ beta_1 * log1p(control)].
NB variance: mu * (1 + mu / phi), so a larger phi means less overdispersion.
ZINB adds a structural zero with probability logistic(alpha + offset).
"""

import warnings
import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple, Dict, Any

from scipy.special import gammaln
import statsmodels.api as sm
from statsmodels.base.model import GenericLikelihoodModel

from peakhmm.core.exceptions import NumericalInstabilityWarning

DISTRIBUTIONS = ('nb', 'zinb')

MAX_ETA = 30.0            # cap on |linear predictor| before exp()
MIN_WEIGHT = 1e-8         # observations below this case weight are dropped
MAX_ALTERNATIONS = 20     # beta / phi / alpha block updates per fit
ZI_LOGIT_BOUND = 20.0
DEFAULT_DISPERSION_BOUNDS = (1e-2, 1e6)


@dataclass
class EmissionParams:
    """GLM coefficients, NB dispersion and optional zero-inflation logit of one role."""
    coef: np.ndarray
    dispersion: float = 10.0
    zero_inflation: Optional[float] = None

    def __post_init__(self):
        self.coef = np.atleast_1d(np.asarray(self.coef, dtype=float)).copy()
        self.dispersion = float(self.dispersion)
        if self.zero_inflation is not None:
            self.zero_inflation = float(self.zero_inflation)

    @property
    def intercept(self) -> float:
        return float(self.coef[0])

    def copy(self) -> 'EmissionParams':
        return EmissionParams(self.coef.copy(), self.dispersion, self.zero_inflation)

    def vector(self) -> np.ndarray:
        """Flat parameter vector (coef, log dispersion, zero inflation)."""
        parts = [self.coef, [np.log(self.dispersion)]]
        if self.zero_inflation is not None:
            parts.append([self.zero_inflation])
        return np.concatenate(parts)

    def n_parameters(self) -> int:
        return len(self.coef) + 1 + (self.zero_inflation is not None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'coef': self.coef.tolist(),
            'dispersion': self.dispersion,
            'zero_inflation': self.zero_inflation,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'EmissionParams':
        return cls(np.array(d['coef']), d['dispersion'], d.get('zero_inflation'))


@dataclass
class FitReport:
    """Outcome of one weighted GLM fit."""
    role: str = ''
    converged: bool = True
    n_iter: int = 0
    log_likelihood: float = float('nan')
    message: str = ''


# =============================================================================
# Densities
# =============================================================================

def control_covariate(controls: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """Mean-model covariate derived from control-experiment counts."""
    if controls is None:
        return None
    return np.log1p(np.asarray(controls, dtype=float))


def linear_predictor(coef: np.ndarray, offsets: np.ndarray,
                     covariate: Optional[np.ndarray] = None) -> np.ndarray:
    """log(mu) for every window/sample, clipped to +/- MAX_ETA."""
    eta = coef[0] + offsets
    if len(coef) > 1 and covariate is not None:
        eta = eta + coef[1] * covariate
    return np.clip(eta, -MAX_ETA, MAX_ETA)


def nb_logpmf(y: np.ndarray, log_mu: np.ndarray, phi: float) -> np.ndarray:
    """
    NB log probability mass with mean exp(log_mu) and variance mu(1 + mu/phi).

    Equivalent to scipy.stats.nbinom.logpmf(y, n=phi, p=phi / (phi + mu)).
    """
    log_phi = np.log(phi)
    log_denom = np.logaddexp(log_phi, log_mu)
    return (gammaln(y + phi) - gammaln(phi) - gammaln(y + 1.0)
            + phi * (log_phi - log_denom) + y * (log_mu - log_denom))


def zinb_logpmf(y: np.ndarray, log_mu: np.ndarray, phi: float,
                logit_rho: np.ndarray) -> np.ndarray:
    """ZINB log probability: structural zero with probability logistic(logit_rho)."""
    log_rho = -np.logaddexp(0.0, -logit_rho)
    log_keep = -np.logaddexp(0.0, logit_rho)
    nb = nb_logpmf(y, log_mu, phi)
    return np.where(y == 0, np.logaddexp(log_rho, log_keep + nb), log_keep + nb)


def log_density(params: EmissionParams, counts: np.ndarray, offsets: np.ndarray,
                covariate: Optional[np.ndarray] = None,
                distribution: str = 'nb') -> np.ndarray:
    """
    Log density of every count under one emission role.

    Args:
        params: Role parameters
        counts: Counts, shape (windows, samples)
        offsets: Offsets, same shape
        covariate: log1p(control) covariate or None
        distribution: 'nb' or 'zinb' (ZINB only applies when the role
            carries a zero-inflation parameter)

    Returns:
        Log densities, same shape as counts
    """
    y = np.asarray(counts, dtype=float)
    log_mu = linear_predictor(params.coef, offsets, covariate)
    if distribution == 'zinb' and params.zero_inflation is not None:
        return zinb_logpmf(y, log_mu, params.dispersion, params.zero_inflation + offsets)
    return nb_logpmf(y, log_mu, params.dispersion)


def weighted_log_likelihood(params: EmissionParams, counts: np.ndarray, offsets: np.ndarray,
                            weights: np.ndarray, covariate: Optional[np.ndarray] = None,
                            distribution: str = 'nb') -> float:
    """Sum of case-weighted log densities (the role's M-step objective)."""
    dens = log_density(params, counts, offsets, covariate, distribution)
    return float(np.sum(weights * dens))


# =============================================================================
# Fitting
# =============================================================================

class WeightedNBDispersion(GenericLikelihoodModel):
    """
    Case-weighted NB likelihood of the dispersion alone, mean held fixed.

    The single parameter is log(phi); it is clipped to the dispersion bounds
    inside the likelihood so the optimiser sees a flat surface outside them.
    """

    def __init__(self, endog, log_mu, weights, bounds, **kwds):
        super().__init__(endog, np.ones((len(endog), 1)), **kwds)
        self.log_mu = log_mu
        self.weights = weights
        self.log_bounds = (np.log(bounds[0]), np.log(bounds[1]))

    def nloglikeobs(self, params):
        phi = np.exp(np.clip(params[0], *self.log_bounds))
        return -self.weights * nb_logpmf(self.endog, self.log_mu, phi)

    def fit(self, start_params=None, maxiter=500, **kwds):
        if start_params is None:
            start_params = np.array([np.mean(self.log_bounds)])
        return super().fit(start_params=start_params, method='nm', maxiter=maxiter,
                           disp=0, skip_hessian=True, **kwds)


def _fit_mean(X: np.ndarray, y: np.ndarray, offset: np.ndarray, w: np.ndarray,
              beta: np.ndarray, phi: float, max_iter: int,
              tol: float) -> Tuple[np.ndarray, bool, int]:
    """
    Weighted NB GLM for the mean coefficients with the dispersion held fixed.

    statsmodels' alpha is 1/phi. IRLS stops once the deviance changes by
    less than tol * (|deviance| + 1).

    Returns:
        (beta, converged, iterations)
    """
    model = sm.GLM(y, X, family=sm.families.NegativeBinomial(alpha=1.0 / phi),
                   offset=offset, var_weights=w)
    res = model.fit(start_params=beta, maxiter=max_iter, tol=tol, rtol=tol)
    return np.asarray(res.params, dtype=float), bool(res.converged), int(res.fit_history['iteration'])


def _fit_dispersion(y: np.ndarray, log_mu: np.ndarray, w: np.ndarray,
                    phi: float, bounds: Tuple[float, float]) -> float:
    """Maximise the weighted NB log-likelihood over log(phi) within bounds."""
    model = WeightedNBDispersion(y, log_mu, w, bounds)
    start = float(np.clip(np.log(phi), *model.log_bounds))
    res = model.fit(start_params=np.array([start]), xtol=1e-6, ftol=1e-10)
    log_phi = float(np.clip(res.params[0], *model.log_bounds))
    if not np.isfinite(log_phi) or model.loglike(np.array([log_phi])) < model.loglike(np.array([start])):
        return float(np.exp(start))
    return float(np.exp(log_phi))


def _structural_zero_posterior(y: np.ndarray, log_mu: np.ndarray, phi: float,
                               logit_rho: np.ndarray) -> np.ndarray:
    """P(count is a structural zero | count, parameters)."""
    log_rho = -np.logaddexp(0.0, -logit_rho)
    log_keep = -np.logaddexp(0.0, logit_rho)
    log_phi = np.log(phi)
    nb_zero = phi * (log_phi - np.logaddexp(log_phi, log_mu))
    post = np.exp(log_rho - np.logaddexp(log_rho, log_keep + nb_zero))
    return np.where(y == 0, post, 0.0)


def _fit_zero_inflation(z0: np.ndarray, offset: np.ndarray, w: np.ndarray,
                        alpha: float, max_iter: int, tol: float) -> float:
    """Intercept-only weighted logistic GLM for the zero-inflation logit."""
    if np.sum(w * z0) <= MIN_WEIGHT:
        return -ZI_LOGIT_BOUND
    model = sm.GLM(z0, np.ones((len(z0), 1)), family=sm.families.Binomial(),
                   offset=offset, var_weights=w)
    res = model.fit(start_params=np.array([alpha]), maxiter=max_iter, tol=tol, rtol=tol)
    return float(np.clip(res.params[0], -ZI_LOGIT_BOUND, ZI_LOGIT_BOUND))


def fit_emission(params: EmissionParams, counts: np.ndarray, offsets: np.ndarray,
                 weights: np.ndarray, covariate: Optional[np.ndarray] = None,
                 distribution: str = 'nb', max_iter: int = 50, tol: float = 1e-8,
                 dispersion_bounds: Tuple[float, float] = DEFAULT_DISPERSION_BOUNDS,
                 role: str = '') -> Tuple[EmissionParams, FitReport]:
    """
    Weighted M-step fit of one emission role.

    Alternates IRLS for the mean coefficients, a bounded search for the
    dispersion and (ZINB) a logistic update of the zero-inflation logit
    driven by the posterior probability of structural zeros, until the
    weighted log-likelihood settles.

    An IRLS run that hits max_iter is reported (converged=False) and its
    last iterate kept. A non-finite iterate is discarded and the incoming
    parameters are returned unchanged.

    Args:
        params: Current role parameters (starting values)
        counts, offsets, weights: Arrays of identical shape; weights are the
            posterior probabilities of each count belonging to this role
        covariate: log1p(control) covariate of the same shape, or None
        distribution: 'nb' or 'zinb'
        max_iter: IRLS iteration cap
        tol: Relative tolerance of the IRLS stopping rule
        dispersion_bounds: (min, max) for phi
        role: Role name, for the report

    Returns:
        (new_params, report)
    """
    w = np.asarray(weights, dtype=float).ravel()
    keep = w > MIN_WEIGHT
    if not np.any(keep):
        return params.copy(), FitReport(role, converged=False,
                                        message='no posterior weight; parameters unchanged')

    y = np.asarray(counts, dtype=float).ravel()[keep]
    o = np.asarray(offsets, dtype=float).ravel()[keep]
    w = w[keep]
    columns = [np.ones(len(y))]
    if len(params.coef) > 1:
        columns.append(np.asarray(covariate, dtype=float).ravel()[keep])
    X = np.column_stack(columns)

    use_zi = distribution == 'zinb' and params.zero_inflation is not None
    beta = params.coef.copy()
    phi = params.dispersion
    alpha = params.zero_inflation

    def objective(beta_, phi_, alpha_):
        log_mu = np.clip(X @ beta_ + o, -MAX_ETA, MAX_ETA)
        if use_zi:
            return float(np.sum(w * zinb_logpmf(y, log_mu, phi_, alpha_ + o)))
        return float(np.sum(w * nb_logpmf(y, log_mu, phi_)))

    ll_old = objective(beta, phi, alpha)
    irls_converged = True
    total_iter = 0

    for _ in range(MAX_ALTERNATIONS):
        if use_zi:
            log_mu = np.clip(X @ beta + o, -MAX_ETA, MAX_ETA)
            z0 = _structural_zero_posterior(y, log_mu, phi, alpha + o)
            nb_w = w * (1.0 - z0)
        else:
            nb_w = w

        beta, converged, n_iter = _fit_mean(X, y, o, nb_w, beta, phi, max_iter, tol)
        irls_converged = irls_converged and converged
        total_iter += n_iter
        log_mu = np.clip(X @ beta + o, -MAX_ETA, MAX_ETA)
        phi = _fit_dispersion(y, log_mu, nb_w, phi, dispersion_bounds)
        if use_zi:
            alpha = _fit_zero_inflation(z0, o, w, alpha, max_iter, tol)

        ll = objective(beta, phi, alpha)
        if not np.isfinite(ll):
            break
        if abs(ll - ll_old) / (abs(ll_old) + 0.1) < max(tol, 1e-10):
            ll_old = ll
            break
        ll_old = ll

    if not (np.all(np.isfinite(beta)) and np.isfinite(phi) and np.isfinite(ll_old)):
        report = FitReport(role, converged=False, n_iter=total_iter,
                           message='non-finite iterate; previous estimate retained')
        warnings.warn(f"GLM fit for role '{role}' produced non-finite estimates; "
                      "keeping the previous iterate", NumericalInstabilityWarning)
        return params.copy(), report

    report = FitReport(role, converged=irls_converged, n_iter=total_iter, log_likelihood=ll_old)
    if not irls_converged:
        report.message = f'IRLS did not converge in {max_iter} iterations; last iterate kept'
        warnings.warn(f"IRLS for role '{role}' did not converge in {max_iter} iterations",
                      NumericalInstabilityWarning)

    return EmissionParams(beta, phi, alpha if use_zi else params.zero_inflation), report


def moment_params(counts: np.ndarray, offsets: np.ndarray, weights: np.ndarray,
                  n_coef: int = 1, zero_inflated: bool = False,
                  dispersion_bounds: Tuple[float, float] = DEFAULT_DISPERSION_BOUNDS) -> EmissionParams:
    """
    Method-of-moments starting values from case-weighted, offset-scaled counts.

    Used to seed IRLS; the first M-step refits everything.
    """
    y = np.asarray(counts, dtype=float).ravel()
    w = np.asarray(weights, dtype=float).ravel()
    rate = y / np.exp(np.clip(np.asarray(offsets, dtype=float).ravel(), -MAX_ETA, MAX_ETA))
    if w.sum() <= 0:
        w = np.ones_like(y)
    w = w / w.sum()

    mean = max(float(np.sum(w * rate)), 1e-3)
    var = float(np.sum(w * (rate - mean) ** 2))
    if var > mean:
        phi = mean ** 2 / (var - mean)
    else:
        phi = dispersion_bounds[1] / 10.0
    phi = float(np.clip(phi, dispersion_bounds[0], dispersion_bounds[1]))

    coef = np.zeros(n_coef)
    coef[0] = np.log(mean)

    alpha = None
    if zero_inflated:
        observed_zero = float(np.sum(w * (y == 0)))
        nb_zero = (phi / (phi + mean)) ** phi
        excess = np.clip(observed_zero - nb_zero, 1e-3, 0.5)
        alpha = float(np.log(excess / (1.0 - excess)))

    return EmissionParams(coef, phi, alpha)
