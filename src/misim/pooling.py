"""Pooling of multiply imputed estimates with Rubin's rules.

Two formula paths are available through :class:`PoolingMode`:

``STANDARD``
    T = U + (1 + 1/m) B and Rubin's degrees of freedom
    (m - 1)(1 + 1/r)^2 with r = (1 + 1/m) B / U. Optionally the
    Barnard-Rubin small-sample adjustment when the complete-data degrees
    of freedom are supplied.

``ZERO_SAMPLING_VARIANCE``
    For a fully observed finite set the within-imputation variance is zero
    by definition: T = (1 + 1/m) B, r is infinite and the degrees of
    freedom are exactly m - 1. This is a separate path and never evaluates
    the general formula with U = 0.
"""

import enum
import math
from dataclasses import dataclass, asdict
from typing import Dict

import numpy as np
import pandas as pd
from scipy import stats

from misim.exceptions import DataIntegrityError, InsufficientImplicates, InvalidParameter


class PoolingMode(enum.Enum):
    STANDARD = 'standard'
    ZERO_SAMPLING_VARIANCE = 'zero_sampling_variance'


@dataclass(frozen=True)
class PooledTerm:
    estimate: float
    within_variance: float
    between_variance: float
    total_variance: float
    df: float
    std_error: float
    statistic: float
    p_value: float
    lower_ci: float
    upper_ci: float
    riv: float
    lambda_: float
    fmi: float


@dataclass(frozen=True)
class PooledResult:
    """One pooled record per term."""
    terms: Dict[str, PooledTerm]
    mode: PoolingMode
    m: int
    alpha: float = 0.05

    def __getitem__(self, term):
        return self.terms[term]

    def to_frame(self):
        frame = pd.DataFrame.from_dict({term: asdict(row) for term, row in self.terms.items()}, orient='index')
        frame.index.name = 'term'
        return frame


def _t_quantile(q, df):
    if math.isinf(df):
        return float(stats.norm.ppf(q))
    return float(stats.t.ppf(q, df))


def _t_two_sided_p(statistic, df):
    if math.isnan(statistic):
        return math.nan
    if math.isinf(df):
        return float(2 * stats.norm.sf(abs(statistic)))
    return float(2 * stats.t.sf(abs(statistic), df))


def _rubin_df(m, within, between):
    """Rubin's (1987) degrees of freedom and the relative increase in variance.

    B = 0 gives r = 0 and infinite df; U = 0 with B > 0 gives r = inf and
    the limit m - 1.
    """
    if between == 0:
        return math.inf, 0.0
    if within == 0:
        return float(m - 1), math.inf
    riv = (1 + 1 / m) * between / within
    return (m - 1) * (1 + 1 / riv) ** 2, riv


def _barnard_rubin_df(df_old, lambda_, dfcom):
    df_obs = (dfcom + 1) / (dfcom + 3) * dfcom * (1 - lambda_)
    if df_obs <= 0:
        return df_old
    if math.isinf(df_old):
        return df_obs
    return 1 / (1 / df_old + 1 / df_obs)


def pool_scalar(estimates, variances, mode=PoolingMode.STANDARD, alpha=0.05, dfcom=None):
    """
    Pool m estimates of a single quantity.

    Parameters:
    -----------
    estimates : array-like
        Point estimate from each implicate
    variances : array-like
        Estimated sampling variance from each implicate (ignored in
        ZERO_SAMPLING_VARIANCE mode)
    mode : PoolingMode or str
        Formula path
    alpha : float
        The interval is a (1 - alpha) confidence interval
    dfcom : float, optional
        Complete-data degrees of freedom; enables the Barnard-Rubin
        adjustment in STANDARD mode

    Returns:
    --------
    PooledTerm
    """
    mode = PoolingMode(mode)
    if not 0 < alpha < 1:
        raise InvalidParameter(f"alpha must be in (0, 1). Got {alpha}.")
    estimates = np.asarray(estimates, dtype=np.float64)
    variances = np.asarray(variances, dtype=np.float64)
    m = len(estimates)
    if m < 2:
        raise InsufficientImplicates(f"Pooling requires at least 2 implicates, got {m}")
    if variances.shape != estimates.shape:
        raise DataIntegrityError(f"Got {m} estimates but {len(variances)} variances")
    if not np.all(np.isfinite(estimates)):
        raise DataIntegrityError("Non-finite point estimate among implicates")

    qbar = float(estimates.mean())
    between = float(estimates.var(ddof=1))

    if mode is PoolingMode.ZERO_SAMPLING_VARIANCE:
        within = 0.0
        total = (1 + 1 / m) * between
        df = float(m - 1)
        riv = math.inf
        lambda_ = 1.0
        fmi = 1.0
    else:
        if not np.all(np.isfinite(variances)) or np.any(variances < 0):
            raise DataIntegrityError("Sampling variances must be finite and non-negative")
        within = float(variances.mean())
        total = within + (1 + 1 / m) * between
        df, riv = _rubin_df(m, within, between)
        lambda_ = (1 + 1 / m) * between / total if total > 0 else 0.0
        if dfcom is not None:
            df = _barnard_rubin_df(df, lambda_, dfcom)
        if math.isinf(riv):
            fmi = 1.0
        else:
            fmi = (riv + 2 / (df + 3)) / (riv + 1)

    std_error = math.sqrt(total)
    statistic = qbar / std_error if std_error > 0 else math.nan
    p_value = _t_two_sided_p(statistic, df)
    half_width = _t_quantile(1 - alpha / 2, df) * std_error
    return PooledTerm(
        estimate=qbar,
        within_variance=within,
        between_variance=between,
        total_variance=total,
        df=df,
        std_error=std_error,
        statistic=statistic,
        p_value=p_value,
        lower_ci=qbar - half_width,
        upper_ci=qbar + half_width,
        riv=riv,
        lambda_=lambda_,
        fmi=fmi,
    )


def pool(estimate_sets, mode=PoolingMode.STANDARD, alpha=0.05, dfcom=None):
    """Pool a sequence of EstimateSets term by term into a PooledResult."""
    estimate_sets = list(estimate_sets)
    mode = PoolingMode(mode)
    if len(estimate_sets) < 2:
        raise InsufficientImplicates(f"Pooling requires at least 2 implicates, got {len(estimate_sets)}")
    terms = estimate_sets[0].term_names
    for i, es in enumerate(estimate_sets[1:], start=1):
        if set(es.term_names) != set(terms):
            raise DataIntegrityError(f"Estimate set {i} has terms {es.term_names}, expected {terms}")
    pooled = {}
    for term in terms:
        pooled[term] = pool_scalar(
            [es[term].estimate for es in estimate_sets],
            [es[term].variance for es in estimate_sets],
            mode=mode, alpha=alpha, dfcom=dfcom,
        )
    return PooledResult(pooled, mode, len(estimate_sets), alpha)


class MultipleImputationPooler:
    """Pooler bound to a mode, significance level and optional dfcom.

    With ``barnard_rubin=True`` the complete-data degrees of freedom are
    taken from the estimate sets (the smallest residual df among them).
    """

    def __init__(self, mode=PoolingMode.STANDARD, alpha=0.05, barnard_rubin=False):
        self.mode = PoolingMode(mode)
        self.alpha = alpha
        self.barnard_rubin = barnard_rubin

    def pool(self, estimate_sets):
        estimate_sets = list(estimate_sets)
        dfcom = None
        if self.barnard_rubin and self.mode is PoolingMode.STANDARD:
            residual_dfs = [es.df_residual for es in estimate_sets if es.df_residual is not None]
            if residual_dfs:
                dfcom = min(residual_dfs)
        return pool(estimate_sets, mode=self.mode, alpha=self.alpha, dfcom=dfcom)
