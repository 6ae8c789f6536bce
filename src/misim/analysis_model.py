"""Complete-data analysis model: OLS of the outcome on the predictors."""

import re

import numpy as np

from misim.exceptions import DataIntegrityError, InvalidParameter
from misim.records import EstimateSet, TermEstimate, TruthVector

INTERCEPT = 'intercept'

_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def parse_formula(formula):
    """Split ``'y ~ x + z'`` into ``('y', ('x', 'z'))``."""
    if formula.count('~') != 1:
        raise InvalidParameter(f"Formula must contain exactly one '~': {formula!r}")
    lhs, rhs = (side.strip() for side in formula.split('~'))
    predictors = tuple(term.strip() for term in rhs.split('+'))
    for name in (lhs,) + predictors:
        if not _NAME.match(name):
            raise InvalidParameter(f"Invalid term {name!r} in formula {formula!r}")
        if name == INTERCEPT:
            raise InvalidParameter(f"'{INTERCEPT}' is reserved for the constant term")
    if lhs in predictors or len(set(predictors)) != len(predictors):
        raise InvalidParameter(f"Formula {formula!r} repeats a variable")
    return lhs, predictors


class AnalysisModel:
    """Ordinary least squares for a fixed additive linear model.

    The model always includes an intercept, reported as the term
    ``'intercept'``. Sampling variances are the diagonal of the usual OLS
    variance-covariance estimator sigma^2 (X'X)^-1 with
    sigma^2 = RSS / (n - p).
    """

    def __init__(self, formula='y ~ x + z'):
        self.formula = formula
        self.outcome, self.predictors = parse_formula(formula)

    @property
    def terms(self):
        return (INTERCEPT,) + self.predictors

    def _design(self, data):
        absent = [name for name in (self.outcome,) + self.predictors if name not in data.fields]
        if absent:
            raise DataIntegrityError(f"Dataset lacks analysis variables: {absent}")
        frame = data.frame[list(self.predictors) + [self.outcome]]
        if frame.isna().to_numpy().any():
            raise DataIntegrityError("Analysis model received a dataset with missing values")
        n = len(frame)
        if n <= len(self.terms):
            raise DataIntegrityError(f"Need more than {len(self.terms)} rows to fit {self.formula!r}, got {n}")
        X = np.column_stack([np.ones(n)] + [frame[name].to_numpy() for name in self.predictors])
        y = frame[self.outcome].to_numpy()
        return X, y

    def fit(self, data):
        """Fit the model to a complete Dataset and return its EstimateSet."""
        X, y = self._design(data)
        n, p = X.shape
        beta, _, rank, _ = np.linalg.lstsq(X, y, rcond=None)
        if rank < p:
            raise DataIntegrityError(f"Design matrix is rank deficient (rank {rank} < {p})")
        residuals = y - X @ beta
        df_residual = n - p
        sigma2 = residuals @ residuals / df_residual
        variances = sigma2 * np.diag(np.linalg.inv(X.T @ X))
        terms = {
            term: TermEstimate(float(b), float(v))
            for term, b, v in zip(self.terms, beta, variances)
        }
        return EstimateSet(terms, df_residual=float(df_residual))

    def truth_from(self, data):
        """Empirical truth: the complete-data OLS coefficients of ``data``."""
        estimates = self.fit(data)
        return TruthVector({term: estimates[term].estimate for term in self.terms}, source='empirical')
