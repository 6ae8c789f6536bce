"""Imputation method classes for simulation studies."""

import logging
import warnings
from abc import ABC, abstractmethod

import numpy as np
import pandas as pd
from numpy.random import default_rng
from sklearn.exceptions import ConvergenceWarning
from sklearn.experimental import enable_iterative_imputer  # noqa: F401
from sklearn.impute import IterativeImputer
from tqdm import tqdm

from misim.exceptions import DataIntegrityError, InvalidParameter
from misim.records import Dataset, ImputationResult

logger = logging.getLogger(__name__)

RIDGE = 1e-5


class ImputationMethod(ABC):
    """Abstract base class for imputation methods.

    All imputation methods must implement:
    - impute_chain(frame, mask, max_iterations, rng): Return one completed DataFrame
    - name: Property for descriptive name

    ``impute`` runs ``n_imputations`` chains on independent child streams of
    ``rng`` and returns a validated ImputationResult.
    """

    def __init__(self, show_progress=False):
        self.show_progress = show_progress

    @abstractmethod
    def impute_chain(self, frame, mask, max_iterations, rng):
        pass

    @property
    @abstractmethod
    def name(self):
        pass

    def impute(self, data, n_imputations=5, max_iterations=5, rng=None):
        if rng is None:
            rng = default_rng(123)
        if n_imputations < 1:
            raise InvalidParameter(f"n_imputations must be >= 1. Got {n_imputations}.")
        frame = data.to_frame()
        mask = frame.isna()
        empty = [col for col in data.fields if mask[col].all()]
        if empty:
            raise DataIntegrityError(f"Cannot impute fields with no observed values: {empty}")

        imputation_rngs = rng.spawn(n_imputations)
        implicates = []
        for imputation_rng in tqdm(imputation_rngs, desc=f"{self.name} imputations",
                                   leave=False, disable=not self.show_progress):
            if not mask.to_numpy().any():
                completed = frame.copy()
            else:
                completed = self.impute_chain(frame, mask, max_iterations, imputation_rng)
            implicates.append(Dataset(completed, data.fields))
        return ImputationResult(data, tuple(implicates)).validate()


def norm_draw(y_obs, X_obs, X_mis, rng):
    """
    Draw imputations from the Bayesian normal linear model.

    Parameters:
    - y_obs: Observed values of the variable being imputed
    - X_obs: Design matrix (with intercept) for the observed rows
    - X_mis: Design matrix for the rows to impute
    - rng: numpy Generator

    Returns:
    - Array of len(X_mis) imputed values
    """
    n_obs, p = X_obs.shape
    xtx = X_obs.T @ X_obs
    xtx = xtx + np.diag(RIDGE * np.diag(xtx))
    v = np.linalg.inv(xtx)
    coef = v @ X_obs.T @ y_obs
    residuals = y_obs - X_obs @ coef
    df = max(n_obs - p, 1)
    sigma_star = np.sqrt(residuals @ residuals / rng.chisquare(df))
    chol = np.linalg.cholesky((v + v.T) / 2)
    beta_star = coef + chol @ rng.normal(size=p) * sigma_star
    return X_mis @ beta_star + rng.normal(size=len(X_mis)) * sigma_star


class NormImputation(ImputationMethod):
    """Chained equations with Bayesian linear regression per incomplete field.

    Each incomplete field is regressed on all other fields; regression
    parameters are drawn from their posterior before drawing the imputed
    values, so between-imputation variability reflects parameter
    uncertainty. Starting values are random draws from the observed values.
    """

    def impute_chain(self, frame, mask, max_iterations, rng):
        values = frame.to_numpy(dtype=np.float64, copy=True)
        miss = mask.to_numpy()
        n, p = values.shape
        incomplete = [j for j in range(p) if miss[:, j].any()]
        for j in incomplete:
            observed = values[~miss[:, j], j]
            if len(observed) <= p:
                raise DataIntegrityError(
                    f"Field '{frame.columns[j]}' has {len(observed)} observed values, "
                    f"too few to fit its imputation model"
                )
            values[miss[:, j], j] = rng.choice(observed, size=int(miss[:, j].sum()))

        ones = np.ones((n, 1))
        for _ in range(max(max_iterations, 1)):
            for j in incomplete:
                X = np.hstack([ones, np.delete(values, j, axis=1)])
                obs = ~miss[:, j]
                values[miss[:, j], j] = norm_draw(values[obs, j], X[obs], X[~obs], rng)
        return pd.DataFrame(values, columns=frame.columns, index=frame.index)

    @property
    def name(self):
        return 'norm'


class IterativeImputation(ImputationMethod):
    """scikit-learn IterativeImputer drawing from the posterior predictive.

    One imputer is fitted per implicate with its own random_state.
    """

    def impute_chain(self, frame, mask, max_iterations, rng):
        imp = IterativeImputer(max_iter=max(max_iterations, 1), sample_posterior=True,
                               random_state=int(rng.integers(0, 2**32 - 1)))
        filled = frame.copy()
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', ConvergenceWarning)
            filled.loc[:, :] = imp.fit_transform(frame.to_numpy())
        return filled

    @property
    def name(self):
        return 'iterative'


class MeanImputation(ImputationMethod):
    """Fill each field with its observed mean; every implicate is identical."""

    def impute_chain(self, frame, mask, max_iterations, rng):
        return frame.fillna(frame.mean())

    @property
    def name(self):
        return 'mean'


METHODS = {
    'norm': NormImputation,
    'iterative': IterativeImputation,
    'mean': MeanImputation,
}


def build_method(name, show_progress=False):
    """Map a configuration name to an imputation method instance."""
    if name not in METHODS:
        raise InvalidParameter(f"Unknown imputation method {name!r}; use one of {sorted(METHODS)}")
    return METHODS[name](show_progress=show_progress)
