"""Data generation for simulation studies."""

import logging

import numpy as np
import pandas as pd
from numpy.random import default_rng

from misim.exceptions import InvalidParameter
from misim.records import Dataset, DEFAULT_FIELDS

logger = logging.getLogger(__name__)

DEFAULT_MEAN = (0.0, 0.0)
DEFAULT_COV = ((1.0, 0.5), (0.5, 1.0))
DEFAULT_COEFFICIENTS = {'intercept': 0.0, 'x': 6.0, 'z': 3.0}
DEFAULT_NOISE_VARIANCE = 1.0

PSD_TOLERANCE = 1e-10


def validate_covariance(cov, dim):
    """Check that ``cov`` is a symmetric positive semi-definite dim x dim matrix."""
    cov = np.asarray(cov, dtype=np.float64)
    if cov.shape != (dim, dim):
        raise InvalidParameter(f"Covariance matrix must have shape ({dim}, {dim}), got {cov.shape}")
    if not np.all(np.isfinite(cov)):
        raise InvalidParameter("Covariance matrix contains non-finite values")
    if not np.allclose(cov, cov.T):
        raise InvalidParameter("Covariance matrix is not symmetric")
    min_eig = np.linalg.eigvalsh(cov).min()
    if min_eig < -PSD_TOLERANCE * max(1.0, np.abs(cov).max()):
        raise InvalidParameter(f"Covariance matrix is not positive semi-definite (smallest eigenvalue {min_eig:.3g})")
    return cov


def generate_data(n=200, mean=DEFAULT_MEAN, cov=DEFAULT_COV, coefficients=None,
                  noise_variance=DEFAULT_NOISE_VARIANCE, rng=None, seed=None,
                  fields=DEFAULT_FIELDS):
    """
    Generate a complete dataset from the bivariate-normal linear model.

    Predictors are drawn from N(mean, cov); the outcome (last field) is
    intercept + sum(coefficient * predictor) + N(0, noise_variance).

    Parameters:
    - n: Number of rows (>= 1)
    - mean: Mean vector of the predictors
    - cov: Covariance matrix of the predictors (positive semi-definite)
    - coefficients: Mapping with 'intercept' and one entry per predictor
    - noise_variance: Variance of the outcome noise (>= 0)
    - rng: numpy Generator; takes precedence over seed
    - seed: Seed used when no rng is given
    - fields: Predictor names followed by the outcome name

    Returns:
    - Dataset with the given fields
    """
    if coefficients is None:
        coefficients = DEFAULT_COEFFICIENTS
    if int(n) != n or n < 1:
        raise InvalidParameter(f"n must be a positive integer. Got {n}.")
    n = int(n)
    fields = tuple(fields)
    predictors, outcome = fields[:-1], fields[-1]
    mean = np.asarray(mean, dtype=np.float64)
    if mean.shape != (len(predictors),):
        raise InvalidParameter(f"Mean vector must have {len(predictors)} entries, got shape {mean.shape}")
    cov = validate_covariance(cov, len(predictors))
    if noise_variance < 0:
        raise InvalidParameter(f"noise_variance must be >= 0. Got {noise_variance}.")
    absent = [name for name in ('intercept',) + predictors if name not in coefficients]
    if absent:
        raise InvalidParameter(f"Missing outcome coefficients for: {absent}")

    if rng is None:
        rng = default_rng(seed)

    X = rng.multivariate_normal(mean, cov, size=n, method='eigh')
    beta = np.array([coefficients[name] for name in predictors], dtype=np.float64)
    noise = rng.normal(0.0, np.sqrt(noise_variance), size=n)
    y = coefficients['intercept'] + X @ beta + noise

    data = {name: X[:, j] for j, name in enumerate(predictors)}
    data[outcome] = y
    return Dataset(pd.DataFrame(data, columns=list(fields)), fields)


def generate_population(blocks, block_size, rng=None, seed=None, **kwargs):
    """
    Build a reference population by concatenating independently drawn datasets.

    Parameters:
    - blocks: Number of datasets to concatenate
    - block_size: Rows per dataset
    - rng / seed: Parent stream; one child stream is spawned per block
    - kwargs: Passed through to generate_data

    Returns:
    - Dataset with blocks * block_size rows
    """
    if blocks < 1:
        raise InvalidParameter(f"blocks must be >= 1. Got {blocks}.")
    if rng is None:
        rng = default_rng(seed)
    block_rngs = rng.spawn(blocks)
    parts = [generate_data(block_size, rng=block_rng, **kwargs) for block_rng in block_rngs]
    population = Dataset.concat(parts)
    logger.info(f"Generated reference population with {population.n_rows} rows from {blocks} blocks")
    return population
