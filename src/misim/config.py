"""Simulation configuration."""

import json
import logging
from dataclasses import dataclass, field, fields as dataclass_fields
from pathlib import Path
from typing import Dict, Optional, Tuple

from misim.analysis_model import parse_formula, INTERCEPT
from misim.data_generators import (
    DEFAULT_COEFFICIENTS, DEFAULT_COV, DEFAULT_MEAN, DEFAULT_NOISE_VARIANCE, validate_covariance
)
from misim.exceptions import InvalidParameter
from misim.imputation_methods import METHODS
from misim.missingness_patterns import Mechanism
from misim.pooling import PoolingMode
from misim.records import DEFAULT_FIELDS

logger = logging.getLogger(__name__)

MODEL_BASED = 'model_based'
DESIGN_BASED = 'design_based'
FINITE_POPULATION = 'finite_population'
DESIGNS = (MODEL_BASED, DESIGN_BASED, FINITE_POPULATION)

POOLING_MODES = {
    MODEL_BASED: PoolingMode.STANDARD,
    DESIGN_BASED: PoolingMode.STANDARD,
    FINITE_POPULATION: PoolingMode.ZERO_SAMPLING_VARIANCE,
}

REQUIRED_KEYS = ['designs', 'mechanisms', 'n_replicates', 'seed']
LIST_PARAMS = ['designs', 'mechanisms']


@dataclass(frozen=True)
class SimulationConfig:
    """Parameters of one simulation design.

    ``sample_size`` rows are analysed per replicate in the model-based and
    design-based designs. The design-based reference population is
    ``population_blocks`` generated datasets of ``sample_size`` rows; the
    finite-population design reuses one dataset of ``population_size`` rows.
    """
    design: str = MODEL_BASED
    mechanisms: Tuple[str, ...] = ('mcar', 'mar_right')
    n_replicates: int = 1000
    n_imputations: int = 5
    max_iterations: int = 5
    proportion: float = 0.5
    sample_size: int = 200
    population_size: int = 200
    population_blocks: int = 100
    affected_fields: Optional[Tuple[str, ...]] = None
    formula: str = 'y ~ x + z'
    fields: Tuple[str, ...] = DEFAULT_FIELDS
    mean: Tuple[float, ...] = DEFAULT_MEAN
    cov: Tuple[Tuple[float, ...], ...] = DEFAULT_COV
    coefficients: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_COEFFICIENTS))
    noise_variance: float = DEFAULT_NOISE_VARIANCE
    method: str = 'norm'
    alpha: float = 0.05
    barnard_rubin: bool = False
    seed: int = 123
    n_jobs: int = 1
    max_failure_rate: float = 0.5
    min_replicates_before_abort: int = 10
    keep_records: bool = True

    def __post_init__(self):
        for name in ('mechanisms', 'fields', 'mean'):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        object.__setattr__(self, 'cov', tuple(tuple(row) for row in self.cov))
        if self.affected_fields is not None:
            object.__setattr__(self, 'affected_fields', tuple(self.affected_fields))
        object.__setattr__(self, 'coefficients', dict(self.coefficients))
        self.validate()

    def validate(self):
        if self.design not in DESIGNS:
            raise InvalidParameter(f"design must be one of {DESIGNS}. Got {self.design!r}.")
        if not self.mechanisms:
            raise InvalidParameter("At least one missingness mechanism is required")
        for name in self.mechanisms:
            try:
                Mechanism(name)
            except ValueError:
                raise InvalidParameter(
                    f"Unknown mechanism {name!r}; use one of {[m.value for m in Mechanism]}"
                ) from None
        if len(set(self.mechanisms)) != len(self.mechanisms):
            raise InvalidParameter(f"Mechanisms must be unique. Got {list(self.mechanisms)}.")
        for name in ('n_replicates', 'sample_size', 'population_size', 'population_blocks', 'n_jobs',
                     'max_iterations'):
            value = getattr(self, name)
            if int(value) != value or value < 1:
                raise InvalidParameter(f"{name} must be a positive integer. Got {value}.")
        if int(self.n_imputations) != self.n_imputations or self.n_imputations < 2:
            raise InvalidParameter(f"n_imputations must be an integer >= 2 for pooling. Got {self.n_imputations}.")
        if not 0 < self.proportion < 1:
            raise InvalidParameter(f"proportion must be in (0, 1). Got {self.proportion}.")
        if not 0 < self.alpha < 1:
            raise InvalidParameter(f"alpha must be in (0, 1). Got {self.alpha}.")
        if not 0 <= self.max_failure_rate <= 1:
            raise InvalidParameter(f"max_failure_rate must be in [0, 1]. Got {self.max_failure_rate}.")
        if self.min_replicates_before_abort < 1:
            raise InvalidParameter("min_replicates_before_abort must be >= 1")
        if self.method not in METHODS:
            raise InvalidParameter(f"Unknown imputation method {self.method!r}; use one of {sorted(METHODS)}")
        if len(self.fields) < 2 or len(set(self.fields)) != len(self.fields):
            raise InvalidParameter(f"fields must hold at least two distinct names. Got {list(self.fields)}.")
        outcome, predictors = parse_formula(self.formula)
        unknown = [name for name in (outcome,) + predictors if name not in self.fields]
        if unknown:
            raise InvalidParameter(f"Formula {self.formula!r} uses variables not in fields: {unknown}")
        if self.affected_fields is not None:
            unknown = [name for name in self.affected_fields if name not in self.fields]
            if unknown:
                raise InvalidParameter(f"affected_fields {unknown} are not in fields {list(self.fields)}")
        if len(self.mean) != len(self.fields) - 1:
            raise InvalidParameter(f"mean needs one entry per predictor field {list(self.fields[:-1])}")
        validate_covariance(self.cov, len(self.fields) - 1)
        needed = [INTERCEPT] + list(self.fields[:-1])
        absent = [name for name in needed if name not in self.coefficients]
        if absent:
            raise InvalidParameter(f"coefficients lack entries for {absent}")
        if self.noise_variance < 0:
            raise InvalidParameter(f"noise_variance must be >= 0. Got {self.noise_variance}.")

    @property
    def pooling_mode(self):
        return POOLING_MODES[self.design]

    @property
    def truth_terms(self):
        _, predictors = parse_formula(self.formula)
        return (INTERCEPT,) + predictors

    def model_truth(self):
        """True coefficients of the data-generating model for the analysis terms."""
        return {term: float(self.coefficients.get(term, 0.0)) for term in self.truth_terms}

    def generator_kwargs(self):
        return {
            'mean': self.mean,
            'cov': self.cov,
            'coefficients': self.coefficients,
            'noise_variance': self.noise_variance,
            'fields': self.fields,
        }

    @classmethod
    def from_dict(cls, params):
        known = {f.name for f in dataclass_fields(cls)}
        unknown = sorted(set(params) - known)
        if unknown:
            raise InvalidParameter(f"Unknown configuration keys: {unknown}")
        return cls(**params)


def load_config(config_path):
    """
    Load simulation configuration from a JSON file.

    Parameters:
    -----------
    config_path : str or Path
        Path to the JSON configuration file

    Returns:
    --------
    dict : Configuration dictionary with simulation parameters

    Example JSON structure:
    {
        "designs": ["finite_population"],
        "mechanisms": ["mcar", "mar_right"],
        "n_replicates": 1000,
        "n_imputations": 5,
        "proportion": 0.5,
        "population_size": 200,
        "seed": 123
    }
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = json.load(f)

    missing_keys = [key for key in REQUIRED_KEYS if key not in config]
    if missing_keys:
        raise InvalidParameter(f"Missing required configuration keys: {missing_keys}")

    for param in LIST_PARAMS:
        if not isinstance(config[param], list):
            config[param] = [config[param]]

    logger.info(f"Loaded configuration from {config_path}")
    return config
