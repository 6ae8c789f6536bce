"""Monte Carlo evaluation of multiple imputation.

This package simulates complete data, deletes values under a controlled
missingness mechanism, multiply imputes, pools with Rubin's rules and checks
bias and confidence-interval coverage against a known truth, under
model-based, design-based and finite-population simulation designs.

Basic Usage
-----------
>>> from misim import SimulationConfig, SimulationDriver
>>>
>>> config = SimulationConfig(design='finite_population', n_replicates=100, seed=123)
>>> summary = SimulationDriver(config).run()
>>> print(summary.to_frame())

Modules
-------
records : Dataset, EstimateSet, TruthVector and replication records
data_generators : Complete data generation
sampling : Sampling without replacement from a finite population
missingness_patterns : Amputation under MCAR and MAR mechanisms
imputation_methods : Imputation method classes
analysis_model : OLS analysis model
pooling : Rubin's rules, standard and zero-sampling-variance paths
evaluator : Scoring and summary statistics
simulator : Simulation driver
config : Simulation configuration
run_simulation : Command-line runner
"""

from .exceptions import (
    MISimError,
    InvalidParameter,
    InsufficientPopulation,
    InsufficientImplicates,
    DataIntegrityError,
    CollaboratorFailure,
)
from .records import (
    Dataset,
    ImputationResult,
    TermEstimate,
    EstimateSet,
    TruthVector,
    ReplicationRecord,
    ReplicationFailure,
)
from .data_generators import generate_data, generate_population
from .sampling import sample_without_replacement
from .missingness_patterns import (
    Mechanism,
    MissingnessSpec,
    MissingnessPattern,
    MCARPattern,
    MARPattern,
    build_pattern,
)
from .imputation_methods import (
    ImputationMethod,
    NormImputation,
    IterativeImputation,
    MeanImputation,
    build_method,
)
from .analysis_model import AnalysisModel, parse_formula
from .pooling import PoolingMode, PooledTerm, PooledResult, MultipleImputationPooler, pool, pool_scalar
from .evaluator import SimulationSummary, score
from .config import SimulationConfig, load_config
from .simulator import DriverState, SimulationDriver

__version__ = '1.0.0'

__all__ = [
    # Errors
    'MISimError',
    'InvalidParameter',
    'InsufficientPopulation',
    'InsufficientImplicates',
    'DataIntegrityError',
    'CollaboratorFailure',

    # Records
    'Dataset',
    'ImputationResult',
    'TermEstimate',
    'EstimateSet',
    'TruthVector',
    'ReplicationRecord',
    'ReplicationFailure',

    # Data generation and sampling
    'generate_data',
    'generate_population',
    'sample_without_replacement',

    # Missingness
    'Mechanism',
    'MissingnessSpec',
    'MissingnessPattern',
    'MCARPattern',
    'MARPattern',
    'build_pattern',

    # Imputation
    'ImputationMethod',
    'NormImputation',
    'IterativeImputation',
    'MeanImputation',
    'build_method',

    # Analysis and pooling
    'AnalysisModel',
    'parse_formula',
    'PoolingMode',
    'PooledTerm',
    'PooledResult',
    'MultipleImputationPooler',
    'pool',
    'pool_scalar',

    # Evaluation and simulation
    'SimulationSummary',
    'score',
    'SimulationConfig',
    'load_config',
    'DriverState',
    'SimulationDriver',
]
