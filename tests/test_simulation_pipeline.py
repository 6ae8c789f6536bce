import logging
import os
import sys

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from misim.analysis_model import AnalysisModel
from misim.config import SimulationConfig
from misim.evaluator import SUMMARY_COLUMNS
from misim.exceptions import DataIntegrityError
from misim.imputation_methods import MeanImputation
from misim.missingness_patterns import MCARPattern
from misim.pooling import PoolingMode
from misim.simulator import DriverState, SimulationDriver


def small_config(**overrides):
    """Provides standard parameters for a fast simulation run."""
    params = {
        'n_replicates': 6,
        'n_imputations': 3,
        'max_iterations': 3,
        'sample_size': 100,
        'population_size': 100,
        'population_blocks': 5,
        'seed': 2024,
    }
    params.update(overrides)
    return SimulationConfig(**params)


class BrokenPattern(MCARPattern):
    """An amputer whose backend always crashes."""

    def apply(self, data, rng=None, seed=None):
        raise ValueError("amputation backend crashed")


class FailAfterImputation(MeanImputation):
    """Mean imputation that crashes on every call after the first ``n_ok``."""

    def __init__(self, n_ok):
        super().__init__()
        self.n_ok = n_ok
        self.calls = 0

    def impute(self, data, n_imputations=5, max_iterations=5, rng=None):
        self.calls += 1
        if self.calls > self.n_ok:
            raise RuntimeError("imputation backend crashed")
        return super().impute(data, n_imputations=n_imputations, max_iterations=max_iterations, rng=rng)


class RejectingModel(AnalysisModel):
    """An analysis model that rejects every completed dataset."""

    def fit(self, data):
        raise DataIntegrityError("completed dataset rejected")


# ----------------------------------------------------------------------
# TEST 1: Each design runs to DONE with a complete summary table
# ----------------------------------------------------------------------
@pytest.mark.parametrize('design', ['model_based', 'design_based', 'finite_population'])
def test_01_designs_run_to_done(design):
    config = small_config(design=design)
    driver = SimulationDriver(config)
    summary = driver.run()

    assert driver.state is DriverState.DONE
    assert driver.replicates_done == config.n_replicates
    table = summary.to_frame()
    assert list(table.columns) == SUMMARY_COLUMNS
    assert len(table) == 2 * 3
    assert (table['status'] == 'ok').all()
    assert (table['n_replicates'] == config.n_replicates).all()
    assert (table['n_failed'] == 0).all()
    assert summary.n_records == 2 * config.n_replicates

    if design == 'model_based':
        assert driver.truth.source == 'model'
        assert driver.truth['x'] == 6.0
        assert driver.population is None
    else:
        assert driver.truth.source == 'empirical'
    if design == 'design_based':
        assert driver.population.n_rows == config.population_blocks * config.sample_size


def test_02_finite_population_uses_zero_sampling_variance_pooling():
    driver = SimulationDriver(small_config(design='finite_population'))
    driver.run()
    assert driver.pooler.mode is PoolingMode.ZERO_SAMPLING_VARIANCE
    for record in driver.records:
        for term in record.terms:
            assert record.pooled[term].df == 2.0
            assert record.pooled[term].within_variance == 0.0


# ----------------------------------------------------------------------
# TEST 2: Reproducibility
# ----------------------------------------------------------------------
def test_03_same_seed_same_results():
    first = SimulationDriver(small_config()).run()
    second = SimulationDriver(small_config()).run()
    pd.testing.assert_frame_equal(first.records_frame(), second.records_frame())
    pd.testing.assert_frame_equal(first.to_frame(), second.to_frame())


def test_04_different_seed_different_results():
    first = SimulationDriver(small_config(seed=1)).run().records_frame()
    second = SimulationDriver(small_config(seed=2)).run().records_frame()
    assert not np.allclose(first['estimate'], second['estimate'])


def test_05_parallel_matches_sequential():
    sequential = SimulationDriver(small_config(design='design_based')).run()
    parallel = SimulationDriver(small_config(design='design_based', n_jobs=2)).run()
    pd.testing.assert_frame_equal(sequential.records_frame(), parallel.records_frame())
    pd.testing.assert_frame_equal(sequential.to_frame(), parallel.to_frame())


# ----------------------------------------------------------------------
# TEST 3: Failures are recorded and isolated per scenario
# ----------------------------------------------------------------------
def test_06_broken_amputer_fails_only_its_scenario(caplog):
    config = small_config(max_failure_rate=0.6)
    driver = SimulationDriver(config, patterns={'mcar': BrokenPattern(0.5)})
    with caplog.at_level(logging.WARNING):
        summary = driver.run()

    assert driver.state is DriverState.DONE
    assert summary.failed_scenarios() == [('model_based', 'mcar')]
    assert summary.successes('model_based', 'mar_right') == config.n_replicates
    assert summary.failed('model_based', 'mcar') == config.n_replicates
    failure = summary.failures[0]
    assert failure.kind == 'CollaboratorFailure'
    assert failure.collaborator
    assert "amputer 'mcar'" in failure.message

    table = summary.to_frame()
    failed_rows = table[table['mechanism'] == 'mcar']
    assert (failed_rows['status'] == 'failed').all()
    assert failed_rows['coverage'].isna().all()
    assert (table[table['mechanism'] == 'mar_right']['status'] == 'ok').all()
    assert "scenario 'mcar' failed" in caplog.text


def test_07_collaborator_failure_rate_aborts_run():
    config = small_config(n_replicates=50, n_imputations=2, min_replicates_before_abort=5)
    driver = SimulationDriver(config, method=FailAfterImputation(n_ok=6))
    summary = driver.run()

    assert driver.state is DriverState.ABORTED
    assert 'collaborator failure rate' in driver.abort_reason
    assert driver.replicates_done < config.n_replicates
    assert summary.successes('model_based', 'mcar') == 3
    assert summary.successes('model_based', 'mar_right') == 3
    assert summary.n_failures == driver.collaborator_failures
    assert driver.summary.aborted_designs == ['model_based']
    assert (summary.to_frame()['status'] == 'aborted').all()
    # partial results stay available
    assert len(summary.records_frame()) == 6 * 3


def test_08_cancel_before_run_aborts():
    driver = SimulationDriver(small_config())
    driver.cancel('user request')
    summary = driver.run()
    assert driver.state is DriverState.ABORTED
    assert driver.abort_reason == 'user request'
    assert summary.n_records == 0
    assert (summary.to_frame()['status'] == 'empty').all()


def test_08b_analysis_failures_are_not_collaborator_failures():
    config = small_config(n_replicates=12, min_replicates_before_abort=2)
    driver = SimulationDriver(config)
    driver.model = RejectingModel(config.formula)
    summary = driver.run()

    assert driver.state is DriverState.DONE
    assert driver.replicates_done == config.n_replicates
    assert driver.collaborator_failures == 0
    assert summary.n_failures == 2 * config.n_replicates
    assert all(f.kind == 'DataIntegrityError' and not f.collaborator for f in summary.failures)
    assert sorted(summary.failed_scenarios()) == [('model_based', 'mar_right'), ('model_based', 'mcar')]


def test_08c_parallel_run_aborts_and_drains():
    config = small_config(n_replicates=60, n_jobs=2, min_replicates_before_abort=5)
    broken = {'mcar': BrokenPattern(0.5), 'mar_right': BrokenPattern(0.5)}
    driver = SimulationDriver(config, patterns=broken)
    summary = driver.run()

    assert driver.state is DriverState.ABORTED
    assert 5 <= driver.replicates_done < config.n_replicates
    # every dispatched replicate was aggregated, in order
    assert summary.n_failures == 2 * driver.replicates_done
    assert sorted({f.replicate for f in summary.failures}) == list(range(driver.replicates_done))
    assert driver.collaborator_failures == summary.n_failures


def test_09_invalid_transition_raises():
    driver = SimulationDriver(small_config())
    with pytest.raises(RuntimeError):
        driver._transition(DriverState.DONE)
    assert driver.state is DriverState.INIT


# ----------------------------------------------------------------------
# TEST 4: Statistical behaviour
# ----------------------------------------------------------------------
def test_10_mean_imputation_of_outcome_undercovers():
    """Single mean imputation of y attenuates the slopes; norm does not."""
    params = dict(n_replicates=20, sample_size=200, mechanisms=('mcar',), affected_fields=('y',))
    mean_table = SimulationDriver(small_config(method='mean', **params)).run().to_frame().set_index('term')
    norm_table = SimulationDriver(small_config(method='norm', **params)).run().to_frame().set_index('term')

    assert mean_table.loc['x', 'coverage'] < 0.2
    assert mean_table.loc['x', 'mean_bias'] < -1.0
    assert abs(norm_table.loc['x', 'mean_bias']) < abs(mean_table.loc['x', 'mean_bias'])
    assert norm_table.loc['x', 'rmse'] < mean_table.loc['x', 'rmse']


def test_11_finite_population_coverage_sanity():
    config = small_config(design='finite_population', n_replicates=100, n_imputations=5,
                          population_size=200, mechanisms=('mcar',))
    table = SimulationDriver(config).run().to_frame().set_index('term')
    assert table.loc['x', 'coverage'] > 0.85
    assert table.loc['z', 'coverage'] > 0.85


@pytest.mark.slow
@pytest.mark.parametrize('mechanism', ['mcar', 'mar_right'])
def test_12_finite_population_full_study(mechanism):
    config = SimulationConfig(design='finite_population', mechanisms=(mechanism,), n_replicates=1000,
                              n_imputations=5, proportion=0.5, population_size=200, seed=123)
    driver = SimulationDriver(config)
    table = driver.run().to_frame().set_index('term')
    assert driver.state is DriverState.DONE
    for term in ('intercept', 'x', 'z'):
        assert 0.90 <= table.loc[term, 'coverage'] <= 0.99
        assert abs(table.loc[term, 'mean_bias']) < 0.05
