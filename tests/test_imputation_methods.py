import os
import sys

import numpy as np
import pandas as pd
import pytest
from numpy.random import default_rng

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from misim.analysis_model import AnalysisModel
from misim.data_generators import generate_data
from misim.exceptions import DataIntegrityError, InvalidParameter
from misim.imputation_methods import (
    IterativeImputation, MeanImputation, NormImputation, build_method, norm_draw,
)
from misim.missingness_patterns import MCARPattern
from misim.pooling import MultipleImputationPooler
from misim.records import Dataset, ImputationResult


@pytest.fixture(scope="module")
def complete():
    return generate_data(n=400, seed=11)


@pytest.fixture(scope="module")
def incomplete(complete):
    return MCARPattern(0.4).apply(complete, seed=12)


def assert_valid_implicates(result, incomplete, m):
    assert result.m == m
    observed = ~incomplete.missing_mask().to_numpy()
    for implicate in result.implicates:
        assert implicate.is_complete()
        assert implicate.fields == incomplete.fields
        assert implicate.n_rows == incomplete.n_rows
        np.testing.assert_array_equal(implicate.frame.to_numpy()[observed],
                                      incomplete.frame.to_numpy()[observed])


# ============================================================================
# norm
# ============================================================================
class TestNormImputation:

    def test_returns_m_complete_implicates(self, incomplete):
        result = NormImputation().impute(incomplete, n_imputations=5, rng=default_rng(1))
        assert_valid_implicates(result, incomplete, 5)
        assert result.incomplete is incomplete

    def test_implicates_differ_in_imputed_cells(self, incomplete):
        result = NormImputation().impute(incomplete, n_imputations=3, rng=default_rng(2))
        missing = incomplete.missing_mask().to_numpy()
        first, second = (imp.frame.to_numpy()[missing] for imp in result.implicates[:2])
        assert not np.allclose(first, second)

    def test_same_rng_same_implicates(self, incomplete):
        first = NormImputation().impute(incomplete, n_imputations=2, rng=default_rng(3))
        second = NormImputation().impute(incomplete, n_imputations=2, rng=default_rng(3))
        for a, b in zip(first.implicates, second.implicates):
            pd.testing.assert_frame_equal(a.frame, b.frame)

    def test_pooled_coefficients_near_truth(self):
        data = generate_data(n=2000, seed=21)
        dat_miss = MCARPattern(0.3).apply(data, seed=22)
        result = NormImputation().impute(dat_miss, n_imputations=5, rng=default_rng(23))
        model = AnalysisModel('y ~ x + z')
        pooled = MultipleImputationPooler().pool([model.fit(imp) for imp in result.implicates])
        assert pooled['x'].estimate == pytest.approx(6.0, abs=0.3)
        assert pooled['z'].estimate == pytest.approx(3.0, abs=0.3)
        assert pooled['x'].between_variance > 0

    def test_too_few_observed_values_raises(self):
        frame = pd.DataFrame({
            'x': [1.0, 2.0] + [np.nan] * 8,
            'z': np.arange(10.0),
            'y': np.arange(10.0) ** 2,
        })
        with pytest.raises(DataIntegrityError):
            NormImputation().impute(Dataset.from_frame(frame), n_imputations=2, rng=default_rng(0))

    def test_norm_draw_shape(self):
        rng = default_rng(5)
        X = np.column_stack([np.ones(50), rng.normal(size=50)])
        y = X @ np.array([1.0, 2.0]) + rng.normal(size=50)
        draws = norm_draw(y[:40], X[:40], X[40:], rng)
        assert draws.shape == (10,)
        assert np.all(np.isfinite(draws))


# ============================================================================
# iterative / mean
# ============================================================================
def test_iterative_imputation(incomplete):
    result = IterativeImputation().impute(incomplete, n_imputations=2, max_iterations=3, rng=default_rng(4))
    assert_valid_implicates(result, incomplete, 2)


def test_mean_imputation_is_single_valued(incomplete):
    result = MeanImputation().impute(incomplete, n_imputations=4, rng=default_rng(5))
    assert_valid_implicates(result, incomplete, 4)
    for implicate in result.implicates[1:]:
        pd.testing.assert_frame_equal(implicate.frame, result.implicates[0].frame)
    x = incomplete.column('x')
    filled = result.implicates[0].column('x')[np.isnan(x)]
    np.testing.assert_allclose(filled, np.nanmean(x))


# ============================================================================
# shared behaviour
# ============================================================================
def test_complete_input_is_copied(complete):
    result = NormImputation().impute(complete, n_imputations=2, rng=default_rng(6))
    for implicate in result.implicates:
        pd.testing.assert_frame_equal(implicate.frame, complete.frame)


def test_all_missing_field_raises():
    frame = pd.DataFrame({'x': [np.nan] * 5, 'z': np.arange(5.0), 'y': np.arange(5.0)})
    with pytest.raises(DataIntegrityError):
        MeanImputation().impute(Dataset.from_frame(frame), n_imputations=2)


def test_build_method():
    assert isinstance(build_method('norm'), NormImputation)
    assert build_method('mean').name == 'mean'
    with pytest.raises(InvalidParameter):
        build_method('pmm')


# ============================================================================
# ImputationResult.validate
# ============================================================================
class TestValidate:

    def _incomplete(self):
        return Dataset.from_frame(pd.DataFrame({'x': [1.0, np.nan, 3.0], 'z': [1.0, 2.0, 3.0], 'y': [0.0, 1.0, 2.0]}))

    def test_valid_result_passes(self):
        incomplete = self._incomplete()
        filled = Dataset.from_frame(incomplete.frame.fillna(2.0))
        assert ImputationResult(incomplete, (filled,)).validate().m == 1

    def test_remaining_missing_values_raise(self):
        incomplete = self._incomplete()
        with pytest.raises(DataIntegrityError):
            ImputationResult(incomplete, (incomplete,)).validate()

    def test_altered_observed_value_raises(self):
        incomplete = self._incomplete()
        frame = incomplete.frame.fillna(2.0)
        frame.loc[0, 'z'] = 99.0
        with pytest.raises(DataIntegrityError):
            ImputationResult(incomplete, (Dataset.from_frame(frame),)).validate()

    def test_row_count_mismatch_raises(self):
        incomplete = self._incomplete()
        short = Dataset.from_frame(incomplete.frame.fillna(2.0).iloc[:2])
        with pytest.raises(DataIntegrityError):
            ImputationResult(incomplete, (short,)).validate()
