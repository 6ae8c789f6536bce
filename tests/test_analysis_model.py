import os
import sys

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from misim.analysis_model import AnalysisModel, parse_formula
from misim.data_generators import generate_data
from misim.exceptions import DataIntegrityError, InvalidParameter
from misim.records import Dataset

RTOL = 1e-8


class TestAnalysisModel:

    @pytest.fixture
    def data(self):
        return generate_data(n=300, seed=99)

    def test_matches_normal_equations(self, data):
        model = AnalysisModel('y ~ x + z')
        est = model.fit(data)
        X = np.column_stack([np.ones(300), data.column('x'), data.column('z')])
        y = data.column('y')
        xtx_inv = np.linalg.inv(X.T @ X)
        beta = xtx_inv @ X.T @ y
        resid = y - X @ beta
        sigma2 = resid @ resid / (300 - 3)
        assert est.term_names == ('intercept', 'x', 'z')
        for j, term in enumerate(model.terms):
            assert est[term].estimate == pytest.approx(beta[j], rel=RTOL)
            assert est[term].variance == pytest.approx(sigma2 * xtx_inv[j, j], rel=RTOL)
        assert est.df_residual == 297

    def test_estimates_close_to_generating_coefficients(self):
        est = AnalysisModel().fit(generate_data(n=5000, seed=1))
        assert est['x'].estimate == pytest.approx(6.0, abs=0.1)
        assert est['z'].estimate == pytest.approx(3.0, abs=0.1)
        assert est['intercept'].estimate == pytest.approx(0.0, abs=0.1)

    def test_subset_formula(self, data):
        est = AnalysisModel('y ~ x').fit(data)
        assert est.term_names == ('intercept', 'x')

    def test_missing_values_raise(self, data):
        frame = data.to_frame()
        frame.loc[3, 'x'] = np.nan
        with pytest.raises(DataIntegrityError):
            AnalysisModel().fit(Dataset.from_frame(frame))

    def test_too_few_rows_raise(self, data):
        with pytest.raises(DataIntegrityError):
            AnalysisModel().fit(data.take([0, 1, 2]))

    def test_collinear_design_raises(self):
        frame = pd.DataFrame({'x': np.arange(10.0), 'z': 2 * np.arange(10.0), 'y': np.arange(10.0)})
        with pytest.raises(DataIntegrityError):
            AnalysisModel().fit(Dataset.from_frame(frame))

    def test_absent_variable_raises(self, data):
        with pytest.raises(DataIntegrityError):
            AnalysisModel('y ~ x + w').fit(data)

    def test_truth_from_is_empirical(self, data):
        truth = AnalysisModel().truth_from(data)
        assert truth.source == 'empirical'
        assert truth['x'] == pytest.approx(AnalysisModel().fit(data)['x'].estimate)


@pytest.mark.parametrize('formula, expected', [
    ('y ~ x + z', ('y', ('x', 'z'))),
    ('y~x', ('y', ('x',))),
    ('  out ~ a1 +  b_2 ', ('out', ('a1', 'b_2'))),
])
def test_parse_formula(formula, expected):
    assert parse_formula(formula) == expected


@pytest.mark.parametrize('formula', ['y x + z', 'y ~ x ~ z', 'y ~ x + x', 'y ~ y', 'y ~ x + ', 'y ~ intercept', 'y ~ x*z'])
def test_parse_formula_rejects(formula):
    with pytest.raises(InvalidParameter):
        parse_formula(formula)
