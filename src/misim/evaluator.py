"""Scoring of pooled results against the truth and aggregation across replicates.

Aggregation is streaming: per (design, mechanism, term) the summary keeps
running means updated with Welford's algorithm, so individual replication
records need not be retained (they are kept when ``keep_records`` is set).
"""

import logging
import math
from collections import OrderedDict

import numpy as np
import pandas as pd

from misim.exceptions import DataIntegrityError
from misim.records import ReplicationRecord

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = [
    'design', 'mechanism', 'term', 'n_replicates', 'n_failed', 'status',
    'mean_bias', 'bias_mc_se', 'rmse', 'coverage', 'coverage_mc_se',
    'mean_width', 'mean_std_error',
]


def score(pooled, truth, design, mechanism, replicate):
    """Score one pooled result against the truth vector."""
    absent = [term for term in pooled.terms if term not in truth.values]
    if absent:
        raise DataIntegrityError(f"Truth vector has no value for terms {absent}")
    return ReplicationRecord(design, mechanism, replicate, pooled, truth)


class RunningMean:
    """Welford accumulator for a mean and sample variance."""

    def __init__(self):
        self.n = 0
        self.mean = 0.0
        self._m2 = 0.0

    def add(self, value):
        self.n += 1
        delta = value - self.mean
        self.mean += delta / self.n
        self._m2 += delta * (value - self.mean)

    @property
    def variance(self):
        if self.n < 2:
            return math.nan
        return self._m2 / (self.n - 1)

    def value(self):
        return self.mean if self.n else math.nan


class TermAccumulator:
    """Running bias, squared bias, coverage, width and standard error for one term."""

    def __init__(self):
        self.bias = RunningMean()
        self.squared_bias = RunningMean()
        self.covered = RunningMean()
        self.width = RunningMean()
        self.std_error = RunningMean()

    @property
    def count(self):
        return self.bias.n

    def add(self, record, term):
        bias = record.bias(term)
        self.bias.add(bias)
        self.squared_bias.add(bias ** 2)
        self.covered.add(1.0 if record.covered(term) else 0.0)
        self.width.add(record.width(term))
        self.std_error.add(record.pooled[term].std_error)

    def as_dict(self):
        n = self.count
        coverage = self.covered.value()
        return {
            'n_replicates': n,
            'mean_bias': self.bias.value(),
            'bias_mc_se': math.sqrt(self.bias.variance / n) if n > 1 else math.nan,
            'rmse': math.sqrt(self.squared_bias.value()) if n else math.nan,
            'coverage': coverage,
            'coverage_mc_se': math.sqrt(coverage * (1 - coverage) / n) if n else math.nan,
            'mean_width': self.width.value(),
            'mean_std_error': self.std_error.value(),
        }


class SimulationSummary:
    """Per (design, mechanism, term) summary statistics of a run.

    Owned by a single process; workers never touch it. A scenario
    (design, mechanism) registered with no successful replicate is reported
    with status 'failed' and NaN statistics. Scenarios of a design whose
    run was aborted report status 'aborted' for their partial statistics.
    """

    def __init__(self, keep_records=True):
        self.keep_records = keep_records
        self.records = []
        self.failures = []
        self._terms = OrderedDict()
        self._accumulators = OrderedDict()
        self._successes = OrderedDict()
        self._failed = OrderedDict()
        self._aborted = set()

    def register(self, design, mechanism, terms):
        key = (design, mechanism)
        self._successes.setdefault(key, 0)
        self._failed.setdefault(key, 0)
        self._terms.setdefault(key, tuple(terms))
        for term in terms:
            self._accumulators.setdefault((design, mechanism, term), TermAccumulator())

    def add_record(self, record):
        key = (record.design, record.mechanism)
        self.register(record.design, record.mechanism, record.terms)
        for term in record.terms:
            self._accumulators[(record.design, record.mechanism, term)].add(record, term)
        self._successes[key] += 1
        if self.keep_records:
            self.records.append(record)

    def add_failure(self, failure):
        key = (failure.design, failure.mechanism)
        self._successes.setdefault(key, 0)
        self._failed[key] = self._failed.get(key, 0) + 1
        self.failures.append(failure)

    def successes(self, design, mechanism):
        return self._successes.get((design, mechanism), 0)

    def failed(self, design, mechanism):
        return self._failed.get((design, mechanism), 0)

    @property
    def n_records(self):
        return sum(self._successes.values())

    @property
    def n_failures(self):
        return sum(self._failed.values())

    def mark_aborted(self, design):
        self._aborted.add(design)

    @property
    def aborted_designs(self):
        return sorted(self._aborted)

    def failed_scenarios(self):
        """Scenarios with at least one attempt and no successful replicate."""
        return [key for key, n in self._successes.items() if n == 0 and self._failed.get(key, 0) > 0]

    def to_frame(self):
        """The summary table, one row per (design, mechanism, term)."""
        rows = []
        for key in self._successes:
            design, mechanism = key
            n_failed = self._failed.get(key, 0)
            terms = self._terms.get(key, ())
            if self._successes[key] == 0:
                for term in terms or (np.nan,):
                    row = {name: math.nan for name in SUMMARY_COLUMNS}
                    row.update({'design': design, 'mechanism': mechanism, 'term': term,
                                'n_replicates': 0, 'n_failed': n_failed,
                                'status': 'failed' if n_failed else 'empty'})
                    rows.append(row)
                continue
            for term in terms:
                row = {'design': design, 'mechanism': mechanism, 'term': term,
                       'n_failed': n_failed,
                       'status': 'aborted' if design in self._aborted else 'ok'}
                row.update(self._accumulators[(design, mechanism, term)].as_dict())
                rows.append(row)
        return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)

    def records_frame(self):
        """All retained replication records, one row per term."""
        rows = [row for record in self.records for row in record.to_rows()]
        return pd.DataFrame(rows)

    def failures_frame(self):
        return pd.DataFrame([vars(f) for f in self.failures],
                            columns=['design', 'mechanism', 'replicate', 'kind', 'message', 'collaborator'])
