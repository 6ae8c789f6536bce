"""Typed records passed between the simulation stages.

Dataset -> ImputationResult -> EstimateSet -> PooledResult -> ReplicationRecord.
Missing values are represented by NaN, never by a numeric sentinel.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
from pandas.api.types import is_numeric_dtype

from misim.exceptions import DataIntegrityError

DEFAULT_FIELDS = ('x', 'z', 'y')


@dataclass(frozen=True)
class Dataset:
    """An ordered collection of rows over a fixed tuple of numeric fields.

    Use :meth:`from_frame` to build one; it copies the frame, orders the
    columns by ``fields`` and casts them to float64. The wrapped frame is
    treated as read-only, :meth:`to_frame` hands out a copy.
    """
    frame: pd.DataFrame
    fields: Tuple[str, ...] = DEFAULT_FIELDS

    def __post_init__(self):
        if list(self.frame.columns) != list(self.fields):
            raise DataIntegrityError(
                f"Dataset columns {list(self.frame.columns)} do not match fields {list(self.fields)}"
            )
        for name in self.fields:
            if not is_numeric_dtype(self.frame[name]):
                raise DataIntegrityError(f"Field '{name}' is not numeric (dtype {self.frame[name].dtype})")
        if not self.frame.index.equals(pd.RangeIndex(len(self.frame))):
            raise DataIntegrityError("Dataset rows must be indexed 0..n-1; build it with Dataset.from_frame")

    @classmethod
    def from_frame(cls, frame, fields=None):
        fields = tuple(fields) if fields is not None else tuple(frame.columns)
        missing = [name for name in fields if name not in frame.columns]
        if missing:
            raise DataIntegrityError(f"Frame is missing required fields: {missing}")
        try:
            data = frame.loc[:, list(fields)].astype(np.float64)
        except (TypeError, ValueError) as e:
            raise DataIntegrityError(f"Fields {list(fields)} must be numeric: {e}") from e
        return cls(data.reset_index(drop=True), fields)

    @classmethod
    def concat(cls, datasets):
        datasets = list(datasets)
        if not datasets:
            raise DataIntegrityError("Cannot concatenate an empty list of datasets")
        fields = datasets[0].fields
        for ds in datasets[1:]:
            if ds.fields != fields:
                raise DataIntegrityError(f"Schema mismatch in concat: {ds.fields} != {fields}")
        frame = pd.concat([ds.frame for ds in datasets], ignore_index=True)
        return cls(frame, fields)

    @property
    def n_rows(self):
        return len(self.frame)

    def __len__(self):
        return self.n_rows

    def column(self, name):
        return self.frame[name].to_numpy(dtype=np.float64, copy=True)

    def to_frame(self):
        return self.frame.copy()

    def missing_mask(self):
        """Boolean frame, True where a value is absent."""
        return self.frame.isna()

    def is_complete(self):
        return not self.frame.isna().to_numpy().any()

    def missing_fraction(self):
        """Fraction of rows with at least one absent value."""
        if self.n_rows == 0:
            return 0.0
        return float(self.frame.isna().any(axis=1).mean())

    def take(self, indices):
        return Dataset(self.frame.iloc[np.asarray(indices)].reset_index(drop=True), self.fields)

    def same_schema(self, other):
        return self.fields == other.fields and self.n_rows == other.n_rows


@dataclass(frozen=True)
class ImputationResult:
    """The incomplete dataset together with its m completed implicates."""
    incomplete: Dataset
    implicates: Tuple[Dataset, ...]

    @property
    def m(self):
        return len(self.implicates)

    def validate(self):
        """Check that every implicate is a complete copy of the original.

        Raises DataIntegrityError on a schema or row-count mismatch, on
        remaining missing values, or when an observed value was altered.
        """
        observed = ~self.incomplete.missing_mask().to_numpy()
        original = self.incomplete.frame.to_numpy()
        for i, implicate in enumerate(self.implicates):
            if not implicate.same_schema(self.incomplete):
                raise DataIntegrityError(
                    f"Implicate {i} has fields {implicate.fields} and {implicate.n_rows} rows, "
                    f"expected {self.incomplete.fields} and {self.incomplete.n_rows} rows"
                )
            if not implicate.is_complete():
                raise DataIntegrityError(f"Implicate {i} still contains missing values")
            values = implicate.frame.to_numpy()
            if not np.allclose(values[observed], original[observed]):
                raise DataIntegrityError(f"Implicate {i} altered observed values")
        return self


@dataclass(frozen=True)
class TermEstimate:
    estimate: float
    variance: float


@dataclass(frozen=True)
class EstimateSet:
    """Per-term point estimates and sampling variances for one completed dataset."""
    terms: Dict[str, TermEstimate]
    df_residual: Optional[float] = None

    @property
    def term_names(self):
        return tuple(self.terms)

    def __getitem__(self, term):
        return self.terms[term]


@dataclass(frozen=True)
class TruthVector:
    """Known true coefficient value per term for the active scenario."""
    values: Dict[str, float]
    source: str = 'model'

    @property
    def terms(self):
        return tuple(self.values)

    def __getitem__(self, term):
        return self.values[term]


@dataclass(frozen=True)
class ReplicationRecord:
    """One pooled result scored against the truth.

    Bias, coverage and interval width are derived per term.
    """
    design: str
    mechanism: str
    replicate: int
    pooled: 'PooledResult'
    truth: TruthVector

    @property
    def terms(self):
        return tuple(self.pooled.terms)

    def bias(self, term):
        return self.pooled[term].estimate - self.truth[term]

    def covered(self, term):
        row = self.pooled[term]
        return bool(row.lower_ci <= self.truth[term] <= row.upper_ci)

    def width(self, term):
        row = self.pooled[term]
        return row.upper_ci - row.lower_ci

    def to_rows(self):
        rows = []
        for term in self.terms:
            row = self.pooled[term]
            rows.append({
                'design': self.design,
                'mechanism': self.mechanism,
                'replicate': self.replicate,
                'term': term,
                'estimate': row.estimate,
                'truth': self.truth[term],
                'bias': self.bias(term),
                'std_error': row.std_error,
                'df': row.df,
                'lower_ci': row.lower_ci,
                'upper_ci': row.upper_ci,
                'width': self.width(term),
                'covered': self.covered(term),
                'fmi': row.fmi,
            })
        return rows


@dataclass(frozen=True)
class ReplicationFailure:
    """A replicate/mechanism that did not produce a ReplicationRecord."""
    design: str
    mechanism: str
    replicate: int
    kind: str
    message: str
    collaborator: bool = field(default=False)
