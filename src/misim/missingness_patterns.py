"""Missingness pattern classes for simulation studies.

Amputation follows the multivariate amputation scheme: every row is
assigned to one missing-data pattern (by default one pattern per affected
field, each making that field missing), and each row becomes incomplete
with a probability whose average equals the target proportion.

- MCAR: the probability is the target proportion for every row.
- MAR: the probability is a logistic function of a weighted sum score of
  the fields that stay observed in the row's pattern. The logistic shift is
  solved numerically so that the mean probability equals the proportion.
  RIGHT puts the missingness in the upper tail of the score, LEFT in the
  lower tail, MID around the centre and TAIL in both tails.
"""

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from numpy.random import default_rng
from scipy.optimize import brentq
from scipy.special import expit

from misim.exceptions import DataIntegrityError, InvalidParameter
from misim.records import Dataset

logger = logging.getLogger(__name__)


class Mechanism(enum.Enum):
    MCAR = 'mcar'
    MAR_RIGHT = 'mar_right'
    MAR_LEFT = 'mar_left'
    MAR_MID = 'mar_mid'
    MAR_TAIL = 'mar_tail'

    @property
    def is_mar(self):
        return self is not Mechanism.MCAR


@dataclass(frozen=True)
class MissingnessSpec:
    """Target proportion of incomplete rows, mechanism and affected fields.

    ``affected_fields=None`` means every field of the dataset.
    """
    proportion: float
    mechanism: Mechanism = Mechanism.MCAR
    affected_fields: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        if not 0 < self.proportion < 1:
            raise InvalidParameter(f"Amputation proportion must be in (0, 1). Got {self.proportion}.")
        object.__setattr__(self, 'mechanism', Mechanism(self.mechanism))
        if self.affected_fields is not None:
            fields = tuple(self.affected_fields)
            if not fields:
                raise InvalidParameter("affected_fields must not be empty")
            object.__setattr__(self, 'affected_fields', fields)

    def patterns_for(self, fields):
        """One pattern per affected field; each pattern is the tuple of fields it removes."""
        affected = self.affected_fields if self.affected_fields is not None else tuple(fields)
        unknown = [name for name in affected if name not in fields]
        if unknown:
            raise InvalidParameter(f"Affected fields {unknown} are not in the dataset fields {list(fields)}")
        if len(fields) < 2:
            raise InvalidParameter("Amputation needs at least two fields so every row keeps an observed value")
        return [(name,) for name in affected]


def _standardize(values):
    sd = values.std()
    if sd == 0 or not np.isfinite(sd):
        return np.zeros_like(values)
    return (values - values.mean()) / sd


def _shape_score(score, mechanism):
    if mechanism is Mechanism.MAR_RIGHT:
        return score
    if mechanism is Mechanism.MAR_LEFT:
        return -score
    if mechanism is Mechanism.MAR_MID:
        return -np.abs(score - score.mean()) + 0.75
    if mechanism is Mechanism.MAR_TAIL:
        return np.abs(score - score.mean()) - 0.75
    raise InvalidParameter(f"No score shape for mechanism {mechanism}")


def logistic_probabilities(score, proportion):
    """Shift logistic(score + b) so that its mean equals ``proportion``."""
    if np.all(score == score[0]):
        return np.full(len(score), proportion)
    shift = brentq(lambda b: expit(score + b).mean() - proportion, -100.0, 100.0)
    return expit(score + shift)


class MissingnessPattern(ABC):
    """Abstract base class for missingness patterns.

    All missingness patterns must implement:
    - probabilities(standardized, rows, pattern): per-row probability of becoming incomplete
    - name: Property for descriptive name
    """

    mechanism = None

    def __init__(self, proportion=0.5, affected_fields=None):
        self.spec = MissingnessSpec(proportion, self.mechanism, affected_fields)

    @property
    def proportion(self):
        return self.spec.proportion

    @property
    def name(self):
        return self.spec.mechanism.value

    @abstractmethod
    def probabilities(self, standardized, rows, pattern):
        """Probability that each row in ``rows`` becomes incomplete.

        Parameters:
        - standardized: DataFrame of the complete data, columns standardized
        - rows: Integer positions of the rows assigned to ``pattern``
        - pattern: Tuple of fields the pattern removes
        """
        pass

    def apply(self, data, rng=None, seed=None):
        """Apply missingness to a complete Dataset.

        Parameters:
        - data: Complete Dataset
        - rng: numpy Generator; takes precedence over seed
        - seed: Random seed

        Returns:
        - Dataset with NaN in the amputed cells
        """
        if rng is None:
            rng = default_rng(seed)
        if not data.is_complete():
            raise DataIntegrityError("Amputation requires a complete dataset")
        patterns = self.spec.patterns_for(data.fields)
        frame = data.to_frame()
        standardized = frame.copy()
        for name in data.fields:
            standardized[name] = _standardize(frame[name].to_numpy())

        assignment = rng.integers(0, len(patterns), size=data.n_rows)
        for k, pattern in enumerate(patterns):
            rows = np.flatnonzero(assignment == k)
            if len(rows) == 0:
                continue
            probs = self.probabilities(standardized, rows, pattern)
            incomplete = rows[rng.uniform(size=len(rows)) < probs]
            frame.iloc[incomplete, [frame.columns.get_loc(name) for name in pattern]] = np.nan

        dat_miss = Dataset(frame, data.fields)
        logger.debug(f"{self.name}: {dat_miss.missing_fraction():.3f} of rows incomplete (target {self.proportion})")
        return dat_miss


class MCARPattern(MissingnessPattern):
    mechanism = Mechanism.MCAR

    def probabilities(self, standardized, rows, pattern):
        return np.full(len(rows), self.proportion)


class MARPattern(MissingnessPattern):
    """Missingness driven by a weighted sum score of the observed fields.

    ``kind`` selects where in the score distribution rows go missing:
    'right' (default), 'left', 'mid' or 'tail'. Weights default to 1 for
    every field that stays observed in a pattern.
    """

    def __init__(self, proportion=0.5, affected_fields=None, kind='right', weights=None):
        try:
            self.mechanism = Mechanism(f'mar_{kind}')
        except ValueError:
            raise InvalidParameter(f"Unknown MAR type {kind!r}; use 'right', 'left', 'mid' or 'tail'") from None
        self.weights = dict(weights) if weights else None
        super().__init__(proportion, affected_fields)

    def probabilities(self, standardized, rows, pattern):
        observed = [name for name in standardized.columns if name not in pattern]
        weights = np.array([self.weights.get(name, 0.0) if self.weights else 1.0 for name in observed])
        score = standardized.iloc[rows][observed].to_numpy() @ weights
        score = _shape_score(_standardize(score), self.mechanism)
        return logistic_probabilities(score, self.proportion)


def build_pattern(name, proportion=0.5, affected_fields=None):
    """Map a configuration name ('mcar', 'mar_right', ...) to a pattern instance."""
    try:
        mechanism = Mechanism(name)
    except ValueError:
        raise InvalidParameter(
            f"Unknown missingness mechanism {name!r}; use one of {[m.value for m in Mechanism]}"
        ) from None
    if mechanism is Mechanism.MCAR:
        return MCARPattern(proportion, affected_fields)
    return MARPattern(proportion, affected_fields, kind=mechanism.value.split('_', 1)[1])
