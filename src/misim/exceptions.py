"""Exception classes for the simulation engine.

None of these are retried: each one signals a configuration or contract
violation rather than a transient condition.
"""


class MISimError(Exception):
    """Base class for all errors raised by the simulation engine."""
    pass


class InvalidParameter(MISimError):
    """Raised when distribution or configuration parameters are invalid.

    Examples: a covariance matrix that is not positive semi-definite, a
    non-positive row count, an amputation proportion outside (0, 1).
    """
    pass


class InsufficientPopulation(MISimError):
    """Raised when a sample larger than the source population is requested."""
    pass


class InsufficientImplicates(MISimError):
    """Raised when fewer than two implicates are passed to pooling.

    The between-imputation variance B is undefined for m < 2.
    """
    pass


class DataIntegrityError(MISimError):
    """Raised on schema or row-count mismatch between datasets, or when
    missing values are present where a complete dataset is required."""
    pass


class CollaboratorFailure(MISimError):
    """Raised when the amputer or the imputer fails.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, collaborator, message):
        super().__init__(f"{collaborator} failed: {message}")
        self.collaborator = collaborator
