"""Sampling from a finite reference population."""

from misim.exceptions import InsufficientPopulation, InvalidParameter


def sample_without_replacement(source, k, rng):
    """
    Draw ``k`` distinct rows of ``source`` uniformly at random.

    Parameters:
    - source: Dataset acting as the population or register
    - k: Sample size, 1 <= k <= source.n_rows
    - rng: numpy Generator

    Returns:
    - Dataset with k rows, re-indexed from 0. With k equal to the
      population size the result is a permutation of the source.
    """
    if int(k) != k or k < 1:
        raise InvalidParameter(f"Sample size must be a positive integer. Got {k}.")
    if k > source.n_rows:
        raise InsufficientPopulation(
            f"Cannot draw {k} rows without replacement from a population of {source.n_rows}"
        )
    indices = rng.choice(source.n_rows, size=int(k), replace=False)
    return source.take(indices)
