"""Random stream helpers.

Every stage takes an explicit ``numpy.random.Generator``. Replicate streams
are derived from the root seed and the replicate index with SeedSequence
spawn keys, so a replicate draws the same numbers whatever the number of
workers or the order in which replicates finish.
"""

import zlib

from numpy.random import default_rng, SeedSequence

DESIGN_KEYS = {
    'model_based': 0,
    'design_based': 1,
    'finite_population': 2,
}

# spawn-key slots below the replicate streams
POPULATION_STREAM = 0
REPLICATE_STREAM = 1


def _design_key(design):
    if design in DESIGN_KEYS:
        return DESIGN_KEYS[design]
    return zlib.crc32(design.encode('utf-8'))


def population_seed_sequence(seed, design):
    """Seed sequence for the fixed inputs (population, finite dataset) of a design."""
    return SeedSequence(seed, spawn_key=(_design_key(design), POPULATION_STREAM))


def replicate_seed_sequence(seed, design, replicate):
    """Seed sequence for one replicate, independent of scheduling order."""
    return SeedSequence(seed, spawn_key=(_design_key(design), REPLICATE_STREAM, int(replicate)))


def mechanism_rngs(seed_sequence, n_mechanisms):
    """Split a replicate stream into a data stream and one stream per mechanism.

    Returns ``(data_rng, [mechanism_rng, ...])``.
    """
    children = seed_sequence.spawn(n_mechanisms + 1)
    data_rng = default_rng(children[0])
    return data_rng, [default_rng(child) for child in children[1:]]
