"""Simulation study orchestration.

The driver runs R independent replicates of
obtain data -> ampute -> impute -> analyse -> pool -> score
for every configured mechanism and streams the results into a
SimulationSummary owned by the calling process.
"""

import enum
import logging
from collections import deque
from dataclasses import dataclass
from multiprocessing import Pool
from typing import Dict, Optional

from numpy.random import default_rng
from tqdm import tqdm

from misim.analysis_model import AnalysisModel
from misim.config import DESIGN_BASED, FINITE_POPULATION, MODEL_BASED
from misim.data_generators import generate_data, generate_population
from misim.evaluator import SimulationSummary, score
from misim.exceptions import CollaboratorFailure, DataIntegrityError, MISimError
from misim.imputation_methods import ImputationMethod, build_method
from misim.missingness_patterns import build_pattern
from misim.pooling import MultipleImputationPooler
from misim.records import Dataset, ReplicationFailure, TruthVector
from misim.rng import mechanism_rngs, population_seed_sequence, replicate_seed_sequence
from misim.sampling import sample_without_replacement

logger = logging.getLogger(__name__)


class DriverState(enum.Enum):
    INIT = 'init'
    GENERATING_TRUTH = 'generating_truth'
    REPLICATING = 'replicating'
    AGGREGATING = 'aggregating'
    DONE = 'done'
    ABORTED = 'aborted'


_TRANSITIONS = {
    DriverState.INIT: {DriverState.GENERATING_TRUTH, DriverState.ABORTED},
    DriverState.GENERATING_TRUTH: {DriverState.REPLICATING, DriverState.ABORTED},
    DriverState.REPLICATING: {DriverState.AGGREGATING, DriverState.ABORTED},
    DriverState.AGGREGATING: {DriverState.DONE, DriverState.ABORTED},
    DriverState.DONE: set(),
    DriverState.ABORTED: set(),
}


@dataclass(frozen=True)
class ReplicateInputs:
    """Read-only inputs shared by every replicate of one design."""
    config: 'SimulationConfig'
    population: Optional[Dataset]
    truth: TruthVector
    patterns: Dict[str, 'MissingnessPattern']
    method: ImputationMethod
    model: AnalysisModel
    pooler: MultipleImputationPooler


def obtain_dataset(inputs, rng):
    """The complete dataset of one replicate under the active design."""
    config = inputs.config
    if config.design == MODEL_BASED:
        return generate_data(config.sample_size, rng=rng, **config.generator_kwargs())
    if config.design == DESIGN_BASED:
        return sample_without_replacement(inputs.population, config.sample_size, rng)
    return inputs.population


def run_mechanism(inputs, complete, mechanism, replicate, rng):
    """Ampute, impute, analyse, pool and score one mechanism of one replicate."""
    config = inputs.config
    pattern = inputs.patterns[mechanism]
    amputation_rng, imputation_rng = rng.spawn(2)

    try:
        incomplete = pattern.apply(complete, rng=amputation_rng)
    except MISimError:
        raise
    except Exception as e:
        raise CollaboratorFailure(f"amputer '{pattern.name}'", str(e)) from e

    try:
        result = inputs.method.impute(incomplete, n_imputations=config.n_imputations,
                                      max_iterations=config.max_iterations, rng=imputation_rng)
    except MISimError:
        raise
    except Exception as e:
        raise CollaboratorFailure(f"imputer '{inputs.method.name}'", str(e)) from e
    if result.m != config.n_imputations:
        raise DataIntegrityError(f"Imputer returned {result.m} implicates, expected {config.n_imputations}")

    estimate_sets = [inputs.model.fit(implicate) for implicate in result.implicates]
    pooled = inputs.pooler.pool(estimate_sets)
    return score(pooled, inputs.truth, config.design, mechanism, replicate)


def replicate_outcomes(inputs, replicate):
    """Run every mechanism of one replicate.

    Returns a list with one ReplicationRecord or ReplicationFailure per
    mechanism, in configuration order.
    """
    config = inputs.config
    seed_sequence = replicate_seed_sequence(config.seed, config.design, replicate)
    data_rng, rngs = mechanism_rngs(seed_sequence, len(config.mechanisms))

    def failure(mechanism, error):
        return ReplicationFailure(config.design, mechanism, replicate, type(error).__name__, str(error),
                                  isinstance(error, CollaboratorFailure))

    try:
        complete = obtain_dataset(inputs, data_rng)
    except MISimError as e:
        return [failure(mechanism, e) for mechanism in config.mechanisms]

    outcomes = []
    for mechanism, rng in zip(config.mechanisms, rngs):
        try:
            outcomes.append(run_mechanism(inputs, complete, mechanism, replicate, rng))
        except MISimError as e:
            outcomes.append(failure(mechanism, e))
    return outcomes


_WORKER_INPUTS = None


def _init_worker(inputs):
    global _WORKER_INPUTS
    _WORKER_INPUTS = inputs


def _run_replicate(replicate):
    return replicate, replicate_outcomes(_WORKER_INPUTS, replicate)


class SimulationDriver:
    """Runs one simulation design.

    Parameters:
    - config: SimulationConfig
    - patterns: Optional mapping mechanism name -> MissingnessPattern,
      overriding the patterns built from the configuration
    - method: Optional ImputationMethod overriding ``config.method``
    - summary: Optional SimulationSummary to aggregate into (to collect
      several designs in one table)
    - show_progress: Show a tqdm bar over replicates
    """

    def __init__(self, config, patterns=None, method=None, summary=None, show_progress=False):
        self.config = config
        self.state = DriverState.INIT
        self.summary = summary if summary is not None else SimulationSummary(keep_records=config.keep_records)
        self.show_progress = show_progress
        self.population = None
        self.truth = None
        self.abort_reason = None
        self.replicates_done = 0
        self.collaborator_failures = 0
        self._stop_requested = False

        self.patterns = {
            name: build_pattern(name, config.proportion, config.affected_fields)
            for name in config.mechanisms
        }
        if patterns:
            self.patterns.update(patterns)
        self.method = method if method is not None else build_method(config.method)
        self.model = AnalysisModel(config.formula)
        self.pooler = MultipleImputationPooler(config.pooling_mode, alpha=config.alpha,
                                               barnard_rubin=config.barnard_rubin)

    @property
    def records(self):
        return self.summary.records

    @property
    def failures(self):
        return self.summary.failures

    def _transition(self, state):
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid driver transition {self.state.value} -> {state.value}")
        logger.debug(f"[{self.config.design}] {self.state.value} -> {state.value}")
        self.state = state

    def cancel(self, reason='cancelled'):
        """Stop dispatching new replicates; in-flight ones are still aggregated."""
        if not self._stop_requested:
            self._stop_requested = True
            self.abort_reason = reason

    def generate_truth(self):
        """Build the fixed inputs of the design and its truth vector."""
        config = self.config
        rng = default_rng(population_seed_sequence(config.seed, config.design))
        if config.design == MODEL_BASED:
            population = None
            truth = TruthVector(config.model_truth(), source='model')
        elif config.design == DESIGN_BASED:
            population = generate_population(config.population_blocks, config.sample_size, rng=rng,
                                             **config.generator_kwargs())
            truth = self.model.truth_from(population)
        elif config.design == FINITE_POPULATION:
            population = generate_data(config.population_size, rng=rng, **config.generator_kwargs())
            truth = self.model.truth_from(population)
        else:
            raise RuntimeError(f"Unhandled design {config.design!r}")
        logger.info(f"[{config.design}] truth ({truth.source}): "
                    + ", ".join(f"{term}={value:.4f}" for term, value in truth.values.items()))
        return population, truth

    def _iter_outcomes(self, inputs):
        n_replicates = self.config.n_replicates
        n_jobs = min(self.config.n_jobs, n_replicates)
        if n_jobs == 1:
            for replicate in range(n_replicates):
                if self._stop_requested:
                    break
                yield replicate, replicate_outcomes(inputs, replicate)
            return

        logger.info(f"Parallelizing {n_replicates} replicates across {n_jobs} processes")
        window = 2 * n_jobs
        with Pool(processes=n_jobs, initializer=_init_worker, initargs=(inputs,)) as pool:
            pending = deque()
            next_replicate = 0
            while next_replicate < n_replicates and len(pending) < window:
                pending.append(pool.apply_async(_run_replicate, (next_replicate,)))
                next_replicate += 1
            while pending:
                yield pending.popleft().get()
                if not self._stop_requested and next_replicate < n_replicates:
                    pending.append(pool.apply_async(_run_replicate, (next_replicate,)))
                    next_replicate += 1

    def _aggregate(self, outcomes):
        for outcome in outcomes:
            if isinstance(outcome, ReplicationFailure):
                self.summary.add_failure(outcome)
                if outcome.collaborator:
                    self.collaborator_failures += 1
                logger.warning(f"[{outcome.design}] replicate {outcome.replicate} {outcome.mechanism} failed: "
                               f"{outcome.kind}: {outcome.message}")
            else:
                self.summary.add_record(outcome)
        self.replicates_done += 1

    def _check_failure_rate(self):
        config = self.config
        if self._stop_requested or self.replicates_done < min(config.min_replicates_before_abort,
                                                              config.n_replicates):
            return
        tasks = self.replicates_done * len(config.mechanisms)
        rate = self.collaborator_failures / tasks
        if rate > config.max_failure_rate:
            self.cancel(f"collaborator failure rate {rate:.2f} exceeds {config.max_failure_rate:.2f} "
                        f"after {self.replicates_done} replicates")
            logger.error(f"[{config.design}] aborting: {self.abort_reason}")

    def run(self):
        """Run all replicates and return the SimulationSummary.

        Ends in DONE, or in ABORTED when the collaborator failure rate
        exceeded ``max_failure_rate`` or ``cancel`` was called; the summary
        keeps everything aggregated up to that point. Unexpected exceptions
        also move the driver to ABORTED and are re-raised.
        """
        config = self.config
        try:
            self._transition(DriverState.GENERATING_TRUTH)
            self.population, self.truth = self.generate_truth()
            for mechanism in config.mechanisms:
                self.summary.register(config.design, mechanism, self.model.terms)

            self._transition(DriverState.REPLICATING)
            inputs = ReplicateInputs(config, self.population, self.truth, self.patterns,
                                     self.method, self.model, self.pooler)
            logger.info(f"[{config.design}] running {config.n_replicates} replicates x "
                        f"{len(config.mechanisms)} mechanisms, m={config.n_imputations}, "
                        f"pooling={config.pooling_mode.value}")
            with tqdm(total=config.n_replicates, desc=f"Replicates {config.design}",
                      disable=not self.show_progress) as pbar:
                for _, outcomes in self._iter_outcomes(inputs):
                    self._aggregate(outcomes)
                    self._check_failure_rate()
                    pbar.update(1)
        except Exception:
            self.state = DriverState.ABORTED
            self.summary.mark_aborted(config.design)
            raise

        if self._stop_requested:
            self._transition(DriverState.ABORTED)
            self.summary.mark_aborted(config.design)
            logger.error(f"[{config.design}] aborted after {self.replicates_done} replicates: {self.abort_reason}")
            return self.summary

        self._transition(DriverState.AGGREGATING)
        for design, mechanism in self.summary.failed_scenarios():
            if design == config.design:
                logger.warning(f"[{design}] scenario '{mechanism}' failed: no successful replicates "
                               f"({self.summary.failed(design, mechanism)} failures)")
        self._transition(DriverState.DONE)
        logger.info(f"[{config.design}] done: {self.summary.n_records} records, "
                    f"{self.summary.n_failures} failures")
        return self.summary
