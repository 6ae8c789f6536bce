"""Command-line runner: executes one or more simulation designs and saves the tables."""

import argparse
import logging
import os
import sys

import pandas as pd

from misim.config import DESIGNS, SimulationConfig, load_config
from misim.exceptions import InvalidParameter
from misim.evaluator import SimulationSummary
from misim.simulator import DriverState, SimulationDriver

logger = logging.getLogger(__name__)


def configure_logging(log_file='simulation.log.txt', level=logging.INFO):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def report_dir_name(designs, config):
    return (f"{'_'.join(designs)}_mech_{'_'.join(config.mechanisms)}_R_{config.n_replicates}_"
            f"m_{config.n_imputations}_prop_{config.proportion}_n_{config.sample_size}_"
            f"N_{config.population_size}_{config.method}_seed_{config.seed}")


def run_simulation(config_file=None, designs=None, output_dir='results/report',
                   show_progress=False, **params):
    """
    Run the simulation for each design and save the summary tables.

    Parameters can be provided either via a JSON config file or directly as
    keyword arguments. Keyword arguments override values from the file.

    Parameters:
    -----------
    config_file : str or Path, optional
        Path to a JSON configuration file (see ``load_config``)
    designs : sequence of str, optional
        Designs to run, from 'model_based', 'design_based', 'finite_population'.
        Defaults to the file's 'designs', else ['model_based']
    output_dir : str or None, default='results/report'
        Base directory for the CSV outputs; None skips saving
    show_progress : bool
        Show tqdm progress bars
    **params
        Any SimulationConfig field (n_replicates, mechanisms, seed, ...)

    Returns:
    --------
    results_summary : DataFrame
        One row per (design, mechanism, term)
    results_all : DataFrame
        One row per retained replicate and term

    Example:
    --------
    summary, records = run_simulation(designs=['finite_population'], n_replicates=100)
    """
    if config_file is not None:
        file_params = load_config(config_file)
        file_designs = file_params.pop('designs')
        file_params.update(params)
        params = file_params
        designs = designs or file_designs
    designs = list(designs or ('model_based',))
    unknown = [d for d in designs if d not in DESIGNS]
    if unknown:
        raise InvalidParameter(f"Unknown designs {unknown}; use any of {list(DESIGNS)}")

    configs = [SimulationConfig.from_dict(dict(params, design=design)) for design in designs]
    summary = SimulationSummary(keep_records=configs[0].keep_records)
    logger.info(f"Starting simulation with seed={configs[0].seed} for designs {designs}")

    aborted = []
    for config in configs:
        driver = SimulationDriver(config, summary=summary, show_progress=show_progress)
        driver.run()
        if driver.state is DriverState.ABORTED:
            aborted.append(config.design)

    results_summary = summary.to_frame()
    results_all = summary.records_frame()

    if output_dir is not None:
        report_dir = os.path.join(output_dir, report_dir_name(designs, configs[0]))
        os.makedirs(report_dir, exist_ok=True)
        results_summary.to_csv(os.path.join(report_dir, 'results_summary.csv'), index=False)
        logger.info(f"Saved summary to {os.path.join(report_dir, 'results_summary.csv')}")
        if not results_all.empty:
            results_all.to_csv(os.path.join(report_dir, 'results_all_runs.csv'), index=False)
            logger.info(f"Saved all runs results to {os.path.join(report_dir, 'results_all_runs.csv')}")
        if summary.failures:
            summary.failures_frame().to_csv(os.path.join(report_dir, 'results_failures.csv'), index=False)

    if aborted:
        logger.error(f"Designs aborted before completion: {aborted}")
    for design, mechanism in summary.failed_scenarios():
        logger.error(f"Scenario failed with no successful replicates: {design} / {mechanism}")
    logger.info("Simulation complete.")
    return results_summary, results_all


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Monte Carlo evaluation of multiple imputation.')
    parser.add_argument('--config', help='JSON configuration file')
    parser.add_argument('--design', action='append', choices=DESIGNS, dest='designs',
                        help='Simulation design (repeatable)')
    parser.add_argument('--mechanism', action='append', dest='mechanisms',
                        help='Missingness mechanism, e.g. mcar or mar_right (repeatable)')
    parser.add_argument('--replicates', type=int, dest='n_replicates')
    parser.add_argument('--imputations', type=int, dest='n_imputations')
    parser.add_argument('--proportion', type=float)
    parser.add_argument('--method', choices=['norm', 'iterative', 'mean'])
    parser.add_argument('--seed', type=int)
    parser.add_argument('--jobs', type=int, dest='n_jobs')
    parser.add_argument('--output-dir', default='results/report')
    parser.add_argument('--log-file', default='simulation.log.txt')
    parser.add_argument('--progress', action='store_true')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.log_file)
    params = {key: value for key, value in vars(args).items()
              if key in ('mechanisms', 'n_replicates', 'n_imputations', 'proportion', 'method', 'seed', 'n_jobs')
              and value is not None}
    results_summary, _ = run_simulation(config_file=args.config, designs=args.designs,
                                        output_dir=args.output_dir, show_progress=args.progress, **params)
    with pd.option_context('display.max_columns', None, 'display.width', 160):
        print(results_summary.to_string(index=False))
    incomplete = results_summary['status'].isin(['failed', 'aborted']).any()
    return 1 if incomplete else 0


if __name__ == '__main__':
    sys.exit(main())
