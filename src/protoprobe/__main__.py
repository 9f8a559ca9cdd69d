# src/protoprobe/__main__.py
import argparse
import logging
import os
import signal
import sys
from pathlib import Path

from .catalog import get_scenario, list_scenarios, load_scenario_file
from .config import CONFIG_PATH_ENV, load_targets, select_targets
from .errors import ConfigurationError
from .matrix import EXIT_CONFIGURATION_ERROR, Matrix
from .report import render, render_divergences, to_json

# Configure basic logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="protoprobe",
        description="Run prepared-statement scenarios against database backends and compare what they observe.",
        formatter_class=argparse.RawTextHelpFormatter
    )

    parser.add_argument(
        '--config',
        type=Path,
        default=os.getenv(CONFIG_PATH_ENV),
        help=f'Target configuration file, YAML or TOML (default: {CONFIG_PATH_ENV} environment variable,\n'
             'then protoprobe.toml/yaml in the working directory, then DB and PORT)'
    )
    parser.add_argument(
        '--target',
        action='append',
        dest='targets',
        metavar='NAME',
        help='Target to run against, repeatable (default: every configured target)'
    )
    parser.add_argument(
        '--scenario',
        action='append',
        dest='scenarios',
        metavar='NAME',
        help='Scenario to run, repeatable (default: every registered scenario)'
    )
    parser.add_argument(
        '--scenario-file',
        type=Path,
        help='YAML file with additional scenarios to register'
    )
    parser.add_argument(
        '--compare',
        nargs=2,
        metavar=('A', 'B'),
        help='Diff the runs of target A against target B\n'
             '(default: the first target against every other target)'
    )
    parser.add_argument('--parallel', action='store_true', help='Run one worker per target')
    parser.add_argument('--json', action='store_true', help='Print results and comparisons as JSON')
    parser.add_argument('--strict', action='store_true', help='Exit with status 3 when runs diverge')
    parser.add_argument('--list', action='store_true', help='List registered scenarios and exit')
    parser.add_argument('--log-level', default='INFO', help='Set logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)')

    return parser.parse_args(argv)


def print_scenarios():
    for scenario in list_scenarios():
        requirements = ', '.join(sorted(capability.value for capability in scenario.requirements))
        suffix = f" [requires: {requirements}]" if requirements else ""
        print(f"{scenario.name}: {scenario.description}{suffix}")


def main(argv=None) -> int:
    args = parse_args(argv)

    # Set logging level
    numeric_level = getattr(logging, args.log_level.upper(), None)
    if not isinstance(numeric_level, int):
        logger.error(f"Invalid log level: {args.log_level}")
        return EXIT_CONFIGURATION_ERROR
    logging.getLogger().setLevel(numeric_level)

    try:
        if args.scenario_file:
            load_scenario_file(args.scenario_file)
        if args.list:
            print_scenarios()
            return 0

        targets = select_targets(load_targets(config_path=args.config), args.targets)
        if args.scenarios:
            scenarios = [get_scenario(name) for name in args.scenarios]
        else:
            scenarios = list_scenarios()
        if args.compare:
            select_targets(targets, args.compare)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIGURATION_ERROR

    matrix = Matrix(targets, scenarios)
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: matrix.cancel())
    try:
        result = matrix.run(parallel=args.parallel)
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    comparisons = result.compare(*args.compare) if args.compare else result.compare_all()

    if args.json:
        print(to_json(result.results, comparisons))
    else:
        for run in result.results:
            print(render(run))
            print()
        for left, right, divergences in comparisons:
            print(render_divergences(left, right, divergences))
            print()

    if result.cancelled:
        logger.warning("Run was cancelled, results are incomplete")
    return result.exit_code(strict=args.strict, comparisons=comparisons)


if __name__ == "__main__":
    sys.exit(main())
