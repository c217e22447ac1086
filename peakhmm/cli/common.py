"""Shared argparse argument factories for PeakHMM CLI tools.

Each function adds a group of related arguments to an ArgumentParser.
Default values can be overridden per-script where needed.
"""

import argparse

from peakhmm.core.emissions import DISTRIBUTIONS
from peakhmm.core.hmm import MODES
from peakhmm.inference.em import CRITERIA
from peakhmm.inference.parallel import BACKENDS


def add_mode_args(parser: argparse.ArgumentParser,
                  default: str = 'consensus') -> None:
    """Add --mode argument."""
    parser.add_argument(
        '--mode', choices=list(MODES), default=default,
        help=f"Peak calling mode: consensus (2 states) or differential (3 states) (default: {default})"
    )


def add_distribution_args(parser: argparse.ArgumentParser,
                          default: str = 'nb') -> None:
    """Add --distribution argument."""
    parser.add_argument(
        '--distribution', '-d', choices=list(DISTRIBUTIONS), default=default,
        help=f"Emission distribution, zinb adds zero inflation to the background (default: {default})"
    )


def add_em_args(parser: argparse.ArgumentParser,
                max_iterations: int = 300,
                tolerance: float = 1e-5,
                min_iterations: int = 3,
                gap_iterations: int = 1) -> None:
    """Add EM control arguments (--max-iter, --tol, --min-iter, --gap-iter, --criterion, --max-time)."""
    parser.add_argument(
        '--max-iter', type=int, default=max_iterations,
        help=f"Maximum EM iterations (default: {max_iterations})"
    )
    parser.add_argument(
        '--tol', type=float, default=tolerance,
        help=f"Convergence tolerance (default: {tolerance})"
    )
    parser.add_argument(
        '--min-iter', type=int, default=min_iterations,
        help=f"Iterations before convergence is checked (default: {min_iterations})"
    )
    parser.add_argument(
        '--gap-iter', type=int, default=gap_iterations,
        help=f"Consecutive iterations below tolerance required (default: {gap_iterations})"
    )
    parser.add_argument(
        '--criterion', choices=list(CRITERIA), default='loglik',
        help="Convergence criterion (default: loglik)"
    )
    parser.add_argument(
        '--max-time', type=float, default=None,
        help="Wall-clock budget in seconds (default: unlimited)"
    )


def add_pruning_args(parser: argparse.ArgumentParser,
                     default: float = None) -> None:
    """Add mixture pruning arguments (--prune, --quiet-pruning)."""
    parser.add_argument(
        '--prune', type=float, default=default, metavar='THRESHOLD',
        help="Prune mixture components whose proportion falls below THRESHOLD (default: off)"
    )
    parser.add_argument(
        '--quiet-pruning', action='store_true',
        help="Do not report individual pruning events"
    )


def add_parallel_args(parser: argparse.ArgumentParser,
                      default_cores: int = 1) -> None:
    """Add parallelization arguments (--cores, --backend)."""
    parser.add_argument(
        '--cores', '-c', type=int, default=default_cores,
        help=f"Number of CPU cores (0=auto, default: {default_cores})"
    )
    parser.add_argument(
        '--backend', choices=list(BACKENDS), default='thread',
        help="Worker pool type for per-chromosome tasks (default: thread)"
    )


def add_output_args(parser: argparse.ArgumentParser,
                    required: bool = True,
                    help_text: str = "Output directory") -> None:
    """Add -o/--outdir argument."""
    parser.add_argument(
        '-o', '--outdir', required=required,
        help=help_text
    )


def add_verbose_args(parser: argparse.ArgumentParser) -> None:
    """Add --verbose flag."""
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help="Verbose output"
    )


def add_version_args(parser: argparse.ArgumentParser) -> None:
    """Add --version flag."""
    from peakhmm import __version__
    parser.add_argument(
        '--version', action='version',
        version=f'%(prog)s {__version__}'
    )
