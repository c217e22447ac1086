#!/usr/bin/env python3
"""
PeakHMM fit CLI entry point.
Fits a consensus or differential peak-calling HMM to windowed count tables.
"""

import os
import sys
import json
import argparse
import numpy as np
import pandas as pd

from peakhmm.core.dataset import CountDataset
from peakhmm.core.exceptions import ConfigurationError
from peakhmm.core.model_io import save_model
from peakhmm.inference.assembler import fit_peaks
from peakhmm.inference.em import EMConfig
from peakhmm.inference.initializer import QuantileInitializer
from peakhmm.cli.common import (
    add_mode_args, add_distribution_args, add_em_args, add_pruning_args,
    add_parallel_args, add_output_args, add_verbose_args, add_version_args,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Fit a PeakHMM model to windowed read counts',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Input tables (tab-separated):
  counts   chrom, start, end, then one column per sample
  design   sample, condition, replicate
  offsets  optional, chrom/start/end plus the same sample columns (log scale)
  controls optional, same layout as counts (input/IgG experiment)

Output:
  model.json, posteriors.tsv.gz, mixture_posteriors.tsv.gz (differential),
  summary.json

Examples:
  # Consensus peaks over all samples
  peakhmm-fit -i counts.tsv -s design.tsv -o out/

  # Differential peaks between conditions, pruning rare patterns
  peakhmm-fit -i counts.tsv -s design.tsv -o out/ --mode differential --prune 0.01
'''
    )

    add_version_args(parser)

    parser.add_argument('-i', '--counts', required=True,
                        help='Counts table (TSV)')
    parser.add_argument('-s', '--design', required=True,
                        help='Design table (TSV with sample, condition, replicate)')
    parser.add_argument('--offsets', default=None,
                        help='Offsets table (TSV, log scale)')
    parser.add_argument('--controls', default=None,
                        help='Control counts table (TSV)')
    add_output_args(parser)

    add_mode_args(parser)
    add_distribution_args(parser)
    add_em_args(parser)
    add_pruning_args(parser)
    add_parallel_args(parser)

    parser.add_argument('--init-quantile', type=float, default=0.9,
                        help='Quantile splitting background from enrichment at initialization (default: 0.9)')
    add_verbose_args(parser)

    return parser


def parse_args(argv=None):
    return build_parser().parse_args(argv)


def config_from_args(args) -> EMConfig:
    """Map parsed command line options onto an EMConfig."""
    return EMConfig(
        max_iterations=args.max_iter,
        tolerance=args.tol,
        min_iterations=args.min_iter,
        gap_iterations=args.gap_iter,
        criterion=args.criterion,
        pruning_threshold=args.prune,
        distribution=args.distribution,
        verbose=args.verbose,
        quiet_pruning=args.quiet_pruning,
        n_jobs=args.cores,
        backend=args.backend,
        max_time=args.max_time,
    )


def read_table(path: str) -> pd.DataFrame:
    return pd.read_csv(path, sep='\t')


def load_dataset(args) -> CountDataset:
    counts = read_table(args.counts)
    design = read_table(args.design)
    offsets = read_table(args.offsets) if args.offsets else None
    controls = read_table(args.controls) if args.controls else None
    return CountDataset.from_tables(counts, design, offsets=offsets, controls=controls)


def main(argv=None):
    args = parse_args(argv)

    try:
        config = config_from_args(args)
        print(f"Loading counts from {args.counts}")
        dataset = load_dataset(args)
        print(f"  {dataset!r}")
        print(f"  Conditions: {', '.join(dataset.conditions)}")

        result = fit_peaks(dataset, mode=args.mode, config=config,
                           initializer=QuantileInitializer(quantile=args.init_quantile))
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    os.makedirs(args.outdir, exist_ok=True)

    summary = result.get_summary()
    model_path = save_model(result.model, os.path.join(args.outdir, 'model.json'),
                            metadata={'summary': summary, 'arguments': vars(args)})
    print(f"\nModel saved to {model_path}")

    post_path = os.path.join(args.outdir, 'posteriors.tsv.gz')
    result.posterior_frame(dataset.windows).to_csv(post_path, sep='\t', index=False)
    print(f"Posteriors saved to {post_path}")

    mix = result.mixture_posterior_frame(dataset.windows)
    if mix is not None:
        mix_path = os.path.join(args.outdir, 'mixture_posteriors.tsv.gz')
        mix.to_csv(mix_path, sep='\t', index=False)
        print(f"Mixture posteriors saved to {mix_path}")

    with open(os.path.join(args.outdir, 'summary.json'), 'w') as f:
        json.dump(summary, f, indent=2, default=lambda o: o.tolist() if isinstance(o, np.ndarray) else str(o))

    print()
    result.print_summary()


if __name__ == '__main__':
    main()
