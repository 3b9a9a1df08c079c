#!/usr/bin/env python3
"""
Command line interface for the drug-response association pipeline.
"""

import argparse
import logging
import sys
from pathlib import Path

import polars as pl
import tomli
from tomli_w import dump

from .data import list_drugs
from .pipeline import DrugResponsePipeline
from .utils import setup_logging


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Associate gene, TF and pathway activity with drug response and test for enrichment"
    )

    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )
    parser.add_argument(
        "--list-drugs",
        action="store_true",
        help="Print the drugs in the response table and exit"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show debug messages on the console"
    )

    # Input file overrides
    input_group = parser.add_argument_group("Input file overrides")
    input_group.add_argument("--expression", type=str, help="Override expression matrix path")
    input_group.add_argument("--response", type=str, help="Override drug-response table path")
    input_group.add_argument("--reference-sets", type=str, help="Override reference sets path (GMT or TSV)")
    input_group.add_argument("--tf-activity", type=str, help="Override TF activity matrix path")
    input_group.add_argument("--pathway-activity", type=str, help="Override pathway activity matrix path")

    # Output configuration overrides
    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument("--output-dir", type=str, help="Override output directory")
    output_group.add_argument(
        "--save-intermediate",
        action="store_true",
        help="Save intermediate files"
    )

    # Analysis parameter overrides
    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument("--drug", type=str, help="Drug to analyse")
    analysis_group.add_argument(
        "--num-threads",
        type=int,
        help="Override number of worker processes for the association step"
    )
    analysis_group.add_argument("--alpha", type=float, help="Override significance level")
    analysis_group.add_argument(
        "--query-fdr",
        type=float,
        help="Override adjusted p-value threshold for enrichment query genes"
    )
    analysis_group.add_argument(
        "--no-solver",
        action="store_true",
        help="Skip the network solver step"
    )

    return parser.parse_args(argv)


def update_config(config: dict, args: argparse.Namespace):
    """Update configuration with command line overrides."""
    config.setdefault('input', {})
    config.setdefault('output', {})
    config.setdefault('analysis', {})

    input_overrides = {
        'expression_file': args.expression,
        'response_file': args.response,
        'reference_sets_file': args.reference_sets,
        'tf_activity_file': args.tf_activity,
        'pathway_activity_file': args.pathway_activity,
    }
    for key, value in input_overrides.items():
        if value:
            config['input'][key] = value

    if args.output_dir:
        config['output']['directory'] = args.output_dir
    if args.save_intermediate:
        config['output']['save_intermediate'] = True

    if args.drug:
        config['analysis']['drug'] = args.drug
    if args.num_threads:
        config['analysis']['num_threads'] = args.num_threads
    if args.alpha is not None:
        config['analysis']['alpha'] = args.alpha
    if args.query_fdr is not None:
        config['analysis']['query_fdr'] = args.query_fdr

    if args.no_solver:
        config.setdefault('solver', {})['run'] = False

    return config


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        print(f"Error loading configuration file: {str(e)}", file=sys.stderr)
        sys.exit(1)

    config = update_config(config, args)

    if args.list_drugs:
        response_cfg = config.get('response', {})
        try:
            drugs = list_drugs(
                config['input']['response_file'],
                drug_col=response_cfg.get('drug_column', 'drug')
            )
        except (KeyError, OSError, pl.exceptions.PolarsError) as e:
            print(f"Cannot read the response table: {str(e)}", file=sys.stderr)
            sys.exit(1)
        for drug in drugs:
            print(drug)
        return

    output_dir = Path(config['output'].get('directory', 'results'))
    setup_logging(output_dir / 'logs', level=logging.DEBUG if args.verbose else logging.INFO)

    logging.info("Starting drug-response association pipeline")
    logging.info(f"Using configuration file: {args.config_file}")

    # Save updated config to a temporary file next to the original
    temp_config_path = Path(args.config_file).parent / "temp_config.toml"
    with open(temp_config_path, 'wb') as f:
        dump(config, f)

    try:
        pipeline = DrugResponsePipeline(str(temp_config_path))
        pipeline.run()
        logging.info("Pipeline execution completed successfully")
    except Exception as e:
        logging.error(f"Pipeline execution failed: {str(e)}")
        sys.exit(1)
    finally:
        temp_config_path.unlink()


if __name__ == "__main__":
    main()
