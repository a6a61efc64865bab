"""Command-line entrypoint for the mity workflows."""
from __future__ import annotations

import argparse
import datetime
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from . import __version__, calling, merging, normalise
from .config import MityConfig, load_config, load_contig_order, select_reference
from .logging_utils import LOG_FILE, ConfigError, MityError, configure_logging, log_message

# Re-export frequently patched helpers for easier test monkeypatching.
run_call = calling.run_call
run_normalise = normalise.run_normalise
run_merge = merging.run_merge

_PREFIX_SUFFIXES = (".mity", ".call", ".normalise", ".merge", ".report", ".vcf.gz", ".vcf")


def make_prefix(path: str) -> str:
    """Strip mity stage suffixes from the file name of *path*."""
    name = Path(path).name
    for suffix in _PREFIX_SUFFIXES:
        name = name.replace(suffix, "")
    return name


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", dest="config", help="Optional key=value configuration file.")
    parser.add_argument(
        "-o",
        "--output-dir",
        dest="output_dir",
        default=".",
        help="Output directory. Defaults to the current directory.",
    )
    parser.add_argument("--prefix", dest="prefix", help="Output file name prefix.")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Echo progress messages to stdout and log at DEBUG level.",
    )


def _add_threshold_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--het-low", type=float, dest="het_low", help="Lower heteroplasmy threshold.")
    parser.add_argument("--het-high", type=float, dest="het_high", help="Upper heteroplasmy threshold.")
    parser.add_argument("--min-qual", type=float, dest="min_quality", help="Minimum QUAL before LowQual.")
    parser.add_argument("--min-dp", type=int, dest="min_depth", help="Minimum sample depth before LowDP.")
    parser.add_argument(
        "--rule",
        action="append",
        dest="rules",
        default=[],
        help="Additional filter rule, e.g. 'FORMAT/AO>=4:LowAO' (repeatable).",
    )


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse CLI args for the mity workflows."""
    parser = argparse.ArgumentParser(
        prog="mity",
        description="Call, normalise and merge mitochondrial variants.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    call = subparsers.add_parser("call", help="Call mitochondrial variants with freebayes.")
    call.add_argument("files", nargs="+", help="BAM/CRAM files, or one list file with --bam-file-list.")
    call.add_argument(
        "--reference",
        required=True,
        help="Reference FASTA path, or a keyword resolved in the reference directory.",
    )
    call.add_argument("--region", help="Region to call. Defaults to the whole mitochondrial contig.")
    call.add_argument("--min-mq", type=int, default=30, dest="min_mq", help="Minimum mapping quality.")
    call.add_argument("--min-bq", type=int, default=24, dest="min_bq", help="Minimum base quality.")
    call.add_argument("--min-af", type=float, default=0.01, dest="min_af", help="Minimum alternate fraction.")
    call.add_argument("--min-ac", type=int, default=4, dest="min_ac", help="Minimum alternate count.")
    call.add_argument("--normalise", action="store_true", help="Also write a normalised VCF.")
    call.add_argument(
        "--bam-file-list",
        action="store_true",
        dest="bam_list",
        help="Treat the single positional argument as a file listing BAM/CRAM paths.",
    )
    _add_common_arguments(call)
    _add_threshold_arguments(call)

    norm = subparsers.add_parser("normalise", help="Recompute heteroplasmy fields and apply filters.")
    norm.add_argument("vcf", help="Input VCF (.vcf or .vcf.gz).")
    _add_common_arguments(norm)
    _add_threshold_arguments(norm)

    merge = subparsers.add_parser("merge", help="Merge mitochondrial and nuclear VCFs.")
    merge.add_argument("mity_vcf", help="Normalised mitochondrial VCF.")
    merge.add_argument("nuclear_vcf", help="Nuclear-genome VCF.")
    merge.add_argument("--genome", help="Genome file (contig<TAB>length) giving the output contig order.")
    merge.add_argument(
        "--reference",
        help="Reference keyword (e.g. hs37d5, hg38) whose .genome file gives the output contig order.",
    )
    merge.add_argument("--keep-duplicates", action="store_true", default=None, dest="keep_duplicates")
    merge.add_argument(
        "--keep-ambiguous",
        action="store_true",
        default=None,
        dest="keep_ambiguous",
        help="Keep both records at a conflict on a contig no stream owns instead of failing.",
    )
    merge.add_argument(
        "--mito-last",
        action="store_false",
        default=None,
        dest="mito_first",
        help="Order mitochondrial contigs after the nuclear contigs.",
    )
    _add_common_arguments(merge)

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> MityConfig:
    """Return the configuration file (if any) with command-line overrides applied."""
    config = load_config(args.config) if args.config else MityConfig()
    overrides = {
        name: getattr(args, name, None)
        for name in (
            "het_low",
            "het_high",
            "min_quality",
            "min_depth",
            "keep_duplicates",
            "keep_ambiguous",
            "mito_first",
        )
    }
    rules = getattr(args, "rules", None)
    if rules:
        overrides["extra_rules"] = tuple(config.extra_rules) + tuple(rules)
    genome = getattr(args, "genome", None)
    if not genome and args.command == "merge" and getattr(args, "reference", None):
        genome = select_reference(args.reference, ".genome", config.reference_dir)
    if genome:
        overrides["contig_ranks"] = load_contig_order(genome)
    return config.replace(**overrides)


def _run(args: argparse.Namespace, config: MityConfig, output_dir: str) -> List[str]:
    verbose = args.verbose
    if args.command == "call":
        if args.bam_list and len(args.files) > 1:
            raise ConfigError("--bam-file-list expects exactly one file.")
        files = calling.read_bam_list(args.files[0]) if args.bam_list else list(args.files)
        options = calling.CallerOptions(
            min_mapping_quality=args.min_mq,
            min_base_quality=args.min_bq,
            min_alternate_fraction=args.min_af,
            min_alternate_count=args.min_ac,
        )
        summary = run_call(
            files,
            select_reference(args.reference, ".fa", config.reference_dir),
            output_dir,
            prefix=args.prefix,
            region=args.region,
            options=options,
            normalise=args.normalise,
            config=config,
            verbose=verbose,
        )
        return [path for path in (summary.call_path, summary.normalised_path) if path]

    if args.command == "normalise":
        prefix = args.prefix or make_prefix(args.vcf)
        output = os.path.join(output_dir, f"{prefix}.mity.normalise.vcf.gz")
        run_normalise(args.vcf, output, config, verbose)
        return [output]

    prefix = args.prefix or make_prefix(args.mity_vcf)
    output = os.path.join(output_dir, f"{prefix}.mity.merge.vcf.gz")
    run_merge(args.mity_vcf, args.nuclear_vcf, output, config, verbose)
    return [output]


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_arguments(argv)
    verbose = args.verbose
    output_dir = os.path.abspath(args.output_dir)

    try:
        os.makedirs(output_dir, exist_ok=True)
        configure_logging(
            log_level=logging.DEBUG if verbose else logging.INFO,
            log_file=os.path.join(output_dir, LOG_FILE),
            enable_file_logging=True,
            enable_console=verbose,
        )
        log_message("mity execution log - " + datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        log_message(f"Command: {args.command}; output directory: {output_dir}")

        config = build_config(args)
        outputs = _run(args, config, output_dir)
    except (MityError, OSError) as exc:
        print(f"ERROR: {exc}")
        sys.exit(1)

    for path in outputs:
        print(f"Wrote: {path}")
    return 0


__all__ = ["build_config", "main", "make_prefix", "parse_arguments"]
