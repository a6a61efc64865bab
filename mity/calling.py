"""Run the external variant caller and stream its output.

Variant calling itself is done by freebayes in a subprocess. This module
checks the alignment inputs, builds the caller command line, and wraps the
caller's standard output in a :class:`~mity.vcf_io.VcfReader` so the calls
flow straight into the normalise pipeline.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from . import pysam
from .config import DEFAULT_MITO_CONTIGS, MityConfig
from .logging_utils import ConfigError, ExternalToolError, handle_critical_error, log_message
from .normalise import run_normalise
from .vcf_io import VcfReader, VcfWriter

REQUIRED_TOOLS: Tuple[str, ...] = ("freebayes",)


@dataclass(frozen=True)
class CallerOptions:
    """Sensitive-mode freebayes settings."""

    min_mapping_quality: int = 30
    min_base_quality: int = 24
    min_alternate_fraction: float = 0.01
    min_alternate_count: int = 4
    ploidy: int = 2
    executable: str = "freebayes"
    extra_args: Tuple[str, ...] = ()


@dataclass
class CallSummary:
    call_path: str
    records_written: int = 0
    normalised_path: Optional[str] = None


def _open_alignment(path: str, reference: Optional[str] = None):
    mode = "rc" if str(path).endswith(".cram") else "rb"
    kwargs = {"reference_filename": reference} if mode == "rc" and reference else {}
    try:
        return pysam.AlignmentFile(path, mode, **kwargs)
    except (OSError, ValueError) as exc:
        handle_critical_error(f"Unable to read alignment header of {path}: {exc}", ExternalToolError, exc_info=exc)


def mt_region_from_bam(
    path: str,
    mito_contigs: Sequence[str] = DEFAULT_MITO_CONTIGS,
    reference: Optional[str] = None,
) -> str:
    """Return ``contig:1-length`` for the single mitochondrial contig of *path*."""
    with _open_alignment(path, reference) as alignment:
        sequences = list(zip(alignment.references, alignment.lengths))
    matches = [(name, length) for name, length in sequences if name in mito_contigs]
    if len(matches) != 1:
        handle_critical_error(
            f"Expected exactly one mitochondrial contig ({', '.join(mito_contigs)}) in {path}, "
            f"found {len(matches)}.",
            ExternalToolError,
        )
    name, length = matches[0]
    return f"{name}:1-{length}"


def bam_has_read_groups(path: str, reference: Optional[str] = None) -> bool:
    with _open_alignment(path, reference) as alignment:
        header = alignment.header.to_dict()
    return bool(header.get("RG"))


def read_bam_list(list_path: str) -> List[str]:
    """Return the alignment paths listed one per line in *list_path*."""
    try:
        with open(list_path, "r", encoding="utf-8") as handle:
            return [line.strip() for line in handle if line.strip()]
    except OSError as exc:
        handle_critical_error(f"Unable to read BAM list {list_path}: {exc}", ConfigError, exc_info=exc)


def check_inputs(bams: Sequence[str], prefix: Optional[str] = None, reference: Optional[str] = None) -> None:
    if not bams:
        handle_critical_error("At least one BAM/CRAM file is required.", ConfigError)
    if len(bams) > 1 and not prefix:
        handle_critical_error("If there is more than one BAM/CRAM file, --prefix must be set.", ConfigError)
    missing = [path for path in bams if not os.path.exists(path)]
    if missing:
        handle_critical_error(f"Missing file(s): {', '.join(missing)}", ExternalToolError)
    lacking = [path for path in bams if not bam_has_read_groups(path, reference)]
    if lacking:
        handle_critical_error(
            f"The BAM/CRAM files: {', '.join(lacking)} lack an @RG header", ExternalToolError
        )


def build_caller_command(
    bams: Sequence[str],
    reference: str,
    region: str,
    options: Optional[CallerOptions] = None,
) -> List[str]:
    o = options or CallerOptions()
    command = [o.executable, "-f", reference]
    for bam in reversed(list(bams)):
        command.extend(["-b", bam])
    command.extend(
        [
            "--min-mapping-quality", str(o.min_mapping_quality),
            "--min-base-quality", str(o.min_base_quality),
            "--min-alternate-fraction", str(o.min_alternate_fraction),
            "--min-alternate-count", str(o.min_alternate_count),
            "--ploidy", str(o.ploidy),
            "--region", region,
        ]
    )
    command.extend(o.extra_args)
    return command


def mity_commandline(reference: str, prefix: str, region: str) -> str:
    return f'##mityCommandline="mity call --reference {reference} --prefix {prefix} --region {region}"'


def rewrite_header_line(line: str, commandline: Optional[str] = None) -> str:
    """Rename caller provenance lines so they do not clash with mity's own."""
    if line.startswith("##source"):
        return "##freebayesSource" + line[len("##source"):]
    if line.startswith("##commandline"):
        return "##freebayesCommandline" + line[len("##commandline"):]
    if commandline and line == "##phasing=none":
        return commandline
    return line


def run_caller(command: Sequence[str], commandline: Optional[str] = None) -> VcfReader:
    """Start *command* and return a reader over its standard output.

    The exit status is checked once the output is exhausted; a failure
    raises :class:`ExternalToolError` carrying the captured stderr.
    """
    command = list(command)
    log_message(f"Running {shlex.join(command)}", level=logging.DEBUG)
    stderr = tempfile.TemporaryFile(mode="w+", encoding="utf-8")
    try:
        process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=stderr, text=True)
    except OSError as exc:
        stderr.close()
        handle_critical_error(f"Failed to start {command[0]}: {exc}", ExternalToolError, exc_info=exc)

    def _lines() -> Iterator[str]:
        for line in process.stdout:
            if line.startswith("##"):
                line = rewrite_header_line(line.rstrip("\r\n"), commandline) + "\n"
            yield line
        process.stdout.close()
        returncode = process.wait()
        if returncode != 0:
            stderr.seek(0)
            detail = stderr.read().strip()
            handle_critical_error(
                f"{command[0]} failed with exit status {returncode}: {detail}", ExternalToolError
            )

    def _close() -> None:
        if process.poll() is None:
            process.kill()
            process.wait()
        if not process.stdout.closed:
            process.stdout.close()
        stderr.close()

    return VcfReader(_lines(), source=command[0], closer=_close)


def run_call(
    bams: Sequence[str],
    reference: str,
    output_dir: str = ".",
    *,
    prefix: Optional[str] = None,
    region: Optional[str] = None,
    options: Optional[CallerOptions] = None,
    normalise: bool = False,
    config: Optional[MityConfig] = None,
    verbose: bool = False,
) -> CallSummary:
    """Call variants in the mitochondrial region and optionally normalise them."""
    config = config or MityConfig()
    bams = list(bams)
    check_inputs(bams, prefix, reference)
    prefix = prefix or Path(bams[0]).stem
    region = region or mt_region_from_bam(bams[0], config.mito_contigs, reference)
    command = build_caller_command(bams, reference, region, options)

    call_path = os.path.join(output_dir, f"{prefix}.mity.call.vcf.gz")
    log_message("Running FreeBayes in sensitive mode", verbose)
    with run_caller(command, mity_commandline(reference, prefix, region)) as reader:
        with VcfWriter.from_path(call_path, reader.header) as writer:
            writer.write_all(reader)
    summary = CallSummary(call_path, records_written=writer.records_written)
    log_message(f"Wrote {summary.records_written} call(s) to {call_path}", verbose)

    if normalise:
        summary.normalised_path = os.path.join(output_dir, f"{prefix}.mity.normalise.vcf.gz")
        run_normalise(call_path, summary.normalised_path, config, verbose)
    return summary


def check_dependencies(tools: Sequence[str] = REQUIRED_TOOLS) -> Dict[str, Optional[str]]:
    """Return the resolved path of each external tool, ``None`` when not on PATH."""
    found = {tool: shutil.which(tool) for tool in tools}
    for tool, path in found.items():
        if path is None:
            log_message(f"Command '{tool}' is not installed or not in PATH.", level=logging.WARNING)
    return found


__all__ = [
    "REQUIRED_TOOLS",
    "CallerOptions",
    "CallSummary",
    "bam_has_read_groups",
    "build_caller_command",
    "check_dependencies",
    "check_inputs",
    "mity_commandline",
    "mt_region_from_bam",
    "read_bam_list",
    "rewrite_header_line",
    "run_call",
    "run_caller",
]
