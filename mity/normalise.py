"""Normalise workflow: recompute mitochondrial fields, then apply filters."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Tuple

from .config import MityConfig
from .filtering import FilterEngine, default_rules
from .heteroplasmy import HeteroplasmyRecomputer
from .logging_utils import MityError, handle_critical_error, handle_non_critical_error, log_message
from .records import VariantRecord
from .vcf_io import VcfHeader, VcfReader, VcfWriter


@dataclass
class NormaliseSummary:
    records_written: int = 0
    skipped_non_variant: int = 0
    warnings: int = 0
    filtered: int = 0
    output_path: Optional[str] = None


def build_pipeline(config: Optional[MityConfig] = None) -> Tuple[HeteroplasmyRecomputer, FilterEngine]:
    config = config or MityConfig()
    return HeteroplasmyRecomputer(config), FilterEngine(default_rules(config))


def prepare_header(
    header: VcfHeader, recomputer: HeteroplasmyRecomputer, engine: FilterEngine
) -> VcfHeader:
    header = header.copy()
    recomputer.prepare_header(header)
    engine.prepare_header(header)
    return header


def normalise_records(
    records: Iterable[VariantRecord],
    recomputer: HeteroplasmyRecomputer,
    engine: FilterEngine,
) -> Iterator[VariantRecord]:
    """Pass each record through recomputation and then the filter engine."""
    for record in records:
        yield engine.apply(recomputer.recompute(record))


def normalise_stream(
    reader: VcfReader,
    writer: VcfWriter,
    config: Optional[MityConfig] = None,
) -> NormaliseSummary:
    recomputer, engine = build_pipeline(config)
    writer.write_header(prepare_header(reader.header, recomputer, engine))
    writer.write_all(normalise_records(reader, recomputer, engine))
    return NormaliseSummary(
        records_written=writer.records_written,
        skipped_non_variant=reader.skipped_non_variant,
        warnings=recomputer.warning_count,
        filtered=engine.records_failed,
    )


def run_normalise(
    input_path: str,
    output_path: str,
    config: Optional[MityConfig] = None,
    verbose: bool = False,
) -> NormaliseSummary:
    """Normalise *input_path* into *output_path* (compressed and indexed for ``.gz``)."""
    config = config or MityConfig()
    log_message(f"Normalising {input_path}", verbose)
    try:
        reader = VcfReader.from_path(input_path)
    except OSError as exc:
        handle_critical_error(f"Failed to open input {input_path}: {exc}", exc_info=exc)

    recomputer, engine = build_pipeline(config)
    with reader:
        header = prepare_header(reader.header, recomputer, engine)
        try:
            with VcfWriter.from_path(output_path, header) as writer:
                writer.write_all(normalise_records(reader, recomputer, engine))
        except MityError:
            raise
        except OSError as exc:
            handle_critical_error(f"Failed to write {output_path}: {exc}", exc_info=exc)

    summary = NormaliseSummary(
        records_written=writer.records_written,
        skipped_non_variant=reader.skipped_non_variant,
        warnings=recomputer.warning_count,
        filtered=engine.records_failed,
        output_path=output_path,
    )
    engine.log_summary(verbose)
    if summary.warnings:
        handle_non_critical_error(
            f"{summary.warnings} record(s) lacked per-sample read support fields and were left unchanged."
        )
    log_message(
        f"Normalised {summary.records_written} record(s) "
        f"({summary.skipped_non_variant} non-variant skipped, {summary.filtered} filtered): {output_path}",
        verbose,
    )
    return summary


__all__ = [
    "NormaliseSummary",
    "build_pipeline",
    "normalise_records",
    "normalise_stream",
    "prepare_header",
    "run_normalise",
]
