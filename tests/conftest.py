"""Shared pytest fixtures for the mity test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Sequence, Tuple

import pytest

from mity.logging_utils import configure_logging

DATA_DIR = Path(__file__).resolve().parent / "data"

FILEFORMAT = "##fileformat=VCFv4.2"

FIELD_DEFINITIONS = [
    '##INFO=<ID=DP,Number=1,Type=Integer,Description="Total read depth at the locus">',
    '##INFO=<ID=SAF,Number=A,Type=Integer,Description="Alternate observations on the forward strand">',
    '##INFO=<ID=SAR,Number=A,Type=Integer,Description="Alternate observations on the reverse strand">',
    '##INFO=<ID=MQMR,Number=1,Type=Float,Description="Mean mapping quality of reference observations">',
    '##INFO=<ID=AQR,Number=1,Type=Float,Description="Mean base quality of reference observations">',
    '##FORMAT=<ID=GT,Number=1,Type=String,Description="Genotype">',
    '##FORMAT=<ID=DP,Number=1,Type=Integer,Description="Read depth">',
    '##FORMAT=<ID=AO,Number=A,Type=Integer,Description="Alternate allele observation count">',
]


def build_vcf(
    records: Iterable[str],
    *,
    samples: Sequence[str] = ("S1",),
    contigs: Sequence[Tuple[str, int]] = (("MT", 16569),),
    meta: Sequence[str] = (),
) -> str:
    """Return VCF text; each record is given as whitespace-separated columns."""
    lines = [FILEFORMAT]
    lines += [f"##contig=<ID={name},length={length}>" for name, length in contigs]
    lines += FIELD_DEFINITIONS
    lines += list(meta)
    columns = ["#CHROM", "POS", "ID", "REF", "ALT", "QUAL", "FILTER", "INFO"]
    if samples:
        columns += ["FORMAT", *samples]
    lines.append("\t".join(columns))
    lines += ["\t".join(record.split()) for record in records]
    return "\n".join(lines) + "\n"


@pytest.fixture
def vcf_text():
    """Return the :func:`build_vcf` helper."""
    return build_vcf


@pytest.fixture
def data_dir() -> Path:
    return DATA_DIR


@pytest.fixture
def reset_logging():
    """Restore console-only logging after a test reconfigures it."""
    yield
    configure_logging(enable_file_logging=False)
