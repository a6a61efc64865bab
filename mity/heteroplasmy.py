"""Mitochondrial allele fractions and heteroplasmy classes.

For records on a mitochondrial contig every sample gets, per alternate
allele, the fraction of reads supporting that allele (alt count / total
depth) and a class derived from it:

* ``homoplasmic`` when the fraction is at or above the high threshold,
* ``heteroplasmic`` when it lies in ``[low, high)``,
* ``absent`` when it is below the low threshold or undefined.

A total depth of zero gives an undefined fraction (``None``, written as
``.``), never zero. Records lacking the read-support fields are left
untouched and flagged with a warning annotation.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, List, Optional

from .config import MityConfig
from .logging_utils import log_message
from .records import FieldDescriptor, FieldValue, ValueKind, VariantRecord
from .vcf_io import VcfHeader

HOMOPLASMIC = "homoplasmic"
HETEROPLASMIC = "heteroplasmic"
ABSENT = "absent"

UNDEFINED = None
"""Sentinel fraction for a position without read depth."""


def allele_fraction(alt_count: Optional[float], total: Optional[float]) -> Optional[float]:
    if alt_count is None or total is None or total <= 0:
        return UNDEFINED
    return alt_count / total


def classify(fraction: Optional[float], low: float, high: float) -> str:
    if fraction is UNDEFINED:
        return ABSENT
    if fraction >= high:
        return HOMOPLASMIC
    if fraction >= low:
        return HETEROPLASMIC
    return ABSENT


def _as_number(item) -> Optional[float]:
    """Return *item* as a number; undeclared fields arrive as text."""
    if isinstance(item, bool) or item is None:
        return None
    if isinstance(item, (int, float)):
        return item
    try:
        return float(item)
    except (TypeError, ValueError):
        return None


def _first(value: Optional[FieldValue]) -> Optional[float]:
    numbers = _numbers(value)
    return numbers[0] if numbers else None


def _numbers(value: Optional[FieldValue]) -> List[Optional[float]]:
    if value is None:
        return []
    items: List[Any] = []
    for item in value.items():
        if isinstance(item, str):
            items.extend(item.split(","))
        else:
            items.append(item)
    return [_as_number(item) for item in items]


class HeteroplasmyRecomputer:
    """Adds allele fraction, heteroplasmy class and strand-bias fields to mito records."""

    def __init__(self, config: Optional[MityConfig] = None) -> None:
        self.config = config or MityConfig()
        c = self.config
        self.fraction_descriptor = FieldDescriptor(
            c.fraction_field, "A", "Float", "Fraction of reads supporting each alternate allele"
        )
        self.class_descriptor = FieldDescriptor(
            c.class_field,
            "A",
            "String",
            f"Heteroplasmy class per alternate allele ({HOMOPLASMIC} >= {c.het_high}, "
            f"{HETEROPLASMIC} >= {c.het_low}, otherwise {ABSENT})",
        )
        self.strand_bias_descriptor = FieldDescriptor(
            c.strand_bias_field,
            "A",
            "Float",
            f"Strand bias ratio {c.strand_forward_field}/({c.strand_forward_field}+{c.strand_reverse_field})",
        )
        self.records_recomputed = 0
        self.warning_count = 0

    def prepare_header(self, header: VcfHeader) -> VcfHeader:
        header.add_format(self.fraction_descriptor)
        header.add_format(self.class_descriptor)
        header.add_info(self.strand_bias_descriptor)
        return header

    def recompute(self, record: VariantRecord) -> VariantRecord:
        c = self.config
        if not c.is_mito(record.contig):
            return record
        fmt = record.format
        if not record.samples or fmt is None or c.alt_count_field not in fmt or c.depth_field not in fmt:
            message = (
                f"{record.contig}:{record.position} lacks per-sample read support "
                f"fields ({c.alt_count_field}, {c.depth_field}); left unchanged"
            )
            record.add_warning(message)
            self.warning_count += 1
            log_message(message, level=logging.DEBUG)
            return record

        self._recompute_strand_bias(record)
        alt_n = len(record.alts)
        for index, sample in enumerate(record.samples):
            counts = _numbers(sample.get(c.alt_count_field))
            total = _first(sample.get(c.depth_field))
            fractions = [
                allele_fraction(counts[i] if i < len(counts) else None, total) for i in range(alt_n)
            ]
            classes = [classify(f, c.het_low, c.het_high) for f in fractions]
            record.set_sample_value(
                index,
                c.fraction_field,
                FieldValue(ValueKind.FLOAT_LIST, fractions),
                self.fraction_descriptor,
            )
            record.set_sample_value(
                index,
                c.class_field,
                FieldValue(ValueKind.STRING_LIST, classes),
                self.class_descriptor,
            )
        self.records_recomputed += 1
        return record

    def _recompute_strand_bias(self, record: VariantRecord) -> None:
        c = self.config
        forward = record.info.get(c.strand_forward_field)
        reverse = record.info.get(c.strand_reverse_field)
        if forward is None or reverse is None:
            return
        fwd, rev = _numbers(forward), _numbers(reverse)
        ratios: List[Optional[float]] = []
        for i in range(len(record.alts)):
            f = fwd[i] if i < len(fwd) else None
            r = rev[i] if i < len(rev) else None
            if f is None or r is None or f + r <= 0:
                ratios.append(None)
            else:
                ratios.append(f / (f + r))
        record.set_info(c.strand_bias_field, FieldValue(ValueKind.FLOAT_LIST, ratios))

    def run(self, records: Iterable[VariantRecord]) -> Iterator[VariantRecord]:
        for record in records:
            yield self.recompute(record)


__all__ = [
    "HOMOPLASMIC",
    "HETEROPLASMIC",
    "ABSENT",
    "UNDEFINED",
    "allele_fraction",
    "classify",
    "HeteroplasmyRecomputer",
]
