"""Merge a mitochondrial call stream with a nuclear call stream.

Both inputs must already satisfy the reader's ordering contract. The merge
walks one :class:`MergeCursor` per stream and repeatedly emits the record
that sorts first under a :class:`ContigOrder` table. Records from both
streams at the same ``(contig, position)`` are a conflict, resolved by the
stream that owns the contig:

* the owning stream's record is emitted and the other discarded, unless
  ``keep_duplicates`` is set, in which case both are emitted, owner first;
* when no stream owns the contig, :class:`AmbiguousMergeConflictError` is
  raised unless ``keep_ambiguous`` is set.

Records that merely overlap (different start positions) are not conflicts.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .config import MITO, NUCLEAR, MityConfig
from .logging_utils import (
    AmbiguousMergeConflictError,
    DuplicateSampleError,
    IncompatibleFieldDescriptorError,
    MityError,
    UnsortedInputError,
    handle_critical_error,
    handle_non_critical_error,
    log_message,
)
from .records import VariantRecord
from .vcf_io import VcfHeader, VcfReader, VcfWriter

STRUCTURED_HEADER_PATTERN = re.compile(r"^##(INFO|FORMAT|FILTER|contig)=<ID=([^,>]+)")
CONTIG_HEADER_PATTERN = re.compile(r"^##contig=<ID=([^,>]+)")


class ContigOrder:
    """Rank table for contigs.

    Contigs missing from the table are ranked in first-seen order after all
    known ones. When the table was built around a mitochondrial block
    (``mito_contigs``), every contig is also placed in its group first, so
    an unlisted nuclear contig still sorts before the mitochondrial block
    when that block is configured last.
    """

    def __init__(
        self,
        ranks: Optional[Dict[str, int]] = None,
        mito_contigs: Iterable[str] = (),
        mito_first: bool = True,
    ) -> None:
        self.ranks: Dict[str, int] = dict(ranks or {})
        self.mito_contigs = frozenset(mito_contigs)
        self.mito_first = mito_first
        self._next = max(self.ranks.values(), default=-1) + 1

    @classmethod
    def from_contigs(
        cls,
        contigs: Iterable[str],
        mito_contigs: Sequence[str] = (),
        mito_first: bool = True,
    ) -> "ContigOrder":
        names = list(OrderedDict.fromkeys(contigs))
        mito = [name for name in names if name in mito_contigs]
        mito += [name for name in mito_contigs if name not in mito]
        nuclear = [name for name in names if name not in mito_contigs]
        ordered = mito + nuclear if mito_first else nuclear + mito
        return cls({name: rank for rank, name in enumerate(ordered)}, mito_contigs, mito_first)

    def rank(self, contig: str) -> int:
        rank = self.ranks.get(contig)
        if rank is None:
            rank = self._next
            self.ranks[contig] = rank
            self._next += 1
            log_message(f"Contig {contig} is not in the ordering table; ranked {rank}", level=logging.DEBUG)
        return rank

    def group(self, contig: str) -> int:
        if not self.mito_contigs:
            return 0
        return 0 if (contig in self.mito_contigs) == self.mito_first else 1

    def sort_key(self, contig: str) -> Tuple[int, int]:
        return (self.group(contig), self.rank(contig))

    def key(self, record: VariantRecord) -> Tuple[int, int, int]:
        return self.sort_key(record.contig) + (record.position,)


class MergeCursor:
    """Current record of one input stream."""

    def __init__(self, stream: str, records: Iterable[VariantRecord]) -> None:
        self.stream = stream
        self._records = iter(records)
        self.record: Optional[VariantRecord] = None
        self.exhausted = False
        self.consumed = 0
        self.advance()

    def advance(self) -> Optional[VariantRecord]:
        """Move to the next record and return the one previously current."""
        previous = self.record
        self.record = next(self._records, None)
        self.exhausted = self.record is None
        if not self.exhausted:
            self.consumed += 1
        return previous

    def at(self, locus: Tuple[str, int]) -> bool:
        return not self.exhausted and self.record.locus == locus


@dataclass
class MergeSummary:
    mito_records: int = 0
    nuclear_records: int = 0
    emitted: int = 0
    discarded: int = 0
    duplicates_retained: int = 0
    ambiguous_retained: int = 0
    output_path: Optional[str] = None


class MergeEngine:
    """Two-way ordered merge with same-locus conflict resolution."""

    def __init__(
        self,
        config: Optional[MityConfig] = None,
        order: Optional[ContigOrder] = None,
        samples: Optional[Sequence[str]] = None,
    ) -> None:
        self.config = config or MityConfig()
        self.order = order or ContigOrder.from_contigs((), self.config.mito_contigs, self.config.mito_first)
        self.samples = list(samples) if samples is not None else None
        self.summary = MergeSummary()
        self._last: Optional[Tuple[Tuple[int, int, int], VariantRecord]] = None

    def merge(
        self, mito: Iterable[VariantRecord], nuclear: Iterable[VariantRecord]
    ) -> Iterator[VariantRecord]:
        m = MergeCursor(MITO, mito)
        n = MergeCursor(NUCLEAR, nuclear)
        try:
            while not (m.exhausted and n.exhausted):
                if n.exhausted:
                    yield self._emit(m.advance())
                    continue
                if m.exhausted:
                    yield self._emit(n.advance())
                    continue
                # unlisted contigs take the nuclear stream's first-seen order
                nuclear_key = self.order.key(n.record)
                mito_key = self.order.key(m.record)
                if mito_key < nuclear_key:
                    yield self._emit(m.advance())
                elif nuclear_key < mito_key:
                    yield self._emit(n.advance())
                else:
                    yield from self._resolve(m, n)
        finally:
            self.summary.mito_records = m.consumed
            self.summary.nuclear_records = n.consumed

    def _resolve(self, m: MergeCursor, n: MergeCursor) -> Iterator[VariantRecord]:
        contig, position = locus = m.record.locus
        owner = self.config.owner_of(contig)
        if owner is None:
            if not self.config.keep_ambiguous:
                raise AmbiguousMergeConflictError(
                    "Both inputs have a record at the same position and neither stream "
                    f"is authoritative for contig {contig}",
                    contig=contig,
                    position=position,
                )
            handle_non_critical_error(
                f"Keeping both records at ambiguous locus {contig}:{position}"
            )
            self.summary.ambiguous_retained += 1
            yield self._emit(m.advance())
            yield self._emit(n.advance())
            return

        winner, loser = (m, n) if owner == MITO else (n, m)
        yield self._emit(winner.advance())
        if self.config.keep_duplicates:
            self.summary.duplicates_retained += 1
            yield self._emit(loser.advance())
            return
        while loser.at(locus):
            dropped = loser.advance()
            self.summary.discarded += 1
            log_message(
                f"Discarded {loser.stream} record {dropped.ref}>{','.join(dropped.alts)} at "
                f"{contig}:{position} in favour of the {winner.stream} stream",
                level=logging.DEBUG,
            )

    def _emit(self, record: VariantRecord) -> VariantRecord:
        key = self.order.key(record)
        if self._last is not None and key < self._last[0]:
            previous = self._last[1]
            raise UnsortedInputError(
                f"Record would be written after {previous.contig}:{previous.position}, "
                "which sorts later under the contig ordering table",
                contig=record.contig,
                position=record.position,
                line_number=record.line_number,
            )
        self._last = (key, record)
        if self.samples is not None:
            record.conform_samples(self.samples)
        self.summary.emitted += 1
        return record


def merge_samples(mito_samples: Sequence[str], nuclear_samples: Sequence[str]) -> List[str]:
    """Return the merged sample order.

    Identical sets keep the mitochondrial order. Disjoint sets are
    concatenated, mitochondrial first. Sets sharing only some names cannot
    be laid out unambiguously and raise :class:`DuplicateSampleError`.
    """
    mito_set, nuclear_set = set(mito_samples), set(nuclear_samples)
    for name, samples in (("mitochondrial", mito_samples), ("nuclear", nuclear_samples)):
        if len(set(samples)) != len(samples):
            handle_critical_error(
                f"The {name} input lists a sample name more than once.",
                exc_cls=DuplicateSampleError,
            )
    if mito_set == nuclear_set:
        return list(mito_samples)
    shared = mito_set & nuclear_set
    if shared:
        handle_critical_error(
            "Merge inputs share some but not all samples: "
            f"{', '.join(sorted(shared))} appear in both.",
            exc_cls=DuplicateSampleError,
        )
    return list(mito_samples) + list(nuclear_samples)


def merge_headers(mito_header: VcfHeader, nuclear_header: VcfHeader) -> VcfHeader:
    """Union two headers; the mitochondrial header's lines come first."""
    merged = mito_header.copy()
    merged.samples = merge_samples(mito_header.samples, nuclear_header.samples)
    merged.has_format_column = mito_header.has_format_column or nuclear_header.has_format_column
    seen_lines = set(merged.meta_lines)

    for line in nuclear_header.meta_lines:
        if line in seen_lines or line.startswith("##fileformat="):
            continue
        match = STRUCTURED_HEADER_PATTERN.match(line)
        if match is None:
            merged.meta_lines.append(line)
            seen_lines.add(line)
            continue
        key, field_id = match.groups()
        if key == "contig":
            if field_id in merged.contigs:
                kept, other = merged.contigs[field_id], nuclear_header.contigs.get(field_id)
                if kept is not None and other is not None and kept != other:
                    handle_non_critical_error(
                        f"Contig {field_id} has length {kept} in the mitochondrial input and "
                        f"{other} in the nuclear input; keeping {kept}"
                    )
                continue
            merged.contigs[field_id] = nuclear_header.contigs.get(field_id)
        elif key == "FILTER":
            if field_id in merged.filters:
                continue
            merged.filters[field_id] = nuclear_header.filters.get(field_id, "")
        else:
            existing_map = merged.info if key == "INFO" else merged.formats
            incoming_map = nuclear_header.info if key == "INFO" else nuclear_header.formats
            incoming = incoming_map.get(field_id)
            existing = existing_map.get(field_id)
            if existing is not None:
                if incoming is not None and not existing.compatible_with(incoming):
                    handle_critical_error(
                        f"{key} header definitions conflict between merge inputs. "
                        f"{key} '{field_id}' is Number={existing.number},Type={existing.type} "
                        f"in the mitochondrial input but Number={incoming.number},"
                        f"Type={incoming.type} in the nuclear input.",
                        exc_cls=IncompatibleFieldDescriptorError,
                    )
                continue
            if incoming is not None:
                existing_map[field_id] = incoming
        merged.meta_lines.append(line)
        seen_lines.add(line)
    return merged


def build_contig_order(header: VcfHeader, config: Optional[MityConfig] = None) -> ContigOrder:
    """Return the configured ordering table, or one derived from *header*'s contigs."""
    c = config or MityConfig()
    if c.contig_ranks:
        return ContigOrder(dict(c.contig_ranks))
    return ContigOrder.from_contigs(header.contigs, c.mito_contigs, c.mito_first)


def apply_contig_order(header: VcfHeader, order: ContigOrder) -> None:
    """Rewrite *header*'s contig lines so they follow *order*."""
    lookup: "OrderedDict[str, str]" = OrderedDict()
    for line in header.meta_lines:
        match = CONTIG_HEADER_PATTERN.match(line)
        if match is not None:
            lookup.setdefault(match.group(1), line)
    if not lookup:
        return
    ordered_ids = sorted(lookup, key=order.sort_key)
    iterator = iter([lookup[name] for name in ordered_ids])
    new_lines: List[str] = []
    for line in header.meta_lines:
        if CONTIG_HEADER_PATTERN.match(line):
            replacement = next(iterator, None)
            if replacement is not None:
                new_lines.append(replacement)
        else:
            new_lines.append(line)
    header.meta_lines = new_lines
    reordered: "OrderedDict[str, Optional[int]]" = OrderedDict()
    for name in sorted(header.contigs, key=order.sort_key):
        reordered[name] = header.contigs[name]
    header.contigs = reordered


def run_merge(
    mito_path: str,
    nuclear_path: str,
    output_path: str,
    config: Optional[MityConfig] = None,
    verbose: bool = False,
) -> MergeSummary:
    """Merge two VCF files into *output_path* (compressed and indexed for ``.gz``)."""
    config = config or MityConfig()
    log_message(f"Merging {mito_path} (mitochondrial) with {nuclear_path} (nuclear)", verbose)
    try:
        mito_reader = VcfReader.from_path(mito_path)
    except OSError as exc:
        handle_critical_error(f"Failed to open mitochondrial input {mito_path}: {exc}", exc_info=exc)
    try:
        nuclear_reader = VcfReader.from_path(nuclear_path)
    except OSError as exc:
        mito_reader.close()
        handle_critical_error(f"Failed to open nuclear input {nuclear_path}: {exc}", exc_info=exc)

    with mito_reader, nuclear_reader:
        header = merge_headers(mito_reader.header, nuclear_reader.header)
        order = build_contig_order(header, config)
        apply_contig_order(header, order)
        engine = MergeEngine(config, order, header.samples)
        try:
            with VcfWriter.from_path(output_path, header) as writer:
                writer.write_all(engine.merge(mito_reader, nuclear_reader))
        except MityError:
            raise
        except OSError as exc:
            handle_critical_error(f"Failed to write merged output {output_path}: {exc}", exc_info=exc)

    summary = engine.summary
    summary.output_path = output_path
    log_message(
        f"Merged {summary.mito_records} mitochondrial and {summary.nuclear_records} nuclear "
        f"record(s) into {summary.emitted} ({summary.discarded} discarded, "
        f"{summary.duplicates_retained} duplicate(s) kept): {output_path}",
        verbose,
    )
    return summary


__all__ = [
    "ContigOrder",
    "MergeCursor",
    "MergeEngine",
    "MergeSummary",
    "apply_contig_order",
    "build_contig_order",
    "merge_headers",
    "merge_samples",
    "run_merge",
]
