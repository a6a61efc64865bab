"""Streaming reader and writer for tab-delimited variant records.

The ``##`` meta-information block is handed to :mod:`vcfpy`, which turns it
into typed header-line objects; those are folded into a :class:`VcfHeader`
holding the contig list, the sample names and the declared INFO/FORMAT
types. Data lines are parsed here, one at a time, into
:class:`~mity.records.VariantRecord` instances whose untouched fields keep
their source text. Writing an unmodified record therefore reproduces the
input line byte for byte.

The reader also enforces the ordering contract relied on by the merge:
positions never decrease within a contig and each contig occupies a single
contiguous block.
"""

from __future__ import annotations

import gzip
import io
import logging
import os
import warnings
from collections import OrderedDict
from typing import Callable, Dict, Iterable, Iterator, List, Optional, TextIO

from . import pysam, vcfpy
from .logging_utils import (
    MalformedRecordError,
    MissingHeaderError,
    UnsortedInputError,
    log_message,
)
from .records import (
    MISSING,
    PASS,
    FieldDescriptor,
    FieldValue,
    FormatDescriptor,
    SampleCall,
    ValueKind,
    VariantRecord,
    format_float,
)

FIXED_COLUMNS = ("#CHROM", "POS", "ID", "REF", "ALT", "QUAL", "FILTER", "INFO")


def open_vcf(path: str, mode: str = "r") -> TextIO:
    """Open *path* as text, decompressing ``.gz`` files transparently."""
    if str(path).endswith(".gz"):
        return gzip.open(path, mode + "t", encoding="utf-8")
    return open(path, mode, encoding="utf-8")


def _contig_length(line) -> Optional[int]:
    # vcfpy keeps ``length`` as header text on some releases
    length = getattr(line, "length", None)
    if length is None:
        length = (getattr(line, "mapping", None) or {}).get("length")
    try:
        return int(length) if length is not None else None
    except (TypeError, ValueError):
        return None


def _descriptor_from_line(line) -> FieldDescriptor:
    mapping = getattr(line, "mapping", None) or {}
    number = mapping.get("Number", getattr(line, "number", "1"))
    return FieldDescriptor(
        id=line.id,
        number=str(number) if number is not None else MISSING,
        type=str(mapping.get("Type", getattr(line, "type", "String"))),
        description=str(mapping.get("Description", "") or ""),
    )


class VcfHeader:
    """Header metadata: meta lines, samples, and declared field types."""

    def __init__(
        self,
        meta_lines: Iterable[str],
        samples: Iterable[str] = (),
        *,
        info: Optional[Dict[str, FieldDescriptor]] = None,
        formats: Optional[Dict[str, FieldDescriptor]] = None,
        contigs: Optional["OrderedDict[str, Optional[int]]"] = None,
        filters: Optional[Dict[str, str]] = None,
        has_format_column: Optional[bool] = None,
    ) -> None:
        self.meta_lines: List[str] = list(meta_lines)
        self.samples: List[str] = list(samples)
        self.info: Dict[str, FieldDescriptor] = dict(info or {})
        self.formats: Dict[str, FieldDescriptor] = dict(formats or {})
        self.contigs: "OrderedDict[str, Optional[int]]" = OrderedDict(contigs or {})
        self.filters: Dict[str, str] = dict(filters or {})
        self.has_format_column = bool(self.samples) if has_format_column is None else has_format_column

    @classmethod
    def parse(cls, meta_lines: List[str], column_line: str, source: str = "<stream>") -> "VcfHeader":
        """Build a header from raw ``##`` lines and the ``#CHROM`` line."""
        text = "".join(line + "\n" for line in meta_lines) + column_line + "\n"
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                parsed = vcfpy.Reader.from_stream(io.StringIO(text)).header
        except Exception as exc:  # vcfpy raises several unrelated exception types
            raise MalformedRecordError(f"Unparseable header in {source}: {exc}") from exc

        info: Dict[str, FieldDescriptor] = {}
        formats: Dict[str, FieldDescriptor] = {}
        contigs: "OrderedDict[str, Optional[int]]" = OrderedDict()
        filters: Dict[str, str] = {}
        for line in parsed.lines:
            if isinstance(line, vcfpy.header.InfoHeaderLine):
                info.setdefault(line.id, _descriptor_from_line(line))
            elif isinstance(line, vcfpy.header.FormatHeaderLine):
                formats.setdefault(line.id, _descriptor_from_line(line))
            elif isinstance(line, vcfpy.header.ContigHeaderLine):
                contigs.setdefault(line.id, _contig_length(line))
            elif isinstance(line, vcfpy.header.FilterHeaderLine):
                mapping = getattr(line, "mapping", None) or {}
                filters.setdefault(line.id, str(mapping.get("Description", "")))

        columns = column_line.split("\t")
        return cls(
            meta_lines,
            list(parsed.samples.names),
            info=info,
            formats=formats,
            contigs=contigs,
            filters=filters,
            has_format_column=len(columns) > len(FIXED_COLUMNS),
        )

    def add_info(self, descriptor: FieldDescriptor) -> bool:
        if descriptor.id in self.info:
            return False
        self.info[descriptor.id] = descriptor
        self.meta_lines.append(descriptor.to_header_line("INFO"))
        return True

    def add_format(self, descriptor: FieldDescriptor) -> bool:
        if descriptor.id in self.formats:
            return False
        self.formats[descriptor.id] = descriptor
        self.meta_lines.append(descriptor.to_header_line("FORMAT"))
        return True

    def add_filter(self, filter_id: str, description: str) -> bool:
        if filter_id in self.filters:
            return False
        self.filters[filter_id] = description
        escaped = description.replace('"', '\\"')
        self.meta_lines.append(f'##FILTER=<ID={filter_id},Description="{escaped}">')
        return True

    def add_contig(self, contig: str, length: Optional[int] = None) -> bool:
        if contig in self.contigs:
            return False
        self.contigs[contig] = length
        if length is None:
            self.meta_lines.append(f"##contig=<ID={contig}>")
        else:
            self.meta_lines.append(f"##contig=<ID={contig},length={length}>")
        return True

    def column_line(self) -> str:
        columns = list(FIXED_COLUMNS)
        if self.has_format_column or self.samples:
            columns.append("FORMAT")
            columns.extend(self.samples)
        return "\t".join(columns)

    def lines(self) -> List[str]:
        return list(self.meta_lines) + [self.column_line()]

    def copy(self) -> "VcfHeader":
        return VcfHeader(
            self.meta_lines,
            self.samples,
            info=self.info,
            formats=self.formats,
            contigs=self.contigs,
            filters=self.filters,
            has_format_column=self.has_format_column,
        )


class _OrderTracker:
    """Running check of the sorted-input contract."""

    def __init__(self, source: str) -> None:
        self.source = source
        self.contig: Optional[str] = None
        self.position = 0
        self.finished: set[str] = set()

    def check(self, contig: str, position: int, line_number: Optional[int]) -> None:
        if contig != self.contig:
            if contig in self.finished:
                raise UnsortedInputError(
                    f"Contig {contig} reappears after other contigs in {self.source}",
                    contig=contig,
                    position=position,
                    line_number=line_number,
                )
            if self.contig is not None:
                self.finished.add(self.contig)
            self.contig = contig
            self.position = position
            return
        if position < self.position:
            raise UnsortedInputError(
                f"Position {position} follows position {self.position} in {self.source}",
                contig=contig,
                position=position,
                line_number=line_number,
            )
        self.position = position


class VcfReader:
    """Stream :class:`VariantRecord` objects from variant text.

    The header is parsed on first access. :meth:`read_next` returns ``None``
    at end of stream. Records without an alternate allele are skipped and
    counted in ``skipped_non_variant``.
    """

    def __init__(
        self,
        stream: Iterable[str],
        source: str = "<stream>",
        *,
        check_order: bool = True,
        closer: Optional[Callable[[], None]] = None,
    ) -> None:
        self.source = source
        self._lines = iter(stream)
        self._closer = closer
        self._header: Optional[VcfHeader] = None
        self._order = _OrderTracker(source) if check_order else None
        self._format_cache: Dict[str, FormatDescriptor] = {}
        self.line_number = 0
        self.records_read = 0
        self.skipped_non_variant = 0

    @classmethod
    def from_path(cls, path: str, **kwargs) -> "VcfReader":
        handle = open_vcf(path)
        return cls(handle, source=str(path), closer=handle.close, **kwargs)

    @classmethod
    def from_text(cls, text: str, **kwargs) -> "VcfReader":
        return cls(io.StringIO(text), **kwargs)

    @property
    def header(self) -> VcfHeader:
        if self._header is None:
            self._header = self._read_header()
        return self._header

    def _next_line(self) -> Optional[str]:
        for raw in self._lines:
            self.line_number += 1
            line = raw.rstrip("\r\n")
            if line:
                return line
        return None

    def _read_header(self) -> VcfHeader:
        meta_lines: List[str] = []
        while True:
            line = self._next_line()
            if line is None:
                raise MissingHeaderError(
                    f"No #CHROM header line found in {self.source}",
                    line_number=self.line_number,
                )
            if line.startswith("##"):
                meta_lines.append(line)
                continue
            if line.startswith("#"):
                header = VcfHeader.parse(meta_lines, line, self.source)
                log_message(
                    f"Read header of {self.source}: {len(header.contigs)} contig(s), "
                    f"{len(header.samples)} sample(s)",
                    level=logging.DEBUG,
                )
                return header
            raise MissingHeaderError(
                f"Data record precedes the header in {self.source}",
                line_number=self.line_number,
            )

    def read_next(self) -> Optional[VariantRecord]:
        header = self.header
        while True:
            line = self._next_line()
            if line is None:
                return None
            if line.startswith("#"):
                raise MalformedRecordError(
                    f"Header line after data records in {self.source}",
                    line_number=self.line_number,
                )
            record = self._parse_record(line, header)
            if self._order is not None:
                self._order.check(record.contig, record.position, self.line_number)
            if not record.is_variant:
                self.skipped_non_variant += 1
                log_message(
                    f"Skipping non-variant record at {record.contig}:{record.position}",
                    level=logging.DEBUG,
                )
                continue
            self.records_read += 1
            return record

    def __iter__(self) -> Iterator[VariantRecord]:
        while True:
            record = self.read_next()
            if record is None:
                return
            yield record

    def _format_descriptor(self, text: str, header: VcfHeader) -> FormatDescriptor:
        descriptor = self._format_cache.get(text)
        if descriptor is None:
            keys = [] if text == MISSING else text.split(":")
            descriptor = FormatDescriptor(keys, header.formats, raw=text)
            self._format_cache[text] = descriptor
        return descriptor

    def _parse_record(self, line: str, header: VcfHeader) -> VariantRecord:
        fields = line.split("\t")
        expected = len(FIXED_COLUMNS) + (1 + len(header.samples) if header.has_format_column else 0)
        line_number = self.line_number
        if len(fields) != expected:
            raise MalformedRecordError(
                f"Expected {expected} tab-separated fields, found {len(fields)}",
                contig=fields[0] or None,
                line_number=line_number,
            )
        contig, pos_text, record_id, ref, alt_text, qual_text, filter_text, info_text = fields[:8]
        try:
            position = int(pos_text)
        except ValueError:
            raise MalformedRecordError(
                f"Unparseable position {pos_text!r}", contig=contig, line_number=line_number
            ) from None
        if position < 1:
            raise MalformedRecordError(
                f"Position must be at least 1, found {position}",
                contig=contig,
                line_number=line_number,
            )

        def _malformed(message: str) -> MalformedRecordError:
            return MalformedRecordError(
                message, contig=contig, position=position, line_number=line_number
            )

        try:
            qual = None if qual_text == MISSING else float(qual_text)
        except ValueError:
            raise _malformed(f"Unparseable QUAL {qual_text!r}") from None

        filters = [] if filter_text in (MISSING, PASS) else filter_text.split(";")
        info = self._parse_info(info_text, header, _malformed)

        record = VariantRecord(
            contig,
            position,
            ref,
            [] if alt_text == MISSING else alt_text.split(","),
            id=record_id,
            qual=qual,
            filters=filters,
            info=info,
            line_number=line_number,
        )
        record.qual_raw = qual_text
        record.filter_raw = filter_text

        if header.has_format_column:
            record.format = self._format_descriptor(fields[8], header)
            record.samples = [
                self._parse_sample(name, text, record.format, _malformed)
                for name, text in zip(header.samples, fields[9:])
            ]
            try:
                bad = record.invalid_genotype_indices()
            except ValueError:
                raise _malformed("Unparseable genotype") from None
            if bad:
                sample, allele = bad[0]
                raise _malformed(
                    f"Genotype of sample {sample} references allele {allele} "
                    f"but the record has {len(record.alleles)} allele(s)"
                )
        return record

    @staticmethod
    def _parse_info(text: str, header: VcfHeader, _malformed) -> Dict[str, FieldValue]:
        info: Dict[str, FieldValue] = {}
        if text == MISSING:
            return info
        for entry in text.split(";"):
            key, sep, value = entry.partition("=")
            if not sep:
                info[key] = FieldValue.parse(None, ValueKind.FLAG)
                continue
            descriptor = header.info.get(key)
            kind = descriptor.kind if descriptor is not None else ValueKind.STRING
            if kind is ValueKind.FLAG:
                kind = ValueKind.STRING
            try:
                info[key] = FieldValue.parse(value, kind)
            except ValueError:
                raise _malformed(f"INFO field {key} has unparseable value {value!r}") from None
        return info

    @staticmethod
    def _parse_sample(name: str, text: str, format: FormatDescriptor, _malformed) -> SampleCall:
        if text == MISSING:
            return SampleCall(
                name, {key: FieldValue.missing(format.kind(key)) for key in format}, raw=text
            )
        parts = text.split(":")
        if len(parts) != len(format):
            raise _malformed(
                f"Sample {name} has {len(parts)} field(s) but FORMAT declares {len(format)}"
            )
        data = {}
        for key, part in zip(format.keys, parts):
            try:
                data[key] = FieldValue.parse(part, format.kind(key))
            except ValueError:
                raise _malformed(
                    f"FORMAT field {key} of sample {name} has unparseable value {part!r}"
                ) from None
        return SampleCall(name, data, raw=text)

    def close(self) -> None:
        if self._closer is not None:
            self._closer()
            self._closer = None

    def __enter__(self) -> "VcfReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _render_filter(record: VariantRecord) -> str:
    canonical = ";".join(record.filters) if record.filters else PASS
    raw = record.filter_raw
    if raw is not None:
        if record.filters and raw == canonical:
            return raw
        if not record.filters and raw in (MISSING, PASS):
            return raw
    return canonical


def _render_info(info: Dict[str, FieldValue]) -> str:
    if not info:
        return MISSING
    entries = []
    for key, value in info.items():
        if value.kind is ValueKind.FLAG:
            entries.append(key)
        else:
            entries.append(f"{key}={value.render()}")
    return ";".join(entries)


def format_record(record: VariantRecord, header: Optional[VcfHeader] = None) -> str:
    """Serialize *record* to one tab-delimited line without a newline."""
    if record.qual_raw is not None:
        qual = record.qual_raw
    else:
        qual = MISSING if record.qual is None else format_float(record.qual)
    columns = [
        record.contig,
        str(record.position),
        record.id,
        record.ref,
        ",".join(record.alts) if record.alts else MISSING,
        qual,
        _render_filter(record),
        _render_info(record.info),
    ]
    with_samples = record.format is not None
    if header is not None:
        with_samples = header.has_format_column or bool(header.samples)
    if with_samples:
        fmt = record.format if record.format is not None else FormatDescriptor(())
        columns.append(fmt.render() if len(fmt) else MISSING)
        columns.extend(sample.render(fmt) for sample in record.samples)
    return "\t".join(columns)


class VcfWriter:
    """Write a header and records as variant text.

    Paths ending in ``.gz`` are written as plain text first and then
    BGZF-compressed and tabix-indexed when the writer is closed.
    """

    def __init__(
        self,
        stream: TextIO,
        *,
        header: Optional[VcfHeader] = None,
        closer: Optional[Callable[[], None]] = None,
        aborter: Optional[Callable[[], None]] = None,
    ) -> None:
        self._stream = stream
        self._closer = closer
        self._aborter = aborter
        self.header = header
        self.records_written = 0
        if header is not None:
            self.write_header(header)

    @classmethod
    def from_path(cls, path: str, header: Optional[VcfHeader] = None, *, index: bool = True) -> "VcfWriter":
        path = os.fspath(path)
        compressed = path.endswith(".gz")
        plain_path = path[: -len(".gz")] if compressed else path
        directory = os.path.dirname(plain_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handle = open(plain_path, "w", encoding="utf-8")

        def _close() -> None:
            handle.close()
            if compressed:
                compress_and_index(plain_path, path, index=index)

        def _abort() -> None:
            handle.close()
            try:
                os.remove(plain_path)
            except OSError:
                pass

        return cls(handle, header=header, closer=_close, aborter=_abort)

    def write_header(self, header: VcfHeader) -> None:
        self.header = header
        for line in header.lines():
            self._stream.write(line + "\n")

    def write(self, record: VariantRecord) -> None:
        self._stream.write(format_record(record, self.header) + "\n")
        self.records_written += 1

    def write_all(self, records: Iterable[VariantRecord]) -> int:
        for record in records:
            self.write(record)
        return self.records_written

    def close(self) -> None:
        if self._closer is not None:
            closer, self._closer = self._closer, None
            self._aborter = None
            closer()

    def abort(self) -> None:
        """Discard a partially written output."""
        aborter, self._aborter = self._aborter, None
        self._closer = None
        if aborter is not None:
            aborter()

    def __enter__(self) -> "VcfWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and self._aborter is not None:
            self.abort()
        else:
            self.close()


def compress_and_index(
    plain_path: str,
    gz_path: Optional[str] = None,
    *,
    index: bool = True,
    remove_source: bool = True,
) -> str:
    """BGZF-compress *plain_path* and build a tabix index next to the result."""
    gz_path = gz_path or plain_path + ".gz"
    pysam.tabix_compress(plain_path, gz_path, force=True)
    if index:
        pysam.tabix_index(gz_path, preset="vcf", force=True)
    if remove_source:
        try:
            os.remove(plain_path)
        except OSError:
            pass
    log_message(f"Compressed and indexed {gz_path}", level=logging.DEBUG)
    return gz_path


__all__ = [
    "FIXED_COLUMNS",
    "VcfHeader",
    "VcfReader",
    "VcfWriter",
    "compress_and_index",
    "format_record",
    "open_vcf",
]
