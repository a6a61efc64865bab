"""In-memory model of variant records and their per-sample fields.

Values read from INFO and sample columns are held as :class:`FieldValue`
instances tagged with a :class:`ValueKind`, so consumers such as the filter
engine can treat every field uniformly regardless of how it was declared in
the header. A value that has not been modified remembers the text it was
parsed from; the writer emits that text verbatim, which keeps read/write
round trips byte-identical for untouched fields.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

MISSING = "."
PASS = "PASS"


class ValueKind(enum.Enum):
    """Enumerated kinds of INFO and sample field values."""

    INTEGER = "Integer"
    FLOAT = "Float"
    FLAG = "Flag"
    STRING = "String"
    INTEGER_LIST = "Integer[]"
    FLOAT_LIST = "Float[]"
    STRING_LIST = "String[]"

    @property
    def is_list(self) -> bool:
        return self in _LIST_OF

    @property
    def is_numeric(self) -> bool:
        return self.scalar in (ValueKind.INTEGER, ValueKind.FLOAT)

    @property
    def scalar(self) -> "ValueKind":
        return _LIST_OF.get(self, self)

    def as_list(self) -> "ValueKind":
        if self is ValueKind.FLAG:
            return self
        for list_kind, scalar in _LIST_OF.items():
            if scalar is self or list_kind is self:
                return list_kind
        return self


_LIST_OF = {
    ValueKind.INTEGER_LIST: ValueKind.INTEGER,
    ValueKind.FLOAT_LIST: ValueKind.FLOAT,
    ValueKind.STRING_LIST: ValueKind.STRING,
}


def format_float(value: float) -> str:
    """Stable text rendering for floats computed by mity."""
    return "%g" % value


def _parse_scalar(text: str, kind: ValueKind):
    if text == MISSING or text == "":
        return None
    if kind is ValueKind.INTEGER:
        return int(text)
    if kind is ValueKind.FLOAT:
        return float(text)
    return text


def _render_scalar(value) -> str:
    if value is None:
        return MISSING
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return format_float(value)
    return str(value)


class FieldValue:
    """A tagged INFO or sample field value.

    ``value`` is ``None`` for a missing scalar, ``True`` for a set flag, or a
    list (possibly containing ``None`` items) for list kinds.
    """

    __slots__ = ("kind", "value", "raw")

    def __init__(self, kind: ValueKind, value: Any, raw: Optional[str] = None) -> None:
        self.kind = kind
        self.value = value
        self.raw = raw

    @classmethod
    def parse(cls, text: Optional[str], kind: ValueKind) -> "FieldValue":
        """Parse *text* as *kind*; raises ``ValueError`` for bad numbers."""
        if kind is ValueKind.FLAG:
            return cls(kind, True, text)
        if text is None:
            return cls(kind, [] if kind.is_list else None, None)
        if kind.is_list:
            if text == MISSING:
                return cls(kind, [], text)
            scalar = kind.scalar
            return cls(kind, [_parse_scalar(part, scalar) for part in text.split(",")], text)
        return cls(kind, _parse_scalar(text, kind), text)

    @classmethod
    def missing(cls, kind: ValueKind) -> "FieldValue":
        return cls(kind, [] if kind.is_list else None, MISSING)

    @property
    def is_missing(self) -> bool:
        if self.kind.is_list:
            return not self.value or all(item is None for item in self.value)
        return self.value is None

    def items(self) -> List[Any]:
        """Return the value as a list of scalars."""
        if self.kind.is_list:
            return list(self.value or [])
        return [self.value]

    def render(self) -> str:
        if self.raw is not None:
            return self.raw
        if self.kind is ValueKind.FLAG:
            return ""
        if self.kind.is_list:
            if not self.value:
                return MISSING
            return ",".join(_render_scalar(item) for item in self.value)
        return _render_scalar(self.value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FieldValue):
            return NotImplemented
        return self.kind is other.kind and self.value == other.value

    def __repr__(self) -> str:
        return f"FieldValue({self.kind.name}, {self.value!r})"


@dataclass(frozen=True)
class FieldDescriptor:
    """Header declaration of an INFO or FORMAT field."""

    id: str
    number: str = "1"
    type: str = "String"
    description: str = ""

    @property
    def kind(self) -> ValueKind:
        if self.type == "Flag" or self.number == "0":
            return ValueKind.FLAG
        scalar = {"Integer": ValueKind.INTEGER, "Float": ValueKind.FLOAT}.get(
            self.type, ValueKind.STRING
        )
        return scalar if self.number == "1" else scalar.as_list()

    def compatible_with(self, other: "FieldDescriptor") -> bool:
        return self.number == other.number and self.type == other.type

    def to_header_line(self, key: str) -> str:
        escaped = self.description.replace('"', '\\"')
        return (
            f"##{key}=<ID={self.id},Number={self.number},Type={self.type},"
            f'Description="{escaped}">'
        )


class FormatDescriptor:
    """Per-record declaration of the sample field keys.

    One instance is shared by every sample of a record; samples hold values
    only. Instances are immutable: adding a key yields a new descriptor.
    """

    __slots__ = ("keys", "fields", "raw")

    def __init__(
        self,
        keys: Sequence[str],
        fields: Optional[Mapping[str, FieldDescriptor]] = None,
        raw: Optional[str] = None,
    ) -> None:
        self.keys: Tuple[str, ...] = tuple(keys)
        self.fields: Dict[str, FieldDescriptor] = {
            key: fields[key] for key in self.keys if fields and key in fields
        }
        self.raw = raw

    def kind(self, key: str) -> ValueKind:
        descriptor = self.fields.get(key)
        return descriptor.kind if descriptor is not None else ValueKind.STRING

    def extended(self, key: str, descriptor: Optional[FieldDescriptor] = None) -> "FormatDescriptor":
        fields = dict(self.fields)
        if descriptor is not None:
            fields[key] = descriptor
        return FormatDescriptor(self.keys + (key,), fields)

    def render(self) -> str:
        return self.raw if self.raw is not None else ":".join(self.keys)

    def __contains__(self, key: object) -> bool:
        return key in self.keys

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys)

    def __len__(self) -> int:
        return len(self.keys)

    def __repr__(self) -> str:
        return f"FormatDescriptor({':'.join(self.keys)})"


class SampleCall:
    """Field values of one sample within a record."""

    __slots__ = ("name", "data", "raw")

    def __init__(
        self,
        name: str,
        data: Optional[Dict[str, FieldValue]] = None,
        raw: Optional[str] = None,
    ) -> None:
        self.name = name
        self.data: Dict[str, FieldValue] = dict(data or {})
        self.raw = raw

    def get(self, key: str) -> Optional[FieldValue]:
        return self.data.get(key)

    def set(self, key: str, value: FieldValue) -> None:
        self.data[key] = value
        self.raw = None

    def render(self, format: FormatDescriptor) -> str:
        if self.raw is not None:
            return self.raw
        rendered = []
        for key in format.keys:
            value = self.data.get(key)
            rendered.append(value.render() if value is not None else MISSING)
        return ":".join(rendered)

    def __repr__(self) -> str:
        return f"SampleCall({self.name!r}, {self.data!r})"


_GT_SPLIT = re.compile(r"[/|]")


def genotype_allele_indices(text: Optional[str]) -> List[int]:
    """Return the called allele indices in a GT string, skipping missing ones."""
    if not text or text == MISSING:
        return []
    indices = []
    for token in _GT_SPLIT.split(text):
        token = token.strip()
        if not token or token == MISSING:
            continue
        indices.append(int(token))
    return indices


class VariantRecord:
    """One called variant and its per-sample fields."""

    def __init__(
        self,
        contig: str,
        position: int,
        ref: str,
        alts: Iterable[str],
        *,
        id: str = MISSING,
        qual: Optional[float] = None,
        filters: Optional[Iterable[str]] = None,
        info: Optional[Dict[str, FieldValue]] = None,
        format: Optional[FormatDescriptor] = None,
        samples: Optional[List[SampleCall]] = None,
        line_number: Optional[int] = None,
    ) -> None:
        self.contig = contig
        self.position = position
        self.id = id
        self.ref = ref
        self.alts: List[str] = list(alts)
        self._qual = qual
        self.filters: List[str] = []
        for label in filters or ():
            if label not in self.filters:
                self.filters.append(label)
        self.info: Dict[str, FieldValue] = dict(info or {})
        self.format = format
        self.samples: List[SampleCall] = list(samples or [])
        self.warnings: List[str] = []
        self.line_number = line_number
        self.qual_raw: Optional[str] = None
        self.filter_raw: Optional[str] = None

    @property
    def locus(self) -> Tuple[str, int]:
        return (self.contig, self.position)

    @property
    def alleles(self) -> List[str]:
        return [self.ref] + self.alts

    @property
    def is_variant(self) -> bool:
        return bool(self.alts)

    @property
    def passed(self) -> bool:
        return not self.filters

    @property
    def qual(self) -> Optional[float]:
        return self._qual

    @qual.setter
    def qual(self, value: Optional[float]) -> None:
        self._qual = value
        self.qual_raw = None

    def add_filter(self, label: str) -> bool:
        """Add *label* to the filter status; returns False when already present."""
        self.filter_raw = None
        if label in self.filters:
            return False
        self.filters.append(label)
        return True

    def mark_evaluated(self) -> None:
        """Record that filters have been applied, so a clean record reads PASS."""
        if self.filter_raw == MISSING:
            self.filter_raw = None

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def set_info(self, key: str, value: FieldValue) -> None:
        self.info[key] = value

    def sample_value(self, index: int, key: str) -> Optional[FieldValue]:
        return self.samples[index].get(key)

    def ensure_format_key(self, key: str, descriptor: Optional[FieldDescriptor] = None) -> None:
        """Declare *key* in the record's format, padding every sample with a missing value."""
        if self.format is None:
            self.format = FormatDescriptor((), {})
        if key in self.format:
            return
        self.format = self.format.extended(key, descriptor)
        kind = descriptor.kind if descriptor is not None else ValueKind.STRING
        for sample in self.samples:
            sample.set(key, FieldValue(kind, [] if kind.is_list else None))

    def set_sample_value(
        self,
        index: int,
        key: str,
        value: FieldValue,
        descriptor: Optional[FieldDescriptor] = None,
    ) -> None:
        self.ensure_format_key(key, descriptor)
        self.samples[index].set(key, value)

    def conform_samples(self, names: Sequence[str]) -> None:
        """Lay the sample columns out in *names* order, padding absent samples."""
        current = [sample.name for sample in self.samples]
        if current == list(names):
            return
        by_name = {sample.name: sample for sample in self.samples}
        if self.format is None or not len(self.format):
            self.format = FormatDescriptor(("GT",), {})
        laid_out: List[SampleCall] = []
        for name in names:
            sample = by_name.get(name)
            if sample is None:
                sample = SampleCall(
                    name,
                    {key: FieldValue.missing(self.format.kind(key)) for key in self.format},
                    raw=MISSING,
                )
            laid_out.append(sample)
        self.samples = laid_out

    def invalid_genotype_indices(self) -> List[Tuple[str, int]]:
        """Return (sample, allele index) pairs that do not index REF+ALT."""
        if self.format is None or "GT" not in self.format:
            return []
        allele_count = len(self.alts) + 1
        bad = []
        for sample in self.samples:
            gt = sample.get("GT")
            if gt is None:
                continue
            for allele in genotype_allele_indices(gt.value):
                if allele < 0 or allele >= allele_count:
                    bad.append((sample.name, allele))
        return bad

    def __repr__(self) -> str:
        return (
            f"VariantRecord({self.contig}:{self.position} {self.ref}>"
            f"{','.join(self.alts) or MISSING}, filters={self.filters})"
        )


__all__ = [
    "MISSING",
    "PASS",
    "ValueKind",
    "FieldValue",
    "FieldDescriptor",
    "FormatDescriptor",
    "SampleCall",
    "VariantRecord",
    "format_float",
    "genotype_allele_indices",
]
