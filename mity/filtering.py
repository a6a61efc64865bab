"""Threshold rules that annotate the FILTER status of variant records.

A :class:`FilterRule` names where to read a value (an INFO field, a sample
field, or a value computed from the record), a comparison that must hold
for the record to pass, and the FILTER label added when it does not.
Rules are written as compact expressions, for example::

    QUAL>=30:LowQual
    FORMAT/DP>=15:LowDP:all
    INFO/SBR<=0.9:StrandBias:optional
    POS notin 302-318,3105:Blacklist

Filtering is advisory: records are never dropped, they accumulate labels.
A missing value fails the rule unless the rule is marked ``optional``.
"""

from __future__ import annotations

import enum
import logging
import operator
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence

from .config import MityConfig, parse_positions
from .logging_utils import ConfigError, log_message
from .records import FieldValue, VariantRecord
from .vcf_io import VcfHeader

ANY = "any"
ALL = "all"


class Scope(enum.Enum):
    INFO = "INFO"
    SAMPLE = "FORMAT"
    COMPUTED = "COMPUTED"


COMPUTED_VALUES: Dict[str, Callable[[VariantRecord], Any]] = {
    "QUAL": lambda record: record.qual,
    "POS": lambda record: record.position,
    "ALT_COUNT": lambda record: len(record.alts),
    "REF_LENGTH": lambda record: len(record.ref),
}

OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
    "in": lambda value, allowed: value in allowed,
    "notin": lambda value, allowed: value not in allowed,
}

_SET_OPERATORS = {"in", "notin"}

_RULE_PATTERN = re.compile(
    r"^\s*(?:(?P<scope>INFO|FORMAT)/)?(?P<field>[A-Za-z_][\w.]*)"
    r"\s*(?:(?P<op><=|>=|==|!=|<|>)|\s(?P<word>notin|in)\s)\s*(?P<value>\S.*?)\s*$"
)


@dataclass(frozen=True)
class FieldSelector:
    """Where in a record a rule reads its value."""

    scope: Scope
    name: str

    def __post_init__(self) -> None:
        if self.scope is Scope.COMPUTED and self.name not in COMPUTED_VALUES:
            raise ConfigError(
                f"Unknown computed value {self.name!r}; expected one of {', '.join(COMPUTED_VALUES)}"
            )

    def __str__(self) -> str:
        if self.scope is Scope.COMPUTED:
            return self.name
        return f"{self.scope.value}/{self.name}"


def _coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_threshold_item(text: str):
    for convert in (int, float):
        try:
            return convert(text)
        except ValueError:
            continue
    return text


@dataclass(frozen=True)
class FilterRule:
    """One named threshold check.

    ``op`` and ``threshold`` state the condition a value must satisfy to
    pass. Sample rules fail the record when ANY sample fails (``sample_mode
    == "any"``) or only when ALL samples fail (``"all"``). ``contigs``
    restricts the rule to records on those contigs.
    """

    selector: FieldSelector
    op: str
    threshold: Any
    label: str
    sample_mode: str = ANY
    optional: bool = False
    contigs: Optional[FrozenSet[str]] = None
    description: str = ""

    def __post_init__(self) -> None:
        if self.op not in OPERATORS:
            raise ConfigError(f"Unknown comparison operator {self.op!r}")
        if self.sample_mode not in (ANY, ALL):
            raise ConfigError(f"Sample mode must be '{ANY}' or '{ALL}', got {self.sample_mode!r}")
        if not self.label or any(ch in self.label for ch in " ;\t"):
            raise ConfigError(f"Invalid filter label {self.label!r}")

    @classmethod
    def parse(cls, expression: str, *, contigs: Optional[Iterable[str]] = None) -> "FilterRule":
        """Parse ``[SCOPE/]FIELD OP VALUE:LABEL[:any|all][:optional]``."""
        parts = [part.strip() for part in expression.split(":")]
        if len(parts) < 2 or not parts[1]:
            raise ConfigError(f"Filter rule {expression!r} must name a label after ':'")
        match = _RULE_PATTERN.match(parts[0])
        if match is None:
            raise ConfigError(f"Unparseable filter rule condition {parts[0]!r}")

        sample_mode, optional = ANY, False
        for flag in parts[2:]:
            lowered = flag.lower()
            if lowered in (ANY, ALL):
                sample_mode = lowered
            elif lowered == "optional":
                optional = True
            else:
                raise ConfigError(f"Unknown filter rule option {flag!r} in {expression!r}")

        scope_text = match.group("scope")
        scope = Scope(scope_text) if scope_text else Scope.COMPUTED
        op = match.group("op") or match.group("word")
        value_text = match.group("value")
        if op in _SET_OPERATORS:
            if match.group("field") == "POS" and scope is Scope.COMPUTED:
                try:
                    threshold: Any = frozenset(parse_positions(value_text))
                except ValueError as exc:
                    raise ConfigError(f"Invalid position list in {expression!r}: {exc}") from exc
            else:
                threshold = frozenset(
                    _parse_threshold_item(item.strip()) for item in value_text.split(",") if item.strip()
                )
        else:
            threshold = _parse_threshold_item(value_text)

        return cls(
            selector=FieldSelector(scope, match.group("field")),
            op=op,
            threshold=threshold,
            label=parts[1],
            sample_mode=sample_mode,
            optional=optional,
            contigs=frozenset(contigs) if contigs is not None else None,
            description=f"Fails {parts[0]}",
        )

    def applies_to(self, record: VariantRecord) -> bool:
        return self.contigs is None or record.contig in self.contigs

    def _item_passes(self, item: Any) -> bool:
        if item is None:
            return self.optional
        if self.op in _SET_OPERATORS:
            return OPERATORS[self.op](item, self.threshold)
        threshold = _coerce_number(self.threshold)
        value = _coerce_number(item)
        if threshold is None or value is None:
            if self.op in ("==", "!="):
                return OPERATORS[self.op](str(item), str(self.threshold))
            return False
        return OPERATORS[self.op](value, threshold)

    def value_passes(self, value: Any) -> bool:
        """Return True when *value* satisfies the rule; missing values fail closed."""
        if isinstance(value, FieldValue):
            if value.is_missing:
                return self.optional
            items = value.items()
        elif value is None:
            return self.optional
        else:
            items = [value]
        return all(self._item_passes(item) for item in items)

    def evaluate(self, record: VariantRecord) -> bool:
        """Return True when *record* passes this rule."""
        scope = self.selector.scope
        name = self.selector.name
        if scope is Scope.COMPUTED:
            return self.value_passes(COMPUTED_VALUES[name](record))
        if scope is Scope.INFO:
            return self.value_passes(record.info.get(name))
        if not record.samples:
            return self.optional
        outcomes = [self.value_passes(sample.get(name)) for sample in record.samples]
        if self.sample_mode == ALL:
            return any(outcomes)
        return all(outcomes)

    def __str__(self) -> str:
        threshold = self.threshold
        if isinstance(threshold, frozenset):
            threshold = ",".join(str(item) for item in sorted(threshold, key=str))
        return f"{self.selector}{self.op}{threshold}:{self.label}"


class FilterEngine:
    """Evaluate a rule set against records, adding labels for failures."""

    def __init__(self, rules: Sequence[FilterRule]) -> None:
        self.rules: List[FilterRule] = list(rules)
        self.records_seen = 0
        self.records_failed = 0
        self.label_counts: Counter = Counter()

    def prepare_header(self, header: VcfHeader) -> VcfHeader:
        for rule in self.rules:
            header.add_filter(rule.label, rule.description or f"Fails {rule}")
        return header

    def apply(self, record: VariantRecord) -> VariantRecord:
        self.records_seen += 1
        failed = False
        for rule in self.rules:
            if not rule.applies_to(record):
                continue
            if not rule.evaluate(record):
                failed = True
                if record.add_filter(rule.label):
                    self.label_counts[rule.label] += 1
        record.mark_evaluated()
        if failed:
            self.records_failed += 1
        return record

    def run(self, records: Iterable[VariantRecord]) -> Iterator[VariantRecord]:
        for record in records:
            yield self.apply(record)

    def log_summary(self, verbose: bool = False) -> None:
        log_message(
            f"Filter engine: {self.records_failed} of {self.records_seen} record(s) failed at least one rule.",
            verbose,
        )
        for label, count in sorted(self.label_counts.items()):
            log_message(f"  {label}: {count}", verbose, level=logging.DEBUG)


def default_rules(config: Optional[MityConfig] = None) -> List[FilterRule]:
    """Return the default mitochondrial rule set for *config*."""
    c = config or MityConfig()
    mode = ANY if c.all_samples_must_pass else ALL
    rules: List[FilterRule] = []
    if c.min_quality is not None:
        rules.append(
            FilterRule(
                FieldSelector(Scope.COMPUTED, "QUAL"),
                ">=",
                c.min_quality,
                "LowQual",
                description=f"QUAL below {c.min_quality:g}",
            )
        )
    if c.min_depth is not None:
        rules.append(
            FilterRule(
                FieldSelector(Scope.SAMPLE, c.depth_field),
                ">=",
                c.min_depth,
                "LowDP",
                sample_mode=mode,
                description=f"Sample read depth below {c.min_depth}",
            )
        )
    if c.min_mqmr is not None:
        rules.append(
            FilterRule(
                FieldSelector(Scope.INFO, "MQMR"),
                ">=",
                c.min_mqmr,
                "LowMQMR",
                optional=True,
                description=f"Mean mapping quality of reference reads below {c.min_mqmr:g}",
            )
        )
    if c.min_aqr is not None:
        rules.append(
            FilterRule(
                FieldSelector(Scope.INFO, "AQR"),
                ">=",
                c.min_aqr,
                "LowAQR",
                optional=True,
                description=f"Mean base quality of reference reads below {c.min_aqr:g}",
            )
        )
    strand_bias = f"Strand bias ratio outside [{c.strand_bias_low}, {c.strand_bias_high}]"
    if c.strand_bias_low is not None:
        rules.append(
            FilterRule(
                FieldSelector(Scope.INFO, c.strand_bias_field),
                ">=",
                c.strand_bias_low,
                "StrandBias",
                optional=True,
                description=strand_bias,
            )
        )
    if c.strand_bias_high is not None:
        rules.append(
            FilterRule(
                FieldSelector(Scope.INFO, c.strand_bias_field),
                "<=",
                c.strand_bias_high,
                "StrandBias",
                optional=True,
                description=strand_bias,
            )
        )
    if c.blacklist_positions:
        rules.append(
            FilterRule(
                FieldSelector(Scope.COMPUTED, "POS"),
                "notin",
                frozenset(c.blacklist_positions),
                "Blacklist",
                contigs=frozenset(c.mito_contigs),
                description="Position in a mitochondrial artefact region",
            )
        )
    rules.extend(FilterRule.parse(expression) for expression in c.extra_rules)
    return rules


__all__ = [
    "ANY",
    "ALL",
    "Scope",
    "FieldSelector",
    "FilterRule",
    "FilterEngine",
    "default_rules",
    "COMPUTED_VALUES",
    "OPERATORS",
]
