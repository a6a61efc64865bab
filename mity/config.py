"""Process-wide configuration for normalisation, filtering and merging.

``MityConfig`` is loaded once per invocation and then only read. Values come
from the dataclass defaults, an optional ``key=value`` configuration file
(:func:`load_config`) and finally command-line overrides applied with
:func:`dataclasses.replace`.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .logging_utils import ConfigError, log_message

MITO = "mito"
NUCLEAR = "nuclear"
STREAM_OWNERS = (MITO, NUCLEAR)

DEFAULT_MITO_CONTIGS: Tuple[str, ...] = ("MT", "chrM")

DEFAULT_BLACKLIST_POSITIONS: Tuple[int, ...] = tuple(range(302, 319)) + (3105, 3106, 3107)
"""Mitochondrial positions with recurrent alignment artefacts."""


@dataclass(frozen=True)
class MityConfig:
    """Recognised options for the normalise, filter and merge stages."""

    het_low: float = 0.01
    het_high: float = 0.98
    mito_contigs: Tuple[str, ...] = DEFAULT_MITO_CONTIGS
    authoritative_contigs: Optional[Mapping[str, str]] = None
    nuclear_owns_unlisted: bool = False
    keep_duplicates: bool = False
    keep_ambiguous: bool = False

    min_quality: Optional[float] = 30.0
    min_depth: Optional[int] = 15
    min_mqmr: Optional[float] = 30.0
    min_aqr: Optional[float] = 20.0
    strand_bias_low: Optional[float] = 0.1
    strand_bias_high: Optional[float] = 0.9
    blacklist_positions: Tuple[int, ...] = DEFAULT_BLACKLIST_POSITIONS
    all_samples_must_pass: bool = True
    extra_rules: Tuple[str, ...] = ()

    contig_ranks: Optional[Mapping[str, int]] = None
    mito_first: bool = True

    alt_count_field: str = "AO"
    depth_field: str = "DP"
    fraction_field: str = "VAF"
    class_field: str = "HPL"
    strand_forward_field: str = "SAF"
    strand_reverse_field: str = "SAR"
    strand_bias_field: str = "SBR"

    reference_dir: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.het_low <= self.het_high <= 1.0:
            raise ConfigError(
                "Heteroplasmy thresholds must satisfy 0 <= het_low <= het_high <= 1, "
                f"got het_low={self.het_low}, het_high={self.het_high}"
            )
        for contig, owner in (self.authoritative_contigs or {}).items():
            if owner not in STREAM_OWNERS:
                raise ConfigError(
                    f"Owner of contig {contig} must be one of {', '.join(STREAM_OWNERS)}, got {owner!r}"
                )

    @property
    def ownership(self) -> Dict[str, str]:
        if self.authoritative_contigs is not None:
            return dict(self.authoritative_contigs)
        return {contig: MITO for contig in self.mito_contigs}

    def owner_of(self, contig: str) -> Optional[str]:
        """Return the stream authoritative for *contig*, or ``None`` when ambiguous."""
        owner = self.ownership.get(contig)
        if owner is None and self.nuclear_owns_unlisted:
            return NUCLEAR
        return owner

    def is_mito(self, contig: str) -> bool:
        return contig in self.mito_contigs

    def replace(self, **changes: Any) -> "MityConfig":
        return dataclasses.replace(self, **{k: v for k, v in changes.items() if v is not None})


def _parse_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"not a boolean: {text!r}")


def _optional(convert: Callable[[str], Any]) -> Callable[[str], Any]:
    def _convert(text: str):
        if text.strip().lower() in {"none", "off", ""}:
            return None
        return convert(text)

    return _convert


def _parse_names(text: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in text.split(",") if part.strip())


def parse_positions(text: str) -> Tuple[int, ...]:
    """Parse ``302-318,3105`` style position lists."""
    positions: List[int] = []
    for part in _parse_names(text):
        start, sep, end = part.partition("-")
        if sep:
            positions.extend(range(int(start), int(end) + 1))
        else:
            positions.append(int(part))
    return tuple(positions)


def _parse_mapping(convert: Callable[[str], Any]) -> Callable[[str], Dict[str, Any]]:
    def _convert(text: str) -> Dict[str, Any]:
        mapping: Dict[str, Any] = {}
        for part in _parse_names(text):
            key, sep, value = part.partition(":")
            if not sep or not key.strip():
                raise ValueError(f"expected contig:value, got {part!r}")
            mapping[key.strip()] = convert(value.strip())
        return mapping

    return _convert


_CONVERTERS: Dict[str, Callable[[str], Any]] = {
    "het_low": float,
    "het_high": float,
    "mito_contigs": _parse_names,
    "authoritative_contigs": _parse_mapping(str),
    "nuclear_owns_unlisted": _parse_bool,
    "keep_duplicates": _parse_bool,
    "keep_ambiguous": _parse_bool,
    "min_quality": _optional(float),
    "min_depth": _optional(int),
    "min_mqmr": _optional(float),
    "min_aqr": _optional(float),
    "strand_bias_low": _optional(float),
    "strand_bias_high": _optional(float),
    "blacklist_positions": parse_positions,
    "all_samples_must_pass": _parse_bool,
    "contig_ranks": _parse_mapping(int),
    "mito_first": _parse_bool,
}

_REPEATABLE = {"rule": "extra_rules"}


def load_config(path: str, base: Optional[MityConfig] = None) -> MityConfig:
    """Return a configuration read from ``key=value`` lines in *path*.

    Blank lines and ``#`` comments are ignored. ``rule=`` may be repeated to
    add filter rule expressions. Field-name options (``*_field``) take plain
    strings.
    """
    config_path = Path(path).expanduser()
    if not config_path.is_file():
        raise ConfigError(f"Configuration file does not exist: {path}")

    known = {f.name for f in dataclasses.fields(MityConfig)}
    values: Dict[str, Any] = {}
    repeated: Dict[str, List[str]] = {}
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            for line_number, raw_line in enumerate(handle, 1):
                stripped = raw_line.strip()
                if not stripped or stripped.startswith("#"):
                    continue
                key, sep, value = stripped.partition("=")
                key, value = key.strip(), value.strip()
                if not sep or not key:
                    raise ConfigError(
                        f"Configuration lines must be 'key=value' ({config_path} line {line_number})"
                    )
                if key in _REPEATABLE:
                    repeated.setdefault(_REPEATABLE[key], []).append(value)
                    continue
                if key not in known:
                    raise ConfigError(f"Unknown configuration key {key!r} ({config_path} line {line_number})")
                convert = _CONVERTERS.get(key, str)
                try:
                    values[key] = convert(value)
                except ValueError as exc:
                    raise ConfigError(
                        f"Invalid value for {key} ({config_path} line {line_number}): {exc}"
                    ) from exc
    except OSError as exc:
        raise ConfigError(f"Unable to read configuration file {path}: {exc}") from exc

    base = base or MityConfig()
    for name, entries in repeated.items():
        values[name] = tuple(getattr(base, name)) + tuple(entries)
    log_message(f"Loaded {len(values)} configuration value(s) from {config_path}", level=logging.DEBUG)
    return dataclasses.replace(base, **values)


REFERENCE_DIR_ENV = "MITY_REFERENCE_DIR"


def select_reference(reference: str, suffix: str, reference_dir: Optional[str] = None) -> str:
    """Resolve *reference* to a file path.

    An existing path is returned unchanged. Otherwise *reference* is taken as
    a keyword such as ``hs37d5`` or ``hg38`` and exactly one
    ``<keyword><suffix>`` file must exist in *reference_dir* (default: the
    ``MITY_REFERENCE_DIR`` environment variable).
    """
    if Path(reference).expanduser().is_file():
        return str(Path(reference).expanduser())
    directory = reference_dir or os.environ.get(REFERENCE_DIR_ENV)
    if not directory:
        raise ConfigError(
            f"Reference {reference!r} is not a file and no reference directory is configured "
            f"(set reference_dir or {REFERENCE_DIR_ENV})"
        )
    matches = sorted(Path(directory).expanduser().glob(f"{reference}{suffix}"))
    if len(matches) != 1:
        raise ConfigError(
            f"Expected exactly one {suffix} file for reference {reference!r} in {directory}, "
            f"found {len(matches)}"
        )
    log_message(f"Resolved reference {reference} to {matches[0]}", level=logging.DEBUG)
    return str(matches[0])


def load_contig_order(genome_path: str) -> Dict[str, int]:
    """Read a ``.genome`` file (``contig<TAB>length`` per line) into a rank table."""
    ranks: Dict[str, int] = {}
    try:
        with open(genome_path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                stripped = raw_line.strip()
                if not stripped or stripped.startswith("#"):
                    continue
                contig = stripped.split()[0]
                ranks.setdefault(contig, len(ranks))
    except OSError as exc:
        raise ConfigError(f"Unable to read genome file {genome_path}: {exc}") from exc
    if not ranks:
        raise ConfigError(f"Genome file lists no contigs: {genome_path}")
    return ranks


__all__ = [
    "MITO",
    "NUCLEAR",
    "DEFAULT_MITO_CONTIGS",
    "DEFAULT_BLACKLIST_POSITIONS",
    "MityConfig",
    "load_config",
    "load_contig_order",
    "parse_positions",
    "select_reference",
]
