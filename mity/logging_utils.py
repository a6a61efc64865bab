"""Logging setup and exception classes shared by every mity command.

Messages go to the ``mity`` logger, formatted as ``<timestamp> : <text>``.
The CLI calls :func:`configure_logging` once per run to attach a console
handler and, when an output directory is known, a ``mity_execution.log``
file beside the results. Calling it again replaces the handlers.

Every error mity raises on purpose derives from :class:`MityError`; the
CLI turns those into a one-line ``ERROR:`` message. Format errors carry
the contig, position and line number of the record that broke them.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FILE = "mity_execution.log"
LOG_FORMAT = "%(asctime)s : %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("mity")


def _level_number(level: int | str) -> int:
    if not isinstance(level, str):
        return int(level)
    # getLevelName maps known names to ints and anything else to "Level x"
    number = logging.getLevelName(level.upper())
    if not isinstance(number, int):
        raise ValueError(f"Unknown log level: {level}")
    return number


def configure_logging(
    *,
    log_level: int | str = logging.INFO,
    log_file: str | os.PathLike[str] | None = LOG_FILE,
    enable_file_logging: bool = True,
    enable_console: bool = True,
    create_dirs: bool = True,
) -> None:
    """Attach mity's handlers, dropping any left by an earlier call.

    ``log_file`` is only written when ``enable_file_logging`` is set; its
    parent directory is created unless ``create_dirs`` is false.
    """
    level = _level_number(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers = []
    if enable_file_logging and log_file:
        path = os.fspath(log_file)
        parent = os.path.dirname(path)
        if create_dirs and parent:
            os.makedirs(parent, exist_ok=True)
        handlers.append(logging.FileHandler(path))
    if enable_console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)


class MityError(RuntimeError):
    """Base exception for unrecoverable errors in mity."""


class VcfFormatError(MityError):
    """Base for problems found while reading variant text.

    ``contig``, ``position`` and ``line_number`` are filled in when known and
    are appended to the message.
    """

    def __init__(
        self,
        message: str,
        *,
        contig: Optional[str] = None,
        position: Optional[int] = None,
        line_number: Optional[int] = None,
    ) -> None:
        self.contig = contig
        self.position = position
        self.line_number = line_number
        super().__init__(message + _locate(contig, position, line_number))


class MalformedRecordError(VcfFormatError):
    """Raised for an unparseable data or header line."""


class MissingHeaderError(VcfFormatError):
    """Raised when a data record precedes the header."""


class UnsortedInputError(VcfFormatError):
    """Raised when the coordinate ordering contract is violated."""


class MergeConflictError(MityError):
    """Raised when merging fails due to conflicting inputs."""


class AmbiguousMergeConflictError(MergeConflictError):
    """Raised for a same-locus conflict with no authoritative stream."""

    def __init__(self, message: str, *, contig: str, position: int) -> None:
        self.contig = contig
        self.position = position
        super().__init__(message + _locate(contig, position, None))


class IncompatibleFieldDescriptorError(MergeConflictError):
    """Raised when merge headers declare conflicting definitions for a field."""


class DuplicateSampleError(MergeConflictError):
    """Raised when merge inputs share only part of their sample names."""


class ConfigError(MityError):
    """Raised for invalid configuration values or rule expressions."""


class ExternalToolError(MityError):
    """Raised when an external tool fails or its inputs are unusable."""


def _locate(
    contig: Optional[str], position: Optional[int], line_number: Optional[int]
) -> str:
    parts = []
    if contig is not None and position is not None:
        parts.append(f"at {contig}:{position}")
    elif contig is not None:
        parts.append(f"on contig {contig}")
    if line_number is not None:
        parts.append(f"line {line_number}")
    return f" ({', '.join(parts)})" if parts else ""


def log_message(
    message: str,
    verbose: bool = False,
    level: int = logging.INFO,
    *,
    exc_info: BaseException | bool | None = None,
) -> None:
    """Log *message*; with ``verbose`` it is also printed to stdout."""
    logger.log(level, message, exc_info=exc_info)
    if verbose:
        print(message)


def handle_critical_error(
    message: str,
    exc_cls=None,
    *,
    exc_info: BaseException | bool | None = None,
) -> None:
    """Log *message* at ERROR and CRITICAL, then raise ``exc_cls`` (default :class:`MityError`).

    An exception passed as ``exc_info`` becomes the raised error's cause.
    """
    log_message(message, level=logging.ERROR)
    logger.critical(message, exc_info=exc_info)
    error = (exc_cls or MityError)(message)
    if isinstance(exc_info, BaseException):
        raise error from exc_info
    raise error


def handle_non_critical_error(message: str) -> None:
    log_message(message, level=logging.WARNING)


__all__ = [
    "LOG_FILE",
    "configure_logging",
    "logger",
    "log_message",
    "handle_critical_error",
    "handle_non_critical_error",
    "MityError",
    "VcfFormatError",
    "MalformedRecordError",
    "MissingHeaderError",
    "UnsortedInputError",
    "MergeConflictError",
    "AmbiguousMergeConflictError",
    "IncompatibleFieldDescriptorError",
    "DuplicateSampleError",
    "ConfigError",
    "ExternalToolError",
]

# Default configuration: console only at INFO level.
configure_logging(enable_file_logging=False)
