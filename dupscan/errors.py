"""Exception hierarchy shared by the scanner components."""

from __future__ import annotations


class DupscanError(Exception):
    """Base class for every error raised by :mod:`dupscan`."""


class FatalError(DupscanError):
    """An error that aborts the whole run without producing a report."""


class BinaryNotFoundError(FatalError):
    """The input path does not exist or cannot be read."""


class ContainerFormatError(FatalError):
    """The input is not a recognised ELF file or is malformed."""


class UnsupportedArchitectureError(FatalError):
    """The input is an ELF file for a machine other than x86-64."""


class NoDebugInfoError(FatalError):
    """The binary carries neither a symbol table nor DWARF function entries."""


class NoFunctionsError(FatalError):
    """Symbols exist but none of them describe a function with a size."""


class LocalError(DupscanError):
    """An error confined to a single function or instruction."""


class DecodeError(LocalError):
    """A function's bytes could not be decoded into instructions."""


class OperandEncodingError(LocalError):
    """An address operand was seen but its encoded field could not be located."""


class UnresolvedReferenceError(LocalError):
    """An address operand points somewhere no section or symbol covers."""


__all__ = [
    "DupscanError",
    "FatalError",
    "BinaryNotFoundError",
    "ContainerFormatError",
    "UnsupportedArchitectureError",
    "NoDebugInfoError",
    "NoFunctionsError",
    "LocalError",
    "DecodeError",
    "OperandEncodingError",
    "UnresolvedReferenceError",
]
