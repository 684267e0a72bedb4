"""Public package exports for the duplicate machine code scanner."""

from .decoder import InstructionDecoder
from .demangle import Demangler
from .errors import DupscanError, FatalError, LocalError
from .grouping import DuplicateGroup, DuplicateIndex
from .image import BinaryImage
from .keys import KeyBuilder, KeyType
from .normalizer import CanonicalSequence, FunctionNormalizer, NormalizedFunction
from .pipeline import DuplicateScanner, ScanOptions, ScanResult
from .references import ExternalReference, LocalReference, ReferenceClassifier
from .report import ReportRenderer, rank_groups
from .symbols import FunctionSymbol, read_function_symbols

__all__ = [
    "BinaryImage",
    "FunctionSymbol",
    "read_function_symbols",
    "InstructionDecoder",
    "ReferenceClassifier",
    "LocalReference",
    "ExternalReference",
    "FunctionNormalizer",
    "NormalizedFunction",
    "CanonicalSequence",
    "DuplicateIndex",
    "DuplicateGroup",
    "KeyType",
    "KeyBuilder",
    "Demangler",
    "DuplicateScanner",
    "ScanOptions",
    "ScanResult",
    "ReportRenderer",
    "rank_groups",
    "DupscanError",
    "FatalError",
    "LocalError",
]
