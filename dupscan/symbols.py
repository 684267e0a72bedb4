"""Function symbol discovery from symbol tables and DWARF."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Union

from elftools.common.exceptions import DWARFError, ELFError

from .errors import NoDebugInfoError, NoFunctionsError
from .image import BinaryImage

logger = logging.getLogger(__name__)

FUNCTION_SYMBOL_TYPES = {"STT_FUNC", "STT_GNU_IFUNC"}


@dataclass(frozen=True)
class FunctionSymbol:
    """A function with a known start address and a non-zero size."""

    name: str
    start_address: int
    byte_size: int
    section: str = ""
    raw_bytes: Union[bytes, memoryview] = field(default=b"", compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.byte_size <= 0:
            raise ValueError(f"function {self.name!r} must have a positive size")

    @property
    def end_address(self) -> int:
        return self.start_address + self.byte_size

    def contains(self, address: int) -> bool:
        return self.start_address <= address < self.end_address


@dataclass
class SymbolStats:
    """Tallies of symbols that were looked at but not turned into functions."""

    source: str = "none"
    candidates: int = 0
    accepted: int = 0
    zero_size: int = 0
    undefined: int = 0
    out_of_range: int = 0
    aliases: int = 0

    def skipped(self) -> int:
        return self.zero_size + self.undefined + self.out_of_range + self.aliases

    def describe(self) -> str:
        return (
            f"source={self.source} candidates={self.candidates} accepted={self.accepted} "
            f"zero_size={self.zero_size} undefined={self.undefined} "
            f"out_of_range={self.out_of_range} aliases={self.aliases}"
        )


@dataclass(frozen=True)
class _Candidate:
    name: str
    address: int
    size: int
    section_index: Optional[int]


def read_function_symbols(image: BinaryImage) -> Tuple[List[FunctionSymbol], SymbolStats]:
    """Return the functions of ``image`` ordered by address and name.

    The ELF symbol table is preferred; DWARF subprogram entries are used when
    the symbol table holds no functions.  Symbols sharing both address and
    size are aliases of one body and only the first name is kept.
    """

    stats = SymbolStats()
    candidates = list(_symbol_table_candidates(image, stats))
    if candidates:
        stats.source = "symtab"
    elif image.elf.get_section_by_name(".debug_info") is not None:
        candidates = list(_dwarf_candidates(image, stats))
        if candidates:
            stats.source = "dwarf"

    if not candidates and not image.has_symbol_table():
        raise NoDebugInfoError(
            f"{image.path} has no symbol table and no DWARF function entries; "
            "rebuild it without stripping symbols"
        )

    stats.candidates = len(candidates)
    functions: List[FunctionSymbol] = []
    seen: Dict[Tuple[int, int], str] = {}
    for candidate in sorted(candidates, key=lambda item: (item.address, item.name)):
        if candidate.size == 0:
            stats.zero_size += 1
            continue
        if (candidate.address, candidate.size) in seen:
            stats.aliases += 1
            continue
        data = image.read(candidate.address, candidate.size, candidate.section_index)
        if data is None:
            stats.out_of_range += 1
            continue
        section = image.section_for(candidate.address)
        seen[(candidate.address, candidate.size)] = candidate.name
        functions.append(
            FunctionSymbol(
                name=candidate.name,
                start_address=candidate.address,
                byte_size=candidate.size,
                section=section.name if section is not None else "",
                raw_bytes=data,
            )
        )

    stats.accepted = len(functions)
    logger.info("symbols: %s", stats.describe())
    if not functions:
        raise NoFunctionsError(
            "no functions were checked for duplication, symbols may have zero sizes"
        )
    return functions, stats


def _symbol_table_candidates(image: BinaryImage, stats: SymbolStats) -> Iterator[_Candidate]:
    for symbol in image.iter_symbols(".symtab"):
        if symbol.kind not in FUNCTION_SYMBOL_TYPES or not symbol.name:
            continue
        if symbol.section_index is None:
            stats.undefined += 1
            continue
        yield _Candidate(symbol.name, symbol.address, symbol.size, symbol.section_index)


def _dwarf_candidates(image: BinaryImage, stats: SymbolStats) -> Iterator[_Candidate]:
    try:
        dwarf = image.elf.get_dwarf_info()
        for unit in dwarf.iter_CUs():
            for die in unit.iter_DIEs():
                if die.tag != "DW_TAG_subprogram":
                    continue
                attributes = die.attributes
                if "DW_AT_low_pc" not in attributes or "DW_AT_high_pc" not in attributes:
                    stats.undefined += 1
                    continue
                low = attributes["DW_AT_low_pc"].value
                high = attributes["DW_AT_high_pc"]
                # DWARF 4 stores high_pc as a length unless it uses an address form
                size = high.value - low if high.form == "DW_FORM_addr" else high.value
                yield _Candidate(_die_name(die, low), low, size, None)
    except (DWARFError, ELFError) as exc:
        logger.warning("failed to read DWARF from %s: %s", image.path, exc)


def _die_name(die, low: int) -> str:
    for _ in range(2):
        attributes = die.attributes
        for key in ("DW_AT_linkage_name", "DW_AT_MIPS_linkage_name", "DW_AT_name"):
            if key in attributes:
                value = attributes[key].value
                return value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)
        for reference in ("DW_AT_specification", "DW_AT_abstract_origin"):
            if reference in attributes:
                die = die.get_DIE_from_attribute(reference)
                break
        else:
            break
    return f"sub_{low:x}"
