"""ELF container reader built on :mod:`elftools`."""

from __future__ import annotations

import bisect
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.constants import SH_FLAGS
from elftools.elf.elffile import ELFFile
from elftools.elf.relocation import RelocationSection
from elftools.elf.sections import SymbolTableSection

from .errors import BinaryNotFoundError, ContainerFormatError, UnsupportedArchitectureError

logger = logging.getLogger(__name__)

SUPPORTED_MACHINE = "EM_X86_64"
# Object files leave every section at address zero; they are laid out from
# this base so that symbol addresses never overlap.
RELOCATABLE_BASE = 0x1000
ADDRESSABLE_SYMBOL_TYPES = {"STT_FUNC", "STT_OBJECT", "STT_NOTYPE", "STT_GNU_IFUNC"}
R_X86_64_NONE = 0
# bytes patched by the x86-64 relocation types that are not 4 bytes wide
RELOCATION_WIDTHS = {
    1: 8,  # R_X86_64_64
    12: 2,  # R_X86_64_16
    13: 2,  # R_X86_64_PC16
    14: 1,  # R_X86_64_8
    15: 1,  # R_X86_64_PC8
    16: 8,  # R_X86_64_DTPMOD64
    17: 8,  # R_X86_64_DTPOFF64
    18: 8,  # R_X86_64_TPOFF64
    24: 8,  # R_X86_64_PC64
    25: 8,  # R_X86_64_GOTOFF64
    27: 8,  # R_X86_64_GOT64
    28: 8,  # R_X86_64_GOTPCREL64
    29: 8,  # R_X86_64_GOTPC64
    30: 8,  # R_X86_64_GOTPLT64
    31: 8,  # R_X86_64_PLTOFF64
    33: 8,  # R_X86_64_SIZE64
}


@dataclass(frozen=True)
class SectionInfo:
    """An allocated section together with its (possibly synthetic) address."""

    index: int
    name: str
    start: int
    size: int
    executable: bool
    has_data: bool

    @property
    def end(self) -> int:
        return self.start + self.size

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end


@dataclass(frozen=True)
class Relocation:
    """A relocation entry keyed by the address of the field it patches.

    ``target`` is the image address of the referenced symbol when the image
    defines it, so callers can pick a canonical name among its aliases.
    """

    address: int
    name: str
    addend: int
    against_section: bool = False
    size: int = 4
    target: Optional[int] = None

    @property
    def end(self) -> int:
        return self.address + self.size


@dataclass(frozen=True)
class RawSymbol:
    """Symbol table entry translated into image addresses."""

    name: str
    address: int
    size: int
    kind: str
    section_index: Optional[int]


class BinaryImage:
    """A loaded ELF file with address based lookups.

    The file is read once; section contents are handed out as
    :class:`memoryview` slices so callers borrow rather than copy them.
    """

    def __init__(
        self,
        path: Path,
        elf: ELFFile,
        sections: List[SectionInfo],
        *,
        relocatable: bool,
        fixed_address: bool,
    ) -> None:
        self.path = path
        self.elf = elf
        self.relocatable = relocatable
        self.fixed_address = fixed_address
        self._sections = sorted(sections, key=lambda section: (section.start, section.index))
        self._starts = [section.start for section in self._sections]
        self._by_index: Dict[int, SectionInfo] = {section.index: section for section in sections}
        self._data: Dict[int, memoryview] = {}
        self._relocations: Dict[int, Relocation] = {}
        self._names: Dict[int, Tuple[str, ...]] = {}
        self.skipped_relocations = 0
        self._index_relocations()
        self._index_symbol_names()

    @classmethod
    def load(cls, path: Path) -> "BinaryImage":
        path = Path(path)
        if not path.is_file():
            raise BinaryNotFoundError(f"input binary not found: {path}")
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise BinaryNotFoundError(f"cannot read {path}: {exc.strerror or exc}") from exc

        try:
            elf = ELFFile(io.BytesIO(data))
        except (ELFError, ValueError, EOFError) as exc:
            raise ContainerFormatError(f"{path} is not a valid ELF file: {exc}") from exc

        machine = elf["e_machine"]
        if machine != SUPPORTED_MACHINE or elf.elfclass != 64:
            raise UnsupportedArchitectureError(
                f"{path} targets {machine} ({elf.elfclass}-bit); only 64-bit x86-64 is supported"
            )

        elf_type = elf["e_type"]
        relocatable = elf_type == "ET_REL"
        try:
            sections = cls._layout_sections(elf, relocatable)
        except (ELFError, ValueError) as exc:
            raise ContainerFormatError(f"{path} has a malformed section table: {exc}") from exc

        logger.info(
            "loaded %s: type=%s sections=%d", path, elf_type, len(sections)
        )
        return cls(
            path,
            elf,
            sections,
            relocatable=relocatable,
            fixed_address=elf_type == "ET_EXEC",
        )

    @staticmethod
    def _layout_sections(elf: ELFFile, relocatable: bool) -> List[SectionInfo]:
        sections: List[SectionInfo] = []
        cursor = RELOCATABLE_BASE
        for index, section in enumerate(elf.iter_sections()):
            flags = section["sh_flags"]
            if not flags & SH_FLAGS.SHF_ALLOC or section["sh_size"] == 0:
                continue
            # .tbss overlaps the sections that follow it
            if flags & SH_FLAGS.SHF_TLS and section["sh_type"] == "SHT_NOBITS":
                continue
            if relocatable:
                align = max(1, section["sh_addralign"])
                cursor = (cursor + align - 1) // align * align
                start = cursor
                cursor += section["sh_size"]
            else:
                start = section["sh_addr"]
            sections.append(
                SectionInfo(
                    index=index,
                    name=section.name,
                    start=start,
                    size=section["sh_size"],
                    executable=bool(flags & SH_FLAGS.SHF_EXECINSTR),
                    has_data=section["sh_type"] != "SHT_NOBITS",
                )
            )
        return sections

    # ------------------------------------------------------------------
    # sections and bytes
    # ------------------------------------------------------------------
    def sections(self) -> Iterator[SectionInfo]:
        return iter(self._sections)

    def section_for(self, address: int) -> Optional[SectionInfo]:
        position = bisect.bisect_right(self._starts, address) - 1
        while position >= 0:
            section = self._sections[position]
            if section.contains(address):
                return section
            position -= 1
        return None

    def executable_size(self) -> int:
        """Total size of the executable sections."""

        return sum(section.size for section in self._sections if section.executable)

    def read(self, address: int, size: int, section_index: Optional[int] = None) -> Optional[memoryview]:
        """Return a view of ``size`` bytes at ``address`` or ``None``."""

        if section_index is not None:
            section = self._by_index.get(section_index)
        else:
            section = self.section_for(address)
        if section is None or not section.has_data:
            return None
        offset = address - section.start
        if offset < 0 or offset + size > section.size:
            return None
        return self._section_data(section)[offset : offset + size]

    def _section_data(self, section: SectionInfo) -> memoryview:
        view = self._data.get(section.index)
        if view is None:
            view = memoryview(self.elf.get_section(section.index).data())
            self._data[section.index] = view
        return view

    # ------------------------------------------------------------------
    # symbols and relocations
    # ------------------------------------------------------------------
    def has_symbol_table(self) -> bool:
        return self.elf.get_section_by_name(".symtab") is not None

    def iter_symbols(self, table_name: str = ".symtab") -> Iterator[RawSymbol]:
        table = self.elf.get_section_by_name(table_name)
        if not isinstance(table, SymbolTableSection):
            return
        for symbol in table.iter_symbols():
            shndx = symbol["st_shndx"]
            section_index = shndx if isinstance(shndx, int) else None
            yield RawSymbol(
                name=symbol.name,
                address=self._symbol_address(symbol["st_value"], section_index),
                size=symbol["st_size"],
                kind=symbol["st_info"]["type"],
                section_index=section_index,
            )

    def _symbol_address(self, value: int, section_index: Optional[int]) -> int:
        if not self.relocatable or section_index is None:
            return value
        section = self._by_index.get(section_index)
        return value + section.start if section is not None else value

    def relocation_at(self, address: int) -> Optional[Relocation]:
        return self._relocations.get(address)

    def names_at(self, address: int) -> Tuple[str, ...]:
        return self._names.get(address, ())

    def _index_relocations(self) -> None:
        for section in self.elf.iter_sections():
            if not isinstance(section, RelocationSection):
                continue
            target_index = section["sh_info"]
            if self.relocatable:
                target = self._by_index.get(target_index)
                if target is None:
                    continue
                base = target.start
            else:
                base = 0
            symtab_index = section["sh_link"]
            symtab = self.elf.get_section(symtab_index) if symtab_index else None
            if not isinstance(symtab, SymbolTableSection):
                symtab = None
            for entry in section.iter_relocations():
                relocation = self._build_relocation(section, entry, base, symtab)
                if relocation is None:
                    self.skipped_relocations += 1
                    continue
                self._relocations[relocation.address] = relocation

    def _build_relocation(self, section, entry, base: int, symtab) -> Optional[Relocation]:
        symbol_index = entry["r_info_sym"]
        kind = entry["r_info_type"]
        if symtab is None or symbol_index == 0 or kind == R_X86_64_NONE:
            return None
        symbol = symtab.get_symbol(symbol_index)
        addend = entry["r_addend"] if section.is_RELA() else 0
        address = base + entry["r_offset"]
        size = RELOCATION_WIDTHS.get(kind, 4)
        shndx = symbol["st_shndx"]
        if symbol["st_info"]["type"] == "STT_SECTION":
            if not isinstance(shndx, int):
                return None
            return Relocation(
                address=address,
                name=self.elf.get_section(shndx).name,
                addend=addend,
                against_section=True,
                size=size,
            )
        if not symbol.name:
            return None
        target = None
        if isinstance(shndx, int) and shndx != 0:
            target = self._symbol_address(symbol["st_value"], shndx)
        return Relocation(address=address, name=symbol.name, addend=addend, size=size, target=target)

    def _index_symbol_names(self) -> None:
        collected: Dict[int, set] = {}
        for table in (".symtab", ".dynsym"):
            for symbol in self.iter_symbols(table):
                if not symbol.name or symbol.section_index is None:
                    continue
                if symbol.kind not in ADDRESSABLE_SYMBOL_TYPES:
                    continue
                collected.setdefault(symbol.address, set()).add(symbol.name)
        self._names = {address: tuple(sorted(names)) for address, names in collected.items()}
