from pathlib import Path

import pytest

from elf_fixtures import (
    EM_AARCH64,
    ET_REL,
    STT_NOTYPE,
    TEXT_ADDRESS,
    ElfSpec,
    Rela,
    Symbol,
    data_section,
    text_section,
    write_elf,
    write_program,
)

from dupscan.errors import BinaryNotFoundError, ContainerFormatError, UnsupportedArchitectureError
from dupscan.image import RELOCATABLE_BASE, BinaryImage


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(BinaryNotFoundError):
        BinaryImage.load(tmp_path / "absent")


def test_not_an_elf_file(tmp_path: Path) -> None:
    path = tmp_path / "notes.txt"
    path.write_text("definitely not a binary", "utf-8")
    with pytest.raises(ContainerFormatError):
        BinaryImage.load(path)


def test_other_architectures_are_rejected(tmp_path: Path) -> None:
    spec = ElfSpec(sections=[text_section(b"\xc3")], machine=EM_AARCH64)
    path = write_elf(tmp_path / "arm", spec)
    with pytest.raises(UnsupportedArchitectureError):
        BinaryImage.load(path)


def test_sections_and_reads(tmp_path: Path) -> None:
    spec = ElfSpec(sections=[text_section(bytes(range(32))), data_section(b"\xaa" * 8)])
    image = BinaryImage.load(write_elf(tmp_path / "prog", spec))

    assert image.fixed_address
    assert not image.relocatable
    assert image.executable_size() == 32
    assert [section.name for section in image.sections()] == [".text", ".data"]
    assert image.section_for(TEXT_ADDRESS + 31).name == ".text"
    assert image.section_for(TEXT_ADDRESS + 32) is None
    assert bytes(image.read(TEXT_ADDRESS + 4, 4)) == bytes([4, 5, 6, 7])
    assert image.read(TEXT_ADDRESS + 30, 4) is None


def test_names_at_lists_aliases_sorted(tmp_path: Path) -> None:
    extra = [Symbol("beta_alias", TEXT_ADDRESS, 1), Symbol("alpha_alias", TEXT_ADDRESS, 1)]
    path = write_program(tmp_path / "aliases", [("main", b"\xc3")], extra_symbols=extra)
    image = BinaryImage.load(path)
    assert image.names_at(TEXT_ADDRESS) == ("alpha_alias", "beta_alias", "main")
    assert image.names_at(TEXT_ADDRESS + 1) == ()


def test_object_files_get_a_synthetic_layout(tmp_path: Path) -> None:
    code = b"\x90" * 3 + b"\xe8\x00\x00\x00\x00\xc3"
    spec = ElfSpec(
        sections=[text_section(code, 0), data_section(b"\x00" * 4, 0)],
        symbols=[Symbol("f", 0, len(code)), Symbol("callee", 0, 0, section=None, kind=STT_NOTYPE)],
        relocations=[Rela(4, "callee"), Rela(0, ".data", addend=0)],
        elf_type=ET_REL,
    )
    image = BinaryImage.load(write_elf(tmp_path / "unit.o", spec))

    assert image.relocatable
    assert not image.fixed_address
    text = image.section_for(RELOCATABLE_BASE)
    assert text.name == ".text"
    data = next(section for section in image.sections() if section.name == ".data")
    assert data.start >= text.end

    relocation = image.relocation_at(RELOCATABLE_BASE + 4)
    assert (relocation.name, relocation.addend, relocation.against_section) == ("callee", -4, False)
    assert (relocation.size, relocation.target) == (4, None)
    section_relocation = image.relocation_at(RELOCATABLE_BASE)
    assert (section_relocation.name, section_relocation.against_section) == (".data", True)
    assert image.relocation_at(RELOCATABLE_BASE + 5) is None

    (symbol,) = [raw for raw in image.iter_symbols() if raw.name == "f"]
    assert symbol.address == RELOCATABLE_BASE
