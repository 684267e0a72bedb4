import logging
from pathlib import Path
from typing import List, Tuple

import pytest

from elf_fixtures import TEXT_ADDRESS, Symbol, write_program
from scan_fixtures import (
    DEALLOC,
    DROP_SLOW_NAMES,
    DROP_SLOW_SIZE,
    drop_slow_body,
    write_aliased_calls,
    write_drop_slow,
    write_stores,
)

from dupscan.errors import BinaryNotFoundError
from dupscan.keys import KeyType
from dupscan.pipeline import (
    DuplicateScanner,
    ScanOptions,
    ScanResult,
    _init_worker,
    _process_chunk,
    _worker_state,
    chunk_ranges,
)
from dupscan.report import rank_groups


def summarize(result: ScanResult) -> List[Tuple[int, int, Tuple[str, ...]]]:
    return [
        (group.byte_size, group.copy_count, tuple(member.name for member in group.members))
        for group in rank_groups(result.groups())
    ]


def test_drop_slow_copies_form_one_group(tmp_path: Path) -> None:
    result = DuplicateScanner(ScanOptions(jobs=1)).scan(write_drop_slow(tmp_path / "drop"))

    (group,) = result.groups()
    assert group.byte_size == DROP_SLOW_SIZE
    assert group.copy_count == 3
    assert group.excess_bytes == 206
    assert [member.name for member in group.members] == DROP_SLOW_NAMES
    assert result.total_excess_bytes() == 206
    assert result.executable_size == 2 * 112 + 112 + 3
    assert result.diagnostics.considered == 4
    assert result.diagnostics.unparsed == 0


def test_callers_of_aliased_instantiations_group_together(tmp_path: Path) -> None:
    # three drop_slow names folded onto one body, each called from its own copy
    bodies = [(f"caller_{number}", drop_slow_body(number, 3)) for number in range(3)]
    bodies.append((DROP_SLOW_NAMES[0], b"\x31\xc0\xc3"))
    folded = TEXT_ADDRESS + 3 * 112
    aliases = [Symbol(name, folded, 3) for name in DROP_SLOW_NAMES[1:]]
    path = write_program(tmp_path / "folded", bodies, extra_symbols=aliases, align=112)
    result = DuplicateScanner(ScanOptions(jobs=1)).scan(path)

    assert summarize(result) == [(DROP_SLOW_SIZE, 3, ("caller_0", "caller_1", "caller_2"))]
    assert result.total_excess_bytes() == 206
    assert result.diagnostics.symbols.aliases == 2


def test_more_codegen_units_mean_more_copies(tmp_path: Path) -> None:
    single = DuplicateScanner(ScanOptions(jobs=1)).scan(write_drop_slow(tmp_path / "one", copies=1))
    many = DuplicateScanner(ScanOptions(jobs=1)).scan(write_drop_slow(tmp_path / "many", copies=3))

    assert single.groups() == []
    assert single.total_excess_bytes() == 0
    assert many.total_excess_bytes() > single.total_excess_bytes()


def test_unparsable_functions_are_excluded(tmp_path: Path) -> None:
    bodies = [("good_a", b"\x90\xc3"), ("good_b", b"\x90\xc3"), ("broken", b"\x90\xe8\x00")]
    result = DuplicateScanner(ScanOptions(jobs=1)).scan(write_program(tmp_path / "broken", bodies))

    assert result.diagnostics.unparsed == 1
    assert result.diagnostics.grouped == 2
    assert summarize(result) == [(2, 2, ("good_a", "good_b"))]


def test_parallel_scan_matches_inline_scan(tmp_path: Path) -> None:
    path = write_drop_slow(tmp_path / "drop")
    inline = DuplicateScanner(ScanOptions(jobs=1, chunk_size=1)).scan(path)
    pooled = DuplicateScanner(ScanOptions(jobs=2, chunk_size=1)).scan(path)

    assert summarize(pooled) == summarize(inline)
    assert pooled.diagnostics.considered == inline.diagnostics.considered
    assert pooled.total_excess_bytes() == inline.total_excess_bytes()


def test_name_and_size_key_keeps_hashes_apart(tmp_path: Path) -> None:
    options = ScanOptions(key_type=KeyType.NAME_AND_SIZE, jobs=1)
    result = DuplicateScanner(options).scan(write_drop_slow(tmp_path / "drop"))

    assert result.groups() == []
    assert len(result.groups(include_singletons=True)) == 3
    # the plain C deallocator has no mangled name
    assert result.diagnostics.unkeyed == 1


def test_name_without_hash_key_merges_instances(tmp_path: Path) -> None:
    options = ScanOptions(key_type=KeyType.NAME_WITHOUT_HASH, jobs=1)
    result = DuplicateScanner(options).scan(write_drop_slow(tmp_path / "drop"))

    (group,) = result.groups()
    assert group.copy_count == 3
    assert group.key.name == "alloc::sync::Arc<T>::drop_slow"


def test_name_keys_do_not_look_at_code(tmp_path: Path) -> None:
    # same name and size but different bodies still group by name
    bodies = [
        (DROP_SLOW_NAMES[0], drop_slow_body(0, 2)),
        (DROP_SLOW_NAMES[0], b"\x90" * (DROP_SLOW_SIZE - 1) + b"\xc3"),
        (DEALLOC, b"\xc3"),
    ]
    path = write_program(tmp_path / "names", bodies, align=112)
    by_name = DuplicateScanner(ScanOptions(key_type=KeyType.NAME_AND_SIZE, jobs=1)).scan(path)
    by_code = DuplicateScanner(ScanOptions(jobs=1)).scan(path)

    assert [group.copy_count for group in by_name.groups()] == [2]
    assert by_code.groups() == []


def test_fatal_errors_propagate(tmp_path: Path) -> None:
    with pytest.raises(BinaryNotFoundError):
        DuplicateScanner(ScanOptions(jobs=1)).scan(tmp_path / "missing")


def test_invalid_options() -> None:
    with pytest.raises(ValueError):
        ScanOptions(jobs=0)
    with pytest.raises(ValueError):
        ScanOptions(chunk_size=0)


def test_chunk_ranges_cover_everything() -> None:
    assert chunk_ranges(5, 2) == [(0, 0, 2), (1, 2, 4), (2, 4, 5)]
    assert chunk_ranges(0, 4) == []


def test_object_file_stores_of_different_symbols_do_not_group(tmp_path: Path) -> None:
    result = DuplicateScanner(ScanOptions(jobs=1)).scan(write_stores(tmp_path / "stores.o"))
    assert summarize(result) == []


def test_object_file_calls_to_aliases_group_together(tmp_path: Path) -> None:
    result = DuplicateScanner(ScanOptions(jobs=1)).scan(write_aliased_calls(tmp_path / "aliases.o"))
    assert summarize(result) == [(6, 2, ("caller_a", "caller_b"))]
    assert result.diagnostics.symbols.aliases == 1


def test_workers_do_not_repeat_the_parent_log(tmp_path: Path, caplog) -> None:
    path = write_drop_slow(tmp_path / "drop")
    caplog.set_level(logging.INFO, logger="dupscan")
    try:
        _init_worker(str(path), KeyType.INSTRUCTIONS.value)
        result = _process_chunk((0, 0, 4))
    finally:
        _worker_state.clear()

    assert result.considered == 4
    assert result.index.members_added == 4
    assert not [record for record in caplog.records if record.levelno < logging.WARNING]
