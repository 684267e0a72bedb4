from dupscan.demangle import Demangler, is_rust_symbol, strip_rust_hash


RUST_NAME = "_ZN5alloc4sync12Arc$LT$T$GT$9drop_slow17h0123456789abcdefE"
DROP_IN_PLACE = "_ZN4core3ptr46drop_in_place$LT$alloc..vec..Vec$LT$u8$GT$$GT$17h0123456789abcdefE"
DEBUG_IMPL = "_ZN38_$LT$T$u20$as$u20$core..fmt..Debug$GT$3fmt17h0123456789abcdefE"
V0_NAME = "_RNvNtCs1234_7mycrate3foo3bar"


def test_plain_c_names_are_left_alone() -> None:
    demangler = Demangler()
    assert demangler.try_demangle("main") is None
    assert demangler.demangle("main") == "main"


def test_cpp_names_are_demangled() -> None:
    demangled = Demangler().try_demangle("_ZN3foo3barEv")
    assert demangled is not None
    assert demangled.startswith("foo::bar")


def test_only_hashed_or_v0_names_count_as_rust() -> None:
    assert is_rust_symbol(RUST_NAME)
    assert is_rust_symbol(V0_NAME)
    assert not is_rust_symbol("_ZN3foo3barEv")
    assert not is_rust_symbol("main")


def test_rust_legacy_escapes_are_undone() -> None:
    demangler = Demangler(strip_hash=True)
    assert demangler.demangle(DROP_IN_PLACE) == "core::ptr::drop_in_place<alloc::vec::Vec<u8>>"
    assert demangler.demangle(DEBUG_IMPL) == "<T as core::fmt::Debug>::fmt"


def test_rust_v0_names_are_demangled() -> None:
    demangled = Demangler().try_demangle(V0_NAME)
    assert demangled == "mycrate::foo::bar"
    assert Demangler(strip_hash=True).try_demangle(V0_NAME) == demangled


def test_rust_hash_is_kept_unless_stripping() -> None:
    assert Demangler().demangle(RUST_NAME) == "alloc::sync::Arc<T>::drop_slow::h0123456789abcdef"
    assert Demangler(strip_hash=True).demangle(RUST_NAME) == "alloc::sync::Arc<T>::drop_slow"


def test_strip_rust_hash_only_touches_the_suffix() -> None:
    assert strip_rust_hash("a::b::h0123456789abcdef") == "a::b"
    assert strip_rust_hash("a::h0123456789abcdef::b") == "a::h0123456789abcdef::b"
    assert strip_rust_hash("a::hXYZ") == "a::hXYZ"


def test_garbage_mangled_names_fall_back_to_raw(capsys) -> None:
    demangler = Demangler()
    assert demangler.demangle("_Z") == "_Z"
    assert demangler.demangle("_ZN3foo") == "_ZN3foo"
    assert demangler.demangle("_RNv") == "_RNv"
    assert capsys.readouterr().out == ""
