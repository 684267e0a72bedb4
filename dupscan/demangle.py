"""Symbol name demangling for display and name based grouping."""

from __future__ import annotations

import contextlib
import io
import logging
import re
from functools import lru_cache
from typing import Optional

import itanium_demangler
import rust_demangler
from rust_demangler.rust import TypeNotFoundError
from rust_demangler.rust_legacy import UnableToLegacyDemangle
from rust_demangler.rust_v0 import UnableTov0Demangle

logger = logging.getLogger(__name__)

RUST_HASH_RE = re.compile(r"::h[0-9a-f]{16}$")
# legacy Rust names are Itanium nested names ending in a 17h<hash>E element
_RUST_LEGACY_RE = re.compile(r"^_ZN.*17h[0-9a-f]{16}E(\..*)?$")
# both demanglers raise a mix of exception types on input they cannot handle
_DEMANGLE_ERRORS = (
    ValueError,
    NotImplementedError,
    IndexError,
    KeyError,
    TypeError,
    AttributeError,
    RecursionError,
)
_RUST_ERRORS = _DEMANGLE_ERRORS + (TypeNotFoundError, UnableToLegacyDemangle, UnableTov0Demangle)


def strip_rust_hash(name: str) -> str:
    """Drop the ``::h<16 hex digits>`` suffix rustc appends to legacy names."""

    return RUST_HASH_RE.sub("", name)


def is_rust_symbol(name: str) -> bool:
    return name.startswith("_R") or _RUST_LEGACY_RE.match(name) is not None


class Demangler:
    """Render linkage names readable; anything that fails stays as it was."""

    def __init__(self, *, strip_hash: bool = False) -> None:
        self.strip_hash = strip_hash

    def __call__(self, name: str) -> str:
        return self.demangle(name)

    def demangle(self, name: str) -> str:
        demangled = self.try_demangle(name)
        return name if demangled is None else demangled

    def try_demangle(self, name: str) -> Optional[str]:
        if is_rust_symbol(name):
            demangled = _demangle_rust(name)
            if demangled is not None and self.strip_hash:
                demangled = strip_rust_hash(demangled)
            return demangled
        return _demangle_itanium(name)


@lru_cache(maxsize=65536)
def _demangle_rust(name: str) -> Optional[str]:
    try:
        # the v0 parser echoes partial output on malformed input
        with contextlib.redirect_stdout(io.StringIO()):
            demangled = rust_demangler.demangle(name)
    except _RUST_ERRORS as exc:
        logger.debug("cannot demangle %s: %s", name, exc)
        return None
    return demangled or None


@lru_cache(maxsize=65536)
def _demangle_itanium(name: str) -> Optional[str]:
    if not name.startswith("_Z"):
        return None
    try:
        tree = itanium_demangler.parse(name)
    except _DEMANGLE_ERRORS as exc:
        logger.debug("cannot demangle %s: %s", name, exc)
        return None
    if tree is None:
        return None
    return str(tree)
