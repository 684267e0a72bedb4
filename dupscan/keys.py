"""Strategies for deciding which functions count as copies of each other."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .demangle import Demangler
from .normalizer import FunctionNormalizer
from .symbols import FunctionSymbol


class KeyType(Enum):
    """Group by normalised instructions, or by name as a cheaper approximation."""

    INSTRUCTIONS = "instructions"
    NAME_AND_SIZE = "name-and-size"
    # may merge monomorphisations that are genuinely different
    NAME_WITHOUT_HASH = "name-without-hash"

    @classmethod
    def choices(cls) -> Tuple[str, ...]:
        return tuple(member.value for member in cls)


@dataclass(frozen=True)
class NameKey:
    name: str

    def serialize(self) -> bytes:
        return self.name.encode("utf-8")


@dataclass(frozen=True)
class FunctionKey:
    """A group key together with the size it groups under."""

    byte_size: int
    key: object


class KeyBuilder:
    """Compute the grouping key of one function for the selected strategy."""

    def __init__(self, key_type: KeyType, normalizer: Optional[FunctionNormalizer] = None) -> None:
        if key_type is KeyType.INSTRUCTIONS and normalizer is None:
            raise ValueError("instruction keys need a FunctionNormalizer")
        self.key_type = key_type
        self.normalizer = normalizer
        self.demangler = Demangler(strip_hash=key_type is KeyType.NAME_WITHOUT_HASH)

    def build(self, function: FunctionSymbol) -> Optional[FunctionKey]:
        """Return the key for ``function``, or ``None`` when it cannot have one.

        Name keys need a mangled name.  Instruction keys may raise
        :class:`DecodeError`.
        """

        if self.key_type is KeyType.INSTRUCTIONS:
            normalized = self.normalizer.normalize(function)
            return FunctionKey(normalized.byte_size, normalized.canonical_sequence)
        name = self.demangler.try_demangle(function.name)
        if name is None:
            return None
        return FunctionKey(function.byte_size, NameKey(name))
