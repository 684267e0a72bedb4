"""Decoded instruction records handed from the decoder to the normaliser."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, Tuple


class OperandKind(Enum):
    """How an address-carrying operand is encoded."""

    RELATIVE = auto()
    RIP_RELATIVE = auto()
    ABSOLUTE = auto()
    IMMEDIATE = auto()

    @property
    def pc_relative(self) -> bool:
        return self in (OperandKind.RELATIVE, OperandKind.RIP_RELATIVE)


@dataclass(frozen=True)
class AddressOperand:
    """Location of an address field inside an instruction's bytes."""

    kind: OperandKind
    field_offset: int
    field_size: int
    target: Optional[int]

    @property
    def field_end(self) -> int:
        return self.field_offset + self.field_size

    def overlaps(self, offset: int, size: int) -> bool:
        return offset < self.field_end and self.field_offset < offset + size


@dataclass(frozen=True)
class DecodedInstruction:
    """One instruction; ``operands`` are ordered by field offset and never overlap."""

    address: int
    offset_in_function: int
    raw_bytes: bytes
    mnemonic: str = ""
    operands: Tuple[AddressOperand, ...] = ()
    operand_error: Optional[str] = None

    @property
    def length(self) -> int:
        return len(self.raw_bytes)

    @property
    def end_address(self) -> int:
        return self.address + self.length

    @property
    def operand(self) -> Optional[AddressOperand]:
        return self.operands[0] if self.operands else None

    def field_address(self, operand: Optional[AddressOperand] = None) -> Optional[int]:
        """Address of the first byte of ``operand``'s field, the first operand by default."""

        operand = operand or self.operand
        if operand is None:
            return None
        return self.address + operand.field_offset
