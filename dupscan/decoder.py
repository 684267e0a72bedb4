"""x86-64 instruction decoding on top of :mod:`capstone`."""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple, Union

import capstone
from capstone import x86

from .errors import DecodeError, OperandEncodingError
from .instruction import AddressOperand, DecodedInstruction, OperandKind

_BRANCH_GROUPS = (capstone.CS_GRP_JUMP, capstone.CS_GRP_CALL)
# fs/gs based absolute operands address thread-local storage, not the image
_TLS_SEGMENTS = {x86.X86_REG_FS, x86.X86_REG_GS}
# field widths tried, widest first, per operand kind
_RELATIVE_WIDTHS = (4, 2, 1)
_DISPLACEMENT_WIDTHS = (4,)
_ADDRESS_WIDTHS = (8, 4)
_MIN_IMMEDIATE_WIDTH = 4


class InstructionDecoder:
    """Decode a function's bytes and locate address operand fields.

    Each decoder owns its own capstone handle, so workers build one apiece.
    """

    def __init__(self) -> None:
        self._cs = capstone.Cs(capstone.CS_ARCH_X86, capstone.CS_MODE_64)
        self._cs.detail = True

    def decode(self, code: Union[bytes, memoryview], address: int) -> List[DecodedInstruction]:
        """Decode ``code`` loaded at ``address``.

        The instructions must cover every byte; a decoder stop short of the end
        is reported as :class:`DecodeError`.
        """

        data = bytes(code)
        instructions: List[DecodedInstruction] = []
        consumed = 0
        for insn in self._cs.disasm(data, address):
            instructions.append(self._convert(insn, address))
            consumed += insn.size
        if consumed != len(data):
            raise DecodeError(
                f"decoding stopped at offset 0x{consumed:X} of {len(data)} bytes "
                f"(address 0x{address + consumed:X})"
            )
        return instructions

    def _convert(self, insn, base: int) -> DecodedInstruction:
        raw = bytes(insn.bytes)
        operands, errors = self._address_operands(insn, raw)
        return DecodedInstruction(
            address=insn.address,
            offset_in_function=insn.address - base,
            raw_bytes=raw,
            mnemonic=f"{insn.mnemonic} {insn.op_str}".strip(),
            operands=operands,
            operand_error="; ".join(errors) or None,
        )

    def _address_operands(self, insn, raw: bytes) -> Tuple[Tuple[AddressOperand, ...], List[str]]:
        """Locate every address field of ``insn``.

        Branch targets and memory operands are placed before immediates, and a
        field overlapping one already placed is dropped.
        """

        encoding = getattr(insn, "encoding", None)
        is_branch = any(insn.group(group) for group in _BRANCH_GROUPS)
        ordered = sorted(insn.operands, key=lambda op: op.type == x86.X86_OP_IMM and not is_branch)
        found: List[AddressOperand] = []
        errors: List[str] = []
        for op in ordered:
            try:
                operand = self._address_operand(insn, op, raw, encoding, is_branch)
            except OperandEncodingError as exc:
                errors.append(str(exc))
                continue
            if operand is None:
                continue
            if any(operand.overlaps(other.field_offset, other.field_size) for other in found):
                continue
            found.append(operand)
        found.sort(key=lambda operand: operand.field_offset)
        return tuple(found), errors

    def _address_operand(self, insn, op, raw: bytes, encoding, is_branch: bool) -> Optional[AddressOperand]:
        if op.type == x86.X86_OP_IMM and is_branch:
            hint = _hint(encoding, "imm_offset", "imm_size")
            displacement = op.imm - (insn.address + insn.size)
            offset, size = _locate_field(raw, displacement, hint, _RELATIVE_WIDTHS, trailing=True)
            return AddressOperand(OperandKind.RELATIVE, offset, size, op.imm)
        if op.type == x86.X86_OP_MEM:
            mem = op.mem
            if mem.base == x86.X86_REG_RIP:
                hint = _hint(encoding, "disp_offset", "disp_size")
                offset, size = _locate_field(raw, mem.disp, hint, _DISPLACEMENT_WIDTHS)
                target = insn.address + insn.size + mem.disp
                return AddressOperand(OperandKind.RIP_RELATIVE, offset, size, target)
            if (
                mem.base == x86.X86_REG_INVALID
                and mem.index == x86.X86_REG_INVALID
                and mem.segment not in _TLS_SEGMENTS
            ):
                hint = _hint(encoding, "disp_offset", "disp_size")
                offset, size = _locate_field(raw, mem.disp, hint, _ADDRESS_WIDTHS)
                target = mem.disp & 0xFFFFFFFFFFFFFFFF
                return AddressOperand(OperandKind.ABSOLUTE, offset, size, target)
            return None
        if op.type == x86.X86_OP_IMM and op.size >= _MIN_IMMEDIATE_WIDTH:
            hint = _hint(encoding, "imm_offset", "imm_size")
            try:
                offset, size = _locate_field(raw, op.imm, hint, _ADDRESS_WIDTHS)
            except OperandEncodingError:
                # sign-extended or implicit immediates are plain constants
                return None
            target = op.imm & 0xFFFFFFFFFFFFFFFF
            return AddressOperand(OperandKind.IMMEDIATE, offset, size, target)
        return None


def _hint(encoding, offset_attr: str, size_attr: str) -> Optional[Tuple[int, int]]:
    if encoding is None:
        return None
    offset = getattr(encoding, offset_attr, 0)
    size = getattr(encoding, size_attr, 0)
    if not offset or not size:
        return None
    return offset, size


def _signed64(value: int) -> int:
    value &= (1 << 64) - 1
    return value - (1 << 64) if value >= 1 << 63 else value


def _field_matches(raw: bytes, offset: int, size: int, value: int) -> bool:
    if offset <= 0 or offset + size > len(raw):
        return False
    field = raw[offset : offset + size]
    if int.from_bytes(field, "little", signed=True) == _signed64(value):
        return True
    return value >= 0 and int.from_bytes(field, "little") == value


def _locate_field(
    raw: bytes,
    value: int,
    hint: Optional[Tuple[int, int]],
    widths: Sequence[int],
    *,
    trailing: bool = False,
) -> Tuple[int, int]:
    """Find where ``value`` is encoded inside ``raw``.

    The decoder's own offsets are trusted only after the bytes found there
    decode back to ``value``; otherwise the field is searched for.  A search
    that finds no match, or more than one, is an encoding we do not handle.
    """

    if hint is not None and hint[1] in widths and _field_matches(raw, hint[0], hint[1], value):
        return hint

    if trailing:
        for size in widths:
            offset = len(raw) - size
            if _field_matches(raw, offset, size, value):
                return offset, size
        raise OperandEncodingError(f"no {value:+#x} displacement at the end of {raw.hex()}")

    for size in widths:
        matches = [
            (offset, size)
            for offset in range(1, len(raw) - size + 1)
            if _field_matches(raw, offset, size, value)
        ]
        if len(matches) == 1:
            return matches[0]
        if matches:
            raise OperandEncodingError(
                f"operand {value:#x} is ambiguous in {raw.hex()} ({len(matches)} candidates)"
            )
    raise OperandEncodingError(f"cannot locate operand {value:#x} in {raw.hex()}")
