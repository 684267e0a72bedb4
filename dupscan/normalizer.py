"""Canonical, placement independent representations of functions."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .decoder import InstructionDecoder
from .errors import DecodeError, UnresolvedReferenceError
from .instruction import AddressOperand, DecodedInstruction
from .references import LocalReference, Reference, ReferenceClassifier
from .symbols import FunctionSymbol

logger = logging.getLogger(__name__)

DIGEST_SIZE = 16


@dataclass(frozen=True)
class OperandToken:
    """Placeholder standing in for an address field of ``width`` bytes."""

    reference: Reference
    width: int

    def serialize(self) -> bytes:
        reference = self.reference
        if isinstance(reference, LocalReference):
            body = b"L" + reference.relative_offset.to_bytes(8, "little", signed=True)
        else:
            name = reference.name.encode("utf-8")
            tag = b"S" if reference.kind == "section" else b"E"
            body = (
                tag
                + len(name).to_bytes(4, "little")
                + name
                + reference.offset.to_bytes(8, "little", signed=True)
            )
        return b"T" + self.width.to_bytes(1, "little") + body

    def describe(self) -> str:
        return f"<{self.reference.describe()}/{self.width}>"


Part = Union[bytes, OperandToken]


@dataclass(frozen=True)
class CanonicalSequence:
    """Instruction bytes with address fields replaced by :class:`OperandToken`s.

    Adjacent byte runs are always merged and empty runs dropped, so two
    sequences describing the same content are equal part for part.
    """

    parts: Tuple[Part, ...]

    @classmethod
    def from_parts(cls, parts: Iterable[Union[Part, bytearray, memoryview]]) -> "CanonicalSequence":
        merged: List[Part] = []
        pending = bytearray()
        for part in parts:
            if isinstance(part, OperandToken):
                if pending:
                    merged.append(bytes(pending))
                    pending.clear()
                merged.append(part)
            else:
                pending.extend(part)
        if pending:
            merged.append(bytes(pending))
        return cls(tuple(merged))

    @property
    def byte_length(self) -> int:
        return sum(part.width if isinstance(part, OperandToken) else len(part) for part in self.parts)

    def tokens(self) -> Tuple[OperandToken, ...]:
        return tuple(part for part in self.parts if isinstance(part, OperandToken))

    def serialize(self) -> bytes:
        chunks: List[bytes] = []
        for part in self.parts:
            if isinstance(part, OperandToken):
                chunks.append(part.serialize())
            else:
                chunks.append(b"B" + len(part).to_bytes(4, "little") + part)
        return b"".join(chunks)

    def digest(self) -> bytes:
        return hashlib.blake2b(self.serialize(), digest_size=DIGEST_SIZE).digest()

    def describe(self) -> str:
        return " ".join(
            part.describe() if isinstance(part, OperandToken) else part.hex()
            for part in self.parts
        )


@dataclass(frozen=True)
class NormalizedFunction:
    byte_size: int
    canonical_sequence: CanonicalSequence
    raw_operands: int = 0

    @property
    def partially_normalized(self) -> bool:
        return self.raw_operands > 0


@dataclass
class NormalizerMetrics:
    """Aggregate counts recorded during normalisation."""

    functions: int = 0
    instructions: int = 0
    local_references: int = 0
    external_references: int = 0
    encoding_errors: int = 0
    unresolved_references: int = 0
    partial_functions: int = 0

    def observe(self, other: "NormalizerMetrics") -> None:
        """Accumulate values from ``other`` into this instance."""

        self.functions += other.functions
        self.instructions += other.instructions
        self.local_references += other.local_references
        self.external_references += other.external_references
        self.encoding_errors += other.encoding_errors
        self.unresolved_references += other.unresolved_references
        self.partial_functions += other.partial_functions

    def describe(self) -> str:
        parts = [
            f"functions={self.functions}",
            f"instructions={self.instructions}",
            f"local={self.local_references}",
            f"external={self.external_references}",
            f"encoding_errors={self.encoding_errors}",
            f"unresolved={self.unresolved_references}",
            f"partial_functions={self.partial_functions}",
        ]
        return " ".join(parts)


class FunctionNormalizer:
    """Build :class:`NormalizedFunction` values from decoded instructions."""

    def __init__(
        self,
        classifier: ReferenceClassifier,
        decoder: Optional[InstructionDecoder] = None,
    ) -> None:
        self.classifier = classifier
        self.decoder = decoder or InstructionDecoder()
        self.metrics = NormalizerMetrics()

    def normalize(
        self,
        function: FunctionSymbol,
        instructions: Optional[Sequence[DecodedInstruction]] = None,
    ) -> NormalizedFunction:
        """Normalise ``function``.

        ``instructions`` default to decoding the function's own bytes.  Raises
        :class:`DecodeError` when the instructions do not tile the function.
        """

        if instructions is None:
            instructions = self.decoder.decode(function.raw_bytes, function.start_address)
        self._check_coverage(function, instructions)

        parts: List[Part] = []
        raw_operands = 0
        for instruction in instructions:
            fields, raw = self._fields(instruction, function)
            raw_operands += raw
            cursor = 0
            for offset, size, reference in fields:
                parts.append(instruction.raw_bytes[cursor:offset])
                parts.append(OperandToken(reference, size))
                cursor = offset + size
            parts.append(instruction.raw_bytes[cursor:])

        self.metrics.functions += 1
        self.metrics.instructions += len(instructions)
        if raw_operands:
            self.metrics.partial_functions += 1
        return NormalizedFunction(
            byte_size=function.byte_size,
            canonical_sequence=CanonicalSequence.from_parts(parts),
            raw_operands=raw_operands,
        )

    def _fields(
        self, instruction: DecodedInstruction, function: FunctionSymbol
    ) -> Tuple[List[Tuple[int, int, Reference]], int]:
        """Return ``(offset, size, reference)`` per field to replace, and the raw count.

        Operands come first; a relocation that no classified operand covers
        still gets its own field.
        """

        raw = 0
        if instruction.operand_error is not None:
            self.metrics.encoding_errors += 1
            raw += 1
            logger.debug("%s: leaving operand raw: %s", function.name, instruction.operand_error)

        covered: List[AddressOperand] = []
        fields: List[Tuple[int, int, Reference]] = []
        for operand in instruction.operands:
            try:
                reference = self.classifier.classify(instruction, function, operand)
            except UnresolvedReferenceError as exc:
                self.metrics.unresolved_references += 1
                raw += 1
                logger.debug("%s: leaving operand raw: %s", function.name, exc)
                continue
            if reference is None:
                continue
            self._count(reference)
            covered.append(operand)
            fields.append((operand.field_offset, operand.field_size, reference))

        for relocation in self.classifier.uncovered_relocations(instruction, covered):
            reference = self.classifier.relocation_reference(relocation)
            self._count(reference)
            fields.append((relocation.address - instruction.address, relocation.size, reference))
        fields.sort(key=lambda field: field[0])
        return fields, raw

    def _count(self, reference: Reference) -> None:
        if isinstance(reference, LocalReference):
            self.metrics.local_references += 1
        else:
            self.metrics.external_references += 1

    @staticmethod
    def _check_coverage(
        function: FunctionSymbol, instructions: Sequence[DecodedInstruction]
    ) -> None:
        expected = function.start_address
        for instruction in instructions:
            if instruction.address != expected:
                raise DecodeError(
                    f"{function.name}: instruction at 0x{instruction.address:X}, expected 0x{expected:X}"
                )
            expected += instruction.length
        if expected != function.end_address:
            raise DecodeError(
                f"{function.name}: instructions end at 0x{expected:X}, "
                f"function ends at 0x{function.end_address:X}"
            )
