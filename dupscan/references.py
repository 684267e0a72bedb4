"""Classification of address operands as local or external references."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple, Union

from .errors import UnresolvedReferenceError
from .image import Relocation, SectionInfo
from .instruction import AddressOperand, DecodedInstruction
from .symbols import FunctionSymbol


@dataclass(frozen=True)
class LocalReference:
    """A target inside the owning function, relative to the referencing instruction."""

    relative_offset: int

    def describe(self) -> str:
        return f"local{self.relative_offset:+#x}"


@dataclass(frozen=True)
class ExternalReference:
    """A target outside the owning function.

    ``kind`` is ``"symbol"`` when ``name`` is a symbol (``offset`` being the
    relocation addend) and ``"section"`` when ``name`` is a section and
    ``offset`` the position inside it.
    """

    kind: str
    name: str
    offset: int = 0

    def describe(self) -> str:
        if self.offset:
            return f"{self.kind}:{self.name}{self.offset:+#x}"
        return f"{self.kind}:{self.name}"


Reference = Union[LocalReference, ExternalReference]


class AddressResolver(Protocol):
    """Read-only lookups the classifier needs; :class:`BinaryImage` provides them."""

    fixed_address: bool

    def relocation_at(self, address: int) -> Optional[Relocation]: ...

    def names_at(self, address: int) -> Tuple[str, ...]: ...

    def section_for(self, address: int) -> Optional[SectionInfo]: ...


class ReferenceClassifier:
    """Turn an instruction's address operands into placement independent references.

    The raw numeric target never survives classification: it becomes an
    offset relative to the instruction, a symbol name, or a section offset.
    """

    def __init__(self, resolver: AddressResolver) -> None:
        self.resolver = resolver

    def classify(
        self,
        instruction: DecodedInstruction,
        function: FunctionSymbol,
        operand: Optional[AddressOperand] = None,
    ) -> Optional[Reference]:
        """Classify ``operand``, the instruction's first operand by default."""

        operand = operand or instruction.operand
        if operand is None:
            return None

        relocation = self.resolver.relocation_at(instruction.field_address(operand))
        if relocation is not None:
            return self.relocation_reference(relocation)

        if not operand.kind.pc_relative and not self.resolver.fixed_address:
            # without a relocation a position independent image cannot
            # carry absolute addresses in code
            return None

        target = operand.target
        if target is None:
            raise UnresolvedReferenceError(
                f"{instruction.mnemonic} at 0x{instruction.address:X} has no computable target"
            )
        if function.contains(target):
            return LocalReference(target - instruction.address)

        names = self.resolver.names_at(target)
        if names:
            # aliases share one body, so the smallest name stands for all of them
            return ExternalReference("symbol", names[0])

        section = self.resolver.section_for(target)
        if section is not None:
            return ExternalReference("section", section.name, target - section.start)

        if not operand.kind.pc_relative:
            return None
        raise UnresolvedReferenceError(
            f"{instruction.mnemonic} at 0x{instruction.address:X} targets unmapped 0x{target:X}"
        )

    def relocation_reference(self, relocation: Relocation) -> ExternalReference:
        if relocation.against_section:
            return ExternalReference("section", relocation.name, relocation.addend)
        name = relocation.name
        if relocation.target is not None:
            names = self.resolver.names_at(relocation.target)
            if names:
                name = names[0]
        return ExternalReference("symbol", name, relocation.addend)

    def uncovered_relocations(
        self, instruction: DecodedInstruction, covered: Sequence[AddressOperand]
    ) -> List[Relocation]:
        """Relocations patching ``instruction`` outside the fields in ``covered``.

        Only relocations lying wholly inside the instruction are returned.
        """

        found: List[Relocation] = []
        for offset in range(1, instruction.length):
            relocation = self.resolver.relocation_at(instruction.address + offset)
            if relocation is None or relocation.end > instruction.end_address:
                continue
            if any(field.overlaps(offset, relocation.size) for field in covered):
                continue
            if found and found[-1].end > relocation.address:
                continue
            found.append(relocation)
        return found
