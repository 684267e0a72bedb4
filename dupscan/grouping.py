"""Partition functions into groups of exactly equal keys."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Hashable, Iterator, List, Optional, Protocol, TypeVar

M = TypeVar("M")


class GroupKey(Protocol):
    """Identity of a group; equality is exact, ``serialize`` feeds the bucket digest."""

    def serialize(self) -> bytes: ...


BucketDigest = Callable[[int, GroupKey], Hashable]


def default_digest(byte_size: int, key: GroupKey) -> bytes:
    payload = byte_size.to_bytes(8, "little") + key.serialize()
    return hashlib.blake2b(payload, digest_size=16).digest()


@dataclass
class DuplicateGroup(Generic[M]):
    """Functions sharing one key, in the order they were discovered."""

    byte_size: int
    key: GroupKey
    members: List[M] = field(default_factory=list)

    @property
    def copy_count(self) -> int:
        return len(self.members)

    @property
    def excess_bytes(self) -> int:
        return max(0, self.copy_count - 1) * self.byte_size

    @property
    def spanned_bytes(self) -> int:
        return self.copy_count * self.byte_size

    def name_counts(self, render: Optional[Callable[[str], str]] = None) -> Dict[str, int]:
        """Count members per (optionally rendered) name, first-seen order."""

        counts: Dict[str, int] = {}
        for member in self.members:
            name = member.name  # type: ignore[attr-defined]
            if render is not None:
                name = render(name)
            counts[name] = counts.get(name, 0) + 1
        return counts

    def smallest_name(self) -> str:
        return min(member.name for member in self.members)  # type: ignore[attr-defined]


class DuplicateIndex(Generic[M]):
    """Map keys to :class:`DuplicateGroup`s.

    Keys are bucketed by a digest first and then compared in full; a digest
    collision never merges two different keys.
    """

    def __init__(self, digest: BucketDigest = default_digest) -> None:
        self._digest = digest
        self._buckets: Dict[Hashable, List[DuplicateGroup[M]]] = {}
        self._groups: List[DuplicateGroup[M]] = []
        self.members_added = 0

    def add(self, member: M, byte_size: int, key: GroupKey) -> DuplicateGroup[M]:
        bucket = self._buckets.setdefault(self._digest(byte_size, key), [])
        for group in bucket:
            if group.byte_size == byte_size and group.key == key:
                break
        else:
            group = DuplicateGroup(byte_size=byte_size, key=key)
            bucket.append(group)
            self._groups.append(group)
        group.members.append(member)
        self.members_added += 1
        return group

    def merge(
        self,
        other: "DuplicateIndex",
        resolve: Optional[Callable[[object], M]] = None,
    ) -> None:
        """Fold ``other`` into this index, keeping its discovery order."""

        for group in other:
            for member in group.members:
                self.add(resolve(member) if resolve else member, group.byte_size, group.key)

    def __iter__(self) -> Iterator[DuplicateGroup[M]]:
        return iter(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def groups(self, *, include_singletons: bool = False) -> List[DuplicateGroup[M]]:
        if include_singletons:
            return list(self._groups)
        return [group for group in self._groups if group.copy_count > 1]

    def total_excess_bytes(self) -> int:
        return sum(group.excess_bytes for group in self._groups)

    def duplicated_bytes(self) -> int:
        """Bytes spanned by every member of a group with more than one copy."""

        return sum(group.spanned_bytes for group in self._groups if group.copy_count > 1)
