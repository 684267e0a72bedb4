"""Ranking and rendering of duplicate groups."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, TextIO, Tuple

from .demangle import Demangler
from .grouping import DuplicateGroup
from .pipeline import ScanResult


def rank_groups(groups: Iterable[DuplicateGroup]) -> List[DuplicateGroup]:
    """Most wasteful first; ties by size, then by the smallest member name."""

    return sorted(
        groups,
        key=lambda group: (-group.excess_bytes, -group.byte_size, group.smallest_name()),
    )


def excess_percent(excess_bytes: int, executable_size: int) -> int:
    if executable_size <= 0:
        return 0
    return excess_bytes * 100 // executable_size


def name_stems(group: DuplicateGroup, demangler: Optional[Demangler] = None) -> Tuple[str, ...]:
    """Distinct member names with the Rust hash suffix removed."""

    demangler = demangler or Demangler(strip_hash=True)
    return tuple(sorted({demangler.demangle(member.name) for member in group.members}))


@dataclass(frozen=True)
class ReportSummary:
    excess_bytes: int
    duplicated_bytes: int
    executable_size: int
    group_count: int

    @property
    def percent(self) -> int:
        return excess_percent(self.excess_bytes, self.executable_size)

    def describe(self) -> str:
        return (
            f"{self.excess_bytes} bytes in excess copies of functions. "
            f"{self.percent}% of executable bytes in file"
        )


class ReportRenderer:
    """Render a :class:`ScanResult` as text or JSON."""

    def __init__(
        self,
        *,
        demangle: bool = False,
        annotate: bool = False,
        include_singletons: bool = False,
    ) -> None:
        self.annotate = annotate
        self.include_singletons = include_singletons
        self._render_name: Optional[Callable[[str], str]] = Demangler() if demangle else None
        self._stems = Demangler(strip_hash=True)

    def ranked(self, result: ScanResult) -> List[DuplicateGroup]:
        return rank_groups(result.groups(include_singletons=self.include_singletons))

    def summary(self, result: ScanResult) -> ReportSummary:
        return ReportSummary(
            excess_bytes=result.index.total_excess_bytes(),
            duplicated_bytes=result.index.duplicated_bytes(),
            executable_size=result.executable_size,
            group_count=len(result.groups()),
        )

    def render(self, result: ScanResult) -> str:
        lines: List[str] = []
        for group in self.ranked(result):
            lines.extend(self._render_group(group))
        lines.append(self.summary(result).describe())
        return "\n".join(lines) + "\n"

    def render_json(self, result: ScanResult) -> str:
        summary = self.summary(result)
        payload = {
            "binary": str(result.path),
            "key": result.key_type.value,
            "groups": [self._group_payload(group) for group in self.ranked(result)],
            "summary": {
                "excess_bytes": summary.excess_bytes,
                "duplicated_bytes": summary.duplicated_bytes,
                "executable_bytes": summary.executable_size,
                "percent": summary.percent,
                "groups": summary.group_count,
            },
            "diagnostics": {
                "considered": result.diagnostics.considered,
                "grouped": result.diagnostics.grouped,
                "unparsed": result.diagnostics.unparsed,
                "unkeyed": result.diagnostics.unkeyed,
                "partial": result.diagnostics.metrics.partial_functions,
            },
        }
        return json.dumps(payload, indent=2)

    def write(self, result: ScanResult, stream: TextIO, *, fmt: str = "text") -> None:
        if fmt == "json":
            stream.write(self.render_json(result) + "\n")
        else:
            stream.write(self.render(result))

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _names(self, group: DuplicateGroup) -> Sequence[Tuple[str, int]]:
        counts = group.name_counts(self._render_name)
        return sorted(counts.items(), key=lambda item: (-item[1], item[0]))

    def _render_group(self, group: DuplicateGroup) -> Iterable[str]:
        yield f"Function size: {group.byte_size}"
        yield f"Copies: {group.copy_count}"
        yield f"Excess bytes: {group.excess_bytes}"
        if self.annotate:
            yield f"Name stems: {len(name_stems(group, self._stems))}"
        yield "Names:"
        for name, count in self._names(group):
            yield f"  {count}x `{name}`"
        yield ""

    def _group_payload(self, group: DuplicateGroup) -> dict:
        payload = {
            "function_size": group.byte_size,
            "copies": group.copy_count,
            "excess_bytes": group.excess_bytes,
            "names": [{"name": name, "count": count} for name, count in self._names(group)],
        }
        if self.annotate:
            payload["name_stems"] = list(name_stems(group, self._stems))
        return payload
