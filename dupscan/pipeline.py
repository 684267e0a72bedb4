"""End to end duplicate scan: load, key every function, merge the groups."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .decoder import InstructionDecoder
from .errors import DecodeError
from .grouping import DuplicateGroup, DuplicateIndex
from .image import BinaryImage
from .keys import KeyBuilder, KeyType
from .normalizer import FunctionNormalizer, NormalizerMetrics
from .references import ReferenceClassifier
from .symbols import FunctionSymbol, SymbolStats, read_function_symbols

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 512


@dataclass(frozen=True)
class ScanOptions:
    """Knobs of a scan; ``jobs=None`` means one worker per CPU."""

    key_type: KeyType = KeyType.INSTRUCTIONS
    jobs: Optional[int] = None
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self) -> None:
        if self.jobs is not None and self.jobs < 1:
            raise ValueError("jobs must be at least 1")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")

    def worker_count(self) -> int:
        return self.jobs if self.jobs is not None else (os.cpu_count() or 1)


@dataclass
class ChunkResult:
    """Partial index of one contiguous run of functions, members as indices."""

    chunk: int
    index: DuplicateIndex
    considered: int = 0
    unparsed: int = 0
    unkeyed: int = 0
    metrics: NormalizerMetrics = field(default_factory=NormalizerMetrics)


@dataclass
class ScanDiagnostics:
    symbols: SymbolStats = field(default_factory=SymbolStats)
    considered: int = 0
    grouped: int = 0
    unparsed: int = 0
    unkeyed: int = 0
    skipped_relocations: int = 0
    metrics: NormalizerMetrics = field(default_factory=NormalizerMetrics)

    def observe(self, result: ChunkResult) -> None:
        self.considered += result.considered
        self.unparsed += result.unparsed
        self.unkeyed += result.unkeyed
        self.grouped += result.index.members_added
        self.metrics.observe(result.metrics)

    def describe(self) -> str:
        return (
            f"considered={self.considered} grouped={self.grouped} "
            f"unparsed={self.unparsed} unkeyed={self.unkeyed} "
            f"partial={self.metrics.partial_functions} "
            f"encoding_errors={self.metrics.encoding_errors} "
            f"unresolved={self.metrics.unresolved_references} "
            f"skipped_relocations={self.skipped_relocations}"
        )


@dataclass
class ScanResult:
    path: Path
    key_type: KeyType
    index: DuplicateIndex
    executable_size: int
    diagnostics: ScanDiagnostics

    def groups(self, *, include_singletons: bool = False) -> List[DuplicateGroup]:
        return self.index.groups(include_singletons=include_singletons)

    def total_excess_bytes(self) -> int:
        return self.index.total_excess_bytes()


class ChunkScanner:
    """Key a slice of the function list with a private decoder and normalizer."""

    def __init__(
        self, image: BinaryImage, functions: Sequence[FunctionSymbol], key_type: KeyType
    ) -> None:
        self.functions = functions
        self.normalizer: Optional[FunctionNormalizer] = None
        if key_type is KeyType.INSTRUCTIONS:
            self.normalizer = FunctionNormalizer(ReferenceClassifier(image), InstructionDecoder())
        self.keys = KeyBuilder(key_type, self.normalizer)

    def scan(self, chunk: int, start: int, stop: int) -> ChunkResult:
        index: DuplicateIndex = DuplicateIndex()
        result = ChunkResult(chunk=chunk, index=index)
        if self.normalizer is not None:
            self.normalizer.metrics = result.metrics
        for position in range(start, stop):
            function = self.functions[position]
            result.considered += 1
            try:
                key = self.keys.build(function)
            except DecodeError as exc:
                result.unparsed += 1
                logger.debug("unable to parse %s: %s", function.name, exc)
                continue
            if key is None:
                result.unkeyed += 1
                continue
            index.add(position, key.byte_size, key.key)
        return result


# ----------------------------------------------------------------------------
# worker process state
# ----------------------------------------------------------------------------

_worker_state: Dict[str, ChunkScanner] = {}


def _init_worker(path: str, key_type: str) -> None:
    # the parent has already reported loading and symbol discovery
    logging.getLogger(__package__).setLevel(logging.WARNING)
    image = BinaryImage.load(Path(path))
    functions, _ = read_function_symbols(image)
    _worker_state["scanner"] = ChunkScanner(image, functions, KeyType(key_type))


def _process_chunk(task: Tuple[int, int, int]) -> ChunkResult:
    return _worker_state["scanner"].scan(*task)


def chunk_ranges(total: int, chunk_size: int) -> List[Tuple[int, int, int]]:
    return [
        (number, start, min(start + chunk_size, total))
        for number, start in enumerate(range(0, total, chunk_size))
    ]


class DuplicateScanner:
    """Run a whole scan of one binary."""

    def __init__(self, options: Optional[ScanOptions] = None) -> None:
        self.options = options or ScanOptions()

    def scan(self, path: Path) -> ScanResult:
        image = BinaryImage.load(Path(path))
        return self.scan_image(image)

    def scan_image(self, image: BinaryImage) -> ScanResult:
        functions, stats = read_function_symbols(image)
        diagnostics = ScanDiagnostics(symbols=stats, skipped_relocations=image.skipped_relocations)
        tasks = chunk_ranges(len(functions), self.options.chunk_size)
        workers = min(self.options.worker_count(), len(tasks))

        logger.info(
            "scanning %d functions in %d chunks with %d worker(s), key=%s",
            len(functions),
            len(tasks),
            workers,
            self.options.key_type.value,
        )
        if workers > 1:
            results = self._run_pool(image.path, tasks, workers)
        else:
            scanner = ChunkScanner(image, functions, self.options.key_type)
            results = [scanner.scan(*task) for task in tasks]

        index: DuplicateIndex = DuplicateIndex()
        for result in sorted(results, key=lambda item: item.chunk):
            diagnostics.observe(result)
            index.merge(result.index, resolve=functions.__getitem__)

        logger.info("scan: %s", diagnostics.describe())
        if self.options.key_type is KeyType.INSTRUCTIONS:
            logger.info("normalizer: %s", diagnostics.metrics.describe())
        return ScanResult(
            path=image.path,
            key_type=self.options.key_type,
            index=index,
            executable_size=image.executable_size(),
            diagnostics=diagnostics,
        )

    def _run_pool(
        self, path: Path, tasks: List[Tuple[int, int, int]], workers: int
    ) -> List[ChunkResult]:
        with ProcessPoolExecutor(
            max_workers=workers,
            initializer=_init_worker,
            initargs=(str(path), self.options.key_type.value),
        ) as executor:
            return list(executor.map(_process_chunk, tasks))
