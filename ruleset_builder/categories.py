#!/usr/bin/env python3
"""
categories.py

Resolve source files to output categories and aggregate their segments.

A source tree is laid out as <root>/<group>/<file>. Each file maps to a
category named '{provenance}_{base}' (lower-cased), where base is the group
directory name, or the file stem when the group is itself a segment directory
(ip / non_ip / domainset) or the file sits directly under the root.

Aggregation is run-scoped: build one SegmentAggregator per dialect pass and
drop it when the pass is written out.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Sequence

from ruleset_builder import utils
from ruleset_builder.classify import (
    ClassifyMode,
    ErrorScope,
    MalformedRuleError,
    SegmentSet,
    classify_lines,
)

logger = logging.getLogger(__name__)

STATS = utils.AGGREGATE_STATS_KEYS

# Documentation, client config and module descriptors, never rule content
SKIPPED_EXTENSIONS = frozenset({".md", ".yaml", ".yml", ".sgmodule"})
RESOLVE_MARKER = "resolve"
CATEGORY_SEPARATOR = "_"


class Provenance(str, Enum):
    """Where a category's rules came from; the value doubles as name prefix."""

    BUILTIN = "builtin"
    SUKKA = "sukka"
    BLACKMATRIX7 = "blackmatrix7"

    @property
    def prefix(self) -> str:
        return f"{self.value}{CATEGORY_SEPARATOR}"

    @classmethod
    def from_category_name(cls, name: str) -> Provenance | None:
        """Recover provenance from a serialized category or file name."""
        lowered = name.lower()
        for member in cls:
            if lowered.startswith(member.prefix):
                return member
        return None


@dataclass(frozen=True)
class Category:
    name: str
    provenance: Provenance | None = None

    @classmethod
    def build(cls, base: str, provenance: Provenance | None) -> Category:
        name = f"{provenance.prefix}{base}" if provenance else base
        return cls(name.lower(), provenance)


@dataclass(frozen=True)
class SourceTree:
    root: Path
    provenance: Provenance | None = None


@dataclass
class FileOutcome:
    """Result of classifying one file: segments, or the reason it was dropped."""

    path: Path
    lines_in: int = 0
    segments: SegmentSet | None = None
    error: MalformedRuleError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ----------------------------------------
# Category resolution
# ----------------------------------------
def skip_reason(tree_root: Path, path: Path) -> str | None:
    """Return why `path` is not rule content, or None to process it."""
    if path.suffix.lower() in SKIPPED_EXTENSIONS:
        return f"extension {path.suffix}"
    relative = path.relative_to(tree_root).as_posix()
    if RESOLVE_MARKER in relative.lower():
        return "resolve helper"
    return None


def resolve_category(tree: SourceTree, path: Path) -> Category:
    """Derive the category for a file inside `tree`."""
    relative = path.relative_to(tree.root)
    if len(relative.parts) == 1:
        return Category.build(path.stem, tree.provenance)
    group = relative.parts[0]
    if group.lower() in utils.RESERVED_SEGMENT_NAMES:
        return Category.build(path.stem, tree.provenance)
    return Category.build(group, tree.provenance)


def iter_source_files(root: Path) -> Iterator[Path]:
    """Yield group files first, then files directly under root; hidden entries excluded."""
    for group in utils.sorted_subdirectories(root):
        if group.name.startswith("."):
            continue
        for path in utils.sorted_files(group):
            if not path.name.startswith("."):
                yield path
    for path in utils.sorted_files(root):
        if not path.name.startswith("."):
            yield path


# ----------------------------------------
# File classification
# ----------------------------------------
def classify_file(
    path: Path,
    mode: ClassifyMode,
    checkpoint: Callable[[], None] | None = None,
) -> FileOutcome:
    """
    Classify a whole file.

    File-scoped malformed data comes back as FileOutcome.error; run-scoped
    malformed data propagates as MalformedRuleError.
    """
    outcome = FileOutcome(path)

    def _counted() -> Iterator[str]:
        for line in utils.iter_rule_lines(path):
            outcome.lines_in += 1
            yield line

    try:
        outcome.segments = classify_lines(_counted(), str(path), mode, checkpoint)
    except MalformedRuleError as exc:
        if exc.scope is not ErrorScope.FILE:
            raise
        outcome.error = exc
    return outcome


# ----------------------------------------
# Aggregation
# ----------------------------------------
@dataclass
class SegmentAggregator:
    """Category -> SegmentSet, keyed case-insensitively, insertion ordered."""

    _entries: dict[str, tuple[Category, SegmentSet]] = field(default_factory=dict)

    def append(self, category: Category, segments: SegmentSet) -> None:
        key = category.name.lower()
        entry = self._entries.get(key)
        if entry is None:
            entry = (category, SegmentSet())
            self._entries[key] = entry
        entry[1].extend(segments)

    def get(self, name: str) -> SegmentSet | None:
        entry = self._entries.get(name.lower())
        return entry[1] if entry else None

    def items(self) -> Iterator[tuple[Category, SegmentSet]]:
        yield from self._entries.values()

    def __len__(self) -> int:
        return len(self._entries)


def aggregate_sources(
    trees: Sequence[SourceTree],
    mode: ClassifyMode = ClassifyMode.STRICT,
    checkpoint: Callable[[], None] | None = None,
    stats: dict[str, int] | None = None,
) -> SegmentAggregator:
    """Classify every rule file of every tree into one aggregator."""
    if stats is None:
        stats = utils.new_stats(utils.AGGREGATE_SUMMARY_ORDER)
    aggregator = SegmentAggregator()

    for tree in trees:
        for path in iter_source_files(tree.root):
            if checkpoint is not None:
                checkpoint()
            reason = skip_reason(tree.root, path)
            if reason:
                stats[STATS.FILES_SKIPPED] += 1
                logger.debug("Skipping %s (%s)", path, reason)
                continue

            category = resolve_category(tree, path)
            outcome = classify_file(path, mode, checkpoint)
            stats[STATS.FILES] += 1
            stats[STATS.LINES_IN] += outcome.lines_in
            if not outcome.ok:
                stats[STATS.FILES_MALFORMED] += 1
                logger.warning("Dropped %s: %s", path, outcome.error)
                continue

            segments = outcome.segments
            aggregator.append(category, segments)
            for bucket, count in segments.counts().items():
                stats[bucket] += count
            logger.info(
                "Processed %s into %s (ip=%d, non_ip=%d, domainset=%d)",
                path,
                category.name,
                len(segments.ip),
                len(segments.non_ip),
                len(segments.domainset),
            )

    stats[STATS.CATEGORIES] = len(aggregator)
    return aggregator
