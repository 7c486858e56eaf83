#!/usr/bin/env python3
"""
merge_and_classify.py

Re-read one generated dialect tree and merge it into the unified rule set.

Grouping is by output filename, not by category: every file named
'sukka_apple.txt' under domainset/, non_ip/ and ip/ feeds the same unified
entry, which is then re-bucketed line by line:

  DOMAIN,x          -> domainset  x
  DOMAIN-SUFFIX,x   -> domainset  +.x
  IP-CIDR(6),x,...  -> ip         x
  anything else     -> domainset/ default: domain
                       non_ip/, ip/  default: IP literal/CIDR -> ip, else non_ip

Usage:
    python -m ruleset_builder.merge_and_classify <dialect_dir> <unified_out> [--preserve-wildcard]
"""
from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Mapping

from ruleset_builder import utils
from ruleset_builder.categories import Provenance
from ruleset_builder.classify import DefaultBucket, SegmentSet, classify_for_merge
from ruleset_builder.config import DialectStyle
from ruleset_builder.dialects import write_segment_file


STATS = utils.MERGE_STATS_KEYS

DEFAULT_BUCKETS = {
    utils.BUCKET_DOMAINSET: DefaultBucket.DOMAIN,
    utils.BUCKET_NON_IP: DefaultBucket.MIXED,
    utils.BUCKET_IP: DefaultBucket.MIXED,
}


@dataclass
class MergeState:
    """
    Run-scoped merge state.

    Attributes:
        files:
            Insertion-ordered mapping of output filename -> merged segments.
    """

    files: dict[str, SegmentSet] = field(default_factory=dict)

    def segments_for(self, filename: str) -> SegmentSet:
        segments = self.files.get(filename)
        if segments is None:
            segments = self.files[filename] = SegmentSet()
        return segments


def iter_dialect_files(input_dir: Path) -> Iterator[tuple[str, Path]]:
    """Yield (bucket, path) for each generated file, domainset first."""
    for bucket in utils.BUCKET_DIRS:
        directory = input_dir / bucket
        if not directory.is_dir():
            continue
        for path in utils.sorted_files(directory):
            if not path.name.startswith("."):
                yield bucket, path


def merge_file(
    path: Path,
    default: DefaultBucket,
    segments: SegmentSet,
    preserve_wildcard: bool,
    stats: dict[str, int],
    checkpoint: Callable[[], None] | None = None,
) -> None:
    for line in utils.iter_rule_lines(path):
        if checkpoint is not None:
            checkpoint()
        stats[STATS.LINES_IN] += 1
        item = classify_for_merge(line, default, preserve_wildcard)
        if item is None:
            continue
        segments.add(item)
        stats[item.classification.bucket] += 1


def transform(
    input_dir: str | Path,
    output_dir: str | Path,
    preserve_wildcard: bool = False,
    generated_at: datetime | None = None,
    checkpoint: Callable[[], None] | None = None,
    default_buckets: Mapping[str, DefaultBucket] | None = None,
) -> dict[str, int]:
    """
    Merge the dialect tree at input_dir into output_dir/{bucket}/{filename}.

    default_buckets overrides, per source directory, where unrecognized lines
    go (see DEFAULT_BUCKETS).
    """
    in_path = Path(input_dir)
    if not in_path.is_dir():
        raise FileNotFoundError(f"Input directory not found: {input_dir}")
    out_path = Path(output_dir)
    out_path.mkdir(parents=True, exist_ok=True)
    moment = generated_at or datetime.now(timezone.utc)

    defaults = {**DEFAULT_BUCKETS, **(default_buckets or {})}
    stats = utils.new_stats(utils.MERGE_SUMMARY_ORDER)
    state = MergeState()

    for bucket, path in iter_dialect_files(in_path):
        if checkpoint is not None:
            checkpoint()
        stats[STATS.FILES_IN] += 1
        merge_file(
            path,
            defaults[bucket],
            state.segments_for(path.name),
            preserve_wildcard,
            stats,
            checkpoint,
        )

    for filename, segments in state.files.items():
        provenance = Provenance.from_category_name(filename)
        for bucket in utils.BUCKET_DIRS:
            rules = segments.bucket(bucket)
            if not rules:
                continue
            write_segment_file(
                out_path / bucket,
                filename,
                rules,
                DialectStyle.LIST,
                provenance,
                moment,
            )
            stats[STATS.FILES_WRITTEN] += 1

    return stats


def _print_summary(stats: dict[str, int]) -> None:
    print(utils.format_summary("merge_and_classify", stats, utils.MERGE_SUMMARY_ORDER))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Build the unified rule set")
    parser.add_argument("input_dir", help="Generated dialect directory (e.g. out/Clash)")
    parser.add_argument("output_dir", help="Unified output directory")
    parser.add_argument(
        "--preserve-wildcard",
        action="store_true",
        help="Keep '+.' on domain entries that already carried it",
    )
    args = parser.parse_args()
    try:
        stats = transform(args.input_dir, args.output_dir, args.preserve_wildcard)
        _print_summary(stats)
    except Exception as exc:
        print(f"ERROR in merge_and_classify: {exc}", file=sys.stderr)
        sys.exit(1)
