#!/usr/bin/env python3
"""
dialects.py

Write aggregated categories as client-specific rule files.

Layout:
    {output}/{bucket}/{category}.{ext}     bucket in domainset | non_ip | ip

Every file starts with a '#' header (banner, UTC timestamp, rule count and
the attribution block for the category's provenance). Categories without a
provenance are written without a header.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

import yaml

from ruleset_builder import utils
from ruleset_builder.categories import (
    Category,
    Provenance,
    SourceTree,
    aggregate_sources,
)
from ruleset_builder.classify import SegmentSet
from ruleset_builder.config import DialectConfig, DialectStyle

logger = logging.getLogger(__name__)

STATS = utils.AGGREGATE_STATS_KEYS

HEADER_RULE = "#" * 48
BANNER = "Generated by ruleset-builder"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

ATTRIBUTIONS: dict[Provenance, tuple[str, ...]] = {
    Provenance.BUILTIN: (
        "Source: built-in rules maintained alongside this build",
        "License: redistributable with the generated rule set",
    ),
    Provenance.SUKKA: (
        "Source: https://github.com/SukkaW/Surge (ruleset.skk.moe)",
        "Copyright: Sukka (https://skk.moe)",
        "License: AGPL-3.0",
    ),
    Provenance.BLACKMATRIX7: (
        "Source: https://github.com/blackmatrix7/ios_rule_script",
        "Copyright: blackmatrix7 and contributors",
        "License: GPL-2.0",
    ),
}


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def render_header(
    provenance: Provenance | None, count: int, generated_at: datetime
) -> list[str]:
    """Header lines for a file of `count` rules; empty without a provenance."""
    if provenance is None:
        return []
    lines = [
        HEADER_RULE,
        f"# {BANNER}",
        f"# Updated: {format_timestamp(generated_at)}",
        f"# Rules: {count}",
        "#",
    ]
    lines.extend(f"# {text}" for text in ATTRIBUTIONS[provenance])
    lines.append(HEADER_RULE)
    return lines


def render(
    rules: Sequence[str],
    style: DialectStyle,
    provenance: Provenance | None,
    generated_at: datetime,
) -> str:
    header = render_header(provenance, len(rules), generated_at)
    head = "".join(f"{line}\n" for line in header)
    if style is DialectStyle.PAYLOAD:
        body = yaml.safe_dump(
            {"payload": list(rules)},
            allow_unicode=True,
            sort_keys=False,
            default_flow_style=False,
        )
        return head + body
    return head + "".join(f"{rule}\n" for rule in rules)


def write_segment_file(
    directory: Path,
    filename: str,
    rules: Sequence[str],
    style: DialectStyle,
    provenance: Provenance | None,
    generated_at: datetime,
) -> Path:
    target = directory / filename
    utils.atomic_write_text(target, render(rules, style, provenance, generated_at))
    return target


def write_category(
    output_dir: Path,
    category: Category,
    segments: SegmentSet,
    dialect: DialectConfig,
    generated_at: datetime,
) -> int:
    """Write one file per non-empty bucket; return how many were written."""
    filename = f"{category.name}.{dialect.extension}"
    written = 0
    for bucket in utils.BUCKET_DIRS:
        rules = segments.bucket(bucket)
        if not rules:
            continue
        write_segment_file(
            output_dir / bucket,
            filename,
            rules,
            dialect.style,
            category.provenance,
            generated_at,
        )
        written += 1
    return written


def transform(
    trees: Sequence[SourceTree],
    dialect: DialectConfig,
    output_dir: str | Path,
    generated_at: datetime | None = None,
    checkpoint: Callable[[], None] | None = None,
) -> dict[str, int]:
    """Aggregate `trees` and write them as `dialect` under output_dir."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    moment = generated_at or datetime.now(timezone.utc)
    stats = utils.new_stats(utils.AGGREGATE_SUMMARY_ORDER)

    aggregator = aggregate_sources(trees, dialect.mode, checkpoint, stats)
    for category, segments in aggregator.items():
        if checkpoint is not None:
            checkpoint()
        stats[STATS.FILES_WRITTEN] += write_category(
            out, category, segments, dialect, moment
        )
    return stats


def _print_summary(stats: dict[str, int], label: str = "dialects") -> None:
    print(utils.format_summary(label, stats, utils.AGGREGATE_SUMMARY_ORDER))
