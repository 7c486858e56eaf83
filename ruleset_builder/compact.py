#!/usr/bin/env python3
"""
compact.py

Compile unified text segments into binary rule sets with an external compiler.

For every file in {unified}/domainset and {unified}/ip:
  1. write a scratch copy without comments/blank lines (ip: bare addresses
     become /32 or /128, the compiler only accepts CIDR),
  2. run `<compiler...> <domain|ipcidr> text <scratch> <target>`,
  3. remove the scratch copy whatever happened.

Existing artifacts in a directory are deleted before it is converted, so a
category that disappeared upstream leaves no orphaned binary behind. A
failing file is logged and skipped; it never fails the run.

Usage:
    python -m ruleset_builder.compact <unified_dir> [--compiler "mihomo convert-ruleset"]
"""
from __future__ import annotations

import argparse
import logging
import os
import shlex
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Callable

from ruleset_builder import utils
from ruleset_builder.config import CompilerConfig

logger = logging.getLogger(__name__)

STATS = utils.COMPACT_STATS_KEYS

# non_ip has no binary form
BEHAVIORS = {
    utils.BUCKET_DOMAINSET: "domain",
    utils.BUCKET_IP: "ipcidr",
}
SOURCE_FORMAT = "text"
SCRATCH_PREFIX = ".tmp_compact_"


class CompileError(Exception):
    """The external compiler failed for one file."""


def find_compiler(command: list[str]) -> str | None:
    """Return the resolved executable for command[0], or None."""
    if not command:
        return None
    return shutil.which(command[0])


def build_command(
    command: list[str], behavior: str, source: Path, target: Path
) -> list[str]:
    return [*command, behavior, SOURCE_FORMAT, str(source), str(target)]


def remove_stale_artifacts(directory: Path, suffix: str) -> int:
    """Delete every compiled artifact in directory; return the count."""
    removed = 0
    for path in utils.sorted_files(directory):
        if path.suffix == suffix:
            path.unlink(missing_ok=True)
            removed += 1
    return removed


def scratch_lines(source: Path, bucket: str) -> list[str]:
    """Rules from source with comments stripped, CIDR-normalized for ip."""
    rules: list[str] = []
    for line in utils.iter_rule_lines(source):
        text = line.strip()
        if utils.is_ignorable_line(text):
            continue
        if bucket == utils.BUCKET_IP:
            text = utils.to_cidr(text)
        rules.append(text)
    return rules


def write_scratch(source: Path, rules: list[str]) -> Path:
    fd, name = tempfile.mkstemp(prefix=SCRATCH_PREFIX, suffix=".txt", dir=source.parent)
    with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
        fh.writelines(f"{rule}\n" for rule in rules)
    return Path(name)


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)


def compile_file(
    source: Path,
    target: Path,
    bucket: str,
    compiler: CompilerConfig,
    checkpoint: Callable[[], None] | None = None,
) -> bool:
    """
    Compile one text segment into target.

    Returns False when there was nothing to compile. Raises CompileError on a
    non-zero exit, a timeout, a missing executable or an empty artifact.
    """
    behavior = BEHAVIORS[bucket]
    rules = scratch_lines(source, bucket)
    if not rules:
        return False

    scratch = write_scratch(source, rules)
    try:
        if checkpoint is not None:
            checkpoint()
        cmd = build_command(compiler.command, behavior, scratch, target)
        logger.debug("Running %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=compiler.timeout
            )
        except subprocess.TimeoutExpired as exc:
            _discard(target)
            raise CompileError(
                f"{source.name}: compiler timed out after {compiler.timeout:g}s"
            ) from exc
        except OSError as exc:
            raise CompileError(f"{source.name}: cannot run compiler ({exc})") from exc

        if result.returncode != 0:
            _discard(target)
            detail = (result.stderr or result.stdout or "").strip()
            raise CompileError(
                f"{source.name}: compiler exited {result.returncode}: {detail}"
            )
        if not target.exists() or target.stat().st_size == 0:
            _discard(target)
            raise CompileError(f"{source.name}: compiler produced no output")
        return True
    finally:
        _discard(scratch)


def compact_directory(
    directory: Path,
    bucket: str,
    compiler: CompilerConfig,
    stats: dict[str, int],
    checkpoint: Callable[[], None] | None = None,
) -> None:
    stats[STATS.STALE_REMOVED] += remove_stale_artifacts(directory, compiler.suffix)
    sources = [
        p
        for p in utils.sorted_files(directory)
        if p.suffix != compiler.suffix and not p.name.startswith(".")
    ]
    for source in sources:
        if checkpoint is not None:
            checkpoint()
        target = source.with_name(source.name + compiler.suffix)
        try:
            compiled = compile_file(source, target, bucket, compiler, checkpoint)
        except CompileError as exc:
            stats[STATS.FAILED] += 1
            logger.error("Compaction failed for %s: %s", source, exc)
            continue
        if compiled:
            stats[STATS.COMPILED] += 1
            logger.info("Compiled %s -> %s", source, target.name)
        else:
            stats[STATS.SKIPPED_EMPTY] += 1


def transform(
    unified_dir: str | Path,
    compiler: CompilerConfig,
    checkpoint: Callable[[], None] | None = None,
) -> dict[str, int]:
    """Compact the domainset and ip buckets under unified_dir."""
    root = Path(unified_dir)
    stats = utils.new_stats(utils.COMPACT_SUMMARY_ORDER)
    if find_compiler(compiler.command) is None:
        logger.warning(
            "Rule compiler %r not found; skipping compaction",
            compiler.command[0] if compiler.command else "",
        )
        return stats

    for bucket in BEHAVIORS:
        directory = root / bucket
        if directory.is_dir():
            compact_directory(directory, bucket, compiler, stats, checkpoint)
    return stats


def _print_summary(stats: dict[str, int]) -> None:
    print(utils.format_summary("compact", stats, utils.COMPACT_SUMMARY_ORDER))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Compile unified rule segments")
    parser.add_argument("unified_dir", help="Unified rule set directory")
    parser.add_argument(
        "--compiler",
        default=" ".join(CompilerConfig().command),
        help="Compiler command prefix (default: %(default)s)",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")
    try:
        stats = transform(args.unified_dir, CompilerConfig(command=shlex.split(args.compiler)))
        _print_summary(stats)
    except Exception as exc:
        print(f"ERROR in compact: {exc}", file=sys.stderr)
        sys.exit(1)
