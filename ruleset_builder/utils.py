# utils.py
"""
Utility functions shared by the rule-set build stages.

This module provides core functionality for:
- Comment and blank-line detection for proxy rule lists
- IP literal / CIDR / ASN parsing
- Rule splitting (TYPE,payload) and domain normalization
- Deterministic filesystem enumeration and atomic writes
- Tolerant output-tree deletion
- Stage statistics summaries

Example Usage:
    from ruleset_builder.utils import is_ip_or_cidr, split_rule

    is_ip_or_cidr("10.0.0.0/8")          # True
    is_ip_or_cidr("example.com")         # False
    split_rule("DOMAIN-SUFFIX, a.com")   # ("DOMAIN-SUFFIX", "a.com")
"""

from __future__ import annotations

import ipaddress
import logging
import shutil
import tempfile
from functools import lru_cache
from pathlib import Path
from types import SimpleNamespace
from typing import Iterator, Sequence

logger = logging.getLogger(__name__)


# -------------------------
# Constants
# -------------------------

# Output bucket directory names, in serving order (domain first, ip last)
BUCKET_DOMAINSET = "domainset"
BUCKET_NON_IP = "non_ip"
BUCKET_IP = "ip"
BUCKET_DIRS = (BUCKET_DOMAINSET, BUCKET_NON_IP, BUCKET_IP)
RESERVED_SEGMENT_NAMES = frozenset(BUCKET_DIRS)

COMMENT_PREFIXES = ("#", "//")
RULE_DELIMITER = ","
WILDCARD_PREFIX = "+."
NO_RESOLVE_MARKER = "no-resolve"

IP_CACHE_SIZE = 65536
IO_BUFFER_SIZE = 131072  # 128KB buffer for file I/O

# Shared statistics key namespaces (avoid magic strings across modules)
AGGREGATE_STATS_KEYS = SimpleNamespace(
    FILES="files",
    FILES_SKIPPED="files_skipped",
    FILES_MALFORMED="files_malformed",
    LINES_IN="lines_in",
    DOMAINSET="domainset",
    NON_IP="non_ip",
    IP="ip",
    CATEGORIES="categories",
    FILES_WRITTEN="files_written",
)

MERGE_STATS_KEYS = SimpleNamespace(
    FILES_IN="files_in",
    LINES_IN="lines_in",
    DOMAINSET="domainset",
    NON_IP="non_ip",
    IP="ip",
    FILES_WRITTEN="files_written",
)

COMPACT_STATS_KEYS = SimpleNamespace(
    STALE_REMOVED="stale_removed",
    COMPILED="compiled",
    FAILED="failed",
    SKIPPED_EMPTY="skipped_empty",
)

AGGREGATE_SUMMARY_ORDER = (
    AGGREGATE_STATS_KEYS.FILES,
    AGGREGATE_STATS_KEYS.FILES_SKIPPED,
    AGGREGATE_STATS_KEYS.FILES_MALFORMED,
    AGGREGATE_STATS_KEYS.LINES_IN,
    AGGREGATE_STATS_KEYS.DOMAINSET,
    AGGREGATE_STATS_KEYS.NON_IP,
    AGGREGATE_STATS_KEYS.IP,
    AGGREGATE_STATS_KEYS.CATEGORIES,
    AGGREGATE_STATS_KEYS.FILES_WRITTEN,
)

MERGE_SUMMARY_ORDER = (
    MERGE_STATS_KEYS.FILES_IN,
    MERGE_STATS_KEYS.LINES_IN,
    MERGE_STATS_KEYS.DOMAINSET,
    MERGE_STATS_KEYS.NON_IP,
    MERGE_STATS_KEYS.IP,
    MERGE_STATS_KEYS.FILES_WRITTEN,
)

COMPACT_SUMMARY_ORDER = (
    COMPACT_STATS_KEYS.STALE_REMOVED,
    COMPACT_STATS_KEYS.COMPILED,
    COMPACT_STATS_KEYS.FAILED,
    COMPACT_STATS_KEYS.SKIPPED_EMPTY,
)


# -------------------------
# Basic helpers
# -------------------------


def is_blank_line(line: str | None) -> bool:
    """True if line is None or only whitespace."""
    return line is None or line.strip() == ""


def is_comment_line(line: str | None) -> bool:
    """Detect '#' and '//' comment lines (leading whitespace ignored)."""
    if not line:
        return False
    return line.lstrip().startswith(COMMENT_PREFIXES)


def is_ignorable_line(line: str | None) -> bool:
    """True for blank and comment lines."""
    return is_blank_line(line) or is_comment_line(line)


def split_rule(line: str) -> tuple[str, str] | None:
    """
    Split 'TYPE,payload' at the first comma.

    Returns (type, payload), both trimmed, or None when the line carries no
    delimiter (a bare value).
    """
    idx = line.find(RULE_DELIMITER)
    if idx == -1:
        return None
    return line[:idx].strip(), line[idx + 1 :].strip()


def first_token(payload: str) -> str:
    """Return the leading comma-delimited token of a payload, trimmed."""
    return payload.split(RULE_DELIMITER, 1)[0].strip()


def strip_leading_dot(value: str) -> str:
    """Strip exactly one leading '.'."""
    return value[1:] if value.startswith(".") else value


def normalize_domain(value: str) -> str:
    """Trim, strip a single leading '.', lower-case."""
    return strip_leading_dot(value.strip()).lower()


# -------------------------
# IP helpers
# -------------------------


@lru_cache(maxsize=IP_CACHE_SIZE)
def is_ip_literal(value: str) -> bool:
    """Return True if value is a bare IPv4/IPv6 address."""
    if not value:
        return False
    try:
        ipaddress.ip_address(value.strip())
    except ValueError:
        return False
    return True


@lru_cache(maxsize=IP_CACHE_SIZE)
def is_cidr(value: str) -> bool:
    """
    Return True if value is 'address/prefix' with a prefix length in range
    (0-32 for IPv4, 0-128 for IPv6). Host bits may be set.
    """
    if not value or value.count("/") != 1:
        return False
    addr, _, prefix = value.strip().partition("/")
    if not (prefix.isascii() and prefix.isdigit()):
        return False
    try:
        ip = ipaddress.ip_address(addr)
    except ValueError:
        return False
    return 0 <= int(prefix) <= ip.max_prefixlen


def is_ip_or_cidr(value: str) -> bool:
    """Return True for IP literals and valid CIDR notation."""
    return is_ip_literal(value) or is_cidr(value)


def is_asn(value: str) -> bool:
    """Return True for an integer optionally prefixed with 'AS' (any case)."""
    core = value.strip()
    if core[:2].lower() == "as":
        core = core[2:]
    return core.isascii() and core.isdigit()


def to_cidr(value: str) -> str:
    """
    Rewrite a bare IP literal to explicit CIDR (/32 or /128).

    Values that already carry a prefix, or are not IPs, are returned unchanged.
    """
    candidate = value.strip()
    if "/" in candidate:
        return candidate
    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        return candidate
    return f"{candidate}/{ip.max_prefixlen}"


# -------------------------
# Filesystem helpers
# -------------------------


def _sort_key(p: Path) -> tuple[str, str]:
    return (p.name.lower(), p.name)


def sorted_subdirectories(directory: str | Path) -> list[Path]:
    """Return immediate subdirectories sorted case-insensitively."""
    base = Path(directory)
    return sorted((p for p in base.iterdir() if p.is_dir()), key=_sort_key)


def sorted_files(directory: str | Path) -> list[Path]:
    """Return immediate regular files sorted case-insensitively."""
    base = Path(directory)
    return sorted((p for p in base.iterdir() if p.is_file()), key=_sort_key)


def iter_rule_lines(path: str | Path) -> Iterator[str]:
    """Yield raw lines (without newline) from a rule file."""
    with Path(path).open(
        encoding="utf-8-sig", errors="replace", buffering=IO_BUFFER_SIZE
    ) as fh:
        for line in fh:
            yield line.rstrip("\r\n")


def atomic_write_text(target: Path, text: str, encoding: str = "utf-8") -> None:
    """
    Atomically write `text` to `target`.

    Ensures the target directory exists and performs an atomic
    replacement of the file to avoid corruption on interruption.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        delete=False,
        dir=target.parent,
        prefix=".tmp_",
        encoding=encoding,
        newline="\n",
    ) as tmp:
        tmp.write(text)
        tmp_path = Path(tmp.name)
    try:
        tmp_path.replace(target)
    except OSError:
        # Only unlink if replace failed (file still exists)
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
        raise


def remove_tree(path: str | Path) -> None:
    """
    Delete a directory tree.

    A failed one-pass delete (e.g. a file held open by another process) is
    retried entry by entry before the final removal; only that last failure
    propagates.
    """
    root = Path(path)
    if not root.exists():
        return
    try:
        shutil.rmtree(root)
        return
    except OSError as exc:
        logger.warning(
            "Failed to delete %s in one pass (%s); retrying entry-by-entry", root, exc
        )

    for entry in root.iterdir():
        try:
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink(missing_ok=True)
        except OSError as exc:
            logger.debug("Best-effort delete of %s failed: %s", entry, exc)

    try:
        shutil.rmtree(root)
    except OSError:
        logger.error("Failed to remove directory %s", root)
        raise


def reset_directory(path: str | Path) -> Path:
    """Delete and recreate `path`, returning it."""
    root = Path(path)
    remove_tree(root)
    root.mkdir(parents=True, exist_ok=True)
    return root


# -------------------------
# Stats
# -------------------------


def new_stats(keys: Sequence[str]) -> dict[str, int]:
    """Return a zeroed stats dict for the given keys."""
    return {key: 0 for key in keys}


def format_summary(label: str, stats: dict[str, int], keys: Sequence[str]) -> str:
    """Return a single space-joined 'key=value' summary line."""
    parts = [f"{label}:"]
    parts.extend(f"{key}={stats.get(key, 0)}" for key in keys)
    return " ".join(parts)


# Exports
# -------------------------

__all__ = [
    # Functions
    "is_blank_line",
    "is_comment_line",
    "is_ignorable_line",
    "split_rule",
    "first_token",
    "strip_leading_dot",
    "normalize_domain",
    "is_ip_literal",
    "is_cidr",
    "is_ip_or_cidr",
    "is_asn",
    "to_cidr",
    "sorted_subdirectories",
    "sorted_files",
    "iter_rule_lines",
    "atomic_write_text",
    "remove_tree",
    "reset_directory",
    "new_stats",
    "format_summary",
    # Constants
    "BUCKET_DOMAINSET",
    "BUCKET_NON_IP",
    "BUCKET_IP",
    "BUCKET_DIRS",
    "RESERVED_SEGMENT_NAMES",
    "COMMENT_PREFIXES",
    "RULE_DELIMITER",
    "WILDCARD_PREFIX",
    "NO_RESOLVE_MARKER",
    "IP_CACHE_SIZE",
    "IO_BUFFER_SIZE",
    "AGGREGATE_STATS_KEYS",
    "MERGE_STATS_KEYS",
    "COMPACT_STATS_KEYS",
    "AGGREGATE_SUMMARY_ORDER",
    "MERGE_SUMMARY_ORDER",
    "COMPACT_SUMMARY_ORDER",
]
