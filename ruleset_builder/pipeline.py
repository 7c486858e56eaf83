#!/usr/bin/env python3
"""
pipeline.py

Full proxy rule-set build pipeline.

Pipeline stages:
  1. dialects           : Classify every source tree and write one tree per
                          client dialect (Clash, Surge, ...).
  2. merge_and_classify : Re-read the domain-first dialect and merge it by
                          filename into the unified rule set.
  3. compact            : Compile unified domainset/ip segments into binary
                          rule sets with the external compiler.

The output root is deleted and recreated at the start of every run; nothing
is carried over between runs. Runs are serialized by a process-wide lock, so
a trigger that arrives mid-run waits for the current run to finish.

Usage:
    python -m ruleset_builder.pipeline [--config FILE] [--serve]
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable

from ruleset_builder import compact, dialects, merge_and_classify, utils
from ruleset_builder.config import BuildConfig, ConfigError, load_config

logger = logging.getLogger("pipeline")

# One pipeline run at a time per process, whichever builder starts it
_RUN_LOCK = threading.Lock()


class RunCancelled(Exception):
    """Shutdown was requested while a run was in progress."""


# ----------------------------------------
# Helpers
# ----------------------------------------
def _configure_logging(verbose: bool = False) -> logging.Logger:
    """Return configured pipeline logger with a clean, single-line format."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
        stream=sys.stdout,
    )
    return logger


def run_stage(
    func: Callable[[], dict[str, int]],
    label: str,
    log: logging.Logger,
    summary: Callable[[dict[str, int]], None] | None = None,
) -> dict[str, int]:
    """Run a single pipeline stage with consistent console output."""
    log.info("")
    log.info(f"=== {label} ===")
    start = time.perf_counter()
    stats = func()
    if summary is not None:
        summary(stats)
        sys.stdout.flush()
    elapsed = time.perf_counter() - start
    log.info(f"Finished {label} in {elapsed:.2f}s")
    return stats


# ----------------------------------------
# Pipeline core
# ----------------------------------------
class RuleSetBuilder:
    """Owns the shutdown signal for one configured pipeline; runs share _RUN_LOCK."""

    def __init__(
        self, config: BuildConfig, stop_event: threading.Event | None = None
    ) -> None:
        self.config = config
        self.stop_event = stop_event or threading.Event()

    def checkpoint(self) -> None:
        if self.stop_event.is_set():
            raise RunCancelled("shutdown requested")

    def run_once(self) -> dict[str, dict[str, int]]:
        """Run the whole pipeline; blocks while another run holds the lock."""
        with _RUN_LOCK:
            return self._run()

    def _run(self) -> dict[str, dict[str, int]]:
        config = self.config
        log = logger
        run_start = time.perf_counter()

        # Everything that can fail on configuration fails before the wipe.
        config.validate()
        trees = {d.name: config.source_trees(d) for d in config.dialects}
        self.checkpoint()

        log.info(f"Starting pipeline run into {config.output_root}")
        output_root = utils.reset_directory(config.output_root)
        generated_at = datetime.now(timezone.utc)
        results: dict[str, dict[str, int]] = {}

        for dialect in config.dialects:
            self.checkpoint()
            results[dialect.name] = run_stage(
                lambda d=dialect: dialects.transform(
                    trees[d.name],
                    d,
                    output_root / d.name,
                    generated_at,
                    self.checkpoint,
                ),
                f"Building {dialect.name} rules",
                log,
                lambda stats, d=dialect: dialects._print_summary(stats, d.name),
            )

        if config.unified.enabled:
            source_dir = output_root / config.dialect(config.unified.dialect).name
            unified_dir = output_root / config.unified.name
            results["unified"] = run_stage(
                lambda: merge_and_classify.transform(
                    source_dir,
                    unified_dir,
                    config.unified.preserve_wildcard,
                    generated_at,
                    self.checkpoint,
                ),
                "Merging unified rule set",
                log,
                merge_and_classify._print_summary,
            )
            if config.compiler.enabled:
                results["compact"] = run_stage(
                    lambda: compact.transform(unified_dir, config.compiler, self.checkpoint),
                    "Compiling binary rule sets",
                    log,
                    compact._print_summary,
                )

        total_elapsed = time.perf_counter() - run_start
        log.info(f"Output saved to: {output_root} (total {total_elapsed:.2f}s)")
        return results

    def run_guarded(self) -> dict[str, dict[str, int]] | None:
        """run_once() for the periodic driver: failures are logged, not raised."""
        try:
            return self.run_once()
        except RunCancelled:
            logger.warning("Rule processing cancelled; output tree is incomplete")
        except Exception:
            logger.exception("Rule processing failed")
        return None

    def serve_forever(self) -> None:
        """Run on startup (if configured), then once per interval until stopped."""
        interval = self.config.interval_seconds
        if self.config.run_on_startup:
            self.run_guarded()
        while not self.stop_event.wait(interval):
            self.run_guarded()
        logger.info("Rule processing driver stopped")

    def stop(self) -> None:
        self.stop_event.set()


def transform(config: BuildConfig) -> dict[str, dict[str, int]]:
    """Run the full pipeline once."""
    return RuleSetBuilder(config).run_once()


# CLI entrypoint
# ----------------------------------------
def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build normalized proxy rule sets")
    parser.add_argument("-c", "--config", help="JSON configuration file")
    parser.add_argument("-s", "--source-root", help="Directory holding the source trees")
    parser.add_argument("-o", "--output-root", help="Output directory (wiped every run)")
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Keep running and rebuild every interval_days",
    )
    parser.add_argument("--interval-days", type=int, help="Rebuild interval for --serve")
    parser.add_argument(
        "--preserve-wildcard",
        action="store_true",
        default=None,
        help="Keep '+.' on unified domain entries that already carried it",
    )
    parser.add_argument("--no-compile", action="store_true", help="Skip compaction")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.source_root:
        overrides["source_root"] = args.source_root
    if args.output_root:
        overrides["output_root"] = args.output_root
    if args.interval_days is not None:
        overrides["interval_days"] = args.interval_days
    if args.preserve_wildcard:
        overrides["unified"] = {"preserve_wildcard": True}
    if args.no_compile:
        overrides["compiler"] = {"enabled": False}
    return overrides


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    log = _configure_logging(args.verbose)

    try:
        config = load_config(args.config, _overrides(args))
        config.validate()
    except ConfigError as exc:
        print(f"[CONFIG] {exc}", file=sys.stderr)
        return 2

    builder = RuleSetBuilder(config)

    def _shutdown(signum: int, _frame: Any) -> None:
        log.info(f"Received signal {signum}, stopping")
        builder.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    if args.serve:
        builder.serve_forever()
        return 0

    try:
        builder.run_once()
    except RunCancelled:
        print("[CANCELLED] output tree is incomplete", file=sys.stderr)
        return 130
    except Exception as exc:
        log.exception("Rule processing failed")
        print(f"[FATAL] {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
