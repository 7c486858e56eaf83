#!/usr/bin/env python3
"""
config.py

Configuration for the rule-set build.

Sources, lowest precedence first:
  1. built-in defaults (the three upstream families, Clash + Surge dialects)
  2. a JSON file (--config or $RULESET_CONFIG)
  3. environment: RULESET_SOURCE_ROOT, RULESET_OUTPUT_ROOT,
     RULESET_RUN_ON_STARTUP, RULESET_INTERVAL_DAYS, RULESET_COMPILER
  4. explicit overrides (CLI)

Example JSON:
    {
      "source_root": "/srv/RuleSet",
      "output_root": "/srv/www/ruleset",
      "interval_days": 7,
      "unified": {"preserve_wildcard": true},
      "compiler": {"command": ["/usr/local/bin/mihomo", "convert-ruleset"]}
    }
"""
from __future__ import annotations

import json
import logging
import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from ruleset_builder.categories import Provenance, SourceTree
from ruleset_builder.classify import ClassifyMode

logger = logging.getLogger(__name__)

CONFIG_ENV = "RULESET_CONFIG"
ENV_SOURCE_ROOT = "RULESET_SOURCE_ROOT"
ENV_OUTPUT_ROOT = "RULESET_OUTPUT_ROOT"
ENV_RUN_ON_STARTUP = "RULESET_RUN_ON_STARTUP"
ENV_INTERVAL_DAYS = "RULESET_INTERVAL_DAYS"
ENV_COMPILER = "RULESET_COMPILER"

MIN_INTERVAL_DAYS = 1
MAX_INTERVAL_DAYS = 365

DEFAULT_SOURCE_ROOT = "RuleSet"
DEFAULT_OUTPUT_ROOT = "public/ruleset"
DEFAULT_INTERVAL_DAYS = 7
DEFAULT_COMPILER = ("mihomo", "convert-ruleset")
DEFAULT_COMPILED_SUFFIX = ".mrs"
DEFAULT_COMPILER_TIMEOUT = 120.0

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off", ""})


class ConfigError(Exception):
    """Invalid or incomplete configuration; raised before any output is touched."""


class DialectStyle(str, Enum):
    LIST = "list"  # one rule per line
    PAYLOAD = "payload"  # YAML {payload: [...]}


@dataclass
class SourceTreeConfig:
    path: str
    provenance: Provenance | None = None
    optional: bool = False

    def resolve(self, source_root: Path) -> Path:
        p = Path(self.path)
        return p if p.is_absolute() else source_root / p


@dataclass
class DialectConfig:
    name: str
    extension: str
    style: DialectStyle = DialectStyle.LIST
    mode: ClassifyMode = ClassifyMode.STRICT
    sources: list[SourceTreeConfig] = field(default_factory=list)


@dataclass
class UnifiedConfig:
    enabled: bool = True
    dialect: str = "Clash"
    name: str = "UnifiedRuleSet"
    preserve_wildcard: bool = False


@dataclass
class CompilerConfig:
    enabled: bool = True
    command: list[str] = field(default_factory=lambda: list(DEFAULT_COMPILER))
    suffix: str = DEFAULT_COMPILED_SUFFIX
    timeout: float = DEFAULT_COMPILER_TIMEOUT


def default_dialects() -> list[DialectConfig]:
    return [
        DialectConfig(
            name="Clash",
            extension="txt",
            sources=[
                SourceTreeConfig("builtin/Clash", Provenance.BUILTIN, optional=True),
                SourceTreeConfig("ruleset.skk.moe/Clash", Provenance.SUKKA),
                SourceTreeConfig("ios_rule_script/rule/Clash", Provenance.BLACKMATRIX7),
            ],
        ),
        DialectConfig(
            name="Surge",
            extension="conf",
            sources=[
                SourceTreeConfig("builtin/Surge", Provenance.BUILTIN, optional=True),
                SourceTreeConfig("ruleset.skk.moe/List", Provenance.SUKKA),
                SourceTreeConfig("ios_rule_script/rule/Surge", Provenance.BLACKMATRIX7),
            ],
        ),
    ]


@dataclass
class BuildConfig:
    source_root: Path = Path(DEFAULT_SOURCE_ROOT)
    output_root: Path = Path(DEFAULT_OUTPUT_ROOT)
    run_on_startup: bool = True
    interval_days: int = DEFAULT_INTERVAL_DAYS
    dialects: list[DialectConfig] = field(default_factory=default_dialects)
    unified: UnifiedConfig = field(default_factory=UnifiedConfig)
    compiler: CompilerConfig = field(default_factory=CompilerConfig)

    @property
    def interval_seconds(self) -> float:
        return self.interval_days * 86400.0

    def dialect(self, name: str) -> DialectConfig | None:
        for d in self.dialects:
            if d.name.lower() == name.lower():
                return d
        return None

    def validate(self) -> None:
        """Raise ConfigError for anything that would fail the run later."""
        if self.source_root is None or str(self.source_root) in ("", "."):
            raise ConfigError("source_root is required")
        if self.output_root is None or str(self.output_root) in ("", "."):
            raise ConfigError("output_root is required")
        out = self.output_root.resolve()
        src = self.source_root.resolve()
        if out == src or out in src.parents:
            raise ConfigError(f"output_root {out} would delete the source tree {src}")
        if not self.source_root.is_dir():
            raise ConfigError(f"Rule repository not found at {self.source_root}")
        if not MIN_INTERVAL_DAYS <= self.interval_days <= MAX_INTERVAL_DAYS:
            raise ConfigError(
                f"interval_days must be within {MIN_INTERVAL_DAYS}-{MAX_INTERVAL_DAYS}, "
                f"got {self.interval_days}"
            )
        if not self.dialects:
            raise ConfigError("at least one dialect is required")

        seen: set[str] = set()
        for d in self.dialects:
            key = d.name.lower()
            if not d.name.strip() or not d.extension.strip():
                raise ConfigError("dialect name and extension are required")
            if key in seen or key == self.unified.name.lower():
                raise ConfigError(f"duplicate output directory {d.name!r}")
            seen.add(key)
            for src in d.sources:
                root = src.resolve(self.source_root)
                if not root.is_dir() and not src.optional:
                    raise ConfigError(f"Missing source directory {root} for {d.name}")

        if self.unified.enabled:
            source = self.dialect(self.unified.dialect)
            if source is None:
                raise ConfigError(f"unified.dialect {self.unified.dialect!r} is not configured")
            if source.style is not DialectStyle.LIST:
                raise ConfigError("unified.dialect must use the 'list' style")
        if self.compiler.enabled and not self.compiler.command:
            raise ConfigError("compiler.command must not be empty")
        if self.compiler.timeout <= 0:
            raise ConfigError("compiler.timeout must be positive")

    def source_trees(self, dialect: DialectConfig) -> list[SourceTree]:
        """Existing source trees for a dialect; missing optional trees are skipped."""
        trees: list[SourceTree] = []
        for src in dialect.sources:
            root = src.resolve(self.source_root)
            if not root.is_dir():
                if src.optional:
                    logger.info("Optional source %s not present, skipping", root)
                    continue
                raise ConfigError(f"Missing source directory {root}")
            trees.append(SourceTree(root, src.provenance))
        return trees


# ----------------------------------------
# Parsing
# ----------------------------------------
def parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ConfigError(f"{key}: expected a boolean, got {value!r}")


def _parse_path(value: Any, key: str) -> Path:
    if value is None or not str(value).strip():
        raise ConfigError(f"{key} is required")
    return Path(str(value).strip())


def parse_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key}: expected an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key}: expected an integer, got {value!r}") from exc


def _parse_enum(enum_cls: type[Enum], value: Any, key: str) -> Any:
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"{key}: expected one of {allowed}, got {value!r}") from exc


def _parse_command(value: Any, key: str) -> list[str]:
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigError(f"{key}: expected a string or list of strings")


def _parse_source(data: Mapping[str, Any], key: str) -> SourceTreeConfig:
    if "path" not in data:
        raise ConfigError(f"{key}.path is required")
    provenance = data.get("provenance")
    return SourceTreeConfig(
        path=str(data["path"]),
        provenance=(
            _parse_enum(Provenance, provenance, f"{key}.provenance")
            if provenance is not None
            else None
        ),
        optional=parse_bool(data.get("optional", False), f"{key}.optional"),
    )


def _parse_dialect(data: Mapping[str, Any], key: str) -> DialectConfig:
    for required in ("name", "extension"):
        if required not in data:
            raise ConfigError(f"{key}.{required} is required")
    return DialectConfig(
        name=str(data["name"]),
        extension=str(data["extension"]).lstrip("."),
        style=_parse_enum(DialectStyle, data.get("style", "list"), f"{key}.style"),
        mode=_parse_enum(ClassifyMode, data.get("mode", "strict"), f"{key}.mode"),
        sources=[
            _parse_source(s, f"{key}.sources[{i}]")
            for i, s in enumerate(data.get("sources", []))
        ],
    )


def apply_mapping(config: BuildConfig, data: Mapping[str, Any]) -> BuildConfig:
    """Apply a (JSON-shaped) mapping on top of config, in place."""
    if "source_root" in data:
        config.source_root = _parse_path(data["source_root"], "source_root")
    if "output_root" in data:
        config.output_root = _parse_path(data["output_root"], "output_root")
    if "run_on_startup" in data:
        config.run_on_startup = parse_bool(data["run_on_startup"], "run_on_startup")
    if "interval_days" in data:
        config.interval_days = parse_int(data["interval_days"], "interval_days")
    if "dialects" in data:
        config.dialects = [
            _parse_dialect(d, f"dialects[{i}]") for i, d in enumerate(data["dialects"])
        ]

    unified = data.get("unified") or {}
    if "enabled" in unified:
        config.unified.enabled = parse_bool(unified["enabled"], "unified.enabled")
    if "dialect" in unified:
        config.unified.dialect = str(unified["dialect"])
    if "name" in unified:
        config.unified.name = str(unified["name"])
    if "preserve_wildcard" in unified:
        config.unified.preserve_wildcard = parse_bool(
            unified["preserve_wildcard"], "unified.preserve_wildcard"
        )

    compiler = data.get("compiler") or {}
    if "enabled" in compiler:
        config.compiler.enabled = parse_bool(compiler["enabled"], "compiler.enabled")
    if "command" in compiler:
        config.compiler.command = _parse_command(compiler["command"], "compiler.command")
    if "suffix" in compiler:
        suffix = str(compiler["suffix"])
        config.compiler.suffix = suffix if suffix.startswith(".") else f".{suffix}"
    if "timeout" in compiler:
        try:
            config.compiler.timeout = float(compiler["timeout"])
        except (TypeError, ValueError) as exc:
            raise ConfigError("compiler.timeout: expected a number") from exc
    return config


def _env_mapping(environ: Mapping[str, str]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if environ.get(ENV_SOURCE_ROOT):
        data["source_root"] = environ[ENV_SOURCE_ROOT]
    if environ.get(ENV_OUTPUT_ROOT):
        data["output_root"] = environ[ENV_OUTPUT_ROOT]
    if ENV_RUN_ON_STARTUP in environ:
        data["run_on_startup"] = environ[ENV_RUN_ON_STARTUP]
    if environ.get(ENV_INTERVAL_DAYS):
        data["interval_days"] = environ[ENV_INTERVAL_DAYS]
    if environ.get(ENV_COMPILER):
        data["compiler"] = {"command": environ[ENV_COMPILER]}
    return data


def read_config_file(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {p}") from exc
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Config file {p} is unreadable ({type(exc).__name__}: {exc})") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {p} must contain a JSON object")
    return data


def load_config(
    path: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> BuildConfig:
    """Build a BuildConfig from defaults, file, environment and overrides."""
    env = os.environ if environ is None else environ
    config = BuildConfig()
    file_path = path or env.get(CONFIG_ENV)
    if file_path:
        apply_mapping(config, read_config_file(file_path))
    apply_mapping(config, _env_mapping(env))
    if overrides:
        apply_mapping(config, overrides)
    return config
