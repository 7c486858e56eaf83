#!/usr/bin/env python3
"""
classify.py

Classify proxy rule lines into the three serving segments.

Segments (in serving order):
- domainset: plain domains, matched by cheap string comparison
- non_ip   : typed rules that never trigger DNS resolution
- ip       : IP / CIDR / ASN rules, evaluated last

Two named classifiers are provided:

    classify()            per-dialect pass. ClassifyMode.STRICT raises
                          MalformedRuleError for non-conforming IP/ASN payloads
                          and empty domains; ClassifyMode.LENIENT routes the
                          same lines to a fallback bucket instead.
    classify_for_merge()  unified pass. Never raises; DOMAIN / DOMAIN-SUFFIX /
                          IP-CIDR(6) are recognized and everything else falls
                          back to the directory's DefaultBucket.

Examples:
    classify("DOMAIN-SUFFIX,apple.com", "a.list")      -> non_ip
    classify("IP-CIDR,10.0.0.0/8,no-resolve", "a")     -> non_ip
    classify("IP-ASN,AS12345", "a")                    -> ip
    classify(".Example.COM", "a")                      -> domainset "example.com"
    classify_for_merge("DOMAIN-SUFFIX,Example.COM", DefaultBucket.MIXED)
                                                       -> domainset "+.example.com"
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

from ruleset_builder import utils


# -------------------------
# Configuration
# -------------------------
IP_RULE_TYPES = frozenset({"IP-CIDR", "IP-CIDR6"})
ASN_RULE_TYPE = "IP-ASN"

# Rule types that match without resolving the destination host
NON_RESOLVING_TYPES = frozenset({
    "DOMAIN",
    "DOMAIN-SUFFIX",
    "DOMAIN-KEYWORD",
    "DOMAIN-WILDCARD",
    "USER-AGENT",
    "URL-REGEX",
    "PROCESS-NAME",
})

# Sentinel entries injected by one upstream family to mark its lists
SIGNATURE_MARKERS = ("this_ruleset_is_made_by_sukkaw",)

MERGE_DOMAIN_TYPE = "DOMAIN"
MERGE_SUFFIX_TYPE = "DOMAIN-SUFFIX"


class Classification(Enum):
    """Serving segment of a rule line; the value is the bucket directory."""

    DOMAIN = utils.BUCKET_DOMAINSET
    NON_IP = utils.BUCKET_NON_IP
    IP = utils.BUCKET_IP

    @property
    def bucket(self) -> str:
        return self.value


class ClassifyMode(str, Enum):
    STRICT = "strict"
    LENIENT = "lenient"


class DefaultBucket(str, Enum):
    """Where classify_for_merge() puts lines it does not recognize."""

    DOMAIN = "domain"  # pure-domain directories
    MIXED = "mixed"  # IP literal/CIDR detection, else non_ip


class ErrorScope(Enum):
    FILE = "file"  # skip the offending file, keep the run going
    RUN = "run"  # abort the run


class MalformedRuleError(ValueError):
    """A rule line whose payload does not match its declared type."""

    def __init__(self, message: str, *, origin: str, line: str, scope: ErrorScope) -> None:
        super().__init__(f"{message} in {origin}")
        self.origin = origin
        self.line = line
        self.scope = scope


@dataclass(frozen=True)
class ClassifiedLine:
    classification: Classification
    line: str


@dataclass
class SegmentSet:
    """Ordered, append-only lines per segment."""

    domainset: list[str] = field(default_factory=list)
    non_ip: list[str] = field(default_factory=list)
    ip: list[str] = field(default_factory=list)

    def bucket(self, name: str) -> list[str]:
        if name not in utils.RESERVED_SEGMENT_NAMES:
            raise KeyError(name)
        return getattr(self, name)

    def add(self, item: ClassifiedLine) -> None:
        self.bucket(item.classification.bucket).append(item.line)

    def extend(self, other: SegmentSet) -> None:
        self.domainset.extend(other.domainset)
        self.non_ip.extend(other.non_ip)
        self.ip.extend(other.ip)

    def counts(self) -> dict[str, int]:
        return {name: len(self.bucket(name)) for name in utils.BUCKET_DIRS}

    def __len__(self) -> int:
        return len(self.domainset) + len(self.non_ip) + len(self.ip)


# -------------------------
# Per-dialect classifier
# -------------------------
def _has_signature(line: str) -> bool:
    return any(marker in line for marker in SIGNATURE_MARKERS)


def _malformed(
    message: str, origin: str, line: str, scope: ErrorScope = ErrorScope.RUN
) -> MalformedRuleError:
    return MalformedRuleError(message, origin=origin, line=line, scope=scope)


def _classify_bare(value: str, origin: str, mode: ClassifyMode) -> ClassifiedLine | None:
    if utils.is_ip_or_cidr(value):
        return ClassifiedLine(Classification.IP, value)
    domain = utils.normalize_domain(value)
    if not domain:
        if mode is ClassifyMode.LENIENT:
            return None
        raise _malformed(
            f"Empty domain entry {value!r}", origin, value, scope=ErrorScope.FILE
        )
    return ClassifiedLine(Classification.DOMAIN, domain)


def _classify_typed(
    line: str, rule_type: str, payload: str, origin: str, mode: ClassifyMode
) -> ClassifiedLine | None:
    upper = rule_type.upper()

    if upper in IP_RULE_TYPES:
        if utils.NO_RESOLVE_MARKER in payload.lower():
            return ClassifiedLine(Classification.NON_IP, line)
        if utils.is_ip_or_cidr(utils.first_token(payload)):
            return ClassifiedLine(Classification.IP, line)
        if mode is ClassifyMode.LENIENT:
            return ClassifiedLine(Classification.NON_IP, line)
        raise _malformed(f"Unexpected IP payload {payload!r}", origin, line)

    if upper == ASN_RULE_TYPE:
        if utils.is_asn(utils.first_token(payload)):
            return ClassifiedLine(Classification.IP, line)
        if mode is ClassifyMode.LENIENT:
            return ClassifiedLine(Classification.NON_IP, line)
        raise _malformed(f"Invalid ASN payload {payload!r}", origin, line)

    if upper in NON_RESOLVING_TYPES:
        return ClassifiedLine(Classification.NON_IP, line)

    if utils.is_ip_literal(line):
        return ClassifiedLine(Classification.IP, line)

    domain = utils.normalize_domain(payload)
    if not domain:
        if mode is ClassifyMode.LENIENT:
            return None
        raise _malformed(f"Empty domain entry {line!r}", origin, line)
    return ClassifiedLine(Classification.DOMAIN, domain)


def classify(
    line: str, origin: str, mode: ClassifyMode = ClassifyMode.STRICT
) -> ClassifiedLine | None:
    """
    Classify one raw rule line.

    Returns None for blank, comment and signature lines. In STRICT mode a
    malformed line raises MalformedRuleError; its `scope` tells the caller
    whether to skip the file (empty bare value) or abort the run.
    """
    text = line.strip()
    if utils.is_ignorable_line(text):
        return None
    if _has_signature(text):
        return None

    parts = utils.split_rule(text)
    if parts is None:
        return _classify_bare(text, origin, mode)
    rule_type, payload = parts
    return _classify_typed(text, rule_type, payload, origin, mode)


def classify_lines(
    lines: Iterable[str],
    origin: str,
    mode: ClassifyMode = ClassifyMode.STRICT,
    checkpoint: Callable[[], None] | None = None,
) -> SegmentSet:
    """Classify every line into a fresh SegmentSet (first error propagates)."""
    segments = SegmentSet()
    for raw in lines:
        if checkpoint is not None:
            checkpoint()
        item = classify(raw, origin, mode)
        if item is not None:
            segments.add(item)
    return segments


# -------------------------
# Unified-pass classifier
# -------------------------
def normalize_merge_domain(value: str, keep_wildcard: bool) -> str:
    """
    Normalize a domain for the unified set.

    Any '+.' marker is removed before lower-casing and stripping a leading
    '.', and put back only when the input carried one and keep_wildcard is set.
    """
    text = value.strip()
    had_wildcard = text.startswith(utils.WILDCARD_PREFIX)
    if had_wildcard:
        text = text[len(utils.WILDCARD_PREFIX):]
    domain = utils.strip_leading_dot(text.lower())
    if domain and had_wildcard and keep_wildcard:
        return utils.WILDCARD_PREFIX + domain
    return domain


def _merge_default(
    line: str, default: DefaultBucket, preserve_wildcard: bool
) -> ClassifiedLine | None:
    if default is DefaultBucket.DOMAIN:
        domain = normalize_merge_domain(line, preserve_wildcard)
        return ClassifiedLine(Classification.DOMAIN, domain) if domain else None
    if utils.is_ip_or_cidr(line):
        return ClassifiedLine(Classification.IP, line)
    return ClassifiedLine(Classification.NON_IP, line)


def classify_for_merge(
    line: str, default: DefaultBucket, preserve_wildcard: bool = False
) -> ClassifiedLine | None:
    """
    Re-classify an already generated rule line for the unified set.

    DOMAIN yields a bare domain, DOMAIN-SUFFIX always yields '+.domain',
    IP-CIDR/IP-CIDR6 yield their leading token. Anything else, including an
    IP rule whose token does not parse, goes to the default bucket.
    """
    text = line.strip()
    if utils.is_ignorable_line(text):
        return None

    parts = utils.split_rule(text)
    if parts is None:
        return _merge_default(text, default, preserve_wildcard)

    rule_type, payload = parts
    upper = rule_type.upper()
    token = utils.first_token(payload)

    if upper == MERGE_SUFFIX_TYPE:
        domain = normalize_merge_domain(token, keep_wildcard=False)
        return (
            ClassifiedLine(Classification.DOMAIN, utils.WILDCARD_PREFIX + domain)
            if domain
            else None
        )
    if upper == MERGE_DOMAIN_TYPE:
        domain = normalize_merge_domain(token, preserve_wildcard)
        return ClassifiedLine(Classification.DOMAIN, domain) if domain else None
    if upper in IP_RULE_TYPES and utils.is_ip_or_cidr(token):
        return ClassifiedLine(Classification.IP, token)

    return _merge_default(text, default, preserve_wildcard)
