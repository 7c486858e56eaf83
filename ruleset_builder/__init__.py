"""
ruleset_builder package - proxy rule-set normalizer and compiler

Modules:
    classify: Line classification into domainset / non_ip / ip
    categories: Source-tree category resolution and segment aggregation
    dialects: Client dialect writers (Clash, Surge, payload YAML)
    merge_and_classify: Unified rule set built from the domain-first dialect
    compact: Binary rule-set compilation via the external compiler
    config: Configuration loading and validation
    pipeline: Main processing pipeline and periodic driver
"""

__version__ = "1.0.0"
