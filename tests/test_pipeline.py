import threading
import time
from pathlib import Path

import pytest

from conftest import read_rules, snapshot, write
from ruleset_builder import pipeline
from ruleset_builder.config import BuildConfig, CompilerConfig, ConfigError
from ruleset_builder.pipeline import RuleSetBuilder, RunCancelled


@pytest.fixture
def config(source_root: Path, tmp_path: Path, fake_compiler: CompilerConfig) -> BuildConfig:
    return BuildConfig(
        source_root=source_root,
        output_root=tmp_path / "public" / "ruleset",
        compiler=fake_compiler,
    )


def test_full_run_builds_every_tree(config: BuildConfig):
    results = pipeline.transform(config)
    out = config.output_root

    assert set(results) == {"Clash", "Surge", "unified", "compact"}
    assert sorted(p.name for p in out.iterdir()) == ["Clash", "Surge", "UnifiedRuleSet"]

    assert read_rules(out / "Clash" / "domainset" / "sukka_reject.txt") == [
        "+.ads.example",
        "tracker.example",
    ]
    assert read_rules(out / "Surge" / "domainset" / "sukka_reject.conf") == ["ads.example"]
    assert read_rules(out / "Surge" / "non_ip" / "blackmatrix7_apple.conf") == [
        "DOMAIN-SUFFIX,icloud.com"
    ]

    unified = out / "UnifiedRuleSet"
    assert read_rules(unified / "domainset" / "sukka_reject.txt") == [
        "ads.example",
        "tracker.example",
        "+.ads.example.net",
    ]
    assert read_rules(unified / "non_ip" / "sukka_reject.txt") == [
        "DOMAIN-KEYWORD,adservice",
        "IP-ASN,AS64500",
    ]
    assert read_rules(unified / "ip" / "sukka_reject.txt") == ["10.10.0.0/16", "2001:db8::/32"]
    assert read_rules(unified / "domainset" / "blackmatrix7_apple.txt") == [
        "apple.com",
        "+.icloud.com",
    ]
    assert read_rules(unified / "ip" / "blackmatrix7_apple.txt") == ["17.0.0.0/8", "1.2.3.4/32"]

    assert (unified / "domainset" / "sukka_reject.txt.mrs").exists()
    assert (unified / "ip" / "blackmatrix7_apple.txt.mrs").exists()
    assert not list((unified / "non_ip").glob("*.mrs"))
    assert results["compact"]["compiled"] == 4


def test_runs_are_idempotent(config: BuildConfig):
    builder = RuleSetBuilder(config)
    builder.run_once()
    first = snapshot(config.output_root)
    builder.run_once()
    assert snapshot(config.output_root) == first


def test_output_root_is_wiped_each_run(config: BuildConfig):
    stale = write(config.output_root / "Clash" / "domainset" / "removed_upstream.txt", "x.com")
    pipeline.transform(config)
    assert not stale.exists()


def test_invalid_config_leaves_output_untouched(config: BuildConfig):
    marker = write(config.output_root / "keep.txt", "previous run")
    config.interval_days = 0
    with pytest.raises(ConfigError):
        pipeline.transform(config)
    assert marker.exists()


def test_malformed_rule_aborts_run(config: BuildConfig):
    write(config.source_root / "ruleset.skk.moe" / "Clash" / "ip" / "bad.txt", "IP-ASN,notanumber")
    with pytest.raises(ValueError, match="bad.txt"):
        pipeline.transform(config)


def test_no_compile_skips_compaction(config: BuildConfig):
    config.compiler.enabled = False
    results = pipeline.transform(config)
    assert "compact" not in results
    assert not list(config.output_root.rglob("*.mrs"))


def test_unified_can_be_disabled(config: BuildConfig):
    config.unified.enabled = False
    results = pipeline.transform(config)
    assert set(results) == {"Clash", "Surge"}
    assert not (config.output_root / "UnifiedRuleSet").exists()


def test_cancelled_before_start(config: BuildConfig):
    stop = threading.Event()
    stop.set()
    builder = RuleSetBuilder(config, stop)
    with pytest.raises(RunCancelled):
        builder.run_once()
    assert not config.output_root.exists()


def test_runs_are_serialized(config: BuildConfig, monkeypatch):
    active = []
    overlaps = []
    real_run = RuleSetBuilder._run

    def tracking_run(self):
        active.append(1)
        if len(active) > 1:
            overlaps.append(len(active))
        time.sleep(0.05)
        try:
            return real_run(self)
        finally:
            active.pop()

    monkeypatch.setattr(RuleSetBuilder, "_run", tracking_run)
    builder = RuleSetBuilder(config)
    threads = [threading.Thread(target=builder.run_once) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlaps == []


def test_run_guarded_logs_instead_of_raising(config: BuildConfig, caplog):
    config.interval_days = 0
    builder = RuleSetBuilder(config)
    assert builder.run_guarded() is None
    assert "Rule processing failed" in caplog.text


def test_serve_forever_runs_on_startup_and_stops(config: BuildConfig, monkeypatch):
    calls = []
    builder = RuleSetBuilder(config)

    def fake_run_guarded():
        calls.append(1)
        builder.stop()

    monkeypatch.setattr(builder, "run_guarded", fake_run_guarded)
    builder.serve_forever()
    assert calls == [1]


def test_serve_forever_without_startup_run(config: BuildConfig, monkeypatch):
    config.run_on_startup = False
    builder = RuleSetBuilder(config)
    monkeypatch.setattr(builder, "run_guarded", lambda: pytest.fail("should not run"))
    builder.stop()
    builder.serve_forever()


def test_main_returns_zero_on_success(config: BuildConfig, monkeypatch):
    monkeypatch.setattr(pipeline.signal, "signal", lambda *args: None)
    monkeypatch.setattr(pipeline, "_configure_logging", lambda verbose=False: pipeline.logger)
    monkeypatch.delenv("RULESET_CONFIG", raising=False)
    code = pipeline.main(
        ["-s", str(config.source_root), "-o", str(config.output_root), "--no-compile"]
    )
    assert code == 0
    assert (config.output_root / "UnifiedRuleSet" / "domainset").is_dir()


def test_main_returns_two_on_config_error(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.setattr(pipeline.signal, "signal", lambda *args: None)
    monkeypatch.setattr(pipeline, "_configure_logging", lambda verbose=False: pipeline.logger)
    monkeypatch.delenv("RULESET_CONFIG", raising=False)
    code = pipeline.main(["-s", str(tmp_path / "missing"), "-o", str(tmp_path / "out")])
    assert code == 2
    assert "[CONFIG]" in capsys.readouterr().err


def test_separate_builders_share_the_run_lock(config: BuildConfig, monkeypatch):
    active = []
    overlaps = []
    errors = []
    real_run = RuleSetBuilder._run

    def tracking_run(self):
        active.append(1)
        if len(active) > 1:
            overlaps.append(len(active))
        time.sleep(0.1)
        try:
            return real_run(self)
        finally:
            active.pop()

    def run():
        try:
            pipeline.transform(config)
        except Exception as exc:
            errors.append(exc)

    monkeypatch.setattr(RuleSetBuilder, "_run", tracking_run)
    threads = [threading.Thread(target=run) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlaps == []
    assert errors == []
    assert (config.output_root / "UnifiedRuleSet" / "domainset").is_dir()
