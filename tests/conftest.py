from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

from ruleset_builder.config import CompilerConfig

FAKE_COMPILER = textwrap.dedent(
    """
    import sys
    from pathlib import Path

    behavior, fmt, source, target = sys.argv[1:5]
    lines = Path(source).read_text(encoding="utf-8").splitlines()
    if "fail.invalid" in lines:
        print("invalid rule: fail.invalid", file=sys.stderr)
        sys.exit(3)
    scratch = "scratch" if Path(source).name.startswith(".tmp_compact_") else source
    Path(target).write_text(
        f"{behavior}|{fmt}|{scratch}\\n" + "\\n".join(lines) + "\\n",
        encoding="utf-8",
    )
    """
)


def write(path: Path, *lines: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    return path


def read_rules(path: Path) -> list[str]:
    """Rules of a generated file, header and blanks removed."""
    return [
        line
        for line in path.read_text(encoding="utf-8").splitlines()
        if line.strip() and not line.startswith("#")
    ]


def snapshot(root: Path) -> dict[str, str]:
    """Relative path -> content, with the per-run timestamp line removed."""
    result = {}
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        text = path.read_text(encoding="utf-8")
        result[path.relative_to(root).as_posix()] = "\n".join(
            line for line in text.splitlines() if not line.startswith("# Updated:")
        )
    return result


@pytest.fixture
def fake_compiler(tmp_path: Path) -> CompilerConfig:
    script = tmp_path / "fake_compiler.py"
    script.write_text(FAKE_COMPILER, encoding="utf-8")
    return CompilerConfig(command=[sys.executable, str(script)], timeout=30)


@pytest.fixture
def source_root(tmp_path: Path) -> Path:
    """Three upstream families laid out the way the defaults expect."""
    root = tmp_path / "RuleSet"

    # Sukka: segment directories, file stem names the category
    write(
        root / "ruleset.skk.moe/Clash/domainset/reject.txt",
        "# comment",
        "this_ruleset_is_made_by_sukkaw.ruleset.skk.moe",
        "+.ads.example",
        ".Tracker.Example",
    )
    write(
        root / "ruleset.skk.moe/Clash/non_ip/reject.txt",
        "DOMAIN-SUFFIX,this_ruleset_is_made_by_sukkaw.ruleset.skk.moe",
        "DOMAIN-SUFFIX,Ads.Example.NET",
        "DOMAIN-KEYWORD,adservice",
    )
    write(
        root / "ruleset.skk.moe/Clash/ip/reject.txt",
        "IP-CIDR,10.10.0.0/16",
        "IP-CIDR6,2001:db8::/32",
        "IP-ASN,AS64500",
    )
    write(root / "ruleset.skk.moe/Clash/README.md", "# docs")
    write(root / "ruleset.skk.moe/List/domainset/reject.conf", ".ads.example")
    write(root / "ruleset.skk.moe/List/non_ip/reject.conf", "DOMAIN-SUFFIX,ads.example.net")

    # blackmatrix7: group directories name the category
    write(
        root / "ios_rule_script/rule/Clash/Apple/Apple.list",
        "DOMAIN,apple.com",
        "DOMAIN-SUFFIX,icloud.com",
        "IP-CIDR,17.0.0.0/8,no-resolve",
        "IP-CIDR,1.2.3.4/32",
        "PROCESS-NAME,Music",
    )
    write(root / "ios_rule_script/rule/Clash/Apple/Apple.yaml", "payload:")
    write(root / "ios_rule_script/rule/Clash/Apple/Apple_No_Resolve.list", "DOMAIN,x.com")
    write(root / "ios_rule_script/rule/Surge/Apple/Apple.list", "DOMAIN-SUFFIX,icloud.com")
    write(root / "ios_rule_script/rule/Surge/Apple/Apple.sgmodule", "#!name=Apple")
    return root
