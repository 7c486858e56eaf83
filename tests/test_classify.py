import pytest

from ruleset_builder.classify import (
    Classification,
    ClassifyMode,
    DefaultBucket,
    ErrorScope,
    MalformedRuleError,
    classify,
    classify_for_merge,
    classify_lines,
    normalize_merge_domain,
)


@pytest.mark.parametrize(
    "value",
    ["1.2.3.4", "10.0.0.0/8", "0.0.0.0/0", "2001:db8::1", "2001:db8::/32", "::/0"],
)
def test_bare_ip_and_cidr_are_ip(value):
    item = classify(value, "test")
    assert item.classification is Classification.IP
    assert item.line == value


@pytest.mark.parametrize(
    "raw, expected",
    [
        (".Example.COM", "example.com"),
        ("Sub.Example.com", "sub.example.com"),
        ("+.ads.example", "+.ads.example"),
        ("10.0.0.0/33", "10.0.0.0/33"),
        ("..double.dot", ".double.dot"),
    ],
)
def test_bare_non_ip_is_normalized_domain(raw, expected):
    item = classify(raw, "test")
    assert item.classification is Classification.DOMAIN
    assert item.line == expected


@pytest.mark.parametrize("line", ["", "   ", "# comment", "  // note", "#DOMAIN,a.com"])
def test_blank_and_comment_lines_are_dropped(line):
    assert classify(line, "test") is None


def test_signature_marker_lines_are_dropped():
    assert classify("DOMAIN,this_ruleset_is_made_by_sukkaw.ruleset.skk.moe", "t") is None
    assert classify("this_ruleset_is_made_by_sukkaw.ruleset.skk.moe", "t") is None


def test_no_resolve_cidr_is_never_ip():
    item = classify("IP-CIDR,10.0.0.0/8,no-resolve", "test")
    assert item.classification is Classification.NON_IP
    assert item.line == "IP-CIDR,10.0.0.0/8,no-resolve"
    assert classify("ip-cidr6,2001:db8::/32,No-Resolve", "t").classification is Classification.NON_IP


def test_cidr_rules_are_ip_and_keep_the_line():
    item = classify("  IP-CIDR, 10.0.0.0/8  ", "test")
    assert item.classification is Classification.IP
    assert item.line == "IP-CIDR, 10.0.0.0/8"
    assert classify("IP-CIDR6,2001:db8::1", "t").classification is Classification.IP


@pytest.mark.parametrize("line", ["IP-ASN,AS12345", "IP-ASN,12345", "ip-asn,as1,no-resolve"])
def test_asn_rules_are_ip(line):
    assert classify(line, "test").classification is Classification.IP


def test_invalid_asn_aborts_the_run():
    with pytest.raises(MalformedRuleError) as excinfo:
        classify("IP-ASN,notanumber", "rules/a.list")
    assert excinfo.value.scope is ErrorScope.RUN
    assert excinfo.value.origin == "rules/a.list"
    assert "rules/a.list" in str(excinfo.value)


def test_invalid_cidr_payload_aborts_the_run():
    with pytest.raises(MalformedRuleError) as excinfo:
        classify("IP-CIDR,example.com", "a.list")
    assert excinfo.value.scope is ErrorScope.RUN
    with pytest.raises(MalformedRuleError):
        classify("IP-CIDR,10.0.0.0/40", "a.list")


@pytest.mark.parametrize(
    "line",
    [
        "DOMAIN,apple.com",
        "DOMAIN-SUFFIX,apple.com",
        "domain-keyword,apple",
        "DOMAIN-WILDCARD,*.apple.com",
        "USER-AGENT,Music*",
        "URL-REGEX,^https?://a\\.com",
        "PROCESS-NAME,Music",
    ],
)
def test_non_resolving_types_are_non_ip(line):
    item = classify(line, "test")
    assert item.classification is Classification.NON_IP
    assert item.line == line


def test_unknown_type_uses_the_payload_as_domain():
    item = classify("HOST-SUFFIX,.Example.COM", "test")
    assert item.classification is Classification.DOMAIN
    assert item.line == "example.com"


def test_empty_bare_value_only_drops_the_file():
    with pytest.raises(MalformedRuleError) as excinfo:
        classify(".", "a.list")
    assert excinfo.value.scope is ErrorScope.FILE


def test_empty_typed_domain_aborts_the_run():
    with pytest.raises(MalformedRuleError) as excinfo:
        classify("HOST,.", "a.list")
    assert excinfo.value.scope is ErrorScope.RUN


def test_lenient_mode_falls_back_instead_of_raising():
    lenient = ClassifyMode.LENIENT
    assert classify("IP-CIDR,example.com", "t", lenient).classification is Classification.NON_IP
    assert classify("IP-ASN,notanumber", "t", lenient).classification is Classification.NON_IP
    assert classify(".", "t", lenient) is None
    assert classify("HOST,.", "t", lenient) is None


def test_classify_lines_keeps_order_per_bucket():
    segments = classify_lines(
        [
            "b.example",
            "DOMAIN-SUFFIX,x.example",
            "IP-CIDR,1.0.0.0/8",
            "a.example",
            "# comment",
            "DOMAIN,y.example",
            "9.9.9.9",
        ],
        "test",
    )
    assert segments.domainset == ["b.example", "a.example"]
    assert segments.non_ip == ["DOMAIN-SUFFIX,x.example", "DOMAIN,y.example"]
    assert segments.ip == ["IP-CIDR,1.0.0.0/8", "9.9.9.9"]
    assert len(segments) == 6


def test_classify_lines_calls_checkpoint_per_line():
    calls = []
    classify_lines(["a.com", "# c", "b.com"], "t", checkpoint=lambda: calls.append(1))
    assert len(calls) == 3


# -------------------------
# Unified-pass classifier
# -------------------------


def test_suffix_rule_always_gets_wildcard():
    item = classify_for_merge("DOMAIN-SUFFIX,Example.COM", DefaultBucket.MIXED)
    assert item.classification is Classification.DOMAIN
    assert item.line == "+.example.com"
    item = classify_for_merge("DOMAIN-SUFFIX,.Example.COM", DefaultBucket.MIXED)
    assert item.line == "+.example.com"


def test_domain_rule_is_bare_domain():
    item = classify_for_merge("DOMAIN,WWW.Example.com", DefaultBucket.MIXED)
    assert item.classification is Classification.DOMAIN
    assert item.line == "www.example.com"


def test_existing_wildcard_only_kept_when_requested():
    assert classify_for_merge("+.Example.com", DefaultBucket.DOMAIN).line == "example.com"
    kept = classify_for_merge("+.Example.com", DefaultBucket.DOMAIN, preserve_wildcard=True)
    assert kept.line == "+.example.com"
    assert classify_for_merge("DOMAIN,+.a.com", DefaultBucket.MIXED, True).line == "+.a.com"
    # no wildcard in, none out
    assert classify_for_merge(".a.com", DefaultBucket.DOMAIN, True).line == "a.com"


def test_cidr_rules_yield_their_first_token():
    item = classify_for_merge("IP-CIDR,1.2.3.0/24,no-resolve", DefaultBucket.MIXED)
    assert item.classification is Classification.IP
    assert item.line == "1.2.3.0/24"
    assert classify_for_merge("IP-CIDR6,2001:db8::/32", DefaultBucket.MIXED).line == "2001:db8::/32"


def test_unparseable_cidr_falls_back_to_default_bucket():
    item = classify_for_merge("IP-CIDR,garbage", DefaultBucket.MIXED)
    assert item.classification is Classification.NON_IP
    assert item.line == "IP-CIDR,garbage"


def test_mixed_default_detects_ip_then_non_ip():
    assert classify_for_merge("1.2.3.4", DefaultBucket.MIXED).classification is Classification.IP
    assert classify_for_merge("10.0.0.0/8", DefaultBucket.MIXED).classification is Classification.IP
    item = classify_for_merge("DOMAIN-KEYWORD,google", DefaultBucket.MIXED)
    assert item.classification is Classification.NON_IP
    assert item.line == "DOMAIN-KEYWORD,google"
    assert classify_for_merge("IP-ASN,13335", DefaultBucket.MIXED).classification is Classification.NON_IP
    assert classify_for_merge("bare.example", DefaultBucket.MIXED).classification is Classification.NON_IP


def test_domain_default_normalizes_unmatched_lines():
    item = classify_for_merge(".Example.com", DefaultBucket.DOMAIN)
    assert item.classification is Classification.DOMAIN
    assert item.line == "example.com"


def test_merge_classifier_never_raises_on_empty_values():
    assert classify_for_merge("DOMAIN-SUFFIX,.", DefaultBucket.MIXED) is None
    assert classify_for_merge("+.", DefaultBucket.DOMAIN) is None
    assert classify_for_merge("# header", DefaultBucket.DOMAIN) is None


def test_normalize_merge_domain():
    assert normalize_merge_domain("  +.A.B ", keep_wildcard=False) == "a.b"
    assert normalize_merge_domain("+.A.B", keep_wildcard=True) == "+.a.b"
    assert normalize_merge_domain(".A.B", keep_wildcard=True) == "a.b"
