"""Tests for target/indicator normalization and identity hashing."""

from threatfeed.feed.models import Indicator, IndicatorType, TargetType
from threatfeed.feed.normalize import (
    identity_hash,
    normalize_domain,
    normalize_indicators,
    normalize_url,
    normalize_value,
)


class TestNormalizeUrl:
    def test_strips_scheme_query_fragment_and_case(self):
        assert normalize_url("http://Evil.com/a?x=1") == "evil.com/a"
        assert normalize_url("https://EVIL.com/a/#frag") == "evil.com/a"

    def test_schemeless_url_matches_full_url(self):
        assert normalize_url("evil.com/a") == normalize_url("http://Evil.com/a?x=1")

    def test_drops_www_and_default_ports(self):
        assert normalize_url("https://www.evil.com:443/login") == "evil.com/login"
        assert normalize_url("http://evil.com:8080/x") == "evil.com:8080/x"


class TestNormalizeOtherTypes:
    def test_domain(self):
        assert normalize_domain("WWW.Evil.Example.") == "evil.example"
        assert normalize_domain("https://evil.example/path") == "evil.example"

    def test_evm_address_is_lowercased(self):
        raw = "0xAbCdEf0123456789aBcDeF0123456789ABCDEF01"
        assert normalize_value(TargetType.WALLET, raw) == raw.lower()

    def test_base58_address_keeps_case(self):
        raw = "  9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin "
        assert normalize_value(TargetType.WALLET, raw) == raw.strip()

    def test_ip_is_canonical(self):
        assert normalize_value(TargetType.IP, "2001:0db8:0000::0001") == "2001:db8::1"

    def test_hex_hash_lowercased(self):
        assert normalize_value(IndicatorType.HASH, "ABCDEF12") == "abcdef12"


class TestIndicatorsAndIdentity:
    def test_normalize_indicators_dedupes(self):
        out = normalize_indicators(
            [
                Indicator(IndicatorType.DOMAIN, "Evil.com"),
                Indicator(IndicatorType.DOMAIN, "evil.com"),
                Indicator(IndicatorType.HASH, "AA11"),
            ]
        )
        assert [i.value for i in out] == ["evil.com", "aa11"]

    def test_identity_hash_ignores_indicator_order(self):
        a = identity_hash(TargetType.URL, "evil.com/a", ["x", "y"])
        b = identity_hash(TargetType.URL, "evil.com/a", ["y", "x", "x"])
        assert a == b

    def test_identity_hash_depends_on_target_type(self):
        assert identity_hash(TargetType.URL, "evil.com", []) != identity_hash(
            TargetType.DOMAIN, "evil.com", []
        )
