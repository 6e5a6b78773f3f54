"""Tests for affiliate network fingerprinting."""

from __future__ import annotations

from workers.link_audit.network_detector import NetworkDetector, NetworkProfile, hostname


class TestAffiliateParams:

    def test_known_params_found(self):
        detector = NetworkDetector()
        url = "https://www.amazon.com/dp/B0001?tag=creator-20&ascsubtag=yt&th=1"
        assert detector.affiliate_params(url) == ["tag", "ascsubtag"]

    def test_param_names_are_case_insensitive(self):
        assert NetworkDetector().affiliate_params("https://shop.example.com/?AffID=42") == ["AffID"]

    def test_empty_values_ignored(self):
        assert NetworkDetector().affiliate_params("https://shop.example.com/p?ref=&aff=") == []

    def test_no_query(self):
        assert NetworkDetector().affiliate_params("https://shop.example.com/p") == []


class TestDetectNetwork:

    def test_merchant_host_beats_generic_params(self):
        profile = NetworkDetector().detect_network([
            "https://bit.ly/abc",
            "https://www.amazon.com/dp/B0001?tag=creator-20",
        ])
        assert profile.name == "Amazon Associates"

    def test_redirector_host(self):
        profile = NetworkDetector().detect_network(["https://click.linksynergy.com/deeplink?id=x"])
        assert profile.name == "Rakuten"
        assert profile.cookie_window_days == 7

    def test_params_only(self):
        profile = NetworkDetector().detect_network(["https://shop.example.com/p?irclickid=abc"])
        assert profile.name == "Impact"

    def test_unknown_chain(self):
        assert NetworkDetector().detect_network(["https://shop.example.com/p"]) is None

    def test_custom_profiles(self):
        detector = NetworkDetector([NetworkProfile(name="Partnerize", params=frozenset({"clickref"}))])
        assert detector.affiliate_params("https://shop.example.com/?clickref=x&tag=y") == ["clickref"]
        assert detector.detect_network(["https://shop.example.com/?clickref=x"]).name == "Partnerize"

    def test_is_redirector_matches_subdomains(self):
        detector = NetworkDetector()
        assert detector.is_redirector("https://www.anrdoezrs.net/click-1")
        assert not detector.is_redirector("https://www.amazon.com/dp/B0001")


def test_hostname_strips_www():
    assert hostname("https://WWW.Amazon.com/dp/B0001") == "amazon.com"
    assert hostname("not a url") == ""
