import pytest

from qrcheck.workflows.engine_utils import (
    idna_decode,
    idna_normalize,
    is_ip_literal,
    levenshtein,
    match_domain,
    normalize_url,
    parse_candidate,
    redact_url,
    registrable_domain,
    top_level_label,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("HTTPS://Example.COM", "https://example.com/"),
        ("https://example.com:443/a?b=1#frag", "https://example.com/a?b=1"),
        ("http://example.com:80", "http://example.com/"),
        ("http://example.com:8080/x", "http://example.com:8080/x"),
        ("https://example.com/Path/With/Case", "https://example.com/Path/With/Case"),
    ],
)
def test_normalize_url(raw: str, expected: str) -> None:
    assert normalize_url(raw) == expected


def test_parse_candidate_accepts_absolute_urls_only() -> None:
    assert parse_candidate("https://example.com/x") is not None
    assert parse_candidate("javascript:alert(1)") is not None
    assert parse_candidate("data:text/html,<b>hi</b>") is not None
    assert parse_candidate("example.com/x") is None
    assert parse_candidate("not a url") is None
    assert parse_candidate("https://") is None
    assert parse_candidate("https://example.com:99999/") is None
    assert parse_candidate("mailto:") is None
    assert parse_candidate("") is None


def test_redact_url_hides_secret_query_values() -> None:
    redacted = redact_url("https://example.com/reset?token=abc123&user=bob")

    assert "abc123" not in redacted
    assert "token=•••" in redacted
    assert "user=bob" in redacted


def test_redact_url_shortens_long_values_and_keeps_plain_urls() -> None:
    long_value = "x" * 80
    assert redact_url(f"https://example.com/?q={long_value}") == "https://example.com/?q=xxxx…"
    assert redact_url("https://example.com/plain") == "https://example.com/plain"


def test_match_domain_matches_subdomains_not_suffixes() -> None:
    assert match_domain("go.bit.ly", ["bit.ly"]) == "bit.ly"
    assert match_domain("BIT.LY", ["bit.ly"]) == "bit.ly"
    assert match_domain("notbit.ly", ["bit.ly"]) is None
    assert match_domain("a.go.bit.ly", {"bit.ly", "go.bit.ly"}) == "go.bit.ly"
    assert match_domain("", {"bit.ly"}) is None


def test_registrable_domain_uses_public_suffixes() -> None:
    assert registrable_domain("a.b.example.co.uk") == "example.co.uk"
    assert registrable_domain("www.example.com") == "example.com"
    assert registrable_domain("localhost") == "localhost"


def test_idna_round_trip() -> None:
    encoded = idna_normalize("Bücher.example")
    assert encoded == "xn--bcher-kva.example"
    assert idna_decode(encoded) == "bücher.example"


def test_top_level_label_and_ip_literals() -> None:
    assert top_level_label("login.example.zip") == "zip"
    assert top_level_label("localhost") == ""
    assert is_ip_literal("192.0.2.1")
    assert is_ip_literal("[2001:db8::1]")
    assert not is_ip_literal("example.com")


@pytest.mark.parametrize(
    "a,b,distance",
    [("paypal", "paypal", 0), ("paypa1", "paypal", 1), ("gooogle", "google", 1), ("amzn", "amazon", 2), ("", "abc", 3)],
)
def test_levenshtein(a: str, b: str, distance: int) -> None:
    assert levenshtein(a, b) == distance
