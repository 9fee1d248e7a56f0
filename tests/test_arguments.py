"""Command-line parsing and invocation validation."""

import pytest

import lighthouse_audit
from lighthouse_audit import UsageError, parse_args, validate_invocation


class TestParseArgs:
    def test_positional_url_defaults_to_desktop(self):
        assert parse_args(["https://example.com"]) == ("https://example.com", "desktop")

    def test_url_flag_with_equals(self):
        assert parse_args(["--url=https://example.com"]) == ("https://example.com", "desktop")

    def test_url_flag_with_separate_value(self):
        assert parse_args(["--url", "https://example.com"]) == ("https://example.com", "desktop")

    def test_url_flag_keeps_query_string(self):
        url, _ = parse_args(["--url=https://example.com/search?q=a&page=2"])
        assert url == "https://example.com/search?q=a&page=2"

    def test_platform_is_lowercased(self):
        assert parse_args(["--url=https://example.com", "--platform=MOBILE"])[1] == "mobile"
        assert parse_args(["https://example.com", "--platform", "Desktop"])[1] == "desktop"

    def test_platform_value_is_not_taken_as_url(self):
        assert parse_args(["--platform", "mobile", "https://example.com"]) == (
            "https://example.com",
            "mobile",
        )

    def test_url_flag_wins_over_positional(self):
        assert parse_args(["https://a.example", "--url=https://b.example"])[0] == "https://b.example"
        assert parse_args(["--url=https://b.example", "https://a.example"])[0] == "https://b.example"

    def test_first_positional_is_used(self):
        assert parse_args(["https://a.example", "https://b.example"])[0] == "https://a.example"

    def test_unknown_flags_are_ignored(self):
        assert parse_args(["--verbose", "https://example.com", "--depth=3"]) == (
            "https://example.com",
            "desktop",
        )

    def test_flag_prefixes_are_not_abbreviations(self):
        assert parse_args(["https://example.com", "--plat=mobile"]) == ("https://example.com", "desktop")
        assert parse_args(["--u=ftp://other", "https://example.com"])[0] == "https://example.com"

    def test_trailing_flag_without_value_is_ignored(self):
        assert parse_args(["https://example.com", "--platform"]) == ("https://example.com", "desktop")
        assert parse_args(["--url"]) == (None, "desktop")

    def test_no_arguments(self):
        assert parse_args([]) == (None, "desktop")


class TestValidateInvocation:
    def test_valid(self):
        invocation = validate_invocation("https://example.com", "mobile")
        assert invocation.url == "https://example.com"
        assert invocation.platform == "mobile"

    def test_missing_url_shows_usage(self):
        with pytest.raises(UsageError) as excinfo:
            validate_invocation(None, "desktop")
        assert excinfo.value.show_usage
        assert "Please provide a URL" in str(excinfo.value)

    @pytest.mark.parametrize(
        "url",
        ["example.com", "not a url", "http://", "https://exa mple.com", "http://[::1", "https://example.com:99999"],
    )
    def test_invalid_url(self, url):
        with pytest.raises(UsageError, match="Invalid URL"):
            validate_invocation(url, "desktop")

    @pytest.mark.parametrize(
        "url",
        [
            "https://example.com",
            "http://localhost:8080/a?b=c",
            "file:///tmp/page.html",
            "https://example.com/a b",
            "https://example.com/?q=a b",
            "http:example.com",
            "http://[::1]:8080/",
            "mailto:someone@example.com",
        ],
    )
    def test_accepts_generic_urls(self, url):
        assert lighthouse_audit.is_valid_url(url)

    @pytest.mark.parametrize("platform", ["tablet", "", "desk top", "mobiles"])
    def test_invalid_platform(self, platform):
        with pytest.raises(UsageError, match="Invalid platform"):
            validate_invocation("https://example.com", platform)


class TestUsageExitCodes:
    @pytest.fixture
    def launches(self, monkeypatch):
        calls = []

        def fail_launch(port):
            calls.append(port)
            raise AssertionError("browser must not be launched")

        monkeypatch.setattr(lighthouse_audit, "audit_browser", fail_launch)
        return calls

    def test_missing_url_exits_one_with_usage(self, launches, tmp_path, capsys):
        assert lighthouse_audit.run([], output_dir=tmp_path) == 1
        out, err = capsys.readouterr()
        assert "Please provide a URL to audit" in err
        assert "Usage:" in out
        assert launches == []
        assert list(tmp_path.iterdir()) == []

    def test_invalid_url_exits_one(self, launches, tmp_path, capsys):
        assert lighthouse_audit.run(["not-a-url"], output_dir=tmp_path) == 1
        assert "Invalid URL provided" in capsys.readouterr().err
        assert launches == []

    def test_invalid_platform_exits_one(self, launches, tmp_path, capsys):
        assert lighthouse_audit.run(["https://example.com", "--platform=tv"], output_dir=tmp_path) == 1
        assert "Invalid platform" in capsys.readouterr().err
        assert launches == []


class TestUrlHost:
    @pytest.mark.parametrize(
        ("url", "host"),
        [
            ("http:example.com", "example.com"),
            ("https:///Example.COM/path", "example.com"),
            ("https://example.com/a b", "example.com"),
            ("http://[0:0:0:0:0:0:0:1]:8080/", "[::1]"),
            ("file://localhost/etc/hosts", ""),
            ("mailto:someone@example.com", ""),
            ("  https://example.com  ", "example.com"),
        ],
    )
    def test_host_matches_browser_parsing(self, url, host):
        assert lighthouse_audit.url_host(url) == host

    @pytest.mark.parametrize("url", ["https://exa mple.com/", "https://ex<ample.com/", "http://[::zz]/", "https:"])
    def test_rejects_bad_authority(self, url):
        with pytest.raises(ValueError):
            lighthouse_audit.url_host(url)
