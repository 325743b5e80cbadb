"""Tests for the reroute command line."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from reroute.cli import main, set_options
from reroute.config import RedirectConfig
from reroute.errors import UpstreamError, UpstreamErrorKind
from reroute.rules import RedirectRule, RedirectType, RuleSet

MODULE = "reroute.cli"
RULES_URL = "https://cms.example/api/redirects"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("REROUTE_UPSTREAM_URL", "REROUTE_CACHE_BACKEND", "S3_BUCKET", "REROUTE_ORIGIN"):
        monkeypatch.delenv(name, raising=False)


def option_values(args):
    values = {}
    for flag, value in zip(args[::2], args[1::2]):
        assert flag == "--set"
        name, _, setting = value.partition("=")
        values[name] = setting
    return values


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestCLIValidation:
    def test_s3_backend_without_bucket_errors(self):
        result = CliRunner().invoke(main, [
            "--upstream-url", RULES_URL,
            "--cache-backend", "s3",
        ])
        assert result.exit_code != 0
        assert "needs a bucket" in result.output

    def test_zero_page_size_errors(self):
        result = CliRunner().invoke(main, ["--upstream-url", RULES_URL, "--page-size", "0"])
        assert result.exit_code != 0
        assert "page_size" in result.output

    def test_unknown_shape_rejected(self):
        result = CliRunner().invoke(main, ["--entry-shape", "xml"])
        assert result.exit_code != 0

    def test_check_needs_url(self):
        result = CliRunner().invoke(main, ["--check"])
        assert result.exit_code != 0
        assert "--check needs --upstream-url" in result.output


# ---------------------------------------------------------------------------
# --check
# ---------------------------------------------------------------------------

class TestCheck:
    def test_prints_rules(self):
        rule_set = RuleSet.from_rules(
            [
                RedirectRule("/old", "/new", RedirectType.PERMANENT),
                RedirectRule("/promo", "https://ext.example/sale"),
            ],
            skipped=1,
            pages=2,
        )

        async def fake_fetch(config):
            assert config.upstream_url == RULES_URL
            assert not config.paginated
            return rule_set

        with patch(f"{MODULE}.fetch_once", fake_fetch):
            result = CliRunner().invoke(main, ["--upstream-url", RULES_URL, "--single-page", "--check"])

        assert result.exit_code == 0
        assert "301 /old -> /new" in result.output
        assert "302 /promo -> https://ext.example/sale" in result.output
        assert "2 rules, 1 skipped, 2 page(s)" in result.output

    def test_upstream_failure_exits_nonzero(self):
        async def fake_fetch(config):
            raise UpstreamError(UpstreamErrorKind.STATUS, "returned 502")

        with patch(f"{MODULE}.fetch_once", fake_fetch):
            result = CliRunner().invoke(main, ["--upstream-url", RULES_URL, "--check"])

        assert result.exit_code == 1
        assert "Fetching redirects failed: status: returned 502" in result.output


# ---------------------------------------------------------------------------
# Launching mitmproxy
# ---------------------------------------------------------------------------

class TestLaunch:
    def test_reverse_proxy_args(self):
        with patch("mitmproxy.tools.main.mitmdump") as mitmdump, \
             patch(f"{MODULE}.sys") as mock_sys:
            result = CliRunner().invoke(main, [
                "--origin", "https://www.example.com",
                "--upstream-url", RULES_URL,
                "--port", "9090",
                "--no-cache",
            ])

        assert result.exit_code == 0, result.output
        mitmdump.assert_called_once_with()
        args = mock_sys.argv
        assert args[0] == "mitmdump"
        assert args[args.index("-s") + 1].endswith("proxy.py")
        assert args[args.index("--listen-port") + 1] == "9090"
        assert args[args.index("--mode") + 1] == "reverse:https://www.example.com"
        assert f"redirects_url={RULES_URL}" in args
        assert "redirects_cache=false" in args
        assert "keep_host_header=true" in args

    def test_web_interface(self):
        with patch("mitmproxy.tools.main.mitmweb") as mitmweb, \
             patch(f"{MODULE}.sys") as mock_sys:
            result = CliRunner().invoke(main, ["--web", "--mode", "transparent"])

        assert result.exit_code == 0, result.output
        mitmweb.assert_called_once_with()
        assert mock_sys.argv[0] == "mitmweb"
        assert mock_sys.argv[mock_sys.argv.index("--mode") + 1] == "transparent"
        assert "keep_host_header=true" not in mock_sys.argv


def test_set_options_round_trip_names():
    config = RedirectConfig(
        upstream_url=RULES_URL,
        upstream_host="cms.internal",
        paginated=False,
        page_size=10,
        cache_ttl=120,
    )
    values = option_values(set_options(config))

    assert values["redirects_url"] == RULES_URL
    assert values["redirects_host"] == "cms.internal"
    assert values["redirects_paginated"] == "false"
    assert values["redirects_page_size"] == "10"
    assert values["redirects_cache_ttl"] == "120"
    assert values["redirects_cache_key"] == RULES_URL
    assert values["redirects_s3_bucket"] == ""
