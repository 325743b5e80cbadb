"""Command-line interface for Reroute."""

import asyncio
import logging
import os
import sys

import click
import httpx

from reroute.config import (
    CACHE_BACKENDS,
    DEFAULT_CACHE_TTL,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_MAX_PAGES,
    DEFAULT_PAGE_SIZE,
    RedirectConfig,
)
from reroute.errors import UpstreamError
from reroute.fetcher import UpstreamFetcher
from reroute.rules import RuleSet
from reroute.shapes import SHAPE_BY_NAME


async def fetch_once(config: RedirectConfig) -> RuleSet:
    async with httpx.AsyncClient(follow_redirects=False) as client:
        return await UpstreamFetcher(config, client).fetch_rule_set()


def check_upstream(config: RedirectConfig) -> None:
    """Fetch the rule set once and print it."""
    try:
        rule_set = asyncio.run(fetch_once(config))
    except UpstreamError as e:
        raise click.ClickException(f"Fetching redirects failed: {e}") from e
    for source, rule in sorted(rule_set.rules.items()):
        click.echo(f"{rule.type.status_code} {source} -> {rule.target}")
    click.echo(
        f"{len(rule_set)} rules, {rule_set.skipped} skipped, {rule_set.pages} page(s)",
        err=True,
    )


def set_options(config: RedirectConfig) -> list[str]:
    """Translate a config into mitmproxy ``--set`` arguments for the addon."""
    values = {
        "redirects_url": config.upstream_url,
        "redirects_host": config.upstream_host or "",
        "redirects_paginated": str(config.paginated).lower(),
        "redirects_page_size": config.page_size,
        "redirects_max_pages": config.max_pages,
        "redirects_entry_shape": config.entry_shape,
        "redirects_cache": str(config.cache_enabled).lower(),
        "redirects_cache_ttl": config.cache_ttl,
        "redirects_cache_key": config.cache_key,
        "redirects_cache_backend": config.cache_backend,
        "redirects_s3_bucket": config.s3_bucket or "",
        "redirects_s3_endpoint": config.s3_endpoint or "",
        "redirects_fetch_timeout": config.fetch_timeout,
    }
    args = []
    for name, value in values.items():
        args.extend(["--set", f"{name}={value}"])
    return args


@click.command()
@click.option(
    "-p", "--port",
    default=8080,
    type=int,
    envvar="REROUTE_PORT",
    help="Port to listen on (env: REROUTE_PORT, default: 8080)"
)
@click.option(
    "-b", "--bind",
    default="0.0.0.0",
    envvar="REROUTE_HOST",
    help="Address to bind to (env: REROUTE_HOST, default: 0.0.0.0)"
)
@click.option(
    "-m", "--mode",
    type=click.Choice(["regular", "transparent", "wireguard", "upstream"]),
    default="regular",
    help="Proxy mode (default: regular)"
)
@click.option(
    "--origin",
    envvar="REROUTE_ORIGIN",
    help="Run as a reverse proxy in front of this origin URL (env: REROUTE_ORIGIN)"
)
@click.option(
    "--upstream-url",
    envvar="REROUTE_UPSTREAM_URL",
    default="",
    help="URL of the redirect rules API (env: REROUTE_UPSTREAM_URL)"
)
@click.option(
    "--upstream-host",
    envvar="REROUTE_UPSTREAM_HOST",
    help="Host header for the rules API when it differs from the URL (env: REROUTE_UPSTREAM_HOST)"
)
@click.option(
    "--paginated/--single-page",
    default=True,
    envvar="REROUTE_PAGINATED",
    help="Fetch rules page by page, or as one document (default: paginated)"
)
@click.option(
    "--page-size",
    default=DEFAULT_PAGE_SIZE,
    type=int,
    envvar="REROUTE_PAGE_SIZE",
    show_default=True,
    help="Entries per page (env: REROUTE_PAGE_SIZE)"
)
@click.option(
    "--max-pages",
    default=DEFAULT_MAX_PAGES,
    type=int,
    envvar="REROUTE_MAX_PAGES",
    show_default=True,
    help="Refuse rule sets spread over more pages (env: REROUTE_MAX_PAGES)"
)
@click.option(
    "--entry-shape",
    type=click.Choice(sorted(SHAPE_BY_NAME)),
    default="auto",
    envvar="REROUTE_ENTRY_SHAPE",
    help="Entry encoding of the rules API (default: auto)"
)
@click.option(
    "--cache/--no-cache",
    "cache_enabled",
    default=True,
    envvar="REROUTE_CACHE",
    help="Cache the rule set between requests (default: on)"
)
@click.option(
    "--cache-ttl",
    default=DEFAULT_CACHE_TTL,
    type=int,
    envvar="REROUTE_CACHE_TTL",
    show_default=True,
    help="Seconds a fetched rule set stays cached (env: REROUTE_CACHE_TTL)"
)
@click.option(
    "--cache-key",
    envvar="REROUTE_CACHE_KEY",
    default="",
    help="Cache key of the rule set (env: REROUTE_CACHE_KEY, default: the rules API URL)"
)
@click.option(
    "--cache-backend",
    type=click.Choice(CACHE_BACKENDS),
    default="memory",
    envvar="REROUTE_CACHE_BACKEND",
    help="Where to cache the rule set (default: memory)"
)
@click.option(
    "--s3-bucket",
    envvar="S3_BUCKET",
    help="S3 bucket for the s3 cache backend (env: S3_BUCKET)"
)
@click.option(
    "--s3-endpoint",
    envvar="S3_ENDPOINT_URL",
    help="S3 endpoint URL for S3-compatible services (env: S3_ENDPOINT_URL)"
)
@click.option(
    "--fetch-timeout",
    default=DEFAULT_FETCH_TIMEOUT,
    type=float,
    envvar="REROUTE_FETCH_TIMEOUT",
    show_default=True,
    help="Timeout (seconds) for fetching the whole rule set (env: REROUTE_FETCH_TIMEOUT)"
)
@click.option(
    "--check",
    is_flag=True,
    default=False,
    help="Fetch the rule set once, print it and exit"
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    default=False,
    help="Enable verbose logging"
)
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug logging for proxy internals"
)
@click.option(
    "--debug-redirects",
    is_flag=True,
    default=False,
    help="Enable debug logging for the redirect engine only"
)
@click.option(
    "--web",
    is_flag=True,
    default=False,
    help="Enable mitmproxy web interface"
)
@click.version_option()
def main(
    port,
    bind,
    mode,
    origin,
    upstream_url,
    upstream_host,
    paginated,
    page_size,
    max_pages,
    entry_shape,
    cache_enabled,
    cache_ttl,
    cache_key,
    cache_backend,
    s3_bucket,
    s3_endpoint,
    fetch_timeout,
    check,
    verbose,
    debug,
    debug_redirects,
    web,
):
    """
    Reroute - edge redirects from a JSON rules API.

    Every request is matched against redirect rules fetched from the rules
    API and cached. Matches get a 301 (permanent) or 302 (temporary);
    everything else, including any failure to load the rules, is forwarded
    to origin unchanged.

    \b
    Examples:
        # Check what the rules API returns
        reroute --upstream-url https://cms.example/api/redirects --check

        # Reverse proxy in front of the site, rules as one JSON document
        reroute --origin https://www.example.com \\
            --upstream-url https://www.example.com/redirects.json --single-page

        # Share the cached rules between instances through S3
        reroute --upstream-url https://cms.example/api/redirects \\
            --cache-backend s3 --s3-bucket redirect-cache
    """
    if debug:
        logging.basicConfig(level=logging.DEBUG)
        logging.getLogger().setLevel(logging.DEBUG)
    if debug_redirects:
        redirect_logger = logging.getLogger("reroute")
        redirect_logger.setLevel(logging.DEBUG)
        if not redirect_logger.handlers:
            handler = logging.StreamHandler()
            handler.setLevel(logging.DEBUG)
            handler.setFormatter(logging.Formatter("DEBUG:%(name)s:%(message)s"))
            redirect_logger.addHandler(handler)
        redirect_logger.propagate = False

    try:
        config = RedirectConfig(
            upstream_url=upstream_url,
            upstream_host=upstream_host or None,
            paginated=paginated,
            page_size=page_size,
            max_pages=max_pages,
            entry_shape=entry_shape,
            cache_enabled=cache_enabled,
            cache_ttl=cache_ttl,
            cache_key=cache_key,
            cache_backend=cache_backend,
            s3_bucket=s3_bucket or None,
            s3_endpoint=s3_endpoint or None,
            fetch_timeout=fetch_timeout,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    if check:
        if not config.configured:
            raise click.UsageError("--check needs --upstream-url")
        check_upstream(config)
        return

    proxy_path = os.path.join(os.path.dirname(__file__), "proxy.py")

    args = [
        "mitmdump" if not web else "mitmweb",
        "-s", proxy_path,
        "--listen-host", bind,
        "--listen-port", str(port),
    ]

    if origin:
        args.extend(["--mode", f"reverse:{origin}", "--set", "keep_host_header=true"])
    elif mode != "regular":
        args.extend(["--mode", mode])
    args.extend(set_options(config))

    if verbose:
        args.extend(["-v"])
    if debug:
        args.extend(["--set", "termlog_verbosity=debug"])

    from mitmproxy.tools.main import mitmdump, mitmweb

    sys.argv = args
    if web:
        mitmweb()
    else:
        mitmdump()


if __name__ == "__main__":
    main()
