import asyncio
import logging
import os
import socket
from datetime import datetime
from typing import Optional

import httpx
from mitmproxy import connection, ctx, http
from mitmproxy.net.http import url

from reroute.cache import build_backend
from reroute.config import (
    DEFAULT_CACHE_TTL,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_MAX_PAGES,
    DEFAULT_PAGE_SIZE,
    RedirectConfig,
    env_flag,
)
from reroute.dispatcher import (
    REDIRECT_ERROR_BODY,
    Action,
    Collaborators,
    Decision,
    InboundRequest,
    dispatch,
)
from reroute.fetcher import UpstreamFetcher
from reroute.store import RuleStore

try:
    from reroute import __version__
except ImportError:
    __version__ = "dev"

LOG = logging.getLogger("reroute.proxy")

SERVER_NAME = "reroute"
SERVER_VERSION = __version__
_VIA_HOSTNAME = (socket.gethostname() or SERVER_NAME).strip() or SERVER_NAME
VIA_HEADER_VALUE = f"1.1 {_VIA_HOSTNAME} ({SERVER_NAME}/{SERVER_VERSION})"
DECISION_KEY = "reroute_decision"


def client_request(flow: http.HTTPFlow) -> InboundRequest:
    """
    The request as the client addressed it.

    In reverse mode mitmproxy points ``flow.request`` at the origin, so the
    scheme comes from the client connection and the host from the Host
    header, which reverse mode must keep (see Redirector.keep_client_host).
    """
    request = flow.request
    scheme = "https" if flow.client_conn.tls else "http"
    host = request.host_header or url.hostport(scheme, request.host, request.port)
    return InboundRequest(
        method=request.method,
        scheme=scheme,
        host=host,
        path=request.path.split("?", 1)[0],
    )


def make_response(decision: Decision) -> Optional[http.Response]:
    """Build the response to answer with, or None to forward to origin."""
    if decision.action is Action.REDIRECT:
        return http.Response.make(
            decision.status_code,
            b"",
            {"Location": decision.location, "Via": VIA_HEADER_VALUE},
        )
    if decision.action is Action.ERROR:
        return http.Response.make(
            decision.status_code,
            REDIRECT_ERROR_BODY,
            {"Content-Type": "text/plain", "Via": VIA_HEADER_VALUE},
        )
    return None


class Redirector:
    def __init__(self):
        self.config: Optional[RedirectConfig] = None
        self.collaborators: Optional[Collaborators] = None
        self.client: Optional[httpx.AsyncClient] = None
        # flow id -> (client connection id, dispatch task)
        self.inflight: dict[str, tuple[str, asyncio.Task]] = {}
        self.abandoned: set[asyncio.Task] = set()

    def load(self, loader):
        loader.add_option(
            name="redirects_url",
            typespec=str,
            default=os.environ.get("REROUTE_UPSTREAM_URL", ""),
            help="URL of the redirect rules API (empty disables redirects)",
        )
        loader.add_option(
            name="redirects_host",
            typespec=str,
            default=os.environ.get("REROUTE_UPSTREAM_HOST", ""),
            help="Host header to send to the rules API, if it differs from the URL",
        )
        loader.add_option(
            name="redirects_paginated",
            typespec=bool,
            default=env_flag("REROUTE_PAGINATED", True),
            help="Request the rules page by page with pagination[page]/pagination[pageSize]",
        )
        loader.add_option(
            name="redirects_page_size",
            typespec=int,
            default=int(os.environ.get("REROUTE_PAGE_SIZE", DEFAULT_PAGE_SIZE)),
            help="Entries per page when paginating",
        )
        loader.add_option(
            name="redirects_max_pages",
            typespec=int,
            default=int(os.environ.get("REROUTE_MAX_PAGES", DEFAULT_MAX_PAGES)),
            help="Refuse rule sets spread over more pages than this",
        )
        loader.add_option(
            name="redirects_entry_shape",
            typespec=str,
            default=os.environ.get("REROUTE_ENTRY_SHAPE", "auto"),
            help="Entry encoding: flat, enveloped or auto",
        )
        loader.add_option(
            name="redirects_cache",
            typespec=bool,
            default=env_flag("REROUTE_CACHE", True),
            help="Cache the rule set between requests",
        )
        loader.add_option(
            name="redirects_cache_ttl",
            typespec=int,
            default=int(os.environ.get("REROUTE_CACHE_TTL", DEFAULT_CACHE_TTL)),
            help="Seconds a fetched rule set stays cached",
        )
        loader.add_option(
            name="redirects_cache_key",
            typespec=str,
            default=os.environ.get("REROUTE_CACHE_KEY", ""),
            help="Cache key of the rule set (default: the rules API URL)",
        )
        loader.add_option(
            name="redirects_cache_backend",
            typespec=str,
            default=os.environ.get("REROUTE_CACHE_BACKEND", "memory"),
            help="Where to cache the rule set: memory or s3",
        )
        loader.add_option(
            name="redirects_s3_bucket",
            typespec=str,
            default=os.environ.get("S3_BUCKET", ""),
            help="S3 bucket for the s3 cache backend",
        )
        loader.add_option(
            name="redirects_s3_endpoint",
            typespec=str,
            default=os.environ.get("S3_ENDPOINT_URL", ""),
            help="Endpoint URL for S3-compatible services",
        )
        loader.add_option(
            name="redirects_fetch_timeout",
            typespec=float,
            default=float(os.environ.get("REROUTE_FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT)),
            help="Timeout (seconds) for fetching the whole rule set",
        )

    def configure(self, updated):
        if "mode" in updated or "keep_host_header" in updated:
            self.keep_client_host()
        if not any(name.startswith("redirects_") for name in updated):
            return
        try:
            config = RedirectConfig.from_options(ctx.options)
        except ValueError as e:
            LOG.error("Invalid redirect configuration, redirects disabled: %s", e)
            self.config = self.collaborators = None
            return
        self.setup(config)

    def keep_client_host(self) -> None:
        """Relative redirects are built on the client's Host, which reverse mode would rewrite."""
        if ctx.options.keep_host_header:
            return
        if any(spec.startswith("reverse:") for spec in ctx.options.mode):
            LOG.info("Reverse proxy mode, keeping the client Host header for redirects")
            ctx.options.keep_host_header = True

    def setup(self, config: RedirectConfig, backend=None) -> None:
        if self.client is None:
            self.client = httpx.AsyncClient(follow_redirects=False)
        self.config = config
        self.collaborators = Collaborators(
            fetcher=UpstreamFetcher(config, self.client),
            store=RuleStore(
                backend or build_backend(config),
                config.cache_key,
                enabled=config.cache_enabled,
            ),
        )
        if not config.configured:
            LOG.warning("No redirects URL configured, all requests pass through")
        else:
            LOG.info(
                "Redirects from %s paginated=%s shape=%s cache=%s/%s ttl=%s",
                config.upstream_url,
                config.paginated,
                config.entry_shape,
                config.cache_enabled,
                config.cache_backend,
                config.cache_ttl,
            )

    async def request(self, flow: http.HTTPFlow) -> None:
        if self.config is None or flow.response is not None:
            return
        inbound = client_request(flow)
        task = asyncio.ensure_future(dispatch(inbound, self.config, self.collaborators))
        self.inflight[flow.id] = (flow.client_conn.id, task)
        try:
            decision = await task
        except asyncio.CancelledError:
            if task not in self.abandoned:
                raise
            LOG.info("Client went away, dropped redirect lookup url=%s", flow.request.pretty_url)
            if flow.killable:
                flow.kill()
            return
        finally:
            self.inflight.pop(flow.id, None)
            self.abandoned.discard(task)

        flow.metadata[DECISION_KEY] = {
            "action": decision.action.value,
            "source": decision.source,
            "reason": decision.reason,
        }
        response = make_response(decision)
        if response is not None:
            flow.response = response

    def cancel(self, flow_id: str) -> None:
        entry = self.inflight.get(flow_id)
        if entry is None:
            return
        _, task = entry
        if not task.done():
            self.abandoned.add(task)
            task.cancel()

    def client_disconnected(self, client: connection.Client) -> None:
        for flow_id, (client_id, _) in list(self.inflight.items()):
            if client_id == client.id:
                self.cancel(flow_id)

    def error(self, flow: http.HTTPFlow) -> None:
        self.cancel(flow.id)

    def response(self, flow: http.HTTPFlow) -> None:
        decision = flow.metadata.get(DECISION_KEY)
        if decision is None:
            return
        self.log_response(flow, decision)

    async def done(self):
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    def log_response(self, flow: http.HTTPFlow, decision: dict) -> None:
        LOG.info(
            "[%s] %s %s %s %s/%s",
            datetime.now().strftime("%m/%d/%Y:%H:%M:%S"),
            flow.request.method,
            flow.request.url,
            flow.response.status_code,
            decision["action"],
            decision["source"] or "-",
        )


addons = [
    Redirector(),
]
