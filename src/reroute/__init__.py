"""
Reroute - edge redirects for mitmproxy.

Looks every inbound request up in a table of redirect rules fetched from an
upstream JSON API (flat or enveloped entries, optionally paginated), caches
the table, and answers with a 301/302 on a match. Anything else, including
every internal failure, is forwarded to origin untouched.

Note: Do NOT import from proxy at module level - it imports mitmproxy's
runtime and is meant to be loaded by mitmproxy as an addon script.
"""

__version__ = "0.1.0"

from reroute.config import RedirectConfig
from reroute.dispatcher import Action, Collaborators, Decision, InboundRequest, State, dispatch
from reroute.errors import (
    CacheError,
    RedirectConstructionError,
    RerouteError,
    UpstreamError,
    UpstreamErrorKind,
    ValidationError,
)
from reroute.fetcher import UpstreamFetcher, validate_page
from reroute.paths import normalize
from reroute.resolver import build_redirect, compose_destination, resolve
from reroute.rules import RedirectRule, RedirectType, RuleSet
from reroute.shapes import AutoEntryShape, EnvelopedEntryShape, FlatEntryShape
from reroute.store import RuleStore


def get_proxy_path() -> str:
    """Return the path to the proxy.py file for use with mitmproxy -s."""
    import os
    return os.path.join(os.path.dirname(__file__), "proxy.py")


__all__ = [
    "__version__",
    "get_proxy_path",
    "Action",
    "AutoEntryShape",
    "CacheError",
    "Collaborators",
    "Decision",
    "EnvelopedEntryShape",
    "FlatEntryShape",
    "InboundRequest",
    "RedirectConfig",
    "RedirectConstructionError",
    "RedirectRule",
    "RedirectType",
    "RerouteError",
    "RuleSet",
    "RuleStore",
    "State",
    "UpstreamError",
    "UpstreamErrorKind",
    "UpstreamFetcher",
    "ValidationError",
    "build_redirect",
    "compose_destination",
    "dispatch",
    "normalize",
    "resolve",
    "validate_page",
]
