"""Per-request redirect decision.

``dispatch`` walks one request through the states below and always returns a
Decision; it never raises except for cancellation::

    RECEIVED -> CACHE_LOOKUP -> HIT  -> RESOLVE
                             -> MISS -> FETCH -> POPULATE -> RESOLVE
                                              -> PASSTHROUGH (fetch failed)
    RESOLVE -> REDIRECT | PASSTHROUGH (no match)

Any unexpected fault passes the request through. A redirect whose
destination cannot be built is the one case answered with an error.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import urlsplit

from reroute.config import RedirectConfig
from reroute.errors import RedirectConstructionError, UpstreamError
from reroute.resolver import build_redirect, resolve
from reroute.rules import RuleSet
from reroute.store import RuleStore

LOG = logging.getLogger("reroute.dispatcher")

REDIRECT_ERROR_STATUS = 500
REDIRECT_ERROR_BODY = "Redirect Error"


class State(enum.Enum):
    RECEIVED = "received"
    CACHE_LOOKUP = "cache_lookup"
    HIT = "hit"
    MISS = "miss"
    FETCH = "fetch"
    POPULATE = "populate"
    RESOLVE = "resolve"
    REDIRECT = "redirect"
    PASSTHROUGH = "passthrough"
    ERROR = "error"


class Action(enum.Enum):
    REDIRECT = "redirect"
    PASSTHROUGH = "passthrough"
    ERROR = "error"


@dataclass(frozen=True)
class InboundRequest:
    """The parts of an inbound request the engine looks at."""

    method: str
    scheme: str
    host: str
    path: str

    @classmethod
    def from_url(cls, url: str, method: str = "GET") -> "InboundRequest":
        parts = urlsplit(url)
        return cls(method=method, scheme=parts.scheme, host=parts.netloc, path=parts.path)


@dataclass(frozen=True)
class Decision:
    action: Action
    status_code: Optional[int] = None
    location: Optional[str] = None
    source: Optional[str] = None
    trail: tuple[State, ...] = ()
    reason: str = ""

    @property
    def state(self) -> Optional[State]:
        return self.trail[-1] if self.trail else None


class RuleSource(Protocol):
    async def fetch_rule_set(self) -> RuleSet:
        ...


@dataclass(frozen=True)
class Collaborators:
    fetcher: RuleSource
    store: RuleStore


def _passthrough(trail: list[State], reason: str, source: Optional[str] = None) -> Decision:
    trail.append(State.PASSTHROUGH)
    return Decision(Action.PASSTHROUGH, source=source, trail=tuple(trail), reason=reason)


async def dispatch(
    request: InboundRequest,
    config: RedirectConfig,
    collaborators: Collaborators,
) -> Decision:
    trail = [State.RECEIVED]
    source = None
    try:
        if not config.configured:
            return _passthrough(trail, "unconfigured")

        rule_set = None
        if config.cache_enabled:
            trail.append(State.CACHE_LOOKUP)
            rule_set = await collaborators.store.get()
            if rule_set is not None:
                trail.append(State.HIT)
                source = "cache"
            else:
                trail.append(State.MISS)

        if rule_set is None:
            trail.append(State.FETCH)
            try:
                rule_set = await collaborators.fetcher.fetch_rule_set()
            except UpstreamError as e:
                LOG.warning("Redirect rules unavailable, passing through path=%s error=%s", request.path, e)
                return _passthrough(trail, f"upstream_{e.kind.value}")
            source = "upstream"
            if config.cache_enabled:
                trail.append(State.POPULATE)
                await collaborators.store.put(rule_set)

        trail.append(State.RESOLVE)
        rule = resolve(request.path, rule_set)
        if rule is None:
            return _passthrough(trail, "no_match", source)

        redirect = build_redirect(rule, request.scheme, request.host)
        trail.append(State.REDIRECT)
        LOG.debug("Redirect match path=%s location=%s status=%s", request.path, redirect.location, redirect.status_code)
        return Decision(
            Action.REDIRECT,
            status_code=redirect.status_code,
            location=redirect.location,
            source=source,
            trail=tuple(trail),
            reason="match",
        )
    except RedirectConstructionError as e:
        LOG.error("Redirect destination invalid path=%s error=%s", request.path, e)
        trail.append(State.ERROR)
        return Decision(
            Action.ERROR,
            status_code=REDIRECT_ERROR_STATUS,
            source=source,
            trail=tuple(trail),
            reason=str(e),
        )
    except Exception:
        LOG.exception("Redirect handling failed, passing through path=%s", request.path)
        return _passthrough(trail, "fault", source)
