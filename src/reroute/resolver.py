"""Exact-match rule lookup and redirect destination composition."""

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from reroute.errors import RedirectConstructionError
from reroute.paths import normalize
from reroute.rules import RedirectRule, RuleSet

ABSOLUTE_SCHEMES = ("http", "https")
_ABSOLUTE_RE = re.compile(r"^(?:%s)://" % "|".join(ABSOLUTE_SCHEMES), re.IGNORECASE)
_UNSAFE_RE = re.compile(r"[\x00-\x20\x7f]")


@dataclass(frozen=True)
class RedirectDecision:
    status_code: int
    location: str
    rule: RedirectRule


def resolve(path: str, rule_set: RuleSet) -> Optional[RedirectRule]:
    """Return the rule for ``path``, or None. Case-sensitive, no prefixes."""
    return rule_set.get(normalize(path))


def is_absolute(target: str) -> bool:
    return bool(_ABSOLUTE_RE.match(target))


def compose_destination(target: str, scheme: str, host: str) -> str:
    """Turn a rule target into the absolute URL sent in ``Location``.

    Absolute http(s) targets pass through verbatim; anything else is joined
    onto the request's own origin with exactly one slash in between.
    """
    if is_absolute(target):
        destination = target
    else:
        if not host:
            raise RedirectConstructionError("request has no host to redirect relative to")
        destination = f"{scheme or 'https'}://{host}/{target.lstrip('/')}"

    if _UNSAFE_RE.search(destination):
        raise RedirectConstructionError(f"destination contains unsafe characters: {destination!r}")
    try:
        parts = urlsplit(destination)
        parts.port  # raises on a non-numeric port
    except ValueError as e:
        raise RedirectConstructionError(f"malformed destination {destination!r}: {e}") from e
    if parts.scheme.lower() not in ABSOLUTE_SCHEMES or not parts.hostname:
        raise RedirectConstructionError(f"destination has no host: {destination!r}")
    return destination


def build_redirect(rule: RedirectRule, scheme: str, host: str) -> RedirectDecision:
    return RedirectDecision(
        status_code=rule.type.status_code,
        location=compose_destination(rule.target, scheme, host),
        rule=rule,
    )
