"""Error types raised by the redirect engine.

Only RedirectConstructionError ever reaches a client (as a 500). Everything
else is recovered inside the engine and degrades to passthrough.
"""

import enum


class RerouteError(Exception):
    pass


class UpstreamErrorKind(enum.Enum):
    NETWORK = "network"
    STATUS = "status"
    MALFORMED_JSON = "malformed_json"
    MISSING_DATA = "missing_data"
    TIMEOUT = "timeout"
    PAGE_LIMIT = "page_limit"


class UpstreamError(RerouteError):
    """The rule source could not produce a complete rule set."""

    def __init__(self, kind: UpstreamErrorKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message


class CacheError(RerouteError):
    """A cache backend read or write failed, or returned an unusable blob."""

    pass


class ValidationError(RerouteError):
    """A single upstream entry was rejected. Never aborts a fetch."""

    pass


class RedirectConstructionError(RerouteError):
    """The composed redirect destination is not a usable absolute URL."""

    pass
