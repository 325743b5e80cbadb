"""Redirect rule value objects and the cached rule table."""

import enum
import json
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from reroute.errors import CacheError
from reroute.paths import normalize


class RedirectType(enum.Enum):
    PERMANENT = "permanent"
    TEMPORARY = "temporary"

    @classmethod
    def parse(cls, value: Optional[str]) -> "RedirectType":
        """Anything that is not exactly ``permanent`` is a temporary redirect."""
        if value == cls.PERMANENT.value:
            return cls.PERMANENT
        return cls.TEMPORARY

    @property
    def status_code(self) -> int:
        return 301 if self is RedirectType.PERMANENT else 302


@dataclass(frozen=True)
class RedirectRule:
    """A single source path -> destination mapping.

    ``source`` is always stored normalized; ``target`` is kept verbatim.
    """

    source: str
    target: str
    type: RedirectType = RedirectType.TEMPORARY

    def __post_init__(self) -> None:
        object.__setattr__(self, "source", normalize(self.source))


@dataclass(frozen=True)
class RuleSet:
    """The whole rule table, fetched and cached as one unit."""

    rules: Mapping[str, RedirectRule]
    fetched_at: float = field(default_factory=time.time)
    ttl: int = 0
    skipped: int = 0
    pages: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", MappingProxyType(dict(self.rules)))

    @classmethod
    def from_rules(cls, rules: Iterable[RedirectRule], **kwargs) -> "RuleSet":
        """Build a table from rules in order; later duplicates replace earlier ones."""
        table: dict[str, RedirectRule] = {}
        for rule in rules:
            table[rule.source] = rule
        return cls(rules=table, **kwargs)

    def __len__(self) -> int:
        return len(self.rules)

    def get(self, path: str) -> Optional[RedirectRule]:
        return self.rules.get(path)

    def expires_at(self) -> float:
        return self.fetched_at + self.ttl

    def is_expired(self, now: Optional[float] = None) -> bool:
        if now is None:
            now = time.time()
        return now >= self.expires_at()

    def to_bytes(self) -> bytes:
        payload = {
            "fetchedAt": self.fetched_at,
            "ttl": self.ttl,
            "rules": {
                source: {"to": rule.target, "type": rule.type.value}
                for source, rule in self.rules.items()
            },
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "RuleSet":
        try:
            payload = json.loads(data)
            rules = [
                RedirectRule(source, item["to"], RedirectType.parse(item.get("type")))
                for source, item in payload["rules"].items()
            ]
            return cls.from_rules(
                rules,
                fetched_at=float(payload["fetchedAt"]),
                ttl=int(payload["ttl"]),
            )
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise CacheError(f"Corrupt cached rule set: {e}") from e
