"""Cache-aside storage of the whole rule table under one synthetic key."""

import logging
import time
from typing import Callable, Optional

from reroute.cache import CacheBackend
from reroute.rules import RuleSet

LOG = logging.getLogger("reroute.store")


class RuleStore:
    """Read and write the cached RuleSet. Never raises on backend trouble.

    There is no single-flight lock: concurrent misses each fetch and each
    populate the cache. Fetches are idempotent, so the last writer wins with
    an equivalent table.
    """

    def __init__(
        self,
        backend: CacheBackend,
        key: str,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.key = key
        self.enabled = enabled
        self.clock = clock

    async def get(self) -> Optional[RuleSet]:
        if not self.enabled:
            return None
        try:
            data = await self.backend.get(self.key)
            if data is None:
                LOG.debug("Rule cache miss key=%s", self.key)
                return None
            rule_set = RuleSet.from_bytes(data)
        except Exception as e:
            LOG.warning("Rule cache read failed key=%s error=%s", self.key, e)
            return None
        if rule_set.is_expired(self.clock()):
            LOG.debug("Rule cache entry expired key=%s", self.key)
            return None
        LOG.debug("Rule cache hit key=%s rules=%s", self.key, len(rule_set))
        return rule_set

    async def put(self, rule_set: RuleSet, ttl: Optional[int] = None) -> None:
        if not self.enabled:
            return
        if ttl is None:
            ttl = rule_set.ttl
        try:
            await self.backend.put(self.key, rule_set.to_bytes(), ttl)
        except Exception as e:
            LOG.warning("Rule cache write failed key=%s error=%s", self.key, e)
            return
        LOG.debug("Rule cache populated key=%s rules=%s ttl=%s", self.key, len(rule_set), ttl)
