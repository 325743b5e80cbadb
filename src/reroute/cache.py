"""Cache backends the rule store can sit on.

A backend only knows keys and opaque bytes with a time-to-live. Backends may
raise anything; the rule store treats every failure as a miss.
"""

import asyncio
import hashlib
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

import boto3
import pytz
from botocore.exceptions import BotoCoreError, ClientError
from cachetools import TLRUCache
from werkzeug.http import parse_cache_control_header

from reroute.config import RedirectConfig
from reroute.errors import CacheError

LOG = logging.getLogger("reroute.cache")

S3_KEY_PREFIX = "reroute/"
S3_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[bytes]:
        ...

    async def put(self, key: str, data: bytes, ttl: int) -> None:
        ...


def _expires(_key, value, now):
    return now + value[1]


class MemoryCacheBackend:
    """Process-local cache with per-entry expiry."""

    def __init__(self, maxsize: int = 16, timer=time.monotonic) -> None:
        self._cache = TLRUCache(maxsize=maxsize, ttu=_expires, timer=timer)

    async def get(self, key: str) -> Optional[bytes]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        return entry[0]

    async def put(self, key: str, data: bytes, ttl: int) -> None:
        if ttl <= 0:
            self._cache.pop(key, None)
            return
        self._cache[key] = (data, ttl)


def get_s3_client(endpoint_url: Optional[str] = None, tls=threading.local()):
    """
    Always return the same S3 client to the same thread.

    S3 calls run in asyncio's worker threads, so each thread keeps its own
    client and connection pool.
    """
    # suppress `Found credentials in shared credentials file` messages
    logging.getLogger("botocore.credentials").setLevel(logging.WARNING)
    try:
        return tls.s3
    except AttributeError:
        kwargs = {}
        if endpoint_url:
            from botocore.config import Config
            kwargs["endpoint_url"] = endpoint_url
            kwargs["config"] = Config(s3={"addressing_style": "path"})
        tls.s3 = boto3.session.Session().client("s3", **kwargs)
        return tls.s3


def stored_object_is_fresh(response: dict[str, Any], now: Optional[datetime] = None) -> bool:
    """Check an S3 ``get_object`` response against its stored-at and max-age."""
    if now is None:
        now = datetime.now(tz=pytz.utc)
    stored = (response.get("Metadata") or {}).get("stored-at")
    if not stored:
        return False
    try:
        stored_at = datetime.fromtimestamp(float(stored), tz=pytz.utc)
    except ValueError:
        return False
    max_age = parse_cache_control_header(response.get("CacheControl")).max_age
    if max_age is None:
        return False
    return (now - stored_at) < timedelta(seconds=max_age)


class S3CacheBackend:
    """Keep the rule blob in an S3 (or S3-compatible) bucket.

    boto3 is blocking, so every call is pushed to a worker thread.
    """

    def __init__(self, bucket: str, *, endpoint_url: Optional[str] = None, client=None) -> None:
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self._client = client

    def client(self):
        if self._client is not None:
            return self._client
        return get_s3_client(self.endpoint_url)

    @staticmethod
    def object_key(key: str) -> str:
        return S3_KEY_PREFIX + hashlib.sha224(key.encode("utf-8")).hexdigest()

    async def get(self, key: str) -> Optional[bytes]:
        try:
            response = await asyncio.to_thread(
                self.client().get_object,
                Bucket=self.bucket,
                Key=self.object_key(key),
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in S3_MISSING_CODES:
                return None
            raise CacheError(f"S3 get failed bucket={self.bucket} code={code}") from e
        except BotoCoreError as e:
            raise CacheError(f"S3 get failed bucket={self.bucket}: {e}") from e

        if not stored_object_is_fresh(response):
            LOG.debug("S3 cache object is stale key=%s", key)
            return None
        return await asyncio.to_thread(response["Body"].read)

    async def put(self, key: str, data: bytes, ttl: int) -> None:
        try:
            await asyncio.to_thread(
                self.client().put_object,
                Bucket=self.bucket,
                Key=self.object_key(key),
                Body=data,
                ContentType="application/json",
                CacheControl=f"max-age={ttl}",
                Metadata={"stored-at": str(time.time()), "cache-key": key},
            )
        except (ClientError, BotoCoreError) as e:
            raise CacheError(f"S3 put failed bucket={self.bucket}: {e}") from e


def build_backend(config: RedirectConfig) -> CacheBackend:
    if config.cache_backend == "s3":
        return S3CacheBackend(config.s3_bucket, endpoint_url=config.s3_endpoint)
    return MemoryCacheBackend(maxsize=config.cache_max_entries)
