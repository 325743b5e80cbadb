import io
from datetime import datetime, timedelta

import pytest
import pytz
from botocore.exceptions import ClientError, EndpointConnectionError

from reroute.cache import MemoryCacheBackend, S3CacheBackend, build_backend, stored_object_is_fresh
from reroute.config import RedirectConfig
from reroute.errors import CacheError
from reroute.rules import RedirectRule, RuleSet
from reroute.store import RuleStore

pytestmark = pytest.mark.anyio

KEY = "https://cms.example/api/redirects"


class FakeBackend:
    def __init__(self):
        self.data = {}
        self.puts = []

    async def get(self, key):
        return self.data.get(key)

    async def put(self, key, data, ttl):
        self.puts.append((key, ttl))
        self.data[key] = data


class BrokenBackend:
    async def get(self, key):
        raise ConnectionError("cache down")

    async def put(self, key, data, ttl):
        raise CacheError("cache down")


def make_rule_set(fetched_at=1000.0, ttl=60):
    return RuleSet.from_rules([RedirectRule("/old", "/new")], fetched_at=fetched_at, ttl=ttl)


class TestRuleStore:
    async def test_miss_then_hit(self):
        backend = FakeBackend()
        store = RuleStore(backend, KEY, clock=lambda: 1010.0)

        assert await store.get() is None
        await store.put(make_rule_set())
        cached = await store.get()

        assert cached.get("/old").target == "/new"
        assert backend.puts == [(KEY, 60)]

    async def test_whole_table_under_one_key(self):
        backend = FakeBackend()
        store = RuleStore(backend, KEY, clock=lambda: 1010.0)
        await store.put(RuleSet.from_rules(
            [RedirectRule("/a", "/1"), RedirectRule("/b", "/2")], fetched_at=1000.0, ttl=60
        ))
        assert list(backend.data) == [KEY]

    async def test_expired_entry_is_a_miss(self):
        backend = FakeBackend()
        store = RuleStore(backend, KEY, clock=lambda: 1061.0)
        await store.put(make_rule_set())
        assert await store.get() is None

    async def test_backend_failures_are_swallowed(self):
        store = RuleStore(BrokenBackend(), KEY)
        assert await store.get() is None
        await store.put(make_rule_set())

    async def test_corrupt_blob_is_a_miss(self):
        backend = FakeBackend()
        backend.data[KEY] = b"{garbage"
        assert await RuleStore(backend, KEY).get() is None

    async def test_disabled_store_never_touches_backend(self):
        backend = FakeBackend()
        store = RuleStore(backend, KEY, enabled=False)
        await store.put(make_rule_set())
        assert await store.get() is None
        assert backend.puts == []


class TestMemoryCacheBackend:
    async def test_expires_per_entry(self):
        now = [0.0]
        backend = MemoryCacheBackend(timer=lambda: now[0])
        await backend.put("short", b"1", 10)
        await backend.put("long", b"2", 100)
        now[0] = 50.0

        assert await backend.get("short") is None
        assert await backend.get("long") == b"2"

    async def test_zero_ttl_is_not_stored(self):
        backend = MemoryCacheBackend()
        await backend.put("k", b"1", 0)
        assert await backend.get("k") is None


class FakeS3:
    def __init__(self):
        self.objects = {}

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        obj = self.objects[Key]
        return {
            "Body": io.BytesIO(obj["Body"]),
            "CacheControl": obj["CacheControl"],
            "Metadata": obj["Metadata"],
        }

    def put_object(self, Bucket, Key, Body, ContentType, CacheControl, Metadata):
        self.objects[Key] = {"Body": Body, "CacheControl": CacheControl, "Metadata": Metadata}


class DeniedS3:
    def get_object(self, Bucket, Key):
        raise ClientError({"Error": {"Code": "AccessDenied"}}, "GetObject")

    def put_object(self, **kwargs):
        raise EndpointConnectionError(endpoint_url="http://s3.local")


class TestS3CacheBackend:
    async def test_put_then_get(self):
        s3 = FakeS3()
        backend = S3CacheBackend("bucket", client=s3)
        await backend.put(KEY, b"blob", 60)

        stored = s3.objects[S3CacheBackend.object_key(KEY)]
        assert stored["CacheControl"] == "max-age=60"
        assert stored["Metadata"]["cache-key"] == KEY
        assert await backend.get(KEY) == b"blob"

    async def test_missing_object_is_a_miss(self):
        assert await S3CacheBackend("bucket", client=FakeS3()).get(KEY) is None

    async def test_stale_object_is_a_miss(self):
        s3 = FakeS3()
        backend = S3CacheBackend("bucket", client=s3)
        await backend.put(KEY, b"blob", 0)
        assert await backend.get(KEY) is None

    async def test_client_errors_become_cache_errors(self):
        backend = S3CacheBackend("bucket", client=DeniedS3())
        with pytest.raises(CacheError):
            await backend.get(KEY)
        with pytest.raises(CacheError):
            await backend.put(KEY, b"blob", 60)

    async def test_store_over_failing_s3_falls_back_to_miss(self):
        store = RuleStore(S3CacheBackend("bucket", client=DeniedS3()), KEY)
        assert await store.get() is None
        await store.put(make_rule_set())


class TestFreshness:
    def test_fresh(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=pytz.utc)
        stored = (now - timedelta(seconds=30)).timestamp()
        response = {"CacheControl": "max-age=60", "Metadata": {"stored-at": str(stored)}}
        assert stored_object_is_fresh(response, now)

    def test_stale(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=pytz.utc)
        stored = (now - timedelta(seconds=90)).timestamp()
        response = {"CacheControl": "max-age=60", "Metadata": {"stored-at": str(stored)}}
        assert not stored_object_is_fresh(response, now)

    @pytest.mark.parametrize(
        "response",
        [
            {"CacheControl": "max-age=60", "Metadata": {}},
            {"CacheControl": "max-age=60", "Metadata": {"stored-at": "yesterday"}},
            {"Metadata": {"stored-at": "1"}},
        ],
    )
    def test_incomplete_metadata_is_stale(self, response):
        assert not stored_object_is_fresh(response)


def test_build_backend():
    assert isinstance(build_backend(RedirectConfig(upstream_url=KEY)), MemoryCacheBackend)
    s3 = build_backend(RedirectConfig(upstream_url=KEY, cache_backend="s3", s3_bucket="bucket"))
    assert isinstance(s3, S3CacheBackend)
    assert s3.bucket == "bucket"
