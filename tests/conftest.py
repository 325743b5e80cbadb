import pytest


@pytest.fixture
def anyio_backend():
    # The code under test (and mitmproxy) is asyncio-only.
    return "asyncio"
