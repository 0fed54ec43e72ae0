"""
Pytest configuration and fixtures for the test suite.
"""
import asyncio
import os
import sys
from typing import Callable, Optional, Union

import httpx
import pytest
import pytest_asyncio
import respx

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from mydoctor_client.client import ApiClient
from mydoctor_client.credential_store import Credential, CredentialStore

BASE_URL = "https://api.test/api"
OLD_TOKEN = "old-access-token"
NEW_TOKEN = "new-access-token"
REFRESH_URL = f"{BASE_URL}/auth/refresh-token"
ITEM_URL_PATTERN = r"^https://api\.test/api/items/\d+$"


def api_url(path: str) -> str:
    return f"{BASE_URL}{path}"


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0):
    """Yield to the event loop until `predicate()` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0)


class GatedRefresher:
    """
    Refresher that blocks until released, then returns or raises `outcome`.

    Lets a test decide exactly when the in-flight refresh settles.
    """

    def __init__(self, outcome: Union[Credential, Exception]):
        self.outcome = outcome
        self.release = asyncio.Event()
        self.calls = []

    async def __call__(self, credential: Credential) -> Credential:
        self.calls.append(credential)
        await self.release.wait()
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.fixture
def session_file(tmp_path):
    return tmp_path / "session.json"


@pytest.fixture
def store(session_file):
    """A store holding an expired-on-the-server credential."""
    credential_store = CredentialStore(session_file)
    credential_store.set(Credential(access_token=OLD_TOKEN, refresh_token="refresh-1"))
    credential_store.set_user({"id": "u-1", "email": "patient@example.com"})
    return credential_store


@pytest.fixture
def gated_refresher():
    """Factory for GatedRefresher instances."""
    return GatedRefresher


@pytest.fixture
def api_mock():
    """respx router bound to the test backend."""
    with respx.mock(assert_all_called=False) as mock:
        yield mock


def item_route_handler(request: httpx.Request) -> httpx.Response:
    """`/items/<n>`: 401 unless sent with the new token, then `{"id": n}`."""
    item_id = request.url.path.rsplit("/", 1)[-1]
    if request.headers.get("Authorization") == f"Bearer {NEW_TOKEN}":
        return httpx.Response(200, json={"id": item_id})
    return httpx.Response(401, json={"message": "Token expired"})


@pytest.fixture
def items_route(api_mock):
    return api_mock.get(url__regex=ITEM_URL_PATTERN).mock(side_effect=item_route_handler)


@pytest_asyncio.fixture
async def client(store):
    api_client = ApiClient(base_url=BASE_URL, store=store)
    yield api_client
    await api_client.aclose()


@pytest_asyncio.fixture
async def make_client(store):
    """Build an ApiClient over the shared store with a custom refresher."""
    created = []

    def factory(refresher: Optional[Callable] = None) -> ApiClient:
        api_client = ApiClient(base_url=BASE_URL, store=store, refresher=refresher)
        created.append(api_client)
        return api_client

    yield factory

    for api_client in created:
        await api_client.aclose()
