import os

# Must be set before anything imports recordexport.core.config
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PREFERENCE_STORE_BACKEND", "memory")
os.environ.setdefault("EXPORT_XLSX_ENABLED", "false")

import httpx
import pytest

from recordexport.services.custom_fields import CustomFieldFetcher
from recordexport.services.field_detection import FieldDetectionService
from recordexport.services.platform_client import PlatformClient
from recordexport.services.preference_store import InMemoryKeyValueStore
from recordexport.services.selection_store import SelectionStore

PLATFORM_URL = "https://platform.test"


def make_platform_client(handler) -> PlatformClient:
    """PlatformClient whose HTTP traffic is answered by handler(request) -> httpx.Response"""
    client = httpx.AsyncClient(base_url=PLATFORM_URL, transport=httpx.MockTransport(handler))
    return PlatformClient(base_url=PLATFORM_URL, api_token="test-token", client=client)


class RecordingHandler:
    """MockTransport handler that records requests and routes by path"""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(route):
            return route(request)
        return httpx.Response(200, json=route)

    def calls_to(self, path: str):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def memory_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def selection_store(memory_store):
    return SelectionStore(memory_store)


@pytest.fixture
def custom_field_definitions():
    return [
        {"_id": "cf1", "name": "Tier", "type": "select", "isActive": True},
        {"_id": "cf2", "name": "Owners", "type": "teammembers", "isActive": True},
        {"_id": "cf3", "name": "Internal Notes", "type": "richtext", "isActive": True, "isHidden": True},
    ]


@pytest.fixture
def platform_handler(custom_field_definitions):
    return RecordingHandler({"/customfields": custom_field_definitions})


@pytest.fixture
def platform_client(platform_handler):
    return make_platform_client(platform_handler)


@pytest.fixture
def detection_service(platform_client, selection_store):
    return FieldDetectionService(CustomFieldFetcher(platform_client), selection_store)


@pytest.fixture
def client_factory():
    """Build a PlatformClient around a RecordingHandler: client_factory(routes) -> (client, handler)"""

    def build(routes):
        handler = RecordingHandler(routes)
        return make_platform_client(handler), handler

    return build
