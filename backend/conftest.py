"""Shared pytest fixtures: environment isolation and stubbed upstream clients."""

import httpx
import pytest

_ENV_VARS = [
    "TORONTO_MCI_FEATURE_URL",
    "INCIDENT_FEATURE_URLS",
    "GEOCODE_URL",
    "GEOCODE_USER_AGENT",
    "GEOCODE_REFERER",
    "GEOCODE_COUNTRY_CODE",
    "GEOCODE_COUNTRY_NAME",
    "GEOCODE_REGION_NAME",
    "GEOCODE_REGION_CODE",
    "GEOCODE_RESULT_LIMIT",
    "FEATURE_RESULT_LIMIT",
    "UPSTREAM_TIMEOUT_SECONDS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class Recorder:
    """MockTransport handler wrapper that keeps every request it saw."""

    def __init__(self, handler):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.fixture
def stub_client():
    """Build an AsyncClient whose requests are answered by ``handler``."""

    def make(handler):
        recorder = Recorder(handler)
        return httpx.AsyncClient(transport=httpx.MockTransport(recorder)), recorder

    return make
