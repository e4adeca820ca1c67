"""Shared fixtures for integration tests."""

import json

import httpx
import pytest

from eventsync.config import QueueConfig, ResilienceConfig


class FlakyApi:
    """Mock transport handler failing the first ``failures`` requests at the transport level."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.requests) <= self.failures:
            raise httpx.ConnectError("connection refused", request=request)
        if request.method == "POST":
            body = json.loads(request.content or b"{}")
            return httpx.Response(201, json={"id": len(self.requests), **body})
        return httpx.Response(200, json=[{"id": 1, "name": "Spring Hackathon"}])


@pytest.fixture
def flaky_api():
    """Factory for mock API handlers: ``flaky_api(failures=3)``."""
    return FlakyApi


@pytest.fixture
def memory_config():
    """Default configuration with a process-local offline queue."""
    config = ResilienceConfig()
    config.queue = QueueConfig(backend="memory")
    return config
