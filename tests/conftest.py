from unittest.mock import Mock

import pytest
import requests


class FakeSession:
    """Stands in for requests.Session; routes map URL -> (status, body) or an exception."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"getaddrinfo ENOTFOUND {url}")
        if isinstance(route, Exception):
            raise route
        status, body = route
        return Mock(status_code=status, content=body, url=url)

    def close(self):
        pass


@pytest.fixture
def fake_session():
    return FakeSession
