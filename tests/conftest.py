from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest
import requests


class FakeSession:
    """Routes GET requests by URL prefix to canned responses or exceptions."""

    def __init__(self, routes: Dict[str, Any]):
        self.routes = routes
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(url)
        for prefix, outcome in self.routes.items():
            if url.startswith(prefix):
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        raise requests.ConnectionError(f"no route for {url}")


def make_response(status: int = 200, json_data: Optional[Any] = None, text: str = ""):
    r = MagicMock()
    r.status_code = status
    r.text = text
    if json_data is None:
        r.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        r.json.return_value = json_data
    return r


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def response():
    return make_response
