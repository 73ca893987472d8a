"""Shared fixtures for the TROCCO MCP server tests."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from trocco_mcp_server import TroccoClient

TEST_API_KEY = "test_api_key"


@pytest.fixture
def client():
    return TroccoClient(TEST_API_KEY)


@pytest.fixture
def httpx_mock(monkeypatch):
    """Fixture to mock httpx requests."""
    class MockTransport(httpx.MockTransport):
        def __init__(self):
            self.responses = []
            self.requests = []
            super().__init__(self._handler)

        def _handler(self, request):
            self.requests.append(request)
            for response_config in self.responses:
                if self._matches(request, response_config):
                    if response_config.get("exception") is not None:
                        raise response_config["exception"]
                    if response_config.get("content") is not None:
                        return httpx.Response(
                            status_code=response_config.get("status_code", 200),
                            content=response_config["content"],
                        )
                    return httpx.Response(
                        status_code=response_config.get("status_code", 200),
                        json=response_config.get("json"),
                    )
            raise Exception(f"No mock configured for {request.method} {request.url}")

        def _matches(self, request, config):
            if config["method"] != request.method:
                return False
            expected_url = config["url"]
            actual_url = str(request.url)
            # Normalize URLs for comparison (handle query param order)
            return expected_url == actual_url or self._urls_match(expected_url, actual_url)

        def _urls_match(self, expected, actual):
            exp_parsed = urlparse(expected)
            act_parsed = urlparse(actual)

            if exp_parsed.scheme != act_parsed.scheme:
                return False
            if exp_parsed.netloc != act_parsed.netloc:
                return False
            if exp_parsed.path != act_parsed.path:
                return False

            exp_params = parse_qs(exp_parsed.query)
            act_params = parse_qs(act_parsed.query)
            return exp_params == act_params

        def add_response(self, url, json=None, status_code=200, method="GET", content=None, exception=None):
            self.responses.append({
                "url": url,
                "json": json,
                "status_code": status_code,
                "method": method,
                "content": content,
                "exception": exception,
            })

    mock = MockTransport()

    original_init = httpx.AsyncClient.__init__

    def patched_init(self, *args, **kwargs):
        kwargs['transport'] = mock
        original_init(self, *args, **kwargs)

    monkeypatch.setattr(httpx.AsyncClient, "__init__", patched_init)

    return mock
