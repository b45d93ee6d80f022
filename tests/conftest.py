"""Shared fixtures for the SaaS Runtime MCP server tests."""

import httpx
import pytest

import server


class FakeCredentialProvider:
    """Stands in for Application Default Credentials and counts token requests."""

    def __init__(self, token="test-token", error=None):
        self.token = token
        self.error = error
        self.calls = 0

    async def get_access_token(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.token


@pytest.fixture(autouse=True)
def credentials(monkeypatch):
    """Replace the Google credential provider so no test reaches a real identity provider."""
    provider = FakeCredentialProvider()
    monkeypatch.setattr(server, "credential_provider", provider)
    return provider


@pytest.fixture
def httpx_mock(monkeypatch):
    """Fixture to mock httpx requests and record what was sent."""
    class MockTransport(httpx.MockTransport):
        def __init__(self):
            self.responses = []
            self.requests = []
            super().__init__(self._handler)

        def _handler(self, request):
            self.requests.append(request)
            for response_config in self.responses:
                if self._matches(request, response_config):
                    if response_config["exception"] is not None:
                        raise response_config["exception"]
                    if response_config["json"] is not None:
                        return httpx.Response(
                            status_code=response_config["status_code"],
                            json=response_config["json"],
                        )
                    return httpx.Response(
                        status_code=response_config["status_code"],
                        text=response_config["text"],
                    )
            raise Exception(f"No mock configured for {request.method} {request.url}")

        def _matches(self, request, config):
            if config["method"] and request.method != config["method"]:
                return False
            return str(request.url) == config["url"]

        def add_response(self, url, json=None, text="", status_code=200, method=None):
            self.responses.append({
                "url": url,
                "json": json,
                "text": text,
                "status_code": status_code,
                "method": method,
                "exception": None,
            })

        def add_exception(self, url, exception, method=None):
            self.responses.append({
                "url": url,
                "json": None,
                "text": "",
                "status_code": 200,
                "method": method,
                "exception": exception,
            })

    mock = MockTransport()

    original_init = httpx.AsyncClient.__init__

    def patched_init(self, *args, **kwargs):
        kwargs['transport'] = mock
        original_init(self, *args, **kwargs)

    monkeypatch.setattr(httpx.AsyncClient, "__init__", patched_init)

    return mock
