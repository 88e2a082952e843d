"""Shared pytest fixtures for the Sentinel research test suite."""

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from typing import Any, List, Optional

import pytest

from sentinel_research.gateway import Gateway, GatewayReply


@pytest.fixture(autouse=True)
def mock_env_vars(monkeypatch):
    """Set minimum env vars so modules can be imported without real services."""
    monkeypatch.setenv("MODEL_NAME", "test-model")
    monkeypatch.setenv("FAST_MODEL_NAME", "test-fast")
    monkeypatch.setenv("FALLBACK_MODEL_NAME", "test-fallback")
    monkeypatch.setenv("LLM_BASE_URL", "http://localhost:9999/v1")
    monkeypatch.setenv("LLM_API_KEY", "NA")
    monkeypatch.setenv("SEARXNG_URL", "http://localhost:9998")


@dataclass
class FakeCall:
    prompt: str
    response_model: Any = None
    tools: List[str] = field(default_factory=list)
    system: Optional[str] = None
    tier: str = "fast"
    search_query: Optional[str] = None
    fetch_urls: List[str] = field(default_factory=list)
    attachments: List[Any] = field(default_factory=list)


class FakeGateway:
    """Scripted stand-in for Gateway.

    ``responder(call)`` returns a dict (serialised and parsed like a model
    reply), a str, a GatewayReply, or an exception instance to raise. It may
    also be a coroutine function.
    """

    def __init__(self, responder=None):
        self.responder = responder or (lambda call: {})
        self.calls: List[FakeCall] = []

    async def invoke(self, prompt, *, response_model=None, default=None, attachments=None,
                     tools=None, system=None, tier="fast", search_query=None, fetch_urls=None, **kwargs):
        call = FakeCall(
            prompt=prompt,
            response_model=response_model,
            tools=list(tools or []),
            system=system,
            tier=tier,
            search_query=search_query,
            fetch_urls=list(fetch_urls or []),
            attachments=list(attachments or []),
        )
        self.calls.append(call)
        await asyncio.sleep(0)

        result = self.responder(call)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, GatewayReply):
            return result

        text = result if isinstance(result, str) else json.dumps(result)
        if response_model is None:
            return GatewayReply(text=text, data=text)
        if default is None:
            default = response_model()
        return GatewayReply(text=text, data=Gateway._parse(text, response_model, default))

    def calls_with(self, predicate) -> List[FakeCall]:
        return [c for c in self.calls if predicate(c)]


@pytest.fixture
def fake_gateway_factory():
    """Factory fixture: ``fake_gateway_factory(responder)`` -> FakeGateway."""
    return FakeGateway


@pytest.fixture
def mock_llm_response():
    """Factory fixture for mock OpenAI chat completion responses."""
    class MockChoice:
        def __init__(self, content):
            self.message = type('obj', (object,), {'content': content})()

    class MockResponse:
        def __init__(self, content):
            self.choices = [MockChoice(content)]

    def _make(content="test response"):
        return MockResponse(content)

    return _make
