import pytest
import requests

from conftest import FakeResponse
from ollastream.completion import CompletionFallback
from ollastream.config import StreamConfig
from ollastream.errors import (
    OllamaModelNotFoundError,
    OllamaProtocolError,
    OllamaResourceError,
    OllamaTimeoutError,
)


@pytest.fixture
def fallback(endpoint, session):
    return CompletionFallback(endpoint, StreamConfig(), session=session)


def test_returns_response_text(fallback, session):
    session.queue("POST", "/api/generate", FakeResponse(200, {"response": "def add(a, b): ...", "done": True}))

    assert fallback.generate_completion("llama3:8b", "write add") == "def add(a, b): ..."
    call = session.calls_to("POST", "/api/generate")[0]
    assert call["json"]["stream"] is False
    assert call["timeout"] == 60.0


def test_missing_response_field_is_protocol_error(fallback, session):
    session.queue("POST", "/api/generate", FakeResponse(200, {"done": True}))

    with pytest.raises(OllamaProtocolError, match="Invalid response"):
        fallback.generate_completion("llama3:8b", "hi")


def test_non_json_body_is_protocol_error(fallback, session):
    session.queue("POST", "/api/generate", FakeResponse(200, text="<html>proxy</html>"))

    with pytest.raises(OllamaProtocolError):
        fallback.generate_completion("llama3:8b", "hi")


def test_not_found_status(fallback, session):
    session.queue("POST", "/api/generate", FakeResponse(404, text='{"error":"model not found"}'))

    with pytest.raises(OllamaModelNotFoundError) as excinfo:
        fallback.generate_completion("phi3:mini", "hi")
    assert excinfo.value.model == "phi3:mini"


def test_out_of_memory_status(fallback, session):
    session.queue("POST", "/api/generate", FakeResponse(500, text='{"error":"llama runner: OOM"}'))

    with pytest.raises(OllamaResourceError):
        fallback.generate_completion("llama3:70b", "hi")


def test_read_timeout(fallback, session):
    session.queue("POST", "/api/generate", requests.ReadTimeout("slow"))

    with pytest.raises(OllamaTimeoutError):
        fallback.generate_completion("llama3:8b", "hi", timeout=5)
    assert session.calls_to("POST", "/api/generate")[0]["timeout"] == 5
