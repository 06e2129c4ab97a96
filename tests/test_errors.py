import pytest
import requests

from ollastream.errors import (
    OllamaClientError,
    OllamaConnectionError,
    OllamaModelNotFoundError,
    OllamaResourceError,
    OllamaTimeoutError,
    TimeoutKind,
    classify_backend_error,
    classify_transport_error,
    extract_error_text,
    format_error,
    is_out_of_memory,
)


@pytest.mark.parametrize(
    "text",
    [
        "CUDA error: out of memory",
        "llama runner process has terminated: OOM",
        "model requires more system memory (9.1 GiB) than is available (4.0 GiB)",
        "insufficient memory to load model",
    ],
)
def test_out_of_memory_detection(text):
    assert is_out_of_memory(text)
    assert isinstance(classify_backend_error(500, text), OllamaResourceError)


def test_oom_token_needs_word_boundary():
    assert not is_out_of_memory("loading room layout")


def test_404_is_model_not_found():
    error = classify_backend_error(404, '{"error":"model \\"x\\" not found"}', model="x")
    assert isinstance(error, OllamaModelNotFoundError)
    assert error.model == "x"
    assert error.status_code == 404


def test_not_found_text_naming_model_without_status():
    error = classify_backend_error(None, "model 'phi3:mini' not found, try pulling it first", model="phi3:mini")
    assert isinstance(error, OllamaModelNotFoundError)


def test_server_errors_keep_status():
    error = classify_backend_error(502, "bad gateway")
    assert type(error) is OllamaClientError
    assert error.status_code == 502
    assert "bad gateway" in str(error)


def test_extract_error_text_prefers_json_field():
    assert extract_error_text('{"error": "boom"}') == "boom"
    assert extract_error_text("plain failure") == "plain failure"
    assert extract_error_text("") == ""


@pytest.mark.parametrize(
    "exc,expected,kind",
    [
        (requests.ConnectTimeout("x"), OllamaTimeoutError, TimeoutKind.CONNECT),
        (requests.ReadTimeout("x"), OllamaTimeoutError, TimeoutKind.DEADLINE),
        (requests.ConnectionError("x"), OllamaConnectionError, None),
        (requests.TooManyRedirects("x"), OllamaClientError, None),
    ],
)
def test_transport_classification(exc, expected, kind):
    error = classify_transport_error(exc, context="test")
    assert type(error) is expected
    if kind is not None:
        assert error.kind is kind


def test_retryable_flags():
    assert OllamaConnectionError("x").retryable
    assert OllamaTimeoutError("x").retryable
    assert not OllamaResourceError("x").retryable


def test_format_error_adds_hints():
    stalled = OllamaTimeoutError("Stream stalled.", kind=TimeoutKind.STALLED)
    assert "overloaded or the server crashed" in format_error(stalled)
    assert format_error(OllamaClientError("Boom.")).endswith("switching to a different model.")
    assert format_error(OllamaModelNotFoundError("Model 'x' missing.", model="x")) == "Model 'x' missing."
    assert format_error(ValueError("odd")) == "Unexpected error: odd"
