"""Exception hierarchy and error classification for the Ollama client.

Every failure that crosses a component boundary is mapped onto one of the
classes below by :func:`classify_backend_error` (server answered with an
error) or :func:`classify_transport_error` (``requests`` raised). The
backend has no structured error codes, so the out-of-memory and missing-model
detection is substring matching on the error text; keep all of it here.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Optional

import requests


class OllamaClientError(RuntimeError):
    """Base exception raised for Ollama client errors."""

    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OllamaConnectionError(OllamaClientError):
    """Raised when the Ollama HTTP API cannot be reached."""

    retryable = True


class TimeoutKind(str, Enum):
    CONNECT = "connect"
    FIRST_BYTE = "first_byte"
    STALLED = "stalled"
    DEADLINE = "deadline"


class OllamaTimeoutError(OllamaClientError):
    """Raised when a request times out; ``kind`` says which timer fired."""

    retryable = True

    def __init__(self, message: str, *, kind: TimeoutKind = TimeoutKind.CONNECT) -> None:
        super().__init__(message)
        self.kind = kind


class OllamaProtocolError(OllamaClientError):
    """Raised when a 200 response is missing the fields the protocol requires."""


class OllamaModelNotFoundError(OllamaClientError):
    """Raised when the requested model is not installed on the Ollama host."""

    def __init__(self, message: str, *, model: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message, status_code=status_code)
        self.model = model


class OllamaResourceError(OllamaClientError):
    """Raised when the server runs out of memory loading or running a model."""


_OOM_MARKERS = ("out of memory", "insufficient memory", "requires more system memory")
_OOM_TOKEN = re.compile(r"\bOOM\b")
_MISSING_MARKERS = ("not found", "try pulling", "file does not exist", "no such model")


def extract_error_text(body: str) -> str:
    """Pull the ``error`` field out of a JSON error body, else return the body."""

    text = (body or "").strip()
    if not text:
        return ""
    try:
        payload = json.loads(text)
    except ValueError:
        return text
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return text


def is_out_of_memory(text: str) -> bool:
    if not text:
        return False
    if _OOM_TOKEN.search(text):
        return True
    lowered = text.lower()
    return any(marker in lowered for marker in _OOM_MARKERS)


def classify_backend_error(
    status_code: Optional[int],
    text: str,
    *,
    model: Optional[str] = None,
) -> OllamaClientError:
    """Map an error reported by the server onto the client taxonomy."""

    detail = extract_error_text(text)
    lowered = detail.lower()

    if is_out_of_memory(detail):
        return OllamaResourceError(
            f"The Ollama server ran out of memory: {detail}. "
            "Try a smaller model or reduce the context size.",
            status_code=status_code,
        )
    names_model = bool(model) and model.lower() in lowered
    if status_code == 404 or (names_model and any(marker in lowered for marker in _MISSING_MARKERS)):
        if model:
            message = f"Model '{model}' is not installed on the Ollama server. Pull it first and retry."
        else:
            message = f"Ollama reported a missing resource: {detail or status_code}"
        return OllamaModelNotFoundError(message, model=model, status_code=status_code)
    if status_code is not None and status_code >= 500:
        return OllamaClientError(
            f"Ollama server error (status {status_code}): {detail or 'no details'}",
            status_code=status_code,
        )
    if status_code is not None:
        return OllamaClientError(
            f"Ollama responded with status {status_code}: {detail or 'no details'}",
            status_code=status_code,
        )
    return OllamaClientError(f"Ollama reported an error: {detail}")


def classify_transport_error(
    exc: BaseException,
    *,
    context: str = "request",
    timeout_seconds: Optional[float] = None,
) -> OllamaClientError:
    """Map a ``requests`` exception onto the client taxonomy."""

    if isinstance(exc, OllamaClientError):
        return exc
    if isinstance(exc, requests.ConnectTimeout):
        return OllamaTimeoutError(
            f"Timed out connecting to Ollama during {context}. The server may be busy or unreachable.",
            kind=TimeoutKind.CONNECT,
        )
    if isinstance(exc, requests.Timeout):
        limit = f" after {timeout_seconds:g}s" if timeout_seconds else ""
        return OllamaTimeoutError(
            f"Ollama {context} timed out{limit}. The model might be busy or the server overloaded.",
            kind=TimeoutKind.DEADLINE,
        )
    if isinstance(exc, requests.ConnectionError):
        return OllamaConnectionError(
            f"Could not connect to Ollama during {context}. Make sure the Ollama server is running."
        )
    if isinstance(exc, requests.RequestException):
        return OllamaClientError(f"Network error during {context}: {exc}")
    return OllamaClientError(f"{context} failed: {exc}")


def format_error(exc: BaseException) -> str:
    """User-facing message, with a remediation hint where one exists."""

    if isinstance(exc, OllamaTimeoutError):
        hints = {
            TimeoutKind.CONNECT: "Check that Ollama is running and reachable.",
            TimeoutKind.FIRST_BYTE: "The model may still be loading; try again shortly.",
            TimeoutKind.STALLED: "The server stopped responding. The model may be overloaded or the server crashed.",
            TimeoutKind.DEADLINE: "Increase the request timeout or ask for a shorter answer.",
        }
        return f"{exc} {hints[exc.kind]}"
    if isinstance(exc, (OllamaConnectionError, OllamaModelNotFoundError, OllamaResourceError)):
        return str(exc)
    if isinstance(exc, OllamaClientError):
        return f"{exc} - Try restarting Ollama or switching to a different model."
    return f"Unexpected error: {exc}"
