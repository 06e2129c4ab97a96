"""Single-shot (non-streaming) generation used when streaming is not wanted."""

from __future__ import annotations

from typing import Optional

import requests

from .config import StreamConfig
from .errors import OllamaProtocolError, classify_backend_error, classify_transport_error
from .logging import get_logger
from .models import ServerEndpoint
from .prompts import truncate_prompt
from .streaming import Preflight
from .transport import JSON_HEADERS

LOGGER = get_logger(__name__)


class CompletionFallback:
    def __init__(
        self,
        endpoint: ServerEndpoint,
        config: StreamConfig,
        *,
        session: Optional[requests.Session] = None,
        preflight: Optional[Preflight] = None,
    ) -> None:
        self.endpoint = endpoint
        self.config = config
        self._session = session or requests.Session()
        self._preflight = preflight

    def generate_completion(self, model: str, prompt: str, *, timeout: Optional[float] = None) -> str:
        if self._preflight is not None:
            self._preflight(model)

        limit = self.config.generate_timeout if timeout is None else timeout
        payload = {
            "model": model,
            "prompt": truncate_prompt(prompt, self.config.max_prompt_chars),
            "stream": False,
        }
        LOGGER.debug("Requesting non-streaming completion from %s with model %s", self.endpoint, model)
        try:
            response = self._session.post(
                self.endpoint.url("/api/generate"),
                json=payload,
                timeout=limit,
                headers=JSON_HEADERS,
            )
        except requests.RequestException as exc:
            raise classify_transport_error(exc, context="completion request", timeout_seconds=limit) from exc

        if response.status_code != 200:
            raise classify_backend_error(response.status_code, response.text, model=model)

        try:
            data = response.json()
        except ValueError as exc:
            raise OllamaProtocolError("Invalid response from Ollama API: body is not JSON") from exc
        if not isinstance(data, dict):
            raise OllamaProtocolError("Invalid response from Ollama API: expected a JSON object")
        if isinstance(data.get("error"), str):
            raise classify_backend_error(None, data["error"], model=model)
        text = data.get("response")
        if not isinstance(text, str):
            raise OllamaProtocolError("Invalid response from Ollama API: missing 'response' field")
        return text
