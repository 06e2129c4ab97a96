"""Server liveness and model availability probes with caching and backoff."""

from __future__ import annotations

import time
from typing import Callable, Optional

import requests

from .backoff import Backoff
from .cache import HealthCache, ModelListCache
from .config import ResilienceConfig
from .errors import (
    OllamaClientError,
    OllamaProtocolError,
    classify_transport_error,
)
from .logging import get_logger
from .models import HealthReport, ServerEndpoint, parse_model_list

LOGGER = get_logger(__name__)


class HealthProber:
    """Answers "is the server up, and is model M installed?".

    A missing model does not make the server unhealthy: the report carries
    ``model_available=False`` so callers can offer to pull it.
    """

    def __init__(
        self,
        endpoint: ServerEndpoint,
        config: ResilienceConfig,
        health_cache: HealthCache,
        model_cache: ModelListCache,
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.endpoint = endpoint
        self.config = config
        self.health_cache = health_cache
        self.model_cache = model_cache
        self._session = session or requests.Session()
        self._sleep = sleep

    def check_health(
        self,
        model_name: Optional[str] = None,
        *,
        retry: bool = True,
        retry_count: Optional[int] = None,
        retry_delay: Optional[float] = None,
        bypass_cache: bool = False,
    ) -> bool:
        report = self.probe(
            model_name,
            retry=retry,
            retry_count=retry_count,
            retry_delay=retry_delay,
            bypass_cache=bypass_cache,
        )
        return report.healthy

    def probe(
        self,
        model_name: Optional[str] = None,
        *,
        retry: bool = True,
        retry_count: Optional[int] = None,
        retry_delay: Optional[float] = None,
        bypass_cache: bool = False,
    ) -> HealthReport:
        if not bypass_cache and self.config.enable_cache:
            cached = self.health_cache.get(model_name)
            if cached is not None:
                LOGGER.debug("Using cached server health status (TTL: %.0fs)", self.health_cache.ttl)
                return cached.to_report()

        retries = self.config.health_retry_count if retry_count is None else retry_count
        max_attempts = retries + 1 if retry else 1
        backoff = Backoff.from_config(
            self.config,
            self.config.health_retry_delay if retry_delay is None else retry_delay,
        )

        for attempt in range(1, max_attempts + 1):
            delay = backoff.delay(attempt)
            if attempt > 1:
                LOGGER.info("Retrying server health check (attempt %d/%d)", attempt, max_attempts)
            try:
                return self._probe_once(model_name, timeout=min(self.config.probe_timeout_cap, delay))
            except OllamaClientError as exc:
                LOGGER.warning(
                    "Server health check failed (attempt %d/%d): %s", attempt, max_attempts, exc
                )
                if attempt >= max_attempts:
                    raise
                LOGGER.debug("Waiting %.2fs before retrying (nominal %.2fs)...", delay, backoff.nominal(attempt))
                self._sleep(delay)

        raise OllamaClientError("Health check made no attempts.")  # pragma: no cover

    def _probe_once(self, model_name: Optional[str], *, timeout: float) -> HealthReport:
        url = self.endpoint.url("/api/tags")
        try:
            response = self._session.get(
                url,
                timeout=timeout,
                headers={"Cache-Control": "no-cache", "Accept": "application/json"},
            )
        except requests.RequestException as exc:
            raise classify_transport_error(exc, context="health check") from exc

        if response.status_code != 200:
            raise OllamaClientError(
                f"Ollama server responded with status code {response.status_code}",
                status_code=response.status_code,
            )

        if not model_name:
            LOGGER.debug("Server is healthy (no specific model check requested)")
            self.health_cache.store(True)
            return HealthReport(healthy=True)

        try:
            payload = response.json()
        except ValueError as exc:
            raise OllamaProtocolError("Invalid response from Ollama API (body is not JSON)") from exc
        models = parse_model_list(payload)
        if models is None:
            raise OllamaProtocolError("Invalid response from Ollama API (missing models list)")

        available = any(model.name == model_name for model in models)
        self.model_cache.store(models)
        self.health_cache.store(True, model_name, available)
        if available:
            LOGGER.debug("Server is healthy and model '%s' is available", model_name)
        else:
            LOGGER.warning("Model '%s' not found on server.", model_name)
        return HealthReport(
            healthy=True,
            model_name=model_name,
            model_available=available,
            models=tuple(models),
        )
