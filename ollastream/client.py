"""High level client that wires the components around a single endpoint."""

from __future__ import annotations

import subprocess
import time
from typing import Callable, Iterator, List, Optional, Union

import requests

from .cache import HealthCache, ModelListCache
from .cancellation import CancellationToken
from .completion import CompletionFallback
from .config import AppConfig, OllamaConfig
from .errors import OllamaClientError, OllamaModelNotFoundError, OllamaResourceError
from .health import HealthProber
from .launcher import ProcessLauncher
from .locator import InstallInstructions, ServerLocator, install_instructions
from .logging import get_logger
from .models import HealthReport, InstallationState, ModelInfo, ServerEndpoint
from .prompts import CodeAction, build_code_prompt
from .registry import ModelRegistry, ProgressCallback
from .streaming import ChunkCallback, ChunkKind, StreamChunk, StreamingEngine

LOGGER = get_logger(__name__)


class OllamaClient:
    """Locates, starts, probes and talks to one Ollama server.

    All public methods block the calling thread. Streaming calls return lazy
    iterators or drive a callback; pass a :class:`CancellationToken` to stop
    them from another thread.
    """

    def __init__(
        self,
        config: Union[AppConfig, OllamaConfig, None] = None,
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        popen=subprocess.Popen,
    ) -> None:
        if config is None:
            config = AppConfig()
        elif isinstance(config, OllamaConfig):
            config = AppConfig(ollama=config)
        self.config = config
        self.endpoint = ServerEndpoint.parse(config.ollama.host)
        self._session = session or requests.Session()
        self._sleep = sleep

        resilience = config.resilience
        ttl = resilience.cache_ttl if resilience.enable_cache else 0.0
        self.health_cache = HealthCache(ttl, clock=clock)
        self.model_cache = ModelListCache(ttl, clock=clock)

        self.launcher = ProcessLauncher(
            self.endpoint, config.launcher, session=self._session, popen=popen, sleep=sleep
        )
        self.locator = ServerLocator(self.endpoint, config.ollama, self.launcher, session=self._session)
        self.prober = HealthProber(
            self.endpoint,
            resilience,
            self.health_cache,
            self.model_cache,
            session=self._session,
            sleep=sleep,
        )
        self.registry = ModelRegistry(
            self.endpoint,
            resilience,
            config.stream,
            self.model_cache,
            self.locator,
            session=self._session,
            sleep=sleep,
            clock=clock,
        )
        self.engine = StreamingEngine(
            self.endpoint, config.stream, session=self._session, preflight=self._preflight, clock=clock
        )
        self.fallback = CompletionFallback(
            self.endpoint, config.stream, session=self._session, preflight=self._preflight
        )

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------
    @property
    def installation_state(self) -> InstallationState:
        return self.locator.state

    def check_installed(self, force_recheck: Optional[bool] = None) -> bool:
        return self.locator.check_installed(force_recheck)

    def start_server(self) -> bool:
        started = self.locator.start_server()
        if started:
            self.health_cache.invalidate()
        return started

    def install_instructions(self) -> InstallInstructions:
        return install_instructions()

    def check_health(self, model_name: Optional[str] = None, **kwargs) -> bool:
        return self.prober.check_health(model_name, **kwargs)

    def probe(self, model_name: Optional[str] = None, **kwargs) -> HealthReport:
        return self.prober.probe(model_name, **kwargs)

    def _preflight(self, model: str) -> None:
        """Best-effort readiness check before a generation request."""

        try:
            self.prober.check_health(model, retry=True, retry_count=1)
            return
        except OllamaClientError as exc:
            LOGGER.warning("Ollama server health check failed: %s", exc)

        if not self.config.ollama.auto_start_server:
            LOGGER.warning("Auto-start is disabled; sending the request anyway.")
            return
        LOGGER.info("Attempting to restart the Ollama server...")
        if not self.start_server():
            LOGGER.warning("Could not start the Ollama server; sending the request anyway.")
            return
        self._sleep(self.config.launcher.post_start_wait)
        try:
            self.prober.check_health(model, retry=False, bypass_cache=True)
        except OllamaClientError as exc:
            LOGGER.warning("Ollama server is still not healthy after restart: %s", exc)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------
    @property
    def last_error(self) -> Optional[OllamaClientError]:
        return self.registry.last_error

    def list_models(self, force_refresh: bool = False) -> List[ModelInfo]:
        return self.registry.list_models(force_refresh)

    def ensure_model(self, model_name: Optional[str] = None) -> ModelInfo:
        name = self._resolve_model(model_name)
        models = self.registry.list_models()
        for model in models:
            if model.name == name:
                return model
        if not models and self.registry.last_error is not None:
            raise self.registry.last_error
        available = ", ".join(model.name for model in models) or "<none>"
        raise OllamaModelNotFoundError(
            f"Model '{name}' is not installed on Ollama. Installed models: {available}.",
            model=name,
        )

    def pull_model(
        self,
        name: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[ModelInfo]:
        model = self.registry.pull_model(name, on_progress=on_progress, cancel_token=cancel_token)
        self.health_cache.invalidate()
        return model

    def install_missing_model(
        self,
        error: OllamaModelNotFoundError,
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[ModelInfo]:
        """Pull the model an :class:`OllamaModelNotFoundError` complained about."""

        if not error.model:
            raise OllamaClientError("The error does not name a model to install.") from error
        LOGGER.info("Installing missing model %s", error.model)
        return self.pull_model(error.model, on_progress=on_progress, cancel_token=cancel_token)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def _resolve_model(self, model: Optional[str]) -> str:
        name = model or self.config.ollama.default_model
        if not name:
            raise OllamaClientError("No model configured. Pass a model name or set OLLAMA_MODEL.")
        return name

    def generate_completion(
        self, prompt: str, *, model: Optional[str] = None, timeout: Optional[float] = None
    ) -> str:
        return self.fallback.generate_completion(self._resolve_model(model), prompt, timeout=timeout)

    def iter_completion(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[StreamChunk]:
        ollama = self.config.ollama
        return self.engine.iter_completion(
            self._resolve_model(model),
            prompt,
            max_tokens=ollama.max_response_tokens if max_tokens is None else max_tokens,
            temperature=ollama.temperature if temperature is None else temperature,
            timeout_seconds=ollama.request_timeout if timeout_seconds is None else timeout_seconds,
            cancel_token=cancel_token,
        )

    def stream_completion(
        self,
        prompt: str,
        on_chunk: ChunkCallback,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        ollama = self.config.ollama
        return self.engine.stream_completion(
            self._resolve_model(model),
            prompt,
            on_chunk,
            max_tokens=ollama.max_response_tokens if max_tokens is None else max_tokens,
            temperature=ollama.temperature if temperature is None else temperature,
            timeout_seconds=ollama.request_timeout if timeout_seconds is None else timeout_seconds,
            cancel_token=cancel_token,
        )

    def complete(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[StreamChunk]:
        """Stream a completion, switching to single-shot generation after OOM failures.

        Up to ``oom_fallback_after`` streaming attempts are made for this call;
        the counter never carries over between calls.
        """

        name = self._resolve_model(model)
        attempts = max(1, self.config.stream.oom_fallback_after)
        for attempt in range(1, attempts + 1):
            try:
                yield from self.iter_completion(
                    prompt,
                    model=name,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    timeout_seconds=timeout_seconds,
                    cancel_token=cancel_token,
                )
                return
            except OllamaResourceError:
                if cancel_token is not None and cancel_token.cancelled:
                    return
                if attempt < attempts:
                    LOGGER.warning(
                        "Streaming ran out of memory (attempt %d/%d); streaming %s again.", attempt, attempts, name
                    )

        LOGGER.warning("Streaming ran out of memory; retrying %s without streaming.", name)
        yield StreamChunk(ChunkKind.NOTICE, "\n\n_Retrying without streaming..._\n\n")
        text = self.generate_completion(prompt, model=name)
        yield StreamChunk(ChunkKind.DELTA, text)

    def run_code_action(
        self,
        action: Union[CodeAction, str],
        code: str,
        language: str = "Unknown",
        *,
        model: Optional[str] = None,
        stream: bool = True,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Run one of the code prompts and return the generated text."""

        prompt = build_code_prompt(CodeAction(action), code, language, self.config.prompts)
        if not stream:
            text = self.generate_completion(prompt, model=model)
            if on_chunk is not None:
                on_chunk(text)
            return text

        parts: List[str] = []
        for chunk in self.complete(prompt, model=model, cancel_token=cancel_token):
            if chunk.kind is ChunkKind.DELTA:
                parts.append(chunk.text)
            if on_chunk is not None:
                on_chunk(chunk.text)
        return "".join(parts)
