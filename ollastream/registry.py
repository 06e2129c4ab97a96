"""Installed model listing and model downloads."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Mapping, NamedTuple, Optional, Sequence

import requests

from .backoff import Backoff
from .cache import ModelListCache
from .cancellation import CancellationToken
from .config import ResilienceConfig, StreamConfig
from .errors import (
    OllamaClientError,
    OllamaModelNotFoundError,
    OllamaProtocolError,
    OllamaTimeoutError,
    TimeoutKind,
    classify_backend_error,
    classify_transport_error,
)
from .locator import ServerLocator
from .logging import get_logger
from .models import ModelInfo, PullProgress, PullStep, ServerEndpoint, parse_model_list, progress_percent
from .transport import BackgroundStream, LineBuffer, iter_json_objects

LOGGER = get_logger(__name__)

ProgressCallback = Callable[[PullProgress], None]

_BYTES_PER_MB = 1024 * 1024
_BYTES_PER_GB = 1024 ** 3


class RecommendedModel(NamedTuple):
    name: str
    description: str


RECOMMENDED_MODELS: Sequence[RecommendedModel] = (
    RecommendedModel("deepseek-coder-v2:latest", "DeepSeek Coder V2 - Optimized for code tasks (4.2GB)"),
    RecommendedModel("gemma:7b", "Google Gemma 7B model - 4.8GB"),
    RecommendedModel("llama3:8b", "Meta Llama 3 8B model - 4.7GB"),
    RecommendedModel("mistral:7b", "Mistral 7B model - 4.1GB"),
    RecommendedModel("phi3:mini", "Microsoft Phi-3 mini - 1.7GB"),
)

_CODE_MODEL_MARKERS = ("code", "starcoder", "codellama")


def format_eta(seconds: float) -> str:
    seconds = int(round(seconds))
    if seconds > 60:
        minutes, remainder = divmod(seconds, 60)
        return f"{minutes}m {remainder}s remaining"
    return f"{seconds}s remaining"


def step_from_status(status: str, current: PullStep) -> PullStep:
    lowered = status.lower()
    if "manifest" in lowered and "pulling" in lowered:
        return PullStep.CONNECTING
    if "downloading" in lowered or "pulling" in lowered:
        return PullStep.DOWNLOADING
    if "verifying" in lowered:
        return PullStep.VERIFYING
    if "unpacking" in lowered or "writing" in lowered:
        return PullStep.UNPACKING
    if "loading" in lowered:
        return PullStep.LOADING
    return current


_STEP_MESSAGES = {
    PullStep.CONNECTING: "Connecting to the model registry...",
    PullStep.VERIFYING: "Verifying model files...",
    PullStep.UNPACKING: "Unpacking model files...",
    PullStep.LOADING: "Loading model into memory...",
}


class ThroughputMeter:
    """Bytes-per-second estimate refreshed at most once per ``interval``."""

    def __init__(self, clock: Callable[[], float], interval: float = 1.0) -> None:
        self._clock = clock
        self.interval = interval
        self._last_time = clock()
        self._last_bytes = 0
        self.rate = 0.0

    def update(self, loaded: int) -> float:
        now = self._clock()
        elapsed = now - self._last_time
        if elapsed >= self.interval and loaded > self._last_bytes:
            self.rate = (loaded - self._last_bytes) / elapsed
            self._last_bytes = loaded
            self._last_time = now
        return self.rate

    def reset(self, loaded: int = 0) -> None:
        """Start a fresh sample from ``loaded`` bytes, forgetting the old rate."""

        self._last_time = self._clock()
        self._last_bytes = loaded
        self.rate = 0.0

    def eta(self, loaded: int, total: Optional[int]) -> str:
        if not total or self.rate <= 0 or loaded >= total:
            return ""
        return format_eta((total - loaded) / self.rate)


@dataclass
class _PullState:
    model: str
    step: PullStep = PullStep.CONNECTING
    received: int = 0
    transport_total: Optional[int] = None
    completed: int = 0
    total: Optional[int] = None
    last_percent: int = -1


class ModelRegistry:
    """Lists installed models (cached) and pulls new ones."""

    def __init__(
        self,
        endpoint: ServerEndpoint,
        resilience: ResilienceConfig,
        stream: StreamConfig,
        cache: ModelListCache,
        locator: ServerLocator,
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.endpoint = endpoint
        self.resilience = resilience
        self.stream = stream
        self.cache = cache
        self.locator = locator
        self._session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self.last_error: Optional[OllamaClientError] = None

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------
    def list_models(self, force_refresh: bool = False) -> List[ModelInfo]:
        """Return installed models; ``[]`` plus :attr:`last_error` on failure."""

        if not force_refresh and self.resilience.enable_cache:
            cached = self.cache.get()
            if cached is not None:
                LOGGER.debug("Using cached model list (%d models)", len(cached))
                return list(cached)

        if not self.locator.check_installed():
            self.last_error = OllamaClientError(
                f"Ollama is not running at {self.endpoint}; cannot list models."
            )
            return []

        attempts = max(1, self.resilience.list_attempts)
        backoff = Backoff.from_config(self.resilience, self.resilience.list_retry_delay)
        error: Optional[OllamaClientError] = None
        for attempt in range(1, attempts + 1):
            LOGGER.debug(
                "Fetching models from %s (attempt %d/%d)", self.endpoint.url("/api/tags"), attempt, attempts
            )
            try:
                models = self._fetch_models()
            except OllamaClientError as exc:
                error = exc
                LOGGER.warning("Error on attempt %d: %s", attempt, exc)
                if attempt < attempts:
                    delay = backoff.delay(attempt)
                    LOGGER.debug(
                        "Waiting %.2fs before retry (nominal %.2fs)...", delay, backoff.nominal(attempt)
                    )
                    self._sleep(delay)
                continue
            self.cache.store(models)
            self.last_error = None
            LOGGER.debug("Found %d models", len(models))
            return models

        LOGGER.error("Failed to list Ollama models. Please check if Ollama is running. (%s)", error)
        self.last_error = error
        return []

    def _fetch_models(self) -> List[ModelInfo]:
        try:
            response = self._session.get(
                self.endpoint.url("/api/tags"),
                timeout=8.0,
                headers={"Cache-Control": "no-cache", "Accept": "application/json"},
            )
        except requests.RequestException as exc:
            raise classify_transport_error(exc, context="model listing") from exc
        if response.status_code != 200:
            raise OllamaClientError(
                f"API returned status code {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise OllamaProtocolError("Invalid response structure: body is not JSON") from exc
        models = parse_model_list(payload)
        if models is None:
            raise OllamaProtocolError(f"Invalid response structure: {str(payload)[:200]}")
        return models

    def find_model(self, name: str) -> Optional[ModelInfo]:
        for model in self.list_models():
            if model.name == name:
                return model
        return None

    def code_models(self) -> List[ModelInfo]:
        return [
            model
            for model in self.list_models()
            if any(marker in model.name.lower() for marker in _CODE_MODEL_MARKERS)
        ]

    # ------------------------------------------------------------------
    # Pulling
    # ------------------------------------------------------------------
    def pull_model(
        self,
        name: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[ModelInfo]:
        """Download ``name``; returns the installed model, or None if cancelled."""

        token = cancel_token or CancellationToken()
        if token.cancelled:
            return None

        LOGGER.info("Pulling model %s", name)
        stream = BackgroundStream(
            self._session,
            self.endpoint.url("/api/pull"),
            {"name": name, "stream": True},
            timeout=(self.stream.connect_timeout, self.stream.pull_timeout),
            name=f"ollama-pull-{name}",
        )
        unregister = token.add_callback(stream.close)
        state = _PullState(model=name)
        meter = ThroughputMeter(self._clock)
        # Status lines carry the layer counters; the raw body size only matters without them.
        layer_meter = ThroughputMeter(self._clock)
        deadline = self._clock() + self.stream.pull_timeout
        buffer = LineBuffer()

        def report(message: str = "", *, throughput: float = 0.0, eta: str = "") -> None:
            if on_progress is None or token.cancelled:
                return
            completed, total = self._progress_counters(state)
            on_progress(
                PullProgress(
                    model=name,
                    step=state.step,
                    completed=completed,
                    total=total,
                    throughput=throughput,
                    eta=eta,
                    message=message,
                )
            )

        try:
            stream.start()
            report(_STEP_MESSAGES[PullStep.CONNECTING])
            while True:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise OllamaTimeoutError(
                        "Connection timed out. The model might be too large or the server is busy.",
                        kind=TimeoutKind.DEADLINE,
                    )
                event = stream.next_event(remaining)
                if token.cancelled:
                    LOGGER.info("Download of %s was cancelled by user", name)
                    return None
                if event is None:
                    continue
                if event.kind == "open":
                    state.transport_total = event.payload
                elif event.kind == "data":
                    state.received += len(event.payload)
                    rate = meter.update(state.received)
                    counted = False
                    for payload in iter_json_objects(buffer.feed(event.payload)):
                        layer_total = state.total
                        if self._apply_status(state, payload, report):
                            counted = True
                            if state.total != layer_total:
                                layer_meter.reset(state.completed)
                            layer_rate = layer_meter.update(state.completed)
                            self._report_download(state, layer_meter, layer_rate, report)
                    if not counted and state.step is PullStep.DOWNLOADING and not state.total:
                        self._report_download(state, meter, rate, report)
                elif event.kind == "end":
                    for payload in iter_json_objects(buffer.flush()):
                        self._apply_status(state, payload, report)
                    break
                elif event.kind == "status":
                    status_code, body = event.payload
                    raise classify_backend_error(status_code, body, model=name)
                elif event.kind == "error":
                    raise classify_transport_error(
                        event.payload, context="model pull", timeout_seconds=self.stream.pull_timeout
                    ) from event.payload
        except OllamaClientError as exc:
            raise self._pull_error(name, exc) from exc
        finally:
            unregister()
            stream.close()

        report("Model download complete! Finalizing installation...")
        self.cache.invalidate()
        installed = None
        for model in self.list_models(force_refresh=True):
            if model.name == name or model.name == f"{name}:latest":
                installed = model
                break
        if installed is not None:
            LOGGER.info("Successfully installed model %s (%.2f GB)", installed.name, installed.size_gb)
        else:
            LOGGER.info("Successfully installed model %s", name)
        return installed

    @staticmethod
    def _progress_counters(state: _PullState) -> tuple:
        if state.total:
            return state.completed, state.total
        return state.received, state.transport_total

    def _apply_status(self, state: _PullState, payload: Mapping, report: Callable[..., None]) -> bool:
        """Fold one status line into ``state``; True when it carried byte counters."""

        if isinstance(payload.get("error"), str):
            raise classify_backend_error(None, payload["error"], model=state.model)
        status = payload.get("status")
        if isinstance(status, str):
            step = step_from_status(status, state.step)
            if step is not state.step:
                state.step = step
                if step in _STEP_MESSAGES:
                    report(_STEP_MESSAGES[step])
        completed = payload.get("completed")
        total = payload.get("total")
        if state.step is PullStep.DOWNLOADING and isinstance(total, int) and total > 0:
            if total != state.total:
                state.last_percent = -1
            state.total = total
            state.completed = int(completed) if isinstance(completed, int) else 0
            return True
        return False

    def _report_download(
        self,
        state: _PullState,
        meter: ThroughputMeter,
        rate: float,
        report: Callable[..., None],
    ) -> None:
        speed = rate / _BYTES_PER_MB
        if state.total:
            percent = progress_percent(state.completed, state.total)
            if percent < state.last_percent:
                return
            state.last_percent = percent
            message = (
                f"Downloading model: {state.completed / _BYTES_PER_MB:.1f}MB / "
                f"{state.total / _BYTES_PER_MB:.1f}MB ({percent}%)"
            )
            report(message, throughput=rate, eta=meter.eta(state.completed, state.total))
        elif state.transport_total:
            percent = progress_percent(state.received, state.transport_total)
            eta = meter.eta(state.received, state.transport_total)
            message = (
                f"{state.received / _BYTES_PER_GB:.2f}GB / {state.transport_total / _BYTES_PER_GB:.2f}GB "
                f"({percent}%) - {speed:.1f} MB/s - {eta}"
            )
            report(message, throughput=rate, eta=eta)
        else:
            message = f"Downloaded: {state.received / _BYTES_PER_MB:.1f}MB - {speed:.1f} MB/s"
            report(message, throughput=rate)

    @staticmethod
    def _pull_error(name: str, exc: OllamaClientError) -> OllamaClientError:
        prefix = f"Failed to pull model {name}"
        if isinstance(exc, OllamaTimeoutError):
            return OllamaTimeoutError(
                f"{prefix}: Connection timed out. The model might be too large or the server is busy.",
                kind=exc.kind,
            )
        if isinstance(exc, OllamaModelNotFoundError) or exc.status_code == 404:
            return OllamaModelNotFoundError(
                f"{prefix}: Model '{name}' not found. Please check the model name.",
                model=name,
                status_code=exc.status_code,
            )
        if exc.status_code is None and exc.retryable:
            return type(exc)(
                f"{prefix}: No response received from server. Please check your network connection."
            )
        wrapped = type(exc)(f"{prefix}: {exc}")
        wrapped.status_code = exc.status_code
        return wrapped
