"""Resilient client for a local Ollama server."""

from .backoff import Backoff
from .cache import HealthCache, ModelListCache
from .cancellation import CancellationToken
from .client import OllamaClient
from .completion import CompletionFallback
from .config import (
    AppConfig,
    LauncherConfig,
    OllamaConfig,
    PromptConfig,
    ResilienceConfig,
    StreamConfig,
)
from .errors import (
    OllamaClientError,
    OllamaConnectionError,
    OllamaModelNotFoundError,
    OllamaProtocolError,
    OllamaResourceError,
    OllamaTimeoutError,
    TimeoutKind,
    classify_backend_error,
    classify_transport_error,
    format_error,
)
from .health import HealthProber
from .launcher import ProcessLauncher
from .locator import ServerLocator, install_instructions
from .models import (
    HealthReport,
    InstallationState,
    ModelInfo,
    PullProgress,
    PullStep,
    ServerEndpoint,
    StreamSession,
)
from .prompts import CodeAction, build_code_prompt, truncate_prompt
from .registry import RECOMMENDED_MODELS, ModelRegistry
from .streaming import ChunkKind, StreamChunk, StreamingEngine

__all__ = [
    "AppConfig",
    "Backoff",
    "CancellationToken",
    "ChunkKind",
    "CodeAction",
    "CompletionFallback",
    "HealthCache",
    "HealthProber",
    "HealthReport",
    "InstallationState",
    "LauncherConfig",
    "ModelInfo",
    "ModelListCache",
    "ModelRegistry",
    "OllamaClient",
    "OllamaClientError",
    "OllamaConfig",
    "OllamaConnectionError",
    "OllamaModelNotFoundError",
    "OllamaProtocolError",
    "OllamaResourceError",
    "OllamaTimeoutError",
    "ProcessLauncher",
    "PromptConfig",
    "PullProgress",
    "PullStep",
    "RECOMMENDED_MODELS",
    "ResilienceConfig",
    "ServerEndpoint",
    "ServerLocator",
    "StreamChunk",
    "StreamConfig",
    "StreamSession",
    "StreamingEngine",
    "TimeoutKind",
    "build_code_prompt",
    "classify_backend_error",
    "classify_transport_error",
    "format_error",
    "install_instructions",
    "truncate_prompt",
]
