"""Configuration models and loaders for the Ollama client."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .logging import get_logger

LOGGER = get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent

_DOTENV_LOADED = False

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _load_dotenv_once() -> None:
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return

    env_file = os.getenv("ENV_FILE", ".env")
    env_path = Path(env_file)
    if not env_path.is_absolute():
        env_path = PROJECT_ROOT / env_file
    if env_path.exists():
        load_dotenv(env_path, override=False)
    _DOTENV_LOADED = True


def _env(key: str) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_bool(key: str) -> Optional[bool]:
    value = _env(key)
    if value is None:
        return None
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    LOGGER.warning("Ignoring %s=%r: expected a boolean value.", key, value)
    return None


def _update_dataclass(instance: Any, values: Dict[str, Any]) -> None:
    for key, value in values.items():
        if hasattr(instance, key):
            setattr(instance, key, value)
        else:
            LOGGER.warning("Unknown configuration key '%s' for %s.", key, type(instance).__name__)


def _clamp(name: str, value: float, low: float, high: float) -> float:
    if value < low or value > high:
        clamped = min(max(value, low), high)
        LOGGER.warning("%s=%s is outside [%s, %s]; using %s.", name, value, low, high, clamped)
        return clamped
    return value


@dataclass
class OllamaConfig:
    """Connection details and generation defaults for the Ollama HTTP API."""

    host: str = "http://localhost:11434"
    timeout: float = 5.0
    default_model: Optional[str] = None
    max_response_tokens: int = 4096
    temperature: float = 0.7
    request_timeout: int = 300
    auto_start_server: bool = True
    force_recheck: bool = False


@dataclass
class ResilienceConfig:
    """Caching and retry policy.

    ``enable_cache=False`` and ``advanced_backoff=False`` reproduce the plain
    client: every probe hits the network and retries wait a flat delay.
    """

    enable_cache: bool = True
    cache_ttl: float = 30.0
    advanced_backoff: bool = True
    health_retry_count: int = 2
    health_retry_delay: float = 1.5
    list_attempts: int = 3
    list_retry_delay: float = 1.0
    max_backoff: float = 10.0
    jitter: float = 0.1
    probe_timeout_cap: float = 3.0


@dataclass
class LauncherConfig:
    """How the server binary is started when it is installed but not running."""

    executable: Optional[str] = None
    poll_intervals: List[float] = field(default_factory=lambda: [2.0, 3.0, 4.0, 5.0, 6.0])
    probe_timeout: float = 3.0
    post_start_wait: float = 2.0


@dataclass
class StreamConfig:
    """Generation parameters and watchdog thresholds for completions."""

    placeholder: str = "_Thinking..._"
    max_prompt_chars: int = 8000
    max_num_predict: int = 4096
    top_k: int = 40
    top_p: float = 0.9
    repeat_penalty: float = 1.1
    connect_timeout: float = 30.0
    transport_margin: float = 30.0
    first_byte_warning_cap: float = 10.0
    inactivity_cap: float = 30.0
    max_timeout: float = 1200.0
    generate_timeout: float = 60.0
    pull_timeout: float = 1800.0
    oom_fallback_after: int = 1


@dataclass
class PromptConfig:
    """Instruction text used by the code actions."""

    explain: str = "Explain what this code does in detail:"
    improve: str = "Improve this code. Consider performance, readability, and best practices:"
    document: str = "Generate comprehensive documentation for this code:"
    complete: str = (
        "Complete the following {language} code. Only return the completion, not the original code:"
    )


@dataclass
class AppConfig:
    """Aggregate configuration container used by the client and the CLI."""

    ollama: OllamaConfig = field(default_factory=OllamaConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    launcher: LauncherConfig = field(default_factory=LauncherConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    prompts: PromptConfig = field(default_factory=PromptConfig)

    @classmethod
    def load(cls, *, config_path: Optional[Path] = None) -> "AppConfig":
        """Create an :class:`AppConfig` from YAML/JSON and environment overrides."""

        _load_dotenv_once()
        instance = cls()

        file_path = config_path or _env("APP_CONFIG_FILE")
        if file_path is None:
            yaml_path = PROJECT_ROOT / "config.yaml"
            json_path = PROJECT_ROOT / "config.json"
            file_path = yaml_path if yaml_path.exists() or not json_path.exists() else json_path
        file_path = Path(file_path)
        if not file_path.is_absolute():
            file_path = PROJECT_ROOT / file_path
        if file_path.exists():
            with file_path.open("r", encoding="utf-8") as handle:
                if file_path.suffix.lower() in {".yaml", ".yml"}:
                    payload = yaml.safe_load(handle) or {}
                else:
                    payload = json.load(handle)
            instance.apply_mapping(payload)

        instance.apply_environment()
        instance.validate()
        return instance

    # ------------------------------------------------------------------
    # Override helpers
    # ------------------------------------------------------------------
    def apply_mapping(self, payload: Dict[str, Any]) -> None:
        if not payload:
            return

        if "ollama" in payload:
            _update_dataclass(self.ollama, payload["ollama"])
        if "resilience" in payload:
            _update_dataclass(self.resilience, payload["resilience"])
        if "launcher" in payload:
            _update_dataclass(self.launcher, payload["launcher"])
        if "stream" in payload:
            _update_dataclass(self.stream, payload["stream"])
        if "prompts" in payload:
            _update_dataclass(self.prompts, payload["prompts"])

    def apply_environment(self) -> None:
        host = _env("OLLAMA_HOST")
        if host:
            self.ollama.host = host
        timeout = _env("OLLAMA_TIMEOUT")
        if timeout:
            self.ollama.timeout = float(timeout)
        model = _env("OLLAMA_MODEL")
        if model:
            self.ollama.default_model = model
        max_tokens = _env("OLLAMA_MAX_TOKENS")
        if max_tokens:
            self.ollama.max_response_tokens = int(max_tokens)
        temperature = _env("OLLAMA_TEMPERATURE")
        if temperature:
            self.ollama.temperature = float(temperature)
        request_timeout = _env("OLLAMA_REQUEST_TIMEOUT")
        if request_timeout:
            self.ollama.request_timeout = int(request_timeout)

        auto_start = _env_bool("OLLAMA_AUTO_START")
        if auto_start is not None:
            self.ollama.auto_start_server = auto_start
        force_recheck = _env_bool("OLLAMA_FORCE_RECHECK")
        if force_recheck is not None:
            self.ollama.force_recheck = force_recheck

        enable_cache = _env_bool("OLLAMA_ENABLE_CACHE")
        if enable_cache is not None:
            self.resilience.enable_cache = enable_cache
        executable = _env("OLLAMA_EXECUTABLE")
        if executable:
            self.launcher.executable = executable

    def validate(self) -> None:
        """Clamp user-facing values into the ranges the server accepts."""

        self.ollama.temperature = _clamp("temperature", float(self.ollama.temperature), 0.0, 2.0)
        self.ollama.request_timeout = int(
            _clamp("request_timeout", int(self.ollama.request_timeout), 15, self.stream.max_timeout)
        )
        if self.ollama.max_response_tokens < 1:
            LOGGER.warning(
                "max_response_tokens=%s is not positive; using 4096.", self.ollama.max_response_tokens
            )
            self.ollama.max_response_tokens = 4096
        if self.resilience.cache_ttl < 0:
            self.resilience.cache_ttl = 0.0
