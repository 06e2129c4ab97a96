"""Shared records describing the server, its models and in-flight requests."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

DEFAULT_PORT = 11434


@dataclass(frozen=True)
class ServerEndpoint:
    """Base network address of the Ollama HTTP API."""

    host: str = "localhost"
    port: int = DEFAULT_PORT
    scheme: str = "http"

    @classmethod
    def parse(cls, value: str) -> "ServerEndpoint":
        text = (value or "").strip()
        if not text:
            return cls()
        if "://" not in text:
            text = f"http://{text}"
        parts = urlsplit(text)
        if not parts.hostname:
            raise ValueError(f"Invalid Ollama host '{value}'.")
        port = parts.port or (443 if parts.scheme == "https" else DEFAULT_PORT)
        return cls(host=parts.hostname, port=port, scheme=parts.scheme or "http")

    @property
    def base_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.scheme}://{host}:{self.port}"

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def __str__(self) -> str:
        return self.base_url


class InstallationState(str, Enum):
    UNKNOWN = "unknown"
    NOT_INSTALLED = "not_installed"
    INSTALLED_NOT_RUNNING = "installed_not_running"
    RUNNING = "running"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # The server emits nanosecond precision; fromisoformat only takes microseconds.
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for index, char in enumerate(tail):
            if not char.isdigit():
                rest = tail[index:]
                break
            digits += char
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class ModelInfo:
    """Metadata for an installed model as reported by ``/api/tags``."""

    name: str
    size: int = 0
    modified_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ModelInfo":
        size = payload.get("size") or 0
        return cls(
            name=str(payload.get("name", "")),
            size=int(size) if isinstance(size, (int, float)) else 0,
            modified_at=_parse_timestamp(payload.get("modified_at")),
        )

    @property
    def family(self) -> str:
        return self.name.split(":", 1)[0]

    @property
    def tag(self) -> str:
        _, _, tag = self.name.partition(":")
        return tag or "latest"

    @property
    def size_gb(self) -> float:
        return self.size / (1024 ** 3)


def parse_model_list(payload: Any) -> Optional[List[ModelInfo]]:
    """Return the models from a tags payload, or ``None`` if the payload is malformed."""

    if not isinstance(payload, Mapping):
        return None
    models = payload.get("models")
    if not isinstance(models, list):
        return None
    return [
        ModelInfo.from_payload(item)
        for item in models
        if isinstance(item, Mapping) and item.get("name")
    ]


@dataclass(frozen=True)
class HealthReport:
    healthy: bool
    model_name: Optional[str] = None
    model_available: Optional[bool] = None
    models: Optional[Tuple[ModelInfo, ...]] = None

    @property
    def model_missing(self) -> bool:
        return self.model_available is False


@dataclass
class StreamSession:
    """Mutable state owned by one streaming request."""

    model: str
    started_at: float = field(default_factory=time.monotonic)
    last_activity: Optional[float] = None
    first_chunk_received: bool = False
    token_count: int = 0
    cancelled: bool = False
    warned: bool = False
    parts: List[str] = field(default_factory=list)

    def record_activity(self, now: float) -> None:
        self.last_activity = now
        self.first_chunk_received = True

    def append(self, text: str) -> None:
        self.parts.append(text)
        self.token_count += 1

    @property
    def text(self) -> str:
        return "".join(self.parts)


class PullStep(str, Enum):
    CONNECTING = "connecting"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    UNPACKING = "unpacking"
    LOADING = "loading"


@dataclass(frozen=True)
class PullProgress:
    """Snapshot of a model download, recomputed on each progress tick."""

    model: str
    step: PullStep
    completed: int = 0
    total: Optional[int] = None
    throughput: float = 0.0
    eta: str = ""
    message: str = ""

    @property
    def percent(self) -> Optional[int]:
        if not self.total:
            return None
        return progress_percent(self.completed, self.total)


def progress_percent(completed: int, total: int) -> int:
    """Whole-number percentage that only reads 100 once ``completed == total``."""

    if total <= 0:
        return 0
    percent = int(round(completed / total * 100))
    if completed < total:
        percent = min(percent, 99)
    return max(0, min(percent, 100))
