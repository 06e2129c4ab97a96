"""Fire-and-forget launch of the ``ollama serve`` process."""

from __future__ import annotations

import subprocess
import sys
import threading
import time
from typing import IO, Callable, Optional

import requests

from .config import LauncherConfig
from .logging import get_logger
from .models import ServerEndpoint

LOGGER = get_logger(__name__)

Popen = Callable[..., "subprocess.Popen[bytes]"]


def _detach_kwargs() -> dict:
    if sys.platform == "win32":
        flags = (
            getattr(subprocess, "DETACHED_PROCESS", 0)
            | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
            | getattr(subprocess, "CREATE_NO_WINDOW", 0)
        )
        return {"creationflags": flags}
    return {"start_new_session": True}


def _drain(stream: Optional[IO[bytes]], label: str) -> None:
    if stream is None:
        return

    def pump() -> None:
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    LOGGER.debug("[ollama %s] %s", label, line)
        except (OSError, ValueError) as exc:
            LOGGER.debug("Stopped reading ollama %s: %s", label, exc)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    thread = threading.Thread(target=pump, name=f"ollama-{label}", daemon=True)
    thread.start()


class ProcessLauncher:
    """Starts the server detached from this process and waits for it to answer.

    The spawned process is never tracked afterwards: it outlives the caller
    and stopping it is the user's business.
    """

    def __init__(
        self,
        endpoint: ServerEndpoint,
        config: LauncherConfig,
        *,
        session: Optional[requests.Session] = None,
        popen: Popen = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.endpoint = endpoint
        self.config = config
        self._session = session or requests.Session()
        self._popen = popen
        self._sleep = sleep

    def start_server(self, executable: Optional[str] = None) -> bool:
        command = [executable or self.config.executable or "ollama", "serve"]
        LOGGER.info("Starting Ollama server: %s", " ".join(command))
        try:
            process = self._popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **_detach_kwargs(),
            )
        except OSError as exc:
            LOGGER.error("Failed to start Ollama process: %s", exc)
            return False

        _drain(getattr(process, "stdout", None), "stdout")
        _drain(getattr(process, "stderr", None), "stderr")
        return self.wait_until_ready()

    def wait_until_ready(self) -> bool:
        """Poll the tags route on the configured schedule until it returns 2xx."""

        intervals = list(self.config.poll_intervals)
        url = self.endpoint.url("/api/tags")
        for attempt, wait in enumerate(intervals, start=1):
            LOGGER.info(
                "Waiting %.0fs before checking server status (attempt %d/%d)...",
                wait,
                attempt,
                len(intervals),
            )
            self._sleep(wait)
            try:
                response = self._session.get(
                    url,
                    timeout=self.config.probe_timeout,
                    headers={"Accept": "application/json"},
                )
            except requests.RequestException as exc:
                LOGGER.debug("Ollama server not ready on attempt %d: %s", attempt, exc)
                continue
            if 200 <= response.status_code < 300:
                LOGGER.info("Ollama server started after %d attempt(s).", attempt)
                return True
            LOGGER.warning("Ollama server returned status %s on attempt %d", response.status_code, attempt)

        LOGGER.error("Ollama server did not become ready after %d attempts.", len(intervals))
        return False
