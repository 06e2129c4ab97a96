"""Decide whether the Ollama server is running, installed, or missing."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Optional

import requests

from .config import OllamaConfig
from .launcher import ProcessLauncher
from .logging import get_logger
from .models import InstallationState, ServerEndpoint

LOGGER = get_logger(__name__)


class InstallInstructions(NamedTuple):
    title: str
    url: str


INSTALL_INSTRUCTIONS: Dict[str, InstallInstructions] = {
    "darwin": InstallInstructions("Download Ollama for macOS", "https://ollama.com/download/mac"),
    "win32": InstallInstructions("Download Ollama for Windows", "https://ollama.com/download/windows"),
    "linux": InstallInstructions("Install Ollama for Linux", "https://ollama.com/download/linux"),
}

MODEL_LIBRARY_URL = "https://ollama.com/library"


def install_instructions(platform: Optional[str] = None) -> InstallInstructions:
    platform = platform or sys.platform
    return INSTALL_INSTRUCTIONS.get(platform, INSTALL_INSTRUCTIONS["linux"])


def windows_install_paths() -> List[Path]:
    program_files = os.environ.get("ProgramFiles", r"C:\Program Files")
    paths = [Path(program_files) / "Ollama" / "ollama.exe"]
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        paths.append(Path(local_app_data) / "Programs" / "Ollama" / "ollama.exe")
    return paths


def unix_install_paths() -> List[Path]:
    home = Path.home()
    paths = [
        Path("/usr/local/bin/ollama"),
        Path("/usr/bin/ollama"),
        Path("/opt/ollama/ollama"),
        home / "ollama" / "ollama",
        home / ".ollama" / "ollama",
    ]
    if sys.platform == "darwin":
        paths.append(Path("/Applications/Ollama.app/Contents/Resources/ollama"))
    return paths


class ServerLocator:
    """Tracks :class:`InstallationState` for one endpoint.

    The state is cached after the first check; pass ``force_recheck`` (or set
    ``OllamaConfig.force_recheck``) to probe again.
    """

    def __init__(
        self,
        endpoint: ServerEndpoint,
        config: OllamaConfig,
        launcher: ProcessLauncher,
        *,
        session: Optional[requests.Session] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        path_exists: Callable[[Path], bool] = Path.exists,
        platform: Optional[str] = None,
    ) -> None:
        self.endpoint = endpoint
        self.config = config
        self.launcher = launcher
        self._session = session or requests.Session()
        self._which = which
        self._run = run
        self._path_exists = path_exists
        self._platform = platform or sys.platform
        self.state = InstallationState.UNKNOWN
        self.executable: Optional[str] = None

    def check_installed(self, force_recheck: Optional[bool] = None) -> bool:
        if force_recheck is None:
            force_recheck = self.config.force_recheck
        if self.state is not InstallationState.UNKNOWN and not force_recheck:
            return self.state is InstallationState.RUNNING

        if self._server_responds():
            self.state = InstallationState.RUNNING
            return True

        executable = self.find_executable()
        if executable is None:
            LOGGER.warning(
                "Ollama binary not found. %s: %s",
                *install_instructions(self._platform),
            )
            self.state = InstallationState.NOT_INSTALLED
            return False

        self.executable = executable
        self.state = InstallationState.INSTALLED_NOT_RUNNING
        if not self.config.auto_start_server:
            LOGGER.warning("Ollama is installed at %s but not running; auto-start is disabled.", executable)
            return False
        return self.start_server()

    def start_server(self) -> bool:
        """Launch the server and record the outcome in :attr:`state`."""

        started = self.launcher.start_server(self.executable)
        if started:
            self.state = InstallationState.RUNNING
        elif self.state is InstallationState.RUNNING:
            self.state = InstallationState.INSTALLED_NOT_RUNNING
        return started

    def invalidate(self) -> None:
        self.state = InstallationState.UNKNOWN

    def _server_responds(self) -> bool:
        url = self.endpoint.url("/api/tags")
        LOGGER.debug("Checking Ollama API at %s", url)
        try:
            response = self._session.get(
                url,
                timeout=self.config.timeout,
                headers={"Cache-Control": "no-cache", "Accept": "application/json"},
            )
        except requests.ConnectTimeout:
            LOGGER.info("Connection to %s timed out; the server may be busy or unreachable.", self.endpoint)
            return False
        except requests.Timeout:
            LOGGER.info("Ollama at %s did not answer in %.0fs.", self.endpoint, self.config.timeout)
            return False
        except requests.ConnectionError as exc:
            LOGGER.info("Ollama at %s is not reachable: %s", self.endpoint, exc)
            return False

        if 200 <= response.status_code < 300:
            LOGGER.info("Ollama API connection successful - server is running")
            return True
        LOGGER.warning("Ollama API returned status code %s", response.status_code)
        return False

    def find_executable(self) -> Optional[str]:
        if self._platform == "win32":
            for path in windows_install_paths():
                if self._path_exists(path):
                    return str(path)
            return self._which("ollama")

        try:
            result = self._run(
                ["ollama", "--version"],
                capture_output=True,
                text=True,
                timeout=5,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.debug("'ollama --version' failed: %s", exc)
        else:
            if result.returncode == 0:
                LOGGER.info("Ollama binary found: %s", (result.stdout or "").strip())
                return self._which("ollama") or "ollama"

        located = self._which("ollama")
        if located:
            return located
        for path in unix_install_paths():
            if self._path_exists(path):
                LOGGER.info("Found ollama binary at %s", path)
                return str(path)
        return None
