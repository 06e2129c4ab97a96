import subprocess

import requests

from conftest import FakeResponse
from ollastream.config import LauncherConfig
from ollastream.launcher import ProcessLauncher


class FakeProcess:
    stdout = None
    stderr = None


class RecordingPopen:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def __call__(self, command, **kwargs):
        self.calls.append((command, kwargs))
        if self.error is not None:
            raise self.error
        return FakeProcess()


def make_launcher(endpoint, session, popen, sleeps, **config):
    return ProcessLauncher(
        endpoint,
        LauncherConfig(**config),
        session=session,
        popen=popen,
        sleep=sleeps.append,
    )


def test_start_server_spawns_detached_and_polls_until_ready(endpoint, session, sleeps):
    popen = RecordingPopen()
    session.queue(
        "GET",
        "/api/tags",
        requests.ConnectionError("refused"),
        FakeResponse(200, {"models": []}),
    )
    launcher = make_launcher(endpoint, session, popen, sleeps)

    assert launcher.start_server("/usr/local/bin/ollama") is True

    command, kwargs = popen.calls[0]
    assert command == ["/usr/local/bin/ollama", "serve"]
    assert kwargs["stdin"] is subprocess.DEVNULL
    assert "start_new_session" in kwargs or "creationflags" in kwargs
    assert sleeps == [2.0, 3.0]


def test_configured_executable_is_used_when_none_given(endpoint, session, sleeps):
    popen = RecordingPopen()
    session.queue("GET", "/api/tags", FakeResponse(200, {"models": []}))
    launcher = make_launcher(endpoint, session, popen, sleeps, executable="/opt/ollama/ollama")

    launcher.start_server()

    assert popen.calls[0][0] == ["/opt/ollama/ollama", "serve"]


def test_spawn_failure_returns_false(endpoint, session, sleeps):
    launcher = make_launcher(endpoint, session, RecordingPopen(FileNotFoundError("ollama")), sleeps)

    assert launcher.start_server() is False
    assert session.calls == []
    assert sleeps == []


def test_server_that_never_answers_gives_up_after_schedule(endpoint, session, sleeps):
    session.queue("GET", "/api/tags", FakeResponse(500, text="starting"))
    launcher = make_launcher(endpoint, session, RecordingPopen(), sleeps, poll_intervals=[1.0, 1.0, 2.0])

    assert launcher.start_server() is False
    assert sleeps == [1.0, 1.0, 2.0]
    assert len(session.calls_to("GET", "/api/tags")) == 3
