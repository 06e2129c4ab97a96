"""Background reading of newline-delimited JSON responses.

``requests`` blocks while it waits for bytes, so long-lived responses are read
on a daemon thread that hands raw chunks to the caller through a queue. The
caller keeps every timer as a deadline on its own thread, which is also the
only thread that ever invokes user callbacks.
"""

from __future__ import annotations

import json
import queue
import threading
from dataclasses import dataclass
from typing import Any, Iterator, List, Mapping, Optional, Tuple, Union

import requests

from .logging import get_logger

LOGGER = get_logger(__name__)

JSON_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}


@dataclass(frozen=True)
class StreamEvent:
    """One message from the reader thread.

    ``kind`` is ``open`` (payload: content length or None), ``data`` (bytes),
    ``status`` (payload: ``(status_code, body_text)``), ``error`` (exception),
    ``end`` or ``closed``.
    """

    kind: str
    payload: Any = None


class BackgroundStream:
    def __init__(
        self,
        session: requests.Session,
        url: str,
        payload: Mapping[str, Any],
        *,
        timeout: Union[float, Tuple[float, float]],
        name: str = "ollama-stream",
    ) -> None:
        self._session = session
        self._url = url
        self._payload = dict(payload)
        self._timeout = timeout
        self._name = name
        self._events: "queue.Queue[StreamEvent]" = queue.Queue()
        self._lock = threading.Lock()
        self._response: Optional[requests.Response] = None
        self._closed = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "BackgroundStream":
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        return self

    def next_event(self, timeout: Optional[float]) -> Optional[StreamEvent]:
        """Block up to ``timeout`` seconds; ``None`` means nothing arrived."""

        try:
            if timeout is None:
                return self._events.get()
            return self._events.get(timeout=max(timeout, 0.0))
        except queue.Empty:
            return None

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Abort the transport and wake a consumer blocked in :meth:`next_event`."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            response = self._response
        if response is not None:
            response.close()
        self._events.put(StreamEvent("closed"))

    def _put(self, event: StreamEvent) -> None:
        if not self._closed:
            self._events.put(event)

    def _run(self) -> None:
        try:
            response = self._session.post(
                self._url,
                json=self._payload,
                stream=True,
                timeout=self._timeout,
                headers=JSON_HEADERS,
            )
        except Exception as exc:
            self._put(StreamEvent("error", exc))
            return

        with self._lock:
            if self._closed:
                response.close()
                return
            self._response = response

        try:
            if response.status_code != 200:
                self._put(StreamEvent("status", (response.status_code, response.text)))
                return
            length = response.headers.get("Content-Length") if response.headers else None
            self._put(StreamEvent("open", int(length) if length and length.isdigit() else None))
            for chunk in response.iter_content(chunk_size=None):
                if self._closed:
                    return
                if chunk:
                    self._put(StreamEvent("data", chunk))
            self._put(StreamEvent("end"))
        except Exception as exc:
            if self._closed:
                LOGGER.debug("Reader for %s stopped after close: %s", self._url, exc)
                return
            self._put(StreamEvent("error", exc))
        finally:
            response.close()


class LineBuffer:
    """Reassembles complete lines from arbitrarily split byte chunks."""

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, data: bytes) -> List[str]:
        self._pending += data
        *complete, self._pending = self._pending.split(b"\n")
        return [line for line in (self._decode(raw) for raw in complete) if line]

    def flush(self) -> List[str]:
        remaining, self._pending = self._pending, b""
        line = self._decode(remaining)
        return [line] if line else []

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").strip()


def iter_json_objects(lines: List[str]) -> Iterator[Mapping[str, Any]]:
    """Parse each line as a JSON object, skipping anything that is not one."""

    for line in lines:
        try:
            payload = json.loads(line)
        except ValueError:
            LOGGER.debug("Skipping malformed stream line: %.100s", line)
            continue
        if isinstance(payload, dict):
            yield payload
        else:
            LOGGER.debug("Skipping non-object stream line: %.100s", line)
