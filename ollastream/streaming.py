"""Streaming text generation over ``/api/generate``.

:meth:`StreamingEngine.iter_completion` is a lazy generator of
:class:`StreamChunk` values: a placeholder, a clear marker once bytes arrive,
the text deltas in transport order, optional notices, and a formatted error
chunk right before an exception is raised. Three deadlines guard every
stream: a first-byte warning, an inactivity limit once data has started
flowing, and a hard ceiling on the whole request.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generator, Iterable, Iterator, List, Mapping, Optional

import requests

from .cancellation import CancellationToken
from .config import StreamConfig
from .errors import (
    OllamaClientError,
    OllamaTimeoutError,
    TimeoutKind,
    classify_backend_error,
    classify_transport_error,
    format_error,
)
from .logging import get_logger
from .models import ServerEndpoint, StreamSession
from .prompts import truncate_prompt
from .transport import BackgroundStream, LineBuffer, iter_json_objects

LOGGER = get_logger(__name__)


class ChunkKind(str, Enum):
    PLACEHOLDER = "placeholder"
    CLEAR = "clear"
    DELTA = "delta"
    NOTICE = "notice"
    ERROR = "error"


@dataclass(frozen=True)
class StreamChunk:
    kind: ChunkKind
    text: str


ChunkCallback = Callable[[str], None]
Preflight = Callable[[str], None]


class StreamingEngine:
    def __init__(
        self,
        endpoint: ServerEndpoint,
        config: StreamConfig,
        *,
        session: Optional[requests.Session] = None,
        preflight: Optional[Preflight] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.endpoint = endpoint
        self.config = config
        self._session = session or requests.Session()
        self._preflight = preflight
        self._clock = clock

    def build_payload(
        self, model: str, prompt: str, *, max_tokens: int, temperature: float
    ) -> Dict[str, Any]:
        return {
            "model": model,
            "prompt": truncate_prompt(prompt, self.config.max_prompt_chars),
            "stream": True,
            "options": {
                "num_predict": min(int(max_tokens), self.config.max_num_predict),
                "temperature": float(temperature),
                "top_k": self.config.top_k,
                "top_p": self.config.top_p,
                "repeat_penalty": self.config.repeat_penalty,
            },
        }

    def stream_completion(
        self,
        model: str,
        prompt: str,
        on_chunk: ChunkCallback,
        *,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        timeout_seconds: float = 300,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Push every chunk's text to ``on_chunk``; returns the generated text."""

        parts: List[str] = []
        for chunk in self.iter_completion(
            model,
            prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout_seconds=timeout_seconds,
            cancel_token=cancel_token,
        ):
            if chunk.kind is ChunkKind.DELTA:
                parts.append(chunk.text)
            on_chunk(chunk.text)
        return "".join(parts)

    def iter_completion(
        self,
        model: str,
        prompt: str,
        *,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        timeout_seconds: float = 300,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[StreamChunk]:
        token = cancel_token or CancellationToken()
        if token.cancelled:
            return
        timeout = min(float(timeout_seconds), self.config.max_timeout)
        if timeout <= 0:
            raise ValueError("timeout_seconds must be positive")

        yield StreamChunk(ChunkKind.PLACEHOLDER, self.config.placeholder)
        if self._preflight is not None:
            self._preflight(model)
        if token.cancelled:
            return

        payload = self.build_payload(model, prompt, max_tokens=max_tokens, temperature=temperature)
        stream = BackgroundStream(
            self._session,
            self.endpoint.url("/api/generate"),
            payload,
            timeout=(self.config.connect_timeout, timeout + self.config.transport_margin),
            name=f"ollama-generate-{model}",
        )
        unregister = token.add_callback(stream.close)
        session = StreamSession(model=model, started_at=self._clock())
        first_byte_at = session.started_at + min(self.config.first_byte_warning_cap, timeout / 3)
        inactivity = min(self.config.inactivity_cap, timeout / 2)
        hard_deadline = session.started_at + timeout
        buffer = LineBuffer()
        LOGGER.debug("Streaming from %s with model %s (timeout %.0fs)", self.endpoint, model, timeout)

        try:
            stream.start()
            while True:
                now = self._clock()
                if now >= hard_deadline:
                    raise self._deadline_error(session, timeout)
                if session.first_chunk_received:
                    stall_at = session.last_activity + inactivity
                    if now >= stall_at:
                        raise OllamaTimeoutError(
                            f"Stream stalled: Ollama sent no data for {inactivity:g}s.",
                            kind=TimeoutKind.STALLED,
                        )
                    wake_at = min(stall_at, hard_deadline)
                elif not session.warned:
                    if now >= first_byte_at:
                        session.warned = True
                        yield StreamChunk(
                            ChunkKind.NOTICE,
                            "\n\n_Still waiting for the model to respond. "
                            "Large models can take a while to load._\n\n",
                        )
                        if token.cancelled:
                            session.cancelled = True
                            return
                        continue
                    wake_at = min(first_byte_at, hard_deadline)
                else:
                    wake_at = hard_deadline

                event = stream.next_event(wake_at - now)
                if token.cancelled:
                    session.cancelled = True
                    LOGGER.info("Stream for %s cancelled", model)
                    return
                if event is None:
                    continue

                if event.kind == "data":
                    first = not session.first_chunk_received
                    session.record_activity(self._clock())
                    if first:
                        yield StreamChunk(ChunkKind.CLEAR, "")
                        if token.cancelled:
                            session.cancelled = True
                            return
                    done = yield from self._emit(buffer.feed(event.payload), session, token)
                    if done or session.cancelled:
                        return
                elif event.kind == "end":
                    done = yield from self._emit(buffer.flush(), session, token)
                    if not done and not session.cancelled:
                        LOGGER.warning("Stream for %s ended without a done marker", model)
                    return
                elif event.kind == "status":
                    status_code, body = event.payload
                    raise classify_backend_error(status_code, body, model=model)
                elif event.kind == "error":
                    raise classify_transport_error(
                        event.payload, context="streaming request", timeout_seconds=timeout
                    ) from event.payload
                elif event.kind == "closed":
                    raise OllamaClientError("Stream was closed before the response finished.")
        except OllamaClientError as exc:
            if token.cancelled:
                return
            LOGGER.error("Streaming error: %s", exc)
            yield StreamChunk(ChunkKind.ERROR, f"\n\n_Error: {format_error(exc)}_")
            raise
        finally:
            unregister()
            stream.close()
            LOGGER.debug(
                "Stream for %s finished: %d tokens in %.1fs",
                model,
                session.token_count,
                self._clock() - session.started_at,
            )

    def _emit(
        self,
        lines: Iterable[str],
        session: StreamSession,
        token: CancellationToken,
    ) -> Generator[StreamChunk, None, bool]:
        """Yield deltas for ``lines``; returns True once the done marker is seen."""

        for payload in iter_json_objects(list(lines)):
            error = payload.get("error")
            if isinstance(error, str):
                raise classify_backend_error(None, error, model=session.model)
            text = payload.get("response")
            if isinstance(text, str) and text:
                if token.cancelled:
                    session.cancelled = True
                    return False
                session.append(text)
                yield StreamChunk(ChunkKind.DELTA, text)
                if token.cancelled:
                    session.cancelled = True
                    return False
            if payload.get("done") is True:
                self._record_stats(session, payload)
                return True
        return False

    @staticmethod
    def _record_stats(session: StreamSession, payload: Mapping[str, Any]) -> None:
        eval_count = payload.get("eval_count")
        if isinstance(eval_count, int):
            session.token_count = eval_count

    @staticmethod
    def _deadline_error(session: StreamSession, timeout: float) -> OllamaTimeoutError:
        if not session.first_chunk_received:
            return OllamaTimeoutError(
                f"No response from Ollama within {timeout:g}s. The model might be busy or the server overloaded.",
                kind=TimeoutKind.FIRST_BYTE,
            )
        return OllamaTimeoutError(
            f"Maximum streaming time of {timeout:g}s exceeded. The model may be generating too much content.",
            kind=TimeoutKind.DEADLINE,
        )
