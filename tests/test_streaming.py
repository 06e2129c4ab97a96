import pytest
import requests

from conftest import FakeResponse, ndjson
from ollastream.cancellation import CancellationToken
from ollastream.config import StreamConfig
from ollastream.errors import (
    OllamaConnectionError,
    OllamaModelNotFoundError,
    OllamaResourceError,
    OllamaTimeoutError,
    TimeoutKind,
)
from ollastream.streaming import ChunkKind, StreamingEngine


@pytest.fixture
def engine(endpoint, session):
    return StreamingEngine(endpoint, StreamConfig(), session=session)


def deltas(chunks):
    return [chunk.text for chunk in chunks if chunk.kind is ChunkKind.DELTA]


def test_chunks_arrive_in_transport_order(engine, session):
    session.queue(
        "POST",
        "/api/generate",
        FakeResponse(
            200,
            chunks=[
                b'{"response":"Hel"}\n{"resp',
                b'onse":"lo"}\n',
                ndjson({"response": "/world"}, {"response": "", "done": True, "eval_count": 3}),
            ],
        ),
    )

    chunks = list(engine.iter_completion("llama3:8b", "Say hello"))

    assert [chunk.kind for chunk in chunks[:2]] == [ChunkKind.PLACEHOLDER, ChunkKind.CLEAR]
    assert chunks[0].text == "_Thinking..._"
    assert deltas(chunks) == ["Hel", "lo", "/world"]


def test_request_payload_caps_generation_options(engine, session):
    session.queue("POST", "/api/generate", FakeResponse(200, chunks=[ndjson({"done": True})]))

    list(engine.iter_completion("llama3:8b", "x" * 9000, max_tokens=10000, temperature=0.2, timeout_seconds=60))

    call = session.calls_to("POST", "/api/generate")[0]
    payload = call["json"]
    assert payload["stream"] is True
    assert payload["options"] == {
        "num_predict": 4096,
        "temperature": 0.2,
        "top_k": 40,
        "top_p": 0.9,
        "repeat_penalty": 1.1,
    }
    assert payload["prompt"].endswith("... [content truncated to 8000 characters for performance] ...")
    assert call["stream"] is True
    assert call["timeout"] == (30.0, 90.0)


def test_malformed_lines_are_skipped(engine, session):
    session.queue(
        "POST",
        "/api/generate",
        FakeResponse(200, chunks=[b"not json\n", b"[1, 2]\n", ndjson({"response": "ok"}, {"done": True})]),
    )

    assert deltas(engine.iter_completion("llama3:8b", "hi")) == ["ok"]


def test_trailing_line_without_newline_is_parsed(engine, session):
    session.queue(
        "POST",
        "/api/generate",
        FakeResponse(200, chunks=[b'{"response":"tail"}\n{"response":"!","done":true}']),
    )

    assert deltas(engine.iter_completion("llama3:8b", "hi")) == ["tail", "!"]


def test_stream_completion_forwards_every_chunk(engine, session):
    session.queue(
        "POST",
        "/api/generate",
        FakeResponse(200, chunks=[ndjson({"response": "a"}, {"response": "b"}, {"done": True})]),
    )
    seen = []

    text = engine.stream_completion("llama3:8b", "hi", seen.append)

    assert text == "ab"
    assert seen == ["_Thinking..._", "", "a", "b"]


def test_preflight_runs_before_dispatch(endpoint, session):
    order = []
    session.queue("POST", "/api/generate", FakeResponse(200, chunks=[ndjson({"done": True})]))
    engine = StreamingEngine(endpoint, StreamConfig(), session=session, preflight=order.append)

    list(engine.iter_completion("phi3:mini", "hi"))

    assert order == ["phi3:mini"]


def test_stalled_stream_raises_after_inactivity(endpoint, session):
    response = FakeResponse(200, chunks=[ndjson({"response": "partial"})], hold_open=True)
    session.queue("POST", "/api/generate", response)
    engine = StreamingEngine(endpoint, StreamConfig(inactivity_cap=0.2), session=session)
    chunks = []

    with pytest.raises(OllamaTimeoutError) as excinfo:
        for chunk in engine.iter_completion("llama3:8b", "hi", timeout_seconds=5):
            chunks.append(chunk)

    assert excinfo.value.kind is TimeoutKind.STALLED
    assert deltas(chunks) == ["partial"]
    assert chunks[-1].kind is ChunkKind.ERROR
    assert chunks[-1].text.startswith("\n\n_Error: Stream stalled")
    assert response.closed.is_set()


def test_slow_first_byte_emits_single_notice_then_deadline(endpoint, session):
    response = FakeResponse(200, hold_open=True)
    session.queue("POST", "/api/generate", response)
    engine = StreamingEngine(endpoint, StreamConfig(max_timeout=0.6), session=session)

    with pytest.raises(OllamaTimeoutError) as excinfo:
        chunks = []
        for chunk in engine.iter_completion("llama3:8b", "hi", timeout_seconds=30):
            chunks.append(chunk)

    assert excinfo.value.kind is TimeoutKind.FIRST_BYTE
    kinds = [chunk.kind for chunk in chunks]
    assert kinds.count(ChunkKind.NOTICE) == 1
    assert kinds[-1] is ChunkKind.ERROR


def test_cancellation_stops_stream_silently(engine, session):
    response = FakeResponse(200, chunks=[ndjson({"response": "one"})], hold_open=True)
    session.queue("POST", "/api/generate", response)
    token = CancellationToken()
    chunks = []

    for chunk in engine.iter_completion("llama3:8b", "hi", cancel_token=token):
        chunks.append(chunk)
        if chunk.kind is ChunkKind.DELTA:
            token.cancel()
            token.cancel()

    assert deltas(chunks) == ["one"]
    assert chunks[-1].kind is ChunkKind.DELTA
    assert response.closed.is_set()
    token.cancel()


def test_cancelling_on_the_clear_chunk_drops_pending_text(engine, session):
    response = FakeResponse(200, chunks=[ndjson({"response": "late"}, {"done": True})])
    session.queue("POST", "/api/generate", response)
    token = CancellationToken()
    seen = []

    def on_chunk(text):
        seen.append(text)
        if text == "":
            token.cancel()

    assert engine.stream_completion("llama3:8b", "hi", on_chunk, cancel_token=token) == ""
    assert seen == ["_Thinking..._", ""]
    assert response.closed.is_set()


def test_cancel_before_start_yields_nothing(engine, session):
    token = CancellationToken()
    token.cancel()

    assert list(engine.iter_completion("llama3:8b", "hi", cancel_token=token)) == []
    assert session.calls == []


def test_cancel_after_completion_is_noop(engine, session):
    session.queue("POST", "/api/generate", FakeResponse(200, chunks=[ndjson({"response": "x"}, {"done": True})]))
    token = CancellationToken()

    assert deltas(engine.iter_completion("llama3:8b", "hi", cancel_token=token)) == ["x"]
    token.cancel()
    assert token.cancelled


def test_out_of_memory_status_becomes_resource_error(engine, session):
    session.queue(
        "POST",
        "/api/generate",
        FakeResponse(500, text='{"error":"model requires more system memory (9.1 GiB) than is available (4.0 GiB)"}'),
    )
    chunks = []

    with pytest.raises(OllamaResourceError):
        for chunk in engine.iter_completion("llama3:70b", "hi"):
            chunks.append(chunk)

    assert [chunk.kind for chunk in chunks] == [ChunkKind.PLACEHOLDER, ChunkKind.ERROR]
    assert "ran out of memory" in chunks[-1].text


def test_error_line_mid_stream_is_raised(engine, session):
    session.queue(
        "POST",
        "/api/generate",
        FakeResponse(200, chunks=[ndjson({"response": "a"}), ndjson({"error": "CUDA error: out of memory"})]),
    )

    with pytest.raises(OllamaResourceError):
        list(engine.iter_completion("llama3:8b", "hi"))


def test_missing_model_status(engine, session):
    session.queue("POST", "/api/generate", FakeResponse(404, text='{"error":"model \\"qwen:7b\\" not found, try pulling it first"}'))

    with pytest.raises(OllamaModelNotFoundError) as excinfo:
        list(engine.iter_completion("qwen:7b", "hi"))
    assert excinfo.value.model == "qwen:7b"


def test_connection_failure_is_classified(engine, session):
    session.queue("POST", "/api/generate", requests.ConnectionError("refused"))

    with pytest.raises(OllamaConnectionError):
        list(engine.iter_completion("llama3:8b", "hi"))


def test_non_positive_timeout_is_rejected(engine):
    with pytest.raises(ValueError):
        list(engine.iter_completion("llama3:8b", "hi", timeout_seconds=0))
