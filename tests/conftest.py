"""Shared test fixtures for the Running Coach backend.

Every test runs against a throwaway SQLite file, and upstream LLM traffic
goes through httpx.MockTransport with chunked SSE bodies.
"""

import json
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import httpx
import pytest

from database import SessionLocal, build_engine, init_db, use_engine


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture(autouse=True)
def test_engine(tmp_path):
    """Point the session factory and init_db at a fresh SQLite file."""
    engine = build_engine(f"sqlite:///{tmp_path / 'coach_test.db'}")
    previous = use_engine(engine)
    init_db()
    yield engine
    use_engine(previous)
    engine.dispose()


@pytest.fixture
def db_session(test_engine):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# =============================================================================
# UPSTREAM SSE HELPERS
# =============================================================================


def data_line(payload: Union[Dict[str, Any], str]) -> bytes:
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {body}\n\n".encode("utf-8")


def content_chunk(text: str) -> bytes:
    return data_line({"choices": [{"index": 0, "delta": {"content": text}}]})


def tool_call_chunk(
    call_id: Optional[str] = None,
    name: Optional[str] = None,
    arguments: Optional[str] = None,
) -> bytes:
    call: Dict[str, Any] = {"index": 0}
    if call_id:
        call["id"] = call_id
        call["type"] = "function"
    function: Dict[str, Any] = {}
    if name:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    call["function"] = function
    return data_line({"choices": [{"index": 0, "delta": {"tool_calls": [call]}}]})


def finish_chunk(reason: str) -> bytes:
    return data_line({"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]})


DONE_LINE = b"data: [DONE]\n\n"


class ChunkedBody(httpx.AsyncByteStream):
    """Response body delivered as the given reads; an exception in the list is raised."""

    def __init__(self, chunks: Iterable[Union[bytes, Exception]]):
        self.chunks = list(chunks)
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    async def aclose(self):
        self.closed = True


def sse_response(*chunks: Union[bytes, Exception]) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        stream=ChunkedBody(chunks),
    )


class FakeUpstream:
    """
    MockTransport handler that answers successive requests with the queued
    responses (or raises queued exceptions) and records the JSON bodies.
    """

    def __init__(self, *responses: Union[httpx.Response, Exception]):
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []
        self.raw_requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.raw_requests.append(request)
        self.requests.append(json.loads(request.content))
        if not self.responses:
            raise AssertionError("Unexpected upstream request")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def parse_frames(body: str) -> List[Union[Dict[str, Any], str]]:
    """Split an SSE body into decoded payloads; [DONE] stays a string."""
    frames: List[Union[Dict[str, Any], str]] = []
    for block in body.split("\n\n"):
        if not block:
            continue
        assert block.startswith("data: "), block
        data = block[len("data: "):]
        frames.append(data if data == "[DONE]" else json.loads(data))
    return frames


@pytest.fixture
def recording_handler() -> Callable:
    """Tool handler that records its arguments and reports success."""
    calls: List[Dict[str, Any]] = []

    def handler(args: Dict[str, Any]) -> Dict[str, Any]:
        calls.append(args)
        return {"success": True, "message": "Profile updated"}

    handler.calls = calls
    return handler
