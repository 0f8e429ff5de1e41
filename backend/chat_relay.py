"""
Streaming Chat Relay
Forwards a coach conversation to the upstream chat-completions API, relays
content deltas as Server-Sent Events, and resolves at most one tool call per
request before streaming the model's continuation.
"""

import codecs
import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from coach_tools import ToolRegistry

logger = logging.getLogger(__name__)

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
APP_URL = os.getenv("APP_URL", "http://localhost:8001")
APP_TITLE = os.getenv("APP_TITLE", "Running Coach")

DEFAULT_MODEL = os.getenv("LLM_MODEL", "openai/gpt-4o")
DEFAULT_TEMPERATURE = 0.7
MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "2000"))
FREQUENCY_PENALTY = float(os.getenv("LLM_FREQUENCY_PENALTY", "0.5"))
PRESENCE_PENALTY = float(os.getenv("LLM_PRESENCE_PENALTY", "0.3"))
REQUEST_TIMEOUT = float(os.getenv("LLM_REQUEST_TIMEOUT", "60"))

# A single character followed by 20+ copies of itself within the last
# 50 characters of output means the model is looping.
REPETITION_WINDOW = 50
REPETITION_RUN = 20
_REPEATED_CHAR = re.compile(r"(.)\1{%d,}" % REPETITION_RUN)

DONE_FRAME = "data: [DONE]\n\n"


class UpstreamError(Exception):
    """The upstream API rejected the request or could not be reached."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Upstream returned {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body


# ============================================================================
# SSE PARSING
# ============================================================================

class OutcomeKind(Enum):
    EVENT = "event"
    SKIP = "skip"
    END = "end"


@dataclass
class SSEOutcome:
    kind: OutcomeKind
    payload: Optional[Dict[str, Any]] = None


SKIP_LINE = SSEOutcome(OutcomeKind.SKIP)
END_STREAM = SSEOutcome(OutcomeKind.END)


def parse_sse_line(line: str) -> SSEOutcome:
    """Classify one complete SSE line from the upstream body."""
    trimmed = line.strip()
    if not trimmed or trimmed.startswith(":") or not trimmed.startswith("data: "):
        return SKIP_LINE

    data = trimmed[6:]
    if data == "[DONE]":
        return END_STREAM

    try:
        payload = json.loads(data)
    except ValueError:
        # keep-alives and truncated fragments
        return SKIP_LINE
    if not isinstance(payload, dict):
        return SKIP_LINE
    return SSEOutcome(OutcomeKind.EVENT, payload)


async def iter_sse_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """
    Re-split raw network reads into complete lines.

    A line (or a multi-byte character) may straddle two reads; the trailing
    partial line is carried over to the next read and dropped if the body
    ends without a newline.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    remainder = ""
    async for chunk in chunks:
        remainder += decoder.decode(chunk)
        *lines, remainder = remainder.split("\n")
        for line in lines:
            yield line
    remainder += decoder.decode(b"", final=True)
    if remainder.strip():
        logger.debug(f"Dropping unterminated SSE line: {remainder[:80]!r}")


def sse_frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def is_repetitive(content: str) -> bool:
    return _REPEATED_CHAR.search(content[-REPETITION_WINDOW:]) is not None


def extract_first_json_object(text: str) -> str:
    """
    Return the first balanced {...} object in ``text``.

    Streamed arguments sometimes arrive with trailing garbage or as several
    concatenated objects; only the first complete one is used. Braces inside
    JSON strings are not counted. If no balanced object exists the stripped
    input is returned unchanged so the JSON parser reports the error.
    """
    text = text.strip()
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = depth > 0
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return text


# ============================================================================
# RELAY
# ============================================================================

@dataclass
class StreamState:
    """Accumulated view of one upstream stream; never shared across requests."""
    tool_call_id: str = ""
    tool_call_name: str = ""
    argument_fragments: List[str] = field(default_factory=list)
    content: str = ""
    has_tool_call: bool = False
    stop_reason: Optional[str] = None  # tool_calls | repetition | done | eof | transport_error

    @property
    def arguments(self) -> str:
        return "".join(self.argument_fragments)


def _first_choice(payload: Dict[str, Any]) -> Dict[str, Any]:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _merge_tool_call_delta(state: StreamState, tool_call: Dict[str, Any]) -> None:
    """Fold one streamed tool-call fragment into the state; ill-typed fields are ignored."""
    call_id = tool_call.get("id")
    if isinstance(call_id, str) and call_id:
        state.tool_call_id = call_id
    function = tool_call.get("function")
    if not isinstance(function, dict):
        return
    name = function.get("name")
    if isinstance(name, str) and name:
        state.tool_call_name = name
    arguments = function.get("arguments")
    if isinstance(arguments, str) and arguments:
        state.argument_fragments.append(arguments)


class ChatRelay:
    """Relays one coach conversation between the client and the upstream API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        registry: ToolRegistry,
        api_key: str = OPENROUTER_API_KEY,
        base_url: str = OPENROUTER_BASE_URL,
        max_tokens: int = MAX_TOKENS,
        frequency_penalty: float = FREQUENCY_PENALTY,
        presence_penalty: float = PRESENCE_PENALTY,
    ):
        self.client = client
        self.registry = registry
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens
        self.frequency_penalty = frequency_penalty
        self.presence_penalty = presence_penalty

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": APP_URL,
            "X-Title": APP_TITLE,
        }

    def _payload(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        temperature: float,
        with_tools: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "stream": True,
            "max_tokens": self.max_tokens,
            "frequency_penalty": self.frequency_penalty,
            "presence_penalty": self.presence_penalty,
        }
        if with_tools:
            payload["tools"] = self.registry.get_schemas()
            payload["tool_choice"] = "auto"
        return payload

    async def _send(self, payload: Dict[str, Any]) -> httpx.Response:
        request = self.client.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=self._headers(),
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamError(502, f"{type(e).__name__}: {e}") from e

        if response.is_error:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            raise UpstreamError(response.status_code, body)
        return response

    async def open(
        self,
        messages: List[Dict[str, Any]],
        model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> httpx.Response:
        """
        Issue the initial streaming request with the tool catalog.

        Raises:
            UpstreamError: before any streaming, so the caller can answer
                with a plain HTTP error
        """
        return await self._send(self._payload(messages, model, temperature, with_tools=True))

    async def stream(
        self,
        response: httpx.Response,
        messages: List[Dict[str, Any]],
        model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> AsyncIterator[str]:
        """
        Yield SSE frames for an upstream response opened with ``open``.

        Always ends with ``data: [DONE]``; the upstream body is closed even
        if the consumer stops iterating early.
        """
        try:
            state = StreamState()
            async for frame in self._pump(response, state, collect_tool_call=True):
                yield frame
            await response.aclose()
            logger.debug(f"Initial stream stopped: {state.stop_reason}")

            if state.has_tool_call and state.tool_call_name:
                async for frame in self._resolve_tool_call(state, messages, model, temperature):
                    yield frame

            yield DONE_FRAME
        finally:
            await response.aclose()

    async def _pump(
        self,
        response: httpx.Response,
        state: StreamState,
        collect_tool_call: bool,
    ) -> AsyncIterator[str]:
        try:
            async for line in iter_sse_lines(response.aiter_bytes()):
                outcome = parse_sse_line(line)
                if outcome.kind is OutcomeKind.SKIP:
                    continue
                if outcome.kind is OutcomeKind.END:
                    state.stop_reason = "done"
                    return

                choice = _first_choice(outcome.payload)
                delta = choice.get("delta")
                if not isinstance(delta, dict):
                    delta = {}

                tool_calls = delta.get("tool_calls")
                if collect_tool_call and isinstance(tool_calls, list):
                    for tool_call in tool_calls:
                        if isinstance(tool_call, dict):
                            state.has_tool_call = True
                            _merge_tool_call_delta(state, tool_call)

                content = delta.get("content")
                if isinstance(content, str) and content:
                    state.content += content
                    if is_repetitive(state.content):
                        logger.warning("⚠️  Repetitive output detected, stopping stream")
                        state.stop_reason = "repetition"
                        return
                    yield sse_frame({"content": content})

                if choice.get("finish_reason") == "tool_calls" and state.has_tool_call:
                    state.stop_reason = "tool_calls"
                    return
        except httpx.HTTPError as e:
            logger.error(f"❌ Upstream stream interrupted: {e}")
            state.stop_reason = "transport_error"
            return
        state.stop_reason = "eof"

    async def _resolve_tool_call(
        self,
        state: StreamState,
        messages: List[Dict[str, Any]],
        model: str,
        temperature: float,
    ) -> AsyncIterator[str]:
        name = state.tool_call_name
        raw_arguments = extract_first_json_object(state.arguments or "{}")
        try:
            args = json.loads(raw_arguments)
            if not isinstance(args, dict):
                raise ValueError("tool arguments are not a JSON object")
        except ValueError as e:
            logger.error(f"❌ Could not parse arguments for {name}: {e}")
            return

        logger.info(f"🔧 Executing tool {name}")
        try:
            result = await self.registry.execute(name, args)
        except Exception:
            logger.exception(f"❌ Tool {name} raised")
            return

        yield sse_frame(self.registry.notification(name))

        tool_call_id = state.tool_call_id or "call_0"
        continuation = [
            *messages,
            {
                "role": "assistant",
                "content": state.content or None,
                "tool_calls": [{
                    "id": tool_call_id,
                    "type": "function",
                    "function": {"name": name, "arguments": raw_arguments},
                }],
            },
            {
                "role": "tool",
                "tool_call_id": tool_call_id,
                "content": json.dumps(result, default=str),
            },
        ]

        try:
            response = await self._send(self._payload(continuation, model, temperature, with_tools=False))
        except UpstreamError as e:
            logger.error(f"❌ Continuation request failed: {e}")
            return

        try:
            # The continuation never triggers a second tool call
            continuation_state = StreamState()
            async for frame in self._pump(response, continuation_state, collect_tool_call=False):
                yield frame
            logger.debug(f"Continuation stopped: {continuation_state.stop_reason}")
        finally:
            await response.aclose()
