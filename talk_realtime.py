"""OpenAI Realtime API session used by the say/ask orchestrators.

The orchestrators only depend on the RealtimeSession protocol and the
callbacks in RealtimeSessionOptions; tests substitute scripted sessions.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from typing import Callable, Literal, Protocol

import websockets

from talk_config import DEFAULT_BASE_URL, AuthConfig

logger = logging.getLogger(__name__)

REALTIME_MODEL = "gpt-4o-realtime-preview"
TRANSCRIBE_MODEL = "gpt-4o-transcribe"

SYSTEM_INSTRUCTIONS = """
# Role
Voice relay between an AI agent and a human.

# Instructions
- When given a text message, read it aloud EXACTLY as written. Do not add, remove, or rephrase anything.
- After the human responds, acknowledge briefly, a few words only. Vary your phrasing.
- NEVER repeat back what the user said verbatim.
- NEVER ask follow-up questions.
- Keep every response under one sentence.

# Tone
- Calm, neutral, concise.
""".strip()

READ_ALOUD_PREFIX = (
    "Read this aloud exactly as written, word for word. "
    "Do not add, remove, or change anything:\n\n"
)

Mode = Literal["default", "say"]


class RealtimeConnectionError(ConnectionError):
    pass


def _noop(*args) -> None:
    pass


@dataclass
class RealtimeSessionOptions:
    voice: str
    mode: Mode
    ack: bool
    on_audio_delta: Callable[[bytes], None]
    on_transcript: Callable[[str], None] = _noop
    on_speech_started: Callable[[], None] = _noop
    on_initial_response_done: Callable[[], None] = _noop
    on_done: Callable[[], None] = _noop
    on_error: Callable[[str], None] = _noop
    on_audio_done: Callable[[], None] = _noop
    auth: AuthConfig | None = None


class RealtimeSession(Protocol):
    async def connect(self) -> None: ...
    def send_message(self, text: str) -> None: ...
    def send_audio(self, frame: bytes) -> None: ...
    def close(self) -> None: ...


def realtime_url(base_url: str | None) -> str:
    base = (base_url or DEFAULT_BASE_URL).rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/realtime?model={REALTIME_MODEL}"


class OpenAIRealtimeSession:
    """One WebSocket conversation.

    Outbound events go through a queue drained by a writer task so that
    send_message/send_audio can be called from synchronous callbacks.
    """

    def __init__(self, options: RealtimeSessionOptions):
        self.options = options
        self._ws = None
        self._outbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._response_count = 0
        self._closing = False

    async def connect(self) -> None:
        auth = self.options.auth
        if auth is None:
            raise RealtimeConnectionError("WebSocket connection failed: no API key configured")
        url = realtime_url(auth.base_url)
        headers = {
            "Authorization": f"Bearer {auth.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = await websockets.connect(url, additional_headers=headers, max_size=None)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise RealtimeConnectionError(f"WebSocket connection failed: {e}") from e
        logger.debug("Realtime connected: %s", url)

        self._send(self._session_update())
        self._writer_task = asyncio.create_task(self._write_loop())
        self._reader_task = asyncio.create_task(self._read_loop())

    def _session_update(self) -> dict:
        if self.options.mode == "say":
            turn_detection = None
        else:
            turn_detection = {
                "type": "semantic_vad",
                "eagerness": "medium",
                "create_response": self.options.ack,
                "interrupt_response": True,
            }
        return {
            "type": "session.update",
            "session": {
                "instructions": SYSTEM_INSTRUCTIONS,
                "voice": self.options.voice,
                "input_audio_format": "pcm16",
                "output_audio_format": "pcm16",
                "input_audio_transcription": {"model": TRANSCRIBE_MODEL},
                "turn_detection": turn_detection,
            },
        }

    def send_message(self, text: str) -> None:
        self._send({
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": READ_ALOUD_PREFIX + text}],
            },
        })
        self._send({"type": "response.create"})

    def send_audio(self, frame: bytes) -> None:
        self._send({
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(frame).decode("ascii"),
        })

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._outbox.put_nowait(None)
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()

    def _send(self, event: dict) -> None:
        if self._closing:
            return
        self._outbox.put_nowait(json.dumps(event))

    async def _write_loop(self) -> None:
        try:
            while True:
                message = await self._outbox.get()
                if message is None:
                    break
                await self._ws.send(message)
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Realtime writer: connection closed")
        finally:
            await self._ws.close()

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                self._dispatch(json.loads(raw))
        except asyncio.CancelledError:
            return
        except websockets.exceptions.ConnectionClosedError as e:
            if not self._closing:
                self.options.on_error(f"Realtime connection closed: {e}")
            return
        if not self._closing:
            self.options.on_error("Realtime connection closed unexpectedly")

    def _dispatch(self, event: dict) -> None:
        event_type = event.get("type", "")
        if event_type != "response.audio.delta":
            logger.debug("Realtime event: %s", event_type)

        if event_type == "response.audio.delta":
            self.options.on_audio_delta(base64.b64decode(event.get("delta", "")))
        elif event_type == "response.audio.done":
            self.options.on_audio_done()
        elif event_type == "conversation.item.input_audio_transcription.completed":
            self.options.on_transcript(event.get("transcript", ""))
        elif event_type == "input_audio_buffer.speech_started":
            self.options.on_speech_started()
        elif event_type == "response.done":
            self._response_count += 1
            if self._response_count == 1:
                self.options.on_initial_response_done()
            elif self._response_count == 2:
                self.options.on_done()
        elif event_type == "error":
            error = event.get("error") or {}
            self.options.on_error(error.get("message") or "Unknown realtime error")


def create_realtime_session(options: RealtimeSessionOptions) -> OpenAIRealtimeSession:
    return OpenAIRealtimeSession(options)
