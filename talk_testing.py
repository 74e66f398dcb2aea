"""Scripted stand-ins for the audio engine and realtime session.

Used by the test modules; nothing here touches a device or the network.
"""

from __future__ import annotations

import asyncio
from collections import deque

import numpy as np

from talk_engine import FRAME_SAMPLES


def pcm_frame(level: int = 0) -> bytes:
    """One 10ms int16 frame whose RMS equals ``level``."""
    return np.full(FRAME_SAMPLES, level, dtype="<i2").tobytes()


class FakeEngine:
    def __init__(self, **options):
        self.options = options
        self.start_calls = 0
        self.stop_calls = 0
        self.close_calls = 0
        self.stats_calls = 0
        self.played: list[bytes] = []
        self.raw: deque[bytes] = deque()
        self.processed: deque[bytes] = deque()
        self.pending = iter([0])
        self._last_pending = 0
        self.start_error: Exception | None = None
        self.capture_error: Exception | None = None
        self.stats_error: Exception | None = None

    def start(self):
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error

    def stop(self):
        self.stop_calls += 1

    def close(self):
        self.close_calls += 1

    def play(self, frame):
        self.played.append(frame)

    def push_capture(self, frame, processed=None):
        self.raw.append(frame)
        self.processed.append(frame if processed is None else processed)

    def read_raw_capture(self, max_frames=None):
        if self.capture_error is not None:
            raise self.capture_error
        return _take(self.raw, max_frames)

    def read_processed_capture(self, max_frames=None):
        if self.capture_error is not None:
            raise self.capture_error
        return _take(self.processed, max_frames)

    def set_stream_delay_ms(self, delay_ms):
        self.options["stream_delay_ms"] = delay_ms

    def get_stats(self):
        self.stats_calls += 1
        if self.stats_error is not None:
            raise self.stats_error
        self._last_pending = next(self.pending, self._last_pending)
        return {"pending_playback_samples": self._last_pending}


def _take(queue, max_frames):
    count = len(queue) if max_frames is None else min(max_frames, len(queue))
    return [queue.popleft() for _ in range(count)]


class ScriptedSession:
    """Replays ``(delay_seconds, action)`` pairs once the message is sent."""

    def __init__(self, options, script=(), connect_error=None):
        self.options = options
        self.script = list(script)
        self.connect_error = connect_error
        self.connected = False
        self.closed = False
        self.sent_messages: list[str] = []
        self.sent_audio: list[bytes] = []
        self._handles: list[asyncio.TimerHandle] = []

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def send_message(self, text):
        self.sent_messages.append(text)
        loop = asyncio.get_running_loop()
        for delay, action in self.script:
            self._handles.append(loop.call_later(delay, self._fire, action))

    def send_audio(self, frame):
        self.sent_audio.append(frame)

    def close(self):
        self.closed = True
        for handle in self._handles:
            handle.cancel()

    def _fire(self, action):
        if not self.closed:
            action(self)


def session_factory(script=(), **kwargs):
    """Returns ``(create_session, sessions)``; every session created is recorded."""
    sessions: list[ScriptedSession] = []

    def create(options):
        session = ScriptedSession(options, script, **kwargs)
        sessions.append(session)
        return session

    return create, sessions


# ── Script actions ───────────────────────────────────────────────────────────

def audio(nbytes: int = 4800):
    return lambda s: s.options.on_audio_delta(b"\x00" * nbytes)


def audio_done():
    return lambda s: s.options.on_audio_done()


def response_done():
    return lambda s: s.options.on_initial_response_done()


def done():
    return lambda s: s.options.on_done()


def speech_started():
    return lambda s: s.options.on_speech_started()


def transcript(text: str):
    return lambda s: s.options.on_transcript(text)


def error(message: str):
    return lambda s: s.options.on_error(message)


def capture(engine_ref, frame: bytes):
    """Push a capture frame into the engine returned by ``engine_ref()``."""
    return lambda s: engine_ref().push_capture(frame)
