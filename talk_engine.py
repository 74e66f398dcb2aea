"""Duplex audio engine interface and the PortAudio-backed implementation.

Orchestrators only see the AudioEngine protocol. The daemon hands them a
SharedEngine lease so the warm device survives across commands.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Protocol

import numpy as np

from talk_config import CHANNELS, SAMPLE_RATE

logger = logging.getLogger(__name__)

FRAME_MS = 10
FRAME_SAMPLES = SAMPLE_RATE * FRAME_MS // 1000  # 240 samples at 24kHz
BYTES_PER_SAMPLE = 2
DEFAULT_MAX_CAPTURE_FRAMES = 200  # ~2s of 10ms frames


class AudioEngine(Protocol):
    def start(self) -> None: ...
    def stop(self) -> None: ...
    def close(self) -> None: ...
    def play(self, frame: bytes) -> None: ...
    def read_processed_capture(self, max_frames: int | None = None) -> list[bytes]: ...
    def read_raw_capture(self, max_frames: int | None = None) -> list[bytes]: ...
    def set_stream_delay_ms(self, delay_ms: int) -> None: ...
    def get_stats(self) -> dict: ...


def pcm16_rms(frame: bytes) -> float:
    """Root-mean-square level of little-endian int16 PCM."""
    samples = np.frombuffer(frame, dtype="<i2", count=len(frame) // BYTES_PER_SAMPLE)
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))


def passthrough_canceller(capture: bytes, reference: bytes, delay_ms: int) -> bytes:
    return capture


def _drain(queue: deque, max_frames: int | None) -> list[bytes]:
    count = len(queue) if max_frames is None else min(max_frames, len(queue))
    return [queue.popleft() for _ in range(count)]


class SoundDeviceEngine:
    """Full-duplex int16 stream with queued playback and buffered capture.

    Capture frames land in two bounded queues: raw microphone audio and the
    processed stream (run through ``echo_canceller`` when AEC is enabled).
    The PortAudio callback runs on its own thread, so all queue state is
    guarded by ``_lock``.
    """

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        channels: int = CHANNELS,
        enable_aec: bool = False,
        stream_delay_ms: int | None = None,
        max_capture_frames: int | None = None,
        echo_canceller: Callable[[bytes, bytes, int], bytes] = passthrough_canceller,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.enable_aec = enable_aec
        self._stream_delay_ms = stream_delay_ms or 0
        self._echo_canceller = echo_canceller
        max_frames = max_capture_frames or DEFAULT_MAX_CAPTURE_FRAMES
        self._raw: deque[bytes] = deque()
        self._processed: deque[bytes] = deque()
        self._max_frames = max_frames
        self._playback = bytearray()
        self._lock = threading.Lock()
        self._stream = None
        self._closed = False
        self._stats = {
            "capture_frames": 0,
            "processed_frames": 0,
            "playback_underruns": 0,
            "dropped_raw_frames": 0,
            "dropped_processed_frames": 0,
        }

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("audio engine is closed")
        if self._stream is not None:
            return
        import sounddevice as sd  # needs PortAudio at runtime

        self._stream = sd.RawStream(
            samplerate=self.sample_rate,
            channels=self.channels,
            dtype="int16",
            blocksize=FRAME_SAMPLES,
            callback=self._callback,
        )
        self._stream.start()
        logger.info("Audio engine started (aec=%s, delay=%dms)",
                    self.enable_aec, self._stream_delay_ms)

    def stop(self) -> None:
        if self._stream is None:
            return
        self._stream.stop()
        self._stream.close()
        self._stream = None
        with self._lock:
            self._playback.clear()

    def close(self) -> None:
        self.stop()
        self._closed = True

    def play(self, frame: bytes) -> None:
        if not frame:
            return
        with self._lock:
            self._playback += frame

    def read_raw_capture(self, max_frames: int | None = None) -> list[bytes]:
        with self._lock:
            return _drain(self._raw, max_frames)

    def read_processed_capture(self, max_frames: int | None = None) -> list[bytes]:
        with self._lock:
            return _drain(self._processed, max_frames)

    def set_stream_delay_ms(self, delay_ms: int) -> None:
        self._stream_delay_ms = delay_ms

    def get_stats(self) -> dict:
        with self._lock:
            pending = len(self._playback) // (BYTES_PER_SAMPLE * self.channels)
            return {"pending_playback_samples": pending, **self._stats}

    def _callback(self, indata, outdata, frames, time_info, status) -> None:
        if status:
            logger.debug("Audio stream status: %s", status)
        nbytes = frames * self.channels * BYTES_PER_SAMPLE
        with self._lock:
            reference = bytes(self._playback[:nbytes])
            del self._playback[:nbytes]
            if 0 < len(reference) < nbytes:
                self._stats["playback_underruns"] += 1
        outdata[:len(reference)] = reference
        outdata[len(reference):] = b"\x00" * (nbytes - len(reference))

        captured = bytes(indata)
        if self.enable_aec:
            processed = self._echo_canceller(captured, reference, self._stream_delay_ms)
        else:
            processed = captured
        with self._lock:
            self._push(self._raw, captured, "dropped_raw_frames")
            self._push(self._processed, processed, "dropped_processed_frames")
            self._stats["capture_frames"] += 1
            self._stats["processed_frames"] += 1

    def _push(self, queue: deque, frame: bytes, drop_key: str) -> None:
        if len(queue) >= self._max_frames:
            queue.popleft()
            self._stats[drop_key] += 1
        queue.append(frame)


def create_audio_engine(**options) -> SoundDeviceEngine:
    return SoundDeviceEngine(**options)


class SharedEngine:
    """Lease on a daemon-owned engine; lifecycle calls are ignored."""

    def __init__(self, engine: AudioEngine):
        self._engine = engine

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    def close(self) -> None:
        pass

    def play(self, frame: bytes) -> None:
        self._engine.play(frame)

    def read_processed_capture(self, max_frames: int | None = None) -> list[bytes]:
        return self._engine.read_processed_capture(max_frames)

    def read_raw_capture(self, max_frames: int | None = None) -> list[bytes]:
        return self._engine.read_raw_capture(max_frames)

    def set_stream_delay_ms(self, delay_ms: int) -> None:
        self._engine.set_stream_delay_ms(delay_ms)

    def get_stats(self) -> dict:
        return self._engine.get_stats()
