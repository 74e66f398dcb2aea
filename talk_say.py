"""Say: speak a message and return once playback has really finished.

The realtime API reports when it has *sent* all audio, not when the device
has played it. After the audio-done signal (or the response-done fallback)
a drain-wait polls the engine's count of unplayed samples and resolves when
it stays at zero, stops moving, or an outer deadline passes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from talk_config import CHANNELS, DEFAULT_VOICE, SAMPLE_RATE, AuthConfig, SayTuning
from talk_engine import AudioEngine, create_audio_engine
from talk_realtime import RealtimeSession, RealtimeSessionOptions, create_realtime_session

logger = logging.getLogger(__name__)


class SayError(RuntimeError):
    pass


@dataclass
class SayState:
    settled: bool = False
    cleaned: bool = False
    draining: bool = False
    drain_started_at: float = 0.0
    last_pending: int | None = None
    last_progress_at: float = 0.0
    zero_streak: int = 0
    fallback_timer: asyncio.TimerHandle | None = None
    settle_timer: asyncio.TimerHandle | None = None
    drain_timer: asyncio.TimerHandle | None = None


class SayTurn:
    def __init__(
        self,
        message: str,
        *,
        voice: str = DEFAULT_VOICE,
        auth: AuthConfig | None = None,
        create_session: Callable[[RealtimeSessionOptions], RealtimeSession] | None = None,
        create_engine: Callable[..., AudioEngine] | None = None,
        tuning: SayTuning | None = None,
        on_trace: Callable[[dict], None] | None = None,
        on_assistant_audio: Callable[[bytes], None] | None = None,
    ):
        self.message = message
        self.voice = voice
        self.auth = auth
        self.tuning = tuning or SayTuning()
        self._create_session = create_session or create_realtime_session
        self._create_engine = create_engine or create_audio_engine
        self._on_trace = on_trace
        self._on_assistant_audio = on_assistant_audio

        self.loop = asyncio.get_running_loop()
        self.state = SayState()
        self.engine: AudioEngine | None = None
        self.session: RealtimeSession | None = None
        self._future: asyncio.Future[None] = self.loop.create_future()
        self._started_at = self._now()

    def _now(self) -> float:
        return self.loop.time() * 1000

    def _trace(self, event: str, detail: dict | None = None) -> None:
        at_ms = round(self._now() - self._started_at)
        logger.debug("[say %dms] %s %s", at_ms, event, detail or "")
        if self._on_trace is None:
            return
        entry = {"atMs": at_ms, "event": event}
        if detail:
            entry["detail"] = detail
        self._on_trace(entry)

    async def run(self) -> None:
        try:
            self.engine = self._create_engine(
                sample_rate=SAMPLE_RATE, channels=CHANNELS, enable_aec=False,
            )
            self.engine.start()
            self._trace("start")
            self.session = self._create_session(RealtimeSessionOptions(
                voice=self.voice,
                mode="say",
                ack=False,
                auth=self.auth,
                on_audio_delta=self._on_audio_delta,
                on_audio_done=self._on_audio_done,
                on_initial_response_done=self._on_initial_response_done,
                on_error=self._on_error,
            ))
        except Exception as e:
            self._reject(e)
            return await self._future

        try:
            await asyncio.wait_for(self.session.connect(), self.tuning.connect_timeout)
        except asyncio.TimeoutError:
            self._trace("realtime:connect_error", {"error": "timeout"})
            self._reject(SayError("Realtime connection timed out"))
        except asyncio.CancelledError:
            self._cleanup()
            raise
        except Exception as e:
            self._trace("realtime:connect_error", {"error": str(e)})
            self._reject(e)
        else:
            if not self.state.settled:
                self._trace("realtime:connected")
                self.session.send_message(self.message)
                self._trace("realtime:send_message")

        try:
            return await self._future
        except asyncio.CancelledError:
            self._cleanup()
            raise

    def _resolve(self) -> None:
        if self.state.settled:
            return
        self.state.settled = True
        self._cleanup()
        if not self._future.done():
            self._future.set_result(None)

    def _reject(self, error: BaseException) -> None:
        if self.state.settled:
            return
        self.state.settled = True
        self._cleanup()
        if not self._future.done():
            self._future.set_exception(error)

    def _cleanup(self) -> None:
        s = self.state
        if s.cleaned:
            return
        s.cleaned = True
        for name in ("fallback_timer", "settle_timer", "drain_timer"):
            handle = getattr(s, name)
            if handle is not None:
                handle.cancel()
                setattr(s, name, None)
        if self.engine is not None:
            try:
                self.engine.stop()
                self.engine.close()
            except Exception as e:
                logger.warning("Audio engine shutdown failed: %s", e)
        if self.session is not None:
            try:
                self.session.close()
            except Exception as e:
                logger.warning("Realtime session close failed: %s", e)
        self._trace("cleanup:done")

    # ── Realtime callbacks ───────────────────────────────────────────────

    def _on_audio_delta(self, frame: bytes) -> None:
        if self.state.settled:
            return
        if self._on_assistant_audio is not None:
            self._on_assistant_audio(frame)
        self.engine.play(frame)

    def _on_audio_done(self) -> None:
        if self.state.settled:
            return
        self._trace("realtime:audio_done")
        self._schedule_drain(self.tuning.audio_done_settle_ms)

    def _on_initial_response_done(self) -> None:
        s = self.state
        if s.settled:
            return
        self._trace("realtime:response_done")
        if s.fallback_timer is not None:
            s.fallback_timer.cancel()
        s.fallback_timer = self.loop.call_later(
            self.tuning.response_done_fallback_ms / 1000, self._on_response_done_fallback
        )

    def _on_response_done_fallback(self) -> None:
        self.state.fallback_timer = None
        if self.state.settled:
            return
        self._trace("say:response_done_fallback")
        self._schedule_drain(self.tuning.fallback_settle_ms)

    def _on_error(self, error: str) -> None:
        if self.state.settled:
            return
        self._trace("realtime:error", {"error": error})
        self._reject(SayError(error))

    # ── Drain ────────────────────────────────────────────────────────────

    def _schedule_drain(self, delay_ms: int) -> None:
        s = self.state
        if s.settled or s.draining:
            return
        if s.settle_timer is not None:
            s.settle_timer.cancel()
        s.settle_timer = self.loop.call_later(delay_ms / 1000, self._start_drain)

    def _start_drain(self) -> None:
        s = self.state
        s.settle_timer = None
        if s.settled or s.draining:
            return
        s.draining = True
        s.drain_started_at = s.last_progress_at = self._now()
        self._trace("drain:start")
        self._poll_drain()

    def _poll_drain(self) -> None:
        s = self.state
        t = self.tuning
        s.drain_timer = None
        if s.settled:
            return
        try:
            stats = self.engine.get_stats()
        except Exception as e:
            self._trace("drain:stats_error", {"error": str(e)})
            self._reject(SayError(f"audio engine stats read failed: {e}"))
            return

        now = self._now()
        pending = int(stats.get("pending_playback_samples") or 0)
        if s.last_pending is None or pending < s.last_pending:
            s.last_progress_at = now
        s.last_pending = pending

        if pending == 0:
            s.zero_streak += 1
            if s.zero_streak >= t.drain_zero_streak:
                self._trace("drain:complete")
                self._resolve()
                return
        else:
            s.zero_streak = 0
            if now - s.last_progress_at >= t.drain_stall_ms:
                self._trace("drain:stalled", {"pendingSamples": pending})
                self._resolve()
                return

        if now - s.drain_started_at >= t.drain_deadline_ms:
            self._trace("drain:deadline", {"pendingSamples": pending})
            self._resolve()
            return
        s.drain_timer = self.loop.call_later(t.drain_poll_ms / 1000, self._poll_drain)


async def say(message: str, **options) -> None:
    """Speak ``message``; returns after the audio has finished playing."""
    await SayTurn(message, **options).run()
