"""Ask: speak a message, then capture and transcribe the human's reply.

One AskTurn drives one question/answer exchange to a single outcome. Timers,
realtime callbacks and engine errors all compete to end the turn; the
``settled``/``cleaned`` flags make sure exactly one of them wins and cleanup
runs once.

Self-hearing suppression has two layers:

* echo guard: transcripts arriving shortly after the last assistant audio
  chunk are treated as leaked playback and dropped (the acknowledgment
  spoken after a confirmed reply does not count);
* near-end evidence: once the server reports speech, a transcript is only
  accepted if the processed microphone signal was loud enough around the
  speech start to come from a real nearby speaker.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from talk_config import CHANNELS, DEFAULT_VOICE, SAMPLE_RATE, AskTuning, AuthConfig
from talk_engine import AudioEngine, create_audio_engine, pcm16_rms
from talk_realtime import RealtimeSession, RealtimeSessionOptions, create_realtime_session

logger = logging.getLogger(__name__)


class AskError(RuntimeError):
    pass


def format_seconds(seconds: float) -> str:
    return f"{seconds:g}"


@dataclass
class AskState:
    transcript: str = ""
    transcript_staged: bool = False
    last_heard_transcript: str = ""
    speech_detected: bool = False
    speech_started_at: float | None = None
    near_end_evidence_seen: bool = False
    near_end_evidence_at: float = 0.0
    near_end_evidence_confirmed: bool = False
    heard_assistant_audio: bool = False
    last_assistant_audio_at: float = 0.0
    initial_response_done: bool = False
    session_done: bool = False
    settled: bool = False
    cleaned: bool = False
    response_start_timer: asyncio.TimerHandle | None = None
    no_speech_timer: asyncio.TimerHandle | None = None
    transcript_timer: asyncio.TimerHandle | None = None
    capture_poll_timer: asyncio.TimerHandle | None = None


class AskTurn:
    def __init__(
        self,
        message: str,
        *,
        voice: str = DEFAULT_VOICE,
        timeout: float = 30,
        ack: bool = False,
        auth: AuthConfig | None = None,
        create_session: Callable[[RealtimeSessionOptions], RealtimeSession] | None = None,
        create_engine: Callable[..., AudioEngine] | None = None,
        tuning: AskTuning | None = None,
        on_trace: Callable[[dict], None] | None = None,
        on_assistant_audio: Callable[[bytes], None] | None = None,
        on_mic_audio: Callable[[bytes], None] | None = None,
        on_audio_frame_sent: Callable[[bytes], None] | None = None,
    ):
        self.message = message
        self.voice = voice
        self.timeout = timeout
        self.ack = ack
        self.auth = auth
        self.tuning = tuning or AskTuning()
        self._create_session = create_session or create_realtime_session
        self._create_engine = create_engine or create_audio_engine
        self._on_trace = on_trace
        self._on_assistant_audio = on_assistant_audio
        self._on_mic_audio = on_mic_audio
        self._on_audio_frame_sent = on_audio_frame_sent

        self.loop = asyncio.get_running_loop()
        self.state = AskState()
        self.engine: AudioEngine | None = None
        self.session: RealtimeSession | None = None
        self._future: asyncio.Future[str] = self.loop.create_future()
        self._started_at = self._now()

    def _now(self) -> float:
        return self.loop.time() * 1000

    def _trace(self, event: str, detail: dict | None = None) -> None:
        at_ms = round(self._now() - self._started_at)
        logger.debug("[ask %dms] %s %s", at_ms, event, detail or "")
        if self._on_trace is None:
            return
        entry = {"atMs": at_ms, "event": event}
        if detail:
            entry["detail"] = detail
        self._on_trace(entry)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def run(self) -> str:
        try:
            self.engine = self._create_engine(
                sample_rate=SAMPLE_RATE,
                channels=CHANNELS,
                enable_aec=True,
                stream_delay_ms=self.tuning.stream_delay_ms,
            )
            self.engine.start()
            self._trace("start")
            self.session = self._create_session(RealtimeSessionOptions(
                voice=self.voice,
                mode="default",
                ack=self.ack,
                auth=self.auth,
                on_audio_delta=self._on_audio_delta,
                on_transcript=self._on_transcript,
                on_speech_started=self._on_speech_started,
                on_initial_response_done=self._on_initial_response_done,
                on_done=self._on_done,
                on_error=self._on_error,
            ))
        except Exception as e:
            self._reject(e)
            return await self._future

        self._schedule_capture_poll()
        try:
            await asyncio.wait_for(self.session.connect(), self.tuning.connect_timeout)
        except asyncio.TimeoutError:
            self._trace("realtime:connect_error", {"error": "timeout"})
            self._reject(AskError("Realtime connection timed out"))
        except asyncio.CancelledError:
            self._cleanup()
            raise
        except Exception as e:
            self._trace("realtime:connect_error", {"error": str(e)})
            self._reject(e)
        else:
            self._on_connected()

        try:
            return await self._future
        except asyncio.CancelledError:
            self._cleanup()
            raise

    def _on_connected(self) -> None:
        if self.state.settled:
            return
        self._trace("realtime:connected")
        self.session.send_message(self.message)
        self._trace("realtime:send_message")
        self.state.response_start_timer = self.loop.call_later(
            self.tuning.response_start_timeout, self._on_response_start_timeout
        )

    def _resolve(self, transcript: str) -> None:
        if self.state.settled:
            return
        self.state.settled = True
        self._cleanup()
        if not self._future.done():
            self._future.set_result(transcript)

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
        self._trace("cleanup:start")
        for name in ("response_start_timer", "no_speech_timer",
                     "transcript_timer", "capture_poll_timer"):
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

    # ── Timers ───────────────────────────────────────────────────────────

    def _on_response_start_timeout(self) -> None:
        self.state.response_start_timer = None
        if self.state.settled or self.state.heard_assistant_audio:
            return
        self._trace("timeout:no_assistant_audio")
        self._reject(AskError("No assistant audio received after sending message"))

    def _on_no_speech_timeout(self) -> None:
        self.state.no_speech_timer = None
        if self.state.settled or self.state.speech_detected:
            return
        self._trace("timeout:no_speech", {"timeoutSeconds": self.timeout})
        self._reject(AskError(
            f"No speech detected within {format_seconds(self.timeout)}s timeout"
        ))

    def _on_transcript_timeout(self) -> None:
        self.state.transcript_timer = None
        if self.state.settled:
            return
        self._trace("timeout:no_transcript_after_speech", {"timeoutSeconds": self.timeout})
        self._reject(AskError(
            f"No transcript received within {format_seconds(self.timeout)}s after speech started"
        ))

    def _schedule_capture_poll(self) -> None:
        self.state.capture_poll_timer = self.loop.call_later(
            self.tuning.capture_poll_ms / 1000, self._poll_capture
        )

    def _poll_capture(self) -> None:
        s = self.state
        s.capture_poll_timer = None
        if s.settled:
            return
        batch = self.tuning.capture_batch_frames
        try:
            raw_frames = self.engine.read_raw_capture(batch)
            processed_frames = self.engine.read_processed_capture(batch)
        except Exception as e:
            self._trace("audio:capture_read_error", {"error": str(e)})
            self._reject(AskError(f"audio engine capture read failed: {e}"))
            return

        if self._on_mic_audio is not None:
            for frame in raw_frames:
                self._on_mic_audio(frame)

        # Nothing goes to the model until the assistant has spoken.
        if s.heard_assistant_audio:
            for frame in processed_frames:
                self._check_near_end_evidence(frame)
                if self._on_audio_frame_sent is not None:
                    self._on_audio_frame_sent(frame)
                self.session.send_audio(frame)
            if processed_frames:
                self._trace("audio:sent_capture", {"frames": len(processed_frames)})

        self._schedule_capture_poll()

    # ── Near-end evidence ────────────────────────────────────────────────

    def _speech_threshold(self, now: float) -> float:
        s = self.state
        t = self.tuning
        if (s.speech_detected and s.speech_started_at is not None
                and now - s.speech_started_at >= t.min_speech_rms_relax_after_ms):
            return t.min_speech_rms_relaxed
        return t.min_speech_rms

    def _evidence_in_window(self, evidence_at: float) -> bool:
        start = self.state.speech_started_at
        if start is None:
            return False
        return (start - self.tuning.evidence_preroll_ms
                <= evidence_at
                <= start + self.tuning.evidence_postroll_ms)

    def _check_near_end_evidence(self, frame: bytes) -> None:
        s = self.state
        now = self._now()
        threshold = self._speech_threshold(now)
        rms = pcm16_rms(frame)
        if rms < threshold:
            return
        s.near_end_evidence_seen = True
        s.near_end_evidence_at = now
        if not s.near_end_evidence_confirmed and self._evidence_in_window(now):
            s.near_end_evidence_confirmed = True
        self._trace("audio:near_end_evidence", {"rms": round(rms, 1), "minSpeechRms": threshold})

    # ── Realtime callbacks ───────────────────────────────────────────────

    def _on_audio_delta(self, frame: bytes) -> None:
        s = self.state
        if s.settled:
            return
        self._trace("realtime:audio_delta", {"bytes": len(frame)})
        s.heard_assistant_audio = True
        # The spoken acknowledgment follows a confirmed reply; it must not mask
        # that reply's transcript.
        if not (self.ack and s.speech_detected and s.near_end_evidence_confirmed):
            s.last_assistant_audio_at = self._now()
        if self._on_assistant_audio is not None:
            self._on_assistant_audio(frame)
        self.engine.play(frame)

    def _on_transcript(self, text: str) -> None:
        s = self.state
        if s.settled:
            return
        s.last_heard_transcript = text
        since_assistant_ms = self._now() - s.last_assistant_audio_at
        if s.heard_assistant_audio and since_assistant_ms < self.tuning.echo_guard_ms:
            self._trace("realtime:transcript_ignored_echo_guard",
                        {"sinceAssistantMs": round(since_assistant_ms), "text": text})
            return
        self._trace("realtime:transcript", {"text": text})
        if s.speech_detected and not s.near_end_evidence_confirmed:
            self._trace("realtime:transcript_ignored_no_near_end_evidence", {
                "text": text,
                "nearEndEvidenceSeen": s.near_end_evidence_seen,
            })
            return
        if s.transcript_timer is not None:
            s.transcript_timer.cancel()
            s.transcript_timer = None
        s.transcript = text
        s.transcript_staged = True
        if not self.ack or s.session_done:
            self._resolve(text)

    def _on_speech_started(self) -> None:
        s = self.state
        if s.settled:
            return
        self._trace("realtime:speech_started")
        s.speech_detected = True
        s.speech_started_at = self._now()
        if (s.near_end_evidence_seen and not s.near_end_evidence_confirmed
                and self._evidence_in_window(s.near_end_evidence_at)):
            s.near_end_evidence_confirmed = True
        if s.no_speech_timer is not None:
            s.no_speech_timer.cancel()
            s.no_speech_timer = None
        if s.transcript_timer is not None:
            s.transcript_timer.cancel()
        s.transcript_timer = self.loop.call_later(self.timeout, self._on_transcript_timeout)

    def _on_initial_response_done(self) -> None:
        s = self.state
        if s.settled:
            return
        self._trace("realtime:initial_response_done")
        s.initial_response_done = True
        if s.no_speech_timer is not None:
            s.no_speech_timer.cancel()
        s.no_speech_timer = self.loop.call_later(self.timeout, self._on_no_speech_timeout)

    def _on_done(self) -> None:
        s = self.state
        if s.settled:
            return
        self._trace("realtime:done")
        s.session_done = True
        if self.ack:
            self._resolve(s.transcript if s.transcript_staged else s.last_heard_transcript)

    def _on_error(self, error: str) -> None:
        if self.state.settled:
            return
        self._trace("realtime:error", {"error": error})
        self._reject(AskError(error))


async def ask(message: str, **options) -> str:
    """Speak ``message`` and return what the human says back.

    Raises AskError naming the phase that stalled (no assistant audio, no
    speech, no transcript after speech), a propagated session error, or a
    capture-read failure. Connection errors are re-raised as-is.
    """
    return await AskTurn(message, **options).run()
