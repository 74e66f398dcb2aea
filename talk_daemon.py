"""Background daemon that owns the audio device.

The daemon keeps one warm audio engine and serializes say/ask commands
through a single queue worker, because the device is single-consumer. It
listens on a Unix socket speaking the framing in talk_protocol, and shuts
itself down after a period of inactivity.

Run directly (``python talk_daemon.py``) or let talk_client spawn it.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from talk_ask import ask
from talk_client import remove_daemon_pid, write_daemon_pid
from talk_config import (
    CHANNELS,
    SAMPLE_RATE,
    AskTuning,
    SayTuning,
    daemon_pid_path,
    daemon_socket_path,
    resolve_auth,
    resolve_daemon_config,
)
from talk_engine import AudioEngine, SharedEngine, create_audio_engine
from talk_protocol import (
    AskDone,
    AskRequest,
    ErrorResponse,
    LogResponse,
    MessageParser,
    PingRequest,
    Pong,
    SayDone,
    SayRequest,
    ShutdownRequest,
    TraceEntry,
    decode_payload,
    encode_message,
    invalid_request_response,
    parse_request,
)
from talk_say import say

logger = logging.getLogger(__name__)

READ_CHUNK = 65536


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class TalkDaemon:
    """All daemon state; one instance per process."""

    def __init__(
        self,
        socket_path: Path | str,
        pid_path: Path | str | None = None,
        *,
        idle_timeout: float = 30 * 60,
        engine_factory: Callable[..., AudioEngine] = create_audio_engine,
        session_factory: Callable | None = None,
        auth_resolver: Callable = resolve_auth,
        ask_tuning: AskTuning | None = None,
        say_tuning: SayTuning | None = None,
    ):
        self.socket_path = Path(socket_path)
        self.pid_path = Path(pid_path) if pid_path else None
        self.idle_timeout = idle_timeout
        self._engine_factory = engine_factory
        self._session_factory = session_factory
        self._auth_resolver = auth_resolver
        self._ask_tuning = ask_tuning or AskTuning()
        self._say_tuning = say_tuning or SayTuning()

        self.engine: AudioEngine | None = None
        self.engine_mode: str | None = None
        self.command_count = 0
        self.started_at = time.monotonic()

        self._idle_handle: asyncio.TimerHandle | None = None
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[asyncio.StreamWriter] = set()
        self._stopped: asyncio.Event | None = None
        self._shutdown_done = False

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        self.loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._stopped = asyncio.Event()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        # A crashed run can leave the socket file behind
        self._remove_socket()
        self._server = await asyncio.start_unix_server(
            self._handle_connection, path=str(self.socket_path)
        )
        if self.pid_path is not None:
            write_daemon_pid(os.getpid(), self.pid_path)
        self._worker = asyncio.create_task(self._work())
        self._reset_idle_timer()
        logger.info("Daemon listening on %s (pid=%d, idle timeout %.0fs)",
                    self.socket_path, os.getpid(), self.idle_timeout)

    async def wait_closed(self) -> None:
        await self._stopped.wait()

    async def serve(self) -> None:
        await self.start()
        await self.wait_closed()

    def shutdown(self) -> None:
        """Release the engine, remove socket/pid files and stop serving."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down after %d commands", self.command_count)
        self._cancel_idle_timer()
        if self._server is not None:
            self._server.close()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        for writer in list(self._connections):
            writer.close()
        self._release_engine()
        if self.pid_path is not None:
            remove_daemon_pid(self.pid_path)
        self._remove_socket()
        if self._stopped is not None:
            self._stopped.set()

    def uptime_ms(self) -> float:
        return round((time.monotonic() - self.started_at) * 1000)

    def _remove_socket(self) -> None:
        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove socket %s: %s", self.socket_path, e)

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _reset_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if not self._shutdown_done:
            self._idle_handle = self.loop.call_later(self.idle_timeout, self._on_idle)

    def _on_idle(self) -> None:
        self._idle_handle = None
        logger.info("Idle for %.0fs", self.idle_timeout)
        self.shutdown()

    # ── Engine ───────────────────────────────────────────────────────────

    def _engine_for(self, mode: str) -> AudioEngine:
        if self.engine is not None and self.engine_mode == mode:
            return self.engine
        self._release_engine()
        options = {"sample_rate": SAMPLE_RATE, "channels": CHANNELS, "enable_aec": mode == "ask"}
        if mode == "ask":
            options["stream_delay_ms"] = self._ask_tuning.stream_delay_ms
        engine = self._engine_factory(**options)
        try:
            engine.start()
        except Exception:
            try:
                engine.close()
            except Exception as e:
                logger.warning("Audio engine close after failed start: %s", e)
            raise
        self.engine, self.engine_mode = engine, mode
        logger.info("Audio engine ready for %s", mode)
        return engine

    def _release_engine(self) -> None:
        engine, self.engine, self.engine_mode = self.engine, None, None
        if engine is None:
            return
        try:
            engine.stop()
            engine.close()
        except Exception as e:
            logger.warning("Audio engine release failed: %s", e)

    # ── Connections ──────────────────────────────────────────────────────

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter) -> None:
        self._connections.add(writer)
        parser = MessageParser()
        try:
            while True:
                chunk = await reader.read(READ_CHUNK)
                if not chunk:
                    break
                for payload in parser.feed_frames(chunk):
                    self._dispatch(payload, writer)
        except ConnectionError as e:
            logger.debug("Client connection error: %s", e)
        finally:
            self._connections.discard(writer)
            writer.close()

    def _dispatch(self, payload: bytes, writer: asyncio.StreamWriter) -> None:
        try:
            request = parse_request(decode_payload(payload))
        except (ValueError, ValidationError) as e:
            logger.warning("Rejected invalid request: %s", e)
            self._send(writer, invalid_request_response(e))
            return

        if isinstance(request, PingRequest):
            self._send(writer, Pong(uptime=self.uptime_ms(), command_count=self.command_count))
        elif isinstance(request, ShutdownRequest):
            logger.info("Shutdown requested")
            self.shutdown()
        else:
            self._queue.put_nowait((request, writer))

    def _send(self, writer: asyncio.StreamWriter, msg) -> None:
        if writer.is_closing():
            return
        writer.write(encode_message(msg))

    async def _flush(self, writer: asyncio.StreamWriter) -> None:
        if writer.is_closing():
            return
        try:
            await writer.drain()
        except ConnectionError as e:
            logger.debug("Client went away before the reply: %s", e)

    # ── Command worker ───────────────────────────────────────────────────

    async def _work(self) -> None:
        while True:
            request, writer = await self._queue.get()
            try:
                await self._execute(request, writer)
            finally:
                self._queue.task_done()

    async def _execute(self, request: SayRequest | AskRequest,
                       writer: asyncio.StreamWriter) -> None:
        self.command_count += 1
        # The idle clock only runs between commands
        self._cancel_idle_timer()
        try:
            await self._run_command(request, writer)
        finally:
            self._reset_idle_timer()

    async def _run_command(self, request: SayRequest | AskRequest,
                           writer: asyncio.StreamWriter) -> None:
        logger.info("%s %s: %r", request.type, request.id, request.message[:80])

        def relay(entry: dict) -> None:
            self._send(writer, LogResponse(id=request.id, entry=TraceEntry.model_validate(entry)))

        try:
            auth = self._auth_resolver()
            engine = self._engine_for(request.type)
            lease = SharedEngine(engine)
            if isinstance(request, SayRequest):
                await say(
                    request.message,
                    voice=request.voice,
                    auth=auth,
                    create_engine=lambda **_: lease,
                    create_session=self._session_factory,
                    tuning=self._say_tuning,
                    on_trace=relay,
                )
                response = SayDone(id=request.id)
            else:
                transcript = await ask(
                    request.message,
                    voice=request.voice,
                    timeout=request.timeout,
                    ack=request.ack,
                    auth=auth,
                    create_engine=lambda **_: lease,
                    create_session=self._session_factory,
                    tuning=self._ask_tuning,
                    on_trace=relay,
                )
                response = AskDone(id=request.id, transcript=transcript)
        except Exception as e:
            logger.warning("%s %s failed: %s", request.type, request.id, e)
            response = ErrorResponse(id=request.id, message=_error_message(e))
        else:
            logger.info("%s %s done", request.type, request.id)

        self._send(writer, response)
        await self._flush(writer)


# ── Entry point ──────────────────────────────────────────────────────────────

async def run_daemon(daemon: TalkDaemon) -> None:
    """Serve until shutdown; SIGTERM/SIGINT take the same shutdown path."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, daemon.shutdown)
    try:
        await daemon.serve()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def main() -> None:
    parser = argparse.ArgumentParser(description="agent-talk audio daemon")
    parser.add_argument("--socket", default=None, help="Unix socket path")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("websockets").setLevel(logging.WARNING)

    config = resolve_daemon_config()
    daemon = TalkDaemon(
        socket_path=args.socket or daemon_socket_path(),
        pid_path=daemon_pid_path(),
        idle_timeout=config.idle_timeout_seconds,
    )

    asyncio.run(run_daemon(daemon))
    logger.info("Daemon exited")


if __name__ == "__main__":
    main()
