"""Talking to the daemon, and starting/stopping it.

send_command raises DaemonConnectionError only when the daemon could not be
reached (no socket, refused, dropped connection). A command that ran and
failed raises CommandError instead, so callers can fall back to running in
process on the former without replaying a command that already ran.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
import subprocess
import sys
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from talk_config import config_dir, daemon_log_path, daemon_pid_path, daemon_socket_path
from talk_protocol import (
    TERMINAL_TYPES,
    AskDone,
    AskRequest,
    ErrorResponse,
    LogResponse,
    MessageParser,
    Pong,
    SayRequest,
    encode_message,
    parse_response,
)

logger = logging.getLogger(__name__)

DAEMON_SCRIPT = Path(__file__).with_name("talk_daemon.py")

COMMAND_TIMEOUT = 300.0  # 5 min
ASK_TIMEOUT_MARGIN = 60.0
START_TIMEOUT = 5.0
START_POLL_INTERVAL = 0.05
SHUTDOWN_GRACE = 1.0
STOP_TIMEOUT = 3.0
PING_TIMEOUT = 3.0
READ_CHUNK = 65536


class DaemonConnectionError(ConnectionError):
    pass


class DaemonStartError(DaemonConnectionError):
    pass


class CommandError(RuntimeError):
    pass


class CommandTimeoutError(CommandError):
    pass


@dataclass
class DaemonStatus:
    running: bool
    pid: int | None = None
    uptime: float | None = None
    command_count: int | None = None


# ── Pid file ─────────────────────────────────────────────────────────────────

def read_daemon_pid(pid_path: Path | None = None) -> int | None:
    path = pid_path or daemon_pid_path()
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None


def write_daemon_pid(pid: int, pid_path: Path | None = None) -> None:
    path = pid_path or daemon_pid_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{pid}\n")


def remove_daemon_pid(pid_path: Path | None = None) -> None:
    path = pid_path or daemon_pid_path()
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove pid file %s: %s", path, e)


def is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False


def _remove_socket(socket_path: Path) -> None:
    try:
        socket_path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove socket %s: %s", socket_path, e)


def clean_stale_pid() -> None:
    """Drop pid and socket files left behind by a daemon that is gone."""
    pid = read_daemon_pid()
    if pid is not None and not is_process_alive(pid):
        logger.debug("Removing stale daemon artifacts (pid=%d)", pid)
        remove_daemon_pid()
        _remove_socket(daemon_socket_path())


# ── Blocking exchanges (lifecycle) ───────────────────────────────────────────

def _request_sync(request: dict, timeout: float, expect_reply: bool = True):
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        sock.connect(str(daemon_socket_path()))
        sock.sendall(encode_message(request))
        if not expect_reply:
            return None
        parser = MessageParser()
        while True:
            chunk = sock.recv(READ_CHUNK)
            if not chunk:
                raise ConnectionError("Daemon closed the connection")
            for msg in parser.feed(chunk):
                if isinstance(msg, dict) and msg.get("type") in TERMINAL_TYPES:
                    return parse_response(msg)


def ping_daemon(timeout: float = PING_TIMEOUT) -> Pong:
    response = _request_sync({"type": "ping"}, timeout)
    if not isinstance(response, Pong):
        raise ConnectionError(f"Unexpected reply to ping: {response.type}")
    return response


def get_daemon_status() -> DaemonStatus:
    clean_stale_pid()
    pid = read_daemon_pid()
    if pid is None or not is_process_alive(pid):
        return DaemonStatus(running=False)
    try:
        pong = ping_daemon()
    except OSError as e:
        logger.debug("Ping failed: %s", e)
        return DaemonStatus(running=False)
    return DaemonStatus(running=True, pid=pid, uptime=pong.uptime,
                        command_count=pong.command_count)


def start_daemon(timeout: float = START_TIMEOUT) -> int:
    """Start the daemon unless it is already running. Returns its pid."""
    clean_stale_pid()
    existing = read_daemon_pid()
    if existing is not None and is_process_alive(existing):
        return existing

    config_dir().mkdir(parents=True, exist_ok=True)
    socket_path = daemon_socket_path()
    log_path = daemon_log_path()
    with open(log_path, "a") as log_file:
        proc = subprocess.Popen(
            [sys.executable, str(DAEMON_SCRIPT)],
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=log_file,
            start_new_session=True,  # detach from parent
        )
    logger.info("Started daemon (pid=%d)", proc.pid)

    # The socket appears once the daemon is listening
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if socket_path.exists():
            return proc.pid
        if proc.poll() is not None:
            raise DaemonStartError(
                f"Daemon exited during startup (exit code {proc.returncode}); "
                f"check logs: {log_path}"
            )
        time.sleep(START_POLL_INTERVAL)
    raise DaemonStartError(f"Daemon did not start within {timeout:g}s; check logs: {log_path}")


def _wait_for_exit(pid: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_alive(pid):
            return True
        time.sleep(0.1)
    return not is_process_alive(pid)


def stop_daemon() -> bool:
    """Stop the daemon: protocol shutdown, then SIGTERM, then SIGKILL.

    Returns True if there was a daemon to stop.
    """
    clean_stale_pid()
    pid = read_daemon_pid()
    if pid is None:
        return False

    try:
        _request_sync({"type": "shutdown"}, timeout=SHUTDOWN_GRACE, expect_reply=False)
    except OSError as e:
        logger.debug("Shutdown request failed: %s", e)

    if not _wait_for_exit(pid, SHUTDOWN_GRACE):
        logger.info("Sending SIGTERM to daemon (pid=%d)", pid)
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError:
            pass
        if not _wait_for_exit(pid, STOP_TIMEOUT):
            logger.warning("Daemon ignored SIGTERM, killing (pid=%d)", pid)
            try:
                os.kill(pid, signal.SIGKILL)
            except OSError:
                pass

    remove_daemon_pid()
    _remove_socket(daemon_socket_path())
    return True


def restart_daemon() -> int:
    stop_daemon()
    return start_daemon()


def ensure_daemon() -> None:
    if daemon_socket_path().exists():
        return
    start_daemon()


# ── Commands ─────────────────────────────────────────────────────────────────

async def _read_until_terminal(reader: asyncio.StreamReader,
                               on_log: Callable[[dict], None] | None):
    parser = MessageParser()
    while True:
        chunk = await reader.read(READ_CHUNK)
        if not chunk:
            raise DaemonConnectionError("Daemon closed the connection before replying")
        for msg in parser.feed(chunk):
            try:
                response = parse_response(msg)
            except ValidationError as e:
                logger.warning("Ignoring malformed daemon response: %s", e)
                continue
            if isinstance(response, LogResponse):
                if on_log is not None:
                    on_log(response.entry.model_dump(by_alias=True, exclude_none=True))
                continue
            if response.type in TERMINAL_TYPES:
                return response


async def send_command(
    request: BaseModel | dict,
    *,
    on_log: Callable[[dict], None] | None = None,
    socket_path: Path | str | None = None,
    timeout: float = COMMAND_TIMEOUT,
) -> Any:
    """Send one request and return the terminal response.

    Raises DaemonConnectionError for socket-level failures, CommandError when
    the daemon answers with an error, CommandTimeoutError if it never answers.
    """
    path = str(socket_path or daemon_socket_path())
    try:
        reader, writer = await asyncio.open_unix_connection(path)
    except OSError as e:
        raise DaemonConnectionError(f"Socket error: {e}") from e

    try:
        writer.write(encode_message(request))
        await writer.drain()
        response = await asyncio.wait_for(_read_until_terminal(reader, on_log), timeout)
    except asyncio.TimeoutError:
        raise CommandTimeoutError("Daemon command timed out") from None
    except ConnectionError as e:
        if isinstance(e, DaemonConnectionError):
            raise
        raise DaemonConnectionError(f"Socket error: {e}") from e
    finally:
        writer.close()

    if isinstance(response, ErrorResponse):
        raise CommandError(response.message)
    return response


def ask_command_timeout(timeout: float) -> float:
    """Client wait for an ask: the listening window can open twice (speech wait plus
    transcript wait), and the spoken question comes first."""
    return max(COMMAND_TIMEOUT, 2 * timeout + ASK_TIMEOUT_MARGIN)


async def _ensure_daemon_async() -> None:
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, ensure_daemon)


async def daemon_say(message: str, voice: str, *,
                     on_log: Callable[[dict], None] | None = None) -> None:
    await _ensure_daemon_async()
    request = SayRequest(type="say", id=str(uuid.uuid4()), message=message, voice=voice)
    await send_command(request, on_log=on_log)


async def daemon_ask(message: str, voice: str, timeout: float, ack: bool, *,
                     on_log: Callable[[dict], None] | None = None) -> str:
    await _ensure_daemon_async()
    request = AskRequest(type="ask", id=str(uuid.uuid4()), message=message,
                         voice=voice, timeout=timeout, ack=ack)
    response = await send_command(request, on_log=on_log, timeout=ask_command_timeout(timeout))
    if not isinstance(response, AskDone):
        raise CommandError(f"Unexpected reply to ask: {response.type}")
    return response.transcript
