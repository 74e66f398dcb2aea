#!/usr/bin/env -S uv run --index https://pypi.org/simple --script
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "numpy>=2",
#     "pydantic>=2.6",
#     "pydantic-settings>=2.2",
#     "sounddevice>=0.4.6",
#     "websockets>=14",
# ]
# ///
"""Voice relay CLI: speak to a human and optionally capture the reply.

CLI usage:
    talk.py say -m "Build finished."             # Speak, exit when playback ends
    talk.py ask -m "Deploy now?" -t 2m           # Speak, print the spoken reply
    echo "Hello" | talk.py say                   # Read message from stdin
    talk.py voices                               # List voices
    talk.py voices set coral                     # Change the default voice
    talk.py daemon status|start|stop|restart     # Manage the audio daemon

Daemon mode (default):
    say/ask go through a background daemon that keeps the audio device warm
    and serializes access to it. If the daemon cannot be reached the command
    runs in process instead.
"""

from __future__ import annotations

import argparse
import asyncio
import datetime
import logging
import sys

from talk_ask import ask
from talk_client import (
    DaemonConnectionError,
    daemon_ask,
    daemon_say,
    get_daemon_status,
    restart_daemon,
    start_daemon,
    stop_daemon,
)
from talk_config import VOICES, resolve_auth, resolve_voice, set_default_voice
from talk_say import say

logger = logging.getLogger(__name__)

DEFAULT_ASK_TIMEOUT = 120.0

DIM = "\033[2m"
DIM_ITALIC = "\033[2;3m"
RESET = "\033[0m"


def parse_timeout(s: str) -> float:
    """Parse timeout string like '10s', '1m', '500ms'."""
    s = s.strip().lower()
    try:
        if s.endswith("ms"):
            value = float(s[:-2]) / 1000
        elif s.endswith("s"):
            value = float(s[:-1])
        elif s.endswith("m"):
            value = float(s[:-1]) * 60
        else:
            value = float(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid timeout: {s!r}") from None
    if not 0 < value < float("inf"):
        raise argparse.ArgumentTypeError(f"timeout must be positive and finite: {s!r}")
    return value


def read_message(flag: str | None) -> str:
    if flag:
        return flag
    if not sys.stdin.isatty():
        text = sys.stdin.read().strip()
        if text:
            return text
    raise ValueError("No message provided. Use -m or pipe via stdin.")


def _ts() -> str:
    return f"{DIM_ITALIC}{datetime.datetime.now():%H:%M:%S}{RESET}"


def print_trace(entry: dict) -> None:
    detail = entry.get("detail")
    suffix = f" {detail}" if detail else ""
    line = f"[{entry['atMs']:>6.0f}ms] {entry['event']}{suffix}"
    if sys.stderr.isatty():
        line = f"{_ts()} {DIM}{line}{RESET}"
    print(line, file=sys.stderr)


# ── Commands ─────────────────────────────────────────────────────────────────

async def run_say(message: str, voice: str, use_daemon: bool, on_trace=None) -> None:
    if use_daemon:
        try:
            await daemon_say(message, voice, on_log=on_trace)
            return
        except DaemonConnectionError as e:
            logger.warning("Daemon unavailable (%s); running in process", e)
    await say(message, voice=voice, auth=resolve_auth(), on_trace=on_trace)


async def run_ask(message: str, voice: str, timeout: float, ack: bool,
                  use_daemon: bool, on_trace=None) -> str:
    if use_daemon:
        try:
            return await daemon_ask(message, voice, timeout, ack, on_log=on_trace)
        except DaemonConnectionError as e:
            logger.warning("Daemon unavailable (%s); running in process", e)
    return await ask(message, voice=voice, timeout=timeout, ack=ack,
                     auth=resolve_auth(), on_trace=on_trace)


def cmd_voices(action: str = "list", voice: str | None = None) -> None:
    if action == "set":
        if not voice:
            raise ValueError("Usage: voices set <voice>")
        set_default_voice(voice)
        print(f"Default voice set to {voice}")
        return
    default = resolve_voice()
    for v in VOICES:
        marker = " (default)" if v == default else ""
        print(f"{v}{marker}")


def cmd_daemon(action: str) -> None:
    if action == "start":
        pid = start_daemon()
        print(f"Daemon running (pid={pid})")
    elif action == "stop":
        if stop_daemon():
            print("Daemon stopped")
        else:
            print("No daemon running")
    elif action == "restart":
        pid = restart_daemon()
        print(f"Daemon restarted (pid={pid})")
    else:
        status = get_daemon_status()
        if not status.running:
            print("Daemon not running")
        else:
            print(f"Daemon running (pid={status.pid}, uptime={status.uptime / 1000:.0f}s, "
                  f"commands={status.command_count})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Speak to a human and optionally capture the reply",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Examples:
  %(prog)s say -m "Tests are green."          # Announce only
  %(prog)s ask -m "Ship it?" -t 30s           # Ask, print the reply
  %(prog)s ask --ack -m "Which branch?"       # Acknowledge the reply aloud
  %(prog)s daemon stop                        # Stop the audio daemon
""",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    default_voice = resolve_voice()

    say_p = sub.add_parser("say", help="Speak a message without listening")
    say_p.add_argument("-m", "--message", help="Text to speak (reads stdin if omitted)")
    say_p.add_argument("--voice", default=default_voice, choices=VOICES, help="Voice name")
    say_p.add_argument("--no-daemon", action="store_true", help="Run in process")
    say_p.add_argument("-v", "--verbose", action="store_true", help="Print trace events")

    ask_p = sub.add_parser("ask", help="Speak a message and listen for a reply")
    ask_p.add_argument("-m", "--message", help="Text to speak (reads stdin if omitted)")
    ask_p.add_argument("--voice", default=default_voice, choices=VOICES, help="Voice name")
    ask_p.add_argument("-t", "--timeout", type=parse_timeout, default=DEFAULT_ASK_TIMEOUT,
                       help="Listening timeout (e.g. 30s, 2m, 500ms)")
    ask_p.add_argument("--ack", action="store_true",
                       help="Speak a short acknowledgment after the reply")
    ask_p.add_argument("--no-daemon", action="store_true", help="Run in process")
    ask_p.add_argument("-v", "--verbose", action="store_true", help="Print trace events")

    voices_p = sub.add_parser("voices", help="List voices or set the default voice")
    voices_p.add_argument("action", nargs="?", choices=["list", "set"], default="list")
    voices_p.add_argument("voice", nargs="?", help="Voice to make the default (with set)")

    daemon_p = sub.add_parser("daemon", help="Manage the audio daemon")
    daemon_p.add_argument("action", choices=["start", "stop", "status", "restart"])
    return parser


def main():
    args = build_parser().parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("websockets").setLevel(logging.WARNING)

    try:
        if args.command == "voices":
            cmd_voices(args.action, args.voice)
        elif args.command == "daemon":
            cmd_daemon(args.action)
        elif args.command == "say":
            message = read_message(args.message)
            on_trace = print_trace if args.verbose else None
            asyncio.run(run_say(message, args.voice, not args.no_daemon, on_trace))
        elif args.command == "ask":
            message = read_message(args.message)
            on_trace = print_trace if args.verbose else None
            transcript = asyncio.run(run_ask(message, args.voice, args.timeout, args.ack,
                                             not args.no_daemon, on_trace))
            print(transcript)
    except KeyboardInterrupt:
        sys.stdout.write("\n")
        sys.exit(130)
    except Exception as e:
        print(str(e) or type(e).__name__, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
