#!/usr/bin/env python3
"""Tests for talk_client: pid bookkeeping and send_command error mapping.

Run: python3 test_talk_client.py
  or: pytest test_talk_client.py -v
"""

import asyncio
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

import talk_client
from talk_client import (
    CommandError,
    CommandTimeoutError,
    DaemonConnectionError,
    DaemonStartError,
    ask_command_timeout,
    clean_stale_pid,
    daemon_ask,
    get_daemon_status,
    is_process_alive,
    read_daemon_pid,
    remove_daemon_pid,
    send_command,
    stop_daemon,
    write_daemon_pid,
)
from talk_config import daemon_pid_path, daemon_socket_path
from talk_protocol import AskDone, MessageParser, encode_message

DEAD_PID = 2 ** 30  # above any kernel pid_max


class HomeDirTestCase(unittest.TestCase):
    """Points AGENT_TALK_HOME at a fresh short temp dir."""

    def setUp(self):
        self.home = Path(tempfile.mkdtemp(prefix="at-", dir="/tmp"))
        self.addCleanup(shutil.rmtree, self.home, True)
        env = patch.dict(os.environ, {"AGENT_TALK_HOME": str(self.home)})
        env.start()
        self.addCleanup(env.stop)


class TestPidFile(HomeDirTestCase):

    def test_round_trip(self):
        write_daemon_pid(4242)
        self.assertEqual(daemon_pid_path(), self.home / "daemon.pid")
        self.assertEqual(read_daemon_pid(), 4242)
        remove_daemon_pid()
        self.assertIsNone(read_daemon_pid())

    def test_garbage_reads_as_none(self):
        daemon_pid_path().write_text("not-a-pid")
        self.assertIsNone(read_daemon_pid())

    def test_remove_missing_is_quiet(self):
        remove_daemon_pid()

    def test_process_alive(self):
        self.assertTrue(is_process_alive(os.getpid()))
        self.assertFalse(is_process_alive(DEAD_PID))

    def test_clean_stale_pid(self):
        write_daemon_pid(DEAD_PID)
        daemon_socket_path().write_text("")
        clean_stale_pid()
        self.assertIsNone(read_daemon_pid())
        self.assertFalse(daemon_socket_path().exists())

    def test_clean_keeps_live_pid(self):
        write_daemon_pid(os.getpid())
        clean_stale_pid()
        self.assertEqual(read_daemon_pid(), os.getpid())


class TestLifecycle(HomeDirTestCase):

    def test_status_without_daemon(self):
        status = get_daemon_status()
        self.assertFalse(status.running)
        self.assertIsNone(status.pid)

    def test_status_with_stale_pid(self):
        write_daemon_pid(DEAD_PID)
        self.assertFalse(get_daemon_status().running)
        self.assertIsNone(read_daemon_pid())

    def test_stop_without_daemon(self):
        self.assertFalse(stop_daemon())

    def test_start_failure_reports_log_path(self):
        class ExitedProcess:
            pid = DEAD_PID
            returncode = 1

            def poll(self):
                return 1

        with patch.object(talk_client.subprocess, "Popen", return_value=ExitedProcess()):
            with self.assertRaises(DaemonStartError) as ctx:
                talk_client.start_daemon(timeout=0.5)
        self.assertIn("daemon.log", str(ctx.exception))

    def test_start_error_is_a_connection_error(self):
        self.assertTrue(issubclass(DaemonStartError, DaemonConnectionError))


class TestSendCommand(HomeDirTestCase):

    def serve(self, handler):
        """Run ``send_command`` against a one-off server using ``handler``."""
        path = str(self.home / "t.sock")

        async def _run(request, **kwargs):
            server = await asyncio.start_unix_server(handler, path=path)
            try:
                return await send_command(request, socket_path=path, **kwargs)
            finally:
                server.close()

        return _run

    def test_missing_socket(self):
        async def _run():
            await send_command({"type": "ping"}, socket_path=self.home / "missing.sock")

        with self.assertRaises(DaemonConnectionError) as ctx:
            asyncio.run(_run())
        self.assertTrue(str(ctx.exception).startswith("Socket error: "))

    def test_logs_forwarded_then_terminal_returned(self):
        async def handler(reader, writer):
            await reader.read(65536)
            writer.write(encode_message({"type": "log", "id": "x",
                                         "entry": {"atMs": 1, "event": "start"}}))
            writer.write(encode_message({"type": "say:done", "id": "x"}))
            await writer.drain()
            writer.close()

        logs = []
        reply = asyncio.run(self.serve(handler)({"type": "say", "id": "x", "message": "m",
                                                 "voice": "ash"}, on_log=logs.append))
        self.assertEqual(reply.type, "say:done")
        self.assertEqual(logs, [{"atMs": 1, "event": "start"}])

    def test_error_reply_raises_command_error(self):
        async def handler(reader, writer):
            await reader.read(65536)
            writer.write(encode_message({"type": "error", "id": "x", "message": "mic busy"}))
            await writer.drain()
            writer.close()

        with self.assertRaises(CommandError) as ctx:
            asyncio.run(self.serve(handler)({"type": "ping"}))
        self.assertEqual(str(ctx.exception), "mic busy")
        self.assertNotIsInstance(ctx.exception, DaemonConnectionError)

    def test_close_before_reply(self):
        async def handler(reader, writer):
            await reader.read(65536)
            writer.close()

        with self.assertRaises(DaemonConnectionError):
            asyncio.run(self.serve(handler)({"type": "ping"}))

    def test_timeout(self):
        async def handler(reader, writer):
            await reader.read(65536)
            await asyncio.sleep(1)
            writer.close()

        with self.assertRaises(CommandTimeoutError) as ctx:
            asyncio.run(self.serve(handler)({"type": "ping"}, timeout=0.05))
        self.assertEqual(str(ctx.exception), "Daemon command timed out")

    def test_reply_split_across_writes(self):
        async def handler(reader, writer):
            await reader.read(65536)
            frame = encode_message({"type": "pong", "uptime": 5, "commandCount": 2})
            for i in range(len(frame)):
                writer.write(frame[i:i + 1])
                await writer.drain()
            writer.close()

        reply = asyncio.run(self.serve(handler)({"type": "ping"}))
        self.assertEqual(reply.command_count, 2)

    def test_request_is_framed(self):
        received = []

        async def handler(reader, writer):
            parser = MessageParser()
            while not received:
                received.extend(parser.feed(await reader.read(65536)))
            writer.write(encode_message({"type": "pong", "uptime": 1, "commandCount": 0}))
            await writer.drain()
            writer.close()

        asyncio.run(self.serve(handler)({"type": "ping"}))
        self.assertEqual(received, [{"type": "ping"}])



class TestDaemonAsk(unittest.TestCase):

    def run_ask(self, timeout):
        reply = AskDone(id="a1", transcript="yes")
        with patch.object(talk_client, "ensure_daemon"), \
             patch.object(talk_client, "send_command", AsyncMock(return_value=reply)) as send:
            transcript = asyncio.run(daemon_ask("Ship it?", "ash", timeout, False))
        self.assertEqual(transcript, "yes")
        return send.await_args.kwargs["timeout"]

    def test_short_ask_uses_command_timeout(self):
        self.assertEqual(self.run_ask(30.0), talk_client.COMMAND_TIMEOUT)

    def test_long_ask_scales_client_timeout(self):
        self.assertEqual(self.run_ask(180.0), 420.0)
        self.assertGreater(ask_command_timeout(600.0), 2 * 600.0)


if __name__ == "__main__":
    unittest.main()
