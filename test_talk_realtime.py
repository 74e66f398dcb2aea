#!/usr/bin/env python3
"""Tests for talk_realtime: event mapping and outbound payloads.

Run: python3 test_talk_realtime.py
  or: pytest test_talk_realtime.py -v
"""

import asyncio
import base64
import json
import unittest
from unittest.mock import MagicMock

from talk_realtime import (
    READ_ALOUD_PREFIX,
    OpenAIRealtimeSession,
    RealtimeConnectionError,
    RealtimeSessionOptions,
    realtime_url,
)


def make_session(mode="default", ack=False, **kwargs):
    options = RealtimeSessionOptions(
        voice="ash",
        mode=mode,
        ack=ack,
        on_audio_delta=MagicMock(),
        on_transcript=MagicMock(),
        on_speech_started=MagicMock(),
        on_initial_response_done=MagicMock(),
        on_done=MagicMock(),
        on_error=MagicMock(),
        on_audio_done=MagicMock(),
        **kwargs,
    )
    return OpenAIRealtimeSession(options), options


def drain_outbox(session):
    """Decoded events waiting to be sent; the close sentinel is skipped."""
    events = []
    while not session._outbox.empty():
        raw = session._outbox.get_nowait()
        if raw is not None:
            events.append(json.loads(raw))
    return events


class TestRealtimeUrl(unittest.TestCase):

    def test_default_base(self):
        self.assertTrue(realtime_url(None).startswith("wss://api.openai.com/v1/realtime?model="))

    def test_custom_bases(self):
        self.assertTrue(realtime_url("https://proxy.local/v1/").startswith(
            "wss://proxy.local/v1/realtime?"))
        self.assertTrue(realtime_url("http://localhost:8080").startswith(
            "ws://localhost:8080/realtime?"))


class TestEventMapping(unittest.TestCase):

    def test_audio_delta_is_decoded(self):
        session, options = make_session()
        pcm = b"\x01\x02\x03\x04"
        session._dispatch({"type": "response.audio.delta",
                           "delta": base64.b64encode(pcm).decode()})
        options.on_audio_delta.assert_called_once_with(pcm)

    def test_transcript_and_speech(self):
        session, options = make_session()
        session._dispatch({"type": "input_audio_buffer.speech_started"})
        session._dispatch({"type": "conversation.item.input_audio_transcription.completed",
                           "transcript": "yes please"})
        options.on_speech_started.assert_called_once_with()
        options.on_transcript.assert_called_once_with("yes please")

    def test_response_done_counting(self):
        session, options = make_session(ack=True)
        session._dispatch({"type": "response.done"})
        options.on_initial_response_done.assert_called_once_with()
        options.on_done.assert_not_called()
        session._dispatch({"type": "response.done"})
        options.on_done.assert_called_once_with()
        session._dispatch({"type": "response.done"})
        self.assertEqual(options.on_initial_response_done.call_count, 1)
        self.assertEqual(options.on_done.call_count, 1)

    def test_audio_done(self):
        session, options = make_session(mode="say")
        session._dispatch({"type": "response.audio.done"})
        options.on_audio_done.assert_called_once_with()

    def test_error_event(self):
        session, options = make_session()
        session._dispatch({"type": "error", "error": {"message": "invalid_api_key"}})
        session._dispatch({"type": "error"})
        options.on_error.assert_any_call("invalid_api_key")
        options.on_error.assert_any_call("Unknown realtime error")

    def test_unknown_events_are_ignored(self):
        session, options = make_session()
        session._dispatch({"type": "rate_limits.updated"})
        options.on_error.assert_not_called()


class TestOutbound(unittest.TestCase):

    def test_message_is_wrapped_and_followed_by_response_create(self):
        session, _ = make_session()
        session.send_message("Deploy now?")
        item, create = drain_outbox(session)
        self.assertEqual(item["type"], "conversation.item.create")
        self.assertEqual(item["item"]["content"][0]["text"], READ_ALOUD_PREFIX + "Deploy now?")
        self.assertEqual(create, {"type": "response.create"})

    def test_audio_is_base64(self):
        session, _ = make_session()
        session.send_audio(b"\x00\x01")
        (event,) = drain_outbox(session)
        self.assertEqual(event["type"], "input_audio_buffer.append")
        self.assertEqual(base64.b64decode(event["audio"]), b"\x00\x01")

    def test_nothing_queued_after_close(self):
        session, _ = make_session()
        session.close()
        self.assertIsNone(session._outbox.get_nowait())
        session.send_audio(b"\x00\x01")
        self.assertEqual(drain_outbox(session), [])

    def test_session_update_modes(self):
        say_session, _ = make_session(mode="say")
        self.assertIsNone(say_session._session_update()["session"]["turn_detection"])

        ask_session, _ = make_session(ack=True)
        turn = ask_session._session_update()["session"]["turn_detection"]
        self.assertEqual(turn["type"], "semantic_vad")
        self.assertTrue(turn["create_response"])

        quiet_session, _ = make_session(ack=False)
        turn = quiet_session._session_update()["session"]["turn_detection"]
        self.assertFalse(turn["create_response"])

    def test_connect_without_credentials(self):
        session, _ = make_session()
        with self.assertRaises(RealtimeConnectionError):
            asyncio.run(session.connect())


if __name__ == "__main__":
    unittest.main()
