#!/usr/bin/env python3
"""Tests for talk_engine, driving the stream callback by hand (no device).

Run: python3 test_talk_engine.py
  or: pytest test_talk_engine.py -v
"""

import unittest

import numpy as np

from talk_engine import FRAME_SAMPLES, SharedEngine, SoundDeviceEngine, pcm16_rms
from talk_testing import FakeEngine, pcm_frame

FRAME_BYTES = FRAME_SAMPLES * 2


def tick(engine, captured=None):
    """One PortAudio callback; returns what was sent to the speaker."""
    indata = captured if captured is not None else bytes(FRAME_BYTES)
    outdata = bytearray(FRAME_BYTES)
    engine._callback(indata, outdata, FRAME_SAMPLES, None, None)
    return bytes(outdata)


class TestRms(unittest.TestCase):

    def test_constant_level(self):
        self.assertAlmostEqual(pcm16_rms(pcm_frame(1000)), 1000.0)

    def test_silence_and_empty(self):
        self.assertEqual(pcm16_rms(pcm_frame(0)), 0.0)
        self.assertEqual(pcm16_rms(b""), 0.0)

    def test_alternating_sign(self):
        frame = np.array([300, -300] * 120, dtype="<i2").tobytes()
        self.assertAlmostEqual(pcm16_rms(frame), 300.0)


class TestSoundDeviceEngine(unittest.TestCase):

    def test_playback_is_consumed_per_callback(self):
        engine = SoundDeviceEngine()
        audio = pcm_frame(5) * 2
        engine.play(audio)
        self.assertEqual(engine.get_stats()["pending_playback_samples"], 2 * FRAME_SAMPLES)
        self.assertEqual(tick(engine), audio[:FRAME_BYTES])
        self.assertEqual(engine.get_stats()["pending_playback_samples"], FRAME_SAMPLES)
        tick(engine)
        self.assertEqual(engine.get_stats()["pending_playback_samples"], 0)
        self.assertEqual(tick(engine), bytes(FRAME_BYTES))

    def test_partial_frame_counts_underrun(self):
        engine = SoundDeviceEngine()
        engine.play(b"\x01\x00" * 10)
        out = tick(engine)
        self.assertEqual(out[:20], b"\x01\x00" * 10)
        self.assertEqual(out[20:], bytes(FRAME_BYTES - 20))
        self.assertEqual(engine.get_stats()["playback_underruns"], 1)

    def test_capture_queues(self):
        engine = SoundDeviceEngine()
        loud = pcm_frame(900)
        tick(engine, loud)
        tick(engine)
        self.assertEqual(engine.read_raw_capture(1), [loud])
        self.assertEqual(len(engine.read_raw_capture()), 1)
        self.assertEqual(len(engine.read_processed_capture()), 2)
        self.assertEqual(engine.read_processed_capture(), [])

    def test_capture_is_bounded(self):
        engine = SoundDeviceEngine(max_capture_frames=3)
        for level in range(5):
            tick(engine, pcm_frame(level))
        frames = engine.read_raw_capture()
        self.assertEqual(frames, [pcm_frame(2), pcm_frame(3), pcm_frame(4)])
        stats = engine.get_stats()
        self.assertEqual(stats["dropped_raw_frames"], 2)
        self.assertEqual(stats["dropped_processed_frames"], 2)
        self.assertEqual(stats["capture_frames"], 5)

    def test_echo_canceller_sees_playback_reference(self):
        calls = []

        def canceller(capture, reference, delay_ms):
            calls.append((reference, delay_ms))
            return bytes(len(capture))

        engine = SoundDeviceEngine(enable_aec=True, stream_delay_ms=30, echo_canceller=canceller)
        speech = pcm_frame(40)
        engine.play(speech)
        tick(engine, pcm_frame(800))
        self.assertEqual(calls, [(speech, 30)])
        self.assertEqual(engine.read_processed_capture(), [bytes(FRAME_BYTES)])
        self.assertEqual(engine.read_raw_capture(), [pcm_frame(800)])

    def test_canceller_unused_without_aec(self):
        def canceller(capture, reference, delay_ms):
            raise AssertionError("should not run")

        engine = SoundDeviceEngine(echo_canceller=canceller)
        tick(engine, pcm_frame(10))
        self.assertEqual(engine.read_processed_capture(), [pcm_frame(10)])

    def test_closed_engine_cannot_restart(self):
        engine = SoundDeviceEngine()
        engine.close()
        with self.assertRaises(RuntimeError):
            engine.start()


class TestSharedEngine(unittest.TestCase):

    def test_lifecycle_is_ignored_and_io_delegated(self):
        inner = FakeEngine()
        lease = SharedEngine(inner)
        lease.start()
        lease.stop()
        lease.close()
        self.assertEqual((inner.start_calls, inner.stop_calls, inner.close_calls), (0, 0, 0))

        lease.play(b"ab")
        inner.push_capture(b"cd")
        self.assertEqual(inner.played, [b"ab"])
        self.assertEqual(lease.read_raw_capture(), [b"cd"])
        self.assertEqual(lease.read_processed_capture(), [b"cd"])
        self.assertEqual(lease.get_stats()["pending_playback_samples"], 0)
        lease.set_stream_delay_ms(45)
        self.assertEqual(inner.options["stream_delay_ms"], 45)


if __name__ == "__main__":
    unittest.main()
