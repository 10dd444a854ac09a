"""Tests for energy-threshold endpointing."""

import numpy as np
import pytest

from vad_dictation._types import AudioFrame, EncodedChunk
from vad_dictation.config import EndpointConfig
from vad_dictation.endpoint import EndpointDetector, EndpointState, frame_amplitude

FRAME_MS = 20
LOUD = 0.2
QUIET = 0.001


@pytest.fixture
def events():
    return {"start": [], "end": []}


@pytest.fixture
def detector(events):
    return EndpointDetector(
        EndpointConfig(silence_threshold=0.01, silence_duration_ms=900, min_speech_duration_ms=500),
        on_speech_start=events["start"].append,
        on_speech_end=events["end"].append,
    )


def feed(detector, start_ms, duration_ms, amplitude, chunk_every=5):
    """Feed frames (and a chunk every few frames) covering ``duration_ms``."""
    for i, t in enumerate(range(start_ms, start_ms + duration_ms, FRAME_MS)):
        detector.process_frame(AudioFrame(amplitude=amplitude, timestamp_ms=float(t)))
        if i % chunk_every == 0:
            detector.push_chunk(EncodedChunk(data=b"x", sequence=t, timestamp_ms=float(t)))
    return start_ms + duration_ms


class TestFrameAmplitude:
    """Tests for frame_amplitude."""

    def test_float_samples(self):
        assert frame_amplitude(np.array([0.5, -0.5, 0.0, 0.0])) == pytest.approx(0.25)

    def test_uint8_samples_centred(self):
        samples = np.array([128, 128, 192, 64], dtype=np.uint8)
        assert frame_amplitude(samples) == pytest.approx(0.25)

    def test_empty_window(self):
        assert frame_amplitude(np.array([], dtype=np.float32)) == 0.0


class TestEndpointDetection:
    """Tests for speech start/end decisions."""

    def test_long_speech_then_silence_emits_once(self, detector, events):
        """1.5s of speech followed by 1.0s of silence yields one utterance."""
        t = feed(detector, 0, 1500, LOUD)
        feed(detector, t, 1000, QUIET)

        assert len(events["start"]) == 1
        assert len(events["end"]) == 1
        end = events["end"][0]
        assert end.speech_start_ms == 0
        assert end.forced is False
        assert len(end.chunks) > 0
        assert detector.state is EndpointState.SILENT

    def test_short_speech_discarded(self, detector, events):
        """0.2s of speech is shorter than the minimum and emits nothing."""
        t = feed(detector, 0, 200, LOUD)
        feed(detector, t, 1200, QUIET)

        assert len(events["start"]) == 1
        assert events["end"] == []
        assert detector.state is EndpointState.SILENT

    def test_brief_pause_does_not_end_utterance(self, detector, events):
        t = feed(detector, 0, 800, LOUD)
        t = feed(detector, t, 400, QUIET)
        t = feed(detector, t, 800, LOUD)
        assert events["end"] == []
        assert detector.is_speaking

        feed(detector, t, 1000, QUIET)
        assert len(events["end"]) == 1
        assert len(events["start"]) == 1

    def test_completion_needs_full_silence_duration(self, detector, events):
        t = feed(detector, 0, 1000, LOUD)
        feed(detector, t, 880, QUIET)
        assert events["end"] == []
        detector.process_frame(AudioFrame(amplitude=QUIET, timestamp_ms=float(t + 900)))
        assert len(events["end"]) == 1

    def test_silence_never_starts_speech(self, detector, events):
        feed(detector, 0, 2000, QUIET)
        assert events["start"] == []
        assert detector.state is EndpointState.SILENT

    def test_chunks_ignored_while_silent(self, detector):
        """A long silent stretch does not accumulate chunks."""
        feed(detector, 0, 60_000, QUIET, chunk_every=1)
        assert detector.buffered_chunks == ()

    def test_chunks_after_silence_dropped_once_utterance_ends(self, detector, events):
        t = feed(detector, 0, 1500, LOUD)
        t = feed(detector, t, 1000, QUIET)
        feed(detector, t, 2000, QUIET)

        assert len(events["end"]) == 1
        assert detector.buffered_chunks == ()

    def test_utterance_starts_with_chunk_of_first_loud_frame(self, detector, events):
        detector.push_chunk(EncodedChunk(data=b"stale", sequence=0))
        detector.process_frame(AudioFrame(amplitude=LOUD, timestamp_ms=0.0))
        detector.push_chunk(EncodedChunk(data=b"fresh", sequence=1))

        assert [c.data for c in detector.buffered_chunks] == [b"fresh"]


class TestForceComplete:
    """Tests for forced flush on stop."""

    def test_noop_when_silent(self, detector, events):
        detector.force_complete(1000.0)
        assert events["end"] == []
        assert detector.state is EndpointState.SILENT

    def test_flushes_long_enough_utterance(self, detector, events):
        feed(detector, 0, 700, LOUD)
        detector.force_complete(700.0)

        assert len(events["end"]) == 1
        assert events["end"][0].forced is True
        assert detector.state is EndpointState.SILENT

    def test_discards_short_utterance(self, detector, events):
        feed(detector, 0, 200, LOUD)
        detector.force_complete(200.0)

        assert events["end"] == []
        assert detector.state is EndpointState.SILENT
        assert detector.buffered_chunks == ()

    def test_no_event_without_chunks(self, detector, events):
        for t in range(0, 1000, FRAME_MS):
            detector.process_frame(AudioFrame(amplitude=LOUD, timestamp_ms=float(t)))
        detector.force_complete(1000.0)

        assert events["end"] == []
        assert detector.state is EndpointState.SILENT
