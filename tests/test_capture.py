"""Tests for microphone capture and stream encoding."""

import asyncio
import struct
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from vad_dictation._types import CaptureError
from vad_dictation.capture import (
    WAVEFORM_POINTS,
    CaptureSource,
    WavStreamEncoder,
    downsample_waveform,
)


class TestWavStreamEncoder:
    """Tests for the streaming WAV encoder."""

    def test_header_only_on_first_block(self):
        encoder = WavStreamEncoder(16000, 1)
        first = encoder.encode(np.zeros(160, dtype=np.float32))
        second = encoder.encode(np.zeros(160, dtype=np.float32))

        assert first[:4] == b"RIFF"
        assert first[8:12] == b"WAVE"
        assert len(first) == 44 + 320
        assert len(second) == 320

    def test_header_fields(self):
        header = WavStreamEncoder(16000, 1).header()
        channels, sample_rate, byte_rate = struct.unpack("<HII", header[22:32])
        bits = struct.unpack("<H", header[34:36])[0]

        assert (channels, sample_rate, byte_rate, bits) == (1, 16000, 32000, 16)

    def test_samples_clipped_to_int16(self):
        encoder = WavStreamEncoder(16000, 1)
        encoder.encode(np.zeros(1, dtype=np.float32))
        pcm = encoder.encode(np.array([2.0, -2.0, 0.5], dtype=np.float32))

        assert list(np.frombuffer(pcm, dtype="<i2")) == [32767, -32768, 16383]

    def test_reset_rewrites_header(self):
        encoder = WavStreamEncoder(16000, 1)
        encoder.encode(np.zeros(4, dtype=np.float32))
        encoder.reset()
        assert encoder.encode(np.zeros(4, dtype=np.float32))[:4] == b"RIFF"


class TestDownsampleWaveform:
    """Tests for waveform downsampling."""

    def test_point_count(self):
        assert len(downsample_waveform(np.linspace(-1, 1, 320))) == WAVEFORM_POINTS

    def test_short_input_padded(self):
        data = downsample_waveform(np.array([0.5, 0.25]), points=4)
        assert data == (0.5, 0.25, 0.0, 0.0)

    def test_empty_input(self):
        assert downsample_waveform(np.array([]), points=3) == (0.0, 0.0, 0.0)


class TestCaptureSource:
    """Tests for CaptureSource with a mocked sounddevice stream."""

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            CaptureSource(sample_rate=0)
        with pytest.raises(ValueError):
            CaptureSource(channels=3)
        with pytest.raises(ValueError):
            CaptureSource(frame_ms=20, chunk_ms=10)

    def test_block_sizes(self):
        source = CaptureSource(sample_rate=16000, frame_ms=20, chunk_ms=100)
        assert source.frame_samples == 320
        assert source.chunk_samples == 1600
        assert source.media_type == "audio/wav"

    @pytest.mark.asyncio
    @patch("vad_dictation.capture.sounddevice.InputStream")
    async def test_start_is_idempotent(self, mock_stream_cls):
        source = CaptureSource()
        source.start(on_frame=MagicMock(), on_chunk=MagicMock())
        source.start(on_frame=MagicMock(), on_chunk=MagicMock())

        assert mock_stream_cls.call_count == 1
        assert mock_stream_cls.call_args.kwargs["blocksize"] == 320
        assert source.running
        source.stop()
        assert not source.running

    @pytest.mark.asyncio
    @patch("vad_dictation.capture.sounddevice.InputStream")
    async def test_open_failure_raises_capture_error(self, mock_stream_cls):
        mock_stream_cls.side_effect = RuntimeError("device busy")
        source = CaptureSource()

        with pytest.raises(CaptureError, match="device busy"):
            source.start(on_frame=MagicMock(), on_chunk=MagicMock())
        assert not source.running

    @pytest.mark.asyncio
    @patch("vad_dictation.capture.sounddevice.InputStream")
    async def test_callback_delivers_frames_then_chunk(self, mock_stream_cls):
        calls = []
        source = CaptureSource(sample_rate=1000, frame_ms=20, chunk_ms=40)
        source.start(
            on_frame=lambda f: calls.append(("frame", f.amplitude)),
            on_chunk=lambda c: calls.append(("chunk", c.sequence, c.data[:4])),
        )

        block = np.full((20, 1), 0.5, dtype=np.float32)
        source._callback(block, 20, None, None)
        source._callback(block, 20, None, None)
        await asyncio.sleep(0)

        assert calls == [
            ("frame", pytest.approx(0.5)),
            ("frame", pytest.approx(0.5)),
            ("chunk", 0, b"RIFF"),
        ]
        source.close()

    @pytest.mark.asyncio
    @patch("vad_dictation.capture.sounddevice.InputStream")
    async def test_stop_drops_queued_audio(self, mock_stream_cls):
        frames = []
        source = CaptureSource(sample_rate=1000, frame_ms=20, chunk_ms=40)
        source.start(on_frame=frames.append, on_chunk=MagicMock())

        source._callback(np.zeros((20, 1), dtype=np.float32), 20, None, None)
        source.stop()
        await asyncio.sleep(0)

        assert frames == []
        mock_stream_cls.return_value.close.assert_called_once()

    @pytest.mark.asyncio
    @patch("vad_dictation.capture.sounddevice.InputStream")
    async def test_waveform_delivered_when_requested(self, mock_stream_cls):
        waveforms = []
        source = CaptureSource(sample_rate=1000, frame_ms=20, chunk_ms=40)
        source.start(on_frame=MagicMock(), on_chunk=MagicMock(), on_waveform=waveforms.append)

        source._callback(np.zeros((20, 1), dtype=np.float32), 20, None, None)
        await asyncio.sleep(0)

        assert len(waveforms) == 1
        assert len(waveforms[0]) == WAVEFORM_POINTS
        source.close()

    @patch("vad_dictation.capture.sounddevice.query_devices")
    def test_device_name_resolution(self, mock_query):
        mock_query.return_value = [
            {"name": "HDMI Output", "max_input_channels": 0},
            {"name": "USB Microphone", "max_input_channels": 1},
        ]

        assert CaptureSource(device="usb")._resolve_device_selection() == 1
        assert CaptureSource(device=3)._resolve_device_selection() == 3
