"""Tests for hotkey detection and listeners."""

import asyncio
import sys
from unittest.mock import MagicMock, patch

import pytest

from vad_dictation._types import HotkeyPermissionError
from vad_dictation.config import HotkeyConfig
from vad_dictation.events import EventChannel, Trigger
from vad_dictation.hotkey import (
    ComboHotkeyListener,
    DoublePressDetector,
    HotkeyListener,
    create_hotkey_listener,
)


@pytest.fixture
def channel():
    return EventChannel()


@pytest.fixture
def triggers(channel):
    received = []
    channel.subscribe(received.append, Trigger)
    return received


class TestDoublePressDetector:
    """Tests for DoublePressDetector."""

    def test_two_presses_within_threshold_fire(self):
        detector = DoublePressDetector(300)
        assert detector.press("KEY_LEFTCTRL", 0) is False
        assert detector.press("KEY_LEFTCTRL", 250) is True
        assert detector.last_press_ms("KEY_LEFTCTRL") == 0.0

    def test_slow_second_press_rearms(self):
        detector = DoublePressDetector(300)
        detector.press("KEY_LEFTCTRL", 0)
        assert detector.press("KEY_LEFTCTRL", 400) is False
        assert detector.last_press_ms("KEY_LEFTCTRL") == 400

    def test_third_press_does_not_refire(self):
        detector = DoublePressDetector(300)
        detector.press("KEY_F5", 0)
        assert detector.press("KEY_F5", 100) is True
        assert detector.press("KEY_F5", 200) is False
        assert detector.press("KEY_F5", 300) is True

    def test_exact_threshold_is_too_slow(self):
        detector = DoublePressDetector(300)
        detector.press("KEY_F5", 1000)
        assert detector.press("KEY_F5", 1300) is False

    def test_keys_tracked_independently(self):
        detector = DoublePressDetector(300)
        detector.press("KEY_LEFTCTRL", 0)
        assert detector.press("KEY_RIGHTCTRL", 100) is False
        assert detector.press("KEY_LEFTCTRL", 150) is True

    def test_reset(self):
        detector = DoublePressDetector(300)
        detector.press("KEY_F5", 0)
        detector.reset()
        assert detector.press("KEY_F5", 100) is False

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            DoublePressDetector(0)


class TestHotkeyListener:
    """Tests for the evdev double-press listener."""

    def test_handle_press_publishes_trigger(self, channel, triggers):
        listener = HotkeyListener(channel, ["KEY_LEFTCTRL"])
        assert listener.handle_press("KEY_LEFTCTRL", 0) is False
        assert listener.handle_press("KEY_LEFTCTRL", 250) is True

        assert len(triggers) == 1
        assert triggers[0].source == "double-press:KEY_LEFTCTRL"
        assert triggers[0].timestamp_ms == 250

    def test_from_config_secondary_mode(self, channel):
        config = HotkeyConfig(mode="double-press-secondary", double_tap_threshold_ms=400)
        listener = HotkeyListener.from_config(config, channel)
        assert listener.key_codes == ("KEY_F5",)
        assert listener.detector.threshold_ms == 400

    def test_requires_key_codes(self, channel):
        with pytest.raises(ValueError):
            HotkeyListener(channel, [])

    def test_invalid_key_code(self, channel):
        listener = HotkeyListener(channel, ["KEY_NOT_A_REAL_KEY"])
        with pytest.raises(ValueError, match="KEY_NOT_A_REAL_KEY"):
            listener.start()

    @patch("vad_dictation.hotkey.InputDevice")
    @patch("vad_dictation.hotkey.list_devices")
    def test_permission_denied_raises(self, mock_list, mock_device, channel):
        mock_list.return_value = ["/dev/input/event0", "/dev/input/event1"]
        mock_device.side_effect = PermissionError("denied")

        listener = HotkeyListener(channel, ["KEY_LEFTCTRL"])
        with pytest.raises(HotkeyPermissionError, match="input"):
            listener.start()
        assert not listener.running

    @patch("vad_dictation.hotkey.InputDevice")
    def test_explicit_device_open_failure(self, mock_device, channel):
        mock_device.side_effect = OSError("No such device")

        listener = HotkeyListener(channel, ["KEY_F5"], device_paths=["/dev/input/event9"])
        with pytest.raises(HotkeyPermissionError, match="event9"):
            listener.start()

    @pytest.mark.asyncio
    @patch("vad_dictation.hotkey.InputDevice")
    @patch("vad_dictation.hotkey.list_devices")
    async def test_autodetect_skips_devices_without_key(self, mock_list, mock_device, channel):
        keyboard = MagicMock()
        keyboard.path = "/dev/input/event0"
        keyboard.capabilities.return_value = {1: [29, 30]}
        mouse = MagicMock()
        mouse.path = "/dev/input/event1"
        mouse.capabilities.return_value = {1: [272]}
        mock_list.return_value = ["/dev/input/event0", "/dev/input/event1"]
        mock_device.side_effect = [keyboard, mouse]

        listener = HotkeyListener(channel, ["KEY_LEFTCTRL"])
        listener._run = MagicMock(return_value=asyncio.sleep(0))
        listener.start()
        try:
            assert listener._devices == [keyboard]
            mouse.close.assert_called_once()
        finally:
            await listener.stop()
        keyboard.close.assert_called_once()


class TestComboHotkeyListener:
    """Tests for the pynput combo listener."""

    @pytest.fixture
    def fake_pynput(self):
        module = MagicMock()
        with patch.dict(sys.modules, {"pynput": module, "pynput.keyboard": module.keyboard}):
            yield module

    @pytest.mark.asyncio
    async def test_activation_publishes_trigger(self, channel, triggers, fake_pynput):
        listener = ComboHotkeyListener(channel, "<ctrl>+<shift>+d")
        listener.start()
        fake_pynput.keyboard.GlobalHotKeys.assert_called_once()
        hotkeys = fake_pynput.keyboard.GlobalHotKeys.call_args[0][0]
        assert list(hotkeys) == ["<ctrl>+<shift>+d"]

        hotkeys["<ctrl>+<shift>+d"]()
        await asyncio.sleep(0)

        assert len(triggers) == 1
        assert triggers[0].source == "combo:<ctrl>+<shift>+d"
        await listener.stop()
        assert not listener.running

    @pytest.mark.asyncio
    async def test_invalid_combo(self, channel, fake_pynput):
        fake_pynput.keyboard.GlobalHotKeys.side_effect = ValueError("bad key")
        listener = ComboHotkeyListener(channel, "<nope>")
        with pytest.raises(ValueError, match="<nope>"):
            listener.start()

    @pytest.mark.asyncio
    async def test_listener_failure_is_permission_error(self, channel, fake_pynput):
        fake_pynput.keyboard.GlobalHotKeys.return_value.start.side_effect = OSError("no display")
        listener = ComboHotkeyListener(channel, "<ctrl>+d")
        with pytest.raises(HotkeyPermissionError):
            listener.start()
        assert not listener.running


class TestCreateHotkeyListener:
    """Tests for listener selection by mode."""

    def test_combo_mode(self, channel):
        listener = create_hotkey_listener(HotkeyConfig(mode="custom-combo"), channel)
        assert isinstance(listener, ComboHotkeyListener)

    def test_double_press_mode(self, channel):
        listener = create_hotkey_listener(HotkeyConfig(), channel)
        assert isinstance(listener, HotkeyListener)
        assert listener.key_codes == ("KEY_LEFTCTRL", "KEY_RIGHTCTRL")
