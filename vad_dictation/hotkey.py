"""Global toggle hotkey: double-press detection over evdev, or a pynput combo."""

import asyncio
import logging
import time
from typing import AsyncIterator, Sequence

from evdev import InputDevice, ecodes, list_devices

from vad_dictation._types import HotkeyPermissionError
from vad_dictation.config import HotkeyConfig
from vad_dictation.events import EventChannel, Trigger

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.monotonic() * 1000.0


class DoublePressDetector:
    """Fires when the same key is pressed twice within the threshold.

    A successful match clears the key's last-press record so a third press
    inside the same window starts a new pair instead of re-firing.
    """

    def __init__(self, threshold_ms: float = 300):
        if threshold_ms <= 0:
            raise ValueError("threshold_ms must be positive")
        self.threshold_ms = threshold_ms
        self._last_press: dict[str, float | None] = {}

    def last_press_ms(self, key: str) -> float:
        """Last unmatched press time for ``key``; 0.0 when cleared."""
        last = self._last_press.get(key)
        return 0.0 if last is None else last

    def press(self, key: str, now_ms: float) -> bool:
        """Record a key-down at ``now_ms``.

        Returns:
            True if this press completes a double-press
        """
        last = self._last_press.get(key)
        if last is not None and now_ms - last < self.threshold_ms:
            self._last_press[key] = None
            return True
        self._last_press[key] = now_ms
        return False

    def reset(self) -> None:
        self._last_press.clear()


class HotkeyListener:
    """Listens for double-presses of tracked keys on evdev keyboards.

    Publishes a Trigger on the event channel for every double-press.
    Monitors several devices at once; when no device is configured every
    keyboard-like device under /dev/input is used.
    """

    def __init__(
        self,
        channel: EventChannel,
        key_codes: str | Sequence[str],
        device_paths: Sequence[str] = (),
        threshold_ms: float = 300,
    ):
        """Initialize hotkey listener.

        Args:
            channel: Event channel receiving Trigger events
            key_codes: Symbolic key name(s) (e.g., KEY_LEFTCTRL)
            device_paths: Input device paths; empty for auto-detection
            threshold_ms: Double-press window in milliseconds
        """
        if isinstance(key_codes, str):
            key_codes = (key_codes,)
        self.key_codes = tuple(key_codes)
        if not self.key_codes:
            raise ValueError("At least one key code must be provided")

        self.channel = channel
        self.device_paths = tuple(device_paths)
        self.detector = DoublePressDetector(threshold_ms)
        self._devices: list[InputDevice] = []
        self._task: asyncio.Task | None = None

        logger.info(
            "HotkeyListener initialized for key codes: %s (threshold=%dms)",
            ", ".join(self.key_codes),
            threshold_ms,
        )

    @classmethod
    def from_config(cls, config: HotkeyConfig, channel: EventChannel) -> "HotkeyListener":
        """Create HotkeyListener for the configured double-press mode."""
        return cls(
            channel=channel,
            key_codes=config.tracked_keys,
            device_paths=config.devices,
            threshold_ms=config.double_tap_threshold_ms,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _key_code_values(self) -> dict[int, str]:
        values: dict[int, str] = {}
        invalid = []
        for code in self.key_codes:
            value = getattr(ecodes, code, None)
            if value is None:
                invalid.append(code)
            else:
                values[value] = code
        if invalid:
            raise ValueError(f"Invalid key code(s): {', '.join(invalid)}")
        return values

    def _candidate_paths(self) -> list[str]:
        if self.device_paths:
            return list(self.device_paths)
        return list(list_devices())

    def _open_devices(self, key_values: dict[int, str]) -> list[InputDevice]:
        devices: list[InputDevice] = []
        denied: list[str] = []
        for path in self._candidate_paths():
            try:
                device = InputDevice(path)
            except PermissionError:
                denied.append(path)
                continue
            except OSError as e:
                if self.device_paths:
                    self._close(devices)
                    raise HotkeyPermissionError(f"Cannot open input device {path}: {e}") from e
                logger.debug("Skipping input device %s: %s", path, e)
                continue

            if self.device_paths or self._has_keys(device, key_values):
                devices.append(device)
                logger.debug("Opened input device: %s (%s)", path, device.name)
            else:
                device.close()

        if not devices:
            detail = f" (permission denied: {', '.join(denied)})" if denied else ""
            raise HotkeyPermissionError(
                "No readable keyboard device for the hotkey"
                f"{detail}. Ensure you are in the 'input' group: groups | grep input"
            )
        return devices

    @staticmethod
    def _has_keys(device: InputDevice, key_values: dict[int, str]) -> bool:
        keys = device.capabilities().get(ecodes.EV_KEY, [])
        return any(value in keys for value in key_values)

    @staticmethod
    def _close(devices: list[InputDevice]) -> None:
        for device in devices:
            try:
                device.close()
            except Exception as e:
                logger.warning("Error closing device %s: %s", device.path, e)

    def start(self) -> None:
        """Open devices and begin listening.

        Raises:
            HotkeyPermissionError: If no input device can be read
            ValueError: If a key code is unknown to evdev
        """
        if self.running:
            return
        key_values = self._key_code_values()
        self._devices = self._open_devices(key_values)
        self.detector.reset()
        self._task = asyncio.create_task(self._run(key_values))
        logger.info("Hotkey listener started on %d device(s)", len(self._devices))

    async def stop(self) -> None:
        """Stop listening and close all devices."""
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._close(self._devices)
        self._devices = []

    async def _iter_key_presses(self, key_values: dict[int, str]) -> AsyncIterator[str]:
        """Yield tracked key-down events from every open device."""
        queue: asyncio.Queue[str | Exception] = asyncio.Queue()

        async def read(device: InputDevice) -> None:
            try:
                async for event in device.async_read_loop():
                    # value: 0 = release, 1 = press, 2 = repeat
                    if event.type == ecodes.EV_KEY and event.value == 1:
                        key_name = key_values.get(event.code)
                        if key_name is not None:
                            await queue.put(key_name)
            except OSError as e:
                logger.error("Device access failed for %s: %s", device.path, e)
                await queue.put(e)

        readers = [asyncio.create_task(read(device)) for device in self._devices]
        failed = 0
        try:
            while failed < len(readers):
                item = await queue.get()
                if isinstance(item, Exception):
                    failed += 1
                    continue
                yield item
        finally:
            for task in readers:
                task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

    async def _run(self, key_values: dict[int, str]) -> None:
        async for key_name in self._iter_key_presses(key_values):
            self.handle_press(key_name, _now_ms())
        logger.warning("All hotkey devices closed; hotkey path inactive")

    def handle_press(self, key_name: str, now_ms: float) -> bool:
        """Feed one key-down through the detector and publish on a match."""
        if self.detector.press(key_name, now_ms):
            logger.info("Double-press of %s detected", key_name)
            self.channel.publish(Trigger(source=f"double-press:{key_name}", timestamp_ms=now_ms))
            return True
        return False


class ComboHotkeyListener:
    """Registers one key combination with pynput's global hotkey facility.

    Every activation publishes a Trigger; pynput calls back on its own
    thread, so the publish is marshalled onto the event loop.
    """

    def __init__(self, channel: EventChannel, combo: str):
        self.channel = channel
        self.combo = combo
        self._listener = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @classmethod
    def from_config(cls, config: HotkeyConfig, channel: EventChannel) -> "ComboHotkeyListener":
        return cls(channel=channel, combo=config.combo)

    @property
    def running(self) -> bool:
        return self._listener is not None

    def start(self) -> None:
        """Register the combo.

        Raises:
            HotkeyPermissionError: If the global listener cannot be installed
        """
        if self._listener is not None:
            return

        self._loop = asyncio.get_running_loop()
        try:
            from pynput import keyboard

            listener = keyboard.GlobalHotKeys({self.combo: self._on_activate})
            listener.start()
        except ValueError as e:
            raise ValueError(f"Invalid hotkey combo '{self.combo}': {e}") from e
        except Exception as e:
            raise HotkeyPermissionError(
                f"Cannot register global hotkey '{self.combo}': {e}"
            ) from e

        self._listener = listener
        logger.info("Registered hotkey: %s", self.combo)

    async def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.stop()
        self._listener = None
        logger.debug("Unregistered hotkey: %s", self.combo)

    def _on_activate(self) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(
            self.channel.publish,
            Trigger(source=f"combo:{self.combo}", timestamp_ms=_now_ms()),
        )


def create_hotkey_listener(
    config: HotkeyConfig,
    channel: EventChannel,
) -> HotkeyListener | ComboHotkeyListener:
    """Build the listener for the configured hotkey mode."""
    if config.mode == "custom-combo":
        return ComboHotkeyListener.from_config(config, channel)
    return HotkeyListener.from_config(config, channel)
