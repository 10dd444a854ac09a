"""Text insertion into the focused window via synthetic keyboard events."""

import asyncio
import logging
import shutil
import subprocess
from pathlib import Path

from vad_dictation.config import InjectorConfig

logger = logging.getLogger(__name__)


class InjectionError(Exception):
    """Base exception for insertion failures.

    The text that failed to insert is kept on ``text`` for manual recovery.
    """

    def __init__(self, message: str, text: str | None = None):
        super().__init__(message)
        self.text = text


class CommandNotFoundError(InjectionError):
    """Required binary (wtype/ydotool/xdotool/clipboard helper) unavailable or not executable."""

    pass


class InjectionTimeoutError(InjectionError):
    """Subprocess execution timed out."""

    pass


class Injector:
    """Sends text as synthetic keystrokes to the focused window.

    Supports wtype (default), ydotool, or xdotool backends with optional
    clipboard fallback. When the fallback also fails, the text is left on
    the clipboard if it got that far. Subprocesses run in the default
    executor to avoid blocking the event loop.
    """

    def __init__(self, config: InjectorConfig):
        """Initialize injector and validate binary availability.

        Raises:
            CommandNotFoundError: If configured backend binary is unavailable
        """
        self.config = config
        self.backend = config.backend
        self.clipboard_mode = config.clipboard_mode
        self.typing_delay = config.typing_delay
        self.timeout = config.timeout
        self.dry_run = config.dry_run
        self._clipboard_binary = self._determine_clipboard_binary()
        self._binary_cache: dict[str, Path] = {}

        logger.info(
            "Injector initialized: backend=%s, clipboard_mode=%s, "
            "typing_delay=%dms, timeout=%.1fs, dry_run=%s",
            self.backend,
            self.clipboard_mode,
            self.typing_delay,
            self.timeout,
            self.dry_run,
        )

        if not self.dry_run:
            self._validate_binary(self.backend)
            if self.clipboard_mode and self._clipboard_binary:
                self._validate_binary(self._clipboard_binary)

    def _validate_binary(self, binary_name: str) -> Path:
        """Resolve ``binary_name`` on PATH.

        Raises:
            CommandNotFoundError: If binary not found
        """
        if binary_name in self._binary_cache:
            return self._binary_cache[binary_name]

        binary_path = shutil.which(binary_name)
        if not binary_path:
            raise CommandNotFoundError(
                f"Binary '{binary_name}' not found in PATH. "
                f"Install it to enable text insertion."
            )

        resolved = Path(binary_path)
        self._binary_cache[binary_name] = resolved
        logger.debug("Validated binary: %s -> %s", binary_name, resolved)
        return resolved

    def _determine_clipboard_binary(self) -> str | None:
        """Return clipboard binary name appropriate for backend."""
        if self.backend in ("wtype", "ydotool"):
            return "wl-copy"
        if self.backend == "xdotool":
            return "xclip"
        return None

    def _resolve_command(self, text: str) -> list[str]:
        """Build the typing command for the configured backend."""
        if self.backend == "wtype":
            cmd = [str(self._validate_binary("wtype"))]
            if self.typing_delay > 0:
                cmd.extend(["-d", str(self.typing_delay)])
        elif self.backend == "ydotool":
            cmd = [str(self._validate_binary("ydotool")), "type"]
            if self.typing_delay > 0:
                cmd.extend(["--key-delay", str(self.typing_delay)])
        elif self.backend == "xdotool":
            cmd = [str(self._validate_binary("xdotool")), "type"]
            if self.typing_delay > 0:
                cmd.extend(["--delay", str(self.typing_delay)])
            cmd.append("--clearmodifiers")
        else:
            raise ValueError(f"Unknown backend: {self.backend}")
        cmd.append(text)
        return cmd

    def _resolve_clipboard_paste_command(self) -> list[str]:
        """Return the backend-specific clipboard paste command."""
        if self.backend == "wtype":
            return [str(self._validate_binary("wtype")), "-M", "ctrl", "v", "-m", "ctrl"]
        if self.backend == "ydotool":
            # KEY_LEFTCTRL (29) + KEY_V (47)
            return [str(self._validate_binary("ydotool")), "key", "29:1", "47:1", "47:0", "29:0"]
        if self.backend == "xdotool":
            return [str(self._validate_binary("xdotool")), "key", "--clearmodifiers", "ctrl+v"]
        raise ValueError(f"Unknown backend: {self.backend}")

    def _effective_timeout(self, text_length: int) -> float:
        """Base timeout, stretched to cover the estimated typing duration."""
        estimated = max(self.typing_delay, 0) / 1000.0 * max(text_length, 0)
        return max(self.timeout, estimated + 2.0)

    async def inject_text(self, text: str) -> None:
        """Insert ``text`` into the focused window.

        Raises:
            InjectionError: If the text is empty or every insertion path fails
        """
        if not text or not text.strip():
            raise InjectionError("No text to insert", text=text)

        logger.debug("Injecting text (length=%d, backend=%s)", len(text), self.backend)

        if self.dry_run:
            logger.info("[DRY-RUN] Would insert %d characters: %s", len(text), text)
            return

        try:
            await self._run(
                self._resolve_command(text),
                self._effective_timeout(len(text)),
                label=self.backend,
            )
        except InjectionError as e:
            if not self.clipboard_mode:
                e.text = text
                raise
            logger.warning(
                "Primary injection failed (%s), attempting clipboard fallback",
                type(e).__name__,
            )
            await self._clipboard_fallback(text)

        logger.debug("%s injection succeeded", self.backend)

    async def _clipboard_fallback(self, text: str) -> None:
        """Copy text to the clipboard, then paste it via the backend."""
        clipboard_binary = self._clipboard_binary
        if not clipboard_binary:
            raise InjectionError(
                f"Clipboard mode not supported for backend '{self.backend}'", text=text
            )

        clipboard_cmd = [str(self._validate_binary(clipboard_binary))]
        if clipboard_binary == "xclip":
            clipboard_cmd.extend(["-selection", "clipboard"])

        try:
            await self._run(clipboard_cmd, self.timeout, label=clipboard_binary, stdin=text)
        except InjectionError as e:
            e.text = text
            raise

        try:
            await self._run(self._resolve_clipboard_paste_command(), self.timeout, label="paste")
        except InjectionError as e:
            raise InjectionError(
                "Failed to paste text. The text is still in your clipboard - "
                "try pasting manually.",
                text=text,
            ) from e

        logger.debug("Clipboard fallback injection succeeded")

    async def _run(
        self,
        cmd: list[str],
        timeout: float,
        *,
        label: str,
        stdin: str | None = None,
    ) -> None:
        """Run one helper command with a timeout.

        Raises:
            InjectionTimeoutError: If the command exceeds ``timeout``
            InjectionError: If the command exits non-zero
        """
        logger.debug("Executing %s: %s", label, cmd[0])
        loop = asyncio.get_running_loop()

        def _run_subprocess():
            return subprocess.run(
                cmd,
                input=stdin.encode("utf-8") if stdin is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, _run_subprocess),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise InjectionTimeoutError(f"{label} timed out after {timeout:.1f}s") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace") if result.stderr else ""
            raise InjectionError(
                f"{label} failed with exit code {result.returncode}. stderr: {stderr.strip()}"
            )
