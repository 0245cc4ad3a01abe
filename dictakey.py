#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "platformdirs",
#     "python-dotenv",
#     "rich",
# ]
# ///

from __future__ import annotations

import argparse
import asyncio
import json
import os
import re
import shlex
import signal
import subprocess
import sys
import tempfile
import time
from asyncio import CancelledError, Event, Queue, create_task
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import suppress
from datetime import datetime
from enum import Enum, StrEnum
from pathlib import Path
from typing import Any, NamedTuple

from dotenv import load_dotenv
from platformdirs import user_cache_dir, user_config_dir, user_data_dir, user_runtime_dir
from rich.console import Console
from rich.markup import escape

APP_NAME = "dictakey"


class ConsoleWithLogging:
    """Console wrapper that outputs to both stdout and a log file"""

    def __init__(self, log_file, default_log_width=5000):
        self.console = Console()
        self.log_console = Console(
            file=log_file,
            force_terminal=False,
            legacy_windows=False,
            width=default_log_width,
        )

    def print_and_log(self, *objects, log_max_width=None, **kwargs):
        """Print to both console and log file

        Args:
            *objects: What to display
            log_max_width: If specified, limits width in log (must be <= default_log_width)
            **kwargs: Other arguments passed to print()
        """
        # Terminal
        self.console.print(*objects, **kwargs)

        # Log
        self.log_console.print(*objects, **kwargs, width=log_max_width)

    def print(self, *objects, **kwargs):
        """Print only to console, not to log"""
        self.console.print(*objects, **kwargs)

    def event(self, message: str):
        """Timestamped lifecycle line, printed and logged"""
        self.print_and_log(f"[dim]{datetime.now():%H:%M:%S}[/dim] {message}")

    def error(self, message: str):
        self.event(f"[bold red]ERROR:[/bold red] {message}")


# X11 keycodes as reported by `xinput test`
MODIFIER_KEY_CODES = {
    "ctrl": frozenset({37, 105}),
    "control": frozenset({37, 105}),
    "shift": frozenset({50, 62}),
    "alt": frozenset({64, 108}),
    "super": frozenset({133, 134}),
    "meta": frozenset({133, 134}),
    "win": frozenset({133, 134}),
}

KEY_CODES = {
    "escape": 9,
    "esc": 9,
    "backspace": 22,
    "tab": 23,
    "enter": 36,
    "return": 36,
    "space": 65,
    **dict(zip("1234567890", range(10, 20))),
    **dict(zip("qwertyuiop", range(24, 34))),
    **dict(zip("asdfghjkl", range(38, 47))),
    **dict(zip("zxcvbnm", range(52, 59))),
    **{f"f{index}": code for index, code in enumerate(range(67, 77), start=1)},
    "f11": 95,
    "f12": 96,
}

DEBUG_TO_STDOUT = os.getenv("DICTAKEY_DEBUG", "false").lower() == "true"


def debug(*args) -> None:
    if not DEBUG_TO_STDOUT:
        return
    print(f"[{datetime.now()}]", *args, file=sys.stdout)


def errprint(*args) -> None:
    print(*args, file=sys.stderr)


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be written."""


class RecorderError(RuntimeError):
    """Raised when the capture tool cannot be started."""


class TranscriptionError(RuntimeError):
    """Raised when the recognition tool fails."""


class EmptyTranscription(TranscriptionError):
    """The recognition tool ran fine but produced no text."""


class Mode(Enum):
    TYPING = "typing"
    CODING = "coding"

    @property
    def is_typing(self) -> bool:
        return self is Mode.TYPING

    @property
    def is_coding(self) -> bool:
        return self is Mode.CODING


class HotkeyMethod(Enum):
    GLOBAL = "global"
    TOGGLE = "toggle"

    @property
    def is_toggle(self) -> bool:
        return self is HotkeyMethod.TOGGLE


class ServiceState(StrEnum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"


class KeyAction(Enum):
    PRESS = "press"
    RELEASE = "release"


class KeyEvent(NamedTuple):
    code: int
    action: KeyAction


_XINPUT_LINE_RE = re.compile(r"^\s*key\s+(?P<action>press|release)\s+(?P<code>\d+)\s*$")


def parse_xinput_line(line: str) -> KeyEvent | None:
    """Parse one `xinput test` output line, `None` if it is not a key event."""
    if not (match := _XINPUT_LINE_RE.match(line)):
        return None
    return KeyEvent(code=int(match["code"]), action=KeyAction(match["action"]))


def parse_hotkey(descriptor: str, method: HotkeyMethod = HotkeyMethod.GLOBAL) -> Config.HotKey:
    """Turn a descriptor like ``ctrl+space`` into X11 keycodes.

    Each modifier becomes a group of alternative keycodes (left/right variants),
    all groups must be held together with the trigger key.
    """
    parts = [part.strip().lower() for part in descriptor.split("+") if part.strip()]
    if not parts:
        raise ValueError("Hotkey cannot be empty")

    modifiers: list[frozenset[int]] = []
    trigger: int | None = None
    for part in parts:
        if part in MODIFIER_KEY_CODES:
            if MODIFIER_KEY_CODES[part] not in modifiers:
                modifiers.append(MODIFIER_KEY_CODES[part])
            continue
        if part not in KEY_CODES:
            raise ValueError(f"Unsupported key: {part}")
        if trigger is not None:
            raise ValueError(f"Only one non-modifier key is allowed in hotkey {descriptor!r}")
        trigger = KEY_CODES[part]

    if trigger is None:
        raise ValueError(f"Hotkey {descriptor!r} must include a non-modifier key")

    return Config.HotKey(
        descriptor="+".join(parts),
        method=method,
        modifier_codes=tuple(modifiers),
        trigger_codes=frozenset({trigger}),
    )


class Config:
    class HotKey(NamedTuple):
        descriptor: str
        method: HotkeyMethod
        modifier_codes: tuple[frozenset[int], ...]
        trigger_codes: frozenset[int]

    class Capture(NamedTuple):
        sample_rate: int
        bits: int
        channels: int

    class Transcription(NamedTuple):
        model: str
        whisper_path: str
        models_dir: Path
        language: str

    class Output(NamedTuple):
        typing_delay_ms: int
        coding_path: Path
        assistant_path: str
        system_prompt: str

    class App(NamedTuple):
        mode: Mode
        hotkey: Config.HotKey
        capture: Config.Capture
        transcription: Config.Transcription
        output: Config.Output
        show_notifications: bool

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> Config.App:
        """Build the typed snapshot; invalid values fall back to defaults with a warning."""
        defaults = ConfigStore.defaults()

        def choice(key: str, enum_cls):
            try:
                return enum_cls(values.get(key, defaults[key]))
            except ValueError:
                errprint(f"WARNING: Invalid value {values.get(key)!r} for {key}, using {defaults[key]!r}")
                return enum_cls(defaults[key])

        def integer(key: str) -> int:
            value = values.get(key, defaults[key])
            try:
                if isinstance(value, bool):
                    raise TypeError
                return int(value)
            except (TypeError, ValueError):
                errprint(f"WARNING: Invalid value {value!r} for {key}, using {defaults[key]!r}")
                return int(defaults[key])

        def text(key: str) -> str:
            value = values.get(key, defaults[key])
            return "" if value is None else str(value)

        method = choice("hotkeyMethod", HotkeyMethod)
        try:
            hotkey = parse_hotkey(text("hotkey"), method)
        except ValueError as exc:
            errprint(f"WARNING: {exc}, using {defaults['hotkey']!r}")
            hotkey = parse_hotkey(defaults["hotkey"], method)

        notifications = values.get("showNotifications", defaults["showNotifications"])
        if isinstance(notifications, str):
            notifications = CommandLineParser.env_truthy(notifications)

        return cls.App(
            mode=choice("mode", Mode),
            hotkey=hotkey,
            capture=cls.Capture(
                sample_rate=integer("audioSampleRate"),
                bits=integer("audioBits"),
                channels=integer("audioChannels"),
            ),
            transcription=cls.Transcription(
                model=text("whisperModel"),
                whisper_path=text("whisperPath"),
                models_dir=Path(text("modelsDir")).expanduser(),
                language=text("language"),
            ),
            output=cls.Output(
                typing_delay_ms=integer("typingDelay"),
                coding_path=Path(text("codingPath")).expanduser(),
                assistant_path=text("claudeCodePath"),
                system_prompt=text("systemPrompt"),
            ),
            show_notifications=bool(notifications),
        )


class ConfigStore:
    """JSON settings file merged over built-in defaults.

    Keys unknown to this version are kept as-is so that newer front-ends can
    store their own settings in the same file.
    """

    FILE_NAME = "config.json"

    def __init__(self, path: Path | None = None):
        self._path = Path(path).expanduser() if path is not None else self.default_path()
        self._values: dict[str, Any] | None = None

    @classmethod
    def default_path(cls) -> Path:
        if env_path := CommandLineParser.get_env("CONFIG"):
            return Path(env_path).expanduser()
        return Path(user_config_dir(APP_NAME, ensure_exists=False)) / cls.FILE_NAME

    @staticmethod
    def defaults() -> dict[str, Any]:
        return {
            "mode": Mode.TYPING.value,
            "hotkey": "ctrl+space",
            "hotkeyMethod": HotkeyMethod.GLOBAL.value,
            "whisperModel": "base.en",
            "whisperPath": "whisper-cli",
            "modelsDir": str(Path(user_data_dir(APP_NAME, ensure_exists=False)) / "models"),
            "language": "en",
            "typingDelay": 50,
            "codingPath": os.getcwd(),
            "claudeCodePath": "claude",
            "systemPrompt": "You are a helpful coding assistant. Implement the requested changes efficiently and clearly.",
            "autoStart": True,
            "showNotifications": True,
            "audioSampleRate": 16000,
            "audioBits": 16,
            "audioChannels": 1,
        }

    @property
    def path(self) -> Path:
        return self._path

    @property
    def values(self) -> dict[str, Any]:
        if self._values is None:
            self.load()
        return self._values

    def load(self) -> Config.App:
        if not self._path.exists():
            self._values = self.defaults()
            try:
                self.save()
            except ConfigError as exc:
                errprint(f"WARNING: {exc}")
            return self.snapshot()

        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("top-level value is not an object")
        except (OSError, ValueError) as exc:
            errprint(f"ERROR: Unable to load configuration from {self._path} ({exc}), using defaults")
            self._values = self.defaults()
            return self.snapshot()

        self._values = {**self.defaults(), **payload}
        return self.snapshot()

    def snapshot(self) -> Config.App:
        return Config.from_mapping(self.values)

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value

    def get_all(self) -> dict[str, Any]:
        return dict(self.values)

    def set_all(self, values: Mapping[str, Any]) -> None:
        self._values = {**self.defaults(), **values}

    def save(self) -> None:
        defaults = self.defaults()
        values = self.values
        ordered = {key: values[key] for key in defaults if key in values}
        ordered.update({key: values[key] for key in sorted(values) if key not in defaults})
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(ordered, indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Unable to save configuration to {self._path}: {exc}") from exc

    def reset(self) -> None:
        self._values = self.defaults()
        self.save()


class Comm:
    """State shared by the service and its tasks, plus the queues between them."""

    def __init__(self, console: ConsoleWithLogging):
        self.console = console
        self._service_events: Queue = Queue()
        self._output_commands: Queue = Queue()
        self._state = ServiceState.IDLE
        self._shutting_down = Event()

    def queue_service_event(self, event) -> None:
        debug("[SERVICE] PUT", event)
        self._service_events.put_nowait(event)

    async def dequeue_service_event(self):
        event = await self._service_events.get()
        debug("[SERVICE] GET", event)
        return event

    def queue_edge(self, edge: BaseHotKeyTask.Edge) -> None:
        self.queue_service_event(edge)

    async def queue_output_command(self, cmd) -> None:
        is_shutdown = isinstance(cmd, OutputTask.Commands.Shutdown)
        if self.is_shutting_down and not is_shutdown:
            return
        await self._output_commands.put(cmd)

    async def dequeue_output_command(self):
        return await self._output_commands.get()

    @property
    def state(self) -> ServiceState:
        return self._state

    def set_state(self, state: ServiceState) -> None:
        if state is self._state:
            return
        debug(f"[STATE] {self._state} -> {state}")
        self._state = state

    @property
    def is_idle(self) -> bool:
        return self._state is ServiceState.IDLE

    @property
    def is_recording(self) -> bool:
        return self._state is ServiceState.RECORDING

    @property
    def is_processing(self) -> bool:
        return self._state is ServiceState.PROCESSING

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down.is_set()

    async def wait_for_shutdown(self):
        await self._shutting_down.wait()

    async def shutdown(self):
        self._shutting_down.set()
        await self.queue_output_command(OutputTask.Commands.Shutdown())


class Notifier:
    COMMAND = "notify-send"
    ICON = "microphone"

    async def notify(self, title: str, message: str) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.COMMAND,
                title,
                message,
                f"--icon={self.ICON}",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await process.wait()
        except OSError as exc:
            debug(f"Notification failed: {exc}")


def _shorten(text: str, length: int = 50) -> str:
    return text if len(text) <= length else f"{text[:length]}..."


class Recorder:
    """Owns the external capture process of the current recording session."""

    COMMAND = ("sox",)
    STOP_GRACE_PERIOD_S = 2.0

    class Session(NamedTuple):
        path: Path
        started_at: datetime
        process: asyncio.subprocess.Process

    def __init__(self, comm: Comm, recordings_dir: Path | None = None, command: Sequence[str] | None = None):
        self.comm = comm
        self.recordings_dir = recordings_dir or Path(user_cache_dir(APP_NAME, ensure_exists=False)) / "recordings"
        self.command = tuple(command) if command is not None else self.COMMAND
        self._session: Recorder.Session | None = None

    @property
    def is_active(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> Recorder.Session | None:
        return self._session

    def new_artifact_path(self) -> Path:
        return self.recordings_dir / f"recording-{time.time_ns()}.wav"

    def build_command(self, capture: Config.Capture, path: Path) -> list[str]:
        return [
            *self.command,
            "-d",
            "-t",
            "wav",
            "-r",
            str(capture.sample_rate),
            "-b",
            str(capture.bits),
            "-c",
            str(capture.channels),
            "-e",
            "signed",
            str(path),
        ]

    async def start(self, capture: Config.Capture) -> Recorder.Session:
        if self._session is not None:
            return self._session
        path = self.new_artifact_path()
        argv = self.build_command(capture, path)
        debug("[RECORDER] spawn", argv)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise RecorderError(f"Unable to start {self.command[0]}: {exc}") from exc
        self._session = self.Session(path=path, started_at=datetime.now(), process=process)
        return self._session

    async def stop(self) -> Path | None:
        if (session := self._session) is None:
            return None
        self._session = None
        process = session.process
        exited_early = process.returncode is not None
        if not exited_early:
            # sox finalizes the wav header on SIGINT
            with suppress(ProcessLookupError):
                process.send_signal(signal.SIGINT)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.STOP_GRACE_PERIOD_S)
        except TimeoutError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()
        if exited_early and process.returncode:
            self.comm.console.event(f"[yellow]Capture tool exited early with code {process.returncode}[/yellow]")
        duration = (datetime.now() - session.started_at).total_seconds()
        debug(f"[RECORDER] stopped after {duration:.1f}s -> {session.path}")
        return session.path

    def kill(self) -> Path | None:
        if (session := self._session) is None:
            return None
        self._session = None
        with suppress(ProcessLookupError):
            session.process.kill()
        return session.path

    @staticmethod
    def discard(path: Path | None) -> None:
        if path is None:
            return
        with suppress(OSError):
            path.unlink()


class TranscriptionTask:
    """Runs the recognition tool on a single worker thread, one job at a time."""

    OPTIONS = ("--no-timestamps", "--output-txt")

    class Job(NamedTuple):
        audio_path: Path
        model_path: Path
        whisper_path: str
        language: str

    def __init__(self, comm: Comm):
        self.comm = comm
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{APP_NAME}-transcribe")

    @staticmethod
    def model_path(config: Config.Transcription) -> Path:
        model = Path(config.model).expanduser()
        if model.suffix == ".bin" or model.is_file():
            return model
        return config.models_dir / f"{config.model}.bin"

    @classmethod
    def build_command(cls, job: TranscriptionTask.Job) -> list[str]:
        argv = [job.whisper_path, "-m", str(job.model_path), "-f", str(job.audio_path), *cls.OPTIONS]
        if job.language:
            argv[-1:-1] = ["--language", job.language]
        return argv

    @staticmethod
    def sidecar_paths(audio_path: Path) -> list[Path]:
        return [audio_path.with_suffix(".txt"), audio_path.with_name(f"{audio_path.name}.txt")]

    async def transcribe(self, audio_path: Path, config: Config.Transcription) -> str:
        job = self.Job(
            audio_path=audio_path,
            model_path=self.model_path(config),
            whisper_path=config.whisper_path,
            language=config.language,
        )
        return await asyncio.wrap_future(self._executor.submit(self.run_job, job))

    @classmethod
    def run_job(cls, job: TranscriptionTask.Job) -> str:
        if not job.model_path.is_file():
            raise TranscriptionError(f"Whisper model not found: {job.model_path}")
        argv = cls.build_command(job)
        debug("[TRANSCRIBE] run", argv)
        try:
            result = subprocess.run(argv, capture_output=True, text=True, errors="replace", check=False)
        except OSError as exc:
            raise TranscriptionError(f"Unable to run {job.whisper_path}: {exc}") from exc

        sidecar_text = ""
        for sidecar in cls.sidecar_paths(job.audio_path):
            if not sidecar.is_file():
                continue
            with suppress(OSError):
                sidecar_text = sidecar_text or sidecar.read_text(encoding="utf-8", errors="replace").strip()
            with suppress(OSError):
                sidecar.unlink()

        if result.returncode != 0:
            details = result.stderr.strip().splitlines()[-1:] or [""]
            raise TranscriptionError(f"{job.whisper_path} exited with code {result.returncode} {details[0]}".strip())

        if text := result.stdout.strip():
            return text
        if sidecar_text:
            return sidecar_text
        raise EmptyTranscription("Empty transcription")

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)


class BaseHotKeyTask:
    """Turns a hotkey backend into PRESS_START / PRESS_END edges on the service queue."""

    class Edge(Enum):
        PRESS_START = "press_start"
        PRESS_END = "press_end"

    def __init__(self, comm: Comm, config: Config.App):
        self.comm = comm
        self.config = config
        self._pressed = False

    @property
    def is_pressed(self) -> bool:
        return self._pressed

    def press_start(self) -> bool:
        if self._pressed or not self.comm.is_idle:
            return False
        self._pressed = True
        self.comm.queue_edge(self.Edge.PRESS_START)
        return True

    def press_end(self) -> bool:
        if not self._pressed:
            return False
        self._pressed = False
        self.comm.queue_edge(self.Edge.PRESS_END)
        return True

    def abort_press(self) -> None:
        """The service could not start a session for the last PRESS_START."""
        self._pressed = False

    def describe(self) -> str:
        raise NotImplementedError

    async def run(self):
        raise NotImplementedError


class GlobalHotKeyTask(BaseHotKeyTask):
    """Hold-to-talk on X11, reading the raw key stream of `xinput test`."""

    RETRY_DELAY_S = 5.0
    LIST_COMMAND = ("xinput", "list")
    TEST_COMMAND = ("xinput", "test")

    _DEVICE_RE = re.compile(r"^\W*(?P<name>.+?)\s+id=(?P<id>\d+)\s+\[(?P<role>master|slave)\s+keyboard")

    def __init__(self, comm: Comm, config: Config.App, retry_delay_s: float | None = None):
        super().__init__(comm, config)
        self.retry_delay_s = self.RETRY_DELAY_S if retry_delay_s is None else retry_delay_s
        self._held: set[int] = set()
        self._combo_held = False
        self._process: asyncio.subprocess.Process | None = None

    def describe(self) -> str:
        return f"Hold [bold yellow]{self.config.hotkey.descriptor.upper()}[/bold yellow] to dictate, release to stop"

    @classmethod
    def select_keyboard_id(cls, listing: str) -> str | None:
        """Pick the first physical keyboard, falling back to the master keyboard."""
        master_id = None
        for line in listing.splitlines():
            if not (match := cls._DEVICE_RE.match(line)):
                continue
            name = match["name"].lower()
            if match["role"] == "master":
                master_id = master_id or match["id"]
                continue
            if "xtest" in name or "virtual" in name or "keyboard" not in name:
                continue
            return match["id"]
        return master_id

    async def listen_command(self) -> list[str]:
        process = await asyncio.create_subprocess_exec(
            *self.LIST_COMMAND,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise RuntimeError(f"{' '.join(self.LIST_COMMAND)} failed: {stderr.decode(errors='replace').strip()}")
        if (keyboard_id := self.select_keyboard_id(stdout.decode(errors="replace"))) is None:
            raise RuntimeError("No keyboard found in xinput list")
        debug(f"[HOTKEY] using keyboard id {keyboard_id}")
        return [*self.TEST_COMMAND, keyboard_id]

    @property
    def modifiers_held(self) -> bool:
        return all(group & self._held for group in self.config.hotkey.modifier_codes)

    @property
    def trigger_held(self) -> bool:
        return bool(self.config.hotkey.trigger_codes & self._held)

    def handle_event(self, event: KeyEvent) -> None:
        hotkey = self.config.hotkey
        relevant = hotkey.trigger_codes.union(*hotkey.modifier_codes)
        if event.code not in relevant:
            return
        if event.action is KeyAction.PRESS:
            self._held.add(event.code)
        else:
            self._held.discard(event.code)

        combo_held = self.modifiers_held and self.trigger_held
        was_held, self._combo_held = self._combo_held, combo_held
        # autorepeat resends the trigger press, only the first one counts
        if combo_held and not was_held:
            self.press_start()
        elif not combo_held and self.is_pressed:
            self.press_end()

    def handle_line(self, line: str) -> None:
        if (event := parse_xinput_line(line)) is not None:
            self.handle_event(event)

    def reset(self) -> None:
        self._held.clear()
        self._combo_held = False
        self.press_end()

    async def _listen_once(self):
        argv = await self.listen_command()
        self._process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        async for raw_line in self._process.stdout:
            self.handle_line(raw_line.decode(errors="replace"))
        code = await self._process.wait()
        stderr = (await self._process.stderr.read()).decode(errors="replace").strip()
        self._process = None
        raise RuntimeError(f"listener exited with code {code}" + (f": {stderr}" if stderr else ""))

    def _terminate_process(self):
        if self._process is not None and self._process.returncode is None:
            with suppress(ProcessLookupError):
                self._process.kill()
        self._process = None

    async def run(self):
        try:
            while not self.comm.is_shutting_down:
                try:
                    await self._listen_once()
                except Exception as exc:
                    self.comm.console.error(f"Hotkey listener failed: {escape(str(exc))}")
                self._terminate_process()
                self.reset()
                self.comm.console.event(f"Retrying hotkey listener in {self.retry_delay_s:g} seconds...")
                await asyncio.sleep(self.retry_delay_s)
        except CancelledError:
            pass
        finally:
            self._terminate_process()


class ToggleHotKeyTask(BaseHotKeyTask):
    """Toggle mode for Wayland: an external script touches a trigger file."""

    POLL_INTERVAL_S = 0.1
    TIMEOUT_S = 30.0
    TRIGGER_FILE = Path(tempfile.gettempdir()) / f"{APP_NAME}-trigger"
    RECORDING_FILE = Path(tempfile.gettempdir()) / f"{APP_NAME}-recording"

    def __init__(
        self,
        comm: Comm,
        config: Config.App,
        trigger_file: Path | None = None,
        recording_file: Path | None = None,
        poll_interval_s: float | None = None,
        timeout_s: float | None = None,
    ):
        super().__init__(comm, config)
        self.trigger_file = trigger_file or self.TRIGGER_FILE
        self.recording_file = recording_file or self.RECORDING_FILE
        self.poll_interval_s = self.POLL_INTERVAL_S if poll_interval_s is None else poll_interval_s
        self.timeout_s = self.TIMEOUT_S if timeout_s is None else timeout_s
        self._timeout_handle: asyncio.TimerHandle | None = None

    def describe(self) -> str:
        return f"Run [bold yellow]{APP_NAME} toggle[/bold yellow] (or touch {self.trigger_file}) to start and stop dictation"

    def _consume_trigger(self) -> bool:
        try:
            self.trigger_file.unlink()
        except FileNotFoundError:
            return False
        return True

    def _remove_recording_marker(self) -> None:
        with suppress(FileNotFoundError):
            self.recording_file.unlink()

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _start(self) -> None:
        if not self.press_start():
            self.comm.console.event("[dim]Busy, toggle ignored[/dim]")
            return
        self.recording_file.write_text("recording", encoding="utf-8")
        self._cancel_timeout()
        self._timeout_handle = asyncio.get_running_loop().call_later(self.timeout_s, self._on_timeout)

    def _stop(self) -> None:
        self._cancel_timeout()
        self._remove_recording_marker()
        if not self.press_end():
            self.comm.console.event("[dim]Removed stale recording marker[/dim]")

    def abort_press(self) -> None:
        super().abort_press()
        self._cancel_timeout()
        self._remove_recording_marker()

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if self.is_pressed:
            self.comm.console.event(f"Auto-stopping recording after {self.timeout_s:g} seconds")
            self._stop()

    def reconcile(self) -> None:
        """The recording marker on disk wins over the in-memory state.

        A marker left over by a previous run is consumed by the next trigger,
        which then acts as a stop.
        """
        if self.is_pressed and not self.recording_file.exists():
            self.comm.console.event("Recording marker removed externally, stopping")
            self._cancel_timeout()
            self.press_end()

    def poll(self) -> None:
        self.reconcile()
        if not self._consume_trigger():
            return
        debug("[HOTKEY] trigger detected")
        if self.recording_file.exists():
            self._stop()
        else:
            self._start()

    async def run(self):
        try:
            while not self.comm.is_shutting_down:
                try:
                    self.poll()
                except OSError as exc:
                    self.comm.console.error(f"Toggle marker error: {escape(str(exc))}")
                await asyncio.sleep(self.poll_interval_s)
        except CancelledError:
            pass
        finally:
            self._cancel_timeout()
            if self.is_pressed:
                self._remove_recording_marker()


def is_wayland_session() -> bool:
    return bool(os.getenv("WAYLAND_DISPLAY")) or os.getenv("XDG_SESSION_TYPE", "").lower() == "wayland"


def effective_hotkey_method(config: Config.App) -> HotkeyMethod:
    """Raw key capture through xinput is not available under Wayland."""
    if config.hotkey.method.is_toggle or is_wayland_session():
        return HotkeyMethod.TOGGLE
    return HotkeyMethod.GLOBAL


def make_hotkey_task(comm: Comm, config: Config.App) -> BaseHotKeyTask:
    if effective_hotkey_method(config).is_toggle:
        return ToggleHotKeyTask(comm, config)
    return GlobalHotKeyTask(comm, config)


class OutputTask:
    TYPING_COMMAND = "xdotool"
    OUTPUT_PREVIEW_LINES = 5

    class Commands:
        class Dispatch(NamedTuple):
            mode: Mode
            text: str
            config: Config.App

        class Shutdown(NamedTuple):
            pass

    def __init__(self, comm: Comm, notifier: Notifier | None = None):
        self.comm = comm
        self.notifier = notifier or Notifier()

    async def run(self):
        try:
            while not self.comm.is_shutting_down:
                cmd = await self.comm.dequeue_output_command()
                match cmd:
                    case self.Commands.Shutdown():
                        break
                    case self.Commands.Dispatch(mode=mode, text=text, config=config) if text:
                        await self.dispatch(mode, text, config)
        except CancelledError:
            pass

    async def dispatch(self, mode: Mode, text: str, config: Config.App) -> bool:
        try:
            if mode.is_coding:
                return await self.run_assistant(text, config)
            return await self.type_text(text, config)
        except OSError as exc:
            await self._fail(f"Output failed: {exc}", config)
            return False

    @staticmethod
    def escape_double_quoted(text: str) -> str:
        """Escape text for use between double quotes in a POSIX shell."""
        return re.sub(r'([\\"$`])', r"\\\1", text)

    @classmethod
    def build_typing_command(cls, text: str, delay_ms: int) -> str:
        return f'{cls.TYPING_COMMAND} type --delay {int(delay_ms)} -- "{cls.escape_double_quoted(text)}"'

    @staticmethod
    def build_prompt(text: str, system_prompt: str | None) -> str:
        if system_prompt and system_prompt.strip():
            return f"{system_prompt}\n\n{text}"
        return text

    @staticmethod
    def build_assistant_command(assistant_path: str, prompt: str) -> list[str]:
        argv = shlex.split(assistant_path)
        if not argv:
            raise ValueError("No coding assistant command configured")
        return [*argv, prompt]

    async def _run_shell(self, command: str) -> tuple[int, str]:
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        stdout, _ = await process.communicate()
        return process.returncode, stdout.decode(errors="replace")

    async def _run_exec(self, argv: list[str], cwd: Path) -> tuple[int, str]:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        stdout, _ = await process.communicate()
        return process.returncode, stdout.decode(errors="replace")

    async def type_text(self, text: str, config: Config.App) -> bool:
        command = self.build_typing_command(text, config.output.typing_delay_ms)
        debug("[OUTPUT] shell", command)
        code, output = await self._run_shell(command)
        if code != 0:
            await self._fail(f"Failed to type text ({self.TYPING_COMMAND} exited with code {code}) {output.strip()}", config)
            return False
        self.comm.console.event("[green]Text typed[/green]")
        if config.show_notifications:
            await self.notifier.notify("Text typed", _shorten(text))
        return True

    async def run_assistant(self, text: str, config: Config.App) -> bool:
        coding_path = config.output.coding_path
        if not coding_path.is_dir():
            await self._fail(f"Coding path does not exist: {coding_path}", config)
            return False
        try:
            argv = self.build_assistant_command(config.output.assistant_path, self.build_prompt(text, config.output.system_prompt))
        except ValueError as exc:
            await self._fail(str(exc), config)
            return False

        self.comm.console.event(f"Running [cyan]{escape(argv[0])}[/cyan] in [yellow]{escape(str(coding_path))}[/yellow]")
        self.comm.console.event(f'Prompt: "{escape(text)}"')
        code, output = await self._run_exec(argv, coding_path)
        lines = output.strip().splitlines()
        for line in lines[: self.OUTPUT_PREVIEW_LINES]:
            self.comm.console.print_and_log(f"  [dim]{escape(line)}[/dim]")
        if len(lines) > self.OUTPUT_PREVIEW_LINES:
            self.comm.console.print_and_log(f"  [dim]... ({len(lines) - self.OUTPUT_PREVIEW_LINES} more lines)[/dim]")

        if code != 0:
            await self._fail(f"Coding assistant exited with code {code}", config)
            return False
        self.comm.console.event("[green]Coding assistant completed[/green]")
        if config.show_notifications:
            await self.notifier.notify("Coding assistant completed", f'Request: "{_shorten(text)}"')
        return True

    async def _fail(self, message: str, config: Config.App):
        self.comm.console.error(escape(message))
        if config.show_notifications:
            await self.notifier.notify("Error", message)


class DictationService:
    """Glues hotkey edges, recording, transcription and output together.

    One utterance at a time: IDLE -> RECORDING -> PROCESSING -> IDLE. Edges that
    do not match the current state are dropped, never queued.
    """

    class Commands:
        class Reload(NamedTuple):
            pass

        class Shutdown(NamedTuple):
            pass

    def __init__(
        self,
        comm: Comm,
        store: ConfigStore,
        config: Config.App | None = None,
        recorder: Recorder | None = None,
        transcriber: TranscriptionTask | None = None,
        output: OutputTask | None = None,
        notifier: Notifier | None = None,
        hotkey_task_factory=make_hotkey_task,
    ):
        self.comm = comm
        self.store = store
        self.config = config or store.load()
        self.notifier = notifier or Notifier()
        self.recorder = recorder or Recorder(comm)
        self.transcriber = transcriber or TranscriptionTask(comm)
        self.output = output or OutputTask(comm, self.notifier)
        self.hotkey_task_factory = hotkey_task_factory
        self.hotkey_task: BaseHotKeyTask | None = None
        self._hotkey_runner: asyncio.Task | None = None
        self._output_runner: asyncio.Task | None = None
        self._processing: asyncio.Task | None = None
        self._signals: list[signal.Signals] = []
        self._notifications: set[asyncio.Task] = set()

    def _notify(self, title: str, message: str):
        """Fire and forget, the receive loop never waits on the notification daemon."""
        if not self.config.show_notifications:
            return
        task = create_task(self.notifier.notify(title, message))
        self._notifications.add(task)
        task.add_done_callback(self._on_notification_done)

    def _on_notification_done(self, task: asyncio.Task):
        self._notifications.discard(task)
        if not task.cancelled() and (exc := task.exception()) is not None:
            debug(f"Notification failed: {exc}")

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGHUP, self.comm.queue_service_event, self.Commands.Reload())
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.comm.queue_service_event, self.Commands.Shutdown())
        self._signals = [signal.SIGHUP, signal.SIGINT, signal.SIGTERM]

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals = []

    def _start_hotkey_task(self):
        self.hotkey_task = self.hotkey_task_factory(self.comm, self.config)
        self.comm.console.event(self.hotkey_task.describe())
        self._hotkey_runner = create_task(self.hotkey_task.run())

    async def _stop_hotkey_task(self):
        if self._hotkey_runner is not None:
            self._hotkey_runner.cancel()
            with suppress(CancelledError):
                await self._hotkey_runner
        self._hotkey_runner = None
        self.hotkey_task = None

    async def run(self, install_signal_handlers: bool = True):
        if install_signal_handlers:
            self._install_signal_handlers()
        self._output_runner = create_task(self.output.run())
        self._start_hotkey_task()
        self.comm.console.event("[bold green]Service is ready and listening[/bold green]")
        try:
            while True:
                match await self.comm.dequeue_service_event():
                    case BaseHotKeyTask.Edge.PRESS_START:
                        await self.on_press_start()
                    case BaseHotKeyTask.Edge.PRESS_END:
                        await self.on_press_end()
                    case self.Commands.Reload():
                        await self.reload()
                    case self.Commands.Shutdown():
                        break
        finally:
            await self.shutdown()

    async def on_press_start(self):
        if not self.comm.is_idle:
            debug(f"[SERVICE] press ignored while {self.comm.state}")
            return
        try:
            session = await self.recorder.start(self.config.capture)
        except RecorderError as exc:
            self.comm.console.error(f"Recording failed: {escape(str(exc))}")
            if self.hotkey_task is not None:
                self.hotkey_task.abort_press()
            self._notify("Error", str(exc))
            return
        self.comm.set_state(ServiceState.RECORDING)
        debug("[SERVICE] recording to", session.path)
        self.comm.console.event("[bold red]Recording...[/bold red]")
        self._notify("Recording...", "Voice dictation is listening")

    async def on_press_end(self):
        if not self.comm.is_recording:
            debug(f"[SERVICE] release ignored while {self.comm.state}")
            return
        path = await self.recorder.stop()
        if path is None:
            self.comm.set_state(ServiceState.IDLE)
            return
        self.comm.set_state(ServiceState.PROCESSING)
        self.comm.console.event("Processing audio...")
        self._notify("Processing...", "Transcribing your speech")
        self._processing = create_task(self.process(path, self.config))

    async def process(self, path: Path, config: Config.App):
        try:
            text = (await self.transcriber.transcribe(path, config.transcription)).strip()
            if not text:
                raise EmptyTranscription("Empty transcription")
            self.comm.console.event(f'Transcript: [bold]"{escape(text)}"[/bold]')
            await self.comm.queue_output_command(OutputTask.Commands.Dispatch(mode=config.mode, text=text, config=config))
        except EmptyTranscription:
            self.comm.console.event("[yellow]No speech detected[/yellow]")
            self._notify("No speech detected", "Try speaking more clearly")
        except Exception as exc:
            self.comm.console.error(f"Processing failed: {escape(str(exc))}")
            self._notify("Error", str(exc))
        finally:
            Recorder.discard(path)
            self.comm.set_state(ServiceState.IDLE)

    async def reload(self):
        self.comm.console.event("Reloading configuration...")
        previous = self.config
        self.config = self.store.load()
        self.comm.console.event(f"Mode: [yellow]{self.config.mode.value}[/yellow]")
        if effective_hotkey_method(previous) is not effective_hotkey_method(self.config) or previous.hotkey != self.config.hotkey:
            await self.restart_hotkey_task()

    async def restart_hotkey_task(self):
        await self._stop_hotkey_task()
        if self.comm.is_recording:
            await self.on_press_end()
        self._start_hotkey_task()

    async def shutdown(self):
        self.comm.console.event("Shutting down...")
        await self.comm.shutdown()
        if self._signals:
            self._remove_signal_handlers()
        Recorder.discard(self.recorder.kill())
        await self._stop_hotkey_task()
        for task in (self._processing, self._output_runner, *self._notifications):
            if task is not None and not task.done():
                task.cancel()
                with suppress(CancelledError):
                    await task
        self.transcriber.close()
        self.comm.console.event("Service stopped")


class CommandLineParser:
    ENV_PREFIX = "DICTAKEY_"

    @classmethod
    def get_env(cls, name: str, default: str | None = None):
        return os.getenv(f"{cls.ENV_PREFIX}{name}", default)

    @classmethod
    def get_env_bool(cls, name: str, default: bool = False):
        return cls.env_truthy(cls.get_env(name, str(default)))

    @staticmethod
    def env_truthy(val: str | None) -> bool:
        if not val:
            return False
        return val.strip().lower() in {"1", "true", "yes", "on"}

    @classmethod
    def load_env_files(cls) -> list[Path]:
        """Load `.env` files from the current directory then the config directory.

        Already-set environment variables always win.
        """
        loaded_files = []
        for directory in (Path.cwd(), Path(user_config_dir(APP_NAME, ensure_exists=False))):
            if (env_path := (directory / ".env")).is_file():
                load_dotenv(env_path, override=False)
                loaded_files.append(env_path.resolve())
        return loaded_files

    @classmethod
    def build_parser(cls) -> argparse.ArgumentParser:
        prefix = cls.ENV_PREFIX
        parser = argparse.ArgumentParser(
            prog=APP_NAME,
            description="Hold or toggle a hotkey to dictate into the focused window or a coding assistant",
            epilog=(
                f"Environment: {prefix}CONFIG (config file), {prefix}LOG (log file), {prefix}DEBUG (debug output).\n"
                f"`.env` files in the current directory and in the config directory are loaded first."
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "-c",
            "--config",
            dest="config_path",
            type=Path,
            help=f"Path to the JSON config file (env: {prefix}CONFIG, default: {ConfigStore.default_path()})",
        )
        commands = parser.add_subparsers(dest="command", metavar="COMMAND")

        run = commands.add_parser("run", help="Run the dictation service (default)")
        run.add_argument("--log", type=Path, help=f"Path to log file (env: {prefix}LOG)")

        commands.add_parser("toggle", help="Start or stop a recording of a service using the toggle method")
        commands.add_parser("status", help="Tell whether the service is running")
        commands.add_parser("reload", help="Ask the running service to reload its configuration")

        config = commands.add_parser("config", help="Show or edit the configuration")
        config_commands = config.add_subparsers(dest="config_command", metavar="ACTION")
        config_commands.add_parser("show", help="Print the merged configuration (default)")
        config_commands.add_parser("path", help="Print the config file path")
        config_commands.add_parser("reset", help="Restore and save the default configuration")
        get = config_commands.add_parser("get", help="Print one value")
        get.add_argument("key")
        set_ = config_commands.add_parser("set", help="Change and save one value (parsed as JSON when possible)")
        set_.add_argument("key")
        set_.add_argument("value")
        return parser

    @classmethod
    def parse(cls, argv: Sequence[str] | None = None) -> argparse.Namespace:
        args = cls.build_parser().parse_args(argv)
        if args.command is None:
            args.command = "run"
            args.log = None
        if args.command == "config" and args.config_command is None:
            args.config_command = "show"
        return args


def pid_file_path() -> Path:
    return Path(user_runtime_dir(APP_NAME, ensure_exists=False)) / f"{APP_NAME}.pid"


def read_running_pid() -> int | None:
    try:
        pid = int(pid_file_path().read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return None
    except PermissionError:
        pass
    return pid


def parse_config_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def print_config_panel(console: ConsoleWithLogging, config: Config.App, config_path: Path, log_path: Path):
    from rich.panel import Panel
    from rich.table import Table

    def format_path(path: Path) -> str:
        try:
            return f"~/{path.relative_to(Path.home())}"
        except ValueError:
            return str(path)

    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column(style="bold cyan", width=20)
    table.add_column()

    table.add_row("Mode", f"[yellow]{config.mode.value}[/yellow]")
    method = effective_hotkey_method(config)
    table.add_row("Hotkey", f"[bold yellow]{config.hotkey.descriptor.upper()}[/bold yellow] [dim]({method.value})[/dim]")
    if method is not config.hotkey.method:
        table.add_row("", "[dim]Wayland session detected, using toggle method[/dim]")
    table.add_row("Whisper", f"[yellow]{config.transcription.model}[/yellow] via [green]{escape(config.transcription.whisper_path)}[/green]")
    table.add_row("Language", f"[yellow]{config.transcription.language}[/yellow]" if config.transcription.language else "[dim]Auto-detect[/dim]")
    capture = config.capture
    table.add_row("Audio", f"[yellow]{capture.sample_rate} Hz, {capture.bits} bits, {capture.channels} channel(s)[/yellow]")
    if config.mode.is_coding:
        table.add_row("Coding path", f"[yellow]{escape(format_path(config.output.coding_path))}[/yellow]")
        table.add_row("Assistant", f"[yellow]{escape(config.output.assistant_path)}[/yellow]")
        if prompt := config.output.system_prompt.strip():
            preview = prompt.replace("\n", " ")
            table.add_row("", f"[dim]Prompt: {escape(_shorten(preview))}[/dim]")
    else:
        table.add_row("Typing delay", f"[yellow]{config.output.typing_delay_ms} ms[/yellow]")
    table.add_row("Notifications", "[green]Enabled[/green]" if config.show_notifications else "[red]Disabled[/red]")

    table.add_row("", "")
    table.add_row("[bold]Files", "")
    table.add_row("  Config", f"[yellow]{format_path(config_path)}[/yellow]")
    table.add_row("  Log", f"[yellow]{format_path(log_path)}[/yellow]")

    console.print_and_log(Panel(table, title="[bold]Dictakey Configuration[/bold]", border_style="blue"), log_max_width=150)
    console.print()


def run_service(args: argparse.Namespace) -> int:
    store = ConfigStore(args.config_path)
    config = store.load()

    if args.log:
        log_path = Path(args.log).expanduser()
    elif env_log := CommandLineParser.get_env("LOG"):
        log_path = Path(env_log).expanduser()
    else:
        log_path = Path(user_config_dir(APP_NAME, ensure_exists=False)) / f"{APP_NAME}.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    pid_path = pid_file_path()
    with open(log_path, "a", encoding="utf-8") as log_file:
        console = ConsoleWithLogging(log_file)
        print_config_panel(console, config, store.path, log_path)
        console.print("Press [bold red]Ctrl+C[/bold red] to stop the service.\n")

        comm = Comm(console)
        service = DictationService(comm, store, config)
        try:
            pid_path.parent.mkdir(parents=True, exist_ok=True)
            pid_path.write_text(str(os.getpid()), encoding="utf-8")
        except OSError as exc:
            errprint(f"WARNING: Unable to write pid file {pid_path}: {exc}")
        try:
            asyncio.run(service.run())
        except KeyboardInterrupt:
            console.print("\nExit.")
        finally:
            with suppress(OSError):
                pid_path.unlink()
    return 0


def toggle_command(args: argparse.Namespace) -> int:
    ToggleHotKeyTask.TRIGGER_FILE.touch()
    print(f"Toggled ({ToggleHotKeyTask.TRIGGER_FILE})")
    return 0


def status_command(args: argparse.Namespace) -> int:
    if (pid := read_running_pid()) is None:
        print("Service: stopped")
        return 1
    state = "recording" if ToggleHotKeyTask.RECORDING_FILE.exists() else "running"
    print(f"Service: {state} (pid {pid})")
    return 0


def reload_command(args: argparse.Namespace) -> int:
    if (pid := read_running_pid()) is None:
        errprint("ERROR: Service is not running")
        return 1
    os.kill(pid, signal.SIGHUP)
    print(f"Reload requested (pid {pid})")
    return 0


def config_command(args: argparse.Namespace) -> int:
    store = ConfigStore(args.config_path)
    store.load()
    try:
        match args.config_command:
            case "show":
                print(json.dumps(store.get_all(), indent=2))
            case "path":
                print(store.path)
            case "get":
                if args.key not in store.values:
                    errprint(f"ERROR: Unknown configuration key: {args.key}")
                    return 1
                print(json.dumps(store.get(args.key)))
            case "set":
                store.set(args.key, parse_config_value(args.value))
                store.save()
                print(f"{args.key} = {json.dumps(store.get(args.key))}")
            case "reset":
                store.reset()
                print(f"Configuration reset to defaults ({store.path})")
    except ConfigError as exc:
        errprint(f"ERROR: {exc}")
        return 1
    if args.config_command in {"set", "reset"} and read_running_pid() is not None:
        print(f"Run `{APP_NAME} reload` to apply the changes to the running service.")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    CommandLineParser.load_env_files()
    args = CommandLineParser.parse(argv)
    handlers = {
        "run": run_service,
        "toggle": toggle_command,
        "status": status_command,
        "reload": reload_command,
        "config": config_command,
    }
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
