import io
import sys
from pathlib import Path

import pytest

import dictakey


class FakeNotifier:
    def __init__(self):
        self.calls = []

    async def notify(self, title, message):
        self.calls.append((title, message))


class RecordingOutputTask(dictakey.OutputTask):
    def __init__(self, comm, notifier=None, result=(0, "")):
        super().__init__(comm, notifier or FakeNotifier())
        self.result = result
        self.shell_calls = []
        self.exec_calls = []

    async def _run_shell(self, command):
        self.shell_calls.append(command)
        return self.result

    async def _run_exec(self, argv, cwd):
        self.exec_calls.append((argv, cwd))
        return self.result


def drain_events(comm):
    events = []
    while not comm._service_events.empty():
        events.append(comm._service_events.get_nowait())
    return events


def write_tool(directory: Path, name: str, body: str) -> Path:
    path = directory / name
    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.fixture(autouse=True)
def no_wayland(monkeypatch):
    monkeypatch.delenv("WAYLAND_DISPLAY", raising=False)
    monkeypatch.delenv("XDG_SESSION_TYPE", raising=False)
    monkeypatch.delenv("DICTAKEY_CONFIG", raising=False)


@pytest.fixture
def console():
    return dictakey.ConsoleWithLogging(io.StringIO())


@pytest.fixture
def comm(console):
    return dictakey.Comm(console)


@pytest.fixture
def make_config(tmp_path):
    def factory(**overrides):
        values = {
            **dictakey.ConfigStore.defaults(),
            "codingPath": str(tmp_path),
            "showNotifications": False,
            **overrides,
        }
        return dictakey.Config.from_mapping(values)

    return factory
