import asyncio
import os
import signal
from datetime import datetime

import pytest
from conftest import FakeNotifier, RecordingOutputTask

from dictakey import (
    BaseHotKeyTask,
    ConfigStore,
    DictationService,
    Mode,
    OutputTask,
    Recorder,
    RecorderError,
    ServiceState,
    ToggleHotKeyTask,
    TranscriptionError,
)


class FakeRecorder:
    def __init__(self, directory, fail=False):
        self.directory = directory
        self.fail = fail
        self.attempts = 0
        self.started = 0
        self.stopped = 0
        self._path = None

    @property
    def is_active(self):
        return self._path is not None

    async def start(self, capture):
        self.attempts += 1
        if self.fail:
            raise RecorderError("Unable to start sox: not found")
        if self._path is None:
            self.started += 1
            self._path = self.directory / f"recording-{self.started}.wav"
            self._path.write_bytes(b"RIFF")
        return Recorder.Session(path=self._path, started_at=datetime.now(), process=None)

    async def stop(self):
        self.stopped += 1
        path, self._path = self._path, None
        return path

    def kill(self):
        path, self._path = self._path, None
        return path


class FakeTranscriber:
    def __init__(self, result="hello world", error=None, gate=None):
        self.result = result
        self.error = error
        self.gate = gate
        self.calls = []
        self.closed = False

    async def transcribe(self, path, config):
        self.calls.append(path)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result

    def close(self):
        self.closed = True


class IdleHotKeyTask(BaseHotKeyTask):
    def describe(self):
        return "idle"

    async def run(self):
        await self.comm.wait_for_shutdown()


@pytest.fixture
def make_service(comm, make_config, tmp_path):
    def factory(recorder=None, transcriber=None, config=None, store=None, hotkey_task_factory=IdleHotKeyTask):
        return DictationService(
            comm,
            store or ConfigStore(tmp_path / "config.json"),
            config=config or make_config(showNotifications=True),
            recorder=recorder or FakeRecorder(tmp_path),
            transcriber=transcriber or FakeTranscriber(),
            output=RecordingOutputTask(comm),
            notifier=FakeNotifier(),
            hotkey_task_factory=hotkey_task_factory,
        )

    return factory


async def wait_until(predicate, timeout=5.0):
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


async def settle():
    await asyncio.sleep(0.01)


def pending_outputs(comm):
    commands = []
    while not comm._output_commands.empty():
        commands.append(comm._output_commands.get_nowait())
    return commands


def test_utterance_is_transcribed_and_dispatched(comm, make_service):
    service = make_service()

    async def scenario():
        await service.on_press_start()
        assert comm.state is ServiceState.RECORDING
        await service.on_press_end()
        assert comm.state is ServiceState.PROCESSING
        await service._processing
        await settle()

    asyncio.run(scenario())
    assert comm.state is ServiceState.IDLE
    artifact = service.transcriber.calls[0]
    assert not artifact.exists()
    assert pending_outputs(comm) == [
        OutputTask.Commands.Dispatch(mode=Mode.TYPING, text="hello world", config=service.config)
    ]
    assert [title for title, _ in service.notifier.calls] == ["Recording...", "Processing..."]


def test_press_is_ignored_while_processing(comm, make_service):
    gate = asyncio.Event()
    service = make_service(transcriber=FakeTranscriber(gate=gate))

    async def scenario():
        await service.on_press_start()
        await service.on_press_end()
        await service.on_press_start()
        await service.on_press_end()
        assert comm.state is ServiceState.PROCESSING
        gate.set()
        await service._processing

    asyncio.run(scenario())
    assert service.recorder.started == 1
    assert service.recorder.stopped == 1
    assert len(service.transcriber.calls) == 1
    assert comm.state is ServiceState.IDLE


def test_press_start_twice_keeps_one_session(comm, make_service):
    service = make_service()

    async def scenario():
        await service.on_press_start()
        await service.on_press_start()

    asyncio.run(scenario())
    assert service.recorder.started == 1
    assert comm.state is ServiceState.RECORDING


def test_release_while_idle_is_a_no_op(comm, make_service):
    service = make_service()

    asyncio.run(service.on_press_end())
    assert service.recorder.stopped == 0
    assert comm.state is ServiceState.IDLE


def test_empty_transcript_is_not_dispatched(comm, make_service):
    service = make_service(transcriber=FakeTranscriber(result="   "))

    async def scenario():
        await service.on_press_start()
        await service.on_press_end()
        await service._processing
        await settle()

    asyncio.run(scenario())
    assert pending_outputs(comm) == []
    assert comm.state is ServiceState.IDLE
    assert ("No speech detected", "Try speaking more clearly") in service.notifier.calls
    assert not service.transcriber.calls[0].exists()


def test_transcription_failure_returns_to_idle(comm, make_service):
    error = TranscriptionError("whisper-cli exited with code 1")
    service = make_service(transcriber=FakeTranscriber(error=error))

    async def scenario():
        await service.on_press_start()
        await service.on_press_end()
        await service._processing
        await settle()

    asyncio.run(scenario())
    assert comm.state is ServiceState.IDLE
    assert pending_outputs(comm) == []
    assert ("Error", "whisper-cli exited with code 1") in service.notifier.calls
    assert not service.transcriber.calls[0].exists()


def test_recorder_failure_stays_idle(comm, make_service, tmp_path):
    service = make_service(recorder=FakeRecorder(tmp_path, fail=True))

    async def scenario():
        await service.on_press_start()
        await settle()

    asyncio.run(scenario())
    assert comm.state is ServiceState.IDLE
    assert service.notifier.calls == [("Error", "Unable to start sox: not found")]


def test_toggle_driven_session_end_to_end(comm, make_service, make_config, tmp_path):
    trigger_file = tmp_path / "trigger"
    recording_file = tmp_path / "recording"

    def toggle_factory(comm, config):
        return ToggleHotKeyTask(comm, config, trigger_file=trigger_file, recording_file=recording_file, poll_interval_s=0.01)

    service = make_service(config=make_config(hotkeyMethod="toggle"), hotkey_task_factory=toggle_factory)

    async def scenario():
        runner = asyncio.create_task(service.run(install_signal_handlers=False))
        trigger_file.touch()
        await wait_until(lambda: comm.is_recording)
        assert recording_file.exists()
        trigger_file.touch()
        await wait_until(lambda: service.output.shell_calls)
        comm.queue_service_event(DictationService.Commands.Shutdown())
        await asyncio.wait_for(runner, timeout=5)

    asyncio.run(scenario())
    assert service.output.shell_calls == ['xdotool type --delay 50 -- "hello world"']
    assert not recording_file.exists()
    assert comm.state is ServiceState.IDLE
    assert comm.is_shutting_down
    assert service.transcriber.closed
    assert service.hotkey_task is None


def test_failed_start_leaves_the_toggle_ready_for_a_fresh_start(comm, make_service, make_config, tmp_path):
    trigger_file = tmp_path / "trigger"
    recording_file = tmp_path / "recording"
    recorder = FakeRecorder(tmp_path, fail=True)

    def toggle_factory(comm, config):
        return ToggleHotKeyTask(comm, config, trigger_file=trigger_file, recording_file=recording_file, poll_interval_s=0.01)

    service = make_service(recorder=recorder, config=make_config(hotkeyMethod="toggle"), hotkey_task_factory=toggle_factory)

    async def scenario():
        runner = asyncio.create_task(service.run(install_signal_handlers=False))
        trigger_file.touch()
        await wait_until(lambda: recorder.attempts == 1)
        await wait_until(lambda: not recording_file.exists())
        assert not service.hotkey_task.is_pressed

        trigger_file.touch()
        await wait_until(lambda: recorder.attempts == 2)
        assert not recording_file.exists()
        comm.queue_service_event(DictationService.Commands.Shutdown())
        await asyncio.wait_for(runner, timeout=5)

    asyncio.run(scenario())
    assert comm.state is ServiceState.IDLE


class SlowNotifier(FakeNotifier):
    async def notify(self, title, message):
        await asyncio.sleep(1)
        await super().notify(title, message)


def test_release_is_handled_while_a_notification_is_pending(comm, make_service):
    service = make_service()
    service.notifier = SlowNotifier()

    async def scenario():
        runner = asyncio.create_task(service.run(install_signal_handlers=False))
        await wait_until(lambda: service.hotkey_task is not None)
        loop = asyncio.get_running_loop()
        started = loop.time()
        comm.queue_edge(BaseHotKeyTask.Edge.PRESS_START)
        comm.queue_edge(BaseHotKeyTask.Edge.PRESS_END)
        await wait_until(lambda: service.recorder.stopped == 1)
        elapsed = loop.time() - started
        comm.queue_service_event(DictationService.Commands.Shutdown())
        await asyncio.wait_for(runner, timeout=5)
        return elapsed

    assert asyncio.run(scenario()) < 0.5
    assert service.recorder.started == 1


def test_reload_restarts_detector_only_when_method_changes(comm, make_service, tmp_path):
    store = ConfigStore(tmp_path / "config.json")
    created = []

    def factory(comm, config):
        created.append(config.hotkey.method)
        return IdleHotKeyTask(comm, config)

    service = make_service(store=store, config=store.load(), hotkey_task_factory=factory)

    async def scenario():
        runner = asyncio.create_task(service.run(install_signal_handlers=False))
        await wait_until(lambda: created)

        store.set("mode", "coding")
        store.save()
        comm.queue_service_event(DictationService.Commands.Reload())
        await wait_until(lambda: service.config.mode is Mode.CODING)
        assert len(created) == 1

        store.set("hotkeyMethod", "toggle")
        store.save()
        comm.queue_service_event(DictationService.Commands.Reload())
        await wait_until(lambda: len(created) == 2)

        comm.queue_service_event(DictationService.Commands.Shutdown())
        await asyncio.wait_for(runner, timeout=5)

    asyncio.run(scenario())
    assert [method.value for method in created] == ["global", "toggle"]


def test_detector_restart_ends_an_open_recording(comm, make_service):
    service = make_service()

    async def scenario():
        await service.on_press_start()
        await service.restart_hotkey_task()
        assert comm.state is ServiceState.PROCESSING
        await service._processing
        await service.shutdown()

    asyncio.run(scenario())
    assert service.recorder.stopped == 1
    assert len(pending_outputs(comm)) == 2


def test_shutdown_discards_an_open_recording(comm, make_service, tmp_path):
    service = make_service()

    async def scenario():
        await service.on_press_start()
        await service.shutdown()

    asyncio.run(scenario())
    assert not (tmp_path / "recording-1.wav").exists()
    assert service.transcriber.closed
    assert comm.is_shutting_down


def test_sigterm_shuts_the_service_down(comm, make_service):
    service = make_service()

    async def scenario():
        runner = asyncio.create_task(service.run())
        await wait_until(lambda: service.hotkey_task is not None)
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(runner, timeout=5)

    asyncio.run(scenario())
    assert comm.is_shutting_down
    assert service.transcriber.closed
