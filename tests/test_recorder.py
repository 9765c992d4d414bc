"""Tests for journey recording."""

import io

import pytest

from keel.errors import AlreadyExistsError, ConcurrentAccessError, RecordingClosedError
from keel.executor import ExecutionResult
from keel.models import Checkpoint, CheckpointKind
from keel.recorder import (
    IterableCommandSource,
    JourneyRecorder,
    StreamCommandSource,
    record_session,
)


class FakeExecutor:
    def __init__(self, results=None):
        self.commands = []
        self.results = results or {}

    async def __call__(self, command):
        self.commands.append(command)
        return self.results.get(command, ExecutionResult(output=f"ran {command}\n", exit_status=0))


class TestJourneyRecorder:
    @pytest.mark.asyncio
    async def test_steps_are_kept_in_order(self, store):
        """Appended steps end up in the saved journey in order."""
        recorder = JourneyRecorder(store)
        handle = recorder.begin("setup", "first steps")

        recorder.append(handle, "echo hi", "hi\n", 0)
        recorder.append(handle, "false", "", 1)
        journey = await recorder.end(handle)

        assert [step.raw_command for step in journey.steps] == ["echo hi", "false"]
        assert [step.exit_status for step in journey.steps] == [0, 1]
        assert journey.description == "first steps"
        assert await store.load_journey("setup") == journey

    @pytest.mark.asyncio
    async def test_append_after_end_fails(self, store):
        """A finished recording rejects further steps."""
        recorder = JourneyRecorder(store)
        handle = recorder.begin("done")
        await recorder.end(handle)

        with pytest.raises(RecordingClosedError):
            recorder.append(handle, "ls", "", 0)
        with pytest.raises(RecordingClosedError):
            await recorder.end(handle)

    def test_concurrent_append_fails(self, store):
        """A second writer on the same recording is refused."""
        recorder = JourneyRecorder(store)
        handle = recorder.begin("busy")

        with handle._guard:
            with pytest.raises(ConcurrentAccessError):
                recorder.append(handle, "ls", "", 0)

        assert handle.steps == []

    @pytest.mark.asyncio
    async def test_end_refuses_existing_name(self, store):
        """Finishing a recording does not overwrite a saved journey."""
        recorder = JourneyRecorder(store)
        await recorder.end(recorder.begin("taken"))

        with pytest.raises(AlreadyExistsError):
            await recorder.end(recorder.begin("taken"))

    @pytest.mark.asyncio
    async def test_failed_save_keeps_recording_open(self, store):
        """A recording whose save fails can still be saved later."""
        recorder = JourneyRecorder(store)
        await recorder.end(recorder.begin("taken"))
        handle = recorder.begin("taken")
        recorder.append(handle, "echo hi", "hi\n", 0)

        with pytest.raises(AlreadyExistsError):
            await recorder.end(handle)

        assert not handle.closed
        recorder.append(handle, "echo again", "again\n", 0)
        assert await store.delete_journey("taken")
        journey = await recorder.end(handle)
        assert [step.raw_command for step in journey.steps] == ["echo hi", "echo again"]
        assert handle.closed

    @pytest.mark.asyncio
    async def test_checkpoints_and_environment_are_saved(self, store, monkeypatch):
        """Checkpoints and matching environment variables are stored with the journey."""
        monkeypatch.setenv("KEEL_TEST_MODE", "ci")
        monkeypatch.setenv("UNRELATED", "x")
        recorder = JourneyRecorder(store, capture_env=["KEEL_TEST_*"])
        handle = recorder.begin("checked")
        recorder.append(handle, "make", "", 0)

        recorder.add_checkpoint(handle, Checkpoint("built", 0, CheckpointKind.FILE_EXISTS, "dist"))
        with pytest.raises(ValueError):
            recorder.add_checkpoint(handle, Checkpoint("late", 3, CheckpointKind.FILE_EXISTS, "x"))
        journey = await recorder.end(handle)

        assert journey.environment == {"KEEL_TEST_MODE": "ci"}
        assert [checkpoint.name for checkpoint in journey.checkpoints] == ["built"]
        assert await store.load_journey("checked") == journey


class TestRecordSession:
    @pytest.mark.asyncio
    async def test_stop_word_ends_session(self, store):
        """Blank lines are skipped and stop ends the recording."""
        executor = FakeExecutor({"make": ExecutionResult(output="boom\n", exit_status=2)})
        source = IterableCommandSource(["ls -la", "   ", "make", "stop", "never run"])
        seen = []

        journey = await record_session(
            JourneyRecorder(store), "build", source, executor, on_step=seen.append
        )

        assert executor.commands == ["ls -la", "make"]
        assert [step.raw_command for step in journey.steps] == ["ls -la", "make"]
        assert journey.steps[1].captured_stdout == "boom\n"
        assert journey.steps[1].exit_status == 2
        assert seen == journey.steps

    @pytest.mark.asyncio
    async def test_end_of_input_ends_session(self, store):
        """Reaching the end of a stream saves what was recorded."""
        source = StreamCommandSource(io.StringIO("echo one\necho two\n"))

        journey = await record_session(JourneyRecorder(store), "eof", source, FakeExecutor())

        assert [step.raw_command for step in journey.steps] == ["echo one", "echo two"]

    @pytest.mark.asyncio
    async def test_raw_command_is_kept_verbatim(self, store):
        """Commands are stored exactly as typed, including spacing."""
        source = IterableCommandSource(["echo  'a  b'  ", "exit"])

        journey = await record_session(JourneyRecorder(store), "raw", source, FakeExecutor())

        assert journey.steps[0].raw_command == "echo  'a  b'  "

    @pytest.mark.asyncio
    async def test_variables_run_with_defaults(self, store):
        """Placeholders run with their defaults but are stored as typed."""
        executor = FakeExecutor()
        source = IterableCommandSource(["deploy --env {{env}}", "stop"])

        journey = await record_session(
            JourneyRecorder(store), "deploy", source, executor, variables={"env": "staging"}
        )

        assert executor.commands == ["deploy --env staging"]
        assert journey.steps[0].raw_command == "deploy --env {{env}}"
        assert journey.variables == {"env": "staging"}
