from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Mapping

from keel.errors import ReplayDivergenceError
from keel.executor import Execute
from keel.models import (
    Checkpoint,
    CheckpointKind,
    CheckpointResult,
    Journey,
    PlaybackResult,
    StepOutcome,
    utcnow,
)
from keel.state_db import StateStore
from keel.variables import substitute_variables


logger = logging.getLogger(__name__)


class JourneyPlayer:
    """Replays a journey's commands in order, comparing exit statuses with the recording.

    ``{{ name }}`` placeholders are filled from ``variables`` (falling back to the
    journey's defaults) and checkpoints are checked after the step they follow.
    """

    def __init__(
        self,
        execute: Execute,
        *,
        strict: bool = False,
        dry_run: bool = False,
        store: StateStore | None = None,
        on_step: Callable[[StepOutcome], None] | None = None,
        variables: Mapping[str, str] | None = None,
        root: Path | None = None,
    ) -> None:
        self.execute = execute
        self.strict = strict
        self.dry_run = dry_run
        self.store = store
        self.on_step = on_step
        self.variables = dict(variables or {})
        self.root = root or Path.cwd()

    async def play(self, journey: Journey) -> PlaybackResult:
        result = PlaybackResult(
            journey=journey.name,
            started_at=utcnow(),
            strict=self.strict,
            dry_run=self.dry_run,
        )
        try:
            await self._run(journey, result)
        finally:
            if self.store is not None and not self.dry_run:
                await self.store.record_playback(result)
        return result

    async def _run(self, journey: Journey, result: PlaybackResult) -> None:
        values = {**journey.variables, **self.variables}
        total = len(journey.steps)
        for index, step in enumerate(journey.steps):
            command = substitute_variables(step.raw_command, values)
            if self.dry_run:
                outcome = StepOutcome(
                    index=index,
                    command=command,
                    recorded_status=step.exit_status,
                    live_status=None,
                    live_output=None,
                    executed=False,
                )
                result.outcomes.append(outcome)
                if self.on_step is not None:
                    self.on_step(outcome)
                continue

            live = await self.execute(command)
            outcome = StepOutcome(
                index=index,
                command=command,
                recorded_status=step.exit_status,
                live_status=live.exit_status,
                live_output=live.output,
                output_changed=step.captured_stdout is not None
                and live.output != step.captured_stdout,
            )
            for checkpoint in journey.checkpoints:
                if checkpoint.step_index == index:
                    outcome.checkpoints.append(await self.check(checkpoint, values))
            result.outcomes.append(outcome)
            if self.on_step is not None:
                self.on_step(outcome)

            if outcome.diverged:
                if outcome.status_changed:
                    logger.warning(
                        "Journey %s step %d diverged: recorded exit %d, got %s",
                        journey.name,
                        index + 1,
                        step.exit_status,
                        live.exit_status,
                    )
                for failed in outcome.failed_checkpoints:
                    logger.warning(
                        "Journey %s step %d: checkpoint %s failed: %s",
                        journey.name,
                        index + 1,
                        failed.name,
                        failed.message,
                    )
                if self.strict:
                    result.aborted = index < total - 1
                    raise ReplayDivergenceError(result)

    async def check(
        self,
        checkpoint: Checkpoint,
        values: Mapping[str, str] | None = None,
    ) -> CheckpointResult:
        values = values or {}
        target = substitute_variables(checkpoint.target, values)
        if checkpoint.kind is CheckpointKind.COMMAND_SUCCEEDS:
            live = await self.execute(target)
            if live.exit_status == 0:
                return CheckpointResult(checkpoint.name, True)
            return CheckpointResult(
                checkpoint.name,
                False,
                f"`{target}` exited with {live.exit_status}",
            )

        path = Path(target).expanduser()
        if not path.is_absolute():
            path = self.root / path
        if checkpoint.kind is CheckpointKind.FILE_EXISTS:
            if path.exists():
                return CheckpointResult(checkpoint.name, True)
            return CheckpointResult(checkpoint.name, False, f"{target} does not exist")

        expected = substitute_variables(checkpoint.expected, values)
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            return CheckpointResult(checkpoint.name, False, f"cannot read {target}: {exc.strerror}")
        if expected in content:
            return CheckpointResult(checkpoint.name, True)
        return CheckpointResult(checkpoint.name, False, f"{target} does not contain {expected!r}")
