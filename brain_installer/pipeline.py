"""Step-sequenced execution with reverse-order compensation.

A pipeline runs its steps in order. When step k fails, its own ``undo``
runs first to reverse whatever it changed before failing, then the
``undo`` of every step completed before it runs in reverse, and the
step-k error is re-raised. Every ``undo`` must therefore cope with a
partially applied step. Steps whose ``condition`` reports them as already
applied are skipped and take no part in rollback. Cancellation is observed only
between steps, so a step never stops halfway through a write.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from brain_installer.exceptions import BrainInstallerError, CancelledError, InstallIOError

logger = logging.getLogger(__name__)


@dataclass
class Step:
    """One unit of a plan.

    Attributes:
        name: Label used in diagnostics
        do: Performs the step
        undo: Reverses the step; None when there is nothing to reverse
        condition: Returns True when the step is already applied and
            should be skipped
    """

    name: str
    do: Callable[[], None]
    undo: Callable[[], None] | None = None
    condition: Callable[[], bool] | None = None


@dataclass
class PipelineReport:
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)


class Pipeline:
    """Ordered list of steps executed with rollback on failure."""

    def __init__(self, steps: list[Step], log: logging.Logger | None = None):
        self.steps = list(steps)
        self.log = log or logger
        self.report = PipelineReport()

    def execute(self, cancel: threading.Event | None = None) -> PipelineReport:
        """Run every step.

        Args:
            cancel: Shared cancellation signal, checked before each step

        Returns:
            Which steps completed and which were skipped

        Raises:
            CancelledError: If cancellation was observed at a step boundary
            InstallIOError: If a step failed with an OSError
            BrainInstallerError: Whatever the failing step raised
        """
        done: list[Step] = []
        for step in self.steps:
            started = False
            try:
                if cancel is not None and cancel.is_set():
                    raise CancelledError(f'cancelled before step "{step.name}"')
                if step.condition is not None and step.condition():
                    self.log.info("%s: already applied, skipping", step.name)
                    self.report.skipped.append(step.name)
                    continue
                self.log.info("%s", step.name)
                started = True
                step.do()
            except OSError as e:
                self._rollback(done + [step] if started else done)
                error = InstallIOError(f'step "{step.name}" failed: {e}')
                error.step = step.name
                raise error from e
            except Exception as e:
                self._rollback(done + [step] if started else done)
                if isinstance(e, BrainInstallerError) and e.step is None:
                    e.step = step.name
                raise
            done.append(step)
            self.report.completed.append(step.name)
        return self.report

    def _rollback(self, done: list[Step]) -> None:
        for step in reversed(done):
            if step.undo is None:
                continue
            self.log.info("rolling back: %s", step.name)
            try:
                step.undo()
            except Exception as e:
                self.log.warning('undo of step "%s" failed: %s', step.name, e)
            else:
                self.report.rolled_back.append(step.name)
