"""Concurrent execution of per-tool pipelines.

Every selected tool is planned first, in the calling thread. Planning
touches nothing on disk, so a plan-time error stops the whole run before
any step executes. Pipelines then run on one worker per tool, sharing a
single cancellation event: the first failure sets it and the other tools
roll back at their next step boundary.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Sequence

from brain_installer.exceptions import (
    BrainInstallerError,
    CancelledError,
    ConfigError,
    DetectionError,
)
from brain_installer.handler import InstallEnvironment, ToolHandler
from brain_installer.logbuffer import LogLine, ToolLogBuffer, buffered_tool_logger
from brain_installer.manifest import InstallManifest
from brain_installer.paths import assert_disjoint
from brain_installer.pipeline import Pipeline, PipelineReport
from brain_installer.placement import InstallPlan, UninstallPlan

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    INSTALL = "install"
    UNINSTALL = "uninstall"


class Outcome(str, Enum):
    INSTALLED = "installed"
    UNINSTALLED = "uninstalled"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ToolResult:
    """Result of one tool's run."""

    tool: str
    outcome: Outcome
    error: BrainInstallerError | None = None
    output: list[LogLine] = field(default_factory=list)
    report: PipelineReport | None = None
    manifest: InstallManifest | None = None

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None

    def describe(self) -> str:
        """Status line text: `installed`, `skipped (reason)` or `failed (kind: message)`."""
        if self.outcome == Outcome.SKIPPED:
            return f"skipped ({self.error})"
        if self.outcome == Outcome.FAILED:
            return f"failed ({self.error_kind}: {self.error})"
        return self.outcome.value


@dataclass
class ExecutionResult:
    """Per-tool results in the order the tools were requested."""

    results: dict[str, ToolResult] = field(default_factory=dict)
    interrupted: bool = False

    def _with(self, *outcomes: Outcome) -> list[str]:
        return [name for name, r in self.results.items() if r.outcome in outcomes]

    @property
    def installed(self) -> list[str]:
        return self._with(Outcome.INSTALLED, Outcome.UNINSTALLED)

    @property
    def skipped(self) -> list[str]:
        return self._with(Outcome.SKIPPED)

    @property
    def failed(self) -> list[str]:
        return self._with(Outcome.FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.interrupted


class Executor:
    """Runs install or uninstall pipelines for a set of tools in parallel.

    Args:
        env: Inputs shared by every tool
        handlers: Registered handlers by slug
        on_complete: Called in the calling thread with each finished
            tool's result, including its buffered log lines
        log_level: Level captured into the per-tool buffers
    """

    def __init__(
        self,
        env: InstallEnvironment,
        handlers: Mapping[str, ToolHandler],
        on_complete: Callable[[ToolResult], None] | None = None,
        log_level: int = logging.INFO,
    ):
        self.env = env
        self.handlers = dict(handlers)
        self.on_complete = on_complete
        self.log_level = log_level

    def install(
        self,
        tools: Sequence[str],
        scope: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        return self.run(Mode.INSTALL, tools, scope, cancel)

    def uninstall(
        self,
        tools: Sequence[str],
        scope: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        return self.run(Mode.UNINSTALL, tools, scope, cancel)

    def _handler(self, slug: str) -> ToolHandler:
        handler = self.handlers.get(slug)
        if handler is None:
            raise ConfigError(
                f"Unknown tool '{slug}' (available: {', '.join(self.handlers) or 'none'})",
                tool=slug,
            )
        return handler

    def _scope_for(self, handler: ToolHandler, scope: str | None, log: logging.Logger) -> str:
        tool = handler.tool
        if scope is None or scope in tool.scopes:
            return scope or tool.default_scope
        log.info(
            "%s has no '%s' scope, using '%s'", tool.display_name, scope, tool.default_scope
        )
        return tool.default_scope

    def run(
        self,
        mode: Mode,
        tools: Sequence[str],
        scope: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        """Plan and execute every requested tool.

        Args:
            mode: Install or uninstall
            tools: Tool slugs, duplicates ignored
            scope: Scope to use for tools that declare it
            cancel: Shared cancellation event; a fresh one is created if omitted

        Raises:
            ConfigError: If a slug is not registered
        """
        slugs = list(dict.fromkeys(tools))
        handlers = {slug: self._handler(slug) for slug in slugs}
        cancel = cancel or threading.Event()
        result = ExecutionResult()

        with ExitStack() as stack:
            buffers: dict[str, ToolLogBuffer] = {}
            logs: dict[str, logging.Logger] = {}
            for slug in slugs:
                logs[slug], buffers[slug] = stack.enter_context(
                    buffered_tool_logger(slug, self.log_level)
                )

            plans = self._plan(mode, handlers, scope, logs, buffers, result)
            if plans:
                self._run_pipelines(mode, plans, logs, buffers, cancel, result)

        result.results = {slug: result.results[slug] for slug in slugs if slug in result.results}
        return result

    def _run_pipelines(
        self,
        mode: Mode,
        plans: dict[str, InstallPlan | UninstallPlan],
        logs: dict[str, logging.Logger],
        buffers: dict[str, ToolLogBuffer],
        cancel: threading.Event,
        result: ExecutionResult,
    ) -> None:
        # no cap on workers: scope roots are disjoint
        pool = ThreadPoolExecutor(max_workers=len(plans), thread_name_prefix="brain")
        try:
            futures: dict[Future, str] = {
                pool.submit(self._execute, mode, slug, plan, logs[slug], cancel): slug
                for slug, plan in plans.items()
            }
            try:
                for future in as_completed(futures):
                    self._finish(future.result(), buffers, result)
            except KeyboardInterrupt:
                logger.info("interrupted, cancelling remaining tools")
                cancel.set()
                result.interrupted = True
                for future, slug in futures.items():
                    if slug not in result.results:
                        self._finish(future.result(), buffers, result)
        finally:
            pool.shutdown(wait=True)

    def _plan(
        self,
        mode: Mode,
        handlers: dict[str, ToolHandler],
        scope: str | None,
        logs: dict[str, logging.Logger],
        buffers: dict[str, ToolLogBuffer],
        result: ExecutionResult,
    ) -> dict[str, InstallPlan | UninstallPlan]:
        """Build every plan; return nothing after recording results if any fails."""
        plans: dict[str, InstallPlan | UninstallPlan] = {}
        failed: BrainInstallerError | None = None

        for slug, handler in handlers.items():
            log = logs[slug]
            try:
                tool_scope = self._scope_for(handler, scope, log)
                if mode == Mode.INSTALL:
                    plans[slug] = handler.plan_install(self.env, tool_scope, log)
                else:
                    plans[slug] = handler.plan_uninstall(self.env, tool_scope, log)
            except BrainInstallerError as e:
                e.tool = e.tool or slug
                log.error("planning failed: %s", e)
                self._finish(ToolResult(slug, Outcome.FAILED, error=e), buffers, result)
                failed = failed or e

        if failed is None and mode == Mode.INSTALL:
            try:
                assert_disjoint({slug: plan.ctx.scope_root for slug, plan in plans.items()})
            except ConfigError as e:
                for slug in plans:
                    self._finish(ToolResult(slug, Outcome.FAILED, error=e), buffers, result)
                return {}

        if failed is None:
            return plans
        for slug in plans:
            error = CancelledError(f"not run: planning failed for '{failed.tool}'", tool=slug)
            self._finish(ToolResult(slug, Outcome.FAILED, error=error), buffers, result)
        return {}

    def _execute(
        self,
        mode: Mode,
        slug: str,
        plan: InstallPlan | UninstallPlan,
        log: logging.Logger,
        cancel: threading.Event,
    ) -> ToolResult:
        pipeline: Pipeline = plan.pipeline()
        try:
            report = pipeline.execute(cancel)
        except DetectionError as e:
            e.tool = e.tool or slug
            log.info("skipped: %s", e)
            return ToolResult(slug, Outcome.SKIPPED, error=e, report=pipeline.report)
        except CancelledError as e:
            e.tool = e.tool or slug
            log.warning("%s", e)
            return ToolResult(slug, Outcome.FAILED, error=e, report=pipeline.report)
        except BrainInstallerError as e:
            e.tool = e.tool or slug
            cancel.set()
            log.error("failed at step %s: %s", e.step, e)
            return ToolResult(slug, Outcome.FAILED, error=e, report=pipeline.report)
        except Exception as e:
            cancel.set()
            log.exception("unexpected error: %s", e)
            error = BrainInstallerError(f"unexpected {type(e).__name__}: {e}", tool=slug)
            error.__cause__ = e
            return ToolResult(slug, Outcome.FAILED, error=error, report=pipeline.report)

        outcome = Outcome.INSTALLED if mode == Mode.INSTALL else Outcome.UNINSTALLED
        manifest = plan.manifest if isinstance(plan, InstallPlan) else None
        return ToolResult(slug, outcome, report=report, manifest=manifest)

    def _finish(
        self,
        tool_result: ToolResult,
        buffers: dict[str, ToolLogBuffer],
        result: ExecutionResult,
    ) -> None:
        buffer = buffers[tool_result.tool]
        tool_result.output = buffer.lines()
        buffer.clear()
        result.results[tool_result.tool] = tool_result
        if self.on_complete is not None:
            self.on_complete(tool_result)
