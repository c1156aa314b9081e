"""Sandbox generation run.

Selects templates from the catalog, tunes npm for the whole run, builds
every sandbox through ``run_all`` with the configured concurrency ceiling,
and reports a summary.

Builders change shared, user-level package-manager configuration (registry
URL, ``legacy-peer-deps``), which cannot hold two temporary values at once.
Unless ``build.scoped_config`` passes those settings to child processes
through the environment instead, the ceiling is therefore clamped to one.
"""

from __future__ import annotations

import time
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any

from rich.markup import escape
from rich.panel import Panel

from sandboxgen.builder import BuildResult, BuildTask, SandboxBuildError, SandboxBuilder
from sandboxgen.catalog import (
    TemplateDescriptor,
    check_output_layout,
    load_catalog,
    select_templates,
)
from sandboxgen.config import Config
from sandboxgen.config_guard import npm_performance_tuning
from sandboxgen.docs import TemplateRenderer
from sandboxgen.pool import FailurePolicy, OutcomeStatus, TaskOutcome, run_all
from sandboxgen.shutdown import ShutdownHooks, shutdown_hooks
from sandboxgen.utils import (
    console,
    format_duration,
    print_header,
    print_summary_table,
    print_warning,
    save_json,
)


class GenerationError(Exception):
    """Raised when a run cannot proceed or, with fail-fast, a sandbox failed."""

    def __init__(self, message: str, results: list[BuildResult] | None = None) -> None:
        self.results = results or []
        super().__init__(message)


class SandboxGenerator:
    """Generates sandboxes for a set of templates.

    Attributes:
        config: Run configuration.
        hooks: Shutdown hook registry that guards shared configuration.
    """

    def __init__(
        self,
        config: Config,
        *,
        hooks: ShutdownHooks | None = None,
        renderer: TemplateRenderer | None = None,
    ) -> None:
        self.config = config
        self.hooks = hooks if hooks is not None else shutdown_hooks
        self.renderer = renderer

    @property
    def concurrency(self) -> int:
        requested = self.config.build.max_concurrent_tasks
        if requested > 1 and not self.config.build.scoped_config:
            return 1
        return requested

    def load_templates(self, template: str | None = None) -> list[TemplateDescriptor]:
        """Catalog entries to build; raises ``CatalogError``."""
        catalog = load_catalog(self.config.catalog_path)
        return select_templates(catalog, template)

    async def generate(
        self,
        template: str | None = None,
        *,
        local_registry: bool = False,
        debug: bool = False,
    ) -> list[BuildResult]:
        """Generate one template (by key) or the whole catalog."""
        templates = self.load_templates(template)
        tasks = [
            BuildTask(template=t, local_registry=local_registry, debug=debug)
            for t in templates
        ]
        return await self.run_tasks(tasks)

    async def run_tasks(self, tasks: list[BuildTask]) -> list[BuildResult]:
        """Build every task and return one result per task, in order.

        Raises:
            CatalogError: If two tasks would write to overlapping directories.
            GenerationError: With ``FailurePolicy.FAIL_FAST`` when any task
                failed, after every in-flight task has settled.
        """
        check_output_layout(
            (task.key for task in tasks),
            reserved=(self.config.before_dir_name, self.config.after_dir_name),
        )
        build = self.config.build
        if build.max_concurrent_tasks > self.concurrency:
            print_warning(
                f"Concurrency {build.max_concurrent_tasks} requested but builders "
                "change shared package-manager configuration; running one at a time. "
                "Enable scoped config to lift this limit."
            )

        print_header("Generating sandboxes")
        console.print(
            f"Generating {len(tasks)} sandbox(es) with a concurrency of {self.concurrency}"
        )
        started = time.monotonic()

        async with AsyncExitStack() as stack:
            if not build.scoped_config:
                await stack.enter_async_context(npm_performance_tuning(self.hooks))
            outcomes = await run_all(
                [(task.key, self._job(task)) for task in tasks],
                concurrency=self.concurrency,
                policy=build.failure_policy,
            )

        results = [_result_from_outcome(outcome) for outcome in outcomes]
        elapsed = time.monotonic() - started
        await self._report(results, elapsed)

        failed = [r for r in results if not r.success]
        if failed and build.failure_policy is FailurePolicy.FAIL_FAST:
            raise GenerationError(
                f"{len(failed)} sandbox(es) failed: {', '.join(r.key for r in failed)}",
                results,
            )
        return results

    def _job(self, task: BuildTask):
        async def job() -> BuildResult:
            builder = SandboxBuilder(
                task, self.config, hooks=self.hooks, renderer=self.renderer
            )
            return await builder.build()

        return job

    async def _report(self, results: list[BuildResult], elapsed: float) -> None:
        succeeded = [r for r in results if r.success]
        failed = [r for r in results if not r.success]

        summary: dict[str, Any] = {
            "finished_at": datetime.now(timezone.utc).isoformat(),
            "duration": format_duration(elapsed),
            "succeeded": len(succeeded),
            "failed": len(failed),
            "results": [r.as_dict() for r in results],
        }
        await save_json(summary, self.config.summary_path)

        print_summary_table(
            {
                "Sandboxes attempted": str(len(results)),
                "Succeeded": str(len(succeeded)),
                "Failed": str(len(failed)),
                "Duration": format_duration(elapsed),
                "Output": str(self.config.sandbox_dir.resolve()),
            },
            title="Sandbox Generation",
        )

        if failed:
            lines = [f"{escape(r.key)}: {escape(r.error)}" for r in failed]
            console.print(
                Panel(
                    "\n".join(lines),
                    title="[bold]Failed sandboxes (do not publish)[/bold]",
                    border_style="bold red",
                )
            )


def _result_from_outcome(outcome: TaskOutcome[BuildResult]) -> BuildResult:
    if outcome.status is OutcomeStatus.SUCCEEDED and outcome.value is not None:
        return outcome.value
    if isinstance(outcome.error, SandboxBuildError):
        return outcome.error.result
    if outcome.status is OutcomeStatus.SKIPPED:
        return BuildResult(key=outcome.name, error="skipped after an earlier failure")
    return BuildResult(key=outcome.name, error=str(outcome.error))
