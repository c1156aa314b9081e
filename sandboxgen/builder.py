"""Builds one sandbox: a ``before/`` and ``after/`` pair for a template.

The build is a strictly sequential state machine::

    INIT -> SCAFFOLDING -> SNAPSHOT_BEFORE -> INSTALLING -> PROMOTING
         -> DOCUMENTING -> CLEANING_UP -> DONE

Any error moves it to ``FAILED`` and aborts only this sandbox.  Projects
are scaffolded inside a private temp directory, never directly in the
output tree, because some package managers misbehave when a project is
created inside another workspace.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import time
import traceback
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from rich.markup import escape

from sandboxgen.catalog import BEFORE_DIR_PLACEHOLDER, ExpectedOutput, TemplateDescriptor
from sandboxgen.config import Config
from sandboxgen.config_guard import relaxed_peer_dependencies, with_local_registry
from sandboxgen.docs import TemplateRenderer, get_preview_url, write_documentation
from sandboxgen.package_manager import JsPackageManager, get_package_manager
from sandboxgen.shutdown import ShutdownHooks
from sandboxgen.utils import (
    FilesystemError,
    console,
    copy_tree,
    empty_dir,
    make_dir,
    format_duration,
    move_tree,
    print_error,
    print_success,
    print_warning,
    remove_tree,
    run_command,
)

NODE_MODULES = "node_modules"
EXCLUDED_FROM_SNAPSHOT = (NODE_MODULES, ".git")

# Settings applied to npm for the whole run, as child-process environment.
SCOPED_PERFORMANCE_ENV = {
    "npm_config_prefer_offline": "true",
    "npm_config_audit": "false",
}


class BuildState(str, Enum):
    INIT = "init"
    SCAFFOLDING = "scaffolding"
    SNAPSHOT_BEFORE = "snapshot_before"
    INSTALLING = "installing"
    PROMOTING = "promoting"
    DOCUMENTING = "documenting"
    CLEANING_UP = "cleaning_up"
    DONE = "done"
    FAILED = "failed"


@dataclass
class BuildTask:
    """A template bound to the options of one generation run."""

    template: TemplateDescriptor
    local_registry: bool = False
    debug: bool = False

    @property
    def key(self) -> str:
        return self.template.key


@dataclass
class BuildResult:
    """What happened to one sandbox."""

    key: str
    success: bool = False
    state: BuildState = BuildState.INIT
    failed_state: BuildState | None = None
    error: str = ""
    duration_seconds: float = 0.0
    base_dir: Path | None = None
    temp_root: Path | None = None
    files: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "key": self.key,
            "success": self.success,
            "state": self.state.value,
            "failed_state": self.failed_state.value if self.failed_state else None,
            "error": self.error,
            "duration": format_duration(self.duration_seconds),
            "base_dir": str(self.base_dir) if self.base_dir else None,
        }


class SandboxBuildError(Exception):
    """Raised when a sandbox could not be built. Carries the ``BuildResult``."""

    def __init__(self, message: str, result: BuildResult) -> None:
        self.result = result
        super().__init__(message)


def preferred_user_agent(script: str) -> str:
    """Package manager a scaffolding tool should assume, from the script's first word.

    Tools such as create-react-app read ``npm_config_user_agent`` to decide
    which package manager to install with.
    """
    words = script.split(maxsplit=1)
    first = words[0] if words else ""
    if first == "yarn":
        return "yarn"
    if first == "pnpm":
        return "pnpm"
    return "npm"


def installer_flags(expected: ExpectedOutput, renderer_flags: dict[str, list[str]]) -> list[str]:
    """``--yes`` plus the variant flags of the expected renderer."""
    return ["--yes", *renderer_flags.get(expected.renderer_name, [])]


class SandboxBuilder:
    """Runs the build state machine for one ``BuildTask``."""

    def __init__(
        self,
        task: BuildTask,
        config: Config,
        *,
        hooks: ShutdownHooks | None = None,
        renderer: TemplateRenderer | None = None,
        package_manager_factory: Callable[[Path], JsPackageManager] = get_package_manager,
    ) -> None:
        self.task = task
        self.config = config
        self.hooks = hooks
        self.renderer = renderer
        self.package_manager_factory = package_manager_factory

        self.base_dir = config.base_dir(task.key)
        self.before_dir = self.base_dir / config.before_dir_name
        self.after_dir = self.base_dir / config.after_dir_name
        self.temp_root: Path | None = None

        self.state = BuildState.INIT
        self.result = BuildResult(key=task.key, base_dir=self.base_dir)

    @property
    def work_root(self) -> Path:
        """Private temp directory of this build; exists from ``INIT`` on."""
        if self.temp_root is None:
            raise RuntimeError("temp root not created yet")
        return self.temp_root

    @property
    def init_dir(self) -> Path:
        return self.work_root / self.config.before_dir_name

    @property
    def timeout(self) -> float:
        return self.config.build.script_timeout

    def _transition(self, state: BuildState) -> None:
        self.state = state
        self.result.state = state
        if self.task.debug:
            console.print(f"[dim]{self.task.key}: {state.value}[/dim]")

    def _child_env(self) -> dict[str, str]:
        if self.config.build.scoped_config:
            return dict(SCOPED_PERFORMANCE_ENV)
        return {}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def build(self) -> BuildResult:
        """Build the sandbox.

        Returns:
            The successful ``BuildResult``.

        Raises:
            SandboxBuildError: If any step failed. The output directory of
                this template must not be published in that case.
        """
        template = self.task.template
        started = time.monotonic()
        console.print(f"[cyan]Generating[/cyan] [bold]{escape(template.display_name)}[/bold]")

        try:
            await self._init()
            await self._scaffold()
            await self._snapshot_before()
            await self._install()
            await self._promote()
            await self._document()
            await self._clean_up()
        except Exception as exc:
            self.result.failed_state = self.state
            self._transition(BuildState.FAILED)
            self.result.error = str(exc)
            self.result.duration_seconds = time.monotonic() - started
            print_error(
                f"Failed to generate {escape(template.key)} while "
                f"{self.result.failed_state.value} after "
                f"{format_duration(self.result.duration_seconds)}: {escape(str(exc))}"
            )
            console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")
            await self._discard_temp_root()
            raise SandboxBuildError(
                f"{template.key} failed while {self.result.failed_state.value}: {exc}",
                self.result,
            ) from exc

        self._transition(BuildState.DONE)
        self.result.success = True
        self.result.duration_seconds = time.monotonic() - started
        print_success(
            f"Created {template.key} in ./{os.path.relpath(self.base_dir, Path.cwd())} "
            f"successfully in {format_duration(self.result.duration_seconds)}"
        )
        return self.result

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _init(self) -> None:
        self._transition(BuildState.INIT)
        await empty_dir(self.base_dir)
        self.temp_root = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix="sandboxgen-"))
        self.result.temp_root = self.temp_root

    async def _scaffold(self) -> None:
        self._transition(BuildState.SCAFFOLDING)
        work_root = self.work_root
        script = self.task.template.init_script
        env = self._child_env()

        if self.task.template.self_naming:
            # The tool creates the project directory itself.
            script = script.replace(BEFORE_DIR_PLACEHOLDER, self.config.before_dir_name)
            env["npm_config_user_agent"] = preferred_user_agent(script)
            await run_command(
                script,
                cwd=work_root,
                env=env,
                timeout=self.timeout,
                inherit_output=self.task.debug,
            )
        else:
            await make_dir(self.init_dir)
            await run_command(
                script,
                cwd=self.init_dir,
                env=env or None,
                timeout=self.timeout,
                inherit_output=self.task.debug,
            )

        if not self.init_dir.is_dir():
            raise FilesystemError(
                f"Init script did not create {self.config.before_dir_name}/: {script}",
                self.init_dir,
            )

    async def _snapshot_before(self) -> None:
        self._transition(BuildState.SNAPSHOT_BEFORE)
        await copy_tree(self.init_dir, self.before_dir, exclude=EXCLUDED_FROM_SNAPSHOT)

    async def _install(self) -> None:
        self._transition(BuildState.INSTALLING)
        build = self.config.build
        flags = installer_flags(self.task.template.expected, build.renderer_flags)
        command = " ".join([build.installer_command, *flags])
        env = {**self._child_env(), **build.telemetry_env}
        relax_peer_deps = self.task.key in build.legacy_peer_deps_templates

        console.print(f"[cyan]Installing toolkit[/cyan] into {escape(self.task.key)}")

        async def install() -> None:
            await run_command(
                command,
                cwd=self.init_dir,
                env=env,
                timeout=self.timeout,
                inherit_output=self.task.debug,
            )

        if build.scoped_config:
            if self.task.local_registry:
                env["npm_config_registry"] = self.config.registry.local_url
                env["YARN_NPM_REGISTRY_SERVER"] = self.config.registry.local_url
            if relax_peer_deps:
                env["npm_config_legacy_peer_deps"] = "true"
            await install()
            return

        async with AsyncExitStack() as stack:
            if relax_peer_deps:
                # Prerelease peer ranges are rejected by strict peer resolution.
                await stack.enter_async_context(relaxed_peer_dependencies(hooks=self.hooks))
            if self.task.local_registry:
                await with_local_registry(
                    self.package_manager_factory(self.init_dir),
                    install,
                    url=self.config.registry.local_url,
                    hooks=self.hooks,
                )
            else:
                await install()

    async def _promote(self) -> None:
        self._transition(BuildState.PROMOTING)
        await move_tree(self.init_dir, self.after_dir)

    async def _document(self) -> None:
        self._transition(BuildState.DOCUMENTING)
        template = self.task.template
        written = await write_documentation(
            self.after_dir,
            key=template.key,
            display_name=template.display_name,
            preview_url=get_preview_url(template.key, self.config),
            renderer=self.renderer,
        )
        self.result.files = [str(path) for path in written]

    async def _clean_up(self) -> None:
        self._transition(BuildState.CLEANING_UP)
        if self.config.build.cleanup_node_modules:
            node_modules = self.after_dir / NODE_MODULES
            console.print(f"[dim]Removing {node_modules}[/dim]")
            await remove_tree(node_modules)
        await remove_tree(self.work_root)

    async def _discard_temp_root(self) -> None:
        if self.temp_root is None or not self.temp_root.exists():
            return
        if self.config.build.keep_failed_temp:
            print_warning(f"Leaving temp directory of {self.task.key} at {self.temp_root}")
            return
        try:
            await remove_tree(self.temp_root)
        except FilesystemError as exc:
            print_warning(f"Could not remove temp directory {self.temp_root}: {exc}")
