"""Shared pytest fixtures for the sandboxgen test suite.

Provides reusable fixtures for:
- A test ``Config`` pointing at a temporary sandbox directory
- A private ``ShutdownHooks`` registry per test
- A fake package manager with an in-memory registry URL
- A fake toolchain that stands in for scaffolding tools, the installer and
  ``npm config``, recording every command it is asked to run
- Mock asyncio subprocess helpers
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sandboxgen.catalog import ExpectedOutput, TemplateDescriptor
from sandboxgen.config import BuildConfig, Config
from sandboxgen.shutdown import ShutdownHooks
from sandboxgen.utils import CommandResult, ProcessError, ProcessFailure

INSTALLER = "fake-installer init"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def sandbox_config(tmp_path: Path) -> Config:
    """Config writing sandboxes under ``tmp_path/sandbox``."""
    return Config(
        sandbox_dir=tmp_path / "sandbox",
        build=BuildConfig(installer_command=INSTALLER, script_timeout=30),
    )


@pytest.fixture
def hooks() -> ShutdownHooks:
    """A shutdown hook registry that is never wired to the real process."""
    return ShutdownHooks()


def make_template(
    key: str = "react-vite/default-ts",
    script: str = "tool create {{beforeDir}}",
    renderer: str = "@storybook/react",
    name: str | None = None,
) -> TemplateDescriptor:
    return TemplateDescriptor(
        key=key,
        name=name or f"Template {key}",
        script=script,
        expected=ExpectedOutput(renderer=renderer),
    )


# ---------------------------------------------------------------------------
# Fake package manager
# ---------------------------------------------------------------------------


class FakePackageManager:
    """Keeps the registry URL in memory and logs every change."""

    command = "fake"

    def __init__(self, registry: str = "https://registry.npmjs.org/") -> None:
        self.registry = registry
        self.history: list[str] = []
        self.fail_on_set: set[str] = set()

    async def get_registry_url(self) -> str:
        return self.registry

    async def set_registry_url(self, url: str) -> None:
        if url in self.fail_on_set:
            raise RuntimeError(f"cannot set registry to {url}")
        self.registry = url
        self.history.append(url)

    def set_registry_url_sync(self, url: str) -> None:
        self.registry = url
        self.history.append(url)


@pytest.fixture
def fake_package_manager() -> FakePackageManager:
    return FakePackageManager()


# ---------------------------------------------------------------------------
# Fake toolchain
# ---------------------------------------------------------------------------


@dataclass
class RecordedCall:
    cmd: str
    cwd: Path | None
    env: dict[str, str]
    npm_config: dict[str, str]
    timeout: float | None = None
    inherit_output: bool = False


@dataclass
class FakeToolchain:
    """Replacement for ``run_command`` that simulates the external tools.

    * ``npm config get/set`` read and write ``npm_config``.
    * The installer (``INSTALLER``) writes a ``.storybook`` directory and a
      dependency into ``node_modules``.
    * Any other command is a scaffolding script: it creates a small project
      (including ``node_modules`` and ``.git``) in ``<cwd>/before`` when the
      script names the ``before`` directory, otherwise in ``cwd``.
    * ``fail_when(cmd)`` returning True makes a command exit non-zero.
    * ``delays`` maps a command prefix to seconds to sleep before running.
    """

    before_dir_name: str = "before"
    npm_config: dict[str, str] = field(
        default_factory=lambda: {
            "prefer-offline": "false",
            "audit": "true",
            "legacy-peer-deps": "false",
        }
    )
    calls: list[RecordedCall] = field(default_factory=list)
    fail_when: Callable[[str], bool] = lambda cmd: False
    delays: dict[str, float] = field(default_factory=dict)

    @property
    def commands(self) -> list[str]:
        return [call.cmd for call in self.calls]

    def non_config_calls(self) -> list[RecordedCall]:
        return [c for c in self.calls if not c.cmd.startswith("npm config")]

    async def __call__(
        self,
        cmd: str,
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        inherit_output: bool = False,
    ) -> CommandResult:
        self.calls.append(
            RecordedCall(
                cmd=cmd,
                cwd=Path(cwd) if cwd else None,
                env=dict(env or {}),
                npm_config=dict(self.npm_config),
                timeout=timeout,
                inherit_output=inherit_output,
            )
        )
        delay = next((s for prefix, s in self.delays.items() if cmd.startswith(prefix)), 0)
        await asyncio.sleep(delay)

        if self.fail_when(cmd):
            raise ProcessError(
                f"Command failed (exit 1): {cmd}",
                command=cmd,
                reason=ProcessFailure.NON_ZERO_EXIT,
                exit_code=1,
                stderr_tail="simulated failure",
            )

        words = cmd.split()
        if cmd.startswith("npm config get"):
            return CommandResult(stdout=self.npm_config.get(words[3], "undefined"))
        if cmd.startswith("npm config set"):
            self.npm_config[words[3]] = words[4]
            return CommandResult()

        target = Path(cwd) if cwd else Path.cwd()
        if cmd.startswith(INSTALLER):
            (target / ".storybook").mkdir(exist_ok=True)
            (target / ".storybook" / "main.js").write_text("module.exports = {};\n")
            (target / "node_modules" / "toolkit").mkdir(parents=True, exist_ok=True)
            return CommandResult()

        if self.before_dir_name in words:
            target = target / self.before_dir_name
            target.mkdir()
        _write_project(target)
        return CommandResult()


def _write_project(root: Path) -> None:
    (root / "package.json").write_text('{"name": "sandbox"}\n')
    (root / "src").mkdir(exist_ok=True)
    (root / "src" / "index.js").write_text("console.log('hi');\n")
    (root / "node_modules" / "react").mkdir(parents=True, exist_ok=True)
    (root / "node_modules" / "react" / "index.js").write_text("")
    (root / "src" / "node_modules").mkdir(exist_ok=True)
    (root / ".git").mkdir(exist_ok=True)
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")


@pytest.fixture
def toolchain() -> FakeToolchain:
    """Patch every ``run_command`` used by the builder and config guards."""
    fake = FakeToolchain()
    with patch("sandboxgen.builder.run_command", fake), patch(
        "sandboxgen.config_guard.run_command", fake
    ):
        yield fake


# ---------------------------------------------------------------------------
# Mock subprocess
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_subprocess():
    """Mock asyncio subprocess for testing command execution.

    Returns a factory that creates mock subprocess instances with configurable
    stdout, stderr, and return codes.

    Usage:
        def test_command(mock_subprocess):
            proc = mock_subprocess(stdout="output", returncode=0)
            with patch("asyncio.create_subprocess_shell", return_value=proc):
                ...
    """
    def factory(
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
    ) -> AsyncMock:
        mock_proc = AsyncMock()
        mock_proc.communicate = AsyncMock(
            return_value=(stdout.encode("utf-8"), stderr.encode("utf-8"))
        )
        mock_proc.returncode = returncode
        mock_proc.pid = 99999
        mock_proc.kill = MagicMock()
        mock_proc.wait = AsyncMock(return_value=returncode)
        return mock_proc

    return factory
