"""Shared utility functions for sandbox generation.

Provides async shell command execution, async file-system helpers, JSON
I/O, duration formatting, and Rich-based console reporting.  Commands and
file-system operations raise structured errors (``ProcessError`` and
``FilesystemError``) so that callers can decide whether a failure aborts a
single sandbox or the whole run.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import signal
from dataclasses import dataclass
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Iterable

from rich.console import Console
from rich.rule import Rule
from rich.table import Table

console = Console()

STDERR_TAIL_LINES = 20

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProcessFailure(str, Enum):
    """Why an external command failed."""
    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"


class ProcessError(Exception):
    """Raised when an external command times out or exits non-zero."""

    def __init__(
        self,
        message: str,
        *,
        command: str,
        reason: ProcessFailure,
        exit_code: int | None = None,
        stderr_tail: str = "",
    ) -> None:
        self.command = command
        self.reason = reason
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        super().__init__(message)


class FilesystemError(Exception):
    """Raised when a copy, move or remove operation fails."""

    def __init__(self, message: str, path: str | Path = "") -> None:
        self.path = str(path)
        super().__init__(message)


# ---------------------------------------------------------------------------
# Async command execution
# ---------------------------------------------------------------------------


@dataclass
class CommandResult:
    """Outcome of a successful command."""

    stdout: str = ""
    returncode: int = 0


def _tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """Kill the shell and everything it spawned."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        process.kill()


async def run_command(
    cmd: str,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    inherit_output: bool = False,
) -> CommandResult:
    """Run a shell command asynchronously.

    Args:
        cmd: Shell command string.
        cwd: Working directory for the child process.
        env: Extra environment variables merged on top of ``os.environ``.
        timeout: Maximum wall-clock seconds before the process group is
            killed. ``None`` waits forever.
        inherit_output: Stream the child's stdout/stderr to the console
            instead of capturing them.

    Returns:
        A ``CommandResult`` with the captured stdout (empty when output is
        inherited).

    Raises:
        ProcessError: On timeout or non-zero exit. The tail of stderr is
            attached when output was captured.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = {**os.environ, **env}

    if inherit_output:
        console.print(f"[dim]Running command: {cmd}[/dim]")

    pipe = None if inherit_output else asyncio.subprocess.PIPE
    process = await asyncio.create_subprocess_shell(
        cmd,
        stdout=pipe,
        stderr=pipe,
        cwd=str(cwd) if cwd else None,
        env=merged_env,
        start_new_session=True,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError:
        _kill_process_group(process)
        await process.wait()
        raise ProcessError(
            f"Command timed out after {timeout}s: {cmd}",
            command=cmd,
            reason=ProcessFailure.TIMEOUT,
        )

    stdout_str = (stdout_bytes or b"").decode("utf-8", errors="replace").strip()
    stderr_str = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if process.returncode != 0:
        stderr_tail = _tail(stderr_str)
        message = f"Command failed (exit {process.returncode}): {cmd}"
        if stderr_tail:
            message = f"{message}\n{stderr_tail}"
        raise ProcessError(
            message,
            command=cmd,
            reason=ProcessFailure.NON_ZERO_EXIT,
            exit_code=process.returncode,
            stderr_tail=stderr_tail,
        )

    return CommandResult(stdout=stdout_str, returncode=0)


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------


async def _in_executor(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


async def make_dir(path: str | Path) -> Path:
    """Create *path* and any missing parents; an existing directory is kept."""
    dir_path = Path(path)
    try:
        await _in_executor(dir_path.mkdir, parents=True, exist_ok=True)
    except OSError as exc:
        raise FilesystemError(f"Could not create {dir_path}: {exc}", dir_path) from exc
    return dir_path


def _empty_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)


async def empty_dir(path: str | Path) -> Path:
    """Make *path* an existing, empty directory.

    Anything already inside is deleted rather than overwritten, so nothing
    from a previous run survives.
    """
    dir_path = Path(path)
    try:
        await _in_executor(_empty_dir, dir_path)
    except OSError as exc:
        raise FilesystemError(f"Could not empty {dir_path}: {exc}", dir_path) from exc
    return dir_path


async def copy_tree(
    src: str | Path,
    dst: str | Path,
    exclude: Iterable[str] = (),
) -> Path:
    """Copy a directory tree, skipping entries whose name is in *exclude*.

    Exclusion applies at every depth, so an excluded name never appears as
    a path component of the copy.
    """
    ignore = shutil.ignore_patterns(*exclude) if exclude else None
    try:
        await _in_executor(
            shutil.copytree, Path(src), Path(dst), symlinks=True, ignore=ignore
        )
    except (OSError, shutil.Error) as exc:
        raise FilesystemError(f"Could not copy {src} to {dst}: {exc}", src) from exc
    return Path(dst)


async def move_tree(src: str | Path, dst: str | Path) -> Path:
    """Move *src* to *dst*. *dst* must not exist yet."""
    dst_path = Path(dst)
    if dst_path.exists():
        raise FilesystemError(f"Move target already exists: {dst_path}", dst_path)
    await make_dir(dst_path.parent)
    try:
        await _in_executor(shutil.move, str(src), str(dst_path))
    except (OSError, shutil.Error) as exc:
        raise FilesystemError(f"Could not move {src} to {dst}: {exc}", src) from exc
    return dst_path


async def copy_file(src: str | Path, dst: str | Path) -> Path:
    """Copy a single file."""
    try:
        await _in_executor(shutil.copyfile, Path(src), Path(dst))
    except OSError as exc:
        raise FilesystemError(f"Could not copy {src} to {dst}: {exc}", src) from exc
    return Path(dst)


async def remove_tree(path: str | Path) -> None:
    """Remove a directory tree. A missing path is not an error."""
    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return
    try:
        if target.is_dir() and not target.is_symlink():
            await _in_executor(shutil.rmtree, target)
        else:
            await _in_executor(target.unlink)
    except OSError as exc:
        raise FilesystemError(f"Could not remove {target}: {exc}", target) from exc


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


async def save_json(data: dict[str, Any] | list[Any], path: str | Path) -> None:
    """Write *data* as indented JSON. Paths and enums are stored as strings."""
    file_path = Path(path)
    content = json.dumps(data, indent=2, ensure_ascii=False, default=str) + "\n"
    await make_dir(file_path.parent)
    try:
        await _in_executor(file_path.write_text, content, "utf-8")
    except OSError as exc:
        raise FilesystemError(f"Could not write {file_path}: {exc}", file_path) from exc


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Elapsed build time for progress lines: ``3.7s``, ``1m 5s``, ``1h 1m 1s``."""
    if seconds < 60:
        return f"{max(seconds, 0.0):.1f}s"

    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    return f"{minutes}m {secs}s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


def print_header(title: str, color: str = "bright_cyan") -> None:
    """Rule that opens a generation run."""
    console.print()
    console.print(Rule(f"[bold {color}]{title}[/bold {color}]", style=color))


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Label/value table printed once a run has settled."""
    table = Table(title=title, show_header=False, title_style="bold cyan")
    table.add_column(style="dim", no_wrap=True)
    table.add_column()
    for label, value in data.items():
        table.add_row(label, str(value))
    console.print(table)


def _status(style: str, symbol: str, message: str) -> None:
    console.print(f"[{style}]{symbol}[/{style}] {message}")


def print_success(message: str) -> None:
    _status("bold green", "\u2714", message)


def print_error(message: str) -> None:
    _status("bold red", "\u2718", message)


def print_warning(message: str) -> None:
    _status("bold yellow", "!", message)
