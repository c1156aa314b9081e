"""Temporary mutation of process-wide configuration.

Shared settings such as the npm registry URL live outside the process (in
the user's npm/yarn config files), so every change made while generating a
sandbox must be undone afterwards, even when the wrapped work fails or
the process is shutting down.

Each guard:

1. reads the current value,
2. registers a shutdown hook that re-applies it (disarmed once the explicit
   restore below succeeds),
3. applies the new value,
4. runs the wrapped work, and
5. restores the original value in a ``finally`` path.

An error from the wrapped work always wins.  A restore failure on top of
it is reported and attached to that error as ``restore_errors``; a restore
failure after successful work raises ``ConfigRestoreError``.
"""

from __future__ import annotations

import subprocess
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from rich.markup import escape

from sandboxgen.package_manager import JsPackageManager
from sandboxgen.shutdown import ShutdownHooks, shutdown_hooks
from sandboxgen.utils import console, print_error, run_command

T = TypeVar("T")


class ConfigRestoreError(Exception):
    """Raised when a previously-mutated setting could not be restored."""

    def __init__(self, message: str, name: str, original: str) -> None:
        self.name = name
        self.original = original
        super().__init__(message)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class ConfigSetting:
    """A named piece of external configuration that can be read and written."""

    name = "setting"

    async def read(self) -> str:
        raise NotImplementedError

    async def write(self, value: str) -> None:
        raise NotImplementedError

    def write_sync(self, value: str) -> None:
        """Blocking write, usable from a shutdown hook."""
        raise NotImplementedError


class NpmConfigSetting(ConfigSetting):
    """A key in the user's npm configuration (``npm config get/set``)."""

    def __init__(self, key: str, cwd: str | Path | None = None) -> None:
        self.key = key
        self.name = f"npm config {key}"
        self.cwd = Path(cwd) if cwd else None

    async def read(self) -> str:
        result = await run_command(f"npm config get {self.key}", cwd=self.cwd, timeout=60)
        return result.stdout.strip()

    async def write(self, value: str) -> None:
        await run_command(f"npm config set {self.key} {value}", cwd=self.cwd, timeout=60)

    def write_sync(self, value: str) -> None:
        subprocess.run(
            f"npm config set {self.key} {value}",
            shell=True,
            cwd=str(self.cwd) if self.cwd else None,
            check=True,
            capture_output=True,
            timeout=60,
        )


class RegistrySetting(ConfigSetting):
    """The registry URL of a package manager."""

    def __init__(self, package_manager: JsPackageManager) -> None:
        self.package_manager = package_manager
        self.name = f"{package_manager.command} registry"

    async def read(self) -> str:
        return await self.package_manager.get_registry_url()

    async def write(self, value: str) -> None:
        await self.package_manager.set_registry_url(value)

    def write_sync(self, value: str) -> None:
        self.package_manager.set_registry_url_sync(value)


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


async def _restore(
    name: str,
    apply: Callable[[str], Awaitable[None]],
    original: str,
    action_error: BaseException | None,
) -> bool:
    """Re-apply *original*. Returns ``True`` on success.

    Raises ``ConfigRestoreError`` only when there is no *action_error* to
    report instead.
    """
    try:
        await apply(original)
    except Exception as exc:
        restore_error = ConfigRestoreError(
            f"Could not restore {name} to {original!r}: {exc}",
            name=name,
            original=original,
        )
        restore_error.__cause__ = exc
        if action_error is None:
            raise restore_error
        print_error(f"{escape(str(restore_error))} (while handling: {escape(repr(action_error))})")
        errors = getattr(action_error, "restore_errors", None)
        if errors is None:
            errors = []
            try:
                action_error.restore_errors = errors  # type: ignore[attr-defined]
            except AttributeError:
                return False
        errors.append(restore_error)
        return False
    return True


@asynccontextmanager
async def scoped_value(
    read_current: Callable[[], Awaitable[str]],
    apply: Callable[[str], Awaitable[None]],
    new_value: str,
    *,
    name: str = "value",
    hooks: ShutdownHooks | None = None,
    apply_sync: Callable[[str], None] | None = None,
) -> AsyncIterator[str]:
    """Hold *new_value* for the duration of the ``async with`` block.

    Yields the original value.  When *apply_sync* is given, a shutdown hook
    re-applying the original is registered before the new value is applied.
    """
    if hooks is None:
        hooks = shutdown_hooks

    original = await read_current()

    remove_hook: Callable[[], None] | None = None
    if apply_sync is not None:
        remove_hook = hooks.register(lambda: apply_sync(original))

    try:
        await apply(new_value)
        yield original
    except BaseException as exc:
        restored = await _restore(name, apply, original, action_error=exc)
        if restored and remove_hook is not None:
            remove_hook()
        raise
    else:
        await _restore(name, apply, original, action_error=None)
        if remove_hook is not None:
            remove_hook()


async def with_temporary_value(
    read_current: Callable[[], Awaitable[str]],
    apply: Callable[[str], Awaitable[None]],
    new_value: str,
    action: Callable[[], Awaitable[T]],
    *,
    name: str = "value",
    hooks: ShutdownHooks | None = None,
    apply_sync: Callable[[str], None] | None = None,
) -> T:
    """Run *action* while *new_value* is applied; return its result."""
    async with scoped_value(
        read_current, apply, new_value, name=name, hooks=hooks, apply_sync=apply_sync
    ):
        return await action()


def scoped_setting(
    setting: ConfigSetting,
    value: str,
    hooks: ShutdownHooks | None = None,
):
    """``scoped_value`` for a ``ConfigSetting``."""
    return scoped_value(
        setting.read,
        setting.write,
        value,
        name=setting.name,
        hooks=hooks,
        apply_sync=setting.write_sync,
    )


# ---------------------------------------------------------------------------
# Specific swaps
# ---------------------------------------------------------------------------


async def with_local_registry(
    package_manager: JsPackageManager,
    action: Callable[[], Awaitable[T]],
    *,
    url: str,
    hooks: ShutdownHooks | None = None,
) -> T:
    """Point *package_manager* at *url* while *action* runs.

    The previous registry is restored afterwards regardless of outcome and
    any error from *action* is re-raised.
    """
    async with scoped_setting(RegistrySetting(package_manager), url, hooks) as previous:
        console.print(f"[cyan]Configuring local registry:[/cyan] {url}")
        try:
            return await action()
        finally:
            console.print(f"[cyan]Restoring registry:[/cyan] {previous or '(default)'}")


@asynccontextmanager
async def relaxed_peer_dependencies(
    cwd: str | Path | None = None,
    hooks: ShutdownHooks | None = None,
) -> AsyncIterator[None]:
    """Enable npm ``legacy-peer-deps`` for the block."""
    async with scoped_setting(NpmConfigSetting("legacy-peer-deps", cwd), "true", hooks):
        yield


@asynccontextmanager
async def npm_performance_tuning(hooks: ShutdownHooks | None = None) -> AsyncIterator[None]:
    """Prefer the offline cache and skip audits for the block."""
    async with AsyncExitStack() as stack:
        await stack.enter_async_context(
            scoped_setting(NpmConfigSetting("prefer-offline"), "true", hooks)
        )
        await stack.enter_async_context(
            scoped_setting(NpmConfigSetting("audit"), "false", hooks)
        )
        yield
