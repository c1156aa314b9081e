"""Unit tests for temporary configuration changes (sandboxgen.config_guard).

Tests cover:
- with_temporary_value: restore after success and after failure
- the action's error wins over a restore error
- restore error alone raises ConfigRestoreError
- a failed apply is still restored
- shutdown hook registration and disarming
- with_local_registry
- npm settings (prefer-offline, audit, legacy-peer-deps) via npm config
"""

from __future__ import annotations

import pytest

from sandboxgen.config_guard import (
    ConfigRestoreError,
    NpmConfigSetting,
    npm_performance_tuning,
    relaxed_peer_dependencies,
    scoped_value,
    with_local_registry,
    with_temporary_value,
)
from sandboxgen.shutdown import ShutdownHooks


class Store:
    """An in-memory setting with optional failures."""

    def __init__(self, value: str = "original") -> None:
        self.value = value
        self.writes: list[str] = []
        self.fail_values: set[str] = set()
        self.sync_writes: list[str] = []

    async def read(self) -> str:
        return self.value

    async def write(self, value: str) -> None:
        self.writes.append(value)
        if value in self.fail_values:
            raise RuntimeError(f"cannot write {value}")
        self.value = value

    def write_sync(self, value: str) -> None:
        self.sync_writes.append(value)
        self.value = value


# ---------------------------------------------------------------------------
# with_temporary_value
# ---------------------------------------------------------------------------


class TestWithTemporaryValue:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_value_visible_during_action_and_restored(self, hooks: ShutdownHooks):
        store = Store()
        seen: list[str] = []

        async def action() -> str:
            seen.append(store.value)
            return "result"

        result = await with_temporary_value(
            store.read, store.write, "temporary", action, hooks=hooks
        )

        assert result == "result"
        assert seen == ["temporary"]
        assert store.value == "original"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restored_when_action_fails(self, hooks: ShutdownHooks):
        store = Store()

        async def action() -> None:
            raise ValueError("installer exploded")

        with pytest.raises(ValueError, match="installer exploded"):
            await with_temporary_value(store.read, store.write, "temporary", action, hooks=hooks)

        assert store.value == "original"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_action_error_takes_precedence_over_restore_error(self, hooks: ShutdownHooks):
        store = Store()
        store.fail_values.add("original")

        async def action() -> None:
            raise ValueError("installer exploded")

        with pytest.raises(ValueError) as exc_info:
            await with_temporary_value(store.read, store.write, "temporary", action, hooks=hooks)

        restore_errors = exc_info.value.restore_errors
        assert len(restore_errors) == 1
        assert isinstance(restore_errors[0], ConfigRestoreError)
        assert restore_errors[0].original == "original"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restore_error_raised_when_action_succeeds(self, hooks: ShutdownHooks):
        store = Store()
        store.fail_values.add("original")

        async def action() -> None:
            return None

        with pytest.raises(ConfigRestoreError, match="Could not restore"):
            await with_temporary_value(
                store.read, store.write, "temporary", action, name="registry", hooks=hooks
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_apply_is_restored(self, hooks: ShutdownHooks):
        store = Store()
        store.fail_values.add("temporary")
        ran: list[bool] = []

        async def action() -> None:
            ran.append(True)

        with pytest.raises(RuntimeError, match="cannot write temporary"):
            await with_temporary_value(store.read, store.write, "temporary", action, hooks=hooks)

        assert ran == []
        assert store.writes == ["temporary", "original"]
        assert store.value == "original"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shutdown_hook_armed_during_action(self, hooks: ShutdownHooks):
        store = Store()
        armed: list[int] = []

        async with scoped_value(
            store.read, store.write, "temporary", hooks=hooks, apply_sync=store.write_sync
        ):
            armed.append(len(hooks))
            # Simulate the process exiting mid-action.
            hooks.run()
            assert store.value == "original"

        assert armed == [1]
        assert store.sync_writes == ["original"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shutdown_hook_disarmed_after_restore(self, hooks: ShutdownHooks):
        store = Store()

        async with scoped_value(
            store.read, store.write, "temporary", hooks=hooks, apply_sync=store.write_sync
        ):
            pass

        assert len(hooks) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shutdown_hook_kept_when_restore_fails(self, hooks: ShutdownHooks):
        store = Store()
        store.fail_values.add("original")

        async def action() -> None:
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await with_temporary_value(
                store.read,
                store.write,
                "temporary",
                action,
                hooks=hooks,
                apply_sync=store.write_sync,
            )

        assert len(hooks) == 1
        hooks.run()
        assert store.value == "original"


# ---------------------------------------------------------------------------
# with_local_registry
# ---------------------------------------------------------------------------


class TestWithLocalRegistry:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_swaps_and_restores(self, fake_package_manager, hooks: ShutdownHooks):
        seen: list[str] = []

        async def action() -> None:
            seen.append(fake_package_manager.registry)

        await with_local_registry(
            fake_package_manager, action, url="http://localhost:6001/", hooks=hooks
        )

        assert seen == ["http://localhost:6001/"]
        assert fake_package_manager.registry == "https://registry.npmjs.org/"
        assert fake_package_manager.history == [
            "http://localhost:6001/",
            "https://registry.npmjs.org/",
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restores_and_reraises_on_failure(self, fake_package_manager, hooks):
        async def action() -> None:
            raise RuntimeError("install failed")

        with pytest.raises(RuntimeError, match="install failed"):
            await with_local_registry(
                fake_package_manager, action, url="http://localhost:6001/", hooks=hooks
            )

        assert fake_package_manager.registry == "https://registry.npmjs.org/"


# ---------------------------------------------------------------------------
# npm settings
# ---------------------------------------------------------------------------


class TestNpmSettings:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_npm_config_setting_reads_and_writes(self, toolchain):
        setting = NpmConfigSetting("audit")
        assert await setting.read() == "true"
        await setting.write("false")
        assert toolchain.npm_config["audit"] == "false"
        assert "npm config set audit false" in toolchain.commands

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_performance_tuning_restored(self, toolchain, hooks: ShutdownHooks):
        async with npm_performance_tuning(hooks):
            assert toolchain.npm_config["prefer-offline"] == "true"
            assert toolchain.npm_config["audit"] == "false"
            assert len(hooks) == 2

        assert toolchain.npm_config["prefer-offline"] == "false"
        assert toolchain.npm_config["audit"] == "true"
        assert len(hooks) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_performance_tuning_restored_on_error(self, toolchain, hooks):
        with pytest.raises(KeyError):
            async with npm_performance_tuning(hooks):
                raise KeyError("task blew up")

        assert toolchain.npm_config["prefer-offline"] == "false"
        assert toolchain.npm_config["audit"] == "true"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_relaxed_peer_dependencies(self, toolchain, hooks: ShutdownHooks):
        async with relaxed_peer_dependencies(hooks=hooks):
            assert toolchain.npm_config["legacy-peer-deps"] == "true"
        assert toolchain.npm_config["legacy-peer-deps"] == "false"
