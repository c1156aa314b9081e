"""Package-manager abstraction used for registry swaps.

Only the registry setting is exposed: ``get_registry_url`` and
``set_registry_url`` (plus a blocking ``set_registry_url_sync`` that is safe
to call from a shutdown hook, when no event loop is running).
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from sandboxgen.utils import run_command


class JsPackageManager:
    """A JavaScript package manager driven through its CLI."""

    command = "npm"
    registry_key = "registry"
    unset_verb = "delete"

    def __init__(self, cwd: str | Path | None = None) -> None:
        self.cwd = Path(cwd) if cwd else None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(cwd={self.cwd})"

    def _get_cmd(self) -> str:
        return f"{self.command} config get {self.registry_key}"

    def _set_cmd(self, url: str) -> str:
        # An empty URL means the key was never set; restore that by removing it.
        if not url:
            return f"{self.command} config {self.unset_verb} {self.registry_key}"
        return f"{self.command} config set {self.registry_key} {url}"

    async def get_registry_url(self) -> str:
        result = await run_command(self._get_cmd(), cwd=self.cwd, timeout=60)
        url = result.stdout.strip()
        # yarn and pnpm print "undefined" when the key was never set.
        return "" if url == "undefined" else url

    async def set_registry_url(self, url: str) -> None:
        await run_command(self._set_cmd(url), cwd=self.cwd, timeout=60)

    def set_registry_url_sync(self, url: str) -> None:
        subprocess.run(
            self._set_cmd(url),
            shell=True,
            cwd=str(self.cwd) if self.cwd else None,
            check=True,
            capture_output=True,
            timeout=60,
        )


class NpmPackageManager(JsPackageManager):
    command = "npm"


class YarnClassicPackageManager(JsPackageManager):
    command = "yarn"


class YarnBerryPackageManager(JsPackageManager):
    command = "yarn"
    registry_key = "npmRegistryServer"
    unset_verb = "unset"


class PnpmPackageManager(JsPackageManager):
    command = "pnpm"


def get_package_manager(cwd: str | Path | None = None) -> JsPackageManager:
    """Pick the package manager a project uses from its lockfile.

    Falls back to npm when no lockfile is present.
    """
    root = Path(cwd) if cwd else Path.cwd()
    if (root / "yarn.lock").exists():
        if (root / ".yarnrc.yml").exists():
            return YarnBerryPackageManager(root)
        return YarnClassicPackageManager(root)
    if (root / "pnpm-lock.yaml").exists():
        return PnpmPackageManager(root)
    return NpmPackageManager(root)
