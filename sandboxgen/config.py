"""Sandbox generator configuration.

Centralised, typed configuration for a generation run.  All settings use
Pydantic v2 models so they can be validated at construction time and
serialised to/from JSON or environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from sandboxgen.pool import FailurePolicy

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _TRUTHY


class RegistryConfig(BaseModel):
    """Alternate package registry used with ``--local-registry``."""

    local_url: str = Field(default="http://localhost:6001/")


class BuildConfig(BaseModel):
    """Tuning knobs for building sandboxes."""

    installer_command: str = Field(
        default="npx storybook@latest init",
        description="Command that installs the toolkit into a scaffolded project",
    )
    telemetry_env: dict[str, str] = Field(
        default_factory=lambda: {"STORYBOOK_DISABLE_TELEMETRY": "true"},
        description="Environment passed to the installer to disable telemetry",
    )
    renderer_flags: dict[str, list[str]] = Field(
        default_factory=lambda: {"html": ["--type html"], "server": ["--type server"]},
        description="Extra installer flags keyed by renderer name",
    )
    legacy_peer_deps_templates: list[str] = Field(
        default_factory=lambda: ["angular-cli/prerelease"],
        description="Template keys that need npm legacy-peer-deps while installing",
    )
    script_timeout: float = Field(
        default=300.0, gt=0, description="Timeout in seconds for each external command"
    )
    max_concurrent_tasks: int = Field(
        default=1, ge=1, description="Maximum sandboxes generated at the same time"
    )
    failure_policy: FailurePolicy = Field(default=FailurePolicy.BEST_EFFORT)
    scoped_config: bool = Field(
        default=False,
        description=(
            "Pass registry and npm settings to child processes through the "
            "environment instead of changing the shared user configuration"
        ),
    )
    cleanup_node_modules: bool = Field(
        default=False, description="Remove after/node_modules once a sandbox is built"
    )
    keep_failed_temp: bool = Field(
        default=False, description="Leave the temp directory of a failed sandbox in place"
    )


class DocsConfig(BaseModel):
    """Where the generated README points its preview link."""

    repository: str = Field(default="storybookjs/sandboxes")
    branch: str = Field(default="next")


class Config(BaseModel):
    """Global sandbox generator configuration."""

    sandbox_dir: Path = Field(default=Path("./sandbox"))
    catalog_path: Path | None = Field(
        default=None, description="Template catalog; the packaged catalog when unset"
    )
    before_dir_name: str = Field(default="before")
    after_dir_name: str = Field(default="after")
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    docs: DocsConfig = Field(default_factory=DocsConfig)

    @property
    def summary_path(self) -> Path:
        """Path of the JSON summary written after each run."""
        return self.sandbox_dir / ".generation-summary.json"

    def base_dir(self, key: str) -> Path:
        """Persistent output directory for a template key."""
        return self.sandbox_dir / key

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Persist the configuration to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            SANDBOX_DIR, SANDBOX_CATALOG, SANDBOX_LOCAL_REGISTRY_URL,
            SANDBOX_INSTALLER_COMMAND, SANDBOX_SCRIPT_TIMEOUT,
            SANDBOX_MAX_CONCURRENT_TASKS, CLEANUP_SANDBOX_NODE_MODULES.
        """
        build_kwargs: dict[str, Any] = {
            "cleanup_node_modules": _env_flag("CLEANUP_SANDBOX_NODE_MODULES"),
        }
        if os.environ.get("SANDBOX_INSTALLER_COMMAND"):
            build_kwargs["installer_command"] = os.environ["SANDBOX_INSTALLER_COMMAND"]
        if os.environ.get("SANDBOX_SCRIPT_TIMEOUT"):
            build_kwargs["script_timeout"] = float(os.environ["SANDBOX_SCRIPT_TIMEOUT"])
        if os.environ.get("SANDBOX_MAX_CONCURRENT_TASKS"):
            build_kwargs["max_concurrent_tasks"] = int(os.environ["SANDBOX_MAX_CONCURRENT_TASKS"])

        registry_kwargs: dict[str, Any] = {}
        if os.environ.get("SANDBOX_LOCAL_REGISTRY_URL"):
            registry_kwargs["local_url"] = os.environ["SANDBOX_LOCAL_REGISTRY_URL"]

        catalog = os.environ.get("SANDBOX_CATALOG")

        return cls(
            sandbox_dir=Path(os.environ.get("SANDBOX_DIR", "./sandbox")),
            catalog_path=Path(catalog) if catalog else None,
            registry=RegistryConfig(**registry_kwargs),
            build=BuildConfig(**build_kwargs),
        )
