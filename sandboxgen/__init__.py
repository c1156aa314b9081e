"""Sandbox generator.

Builds example projects from a catalog of templates and captures each one
twice: ``before/`` (freshly scaffolded) and ``after/`` (toolkit installed,
documentation added).

Key classes:
    SandboxGenerator  - Runs the whole catalog with a concurrency ceiling
    SandboxBuilder    - Per-template build state machine
    ShutdownHooks     - Cleanup actions run once at process exit
"""

from sandboxgen.builder import BuildResult, BuildState, BuildTask, SandboxBuildError, SandboxBuilder
from sandboxgen.catalog import CatalogError, TemplateDescriptor, load_catalog, select_templates
from sandboxgen.config import Config
from sandboxgen.config_guard import ConfigRestoreError, with_local_registry, with_temporary_value
from sandboxgen.generator import GenerationError, SandboxGenerator
from sandboxgen.pool import FailurePolicy, run_all
from sandboxgen.shutdown import ShutdownHooks, before_shutdown, shutdown_hooks
from sandboxgen.utils import FilesystemError, ProcessError, run_command

__version__ = "0.1.0"

__all__ = [
    # Generation
    "SandboxGenerator",
    "GenerationError",
    "Config",
    "FailurePolicy",
    "run_all",
    # Building
    "SandboxBuilder",
    "BuildTask",
    "BuildResult",
    "BuildState",
    "SandboxBuildError",
    # Catalog
    "TemplateDescriptor",
    "CatalogError",
    "load_catalog",
    "select_templates",
    # Shared configuration
    "with_temporary_value",
    "with_local_registry",
    "ConfigRestoreError",
    "ShutdownHooks",
    "shutdown_hooks",
    "before_shutdown",
    # Processes and files
    "run_command",
    "ProcessError",
    "FilesystemError",
]
