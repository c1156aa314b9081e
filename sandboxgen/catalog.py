"""Template catalog: what sandboxes exist and how each one is scaffolded.

A catalog is a YAML or JSON mapping from template key to descriptor::

    react-vite/default-ts:
      name: React Vite (TS)
      script: yarn create vite --template react-ts {{beforeDir}}
      expected:
        framework: "@storybook/react-vite"
        renderer: "@storybook/react"
        builder: "@storybook/builder-vite"

The key doubles as the output sub-directory, so every ``/``-separated
segment must be a plain directory name.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

BEFORE_DIR_PLACEHOLDER = "{{beforeDir}}"

DEFAULT_CATALOG_PATH = Path(__file__).parent / "templates" / "catalog.yaml"


class CatalogError(Exception):
    """Raised when a catalog cannot be loaded or a template key is unknown."""


class ExpectedOutput(BaseModel):
    """What the installer is expected to produce for a template."""

    framework: str = ""
    renderer: str = ""
    builder: str = ""

    @property
    def renderer_name(self) -> str:
        """Renderer without its package scope: ``@storybook/html`` -> ``html``."""
        return self.renderer.rsplit("/", 1)[-1]


class TemplateDescriptor(BaseModel):
    """Static recipe for one sandbox."""

    model_config = ConfigDict(populate_by_name=True)

    key: str
    display_name: str = Field(alias="name")
    init_script: str = Field(alias="script")
    expected: ExpectedOutput = Field(default_factory=ExpectedOutput)
    in_development: bool = Field(default=False, alias="inDevelopment")

    @field_validator("key")
    @classmethod
    def _key_is_path_safe(cls, value: str) -> str:
        segments = value.split("/")
        for segment in segments:
            if segment in ("", ".", "..") or "\\" in segment:
                raise ValueError(f"template key {value!r} is not a safe relative path")
        return value

    @property
    def self_naming(self) -> bool:
        """The init script names its own output directory."""
        return BEFORE_DIR_PLACEHOLDER in self.init_script


def check_output_layout(
    keys: Iterable[str],
    reserved: Iterable[str] = ("before", "after"),
) -> None:
    """Reject keys whose output directories would overlap.

    Each key owns ``<sandbox_dir>/<key>`` and empties it before building, so
    no key may repeat, sit inside another key, or use a *reserved* snapshot
    directory name as one of its segments.

    Raises:
        CatalogError: On the first overlapping key.
    """
    keys = list(keys)
    reserved_names = set(reserved)
    seen: set[str] = set()
    for key in keys:
        if key in seen:
            raise CatalogError(f"Template {key!r} is listed more than once")
        seen.add(key)
        clash = reserved_names.intersection(key.split("/"))
        if clash:
            raise CatalogError(
                f"Template key {key!r} uses reserved directory name {sorted(clash)[0]!r}"
            )
    for key in keys:
        for other in keys:
            if other.startswith(key + "/"):
                raise CatalogError(
                    f"Template key {other!r} is nested inside template {key!r}"
                )


def parse_catalog(data: Any) -> dict[str, TemplateDescriptor]:
    """Validate a raw ``{key: descriptor}`` mapping."""
    if not isinstance(data, dict):
        raise CatalogError("Template catalog must be a mapping of key to template")

    catalog: dict[str, TemplateDescriptor] = {}
    for key, raw in data.items():
        if not isinstance(raw, dict):
            raise CatalogError(f"Template {key!r} must be a mapping")
        try:
            catalog[str(key)] = TemplateDescriptor.model_validate({**raw, "key": str(key)})
        except ValidationError as exc:
            raise CatalogError(f"Invalid template {key!r}: {exc}") from exc
    check_output_layout(catalog)
    return catalog


def load_catalog(path: str | Path | None = None) -> dict[str, TemplateDescriptor]:
    """Load a catalog file (``.json``, otherwise YAML).

    Args:
        path: Catalog file. Defaults to the catalog packaged with sandboxgen.

    Raises:
        CatalogError: If the file is missing, unparsable, or invalid.
    """
    catalog_path = Path(path) if path else DEFAULT_CATALOG_PATH
    try:
        raw = catalog_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CatalogError(f"Cannot read template catalog {catalog_path}: {exc}") from exc

    try:
        if catalog_path.suffix == ".json":
            data = json.loads(raw)
        else:
            data = yaml.safe_load(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise CatalogError(f"Cannot parse template catalog {catalog_path}: {exc}") from exc

    return parse_catalog(data or {})


def select_templates(
    catalog: dict[str, TemplateDescriptor],
    key: str | None = None,
) -> list[TemplateDescriptor]:
    """Pick the templates to generate.

    With *key*, exactly that template (even when it is in development).
    Without, every template not flagged ``inDevelopment``.

    Raises:
        CatalogError: If *key* is not in the catalog.
    """
    if key is not None:
        if key not in catalog:
            known = ", ".join(sorted(catalog)) or "(none)"
            raise CatalogError(f"Unknown template {key!r}. Available: {known}")
        return [catalog[key]]
    return [template for template in catalog.values() if not template.in_development]
