"""Documentation written into every finished ``after/`` directory.

Two files: a copy of the packaged ``.stackblitzrc`` and a ``README.md``
rendered from the ``item.md.j2`` Jinja2 template with the sandbox's display
name and preview URL.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from sandboxgen.config import Config
from sandboxgen.utils import FilesystemError, copy_file

TEMPLATE_DIR = Path(__file__).parent / "templates"
README_TEMPLATE = "item.md.j2"
PREVIEW_CONFIG = ".stackblitzrc"


class TemplateRenderer:
    """Renders Jinja2 templates from a template directory."""

    def __init__(self, template_dir: str | Path | None = None) -> None:
        self.template_dir = Path(template_dir) if template_dir else TEMPLATE_DIR
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape([]),
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        template = self.env.get_template(template_path)
        return template.render(**context)

    async def render_to_file(
        self,
        template_path: str,
        output_path: str | Path,
        context: dict[str, Any],
    ) -> Path:
        """Render a template and write the result to *output_path*."""
        content = self.render(template_path, context)
        out = Path(output_path)
        try:
            await asyncio.to_thread(out.write_text, content, "utf-8")
        except OSError as exc:
            raise FilesystemError(f"Could not write {out}: {exc}", out) from exc
        return out


def get_preview_url(key: str, config: Config) -> str:
    """StackBlitz URL that opens the published ``after`` directory of *key*."""
    return (
        f"https://stackblitz.com/github/{config.docs.repository}/tree/"
        f"{config.docs.branch}/{key}/{config.after_dir_name}?preset=node"
    )


async def write_documentation(
    target_dir: str | Path,
    *,
    key: str,
    display_name: str,
    preview_url: str,
    renderer: TemplateRenderer | None = None,
) -> list[Path]:
    """Copy the preview config and render the README into *target_dir*.

    Returns:
        The two written paths.
    """
    renderer = renderer or TemplateRenderer()
    target = Path(target_dir)

    config_path = await copy_file(
        renderer.template_dir / PREVIEW_CONFIG, target / PREVIEW_CONFIG
    )
    readme_path = await renderer.render_to_file(
        README_TEMPLATE,
        target / "README.md",
        {"name": display_name, "key": key, "preview_url": preview_url},
    )
    return [config_path, readme_path]
