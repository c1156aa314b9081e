"""Command-line entry point.

Usage::

    python -m sandboxgen
    python -m sandboxgen --template react-vite/default-ts --debug
    python -m sandboxgen --local-registry --output ./sandbox
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import traceback
from pathlib import Path

from rich.markup import escape

from sandboxgen.catalog import CatalogError
from sandboxgen.config import Config
from sandboxgen.generator import GenerationError, SandboxGenerator
from sandboxgen.pool import FailurePolicy
from sandboxgen.shutdown import shutdown_hooks
from sandboxgen.utils import console, print_error


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sandboxgen",
        description="Generate sandboxes from a set of possible templates",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m sandboxgen\n"
            "  python -m sandboxgen --template cra/default-js --debug\n"
            "  python -m sandboxgen --local-registry --fail-fast\n"
        ),
    )
    parser.add_argument("--template", default=None, help="Create a single template")
    parser.add_argument(
        "--debug", action="store_true", help="Print all the logs to the console"
    )
    parser.add_argument(
        "--local-registry", action="store_true", help="Use local registry"
    )
    parser.add_argument(
        "--catalog", default=None, help="Template catalog file (YAML or JSON)"
    )
    parser.add_argument(
        "--output", "-o", default=None, help="Sandbox output directory (default: ./sandbox)"
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Maximum sandboxes generated at once (needs --scoped-config above 1)",
    )
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Start no new sandboxes after one fails and exit non-zero",
    )
    parser.add_argument(
        "--scoped-config",
        action="store_true",
        help="Pass registry/npm settings via child environment instead of user config",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    config = Config.from_env()
    if args.output:
        config.sandbox_dir = Path(args.output)
    if args.catalog:
        config.catalog_path = Path(args.catalog)
    if args.concurrency is not None:
        config.build.max_concurrent_tasks = max(1, args.concurrency)
    if args.fail_fast:
        config.build.failure_policy = FailurePolicy.FAIL_FAST
    if args.scoped_config:
        config.build.scoped_config = True
    return config


def main(argv: list[str] | None = None) -> int:
    """Run the generator; returns the process exit code."""
    args = build_parser().parse_args(argv)
    shutdown_hooks.install()

    config = config_from_args(args)
    generator = SandboxGenerator(config)

    try:
        asyncio.run(
            generator.generate(
                args.template,
                local_registry=args.local_registry,
                debug=args.debug,
            )
        )
    except (CatalogError, GenerationError) as exc:
        print_error(f"Error: {escape(str(exc))}")
        return 1
    except Exception as exc:
        print_error(f"Sandbox generation crashed: {escape(str(exc))}")
        console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
