# main.py
"""CLI entry point for the ChapterForge chapter generation pipeline."""

from __future__ import annotations

import argparse
import sys

from orchestration.cli_runner import run_generate, run_init


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chapterforge")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create a project from a YAML file")
    init_parser.add_argument("project_file", help="Path to the project YAML file")
    init_parser.add_argument(
        "--force", action="store_true", help="Overwrite an existing project"
    )

    generate_parser = subparsers.add_parser("generate", help="Generate chapters in order")
    generate_parser.add_argument("project_id")
    generate_parser.add_argument(
        "--from",
        dest="start",
        type=int,
        default=None,
        help="First chapter to generate (defaults to the next unwritten one)",
    )
    generate_parser.add_argument("--count", type=int, default=1)
    generate_parser.add_argument(
        "--allow-placeholder-key",
        action="store_true",
        help="Run against endpoints that need no API key",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse command-line arguments and dispatch to the runner."""
    args = build_parser().parse_args(argv)
    if args.command == "init":
        sys.exit(run_init(args.project_file, args.force))
    sys.exit(
        run_generate(args.project_id, args.start, args.count, args.allow_placeholder_key)
    )


if __name__ == "__main__":
    main()
