from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import fields, is_dataclass
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter

from ramio_runner import CodeTestRunner, DockerBackend, ExecutionRequest, Language, RunnerConfig
from ramio_runner.errors import RunnerError
from ramio_runner.log import configure_logging

_CONSOLE = Console(no_color=False)


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich."""

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def _to_jsonable(value: object) -> Any:
    """Convert CLI return values into printable payloads.

    Example:
        ```python
        payload = _to_jsonable(summary)
        ```
    """
    if not isinstance(value, type) and is_dataclass(value):
        return {field.name: getattr(value, field.name) for field in fields(value)}
    return value


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for running tests and managing sandbox containers.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m rrun",
        description=(
            "ramio-runner CLI\n"
            "Run candidate code against unittest tests in a locked-down container,\n"
            "and manage containers labeled as ramio-runner sandboxes."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m rrun run --code solution.py --tests test_solution.py\n"
            "  python -m rrun run --code solution.py --tests test_solution.py --json\n"
            "  python -m rrun list containers\n"
            "  python -m rrun kill container <id>\n"
            "  python -m rrun cleanup --include-running\n\n"
            "Configuration:\n"
            "  RUNNER_PYTHON_IMAGE, RUNNER_TIMEOUT_MS, RUNNER_MEMORY_MB, ... or --config runner.toml"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help="TOML file with a [runner] table. Environment variables are used when omitted.",
    )
    parser.add_argument(
        "--docker-context",
        help="Use an existing Docker context name. Mutually exclusive with --docker-host.",
    )
    parser.add_argument(
        "--docker-host",
        help="Connect directly with DOCKER_HOST.\nExamples: ssh://user@server, tcp://host:2376",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Log level for runner events (default: WARNING).",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit runner log events as JSON lines on stderr.",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Run candidate code against a test file in a sandbox.",
        description=(
            "Copy the candidate and test files into a fresh workspace,\n"
            "run the tests in a sandbox container and print the result."
        ),
        epilog=(
            "Exit status:\n"
            "  0  tests passed\n"
            "  1  tests failed, timed out or the sandbox could not run\n"
            "  2  request rejected before any sandbox started"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("--code", required=True, help="Path to the candidate solution file.")
    run_cmd.add_argument("--tests", required=True, help="Path to the test file.")
    run_cmd.add_argument(
        "--language",
        default=Language.PYTHON.value,
        help="Language of both files (default: python).",
    )
    run_cmd.add_argument("--timeout-ms", type=int, help="Wall-clock budget in milliseconds.")
    run_cmd.add_argument(
        "--json",
        action="store_true",
        help="Print the result as JSON instead of a rich panel.",
    )

    list_cmd = sub.add_parser(
        "list",
        help="List managed sandbox containers.",
        formatter_class=_HELP_FORMATTER,
    )
    list_cmd_sub = list_cmd.add_subparsers(
        dest="resource",
        required=True,
        parser_class=_RichArgumentParser,
    )
    list_cmd_sub.add_parser(
        "containers",
        help="List managed containers in every state.",
        formatter_class=_HELP_FORMATTER,
    )

    kill_cmd = sub.add_parser(
        "kill",
        help="Force kill managed container resources.",
        formatter_class=_HELP_FORMATTER,
    )
    kill_cmd_sub = kill_cmd.add_subparsers(
        dest="resource",
        required=True,
        parser_class=_RichArgumentParser,
    )
    kill_container = kill_cmd_sub.add_parser(
        "container",
        help="Force kill one managed container by id or name.",
        formatter_class=_HELP_FORMATTER,
    )
    kill_container.add_argument("container_id")

    cleanup_cmd = sub.add_parser(
        "cleanup",
        help="Remove stale managed containers.",
        description=(
            "Remove exited managed containers.\n"
            "Running sandboxes are only left behind when a supervising process died;\n"
            "pass --include-running to remove them as well."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    cleanup_cmd.add_argument(
        "--include-running",
        action="store_true",
        help="Also remove running managed containers.",
    )

    return parser


def build_config(args: argparse.Namespace) -> RunnerConfig:
    """Resolve the runner config from --config or the environment, then CLI overrides.

    Example:
        ```python
        config = build_config(args)
        ```
    """
    base = RunnerConfig.from_file(args.config) if args.config else RunnerConfig.from_env()
    return base.with_overrides(
        docker_context=args.docker_context,
        docker_host=args.docker_host,
        timeout_ms=getattr(args, "timeout_ms", None),
    )


def _print_result(payload: dict[str, Any]) -> None:
    """Render one execution result in a rich panel.

    Example:
        ```python
        _print_result(result.to_dict())
        ```
    """
    if payload["timedOut"]:
        title, style = "TIMED OUT", "yellow"
    elif payload["success"]:
        title, style = "PASSED", "green"
    else:
        title, style = "FAILED", "red"
    summary = Table.grid(padding=(0, 2))
    summary.add_row("exit code", str(payload["exitCode"]))
    summary.add_row("timed out", str(payload["timedOut"]))
    _CONSOLE.print(Panel.fit(summary, title=f"[bold]{title}[/bold]", border_style=style))
    if payload["stdout"]:
        _CONSOLE.print(Panel(Text(payload["stdout"]), title="stdout", border_style="cyan"))
    if payload["stderr"]:
        _CONSOLE.print(Panel(Text(payload["stderr"]), title="stderr", border_style="magenta"))


def _print_containers(rows: list[dict[str, Any]]) -> None:
    table = Table(title="Managed Containers")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Image")
    table.add_column("State")
    table.add_column("Status")
    for row in rows:
        table.add_row(row["id"], row["name"], row["image"], row["state"], row["status"])
    _CONSOLE.print(table)


def _run(args: argparse.Namespace, config: RunnerConfig) -> int:
    """Handle `rrun run`.

    Example:
        ```python
        code = _run(args, RunnerConfig())
        ```
    """
    try:
        request = ExecutionRequest(
            Path(args.code).read_text(encoding="utf-8"),
            Path(args.tests).read_text(encoding="utf-8"),
            Language.parse(args.language),
        )
        runner = CodeTestRunner(config, backend=DockerBackend(config))
        result = asyncio.run(runner.run(request))
    except (OSError, ValueError, RunnerError) as exc:
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {exc}", border_style="red"))
        return 2
    payload = result.to_dict()
    if args.json:
        print(json.dumps(payload))
    else:
        _print_result(payload)
    return 0 if result.success else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `rrun` CLI command handler.

    Example:
        ```python
        code = main(["run", "--code", "solution.py", "--tests", "test_solution.py"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        configure_logging(args.log_level, json_output=args.log_json)
        config = build_config(args)
    except (OSError, ValueError) as exc:
        parser.error(str(exc))

    if args.command == "run":
        return _run(args, config)

    backend = DockerBackend(config)
    if args.command == "list" and args.resource == "containers":
        rows = [_to_jsonable(c) for c in backend.list_containers(all_states=True)]
        _print_containers(rows)
        return 0
    if args.command == "kill" and args.resource == "container":
        backend.kill_container(args.container_id)
        _CONSOLE.print(Panel.fit(f"Killed container {args.container_id}", style="bold yellow"))
        return 0
    if args.command == "cleanup":
        summary = backend.cleanup_stale(include_running=args.include_running)
        _CONSOLE.print(
            Panel.fit(Pretty(_to_jsonable(summary)), title="Cleanup Summary", border_style="green")
        )
        return 0

    parser.error("Unhandled command")

